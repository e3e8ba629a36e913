"""Streaming response transforms."""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, MutableMapping, Optional, Sequence

logger = logging.getLogger(__name__)

ByteStream = AsyncIterator[bytes]


@dataclass(frozen=True)
class Transform:
    """
    A named streaming stage applied to successful upstream response bodies.

    ``stage`` is called once per response with the incoming byte stream and
    returns the transformed stream, so per-response state lives inside it.
    When ``content_type`` is set it replaces the content-type sent to the
    client (and stored in the cache).
    """

    name: str
    stage: Callable[[ByteStream], ByteStream]
    content_type: Optional[str] = None


def apply_transforms(stream: ByteStream, transforms: Sequence[Transform],
                     headers: MutableMapping[str, str]) -> ByteStream:
    """
    Thread ``stream`` through ``transforms`` in order.

    Content-type declarations are applied to ``headers`` after the whole
    chain is threaded, so the last transform declaring one wins.
    """
    for transform in transforms:
        logger.debug("Applying transform", extra={"transform": transform.name})
        stream = transform.stage(stream)

    for transform in transforms:
        if transform.content_type:
            headers["content-type"] = transform.content_type

    return stream


def chunk_transform(name: str, func: Callable[[bytes], bytes],
                    content_type: Optional[str] = None) -> Transform:
    """Build a transform applying ``func`` to every chunk."""

    async def stage(stream: ByteStream) -> ByteStream:
        async for chunk in stream:
            yield func(chunk)

    return Transform(name=name, stage=stage, content_type=content_type)


def append_transform(name: str, suffix: bytes,
                     content_type: Optional[str] = None) -> Transform:
    """Build a transform that appends ``suffix`` once the body is complete."""

    async def stage(stream: ByteStream) -> ByteStream:
        async for chunk in stream:
            yield chunk
        yield suffix

    return Transform(name=name, stage=stage, content_type=content_type)
