"""
API Proxy forwarding service
Per-request control flow: resolve configuration, check authentication, consult
the cache, forward upstream and stream the (transformed) response back
"""
import asyncio
import logging
from typing import AsyncIterator, Dict, Optional, Tuple

import httpx
from starlette.responses import Response, StreamingResponse

from ..cache.backend import CacheProvider
from ..cache.mediator import CacheMediator
from .exceptions import (
    AuthenticationRequiredError,
    ClientDisconnectedError,
    UpstreamConnectionError,
    UpstreamResponseError,
    UpstreamTimeoutError,
)
from .inbound import InboundRequest
from .options import EffectiveConfig, PlatformLimits, ProxyOptions
from .request_options import OutboundRequest, build_outbound_request
from .resolver import ConfigurationResolver
from .transforms import apply_transforms

logger = logging.getLogger(__name__)

# Upstream response headers never sent to the client.
DISCARD_RESPONSE_HEADERS = frozenset({
    "set-cookie",
    "content-length",
    "connection",
    "date",
    "transfer-encoding",
    "content-encoding",
    "keep-alive",
})


class ForwardingProxy:
    """Forward inbound requests to an upstream API described by ``ProxyOptions``"""

    def __init__(
        self,
        options: ProxyOptions,
        *,
        limits: Optional[PlatformLimits] = None,
        default_cache: Optional[CacheProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.options = options
        self.resolver = ConfigurationResolver(options, limits=limits, default_cache=default_cache)
        self.transport = transport

    async def handle(self, inbound: InboundRequest) -> Response:
        """
        Proxy a single inbound request

        Args:
            inbound: The request being forwarded

        Returns:
            A response replayed from the cache or streamed from the upstream

        Raises:
            ProxyError: Configuration, token, authentication and upstream failures
        """
        config = self.resolver.resolve(inbound)

        if config.ensure_authenticated and not inbound.is_authenticated():
            logger.debug("User is not authenticated", extra={"path": inbound.path})
            raise AuthenticationRequiredError("User must be authenticated to invoke this API endpoint")

        outbound = build_outbound_request(inbound, config)

        mediator: Optional[CacheMediator] = None
        cache_key: Optional[str] = None
        if inbound.method == "GET" and config.cache_active:
            cache_key = config.cache_key(inbound, outbound.url)
            mediator = CacheMediator(config.cache, config.cache_max_age, config.cache_http_header)
            cached = await mediator.lookup(cache_key, inbound.header("accept"))
            if cached is not None:
                return cached

        client, upstream = await self._send(inbound, outbound, config)
        try:
            return await self._respond(outbound, config, client, upstream, mediator, cache_key)
        except BaseException:
            await upstream.aclose()
            await client.aclose()
            raise

    def _create_client(self, outbound: OutboundRequest) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self.transport,
            timeout=httpx.Timeout(outbound.timeout_seconds),
            follow_redirects=outbound.follow_redirects,
            max_redirects=outbound.max_redirects,
            proxy=outbound.proxy
        )

    async def _send(self, inbound: InboundRequest, outbound: OutboundRequest,
                    config: EffectiveConfig) -> Tuple[httpx.AsyncClient, httpx.Response]:
        client = self._create_client(outbound)
        request = client.build_request(
            outbound.method,
            outbound.url,
            headers=outbound.headers,
            content=outbound.content if outbound.content is not None else outbound.stream
        )

        logger.info(
            "Proxying request",
            extra={
                "method": outbound.method,
                "url": outbound.url,
                "headers_count": len(outbound.headers),
                "timeout_ms": outbound.timeout
            }
        )

        try:
            send = asyncio.ensure_future(
                asyncio.wait_for(client.send(request, stream=True), outbound.timeout_seconds)
            )
            # A streamed request body owns the receive channel, so disconnects
            # can only be watched for when there is none.
            if outbound.stream is None and inbound.is_disconnected is not None:
                await self._race_disconnect(send, inbound, config.disconnect_poll_interval)
            response = await send
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            await client.aclose()
            logger.warning(
                "Upstream request timed out",
                extra={"url": outbound.url, "timeout_ms": outbound.timeout, "error": repr(e)}
            )
            raise UpstreamTimeoutError("API call timed out", url=outbound.url, timeout_ms=outbound.timeout) from e
        except httpx.RequestError as e:
            await client.aclose()
            logger.error(
                "Upstream request failed",
                extra={"url": outbound.url, "error": str(e)},
                exc_info=True
            )
            raise UpstreamConnectionError(
                "Bad Gateway: Unable to connect to upstream service",
                url=outbound.url,
                original_exception=e
            ) from e
        except BaseException:
            await client.aclose()
            raise

        logger.debug(
            "Received upstream response headers",
            extra={"url": outbound.url, "status_code": response.status_code}
        )
        return client, response

    async def _race_disconnect(self, send: "asyncio.Future[httpx.Response]",
                               inbound: InboundRequest, interval: float) -> None:
        watcher = asyncio.ensure_future(self._watch_disconnect(inbound, interval))
        try:
            done, _ = await asyncio.wait({send, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            send.cancel()
            raise
        finally:
            watcher.cancel()

        if send not in done:
            if watcher.exception() is not None:
                logger.warning(
                    "Client disconnect check failed",
                    extra={"path": inbound.path, "error": repr(watcher.exception())}
                )
                return

            send.cancel()
            await asyncio.wait({send})
            if not send.cancelled() and send.exception() is None:
                await send.result().aclose()
            logger.info("Client disconnected before upstream responded", extra={"path": inbound.path})
            raise ClientDisconnectedError("Client closed the connection before the upstream responded")

    @staticmethod
    async def _watch_disconnect(inbound: InboundRequest, interval: float) -> None:
        while not await inbound.is_disconnected():
            await asyncio.sleep(interval)

    async def _respond(self, outbound: OutboundRequest, config: EffectiveConfig,
                       client: httpx.AsyncClient, upstream: httpx.Response,
                       mediator: Optional[CacheMediator], cache_key: Optional[str]) -> Response:
        status_code = upstream.status_code
        headers = self._response_headers(upstream, strip_cache_headers=mediator is not None)

        # Only a 200 may populate the cache; outside the cache path only
        # error statuses bypass the transforms.
        is_error = status_code != 200 if mediator is not None else status_code >= 400

        if mediator is not None:
            headers.update(mediator.miss_headers())

        if is_error:
            logger.debug(
                "Received error from upstream",
                extra={"url": outbound.url, "status_code": status_code}
            )
            if config.buffer_error_body and status_code >= 400:
                body = await upstream.aread()
                await upstream.aclose()
                await client.aclose()
                raise UpstreamResponseError(status_code, body.decode("utf-8", errors="replace"), url=outbound.url)

            return StreamingResponse(
                self._relay(upstream.aiter_bytes(), upstream, client),
                status_code=status_code,
                headers=headers
            )

        body = apply_transforms(upstream.aiter_bytes(), config.transforms, headers)

        if mediator is not None:
            # Transforms may have replaced the content-type, so this runs after them.
            body = mediator.tee(cache_key, body, mediator.preserved_headers(headers))

        return StreamingResponse(
            self._relay(body, upstream, client),
            status_code=status_code,
            headers=headers
        )

    @staticmethod
    def _response_headers(upstream: httpx.Response, strip_cache_headers: bool) -> Dict[str, str]:
        headers = {
            name.lower(): value for name, value in upstream.headers.items()
            if name.lower() not in DISCARD_RESPONSE_HEADERS
        }
        if strip_cache_headers:
            headers = CacheMediator.strip_origin_cache_headers(headers)
        return headers

    @staticmethod
    async def _relay(body: AsyncIterator[bytes], upstream: httpx.Response,
                     client: httpx.AsyncClient) -> AsyncIterator[bytes]:
        try:
            async for chunk in body:
                yield chunk
        finally:
            aclose = getattr(body, "aclose", None)
            if aclose is not None:
                await aclose()
            await upstream.aclose()
            await client.aclose()
