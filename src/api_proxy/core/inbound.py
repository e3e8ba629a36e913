"""
Inbound request representation.

The proxy core works on ``InboundRequest`` rather than on the framework
request, so option building can be exercised without a running server.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Union
from urllib.parse import parse_qsl

from starlette.requests import Request

from .exceptions import RequestBodyError

logger = logging.getLogger(__name__)

QueryValue = Union[str, List[str]]

JSON_CONTENT_TYPE = "application/json"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

AuthenticationSignal = Union[bool, Callable[[], bool], None]


@dataclass
class InboundRequest:
    """Everything the proxy needs to know about the request being forwarded."""

    method: str
    path: str = "/"
    query: Dict[str, QueryValue] = field(default_factory=dict)
    raw_query: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)

    # Parsed body ("json" or "form"); raw bodies travel in body_stream instead.
    body: Optional[Dict[str, Any]] = None
    body_type: Optional[str] = None
    body_stream: Optional[AsyncIterator[bytes]] = None

    client_ip: Optional[str] = None
    secure: bool = False

    user: Any = None
    authenticated: AuthenticationSignal = None
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None

    def __post_init__(self):
        self.method = self.method.upper()
        self.headers = {name.lower(): value for name, value in self.headers.items()}

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    @property
    def content_type(self) -> str:
        return (self.header("content-type") or "").split(";")[0].strip().lower()

    def is_authenticated(self) -> bool:
        signal = self.authenticated
        if callable(signal):
            signal = signal()
        return signal is True

    @classmethod
    async def from_request(cls, request: Request) -> "InboundRequest":
        """
        Build from a Starlette request.

        JSON and url-encoded bodies of non-GET requests are parsed so that
        placeholders can be substituted; any other body is left unread and
        streamed to the upstream.
        """
        method = request.method.upper()
        headers = {name.lower(): value for name, value in request.headers.items()}
        content_type = headers.get("content-type", "").split(";")[0].strip().lower()

        body: Optional[Dict[str, Any]] = None
        body_type: Optional[str] = None
        body_stream: Optional[AsyncIterator[bytes]] = None

        if method != "GET" and _has_body(headers):
            if content_type == JSON_CONTENT_TYPE:
                raw = await request.body()
                body = _parse_json_body(raw)
                if body is not None:
                    body_type = "json"
                elif raw.strip():
                    body_stream = _replay(raw)
            elif content_type == FORM_CONTENT_TYPE:
                body = _parse_form_body(await request.body())
                body_type = "form"
            else:
                body_stream = request.stream()

        return cls(
            method=method,
            path=request.url.path,
            query=_multi_dict(request.query_params.multi_items()),
            raw_query=request.url.query,
            headers=headers,
            params=dict(request.path_params),
            body=body,
            body_type=body_type,
            body_stream=body_stream,
            client_ip=request.client.host if request.client else None,
            secure=request.url.scheme == "https",
            user=getattr(request.state, "user", None),
            authenticated=getattr(request.state, "authenticated", None),
            is_disconnected=request.is_disconnected,
        )


def _has_body(headers: Mapping[str, str]) -> bool:
    if "transfer-encoding" in headers:
        return True
    try:
        return int(headers.get("content-length", "0")) > 0
    except ValueError:
        return False


def _parse_json_body(raw: bytes) -> Optional[Dict[str, Any]]:
    if not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        logger.warning("Failed to parse JSON request body", extra={"error": str(e)})
        raise RequestBodyError(f"Invalid JSON request body: {e}")
    if not isinstance(parsed, dict):
        # Arrays and scalars are forwarded untouched.
        return None
    return parsed


async def _replay(raw: bytes) -> AsyncIterator[bytes]:
    yield raw


def _parse_form_body(raw: bytes) -> Dict[str, Any]:
    try:
        pairs = parse_qsl(raw.decode("utf-8"), keep_blank_values=True)
    except UnicodeDecodeError as e:
        raise RequestBodyError(f"Invalid form request body: {e}")
    return _multi_dict(pairs)


def _multi_dict(pairs) -> Dict[str, QueryValue]:
    result: Dict[str, QueryValue] = {}
    for key, value in pairs:
        if key not in result:
            result[key] = value
        elif isinstance(result[key], list):
            result[key].append(value)
        else:
            result[key] = [result[key], value]
    return result
