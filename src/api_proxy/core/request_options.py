"""
Outbound request construction.

Turns an ``InboundRequest`` plus the ``EffectiveConfig`` for it into the
immutable ``OutboundRequest`` handed to the transport. Every placeholder is
resolved here, before any network call is made.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from .exceptions import PathParameterError, TokenResolutionError
from .inbound import FORM_CONTENT_TYPE, JSON_CONTENT_TYPE, InboundRequest
from .interpolate import Interpolator, get_interpolator
from .options import EffectiveConfig

logger = logging.getLogger(__name__)

USER_TOKEN_PREFIX = "USER_"

BLOCKED_HEADERS = frozenset({
    "cookie",
    "host",
    "accept-encoding",
    "content-length",
    # Hop-by-hop headers (RFC 7230 section 6.1)
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Blocked when caching so the upstream always returns a full representation.
CONDITIONAL_HEADERS = frozenset({"if-none-match", "if-modified-since"})

WILDCARD_PARAM = "wildcard"

# Path parameters arrive percent-decoded; these stay literal when re-encoding a wildcard.
WILDCARD_SAFE = "/:@!$&'()*+,;=~"

DOT_SEGMENTS = frozenset({".", ".."})

_PATH_TOKEN = re.compile(r"^:([A-Za-z_][A-Za-z0-9_]*)(\?)?$")


@dataclass(frozen=True)
class OutboundRequest:
    """Fully resolved upstream request. Consumed once by the forwarding call."""

    method: str
    url: str
    headers: Dict[str, str]
    content: Optional[bytes] = None
    stream: Optional[AsyncIterator[bytes]] = None
    timeout: int = 5000
    max_redirects: int = 5
    follow_redirects: bool = True
    proxy: Optional[str] = None

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000.0


def _camel_case(name: str) -> str:
    head, *rest = name.lower().split("_")
    return head + "".join(part.capitalize() for part in rest)


def _lookup_property(user: Any, name: str) -> Any:
    if isinstance(user, Mapping):
        return user.get(name)
    return getattr(user, name, None)


class TokenResolver:
    """
    Resolve placeholder tokens for one request.

    ``USER_<NAME>`` reads ``<name>`` (camelCase, then snake_case) from the
    authenticated user; every other name is passed to ``lookup``.
    """

    def __init__(self, inbound: InboundRequest, lookup: Callable[..., Any]):
        self.inbound = inbound
        self.lookup = lookup

    def __call__(self, token: str) -> str:
        if token.upper().startswith(USER_TOKEN_PREFIX):
            return self._resolve_user(token)

        value = self.lookup(token, self.inbound)
        if value is None:
            raise TokenResolutionError(
                f"Invalid environment variable {token} is undefined",
                token=token
            )
        return str(value)

    def _resolve_user(self, token: str) -> str:
        user = self.inbound.user
        if user is None:
            raise TokenResolutionError(
                f"Invalid environment token {token}. No user object",
                token=token
            )

        name = token[len(USER_TOKEN_PREFIX):]
        for candidate in (_camel_case(name), name.lower()):
            value = _lookup_property(user, candidate)
            if value is not None:
                return str(value)

        raise TokenResolutionError(
            f"Invalid user token {token}. User has no property {_camel_case(name)}",
            token=token
        )


def compile_path(template: str, params: Mapping[str, Any]) -> str:
    """
    Fill ``:name``, ``:name?`` and ``*`` segments of a path template.

    Missing required parameters raise ``PathParameterError``; missing optional
    ones are dropped together with their leading separator. The wildcard value
    is taken as already decoded and re-encoded with its separators kept; dot
    segments in it are rejected so it cannot climb out of the template prefix.
    """
    segments = template.split("/")
    compiled: List[str] = []
    for segment in segments:
        if segment == "*":
            value = params.get(WILDCARD_PARAM)
            if value is None:
                raise PathParameterError(
                    "Expected wildcard path segment to be defined",
                    parameter=WILDCARD_PARAM
                )
            wildcard = str(value).lstrip("/") if compiled else str(value)
            if any(part in DOT_SEGMENTS for part in wildcard.split("/")):
                raise PathParameterError(
                    "Wildcard path segment must not contain dot segments",
                    parameter=WILDCARD_PARAM
                )
            compiled.append(quote(wildcard, safe=WILDCARD_SAFE))
            continue

        match = _PATH_TOKEN.match(segment)
        if match is None:
            compiled.append(segment)
            continue

        name, optional = match.group(1), match.group(2)
        value = params.get(name)
        if value is None or value == "":
            if optional:
                continue
            raise PathParameterError(f'Expected "{name}" to be defined', parameter=name)
        compiled.append(quote(str(value), safe=""))

    path = "/".join(compiled)
    if template.startswith("/") and not path.startswith("/"):
        path = "/" + path
    return path


def _interpolate_path(path: str, interpolate: Interpolator, resolve: Callable[[str], str]) -> str:
    return "/".join(interpolate(segment, resolve) for segment in path.split("/"))


def _interpolate_values(values: Mapping[str, Any], interpolate: Interpolator,
                        resolve: Callable[[str], str]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, list):
            result[key] = [interpolate(item, resolve) for item in value]
        else:
            result[key] = interpolate(value, resolve)
    return result


def _query_pairs(query: Mapping[str, Any]) -> List[Tuple[str, str]]:
    pairs: List[Tuple[str, str]] = []
    for key, value in query.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            pairs.extend((key, _query_str(item)) for item in value)
        else:
            pairs.append((key, _query_str(value)))
    return pairs


def _query_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_url(inbound: InboundRequest, config: EffectiveConfig,
              interpolate: Interpolator, resolve: Callable[[str], str]) -> str:
    parts = urlsplit(config.url)

    path = parts.path
    if config.url_is_template:
        path = compile_path(path, {**inbound.params, **config.params})
    path = _interpolate_path(path, interpolate, resolve)

    if config.original_query:
        query_string = inbound.raw_query
    else:
        inbound_query = {
            key: value for key, value in inbound.query.items()
            if key not in config.selection_keys
        }
        origin_query: Dict[str, Any] = {}
        for key, value in parse_qsl(parts.query, keep_blank_values=True):
            origin_query.setdefault(key, []).append(value)
        merged = {**origin_query, **inbound_query, **config.query}
        query_string = urlencode(_query_pairs(_interpolate_values(merged, interpolate, resolve)))

    return urlunsplit((parts.scheme, parts.netloc, path, query_string, ""))


def build_headers(inbound: InboundRequest, config: EffectiveConfig,
                  interpolate: Interpolator, resolve: Callable[[str], str]) -> Dict[str, str]:
    blocked = BLOCKED_HEADERS | CONDITIONAL_HEADERS if config.cache_active else BLOCKED_HEADERS

    headers: Dict[str, str] = {}
    for name, value in inbound.headers.items():
        name = name.lower()
        if name in blocked:
            continue
        if name == "x-authorization":
            name = "authorization"
        headers[name] = interpolate(value, resolve)

    if inbound.client_ip:
        headers["x-forwarded-for"] = inbound.client_ip

    host = inbound.header("host")
    if host:
        hostname, _, port = host.partition(":")
        if port:
            headers["x-forwarded-port"] = port
        headers["x-forwarded-host"] = hostname

    headers["x-forwarded-proto"] = "https" if inbound.secure else "http"

    for name, value in interpolate(config.headers, resolve).items():
        headers[name.lower()] = str(value)

    headers["user-agent"] = config.user_agent
    return headers


def build_body(inbound: InboundRequest, config: EffectiveConfig, headers: Dict[str, str],
               interpolate: Interpolator, resolve: Callable[[str], str]) -> Optional[bytes]:
    if inbound.body is None:
        return None

    merged = {**inbound.body, **config.body}
    if inbound.body_type == "form":
        headers["content-type"] = FORM_CONTENT_TYPE
        return urlencode(_query_pairs(_interpolate_values(merged, interpolate, resolve))).encode("utf-8")

    merged = interpolate(merged, resolve)
    headers["content-type"] = JSON_CONTENT_TYPE
    return json.dumps(merged).encode("utf-8")


def build_outbound_request(inbound: InboundRequest, config: EffectiveConfig) -> OutboundRequest:
    """
    Build the upstream request for ``inbound``.

    Raises:
        TokenResolutionError: If a placeholder cannot be resolved
        PathParameterError: If the URL template cannot be satisfied
    """
    interpolate = get_interpolator(config.env_token_start, config.env_token_end)
    resolve = TokenResolver(inbound, config.env_variable_lookup)

    method = (config.method or inbound.method).upper()
    url = build_url(inbound, config, interpolate, resolve)
    headers = build_headers(inbound, config, interpolate, resolve)
    content = build_body(inbound, config, headers, interpolate, resolve)

    stream = None
    if content is None and inbound.body_stream is not None:
        stream = inbound.body_stream

    logger.debug(
        "Built outbound request",
        extra={
            "method": method,
            "url": url,
            "headers_count": len(headers),
            "body_size": len(content) if content else 0,
            "streamed_body": stream is not None,
        }
    )

    return OutboundRequest(
        method=method,
        url=url,
        headers=headers,
        content=content,
        stream=stream,
        timeout=config.timeout,
        max_redirects=config.max_redirects,
        follow_redirects=config.follow_redirects,
        proxy=config.proxy,
    )
