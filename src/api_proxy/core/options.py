"""
Proxy option models.

``ProxyOptions`` is the immutable global configuration of a proxy endpoint.
``EndpointOverlay`` and ``ApiProfile`` carry partial overrides selected per
request, and ``EffectiveConfig`` is the fully merged result for one request.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ImportString, TypeAdapter, field_validator

from ..cache.backend import CacheProvider, MemoryCache
from .transforms import Transform

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000
DEFAULT_MAX_REDIRECTS = 5
DEFAULT_USER_AGENT = "api-proxy"
DEFAULT_CACHE_HEADER = "Api-Proxy-Cache"

CacheOption = Union[bool, CacheProvider, None]

# Fields merged key-wise by overlays instead of replaced.
MAPPING_FIELDS = ("headers", "query", "body", "params")

# Schemes httpx accepts for an outbound proxy.
PROXY_URL_SCHEMES = ("http://", "https://", "socks5://", "socks5h://")

_import_string = TypeAdapter(ImportString)


def _coerce_cache(value: Any) -> Any:
    """``"memory"`` creates a dedicated in-process cache; ``"none"`` disables caching."""
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "memory":
            return MemoryCache()
        if lowered in ("none", "off"):
            return False
    return value


def _load_transforms(value: Any) -> Any:
    """Transforms may be given as ``"package.module:attribute"`` import strings."""
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    loaded = []
    for item in value:
        if isinstance(item, str):
            item = _import_string.validate_python(item)
            if not isinstance(item, Transform) and callable(item):
                item = item()
        loaded.append(item)
    return loaded


def _load_callable(value: Any) -> Any:
    if isinstance(value, str):
        return _import_string.validate_python(value)
    return value


def _validate_proxy_url(value: Any) -> Any:
    if value and not str(value).startswith(PROXY_URL_SCHEMES):
        raise ValueError(f"Outbound proxy must be an absolute url with one of the schemes {PROXY_URL_SCHEMES}")
    return value


class PlatformLimits(BaseModel):
    """Ceilings imposed by the hosting environment; None means no ceiling."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    timeout: Optional[int] = Field(default=None, ge=0, description="Maximum upstream timeout in milliseconds")
    max_redirects: Optional[int] = Field(default=None, ge=0, description="Maximum number of redirects")
    cache_max_age: Optional[int] = Field(default=None, ge=0, description="Maximum cache max-age in seconds")


class OverlayOptions(BaseModel):
    """Options an endpoint overlay, API profile or route may override. Unset fields inherit."""

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    url: Optional[str] = None
    method: Optional[str] = None
    timeout: Optional[int] = Field(default=None, ge=0)
    max_redirects: Optional[int] = Field(default=None, ge=0)
    follow_redirects: Optional[bool] = None
    user_agent: Optional[str] = None
    proxy: Optional[str] = None
    cache: CacheOption = None
    cache_max_age: Optional[int] = Field(default=None, ge=0)
    cache_key_fn: Optional[Callable[..., str]] = None
    headers: Optional[Dict[str, str]] = None
    query: Optional[Dict[str, Any]] = None
    body: Optional[Dict[str, Any]] = None
    params: Optional[Dict[str, Any]] = None
    transforms: Optional[List[Transform]] = None
    ensure_authenticated: Optional[bool] = None
    original_query: Optional[bool] = None
    buffer_error_body: Optional[bool] = None

    _cache = field_validator("cache", mode="before")(_coerce_cache)
    _transforms = field_validator("transforms", mode="before")(_load_transforms)
    _cache_key_fn = field_validator("cache_key_fn", mode="before")(_load_callable)
    _proxy = field_validator("proxy")(_validate_proxy_url)

    @field_validator("method")
    @classmethod
    def validate_method(cls, v):
        return v.upper() if v else v

    def overrides(self) -> Dict[str, Any]:
        """Explicitly set fields, excluding selection fields of subclasses."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name in OverlayOptions.model_fields
        }


class EndpointOverlay(OverlayOptions):
    """Overrides applied when ``pattern`` (a regular expression) matches."""

    pattern: str = Field(..., min_length=1, description="Regular expression searched in the target URL or sub-path")

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v):
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid endpoint pattern {v!r}: {e}") from e
        return v


class ApiProfile(OverlayOptions):
    """A named upstream API selected with the ``api`` query parameter."""

    base_url: str = Field(..., description="Base URL the sub-path is appended to")
    endpoints: List[EndpointOverlay] = Field(default_factory=list, description="Overlays matched against the sub-path")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v):
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("API base_url must start with http:// or https://")
        return v


class ProxyOptions(BaseModel):
    """Global options of a proxy endpoint. Never mutated after construction."""

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    url: Optional[str] = Field(default=None, description="Upstream URL template (:name, :name?, *)")
    method: Optional[str] = Field(default=None, description="Outbound method override")
    timeout: int = Field(default=DEFAULT_TIMEOUT_MS, ge=0, description="Upstream timeout in milliseconds")
    max_redirects: int = Field(default=DEFAULT_MAX_REDIRECTS, ge=0, description="Maximum redirects followed")
    follow_redirects: bool = Field(default=True, description="Follow upstream redirects")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent sent upstream")
    proxy: Optional[str] = Field(default=None, description="Outbound HTTP proxy url, e.g. http://proxy.internal:3128")

    cache: CacheOption = Field(default=None, description="Cache provider; None uses the application default, False disables")
    cache_max_age: int = Field(default=0, ge=0, description="Cache max-age in seconds; 0 disables caching")
    cache_key_fn: Optional[Callable[..., str]] = Field(default=None, description="fn(inbound_request, url) -> cache key")
    cache_http_header: str = Field(default=DEFAULT_CACHE_HEADER, description="Response header carrying hit/miss")

    headers: Dict[str, str] = Field(default_factory=dict, description="Headers injected upstream")
    query: Dict[str, Any] = Field(default_factory=dict, description="Query parameters injected upstream")
    body: Dict[str, Any] = Field(default_factory=dict, description="Fields merged into structured bodies")
    params: Dict[str, Any] = Field(default_factory=dict, description="Path template parameters")
    transforms: List[Transform] = Field(default_factory=list, description="Response transforms, applied in order")

    ensure_authenticated: bool = Field(default=False, description="Reject unauthenticated requests")
    original_query: bool = Field(default=False, description="Forward the raw inbound query string verbatim")
    buffer_error_body: bool = Field(default=False, description="Turn upstream error bodies into proxy errors")

    env_token_start: str = Field(default="${", min_length=1, description="Placeholder left delimiter")
    env_token_end: str = Field(default="}", min_length=1, description="Placeholder right delimiter")
    env_variable_lookup: Optional[Callable[..., Any]] = Field(default=None, description="fn(name, inbound_request) -> value")

    endpoints: List[EndpointOverlay] = Field(default_factory=list, description="Overlays matched against the target URL")
    apis: Dict[str, ApiProfile] = Field(default_factory=dict, description="Named API profiles")

    disconnect_poll_interval: float = Field(default=0.05, gt=0, description="Seconds between client disconnect checks")

    _cache = field_validator("cache", mode="before")(_coerce_cache)
    _transforms = field_validator("transforms", mode="before")(_load_transforms)
    _callables = field_validator("cache_key_fn", "env_variable_lookup", mode="before")(_load_callable)
    _proxy = field_validator("proxy")(_validate_proxy_url)

    @field_validator("method")
    @classmethod
    def validate_method(cls, v):
        return v.upper() if v else v

    def with_overrides(self, overlay: OverlayOptions) -> "ProxyOptions":
        """Return a validated copy with ``overlay`` applied on top (used for route-bound proxies)."""
        data = {name: getattr(self, name) for name in type(self).model_fields}
        for name, value in overlay.overrides().items():
            if value is None:
                continue
            if name in MAPPING_FIELDS:
                data[name] = {**data[name], **value}
            else:
                data[name] = value
        return type(self)(**data)


def environment_lookup(name: str, inbound: Any = None) -> Optional[str]:
    """Default variable lookup: the process environment."""
    return os.environ.get(name)


@dataclass(frozen=True)
class EffectiveConfig:
    """Settings for a single request after overlays and ceilings are applied."""

    url: str
    url_is_template: bool = False
    selection: str = "url"
    sub_path: Optional[str] = None
    selection_keys: Tuple[str, ...] = ()

    method: Optional[str] = None
    timeout: int = DEFAULT_TIMEOUT_MS
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    follow_redirects: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    proxy: Optional[str] = None

    cache: Optional[CacheProvider] = None
    cache_max_age: int = 0
    cache_key_fn: Optional[Callable[..., str]] = None
    cache_http_header: str = DEFAULT_CACHE_HEADER

    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    body: Dict[str, Any] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    transforms: Tuple[Transform, ...] = ()

    ensure_authenticated: bool = False
    original_query: bool = False
    buffer_error_body: bool = False

    env_token_start: str = "${"
    env_token_end: str = "}"
    env_variable_lookup: Callable[..., Any] = environment_lookup
    disconnect_poll_interval: float = 0.05

    limits: Optional[PlatformLimits] = None

    @property
    def cache_active(self) -> bool:
        return self.cache is not None and self.cache_max_age > 0

    def cache_key(self, inbound: Any, url: str) -> str:
        if self.cache_key_fn is not None:
            return str(self.cache_key_fn(inbound, url))
        return url
