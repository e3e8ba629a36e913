"""
Per-request configuration resolution.

Selects the upstream target (configured URL template, named API profile or
``url`` query parameter), layers the matching overlays on top of the global
options and applies platform ceilings.
"""

import logging
import re
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from ..cache.backend import CacheProvider
from .exceptions import ConfigurationError
from .inbound import InboundRequest
from .options import (
    MAPPING_FIELDS,
    EffectiveConfig,
    EndpointOverlay,
    OverlayOptions,
    PlatformLimits,
    ProxyOptions,
    environment_lookup,
)

logger = logging.getLogger(__name__)

URL_PARAM = "url"
API_PARAM = "api"
PATH_PARAM = "path"


@lru_cache(maxsize=256)
def compile_pattern(pattern: str) -> "re.Pattern[str]":
    # Patterns are checked when EndpointOverlay is validated.
    return re.compile(pattern)


def match_endpoint(endpoints: List[EndpointOverlay], target: str) -> Optional[EndpointOverlay]:
    """First overlay whose pattern is found in ``target``; later patterns are not evaluated."""
    for endpoint in endpoints:
        if compile_pattern(endpoint.pattern).search(target):
            return endpoint
    return None


def _query_value(inbound: InboundRequest, name: str) -> Optional[str]:
    value = inbound.query.get(name)
    if isinstance(value, list):
        value = value[0] if value else None
    return value or None


def _validate_url(url: str) -> str:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigurationError(
            f"Invalid url {url!r}, an absolute http or https url is required",
            config_field="url",
            provided_value=url
        )
    return url


def _join(base_url: str, sub_path: Optional[str]) -> str:
    if not sub_path:
        return base_url
    return base_url.rstrip("/") + "/" + sub_path.lstrip("/")


class ConfigurationResolver:
    """
    Build an ``EffectiveConfig`` for each inbound request.

    The global ``ProxyOptions`` is shared by all requests and never modified;
    every call returns a fresh value.
    """

    def __init__(self, options: ProxyOptions, limits: Optional[PlatformLimits] = None,
                 default_cache: Optional[CacheProvider] = None):
        self.options = options
        self.limits = limits
        self.default_cache = default_cache

    def resolve(self, inbound: InboundRequest) -> EffectiveConfig:
        selection, url, sub_path, profile_name, selection_keys = self._select_target(inbound)

        values = self._base_values()
        profile = None
        if profile_name is not None:
            profile = self.options.apis[profile_name]
            self._apply(values, profile)

        global_match = match_endpoint(self.options.endpoints, url)
        if global_match is not None:
            logger.debug("Applying endpoint overlay", extra={"pattern": global_match.pattern, "url": url})
            self._apply(values, global_match)

        if profile is not None and profile.endpoints:
            profile_match = match_endpoint(profile.endpoints, sub_path or "")
            if profile_match is not None:
                logger.debug(
                    "Applying api endpoint overlay",
                    extra={"api": profile_name, "pattern": profile_match.pattern, "sub_path": sub_path}
                )
                self._apply(values, profile_match)

        # An overlay may repoint a request at a different upstream.
        overlay_url = values.pop("url")
        if overlay_url:
            url = overlay_url if selection == "url_template" else _validate_url(overlay_url)

        self._apply_limits(values)

        cache = values.pop("cache")
        if cache is None or cache is True:
            provider = self.default_cache
        elif cache is False:
            provider = None
        else:
            provider = cache

        config = EffectiveConfig(
            url=url,
            url_is_template=selection == "url_template",
            selection=selection,
            sub_path=sub_path,
            selection_keys=selection_keys,
            cache=provider,
            transforms=tuple(values.pop("transforms") or ()),
            env_variable_lookup=values.pop("env_variable_lookup") or environment_lookup,
            limits=self.limits,
            **values
        )
        logger.debug(
            "Resolved proxy configuration",
            extra={
                "selection": selection,
                "url": url,
                "method": config.method or inbound.method,
                "timeout": config.timeout,
                "cache_active": config.cache_active,
            }
        )
        return config

    def _select_target(self, inbound: InboundRequest) -> Tuple[str, str, Optional[str], Optional[str], Tuple[str, ...]]:
        if self.options.url:
            return "url_template", self.options.url, None, None, ()

        api_name = _query_value(inbound, API_PARAM)
        if api_name is not None:
            if api_name not in self.options.apis:
                raise ConfigurationError(
                    f"Unknown api {api_name!r}",
                    config_field="apis",
                    provided_value=api_name
                )
            sub_path = _query_value(inbound, PATH_PARAM)
            url = _join(self.options.apis[api_name].base_url, sub_path)
            return "api", _validate_url(url), sub_path, api_name, (API_PARAM, PATH_PARAM)

        url = _query_value(inbound, URL_PARAM)
        if url is not None:
            return "url", _validate_url(url), None, None, (URL_PARAM,)

        raise ConfigurationError("No url parameter passed to the proxy", config_field="url")

    def _base_values(self) -> Dict[str, Any]:
        options = self.options
        return {
            "url": None,
            "method": options.method,
            "timeout": options.timeout,
            "max_redirects": options.max_redirects,
            "follow_redirects": options.follow_redirects,
            "user_agent": options.user_agent,
            "proxy": options.proxy,
            "cache": options.cache,
            "cache_max_age": options.cache_max_age,
            "cache_key_fn": options.cache_key_fn,
            "cache_http_header": options.cache_http_header,
            "headers": dict(options.headers),
            "query": dict(options.query),
            "body": dict(options.body),
            "params": dict(options.params),
            "transforms": list(options.transforms),
            "ensure_authenticated": options.ensure_authenticated,
            "original_query": options.original_query,
            "buffer_error_body": options.buffer_error_body,
            "env_token_start": options.env_token_start,
            "env_token_end": options.env_token_end,
            "env_variable_lookup": options.env_variable_lookup,
            "disconnect_poll_interval": options.disconnect_poll_interval,
        }

    def _apply(self, values: Dict[str, Any], overlay: OverlayOptions) -> None:
        for name, value in overlay.overrides().items():
            if name in MAPPING_FIELDS and value is not None:
                values[name] = {**values[name], **value}
            elif value is not None:
                values[name] = value

    def _apply_limits(self, values: Dict[str, Any]) -> None:
        limits = self.limits
        if limits is None:
            return
        if limits.timeout is not None and values["timeout"] > limits.timeout:
            logger.debug("Clamping timeout to platform ceiling", extra={"timeout": values["timeout"], "ceiling": limits.timeout})
            values["timeout"] = limits.timeout
        if limits.max_redirects is not None and values["max_redirects"] > limits.max_redirects:
            values["max_redirects"] = limits.max_redirects
        if limits.cache_max_age is not None and values["cache_max_age"] > limits.cache_max_age:
            raise ConfigurationError(
                f"Cache max age {values['cache_max_age']} exceeds the platform maximum of {limits.cache_max_age} seconds",
                config_field="cache_max_age",
                provided_value=values["cache_max_age"]
            )
