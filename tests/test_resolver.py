"""Tests for per-request configuration resolution."""

import pytest
from pydantic import ValidationError

from api_proxy.cache import MemoryCache
from api_proxy.core.exceptions import ConfigurationError
from api_proxy.core.inbound import InboundRequest
from api_proxy.core.options import (
    ApiProfile,
    EndpointOverlay,
    PlatformLimits,
    ProxyOptions,
    environment_lookup,
)
from api_proxy.core.resolver import ConfigurationResolver


def inbound(query=None, method="GET"):
    return InboundRequest(method=method, path="/proxy", query=query or {})


class TestTargetSelection:
    """Test how the upstream URL is located."""

    def test_defaults(self):
        config = ConfigurationResolver(ProxyOptions()).resolve(inbound({"url": "http://api.test/a"}))

        assert config.url == "http://api.test/a"
        assert config.selection == "url"
        assert config.method is None
        assert config.timeout == 5000
        assert config.max_redirects == 5
        assert config.user_agent == "api-proxy"
        assert config.cache is None
        assert config.cache_max_age == 0
        assert config.cache_http_header == "Api-Proxy-Cache"
        assert config.env_variable_lookup is environment_lookup
        assert config.selection_keys == ("url",)
        assert config.cache_active is False

    def test_configured_url_is_a_template(self):
        options = ProxyOptions(url="http://api.test/users/:id")
        config = ConfigurationResolver(options).resolve(inbound({"url": "http://other.test"}))

        assert config.url == "http://api.test/users/:id"
        assert config.url_is_template is True
        assert config.selection_keys == ()

    def test_api_profile_with_sub_path(self):
        options = ProxyOptions(apis={"weather": ApiProfile(base_url="http://weather.test/v2/")})
        config = ConfigurationResolver(options).resolve(inbound({"api": "weather", "path": "/forecast"}))

        assert config.url == "http://weather.test/v2/forecast"
        assert config.selection == "api"
        assert config.sub_path == "/forecast"
        assert config.selection_keys == ("api", "path")

    def test_api_profile_without_sub_path(self):
        options = ProxyOptions(apis={"weather": ApiProfile(base_url="http://weather.test/v2")})
        config = ConfigurationResolver(options).resolve(inbound({"api": "weather"}))
        assert config.url == "http://weather.test/v2"

    def test_unknown_api_profile(self):
        with pytest.raises(ConfigurationError, match="Unknown api"):
            ConfigurationResolver(ProxyOptions()).resolve(inbound({"api": "missing"}))

    def test_missing_target(self):
        with pytest.raises(ConfigurationError, match="No url parameter passed to the proxy"):
            ConfigurationResolver(ProxyOptions()).resolve(inbound())

    @pytest.mark.parametrize("url", ["ftp://files.test/a", "/relative/path", "http://"])
    def test_invalid_url(self, url):
        with pytest.raises(ConfigurationError):
            ConfigurationResolver(ProxyOptions()).resolve(inbound({"url": url}))

    def test_first_of_repeated_url_parameter(self):
        config = ConfigurationResolver(ProxyOptions()).resolve(
            inbound({"url": ["http://one.test", "http://two.test"]})
        )
        assert config.url == "http://one.test"


class TestOverlays:
    """Test overlay layering and first-match semantics."""

    def test_first_matching_endpoint_wins(self):
        options = ProxyOptions(
            headers={"x-global": "g", "x-shared": "global"},
            endpoints=[
                EndpointOverlay(pattern=r"/users", timeout=100, headers={"x-shared": "users"}),
                EndpointOverlay(pattern=r"api\.test", timeout=200, user_agent="second"),
            ],
        )
        config = ConfigurationResolver(options).resolve(inbound({"url": "http://api.test/users/1"}))

        assert config.timeout == 100
        assert config.user_agent == "api-proxy"
        assert config.headers == {"x-global": "g", "x-shared": "users"}

    def test_no_matching_endpoint_keeps_globals(self):
        options = ProxyOptions(endpoints=[EndpointOverlay(pattern="nomatch", timeout=1)])
        config = ConfigurationResolver(options).resolve(inbound({"url": "http://api.test/"}))
        assert config.timeout == 5000

    def test_unset_overlay_fields_inherit(self):
        options = ProxyOptions(
            follow_redirects=False,
            endpoints=[EndpointOverlay(pattern="api", method="post")],
        )
        config = ConfigurationResolver(options).resolve(inbound({"url": "http://api.test/"}))

        assert config.method == "POST"
        assert config.follow_redirects is False

    def test_overlay_order(self):
        options = ProxyOptions(
            query={"level": "global", "g": "1"},
            endpoints=[EndpointOverlay(pattern="weather", query={"level": "endpoint"}, timeout=300)],
            apis={
                "weather": ApiProfile(
                    base_url="http://weather.test",
                    query={"level": "profile", "p": "1"},
                    timeout=400,
                    max_redirects=1,
                    endpoints=[EndpointOverlay(pattern="^/alerts", query={"level": "api-endpoint"}, timeout=500)],
                )
            },
        )
        resolver = ConfigurationResolver(options)

        alerts = resolver.resolve(inbound({"api": "weather", "path": "/alerts/today"}))
        assert alerts.query == {"level": "api-endpoint", "g": "1", "p": "1"}
        assert alerts.timeout == 500
        assert alerts.max_redirects == 1

        forecast = resolver.resolve(inbound({"api": "weather", "path": "/forecast"}))
        assert forecast.query == {"level": "endpoint", "g": "1", "p": "1"}
        assert forecast.timeout == 300

    def test_global_options_are_not_mutated(self):
        options = ProxyOptions(
            headers={"a": "1"},
            endpoints=[EndpointOverlay(pattern="api", headers={"b": "2"})],
        )
        resolver = ConfigurationResolver(options)
        resolver.resolve(inbound({"url": "http://api.test"}))

        assert options.headers == {"a": "1"}
        with pytest.raises(ValidationError):
            options.timeout = 1

    def test_malformed_pattern_rejected(self):
        with pytest.raises(ValidationError, match="Invalid endpoint pattern"):
            EndpointOverlay(pattern="(unclosed")


class TestPlatformLimits:
    """Test platform ceilings."""

    def test_timeout_and_redirects_are_clamped(self):
        options = ProxyOptions(timeout=10000, max_redirects=10)
        limits = PlatformLimits(timeout=3000, max_redirects=2)
        config = ConfigurationResolver(options, limits=limits).resolve(inbound({"url": "http://api.test"}))

        assert config.timeout == 3000
        assert config.max_redirects == 2
        assert config.limits == limits

    def test_values_below_ceiling_are_kept(self):
        options = ProxyOptions(timeout=1000, max_redirects=1)
        limits = PlatformLimits(timeout=3000, max_redirects=2)
        config = ConfigurationResolver(options, limits=limits).resolve(inbound({"url": "http://api.test"}))

        assert config.timeout == 1000
        assert config.max_redirects == 1

    def test_default_timeout_is_clamped(self):
        limits = PlatformLimits(timeout=2000)
        config = ConfigurationResolver(ProxyOptions(), limits=limits).resolve(inbound({"url": "http://api.test"}))
        assert config.timeout == 2000

    def test_cache_max_age_above_ceiling_is_an_error(self):
        options = ProxyOptions(cache_max_age=600)
        limits = PlatformLimits(cache_max_age=300)
        with pytest.raises(ConfigurationError, match="exceeds the platform maximum"):
            ConfigurationResolver(options, limits=limits).resolve(inbound({"url": "http://api.test"}))


class TestCacheSelection:
    """Test cache provider selection."""

    def test_default_cache_used_when_unset(self):
        default = MemoryCache()
        options = ProxyOptions(cache_max_age=10)
        config = ConfigurationResolver(options, default_cache=default).resolve(inbound({"url": "http://api.test"}))

        assert config.cache is default
        assert config.cache_active is True

    def test_cache_false_disables_default(self):
        options = ProxyOptions(cache=False, cache_max_age=10)
        config = ConfigurationResolver(options, default_cache=MemoryCache()).resolve(inbound({"url": "http://api.test"}))

        assert config.cache is None
        assert config.cache_active is False

    def test_memory_string_creates_dedicated_cache(self):
        options = ProxyOptions(cache="memory", cache_max_age=10)
        default = MemoryCache()
        config = ConfigurationResolver(options, default_cache=default).resolve(inbound({"url": "http://api.test"}))

        assert isinstance(config.cache, MemoryCache)
        assert config.cache is not default
        assert config.cache is options.cache

    def test_zero_max_age_is_inactive(self):
        config = ConfigurationResolver(ProxyOptions(), default_cache=MemoryCache()).resolve(
            inbound({"url": "http://api.test"})
        )
        assert config.cache is not None
        assert config.cache_active is False

    def test_cache_key(self):
        options = ProxyOptions(cache_key_fn=lambda request, url: f"{request.method}:{url}")
        config = ConfigurationResolver(options).resolve(inbound({"url": "http://api.test"}))
        assert config.cache_key(inbound(), "http://api.test/x") == "GET:http://api.test/x"

        default = ConfigurationResolver(ProxyOptions()).resolve(inbound({"url": "http://api.test"}))
        assert default.cache_key(inbound(), "http://api.test/x") == "http://api.test/x"
