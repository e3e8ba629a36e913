"""Test configuration and settings."""

import pytest
from pydantic import ValidationError

from api_proxy.core.config import Settings
from api_proxy.core.options import PlatformLimits


class TestSettings:
    """Test configuration settings."""

    def test_default_settings(self):
        """Test that default settings are loaded correctly."""
        settings = Settings(_env_file=None)

        assert settings.HOST == "127.0.0.1"
        assert settings.PORT == 8000
        assert settings.DEBUG is False
        assert settings.LOG_LEVEL == "INFO"
        assert settings.LOG_FORMAT == "json"
        assert settings.PROXY_CONFIG_FILE == "config/proxy.yaml"
        assert settings.PROXY_MOUNT_PATH == "/proxy"
        assert settings.CACHE_BACKEND == "memory"
        assert settings.get_platform_limits() is None

    def test_settings_from_env(self, monkeypatch):
        """Test that settings can be loaded from environment variables."""
        monkeypatch.setenv("HOST", "0.0.0.0")
        monkeypatch.setenv("PORT", "9000")
        monkeypatch.setenv("DEBUG", "true")
        monkeypatch.setenv("PROXY_MOUNT_PATH", "/api/proxy/")
        monkeypatch.setenv("CACHE_BACKEND", "none")

        settings = Settings(_env_file=None)

        assert settings.HOST == "0.0.0.0"
        assert settings.PORT == 9000
        assert settings.DEBUG is True
        assert settings.PROXY_MOUNT_PATH == "/api/proxy"
        assert settings.CACHE_BACKEND == "none"

    def test_log_level_normalized(self):
        assert Settings(_env_file=None, LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"

    @pytest.mark.parametrize("field,value", [
        ("LOG_LEVEL", "verbose"),
        ("LOG_FORMAT", "xml"),
        ("PROXY_MOUNT_PATH", "proxy"),
        ("CACHE_BACKEND", "redis"),
        ("PLATFORM_MAX_TIMEOUT", -1),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})

    def test_platform_limits(self, monkeypatch):
        monkeypatch.setenv("PLATFORM_MAX_TIMEOUT", "3000")
        monkeypatch.setenv("PLATFORM_MAX_CACHE_AGE", "600")

        limits = Settings(_env_file=None).get_platform_limits()

        assert limits == PlatformLimits(timeout=3000, cache_max_age=600)
        assert limits.max_redirects is None
