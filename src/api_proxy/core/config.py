"""Configuration management for the API proxy."""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Server configuration
    HOST: str = Field(default="127.0.0.1", description="Server host")
    PORT: int = Field(default=8000, description="Server port")
    DEBUG: bool = Field(default=False, description="Debug mode")

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: str = Field(default="json", description="Logging format: json or text")

    # Security settings
    ALLOWED_HOSTS: list[str] = Field(default_factory=lambda: ["*"], description="Allowed hosts for TrustedHostMiddleware")
    CORS_ORIGINS: list[str] = Field(default_factory=lambda: ["*"], description="CORS allowed origins")

    # Proxy configuration
    PROXY_CONFIG_FILE: str = Field(
        default="config/proxy.yaml",
        description="Path to the proxy options and routes file"
    )
    PROXY_MOUNT_PATH: str = Field(default="/proxy", description="Path of the generic proxy endpoint")

    # Cache configuration
    CACHE_BACKEND: str = Field(default="memory", pattern="^(memory|none)$", description="Default cache backend")

    # Platform ceilings; unset means no ceiling
    PLATFORM_MAX_TIMEOUT: Optional[int] = Field(default=None, ge=0, description="Maximum upstream timeout in milliseconds")
    PLATFORM_MAX_REDIRECTS: Optional[int] = Field(default=None, ge=0, description="Maximum upstream redirects")
    PLATFORM_MAX_CACHE_AGE: Optional[int] = Field(default=None, ge=0, description="Maximum cache max-age in seconds")

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator('LOG_FORMAT')
    @classmethod
    def validate_log_format(cls, v):
        """Validate log format"""
        valid_formats = ['json', 'text']
        if v.lower() not in valid_formats:
            raise ValueError(f"Log format must be one of {valid_formats}")
        return v.lower()

    @field_validator('PROXY_MOUNT_PATH')
    @classmethod
    def validate_mount_path(cls, v):
        if not v.startswith('/'):
            raise ValueError("Proxy mount path must start with '/'")
        return v.rstrip('/') or '/'

    def get_platform_limits(self):
        """Create PlatformLimits from settings, or None when no ceiling is set."""
        if (self.PLATFORM_MAX_TIMEOUT is None and self.PLATFORM_MAX_REDIRECTS is None
                and self.PLATFORM_MAX_CACHE_AGE is None):
            return None

        from api_proxy.core.options import PlatformLimits

        return PlatformLimits(
            timeout=self.PLATFORM_MAX_TIMEOUT,
            max_redirects=self.PLATFORM_MAX_REDIRECTS,
            cache_max_age=self.PLATFORM_MAX_CACHE_AGE
        )

    @property
    def allowed_hosts(self) -> list[str]:
        """Get allowed hosts for TrustedHostMiddleware."""
        return self.ALLOWED_HOSTS

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS allowed origins."""
        return self.CORS_ORIGINS


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings (for dependency injection)"""
    return settings
