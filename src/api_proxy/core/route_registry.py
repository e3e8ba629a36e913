"""
API Proxy Route Registry
Loads global proxy options and route-bound proxies from the YAML configuration file
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator

from .options import OverlayOptions, ProxyOptions

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")


class RouteConfig(OverlayOptions):
    """A proxy bound to a fixed route; unset options inherit from the global section"""

    path: str = Field(..., min_length=1, description="Route path, FastAPI syntax ({name}, {wildcard:path})")
    methods: List[str] = Field(default_factory=lambda: ["GET"], description="HTTP methods served")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v):
        if not v.startswith("/"):
            raise ValueError("Route path must start with '/'")
        return v

    @field_validator("methods")
    @classmethod
    def validate_methods(cls, v):
        methods = [method.upper() for method in v]
        invalid = [method for method in methods if method not in HTTP_METHODS]
        if invalid:
            raise ValueError(f"Unsupported HTTP methods: {invalid}")
        if not methods:
            raise ValueError("At least one HTTP method is required")
        return methods


class RouteRegistry:
    """Registry of the proxy options and routes declared in the configuration file"""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path or "config/proxy.yaml")
        self.options = ProxyOptions()
        self.routes: List[RouteConfig] = []

    def load(self) -> None:
        """
        Load proxy options and routes from the configuration file

        A missing file leaves the defaults in place. An invalid ``proxy``
        section falls back to the defaults and invalid routes are skipped.

        Raises:
            yaml.YAMLError: If YAML is malformed
        """
        if not self.config_path.exists():
            logger.warning(f"Proxy config file not found: {self.config_path}")
            logger.info("Using default proxy configuration")
            return

        logger.info(f"Loading proxy configuration from {self.config_path}")

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"YAML parsing error in {self.config_path}: {e}")
            raise

        if not config_data:
            logger.warning("Empty configuration file")
            return

        self._load_options(config_data.get('proxy'))
        self._load_routes(config_data.get('routes'))

    def _load_options(self, data: Optional[Dict[str, Any]]) -> None:
        if data is None:
            logger.info("No proxy section found in configuration, using defaults")
            return

        try:
            self.options = ProxyOptions(**data)
            logger.info(
                "Loaded proxy configuration",
                extra={
                    "apis": list(self.options.apis),
                    "endpoints": len(self.options.endpoints),
                    "cache_max_age": self.options.cache_max_age,
                    "timeout_ms": self.options.timeout
                }
            )
        except Exception as e:
            logger.error(f"Invalid proxy configuration: {e}")
            logger.info("Using default proxy configuration")
            self.options = ProxyOptions()

    def _load_routes(self, data: Optional[List[Dict[str, Any]]]) -> None:
        if not data:
            logger.info("No routes section found in configuration")
            return

        loaded_count = 0
        for index, route_config in enumerate(data):
            try:
                route = RouteConfig(**route_config)
                # Surface option errors now rather than on the first request
                self.options.with_overrides(route)
            except Exception as e:
                logger.error(f"Failed to load route #{index}: {e}")
                continue

            self.routes.append(route)
            loaded_count += 1
            logger.info(
                f"Loaded route: {route.path}",
                extra={
                    "path": route.path,
                    "methods": route.methods,
                    "url": route.url
                }
            )

        logger.info(f"Successfully loaded {loaded_count} proxy routes")

    def options_for(self, route: RouteConfig) -> ProxyOptions:
        """Global options with the route's overrides applied"""
        return self.options.with_overrides(route)
