"""Main entry point for the API Proxy application."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from api_proxy.api.routes import mount_proxy, router
from api_proxy.cache import CacheConfig, CacheProvider, create_cache_provider
from api_proxy.core.config import Settings, get_settings
from api_proxy.core.exceptions import ProxyError, UpstreamResponseError
from api_proxy.core.logging import get_logger, setup_logging
from api_proxy.core.options import ProxyOptions
from api_proxy.core.proxy import ForwardingProxy
from api_proxy.core.route_registry import RouteConfig, RouteRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan management
    Handles startup and shutdown procedures
    """
    settings = app.state.settings
    logger.info("Starting API Proxy...")
    logger.info(
        "Proxy configuration",
        extra={
            "host": settings.HOST,
            "port": settings.PORT,
            "debug": settings.DEBUG,
            "log_level": settings.LOG_LEVEL,
            "proxy_config_file": settings.PROXY_CONFIG_FILE,
            "proxy_mount_path": settings.PROXY_MOUNT_PATH,
            "cache_backend": settings.CACHE_BACKEND
        }
    )

    yield

    logger.info("Shutting down API Proxy...")


async def proxy_exception_handler(request: Request, exc: ProxyError):
    """Render proxy errors with their own status code"""
    status_code = exc.get_http_status_code()

    if exc.is_client_error or isinstance(exc, UpstreamResponseError):
        logger.warning(
            "Proxy request failed",
            extra={
                "url": str(request.url),
                "method": request.method,
                "status_code": status_code,
                "error": exc.error_code,
                "detail": exc.message
            }
        )
        detail = exc.message
    else:
        logger.error(
            "Proxy request failed",
            extra={
                "url": str(request.url),
                "method": request.method,
                "status_code": status_code,
                "error_details": exc.to_dict()
            },
            exc_info=exc
        )
        detail = "Internal server error occurred"

    return JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "error": exc.error_code
        }
    )


async def general_exception_handler(request: Request, exc: Exception):
    """General exception handler for unhandled errors"""
    logger.error(
        "Unhandled exception",
        extra={
            "url": str(request.url),
            "method": request.method,
            "error": str(exc)
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error occurred"
        }
    )


def create_app(
    settings: Optional[Settings] = None,
    options: Optional[ProxyOptions] = None,
    routes: Optional[List[RouteConfig]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    cache: Optional[CacheProvider] = None
) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        settings: Application settings (defaults to the environment)
        options: Global proxy options; loaded from PROXY_CONFIG_FILE when omitted
        routes: Route-bound proxies; loaded from PROXY_CONFIG_FILE when omitted
        transport: httpx transport used for upstream calls (tests inject a mock)
        cache: Default cache provider; created from CACHE_BACKEND when omitted
    """
    settings = settings or get_settings()

    if options is None or routes is None:
        registry = RouteRegistry(Path(settings.PROXY_CONFIG_FILE))
        registry.load()
        if options is None:
            options = registry.options
        if routes is None:
            routes = registry.routes

    if cache is None:
        cache = create_cache_provider(CacheConfig(backend=settings.CACHE_BACKEND))
    limits = settings.get_platform_limits()

    app = FastAPI(
        title="API Proxy",
        description="HTTP forwarding proxy with request rewriting and response caching",
        version="0.1.0",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
        openapi_tags=[
            {
                "name": "health",
                "description": "Health check and system status"
            },
            {
                "name": "proxy",
                "description": "Request proxying to upstream APIs"
            }
        ]
    )
    app.state.settings = settings

    # Add security middleware
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=settings.allowed_hosts
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[options.cache_http_header]
    )

    # Add custom exception handlers
    app.add_exception_handler(ProxyError, proxy_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(router)

    for route in routes:
        mount_proxy(
            app,
            route.path,
            ForwardingProxy(options.with_overrides(route), limits=limits, default_cache=cache, transport=transport),
            methods=route.methods
        )

    # Generic proxy, target selected with the url or api query parameters
    mount_proxy(
        app,
        settings.PROXY_MOUNT_PATH,
        ForwardingProxy(options, limits=limits, default_cache=cache, transport=transport),
        name="proxy"
    )

    return app


def main() -> None:
    """Main entry point for the application."""
    settings = get_settings()
    setup_logging(settings)
    log = get_logger(__name__)

    log.info("Starting API Proxy", host=settings.HOST, port=settings.PORT)

    uvicorn.run(
        create_app(settings),
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
