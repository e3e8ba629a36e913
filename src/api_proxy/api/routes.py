"""
API Proxy HTTP Routes
Health endpoint plus the endpoints that hand inbound requests to a ForwardingProxy
"""
import logging
from typing import Callable, Awaitable, Iterable, Optional

from fastapi import APIRouter, FastAPI, Request, Response

from api_proxy.core.config import get_settings
from api_proxy.core.inbound import InboundRequest
from api_proxy.core.proxy import ForwardingProxy

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

# Create API router
router = APIRouter()


@router.get("/health",
           tags=["health"],
           summary="Health Check",
           description="Check if the proxy is running and healthy")
async def health_check():
    """Health check endpoint with basic system information"""
    settings = get_settings()
    return {
        "status": "healthy",
        "service": "api-proxy",
        "version": "0.1.0",
        "environment": "development" if settings.DEBUG else "production"
    }


def proxy_endpoint(proxy: ForwardingProxy) -> Callable[[Request], Awaitable[Response]]:
    """Build a route handler forwarding every request through ``proxy``"""

    async def forward(request: Request) -> Response:
        inbound = await InboundRequest.from_request(request)
        logger.debug(
            "Forwarding inbound request",
            extra={
                "method": inbound.method,
                "path": inbound.path,
                "client_ip": inbound.client_ip
            }
        )
        return await proxy.handle(inbound)

    return forward


def mount_proxy(app: FastAPI, path: str, proxy: ForwardingProxy,
                methods: Optional[Iterable[str]] = None, name: Optional[str] = None) -> None:
    """
    Register ``proxy`` on ``app`` at ``path``

    Path parameters declared on the route (``{name}``) become template
    parameters; a ``{wildcard:path}`` parameter fills the ``*`` segment.
    """
    methods = list(methods or PROXY_METHODS)
    app.add_api_route(
        path,
        proxy_endpoint(proxy),
        methods=methods,
        name=name or f"proxy:{path}",
        tags=["proxy"],
        include_in_schema=False
    )
    logger.info("Mounted proxy route", extra={"path": path, "methods": methods})
