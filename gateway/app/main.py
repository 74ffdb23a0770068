"""
FastAPI Gateway Application Factory
===================================

Entry point for the prefix-routed reverse-proxy gateway.

Architecture:
    Client → Gateway (this service) → [HTTP / SOCKS5 egress proxy] → Backend

Routes:
    - / and /index.html : liveness page ("Service is running!")
    - /robots.txt       : disallow-all robots policy
    - /*                : longest-prefix routed proxying to configured backends

Environment Variables:
    - GATEWAY_CONFIG_FILE: Path to the JSON route document (default: api.json)
    - GATEWAY_HOST: Bind host (default: 0.0.0.0)
    - GATEWAY_PORT: Overrides the document's port
    - UPSTREAM_TIMEOUT_SECONDS: Upstream timeout (default: none)
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    gateway

    With custom log level:
        LOG_LEVEL=DEBUG gateway

    Under uvicorn directly (reads the same environment):
        uvicorn --factory gateway.app.main:create_application --port 8080
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response
from pydantic import ValidationError

from .config import Settings, get_settings, load_gateway_config
from .exceptions import ClientDisconnected, ConfigurationError, GatewayError
from .models import GatewayConfig
from .proxy.egress import ClientPool
from .proxy.forwarder import RequestForwarder
from .proxy.matcher import PrefixMatcher
from .proxy.routes import AnyMethodEndpoint, proxy_router

logger = logging.getLogger("gateway.main")

INDEX_BODY = "Service is running!"
ROBOTS_BODY = "User-agent: *\nDisallow: /"


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup logs the routing summary; shutdown closes every cached
    upstream client so pooled connections are released.
    """
    gateway_config: GatewayConfig = app.state.gateway_config
    logger.info(
        "Gateway started",
        extra={
            "listen_port": gateway_config.listen_port,
            "prefixes": list(gateway_config.routes.prefixes),
            "global_egress": (
                gateway_config.global_egress.kind.value
                if gateway_config.global_egress else "direct"
            ),
        },
    )

    yield

    logger.info("Shutting down gateway")
    await app.state.client_pool.aclose()
    logger.info("Closed upstream clients")


def create_application(
    gateway_config: Optional[GatewayConfig] = None,
    settings: Optional[Settings] = None,
    client_pool: Optional[ClientPool] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        gateway_config: Validated routing configuration. Loaded from
            ``settings.GATEWAY_CONFIG_FILE`` when omitted.
        settings: Runtime settings; defaults to the cached environment settings
        client_pool: Upstream client cache; built from settings when omitted

    Returns:
        FastAPI: Configured application instance

    Raises:
        ConfigurationError: If the route document is invalid
    """
    settings = settings or get_settings()
    if gateway_config is None:
        gateway_config = load_gateway_config(
            settings.GATEWAY_CONFIG_FILE, port_override=settings.GATEWAY_PORT
        )

    # No docs/openapi routes: every path outside the static set belongs to backends.
    app = FastAPI(
        title="Prefix Gateway",
        description="Path-prefix routed reverse proxy",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    if client_pool is None:
        client_pool = ClientPool(timeout=settings.UPSTREAM_TIMEOUT_SECONDS)
    app.state.gateway_config = gateway_config
    app.state.client_pool = client_pool
    app.state.matcher = PrefixMatcher.from_table(gateway_config.routes)
    app.state.forwarder = RequestForwarder(gateway_config, client_pool)

    # Static responses; no security header policy here.
    async def index(request: Request) -> Response:
        logger.info(f"Incoming request: {request.method} {request.url.path}")
        return Response(content=INDEX_BODY, status_code=200, media_type="text/html")

    async def robots(request: Request) -> Response:
        logger.info(f"Incoming request: {request.method} {request.url.path}")
        return PlainTextResponse(ROBOTS_BODY, status_code=200)

    app.add_route("/", AnyMethodEndpoint(index), include_in_schema=False)
    app.add_route("/index.html", AnyMethodEndpoint(index), include_in_schema=False)
    app.add_route("/robots.txt", AnyMethodEndpoint(robots), include_in_schema=False)

    # Proxy router goes last: its catch-all would shadow the static routes.
    app.include_router(proxy_router)

    @app.exception_handler(GatewayError)
    async def gateway_exception_handler(request: Request, exc: GatewayError) -> Response:
        """Map request-level gateway errors onto their HTTP status."""
        if isinstance(exc, ClientDisconnected):
            # The client is gone; the server drops whatever we send.
            return Response(status_code=exc.status_code)
        return PlainTextResponse(exc.detail, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> Response:
        """Log unhandled errors and answer with a bare 500."""
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
            exc_info=True,
        )
        return PlainTextResponse("Internal Server Error", status_code=500)

    return app


def run() -> None:
    """
    Console entry point.

    Configuration errors exit with status 1 before any socket is bound.
    """
    try:
        settings = get_settings()
    except ValidationError as e:
        setup_logging()
        logger.critical(f"Invalid runtime settings: {e}")
        sys.exit(1)

    setup_logging(settings.LOG_LEVEL)

    try:
        gateway_config = load_gateway_config(
            settings.GATEWAY_CONFIG_FILE, port_override=settings.GATEWAY_PORT
        )
    except ConfigurationError as e:
        logger.critical(f"Fatal configuration error: {e}")
        sys.exit(1)

    app = create_application(gateway_config, settings)
    logger.info(f"Server started at :{gateway_config.listen_port}")
    uvicorn.run(
        app,
        host=settings.GATEWAY_HOST,
        port=gateway_config.listen_port,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
