"""
Proxy Routes - Prefix Routed Forwarding
=======================================

Catch-all router that sends every path not served by the application
itself through the prefix matcher and on to the matched backend.

Endpoints:
----------
- ANY /{path}: forward to the backend owning the longest matching prefix
"""

import logging
from typing import Awaitable, Callable

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import Response
from starlette.types import Receive, Scope, Send

from ..exceptions import RouteNotFound
from .forwarder import RequestForwarder
from .matcher import PrefixMatcher

logger = logging.getLogger(__name__)

RequestHandler = Callable[[Request], Awaitable[Response]]


class AnyMethodEndpoint:
    """
    ASGI endpoint around a ``request -> response`` handler.

    Starlette limits plain function endpoints to GET unless given a method
    list. An ASGI endpoint registered without one matches every method,
    including extension methods such as PROPFIND or PURGE.
    """

    def __init__(self, handler: RequestHandler):
        self.handler = handler

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive, send)
        response = await self.handler(request)
        await response(scope, receive, send)


# ============================================================================
# State Accessors
# ============================================================================

def get_matcher(request: Request) -> PrefixMatcher:
    matcher = getattr(request.app.state, "matcher", None)
    if matcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Route table not initialized",
        )
    return matcher


def get_forwarder(request: Request) -> RequestForwarder:
    forwarder = getattr(request.app.state, "forwarder", None)
    if forwarder is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Forwarder not initialized",
        )
    return forwarder


# ============================================================================
# Proxy Endpoints
# ============================================================================

async def proxy_request(request: Request) -> Response:
    """Forward the request to the backend owning the longest matching prefix."""
    matcher = get_matcher(request)
    forwarder = get_forwarder(request)
    logger.info(f"Incoming request: {request.method} {request.url.path}")

    match = matcher.match(request.url.path)
    if match is None:
        logger.info("No route for path", extra={"path": request.url.path})
        raise RouteNotFound(f"No route matches {request.url.path!r}")

    return await forwarder.forward(request, match)


proxy_router = APIRouter()
proxy_router.add_route("/{path:path}", AnyMethodEndpoint(proxy_request), include_in_schema=False)
