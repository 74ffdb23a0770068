"""
Proxy Package
=============

Routing-and-forwarding engine of the gateway.

Main Components:
----------------
- matcher.py: longest-prefix route resolution
- egress.py: egress precedence, transport construction, client cache
- headers.py: hop-by-hop stripping and the security header policy
- forwarder.py: upstream request construction and response streaming
- routes.py: FastAPI catch-all router

Usage:
------
    from gateway.app.proxy.routes import proxy_router
    app.include_router(proxy_router)
"""

from .routes import proxy_router

__all__ = ["proxy_router"]
