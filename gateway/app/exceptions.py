"""
Gateway error taxonomy.

ConfigurationError is startup-fatal. Every other error is scoped to a
single request: it carries the HTTP status and the public detail text
the exception handler in ``main.py`` answers with. None of them are
retried; the gateway forwards once and reports failure.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for all gateway errors."""

    status_code: int = 500
    detail: str = "Internal Server Error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.detail)


class ConfigurationError(GatewayError):
    """Configuration document is malformed or violates a routing invariant."""


class RouteNotFound(GatewayError):
    status_code = 404
    detail = "Not Found"


class MissingRouteError(GatewayError):
    """A matched prefix has no entry in the live route table."""

    detail = "Configuration error: No mapping for prefix"


class TargetURLError(GatewayError):
    """Target base + remainder + query did not form a usable URL."""


class TransportConstructionError(GatewayError):
    detail = "Internal Server Error - Proxy Configuration"


class UpstreamError(GatewayError):
    """Dial or transfer to the backend failed before a response arrived."""

    status_code = 502
    detail = "Bad Gateway"


class UpstreamTimeout(UpstreamError):
    status_code = 504
    detail = "Gateway Timeout"


class ClientDisconnected(GatewayError):
    """The inbound client went away; nothing more is written to it."""

    status_code = 499
    detail = "Client Closed Request"
