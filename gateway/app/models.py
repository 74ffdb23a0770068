"""
Data Models Module

This module defines the routing data model shared by the configuration
loader and the proxy engine:

- EgressKind / EgressConfig: how outbound connections leave the gateway
- Route: a path prefix bound to a backend base URL
- RouteTable: the immutable prefix -> Route mapping built at startup
- GatewayConfig: everything the running service needs, built once

All of these are immutable once constructed. Request handlers only ever
read them, so no locking is needed for routing decisions.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Iterator, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ============================================================================
# Egress Models
# ============================================================================

class EgressKind(str, Enum):
    """Closed set of ways an outbound request can leave the gateway."""

    DIRECT = "direct"
    HTTP = "http"
    SOCKS5 = "socks5"


SOCKS5_SCHEMES = ("socks5", "socks5h")


def parse_http_proxy_address(address: str) -> str:
    """
    Validate an HTTP proxy address.

    The address must be an absolute http(s) URI such as
    ``http://proxy.internal:3128``.

    Raises:
        ValueError: If the address is not an absolute http(s) URI
    """
    parsed = urlsplit(address)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValueError(
            f"HTTP proxy address must be an absolute http(s) URI, got: {address!r}"
        )
    try:
        parsed.port
    except ValueError as e:
        raise ValueError(f"Invalid port in HTTP proxy address {address!r}: {e}") from e
    return address


def parse_socks5_address(address: str) -> Tuple[str, int]:
    """
    Parse a SOCKS5 proxy address into ``(host, port)``.

    Accepts ``host:port``, ``[v6addr]:port`` or the same with a
    ``socks5://`` scheme in front.

    Raises:
        ValueError: If host or port cannot be parsed
    """
    raw = address.strip()
    if "://" in raw:
        scheme, _, raw = raw.partition("://")
        if scheme.lower() not in SOCKS5_SCHEMES:
            raise ValueError(
                f"SOCKS5 proxy address has unsupported scheme {scheme!r}: {address!r}"
            )

    parsed = urlsplit("//" + raw)
    try:
        port = parsed.port
    except ValueError as e:
        raise ValueError(f"Invalid port in SOCKS5 proxy address {address!r}: {e}") from e

    if not parsed.hostname or not port or parsed.username or parsed.path or parsed.query:
        raise ValueError(
            f"SOCKS5 proxy address must look like host:port, got: {address!r}"
        )
    return parsed.hostname, port


class EgressConfig(BaseModel):
    """
    Outbound path used to reach a backend.

    Attributes:
        kind: Direct, HTTP proxy or SOCKS5 proxy
        address: Proxy endpoint; empty for direct egress
    """

    model_config = ConfigDict(frozen=True)

    kind: EgressKind
    address: str = ""

    @model_validator(mode="after")
    def validate_address(self) -> "EgressConfig":
        if self.kind is EgressKind.HTTP:
            parse_http_proxy_address(self.address)
        elif self.kind is EgressKind.SOCKS5:
            parse_socks5_address(self.address)
        return self

    @classmethod
    def direct(cls) -> "EgressConfig":
        return DIRECT_EGRESS

    @property
    def is_direct(self) -> bool:
        return self.kind is EgressKind.DIRECT

    @property
    def key(self) -> Tuple[EgressKind, str]:
        """Cache key for transports built from this config."""
        return (self.kind, self.address)

    @property
    def display_address(self) -> str:
        """Address safe to log. HTTP proxy credentials are dropped."""
        if self.kind is EgressKind.HTTP:
            try:
                url = httpx.URL(self.address).copy_with(username=None, password=None)
            except httpx.InvalidURL:
                return ""
            return str(url)
        # SOCKS5 addresses never carry userinfo.
        return self.address


DIRECT_EGRESS = EgressConfig(kind=EgressKind.DIRECT)


# ============================================================================
# Routing Models
# ============================================================================

class Route(BaseModel):
    """A path prefix bound to a backend base URL and optional egress."""

    model_config = ConfigDict(frozen=True)

    prefix: str = Field(..., min_length=1, description="Path prefix this route matches")
    target_base_url: str = Field(
        ...,
        min_length=1,
        description="Backend base URL; the path remainder is appended verbatim",
    )
    egress: Optional[EgressConfig] = Field(
        default=None,
        description="Route-level egress; falls back to the global egress when absent",
    )


class RouteTable(Mapping):
    """
    Read-only mapping of prefix -> Route.

    Built once from configuration and never mutated afterwards.
    """

    def __init__(self, routes: Iterable[Route] = ()):
        table = {}
        for route in routes:
            if route.prefix in table:
                raise ValueError(f"Duplicate route prefix: {route.prefix!r}")
            table[route.prefix] = route
        self._routes = MappingProxyType(table)

    def __getitem__(self, prefix: str) -> Route:
        return self._routes[prefix]

    def __iter__(self) -> Iterator[str]:
        return iter(self._routes)

    def __len__(self) -> int:
        return len(self._routes)

    def __repr__(self) -> str:
        return f"RouteTable({sorted(self._routes)!r})"

    @property
    def prefixes(self) -> Tuple[str, ...]:
        return tuple(sorted(self._routes))


@dataclass(frozen=True)
class GatewayConfig:
    """
    Validated gateway configuration.

    Constructed once at startup and handed to the application factory;
    every request handler reads it through ``app.state``.
    """

    listen_port: int
    routes: RouteTable
    global_egress: Optional[EgressConfig] = None
