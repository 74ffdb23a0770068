"""
Egress Selection and Transports
===============================

Decides how a request leaves the gateway and builds the httpx transport
for it.

Precedence:
-----------
route egress > global egress > direct

Transports:
-----------
- direct: plain ``httpx.AsyncHTTPTransport``
- http:   forward proxy for http targets, CONNECT tunnel for https targets
- socks5: anonymous SOCKS5 (httpx ``socks`` extra). Dials run in the
          request's own task, so cancelling the request aborts the dial.

One ``httpx.AsyncClient`` is cached per distinct egress so requests that
share an egress also share its connection pool.
"""

import logging
import threading
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Callable, Dict, Optional, Tuple

import httpx

from ..exceptions import TransportConstructionError
from ..models import (
    EgressConfig,
    EgressKind,
    Route,
    parse_http_proxy_address,
    parse_socks5_address,
)

logger = logging.getLogger(__name__)

TransportBuilder = Callable[[EgressConfig], httpx.AsyncBaseTransport]


def resolve_egress(route: Route, global_egress: Optional[EgressConfig]) -> EgressConfig:
    """Effective egress for a route. Pure: no I/O, no probing."""
    if route.egress is not None:
        return route.egress
    if global_egress is not None:
        return global_egress
    return EgressConfig.direct()


class TransportFactory:
    """Builds an httpx transport for each egress kind."""

    def build(self, egress: EgressConfig) -> httpx.AsyncBaseTransport:
        if egress.kind is EgressKind.DIRECT:
            return httpx.AsyncHTTPTransport()

        if egress.kind is EgressKind.HTTP:
            return httpx.AsyncHTTPTransport(proxy=httpx.Proxy(self.http_proxy_url(egress)))

        if egress.kind is EgressKind.SOCKS5:
            return httpx.AsyncHTTPTransport(proxy=httpx.Proxy(self.socks5_proxy_url(egress)))

        # Unreachable once configuration is validated; reaching it is a bug.
        logger.error(
            "Unsupported egress kind reached transport construction",
            extra={"egress_kind": str(egress.kind), "egress_address": egress.display_address},
        )
        raise TransportConstructionError(f"Unsupported egress kind: {egress.kind!r}")

    @staticmethod
    def http_proxy_url(egress: EgressConfig) -> str:
        try:
            return parse_http_proxy_address(egress.address)
        except ValueError as e:
            raise TransportConstructionError(str(e)) from e

    @staticmethod
    def socks5_proxy_url(egress: EgressConfig) -> str:
        try:
            host, port = parse_socks5_address(egress.address)
        except ValueError as e:
            raise TransportConstructionError(str(e)) from e
        if ":" in host:
            host = f"[{host}]"
        return f"socks5://{host}:{port}"


class ClientPool:
    """
    Cache of ``httpx.AsyncClient`` instances keyed by egress.

    The lock only guards dict access. Construction happens outside it;
    when two requests race to build the same client, the first insert
    wins and the other candidate is dropped before it ever connects.
    """

    def __init__(
        self,
        transport_builder: Optional[TransportBuilder] = None,
        timeout: Optional[float] = None,
    ):
        self._build_transport = transport_builder or TransportFactory().build
        self._timeout = httpx.Timeout(timeout)
        self._clients: Dict[Tuple[EgressKind, str], httpx.AsyncClient] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def get(self, egress: EgressConfig) -> httpx.AsyncClient:
        """
        Return the shared client for ``egress``, building it on first use.

        Raises:
            TransportConstructionError: If the transport cannot be built
        """
        key = egress.key
        with self._lock:
            client = self._clients.get(key)
        if client is not None:
            return client

        candidate = self._create_client(egress)
        with self._lock:
            client = self._clients.setdefault(key, candidate)

        if client is candidate:
            logger.info(
                "Created upstream client",
                extra={"egress_kind": egress.kind.value, "egress_address": egress.display_address},
            )
        return client

    def _create_client(self, egress: EgressConfig) -> httpx.AsyncClient:
        transport = self._build_transport(egress)
        return httpx.AsyncClient(
            transport=transport,
            timeout=self._timeout,
            follow_redirects=False,
            trust_env=False,
            # Shared between all callers: never keep backend cookies.
            cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
        )

    async def aclose(self) -> None:
        """Close every cached client. Called on application shutdown."""
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()

        for client in clients:
            try:
                await client.aclose()
            except Exception as e:
                logger.error(f"Error closing upstream client: {e}")
