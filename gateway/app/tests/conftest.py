"""
Shared fixtures for gateway tests.

Upstreams are simulated in-process with ``httpx.MockTransport``: the
transport builder handed to ``ClientPool`` records which egress each
client was built for and routes every request to ``MockUpstream.handler``.
"""

import inspect
from typing import Callable, Dict, List, Optional, Union

import httpx
import pytest
from fastapi.testclient import TestClient

from gateway.app.config import Settings
from gateway.app.main import create_application
from gateway.app.models import EgressConfig, EgressKind, GatewayConfig, Route, RouteTable
from gateway.app.proxy.egress import ClientPool


def upstream_response(
    status_code: int = 200,
    body: bytes = b"upstream-body",
    headers: Optional[List[tuple]] = None,
) -> httpx.Response:
    """Unread upstream response, as a real transport would hand back."""
    headers = list(headers or [("content-type", "text/plain")])
    headers.append(("content-length", str(len(body))))
    return httpx.Response(status_code, headers=headers, stream=httpx.ByteStream(body))


class MockUpstream:
    """Records every upstream-bound request and answers via ``responder``."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.bodies: List[bytes] = []
        self.egresses: List[EgressConfig] = []
        self.responder: Callable = lambda request: upstream_response()

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.bodies.append(request.content)
        result = self.responder(request)
        if inspect.isawaitable(result):
            result = await result
        return result

    def build_transport(self, egress: EgressConfig) -> httpx.AsyncBaseTransport:
        self.egresses.append(egress)
        return httpx.MockTransport(self.handler)

    @property
    def last_request(self) -> httpx.Request:
        assert self.requests, "upstream was never called"
        return self.requests[-1]


def make_gateway_config(
    mapping: Dict[str, Union[str, tuple]],
    global_egress: Optional[EgressConfig] = None,
    listen_port: int = 8080,
) -> GatewayConfig:
    """Build a GatewayConfig from ``{prefix: url}`` or ``{prefix: (url, egress)}``."""
    routes = []
    for prefix, target in mapping.items():
        if isinstance(target, tuple):
            url, egress = target
        else:
            url, egress = target, None
        routes.append(Route(prefix=prefix, target_base_url=url, egress=egress))
    return GatewayConfig(
        listen_port=listen_port,
        routes=RouteTable(routes),
        global_egress=global_egress,
    )


SOCKS_EGRESS = EgressConfig(kind=EgressKind.SOCKS5, address="127.0.0.1:1080")
HTTP_EGRESS = EgressConfig(kind=EgressKind.HTTP, address="http://proxy.local:3128")


@pytest.fixture
def test_settings():
    return Settings(_env_file=None)


@pytest.fixture
def mock_upstream():
    return MockUpstream()


@pytest.fixture
def gateway_config():
    return make_gateway_config({
        "/svc/": "http://backend.local/base",
        "/a": "http://a.local",
        "/a/b": "http://ab.local",
        "/api/": "https://api.example.com/",
    })


@pytest.fixture
def app(gateway_config, test_settings, mock_upstream):
    return create_application(
        gateway_config,
        settings=test_settings,
        client_pool=ClientPool(transport_builder=mock_upstream.build_transport),
    )


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client
