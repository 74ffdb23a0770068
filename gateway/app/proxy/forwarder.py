"""
Request Forwarding
==================

Builds the upstream request from the inbound one, sends it through the
client selected for the route's egress, and streams the upstream
response back.

Forwarding Protocol:
--------------------
1. Target URL = target base + remainder + ("?" + query when non-empty),
   concatenated literally. A result that is not an absolute http(s) URL
   is rejected before any dial.
2. Same method. Every inbound header is copied except hop-by-hop ones;
   Host is set to the target host and the client IP is appended to
   X-Forwarded-For. The body is streamed, and Content-Length is kept
   when the client sent one.
3. The response status, headers (security policy applied) and raw body
   bytes are streamed back verbatim.

Failure Handling:
-----------------
- timeout before a response        -> 504
- dial/transfer error before one   -> 502
- error after streaming has begun  -> connection is dropped
- client disconnects               -> outbound send is cancelled and
                                      nothing is written back
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict

import httpx
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect, Request
from starlette.responses import Response, StreamingResponse

from ..exceptions import (
    ClientDisconnected,
    MissingRouteError,
    TargetURLError,
    TransportConstructionError,
    UpstreamError,
    UpstreamTimeout,
)
from ..models import EgressConfig, GatewayConfig
from .egress import ClientPool, resolve_egress
from .headers import apply_security_headers, strip_hop_by_hop
from .matcher import PrefixMatch

logger = logging.getLogger(__name__)


@dataclass
class ForwardContext:
    """Per-request forwarding state. Owned by the request's task."""

    method: str
    path: str
    query: str
    prefix: str
    remainder: str
    target_url: str
    egress: EgressConfig

    def log_extra(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "path": self.path,
            "prefix": self.prefix,
            "target_url": self.target_url,
            "egress_kind": self.egress.kind.value,
        }


def build_target_url(base_url: str, remainder: str, query: str) -> str:
    """Literal concatenation; the query gets exactly one ``?`` when present."""
    target = base_url + remainder
    if query:
        target = f"{target}?{query}"
    return target


def parse_target_url(target: str) -> httpx.URL:
    """
    Parse a target URL, rejecting anything we cannot dial.

    Raises:
        TargetURLError: If the URL is malformed or not absolute http(s)
    """
    try:
        url = httpx.URL(target)
    except httpx.InvalidURL as e:
        raise TargetURLError(f"Malformed target URL {target!r}: {e}") from e

    if url.scheme not in ("http", "https") or not url.host:
        raise TargetURLError(f"Target URL is not an absolute http(s) URL: {target!r}")
    return url


def build_upstream_headers(request: Request, url: httpx.URL) -> httpx.Headers:
    """Inbound headers minus hop-by-hop ones, re-targeted at ``url``."""
    headers = httpx.Headers(strip_hop_by_hop(request.headers.raw))
    headers["host"] = url.netloc.decode("ascii")

    if request.client and request.client.host:
        forwarded_for = headers.get_list("x-forwarded-for")
        forwarded_for.append(request.client.host)
        headers["x-forwarded-for"] = ", ".join(forwarded_for)

    return headers


def has_request_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


async def _wait_for_disconnect(request: Request, body_done: asyncio.Event) -> None:
    # The receive channel belongs to the body stream until it is drained.
    await body_done.wait()
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


class RequestForwarder:
    """
    Forwards matched requests to their backend.

    Args:
        config: Validated gateway configuration
        pool: Shared upstream client cache
    """

    def __init__(self, config: GatewayConfig, pool: ClientPool):
        self._config = config
        self._pool = pool

    async def forward(self, request: Request, match: PrefixMatch) -> Response:
        route = self._config.routes.get(match.prefix)
        if route is None:
            logger.error(
                "Matched prefix missing from route table",
                extra={"prefix": match.prefix, "path": request.url.path},
            )
            raise MissingRouteError(f"No mapping for prefix {match.prefix!r}")

        query = request.url.query
        context = ForwardContext(
            method=request.method,
            path=request.url.path,
            query=query,
            prefix=match.prefix,
            remainder=match.remainder,
            target_url=build_target_url(route.target_base_url, match.remainder, query),
            egress=resolve_egress(route, self._config.global_egress),
        )

        try:
            url = parse_target_url(context.target_url)
        except TargetURLError as e:
            logger.error(f"Refusing to forward: {e}", extra=context.log_extra())
            raise

        logger.info(
            f"Matched prefix: {context.prefix}, Rest path: {context.remainder}, "
            f"Target URL: {context.target_url}",
            extra=context.log_extra(),
        )
        if not context.egress.is_direct:
            logger.debug(
                f"Using {context.egress.kind.value} egress {context.egress.display_address} "
                f"for {context.target_url}",
                extra=context.log_extra(),
            )

        try:
            client = self._pool.get(context.egress)
        except TransportConstructionError as e:
            logger.error(f"Failed to build upstream transport: {e}", extra=context.log_extra())
            raise

        body_done = asyncio.Event()
        if has_request_body(request):
            content = self._stream_body(request, body_done)
        else:
            content = None
            body_done.set()

        upstream_request = httpx.Request(
            request.method,
            url,
            headers=build_upstream_headers(request, url),
            content=content,
        )

        try:
            upstream = await self._send(client, upstream_request, request, body_done)
        except ClientDisconnected:
            logger.info("Client disconnected, upstream request cancelled", extra=context.log_extra())
            raise
        except httpx.TimeoutException as e:
            logger.error(f"Upstream timeout: {e!r}", extra=context.log_extra())
            raise UpstreamTimeout(str(e)) from e
        except httpx.HTTPError as e:
            logger.error(f"Upstream request failed: {e!r}", extra=context.log_extra())
            raise UpstreamError(str(e)) from e

        logger.debug(
            f"Upstream responded {upstream.status_code}",
            extra={**context.log_extra(), "status_code": upstream.status_code},
        )

        response = StreamingResponse(
            self._relay(upstream, context),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = strip_hop_by_hop(upstream.headers.raw)
        apply_security_headers(response.headers)
        return response

    async def _send(
        self,
        client: httpx.AsyncClient,
        upstream_request: httpx.Request,
        request: Request,
        body_done: asyncio.Event,
    ) -> httpx.Response:
        """
        Send ``upstream_request``, racing it against the client going away.

        Raises:
            ClientDisconnected: If the inbound client disconnected first
        """
        send_task = asyncio.create_task(client.send(upstream_request, stream=True))
        watch_task = asyncio.create_task(_wait_for_disconnect(request, body_done))
        try:
            done, _ = await asyncio.wait(
                {send_task, watch_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            send_task.cancel()
            raise
        finally:
            watch_task.cancel()

        if send_task not in done:
            send_task.cancel()
            await asyncio.gather(send_task, return_exceptions=True)
            raise ClientDisconnected()

        try:
            return send_task.result()
        except ClientDisconnect as e:
            raise ClientDisconnected() from e

    @staticmethod
    async def _stream_body(request: Request, body_done: asyncio.Event) -> AsyncIterator[bytes]:
        try:
            async for chunk in request.stream():
                if chunk:
                    yield chunk
        finally:
            body_done.set()

    @staticmethod
    async def _relay(upstream: httpx.Response, context: ForwardContext) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            # Headers are already on the wire; dropping the connection is all that is left.
            logger.warning(f"Upstream transfer aborted mid-stream: {e!r}", extra=context.log_extra())
            raise
        finally:
            await upstream.aclose()
