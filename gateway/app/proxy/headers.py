"""
Header handling for proxied traffic.

- Hop-by-hop headers are connection-scoped and never cross the gateway
  in either direction.
- Every proxied response gets the fixed security header set, overwriting
  whatever the backend sent. Static responses served by the gateway
  itself are left alone.
"""

from typing import Iterable, List, MutableMapping, Set, Tuple

RawHeaders = List[Tuple[bytes, bytes]]

# Hop-by-hop headers (RFC 7230 section 6.1)
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

SECURITY_HEADERS = (
    ("X-Content-Type-Options", "nosniff"),
    ("X-Frame-Options", "DENY"),
    ("Referrer-Policy", "no-referrer"),
)


def connection_scoped_headers(raw_headers: Iterable[Tuple[bytes, bytes]]) -> Set[str]:
    """Hop-by-hop names plus any extra names listed in ``Connection``."""
    names = set(HOP_BY_HOP_HEADERS)
    for key, value in raw_headers:
        if key.lower() == b"connection":
            for token in value.decode("latin-1").split(","):
                token = token.strip().lower()
                if token:
                    names.add(token)
    return names


def strip_hop_by_hop(raw_headers: Iterable[Tuple[bytes, bytes]]) -> RawHeaders:
    """
    Copy raw headers, dropping connection-scoped ones.

    Names are lowercased (ASGI requires it) and repeated headers such as
    ``Set-Cookie`` keep every occurrence, in order.
    """
    raw_headers = list(raw_headers)
    excluded = connection_scoped_headers(raw_headers)
    return [
        (key.lower(), value)
        for key, value in raw_headers
        if key.lower().decode("latin-1") not in excluded
    ]


def apply_security_headers(headers: MutableMapping[str, str]) -> None:
    """Set the security header policy on a mutable header mapping."""
    for name, value in SECURITY_HEADERS:
        headers[name] = value
