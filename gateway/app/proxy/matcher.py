"""
Longest-prefix route matching.

A prefix matches when the request path starts with it, as a plain string
comparison: ``/api`` matches ``/apiv1`` with remainder ``v1``. Among all
matching prefixes the longest wins. Prefixes of equal length that both
match the same path are necessarily identical strings, so the secondary
lexicographic ordering only fixes the scan order.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from ..models import RouteTable


@dataclass(frozen=True)
class PrefixMatch:
    prefix: str
    remainder: str


def split_remainder(prefix: str, path: str) -> str:
    """
    Return the part of ``path`` after ``prefix``.

    When the prefix ends with ``/`` and the remainder still starts with
    ``/`` (``/api/`` against ``/api//x``), one leading slash is dropped so
    the remainder never doubles the separator. Nothing else is normalized.
    """
    remainder = path[len(prefix):]
    if prefix.endswith("/") and remainder.startswith("/"):
        remainder = remainder[1:]
    return remainder


class PrefixMatcher:
    """Resolves request paths against a fixed set of route prefixes."""

    def __init__(self, prefixes: Iterable[str]):
        # Longest first, then lexicographic, so the first hit is the answer.
        self._prefixes: Tuple[str, ...] = tuple(
            sorted({p for p in prefixes if p}, key=lambda p: (-len(p), p))
        )

    @classmethod
    def from_table(cls, routes: RouteTable) -> "PrefixMatcher":
        return cls(routes.prefixes)

    @property
    def prefixes(self) -> Tuple[str, ...]:
        return self._prefixes

    def match(self, path: str) -> Optional[PrefixMatch]:
        for prefix in self._prefixes:
            if path.startswith(prefix):
                return PrefixMatch(prefix=prefix, remainder=split_remainder(prefix, path))
        return None
