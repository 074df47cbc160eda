# shadowgate/honeypot.py
from __future__ import annotations

from typing import FrozenSet, Iterable, Tuple

from .config import DEFAULT_HONEYPOT_PATHS

__all__ = ["HoneypotDetector"]


def _norm(path: str) -> str:
    p = path.strip()
    if not p.startswith("/"):
        p = "/" + p
    if len(p) > 1:
        p = p.rstrip("/")
    return p


class HoneypotDetector:
    """
    Matches inbound paths against a fixed set of decoy admin paths.

    A decoy matches the path exactly, or as a prefix ending on a segment
    boundary: "/wp-admin" matches "/wp-admin/setup.php" but not
    "/wp-administrator". Matching is case-sensitive; "/Admin" is not a
    decoy hit. Paths under an exempt prefix (the real admin namespace)
    never match, so a decoy can never shadow the real surface.
    """

    def __init__(
        self,
        paths: Iterable[str] = DEFAULT_HONEYPOT_PATHS,
        *,
        exempt_prefixes: Iterable[str] = (),
    ) -> None:
        self._paths: FrozenSet[str] = frozenset(_norm(p) for p in paths if p and p.strip())
        self._exempt: Tuple[str, ...] = tuple(_norm(p) for p in exempt_prefixes if p and p.strip())

    @property
    def paths(self) -> FrozenSet[str]:
        return self._paths

    def _exempted(self, path: str) -> bool:
        for pre in self._exempt:
            if path == pre or path.startswith(pre + "/"):
                return True
        return False

    def matches(self, path: str) -> bool:
        if not path:
            return False
        p = _norm(path)
        if self._exempted(p):
            return False
        if p in self._paths:
            return True
        # Walk up the segments: /a/b/c -> /a/b -> /a
        while True:
            cut = p.rfind("/")
            if cut <= 0:
                return False
            p = p[:cut]
            if p in self._paths:
                return True
