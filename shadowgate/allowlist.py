# FILE: shadowgate/allowlist.py
from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, List, Optional, Sequence, Set, Union

_logger = logging.getLogger(__name__)

_Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
_Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _parse_address(raw: Optional[str]) -> Optional[_Address]:
    """
    Parse a caller address; anything that is not a bare IP literal is None.

    IPv4-mapped IPv6 addresses (::ffff:10.0.0.1) are unwrapped so that
    dual-stack listeners match IPv4 allowlist entries.
    """
    if not raw or not isinstance(raw, str):
        return None
    val = raw.strip()
    # Bracketed IPv6 as some proxies emit it ("[::1]")
    if val.startswith("[") and val.endswith("]"):
        val = val[1:-1]
    try:
        addr = ipaddress.ip_address(val)
    except ValueError:
        return None
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def anonymize_ip(ip: Optional[str]) -> str:
    """
    Best-effort IP anonymization for general logging.

    Keeps only a coarse prefix and masks the rest. The audit record keeps
    the full origin; ordinary log lines carry only this form.
    """
    addr = _parse_address(ip)
    if addr is None:
        return "*"
    if addr.version == 4:
        parts = str(addr).split(".")
        return ".".join(parts[:3] + ["x"])
    pieces = addr.compressed.split(":")
    if len(pieces) >= 3:
        return ":".join(pieces[:3]) + ":*"
    return "*"


class AddressAllowlist:
    """
    Static set of network origins permitted to reach the admin surface.

    Entries are single addresses or CIDR ranges. Membership is exact-match
    or range-match on parsed addresses, never string prefixes. Absent or
    malformed origins are not allowed, and an empty list allows nobody.
    """

    def __init__(self, entries: Iterable[str] = ()) -> None:
        self._exact: Set[_Address] = set()
        self._nets: List[_Network] = []
        for raw in entries:
            val = (raw or "").strip()
            if not val:
                continue
            try:
                if "/" in val:
                    self._nets.append(ipaddress.ip_network(val, strict=False))
                else:
                    addr = _parse_address(val)
                    if addr is None:
                        raise ValueError(val)
                    self._exact.add(addr)
            except ValueError:
                # Invalid entry is ignored but logged for operators.
                _logger.warning("Invalid allowlist entry ignored: %r", val)

    def __len__(self) -> int:
        return len(self._exact) + len(self._nets)

    def is_allowed(self, origin: Optional[str]) -> bool:
        addr = _parse_address(origin)
        if addr is None:
            return False
        if addr in self._exact:
            return True
        for net in self._nets:
            if addr.version == net.version and addr in net:
                return True
        return False

    def describe(self) -> List[str]:
        return sorted(str(a) for a in self._exact) + [str(n) for n in self._nets]


def resolve_origin(
    peer: Optional[str],
    forwarded_for: Optional[str] = None,
    trusted_proxies: Optional[AddressAllowlist] = None,
) -> Optional[str]:
    """
    Resolve the caller's network origin.

    X-Forwarded-For is only consulted when the direct peer is itself a
    trusted proxy. Then the chain is walked right to left and the first hop
    that is not a trusted proxy is the caller. A malformed hop ends the walk
    with None so the request fails closed; spoofed entries to the left of
    the first untrusted hop are never reached.
    """
    peer_addr = _parse_address(peer)
    if peer_addr is None:
        return None
    if trusted_proxies is None or not len(trusted_proxies) or not forwarded_for:
        return str(peer_addr)
    if not trusted_proxies.is_allowed(str(peer_addr)):
        return str(peer_addr)

    hops: Sequence[str] = [h.strip() for h in forwarded_for.split(",")]
    for hop in reversed(hops):
        addr = _parse_address(hop)
        if addr is None:
            return None
        if not trusted_proxies.is_allowed(str(addr)):
            return str(addr)
    # Every hop was a proxy: the leftmost one is the best we know.
    return str(_parse_address(hops[0])) if hops else str(peer_addr)


__all__ = ["AddressAllowlist", "anonymize_ip", "resolve_origin"]
