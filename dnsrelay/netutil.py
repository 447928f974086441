"""Network helpers shared across the proxy."""

from __future__ import annotations

import ipaddress
from typing import Any, MutableSequence

_IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def _normalize(addr: Any) -> _IPAddress | None:
    """Return addr as an IP address with IPv4-mapped IPv6 unmapped, or None."""
    if addr is None:
        return None
    try:
        ip = ipaddress.ip_address(addr)
    except ValueError:
        return None
    if ip.version == 6 and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def sort_ip_addrs(addrs: MutableSequence[Any], prefer_ipv6: bool) -> None:
    """Sort addrs in place by protocol preference, then by address.

    Invalid addresses (including None) are moved to the end.  The sort is
    stable, and zones are ignored.
    """
    if len(addrs) <= 1:
        return

    def key(addr: Any) -> tuple[int, int, int]:
        ip = _normalize(addr)
        if ip is None:
            return (2, 0, 0)
        preferred = (ip.version == 6) == prefer_ipv6
        return (0 if preferred else 1, ip.version, int(ip))

    addrs[:] = sorted(addrs, key=key)