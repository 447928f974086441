"""Detection of responses that should be turned into NXDOMAIN."""

from __future__ import annotations

import ipaddress
from typing import Any, Iterable

import dns.message
import dns.rdatatype

_Address = ipaddress.IPv4Address | ipaddress.IPv6Address
_Network = ipaddress.IPv4Network | ipaddress.IPv6Network


def ip_from_rr(rdata: Any) -> _Address | None:
    """Return the address of an A or AAAA record, or None for other records."""
    if getattr(rdata, "rdtype", None) not in (dns.rdatatype.A, dns.rdatatype.AAAA):
        return None
    try:
        return ipaddress.ip_address(rdata.address)
    except (AttributeError, ValueError):
        return None


def _contains(networks: Iterable[_Network], ip: _Address) -> bool:
    candidates = [ip]
    if ip.version == 6 and ip.ipv4_mapped is not None:
        candidates.append(ip.ipv4_mapped)
    return any(
        addr in net
        for net in networks
        for addr in candidates
        if addr.version == net.version
    )


def is_bogus_nxdomain(
    msg: dns.message.Message | None, networks: Iterable[_Network]
) -> bool:
    """Return True if an A/AAAA answer of msg holds an address in networks."""
    networks = list(networks)
    if msg is None or not networks or not msg.question:
        return False
    if msg.question[0].rdtype not in (dns.rdatatype.A, dns.rdatatype.AAAA):
        return False

    for rrset in msg.answer:
        for rdata in rrset:
            ip = ip_from_rr(rdata)
            if ip is not None and _contains(networks, ip):
                return True
    return False