"""Per-request state of the DNS proxy."""

from __future__ import annotations

import abc
import enum
import ipaddress
import time
from dataclasses import dataclass, field
from typing import Any

import dns.flags
import dns.message
import dns.rrset

DEFAULT_UDP_BUF_SIZE = 2048
MIN_MSG_SIZE = 512
MAX_MSG_SIZE = 65535


class Proto(str, enum.Enum):
    """Transport protocol a request came in over."""

    UDP = "udp"
    TCP = "tcp"
    TLS = "tls"
    HTTPS = "https"
    QUIC = "quic"
    DNSCRYPT = "dnscrypt"


class DoQVersion(enum.IntEnum):
    """Supported DNS-over-QUIC versions."""

    DRAFT = 0x00
    V1 = 0x01


class Upstream(abc.ABC):
    """A DNS server requests can be forwarded to."""

    @abc.abstractmethod
    def exchange(self, req: dns.message.Message) -> dns.message.Message:
        """Send req and return the reply, raising on failure."""

    @abc.abstractmethod
    def address(self) -> str:
        """Return the address of the upstream."""

    def close(self) -> None:
        """Release resources held by the upstream."""


def dns_size(is_udp: bool, req: dns.message.Message) -> int:
    """Return the largest response size the client accepts for req."""
    if not is_udp:
        return MAX_MSG_SIZE
    size = req.payload if req.edns >= 0 else 0
    return max(size, MIN_MSG_SIZE)


@dataclass
class DNSContext:
    """State of a single DNS request being processed."""

    proto: Proto = Proto.UDP
    req: dns.message.Message | None = None
    res: dns.message.Message | None = None
    addr: Any = None
    start_time: float = field(default_factory=time.time)
    upstream: Upstream | None = None
    cached_upstream_addr: str = ""
    custom_upstream_config: Any = None
    conn: Any = None
    local_ip: ipaddress.IPv4Address | ipaddress.IPv6Address | None = None
    doq_version: DoQVersion = DoQVersion.DRAFT
    request_id: int = 0
    req_ecs: ipaddress.IPv4Network | ipaddress.IPv6Network | None = None

    ad_bit: bool = field(default=False, init=False)
    has_edns0: bool = field(default=False, init=False)
    do_bit: bool = field(default=False, init=False)
    udp_size: int = field(default=0, init=False)

    def calc_flags_and_size(self) -> None:
        """Compute the request flags and UDP size once."""
        if self.udp_size or self.req is None:
            return
        self.ad_bit = bool(self.req.flags & dns.flags.AD)
        self.udp_size = DEFAULT_UDP_BUF_SIZE
        if self.req.edns >= 0:
            self.has_edns0 = True
            self.do_bit = bool(self.req.ednsflags & dns.flags.DO)
            self.udp_size = self.req.payload

    def scrub(self) -> None:
        """Prepare the response for writing, truncating it if needed."""
        if self.res is None or self.req is None:
            return
        self.calc_flags_and_size()
        if self.has_edns0 and self.res.edns < 0:
            self.res.use_edns(
                0, dns.flags.DO if self.do_bit else 0, self.udp_size
            )
        _truncate(self.res, dns_size(self.proto is Proto.UDP, self.req))


def _rebuild(records: list[tuple[dns.rrset.RRset, Any]]) -> list[dns.rrset.RRset]:
    rebuilt: list[tuple[dns.rrset.RRset, dns.rrset.RRset]] = []
    for original, rdata in records:
        if not rebuilt or rebuilt[-1][0] is not original:
            copy = dns.rrset.RRset(
                original.name, original.rdclass, original.rdtype, original.covers
            )
            rebuilt.append((original, copy))
        rebuilt[-1][1].add(rdata, original.ttl)
    return [copy for _, copy in rebuilt]


def _fill(msg: dns.message.Message, kept: list[list[tuple[Any, Any]]]) -> None:
    msg.answer = _rebuild(kept[0])
    msg.authority = _rebuild(kept[1])
    msg.additional = _rebuild(kept[2])


def _truncate(msg: dns.message.Message, size: int) -> None:
    """Drop records from msg until it fits in size bytes, setting TC if needed."""
    size = min(max(size, MIN_MSG_SIZE), MAX_MSG_SIZE)
    if len(msg.to_wire()) <= size:
        return

    sections = [
        [(rrset, rdata) for rrset in section for rdata in rrset]
        for section in (msg.answer, msg.authority, msg.additional)
    ]
    kept: list[list[tuple[Any, Any]]] = [[], [], []]
    for index, records in enumerate(sections):
        for record in records:
            kept[index].append(record)
            _fill(msg, kept)
            if len(msg.to_wire()) > size:
                kept[index].pop()
                break

    _fill(msg, kept)
    if len(kept[0]) < len(sections[0]) or len(kept[1]) < len(sections[1]):
        msg.flags |= dns.flags.TC