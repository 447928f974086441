"""Response cache keyed by the question and, optionally, the client subnet."""

from __future__ import annotations

import ipaddress
import logging
import struct
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterable

import dns.exception
import dns.flags
import dns.message
import dns.opcode
import dns.rcode
import dns.rdatatype
import dns.rrset

from dnsrelay.dns_context import Upstream

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 64 * 1024
"""Cache size in bytes used when no positive size is configured."""

SERVFAIL_MAX_CACHE_TTL = 30
"""Largest TTL, in seconds, for which a SERVFAIL response is cached."""

OPTIMISTIC_TTL = 10
"""TTL, in seconds, given to expired responses served by an optimistic cache."""

_MAX_UINT32 = 0xFFFFFFFF
_HEADER = struct.Struct("!IH")

_DNSSEC_TYPES = frozenset(
    {
        dns.rdatatype.NSEC,
        dns.rdatatype.NSEC3,
        dns.rdatatype.DS,
        dns.rdatatype.RRSIG,
        dns.rdatatype.SIG,
        dns.rdatatype.DNSKEY,
    }
)

_Network = ipaddress.IPv4Network | ipaddress.IPv6Network
_Lookup = tuple["CacheItem | None", bool, "bytes | None"]


class _LRUStore:
    """Byte-bounded least-recently-used mapping of bytes to bytes."""

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size if max_size > 0 else DEFAULT_CACHE_SIZE
        self._data: OrderedDict[bytes, bytes] = OrderedDict()
        self._size = 0
        self._lock = threading.Lock()

    def get(self, key: bytes) -> bytes | None:
        with self._lock:
            value = self._data.get(key)
            if value is not None:
                self._data.move_to_end(key)
            return value

    def set(self, key: bytes, value: bytes) -> None:
        size = len(key) + len(value)
        with self._lock:
            old = self._data.pop(key, None)
            if old is not None:
                self._size -= len(key) + len(old)
            if size > self.max_size:
                return
            while self._data and self._size + size > self.max_size:
                old_key, old_value = self._data.popitem(last=False)
                self._size -= len(old_key) + len(old_value)
            self._data[key] = value
            self._size += size

    def delete(self, key: bytes) -> None:
        with self._lock:
            value = self._data.pop(key, None)
            if value is not None:
                self._size -= len(key) + len(value)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._size = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


@dataclass
class CacheItem:
    """A cached response together with the upstream that resolved it."""

    msg: dns.message.Message
    upstream_addr: str = ""
    ttl: int = 0

    @classmethod
    def from_response(
        cls, msg: dns.message.Message | None, upstream: Upstream | None
    ) -> CacheItem | None:
        """Return an item for msg, or None if msg must not be cached."""
        ttl = cache_ttl(msg)
        if ttl == 0:
            return None
        addr = upstream.address() if upstream is not None else ""
        return cls(msg=msg, upstream_addr=addr, ttl=ttl)

    def pack(self) -> bytes:
        """Serialize the item: expiry time, message length, message, upstream."""
        try:
            wire = self.msg.to_wire()
        except dns.exception.DNSException:
            wire = b""
        expire = (int(time.time()) + self.ttl) & _MAX_UINT32
        header = _HEADER.pack(expire, len(wire) & 0xFFFF)
        return header + wire + self.upstream_addr.encode("utf-8")


def _reply_for(req: dns.message.Message, rcode: int) -> dns.message.Message:
    """Return an empty reply to req with the given rcode."""
    res = dns.message.Message(id=req.id)
    flags = dns.flags.QR
    if req.opcode() == dns.opcode.QUERY:
        flags |= req.flags & (dns.flags.RD | dns.flags.CD)
    res.flags = flags
    res.set_opcode(req.opcode())
    res.set_rcode(rcode)
    res.question = [
        dns.rrset.RRset(q.name, q.rdclass, q.rdtype) for q in req.question[:1]
    ]
    return res


def _request_do_bit(req: dns.message.Message) -> bool:
    return req.edns >= 0 and bool(req.ednsflags & dns.flags.DO)


class DNSCache:
    """Cache of DNS responses, with an optional subnet-aware part for ECS."""

    def __init__(
        self, size: int = 0, with_ecs: bool = False, optimistic: bool = False
    ) -> None:
        self.optimistic = optimistic
        self._items = _LRUStore(size)
        self._items_with_subnet = _LRUStore(size) if with_ecs else None

    def unpack_item(
        self, data: bytes, req: dns.message.Message
    ) -> tuple[CacheItem | None, bool]:
        """Decode data into a response to req and report whether it expired.

        Expired items are only returned when the cache is optimistic, with
        their TTLs set to OPTIMISTIC_TTL.
        """
        if len(data) < _HEADER.size:
            return None, False

        expire, length = _HEADER.unpack_from(data)
        now = int(time.time())
        expired = expire <= now
        if expired:
            if not self.optimistic:
                return None, True
            ttl = OPTIMISTIC_TTL
        else:
            ttl = expire - now

        if length == 0:
            return None, expired

        start = _HEADER.size
        try:
            cached = dns.message.from_wire(data[start : start + length])
        except (dns.exception.DNSException, ValueError):
            return None, expired

        res = _reply_for(req, cached.rcode())
        res.flags |= cached.flags & (dns.flags.AD | dns.flags.RA)

        # OPT records are never served from the cache; DNSSEC records only
        # when the request asks for them.
        filter_msg(
            res, cached, bool(req.flags & dns.flags.AD), _request_do_bit(req), ttl
        )

        upstream_addr = data[start + length :].decode("utf-8", errors="replace")
        return CacheItem(msg=res, upstream_addr=upstream_addr), expired

    def get(self, req: dns.message.Message | None) -> _Lookup:
        """Look req up; return (item, expired, key).

        The key is None when req cannot be looked up at all.
        """
        if req is None or len(req.question) != 1:
            return None, False, None

        key = msg_to_key(req)
        data = self._items.get(key)
        if data is None:
            return None, False, key

        item, expired = self.unpack_item(data, req)
        if item is None:
            self._items.delete(key)
        return item, expired, key

    def get_with_subnet(
        self, req: dns.message.Message | None, subnet: _Network
    ) -> _Lookup:
        """Look req up by the longest matching prefix of subnet.

        Prefixes from the subnet's length down to zero are tried in turn.
        Returns (item, expired, key) where key is the last key tried.
        """
        store = self._items_with_subnet
        if store is None or req is None or len(req.question) != 1:
            return None, False, None

        key: bytes | None = None
        data: bytes | None = None
        for mask in range(subnet.prefixlen, -1, -1):
            net = ipaddress.ip_network((subnet.network_address, mask), strict=False)
            key = msg_to_key_with_subnet(req, net.network_address, mask)
            data = store.get(key)
            if data is not None:
                break

        if data is None:
            return None, False, key

        item, expired = self.unpack_item(data, req)
        if item is None:
            store.delete(key)
        return item, expired, key

    def set(self, msg: dns.message.Message, upstream: Upstream | None) -> None:
        """Store msg if it is cacheable."""
        item = CacheItem.from_response(msg, upstream)
        if item is None:
            return
        self._items.set(msg_to_key(msg), item.pack())

    def set_with_subnet(
        self,
        msg: dns.message.Message,
        upstream: Upstream | None,
        subnet: _Network | None,
    ) -> None:
        """Store msg under subnet if it is cacheable.

        A subnet of None stores the response for every client.
        """
        store = self._items_with_subnet
        if store is None:
            return
        item = CacheItem.from_response(msg, upstream)
        if item is None:
            return
        if subnet is None:
            key = msg_to_key_with_subnet(msg, None, 0)
        else:
            key = msg_to_key_with_subnet(msg, subnet.network_address, subnet.prefixlen)
        store.set(key, item.pack())

    def clear_items(self) -> None:
        """Empty the plain cache."""
        self._items.clear()

    def clear_items_with_subnet(self) -> None:
        """Empty the subnet cache, if there is one."""
        if self._items_with_subnet is not None:
            self._items_with_subnet.clear()


def cache_ttl(msg: dns.message.Message | None) -> int:
    """Return how many seconds msg may be cached for, 0 if not at all.

    Negative answers follow RFC 2308.
    """
    if msg is None:
        return 0
    if msg.flags & dns.flags.TC:
        logger.debug("dnsproxy: cache: truncated message; not caching")
        return 0
    if len(msg.question) != 1:
        logger.debug(
            "dnsproxy: cache: message with wrong number of questions; not caching"
        )
        return 0

    ttl = calculate_ttl(msg)
    if ttl == 0:
        logger.debug("dnsproxy: cache: ttl calculated to be 0; not caching")
        return 0

    rcode = msg.rcode()
    if rcode == dns.rcode.NOERROR:
        if _is_cacheable_succeeded(msg):
            return ttl
        logger.debug("dnsproxy: cache: not a cacheable noerror response; not caching")
    elif rcode == dns.rcode.NXDOMAIN:
        if _is_cacheable_negative(msg):
            return ttl
        logger.debug("dnsproxy: cache: not a cacheable nxdomain response; not caching")
    elif rcode == dns.rcode.SERVFAIL:
        return ttl
    else:
        logger.debug(
            "dnsproxy: cache: response code %s; not caching", dns.rcode.to_text(rcode)
        )
    return 0


def _has_ip_answer(msg: dns.message.Message) -> bool:
    return any(
        rrset.rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA) for rrset in msg.answer
    )


def _is_cacheable_succeeded(msg: dns.message.Message) -> bool:
    qtype = msg.question[0].rdtype
    return (
        qtype not in (dns.rdatatype.A, dns.rdatatype.AAAA)
        or _has_ip_answer(msg)
        or _is_cacheable_negative(msg)
    )


def _is_cacheable_negative(msg: dns.message.Message) -> bool:
    """Return True if the authority section has a SOA and no NS records."""
    ok = False
    for rrset in msg.authority:
        if rrset.rdtype == dns.rdatatype.SOA:
            ok = True
        elif rrset.rdtype == dns.rdatatype.NS:
            return False
    return ok


def calculate_ttl(msg: dns.message.Message) -> int:
    """Return the lowest TTL among msg's records, or 0 if it has none.

    SERVFAIL responses are capped at SERVFAIL_MAX_CACHE_TTL.
    """
    ttl = _MAX_UINT32
    for rrset in (*msg.answer, *msg.authority, *msg.additional):
        if rrset.rdtype == dns.rdatatype.OPT:
            continue
        ttl = min(ttl, rrset.ttl)
        if ttl == 0:
            return 0

    if msg.rcode() == dns.rcode.SERVFAIL and ttl > SERVFAIL_MAX_CACHE_TTL:
        return SERVFAIL_MAX_CACHE_TTL
    if ttl == _MAX_UINT32:
        return 0
    return ttl


def respect_ttl_overrides(ttl: int, cache_min_ttl: int, cache_max_ttl: int) -> int:
    """Clamp ttl to the configured range; a maximum of 0 means no upper bound."""
    if ttl < cache_min_ttl:
        return cache_min_ttl
    if cache_max_ttl != 0 and ttl > cache_max_ttl:
        return cache_max_ttl
    return ttl


def _question_parts(msg: dns.message.Message) -> tuple[bytes, bytes]:
    question = msg.question[0]
    type_class = struct.pack("!HH", question.rdtype, question.rdclass)
    name = question.name.to_text().lower().encode("ascii")
    return type_class, name


def msg_to_key(msg: dns.message.Message) -> bytes:
    """Return the cache key: QTYPE, QCLASS and the lower-cased QNAME."""
    type_class, name = _question_parts(msg)
    return type_class + name


def msg_to_key_with_subnet(msg: dns.message.Message, ecs_ip: Any, mask: int) -> bytes:
    """Return the subnet cache key: QTYPE, QCLASS, mask, address and QNAME.

    ecs_ip is expected to be masked already and is left out when mask is 0.
    """
    type_class, name = _question_parts(msg)
    address = b""
    if mask != 0 and ecs_ip is not None:
        address = ipaddress.ip_address(ecs_ip).packed
    return type_class + bytes([mask & 0xFF]) + address + name


def is_dnssec(rrset: dns.rrset.RRset) -> bool:
    """Return True if rrset holds DNSSEC records."""
    return rrset.rdtype in _DNSSEC_TYPES


def _filter_rrsets(
    rrsets: Iterable[dns.rrset.RRset], do: bool, ttl: int, keep_type: int
) -> list[dns.rrset.RRset]:
    filtered = []
    for rrset in rrsets:
        if rrset.rdtype == dns.rdatatype.OPT:
            continue
        if not do and is_dnssec(rrset) and rrset.rdtype != keep_type:
            continue
        copy = rrset.copy()
        if ttl != 0:
            copy.ttl = ttl
        filtered.append(copy)
    return filtered


def filter_msg(
    dst: dns.message.Message, msg: dns.message.Message, ad: bool, do: bool, ttl: int
) -> None:
    """Copy msg's records into dst without OPT and unrequested DNSSEC records.

    TTLs are set to ttl unless it is 0, and the AD bit of dst is kept only
    when the request had either the AD or the DO bit set.
    """
    if not (ad or do):
        dst.flags &= ~dns.flags.AD

    qtype = msg.question[0].rdtype if msg.question else dns.rdatatype.NONE
    dst.answer = _filter_rrsets(msg.answer, do, ttl, qtype)
    dst.authority = _filter_rrsets(msg.authority, do, ttl, dns.rdatatype.NONE)
    dst.additional = _filter_rrsets(msg.additional, do, ttl, dns.rdatatype.NONE)