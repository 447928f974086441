"""Choosing the fastest address among those returned by several upstreams."""

from __future__ import annotations

import ipaddress
import logging
import queue
import socket
import struct
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

import dns.message
import dns.rdatatype
import dns.rrset

from dnsrelay.bogus import ip_from_rr
from dnsrelay.cache import _LRUStore
from dnsrelay.dns_context import Upstream
from dnsrelay.exchange import ExchangeResult, exchange_all

logger = logging.getLogger(__name__)

FASTEST_ADDR_CACHE_TTL_SEC = 10 * 60
"""How long, in seconds, ping results stay cached."""

DEFAULT_PING_WAIT_TIMEOUT = 1.0
"""Default time, in seconds, to wait for pings to finish."""

PING_TCP_TIMEOUT = 4.0
"""TCP connection timeout in seconds; slower results are still cached."""

_IP_CACHE_SIZE = 64 * 1024
_ENTRY = struct.Struct("!IBH")

_Address = ipaddress.IPv4Address | ipaddress.IPv6Address
Dialer = Callable[[tuple[str, int], float], None]


@dataclass
class CacheEntry:
    """A cached ping outcome: status 0 is success, 1 is a timeout."""

    status: int = 0
    latency_msec: int = 0


def pack_cache_entry(entry: CacheEntry, ttl: int) -> bytes:
    """Pack entry as expiry time (4 bytes), status (1) and latency (2)."""
    expire = (int(time.time()) + ttl) & 0xFFFFFFFF
    return _ENTRY.pack(expire, entry.status & 0xFF, entry.latency_msec & 0xFFFF)


def unpack_cache_entry(data: bytes) -> CacheEntry | None:
    """Unpack data into an entry, or return None if it has expired."""
    expire, status, latency = _ENTRY.unpack_from(data)
    if expire <= int(time.time()):
        return None
    return CacheEntry(status=status, latency_msec=latency)


@dataclass
class PingResult:
    """The outcome of dialing an address."""

    addr: _Address
    port: int = 0
    latency: int = 0
    success: bool = False


def _tcp_dial(address: tuple[str, int], timeout: float) -> None:
    socket.create_connection(address, timeout=timeout).close()


def _unmap(ip: _Address) -> _Address:
    if ip.version == 6 and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


class FastestAddr:
    """Finds the fastest of several addresses by dialing them over TCP."""

    def __init__(
        self,
        ping_wait_timeout: float = DEFAULT_PING_WAIT_TIMEOUT,
        ping_ports: Iterable[int] = (80, 443),
        ping_timeout: float = PING_TCP_TIMEOUT,
        dialer: Dialer | None = None,
    ) -> None:
        self.ping_wait_timeout = ping_wait_timeout
        self.ping_ports = list(ping_ports)
        self.ping_timeout = ping_timeout
        self.dialer: Dialer = dialer or _tcp_dial
        self._ip_cache = _LRUStore(_IP_CACHE_SIZE)
        self._ip_cache_lock = threading.Lock()

    def cache_find(self, ip: _Address) -> CacheEntry | None:
        """Return the unexpired cache entry for ip, if any."""
        data = self._ip_cache.get(ip.packed)
        if data is None:
            return None
        return unpack_cache_entry(data)

    def cache_add(self, entry: CacheEntry, ip: _Address, ttl: int) -> None:
        """Store entry for ip for ttl seconds."""
        self._ip_cache.set(ip.packed, pack_cache_entry(entry, ttl))

    def cache_add_failure(self, ip: _Address) -> None:
        """Record a failed ping unless something is already cached for ip."""
        with self._ip_cache_lock:
            if self.cache_find(ip) is None:
                self.cache_add(CacheEntry(status=1), ip, FASTEST_ADDR_CACHE_TTL_SEC)

    def cache_add_successful(self, ip: _Address, latency: int) -> None:
        """Record a successful ping if it beats what is cached for ip."""
        with self._ip_cache_lock:
            cached = self.cache_find(ip)
            if cached is None or cached.status != 0 or cached.latency_msec > latency:
                self.cache_add(
                    CacheEntry(latency_msec=latency), ip, FASTEST_ADDR_CACHE_TTL_SEC
                )

    def exchange_fastest(
        self, req: dns.message.Message, upstreams: Sequence[Upstream]
    ) -> tuple[dns.message.Message, Upstream]:
        """Query all upstreams and answer with only the fastest address.

        The fastest address is the first one dialed successfully; other A and
        AAAA records are removed from the answer.
        """
        replies = exchange_all(upstreams, req)
        host = req.question[0].name.to_text().lower()

        ips: dict[_Address, None] = {}
        for reply in replies:
            for rrset in reply.resp.answer:
                for rdata in rrset:
                    ip = ip_from_rr(rdata)
                    if ip is not None:
                        ips.setdefault(ip)

        result = self.ping_all(host, list(ips))
        if result is not None:
            return self._prepare_reply(result, replies)

        logger.debug("%s: no fastest IP found, using the first response", host)
        return replies[0].resp, replies[0].upstream

    def _prepare_reply(
        self, result: PingResult, replies: Sequence[ExchangeResult]
    ) -> tuple[dns.message.Message, Upstream]:
        ip = result.addr
        chosen = next(
            (
                r
                for r in replies
                if any(ip_from_rr(rd) == ip for rrset in r.resp.answer for rd in rrset)
            ),
            None,
        )
        if chosen is None:
            logger.error("found no replies with IP %s, most likely this is a bug", ip)
            return replies[0].resp, replies[0].upstream

        answer = []
        for rrset in chosen.resp.answer:
            if rrset.rdtype not in (dns.rdatatype.A, dns.rdatatype.AAAA):
                answer.append(rrset)
                continue
            kept = dns.rrset.RRset(rrset.name, rrset.rdclass, rrset.rdtype)
            for rdata in rrset:
                if ip_from_rr(rdata) == ip:
                    kept.add(rdata, rrset.ttl)
            if kept:
                answer.append(kept)
        chosen.resp.answer = answer
        return chosen.resp, chosen.upstream

    def ping_all(self, host: str, ips: Sequence[_Address]) -> PingResult | None:
        """Ping ips concurrently; return the fastest result or None.

        Returns as soon as one ping succeeds or the wait timeout passes.
        Cached results are used instead of pinging where available.
        """
        ips = list(ips)
        if not ips:
            return None
        if len(ips) == 1:
            return PingResult(addr=ips[0], port=0, success=True)

        results: queue.Queue[PingResult] = queue.Queue()
        scheduled = 0
        best: PingResult | None = None

        for ip in ips:
            cached = self.cache_find(ip)
            if cached is None:
                for port in self.ping_ports:
                    threading.Thread(
                        target=self._ping_do_tcp,
                        args=(host, ip, port, results),
                        daemon=True,
                    ).start()
                scheduled += len(self.ping_ports)
                continue
            if cached.status != 0:
                continue
            if best is None or cached.latency_msec < best.latency:
                best = PingResult(
                    addr=ip, port=0, latency=cached.latency_msec, success=True
                )

        has_cached = best is not None
        if scheduled == 0:
            if has_cached:
                logger.debug("pingAll: %s: return cached response: %s", host, best.addr)
            else:
                logger.debug("pingAll: %s: returning nothing", host)
            return best

        deadline = time.monotonic() + self.ping_wait_timeout
        for _ in range(scheduled):
            remaining = max(deadline - time.monotonic(), 0.0)
            try:
                res = results.get(timeout=remaining)
            except queue.Empty:
                if has_cached:
                    logger.debug(
                        "pingAll: %s: pinging timed out, returning cached: %s",
                        host,
                        best.addr,
                    )
                else:
                    logger.debug(
                        "pingAll: %s: ping checks timed out, returning nothing", host
                    )
                return best

            logger.debug(
                "pingAll: %s: got result for %s:%d status %s",
                host,
                res.addr,
                res.port,
                res.success,
            )
            if not res.success:
                continue
            if not has_cached or best.latency >= res.latency:
                best = res
            return best

        return best

    def _ping_do_tcp(
        self, host: str, ip: _Address, port: int, results: queue.Queue[PingResult]
    ) -> None:
        logger.debug("pingDoTCP: %s: connecting to %s:%d", host, ip, port)
        start = time.monotonic()
        error: BaseException | None = None
        try:
            self.dialer((str(ip), port), self.ping_timeout)
        except OSError as err:
            error = err
        elapsed = time.monotonic() - start
        latency = int(elapsed * 1000)
        success = error is None

        results.put(PingResult(addr=ip, port=port, latency=latency, success=success))

        addr = _unmap(ip)
        if success:
            logger.debug("pingDoTCP: %s: elapsed %d ms on %s:%d", host, latency, ip, port)
            self.cache_add_successful(addr, latency)
        else:
            logger.debug(
                "pingDoTCP: %s: failed to connect to %s:%d, elapsed %d ms: %s",
                host,
                ip,
                port,
                latency,
                error,
            )
            self.cache_add_failure(addr)