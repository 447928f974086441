"""Forwarding requests to upstream servers."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Sequence

import dns.message
import dns.rdatatype

from dnsrelay.config import UpstreamMode
from dnsrelay.dns_context import Upstream

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10_000
"""Round-trip time, in milliseconds, recorded for an upstream that failed."""


class UpstreamsError(Exception):
    """Raised when no upstream could answer a request."""

    def __init__(self, message: str, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        details = "; ".join(str(err) for err in self.errors)
        super().__init__(f"{message}: {details}" if details else message)


@dataclass
class ExchangeResult:
    """A response together with the upstream that produced it."""

    resp: dns.message.Message
    upstream: Upstream


def _question_text(req: dns.message.Message) -> str:
    return req.question[0].to_text() if req.question else "<no question>"


def exchange_with_upstream(
    upstream: Upstream, req: dns.message.Message
) -> tuple[dns.message.Message, int]:
    """Exchange req with upstream; return the reply and the elapsed milliseconds."""
    start = time.monotonic()
    try:
        reply = upstream.exchange(req)
    except Exception as err:
        elapsed = time.monotonic() - start
        logger.debug(
            "upstream %s failed to exchange %s in %.3fs. Cause: %s",
            upstream.address(),
            _question_text(req),
            elapsed,
            err,
        )
        raise
    elapsed = time.monotonic() - start
    logger.debug(
        "upstream %s successfully finished exchange of %s. Elapsed %.3fs.",
        upstream.address(),
        _question_text(req),
        elapsed,
    )
    return reply, int(elapsed * 1000)


def _attempt(
    upstream: Upstream, req: dns.message.Message
) -> tuple[dns.message.Message | None, BaseException | None]:
    try:
        return upstream.exchange(req), None
    except Exception as err:
        return None, err


def exchange_all(
    upstreams: Sequence[Upstream], req: dns.message.Message
) -> list[ExchangeResult]:
    """Query every upstream concurrently and return the successful replies.

    The results keep the order of upstreams.  UpstreamsError is raised when
    none of them answers.
    """
    upstreams = list(upstreams)
    if not upstreams:
        raise UpstreamsError("no upstreams specified", [])

    if len(upstreams) == 1:
        outcomes = [_attempt(upstreams[0], req)]
    else:
        with ThreadPoolExecutor(max_workers=len(upstreams)) as pool:
            outcomes = list(pool.map(lambda u: _attempt(u, req), upstreams))

    results = []
    errors = []
    for upstream, (resp, err) in zip(upstreams, outcomes):
        if err is not None:
            errors.append(err)
        elif resp is not None:
            results.append(ExchangeResult(resp=resp, upstream=upstream))

    if not results:
        raise UpstreamsError("all upstreams failed to exchange", errors)
    return results


def exchange_parallel(
    upstreams: Sequence[Upstream], req: dns.message.Message
) -> tuple[dns.message.Message, Upstream]:
    """Query every upstream concurrently and return the first successful reply."""
    upstreams = list(upstreams)
    if not upstreams:
        raise UpstreamsError("no upstreams specified", [])

    if len(upstreams) == 1:
        return upstreams[0].exchange(req), upstreams[0]

    pool = ThreadPoolExecutor(max_workers=len(upstreams))
    try:
        pending = {pool.submit(u.exchange, req): u for u in upstreams}
        errors: list[BaseException] = []
        while pending:
            done, _ = wait(pending, return_when=FIRST_COMPLETED)
            for future in done:
                upstream = pending.pop(future)
                err = future.exception()
                if err is not None:
                    errors.append(err)
                    continue
                resp = future.result()
                if resp is not None:
                    return resp, upstream
        raise UpstreamsError("all upstreams failed to exchange", errors)
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


class UpstreamExchanger:
    """Sends requests to upstreams according to the configured mode."""

    def __init__(
        self,
        mode: UpstreamMode = UpstreamMode.LOAD_BALANCE,
        fastest_addr: Any = None,
    ) -> None:
        self.mode = mode
        self.fastest_addr = fastest_addr
        self._rtt_stats: dict[str, int] = {}
        self._rtt_lock = threading.Lock()

    def exchange(
        self, req: dns.message.Message, upstreams: Sequence[Upstream]
    ) -> tuple[dns.message.Message, Upstream]:
        """Send req to upstreams and return the reply and the upstream used."""
        qtype = req.question[0].rdtype
        if self.mode is UpstreamMode.FASTEST_ADDR and qtype in (
            dns.rdatatype.A,
            dns.rdatatype.AAAA,
        ):
            if self.fastest_addr is None:
                from dnsrelay.fastest import FastestAddr

                self.fastest_addr = FastestAddr()
            return self.fastest_addr.exchange_fastest(req, upstreams)

        if self.mode is UpstreamMode.PARALLEL:
            return exchange_parallel(upstreams, req)

        upstreams = list(upstreams)
        if len(upstreams) == 1:
            reply, _ = exchange_with_upstream(upstreams[0], req)
            return reply, upstreams[0]

        errors: list[BaseException] = []
        for upstream in self.sorted_upstreams(upstreams):
            try:
                reply, elapsed = exchange_with_upstream(upstream, req)
            except Exception as err:
                errors.append(err)
                self.update_rtt(upstream.address(), DEFAULT_TIMEOUT_MS)
                continue
            self.update_rtt(upstream.address(), elapsed)
            return reply, upstream

        raise UpstreamsError("all upstreams failed to exchange request", errors)

    def sorted_upstreams(self, upstreams: Sequence[Upstream]) -> list[Upstream]:
        """Return a copy of upstreams ordered from the fastest to the slowest."""
        with self._rtt_lock:
            stats = dict(self._rtt_stats)
        return sorted(upstreams, key=lambda u: stats.get(u.address(), 0))

    def update_rtt(self, address: str, rtt: int) -> None:
        """Fold rtt, in milliseconds, into the running average for address."""
        with self._rtt_lock:
            self._rtt_stats[address] = (self._rtt_stats.get(address, 0) + rtt) // 2