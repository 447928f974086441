"""DNS64 synthesis of AAAA answers from A answers (RFC 6147)."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence

import dns.entropy
import dns.message
import dns.rcode
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from dnsrelay.config import ConfigError
from dnsrelay.dns_context import Upstream

logger = logging.getLogger(__name__)

MAX_NAT64_PREFIX_BIT_LEN = 96
"""Longest NAT64 prefix, in bits, usable for address synthesis."""

NAT64_PREFIX_LENGTH = 16 - 4
"""Length of a NAT64 prefix in bytes."""

MAX_DNS64_SYN_TTL = 600
"""Largest TTL, in seconds, of synthesized answers when no SOA is known."""

DNS64_WELL_KNOWN_PREF = ipaddress.IPv6Network("64:ff9b::/96")
"""The Well-Known Prefix for algorithmic DNS64 mapping (RFC 6052)."""

_Address = ipaddress.IPv4Address | ipaddress.IPv6Address
Exchange = Callable[
    [dns.message.Message, Sequence[Upstream]], tuple[dns.message.Message, Upstream]
]


def _to_address(ip: Any) -> _Address | None:
    """Return ip as an address with IPv4-mapped IPv6 unmapped, or None."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return None
    if addr.version == 6 and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


@dataclass
class DNS64:
    """DNS64 state: the NAT64 prefixes in use.

    An empty prefix list means DNS64 is disabled.  The first prefix is used
    to synthesize addresses.
    """

    prefs: list[ipaddress.IPv6Network] = field(default_factory=list)

    def check(
        self, req: dns.message.Message, resp: dns.message.Message
    ) -> dns.message.Message | None:
        """Return the A request to resolve for DNS64, or None if not needed.

        For successful responses, AAAA answers inside the NAT64 prefixes are
        removed from resp.
        """
        if not self.prefs:
            return None

        question = req.question[0]
        if (
            question.rdtype != dns.rdatatype.AAAA
            or question.rdclass != dns.rdataclass.IN
        ):
            # DNS64 for classes other than IN is undefined.
            return None

        rcode = resp.rcode()
        if rcode == dns.rcode.NXDOMAIN:
            return None

        if rcode == dns.rcode.NOERROR:
            resp.answer, has_answers = self.filter_nat64_answers(resp.answer)
            if has_answers:
                return None

        dns64_req = dns.message.from_wire(req.to_wire())
        dns64_req.id = dns.entropy.random_16()
        dns64_req.question = [
            dns.rrset.RRset(question.name, question.rdclass, dns.rdatatype.A)
        ]
        return dns64_req

    def filter_nat64_answers(
        self, rrsets: Iterable[dns.rrset.RRset]
    ) -> tuple[list[dns.rrset.RRset], bool]:
        """Drop AAAA records inside the NAT64 prefixes.

        Returns the filtered records and whether any AAAA record outside the
        prefixes, or any CNAME or DNAME, remains.
        """
        filtered: list[dns.rrset.RRset] = []
        has_answers = False
        for rrset in rrsets:
            if rrset.rdtype == dns.rdatatype.AAAA:
                kept = dns.rrset.RRset(rrset.name, rrset.rdclass, rrset.rdtype)
                for rdata in rrset:
                    addr = _to_address(getattr(rdata, "address", None))
                    if addr is None:
                        logger.error("proxy: bad aaaa record: %s", rdata)
                        continue
                    if self.within(addr):
                        continue
                    kept.add(rdata, rrset.ttl)
                if kept:
                    filtered.append(kept)
                    has_answers = True
            elif rrset.rdtype in (dns.rdatatype.CNAME, dns.rdatatype.DNAME):
                filtered.append(rrset)
                has_answers = True
            else:
                filtered.append(rrset)
        return filtered, has_answers

    def synth(
        self,
        orig_req: dns.message.Message,
        orig_resp: dns.message.Message,
        resp: dns.message.Message,
    ) -> bool:
        """Rewrite orig_resp with AAAA records made from resp's A records.

        Returns True if orig_resp was modified.
        """
        if not resp.answer:
            return False

        qname = orig_req.question[0].name
        soa_ttl = MAX_DNS64_SYN_TTL
        for rrset in orig_resp.authority:
            if rrset.rdtype == dns.rdatatype.SOA and rrset.name == qname:
                soa_ttl = rrset.ttl
                break

        answer = []
        for rrset in resp.answer:
            synthesized = self.synth_rrset(rrset, soa_ttl)
            if synthesized is None:
                return False
            answer.append(synthesized)

        orig_resp.answer = answer
        orig_resp.authority = list(resp.authority)
        orig_resp.additional = list(resp.additional)
        return True

    def within(self, ip: Any) -> bool:
        """Return True if ip is inside one of the configured prefixes."""
        addr = ip if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)) else _to_address(ip)
        if addr is None:
            return False
        return any(addr in net for net in self.prefs)

    def should_strip(self, ip: Any) -> bool:
        """Return True if ip is inside a configured or the Well-Known prefix.

        Meant for PTR requests, which may refer to addresses synthesized by
        another DNS64 at the site.
        """
        if not self.prefs:
            return False
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return False
        if addr.version != 6:
            return False

        if self.within(addr):
            logger.debug("proxy: %s is within DNS64 custom prefix set", addr)
        elif addr in DNS64_WELL_KNOWN_PREF:
            logger.debug("proxy: %s is within DNS64 well-known prefix", addr)
        else:
            return False
        return True

    def map_address(self, addr: Any) -> ipaddress.IPv6Address:
        """Embed the IPv4 address addr into the first configured prefix."""
        if not self.prefs:
            raise ValueError("no DNS64 prefixes configured")
        v4 = ipaddress.IPv4Address(addr)
        prefix = self.prefs[0].network_address.packed[:NAT64_PREFIX_LENGTH]
        return ipaddress.IPv6Address(prefix + v4.packed)

    def synth_rrset(
        self, rrset: dns.rrset.RRset, soa_ttl: int
    ) -> dns.rrset.RRset | None:
        """Turn an A rrset into a synthesized AAAA rrset.

        Other rrsets are returned as they are; None is returned for invalid
        A records.
        """
        if rrset.rdtype != dns.rdatatype.A:
            return rrset

        result = dns.rrset.RRset(rrset.name, rrset.rdclass, dns.rdatatype.AAAA)
        ttl = min(rrset.ttl, soa_ttl)
        for rdata in rrset:
            try:
                v4 = ipaddress.IPv4Address(rdata.address)
            except (AttributeError, ValueError) as err:
                logger.error("proxy: bad a record: %s", err)
                return None
            mapped = self.map_address(v4)
            result.add(
                dns.rdata.from_text(rrset.rdclass, dns.rdatatype.AAAA, str(mapped)),
                ttl,
            )
        return result

    def perform(
        self,
        orig_req: dns.message.Message,
        orig_resp: dns.message.Message | None,
        upstreams: Sequence[Upstream],
        exchange: Exchange,
    ) -> Upstream | None:
        """Run DNS64 for orig_req if needed, using exchange to query upstreams.

        Returns the upstream that answered the A request when orig_resp was
        synthesized, or None.
        """
        if orig_resp is None:
            return None

        dns64_req = self.check(orig_req, orig_resp)
        if dns64_req is None:
            return None

        host = orig_req.question[0].name.to_text()
        logger.debug("proxy: received an empty aaaa response for %r, checking dns64", host)

        try:
            dns64_resp, upstream = exchange(dns64_req, upstreams)
        except Exception as err:
            logger.error("proxy: dns64 request failed: %s", err)
            return None

        if dns64_resp is not None and self.synth(orig_req, orig_resp, dns64_resp):
            logger.debug("dnsforward: synthesized aaaa response for %r", host)
            return upstream
        return None


def setup_dns64(use_dns64: bool, prefixes: Iterable[Any] | None) -> DNS64:
    """Return DNS64 state for the configuration.

    With DNS64 enabled and no prefixes the Well-Known Prefix is used.  Each
    prefix must be IPv6 and at most 96 bits long; ConfigError is raised
    otherwise.
    """
    if not use_dns64:
        return DNS64()

    prefixes = list(prefixes or [])
    if not prefixes:
        return DNS64([DNS64_WELL_KNOWN_PREF])

    prefs: list[ipaddress.IPv6Network] = []
    for index, pref in enumerate(prefixes):
        try:
            net = ipaddress.ip_network(pref, strict=False)
        except ValueError as err:
            raise ConfigError(f"prefix at index {index}: {err}") from err
        if net.version != 6:
            raise ConfigError(
                f"prefix at index {index}: {str(pref)!r} is not an IPv6 prefix"
            )
        if net.prefixlen > MAX_NAT64_PREFIX_BIT_LEN:
            raise ConfigError(
                f"prefix at index {index}: {str(pref)!r} is too long for DNS64"
            )
        prefs.append(net)
    return DNS64(prefs)