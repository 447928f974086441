"""Helpers for building synthetic responses and handling ECS."""

from __future__ import annotations

import ipaddress
import logging
from typing import Any

import dns.edns
import dns.flags
import dns.message
import dns.name
import dns.opcode
import dns.rdataclass
import dns.rdatatype
import dns.rdtypes.ANY.SOA
import dns.rrset

from dnsrelay.dns_context import DNSContext

logger = logging.getLogger(__name__)

RETRY_NO_ERROR = 60

_NEGATIVE_CACHING_NS = "fake-for-negative-caching.invalid."
_DEFAULT_ECS_V4 = 24
_DEFAULT_ECS_V6 = 56
_ECS_UDP_SIZE = 4096

_Network = ipaddress.IPv4Network | ipaddress.IPv6Network


def _reply_to(request: dns.message.Message, rcode: int) -> dns.message.Message:
    resp = dns.message.Message(id=request.id)
    resp.flags = dns.flags.QR
    resp.set_opcode(request.opcode())
    if request.opcode() == dns.opcode.QUERY:
        resp.flags |= request.flags & (dns.flags.RD | dns.flags.CD)
    resp.set_rcode(rcode)
    resp.question = [
        dns.rrset.RRset(q.name, q.rdclass, q.rdtype) for q in request.question[:1]
    ]
    return resp


def check_disabled_aaaa_request(ctx: DNSContext, ipv6_disabled: bool) -> bool:
    """Answer an AAAA request with an empty NOERROR if IPv6 is disabled."""
    question = ctx.req.question[0]
    if ipv6_disabled and question.rdtype == dns.rdatatype.AAAA:
        logger.debug(
            "IPv6 is disabled. Reply with NoError to %s AAAA request", question.name
        )
        ctx.res = gen_empty_no_error(ctx.req)
        return True
    return False


def gen_empty_message(
    request: dns.message.Message, rcode: int, retry: int
) -> dns.message.Message:
    """Return an empty response with rcode and a SOA in the authority section."""
    resp = _reply_to(request, rcode)
    resp.flags |= dns.flags.RA
    resp.authority = gen_soa(request, retry)
    return resp


def gen_empty_no_error(request: dns.message.Message) -> dns.message.Message:
    """Return an empty NOERROR response."""
    return gen_empty_message(request, dns.rcode.NOERROR, RETRY_NO_ERROR)


def gen_soa(request: dns.message.Message, retry: int) -> list[dns.rrset.RRset]:
    """Return the authority section used for negative caching."""
    zone = request.question[0].name if request.question else dns.name.root
    zone_text = zone.to_text()
    mbox = "hostmaster."
    if zone_text and not zone_text.startswith("."):
        mbox += zone_text
    soa = dns.rdtypes.ANY.SOA.SOA(
        dns.rdataclass.IN,
        dns.rdatatype.SOA,
        dns.name.from_text(_NEGATIVE_CACHING_NS),
        dns.name.from_text(mbox),
        100500,
        1800,
        retry,
        604800,
        86400,
    )
    rrset = dns.rrset.RRset(zone, dns.rdataclass.IN, dns.rdatatype.SOA)
    rrset.add(soa, 10)
    return [rrset]


def ecs_from_msg(msg: dns.message.Message) -> tuple[_Network | None, int]:
    """Return the EDNS Client Subnet of msg and its scope, or (None, 0)."""
    if msg.edns < 0:
        return None, 0
    for option in msg.options:
        if not isinstance(option, dns.edns.ECSOption):
            continue
        if option.family == 1:
            ip: Any = ipaddress.IPv4Address(option.address)
        elif option.family == 2:
            ip = ipaddress.IPv6Address(option.address)
        else:
            continue
        subnet = ipaddress.ip_network(f"{ip}/{option.srclen}", strict=False)
        return subnet, option.scopelen
    return None, 0


def set_ecs(msg: dns.message.Message, ip: Any, scope: int) -> _Network:
    """Add an EDNS Client Subnet option for ip to msg and return the subnet."""
    addr = ipaddress.ip_address(ip)
    if addr.version == 6 and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    prefix = _DEFAULT_ECS_V4 if addr.version == 4 else _DEFAULT_ECS_V6
    subnet = ipaddress.ip_network(f"{addr}/{prefix}", strict=False)
    option = dns.edns.ECSOption(str(subnet.network_address), prefix, scope)

    if msg.edns >= 0:
        msg.use_edns(
            msg.edns, msg.ednsflags, msg.payload, options=[*msg.options, option]
        )
    else:
        msg.use_edns(0, 0, _ECS_UDP_SIZE, options=[option])
    return subnet