import ipaddress
import struct
from concurrent.futures import ThreadPoolExecutor
from unittest import mock

import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset
import pytest

from dnsrelay.cache import (
    OPTIMISTIC_TTL,
    SERVFAIL_MAX_CACHE_TTL,
    CacheItem,
    DNSCache,
    cache_ttl,
    calculate_ttl,
    filter_msg,
    is_dnssec,
    msg_to_key,
    msg_to_key_with_subnet,
    respect_ttl_overrides,
)
from dnsrelay.dns_context import Upstream

TEST_CACHE_SIZE = 4096
TEST_UPS_ADDR = "https://upstream.example"
NOW = 1_700_000_000.0


class FakeUpstream(Upstream):
    def exchange(self, req):
        raise AssertionError("exchange must not be called")

    def address(self):
        return TEST_UPS_ADDR


UPSTREAM = FakeUpstream()


def rr(name, rdtype, ttl, *values):
    return dns.rrset.from_text(name, ttl, "IN", rdtype, *values)


def query(name, rdtype, dnssec=False):
    return dns.message.make_query(name, rdtype, want_dnssec=dnssec)


def reply(name, rdtype, answer=(), authority=(), additional=(), rcode=dns.rcode.NOERROR):
    msg = dns.message.Message()
    msg.flags = dns.flags.QR
    msg.question = [
        dns.rrset.RRset(dns.name.from_text(name), dns.rdataclass.IN, rdtype)
    ]
    msg.answer = list(answer)
    msg.authority = list(authority)
    msg.additional = list(additional)
    msg.set_rcode(rcode)
    return msg


def test_cache_do():
    cache = DNSCache(TEST_CACHE_SIZE)
    resp = reply("google.com.", dns.rdatatype.A, [rr("google.com.", "A", 3600, "8.8.8.8")])
    resp.use_edns(0, dns.flags.DO, 4096)
    cache.set(resp, UPSTREAM)

    request = query("google.com.", dns.rdatatype.A)
    item, expired, key = cache.get(request)
    assert expired is False
    assert key == msg_to_key(request)
    assert item is not None
    assert item.msg.edns < 0

    request_do = query("google.com.", dns.rdatatype.A, dnssec=True)
    item, expired, key = cache.get(request_do)
    assert expired is False
    assert key == msg_to_key(request_do)
    assert item.upstream_addr == TEST_UPS_ADDR


def test_cache_cname():
    cache = DNSCache(TEST_CACHE_SIZE)
    cname = rr("google.com.", "CNAME", 3600, "test.google.com.")
    resp = reply("google.com.", dns.rdatatype.A, [cname])
    cache.set(resp, UPSTREAM)

    request = query("google.com.", dns.rdatatype.A)
    item, expired, _ = cache.get(request)
    assert item is None
    assert expired is False

    resp.answer.append(rr("google.com.", "A", 3600, "8.8.8.8"))
    cache.set(resp, UPSTREAM)

    item, expired, key = cache.get(request)
    assert expired is False
    assert key == msg_to_key(request)
    assert item.upstream_addr == TEST_UPS_ADDR


def test_cache_uncacheable():
    cache = DNSCache(TEST_CACHE_SIZE)
    request = query("google.com.", dns.rdatatype.A)
    resp = reply("google.com.", dns.rdatatype.A, rcode=dns.rcode.BADALG)
    cache.set(resp, UPSTREAM)

    item, expired, _ = cache.get(request)
    assert item is None
    assert expired is False


@pytest.mark.parametrize(
    ("stored", "ttl", "qname", "qtype", "hit"),
    [
        ("google.com.", 3600, "google.com.", dns.rdatatype.A, True),
        ("google.com.", 3600, "google.com.", dns.rdatatype.MX, False),
        ("gOOgle.com.", 3600, "gOOgle.com.", dns.rdatatype.A, True),
        ("gOOgle.com.", 3600, "google.com.", dns.rdatatype.A, True),
        ("gOOgle.com.", 3600, "GOOGLE.COM.", dns.rdatatype.A, True),
        ("gOOgle.com.", 3600, "gOOgle.com.", dns.rdatatype.MX, False),
        ("gOOgle.com.", 3600, "google.com.", dns.rdatatype.MX, False),
        ("gOOgle.com.", 3600, "GOOGLE.COM.", dns.rdatatype.MX, False),
        ("gOOgle.com.", 0, "google.com.", dns.rdatatype.A, False),
        ("gOOgle.com.", 0, "google.com.", dns.rdatatype.MX, False),
    ],
)
def test_cache_lookups(stored, ttl, qname, qtype, hit):
    cache = DNSCache(TEST_CACHE_SIZE)
    answer = rr("google.com.", "A", ttl, "8.8.8.8")
    cache.set(reply(stored, dns.rdatatype.A, [answer]), UPSTREAM)

    item, expired, _ = cache.get(query(qname, qtype))
    assert expired is False
    assert (item is not None) is hit
    if hit:
        assert item.msg.answer == [rr("google.com.", "A", 3600, "8.8.8.8")]
        assert item.msg.answer[0].ttl == 3600
        assert item.msg.question[0].name == dns.name.from_text(qname)


@pytest.mark.parametrize(
    ("ttl", "optimistic", "want_ttl"),
    [(60, False, 60), (0, False, 0), (60, True, 60), (0, True, OPTIMISTIC_TTL)],
    ids=["realistic_hit", "realistic_miss", "optimistic_hit", "optimistic_expired"],
)
def test_cache_expired(ttl, optimistic, want_ttl):
    cache = DNSCache(TEST_CACHE_SIZE, optimistic=optimistic)
    resp = reply("google.com.", dns.rdatatype.A, [rr("google.com.", "A", ttl, "8.8.8.8")])
    request = query("google.com.", dns.rdatatype.A)

    with mock.patch("time.time", return_value=NOW):
        data = CacheItem(resp, TEST_UPS_ADDR, ttl).pack()
        item, expired = cache.unpack_item(data, request)

    assert expired is (ttl == 0)
    if want_ttl:
        assert item.msg.answer[0].ttl == want_ttl
        assert item.upstream_addr == TEST_UPS_ADDR
    else:
        assert item is None


def test_get_expired_entry_is_removed():
    cache = DNSCache(TEST_CACHE_SIZE)
    resp = reply("google.com.", dns.rdatatype.A, [rr("google.com.", "A", 1, "8.8.8.8")])
    request = query("google.com.", dns.rdatatype.A)

    with mock.patch("time.time", return_value=NOW):
        cache.set(resp, UPSTREAM)
        item, expired, _ = cache.get(request)
        assert item is not None
        assert expired is False

    with mock.patch("time.time", return_value=NOW + 2):
        item, expired, key = cache.get(request)
        assert (item, expired, key) == (None, True, msg_to_key(request))
        item, expired, _ = cache.get(request)
        assert (item, expired) == (None, False)


def test_get_expired_optimistic_keeps_entry():
    cache = DNSCache(TEST_CACHE_SIZE, optimistic=True)
    resp = reply("google.com.", dns.rdatatype.A, [rr("google.com.", "A", 1, "8.8.8.8")])
    request = query("google.com.", dns.rdatatype.A)

    with mock.patch("time.time", return_value=NOW):
        cache.set(resp, UPSTREAM)
    with mock.patch("time.time", return_value=NOW + 5):
        first, expired, _ = cache.get(request)
        second, _, _ = cache.get(request)

    assert expired is True
    assert first.msg.answer[0].ttl == OPTIMISTIC_TTL
    assert second.upstream_addr == TEST_UPS_ADDR


def test_unpack_item_bad_data():
    cache = DNSCache(TEST_CACHE_SIZE)
    request = query("google.com.", dns.rdatatype.A)
    assert cache.unpack_item(b"\x00\x01", request) == (None, False)
    empty = struct.pack("!IH", 0xFFFFFFFF, 0)
    assert cache.unpack_item(empty, request) == (None, False)
    garbage = struct.pack("!IH", 0xFFFFFFFF, 3) + b"\x01\x02\x03"
    assert cache.unpack_item(garbage, request) == (None, False)


def test_cache_concurrent():
    cache = DNSCache(TEST_CACHE_SIZE)
    hosts = {
        "yandex.com.": "213.180.204.62",
        "google.com.": "8.8.8.8",
        "www.google.com.": "8.8.4.4",
        "youtube.com.": "173.194.221.198",
        "car.ru.": "37.220.161.35",
        "cat.ru.": "192.56.231.67",
    }

    def set_and_get(host, ip):
        msg = reply(host, dns.rdatatype.A, [rr(host, "A", 60, ip)])
        cache.set(msg, UPSTREAM)
        results = []
        for _ in range(2):
            item, expired, key = cache.get(msg)
            results.append(
                item is not None
                and not expired
                and key == msg_to_key(msg)
                and item.msg.answer == msg.answer
            )
        return results

    with ThreadPoolExecutor(max_workers=len(hosts)) as pool:
        outcomes = list(pool.map(lambda pair: set_and_get(*pair), hosts.items()))

    assert outcomes == [[True, True]] * len(hosts)


def test_subnet():
    cache = DNSCache(TEST_CACHE_SIZE, with_ecs=True)
    ip1234 = ipaddress.ip_address("1.2.3.4")
    ip2234 = ipaddress.ip_address("2.2.3.4")
    req = query("example.com.", dns.rdatatype.A)

    def net(ip, prefix):
        return ipaddress.ip_network(f"{ip}/{prefix}", strict=False)

    item, expired, _ = cache.get_with_subnet(req, net(ip1234, 24))
    assert (item, expired) == (None, False)

    cache.set_with_subnet(
        reply("example.com.", dns.rdatatype.A, [rr("example.com.", "A", 60, "1.1.1.1")]),
        UPSTREAM,
        net(ip1234, 16),
    )

    item, expired, key = cache.get_with_subnet(req, net(ip2234, 24))
    assert expired is False
    assert key == msg_to_key_with_subnet(req, ip2234, 0)
    assert item is None

    cache.set_with_subnet(
        reply("example.com.", dns.rdatatype.A, [rr("example.com.", "A", 60, "2.2.2.2")]),
        UPSTREAM,
        net(ip2234, 16),
    )
    cache.set_with_subnet(
        reply("example.com.", dns.rdatatype.A, [rr("example.com.", "A", 60, "3.3.3.3")]),
        UPSTREAM,
        None,
    )

    cases = [
        (ip1234, msg_to_key_with_subnet(req, net(ip1234, 16).network_address, 16), "1.1.1.1"),
        (ip2234, msg_to_key_with_subnet(req, net(ip2234, 16).network_address, 16), "2.2.2.2"),
        (ipaddress.ip_address("3.2.3.4"), msg_to_key_with_subnet(req, ip1234, 0), "3.3.3.3"),
    ]
    for ip, want_key, want_addr in cases:
        item, expired, key = cache.get_with_subnet(req, net(ip, 24))
        assert expired is False
        assert key == want_key
        assert item.msg.answer[0].rdtype == dns.rdatatype.A
        assert item.msg.answer[0][0].address == want_addr


def test_cache_ttl_truncated_and_questions():
    msg = reply("a.example.", dns.rdatatype.A, [rr("a.example.", "A", 60, "1.2.3.4")])
    assert cache_ttl(msg) == 60
    msg.flags |= dns.flags.TC
    assert cache_ttl(msg) == 0
    assert cache_ttl(None) == 0
    no_question = dns.message.Message()
    assert cache_ttl(no_question) == 0


_HOST = "AN.EXAMPLE."
_ANOTHER = "ANOTHER.EXAMPLE."
_SOME_TTL = 3600


def _cname():
    return rr(_HOST, "CNAME", _SOME_TTL, "TRIPPLE.XX.")


def _soa():
    return rr("XX.", "SOA", _SOME_TTL, "NS1.XX. HOSTMASTER.NS1.XX. 0 0 0 0 0")


def _ns():
    return rr("XX.", "NS", _SOME_TTL, "NS1.XX.", "NS2.XX.")


def _glue():
    return [rr("NS1.XX.", "A", _SOME_TTL, "127.0.0.2"), rr("NS2.XX.", "A", _SOME_TTL, "127.0.0.3")]


@pytest.mark.parametrize(
    ("build", "want"),
    [
        pytest.param(
            lambda: reply(_HOST, dns.rdatatype.A, [_cname()], [_soa(), _ns()], _glue(), dns.rcode.NXDOMAIN),
            0,
            id="rfc2308_nxdomain_response_type_1",
        ),
        pytest.param(
            lambda: reply(_HOST, dns.rdatatype.A, [_cname()], [_soa()], rcode=dns.rcode.NXDOMAIN),
            _SOME_TTL,
            id="rfc2308_nxdomain_response_type_2",
        ),
        pytest.param(
            lambda: reply(_HOST, dns.rdatatype.A, [_cname()], rcode=dns.rcode.NXDOMAIN),
            0,
            id="rfc2308_nxdomain_response_type_3",
        ),
        pytest.param(
            lambda: reply(_HOST, dns.rdatatype.A, [_cname()], [_ns()], _glue(), dns.rcode.NXDOMAIN),
            0,
            id="rfc2308_nxdomain_response_type_4",
        ),
        pytest.param(
            lambda: reply(_HOST, dns.rdatatype.A, [_cname()], [_ns()], _glue()),
            0,
            id="rfc2308_nxdomain_referral_response",
        ),
        pytest.param(
            lambda: reply(_ANOTHER, dns.rdatatype.A, [], [_soa(), _ns()], _glue()),
            0,
            id="rfc2308_nodata_response_type_1",
        ),
        pytest.param(
            lambda: reply(_ANOTHER, dns.rdatatype.A, [], [_soa()]),
            _SOME_TTL,
            id="rfc2308_nodata_response_type_2",
        ),
        pytest.param(
            lambda: reply(_ANOTHER, dns.rdatatype.A),
            0,
            id="rfc2308_nodata_response_type_3",
        ),
        pytest.param(
            lambda: reply(_ANOTHER, dns.rdatatype.A, [], [_ns()], _glue()),
            0,
            id="rfc2308_nodata_referral_response",
        ),
        pytest.param(
            lambda: reply(_ANOTHER, dns.rdatatype.A, rcode=dns.rcode.SERVFAIL),
            SERVFAIL_MAX_CACHE_TTL,
            id="servfail_response",
        ),
    ],
)
def test_cache_ttl_negative(build, want):
    assert cache_ttl(build()) == want


def test_calculate_ttl():
    msg = reply(
        "a.example.",
        dns.rdatatype.A,
        [rr("a.example.", "A", 300, "1.2.3.4")],
        [_soa()],
        [rr("NS1.XX.", "A", 120, "127.0.0.2")],
    )
    assert calculate_ttl(msg) == 120

    failed = reply("a.example.", dns.rdatatype.A, [rr("a.example.", "A", 300, "1.2.3.4")], rcode=dns.rcode.SERVFAIL)
    assert calculate_ttl(failed) == SERVFAIL_MAX_CACHE_TTL

    assert calculate_ttl(reply("a.example.", dns.rdatatype.A)) == 0
    zero = reply("a.example.", dns.rdatatype.A, [rr("a.example.", "A", 0, "1.2.3.4")])
    assert calculate_ttl(zero) == 0


@pytest.mark.parametrize(
    ("ttl", "low", "high", "want"),
    [(10, 20, 40, 20), (60, 20, 40, 40), (30, 20, 40, 30), (100, 0, 0, 100), (5, 0, 0, 5)],
)
def test_respect_ttl_overrides(ttl, low, high, want):
    assert respect_ttl_overrides(ttl, low, high) == want


def test_msg_to_key():
    assert msg_to_key(query("google.com.", dns.rdatatype.A)) == b"\x00\x01\x00\x01google.com."
    assert msg_to_key(query("GOOGLE.com.", dns.rdatatype.A)) == msg_to_key(
        query("google.com.", dns.rdatatype.A)
    )
    assert msg_to_key(query("google.com.", dns.rdatatype.MX)) == b"\x00\x0f\x00\x01google.com."


def test_msg_to_key_with_subnet():
    req = query("Example.com.", dns.rdatatype.A)
    assert msg_to_key_with_subnet(req, None, 0) == b"\x00\x01\x00\x01\x00example.com."
    assert msg_to_key_with_subnet(req, ipaddress.ip_address("1.2.3.4"), 0) == (
        b"\x00\x01\x00\x01\x00example.com."
    )
    assert msg_to_key_with_subnet(req, ipaddress.ip_address("1.2.0.0"), 16) == (
        b"\x00\x01\x00\x01\x10\x01\x02\x00\x00example.com."
    )


def test_is_dnssec():
    sig = rr("example.com.", "RRSIG", 300, "A 8 2 300 20300101000000 20200101000000 12345 example.com. AAAA")
    assert is_dnssec(sig) is True
    assert is_dnssec(rr("example.com.", "NSEC", 300, "next.example.com. A RRSIG")) is True
    assert is_dnssec(rr("example.com.", "A", 300, "1.2.3.4")) is False


def _signed_message():
    msg = reply(
        "example.com.",
        dns.rdatatype.A,
        [
            rr("example.com.", "A", 300, "1.2.3.4"),
            rr("example.com.", "RRSIG", 300, "A 8 2 300 20300101000000 20200101000000 12345 example.com. AAAA"),
        ],
        [rr("example.com.", "NSEC", 300, "next.example.com. A RRSIG")],
    )
    return msg


def test_filter_msg_without_do():
    src = _signed_message()
    dst = dns.message.Message()
    dst.flags = dns.flags.QR | dns.flags.AD
    filter_msg(dst, src, False, False, 5)

    assert [r.rdtype for r in dst.answer] == [dns.rdatatype.A]
    assert dst.answer[0].ttl == 5
    assert dst.authority == []
    assert not dst.flags & dns.flags.AD
    assert src.answer[0].ttl == 300


def test_filter_msg_with_do():
    src = _signed_message()
    dst = dns.message.Message()
    dst.flags = dns.flags.QR | dns.flags.AD
    filter_msg(dst, src, False, True, 0)

    assert [r.rdtype for r in dst.answer] == [dns.rdatatype.A, dns.rdatatype.RRSIG]
    assert [r.rdtype for r in dst.authority] == [dns.rdatatype.NSEC]
    assert dst.answer[0].ttl == 300
    assert dst.flags & dns.flags.AD


def test_get_filters_dnssec_by_do_bit():
    cache = DNSCache(TEST_CACHE_SIZE)
    cache.set(_signed_message(), UPSTREAM)

    plain, _, _ = cache.get(query("example.com.", dns.rdatatype.A))
    signed, _, _ = cache.get(query("example.com.", dns.rdatatype.A, dnssec=True))

    assert [r.rdtype for r in plain.msg.answer] == [dns.rdatatype.A]
    assert [r.rdtype for r in signed.msg.answer] == [dns.rdatatype.A, dns.rdatatype.RRSIG]


def test_cache_item_from_response():
    good = reply("a.example.", dns.rdatatype.A, [rr("a.example.", "A", 60, "1.2.3.4")])
    item = CacheItem.from_response(good, UPSTREAM)
    assert (item.ttl, item.upstream_addr) == (60, TEST_UPS_ADDR)
    assert CacheItem.from_response(good, None).upstream_addr == ""
    bad = reply("a.example.", dns.rdatatype.A, [rr("a.example.", "A", 0, "1.2.3.4")])
    assert CacheItem.from_response(bad, UPSTREAM) is None


def test_clear_items():
    cache = DNSCache(TEST_CACHE_SIZE, with_ecs=True)
    msg = reply("a.example.", dns.rdatatype.A, [rr("a.example.", "A", 60, "1.2.3.4")])
    subnet = ipaddress.ip_network("10.0.0.0/24")
    cache.set(msg, UPSTREAM)
    cache.set_with_subnet(msg, UPSTREAM, subnet)

    cache.clear_items()
    assert cache.get(msg)[0] is None
    assert cache.get_with_subnet(msg, subnet)[0] is not None

    cache.clear_items_with_subnet()
    assert cache.get_with_subnet(msg, subnet)[0] is None


def test_clear_items_with_subnet_without_ecs():
    cache = DNSCache(TEST_CACHE_SIZE)
    msg = reply("a.example.", dns.rdatatype.A, [rr("a.example.", "A", 60, "1.2.3.4")])
    cache.set(msg, UPSTREAM)
    cache.clear_items_with_subnet()
    assert cache.get(msg)[0] is not None
    assert cache.get_with_subnet(msg, ipaddress.ip_network("10.0.0.0/24")) == (None, False, None)


def test_cache_evicts_least_recently_used():
    cache = DNSCache(150)
    first = reply("a.example.", dns.rdatatype.A, [rr("a.example.", "A", 60, "1.2.3.4")])
    second = reply("b.example.", dns.rdatatype.A, [rr("b.example.", "A", 60, "1.2.3.5")])
    cache.set(first, UPSTREAM)
    cache.set(second, UPSTREAM)

    assert cache.get(first)[0] is None
    assert cache.get(second)[0].msg.answer == second.answer