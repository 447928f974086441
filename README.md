# dnsrelay

`dnsrelay` is a library of the parts a forwarding DNS proxy is built from.
It works on `dnspython` messages and covers what happens between receiving
a query and writing the answer back.

## What is in it

- **Request state** (`dnsrelay.dns_context`): `DNSContext` holds one
  request, its response and the upstream used. `DNSContext.scrub()` adds an
  OPT record to the response when the request had one, and truncates the
  response to the size the client accepts, setting TC if needed.
  `Upstream` is the abstract base class for servers that requests are
  forwarded to (`exchange(req)` and `address()`). `Proto` and `DoQVersion`
  are enums for the transport and the DNS-over-QUIC version.
- **Response cache** (`dnsrelay.cache`): `DNSCache` is a byte-bounded LRU
  cache of packed responses keyed by question type, class and lower-cased
  name. With `with_ecs=True` it also keeps a subnet-keyed part that is
  searched by longest prefix (`get_with_subnet`, `set_with_subnet`).
  `cache_ttl()` follows RFC 2308 for negative answers and caps SERVFAIL TTLs
  at 30 seconds. Cached responses never include OPT records, and include
  DNSSEC records only when the request's DO bit asks for them. With
  `optimistic=True`, expired entries are still returned, with a TTL of
  10 seconds.
- **Optimistic refresh** (`dnsrelay.optimistic`): `OptimisticResolver`
  refreshes expired cache entries through a `CachingResolver`. It never runs
  two refreshes for the same key at the same time.
- **DNS64** (`dnsrelay.dns64`): `setup_dns64()` builds a `DNS64` object, and
  `DNS64.perform()` synthesizes RFC 6147 AAAA answers from A answers using
  NAT64 prefixes. The Well-Known Prefix `64:ff9b::/96` is used when no prefix
  is configured. Prefixes that are not IPv6, or are longer than 96 bits,
  raise `ConfigError`.
- **Fastest address** (`dnsrelay.fastest`): `FastestAddr.exchange_fastest()`
  sends the query to every upstream and dials each returned IP over TCP
  (ports 80 and 443 by default). It answers with only the address that
  connected first. Ping results are cached for ten minutes.
- **Upstream exchange** (`dnsrelay.exchange`): `UpstreamExchanger`
  load-balances over upstreams sorted by a running average of their
  round-trip times, or uses parallel or fastest-address mode.
  `exchange_all()` and `exchange_parallel()` query all upstreams
  concurrently. When no upstream answers, `UpstreamsError` is raised.
- **Bogus NXDOMAIN** (`dnsrelay.bogus`): `is_bogus_nxdomain()` reports A/AAAA
  answers that contain an address from a given set of networks.
- **Helpers** (`dnsrelay.helpers`): empty responses with a given rcode and a
  synthetic SOA (`gen_empty_message`, `gen_empty_no_error`), AAAA
  suppression (`check_disabled_aaaa_request`), and reading and setting the
  EDNS Client Subnet option (`ecs_from_msg`, `set_ecs`).
- **Configuration** (`dnsrelay.config`, `dnsrelay.options`): `Config` with
  `validate()`, and `listen_socket_options()` for `SO_REUSEADDR`. In
  `dnsrelay.options`:
  - `parse_args()` reads options from an argument list on top of a YAML file
    given with `--config-path`; `load_config_file()` reads such a file alone.
  - `load_servers_list()` expands server lists that may be files.
  - `build_listen_addresses()` works out the listen addresses for each
    transport.
  - `parse_bogus_nxdomain()`, `parse_dns64_prefixes()`, `parse_edns_addr()`
    and `tls_versions()` convert option values.
- **Misc** (`dnsrelay.netutil`, `dnsrelay.errors`): `sort_ip_addrs()` sorts
  addresses in place by family preference. `is_epipe()` detects broken-pipe
  errors, including ones in the exception chain.

## Requirements

Python 3.10 or later, `dnspython` and `PyYAML`.

## Examples

Answer an AAAA query with an empty NOERROR response when IPv6 is disabled:

```python
import dns.message
import dns.rdatatype

from dnsrelay.dns_context import DNSContext
from dnsrelay.helpers import check_disabled_aaaa_request

ctx = DNSContext(req=dns.message.make_query("example.org.", dns.rdatatype.AAAA))
if check_disabled_aaaa_request(ctx, True):
    print(ctx.res)  # NOERROR, no answers, SOA in the authority section
```

Cache a response and read it back:

```python
from dnsrelay.cache import DNSCache, cache_ttl, respect_ttl_overrides

cache = DNSCache(size=4096)
cache.set(response, None)               # stored only if cache_ttl(response) > 0
item, expired, key = cache.get(request)
ttl = respect_ttl_overrides(cache_ttl(response), 20, 40)  # clamp to [20, 40]
```

Sort resolved addresses so that the preferred family comes first:

```python
from dnsrelay.netutil import sort_ip_addrs

addrs = ["1.2.3.4", "2a00::1234", None]
sort_ip_addrs(addrs, True)   # sorts in place: ["2a00::1234", "1.2.3.4", None]
```

Errors are raised as exceptions. An invalid proxy configuration raises
`dnsrelay.config.ConfigError`, and bad option values raise
`dnsrelay.options.OptionsError`.

## What it does not do

`dnsrelay` is a library and installs no command. It has no listeners, so it
does not serve DNS over UDP, TCP, TLS, HTTPS, QUIC or DNSCrypt by itself. It
ships no concrete upstream clients: you subclass `Upstream` to forward
requests. It also does not rate-limit clients. `Config` and
`dnsrelay.options` only describe and check such settings.

## Tests

The test suite uses pytest. Install the `test` extra and run `pytest`.