import ipaddress
import ssl

import pytest

from dnsrelay.options import (
    Options,
    OptionsError,
    build_listen_addresses,
    load_config_file,
    load_servers_list,
    parse_args,
    parse_bogus_nxdomain,
    parse_dns64_prefixes,
    parse_edns_addr,
    tls_versions,
)


def test_load_servers_list_plain_addresses():
    sources = ["8.8.8.8:53", "tls://dns.example.com"]
    assert load_servers_list(sources) == sources


def test_load_servers_list_file_skips_comments(tmp_path):
    listing = tmp_path / "servers.txt"
    listing.write_text("# comment\n\n  1.1.1.1  \n! another\n9.9.9.9\n")
    result = load_servers_list(["8.8.8.8", str(listing)])
    assert result == ["8.8.8.8", "1.1.1.1", "9.9.9.9"]


def test_build_listen_addresses_defaults():
    addrs = build_listen_addresses(Options(), has_tls=False, has_dnscrypt=False)
    assert addrs["udp_listen_addr"] == [("0.0.0.0", 53)]
    assert addrs["tcp_listen_addr"] == [("0.0.0.0", 53)]
    assert addrs["tls_listen_addr"] is None
    assert addrs["dnscrypt_udp_listen_addr"] is None


def test_build_listen_addresses_zero_port_disables_plain():
    options = Options(listen_ports=[0], tls_listen_ports=[853])
    addrs = build_listen_addresses(options, has_tls=True, has_dnscrypt=False)
    assert addrs["udp_listen_addr"] is None
    assert addrs["tcp_listen_addr"] is None
    assert addrs["tls_listen_addr"] == [("0.0.0.0", 853)]


def test_build_listen_addresses_order_port_then_ip():
    options = Options(listen_addrs=["127.0.0.1", "::1"], listen_ports=[5353, 5354])
    addrs = build_listen_addresses(options, has_tls=False, has_dnscrypt=False)
    assert addrs["udp_listen_addr"] == [
        ("127.0.0.1", 5353),
        ("::1", 5353),
        ("127.0.0.1", 5354),
        ("::1", 5354),
    ]


def test_build_listen_addresses_encrypted_need_config():
    options = Options(tls_listen_ports=[853], dnscrypt_listen_ports=[443])
    without = build_listen_addresses(options, has_tls=False, has_dnscrypt=False)
    assert without["tls_listen_addr"] is None
    assert without["dnscrypt_tcp_listen_addr"] is None

    with_all = build_listen_addresses(options, has_tls=True, has_dnscrypt=True)
    assert with_all["dnscrypt_tcp_listen_addr"] == [("0.0.0.0", 443)]
    assert with_all["dnscrypt_udp_listen_addr"] == [("0.0.0.0", 443)]
    assert with_all["https_listen_addr"] is None


def test_build_listen_addresses_bad_ip():
    with pytest.raises(OptionsError):
        build_listen_addresses(
            Options(listen_addrs=["not-an-ip"]), has_tls=False, has_dnscrypt=False
        )


def test_parse_bogus_nxdomain_skips_invalid():
    networks = parse_bogus_nxdomain(["1.2.3.4", "10.0.0.0/8", "garbage"])
    assert networks == [
        ipaddress.ip_network("1.2.3.4/32"),
        ipaddress.ip_network("10.0.0.0/8"),
    ]


def test_parse_dns64_prefixes():
    assert parse_dns64_prefixes(["64:ff9b::/96"]) == [
        ipaddress.ip_network("64:ff9b::/96")
    ]
    with pytest.raises(OptionsError):
        parse_dns64_prefixes(["64:ff9b::"])
    with pytest.raises(OptionsError):
        parse_dns64_prefixes(["nonsense/96"])


def test_parse_edns_addr():
    enabled = Options(edns_addr="192.0.2.1", enable_edns_subnet=True)
    assert parse_edns_addr(enabled) == ipaddress.ip_address("192.0.2.1")
    disabled = Options(edns_addr="192.0.2.1", enable_edns_subnet=False)
    assert parse_edns_addr(disabled) is None
    with pytest.raises(OptionsError):
        parse_edns_addr(Options(edns_addr="bad", enable_edns_subnet=True))


def test_tls_versions():
    assert tls_versions(0, 0) == (ssl.TLSVersion.TLSv1, ssl.TLSVersion.TLSv1_3)
    assert tls_versions(1.2, 1.2) == (ssl.TLSVersion.TLSv1_2, ssl.TLSVersion.TLSv1_2)
    assert tls_versions(1.3, 1.0) == (ssl.TLSVersion.TLSv1_3, ssl.TLSVersion.TLSv1)


def test_parse_args_basic():
    options = parse_args(["-u", "1.1.1.1", "-u", "8.8.8.8", "-p", "5353", "--cache"])
    assert options.upstreams == ["1.1.1.1", "8.8.8.8"]
    assert options.listen_ports == [5353]
    assert options.cache is True
    assert options.refuse_any is False


def test_parse_args_explicit_bool_value():
    assert parse_args(["--cache=false"]).cache is False
    assert parse_args(["--insecure=true"]).insecure is True


def test_parse_args_errors():
    with pytest.raises(OptionsError):
        parse_args(["--no-such-flag"])
    with pytest.raises(OptionsError):
        parse_args(["-p", "abc"])
    with pytest.raises(OptionsError):
        parse_args(["--cache-min-ttl", "-5"])


def test_parse_args_version():
    options = parse_args(["-u", "1.1.1.1", "--version"])
    assert options.version is True
    assert options.upstreams == []


def test_load_config_file(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text(
        "upstream:\n  - 1.1.1.1\nlisten-ports: [5353]\ncache: true\n"
        "cache-size: 4096\ntls-min-version: 1.2\nunknown-key: 1\n"
    )
    options = load_config_file(str(config))
    assert options.upstreams == ["1.1.1.1"]
    assert options.listen_ports == [5353]
    assert options.cache is True
    assert options.cache_size_bytes == 4096
    assert options.tls_min_version == 1.2


def test_load_config_file_errors(tmp_path):
    with pytest.raises(OptionsError):
        load_config_file(str(tmp_path / "missing.yaml"))
    bad = tmp_path / "bad.yaml"
    bad.write_text("listen-ports: 53\n")
    with pytest.raises(OptionsError):
        load_config_file(str(bad))


def test_command_line_overrides_config(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("upstream: [1.1.1.1]\nratelimit: 10\n")
    options = parse_args([f"--config-path={config}", "-u", "9.9.9.9"])
    assert options.upstreams == ["9.9.9.9"]
    assert options.ratelimit == 10
    assert options.config_path == str(config)
    assert load_servers_list(options.upstreams) == ["9.9.9.9"]