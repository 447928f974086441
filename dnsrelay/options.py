"""Command-line and configuration-file options of the proxy."""

from __future__ import annotations

import argparse
import dataclasses
import ipaddress
import logging
import ssl
import sys
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

import yaml

logger = logging.getLogger(__name__)

DEFAULT_LISTEN_ADDR = "0.0.0.0"
DEFAULT_LISTEN_PORT = 53

_Address = tuple[str, int]
_Network = ipaddress.IPv4Network | ipaddress.IPv6Network

_LISTEN_KEYS = (
    "udp_listen_addr",
    "tcp_listen_addr",
    "tls_listen_addr",
    "https_listen_addr",
    "quic_listen_addr",
    "dnscrypt_udp_listen_addr",
    "dnscrypt_tcp_listen_addr",
)


class OptionsError(ValueError):
    """Raised when options cannot be read or make no sense."""


def _opt(
    kind: str,
    yaml_key: str | None,
    flags: Sequence[str],
    help_text: str,
) -> Any:
    metadata = {"kind": kind, "yaml": yaml_key, "flags": tuple(flags), "help": help_text}
    if kind.endswith("_list"):
        return field(default_factory=list, metadata=metadata)
    defaults = {"bool": False, "str": "", "int": 0, "uint": 0, "float": 0.0}
    return field(default=defaults[kind], metadata=metadata)


@dataclass
class Options:
    """Settings given in a YAML file or on the command line."""

    config_path: str = _opt(
        "str",
        None,
        ["--config-path"],
        "YAML configuration file; command-line options override its values.",
    )

    verbose: bool = _opt("bool", "verbose", ["-v", "--verbose"], "Verbose output.")
    log_output: str = _opt(
        "str", "output", ["-o", "--output"], "Path to the log file. Stdout if unset."
    )

    listen_addrs: list[str] = _opt(
        "str_list", "listen-addrs", ["-l", "--listen"], "Listening addresses."
    )
    listen_ports: list[int] = _opt(
        "int_list",
        "listen-ports",
        ["-p", "--port"],
        "Listening ports. Zero value disables TCP and UDP listeners.",
    )
    https_listen_ports: list[int] = _opt(
        "int_list", "https-port", ["-s", "--https-port"], "Ports for DNS-over-HTTPS."
    )
    tls_listen_ports: list[int] = _opt(
        "int_list", "tls-port", ["-t", "--tls-port"], "Ports for DNS-over-TLS."
    )
    quic_listen_ports: list[int] = _opt(
        "int_list", "quic-port", ["-q", "--quic-port"], "Ports for DNS-over-QUIC."
    )
    dnscrypt_listen_ports: list[int] = _opt(
        "int_list", "dnscrypt-port", ["-y", "--dnscrypt-port"], "Ports for DNSCrypt."
    )

    tls_cert_path: str = _opt(
        "str", "tls-crt", ["-c", "--tls-crt"], "File with the certificate chain."
    )
    tls_key_path: str = _opt(
        "str", "tls-key", ["-k", "--tls-key"], "File with the private key."
    )
    tls_min_version: float = _opt(
        "float", "tls-min-version", ["--tls-min-version"], "Minimum TLS version."
    )
    tls_max_version: float = _opt(
        "float", "tls-max-version", ["--tls-max-version"], "Maximum TLS version."
    )
    insecure: bool = _opt(
        "bool", "insecure", ["--insecure"], "Disable TLS certificate validation."
    )
    dnscrypt_config_path: str = _opt(
        "str", "dnscrypt-config", ["-g", "--dnscrypt-config"], "DNSCrypt config file."
    )
    http3: bool = _opt("bool", "http3", ["--http3"], "Enable HTTP/3 support.")

    upstreams: list[str] = _opt(
        "str_list",
        "upstream",
        ["-u", "--upstream"],
        "An upstream server or a file listing them; may be repeated.",
    )
    bootstrap_dns: list[str] = _opt(
        "str_list", "bootstrap", ["-b", "--bootstrap"], "Bootstrap DNS for DoH and DoT."
    )
    fallbacks: list[str] = _opt(
        "str_list",
        "fallback",
        ["-f", "--fallback"],
        "Fallback resolvers or a file listing them; may be repeated.",
    )
    private_rdns_upstreams: list[str] = _opt(
        "str_list",
        "private-rdns-upstream",
        ["--private-rdns-upstream"],
        "Upstreams for reverse lookups of private addresses.",
    )
    all_servers: bool = _opt(
        "bool", "all-servers", ["--all-servers"], "Query all upstreams in parallel."
    )
    fastest_address: bool = _opt(
        "bool", "fastest-addr", ["--fastest-addr"], "Answer with the fastest IP only."
    )

    cache: bool = _opt("bool", "cache", ["--cache"], "Enable the DNS cache.")
    cache_size_bytes: int = _opt(
        "int", "cache-size", ["--cache-size"], "Cache size in bytes. Default: 64k."
    )
    cache_min_ttl: int = _opt(
        "uint", "cache-min-ttl", ["--cache-min-ttl"], "Minimum TTL of cached entries."
    )
    cache_max_ttl: int = _opt(
        "uint", "cache-max-ttl", ["--cache-max-ttl"], "Maximum TTL of cached entries."
    )
    cache_optimistic: bool = _opt(
        "bool", "cache-optimistic", ["--cache-optimistic"], "Enable optimistic cache."
    )

    ratelimit: int = _opt(
        "int", "ratelimit", ["-r", "--ratelimit"], "Requests per second limit."
    )
    refuse_any: bool = _opt(
        "bool", "refuse-any", ["--refuse-any"], "Refuse ANY requests."
    )

    enable_edns_subnet: bool = _opt(
        "bool", "edns", ["--edns"], "Use the EDNS Client Subnet extension."
    )
    edns_addr: str = _opt(
        "str", "edns-addr", ["--edns-addr"], "EDNS Client Address to send."
    )

    dns64: bool = _opt("bool", "dns64", ["--dns64"], "Act as a DNS64 server.")
    dns64_prefix: list[str] = _opt(
        "str_list", "dns64-prefix", ["--dns64-prefix"], "DNS64 prefix; may be repeated."
    )

    ipv6_disabled: bool = _opt(
        "bool",
        "ipv6-disabled",
        ["--ipv6-disabled"],
        "Answer AAAA requests with an empty NOERROR response.",
    )
    bogus_nxdomain: list[str] = _opt(
        "str_list",
        "bogus-nxdomain",
        ["--bogus-nxdomain"],
        "Turn answers with these IPs or CIDRs into NXDOMAIN; may be repeated.",
    )
    udp_buffer_size: int = _opt(
        "int", "udp-buf-size", ["--udp-buf-size"], "UDP buffer size in bytes."
    )
    max_workers: int = _opt(
        "int",
        "max-go-routines",
        ["--max-go-routines"],
        "Maximum number of concurrent request workers.",
    )
    version: bool = _opt("bool", "version", ["--version"], "Print the version.")


def _coerce(kind: str, value: Any, name: str) -> Any:
    """Check value read from YAML against kind and convert it."""
    if kind.endswith("_list"):
        if not isinstance(value, list):
            raise OptionsError(f"{name}: expected a list, got {value!r}")
        item_kind = kind[: -len("_list")]
        return [_coerce(item_kind, item, name) for item in value]
    if kind == "bool":
        if not isinstance(value, bool):
            raise OptionsError(f"{name}: expected a boolean, got {value!r}")
        return value
    if kind == "str":
        if isinstance(value, (dict, list)):
            raise OptionsError(f"{name}: expected a string, got {value!r}")
        return str(value)
    if kind in ("int", "uint"):
        if isinstance(value, bool) or not isinstance(value, int):
            raise OptionsError(f"{name}: expected an integer, got {value!r}")
        if kind == "uint" and value < 0:
            raise OptionsError(f"{name}: expected a non-negative integer, got {value}")
        return value
    if kind == "float":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise OptionsError(f"{name}: expected a number, got {value!r}")
        return float(value)
    raise OptionsError(f"{name}: unsupported option kind {kind}")


def load_config_file(path: str) -> Options:
    """Read options from the YAML file at path; unknown keys are ignored."""
    try:
        with open(path, encoding="utf-8") as stream:
            data = yaml.safe_load(stream)
    except OSError as err:
        raise OptionsError(f"failed to read the config file {path}: {err}") from err
    except yaml.YAMLError as err:
        raise OptionsError(
            f"failed to unmarshal the config file {path}: {err}"
        ) from err

    options = Options()
    if data is None:
        return options
    if not isinstance(data, dict):
        raise OptionsError(f"failed to unmarshal the config file {path}: not a mapping")

    for opt_field in dataclasses.fields(Options):
        key = opt_field.metadata["yaml"]
        if key is None or key not in data:
            continue
        value = data[key]
        if value is None:
            continue
        setattr(options, opt_field.name, _coerce(opt_field.metadata["kind"], value, key))
    return options


def _parse_bool(text: str) -> bool:
    lowered = text.strip().lower()
    if lowered in ("true", "1", "yes", "on"):
        return True
    if lowered in ("false", "0", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value: {text!r}")


def _parse_uint(text: str) -> int:
    try:
        value = int(text)
    except ValueError as err:
        raise argparse.ArgumentTypeError(f"invalid integer value: {text!r}") from err
    if value < 0:
        raise argparse.ArgumentTypeError(f"value must not be negative: {text!r}")
    return value


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> Any:  # type: ignore[override]
        raise OptionsError(message)


def _build_parser() -> _Parser:
    parser = _Parser(prog="dnsrelay", allow_abbrev=False)
    for opt_field in dataclasses.fields(Options):
        meta = opt_field.metadata
        kind = meta["kind"]
        common: dict[str, Any] = {
            "dest": opt_field.name,
            "default": argparse.SUPPRESS,
            "help": meta["help"],
        }
        if kind == "bool":
            parser.add_argument(
                *meta["flags"], nargs="?", const=True, type=_parse_bool, **common
            )
        elif kind == "str_list":
            parser.add_argument(*meta["flags"], action="append", type=str, **common)
        elif kind == "int_list":
            parser.add_argument(*meta["flags"], action="append", type=int, **common)
        elif kind == "uint":
            parser.add_argument(*meta["flags"], type=_parse_uint, **common)
        elif kind == "int":
            parser.add_argument(*meta["flags"], type=int, **common)
        elif kind == "float":
            parser.add_argument(*meta["flags"], type=float, **common)
        else:
            parser.add_argument(*meta["flags"], type=str, **common)
    return parser


def parse_args(argv: Sequence[str] | None = None) -> Options:
    """Build options from argv, on top of the file given by --config-path.

    An option given on the command line replaces the value from the file.
    When --version is present, only the version flag is set.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    if "--version" in args:
        return Options(version=True)

    namespace = _build_parser().parse_args(args)
    values = vars(namespace)

    config_path = values.get("config_path", "")
    options = load_config_file(config_path) if config_path else Options()
    for name, value in values.items():
        setattr(options, name, value)
    return options


def load_servers_list(sources: Iterable[str]) -> list[str]:
    """Expand sources into server addresses.

    A source that can be read as a file contributes its lines, skipping blank
    lines and comments starting with "!" or "#"; any other source is taken as
    an address itself.
    """
    servers: list[str] = []
    for source in sources:
        try:
            with open(source, encoding="utf-8") as stream:
                text = stream.read()
        except (OSError, ValueError):
            servers.append(source)
            continue

        for line in text.split("\n"):
            line = line.strip()
            if not line or line.startswith(("!", "#")):
                continue
            servers.append(line)
    return servers


def build_listen_addresses(
    options: Options, has_tls: bool, has_dnscrypt: bool
) -> dict[str, list[_Address] | None]:
    """Return the listen addresses for each transport, keyed by config field.

    Unset addresses and ports default to 0.0.0.0 and 53; a first port of 0
    disables plain UDP and TCP.  Encrypted listeners are only set up when the
    matching configuration is available.  Transports with no addresses map
    to None.
    """
    listen_addrs = options.listen_addrs or [DEFAULT_LISTEN_ADDR]
    listen_ports = options.listen_ports or [DEFAULT_LISTEN_PORT]

    ips = []
    for text in listen_addrs:
        try:
            ips.append(str(ipaddress.ip_address(text)))
        except ValueError as err:
            raise OptionsError(f"cannot parse {text}") from err

    result: dict[str, list[_Address]] = {key: [] for key in _LISTEN_KEYS}

    def pairs(ports: Iterable[int]) -> list[_Address]:
        return [(ip, port) for port in ports for ip in ips]

    if listen_ports[0] != 0:
        result["udp_listen_addr"] = pairs(listen_ports)
        result["tcp_listen_addr"] = pairs(listen_ports)

    if has_tls:
        result["tls_listen_addr"] = pairs(options.tls_listen_ports)
        result["https_listen_addr"] = pairs(options.https_listen_ports)
        result["quic_listen_addr"] = pairs(options.quic_listen_ports)

    if has_dnscrypt:
        result["dnscrypt_tcp_listen_addr"] = pairs(options.dnscrypt_listen_ports)
        result["dnscrypt_udp_listen_addr"] = pairs(options.dnscrypt_listen_ports)

    return {key: (addrs or None) for key, addrs in result.items()}


def parse_bogus_nxdomain(values: Iterable[str]) -> list[_Network]:
    """Parse IPs and CIDRs; single IPs become full-length networks.

    Values that cannot be parsed are logged and skipped.
    """
    networks: list[_Network] = []
    for value in values:
        try:
            networks.append(ipaddress.ip_network(value.strip(), strict=False))
        except ValueError as err:
            logger.error("%s", err)
    return networks


def parse_dns64_prefixes(values: Iterable[str]) -> list[_Network]:
    """Parse DNS64 prefixes written as address/length."""
    prefixes: list[_Network] = []
    for index, value in enumerate(values):
        if "/" not in value:
            raise OptionsError(f"parsing prefix at index {index}: no '/' in {value!r}")
        try:
            prefixes.append(ipaddress.ip_network(value, strict=False))
        except ValueError as err:
            raise OptionsError(f"parsing prefix at index {index}: {err}") from err
    return prefixes


def parse_edns_addr(
    options: Options,
) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    """Return the EDNS Client Address to send, if one applies.

    The address is ignored, with a warning, unless EDNS Client Subnet is on.
    """
    if not options.edns_addr:
        return None
    if not options.enable_edns_subnet:
        logger.warning("--edns-addr=%s need --edns to work", options.edns_addr)
        return None
    try:
        return ipaddress.ip_address(options.edns_addr)
    except ValueError as err:
        raise OptionsError(f"cannot parse {options.edns_addr}") from err


_MIN_VERSIONS = {
    1.1: ssl.TLSVersion.TLSv1_1,
    1.2: ssl.TLSVersion.TLSv1_2,
    1.3: ssl.TLSVersion.TLSv1_3,
}
_MAX_VERSIONS = {
    1.0: ssl.TLSVersion.TLSv1,
    1.1: ssl.TLSVersion.TLSv1_1,
    1.2: ssl.TLSVersion.TLSv1_2,
}


def tls_versions(
    min_version: float, max_version: float
) -> tuple[ssl.TLSVersion, ssl.TLSVersion]:
    """Map configured TLS versions to (minimum, maximum).

    Unrecognised values fall back to TLS 1.0 and TLS 1.3 respectively.
    """
    minimum = _MIN_VERSIONS.get(round(float(min_version), 1), ssl.TLSVersion.TLSv1)
    maximum = _MAX_VERSIONS.get(round(float(max_version), 1), ssl.TLSVersion.TLSv1_3)
    return minimum, maximum