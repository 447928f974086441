"""Proxy configuration and its validation."""

from __future__ import annotations

import enum
import ipaddress
import logging
import os
import socket
from dataclasses import dataclass, field
from typing import Any, Callable

from dnsrelay.dns_context import Upstream

logger = logging.getLogger(__name__)

_Network = ipaddress.IPv4Network | ipaddress.IPv6Network
_Address = tuple[str, int]


class ConfigError(ValueError):
    """Raised when a proxy configuration is not usable."""


class UpstreamMode(enum.IntEnum):
    """How the configured upstreams are used."""

    LOAD_BALANCE = 0
    PARALLEL = 1
    FASTEST_ADDR = 2


@dataclass
class UpstreamConfig:
    """A set of upstream servers, general and per-domain."""

    upstreams: list[Upstream] = field(default_factory=list)
    domain_reserved_upstreams: dict[str, list[Upstream]] = field(
        default_factory=dict
    )


@dataclass
class Config:
    """Everything needed to set up a proxy.

    A listen address list of None means the proxy does not listen on that
    transport at all.
    """

    udp_listen_addr: list[_Address] | None = None
    tcp_listen_addr: list[_Address] | None = None
    https_listen_addr: list[_Address] | None = None
    tls_listen_addr: list[_Address] | None = None
    quic_listen_addr: list[_Address] | None = None
    dnscrypt_udp_listen_addr: list[_Address] | None = None
    dnscrypt_tcp_listen_addr: list[_Address] | None = None

    tls_config: Any = None
    http3: bool = False
    dnscrypt_provider_name: str = ""
    dnscrypt_resolver_cert: Any = None

    ratelimit: int = 0
    ratelimit_whitelist: list[str] = field(default_factory=list)
    refuse_any: bool = False
    trusted_proxies: list[str] = field(default_factory=list)

    upstream_config: UpstreamConfig | None = None
    private_rdns_upstream_config: UpstreamConfig | None = None
    fallbacks: list[Upstream] = field(default_factory=list)
    upstream_mode: UpstreamMode = UpstreamMode.LOAD_BALANCE
    fastest_ping_timeout: float = 0.0

    bogus_nxdomain: list[_Network] = field(default_factory=list)

    enable_edns_client_subnet: bool = False
    edns_addr: ipaddress.IPv4Address | ipaddress.IPv6Address | None = None

    cache_enabled: bool = False
    cache_size_bytes: int = 0
    cache_min_ttl: int = 0
    cache_max_ttl: int = 0
    cache_optimistic: bool = False

    before_request_handler: Callable[..., bool] | None = None
    request_handler: Callable[..., None] | None = None
    response_handler: Callable[..., None] | None = None

    max_workers: int = 0
    udp_buffer_size: int = 0

    use_dns64: bool = False
    dns64_prefs: list[ipaddress.IPv6Network] | None = None
    prefer_ipv6: bool = False
    reuse_addr: bool = False

    def validate(self, started: bool = False) -> None:
        """Raise ConfigError if the configuration cannot be used."""
        if started:
            raise ConfigError("server has been already started")

        self.validate_listen_addrs()

        if self.upstream_config is None:
            raise ConfigError("no default upstreams specified")

        if not self.upstream_config.upstreams:
            if not self.upstream_config.domain_reserved_upstreams:
                raise ConfigError("no upstreams specified")
            raise ConfigError("no default upstreams specified")

        if self.cache_min_ttl > 0 or self.cache_max_ttl > 0:
            logger.info(
                "Cache TTL override is enabled. Min=%d, Max=%d",
                self.cache_min_ttl,
                self.cache_max_ttl,
            )
        if self.ratelimit > 0:
            logger.info("Ratelimit is enabled and set to %d rps", self.ratelimit)
        if self.refuse_any:
            logger.info("The server is configured to refuse ANY requests")
        if self.bogus_nxdomain:
            logger.info("%d bogus-nxdomain IP specified", len(self.bogus_nxdomain))

    def validate_listen_addrs(self) -> None:
        """Raise ConfigError if the listen addresses are not set up properly."""
        if not self.has_listen_addrs():
            raise ConfigError("no listen address specified")

        if self.tls_config is None:
            if self.tls_listen_addr is not None:
                raise ConfigError("cannot create tls listener without tls config")
            if self.https_listen_addr is not None:
                raise ConfigError("cannot create https listener without tls config")
            if self.quic_listen_addr is not None:
                raise ConfigError("cannot create quic listener without tls config")

        wants_dnscrypt = (
            self.dnscrypt_tcp_listen_addr is not None
            or self.dnscrypt_udp_listen_addr is not None
        )
        if wants_dnscrypt and (
            self.dnscrypt_resolver_cert is None or not self.dnscrypt_provider_name
        ):
            raise ConfigError("cannot create dnscrypt listener without dnscrypt config")

    def has_listen_addrs(self) -> bool:
        """Return True if at least one transport has listen addresses."""
        return any(
            addrs is not None
            for addrs in (
                self.udp_listen_addr,
                self.tcp_listen_addr,
                self.tls_listen_addr,
                self.https_listen_addr,
                self.quic_listen_addr,
                self.dnscrypt_udp_listen_addr,
                self.dnscrypt_tcp_listen_addr,
            )
        )


def listen_socket_options(config: Config) -> list[tuple[int, int, int]]:
    """Return the (level, option, value) socket options for listeners.

    SO_REUSEADDR is requested when the configuration asks for it, except on
    Windows, where no options are set.
    """
    if os.name == "nt" or not config.reuse_addr:
        return []
    return [(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)]