from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Tuple

DEFAULT_LABEL = "ai-sandbox=true"
DEFAULT_STATE_DIR = "/run/ai-sandbox"
DEFAULT_CHAIN = "DOCKER-USER"
DEFAULT_COMMENT_PREFIX = "ai-sandbox"
DEFAULT_DNS_PORT = 53
DNS_PROTOCOLS = ("udp", "tcp")

CHECK_INTERVAL = 5.0
IDLE_TIMEOUT = 30.0
STARTUP_GRACE = 60.0


def _normalize_networks(nets: Iterable[str]) -> Tuple[str, ...]:
    out = []
    for net in nets:
        try:
            out.append(str(ipaddress.ip_network(net.strip(), strict=False)))
        except ValueError:
            raise ValueError(f"Invalid network: {net!r}")
    return tuple(out)


@dataclass(frozen=True)
class NetworkPolicy:
    """Immutable per-run policy: who is subject to it, what is denied, where DNS goes."""

    denied_networks: Tuple[str, ...]
    dns_ip: str
    dns_ports: Tuple[int, ...] = (DEFAULT_DNS_PORT,)
    label: str = DEFAULT_LABEL
    dns_protocols: Tuple[str, ...] = DNS_PROTOCOLS

    def __post_init__(self):
        nets = _normalize_networks(self.denied_networks)
        if not nets:
            raise ValueError("At least one denied network is required")
        object.__setattr__(self, "denied_networks", nets)

        try:
            object.__setattr__(self, "dns_ip", str(ipaddress.ip_address(self.dns_ip.strip())))
        except ValueError:
            raise ValueError(f"Invalid DNS resolver address: {self.dns_ip!r}")

        ports = tuple(int(p) for p in self.dns_ports)
        if not ports:
            raise ValueError("At least one DNS port is required")
        for port in ports:
            if not 0 < port < 65536:
                raise ValueError(f"Invalid DNS port: {port}")
        # dedupe, keep order
        object.__setattr__(self, "dns_ports", tuple(dict.fromkeys(ports)))

        protos = tuple(p.lower() for p in self.dns_protocols)
        for proto in protos:
            if proto not in DNS_PROTOCOLS:
                raise ValueError(f"Unsupported DNS protocol: {proto}")
        object.__setattr__(self, "dns_protocols", protos)

        if not self.label.strip():
            raise ValueError("Marker label must not be empty")


@dataclass
class WatcherConfig:
    stop_flag: Path
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))
    check_interval: float = CHECK_INTERVAL
    idle_timeout: float = IDLE_TIMEOUT
    startup_grace: float = STARTUP_GRACE
    chain: str = DEFAULT_CHAIN
    comment_prefix: str = DEFAULT_COMMENT_PREFIX
    dry_run: bool = False

    def __post_init__(self):
        self.stop_flag = Path(self.stop_flag)
        self.state_dir = Path(self.state_dir)
        if self.check_interval <= 0:
            raise ValueError("check_interval must be positive")
        if self.idle_timeout < 0 or self.startup_grace < 0:
            raise ValueError("Timeouts must not be negative")
        if not self.chain:
            raise ValueError("Chain name must not be empty")
