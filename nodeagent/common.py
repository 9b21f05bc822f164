"""Small helpers shared across the agent: errors, kernel versions and addresses."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

_KERNEL_VERSION_RE = re.compile(r"^(\d+\.\d+)")

_PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("fc00::/7"),
)
_SHARED_ADDRESS_SPACE = ipaddress.ip_network("100.64.0.0/10")


@dataclass(frozen=True)
class IPPort:
    """An IP address with a port; the default value is the invalid address."""

    ip: IPAddress | None = None
    port: int = 0

    @property
    def is_valid(self) -> bool:
        return self.ip is not None

    def __str__(self) -> str:
        if self.ip is None:
            return "invalid IPPort"
        if self.ip.version == 6:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


def parse_ip_port(text: str) -> IPPort:
    """Parse ``ip:port`` or ``[ipv6]:port``; raise ValueError if malformed."""
    if text.startswith("["):
        host, sep, rest = text[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise ValueError(f"invalid address {text!r}")
        port_text = rest[1:]
    else:
        host, sep, port_text = text.rpartition(":")
        if not sep or ":" in host:
            raise ValueError(f"invalid address {text!r}")
    if not re.fullmatch(r"[0-9]+", port_text):
        raise ValueError(f"invalid port in {text!r}")
    port = int(port_text)
    if port > 0xFFFF:
        raise ValueError(f"port out of range in {text!r}")
    try:
        ip = ipaddress.ip_address(host)
    except ValueError as exc:
        raise ValueError(f"invalid IP in {text!r}") from exc
    return IPPort(ip, port)


def is_not_exist(err: BaseException) -> bool:
    """Tell whether an error means that a file or a process has gone."""
    if isinstance(err, (FileNotFoundError, ProcessLookupError)):
        return True
    text = str(err).lower()
    return "no such file or directory" in text or "no such process" in text


def kernel_major_minor(version: str) -> str:
    """Return the leading ``major.minor`` of a kernel release, or an empty string."""
    match = _KERNEL_VERSION_RE.match(version)
    return match.group(1) if match else ""


def is_ip_private(ip: IPAddress | str) -> bool:
    """Private (RFC 1918, ULA) or carrier-grade NAT (100.64.0.0/10) addresses."""
    if isinstance(ip, str):
        ip = ipaddress.ip_address(ip)
    if any(ip.version == net.version and ip in net for net in _PRIVATE_NETWORKS):
        return True
    if ip.version == 4:
        return ip in _SHARED_ADDRESS_SPACE
    return False