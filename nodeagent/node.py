"""Node-wide resource statistics: CPU, memory, block devices and network interfaces."""

from __future__ import annotations

import ipaddress
import logging
import os
import re
import socket
from dataclasses import dataclass, field

import psutil

log = logging.getLogger(__name__)

DEFAULT_PROC_ROOT = "/proc"
DEFAULT_SYS_ROOT = "/sys"

CLOCKS_PER_SEC = 100.0

_CPU_CORE_RE = re.compile(r"cpu\d+")
_BLOCK_DEVICE_RE = re.compile(r"^(dm-\d+|(s|h|xv|v)d[a-z]|md\d+|nvme\d+n\d+|rbd\d+)")
_INCLUDE_NET_DEV_RE = re.compile(r"^(enp\d+s\d+(f\d+)?|eth\d+|eno\d+|ens\d+)")


@dataclass
class CpuUsage:
    user: float = 0.0
    nice: float = 0.0
    system: float = 0.0
    idle: float = 0.0
    iowait: float = 0.0
    irq: float = 0.0
    softirq: float = 0.0
    steal: float = 0.0


@dataclass
class CpuStat:
    total_usage: CpuUsage = field(default_factory=CpuUsage)
    logical_cores: int = 0


@dataclass
class MemoryStat:
    total_bytes: float = 0.0
    free_bytes: float = 0.0
    available_bytes: float = 0.0
    cached_bytes: float = 0.0


@dataclass(frozen=True)
class DevStat:
    name: str
    major_minor: str
    read_ops: float = 0.0
    write_ops: float = 0.0
    bytes_read: float = 0.0
    bytes_written: float = 0.0
    read_time_seconds: float = 0.0
    write_time_seconds: float = 0.0
    io_time_seconds: float = 0.0


@dataclass
class NetDeviceInfo:
    name: str
    up: float = 0.0
    addresses: list[str] = field(default_factory=list)
    rx_bytes: float = 0.0
    tx_bytes: float = 0.0
    rx_packets: float = 0.0
    tx_packets: float = 0.0


def _parse_float(text: str) -> float:
    if "_" in text:
        raise ValueError(f"invalid number: {text!r}")
    return float(text)


def _read(file_path: str) -> str:
    with open(file_path, encoding="utf-8", errors="replace") as f:
        return f.read()


def parse_floats(values: list[str]) -> list[float]:
    """Parse every value as a float; raise ValueError on the first bad one."""
    return [_parse_float(v) for v in values]


def cpu_stat(proc_root: str = DEFAULT_PROC_ROOT) -> CpuStat:
    """Total CPU time per mode in seconds and the number of logical cores."""
    stat = CpuStat()
    for line in _read(os.path.join(proc_root, "stat")).split("\n"):
        if line.startswith("cpu "):
            parts = line.split()
            if len(parts) < 9:
                raise ValueError(f"invalid cpu line: {line!r}")
            user, nice, system, idle, iowait, irq, softirq, steal = parse_floats(parts[1:9])
            stat.total_usage = CpuUsage(
                user=user / CLOCKS_PER_SEC,
                nice=nice / CLOCKS_PER_SEC,
                system=system / CLOCKS_PER_SEC,
                idle=idle / CLOCKS_PER_SEC,
                iowait=iowait / CLOCKS_PER_SEC,
                irq=irq / CLOCKS_PER_SEC,
                softirq=softirq / CLOCKS_PER_SEC,
                steal=steal / CLOCKS_PER_SEC,
            )
        elif _CPU_CORE_RE.search(line):
            stat.logical_cores += 1
    return stat


def memory_info(proc_root: str = DEFAULT_PROC_ROOT) -> MemoryStat:
    mem = MemoryStat()
    for line in _read(os.path.join(proc_root, "meminfo")).split("\n"):
        parts = line.split()
        if len(parts) < 2:
            continue
        mul = 1000.0 if len(parts) == 3 and parts[2] == "kB" else 1.0
        try:
            value = _parse_float(parts[1])
        except ValueError:
            log.warning("broken meminfo line: %s", line)
            value = 0.0
        match parts[0]:
            case "MemTotal:":
                mem.total_bytes = value * mul
            case "MemFree:":
                mem.free_bytes = value * mul
            case "MemAvailable:":
                mem.available_bytes = value * mul
            case "Cached:":
                mem.cached_bytes = value * mul
    return mem


@dataclass
class Disks:
    """Block device statistics keyed by ``major:minor``."""

    by_major_minor: dict[str, DevStat] = field(default_factory=dict)

    def block_devices(self) -> list[DevStat]:
        """Whole disks only, without their partitions."""
        res = []
        for dev in self.by_major_minor.values():
            match = _BLOCK_DEVICE_RE.match(dev.name)
            if match and match.group(1) == dev.name:
                res.append(dev)
        return res

    def get_parent_block_device(self, major_minor: str) -> DevStat | None:
        """The whole disk that the given device (possibly a partition) belongs to."""
        dev = self.by_major_minor.get(major_minor)
        if dev is None:
            return None
        match = _BLOCK_DEVICE_RE.match(dev.name)
        if match is None:
            return None
        parent_name = match.group(1)
        return next((d for d in self.by_major_minor.values() if d.name == parent_name), None)


def get_disks(proc_root: str = DEFAULT_PROC_ROOT) -> Disks:
    disks = Disks()
    for line in _read(os.path.join(proc_root, "diskstats")).split("\n"):
        fields = line.split()
        if len(fields) < 14:
            continue
        try:
            values = parse_floats(fields[3:])
        except ValueError as exc:
            log.warning('invalid diskstats line "%s": %s', line, exc)
            continue
        major_minor = f"{fields[0]}:{fields[1]}"
        disks.by_major_minor[major_minor] = DevStat(
            name=fields[2],
            major_minor=major_minor,
            read_ops=values[0],
            bytes_read=values[2] * 512,
            read_time_seconds=values[3] / 1000,
            write_ops=values[4],
            bytes_written=values[6] * 512,
            write_time_seconds=values[7] / 1000,
            io_time_seconds=values[9] / 1000,
        )
    return disks


def _read_counter(path: str) -> float:
    try:
        return _parse_float(_read(path).strip())
    except (OSError, ValueError):
        return 0.0


def _usable_address(address: str) -> str | None:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return None
    if ip.is_link_local or ip.is_multicast:
        return None
    return address.split("%", 1)[0]


def net_devices(sys_root: str = DEFAULT_SYS_ROOT) -> list[NetDeviceInfo]:
    """Physical network interfaces with their state, traffic counters and addresses."""
    net_dir = os.path.join(sys_root, "class", "net")
    if_addrs = psutil.net_if_addrs()
    res = []
    for name in sorted(os.listdir(net_dir)):
        if not _INCLUDE_NET_DEV_RE.match(name):
            continue
        dev_dir = os.path.join(net_dir, name)
        stats_dir = os.path.join(dev_dir, "statistics")
        try:
            oper_state = _read(os.path.join(dev_dir, "operstate")).strip()
        except OSError:
            oper_state = ""
        info = NetDeviceInfo(
            name=name,
            up=1.0 if oper_state == "up" else 0.0,
            rx_bytes=_read_counter(os.path.join(stats_dir, "rx_bytes")),
            tx_bytes=_read_counter(os.path.join(stats_dir, "tx_bytes")),
            rx_packets=_read_counter(os.path.join(stats_dir, "rx_packets")),
            tx_packets=_read_counter(os.path.join(stats_dir, "tx_packets")),
        )
        for addr in if_addrs.get(name, []):
            if addr.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            if (usable := _usable_address(addr.address)) is not None:
                info.addresses.append(usable)
        res.append(info)
    return res