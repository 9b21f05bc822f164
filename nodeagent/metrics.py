"""Metric descriptions, sample values and the Prometheus text exposition format."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum


class MetricType(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass(frozen=True)
class Desc:
    name: str
    help: str
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class Metric:
    desc: Desc
    type: MetricType
    value: float
    label_values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if len(self.label_values) != len(self.desc.labels):
            raise ValueError(
                f"{self.desc.name}: expected {len(self.desc.labels)} label values,"
                f" got {len(self.label_values)}"
            )


def counter(desc: Desc, value: float, *args: str) -> Metric:
    return Metric(desc, MetricType.COUNTER, float(value), tuple(args))


def gauge(desc: Desc, value: float, *args: str) -> Metric:
    return Metric(desc, MetricType.GAUGE, float(value), tuple(args))


def _metric(name: str, help: str, *labels: str) -> Desc:
    return Desc(name, help, labels)


_DISK_LABELS = ("mount_point", "device", "provisioner", "volume")

RESTARTS = _metric("container_restarts_total", "Number of times the container was restarted")

CPU_LIMIT = _metric("container_resources_cpu_limit_cores", "CPU limit of the container")
CPU_USAGE = _metric(
    "container_resources_cpu_usage_seconds_total", "Total CPU time consumed by the container"
)
CPU_DELAY = _metric(
    "container_resources_cpu_delay_seconds_total",
    "Total time duration processes of the container have been waiting for a CPU (while being runnable)",
)
THROTTLED_TIME = _metric(
    "container_resources_cpu_throttled_seconds_total",
    "Total time duration the container has been throttled",
)

MEMORY_LIMIT = _metric("container_resources_memory_limit_bytes", "Memory limit of the container")
MEMORY_RSS = _metric(
    "container_resources_memory_rss_bytes",
    "Amount of physical memory used by the container (doesn't include page cache)",
)
MEMORY_CACHE = _metric(
    "container_resources_memory_cache_bytes",
    "Amount of page cache memory allocated by the container",
)
OOM_KILLS = _metric(
    "container_oom_kills_total",
    "Total number of times the container was terminated by the OOM killer",
)

DISK_DELAY = _metric(
    "container_resources_disk_delay_seconds_total",
    "Total time duration processes of the container have been waiting fot I/Os to complete",
)
DISK_SIZE = _metric(
    "container_resources_disk_size_bytes", "Total capacity of the volume", *_DISK_LABELS
)
DISK_USED = _metric(
    "container_resources_disk_used_bytes", "Used capacity of the volume", *_DISK_LABELS
)
DISK_RESERVED = _metric(
    "container_resources_disk_reserved_bytes", "Reserved capacity of the volume", *_DISK_LABELS
)
DISK_READ_OPS = _metric(
    "container_resources_disk_reads_total",
    "Total number of reads completed successfully by the container",
    *_DISK_LABELS,
)
DISK_READ_BYTES = _metric(
    "container_resources_disk_read_bytes_total",
    "Total number of bytes read from the disk by the container",
    *_DISK_LABELS,
)
DISK_WRITE_OPS = _metric(
    "container_resources_disk_writes_total",
    "Total number of writes completed successfully by the container",
    *_DISK_LABELS,
)
DISK_WRITE_BYTES = _metric(
    "container_resources_disk_written_bytes_total",
    "Total number of bytes written to the disk by the container",
    *_DISK_LABELS,
)

NET_LISTEN_INFO = _metric(
    "container_net_tcp_listen_info", "Listen address of the container", "listen_addr", "proxy"
)
NET_CONNECTS_SUCCESSFUL = _metric(
    "container_net_tcp_successful_connects_total",
    "Total number of successful TCP connects",
    "destination",
    "actual_destination",
)
NET_CONNECTS_FAILED = _metric(
    "container_net_tcp_failed_connects_total", "Total number of failed TCP connects", "destination"
)
NET_CONNECTIONS_ACTIVE = _metric(
    "container_net_tcp_active_connections",
    "Number of active outbound connections used by the container",
    "destination",
    "actual_destination",
)
NET_RETRANSMITS = _metric(
    "container_net_tcp_retransmits_total",
    "Total number of retransmitted TCP segments",
    "destination",
    "actual_destination",
)
NET_LATENCY = _metric(
    "container_net_latency_seconds",
    "Round-trip time between the container and a remote IP",
    "destination_ip",
)

LOG_MESSAGES = _metric(
    "container_log_messages_total",
    "Number of messages grouped by the automatically extracted repeated pattern",
    "source",
    "level",
    "pattern_hash",
    "sample",
)

APPLICATION_TYPE = _metric(
    "container_application_type",
    "Type of the application running in the container (e.g. memcached, postgres, mysql)",
    "application_type",
)

METRICS_LIST: tuple[Desc, ...] = (
    RESTARTS,
    CPU_LIMIT,
    CPU_USAGE,
    CPU_DELAY,
    THROTTLED_TIME,
    MEMORY_LIMIT,
    MEMORY_RSS,
    MEMORY_CACHE,
    OOM_KILLS,
    DISK_DELAY,
    DISK_SIZE,
    DISK_USED,
    DISK_RESERVED,
    DISK_READ_OPS,
    DISK_READ_BYTES,
    DISK_WRITE_OPS,
    DISK_WRITE_BYTES,
    NET_LISTEN_INFO,
    NET_CONNECTS_SUCCESSFUL,
    NET_CONNECTS_FAILED,
    NET_CONNECTIONS_ACTIVE,
    NET_RETRANSMITS,
    NET_LATENCY,
    LOG_MESSAGES,
    APPLICATION_TYPE,
)


def _format_value(value: float) -> str:
    """Shortest ``%g``-style representation, as Prometheus exporters print values."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "0"
    sign, digit_tuple, exponent = Decimal(repr(value)).as_tuple()
    dp = len(digit_tuple) + exponent
    digits = "".join(map(str, digit_tuple)).rstrip("0")
    prefix = "-" if sign else ""
    exp = dp - 1
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if len(digits) > 1 else "")
        return f"{prefix}{mantissa}e{'-' if exp < 0 else '+'}{abs(exp):02d}"
    if dp <= 0:
        return f"{prefix}0.{'0' * -dp}{digits}"
    if dp >= len(digits):
        return prefix + digits + "0" * (dp - len(digits))
    return f"{prefix}{digits[:dp]}.{digits[dp:]}"


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def render(metrics: Iterable[Metric], const_labels: Mapping[str, str] | None = None) -> str:
    """Render metrics in the Prometheus text format, families and samples sorted."""
    const = dict(const_labels or {})
    families: dict[str, list[Metric]] = {}
    for m in metrics:
        if overlap := set(m.desc.labels) & const.keys():
            raise ValueError(f"{m.desc.name}: labels {sorted(overlap)} clash with constant labels")
        families.setdefault(m.desc.name, []).append(m)

    lines: list[str] = []
    for name in sorted(families):
        members = families[name]
        first = members[0]
        lines.append(f"# HELP {name} {_escape_help(first.desc.help)}")
        lines.append(f"# TYPE {name} {first.type.value}")
        samples = []
        for m in members:
            pairs = sorted({**const, **dict(zip(m.desc.labels, m.label_values))}.items())
            samples.append((tuple(v for _, v in pairs), pairs, m.value))
        samples.sort(key=lambda s: s[0])
        for _, pairs, value in samples:
            labels = ",".join(f'{k}="{_escape_label(v)}"' for k, v in pairs)
            head = f"{name}{{{labels}}}" if labels else name
            lines.append(f"{head} {_format_value(value)}")
    return "".join(line + "\n" for line in lines)