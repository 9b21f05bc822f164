"""Node-level metrics: node and cloud information, CPU, memory, disks and network."""

from __future__ import annotations

import logging

from .common import is_not_exist
from .flags import Flags
from .metadata import CloudMetadata
from .metrics import Desc, Metric, counter, gauge
from .node import (
    DEFAULT_PROC_ROOT,
    DEFAULT_SYS_ROOT,
    cpu_stat,
    get_disks,
    memory_info,
    net_devices,
)

log = logging.getLogger(__name__)

INFO = Desc("node_info", "Meta information about the node", ("hostname", "kernel_version"))
CLOUD_INFO = Desc(
    "node_cloud_info",
    "Meta information about the cloud instance",
    (
        "provider",
        "account_id",
        "instance_id",
        "instance_type",
        "instance_life_cycle",
        "region",
        "availability_zone",
        "availability_zone_id",
        "local_ipv4",
        "public_ipv4",
    ),
)
CPU_USAGE = Desc(
    "node_resources_cpu_usage_seconds_total", "The amount of CPU time spent in each mode", ("mode",)
)
CPU_LOGICAL_CORES = Desc("node_resources_cpu_logical_cores", "The number of logical CPU cores")
MEM_TOTAL = Desc("node_resources_memory_total_bytes", "The total amount of physical memory")
MEM_FREE = Desc("node_resources_memory_free_bytes", "The amount of unassigned memory")
MEM_AVAILABLE = Desc("node_resources_memory_available_bytes", "The total amount of available memory")
MEM_CACHE = Desc("node_resources_memory_cached_bytes", "The amount of memory used as page cache")
DISK_READS = Desc(
    "node_resources_disk_reads_total", "The total number of reads completed successfully", ("device",)
)
DISK_WRITES = Desc(
    "node_resources_disk_writes_total", "The total number of writes completed successfully", ("device",)
)
DISK_READ_BYTES = Desc(
    "node_resources_disk_read_bytes_total", "The total number of bytes read from the disk", ("device",)
)
DISK_WRITTEN_BYTES = Desc(
    "node_resources_disk_written_bytes_total",
    "The total number of bytes written to the disk",
    ("device",),
)
DISK_READ_TIME = Desc(
    "node_resources_disk_read_time_seconds_total", "The total number of seconds spent reading", ("device",)
)
DISK_WRITE_TIME = Desc(
    "node_resources_disk_write_time_seconds_total", "The total number of seconds spent writing", ("device",)
)
DISK_IO_TIME = Desc(
    "node_resources_disk_io_time_seconds_total",
    "The total number of seconds the disk spent doing I/O",
    ("device",),
)
NET_RX_BYTES = Desc("node_net_received_bytes_total", "The total number of bytes received", ("interface",))
NET_TX_BYTES = Desc(
    "node_net_transmitted_bytes_total", "The total number of bytes transmitted", ("interface",)
)
NET_RX_PACKETS = Desc(
    "node_net_received_packets_total", "The total number of packets received", ("interface",)
)
NET_TX_PACKETS = Desc(
    "node_net_transmitted_packets_total", "The total number of packets transmitted", ("interface",)
)
NET_IFACE_UP = Desc("node_net_interface_up", "Status of the interface (0:down, 1:up)", ("interface",))
IP = Desc("node_net_interface_ip", "IP address assigned to the interface", ("interface", "ip"))

_DESCS: tuple[Desc, ...] = (
    INFO,
    CLOUD_INFO,
    CPU_USAGE,
    CPU_LOGICAL_CORES,
    MEM_TOTAL,
    MEM_FREE,
    MEM_AVAILABLE,
    MEM_CACHE,
    DISK_READS,
    DISK_WRITES,
    DISK_READ_BYTES,
    DISK_WRITTEN_BYTES,
    DISK_READ_TIME,
    DISK_WRITE_TIME,
    DISK_IO_TIME,
    NET_RX_BYTES,
    NET_TX_BYTES,
    NET_RX_PACKETS,
    NET_TX_PACKETS,
    NET_IFACE_UP,
    IP,
)

_CPU_MODES = ("user", "nice", "system", "idle", "iowait", "irq", "softirq", "steal")


def _log_unless_missing(err: BaseException) -> None:
    if not is_not_exist(err):
        log.error("%s", err)


class NodeCollector:
    """Collects the metrics describing the node as a whole."""

    def __init__(
        self,
        hostname: str,
        kernel_version: str,
        instance_metadata: CloudMetadata | None = None,
        flags: Flags | None = None,
        proc_root: str = DEFAULT_PROC_ROOT,
        sys_root: str = DEFAULT_SYS_ROOT,
    ) -> None:
        self.hostname = hostname
        self.kernel_version = kernel_version
        self.instance_metadata = instance_metadata
        self.flags = flags if flags is not None else Flags()
        self.proc_root = proc_root
        self.sys_root = sys_root

    def describe(self) -> list[Desc]:
        return list(_DESCS)

    def collect(self) -> list[Metric]:
        res: list[Metric] = [gauge(INFO, 1, self.hostname, self.kernel_version)]

        try:
            cpu = cpu_stat(self.proc_root)
        except (OSError, ValueError) as exc:
            _log_unless_missing(exc)
        else:
            usage = cpu.total_usage
            res.extend(counter(CPU_USAGE, getattr(usage, mode), mode) for mode in _CPU_MODES)
            res.append(gauge(CPU_LOGICAL_CORES, cpu.logical_cores))

        try:
            mem = memory_info(self.proc_root)
        except OSError as exc:
            _log_unless_missing(exc)
        else:
            res.append(gauge(MEM_TOTAL, mem.total_bytes))
            res.append(gauge(MEM_FREE, mem.free_bytes))
            res.append(gauge(MEM_AVAILABLE, mem.available_bytes))
            res.append(gauge(MEM_CACHE, mem.cached_bytes))

        try:
            disks = get_disks(self.proc_root)
        except OSError as exc:
            log.error("failed to get disk stats: %s", exc)
        else:
            for d in disks.block_devices():
                res.append(counter(DISK_READS, d.read_ops, d.name))
                res.append(counter(DISK_WRITES, d.write_ops, d.name))
                res.append(counter(DISK_READ_BYTES, d.bytes_read, d.name))
                res.append(counter(DISK_WRITTEN_BYTES, d.bytes_written, d.name))
                res.append(counter(DISK_READ_TIME, d.read_time_seconds, d.name))
                res.append(counter(DISK_WRITE_TIME, d.write_time_seconds, d.name))
                res.append(counter(DISK_IO_TIME, d.io_time_seconds, d.name))

        try:
            devices = net_devices(self.sys_root)
        except OSError as exc:
            log.error("%s", exc)
        else:
            for dev in devices:
                res.append(counter(NET_RX_BYTES, dev.rx_bytes, dev.name))
                res.append(counter(NET_TX_BYTES, dev.tx_bytes, dev.name))
                res.append(counter(NET_RX_PACKETS, dev.rx_packets, dev.name))
                res.append(counter(NET_TX_PACKETS, dev.tx_packets, dev.name))
                res.append(gauge(NET_IFACE_UP, dev.up, dev.name))
                res.extend(gauge(IP, 1, dev.name, ip) for ip in dev.addresses)

        if (im := self.instance_metadata) is not None:
            res.append(
                gauge(
                    CLOUD_INFO,
                    1,
                    str(im.provider.value),
                    im.account_id,
                    im.instance_id,
                    im.instance_type,
                    im.life_cycle,
                    im.region,
                    im.availability_zone,
                    im.availability_zone_id,
                    im.local_ipv4,
                    im.public_ipv4,
                )
            )
        else:
            f = self.flags
            res.append(
                gauge(
                    CLOUD_INFO,
                    1,
                    f.provider,
                    "",
                    "",
                    "",
                    "",
                    f.region,
                    f.availability_zone,
                    "",
                    "",
                    "",
                )
            )
        return res