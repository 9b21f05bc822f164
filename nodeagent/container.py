"""Per-container state built from tracer events, and the metrics it exposes."""

from __future__ import annotations

import ipaddress
import logging
import os
import threading
import time
from collections import Counter
from dataclasses import dataclass, field

from .apps import guess_application_type
from .common import IPAddress, IPPort, is_ip_private, is_not_exist
from .flags import Flags
from .metrics import (
    APPLICATION_TYPE,
    CPU_LIMIT,
    CPU_USAGE,
    DISK_READ_BYTES,
    DISK_READ_OPS,
    DISK_RESERVED,
    DISK_SIZE,
    DISK_USED,
    DISK_WRITE_BYTES,
    DISK_WRITE_OPS,
    MEMORY_CACHE,
    MEMORY_LIMIT,
    MEMORY_RSS,
    METRICS_LIST,
    NET_CONNECTIONS_ACTIVE,
    NET_CONNECTS_FAILED,
    NET_CONNECTS_SUCCESSFUL,
    NET_LISTEN_INFO,
    NET_RETRANSMITS,
    OOM_KILLS,
    RESTARTS,
    THROTTLED_TIME,
    Desc,
    Metric,
    counter,
    gauge,
)
from .node import get_disks
from .proc import FSStat, ProcFS, stat_fs

log = logging.getLogger(__name__)

GC_INTERVAL = 600.0

_IGNORED_PREFIXES = ("/proc/", "/dev/", "/sys/")
_NON_LOG_PREFIXES = ("/var/log/pods/", "/var/log/containers/", "/var/log/journal/")
_HOST_PID = 1


@dataclass(frozen=True)
class AddrPair:
    src: IPPort
    dst: IPPort


@dataclass(frozen=True)
class Volume:
    provisioner: str = ""
    volume: str = ""


@dataclass
class ContainerMetadata:
    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    volumes: dict[str, Volume] = field(default_factory=dict)
    log_path: str = ""
    host_listens: dict[str, list[IPPort]] = field(default_factory=dict)


def resolve_fd(procfs: ProcFS, pid: int, fd: int) -> tuple[str, str]:
    """Mount id and log path of a file opened for writing; empty strings if irrelevant."""
    info = procfs.get_fd_info(pid, fd)
    if info is None:
        return "", ""
    dest = info.dest
    if (
        not info.flags & (os.O_WRONLY | os.O_RDWR)
        or not dest.startswith("/")
        or dest.startswith(_IGNORED_PREFIXES)
        or dest.endswith("(deleted)")
    ):
        return "", ""
    log_path = ""
    if (
        info.flags & os.O_WRONLY
        and dest.startswith("/var/log/")
        and not dest.startswith(_NON_LOG_PREFIXES)
    ):
        log_path = dest
    return info.mnt_id, log_path


def _namespace_ips(procfs: ProcFS, pid: int) -> list[IPAddress]:
    """Local addresses of the network namespace of ``pid``, without link-local and multicast."""
    with open(procfs.path(pid, "net", "fib_trie"), encoding="ascii", errors="replace") as f:
        fib_lines = f.read().splitlines()
    found: list[IPAddress] = []
    last = ""
    for line in fib_lines:
        text = line.strip()
        if text.startswith("|-- "):
            last = text[4:]
        elif text == "/32 host LOCAL" and last:
            try:
                found.append(ipaddress.ip_address(last))
            except ValueError:
                continue
    try:
        with open(procfs.path(pid, "net", "if_inet6"), encoding="ascii", errors="replace") as f:
            inet6_lines = f.read().splitlines()
    except OSError:
        inet6_lines = []
    for line in inet6_lines:
        fields = line.split()
        if not fields or len(fields[0]) != 32:
            continue
        try:
            found.append(ipaddress.IPv6Address(bytes.fromhex(fields[0])))
        except ValueError:
            continue
    res: list[IPAddress] = []
    for ip in found:
        if ip.is_link_local or ip.is_multicast or ip in res:
            continue
        res.append(ip)
    return res


class Container:
    """Processes, files, listens and connections of one container."""

    def __init__(
        self,
        cgroup,
        metadata: ContainerMetadata | None,
        procfs: ProcFS | None = None,
        flags: Flags | None = None,
    ) -> None:
        self.cgroup = cgroup
        self.metadata = metadata if metadata is not None else ContainerMetadata()
        self.procfs = procfs if procfs is not None else ProcFS()
        self.flags = flags if flags is not None else Flags()

        self.pids: dict[int, float] = {}
        self.started_at: float | None = None
        self.zombie_at: float | None = None
        self.restarts = 0
        self.oom_kills = 0

        # listen addr -> pid -> close time (None while open)
        self.listens: dict[IPPort, dict[int, float | None]] = {}
        self.connects_successful: Counter[AddrPair] = Counter()  # dst:actual_dst
        self.connects_failed: Counter[IPPort] = Counter()  # dst
        self.connect_last_attempt: dict[IPPort, float] = {}  # dst -> time
        self.connections_active: dict[AddrPair, IPPort] = {}  # src:dst -> actual_dst
        self.retransmits: Counter[AddrPair] = Counter()  # dst:actual_dst

        self.mount_ids: set[str] = set()
        self.log_paths: set[str] = set()

        self._lock = threading.RLock()
        self._done = threading.Event()
        self._gc_thread = threading.Thread(target=self._gc_loop, name="container-gc", daemon=True)
        self._gc_thread.start()

    def _gc_loop(self) -> None:
        while not self._done.wait(GC_INTERVAL):
            self.gc(time.time())

    def close(self) -> None:
        self._done.set()
        if self._gc_thread is not threading.current_thread():
            self._gc_thread.join()

    def __enter__(self) -> Container:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def dead(self, now: float) -> bool:
        """True once every process has been gone for longer than the GC interval."""
        return self.zombie_at is not None and now - self.zombie_at > GC_INTERVAL

    def describe(self) -> list[Desc]:
        return list(METRICS_LIST)

    # --- namespaces -----------------------------------------------------------------

    def _ns_id(self, pid: int) -> str | None:
        try:
            return self.procfs.net_ns_id(pid)
        except OSError as exc:
            if not is_not_exist(exc):
                log.warning("%s", exc)
            return None

    def _is_host_ns(self, pid: int) -> bool:
        ns = self._ns_id(pid)
        return ns is not None and ns == self._ns_id(_HOST_PID)

    def _netns_pid(self) -> int | None:
        """A process of the container whose network namespace can be inspected."""
        for pid in self.pids:
            if pid == os.getpid() or self._ns_id(pid) is not None:
                return pid
        return None

    # --- events ---------------------------------------------------------------------

    def on_process_start(self, pid: int, begin_time: float) -> None:
        with self._lock:
            self.zombie_at = None
            self.pids[pid] = begin_time
            if self.started_at is None:
                self.started_at = begin_time
                return
            earliest = min(self.pids.values())
            if earliest > self.started_at:
                self.restarts += 1
                self.started_at = earliest

    def on_process_exit(self, pid: int, oom_kill: bool = False) -> None:
        with self._lock:
            self.pids.pop(pid, None)
            if not self.pids:
                self.zombie_at = time.time()
            if oom_kill:
                self.oom_kills += 1

    def on_file_open(self, pid: int, fd: int) -> None:
        mnt_id, log_path = resolve_fd(self.procfs, pid, fd)
        with self._lock:
            if mnt_id:
                self.mount_ids.add(mnt_id)
            if log_path:
                self.log_paths.add(log_path)

    def on_listen_open(self, pid: int, addr: IPPort) -> None:
        with self._lock:
            self.listens.setdefault(addr, {})[pid] = None

    def on_listen_close(self, pid: int, addr: IPPort) -> None:
        with self._lock:
            by_pid = self.listens.get(addr)
            if by_pid is not None and pid in by_pid:
                by_pid[pid] = time.time()

    def _tracked_destination(self, pid: int, dst: IPPort) -> bool:
        ip = dst.ip
        if ip is None:
            return False
        if ip.is_loopback:
            return self._is_host_ns(pid)
        whitelisted = any(
            net.version == ip.version and ip in net
            for net in self.flags.external_networks_whitelist
        )
        return whitelisted or is_ip_private(ip)

    def on_connection_open(self, pid: int, src: IPPort, dst: IPPort, failed: bool = False) -> None:
        if not self._tracked_destination(pid, dst):
            return
        with self._lock:
            if failed:
                self.connects_failed[dst] += 1
            else:
                actual_dst = dst
                if actual_dst.is_valid:
                    self.connects_successful[AddrPair(dst, actual_dst)] += 1
                    self.connections_active[AddrPair(src, dst)] = actual_dst
                else:
                    log.error("invalid actual destination for %s->%s: %s", src, dst, actual_dst)
            self.connect_last_attempt[dst] = time.time()

    def on_connection_close(self, src_dst: AddrPair) -> bool:
        with self._lock:
            return self.connections_active.pop(src_dst, None) is not None

    def on_retransmit(self, src_dst: AddrPair) -> bool:
        with self._lock:
            actual_dst = self.connections_active.get(src_dst)
            if actual_dst is None:
                return False
            self.retransmits[AddrPair(src_dst.dst, actual_dst)] += 1
            return True

    # --- collection -----------------------------------------------------------------

    def collect(self) -> list[Metric]:
        with self._lock:
            res = [counter(RESTARTS, self.restarts)]
            res.extend(self._resource_metrics())
            res.extend(self._disk_metrics())
            res.extend(self._net_metrics())
            res.extend(self._app_metrics())
            return res

    def _resource_metrics(self) -> list[Metric]:
        res: list[Metric] = []
        try:
            cpu = self.cgroup.cpu_stat()
        except (OSError, ValueError):
            pass
        else:
            if cpu.limit_cores > 0:
                res.append(gauge(CPU_LIMIT, cpu.limit_cores))
            res.append(counter(CPU_USAGE, cpu.usage_seconds))
            res.append(counter(THROTTLED_TIME, cpu.throttled_time_seconds))
        try:
            mem = self.cgroup.memory_stat()
        except (OSError, ValueError):
            pass
        else:
            res.append(gauge(MEMORY_RSS, mem.rss))
            res.append(gauge(MEMORY_CACHE, mem.cache))
            if mem.limit > 0:
                res.append(gauge(MEMORY_LIMIT, mem.limit))
        if self.oom_kills > 0:
            res.append(counter(OOM_KILLS, self.oom_kills))
        return res

    def _get_mounts(self) -> dict[str, dict[str, FSStat]]:
        mounts = {}
        for pid in self.pids:
            mi = self.procfs.get_mount_info(pid)
            if mi is not None:
                mounts = mi
                break
        mounts = {mid: m for mid, m in mounts.items() if mid in self.mount_ids}
        res: dict[str, dict[str, FSStat]] = {}
        for mi in mounts.values():
            stat = None
            for pid in self.pids:
                try:
                    stat = stat_fs(self.procfs.path(pid, "root", mi.mount_point))
                    break
                except OSError:
                    continue
            if stat is None:
                continue
            res.setdefault(mi.major_minor, {})[mi.mount_point] = stat
        return res

    def _disk_metrics(self) -> list[Metric]:
        try:
            disks = get_disks(self.procfs.root)
        except OSError:
            return []
        try:
            io_stat = self.cgroup.io_stat()
        except (OSError, ValueError):
            io_stat = {}
        res: list[Metric] = []
        for major_minor, mounts in self._get_mounts().items():
            dev = disks.get_parent_block_device(major_minor)
            if dev is None:
                continue
            for mount_point, fs in mounts.items():
                v = self.metadata.volumes.get(mount_point, Volume())
                dls = (mount_point, dev.name, v.provisioner, v.volume)
                res.append(gauge(DISK_SIZE, fs.capacity_bytes, *dls))
                res.append(gauge(DISK_USED, fs.used_bytes, *dls))
                res.append(gauge(DISK_RESERVED, fs.reserved_bytes, *dls))
                io = io_stat.get(major_minor)
                if io is not None:
                    res.append(counter(DISK_READ_OPS, io.read_ops, *dls))
                    res.append(counter(DISK_READ_BYTES, io.read_bytes, *dls))
                    res.append(counter(DISK_WRITE_OPS, io.write_ops, *dls))
                    res.append(counter(DISK_WRITE_BYTES, io.written_bytes, *dls))
        return res

    def _get_listens(self, ns_pid: int | None) -> dict[IPPort, int]:
        if ns_pid is None:
            return {}
        is_host_ns = self._is_host_ns(ns_pid)
        ns_ips: list[IPAddress] | None = None
        res: dict[IPPort, int] = {}
        for addr, by_pid in self.listens.items():
            if addr.ip is None:
                continue
            is_open = int(any(closed_at is None for closed_at in by_pid.values()))
            if addr.ip.is_unspecified:
                if ns_ips is None:
                    try:
                        ns_ips = _namespace_ips(self.procfs, ns_pid)
                    except OSError as exc:
                        log.warning("%s", exc)
                        ns_ips = []
                ips = ns_ips
            else:
                ips = [addr.ip]
            for ip in ips:
                if ip.is_loopback and not is_host_ns:
                    continue
                res[IPPort(ip, addr.port)] = is_open
        return res

    def _get_proxied_listens(self) -> dict[str, set[IPPort]]:
        host_listens = self.metadata.host_listens
        if not host_listens:
            return {}
        has_unspecified = any(
            a.ip is not None and a.ip.is_unspecified for addrs in host_listens.values() for a in addrs
        )
        host_ips: list[IPAddress] = []
        if has_unspecified:
            try:
                host_ips = _namespace_ips(self.procfs, _HOST_PID)
            except OSError as exc:
                log.warning("%s", exc)
        res: dict[str, set[IPPort]] = {}
        for proxy, addrs in host_listens.items():
            found = res[proxy] = set()
            for addr in addrs:
                if addr.ip is not None and addr.ip.is_unspecified:
                    found.update(
                        IPPort(ip, addr.port) for ip in host_ips if ip.version == addr.ip.version
                    )
                else:
                    found.add(addr)
        return res

    def _net_metrics(self) -> list[Metric]:
        res: list[Metric] = []
        for addr, is_open in self._get_listens(self._netns_pid()).items():
            res.append(gauge(NET_LISTEN_INFO, is_open, str(addr), ""))
        for proxy, addrs in self._get_proxied_listens().items():
            res.extend(gauge(NET_LISTEN_INFO, 1, str(addr), proxy) for addr in addrs)
        for d, count in self.connects_successful.items():
            res.append(counter(NET_CONNECTS_SUCCESSFUL, count, str(d.src), str(d.dst)))
        for dst, count in self.connects_failed.items():
            res.append(counter(NET_CONNECTS_FAILED, count, str(dst)))
        for d, count in self.retransmits.items():
            res.append(counter(NET_RETRANSMITS, count, str(d.src), str(d.dst)))
        active = Counter(AddrPair(p.dst, actual) for p, actual in self.connections_active.items())
        for d, count in active.items():
            res.append(gauge(NET_CONNECTIONS_ACTIVE, count, str(d.src), str(d.dst)))
        return res

    def _app_metrics(self) -> list[Metric]:
        app_types = set()
        for pid in self.pids:
            cmdline = self.procfs.get_cmdline(pid)
            if cmdline and (app := guess_application_type(cmdline)):
                app_types.add(app)
        return [gauge(APPLICATION_TYPE, 1, app) for app in sorted(app_types)]

    # --- garbage collection ---------------------------------------------------------

    def gc(self, now: float) -> None:
        """Drop connections and listens that the kernel no longer holds."""
        with self._lock:
            established: set[AddrPair] = set()
            established_dst: set[IPPort] = set()
            listens: dict[IPPort, str] = {}
            for pid in self.pids:
                try:
                    sockets = self.procfs.get_sockets(pid)
                except OSError:
                    continue
                for s in sockets:
                    if s.listen:
                        listens[s.saddr] = s.inode
                    else:
                        established.add(AddrPair(s.saddr, s.daddr))
                        established_dst.add(s.daddr)
                break

            self._revalidate_listens(now, listens)

            for src_dst in [p for p in self.connections_active if p not in established]:
                del self.connections_active[src_dst]

            stale = [
                dst
                for dst, at in self.connect_last_attempt.items()
                if dst not in established_dst and now - at > GC_INTERVAL
            ]
            for dst in stale:
                del self.connect_last_attempt[dst]
                self.connects_failed.pop(dst, None)
                for d in [d for d in self.connects_successful if d.src == dst]:
                    del self.connects_successful[d]
                for d in [d for d in self.retransmits if d.src == dst]:
                    del self.retransmits[d]

    def _revalidate_listens(self, now: float, actual_listens: dict[IPPort, str]) -> None:
        for addr, by_pid in self.listens.items():
            if addr in actual_listens:
                continue
            log.warning("deleting the outdated listen: %s", addr)
            for pid, closed_at in by_pid.items():
                if closed_at is None:
                    by_pid[pid] = now

        missing = {
            addr: inode
            for addr, inode in actual_listens.items()
            if not any(c is None for c in self.listens.get(addr, {}).values())
        }
        if missing:
            inode_to_pid: dict[str, int] = {}
            for pid in self.pids:
                try:
                    fds = self.procfs.read_fds(pid)
                except OSError:
                    continue
                inode_to_pid.update((fd.socket_inode, pid) for fd in fds if fd.socket_inode)
            for addr, inode in missing.items():
                pid = inode_to_pid.get(inode)
                if pid is None:
                    log.error("failed to determine pid for listen: %s", addr)
                    continue
                log.warning("missing listen found: %s %d", addr, pid)
                self.on_listen_open(pid, addr)

        for addr in list(self.listens):
            by_pid = self.listens[addr]
            for pid in [p for p, c in by_pid.items() if c is not None and now - c > GC_INTERVAL]:
                del by_pid[pid]
            if not by_pid:
                del self.listens[addr]