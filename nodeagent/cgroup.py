"""Process cgroups: finding the owning container and reading resource accounting."""

from __future__ import annotations

import logging
import os
import posixpath
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .common import is_not_exist

log = logging.getLogger(__name__)

DEFAULT_CGROUP_ROOT = "/sys/fs/cgroup"

_MAX_MEMORY = 1 << 62
_UINT64_MAX = (1 << 64) - 1
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1

_DOCKER_ID_RE = re.compile(r"([a-z0-9]{64})")
_CRIO_ID_RE = re.compile(r"crio-([a-z0-9]{64})")
_CONTAINERD_ID_RE = re.compile(r"cri-containerd-([a-z0-9]{64})")
_LXC_ID_RE = re.compile(r"/lxc/([^/]+)")
_SYSTEM_SLICE_ID_RE = re.compile(r"(/system\.slice/([^/]+))")


class Version(Enum):
    V1 = 1
    V2 = 2


class ContainerType(Enum):
    UNKNOWN = "unknown"
    STANDALONE_PROCESS = "standalone"
    DOCKER = "docker"
    CRIO = "crio"
    CONTAINERD = "cri-containerd"
    LXC = "lxc"
    SYSTEMD_SERVICE = "systemd"

    def __str__(self) -> str:
        return self.value


@dataclass
class CPUStat:
    usage_seconds: float = 0.0
    throttled_time_seconds: float = 0.0
    limit_cores: float = 0.0


@dataclass
class IOStat:
    read_ops: int = 0
    write_ops: int = 0
    read_bytes: int = 0
    written_bytes: int = 0


@dataclass
class MemoryStat:
    rss: int = 0
    cache: int = 0
    limit: int = 0


def _join(*parts: str) -> str:
    """Join and clean slash-separated paths, treating every part as relative."""
    joined = "/".join(p for p in parts if p)
    if not joined:
        return ""
    cleaned = posixpath.normpath(joined)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _read(file_path: str) -> str:
    with open(file_path, encoding="utf-8", errors="replace") as f:
        return f.read()


def _parse_uint(text: str) -> int:
    if not re.fullmatch(r"[0-9]+", text):
        raise ValueError(f"invalid unsigned integer: {text!r}")
    value = int(text)
    if value > _UINT64_MAX:
        raise ValueError(f"value out of range: {text!r}")
    return value


def _parse_int(text: str) -> int:
    if not re.fullmatch(r"[+-]?[0-9]+", text):
        raise ValueError(f"invalid integer: {text!r}")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"value out of range: {text!r}")
    return value


def read_variables_from_file(file_path: str) -> dict[str, int]:
    """Read ``name value`` lines; malformed values are skipped."""
    res: dict[str, int] = {}
    for line in _read(file_path).split("\n"):
        parts = line.split()
        if len(parts) != 2:
            continue
        try:
            res[parts[0]] = _parse_uint(parts[1])
        except ValueError as exc:
            log.warning('failed to parse cgroup stat line "%s": %s', line, exc)
    return res


def read_int_from_file(file_path: str) -> int:
    return _parse_int(_read(file_path).strip())


def read_uint_from_file(file_path: str) -> int:
    return _parse_uint(_read(file_path).strip())


def container_by_cgroup(path: str) -> tuple[ContainerType, str]:
    """Work out the container type and id from a cgroup path."""
    parts = path.lstrip("/").split("/")
    if len(parts) < 2:
        return ContainerType.STANDALONE_PROCESS, ""
    prefix = parts[0]
    if prefix in ("user.slice", "init.scope"):
        return ContainerType.STANDALONE_PROCESS, ""
    if prefix == "docker" or (prefix == "system.slice" and parts[1].startswith("docker-")):
        match = _DOCKER_ID_RE.search(path)
        if match is None:
            raise ValueError(f"invalid docker cgroup {path}")
        return ContainerType.DOCKER, match.group(1)
    if prefix in ("kubepods", "kubepods.slice"):
        if match := _CRIO_ID_RE.search(path):
            return ContainerType.CRIO, match.group(1)
        if match := _CONTAINERD_ID_RE.search(path):
            return ContainerType.CONTAINERD, match.group(1)
        match = _DOCKER_ID_RE.search(path)
        if match is None:
            raise ValueError(f"invalid docker cgroup {path}")
        return ContainerType.DOCKER, match.group(1)
    if prefix == "lxc":
        match = _LXC_ID_RE.search(path)
        if match is None:
            raise ValueError(f"invalid lxc cgroup {path}")
        return ContainerType.LXC, match.group(1)
    if prefix == "system.slice":
        match = _SYSTEM_SLICE_ID_RE.search(path)
        if match is None:
            raise ValueError(f"invalid systemd cgroup {path}")
        return ContainerType.SYSTEMD_SERVICE, match.group(1)
    raise ValueError(f"unknown container: {path}")


@dataclass
class Cgroup:
    id: str
    version: Version
    container_type: ContainerType
    container_id: str
    subsystems: dict[str, str] = field(default_factory=dict)
    root: str = DEFAULT_CGROUP_ROOT

    def _subsystem(self, name: str) -> str:
        return self.subsystems.get(name, "")

    def created_at(self) -> datetime | None:
        """Modification time of the cgroup directory, or None if unavailable."""
        if self.version is Version.V1:
            p = _join(self.root, "cpu", self._subsystem("cpu"))
        else:
            p = _join(self.root, self._subsystem(""))
        try:
            mtime = os.stat(p).st_mtime
        except OSError as exc:
            if not is_not_exist(exc):
                log.error("%s", exc)
            return None
        return datetime.fromtimestamp(mtime, tz=timezone.utc)

    def cpu_stat(self) -> CPUStat:
        if self.version is Version.V1:
            return self._cpu_stat_v1()
        return self._cpu_stat_v2()

    def _cpu_stat_v1(self) -> CPUStat:
        cpu_dir = _join(self.root, "cpu", self._subsystem("cpu"))
        throttling = read_variables_from_file(_join(cpu_dir, "cpu.stat"))
        usage_ns = read_int_from_file(
            _join(self.root, "cpuacct", self._subsystem("cpuacct"), "cpuacct.usage")
        )
        period_us = read_int_from_file(_join(cpu_dir, "cpu.cfs_period_us"))
        quota_us = read_int_from_file(_join(cpu_dir, "cpu.cfs_quota_us"))
        res = CPUStat(
            usage_seconds=usage_ns / 1e9,
            throttled_time_seconds=throttling.get("throttled_time", 0) / 1e9,
        )
        if quota_us > 0:
            res.limit_cores = quota_us / period_us
        return res

    def _cpu_stat_v2(self) -> CPUStat:
        cg_dir = _join(self.root, self._subsystem(""))
        variables = read_variables_from_file(_join(cg_dir, "cpu.stat"))
        res = CPUStat(
            usage_seconds=variables.get("usage_usec", 0) / 1e6,
            throttled_time_seconds=variables.get("throttled_usec", 0) / 1e6,
        )
        data = _read(_join(cg_dir, "cpu.max")).strip()
        parts = data.split()
        if len(parts) != 2:
            raise ValueError(f"invalid cpu.max payload: {data}")
        if parts[0] == "max":
            return res
        try:
            quota_us = _parse_uint(parts[0])
        except ValueError:
            raise ValueError(f"invalid quota value in cpu.max: {parts[0]}") from None
        try:
            period_us = _parse_uint(parts[1])
        except ValueError:
            raise ValueError(f"invalid period value in cpu.max: {parts[1]}") from None
        if period_us > 0:
            res.limit_cores = quota_us / period_us
        return res

    def io_stat(self) -> dict[str, IOStat]:
        if self.version is Version.V1:
            return self._io_stat_v1()
        return self._io_stat_v2()

    def _io_stat_v1(self) -> dict[str, IOStat]:
        blkio_dir = _join(self.root, "blkio", self._subsystem("blkio"))
        ops = _read_blkio_stat_file(_join(blkio_dir, "blkio.throttle.io_serviced"))
        byte_counts = _read_blkio_stat_file(_join(blkio_dir, "blkio.throttle.io_service_bytes"))
        res: dict[str, IOStat] = {}
        for major_minor, name, value in ops:
            stat = res.setdefault(major_minor, IOStat())
            if name == "Read":
                stat.read_ops = value
            elif name == "Write":
                stat.write_ops = value
        for major_minor, name, value in byte_counts:
            stat = res.setdefault(major_minor, IOStat())
            if name == "Read":
                stat.read_bytes = value
            elif name == "Write":
                stat.written_bytes = value
        return res

    def _io_stat_v2(self) -> dict[str, IOStat]:
        payload = _read(_join(self.root, self._subsystem(""), "io.stat"))
        res: dict[str, IOStat] = {}
        for line in payload.split("\n"):
            parts = line.split()
            if len(parts) < 5:
                continue
            stat = IOStat()
            for item in parts[1:]:
                key, sep, raw = item.partition("=")
                if not sep:
                    continue
                try:
                    value = _parse_uint(raw)
                except ValueError:
                    continue
                match key:
                    case "rbytes":
                        stat.read_bytes = value
                    case "wbytes":
                        stat.written_bytes = value
                    case "rios":
                        stat.read_ops = value
                    case "wios":
                        stat.write_ops = value
            res[parts[0]] = stat
        return res

    def memory_stat(self) -> MemoryStat:
        if self.version is Version.V1:
            return self._memory_stat_v1()
        return self._memory_stat_v2()

    def _memory_stat_v1(self) -> MemoryStat:
        mem_dir = _join(self.root, "memory", self._subsystem("memory"))
        variables = read_variables_from_file(_join(mem_dir, "memory.stat"))
        limit = read_uint_from_file(_join(mem_dir, "memory.limit_in_bytes"))
        if limit > _MAX_MEMORY:
            limit = 0
        # 'rss' counts only anonymous and swap cache memory; adding
        # 'mapped_file' gives the resident set size of the cgroup.
        return MemoryStat(
            rss=variables.get("rss", 0) + variables.get("mapped_file", 0),
            cache=variables.get("cache", 0),
            limit=limit,
        )

    def _memory_stat_v2(self) -> MemoryStat:
        cg_dir = _join(self.root, self._subsystem(""))
        current = read_uint_from_file(_join(cg_dir, "memory.current"))
        variables = read_variables_from_file(_join(cg_dir, "memory.stat"))
        try:
            limit = read_uint_from_file(_join(cg_dir, "memory.max"))
        except (OSError, ValueError):
            limit = 0
        file_bytes = variables.get("file", 0)
        return MemoryStat(rss=current - file_bytes, cache=file_bytes, limit=limit)


def _read_blkio_stat_file(file_path: str) -> list[tuple[str, str, int]]:
    res: list[tuple[str, str, int]] = []
    for line in _read(file_path).split("\n"):
        parts = line.split()
        if len(parts) != 3:
            continue
        try:
            value = _parse_uint(parts[2])
        except ValueError as exc:
            log.warning('failed to parse blkio stat line "%s": %s', line, exc)
            continue
        res.append((parts[0], parts[1], value))
    return res


def from_process_cgroup_file(
    file_path: str,
    base_cgroup_path: str = "",
    cgroup_root: str = DEFAULT_CGROUP_ROOT,
) -> Cgroup:
    """Build a Cgroup from a ``/proc/<pid>/cgroup`` file."""
    subsystems: dict[str, str] = {}
    for line in _read(file_path).split("\n"):
        parts = line.split(":", 2)
        if len(parts) < 3:
            continue
        for cg_type in parts[1].split(","):
            subsystems[cg_type] = _join(base_cgroup_path, parts[2])
    if cpu := subsystems.get("cpu", ""):
        cg_id, version = cpu, Version.V1
    else:
        cg_id, version = subsystems.get("", ""), Version.V2
    container_type, container_id = container_by_cgroup(cg_id)
    return Cgroup(
        id=cg_id,
        version=version,
        container_type=container_type,
        container_id=container_id,
        subsystems=subsystems,
        root=cgroup_root,
    )