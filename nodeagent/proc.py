"""Per-process information read from procfs: fds, mounts, sockets and namespaces."""

from __future__ import annotations

import ipaddress
import logging
import os
import posixpath
import re
from collections.abc import Iterator
from dataclasses import dataclass

from .cgroup import DEFAULT_CGROUP_ROOT, Cgroup, from_process_cgroup_file
from .common import IPPort

log = logging.getLogger(__name__)

DEFAULT_PROC_ROOT = "/proc"

_STATE_ESTABLISHED = "01"
_STATE_LISTEN = "0A"
_UINT32_MAX = 0xFFFFFFFF
_INT32_MIN = -(1 << 31)
_INT32_MAX = (1 << 31) - 1
_SOCKET_PREFIX = "socket:["


def _join(*parts: str) -> str:
    """Join and clean slash-separated paths, treating every part as relative."""
    joined = "/".join(p for p in parts if p)
    if not joined:
        return ""
    cleaned = posixpath.normpath(joined)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


@dataclass(frozen=True)
class Fd:
    fd: int
    dest: str
    socket_inode: str = ""


@dataclass(frozen=True)
class FdInfo:
    mnt_id: str = ""
    flags: int = 0
    dest: str = ""


@dataclass(frozen=True)
class FSStat:
    capacity_bytes: int
    used_bytes: int
    reserved_bytes: int


@dataclass(frozen=True)
class MountInfo:
    major_minor: str
    mount_point: str


@dataclass(frozen=True)
class Sock:
    inode: str
    saddr: IPPort
    daddr: IPPort
    listen: bool


def stat_fs(dir_path: str) -> FSStat:
    """Capacity, used and reserved bytes of the filesystem holding ``dir_path``."""
    s = os.statvfs(dir_path)
    block_size = s.f_frsize or s.f_bsize
    return FSStat(
        capacity_bytes=s.f_blocks * block_size,
        used_bytes=(s.f_blocks - s.f_bfree) * block_size,
        reserved_bytes=(s.f_bfree - s.f_bavail) * block_size,
    )


def decode_addr(src: bytes | str) -> IPPort:
    """Decode an ``ADDR:PORT`` hex pair from /proc/net/tcp{,6}; invalid input gives IPPort()."""
    if isinstance(src, bytes):
        src = src.decode("ascii", errors="replace")
    col = src.find(":")
    if col not in (8, 32):
        return IPPort()
    ip_hex, port_hex = src[:col], src[col + 1 :]
    if not re.fullmatch(r"[0-9A-Fa-f]*", ip_hex) or not re.fullmatch(r"[0-9A-Fa-f]{4}", port_hex):
        return IPPort()
    raw = bytes.fromhex(ip_hex)
    # The kernel prints each 32-bit word in host (little-endian) order.
    ip_bytes = b"".join(raw[i : i + 4][::-1] for i in range(0, len(raw), 4))
    ip = ipaddress.ip_address(ip_bytes)
    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return IPPort(ip, int.from_bytes(bytes.fromhex(port_hex), "big"))


def _parse_socket_line(line: str) -> Sock | None:
    fields = line.split()
    if len(fields) < 4:
        return None
    state = fields[3]
    if state not in (_STATE_ESTABLISHED, _STATE_LISTEN):
        return None
    inode = fields[9] if len(fields) > 9 else ""
    return Sock(
        inode=inode,
        saddr=decode_addr(fields[1]),
        daddr=decode_addr(fields[2]),
        listen=state == _STATE_LISTEN,
    )


def _read_sockets(src: str) -> Iterator[Sock]:
    with open(src, encoding="ascii", errors="replace") as f:
        next(f, None)  # header
        for line in f:
            if (sock := _parse_socket_line(line)) is not None:
                yield sock


def _parse_octal_flags(text: str) -> int:
    if not re.fullmatch(r"[+-]?[0-7]+", text):
        return 0
    return max(_INT32_MIN, min(_INT32_MAX, int(text, 8)))


@dataclass(frozen=True)
class ProcFS:
    """Access to a procfs tree rooted at ``root``."""

    root: str = DEFAULT_PROC_ROOT
    cgroup_root: str = DEFAULT_CGROUP_ROOT
    base_cgroup_path: str = ""

    def path(self, pid: int, *args: str) -> str:
        return _join(self.root, str(pid), *args)

    def host_path(self, p: str) -> str:
        """Path of ``p`` inside the root filesystem of the host (pid 1)."""
        return self.path(1, "root", p)

    def get_cmdline(self, pid: int) -> bytes:
        """Raw NUL-separated command line, or empty bytes if unreadable."""
        try:
            with open(self.path(pid, "cmdline"), "rb") as f:
                return f.read()
        except OSError:
            return b""

    def read_cgroup(self, pid: int) -> Cgroup:
        return from_process_cgroup_file(
            self.path(pid, "cgroup"), self.base_cgroup_path, self.cgroup_root
        )

    def list_pids(self) -> list[int]:
        pids = [
            int(name)
            for name in os.listdir(self.root)
            if re.fullmatch(r"[0-9]+", name) and int(name) <= _UINT32_MAX
        ]
        return sorted(pids)

    def read_fds(self, pid: int) -> list[Fd]:
        fd_dir = self.path(pid, "fd")
        res: list[Fd] = []
        for name in sorted(os.listdir(fd_dir)):
            if not re.fullmatch(r"[+-]?[0-9]+", name):
                continue
            try:
                dest = os.readlink(_join(fd_dir, name))
            except OSError:
                continue
            socket_inode = ""
            if dest.startswith(_SOCKET_PREFIX) and dest.endswith("]"):
                socket_inode = dest[len(_SOCKET_PREFIX) : -1]
            res.append(Fd(fd=int(name) & _UINT32_MAX, dest=dest, socket_inode=socket_inode))
        return res

    def get_fd_info(self, pid: int, fd: int) -> FdInfo | None:
        """Mount id, open flags and target of a file descriptor, or None if gone."""
        try:
            with open(self.path(pid, "fdinfo", str(fd)), encoding="utf-8", errors="replace") as f:
                data = f.read()
            dest = os.readlink(self.path(pid, "fd", str(fd)))
        except OSError:
            return None
        mnt_id = ""
        flags = 0
        for line in data.split("\n"):
            if line.startswith("mnt_id:"):
                mnt_id = line[len("mnt_id:") :].strip()
            elif line.startswith("flags:"):
                flags = _parse_octal_flags(line[len("flags:") :].strip())
        return FdInfo(mnt_id=mnt_id, flags=flags, dest=dest)

    def get_mount_info(self, pid: int) -> dict[str, MountInfo] | None:
        """Mounts keyed by mount id, skipping virtual (``0:*``) devices."""
        try:
            with open(self.path(pid, "mountinfo"), encoding="utf-8", errors="replace") as f:
                data = f.read()
        except OSError:
            return None
        res: dict[str, MountInfo] = {}
        for line in data.split("\n"):
            fields = line.split()
            if len(fields) < 5 or fields[2].startswith("0:"):
                continue
            res[fields[0]] = MountInfo(major_minor=fields[2], mount_point=fields[4])
        return res

    def get_sockets(self, pid: int) -> list[Sock]:
        """Listening and established TCP sockets of the process's network namespace."""
        res: list[Sock] = []
        error: OSError | None = None
        for name in ("tcp", "tcp6"):
            try:
                res.extend(_read_sockets(self.path(pid, "net", name)))
            except OSError as exc:
                error = exc
        if error is not None:
            raise error
        return res

    def net_ns_id(self, pid: int) -> str:
        """Identifier of the process's network namespace, ``NS(dev:ino)``."""
        st = os.stat(self.path(pid, "ns", "net"))
        return f"NS({st.st_dev}:{st.st_ino})"