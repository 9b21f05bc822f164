"""Kernel tracer events and the events that describe the state found at start-up."""

from __future__ import annotations

import ipaddress
import logging
import struct
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import IntEnum

from .common import IPPort
from .proc import ProcFS, Sock

log = logging.getLogger(__name__)

_PROC_EVENT = struct.Struct("<III")
_TCP_EVENT = struct.Struct("<IIHH16s16s")
_FILE_EVENT = struct.Struct("<III")


class EventType(IntEnum):
    PROCESS_START = 1
    PROCESS_EXIT = 2
    CONNECTION_OPEN = 3
    CONNECTION_CLOSE = 4
    CONNECTION_ERROR = 5
    LISTEN_OPEN = 6
    LISTEN_CLOSE = 7
    FILE_OPEN = 8
    TCP_RETRANSMIT = 9

    def __str__(self) -> str:
        return self.name.lower().replace("_", "-")


class EventReason(IntEnum):
    NONE = 0
    OOM_KILL = 1

    def __str__(self) -> str:
        if self is EventReason.OOM_KILL:
            return "oom-kill"
        return f"unknown: {int(self)}"


@dataclass(frozen=True)
class Event:
    """A process, TCP or file event; ``type`` and ``reason`` stay plain ints if unknown."""

    type: EventType | int
    reason: EventReason | int = EventReason.NONE
    pid: int = 0
    src_addr: IPPort = field(default_factory=IPPort)
    dst_addr: IPPort = field(default_factory=IPPort)
    fd: int = 0


def _event_type(value: int) -> EventType | int:
    try:
        return EventType(value)
    except ValueError:
        return value


def _event_reason(value: int) -> EventReason | int:
    try:
        return EventReason(value)
    except ValueError:
        return value


def _unpack(layout: struct.Struct, data: bytes, what: str) -> tuple:
    if len(data) < layout.size:
        raise ValueError(f"{what} event needs {layout.size} bytes, got {len(data)}")
    return layout.unpack_from(data)


def _ip_port(raw: bytes, port: int) -> IPPort:
    ip = ipaddress.IPv6Address(raw)
    return IPPort(ip.ipv4_mapped or ip, port)


def decode_proc_event(data: bytes) -> Event:
    """Decode a little-endian ``type, pid, reason`` record."""
    typ, pid, reason = _unpack(_PROC_EVENT, data, "process")
    return Event(type=_event_type(typ), reason=_event_reason(reason), pid=pid)


def decode_tcp_event(data: bytes) -> Event:
    """Decode a ``type, pid, sport, dport, saddr[16], daddr[16]`` record."""
    typ, pid, sport, dport, saddr, daddr = _unpack(_TCP_EVENT, data, "tcp")
    return Event(
        type=_event_type(typ),
        pid=pid,
        src_addr=_ip_port(saddr, sport),
        dst_addr=_ip_port(daddr, dport),
    )


def decode_file_event(data: bytes) -> Event:
    """Decode a ``type, pid, fd`` record."""
    typ, pid, fd = _unpack(_FILE_EVENT, data, "file")
    return Event(type=_event_type(typ), pid=pid, fd=fd)


def read_fds(
    procfs: ProcFS, pids: Iterable[int]
) -> tuple[list[tuple[int, int]], list[tuple[int, Sock]]]:
    """Open files as ``(pid, fd)`` and TCP sockets as ``(pid, sock)`` of the given processes.

    Sockets are read once per network namespace.
    """
    files: list[tuple[int, int]] = []
    socks: list[tuple[int, Sock]] = []
    by_namespace: dict[str, dict[str, Sock]] = {}
    for pid in pids:
        try:
            ns_id = procfs.net_ns_id(pid)
        except OSError:
            continue
        sockets = by_namespace.get(ns_id)
        if sockets is None:
            sockets = by_namespace[ns_id] = {}
            try:
                sockets.update((s.inode, s) for s in procfs.get_sockets(pid))
            except OSError as exc:
                log.warning("%s", exc)
        try:
            fds = procfs.read_fds(pid)
        except OSError:
            continue
        for fd in fds:
            if fd.socket_inode:
                if (sock := sockets.get(fd.socket_inode)) is not None:
                    socks.append((pid, sock))
            elif fd.dest.startswith("/"):
                files.append((pid, fd.fd))
    return files, socks


def initial_events(procfs: ProcFS, pids: Iterable[int] | None = None) -> Iterator[Event]:
    """Events describing processes, open files, listens and outbound connections already there."""
    pids = procfs.list_pids() if pids is None else list(pids)
    for pid in pids:
        yield Event(type=EventType.PROCESS_START, pid=pid)

    files, socks = read_fds(procfs, pids)
    for pid, fd in files:
        yield Event(type=EventType.FILE_OPEN, pid=pid, fd=fd)

    listens = {(pid, s.saddr.port) for pid, s in socks if s.listen}
    for pid, s in socks:
        if s.listen:
            typ = EventType.LISTEN_OPEN
        elif (pid, s.saddr.port) in listens or s.daddr.port > s.saddr.port:
            continue  # inbound
        else:
            typ = EventType.CONNECTION_OPEN
        yield Event(type=typ, pid=pid, src_addr=s.saddr, dst_addr=s.daddr)