"""Agent entry point: checks the host and serves metrics over HTTP."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Sequence
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from .collector import NodeCollector
from .common import kernel_major_minor
from .flags import parse_flags
from .metadata import get_instance_metadata
from .metrics import Desc, Metric, gauge, render

log = logging.getLogger(__name__)

VERSION = "unknown"
MIN_SUPPORTED_KERNEL_VERSION = "4.16"
HOST_ROOT = "/proc/1/root"

_MACHINE_ID_PATHS = (
    "sys/devices/virtual/dmi/id/product_uuid",
    "etc/machine-id",
    "var/lib/dbus/machine-id",
)
_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def uname() -> tuple[str, str]:
    """Hostname and kernel release as seen in the host's UTS namespace."""
    with open("/proc/1/ns/uts", "rb") as host_ns, open("/proc/self/ns/uts", "rb") as own_ns:
        os.setns(host_ns.fileno(), os.CLONE_NEWUTS)
        try:
            info = os.uname()
        finally:
            os.setns(own_ns.fileno(), os.CLONE_NEWUTS)
    return info.nodename, info.release


def machine_id(root: str = HOST_ROOT) -> str:
    """The host's machine id without dashes, or an empty string if none is found."""
    for p in _MACHINE_ID_PATHS:
        try:
            with open(os.path.join(root, p), encoding="utf-8", errors="replace") as f:
                payload = f.read()
        except OSError as exc:
            log.warning("failed to read machine-id: %s", exc)
            continue
        mid = payload.replace("-", "").strip()
        log.info("machine-id: %s", mid)
        return mid
    return ""


def info_metric(name: str, version: str) -> Metric:
    """A gauge set to 1 that carries the agent version as a label."""
    return gauge(Desc(name, "", ("version",)), 1, version)


def _check_kernel_version(kernel_version: str) -> str:
    """Return the kernel's ``major.minor``; raise ValueError if unsupported."""
    ver = kernel_major_minor(kernel_version)
    if not ver:
        raise ValueError(f"invalid kernel version: {kernel_version}")

    def as_tuple(v: str) -> tuple[int, ...]:
        return tuple(int(part) for part in v.split("."))

    if as_tuple(ver) < as_tuple(MIN_SUPPORTED_KERNEL_VERSION):
        raise ValueError(
            f"the minimum Linux kernel version required is {MIN_SUPPORTED_KERNEL_VERSION} or later"
        )
    return ver


def _parse_listen_address(address: str) -> tuple[str, int]:
    """Split ``ip:port`` or ``:port`` into host and port; raise ValueError if malformed."""
    host, sep, port_text = address.rpartition(":")
    if not sep or not re.fullmatch(r"[0-9]+", port_text) or int(port_text) > 0xFFFF:
        raise ValueError(f"invalid listen address: {address}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port_text)


def _make_server(host: str, port: int, produce: Callable[[], str]) -> ThreadingHTTPServer:
    """An HTTP server answering ``GET /metrics`` with the text ``produce`` returns."""

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            if self.path.split("?", 1)[0] != "/metrics":
                self.send_error(404)
                return
            try:
                body = produce().encode("utf-8")
            except Exception as exc:  # any failure must not kill the server
                log.error("%s", exc)
                self.send_error(500, str(exc))
                return
            self.send_response(200)
            self.send_header("Content-Type", _CONTENT_TYPE)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args: object) -> None:
            log.debug(format, *args)

    return ThreadingHTTPServer((host, port), Handler)


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    flags = parse_flags(argv)
    log.info("agent version: %s", VERSION)

    try:
        hostname, kernel_version = uname()
    except OSError as exc:
        log.error("failed to get uname: %s", exc)
        return 1
    log.info("hostname: %s", hostname)
    log.info("kernel version: %s", kernel_version)

    try:
        _check_kernel_version(kernel_version)
        host, port = _parse_listen_address(flags.listen_address)
    except ValueError as exc:
        log.error("%s", exc)
        return 1

    const_labels = {"machine_id": machine_id()}
    info = info_metric("node_agent_info", VERSION)
    metadata = get_instance_metadata()
    log.info("instance metadata: %s", metadata)
    collector = NodeCollector(hostname, kernel_version, metadata, flags)

    def produce() -> str:
        return render([info, *collector.collect()], const_labels)

    try:
        server = _make_server(host, port, produce)
    except OSError as exc:
        log.error("%s", exc)
        return 1
    log.info("listening on: %s", flags.listen_address)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())