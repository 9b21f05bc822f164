"""Command-line options of the agent."""

from __future__ import annotations

import argparse
import ipaddress
import sys
from collections.abc import Sequence
from dataclasses import dataclass

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@dataclass(frozen=True)
class Flags:
    listen_address: str = "0.0.0.0:80"
    cgroup_root: str = "/sys/fs/cgroup"
    no_parse_logs: bool = False
    no_ping_upstreams: bool = False
    external_networks_whitelist: tuple[IPNetwork, ...] = ()
    provider: str = ""
    region: str = ""
    availability_zone: str = ""


def _parse_network(text: str) -> IPNetwork:
    if "/" not in text:
        raise ValueError("no '/'")
    return ipaddress.ip_network(text, strict=False)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nodeagent", allow_abbrev=False)
    parser.add_argument(
        "--listen", default="0.0.0.0:80", help="Listen address - ip:port or :port"
    )
    parser.add_argument(
        "--cgroupfs-root",
        default="/sys/fs/cgroup",
        help="The mount point of the host cgroupfs root",
    )
    parser.add_argument(
        "--no-parse-logs",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Disable container logs parsing",
    )
    parser.add_argument(
        "--no-ping-upstreams",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Disable container upstreams ping",
    )
    parser.add_argument(
        "--track-public-network",
        action="append",
        default=[],
        help="Allow track connections to the specified IP networks, all private "
        "networks are allowed by default (e.g., Y.Y.Y.Y/mask)",
    )
    parser.add_argument(
        "--provider", default="", help="`provider` label for `node_cloud_info` metric"
    )
    parser.add_argument(
        "--region", default="", help="`region` label for `node_cloud_info` metric"
    )
    parser.add_argument(
        "--availability-zone",
        default="",
        help="`availability_zone` label for `node_cloud_info` metric",
    )
    return parser


def parse_flags(argv: Sequence[str] | None = None) -> Flags:
    """Parse the command line; exits with a usage error on bad input."""
    parser = _parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else list(argv))
    networks = []
    for prefix in args.track_public_network:
        try:
            networks.append(_parse_network(prefix))
        except ValueError as exc:
            parser.error(f"invalid network {prefix}: {exc}")
    return Flags(
        listen_address=args.listen,
        cgroup_root=args.cgroupfs_root,
        no_parse_logs=args.no_parse_logs,
        no_ping_upstreams=args.no_ping_upstreams,
        external_networks_whitelist=tuple(networks),
        provider=args.provider,
        region=args.region,
        availability_zone=args.availability_zone,
    )