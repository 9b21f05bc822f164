import ipaddress

import pytest

from nodeagent.flags import Flags, parse_flags


def test_defaults():
    flags = parse_flags([])
    assert flags == Flags()
    assert flags.listen_address == "0.0.0.0:80"
    assert flags.cgroup_root == "/sys/fs/cgroup"
    assert flags.external_networks_whitelist == ()


def test_options():
    flags = parse_flags(
        [
            "--listen",
            "127.0.0.1:9000",
            "--cgroupfs-root=/host/cgroup",
            "--no-parse-logs",
            "--no-ping-upstreams",
            "--provider",
            "onprem",
            "--region",
            "eu",
            "--availability-zone",
            "eu-a",
        ]
    )
    assert flags.listen_address == "127.0.0.1:9000"
    assert flags.cgroup_root == "/host/cgroup"
    assert flags.no_parse_logs is True
    assert flags.no_ping_upstreams is True
    assert (flags.provider, flags.region, flags.availability_zone) == ("onprem", "eu", "eu-a")


def test_boolean_negation():
    flags = parse_flags(["--no-parse-logs", "--no-no-parse-logs"])
    assert flags.no_parse_logs is False


def test_track_public_network_repeats():
    flags = parse_flags(
        ["--track-public-network", "8.8.8.0/24", "--track-public-network", "1.2.3.4/8"]
    )
    assert flags.external_networks_whitelist == (
        ipaddress.ip_network("8.8.8.0/24"),
        ipaddress.ip_network("1.2.3.4/8", strict=False),
    )
    assert ipaddress.ip_address("1.9.9.9") in flags.external_networks_whitelist[1]


@pytest.mark.parametrize("network", ["8.8.8.8", "not-a-network/8", "10.0.0.0/99"])
def test_invalid_network_is_rejected(network):
    with pytest.raises(SystemExit) as info:
        parse_flags(["--track-public-network", network])
    assert info.value.code == 2


def test_unknown_option_is_rejected():
    with pytest.raises(SystemExit) as info:
        parse_flags(["--no-such-option"])
    assert info.value.code == 2