import threading
import urllib.error
import urllib.request

import pytest

from nodeagent.cli import (
    _check_kernel_version,
    _make_server,
    _parse_listen_address,
    info_metric,
    machine_id,
    main,
)
from nodeagent.metrics import render


def test_machine_id_prefers_product_uuid(tmp_path):
    uuid_file = tmp_path / "sys/devices/virtual/dmi/id/product_uuid"
    uuid_file.parent.mkdir(parents=True)
    uuid_file.write_text("abcd-ef01-2345\n")
    (tmp_path / "etc").mkdir()
    (tmp_path / "etc/machine-id").write_text("other\n")
    assert machine_id(str(tmp_path)) == "abcdef012345"


def test_machine_id_falls_back(tmp_path):
    (tmp_path / "var/lib/dbus").mkdir(parents=True)
    (tmp_path / "var/lib/dbus/machine-id").write_text("feedbeef\n")
    assert machine_id(str(tmp_path)) == "feedbeef"


def test_machine_id_missing(tmp_path):
    assert machine_id(str(tmp_path)) == ""


def test_info_metric_renders_version():
    m = info_metric("node_agent_info", "1.2.3")
    assert m.value == 1.0
    assert 'node_agent_info{version="1.2.3"} 1\n' in render([m])


def test_kernel_version_check():
    assert _check_kernel_version("5.10.0-19-amd64") == "5.10"
    assert _check_kernel_version("4.16.0") == "4.16"
    with pytest.raises(ValueError, match="minimum Linux kernel version"):
        _check_kernel_version("4.15.18")
    with pytest.raises(ValueError, match="invalid kernel version"):
        _check_kernel_version("garbage")


def test_parse_listen_address():
    assert _parse_listen_address(":80") == ("", 80)
    assert _parse_listen_address("127.0.0.1:9100") == ("127.0.0.1", 9100)
    assert _parse_listen_address("[::1]:80") == ("::1", 80)
    with pytest.raises(ValueError):
        _parse_listen_address("nope")


def test_main_rejects_bad_network():
    with pytest.raises(SystemExit) as exc_info:
        main(["--track-public-network", "bogus"])
    assert exc_info.value.code == 2


def test_server_serves_metrics():
    server = _make_server("127.0.0.1", 0, lambda: "x 1\n")
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        base = f"http://127.0.0.1:{server.server_address[1]}"
        with urllib.request.urlopen(base + "/metrics", timeout=5) as resp:
            assert resp.read() == b"x 1\n"
            assert resp.headers["Content-Type"].startswith("text/plain")
        with pytest.raises(urllib.error.HTTPError) as exc_info:
            urllib.request.urlopen(base + "/other", timeout=5)
        assert exc_info.value.code == 404
    finally:
        server.shutdown()
        server.server_close()
        thread.join()