import os

import pytest

from nodeagent.cgroup import ContainerType
from nodeagent.common import IPPort, parse_ip_port
from nodeagent.proc import (
    Fd,
    FdInfo,
    MountInfo,
    ProcFS,
    Sock,
    decode_addr,
    stat_fs,
)

WAL = "/var/lib/postgresql/data/pg_wal/000000010000000000000001"
DOCKER_ID = "b43d92bf1e5c6f78bb9b7bc6f40721280299855ba692092716e3a1b6c0b86f3f"

HEADER = (
    "  sl  local_address rem_address   st tx_queue rx_queue tr tm->when "
    "retrnsmt   uid  timeout inode\n"
)
TAIL = " 1 0000000000000000 100 0 0 10 0\n"

TCP = (
    HEADER
    + "   0: 00000000:1538 00000000:0000 0A 00000000:00000000 00:00000000 00000000   999        0 8039432"
    + TAIL
    + "   1: 030011AC:1538 040011AC:8DEC 01 00000000:00000000 00:00000000 00000000   999        0 8134154"
    + TAIL
    + "   2: 030011AC:1538 050011AC:8DED 06 00000000:00000000 00:00000000 00000000   999        0 0"
    + TAIL
)
TCP6 = (
    HEADER
    + "   0: 00000000000000000000000000000000:1538 00000000000000000000000000000000:0000 0A "
    "00000000:00000000 00:00000000 00000000   999        0 8039433"
    + TAIL
    + "   1: 000080FE00000000578BCB48ACE6303C:1F90 00000000000000000000000000000000:0000 0A "
    "00000000:00000000 00:00000000 00000000     0        0 11139979"
    + TAIL
    + "   2: 0000000000000000FFFF00000100007F:1F91 00000000000000000000000000000000:0000 0A "
    "00000000:00000000 00:00000000 00000000     0        0 11154515"
    + TAIL
)

MOUNTINFO = """3100 3000 0:50 / / rw,relatime - overlay overlay rw
3125 3100 259:2 /pods/a/termination-log /dev/termination-log rw,relatime - ext4 /dev/nvme0n1p2 rw
3126 3100 259:2 /volumes/data /bitnami/kafka rw,relatime - ext4 /dev/nvme0n1p2 rw
3127 3100 259:2 /volumes/scripts/setup.sh /scripts/setup.sh ro,relatime - ext4 /dev/nvme0n1p2 rw
3128 3100 259:2 /containers/a/resolv.conf /etc/resolv.conf rw,relatime - ext4 /dev/nvme0n1p2 rw
3129 3100 259:2 /containers/a/hostname /etc/hostname rw,relatime - ext4 /dev/nvme0n1p2 rw
3130 3100 259:2 /pods/a/etc-hosts /etc/hosts rw,relatime - ext4 /dev/nvme0n1p2 rw
3131 3100 0:51 / /proc rw - proc proc rw
"""


@pytest.fixture
def procfs(tmp_path):
    root = tmp_path / "proc"
    pid_dir = root / "123"
    fd_dir = pid_dir / "fd"
    fd_dir.mkdir(parents=True)
    os.symlink(WAL, fd_dir / "4")
    os.symlink("socket:[321]", fd_dir / "5")
    os.symlink("/tmp/ignored", fd_dir / "notanfd")
    (pid_dir / "fdinfo").mkdir()
    (pid_dir / "fdinfo" / "4").write_text("pos:\t0\nflags:\t0100002\nmnt_id:\t1965\n")
    (pid_dir / "mountinfo").write_text(MOUNTINFO)
    (pid_dir / "net").mkdir()
    (pid_dir / "net" / "tcp").write_text(TCP)
    (pid_dir / "net" / "tcp6").write_text(TCP6)
    (pid_dir / "cmdline").write_bytes(b"postgres\x00-D\x00/data\x00")
    (pid_dir / "cgroup").write_text(f"12:cpu,cpuacct:/docker/{DOCKER_ID}\n0::/\n")
    (root / "self").mkdir()
    (root / "net").mkdir()
    (root / "99999999999").mkdir()
    return ProcFS(root=str(root), cgroup_root=str(tmp_path / "cgroup"))


def test_list_pids(procfs):
    assert procfs.list_pids() == [123]


def test_get_mount_info(procfs):
    assert procfs.get_mount_info(123) == {
        "3125": MountInfo(major_minor="259:2", mount_point="/dev/termination-log"),
        "3126": MountInfo(major_minor="259:2", mount_point="/bitnami/kafka"),
        "3127": MountInfo(major_minor="259:2", mount_point="/scripts/setup.sh"),
        "3128": MountInfo(major_minor="259:2", mount_point="/etc/resolv.conf"),
        "3129": MountInfo(major_minor="259:2", mount_point="/etc/hostname"),
        "3130": MountInfo(major_minor="259:2", mount_point="/etc/hosts"),
    }


def test_get_mount_info_missing_pid(procfs):
    assert procfs.get_mount_info(999) is None


def test_read_fds(procfs):
    assert procfs.read_fds(123) == [
        Fd(fd=4, dest=WAL),
        Fd(fd=5, dest="socket:[321]", socket_inode="321"),
    ]


def test_read_fds_missing_pid(procfs):
    with pytest.raises(FileNotFoundError):
        procfs.read_fds(999)


def test_get_fd_info(procfs):
    assert procfs.get_fd_info(123, 4) == FdInfo(mnt_id="1965", flags=0o100002, dest=WAL)


def test_get_fd_info_missing(procfs):
    assert procfs.get_fd_info(123, 7) is None


def test_get_sockets(procfs):
    assert procfs.get_sockets(123) == [
        Sock(inode="8039432", saddr=parse_ip_port("0.0.0.0:5432"), daddr=parse_ip_port("0.0.0.0:0"), listen=True),
        Sock(inode="8134154", saddr=parse_ip_port("172.17.0.3:5432"), daddr=parse_ip_port("172.17.0.4:36332"), listen=False),
        Sock(inode="8039433", saddr=parse_ip_port("[::]:5432"), daddr=parse_ip_port("[::]:0"), listen=True),
        Sock(
            inode="11139979",
            saddr=parse_ip_port("[fe80::48cb:8b57:3c30:e6ac]:8080"),
            daddr=parse_ip_port("[::]:0"),
            listen=True,
        ),
        Sock(inode="11154515", saddr=parse_ip_port("127.0.0.1:8081"), daddr=parse_ip_port("[::]:0"), listen=True),
    ]


def test_get_sockets_missing_file_raises(procfs, tmp_path):
    os.remove(tmp_path / "proc" / "123" / "net" / "tcp6")
    with pytest.raises(FileNotFoundError):
        procfs.get_sockets(123)


def test_decode_addr_valid():
    assert decode_addr(b"0100007F:0050") == parse_ip_port("127.0.0.1:80")
    assert decode_addr("030011AC:1538") == parse_ip_port("172.17.0.3:5432")


@pytest.mark.parametrize("src", ["0100007F0050", "00007F:0050", "0100007G:0050", "0100007F:5"])
def test_decode_addr_invalid(src):
    assert decode_addr(src) == IPPort()


def test_path_and_host_path(procfs, tmp_path):
    root = str(tmp_path / "proc")
    assert procfs.path(5, "fd", "3") == f"{root}/5/fd/3"
    assert procfs.host_path("/run/docker.sock") == f"{root}/1/root/run/docker.sock"


def test_default_host_path():
    assert ProcFS().host_path("/run/containerd/containerd.sock") == "/proc/1/root/run/containerd/containerd.sock"


def test_get_cmdline(procfs):
    assert procfs.get_cmdline(123) == b"postgres\x00-D\x00/data\x00"
    assert procfs.get_cmdline(999) == b""


def test_read_cgroup(procfs):
    cg = procfs.read_cgroup(123)
    assert cg.id == f"/docker/{DOCKER_ID}"
    assert cg.container_type is ContainerType.DOCKER
    assert cg.container_id == DOCKER_ID


def test_net_ns_id(procfs, tmp_path):
    root = tmp_path / "proc"
    for pid in ("1", "2", "3"):
        (root / pid / "ns").mkdir(parents=True)
    (root / "1" / "ns" / "net").write_text("")
    os.symlink(root / "1" / "ns" / "net", root / "2" / "ns" / "net")
    (root / "3" / "ns" / "net").write_text("")
    assert procfs.net_ns_id(1) == procfs.net_ns_id(2)
    assert procfs.net_ns_id(1).startswith("NS(")
    assert procfs.net_ns_id(1) != procfs.net_ns_id(3)


def test_net_ns_id_missing(procfs):
    with pytest.raises(FileNotFoundError):
        procfs.net_ns_id(999)


def test_stat_fs(tmp_path):
    s = stat_fs(str(tmp_path))
    assert s.capacity_bytes > 0
    assert s.capacity_bytes >= s.used_bytes + s.reserved_bytes


def test_stat_fs_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        stat_fs(str(tmp_path / "missing"))