"""Recognising well-known applications and Kubernetes volumes."""

from __future__ import annotations

import re
from dataclasses import dataclass

_K8S_VOLUME_DIR_RE = re.compile(r".+/volumes/kubernetes.io~([^/]+)/([^/]+)")
_IGNORED_PROVISIONERS = frozenset({"secret", "configmap", "empty-dir"})


@dataclass(frozen=True)
class _Rule:
    """An application is recognised when the command ends with one of
    ``suffixes`` (if any) and the command line holds one of ``markers`` (if any)."""

    app: str
    suffixes: tuple[bytes, ...] = ()
    markers: tuple[bytes, ...] = ()

    def matches(self, cmd: bytes, cmdline: bytes) -> bool:
        if self.suffixes and not cmd.endswith(self.suffixes):
            return False
        if self.markers and not any(marker in cmdline for marker in self.markers):
            return False
        return True


_RULES = (
    _Rule("memcached", suffixes=(b"memcached",)),
    _Rule("envoy", suffixes=(b"envoy",)),
    _Rule("elasticsearch", markers=(b"org.elasticsearch.bootstrap",)),
    _Rule("kafka", markers=(b"kafka.Kafka", b"io.confluent.support.metrics.SupportedKafka")),
    _Rule("mongodb", suffixes=(b"mongod",)),
    _Rule("mysql", suffixes=(b"mysqld",)),
    _Rule("zookeeper", markers=(b"org.apache.zookeeper.server.quorum.QuorumPeerMain",)),
    _Rule("redis", suffixes=(b"redis-server",)),
    _Rule("redis-sentinel", suffixes=(b"redis-sentinel",)),
    _Rule("rabbitmq", suffixes=(b"beam.smp",), markers=(b"rabbit",)),
    _Rule("couchbase", suffixes=(b"beam.smp",), markers=(b"couch",)),
    _Rule("pgbouncer", suffixes=(b"pgbouncer",)),
    _Rule("postgres", suffixes=(b"postgres",)),
    _Rule("haproxy", suffixes=(b"haproxy",)),
    _Rule("nginx", suffixes=(b"nginx",)),
    _Rule("kubelet", suffixes=(b"kubelet",)),
    _Rule("kube-apiserver", suffixes=(b"kube-apiserver",)),
    _Rule("kube-controller-manager", suffixes=(b"kube-controller-manager",)),
    _Rule("kube-scheduler", suffixes=(b"kube-scheduler",)),
    _Rule("etcd", suffixes=(b"etcd",)),
    _Rule("dockerd", suffixes=(b"dockerd",)),
    _Rule("consul", suffixes=(b"consul",)),
    _Rule("cassandra", markers=(b"org.apache.cassandra.service.CassandraDaemon",)),
    _Rule("clickhouse", suffixes=(b"clickhouse-server",)),
    _Rule("traefik", suffixes=(b"traefik",)),
    _Rule("aerospike", suffixes=(b"asd",)),
    _Rule("httpd", suffixes=(b"httpd",)),
    _Rule("influxdb", suffixes=(b"influxd",)),
    _Rule("tomcat", markers=(b"org.apache.catalina.startup.Bootstrap",)),
    _Rule("vault", suffixes=(b"vault",)),
    _Rule("proxysql", suffixes=(b"proxysql",)),
    _Rule("cockroach", suffixes=(b"cockroach",)),
    _Rule("prometheus", suffixes=(b"prometheus",)),
    _Rule("ceph", suffixes=(b"ceph-mon", b"ceph-mgr", b"ceph-osd", b"cephcsi")),
    _Rule("rook", suffixes=(b"rook",)),
)


def guess_application_type(cmdline: bytes | str) -> str:
    """Name the application from a NUL-separated command line, or return an empty string."""
    if isinstance(cmdline, str):
        cmdline = cmdline.encode()
    fields = cmdline.split(b"\0", 1)[0].split()
    if not fields:
        return ""
    cmd = fields[0].removesuffix(b":")
    return next((rule.app for rule in _RULES if rule.matches(cmd, cmdline)), "")


def parse_volume_source(source: str) -> tuple[str, str]:
    """Provisioner and volume name of a kubelet volume path, or two empty strings."""
    match = _K8S_VOLUME_DIR_RE.search(source)
    if match is None:
        return "", ""
    provisioner, volume = match.group(1), match.group(2)
    if provisioner in _IGNORED_PROVISIONERS:
        return "", ""
    return provisioner, volume