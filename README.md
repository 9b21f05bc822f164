# nodeagent

An agent that gathers metrics about a Linux node and serves them over HTTP
in the Prometheus text format, together with a library of parsers for
procfs, cgroups and per-container state.

## Installation

```
pip install .
```

Python 3.12 or later is needed. The only third-party dependency is `psutil`.

## The `nodeagent` command

```
nodeagent --listen 0.0.0.0:80
```

The command (`nodeagent.cli:main`):

1. reads the hostname and kernel release from the host's UTS namespace
   (it enters `/proc/1/ns/uts`, so it must run as root);
2. refuses to start on kernels older than 4.16 or with an unparsable release;
3. reads the host's machine id from `/proc/1/root` (DMI product UUID,
   `etc/machine-id` or `var/lib/dbus/machine-id`, with dashes removed) and
   adds it as a `machine_id` label to every sample;
4. looks up cloud instance metadata on AWS, GCP or Azure when the DMI board
   vendor or hypervisor UUID points to one of them;
5. serves `GET /metrics`; any other path answers 404.

Served metrics:

- `node_agent_info{version=...}`, always 1;
- `node_info{hostname, kernel_version}`;
- `node_resources_cpu_usage_seconds_total{mode}` and
  `node_resources_cpu_logical_cores` from `/proc/stat`;
- `node_resources_memory_{total,free,available,cached}_bytes` from
  `/proc/meminfo`;
- `node_resources_disk_*` for whole block devices from `/proc/diskstats`;
- `node_net_*` traffic counters, state and addresses for physical interfaces
  (`eth*`, `eno*`, `ens*`, `enp*s*`) from `/sys/class/net`;
- `node_cloud_info`, filled from instance metadata, or from the
  `--provider`, `--region` and `--availability-zone` options otherwise.

Options:

- `--listen`: `ip:port` or `:port`; default `0.0.0.0:80`.
- `--provider`, `--region`, `--availability-zone`: labels for
  `node_cloud_info` when no instance metadata is found.
- `--cgroupfs-root`, `--no-parse-logs`, `--no-ping-upstreams`,
  `--track-public-network NETWORK` (repeatable, e.g. `203.0.113.0/24`):
  parsed and validated into `nodeagent.flags.Flags`; the command itself
  does not act on them. `--track-public-network` is honoured by
  `nodeagent.container.Container` when it is given those `Flags`.

## Library

- `nodeagent.cgroup`: `from_process_cgroup_file(path, base_cgroup_path,
  cgroup_root)` builds a `Cgroup` from `/proc/<pid>/cgroup`, detecting the
  container type (Docker, CRI-O, containerd, LXC, systemd service) with
  `container_by_cgroup`. `Cgroup.cpu_stat()`, `io_stat()`, `memory_stat()`
  and `created_at()` read cgroup v1 and v2 accounting.
- `nodeagent.proc`: `ProcFS(root)` with `list_pids`, `read_fds`,
  `get_fd_info`, `get_mount_info`, `get_sockets`, `get_cmdline`,
  `read_cgroup`, `net_ns_id`, `path` and `host_path`; also `stat_fs` and
  `decode_addr` for `/proc/net/tcp` addresses.
- `nodeagent.node`: `cpu_stat`, `memory_info`, `get_disks` (returning
  `Disks` with `block_devices()` and `get_parent_block_device()`) and
  `net_devices`.
- `nodeagent.collector.NodeCollector`: the node metrics listed above, as
  `Metric` values from `collect()`.
- `nodeagent.metrics`: `Desc`, `Metric`, `counter`, `gauge`, the container
  metric descriptions, and `render(metrics, const_labels)` for the text
  exposition format.
- `nodeagent.metadata`: `get_cloud_provider`, `get_instance_metadata`,
  `get_aws_metadata`, `get_gcp_metadata`, `get_azure_metadata`, plus the
  pure helpers `azure_metadata_from_json` and `gcp_metadata_from_values`.
- `nodeagent.events`: `Event`, `EventType`, `EventReason`; decoders for raw
  little-endian records (`decode_proc_event`, `decode_tcp_event`,
  `decode_file_event`); `read_fds` and `initial_events`, which describe the
  processes, open files, listens and outbound connections already present.
- `nodeagent.container`: `Container` keeps per-container state fed through
  `on_process_start`, `on_process_exit`, `on_file_open`, `on_listen_open`,
  `on_listen_close`, `on_connection_open`, `on_connection_close` and
  `on_retransmit`, prunes it with `gc`, and reports it with `collect()`.
  `resolve_fd` finds the mount id and `/var/log` file behind a descriptor.
- `nodeagent.apps`: `guess_application_type(cmdline)` and
  `parse_volume_source(path)`.
- `nodeagent.tail`: `TailReader(file_name, queue, poll_interval)` follows a
  file across rotation, truncation and deletion, putting each new line on a
  `queue.Queue` as a `LogEntry`; use it as a context manager or call
  `stop()`.

```python
from nodeagent.cgroup import from_process_cgroup_file
from nodeagent.node import cpu_stat, get_disks

cg = from_process_cgroup_file("/proc/self/cgroup", "", "/sys/fs/cgroup")
print(cg.container_type, cg.cpu_stat())

print(cpu_stat("/proc"))
for dev in get_disks("/proc").block_devices():
    print(dev.name, dev.read_ops, dev.write_ops)
```

## What it does not do

- The `nodeagent` command serves node metrics only. It does not discover
  containers or serve container metrics; `Container` must be driven by the
  caller.
- Nothing attaches kernel tracing programs. `nodeagent.events` only decodes
  records and builds start-up events from `/proc`.
- Containers are not inspected through Docker or containerd, and journald
  is not read, so container names, labels, volumes and log paths are not
  filled in automatically.
- Log lines from `TailReader` are not parsed or grouped into patterns.
- Upstream latency is not measured, CPU and disk delays are not collected,
  and connection destinations are not resolved through NAT: the actual
  destination recorded is the one that was dialled.

## Tests

```
pip install .[test]
pytest
```