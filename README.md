# cephnode

Node-level management for a small Ceph cluster. `cephnode` drives the
`ceph`, `rbd`, `cryptsetup` and `snapctl` command-line tools to:

- add OSDs from block devices or loopback files, with optional wiping and
  LUKS encryption (`cephnode.disks`);
- remove OSDs safely: drain, wait for the cluster, purge, wipe and forget
  them (`cephnode.osd_remove`);
- set pool sizes, list pools, and manage the `noout` flag and the OSD
  service (`cephnode.pools`);
- start, stop, restart and check snap services (`cephnode.snap`);
- read the RBD mirroring state of pools and images (`cephnode.rbd_status`).

## Installation

```
pip install .
```

Running the test suite needs the `test` extra:

```
pip install ".[test]"
pytest
```

## Running commands

Every call goes through a process runner. The default,
`cephnode.runner.ProcessRunner`, runs the real tools and returns their
standard output. `cephnode.runner.set_runner` installs another runner and
returns the previous one; `get_runner` returns the current one. A runner
that records commands is handy in tests:

```python
from cephnode import runner

class Recorder(runner.ProcessRunner):
    def __init__(self):
        self.calls = []

    def run_command(self, name, *args, stdin=None, timeout=None):
        self.calls.append((name, *args))
        return "ok"

previous = runner.set_runner(Recorder())
```

A failed, missing or timed-out command raises `runner.RunError`, which
carries `command`, `exit_code`, `stdout`, `stderr` and `timed_out`.
`runner.ceph_run(*args)` is a shortcut for running `ceph`.

## Examples

Check the `noout` flag and stop the OSD service:

```python
from cephnode import pools

if not pools.is_osd_noout_set():
    pools.set_osd_noout_flag(True)
pools.set_osd_state(False)
```

Set the replication factor of every pool (`"*"`) to 3:

```python
pools.set_replication_factor(["*"], 3)
```

Read the mirroring status of a pool. A pool whose status cannot be
queried is reported with `state` set to `ReplicationState.DISABLED`;
output that cannot be parsed raises `ValueError`.

```python
from cephnode import rbd_status

status = rbd_status.get_rbd_mirror_pool_status("pool")
print(status.state, status.health, status.image_count)
```

Parse a loopback OSD spec. The size is returned in MiB; a malformed spec
raises `disks.DiskError`:

```python
from cephnode.disks import parse_backing_spec

size_mb, count = parse_backing_spec("loop,4G,3")   # (4096, 3)
```

## Adding and removing OSDs

`disks.add_osd`, `disks.add_single_disk`, `disks.add_bulk_disks` and
`osd_remove.remove_osd` take a *store*: an object following the
`disks.OsdStore` protocol. It supplies the node's name and data path, the
records of disks and cluster members, keyring generation (`gen_auth`) and
crush failure-domain switching (`switch_failure_domain`).

```python
from cephnode.disks import DiskParameter, add_bulk_disks
from cephnode.osd_remove import remove_osd

response = add_bulk_disks(store, [DiskParameter(path="/dev/sdb", wipe=True)])
for report in response.reports:
    print(report.path, report.report, report.error)

remove_osd(store, 3, bypass_safety=False, timeout=600)
```

`add_bulk_disks` never raises; each disk gets a `DiskAddReport`, and a
request for several disks with WAL/DB devices or a loop spec is refused
with `validation_error` set. `remove_osd` raises `OSDRemovalError`,
including when the timeout is reached.

## What this package does not do

- It keeps no database of its own: disk and member records, keyrings and
  crush rules come from the `OsdStore` you provide.
- It does not place or enable services (mon, mgr, mds, rgw, rbd-mirror) on
  a host, nor restart services and wait for their daemons.
- It only reads RBD mirroring state; it does not enable, disable, promote
  or demote mirroring, or manage peers.
- It does not check or clean up a node leaving the cluster.
- It has no command-line program; it is a library.