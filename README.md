# csiaddons

Reconciliation logic for CSI add-on storage resources, written as plain
Python objects that work against an in-memory cluster client.

## What is in the package

- **`csiaddons.kube`**: the shared model. `Client` is an in-memory object
  store with `get`, `list` (by namespace and registered field index),
  `create`, `update`, `update_status`, `delete` (which only marks an object
  as deleting while finalizers remain) and `patch_annotations` (a value of
  `None` removes the key). `ConnectionPool` holds sidecar `Connection`s
  and finds them with `get_by_node_id`. Also `NamespacedName`,
  `ObjectMeta`, `Condition`, `Result`, `Pod`, `PersistentVolumeClaim`,
  `PersistentVolume`, `Namespace`, `VolumeAttachment`, `Capability`,
  `NotFoundError`, `NoMatchError`, and the helpers `add_finalizer`,
  `remove_finalizer` and `get_controller_of`.
- **`csiaddons.nodes`**: `CSIAddonsNodeReconciler` validates a
  `CSIAddonsNode`, resolves `pod://<pod>.<namespace>:<port>` endpoints to
  `<pod-ip>:<port>` (other endpoints without a scheme pass through), calls
  a connector function you supply and stores the connection in the pool.
  `parse_endpoint` raises `LegacyEndpointError` for endpoints without a
  scheme.
- **`csiaddons.networkfence`**: `NetworkFenceReconciler` fences or
  unfences CIDR ranges through a pool connection whose capability offers
  `NETWORK_FENCE`, and records the outcome on the `NetworkFence`.
- **`csiaddons.reclaimspacejob`**: `ReclaimSpaceJobReconciler` runs node
  (online) and controller (offline) space reclamation for a bound CSI
  volume, with a retry limit, a deadline and a `Failed` condition;
  `calculate_reclaimed_space` never returns a negative value.
- **`csiaddons.cron`**: `parse_standard` parses five-field cron
  expressions, `@yearly`/`@monthly`/`@weekly`/`@daily`/`@hourly`,
  `@every <duration>` and a leading `TZ=` or `CRON_TZ=`;
  `CronSchedule.next` gives the next activation.
- **`csiaddons.reclaimspacecronjob`**: `ReclaimSpaceCronJobReconciler`
  creates a `ReclaimSpaceJob` for the latest missed run, honours the
  starting deadline, suspension and the `Forbid`/`Replace` concurrency
  policies, and trims job history. `get_next_schedule` raises
  `ValueError` after more than 100 missed runs.
- **`csiaddons.pvcreclaim`**: `PersistentVolumeClaimReconciler` reads the
  reclaim-space schedule annotation from a claim or, when the driver
  supports reclaiming space, from its namespace, and keeps exactly one
  child `ReclaimSpaceCronJob` per claim. An unparsable schedule falls back
  to `@weekly`.
- **Volume replication helpers**: `csiaddons.replication` (the
  `Replication` operations `enable`, `disable`, `promote`, `demote`,
  `resync` and `get_info` over a `VolumeReplicationClient`, with
  `RpcError`, `StatusCode` and `get_message_from_error`),
  `csiaddons.replication_resources` (the `VolumeReplication` and
  `VolumeReplicationClass` resources, their finalizers and
  `get_volume_replication_class`), `csiaddons.conditions` (the
  `Completed`, `Degraded` and `Resyncing` status conditions) and
  `csiaddons.pvc_owner` (looking up a bound claim and its volume, and the
  owner annotation on the claim).

## Installation

```
pip install .
```

## Example

```python
from csiaddons.kube import Client, ConnectionPool, NamespacedName
from csiaddons.nodes import parse_endpoint
from csiaddons.cron import parse_standard

namespace, pod, port = parse_endpoint("pod://sidecar-0.storage:9070")
# ("storage", "sidecar-0", "9070")

schedule = parse_standard("*/15 * * * *")

client = Client()
pool = ConnectionPool()
```

Reconcilers take a `Client` and, where they talk to drivers, a
`ConnectionPool`. Their `reconcile(request)` methods take a
`NamespacedName` and return a `Result` saying whether and when to requeue;
failures are raised as exceptions, such as `NotFoundError` from
`Client.get`.

## What the package does not do

- It does not talk to a real cluster or run a controller manager: the
  `Client` is in memory and nothing watches for events. You call
  `reconcile` yourself.
- It has no transport to driver sidecars. Connections carry whatever
  client object you give them, and `CSIAddonsNodeReconciler` needs a
  connector function you supply.
- There is no reconciler for `VolumeReplication` objects, and no checking
  or filtering of the reserved `replication.storage.openshift.io/`
  parameters of a `VolumeReplicationClass`; only the building blocks
  listed above are provided.

## Running the tests

```
pip install .[test]
pytest
```