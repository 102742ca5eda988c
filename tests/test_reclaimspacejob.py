from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from csiaddons.kube import (
    CLAIM_BOUND,
    CONDITION_TRUE,
    Capability,
    Client,
    Condition,
    Connection,
    ConnectionPool,
    NamespacedName,
    ObjectMeta,
    PersistentVolume,
    PersistentVolumeClaim,
    VolumeAttachment,
)
from csiaddons.reclaimspacejob import (
    CONDITION_FAILED,
    DEFAULT_BACKOFF_LIMIT,
    REASON_FAILED,
    OperationResult,
    ReclaimSpaceJob,
    ReclaimSpaceJobReconciler,
    ReclaimSpaceJobSpec,
    StorageConsumption,
    TargetDetails,
    calculate_reclaimed_space,
    set_failed_condition,
    validate_reclaim_space_job_spec,
)
from csiaddons.replication import RpcError, StatusCode

DRIVER = "csi.example.com"
NS = "default"


@dataclass
class _Usage:
    pre_usage: StorageConsumption | None
    post_usage: StorageConsumption | None


class _RSClient:
    def __init__(self, pre=0, post=0, error=None):
        self.pre, self.post, self.error = pre, post, error
        self.calls = []

    def _answer(self, kind, pv_name, timeout):
        self.calls.append((kind, pv_name, timeout))
        if self.error is not None:
            raise self.error
        return _Usage(StorageConsumption(self.pre), StorageConsumption(self.post))

    def controller_reclaim_space(self, pv_name, timeout):
        return self._answer("controller", pv_name, timeout)

    def node_reclaim_space(self, pv_name, timeout):
        return self._answer("node", pv_name, timeout)


def _job(backoff_limit=0, created=None, pvc="pvc-1", timeout=None):
    return ReclaimSpaceJob(
        meta=ObjectMeta(
            name="job-1",
            namespace=NS,
            generation=3,
            creation_timestamp=created or datetime.now(timezone.utc),
        ),
        spec=ReclaimSpaceJobSpec(persistent_volume_claim=pvc, backoff_limit=backoff_limit, timeout=timeout),
    )


def _cluster(job, attached=True, phase=CLAIM_BOUND):
    objects = [
        job,
        PersistentVolumeClaim(meta=ObjectMeta(name="pvc-1", namespace=NS), volume_name="pv-1", phase=phase),
        PersistentVolume(meta=ObjectMeta(name="pv-1"), csi_driver=DRIVER, volume_handle="vol-1"),
    ]
    if attached:
        objects.append(
            VolumeAttachment(
                meta=ObjectMeta(name="va-1"),
                node_name="worker-1",
                persistent_volume_name="pv-1",
                attached=True,
            )
        )
    return Client(*objects)


def _request():
    return NamespacedName("job-1", NS)


def test_set_failed_condition_overwrites_existing():
    conditions = [
        Condition(
            type=CONDITION_FAILED,
            status=CONDITION_TRUE,
            reason=REASON_FAILED,
            message="err 1",
            observed_generation=0,
            last_transition_time=datetime.now(timezone.utc),
        )
    ]
    set_failed_condition(conditions, "err 2", 3)
    assert len(conditions) == 1
    assert conditions[0].message == "err 2"
    assert conditions[0].observed_generation == 3


def test_set_failed_condition_appends():
    conditions = []
    set_failed_condition(conditions, "err 1", 3)
    assert conditions[0].message == "err 1"
    assert conditions[0].observed_generation == 3
    assert conditions[0].type == "Failed"


def test_validate_spec():
    with pytest.raises(ValueError):
        validate_reclaim_space_job_spec(ReclaimSpaceJob(meta=ObjectMeta()))
    job = ReclaimSpaceJob(meta=ObjectMeta(), spec=ReclaimSpaceJobSpec(persistent_volume_claim="pvc-1"))
    assert validate_reclaim_space_job_spec(job) is None


@pytest.mark.parametrize(
    "pre, post, expected",
    [
        (StorageConsumption(0), StorageConsumption(5), 5),
        (None, StorageConsumption(5), None),
        (StorageConsumption(0), None, None),
        (StorageConsumption(0), StorageConsumption(-5), 0),
    ],
)
def test_calculate_reclaimed_space(pre, post, expected):
    assert calculate_reclaimed_space(pre, post) == expected


@pytest.mark.parametrize("node_id, expected", [("", False), ("worker-1", True)])
def test_can_node_reclaim_space(node_id, expected):
    td = TargetDetails(driver_name=DRIVER, pv_name="pvc-a8a5c531-9f88-4fc8-b35d-564585fb42a8", node_id=node_id)
    assert td.can_node_reclaim_space() is expected


def test_reconcile_success_sums_node_and_controller():
    node_client = _RSClient(pre=100, post=150)
    ctrl_client = _RSClient(pre=10, post=30)
    pool = ConnectionPool()
    pool.put("ns/node", Connection(node_client, DRIVER, "worker-1", [Capability(reclaim_space="ONLINE")]))
    pool.put("ns/ctrl", Connection(ctrl_client, DRIVER, "", [Capability(reclaim_space="OFFLINE")]))
    client = _cluster(_job())
    reconciler = ReclaimSpaceJobReconciler(client, pool, timeout=30)
    reconciler.reconcile(_request())
    stored = client.get(ReclaimSpaceJob, _request())
    assert stored.status.result == OperationResult.SUCCEEDED
    assert stored.status.reclaimed_space == 70
    assert node_client.calls == [("node", "pv-1", 30)]
    assert ctrl_client.calls == [("controller", "pv-1", 30)]


def test_reconcile_unimplemented_controller_succeeds_without_space():
    ctrl_client = _RSClient(error=RpcError(StatusCode.UNIMPLEMENTED, "nope"))
    pool = ConnectionPool()
    pool.put("ns/ctrl", Connection(ctrl_client, DRIVER, "", [Capability(reclaim_space="OFFLINE")]))
    client = _cluster(_job(timeout=5), attached=False)
    ReclaimSpaceJobReconciler(client, pool, timeout=30).reconcile(_request())
    stored = client.get(ReclaimSpaceJob, _request())
    assert stored.status.result == OperationResult.SUCCEEDED
    assert stored.status.reclaimed_space is None
    assert ctrl_client.calls[0][2] == 5.0


def test_reconcile_without_clients_fails_then_hits_retry_limit():
    client = _cluster(_job(backoff_limit=1), attached=False)
    reconciler = ReclaimSpaceJobReconciler(client, ConnectionPool(), timeout=30)
    with pytest.raises(LookupError):
        reconciler.reconcile(_request())
    stored = client.get(ReclaimSpaceJob, _request())
    assert stored.status.result is None
    assert stored.status.conditions[0].type == CONDITION_FAILED
    assert stored.status.conditions[0].observed_generation == 3

    reconciler.reconcile(_request())
    stored = client.get(ReclaimSpaceJob, _request())
    assert stored.status.retries == 1
    assert stored.status.result == OperationResult.FAILED
    assert stored.status.message == "Maximum retry limit reached"


def test_reconcile_time_limit_reached():
    created = datetime.now(timezone.utc) - timedelta(hours=1)
    client = _cluster(_job(created=created))
    ReclaimSpaceJobReconciler(client, ConnectionPool(), timeout=30).reconcile(_request())
    stored = client.get(ReclaimSpaceJob, _request())
    assert stored.status.result == OperationResult.FAILED
    assert stored.status.message == "Time limit reached"


def test_reconcile_invalid_spec_marks_failed():
    client = _cluster(_job(pvc=""))
    ReclaimSpaceJobReconciler(client, ConnectionPool(), timeout=30).reconcile(_request())
    stored = client.get(ReclaimSpaceJob, _request())
    assert stored.status.result == OperationResult.FAILED
    assert stored.status.message.startswith("Failed to validate ReclaimSpaceJob.Spec")


def test_reconcile_missing_job_returns_empty_result():
    result = ReclaimSpaceJobReconciler(Client(), ConnectionPool(), timeout=30).reconcile(_request())
    assert result.requeue is False


def test_unbound_pvc_raises_and_applies_default_backoff():
    client = _cluster(_job(), phase="Pending")
    reconciler = ReclaimSpaceJobReconciler(client, ConnectionPool(), timeout=30)
    with pytest.raises(ValueError, match="not bound"):
        reconciler.reconcile(_request())
    stored = client.get(ReclaimSpaceJob, _request())
    assert stored.spec.backoff_limit == DEFAULT_BACKOFF_LIMIT
    assert stored.status.conditions[0].message == "Failed to get target details"


def test_get_target_details_finds_node_and_timeout():
    client = _cluster(_job())
    reconciler = ReclaimSpaceJobReconciler(client, ConnectionPool(), timeout=30)
    details = reconciler.get_target_details(ReclaimSpaceJobSpec(persistent_volume_claim="pvc-1", timeout=7), NS)
    assert details == TargetDetails(driver_name=DRIVER, pv_name="pv-1", node_id="worker-1", timeout=7.0)