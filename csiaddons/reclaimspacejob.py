"""Reconciler that reclaims unused space of a volume through its driver."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from csiaddons.kube import (
    CLAIM_BOUND,
    CONDITION_TRUE,
    Client,
    Condition,
    ConnectionPool,
    NamespacedName,
    NotFoundError,
    ObjectMeta,
    PersistentVolume,
    PersistentVolumeClaim,
    Result,
    VolumeAttachment,
)
from csiaddons.replication import RpcError, StatusCode, get_message_from_error

log = logging.getLogger(__name__)

DEFAULT_BACKOFF_LIMIT = 6
DEFAULT_RETRY_DEADLINE_SECONDS = 600

CONDITION_FAILED = "Failed"
REASON_FAILED = "failed"

RECLAIM_SPACE_ONLINE = "ONLINE"
RECLAIM_SPACE_OFFLINE = "OFFLINE"

_EPOCH_ZERO = datetime.min.replace(tzinfo=timezone.utc)


class OperationResult(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclass
class StorageConsumption:
    usage_bytes: int = 0


@dataclass
class ReclaimSpaceJobSpec:
    """What to reclaim and how often to retry; ``timeout`` is in seconds."""

    persistent_volume_claim: str = ""
    backoff_limit: int = 0
    retry_deadline_seconds: int = 0
    timeout: int | None = None


@dataclass
class ReclaimSpaceJobStatus:
    result: OperationResult | None = None
    message: str = ""
    conditions: list[Condition] = field(default_factory=list)
    reclaimed_space: int | None = None
    retries: int = 0
    start_time: datetime | None = None
    completion_time: datetime | None = None


@dataclass
class ReclaimSpaceJob:
    meta: ObjectMeta
    spec: ReclaimSpaceJobSpec = field(default_factory=ReclaimSpaceJobSpec)
    status: ReclaimSpaceJobStatus = field(default_factory=ReclaimSpaceJobStatus)


@dataclass
class TargetDetails:
    """What the controller and node reclaim space calls need; timeout in seconds."""

    driver_name: str
    pv_name: str
    node_id: str = ""
    timeout: float = 0.0

    def can_node_reclaim_space(self) -> bool:
        """True when the volume is attached to a node, so a node call can be made."""
        return self.node_id != ""


def calculate_reclaimed_space(
    pre_usage: StorageConsumption | None, post_usage: StorageConsumption | None
) -> int | None:
    """Reclaimed bytes, never negative; None when either usage is missing."""
    if pre_usage is None or post_usage is None:
        return None
    return max(post_usage.usage_bytes - pre_usage.usage_bytes, 0)


def validate_reclaim_space_job_spec(job: ReclaimSpaceJob) -> None:
    """Raise ValueError if the target PVC is not given."""
    if not job.spec.persistent_volume_claim:
        raise ValueError(
            "required parameter 'PersistentVolumeClaim' in ReclaimSpaceJob.Spec.Target is empty"
        )


def set_failed_condition(conditions: list[Condition], message: str, observed_generation: int) -> None:
    """Replace the Failed condition, or append one if there is none."""
    new_condition = Condition(
        type=CONDITION_FAILED,
        status=CONDITION_TRUE,
        reason=REASON_FAILED,
        message=message,
        observed_generation=observed_generation,
        last_transition_time=datetime.now(timezone.utc),
    )
    for index, condition in enumerate(conditions):
        if condition.type == CONDITION_FAILED:
            conditions[index] = new_condition
            return
    conditions.append(new_condition)


class ReclaimSpaceJobReconciler:
    """Runs ReclaimSpaceJob objects to completion.

    Reclaim space clients are the ``client`` of a pool connection and offer
    ``controller_reclaim_space(pv_name, timeout)`` and
    ``node_reclaim_space(pv_name, timeout)``, each returning an object with
    ``pre_usage`` and ``post_usage`` attributes. ``timeout`` is in seconds.
    """

    def __init__(self, client: Client, conn_pool: ConnectionPool, timeout: float) -> None:
        self.client = client
        self.conn_pool = conn_pool
        self.timeout = timeout

    def reconcile(self, request: NamespacedName) -> Result:
        try:
            job = self.client.get(ReclaimSpaceJob, request)
        except NotFoundError:
            log.info("ReclaimSpaceJob resource not found")
            return Result()

        if job.meta.is_deleting():
            log.info("ReclaimSpaceJob resource is being deleted, exiting reconcile")
            return Result()

        if job.status.result is not None:
            log.info("ReclaimSpaceJob is already in %r state, exiting reconcile", job.status.result.value)
            return Result()

        try:
            validate_reclaim_space_job_spec(job)
        except ValueError as err:
            log.error("Failed to validate ReclaimSpaceJob.Spec: %s", err)
            job.status.result = OperationResult.FAILED
            job.status.message = f"Failed to validate ReclaimSpaceJob.Spec: {err}"
            job.status.completion_time = datetime.now(timezone.utc)
            self.client.update_status(job)
            return Result()

        if job.spec.backoff_limit == 0:
            job.spec.backoff_limit = DEFAULT_BACKOFF_LIMIT
        if job.spec.retry_deadline_seconds == 0:
            job.spec.retry_deadline_seconds = DEFAULT_RETRY_DEADLINE_SECONDS

        failure: Exception | None = None
        try:
            self._reconcile(job, request.namespace)
        except Exception as err:
            failure = err

        if job.status.result is None and job.status.retries == job.spec.backoff_limit:
            log.info("Maximum retry limit reached")
            job.status.result = OperationResult.FAILED
            job.status.message = "Maximum retry limit reached"
            job.status.completion_time = datetime.now(timezone.utc)

        self.client.update_status(job)

        if job.status.result is not None:
            return Result()
        if failure is not None:
            raise failure
        return Result()

    def _reconcile(self, job: ReclaimSpaceJob, namespace: str) -> None:
        now = datetime.now(timezone.utc)
        if job.status.start_time is None:
            job.status.start_time = now
        else:
            job.status.retries += 1

        created = job.meta.creation_timestamp or _EPOCH_ZERO
        if now > created + timedelta(seconds=job.spec.retry_deadline_seconds):
            log.info("Time limit reached")
            job.status.result = OperationResult.FAILED
            job.status.message = "Time limit reached"
            job.status.completion_time = datetime.now(timezone.utc)
            return

        generation = job.meta.generation
        try:
            target = self.get_target_details(job.spec, namespace)
        except Exception as err:
            log.error("Failed to get target details: %s", err)
            set_failed_condition(job.status.conditions, "Failed to get target details", generation)
            raise

        node_found = False
        node_space: int | None = None
        if target.can_node_reclaim_space():
            node_found = True
            try:
                node_space = self._node_reclaim_space(target)
            except Exception as err:
                log.error("Failed to make node request: %s", err)
                set_failed_condition(
                    job.status.conditions,
                    f"Failed to make node request: {get_message_from_error(err)}",
                    generation,
                )
                raise

        try:
            controller_found, controller_space = self._controller_reclaim_space(target)
        except Exception as err:
            log.error("Failed to make controller request: %s", err)
            set_failed_condition(
                job.status.conditions,
                f"Failed to make controller request: {get_message_from_error(err)}",
                generation,
            )
            raise

        if not controller_found and not node_found:
            err = LookupError(f'Controller and Node Client not found for "{target.node_id}" nodeID')
            set_failed_condition(job.status.conditions, str(err), generation)
            raise err

        job.status.result = OperationResult.SUCCEEDED
        job.status.message = "Reclaim Space operation successfully completed."
        if node_space is not None or controller_space is not None:
            job.status.reclaimed_space = (controller_space or 0) + (node_space or 0)
        job.status.completion_time = datetime.now(timezone.utc)
        log.info("Successfully completed reclaim space operation")

    def get_target_details(self, spec: ReclaimSpaceJobSpec, namespace: str) -> TargetDetails:
        """Find the driver, PV and attached node of the job's PVC."""
        pvc_key = NamespacedName(spec.persistent_volume_claim, namespace)
        pvc = self.client.get(PersistentVolumeClaim, pvc_key)
        if pvc.phase != CLAIM_BOUND:
            raise ValueError(f'PVC "{pvc_key.name}" is not bound to any PV')

        pv = self.client.get(PersistentVolume, NamespacedName(pvc.volume_name))
        if not pv.is_csi:
            raise ValueError(f'"{pv.meta.name}" PV is not a CSI PVC')

        details = TargetDetails(driver_name=pv.csi_driver, pv_name=pv.meta.name, timeout=self.timeout)
        for attachment in self.client.list(VolumeAttachment):
            if (
                not attachment.meta.is_deleting()
                and attachment.attached
                and attachment.persistent_volume_name == pv.meta.name
            ):
                details.node_id = attachment.node_name
                break
        if spec.timeout is not None:
            details.timeout = float(spec.timeout)
        return details

    def _get_rs_client_with_cap(self, driver_name: str, node_id: str, cap_type: str) -> tuple[str, Any] | None:
        for key, conn in self.conn_pool.get_by_node_id(driver_name, node_id).items():
            for cap in conn.capabilities:
                if cap.reclaim_space is not None and cap.reclaim_space == cap_type:
                    return key, conn.client
        return None

    def _controller_reclaim_space(self, target: TargetDetails) -> tuple[bool, int | None]:
        found = self._get_rs_client_with_cap(target.driver_name, "", RECLAIM_SPACE_OFFLINE)
        if found is None:
            log.info("Controller Client not found")
            return False, None
        name, rs_client = found
        log.info("Making controller reclaim space request via %s", name)
        try:
            resp = rs_client.controller_reclaim_space(target.pv_name, timeout=target.timeout)
        except RpcError as err:
            if err.code == StatusCode.UNIMPLEMENTED:
                log.info("ControllerReclaimSpace is not implemented by driver: %s", err)
                return True, None
            raise
        return True, calculate_reclaimed_space(resp.pre_usage, resp.post_usage)

    def _node_reclaim_space(self, target: TargetDetails) -> int | None:
        found = self._get_rs_client_with_cap(target.driver_name, target.node_id, RECLAIM_SPACE_ONLINE)
        if found is None:
            raise LookupError(f'node Client not found for "{target.node_id}" nodeID')
        name, rs_client = found
        log.info("Making node reclaim space request via %s", name)
        try:
            resp = rs_client.node_reclaim_space(target.pv_name, timeout=target.timeout)
        except RpcError as err:
            if err.code == StatusCode.UNIMPLEMENTED:
                log.info("NodeReclaimSpace is not implemented by driver: %s", err)
                return None
            raise
        return calculate_reclaimed_space(resp.pre_usage, resp.post_usage)