"""Reconciler that keeps a ReclaimSpaceCronJob in step with a PVC's schedule annotation."""

from __future__ import annotations

import logging
import time
from typing import Any, Mapping

from csiaddons.cron import parse_standard
from csiaddons.kube import (
    CLAIM_BOUND,
    Client,
    ConnectionPool,
    NamespacedName,
    Namespace,
    NotFoundError,
    ObjectMeta,
    OwnerReference,
    PersistentVolume,
    PersistentVolumeClaim,
    Result,
    get_controller_of,
)
from csiaddons.reclaimspacecronjob import (
    API_GROUP,
    DEFAULT_FAILED_JOBS_HISTORY_LIMIT,
    DEFAULT_SUCCESSFUL_JOBS_HISTORY_LIMIT,
    JOB_OWNER_KEY,
    ReclaimSpaceCronJob,
    ReclaimSpaceCronJobSpec,
)
from csiaddons.reclaimspacejob import (
    DEFAULT_BACKOFF_LIMIT,
    DEFAULT_RETRY_DEADLINE_SECONDS,
    ReclaimSpaceJobSpec,
)

log = logging.getLogger(__name__)

RS_CRON_JOB_SCHEDULE_TIME_ANNOTATION = "reclaimspace." + API_GROUP + "/schedule"
RS_CRON_JOB_NAME_ANNOTATION = "reclaimspace." + API_GROUP + "/cronjob"
CSI_ADDONS_DRIVER_ANNOTATION = "reclaimspace." + API_GROUP + "/drivers"

DEFAULT_SCHEDULE = "@weekly"


class ConnNotFoundRequeueNeeded(LookupError):
    """The driver supports space reclamation but has no registered connection yet."""

    def __init__(self, message: str = "connection not found, requeue needed") -> None:
        super().__init__(message)


class ScheduleNotFound(LookupError):
    """No usable reclaim space schedule applies to the PVC."""

    def __init__(self, message: str = "schedule not found") -> None:
        super().__init__(message)


def construct_rs_cron_job(name: str, namespace: str, schedule: str, pvc_name: str) -> ReclaimSpaceCronJob:
    """A ReclaimSpaceCronJob for the PVC with default job settings."""
    return ReclaimSpaceCronJob(
        meta=ObjectMeta(name=name, namespace=namespace),
        spec=ReclaimSpaceCronJobSpec(
            schedule=schedule,
            job_spec=ReclaimSpaceJobSpec(
                persistent_volume_claim=pvc_name,
                backoff_limit=DEFAULT_BACKOFF_LIMIT,
                retry_deadline_seconds=DEFAULT_RETRY_DEADLINE_SECONDS,
            ),
            failed_jobs_history_limit=DEFAULT_FAILED_JOBS_HISTORY_LIMIT,
            successful_jobs_history_limit=DEFAULT_SUCCESSFUL_JOBS_HISTORY_LIMIT,
        ),
    )


def extract_owner_name_from_pvc_obj(obj: Any) -> list[str] | None:
    """The owning PVC's name of a ReclaimSpaceCronJob, or None."""
    if not isinstance(obj, ReclaimSpaceCronJob):
        return None
    owner = get_controller_of(obj.meta)
    if owner is None:
        return None
    if owner.api_version != "v1" or owner.kind != "PersistentVolumeClaim":
        return None
    return [owner.name]


def generate_cron_job_name(parent_name: str) -> str:
    """The parent name suffixed with the current Unix time."""
    return f"{parent_name}-{int(time.time())}"


def get_schedule_from_annotation(annotations: Mapping[str, str] | None) -> tuple[str, bool]:
    """Return (schedule, found); an unparsable schedule falls back to the default."""
    schedule = (annotations or {}).get(RS_CRON_JOB_SCHEDULE_TIME_ANNOTATION)
    if schedule is None:
        return "", False
    try:
        parse_standard(schedule)
    except ValueError as err:
        log.info(
            "Parsing given schedule %r failed, using default schedule %r: %s",
            schedule,
            DEFAULT_SCHEDULE,
            err,
        )
        return DEFAULT_SCHEDULE, True
    return schedule, True


class PersistentVolumeClaimReconciler:
    """Creates, updates or removes the ReclaimSpaceCronJob owned by a PVC."""

    def __init__(self, client: Client, conn_pool: ConnectionPool) -> None:
        self.client = client
        self.conn_pool = conn_pool
        client.register_index(ReclaimSpaceCronJob, JOB_OWNER_KEY, extract_owner_name_from_pvc_obj)

    def reconcile(self, request: NamespacedName) -> Result:
        try:
            pvc = self.client.get(PersistentVolumeClaim, request)
        except NotFoundError:
            log.info("PersistentVolumeClaim resource not found")
            return Result()

        if pvc.phase != CLAIM_BOUND:
            log.info("PVC is not in bound state (phase %s)", pvc.phase)
            return Result(requeue=True)

        try:
            pv = self.client.get(PersistentVolume, NamespacedName(pvc.volume_name))
        except Exception:
            log.exception("Failed to get PV %s", pvc.volume_name)
            raise
        if not pv.is_csi:
            log.info("PV %s is not a CSI volume", pv.meta.name)
            return Result()

        cron_job = self._find_child_cron_job(request)

        try:
            schedule = self.determine_schedule(pvc, pv.csi_driver)
        except ConnNotFoundRequeueNeeded:
            return Result(requeue=True)
        except ScheduleNotFound:
            if cron_job is not None:
                self._delete_child_cron_job(cron_job)
            if RS_CRON_JOB_NAME_ANNOTATION in pvc.meta.annotations:
                self.client.patch_annotations(pvc, {RS_CRON_JOB_NAME_ANNOTATION: None})
            log.info("Annotation not set, exiting reconcile")
            return Result()

        if cron_job is not None:
            wanted = construct_rs_cron_job(cron_job.meta.name, request.namespace, schedule, pvc.meta.name)
            if wanted.spec == cron_job.spec:
                log.info("No change in reclaimSpaceCronJob.Spec, exiting reconcile")
                return Result()
            cron_job.spec = wanted.spec
            self.client.update(cron_job)
            log.info("Successfully updated reclaimSpaceCronJob %s", cron_job.meta.name)
            return Result()

        name = generate_cron_job_name(request.name)
        # The PVC may only inherit the schedule from its namespace, so record it too.
        self.client.patch_annotations(
            pvc,
            {RS_CRON_JOB_NAME_ANNOTATION: name, RS_CRON_JOB_SCHEDULE_TIME_ANNOTATION: schedule},
        )
        cron_job = construct_rs_cron_job(name, request.namespace, schedule, pvc.meta.name)
        cron_job.meta.owner_references.append(
            OwnerReference(
                api_version="v1",
                kind="PersistentVolumeClaim",
                name=pvc.meta.name,
                controller=True,
            )
        )
        self.client.create(cron_job)
        log.info("Successfully created reclaimSpaceCronJob %s", name)
        return Result()

    def determine_schedule(self, pvc: Any, driver_name: str) -> str:
        """The PVC's schedule, else its namespace's when the driver supports reclaiming.

        Raises ScheduleNotFound or ConnNotFoundRequeueNeeded.
        """
        schedule, found = get_schedule_from_annotation(pvc.meta.annotations)
        if found:
            return schedule

        namespace = self.client.get(Namespace, NamespacedName(pvc.meta.namespace))
        ns_annotations = namespace.meta.annotations
        schedule, found = get_schedule_from_annotation(ns_annotations)
        if not found:
            raise ScheduleNotFound()

        requeue, supported = self._check_driver_support(ns_annotations, driver_name)
        if supported:
            return schedule
        if requeue:
            raise ConnNotFoundRequeueNeeded()
        raise ScheduleNotFound()

    def _check_driver_support(self, annotations: Mapping[str, str], driver: str) -> tuple[bool, bool]:
        """Return (requeue, supported)."""
        drivers = annotations.get(CSI_ADDONS_DRIVER_ANNOTATION)
        listed = drivers is not None and driver in drivers.split(",")
        registered = self.supports_reclaim_space(driver)
        if listed and not registered:
            log.info("Driver %s supports space reclamation but is not registered yet, requeueing", driver)
            return True, False
        if not registered:
            log.info("Driver %s does not support space reclamation, skip requeue", driver)
            return False, False
        return False, True

    def supports_reclaim_space(self, driver_name: str) -> bool:
        """Whether any connection of the driver offers space reclamation."""
        return any(
            cap.reclaim_space is not None
            for conn in self.conn_pool.get_by_node_id(driver_name, "").values()
            for cap in conn.capabilities
        )

    def _find_child_cron_job(self, request: NamespacedName) -> ReclaimSpaceCronJob | None:
        children = list(
            self.client.list(
                ReclaimSpaceCronJob, namespace=request.namespace, matching={JOB_OWNER_KEY: request.name}
            )
        )
        if not children:
            return None
        active, *extra = children
        for job in extra:
            self._delete_child_cron_job(job)
        return active

    def _delete_child_cron_job(self, job: ReclaimSpaceCronJob) -> None:
        try:
            self.client.delete(job)
        except NotFoundError:
            pass