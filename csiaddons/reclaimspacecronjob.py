"""Reconciler that creates ReclaimSpaceJobs on a cron schedule."""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable

from csiaddons.cron import parse_standard
from csiaddons.kube import (
    Client,
    NamespacedName,
    NotFoundError,
    ObjectMeta,
    OwnerReference,
    Result,
    get_controller_of,
)
from csiaddons.reclaimspacejob import OperationResult, ReclaimSpaceJob, ReclaimSpaceJobSpec

log = logging.getLogger(__name__)

API_GROUP = "csiaddons.openshift.io"
API_GROUP_VERSION = API_GROUP + "/v1alpha1"
JOB_OWNER_KEY = ".metadata.controller"
SCHEDULED_TIME_ANNOTATION = API_GROUP + "/scheduled-at"
DEFAULT_FAILED_JOBS_HISTORY_LIMIT = 1
DEFAULT_SUCCESSFUL_JOBS_HISTORY_LIMIT = 3
MAX_MISSED_START_TIMES = 100

_EPOCH_ZERO = datetime.min.replace(tzinfo=timezone.utc)
_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})"
)


class ConcurrencyPolicy(str, Enum):
    FORBID = "Forbid"
    REPLACE = "Replace"


@dataclass
class ReclaimSpaceCronJobSpec:
    """Schedule and template of the jobs; unset history limits get defaults."""

    schedule: str = ""
    job_spec: ReclaimSpaceJobSpec = field(default_factory=ReclaimSpaceJobSpec)
    job_labels: dict[str, str] = field(default_factory=dict)
    job_annotations: dict[str, str] = field(default_factory=dict)
    concurrency_policy: ConcurrencyPolicy = ConcurrencyPolicy.FORBID
    starting_deadline_seconds: int | None = None
    suspend: bool = False
    failed_jobs_history_limit: int | None = None
    successful_jobs_history_limit: int | None = None


@dataclass
class ReclaimSpaceCronJobStatus:
    active: NamespacedName | None = None
    last_schedule_time: datetime | None = None
    last_successful_time: datetime | None = None


@dataclass
class ReclaimSpaceCronJob:
    meta: ObjectMeta
    spec: ReclaimSpaceCronJobSpec = field(default_factory=ReclaimSpaceCronJobSpec)
    status: ReclaimSpaceCronJobStatus = field(default_factory=ReclaimSpaceCronJobStatus)


@dataclass
class ChildJobsInfo:
    """Child jobs sorted by outcome, with the latest scheduled and success times."""

    active_job: ReclaimSpaceJob | None = None
    successful_jobs: list[ReclaimSpaceJob] = field(default_factory=list)
    failed_jobs: list[ReclaimSpaceJob] = field(default_factory=list)
    most_recent_time: datetime | None = None
    last_successful_time: datetime | None = None


def _format_rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.replace(microsecond=0).isoformat()
    return text[: -len("+00:00")] + "Z" if text.endswith("+00:00") else text


def _parse_rfc3339(text: str) -> datetime:
    match = _RFC3339.fullmatch(text)
    if match is None:
        raise ValueError(f'parsing time "{text}" as RFC3339: cannot parse')
    year, month, day, hour, minute, second = (int(part) for part in match.groups()[:6])
    fraction, offset = match.group(7), match.group(8)
    micro = int((fraction or "").ljust(6, "0")[:6]) if fraction else 0
    if offset == "Z":
        zone = timezone.utc
    else:
        sign = -1 if offset[0] == "-" else 1
        zone = timezone(sign * timedelta(hours=int(offset[1:3]), minutes=int(offset[4:6])))
    try:
        return datetime(year, month, day, hour, minute, second, micro, tzinfo=zone)
    except ValueError as err:
        raise ValueError(f'parsing time "{text}": {err}') from err


def _job_owner_name(obj: Any) -> list[str] | None:
    if not isinstance(obj, ReclaimSpaceJob):
        return None
    owner = get_controller_of(obj.meta)
    if owner is None or owner.api_version != API_GROUP_VERSION or owner.kind != "ReclaimSpaceCronJob":
        return None
    return [owner.name]


def get_scheduled_time_for_rs_job(job: ReclaimSpaceJob) -> datetime | None:
    """The scheduled time recorded on the job, or None if there is none."""
    raw = job.meta.annotations.get(SCHEDULED_TIME_ANNOTATION, "")
    if not raw:
        return None
    return _parse_rfc3339(raw)


def parse_job_list(jobs: Iterable[ReclaimSpaceJob]) -> ChildJobsInfo:
    """Sort child jobs into active, successful and failed ones."""
    info = ChildJobsInfo()
    for job in jobs:
        result = job.status.result
        if result is None:
            info.active_job = job
        elif result == OperationResult.FAILED:
            info.failed_jobs.append(job)
        elif result == OperationResult.SUCCEEDED:
            info.successful_jobs.append(job)
            completed = job.status.completion_time
            if completed is not None and (
                info.last_successful_time is None or info.last_successful_time < completed
            ):
                info.last_successful_time = completed

        try:
            scheduled = get_scheduled_time_for_rs_job(job)
        except ValueError as err:
            log.error("Failed to parse schedule time for child ReclaimSpaceJob %s: %s", job.meta.name, err)
            continue
        if scheduled is not None and (info.most_recent_time is None or info.most_recent_time < scheduled):
            info.most_recent_time = scheduled
    return info


def get_next_schedule(cron_job: ReclaimSpaceCronJob, now: datetime) -> tuple[datetime | None, datetime | None]:
    """Return (last missed run or None, next run).

    Raises ValueError for an unparsable schedule or more than 100 missed runs.
    """
    try:
        schedule = parse_standard(cron_job.spec.schedule)
    except ValueError as err:
        raise ValueError(f'Unparsable schedule "{cron_job.spec.schedule}": {err}') from err

    earliest = cron_job.status.last_schedule_time or cron_job.meta.creation_timestamp or _EPOCH_ZERO
    if cron_job.spec.starting_deadline_seconds is not None:
        deadline = now - timedelta(seconds=cron_job.spec.starting_deadline_seconds)
        if deadline > earliest:
            earliest = deadline
    if earliest > now:
        return None, schedule.next(now)

    starts = 0
    last_missed: datetime | None = None
    moment = schedule.next(earliest)
    while moment is not None and moment <= now:
        last_missed = moment
        starts += 1
        if starts > MAX_MISSED_START_TIMES:
            raise ValueError(
                "too many missed start times (> 100). Set or decrease"
                ".spec.startingDeadlineSeconds, check clock skew or"
                " delete and recreate reclaimspacecronjob."
            )
        moment = schedule.next(moment)
    return last_missed, schedule.next(now)


class ReclaimSpaceCronJobReconciler:
    """Creates ReclaimSpaceJobs for due runs and prunes old ones."""

    def __init__(self, client: Client, clock: Callable[[], datetime] | None = None) -> None:
        self.client = client
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        client.register_index(ReclaimSpaceJob, JOB_OWNER_KEY, _job_owner_name)

    def reconcile(self, request: NamespacedName) -> Result:
        try:
            cron_job = self.client.get(ReclaimSpaceCronJob, request)
        except NotFoundError:
            log.info("ReclaimSpaceCronJob resource not found")
            return Result()

        spec = cron_job.spec
        if spec.failed_jobs_history_limit is None:
            spec.failed_jobs_history_limit = DEFAULT_FAILED_JOBS_HISTORY_LIMIT
        if spec.successful_jobs_history_limit is None:
            spec.successful_jobs_history_limit = DEFAULT_SUCCESSFUL_JOBS_HISTORY_LIMIT

        children = self.client.list(
            ReclaimSpaceJob, namespace=request.namespace, matching={JOB_OWNER_KEY: request.name}
        )
        info = parse_job_list(children)

        cron_job.status.last_schedule_time = info.most_recent_time
        if info.last_successful_time is not None:
            cron_job.status.last_successful_time = info.last_successful_time
        cron_job.status.active = info.active_job.meta.key if info.active_job is not None else None
        self.client.update_status(cron_job)

        self.delete_old_jobs(info.successful_jobs, spec.successful_jobs_history_limit)
        self.delete_old_jobs(info.failed_jobs, spec.failed_jobs_history_limit)

        if spec.suspend:
            log.info("ReclaimspaceCronJob suspended, skipping scheduling job")
            return Result()

        now = self._clock()
        try:
            missed_run, next_run = get_next_schedule(cron_job, now)
        except ValueError as err:
            log.error("Failed to parse out CronJob schedule %r: %s", spec.schedule, err)
            return Result()

        scheduled = Result(requeue_after=next_run - now if next_run is not None else None)
        if missed_run is None:
            log.info("No upcoming scheduled times, requeue with delay till next run")
            return scheduled

        if spec.starting_deadline_seconds is not None and (
            missed_run + timedelta(seconds=spec.starting_deadline_seconds) < now
        ):
            log.info("Missed starting deadline for last run, requeue with delay till next run")
            return scheduled

        if spec.concurrency_policy == ConcurrencyPolicy.REPLACE and info.active_job is not None:
            try:
                self.client.delete(info.active_job)
            except NotFoundError:
                pass

        if info.active_job is not None:
            log.info("Concurrency policy blocks concurrent runs, skipping %s", info.active_job.meta.name)
            return scheduled

        job = self.construct_rs_job_for_cron_job(cron_job, missed_run)
        self.client.create(job)
        log.info("Successfully created reclaimSpaceJob %s for reclaimSpaceCronJob run", job.meta.name)
        return scheduled

    def construct_rs_job_for_cron_job(
        self, cron_job: ReclaimSpaceCronJob, scheduled_time: datetime
    ) -> ReclaimSpaceJob:
        """A job for the given run, named deterministically after its scheduled time."""
        annotations = dict(cron_job.spec.job_annotations)
        annotations[SCHEDULED_TIME_ANNOTATION] = _format_rfc3339(scheduled_time)
        owner = OwnerReference(
            api_version=API_GROUP_VERSION,
            kind="ReclaimSpaceCronJob",
            name=cron_job.meta.name,
            controller=True,
        )
        return ReclaimSpaceJob(
            meta=ObjectMeta(
                name=f"{cron_job.meta.name}-{int(scheduled_time.timestamp())}",
                namespace=cron_job.meta.namespace,
                labels=dict(cron_job.spec.job_labels),
                annotations=annotations,
                owner_references=[owner],
            ),
            spec=copy.deepcopy(cron_job.spec.job_spec),
        )

    def delete_old_jobs(self, jobs: list[ReclaimSpaceJob], history_limit: int) -> list[ReclaimSpaceJob]:
        """Delete all but the newest ``history_limit`` jobs; return those gone.

        Errors are only logged.
        """
        jobs.sort(key=lambda job: (job.status.start_time is not None, job.status.start_time or _EPOCH_ZERO))
        removed = []
        for job in jobs[: max(len(jobs) - history_limit, 0)]:
            state = job.status.result.value if job.status.result is not None else ""
            try:
                self.client.delete(job)
            except NotFoundError:
                removed.append(job)
            except Exception as err:
                log.error("Failed to delete old job %s (%s): %s", job.meta.name, state, err)
            else:
                log.info("Successfully deleted old job %s (%s)", job.meta.name, state)
                removed.append(job)
        return removed