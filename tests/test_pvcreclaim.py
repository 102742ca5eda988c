from types import SimpleNamespace

import pytest

from csiaddons.kube import Client, ConnectionPool, Namespace, ObjectMeta, OwnerReference
from csiaddons.pvcreclaim import (
    CSI_ADDONS_DRIVER_ANNOTATION,
    DEFAULT_SCHEDULE,
    RS_CRON_JOB_SCHEDULE_TIME_ANNOTATION,
    ConnNotFoundRequeueNeeded,
    PersistentVolumeClaimReconciler,
    ScheduleNotFound,
    construct_rs_cron_job,
    extract_owner_name_from_pvc_obj,
    generate_cron_job_name,
    get_schedule_from_annotation,
)
from csiaddons.reclaimspacecronjob import ReclaimSpaceCronJob, ReclaimSpaceCronJobSpec
from csiaddons.reclaimspacejob import ReclaimSpaceJob, ReclaimSpaceJobSpec


def _owner(kind):
    return OwnerReference(api_version="v1", kind=kind, name="owner", controller=True)


def test_construct_rs_cron_job():
    got = construct_rs_cron_job("hello", "default", "@yearly", "pvc-1")
    want = ReclaimSpaceCronJob(
        meta=ObjectMeta(name="hello", namespace="default"),
        spec=ReclaimSpaceCronJobSpec(
            schedule="@yearly",
            job_spec=ReclaimSpaceJobSpec(
                persistent_volume_claim="pvc-1", backoff_limit=6, retry_deadline_seconds=600
            ),
            failed_jobs_history_limit=1,
            successful_jobs_history_limit=3,
        ),
    )
    assert got == want


def test_extract_owner_nil_obj():
    assert extract_owner_name_from_pvc_obj(None) is None


def test_extract_owner_non_cron_job_obj():
    job = ReclaimSpaceJob(
        meta=ObjectMeta(name="j", namespace="ns", owner_references=[_owner("PersistentVolumeClaim")])
    )
    assert extract_owner_name_from_pvc_obj(job) is None


def test_extract_owner_cron_job_with_pvc_owner():
    cron = ReclaimSpaceCronJob(
        meta=ObjectMeta(name="c", namespace="ns", owner_references=[_owner("PersistentVolumeClaim")])
    )
    assert extract_owner_name_from_pvc_obj(cron) == ["owner"]


def test_extract_owner_cron_job_with_pv_owner():
    cron = ReclaimSpaceCronJob(
        meta=ObjectMeta(name="c", namespace="ns", owner_references=[_owner("PersistentVolume")])
    )
    assert extract_owner_name_from_pvc_obj(cron) is None


def test_extract_owner_no_owner():
    cron = ReclaimSpaceCronJob(meta=ObjectMeta(name="c", namespace="ns", owner_references=[]))
    assert extract_owner_name_from_pvc_obj(cron) is None


def test_generate_cron_job_name():
    name = generate_cron_job_name("sample")
    assert name.startswith("sample-")
    assert name[len("sample-"):].isdigit()


@pytest.mark.parametrize(
    "annotations, want",
    [
        ({}, ("", False)),
        ({RS_CRON_JOB_SCHEDULE_TIME_ANNOTATION: "@weekly"}, ("@weekly", True)),
        ({RS_CRON_JOB_SCHEDULE_TIME_ANNOTATION: "@daytime"}, (DEFAULT_SCHEDULE, True)),
    ],
)
def test_get_schedule_from_annotation(annotations, want):
    assert get_schedule_from_annotation(annotations) == want


def _pvc(annotations):
    return SimpleNamespace(meta=SimpleNamespace(name="pvc-1", namespace="ns", annotations=annotations))


def _reconciler(ns_annotations=None):
    client = Client()
    if ns_annotations is not None:
        client.add(Namespace(meta=ObjectMeta(name="ns", namespace="", annotations=ns_annotations)))
    return PersistentVolumeClaimReconciler(client, ConnectionPool())


def test_determine_schedule_from_pvc():
    reconciler = _reconciler()
    pvc = _pvc({RS_CRON_JOB_SCHEDULE_TIME_ANNOTATION: "@daily"})
    assert reconciler.determine_schedule(pvc, "csi.example.com") == "@daily"


def test_determine_schedule_namespace_without_schedule():
    reconciler = _reconciler({})
    with pytest.raises(ScheduleNotFound):
        reconciler.determine_schedule(_pvc({}), "csi.example.com")


def test_determine_schedule_driver_not_supported():
    reconciler = _reconciler({RS_CRON_JOB_SCHEDULE_TIME_ANNOTATION: "@daily"})
    with pytest.raises(ScheduleNotFound):
        reconciler.determine_schedule(_pvc({}), "csi.example.com")


def test_determine_schedule_driver_listed_but_not_registered():
    reconciler = _reconciler(
        {
            RS_CRON_JOB_SCHEDULE_TIME_ANNOTATION: "@daily",
            CSI_ADDONS_DRIVER_ANNOTATION: "other.example.com,csi.example.com",
        }
    )
    with pytest.raises(ConnNotFoundRequeueNeeded):
        reconciler.determine_schedule(_pvc({}), "csi.example.com")


def test_supports_reclaim_space_empty_pool():
    assert _reconciler().supports_reclaim_space("csi.example.com") is False