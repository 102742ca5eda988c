"""VolumeReplication resources and their finalizer handling."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from csiaddons.kube import (
    Client,
    Condition,
    NamespacedName,
    NotFoundError,
    ObjectMeta,
    PersistentVolumeClaim,
    add_finalizer,
    remove_finalizer,
)

log = logging.getLogger(__name__)

VOLUME_REPLICATION_FINALIZER = "replication.storage.openshift.io"
PVC_REPLICATION_FINALIZER = "replication.storage.openshift.io/pvc-protection"
VOLUME_REPLICATION_NAME_ANNOTATION = "replication.storage.openshift.io/volume-replication-name"


class ReplicationState(str, Enum):
    """The replication state requested in the spec."""

    PRIMARY = "primary"
    SECONDARY = "secondary"
    RESYNC = "resync"


class State(str, Enum):
    """The replication state reported in the status."""

    PRIMARY = "Primary"
    SECONDARY = "Secondary"
    UNKNOWN = "Unknown"


@dataclass
class VolumeReplicationSpec:
    volume_replication_class: str = ""
    replication_state: ReplicationState | None = None
    data_source_kind: str = ""
    data_source_name: str = ""
    replication_handle: str = ""
    auto_resync: bool = False


@dataclass
class VolumeReplicationStatus:
    state: State | None = None
    message: str = ""
    conditions: list[Condition] = field(default_factory=list)
    observed_generation: int = 0
    last_start_time: datetime | None = None
    last_completion_time: datetime | None = None
    last_sync_time: datetime | None = None
    last_sync_duration: timedelta | None = None
    last_sync_bytes: int | None = None


@dataclass
class VolumeReplication:
    meta: ObjectMeta
    spec: VolumeReplicationSpec = field(default_factory=VolumeReplicationSpec)
    status: VolumeReplicationStatus = field(default_factory=VolumeReplicationStatus)


@dataclass
class VolumeReplicationClass:
    meta: ObjectMeta
    provisioner: str = ""
    parameters: dict[str, str] = field(default_factory=dict)


def add_finalizer_to_vr(client: Client, vr: VolumeReplication) -> bool:
    return add_finalizer(client, vr, VOLUME_REPLICATION_FINALIZER)


def remove_finalizer_from_vr(client: Client, vr: VolumeReplication) -> bool:
    return remove_finalizer(client, vr, VOLUME_REPLICATION_FINALIZER)


def add_finalizer_to_pvc(client: Client, pvc: PersistentVolumeClaim) -> bool:
    return add_finalizer(client, pvc, PVC_REPLICATION_FINALIZER)


def remove_finalizer_from_pvc(client: Client, pvc: PersistentVolumeClaim) -> bool:
    return remove_finalizer(client, pvc, PVC_REPLICATION_FINALIZER)


def get_volume_replication_class(client: Client, name: str) -> VolumeReplicationClass:
    """Fetch the cluster-scoped VolumeReplicationClass of the given name."""
    try:
        return client.get(VolumeReplicationClass, NamespacedName(name))
    except NotFoundError:
        log.error("VolumeReplicationClass %s not found", name)
        raise
    except Exception:
        log.exception("Got an unexpected error while fetching VolumeReplicationClass %s", name)
        raise