"""PVC lookup and ownership annotations for VolumeReplication."""

from __future__ import annotations

import logging

from csiaddons.kube import (
    CLAIM_BOUND,
    Client,
    NamespacedName,
    NotFoundError,
    PersistentVolume,
    PersistentVolumeClaim,
)
from csiaddons.replication_resources import VOLUME_REPLICATION_NAME_ANNOTATION

log = logging.getLogger(__name__)


def get_pvc_data_source(
    client: Client, key: NamespacedName
) -> tuple[PersistentVolumeClaim, PersistentVolume]:
    """Fetch a bound PVC and the PV it is bound to."""
    try:
        pvc = client.get(PersistentVolumeClaim, key)
    except NotFoundError:
        log.error("PVC %s not found", key.name)
        raise
    if pvc.phase != CLAIM_BOUND:
        raise ValueError(f'PVC "{key.name}" is not bound to any PV')
    try:
        pv = client.get(PersistentVolume, NamespacedName(pvc.volume_name))
    except NotFoundError:
        log.error("PV %s not found", pvc.volume_name)
        raise
    return pvc, pv


def annotate_pvc_with_owner(client: Client, owner_name: str, pvc: PersistentVolumeClaim) -> None:
    """Record the owning VolumeReplication on the PVC.

    Raises ValueError when another VolumeReplication already owns it.
    """
    current = pvc.meta.annotations.get(VOLUME_REPLICATION_NAME_ANNOTATION, "")
    if not current:
        log.info("setting owner %s on PVC %s annotation", owner_name, pvc.meta.name)
        pvc.meta.annotations[VOLUME_REPLICATION_NAME_ANNOTATION] = owner_name
        try:
            client.update(pvc)
        except NotFoundError as err:
            raise NotFoundError(
                f'failed to update PVC "{pvc.meta.name}" annotation for VolumeReplication: {err}'
            ) from err
        return
    if current != owner_name:
        log.info(
            "cannot change the owner of PVC %s from %s to %s", pvc.meta.name, current, owner_name
        )
        raise ValueError(f'PVC "{pvc.meta.name}" not owned by VolumeReplication "{owner_name}"')


def remove_owner_from_pvc_annotation(client: Client, pvc: PersistentVolumeClaim) -> None:
    """Drop the owner annotation from the PVC if it is set."""
    if VOLUME_REPLICATION_NAME_ANNOTATION not in pvc.meta.annotations:
        return
    log.info("removing owner annotation from PVC %s", pvc.meta.name)
    del pvc.meta.annotations[VOLUME_REPLICATION_NAME_ANNOTATION]
    try:
        client.update(pvc)
    except NotFoundError as err:
        raise NotFoundError(
            f'failed to remove annotation "{VOLUME_REPLICATION_NAME_ANNOTATION}" '
            f'from PersistentVolumeClaim "{pvc.meta.name}" {err}'
        ) from err