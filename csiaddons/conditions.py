"""Status conditions reported on VolumeReplication objects."""

from __future__ import annotations

from datetime import datetime, timezone

from csiaddons.kube import CONDITION_FALSE, CONDITION_TRUE, Condition

CONDITION_COMPLETED = "Completed"
CONDITION_DEGRADED = "Degraded"
CONDITION_RESYNCING = "Resyncing"

SUCCESS = "Success"
PROMOTED = "Promoted"
DEMOTED = "Demoted"
FAILED_TO_PROMOTE = "FailedToPromote"
FAILED_TO_DEMOTE = "FailedToDemote"
ERROR = "Error"
VOLUME_DEGRADED = "VolumeDegraded"
HEALTHY = "Healthy"
RESYNC_TRIGGERED = "ResyncTriggered"
FAILED_TO_RESYNC = "FailedToResync"
NOT_RESYNCING = "NotResyncing"


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    """The condition of the given type, or None."""
    return next((c for c in conditions if c.type == condition_type), None)


def set_status_condition(conditions: list[Condition], new_condition: Condition) -> None:
    """Add the condition, or update status, reason and generation of an existing one.

    The transition time changes only when the status changes.
    """
    existing = find_condition(conditions, new_condition.type)
    if existing is None:
        new_condition.last_transition_time = datetime.now(timezone.utc)
        conditions.append(new_condition)
        return
    if existing.status != new_condition.status:
        existing.status = new_condition.status
        existing.last_transition_time = datetime.now(timezone.utc)
    existing.reason = new_condition.reason
    existing.observed_generation = new_condition.observed_generation


def _apply(conditions: list[Condition], observed_generation: int, *entries: tuple[str, str, str]) -> None:
    for condition_type, reason, status in entries:
        set_status_condition(
            conditions,
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                observed_generation=observed_generation,
            ),
        )


def set_promoted_condition(conditions: list[Condition], observed_generation: int) -> None:
    """Conditions after a successful promotion."""
    _apply(
        conditions,
        observed_generation,
        (CONDITION_COMPLETED, PROMOTED, CONDITION_TRUE),
        (CONDITION_DEGRADED, HEALTHY, CONDITION_FALSE),
        (CONDITION_RESYNCING, NOT_RESYNCING, CONDITION_FALSE),
    )


def set_failed_promotion_condition(conditions: list[Condition], observed_generation: int) -> None:
    """Conditions after a failed promotion."""
    _apply(
        conditions,
        observed_generation,
        (CONDITION_COMPLETED, FAILED_TO_PROMOTE, CONDITION_FALSE),
        (CONDITION_DEGRADED, ERROR, CONDITION_TRUE),
        (CONDITION_RESYNCING, NOT_RESYNCING, CONDITION_FALSE),
    )


def set_not_degraded_condition(conditions: list[Condition], observed_generation: int) -> None:
    """Conditions when a demoted volume has finished resyncing."""
    _apply(
        conditions,
        observed_generation,
        (CONDITION_DEGRADED, HEALTHY, CONDITION_FALSE),
        (CONDITION_RESYNCING, NOT_RESYNCING, CONDITION_FALSE),
    )


def set_demoted_condition(conditions: list[Condition], observed_generation: int) -> None:
    """Conditions after a successful demotion."""
    _apply(
        conditions,
        observed_generation,
        (CONDITION_COMPLETED, DEMOTED, CONDITION_TRUE),
        (CONDITION_DEGRADED, VOLUME_DEGRADED, CONDITION_TRUE),
        (CONDITION_RESYNCING, NOT_RESYNCING, CONDITION_FALSE),
    )


def set_failed_demotion_condition(conditions: list[Condition], observed_generation: int) -> None:
    """Conditions after a failed demotion."""
    _apply(
        conditions,
        observed_generation,
        (CONDITION_COMPLETED, FAILED_TO_DEMOTE, CONDITION_FALSE),
        (CONDITION_DEGRADED, ERROR, CONDITION_TRUE),
        (CONDITION_RESYNCING, NOT_RESYNCING, CONDITION_FALSE),
    )


def set_resync_condition(conditions: list[Condition], observed_generation: int) -> None:
    """Conditions after a resync was triggered."""
    _apply(
        conditions,
        observed_generation,
        (CONDITION_COMPLETED, DEMOTED, CONDITION_TRUE),
        (CONDITION_DEGRADED, VOLUME_DEGRADED, CONDITION_TRUE),
        (CONDITION_RESYNCING, RESYNC_TRIGGERED, CONDITION_TRUE),
    )


def set_failed_resync_condition(conditions: list[Condition], observed_generation: int) -> None:
    """Conditions after a failed resync."""
    _apply(
        conditions,
        observed_generation,
        (CONDITION_COMPLETED, FAILED_TO_RESYNC, CONDITION_FALSE),
        (CONDITION_DEGRADED, ERROR, CONDITION_TRUE),
        (CONDITION_RESYNCING, FAILED_TO_RESYNC, CONDITION_FALSE),
    )