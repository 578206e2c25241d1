"""
Condition helpers for the MusicService status document.

Conditions are kept in first-insert order with a unique type. Setting a
condition whose status is unchanged keeps the original lastTransitionTime;
only a status change moves it.

Usage:
    >>> conditions = []
    >>> set_condition(conditions, AVAILABLE, ConditionStatus.FALSE, "PodsNotReady",
    ...               "Waiting for pods to be ready", generation=1, now="2026-01-01T00:00:00Z")
    >>> set_condition(conditions, AVAILABLE, ConditionStatus.FALSE, "PodsProgressing",
    ...               "Waiting for pods: 1/3 ready", generation=1, now="2026-01-01T00:05:00Z")
    >>> conditions[0].last_transition_time
    '2026-01-01T00:00:00Z'
"""
from datetime import datetime, timezone
from typing import List, Optional

from music_operator.models.status import Condition, ConditionStatus

# Condition types
AVAILABLE = "Available"
RECONCILED = "Reconciled"
DATABASE_REPLICA_HISTORY = "DatabaseReplicaHistory"
STORAGE_WARNING_APP = "StorageWarningApp"
STORAGE_WARNING_DATABASE = "StorageWarningDatabase"
STORAGE_WARNING_DATABASE_REPLICA = "StorageWarningDatabaseReplica"

# Reasons
REASON_PODS_NOT_READY = "PodsNotReady"
REASON_PODS_PROGRESSING = "PodsProgressing"
REASON_PODS_READY = "PodsReady"
REASON_RECONCILE_SUCCESS = "ReconcileSuccess"
REASON_REPLICA_OBSERVED = "ReplicaObserved"
REASON_REPLICA_DELETED = "ReplicaDeleted"
REASON_SHRINK_NOT_SUPPORTED = "ShrinkNotSupported"
REASON_PVC_NOT_BOUND = "PVCNotBound"
REASON_RESIZE_IN_PROGRESS = "ResizeInProgress"
REASON_STORAGE_HEALTHY = "StorageHealthy"


def utc_now() -> str:
    """RFC 3339 timestamp with second precision, as the API server stores it."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def find_condition(conditions: List[Condition], condition_type: str) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_condition(
    conditions: List[Condition],
    condition_type: str,
    status: ConditionStatus,
    reason: str,
    message: str,
    generation: int,
    now: Optional[str] = None,
) -> Condition:
    """
    Insert or update a condition in place.

    Args:
        conditions: Condition list to mutate (order is preserved)
        condition_type: Unique condition type
        status: New status value
        reason: CamelCase machine-readable reason
        message: Human-readable message
        generation: metadata.generation the condition was computed from
        now: Timestamp to use when the status transitions (defaults to utc_now())

    Returns:
        The stored condition
    """
    status_value = ConditionStatus(status).value
    existing = find_condition(conditions, condition_type)

    if existing is None:
        condition = Condition(
            type=condition_type,
            status=status_value,
            reason=reason,
            message=message,
            observed_generation=generation,
            last_transition_time=now or utc_now(),
        )
        conditions.append(condition)
        return condition

    if existing.status != status_value or existing.last_transition_time is None:
        existing.last_transition_time = now or utc_now()
    existing.status = status_value
    existing.reason = reason
    existing.message = message
    existing.observed_generation = generation
    return existing


def remove_condition(conditions: List[Condition], condition_type: str) -> bool:
    """Drop a condition; returns True when one was removed."""
    for index, condition in enumerate(conditions):
        if condition.type == condition_type:
            del conditions[index]
            return True
    return False
