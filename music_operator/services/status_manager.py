"""
Status Aggregator.

Recomputes the MusicService status document from what a reconcile pass
observed, and persists it only when something other than the bookkeeping
timestamps changed.

Rules:
- Available condition and phase follow ready vs declared application pods
- Degraded replaces Available when storage, the database tier or the replica
  history is unhealthy
- Failed is reported with Reconciled=False/<reason> when a pass aborts; the
  next clean pass resets Reconciled to True/ReconcileSuccess
- Replica history is permanent: once a replica tier was seen, its later
  disappearance is reported as ReplicaDeleted until it is observed again
"""
import copy
from typing import Any, Dict, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from music_operator.config.logging import get_logger
from music_operator.core import conditions as cond
from music_operator.core.state_machine import ServiceStateMachine
from music_operator.exceptions import OperatorException
from music_operator.models.music_service import MusicService
from music_operator.models.resources import ObservedWorkload, ResourceKind, Tier
from music_operator.models.status import (
    ConditionStatus,
    DatabasePhase,
    DatabaseStatus,
    MusicServiceStatus,
    ServicePhase,
)
from music_operator.services.storage_policy import StorageRefusal
from music_operator.store.base import Resource, StateStore
from music_operator.utils.k8s import clamp_replicas
from music_operator.utils.quantity import compare_quantities

logger = get_logger(__name__)

STORAGE_CONDITIONS = {
    Tier.APP: cond.STORAGE_WARNING_APP,
    Tier.DATABASE: cond.STORAGE_WARNING_DATABASE,
    Tier.DATABASE_REPLICA: cond.STORAGE_WARNING_DATABASE_REPLICA,
}

RECONCILED_MESSAGE = "Successfully reconciled"


class PassObservation(BaseModel):
    """
    What one reconcile pass saw after applying its descriptors.

    Attributes:
        workloads: Observed StatefulSet per tier (only tiers that are desired)
        refusals: Refused shrinks per tier
        created: Names of workloads that did not exist when the pass started
        pending: Whether a deleted object waits to be recreated on the next pass
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    workloads: Dict[Tier, ObservedWorkload] = Field(default_factory=dict)
    refusals: Dict[Tier, StorageRefusal] = Field(default_factory=dict)
    created: Set[str] = Field(default_factory=set)
    pending: bool = False


def comparable(status: MusicServiceStatus) -> Dict[str, Any]:
    """Status document without the fields refreshed on every pass."""
    document = status.to_dict()
    document.pop("lastReconcileTime", None)
    database = document.get("database")
    if database is not None:
        database.pop("replicaLastSeen", None)
    return document


class StatusManager:
    """
    Computes and persists the status document.

    Args:
        store: State store used for the status subresource write
    """

    def __init__(self, store: StateStore):
        self.store = store

    def compute(
        self,
        ms: MusicService,
        observation: PassObservation,
        now: Optional[str] = None,
    ) -> MusicServiceStatus:
        """
        Status after a clean pass.

        Args:
            ms: Parent as read at the start of the pass (its status is not mutated)
            observation: Workloads, refusals and creations of the pass
            now: Timestamp for transitions (defaults to utc_now())

        Returns:
            A new status document
        """
        now = now or cond.utc_now()
        status = ms.status.model_copy(deep=True)
        generation = ms.generation
        status.observed_generation = generation
        status.last_reconcile_time = now
        status.last_error = None

        app = observation.workloads.get(Tier.APP)
        if app is not None and app.exists:
            desired, ready = app.declared_replicas, app.ready_replicas
        else:
            desired, ready = clamp_replicas(ms.spec.replicas, ms.spec.autoscaling), 0
        status.desired_replicas = desired
        status.ready_replicas = ready

        verdict = ServiceStateMachine.availability(ready, desired)
        cond.set_condition(
            status.conditions, cond.AVAILABLE, verdict.status, verdict.reason, verdict.message, generation, now
        )

        storage_healthy = self._update_storage(status, observation, generation, now)
        database_ready, replica_deleted = self._update_database(ms, status, observation, now)

        cond.set_condition(
            status.conditions,
            cond.RECONCILED,
            ConditionStatus.TRUE,
            cond.REASON_RECONCILE_SUCCESS,
            RECONCILED_MESSAGE,
            generation,
            now,
        )

        phase = ServiceStateMachine.service_phase(verdict.phase, storage_healthy, database_ready, replica_deleted)
        ServiceStateMachine.log_transition(ms.status.phase, phase)
        status.phase = phase
        return status

    def compute_failure(
        self,
        current: MusicServiceStatus,
        generation: int,
        error: OperatorException,
        now: Optional[str] = None,
    ) -> MusicServiceStatus:
        """
        Status after an aborted pass.

        Only phase, lastError and the Reconciled condition change; everything
        else keeps what the last clean pass recorded.
        """
        now = now or cond.utc_now()
        status = current.model_copy(deep=True)
        status.observed_generation = generation
        status.last_reconcile_time = now
        status.last_error = error.message
        cond.set_condition(
            status.conditions,
            cond.RECONCILED,
            ConditionStatus.FALSE,
            error.reason,
            error.message,
            generation,
            now,
        )
        ServiceStateMachine.log_transition(current.phase, ServicePhase.FAILED)
        status.phase = ServicePhase.FAILED
        return status

    async def persist(
        self,
        resource: Resource,
        previous: MusicServiceStatus,
        status: MusicServiceStatus,
    ) -> bool:
        """
        Write the status subresource when it changed.

        Args:
            resource: Live parent object (its resourceVersion guards the write)
            previous: Status read at the start of the pass
            status: Newly computed status

        Returns:
            True when a write was issued

        Raises:
            ConflictError: If the parent changed since it was read
        """
        if comparable(previous) == comparable(status):
            logger.debug("status_unchanged")
            return False

        body = copy.deepcopy(resource)
        body["status"] = status.to_dict()
        await self.store.update_status(ResourceKind.MUSIC_SERVICE.value, body)
        logger.info(
            "status_updated",
            phase=status.phase,
            ready_replicas=status.ready_replicas,
            desired_replicas=status.desired_replicas,
        )
        return True

    # ------------------------------------------------------------------

    def _update_storage(
        self,
        status: MusicServiceStatus,
        observation: PassObservation,
        generation: int,
        now: str,
    ) -> bool:
        """Set one storage condition per observed tier; returns overall health."""
        healthy = True
        for tier, condition_type in STORAGE_CONDITIONS.items():
            workload = observation.workloads.get(tier)
            if workload is None:
                cond.remove_condition(status.conditions, condition_type)
                continue

            condition_status, reason, message = storage_verdict(workload, observation.refusals.get(tier))
            cond.set_condition(status.conditions, condition_type, condition_status, reason, message, generation, now)
            if condition_status == ConditionStatus.FALSE:
                healthy = False
        return healthy

    def _update_database(
        self,
        ms: MusicService,
        status: MusicServiceStatus,
        observation: PassObservation,
        now: str,
    ) -> Tuple[bool, bool]:
        """
        Update the database sub-status.

        Returns:
            (database ready, replica deletion detected)
        """
        if not ms.database_enabled:
            status.database = None
            cond.remove_condition(status.conditions, cond.DATABASE_REPLICA_HISTORY)
            return True, False

        db_spec = ms.spec.database
        db = status.database or DatabaseStatus()
        primary = observation.workloads.get(Tier.DATABASE)
        primary_ready = primary.ready_replicas if primary is not None and primary.exists else 0

        if db_spec.ha_enabled:
            # One pool of replicas + 1 symmetric nodes
            db.master_ready = primary_ready > 0
            db.replicas_ready = max(primary_ready - 1, 0)
            db.replication_ready = primary_ready >= db_spec.replicas + 1
            _forget_replica_history(db, status)
        else:
            db.master_ready = primary_ready > 0
            if db_spec.replicas > 0:
                self._track_replicas(ms, db, status, observation, now)
            else:
                db.replicas_ready = 0
                db.replication_ready = False
                _forget_replica_history(db, status)

        db.phase = ServiceStateMachine.database_phase(db.master_ready, db.replicas_ready, db_spec.replicas)
        status.database = db
        return db.phase == DatabasePhase.READY.value, db.replica_deletion_detected

    def _track_replicas(
        self,
        ms: MusicService,
        db: DatabaseStatus,
        status: MusicServiceStatus,
        observation: PassObservation,
        now: str,
    ) -> None:
        replica = observation.workloads.get(Tier.DATABASE_REPLICA)
        exists = replica is not None and replica.exists
        existed_before = exists and replica.name not in observation.created

        if existed_before or (exists and not db.replica_ever_created):
            db.replicas_ready = replica.ready_replicas
            db.replica_ever_created = True
            db.replica_deletion_detected = False
            db.replica_last_seen = now
            db.replication_ready = ms.spec.database.replication_enabled and replica.ready_replicas > 0
            cond.set_condition(
                status.conditions,
                cond.DATABASE_REPLICA_HISTORY,
                ConditionStatus.TRUE,
                cond.REASON_REPLICA_OBSERVED,
                "Replica StatefulSet is present",
                ms.generation,
                now,
            )
            return

        db.replicas_ready = 0
        db.replication_ready = False
        if db.replica_ever_created:
            if not db.replica_deletion_detected:
                logger.warning("database_replica_deletion_detected", last_seen=db.replica_last_seen)
            db.replica_deletion_detected = True
            cond.set_condition(
                status.conditions,
                cond.DATABASE_REPLICA_HISTORY,
                ConditionStatus.FALSE,
                cond.REASON_REPLICA_DELETED,
                "Replica StatefulSet was deleted after previously existing",
                ms.generation,
                now,
            )


def _forget_replica_history(db: DatabaseStatus, status: MusicServiceStatus) -> None:
    """
    Drop replica history while the spec does not want a replica tier.

    A tier scaled away on purpose and brought back later is a new tier, not
    a deletion.
    """
    db.replica_ever_created = False
    db.replica_deletion_detected = False
    db.replica_last_seen = None
    cond.remove_condition(status.conditions, cond.DATABASE_REPLICA_HISTORY)


def storage_verdict(
    workload: ObservedWorkload,
    refusal: Optional[StorageRefusal],
) -> Tuple[ConditionStatus, str, str]:
    """
    Storage condition for one tier.

    Precedence: refused shrink, unbound claims, pending expansion, healthy.
    """
    if refusal is not None:
        return ConditionStatus.FALSE, cond.REASON_SHRINK_NOT_SUPPORTED, refusal.message

    unbound = [claim.name for claim in workload.claims if claim.phase != "Bound"]
    if unbound:
        return (
            ConditionStatus.FALSE,
            cond.REASON_PVC_NOT_BOUND,
            f"One or more PVCs are not bound yet: {', '.join(unbound)}",
        )

    expanding = [
        claim.name
        for claim in workload.claims
        if claim.requested and claim.capacity and compare_quantities(claim.capacity, claim.requested) < 0
    ]
    if expanding:
        return (
            ConditionStatus.UNKNOWN,
            cond.REASON_RESIZE_IN_PROGRESS,
            f"Waiting for volume expansion: {', '.join(expanding)}",
        )

    return ConditionStatus.TRUE, cond.REASON_STORAGE_HEALTHY, "Storage requests are within expected bounds"
