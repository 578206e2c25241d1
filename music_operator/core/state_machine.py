"""
Phase rules for MusicService lifecycle management.

The phase is recomputed from observed state on every pass rather than
stepped incrementally, so every transition is reachable. The transition table
classifies transitions instead of forbidding them: moving away from a healthy
phase is a regression and is surfaced as a Warning event.

Phases:
- Pending: no application pod is ready
- Progressing: some, but not all, application pods are ready
- Available: every desired application pod is ready
- Degraded: the application tier is ready but storage or the database is not healthy
- Failed: the last reconcile pass aborted with an error

Usage:
    >>> from music_operator.core.state_machine import ServiceStateMachine
    >>> ServiceStateMachine.app_phase(ready=2, desired=3)
    <ServicePhase.PROGRESSING: 'Progressing'>
    >>> ServiceStateMachine.is_regression(ServicePhase.AVAILABLE, ServicePhase.PENDING)
    True
"""
from typing import Dict, NamedTuple, Optional, Set

from music_operator.config.logging import get_logger
from music_operator.core import conditions as cond
from music_operator.models.status import ConditionStatus, DatabasePhase, ServicePhase

logger = get_logger(__name__)


class AvailabilityVerdict(NamedTuple):
    phase: ServicePhase
    status: ConditionStatus
    reason: str
    message: str


class ServiceStateMachine:
    """
    Phase derivation for a MusicService and its database tier.
    """

    # Transitions that are part of normal forward progress
    PROGRESS: Dict[ServicePhase, Set[ServicePhase]] = {
        ServicePhase.PENDING: {
            ServicePhase.PROGRESSING,  # First pods became ready
            ServicePhase.AVAILABLE,    # All pods ready in one step
            ServicePhase.DEGRADED,     # Ready, but a dependency is not healthy
        },
        ServicePhase.PROGRESSING: {
            ServicePhase.AVAILABLE,
            ServicePhase.DEGRADED,
        },
        ServicePhase.DEGRADED: {
            ServicePhase.AVAILABLE,    # Dependency recovered
        },
        ServicePhase.FAILED: {
            ServicePhase.PENDING,      # Recovered, pods starting
            ServicePhase.PROGRESSING,
            ServicePhase.AVAILABLE,
            ServicePhase.DEGRADED,
        },
        ServicePhase.AVAILABLE: set(),
    }

    @classmethod
    def app_phase(cls, ready: int, desired: int) -> ServicePhase:
        """
        Phase of the application tier from ready vs desired pods.

        Args:
            ready: Ready application pods
            desired: Declared application replicas

        Returns:
            Pending, Progressing or Available
        """
        return cls.availability(ready, desired).phase

    @classmethod
    def availability(cls, ready: int, desired: int) -> AvailabilityVerdict:
        """
        Phase and Available condition for the application tier.

        Example:
            >>> ServiceStateMachine.availability(2, 3).message
            'Waiting for pods: 2/3 ready'
        """
        if ready <= 0:
            return AvailabilityVerdict(
                ServicePhase.PENDING,
                ConditionStatus.FALSE,
                cond.REASON_PODS_NOT_READY,
                "Waiting for pods to be ready",
            )
        if ready < desired:
            return AvailabilityVerdict(
                ServicePhase.PROGRESSING,
                ConditionStatus.FALSE,
                cond.REASON_PODS_PROGRESSING,
                f"Waiting for pods: {ready}/{desired} ready",
            )
        return AvailabilityVerdict(
            ServicePhase.AVAILABLE,
            ConditionStatus.TRUE,
            cond.REASON_PODS_READY,
            "All replicas are ready",
        )

    @classmethod
    def service_phase(
        cls,
        app_phase: ServicePhase,
        storage_healthy: bool = True,
        database_ready: bool = True,
        replica_deleted: bool = False,
    ) -> ServicePhase:
        """
        Overall phase once dependencies are taken into account.

        Degraded only applies to an otherwise Available application tier;
        Pending and Progressing are reported as-is.
        """
        if app_phase != ServicePhase.AVAILABLE:
            return app_phase
        if not storage_healthy or not database_ready or replica_deleted:
            return ServicePhase.DEGRADED
        return ServicePhase.AVAILABLE

    @classmethod
    def database_phase(cls, master_ready: bool, replicas_ready: int, replicas_desired: int) -> DatabasePhase:
        """
        Phase of the database tier.

        Args:
            master_ready: Whether a write-capable node is ready
            replicas_ready: Ready replica (or additional cluster) nodes
            replicas_desired: Declared replica (or additional cluster) nodes
        """
        if not master_ready:
            return DatabasePhase.PENDING
        if replicas_ready < replicas_desired:
            return DatabasePhase.PROGRESSING
        return DatabasePhase.READY

    @classmethod
    def is_regression(cls, from_phase: Optional[ServicePhase], to_phase: ServicePhase) -> bool:
        """
        Whether moving from one phase to another loses ground.

        Staying in place and first-time assignment are never regressions.
        """
        if from_phase is None:
            return False
        from_phase = ServicePhase(from_phase)
        to_phase = ServicePhase(to_phase)
        if from_phase == to_phase:
            return False
        if to_phase == ServicePhase.FAILED:
            return True
        return to_phase not in cls.PROGRESS.get(from_phase, set())

    @classmethod
    def log_transition(
        cls,
        from_phase: Optional[ServicePhase],
        to_phase: ServicePhase,
    ) -> None:
        if from_phase is not None and ServicePhase(from_phase) == ServicePhase(to_phase):
            return
        if cls.is_regression(from_phase, to_phase):
            logger.warning(
                "phase_regressed",
                from_phase=ServicePhase(from_phase).value,
                to_phase=ServicePhase(to_phase).value,
            )
        else:
            logger.info(
                "phase_changed",
                from_phase=ServicePhase(from_phase).value if from_phase else None,
                to_phase=ServicePhase(to_phase).value,
            )
