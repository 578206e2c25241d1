"""
Tests for phase derivation.
"""
import pytest

from music_operator.core.state_machine import ServiceStateMachine
from music_operator.models.status import ConditionStatus, DatabasePhase, ServicePhase


@pytest.mark.parametrize(
    "ready,desired,phase,status,message",
    [
        (0, 3, ServicePhase.PENDING, ConditionStatus.FALSE, "Waiting for pods to be ready"),
        (2, 3, ServicePhase.PROGRESSING, ConditionStatus.FALSE, "Waiting for pods: 2/3 ready"),
        (3, 3, ServicePhase.AVAILABLE, ConditionStatus.TRUE, "All replicas are ready"),
        (4, 3, ServicePhase.AVAILABLE, ConditionStatus.TRUE, "All replicas are ready"),
    ],
)
def test_availability(ready, desired, phase, status, message):
    verdict = ServiceStateMachine.availability(ready, desired)

    assert verdict.phase == phase
    assert verdict.status == status
    assert verdict.message == message


def test_degraded_only_applies_to_available():
    assert ServiceStateMachine.service_phase(ServicePhase.AVAILABLE, storage_healthy=False) == ServicePhase.DEGRADED
    assert ServiceStateMachine.service_phase(ServicePhase.AVAILABLE, database_ready=False) == ServicePhase.DEGRADED
    assert ServiceStateMachine.service_phase(ServicePhase.AVAILABLE, replica_deleted=True) == ServicePhase.DEGRADED
    assert ServiceStateMachine.service_phase(ServicePhase.PROGRESSING, storage_healthy=False) == ServicePhase.PROGRESSING
    assert ServiceStateMachine.service_phase(ServicePhase.AVAILABLE) == ServicePhase.AVAILABLE


def test_database_phase():
    assert ServiceStateMachine.database_phase(False, 0, 2) == DatabasePhase.PENDING
    assert ServiceStateMachine.database_phase(True, 1, 2) == DatabasePhase.PROGRESSING
    assert ServiceStateMachine.database_phase(True, 2, 2) == DatabasePhase.READY
    assert ServiceStateMachine.database_phase(True, 0, 0) == DatabasePhase.READY


def test_regressions():
    assert not ServiceStateMachine.is_regression(None, ServicePhase.PENDING)
    assert not ServiceStateMachine.is_regression(ServicePhase.PENDING, ServicePhase.AVAILABLE)
    assert not ServiceStateMachine.is_regression(ServicePhase.FAILED, ServicePhase.AVAILABLE)
    assert ServiceStateMachine.is_regression(ServicePhase.AVAILABLE, ServicePhase.PENDING)
    assert ServiceStateMachine.is_regression(ServicePhase.AVAILABLE, ServicePhase.DEGRADED)
    assert ServiceStateMachine.is_regression("Available", "Failed")
