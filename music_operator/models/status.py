"""
Status document persisted on the MusicService status subresource.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ServicePhase(str, Enum):
    """Coarse lifecycle label of a MusicService."""

    PENDING = "Pending"
    PROGRESSING = "Progressing"
    AVAILABLE = "Available"
    DEGRADED = "Degraded"
    FAILED = "Failed"


class DatabasePhase(str, Enum):
    """Lifecycle label of the database tier."""

    PENDING = "Pending"
    PROGRESSING = "Progressing"
    READY = "Ready"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class _StatusModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        use_enum_values=True,
    )


class Condition(_StatusModel):
    """
    A typed, timestamped status signal.

    last_transition_time only moves when status changes; reason and message
    may be rewritten freely.
    """

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    observed_generation: int = 0
    last_transition_time: Optional[str] = None


class DatabaseStatus(_StatusModel):
    """Database tier sub-status, including replica history tracking."""

    phase: DatabasePhase = DatabasePhase.PENDING
    master_ready: bool = False
    replicas_ready: int = 0
    replica_ever_created: bool = False
    replica_last_seen: Optional[str] = None
    replica_deletion_detected: bool = False
    replication_ready: bool = False


class MusicServiceStatus(_StatusModel):
    observed_generation: int = 0
    desired_replicas: int = 0
    ready_replicas: int = 0
    phase: Optional[ServicePhase] = None
    last_reconcile_time: Optional[str] = None
    last_error: Optional[str] = None
    conditions: List[Condition] = Field(default_factory=list)
    database: Optional[DatabaseStatus] = None

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase shape written to the status subresource."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
