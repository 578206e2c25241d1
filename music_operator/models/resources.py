"""
Resource keys, descriptors and observed-state snapshots.

Bodies are plain k8s-shaped dicts (camelCase keys) so they can be handed to
the API client or the in-memory store without conversion.
"""
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, Field


class ResourceKind(str, Enum):
    """Kinds the operator reads or writes."""

    MUSIC_SERVICE = "MusicService"
    STATEFUL_SET = "StatefulSet"
    SERVICE = "Service"
    HORIZONTAL_POD_AUTOSCALER = "HorizontalPodAutoscaler"
    SECRET = "Secret"
    PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"
    EVENT = "Event"


# Kinds the reconciler prunes when they are owned but no longer desired
PRUNABLE_KINDS = (
    ResourceKind.STATEFUL_SET,
    ResourceKind.SERVICE,
    ResourceKind.HORIZONTAL_POD_AUTOSCALER,
)


class Tier(str, Enum):
    """Which part of the service a descriptor belongs to."""

    APP = "app"
    DATABASE = "database"
    DATABASE_REPLICA = "database-replica"


class ResourceKey(NamedTuple):
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


class ResourceDescriptor(BaseModel):
    """
    Desired shape of one child resource.

    externally_managed lists dotted field paths (e.g. "spec.replicas") that
    another controller owns once the resource exists; the reconciler never
    compares or writes them on update.
    """

    kind: ResourceKind
    name: str
    namespace: str
    body: Dict[str, Any]
    tier: Tier = Tier.APP
    externally_managed: List[str] = Field(default_factory=list)
    # Condition reason reported when this step fails
    failure_reason: str = "ReconcileError"
    # Resize/Recreate for workloads with volume claim templates
    storage_policy: Optional[str] = None

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind.value, self.namespace, self.name)


class ObservedClaim(BaseModel):
    name: str
    phase: Optional[str] = None
    requested: Optional[str] = None
    capacity: Optional[str] = None


class ObservedWorkload(BaseModel):
    """Snapshot of a live StatefulSet and its volume claims."""

    name: str
    exists: bool = False
    declared_replicas: int = 0
    ready_replicas: int = 0
    volume_request: Optional[str] = None
    claims: List[ObservedClaim] = Field(default_factory=list)
