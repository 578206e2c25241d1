"""
Pydantic models for the MusicService custom resource.

Field names are snake_case in Python and camelCase on the wire, matching the
CRD schema served under music.mixcorp.org/v1.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from music_operator.models.status import MusicServiceStatus

API_GROUP = "music.mixcorp.org"
API_VERSION = "v1"
KIND = "MusicService"
PLURAL = "musicservices"

QuantityValue = Union[str, int, float]


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class StorageUpdatePolicy(str, Enum):
    """How a change of the declared volume size is applied."""

    RESIZE = "Resize"  # Expand existing claims in place (grow only)
    RECREATE = "Recreate"  # Delete workload and claims, rebuild at the new size (data loss)


class StreamingSpec(CamelModel):
    """Streaming parameters passed to the application container."""

    bitrate: str = Field(..., min_length=1, description="Audio bitrate (e.g. '320k')")
    max_connections: int = Field(..., ge=1, le=10000, description="Maximum concurrent streams")


class StorageSpec(CamelModel):
    """Persistent volume request for a tier."""

    size: str = Field(..., min_length=1, description="Volume size quantity (e.g. '10Gi')")
    update_policy: StorageUpdatePolicy = Field(
        default=StorageUpdatePolicy.RESIZE, description="Resize or Recreate on size change"
    )


class AutoscalingSpec(CamelModel):
    """Horizontal autoscaler bounds and targets."""

    min_replicas: int = Field(..., ge=1, description="Lower replica bound")
    max_replicas: int = Field(..., ge=1, description="Upper replica bound")
    target_cpu_utilization_percentage: int = Field(
        ..., ge=1, le=100, alias="targetCPUUtilizationPercentage", description="Target average CPU utilization"
    )
    target_memory_utilization_percentage: Optional[int] = Field(
        default=None, ge=1, le=100, description="Target average memory utilization"
    )

    @model_validator(mode="after")
    def validate_bounds(self) -> "AutoscalingSpec":
        if self.min_replicas > self.max_replicas:
            raise ValueError(
                f"minReplicas ({self.min_replicas}) must not exceed maxReplicas ({self.max_replicas})"
            )
        return self


class ResourceRequirements(CamelModel):
    """Compute resource requests and limits."""

    requests: Dict[str, QuantityValue] = Field(default_factory=dict)
    limits: Dict[str, QuantityValue] = Field(default_factory=dict)


class ReplicationSpec(CamelModel):
    """Primary/replica replication settings."""

    enabled: bool = Field(default=True, description="Enable asynchronous replication")
    gtid: bool = Field(default=True, description="Use GTID coordinates for replica attachment")


class HighAvailabilitySpec(CamelModel):
    """Multi-primary (Galera) cluster settings."""

    enabled: bool = Field(default=False, description="Deploy a multi-primary cluster instead of primary/replica")


class DatabaseSpec(CamelModel):
    """Optional relational database tier."""

    enabled: bool = Field(default=False, description="Deploy the database tier")
    replicas: int = Field(default=0, ge=0, le=10, description="Replica (or extra cluster node) count")
    image: Optional[str] = Field(default=None, description="Database image (engine default when empty)")
    storage: Optional[StorageSpec] = Field(default=None, description="Database volume request")
    root_password: Optional[str] = Field(default=None, description="Root password (generated when empty)")
    replication: Optional[ReplicationSpec] = Field(default=None, description="Replication settings")
    high_availability: Optional[HighAvailabilitySpec] = Field(default=None, description="HA cluster settings")
    autoscaling: Optional[AutoscalingSpec] = Field(default=None, description="Replica tier autoscaling")

    @property
    def replication_enabled(self) -> bool:
        if self.replication is None:
            return True
        return self.replication.enabled

    @property
    def gtid_enabled(self) -> bool:
        if self.replication is None:
            return True
        return self.replication.gtid

    @property
    def ha_enabled(self) -> bool:
        return self.high_availability is not None and self.high_availability.enabled


class MusicServiceSpec(CamelModel):
    """Desired state of a MusicService."""

    replicas: int = Field(..., ge=1, le=100, description="Desired application pods")
    image: str = Field(..., min_length=1, description="Application container image")
    port: int = Field(..., ge=1, le=65535, description="Service port for streaming")
    storage: StorageSpec
    streaming: StreamingSpec
    resources: Optional[ResourceRequirements] = Field(default=None, description="Container resources")
    autoscaling: Optional[AutoscalingSpec] = Field(default=None, description="Application autoscaling")
    database: Optional[DatabaseSpec] = Field(default=None, description="Database tier")


class ObjectMeta(CamelModel):
    """Subset of Kubernetes ObjectMeta the operator relies on."""

    name: str
    namespace: str = "default"
    uid: Optional[str] = None
    generation: int = 1
    resource_version: Optional[str] = None
    deletion_timestamp: Optional[datetime] = None
    finalizers: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)


class MusicService(CamelModel):
    """The parent resource driven by the reconciler."""

    api_version: str = Field(default=f"{API_GROUP}/{API_VERSION}")
    kind: str = Field(default=KIND)
    metadata: ObjectMeta
    spec: MusicServiceSpec
    status: MusicServiceStatus = Field(default_factory=MusicServiceStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def generation(self) -> int:
        return self.metadata.generation

    @property
    def database_enabled(self) -> bool:
        return self.spec.database is not None and self.spec.database.enabled

    @property
    def database_ha_enabled(self) -> bool:
        return self.database_enabled and self.spec.database.ha_enabled

    def owner_reference(self) -> Dict[str, Any]:
        """Controller owner reference placed on every child resource."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.metadata.uid or "",
            "controller": True,
            "blockOwnerDeletion": True,
        }
