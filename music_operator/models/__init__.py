"""Data models for the MusicService operator."""
from music_operator.models.music_service import (
    API_GROUP,
    API_VERSION,
    KIND,
    PLURAL,
    AutoscalingSpec,
    DatabaseSpec,
    HighAvailabilitySpec,
    MusicService,
    MusicServiceSpec,
    ObjectMeta,
    ReplicationSpec,
    ResourceRequirements,
    StorageSpec,
    StorageUpdatePolicy,
    StreamingSpec,
)
from music_operator.models.resources import (
    PRUNABLE_KINDS,
    ObservedClaim,
    ObservedWorkload,
    ResourceDescriptor,
    ResourceKey,
    ResourceKind,
    Tier,
)
from music_operator.models.status import (
    Condition,
    ConditionStatus,
    DatabasePhase,
    DatabaseStatus,
    MusicServiceStatus,
    ServicePhase,
)

__all__ = [
    "API_GROUP",
    "API_VERSION",
    "KIND",
    "PLURAL",
    "AutoscalingSpec",
    "DatabaseSpec",
    "HighAvailabilitySpec",
    "MusicService",
    "MusicServiceSpec",
    "ObjectMeta",
    "ReplicationSpec",
    "ResourceRequirements",
    "StorageSpec",
    "StorageUpdatePolicy",
    "StreamingSpec",
    "PRUNABLE_KINDS",
    "ObservedClaim",
    "ObservedWorkload",
    "ResourceDescriptor",
    "ResourceKey",
    "ResourceKind",
    "Tier",
    "Condition",
    "ConditionStatus",
    "DatabasePhase",
    "DatabaseStatus",
    "MusicServiceStatus",
    "ServicePhase",
]
