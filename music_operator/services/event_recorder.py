"""
Event recorder.

Records core/v1 Events against a MusicService so that `kubectl describe`
shows what the operator did, and mirrors each one to the structured log.
Events are best effort: a failed write is logged and never fails the pass.
"""
import secrets
from typing import Optional

from music_operator.config.logging import get_logger
from music_operator.config.settings import settings
from music_operator.core.conditions import utc_now
from music_operator.exceptions import OperatorException
from music_operator.models.music_service import API_GROUP, API_VERSION, KIND
from music_operator.models.resources import ResourceKind
from music_operator.store.base import Resource, StateStore

logger = get_logger(__name__)

NORMAL = "Normal"
WARNING = "Warning"

# Reasons
CREATED = "Created"
UPDATED = "Updated"
DELETED = "Deleted"
STORAGE_RECREATE = "StorageRecreate"
SHRINK_NOT_SUPPORTED = "ShrinkNotSupported"
RECONCILE_FAILED = "ReconcileFailed"
CLEANUP = "Cleanup"


class EventRecorder:
    """Writes Events through the state store."""

    def __init__(self, store: StateStore, component: Optional[str] = None):
        self.store = store
        self.component = component or settings.app_name

    async def normal(self, resource: Resource, reason: str, message: str) -> None:
        await self.record(resource, NORMAL, reason, message)

    async def warning(self, resource: Resource, reason: str, message: str) -> None:
        await self.record(resource, WARNING, reason, message)

    async def record(self, resource: Resource, event_type: str, reason: str, message: str) -> None:
        """
        Record one Event.

        Args:
            resource: Live MusicService object the event is about
            event_type: "Normal" or "Warning"
            reason: CamelCase reason
            message: Human-readable message
        """
        metadata = resource.get("metadata") or {}
        name = metadata.get("name", "")
        namespace = metadata.get("namespace", "default")
        now = utc_now()
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{name}.{secrets.token_hex(8)}",
                "namespace": namespace,
            },
            "involvedObject": {
                "apiVersion": resource.get("apiVersion") or f"{API_GROUP}/{API_VERSION}",
                "kind": resource.get("kind") or KIND,
                "name": name,
                "namespace": namespace,
                "uid": metadata.get("uid"),
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self.component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }

        log = logger.warning if event_type == WARNING else logger.info
        log("event_recorded", event_type=event_type, reason=reason, message=message)

        try:
            await self.store.create(ResourceKind.EVENT.value, body)
        except OperatorException as e:
            logger.warning(
                "event_record_failed",
                reason=reason,
                error=e.message,
                error_type=type(e).__name__,
            )
