"""
In-memory state store.

Behaves like the API server for the subset the operator relies on:
resourceVersion conflicts, generation bumps on spec changes, status kept apart
from spec updates, finalizer-aware deletion, and owner-reference cascade.

Ownership is modelled explicitly as a parent uid -> child keys table. A write
that would make an object (transitively) own itself is rejected, so cascades
always terminate and visit children in a deterministic (sorted) order.
"""
import copy
import itertools
import uuid
from typing import Any, Dict, List, NamedTuple, Optional, Set

from music_operator.config.logging import get_logger
from music_operator.core.conditions import utc_now
from music_operator.exceptions import ConflictError, NotFoundError, ValidationError
from music_operator.models.resources import ResourceKey, ResourceKind
from music_operator.services import metrics
from music_operator.store.base import Resource, StateStore

logger = get_logger(__name__)

# Kinds whose spec changes bump metadata.generation
_GENERATION_KINDS = {
    ResourceKind.MUSIC_SERVICE.value,
    ResourceKind.STATEFUL_SET.value,
    ResourceKind.HORIZONTAL_POD_AUTOSCALER.value,
}


class JournalEntry(NamedTuple):
    verb: str
    kind: str
    namespace: str
    name: str


class InMemoryStateStore(StateStore):
    """
    Dict-backed store used by tests and offline rendering.

    Every write is appended to `journal`; test helpers that simulate other
    controllers (set_ready_replicas, materialize_claims, ...) bypass it.
    """

    def __init__(self):
        self._objects: Dict[ResourceKey, Resource] = {}
        self._uids: Dict[str, ResourceKey] = {}
        self._children: Dict[str, Set[ResourceKey]] = {}
        self._versions = itertools.count(1)
        self.journal: List[JournalEntry] = []

    # ------------------------------------------------------------------
    # StateStore API
    # ------------------------------------------------------------------

    async def get(self, kind: str, namespace: str, name: str) -> Resource:
        key = ResourceKey(kind, namespace, name)
        obj = self._objects.get(key)
        if obj is None:
            raise NotFoundError(kind, namespace, name)
        return copy.deepcopy(obj)

    async def create(self, kind: str, body: Resource) -> Resource:
        obj = copy.deepcopy(body)
        metadata = obj.setdefault("metadata", {})
        namespace = metadata.setdefault("namespace", "default")
        name = metadata.get("name")
        if not name:
            raise ValidationError(f"{kind} has no metadata.name")

        key = ResourceKey(kind, namespace, name)
        if key in self._objects:
            raise ConflictError(f"{kind} '{namespace}/{name}' already exists")

        uid = metadata.get("uid") or str(uuid.uuid4())
        metadata["uid"] = uid
        self._check_owners(uid, metadata.get("ownerReferences") or [])

        metadata["resourceVersion"] = self._next_version()
        metadata.setdefault("creationTimestamp", utc_now())
        metadata.pop("deletionTimestamp", None)
        if kind in _GENERATION_KINDS:
            metadata["generation"] = 1
        obj.setdefault("kind", kind)

        self._objects[key] = obj
        self._uids[uid] = key
        self._index_owners(key, metadata.get("ownerReferences") or [])
        self._record("create", key)
        return copy.deepcopy(obj)

    async def update(self, kind: str, body: Resource) -> Resource:
        key = self._key_for(kind, body)
        live = self._objects.get(key)
        if live is None:
            raise NotFoundError(kind, key.namespace, key.name)
        self._check_version(key, live, body)

        obj = copy.deepcopy(body)
        metadata = obj.setdefault("metadata", {})
        live_meta = live["metadata"]
        uid = live_meta["uid"]
        owners = metadata.get("ownerReferences") or []
        self._check_owners(uid, owners)

        # Server-owned metadata
        metadata["uid"] = uid
        metadata["creationTimestamp"] = live_meta.get("creationTimestamp")
        if live_meta.get("deletionTimestamp"):
            metadata["deletionTimestamp"] = live_meta["deletionTimestamp"]
        else:
            metadata.pop("deletionTimestamp", None)
        if kind in _GENERATION_KINDS:
            generation = live_meta.get("generation", 1)
            if obj.get("spec") != live.get("spec"):
                generation += 1
            metadata["generation"] = generation

        if "status" in live:
            obj["status"] = copy.deepcopy(live["status"])
        else:
            obj.pop("status", None)
        metadata["resourceVersion"] = self._next_version()

        self._unindex_owners(key, live_meta.get("ownerReferences") or [])
        self._objects[key] = obj
        self._index_owners(key, owners)
        self._record("update", key)

        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            self._remove(key)
        return copy.deepcopy(obj)

    async def update_status(self, kind: str, body: Resource) -> Resource:
        key = self._key_for(kind, body)
        live = self._objects.get(key)
        if live is None:
            raise NotFoundError(kind, key.namespace, key.name)
        self._check_version(key, live, body)

        live["status"] = copy.deepcopy(body.get("status") or {})
        live["metadata"]["resourceVersion"] = self._next_version()
        self._record("update_status", key)
        return copy.deepcopy(live)

    async def delete(self, kind: str, namespace: str, name: str) -> None:
        key = ResourceKey(kind, namespace, name)
        live = self._objects.get(key)
        if live is None:
            raise NotFoundError(kind, namespace, name)
        self._record("delete", key)
        self._delete(key)

    async def list(
        self,
        kind: str,
        namespace: Optional[str],
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Resource]:
        items = []
        for key in sorted(self._objects):
            if key.kind != kind:
                continue
            if namespace is not None and key.namespace != namespace:
                continue
            obj = self._objects[key]
            if labels and not _labels_match(obj["metadata"].get("labels") or {}, labels):
                continue
            items.append(copy.deepcopy(obj))
        return items

    # ------------------------------------------------------------------
    # Ownership table
    # ------------------------------------------------------------------

    def children_of(self, uid: str) -> List[ResourceKey]:
        return sorted(self._children.get(uid, set()))

    def _check_owners(self, uid: str, owner_refs: List[Dict[str, Any]]) -> None:
        """Reject ownership edges that would close a cycle through uid."""
        for ref in owner_refs:
            owner_uid = ref.get("uid")
            if not owner_uid:
                continue
            if owner_uid == uid or self._is_ancestor(uid, owner_uid):
                raise ValidationError(
                    f"ownerReference to {ref.get('kind')}/{ref.get('name')} would create an ownership cycle",
                    details={"uid": uid, "owner_uid": owner_uid},
                )

    def _is_ancestor(self, candidate: str, uid: str) -> bool:
        """Whether candidate (transitively) owns uid."""
        seen: Set[str] = set()
        stack = [uid]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            key = self._uids.get(current)
            if key is None:
                continue
            for ref in self._objects[key]["metadata"].get("ownerReferences") or []:
                owner_uid = ref.get("uid")
                if owner_uid == candidate:
                    return True
                if owner_uid:
                    stack.append(owner_uid)
        return False

    def _index_owners(self, key: ResourceKey, owner_refs: List[Dict[str, Any]]) -> None:
        for ref in owner_refs:
            if ref.get("uid"):
                self._children.setdefault(ref["uid"], set()).add(key)

    def _unindex_owners(self, key: ResourceKey, owner_refs: List[Dict[str, Any]]) -> None:
        for ref in owner_refs:
            children = self._children.get(ref.get("uid", ""))
            if children is not None:
                children.discard(key)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def _delete(self, key: ResourceKey) -> None:
        obj = self._objects[key]
        metadata = obj["metadata"]
        if metadata.get("finalizers"):
            if not metadata.get("deletionTimestamp"):
                metadata["deletionTimestamp"] = utc_now()
                metadata["resourceVersion"] = self._next_version()
            return
        self._remove(key)

    def _remove(self, key: ResourceKey) -> None:
        """Remove an object and cascade to everything it owns."""
        obj = self._objects.pop(key, None)
        if obj is None:
            return
        metadata = obj["metadata"]
        uid = metadata["uid"]
        self._uids.pop(uid, None)
        self._unindex_owners(key, metadata.get("ownerReferences") or [])

        for child in sorted(self._children.pop(uid, set())):
            if child not in self._objects:
                continue
            child_meta = self._objects[child]["metadata"]
            remaining = [ref for ref in child_meta.get("ownerReferences") or [] if ref.get("uid") != uid]
            if remaining:
                # Still owned by another live object
                child_meta["ownerReferences"] = remaining
                continue
            logger.debug("cascade_delete", parent=str(key), child=str(child))
            self._delete(child)

    # ------------------------------------------------------------------
    # Helpers simulating other controllers (not journaled)
    # ------------------------------------------------------------------

    def seed(self, kind: str, body: Resource) -> Resource:
        """Insert an object without journaling it."""
        obj = copy.deepcopy(body)
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("namespace", "default")
        metadata.setdefault("uid", str(uuid.uuid4()))
        metadata["resourceVersion"] = self._next_version()
        metadata.setdefault("creationTimestamp", utc_now())
        if kind in _GENERATION_KINDS:
            metadata.setdefault("generation", 1)
        obj.setdefault("kind", kind)
        key = ResourceKey(kind, metadata["namespace"], metadata["name"])
        self._check_owners(metadata["uid"], metadata.get("ownerReferences") or [])
        self._objects[key] = obj
        self._uids[metadata["uid"]] = key
        self._index_owners(key, metadata.get("ownerReferences") or [])
        return copy.deepcopy(obj)

    def peek(self, kind: str, namespace: str, name: str) -> Optional[Resource]:
        obj = self._objects.get(ResourceKey(kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def set_ready_replicas(self, namespace: str, name: str, ready: int) -> None:
        """Simulate the StatefulSet controller reporting ready pods."""
        sts = self._objects[ResourceKey(ResourceKind.STATEFUL_SET.value, namespace, name)]
        status = sts.setdefault("status", {})
        status["readyReplicas"] = ready
        status["replicas"] = sts.get("spec", {}).get("replicas", 0)
        sts["metadata"]["resourceVersion"] = self._next_version()

    def set_replicas(self, namespace: str, name: str, replicas: int) -> None:
        """Simulate an autoscaler rewriting spec.replicas."""
        sts = self._objects[ResourceKey(ResourceKind.STATEFUL_SET.value, namespace, name)]
        sts["spec"]["replicas"] = replicas
        sts["metadata"]["resourceVersion"] = self._next_version()

    def materialize_claims(self, namespace: str, sts_name: str, phase: str = "Bound") -> List[str]:
        """
        Simulate the StatefulSet controller creating one claim per ordinal
        from the volume claim templates.
        """
        sts = self._objects[ResourceKey(ResourceKind.STATEFUL_SET.value, namespace, sts_name)]
        replicas = sts.get("spec", {}).get("replicas", 0)
        created = []
        for template in sts.get("spec", {}).get("volumeClaimTemplates") or []:
            template_name = template["metadata"]["name"]
            size = template["spec"]["resources"]["requests"]["storage"]
            for ordinal in range(replicas):
                claim_name = f"{template_name}-{sts_name}-{ordinal}"
                key = ResourceKey(ResourceKind.PERSISTENT_VOLUME_CLAIM.value, namespace, claim_name)
                if key in self._objects:
                    continue
                self.seed(
                    ResourceKind.PERSISTENT_VOLUME_CLAIM.value,
                    {
                        "apiVersion": "v1",
                        "kind": "PersistentVolumeClaim",
                        "metadata": {
                            "name": claim_name,
                            "namespace": namespace,
                            "labels": dict(sts["spec"]["template"]["metadata"].get("labels") or {}),
                        },
                        "spec": copy.deepcopy(template["spec"]),
                        "status": {"phase": phase, "capacity": {"storage": size}},
                    },
                )
                created.append(claim_name)
        return created

    def set_claim_status(
        self,
        namespace: str,
        name: str,
        phase: Optional[str] = None,
        capacity: Optional[str] = None,
    ) -> None:
        claim = self._objects[ResourceKey(ResourceKind.PERSISTENT_VOLUME_CLAIM.value, namespace, name)]
        status = claim.setdefault("status", {})
        if phase is not None:
            status["phase"] = phase
        if capacity is not None:
            status.setdefault("capacity", {})["storage"] = capacity

    def writes(self, exclude_kinds: Optional[Set[str]] = None) -> List[JournalEntry]:
        """Journal entries, optionally filtered by kind."""
        exclude_kinds = exclude_kinds or set()
        return [entry for entry in self.journal if entry.kind not in exclude_kinds]

    def clear_journal(self) -> None:
        self.journal.clear()

    # ------------------------------------------------------------------

    def _key_for(self, kind: str, body: Resource) -> ResourceKey:
        metadata = body.get("metadata") or {}
        return ResourceKey(kind, metadata.get("namespace", "default"), metadata.get("name", ""))

    def _check_version(self, key: ResourceKey, live: Resource, body: Resource) -> None:
        expected = (body.get("metadata") or {}).get("resourceVersion")
        if expected is not None and expected != live["metadata"]["resourceVersion"]:
            raise ConflictError(
                f"{key.kind} '{key.namespace}/{key.name}' was modified; resourceVersion {expected} is stale",
                details={"expected": expected, "actual": live["metadata"]["resourceVersion"]},
            )

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _record(self, verb: str, key: ResourceKey) -> None:
        self.journal.append(JournalEntry(verb, key.kind, key.namespace, key.name))
        metrics.record_store_write(key.kind, verb)


def _labels_match(labels: Dict[str, str], selector: Dict[str, str]) -> bool:
    return all(labels.get(k) == v for k, v in selector.items())
