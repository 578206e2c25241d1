"""
Storage Policy Engine.

Decides what to do when the declared volume size of a tier differs from the
size of its existing claims. Claims belong to a workload when they are named
<template>-<workload>-<ordinal>; when no claim exists yet the live workload's
claim template size stands in for the current size.

Policies:
- Resize (default): grow every claim below the declared size in place. A
  smaller declared size is refused: nothing is mutated and a StorageRefusal
  is returned for the status document.
- Recreate: delete the workload and every claim of the tier. The next pass
  recreates both at the declared size. Existing data is lost.
"""
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from music_operator.config.logging import get_logger
from music_operator.models.music_service import StorageUpdatePolicy
from music_operator.models.resources import (
    ObservedClaim,
    ObservedWorkload,
    ResourceDescriptor,
    ResourceKind,
)
from music_operator.services import metrics
from music_operator.store.base import StateStore
from music_operator.utils import k8s
from music_operator.utils.quantity import compare_quantities, parse_quantity

logger = get_logger(__name__)

STORAGE_PATH = "spec.resources.requests.storage"


class StorageAction(str, Enum):
    NONE = "none"
    RESIZE = "resize"
    REFUSE = "refuse"
    RECREATE = "recreate"


class StorageRefusal(NamedTuple):
    """A refused shrink; reported as a warning condition, never raised."""

    tier: str
    workload: str
    current: str
    desired: str

    @property
    def message(self) -> str:
        return (
            f"Requested storage size {self.desired} is smaller than current PVC size "
            f"{self.current}; volumes can only grow"
        )


class StorageOutcome(NamedTuple):
    action: StorageAction
    current: Optional[str] = None
    desired: Optional[str] = None
    resized: Tuple[str, ...] = ()
    deleted: Tuple[str, ...] = ()
    refusal: Optional[StorageRefusal] = None

    @property
    def recreated(self) -> bool:
        return self.action == StorageAction.RECREATE


def claim_belongs_to(claim_name: str, prefix: str) -> bool:
    """Prefix match followed by a numeric ordinal."""
    if not claim_name.startswith(prefix):
        return False
    return claim_name[len(prefix):].isdigit()


def _claim_request(claim: Dict[str, Any]) -> Optional[str]:
    return k8s.get_path(claim, STORAGE_PATH)


def current_size(observed: ObservedWorkload) -> Optional[str]:
    """
    Largest size requested by the tier's claims.

    Falls back to the live claim template size when no claim exists.
    """
    sizes = [claim.requested for claim in observed.claims if claim.requested]
    if not sizes:
        return observed.volume_request
    return max(sizes, key=parse_quantity)


class StoragePolicyEngine:
    """
    Applies the Resize/Recreate policy for one workload at a time.

    Args:
        store: State store used to read and write claims and workloads
    """

    def __init__(self, store: StateStore):
        self.store = store

    async def observe(self, descriptor: ResourceDescriptor, live: Optional[Dict[str, Any]]) -> ObservedWorkload:
        """
        Snapshot a workload and the claims created from its template.

        Args:
            descriptor: Desired StatefulSet
            live: Live StatefulSet, or None when it does not exist

        Returns:
            Observed replicas, template size and claims
        """
        template = k8s.claim_template_name(descriptor.body)
        claims: List[ObservedClaim] = []
        if template:
            claims = [
                ObservedClaim(
                    name=claim["metadata"]["name"],
                    phase=k8s.get_path(claim, "status.phase"),
                    requested=_claim_request(claim),
                    capacity=k8s.get_path(claim, "status.capacity.storage"),
                )
                for claim in await self._claims(descriptor, template)
            ]

        if live is None:
            return ObservedWorkload(name=descriptor.name, claims=claims)
        return ObservedWorkload(
            name=descriptor.name,
            exists=True,
            declared_replicas=k8s.get_path(live, "spec.replicas") or 0,
            ready_replicas=k8s.get_path(live, "status.readyReplicas") or 0,
            volume_request=k8s.claim_template_size(live),
            claims=claims,
        )

    async def apply(self, descriptor: ResourceDescriptor, live: Dict[str, Any]) -> StorageOutcome:
        """
        Reconcile the volume size of an existing workload.

        Must run before any other field of the workload is updated.

        Args:
            descriptor: Desired StatefulSet (carries the storage policy)
            live: Live StatefulSet

        Returns:
            What was done; a refusal is a value, not an exception
        """
        desired = k8s.claim_template_size(descriptor.body)
        if not desired:
            return StorageOutcome(StorageAction.NONE)

        observed = await self.observe(descriptor, live)
        current = current_size(observed)
        if not current:
            return StorageOutcome(StorageAction.NONE, desired=desired)

        delta = compare_quantities(desired, current)
        policy = StorageUpdatePolicy(descriptor.storage_policy or StorageUpdatePolicy.RESIZE.value)

        if policy == StorageUpdatePolicy.RECREATE:
            if delta == 0:
                return StorageOutcome(StorageAction.NONE, current=current, desired=desired)
            return await self._recreate(descriptor, observed, current, desired)

        if delta < 0:
            refusal = StorageRefusal(descriptor.tier.value, descriptor.name, current, desired)
            logger.warning(
                "storage_shrink_refused",
                workload=descriptor.name,
                tier=descriptor.tier.value,
                current=current,
                desired=desired,
            )
            metrics.record_storage_refusal(descriptor.tier.value)
            return StorageOutcome(
                StorageAction.REFUSE, current=current, desired=desired, refusal=refusal,
            )

        resized = await self._expand(descriptor, observed, desired)
        if not resized:
            return StorageOutcome(StorageAction.NONE, current=current, desired=desired)
        return StorageOutcome(StorageAction.RESIZE, current=current, desired=desired, resized=tuple(resized))

    async def _expand(self, descriptor: ResourceDescriptor, observed: ObservedWorkload, desired: str) -> List[str]:
        resized = []
        for claim in observed.claims:
            if claim.requested and compare_quantities(claim.requested, desired) >= 0:
                continue
            body = await self.store.get(ResourceKind.PERSISTENT_VOLUME_CLAIM.value, descriptor.namespace, claim.name)
            k8s.set_path(body, STORAGE_PATH, desired)
            body.pop("status", None)
            await self.store.update(ResourceKind.PERSISTENT_VOLUME_CLAIM.value, body)
            resized.append(claim.name)
            logger.info(
                "storage_claim_expanded",
                claim=claim.name,
                workload=descriptor.name,
                previous=claim.requested,
                desired=desired,
            )
        return resized

    async def _recreate(
        self,
        descriptor: ResourceDescriptor,
        observed: ObservedWorkload,
        current: str,
        desired: str,
    ) -> StorageOutcome:
        logger.warning(
            "storage_recreate",
            workload=descriptor.name,
            tier=descriptor.tier.value,
            current=current,
            desired=desired,
            claims=[claim.name for claim in observed.claims],
            message="Deleting workload and volume claims; existing data will be lost",
        )
        deleted = []
        if await self.store.delete_if_exists(ResourceKind.STATEFUL_SET.value, descriptor.namespace, descriptor.name):
            deleted.append(f"{ResourceKind.STATEFUL_SET.value}/{descriptor.name}")
        for claim in observed.claims:
            if await self.store.delete_if_exists(
                ResourceKind.PERSISTENT_VOLUME_CLAIM.value, descriptor.namespace, claim.name
            ):
                deleted.append(f"{ResourceKind.PERSISTENT_VOLUME_CLAIM.value}/{claim.name}")
        metrics.record_storage_recreate(descriptor.tier.value)
        return StorageOutcome(
            StorageAction.RECREATE, current=current, desired=desired, deleted=tuple(deleted),
        )

    async def _claims(self, descriptor: ResourceDescriptor, template: str) -> List[Dict[str, Any]]:
        prefix = k8s.claim_prefix(template, descriptor.name)
        claims = await self.store.list(ResourceKind.PERSISTENT_VOLUME_CLAIM.value, descriptor.namespace)
        return sorted(
            (claim for claim in claims if claim_belongs_to(claim["metadata"]["name"], prefix)),
            key=lambda claim: claim["metadata"]["name"],
        )
