"""
Reconciliation Orchestrator.

One pass drives the children of a single MusicService toward the shape the
builder computes from its spec:

1. Load the parent; a missing parent is nothing to do
2. Deletion: run cleanup and release the finalizer
3. Ensure the finalizer
4. Build descriptors; ensure credentials before the first database workload
5. Create, resize/recreate storage, then update each descriptor in order
6. Prune owned children that are no longer desired
7. Aggregate and persist status, only when it changed

A failing step aborts the pass; nothing is rolled back. Passes are
level-triggered and idempotent: against converged state a pass issues no
writes at all.

Usage:
    >>> reconciler = MusicServiceReconciler(store, get_engine("mariadb"))
    >>> result = await reconciler.reconcile("default", "radio")
    >>> result.requeue_after
    5.0
"""
import copy
import time
from typing import List, NamedTuple, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from music_operator.config.logging import bind_reconcile_context, get_logger
from music_operator.config.settings import settings
from music_operator.core import conditions as cond
from music_operator.exceptions import (
    ConflictError,
    NotFoundError,
    OperatorException,
    ReconcileStepError,
    ValidationError,
)
from music_operator.models.music_service import MusicService
from music_operator.models.resources import (
    PRUNABLE_KINDS,
    ResourceDescriptor,
    ResourceKey,
    ResourceKind,
    Tier,
)
from music_operator.models.status import MusicServiceStatus
from music_operator.services import event_recorder as events
from music_operator.services import metrics
from music_operator.services.credential_manager import CredentialManager
from music_operator.services.database_engine import DatabaseEngine, get_engine
from music_operator.services.event_recorder import EventRecorder
from music_operator.services.field_diff import apply_diff, compute_diff, requires_replacement
from music_operator.services.resource_builder import ResourceBuilder
from music_operator.services.status_manager import STORAGE_CONDITIONS, PassObservation, StatusManager
from music_operator.services.storage_policy import StoragePolicyEngine
from music_operator.store.base import Resource, StateStore
from music_operator.utils.k8s import is_owned_by, owned_by_labels

logger = get_logger(__name__)

FINALIZER = "music.mixcorp.org/finalizer"

CREDENTIALS_FAILED = "CredentialsFailed"
PRUNE_FAILED = "PruneFailed"
CLEANUP_FAILED = "CleanupFailed"


class ReconcileResult(NamedTuple):
    """
    Outcome of one pass, interpreted by the controller.

    Attributes:
        requeue_after: Seconds until the next pass; None means wait for an event
        error: The error that aborted the pass, if any
        backoff: Requeue with per-key exponential backoff instead of requeue_after
        park: Leave the key out of periodic resyncs until its next watch event
    """

    requeue_after: Optional[float] = None
    error: Optional[OperatorException] = None
    backoff: bool = False
    park: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None


class MusicServiceReconciler:
    """
    Level-triggered reconciler for MusicService objects.

    Args:
        store: State store holding the parent and its children
        engine: Database engine strategy (defaults to settings.database_engine)
    """

    def __init__(self, store: StateStore, engine: Optional[DatabaseEngine] = None):
        self.store = store
        self.engine = engine or get_engine(settings.database_engine)
        self.builder = ResourceBuilder(self.engine)
        self.credentials = CredentialManager(store)
        self.storage = StoragePolicyEngine(store)
        self.status = StatusManager(store)
        self.events = EventRecorder(store)

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """
        Run one pass for a parent.

        Args:
            namespace: Namespace of the MusicService
            name: Name of the MusicService

        Returns:
            When and how to requeue the key
        """
        started = time.monotonic()
        bind_reconcile_context(namespace, name)
        result = await self._reconcile(namespace, name)
        metrics.record_reconcile(_result_label(result), time.monotonic() - started)
        return result

    async def _reconcile(self, namespace: str, name: str) -> ReconcileResult:
        try:
            resource = await self.store.get(ResourceKind.MUSIC_SERVICE.value, namespace, name)
        except NotFoundError:
            logger.info("music_service_not_found")
            return ReconcileResult()
        except OperatorException as e:
            return self._unrecorded_failure(e)

        if resource["metadata"].get("deletionTimestamp"):
            return await self._finalize(resource)

        try:
            ms = MusicService.model_validate(resource)
        except PydanticValidationError as e:
            error = ValidationError(
                f"Invalid MusicService spec: {_format_errors(e)}",
                details={"errors": e.errors(include_url=False)},
            )
            return await self._fail(resource, error)

        bind_reconcile_context(namespace, name, ms.generation)

        try:
            resource = await self._ensure_finalizer(resource)
            observation = await self._apply_all(ms, resource)
        except OperatorException as e:
            return await self._fail(resource, e)

        status = self.status.compute(ms, observation)
        await self._report_refusals(resource, ms.status, status)
        try:
            await self.status.persist(resource, ms.status, status)
        except OperatorException as e:
            return self._unrecorded_failure(e)

        not_ready = status.ready_replicas < status.desired_replicas or observation.pending
        requeue_after = settings.not_ready_resync_interval if not_ready else settings.resync_interval
        logger.info(
            "reconcile_completed",
            phase=status.phase,
            ready_replicas=status.ready_replicas,
            desired_replicas=status.desired_replicas,
            requeue_after=requeue_after,
        )
        return ReconcileResult(requeue_after=requeue_after)

    # ------------------------------------------------------------------
    # Desired state
    # ------------------------------------------------------------------

    async def _apply_all(self, ms: MusicService, resource: Resource) -> PassObservation:
        """
        Apply every descriptor in dependency order, then prune.

        Raises:
            ValidationError: If the builder rejects the spec
            ReconcileStepError: If a step fails
        """
        descriptors = self.builder.build(ms)
        observation = PassObservation()

        credentials_ready = False
        for descriptor in descriptors:
            needs_credentials = descriptor.tier != Tier.APP and descriptor.kind == ResourceKind.STATEFUL_SET
            if needs_credentials and not credentials_ready:
                await self._ensure_credentials(ms)
                credentials_ready = True
            await self._apply(resource, descriptor, observation)

        await self._prune(ms, resource, {descriptor.key for descriptor in descriptors})
        return observation

    async def _ensure_credentials(self, ms: MusicService) -> None:
        try:
            results = await self.credentials.ensure(ms)
        except OperatorException as e:
            raise ReconcileStepError(CREDENTIALS_FAILED, e) from e
        changed = {name: result for name, result in results.items() if result != "unchanged"}
        if changed:
            logger.info("credentials_ensured", secrets=changed)

    async def _apply(self, resource: Resource, descriptor: ResourceDescriptor, observation: PassObservation) -> None:
        """
        Reconcile one descriptor against live state.

        Raises:
            ReconcileStepError: Wrapping any store or policy failure, with the
                descriptor's failure reason
        """
        kind = descriptor.kind.value
        is_workload = descriptor.kind == ResourceKind.STATEFUL_SET
        try:
            live = await self.store.get_optional(kind, descriptor.namespace, descriptor.name)

            if live is None:
                live = await self.store.create(kind, descriptor.body)
                logger.info("resource_created", kind=kind, resource=descriptor.name)
                await self.events.normal(resource, events.CREATED, f"Created {kind} {descriptor.name}")
                if is_workload:
                    observation.created.add(descriptor.name)
                    observation.workloads[descriptor.tier] = await self.storage.observe(descriptor, live)
                return

            if requires_replacement(descriptor, live):
                await self.store.delete(kind, descriptor.namespace, descriptor.name)
                observation.pending = True
                logger.info("resource_replaced", kind=kind, resource=descriptor.name, field="spec.clusterIP")
                await self.events.normal(
                    resource, events.DELETED, f"Deleted {kind} {descriptor.name} to change spec.clusterIP"
                )
                return

            if is_workload and descriptor.storage_policy is not None:
                outcome = await self.storage.apply(descriptor, live)
                if outcome.recreated:
                    observation.pending = True
                    observation.workloads[descriptor.tier] = await self.storage.observe(descriptor, None)
                    await self.events.warning(
                        resource,
                        events.STORAGE_RECREATE,
                        f"Recreating {descriptor.name} and its volume claims to change storage from "
                        f"{outcome.current} to {outcome.desired}; existing data is lost",
                    )
                    return
                if outcome.refusal is not None:
                    observation.refusals[descriptor.tier] = outcome.refusal

            changes = compute_diff(descriptor, live)
            if changes:
                live = await self.store.update(kind, apply_diff(live, changes))
                fields = [change.path for change in changes]
                logger.info("resource_updated", kind=kind, resource=descriptor.name, fields=fields)
                await self.events.normal(
                    resource, events.UPDATED, f"Updated {kind} {descriptor.name}: {', '.join(fields)}"
                )

            if is_workload:
                observation.workloads[descriptor.tier] = await self.storage.observe(descriptor, live)
        except OperatorException as e:
            raise ReconcileStepError(descriptor.failure_reason, e) from e

    async def _prune(self, ms: MusicService, resource: Resource, desired: Set[ResourceKey]) -> None:
        """Delete owned children of prunable kinds that are no longer desired."""
        try:
            for kind in PRUNABLE_KINDS:
                items = await self.store.list(kind.value, ms.namespace, owned_by_labels(ms))
                for item in items:
                    if not is_owned_by(item, ms.metadata.uid):
                        continue
                    key = ResourceKey(kind.value, ms.namespace, item["metadata"]["name"])
                    if key in desired:
                        continue
                    if await self.store.delete_if_exists(key.kind, key.namespace, key.name):
                        logger.info("resource_pruned", kind=key.kind, resource=key.name)
                        await self.events.normal(
                            resource, events.DELETED, f"Deleted {key.kind} {key.name}: no longer desired"
                        )
        except OperatorException as e:
            raise ReconcileStepError(PRUNE_FAILED, e) from e

    # ------------------------------------------------------------------
    # Finalizer
    # ------------------------------------------------------------------

    async def _ensure_finalizer(self, resource: Resource) -> Resource:
        finalizers = list(resource["metadata"].get("finalizers") or [])
        if FINALIZER in finalizers:
            return resource
        body = copy.deepcopy(resource)
        body["metadata"]["finalizers"] = finalizers + [FINALIZER]
        body.pop("status", None)
        updated = await self.store.update(ResourceKind.MUSIC_SERVICE.value, body)
        logger.info("finalizer_added", finalizer=FINALIZER)
        return updated

    async def _finalize(self, resource: Resource) -> ReconcileResult:
        """
        Cleanup for a parent being deleted.

        Credentials are deleted explicitly; every other child goes with the
        parent through owner-reference cascade once the finalizer is released.
        """
        finalizers = list(resource["metadata"].get("finalizers") or [])
        if FINALIZER not in finalizers:
            return ReconcileResult()

        try:
            metadata = resource["metadata"]
            deleted = await self.credentials.cleanup(metadata.get("namespace", "default"), metadata["name"])
            await self.events.normal(
                resource, events.CLEANUP, f"Cleaning up resources: deleted {deleted} credential secret(s)"
            )
            body = copy.deepcopy(resource)
            body["metadata"]["finalizers"] = [f for f in finalizers if f != FINALIZER]
            body.pop("status", None)
            await self.store.update(ResourceKind.MUSIC_SERVICE.value, body)
        except NotFoundError:
            return ReconcileResult()
        except OperatorException as e:
            return self._unrecorded_failure(ReconcileStepError(CLEANUP_FAILED, e))

        logger.info("finalizer_removed", finalizer=FINALIZER, credentials_deleted=deleted)
        return ReconcileResult()

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _fail(self, resource: Resource, error: OperatorException) -> ReconcileResult:
        """
        Record an aborted pass on the status document.

        Conflicts are not recorded: the next pass re-reads and usually
        succeeds. Validation errors are terminal for the generation.
        """
        cause = _root_cause(error)
        if isinstance(cause, ConflictError):
            return self._unrecorded_failure(error)

        metrics.record_step_failure(error.reason)
        logger.error(
            "reconcile_failed",
            reason=error.reason,
            error=error.message,
            error_type=type(cause).__name__,
        )

        try:
            previous = MusicServiceStatus.model_validate(resource.get("status") or {})
        except PydanticValidationError:
            previous = MusicServiceStatus()
        generation = resource["metadata"].get("generation", 1)
        status = self.status.compute_failure(previous, generation, error)
        try:
            written = await self.status.persist(resource, previous, status)
        except OperatorException as e:
            logger.warning("failure_status_not_recorded", error=e.message, error_type=type(e).__name__)
            written = False
        if written:
            await self.events.warning(resource, events.RECONCILE_FAILED, f"{error.reason}: {error.message}")

        if isinstance(cause, ValidationError):
            # Waits for the next change to the parent
            return ReconcileResult(error=error, park=True)
        return ReconcileResult(error=error, backoff=True)

    def _unrecorded_failure(self, error: OperatorException) -> ReconcileResult:
        """Failure that leaves the status document alone."""
        cause = _root_cause(error)
        if isinstance(cause, ConflictError):
            logger.info("reconcile_conflict", error=error.message)
            metrics.record_requeue("conflict")
            return ReconcileResult(requeue_after=settings.conflict_requeue_seconds, error=error)
        logger.error("reconcile_error", reason=error.reason, error=error.message, error_type=type(cause).__name__)
        return ReconcileResult(error=error, backoff=True)

    async def _report_refusals(
        self,
        resource: Resource,
        previous: MusicServiceStatus,
        status: MusicServiceStatus,
    ) -> None:
        """Warn once when a tier newly enters the ShrinkNotSupported state."""
        for condition_type in STORAGE_CONDITIONS.values():
            current = cond.find_condition(status.conditions, condition_type)
            if current is None or current.reason != cond.REASON_SHRINK_NOT_SUPPORTED:
                continue
            before = cond.find_condition(previous.conditions, condition_type)
            if before is not None and before.reason == cond.REASON_SHRINK_NOT_SUPPORTED:
                continue
            await self.events.warning(resource, events.SHRINK_NOT_SUPPORTED, current.message)


def _root_cause(error: OperatorException) -> Exception:
    if isinstance(error, ReconcileStepError):
        return error.cause
    return error


def _result_label(result: ReconcileResult) -> str:
    if result.error is None:
        return "success"
    cause = _root_cause(result.error)
    if isinstance(cause, ConflictError):
        return "conflict"
    if isinstance(cause, ValidationError):
        return "invalid"
    return "error"


def _format_errors(error: PydanticValidationError) -> str:
    messages: List[str] = []
    for item in error.errors(include_url=False):
        location = ".".join(str(part) for part in item.get("loc", ()))
        messages.append(f"{location}: {item.get('msg')}")
    return "; ".join(messages)
