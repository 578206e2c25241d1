"""
End-to-end reconcile passes against the in-memory store.
"""
import pytest

from music_operator.config.settings import settings
from music_operator.core import conditions as cond
from music_operator.exceptions import ConflictError, TransientError
from music_operator.models.resources import ResourceKind
from music_operator.services.reconciler import FINALIZER, MusicServiceReconciler
from music_operator.store.memory import InMemoryStateStore

MS = ResourceKind.MUSIC_SERVICE.value
STS = ResourceKind.STATEFUL_SET.value
SVC = ResourceKind.SERVICE.value
HPA = ResourceKind.HORIZONTAL_POD_AUTOSCALER.value
PVC = ResourceKind.PERSISTENT_VOLUME_CLAIM.value
SECRET = ResourceKind.SECRET.value
EVENT = ResourceKind.EVENT.value


class FlakyStore(InMemoryStateStore):
    """In-memory store that fails selected verbs for selected kinds."""

    def __init__(self):
        super().__init__()
        self.failures = {}

    def fail(self, verb, kind, error):
        self.failures[(verb, kind)] = error

    def heal(self):
        self.failures.clear()

    def _maybe_fail(self, verb, kind):
        error = self.failures.get((verb, kind))
        if error is not None:
            raise error

    async def create(self, kind, body):
        self._maybe_fail("create", kind)
        return await super().create(kind, body)

    async def update_status(self, kind, body):
        self._maybe_fail("update_status", kind)
        return await super().update_status(kind, body)


def status_of(store, name="radio"):
    return store.peek(MS, "default", name).get("status") or {}


def condition(status, condition_type):
    for item in status.get("conditions") or []:
        if item["type"] == condition_type:
            return item
    return None


async def update_spec(store, name="radio", **changes):
    resource = await store.get(MS, "default", name)
    resource["spec"].update(changes)
    return await store.update(MS, resource)


async def events(store, reason):
    return [e for e in await store.list(EVENT, "default") if e["reason"] == reason]


async def converge(store, reconciler, **ready):
    """Run a pass, then report the given workloads as fully ready."""
    await reconciler.reconcile("default", "radio")
    for name, count in ready.items():
        store.set_ready_replicas("default", name.replace("_", "-"), count)
        store.materialize_claims("default", name.replace("_", "-"))
    return await reconciler.reconcile("default", "radio")


@pytest.mark.asyncio
async def test_first_pass_creates_children(store, reconciler, seed_service):
    seed_service()

    result = await reconciler.reconcile("default", "radio")

    assert result.succeeded
    assert result.requeue_after == settings.not_ready_resync_interval
    assert store.peek(SVC, "default", "radio") is not None
    assert store.peek(STS, "default", "radio")["spec"]["replicas"] == 3
    assert FINALIZER in store.peek(MS, "default", "radio")["metadata"]["finalizers"]

    status = status_of(store)
    assert status["phase"] == "Pending"
    assert status["desiredReplicas"] == 3
    assert status["observedGeneration"] == 1
    assert condition(status, cond.RECONCILED)["status"] == "True"
    assert len(await events(store, "Created")) == 2


@pytest.mark.asyncio
async def test_second_pass_is_a_no_op(store, reconciler, seed_service):
    seed_service(
        autoscaling={"minReplicas": 2, "maxReplicas": 6, "targetCPUUtilizationPercentage": 70},
        database={"enabled": True, "replicas": 1},
    )
    await reconciler.reconcile("default", "radio")
    store.clear_journal()

    await reconciler.reconcile("default", "radio")

    assert store.writes() == []


@pytest.mark.asyncio
async def test_phase_progression(store, reconciler, seed_service):
    seed_service()
    await reconciler.reconcile("default", "radio")

    store.set_ready_replicas("default", "radio", 2)
    store.materialize_claims("default", "radio")
    await reconciler.reconcile("default", "radio")
    status = status_of(store)
    assert status["phase"] == "Progressing"
    assert condition(status, cond.AVAILABLE)["message"] == "Waiting for pods: 2/3 ready"

    store.set_ready_replicas("default", "radio", 3)
    result = await reconciler.reconcile("default", "radio")
    status = status_of(store)
    assert status["phase"] == "Available"
    assert condition(status, cond.AVAILABLE)["reason"] == "PodsReady"
    assert condition(status, cond.STORAGE_WARNING_APP)["reason"] == "StorageHealthy"
    assert result.requeue_after == settings.resync_interval


@pytest.mark.asyncio
async def test_autoscaler_owns_replicas(store, reconciler, seed_service):
    seed_service(autoscaling={"minReplicas": 2, "maxReplicas": 6, "targetCPUUtilizationPercentage": 70})
    await reconciler.reconcile("default", "radio")
    assert store.peek(HPA, "default", "radio-autoscaler") is not None

    store.set_replicas("default", "radio", 5)
    store.clear_journal()
    await reconciler.reconcile("default", "radio")

    assert store.peek(STS, "default", "radio")["spec"]["replicas"] == 5
    assert store.writes(exclude_kinds={MS}) == []
    assert status_of(store)["desiredReplicas"] == 5

    store.clear_journal()
    await reconciler.reconcile("default", "radio")
    assert store.writes() == []


@pytest.mark.asyncio
async def test_image_change_updates_workload(store, reconciler, seed_service):
    seed_service()
    await reconciler.reconcile("default", "radio")
    await update_spec(store, image="mixcorp/music:2.0")

    await reconciler.reconcile("default", "radio")

    sts = store.peek(STS, "default", "radio")
    assert sts["spec"]["template"]["spec"]["containers"][0]["image"] == "mixcorp/music:2.0"
    assert status_of(store)["observedGeneration"] == 2
    assert len(await events(store, "Updated")) == 1


@pytest.mark.asyncio
async def test_storage_shrink_is_refused(store, reconciler, seed_service):
    seed_service()
    await converge(store, reconciler, radio=3)
    await update_spec(store, storage={"size": "5Gi"})
    store.clear_journal()

    await reconciler.reconcile("default", "radio")

    assert store.writes(exclude_kinds={MS, EVENT}) == []
    for ordinal in range(3):
        claim = store.peek(PVC, "default", f"music-data-radio-{ordinal}")
        assert claim["spec"]["resources"]["requests"]["storage"] == "10Gi"
    status = status_of(store)
    storage = condition(status, cond.STORAGE_WARNING_APP)
    assert (storage["status"], storage["reason"]) == ("False", "ShrinkNotSupported")
    assert status["phase"] == "Degraded"
    assert len(await events(store, "ShrinkNotSupported")) == 1

    store.clear_journal()
    await reconciler.reconcile("default", "radio")
    assert store.writes() == []


@pytest.mark.asyncio
async def test_storage_growth_expands_claims(store, reconciler, seed_service):
    seed_service()
    await converge(store, reconciler, radio=3)
    await update_spec(store, storage={"size": "20Gi"})

    await reconciler.reconcile("default", "radio")

    claim = store.peek(PVC, "default", "music-data-radio-0")
    assert claim["spec"]["resources"]["requests"]["storage"] == "20Gi"
    storage = condition(status_of(store), cond.STORAGE_WARNING_APP)
    assert (storage["status"], storage["reason"]) == ("Unknown", "ResizeInProgress")

    for ordinal in range(3):
        store.set_claim_status("default", f"music-data-radio-{ordinal}", capacity="20Gi")
    await reconciler.reconcile("default", "radio")
    assert condition(status_of(store), cond.STORAGE_WARNING_APP)["reason"] == "StorageHealthy"


@pytest.mark.asyncio
async def test_storage_recreate(store, reconciler, seed_service):
    seed_service(storage={"size": "10Gi", "updatePolicy": "Recreate"})
    await converge(store, reconciler, radio=3)
    await update_spec(store, storage={"size": "20Gi", "updatePolicy": "Recreate"})

    result = await reconciler.reconcile("default", "radio")

    assert store.peek(STS, "default", "radio") is None
    assert store.peek(PVC, "default", "music-data-radio-0") is None
    assert store.peek(SVC, "default", "radio") is not None
    assert result.requeue_after == settings.not_ready_resync_interval
    assert len(await events(store, "StorageRecreate")) == 1

    await reconciler.reconcile("default", "radio")
    sts = store.peek(STS, "default", "radio")
    assert sts["spec"]["volumeClaimTemplates"][0]["spec"]["resources"]["requests"]["storage"] == "20Gi"


@pytest.mark.asyncio
async def test_database_tier_and_credentials(store, reconciler, seed_service):
    seed_service(database={"enabled": True, "replicas": 2})

    await reconciler.reconcile("default", "radio")

    for name in ("radio-db-master", "radio-db-read"):
        assert store.peek(SVC, "default", name) is not None
    for name in ("radio-db-master", "radio-db-replica"):
        assert store.peek(STS, "default", name) is not None
    assert store.peek(SECRET, "default", "radio-db-root") is not None
    assert store.peek(SECRET, "default", "radio-db-replication") is not None
    database = status_of(store)["database"]
    assert database["phase"] == "Pending"
    assert database["replicaEverCreated"] is True


@pytest.mark.asyncio
async def test_replica_history_survives_out_of_band_deletion(store, reconciler, seed_service):
    seed_service(database={"enabled": True, "replicas": 1})
    await converge(store, reconciler, radio=3, radio_db_master=1, radio_db_replica=1)
    assert status_of(store)["phase"] == "Available"

    await store.delete(STS, "default", "radio-db-replica")
    await reconciler.reconcile("default", "radio")

    status = status_of(store)
    assert store.peek(STS, "default", "radio-db-replica") is not None
    history = condition(status, cond.DATABASE_REPLICA_HISTORY)
    assert (history["status"], history["reason"]) == ("False", "ReplicaDeleted")
    assert status["database"]["replicaDeletionDetected"] is True
    assert status["phase"] == "Degraded"

    store.set_ready_replicas("default", "radio-db-replica", 1)
    await reconciler.reconcile("default", "radio")
    status = status_of(store)
    assert condition(status, cond.DATABASE_REPLICA_HISTORY)["reason"] == "ReplicaObserved"
    assert status["phase"] == "Available"


@pytest.mark.asyncio
async def test_scaling_replicas_to_zero_prunes_replica_tier(store, reconciler, seed_service):
    seed_service(database={"enabled": True, "replicas": 1})
    await reconciler.reconcile("default", "radio")
    await update_spec(store, database={"enabled": True, "replicas": 0})

    await reconciler.reconcile("default", "radio")

    assert store.peek(STS, "default", "radio-db-replica") is None
    assert store.peek(SVC, "default", "radio-db-read") is None
    assert store.peek(STS, "default", "radio-db-master") is not None
    assert condition(status_of(store), cond.DATABASE_REPLICA_HISTORY) is None


@pytest.mark.asyncio
async def test_replica_tier_scaled_back_up_is_not_a_deletion(store, reconciler, seed_service):
    seed_service(database={"enabled": True, "replicas": 1})
    await converge(store, reconciler, radio=3, radio_db_master=1, radio_db_replica=1)
    await update_spec(store, database={"enabled": True, "replicas": 0})
    await reconciler.reconcile("default", "radio")
    assert status_of(store)["database"]["replicaEverCreated"] is False

    await update_spec(store, database={"enabled": True, "replicas": 1})
    await reconciler.reconcile("default", "radio")

    status = status_of(store)
    assert store.peek(STS, "default", "radio-db-replica") is not None
    assert status["database"]["replicaDeletionDetected"] is False
    assert status["database"]["replicaEverCreated"] is True
    assert condition(status, cond.DATABASE_REPLICA_HISTORY)["reason"] == "ReplicaObserved"

    store.set_ready_replicas("default", "radio-db-replica", 1)
    await reconciler.reconcile("default", "radio")
    assert status_of(store)["phase"] == "Available"


@pytest.mark.asyncio
async def test_switch_to_high_availability(store, reconciler, seed_service):
    seed_service(database={"enabled": True, "replicas": 1})
    await reconciler.reconcile("default", "radio")
    await update_spec(store, database={"enabled": True, "replicas": 2, "highAvailability": {"enabled": True}})

    await reconciler.reconcile("default", "radio")

    # Headless primary Service is replaced by the load-balanced write Service
    assert store.peek(SVC, "default", "radio-db-master") is None
    assert store.peek(STS, "default", "radio-db-master") is None
    assert store.peek(STS, "default", "radio-db-replica") is None
    assert store.peek(STS, "default", "radio-db-galera")["spec"]["replicas"] == 3

    await reconciler.reconcile("default", "radio")
    write = store.peek(SVC, "default", "radio-db-master")
    assert write is not None
    assert "clusterIP" not in write["spec"]


@pytest.mark.asyncio
async def test_step_failure_then_recovery(engine):
    store = FlakyStore()
    reconciler = MusicServiceReconciler(store, engine=engine)
    store.seed(MS, {
        "metadata": {"name": "radio", "namespace": "default"},
        "spec": {
            "replicas": 3, "image": "mixcorp/music:1.4", "port": 8080,
            "storage": {"size": "10Gi"}, "streaming": {"bitrate": "320k", "maxConnections": 500},
        },
    })
    store.fail("create", STS, TransientError("API server returned 503"))

    result = await reconciler.reconcile("default", "radio")

    assert result.backoff
    status = status_of(store)
    assert status["phase"] == "Failed"
    assert status["lastError"] == "API server returned 503"
    reconciled = condition(status, cond.RECONCILED)
    assert (reconciled["status"], reconciled["reason"]) == ("False", "StatefulSetFailed")
    assert len(await events(store, "ReconcileFailed")) == 1
    assert store.peek(SVC, "default", "radio") is not None

    store.heal()
    result = await reconciler.reconcile("default", "radio")

    assert result.succeeded
    status = status_of(store)
    assert status["phase"] == "Pending"
    assert "lastError" not in status
    reconciled = condition(status, cond.RECONCILED)
    assert (reconciled["status"], reconciled["reason"]) == ("True", "ReconcileSuccess")


@pytest.mark.asyncio
async def test_status_conflict_requeues_quickly(engine):
    store = FlakyStore()
    reconciler = MusicServiceReconciler(store, engine=engine)
    store.seed(MS, {
        "metadata": {"name": "radio", "namespace": "default"},
        "spec": {
            "replicas": 1, "image": "mixcorp/music:1.4", "port": 8080,
            "storage": {"size": "1Gi"}, "streaming": {"bitrate": "128k", "maxConnections": 10},
        },
    })
    store.fail("update_status", MS, ConflictError("stale resourceVersion"))

    result = await reconciler.reconcile("default", "radio")

    assert not result.succeeded
    assert not result.backoff
    assert result.requeue_after == settings.conflict_requeue_seconds


@pytest.mark.asyncio
async def test_invalid_spec_is_terminal(store, reconciler, seed_service):
    seed_service(replicas=0)

    result = await reconciler.reconcile("default", "radio")

    assert not result.succeeded
    assert not result.backoff
    assert result.requeue_after is None
    assert result.park
    status = status_of(store)
    assert status["phase"] == "Failed"
    assert condition(status, cond.RECONCILED)["reason"] == "InvalidSpec"
    assert store.peek(STS, "default", "radio") is None


@pytest.mark.asyncio
async def test_malformed_quantity_is_terminal(store, reconciler, seed_service):
    seed_service(storage={"size": "ten gigs"})

    result = await reconciler.reconcile("default", "radio")

    assert result.requeue_after is None
    assert not result.backoff
    assert condition(status_of(store), cond.RECONCILED)["reason"] == "InvalidSpec"


@pytest.mark.asyncio
async def test_missing_parent_is_nothing_to_do(reconciler, store):
    result = await reconciler.reconcile("default", "ghost")

    assert result.succeeded
    assert result.requeue_after is None
    assert store.writes() == []


@pytest.mark.asyncio
async def test_deletion_cleans_up_and_releases_finalizer(store, reconciler, seed_service):
    seed_service(database={"enabled": True, "replicas": 1})
    await reconciler.reconcile("default", "radio")
    await store.delete(MS, "default", "radio")
    assert store.peek(MS, "default", "radio")["metadata"].get("deletionTimestamp")

    result = await reconciler.reconcile("default", "radio")

    assert result.succeeded
    assert store.peek(MS, "default", "radio") is None
    for kind in (STS, SVC, SECRET):
        assert await store.list(kind, "default") == []
    assert len(await events(store, "Cleanup")) == 1
