"""
Prometheus metrics for the reconcile loop, work queue and state store.

Provides observability into reconcile throughput, latency and writes.
"""
from prometheus_client import Counter, Histogram, Gauge

# Reconcile metrics
reconcile_total = Counter(
    "music_operator_reconcile_total",
    "Total number of reconcile passes",
    ["result"],
)

reconcile_duration_seconds = Histogram(
    "music_operator_reconcile_duration_seconds",
    "Time spent in a reconcile pass",
    ["result"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
)

reconcile_step_failures_total = Counter(
    "music_operator_reconcile_step_failures_total",
    "Reconcile passes aborted by a failing step",
    ["reason"],
)

# Queue metrics
queue_depth = Gauge(
    "music_operator_queue_depth",
    "Number of keys waiting in the work queue",
)

queue_processing = Gauge(
    "music_operator_queue_processing",
    "Number of keys currently being reconciled",
)

queue_requeue_total = Counter(
    "music_operator_queue_requeue_total",
    "Total number of requeues",
    ["cause"],
)

# Worker metrics
worker_busy = Gauge(
    "music_operator_worker_busy",
    "Whether a worker is currently reconciling a key",
    ["worker_id"],
)

# Store metrics
store_writes_total = Counter(
    "music_operator_store_writes_total",
    "Writes issued against the state store",
    ["kind", "verb"],
)

# Storage policy metrics
storage_refusals_total = Counter(
    "music_operator_storage_refusals_total",
    "Volume size changes refused by the storage policy",
    ["tier"],
)

storage_recreates_total = Counter(
    "music_operator_storage_recreates_total",
    "Workloads deleted and recreated for a storage size change",
    ["tier"],
)


def record_reconcile(result: str, duration_seconds: float):
    """Record a finished reconcile pass."""
    reconcile_total.labels(result=result).inc()
    reconcile_duration_seconds.labels(result=result).observe(duration_seconds)


def record_step_failure(reason: str):
    reconcile_step_failures_total.labels(reason=reason).inc()


def record_requeue(cause: str):
    """Record a requeue (resync, error, conflict, dirty)."""
    queue_requeue_total.labels(cause=cause).inc()


def update_queue_stats(queued: int, processing: int):
    """Update queue depth metrics."""
    queue_depth.set(queued)
    queue_processing.set(processing)


def set_worker_busy(worker_id: int, busy: bool):
    """Set worker busy state."""
    worker_busy.labels(worker_id=str(worker_id)).set(1 if busy else 0)


def record_store_write(kind: str, verb: str):
    store_writes_total.labels(kind=kind, verb=verb).inc()


def record_storage_refusal(tier: str):
    storage_refusals_total.labels(tier=tier).inc()


def record_storage_recreate(tier: str):
    storage_recreates_total.labels(tier=tier).inc()
