"""
Controller: a bounded worker pool draining the work queue.

Each worker takes one key at a time from the WorkQueue, runs a reconcile
pass for it and schedules the next pass from the result:

- success: forget failures, requeue after result.requeue_after
- conflict: requeue after the short conflict delay
- invalid spec: no requeue, and the key is parked out of resyncs until the
  next watch event for the parent
- any other failure: per-key exponential backoff

The queue hands a key to at most one worker, so passes for the same parent
never overlap while different parents run concurrently.
"""
import asyncio
from typing import Dict, List, Optional

from music_operator.config.logging import clear_reconcile_context, get_logger
from music_operator.config.settings import settings
from music_operator.core.work_queue import WorkQueue
from music_operator.exceptions import OperatorException
from music_operator.services import metrics
from music_operator.services.reconciler import MusicServiceReconciler, ReconcileResult

logger = get_logger(__name__)


def make_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_key(key: str) -> List[str]:
    namespace, _, name = key.partition("/")
    return [namespace, name]


class Controller:
    """
    Runs reconcile passes for queued keys.

    Features:
    - Bounded concurrency (settings.max_concurrent_reconciles workers)
    - Periodic resync of every known parent
    - Cancellation of an in-flight pass when its parent is deleted
    - Graceful shutdown
    """

    def __init__(
        self,
        reconciler: MusicServiceReconciler,
        queue: Optional[WorkQueue] = None,
        workers: Optional[int] = None,
    ):
        """
        Initialize controller.

        Args:
            reconciler: Reconciler invoked for each key
            queue: Work queue (a new one when omitted)
            workers: Worker pool size (default: settings.max_concurrent_reconciles)
        """
        self.reconciler = reconciler
        self.queue = queue or WorkQueue()
        self.workers = workers or settings.max_concurrent_reconciles
        self.running = False
        self._tasks: List[asyncio.Task] = []
        self._in_flight: Dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> List[str]:
        return sorted(self._in_flight)

    async def start(self) -> None:
        """Start the worker pool and the resync loop."""
        if self.running:
            return
        self.running = True
        self._tasks = [
            asyncio.create_task(self._worker(worker_id), name=f"reconcile-worker-{worker_id}")
            for worker_id in range(1, self.workers + 1)
        ]
        self._tasks.append(asyncio.create_task(self.queue.start_resync(), name="resync"))
        logger.info("controller_started", workers=self.workers, resync_interval=self.queue.resync_interval)

    async def stop(self) -> None:
        """Stop accepting work, cancel in-flight passes and wait for the workers."""
        if not self.running:
            return
        logger.info("stopping_controller")
        self.running = False
        self.queue.shutdown(self.workers)
        for task in list(self._in_flight.values()):
            task.cancel()
        for task in self._tasks:
            if task.get_name() == "resync":
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("controller_stopped")

    def enqueue(self, namespace: str, name: str) -> None:
        """Schedule a pass for a parent after the debounce window."""
        key = make_key(namespace, name)
        self.queue.track(key)
        self.queue.enqueue_event(key)

    def forget(self, namespace: str, name: str) -> None:
        """Stop resyncing a parent that no longer exists."""
        self.queue.untrack(make_key(namespace, name))

    def cancel_in_flight(self, namespace: str, name: str) -> bool:
        """
        Cancel the running pass of a parent and run it again right away.

        Used when the parent got a deletion timestamp: the rest of the stale
        pass is abandoned so that cleanup starts without delay.

        Returns:
            True when a pass was cancelled
        """
        key = make_key(namespace, name)
        task = self._in_flight.get(key)
        if task is None or task.done():
            self.queue.add(key)
            return False
        task.cancel()
        logger.info("reconcile_cancel_requested", key=key)
        return True

    async def _worker(self, worker_id: int) -> None:
        logger.info("reconcile_worker_started", worker_id=worker_id)
        while self.running:
            key = await self.queue.get()
            if key is None:
                break

            metrics.set_worker_busy(worker_id, True)
            task = asyncio.create_task(self._process(key))
            self._in_flight[key] = task
            try:
                await asyncio.wait({task})
            except asyncio.CancelledError:
                task.cancel()
                raise
            finally:
                self._in_flight.pop(key, None)
                self.queue.done(key)
                metrics.set_worker_busy(worker_id, False)
                clear_reconcile_context()

            if task.cancelled():
                logger.info("reconcile_cancelled", key=key, worker_id=worker_id)
                if self.running:
                    self.queue.add(key)
                continue
            self._schedule(key, task.result())
        logger.info("reconcile_worker_stopped", worker_id=worker_id)

    async def _process(self, key: str) -> ReconcileResult:
        namespace, name = split_key(key)
        try:
            return await self.reconciler.reconcile(namespace, name)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("reconcile_unexpected_error", key=key, error=str(e), exc_info=True)
            return ReconcileResult(error=OperatorException(str(e)), backoff=True)

    def _schedule(self, key: str, result: ReconcileResult) -> None:
        if result.backoff:
            delay = self.queue.add_rate_limited(key)
            metrics.record_requeue("error")
            logger.info("reconcile_requeued_with_backoff", key=key, delay_seconds=delay,
                        failures=self.queue.failures(key))
            return

        self.queue.forget(key)
        if result.park:
            self.queue.park(key)
            logger.info("reconcile_parked", key=key, reason=result.error.reason if result.error else None)
            return
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)
