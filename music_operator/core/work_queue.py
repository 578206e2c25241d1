"""
Per-key work queue for reconcile requests.

Keys are "namespace/name" strings. The queue guarantees that a key is handed
to at most one worker at a time: an add for a key that is being processed is
remembered and the key is redelivered once, after done() is called.

Features:
- Deduplication of keys already waiting
- Single-flight per key with a dirty flag for adds during processing
- Delayed adds (earliest deadline wins) used for debounce and requeue
- Per-key exponential backoff after failures
- Periodic resync injection of every tracked key
- Parking of keys that wait for a watch event, skipped by resync

Usage:
    >>> queue = WorkQueue(debounce_seconds=0.5)
    >>> queue.add("default/radio")
    >>> key = await queue.get()
    >>> try:
    ...     await reconcile(key)
    ... finally:
    ...     queue.done(key)
"""
import asyncio
from typing import Dict, Optional, Set

from music_operator.config.logging import get_logger
from music_operator.config.settings import settings
from music_operator.services import metrics

logger = get_logger(__name__)

_SHUTDOWN = object()


class WorkQueue:
    """
    In-process work queue with single-flight semantics per key.
    """

    def __init__(
        self,
        debounce_seconds: Optional[float] = None,
        backoff_base_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        resync_interval: Optional[float] = None,
    ):
        """
        Initialize work queue.

        Args:
            debounce_seconds: Coalescing window for enqueue_event()
            backoff_base_seconds: First delay after a failure
            backoff_max_seconds: Upper bound for the failure delay
            resync_interval: Seconds between resync injections
        """
        self.debounce_seconds = settings.debounce_seconds if debounce_seconds is None else debounce_seconds
        self.backoff_base_seconds = (
            settings.backoff_base_seconds if backoff_base_seconds is None else backoff_base_seconds
        )
        self.backoff_max_seconds = (
            settings.backoff_max_seconds if backoff_max_seconds is None else backoff_max_seconds
        )
        self.resync_interval = settings.resync_interval if resync_interval is None else resync_interval

        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[str] = set()
        self._processing: Set[str] = set()
        self._dirty: Set[str] = set()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._deadlines: Dict[str, float] = {}
        self._failures: Dict[str, int] = {}
        self._tracked: Set[str] = set()
        self._parked: Set[str] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queued)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def is_processing(self, key: str) -> bool:
        return key in self._processing

    def add(self, key: str) -> None:
        """Make a key ready for processing now."""
        if self._shutting_down:
            return
        self._cancel_timer(key)
        if key in self._queued:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        self._queued.add(key)
        self._queue.put_nowait(key)
        self._update_stats()

    def add_after(self, key: str, delay: float) -> None:
        """
        Make a key ready after a delay.

        When a delayed add is already pending for the key, the earlier deadline
        is kept.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        current = self._deadlines.get(key)
        if current is not None and current <= deadline:
            return

        self._cancel_timer(key)
        self._deadlines[key] = deadline
        self._timers[key] = loop.call_at(deadline, self._fire, key)

    def enqueue_event(self, key: str) -> None:
        """Enqueue a key for a watch event, coalescing bursts within the debounce window."""
        self.add_after(key, self.debounce_seconds)

    def add_rate_limited(self, key: str) -> float:
        """
        Requeue a key after a failure with exponential backoff.

        Returns:
            The delay applied, in seconds
        """
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = min(self.backoff_base_seconds * (2 ** (failures - 1)), self.backoff_max_seconds)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset the failure count and any park of a key after a completed pass."""
        self._failures.pop(key, None)
        self._parked.discard(key)

    def failures(self, key: str) -> int:
        return self._failures.get(key, 0)

    def track(self, key: str) -> None:
        """Include a key in periodic resyncs, lifting any park."""
        self._tracked.add(key)
        self._parked.discard(key)

    def untrack(self, key: str) -> None:
        self._tracked.discard(key)
        self._parked.discard(key)
        self._failures.pop(key, None)
        self._cancel_timer(key)

    def park(self, key: str) -> None:
        """
        Hold a tracked key out of resyncs until it is tracked again.

        The next watch event for the key goes through track() and lifts the park.
        """
        if key in self._tracked:
            self._parked.add(key)

    def is_parked(self, key: str) -> bool:
        return key in self._parked

    def resync(self) -> int:
        """Inject every tracked key that is not parked; returns the number of keys injected."""
        keys = sorted(self._tracked - self._parked)
        for key in keys:
            self.add(key)
        return len(keys)

    async def get(self) -> Optional[str]:
        """
        Wait for the next ready key and mark it as processing.

        Returns:
            The key, or None once the queue is shut down
        """
        while True:
            item = await self._queue.get()
            if item is _SHUTDOWN:
                return None
            if item not in self._queued:
                continue
            self._queued.discard(item)
            self._processing.add(item)
            self._update_stats()
            return item

    def done(self, key: str) -> None:
        """Mark a key as finished; redeliver it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            metrics.record_requeue("dirty")
            self.add(key)
        self._update_stats()

    async def start_resync(self) -> None:
        """Run periodic resync injection until shutdown."""
        logger.info("resync_loop_started", interval_seconds=self.resync_interval)
        while not self._shutting_down:
            try:
                await asyncio.sleep(self.resync_interval)
            except asyncio.CancelledError:
                logger.info("resync_loop_cancelled")
                break
            injected = self.resync()
            if injected:
                metrics.record_requeue("resync")
                logger.debug("resync_injected", keys=injected)
        logger.info("resync_loop_stopped")

    def shutdown(self, workers: int = 1) -> None:
        """
        Stop accepting keys and release waiting workers.

        Args:
            workers: Number of get() callers to wake with None
        """
        self._shutting_down = True
        for key in list(self._timers):
            self._cancel_timer(key)
        for _ in range(workers):
            self._queue.put_nowait(_SHUTDOWN)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self._deadlines.pop(key, None)
        self.add(key)

    def _cancel_timer(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._deadlines.pop(key, None)

    def _update_stats(self) -> None:
        metrics.update_queue_stats(len(self._queued), len(self._processing))
