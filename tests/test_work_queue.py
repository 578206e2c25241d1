"""
Tests for the per-key work queue.
"""
import asyncio

import pytest

from music_operator.core.work_queue import WorkQueue

KEY = "default/radio"


def make_queue(**kwargs):
    options = {"debounce_seconds": 0.05, "backoff_base_seconds": 0.1, "backoff_max_seconds": 0.4}
    options.update(kwargs)
    return WorkQueue(**options)


@pytest.mark.asyncio
async def test_adds_are_deduplicated():
    queue = make_queue()
    queue.add(KEY)
    queue.add(KEY)
    queue.add("default/jazz")

    assert len(queue) == 2
    assert await queue.get() == KEY
    assert await queue.get() == "default/jazz"
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_add_during_processing_redelivers_once():
    queue = make_queue()
    queue.add(KEY)
    key = await queue.get()

    queue.add(KEY)
    queue.add(KEY)
    assert len(queue) == 0
    assert queue.is_processing(KEY)

    queue.done(key)
    assert len(queue) == 1
    assert await queue.get() == KEY
    queue.done(KEY)
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_add_after_keeps_earliest_deadline():
    queue = make_queue()
    queue.add_after(KEY, 0.05)
    queue.add_after(KEY, 10)

    key = await asyncio.wait_for(queue.get(), timeout=1)
    assert key == KEY


@pytest.mark.asyncio
async def test_event_bursts_are_coalesced():
    queue = make_queue()
    for _ in range(5):
        queue.enqueue_event(KEY)
    assert len(queue) == 0

    await asyncio.sleep(0.1)
    assert len(queue) == 1


@pytest.mark.asyncio
async def test_backoff_doubles_and_is_capped():
    queue = make_queue()

    delays = [queue.add_rate_limited(KEY) for _ in range(4)]

    assert delays == [0.1, 0.2, 0.4, 0.4]
    assert queue.failures(KEY) == 4
    queue.forget(KEY)
    assert queue.failures(KEY) == 0
    assert queue.add_rate_limited(KEY) == 0.1


@pytest.mark.asyncio
async def test_resync_injects_tracked_keys():
    queue = make_queue()
    queue.track(KEY)
    queue.track("default/jazz")
    queue.untrack("default/jazz")

    assert queue.resync() == 1
    assert await queue.get() == KEY


@pytest.mark.asyncio
async def test_parked_keys_skip_resync_until_tracked_again():
    queue = make_queue()
    queue.track(KEY)
    queue.track("default/jazz")
    queue.park(KEY)
    queue.park("default/untracked")

    assert queue.is_parked(KEY)
    assert not queue.is_parked("default/untracked")
    assert queue.resync() == 1
    assert await queue.get() == "default/jazz"
    queue.done("default/jazz")

    queue.track(KEY)
    assert not queue.is_parked(KEY)
    assert queue.resync() == 2


@pytest.mark.asyncio
async def test_forget_lifts_park():
    queue = make_queue()
    queue.track(KEY)
    queue.park(KEY)

    queue.forget(KEY)

    assert queue.resync() == 1


@pytest.mark.asyncio
async def test_resync_loop_runs_periodically():
    queue = make_queue(resync_interval=0.05)
    queue.track(KEY)
    task = asyncio.create_task(queue.start_resync())

    key = await asyncio.wait_for(queue.get(), timeout=1)
    queue.shutdown()
    await asyncio.wait_for(task, timeout=1)

    assert key == KEY


@pytest.mark.asyncio
async def test_shutdown_releases_workers_and_drops_adds():
    queue = make_queue()
    queue.add_after(KEY, 10)
    waiters = [asyncio.create_task(queue.get()) for _ in range(2)]
    await asyncio.sleep(0)

    queue.shutdown(workers=2)
    queue.add("default/jazz")

    assert await asyncio.gather(*waiters) == [None, None]
    assert len(queue) == 0
    assert queue.shutting_down
