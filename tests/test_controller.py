"""
Tests for the controller worker pool.
"""
import asyncio

import pytest

from music_operator.core.work_queue import WorkQueue
from music_operator.exceptions import TransientError, ValidationError
from music_operator.services.reconciler import ReconcileResult
from music_operator.workers.controller import Controller, make_key, split_key


class FakeReconciler:
    """Returns scripted results and records every call."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []
        self.gate = None

    async def reconcile(self, namespace, name):
        self.calls.append((namespace, name))
        if self.gate is not None:
            gate, self.gate = self.gate, None
            await gate.wait()
        result = self.results.pop(0) if self.results else ReconcileResult()
        if isinstance(result, Exception):
            raise result
        return result


async def eventually(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def make_controller(reconciler, workers=2):
    queue = WorkQueue(debounce_seconds=0.01, backoff_base_seconds=0.05, backoff_max_seconds=0.2, resync_interval=60)
    return Controller(reconciler, queue=queue, workers=workers)


def test_keys():
    assert make_key("default", "radio") == "default/radio"
    assert split_key("default/radio") == ["default", "radio"]


@pytest.mark.asyncio
async def test_enqueued_parent_is_reconciled():
    reconciler = FakeReconciler()
    controller = make_controller(reconciler)
    await controller.start()
    try:
        controller.enqueue("default", "radio")
        await eventually(lambda: reconciler.calls)
    finally:
        await controller.stop()

    assert reconciler.calls == [("default", "radio")]
    assert not controller.running


@pytest.mark.asyncio
async def test_failure_is_retried_with_backoff():
    error = TransientError("API server returned 503")
    reconciler = FakeReconciler(ReconcileResult(error=error, backoff=True), ReconcileResult())
    controller = make_controller(reconciler)
    await controller.start()
    try:
        controller.queue.add("default/radio")
        await eventually(lambda: len(reconciler.calls) == 2)
        await eventually(lambda: controller.queue.failures("default/radio") == 0)
    finally:
        await controller.stop()


@pytest.mark.asyncio
async def test_unexpected_exception_is_retried():
    reconciler = FakeReconciler(RuntimeError("boom"), ReconcileResult())
    controller = make_controller(reconciler)
    await controller.start()
    try:
        controller.queue.add("default/radio")
        await eventually(lambda: len(reconciler.calls) == 2)
    finally:
        await controller.stop()


@pytest.mark.asyncio
async def test_requeue_after_schedules_next_pass():
    reconciler = FakeReconciler(ReconcileResult(requeue_after=0.05), ReconcileResult())
    controller = make_controller(reconciler)
    await controller.start()
    try:
        controller.queue.add("default/radio")
        await eventually(lambda: len(reconciler.calls) == 2)
    finally:
        await controller.stop()


@pytest.mark.asyncio
async def test_cancel_in_flight_restarts_pass():
    reconciler = FakeReconciler()
    reconciler.gate = asyncio.Event()
    controller = make_controller(reconciler, workers=1)
    await controller.start()
    try:
        controller.queue.add("default/radio")
        await eventually(lambda: controller.in_flight == ["default/radio"])

        assert controller.cancel_in_flight("default", "radio") is True
        await eventually(lambda: len(reconciler.calls) == 2)
        await eventually(lambda: controller.in_flight == [])
    finally:
        await controller.stop()


@pytest.mark.asyncio
async def test_cancel_without_pass_enqueues():
    controller = make_controller(FakeReconciler())

    assert controller.cancel_in_flight("default", "radio") is False
    assert len(controller.queue) == 1


@pytest.mark.asyncio
async def test_stop_cancels_blocked_pass():
    reconciler = FakeReconciler()
    reconciler.gate = asyncio.Event()
    controller = make_controller(reconciler, workers=1)
    await controller.start()
    controller.queue.add("default/radio")
    await eventually(lambda: controller.in_flight == ["default/radio"])

    await asyncio.wait_for(controller.stop(), timeout=2)

    assert controller.in_flight == []
    assert controller.queue.shutting_down


@pytest.mark.asyncio
async def test_invalid_spec_is_parked_until_next_event():
    invalid = ReconcileResult(error=ValidationError("port out of range"), park=True)
    reconciler = FakeReconciler(invalid, ReconcileResult())
    controller = make_controller(reconciler, workers=1)
    await controller.start()
    try:
        controller.enqueue("default", "radio")
        await eventually(lambda: controller.queue.is_parked("default/radio"))

        assert controller.queue.resync() == 0
        assert controller.queue.failures("default/radio") == 0
        assert reconciler.calls == [("default", "radio")]

        controller.enqueue("default", "radio")
        await eventually(lambda: len(reconciler.calls) == 2)
        await eventually(lambda: controller.in_flight == [])
        assert not controller.queue.is_parked("default/radio")
        assert controller.queue.resync() == 1
    finally:
        await controller.stop()
