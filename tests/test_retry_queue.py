"""Tests for the retry delivery queue."""

from __future__ import annotations

from typing import List

import pytest

from tether.sync.diagnostics import DiagnosticChannel
from tether.sync.errors import DeliveryError
from tether.sync.protocol import DeleteEvent
from tether.sync.queue import QueueState, RetryDeliveryQueue, backoff_delay


def _recording_task(log: List[str], name: str, failures: int = 0):
    remaining = [failures]

    async def task() -> None:
        log.append(f"attempt:{name}")
        if remaining[0] > 0:
            remaining[0] -= 1
            raise DeliveryError(f"{name} failed")
        log.append(f"done:{name}")

    return task


def test_backoff_delay_doubles_up_to_ceiling():
    assert [backoff_delay(i) for i in range(7)] == [1, 2, 4, 8, 16, 30, 30]
    assert backoff_delay(500) == 30


@pytest.mark.asyncio
async def test_tasks_run_in_enqueue_order(clock):
    queue = RetryDeliveryQueue(clock=clock)
    log: List[str] = []
    for name in "abcde":
        queue.enqueue(_recording_task(log, name))

    await queue.drained()

    assert [entry for entry in log if entry.startswith("done")] == [f"done:{n}" for n in "abcde"]
    assert queue.delivered == 5
    assert queue.state is QueueState.IDLE
    assert queue.pending == 0


@pytest.mark.asyncio
async def test_failed_head_blocks_later_tasks_until_it_succeeds(clock):
    queue = RetryDeliveryQueue(clock=clock)
    log: List[str] = []
    queue.enqueue(_recording_task(log, "head", failures=3))
    queue.enqueue(_recording_task(log, "tail"))

    await clock.advance(0)
    assert log == ["attempt:head"]
    await clock.advance(1)
    await clock.advance(2)
    assert "attempt:tail" not in log
    assert queue.pending == 2

    await clock.advance(4)

    assert log == [
        "attempt:head",
        "attempt:head",
        "attempt:head",
        "attempt:head",
        "done:head",
        "attempt:tail",
        "done:tail",
    ]
    assert clock.sleeps == [1, 2, 4]


@pytest.mark.asyncio
async def test_ordering_survives_interleaved_failures(clock):
    queue = RetryDeliveryQueue(clock=clock)
    log: List[str] = []
    for index, failures in enumerate([2, 0, 1, 0, 3]):
        queue.enqueue(_recording_task(log, str(index), failures=failures))

    await clock.advance(120)

    assert [entry for entry in log if entry.startswith("done")] == [f"done:{i}" for i in range(5)]
    # Backoff restarts for every task.
    assert clock.sleeps == [1, 2, 1, 1, 2, 4]


@pytest.mark.asyncio
async def test_delete_delivered_once_after_three_outages(clock, collector):
    queue = RetryDeliveryQueue(clock=clock)
    collector.fail_next(3)

    queue.enqueue(lambda: collector.post_event(DeleteEvent("notes.md")))
    await clock.advance(10)

    assert len(collector.attempts) == 4
    assert collector.bodies() == [("delete", {"path": "notes.md"})]
    assert clock.sleeps == [1, 2, 4]


@pytest.mark.asyncio
async def test_waits_never_exceed_ceiling(clock):
    queue = RetryDeliveryQueue(clock=clock)
    log: List[str] = []
    queue.enqueue(_recording_task(log, "stubborn", failures=9))

    await clock.advance(400)

    assert "done:stubborn" in log
    assert max(clock.sleeps) == 30
    assert clock.sleeps == [min(2 ** i, 30) for i in range(9)]


@pytest.mark.asyncio
async def test_indicator_shows_latest_failure_and_clears_on_success(clock, indicator):
    queue = RetryDeliveryQueue(indicator=indicator, clock=clock)
    log: List[str] = []
    queue.enqueue(_recording_task(log, "flaky", failures=2))

    await clock.advance(0)
    assert indicator.message is not None
    assert "flaky failed" in indicator.message

    await clock.advance(1)
    assert indicator.message is not None

    await clock.advance(2)
    assert indicator.message is None
    assert queue.last_error is None
    assert indicator.history[-1] is None


@pytest.mark.asyncio
async def test_reentrant_enqueue_does_not_start_second_drain(clock):
    queue = RetryDeliveryQueue(clock=clock)
    running: List[int] = []
    order: List[str] = []
    active = [0]

    def make(name: str, follow_up=None):
        async def task() -> None:
            active[0] += 1
            running.append(active[0])
            order.append(name)
            if follow_up is not None:
                queue.enqueue(follow_up)
            active[0] -= 1

        return task

    queue.enqueue(make("first", follow_up=make("nested")))
    assert queue.state is QueueState.DRAINING
    queue.enqueue(make("second"))

    await queue.drained()

    assert order == ["first", "second", "nested"]
    assert max(running) == 1
    assert queue.state is QueueState.IDLE


@pytest.mark.asyncio
async def test_queue_restarts_after_going_idle(clock):
    queue = RetryDeliveryQueue(clock=clock)
    log: List[str] = []
    queue.enqueue(_recording_task(log, "one"))
    await queue.drained()
    assert queue.state is QueueState.IDLE

    queue.enqueue(_recording_task(log, "two"))
    await queue.drained()

    assert log == ["attempt:one", "done:one", "attempt:two", "done:two"]


@pytest.mark.asyncio
async def test_permanent_rejection_retries_forever_by_default(clock, collector):
    queue = RetryDeliveryQueue(clock=clock)
    collector.fail_next(5, status=404)
    queue.enqueue(lambda: collector.post_event(DeleteEvent("gone.txt")))

    await clock.advance(100)

    assert len(collector.attempts) == 6
    assert queue.dropped == 0
    assert collector.bodies() == [("delete", {"path": "gone.txt"})]


@pytest.mark.asyncio
async def test_permanent_rejection_can_be_dropped(clock, collector, indicator):
    diagnostics = DiagnosticChannel()
    queue = RetryDeliveryQueue(
        indicator=indicator,
        clock=clock,
        drop_rejected=True,
        diagnostics=diagnostics,
    )
    collector.fail_next(1, status=403)
    queue.enqueue(lambda: collector.post_event(DeleteEvent("a.txt")))
    queue.enqueue(lambda: collector.post_event(DeleteEvent("b.txt")))

    await queue.drained()

    assert queue.dropped == 1
    assert collector.bodies() == [("delete", {"path": "b.txt"})]
    assert len(diagnostics.of_type(DeliveryError)) == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_transient_client_errors_are_retried_even_when_dropping(clock, collector):
    queue = RetryDeliveryQueue(clock=clock, drop_rejected=True)
    collector.fail_next(1, status=429)
    queue.enqueue(lambda: collector.post_event(DeleteEvent("a.txt")))

    await clock.advance(5)

    assert queue.dropped == 0
    assert collector.bodies() == [("delete", {"path": "a.txt"})]


@pytest.mark.asyncio
async def test_close_stops_a_stuck_queue(clock):
    queue = RetryDeliveryQueue(clock=clock)
    log: List[str] = []
    queue.enqueue(_recording_task(log, "stuck", failures=1000))
    await clock.advance(0)

    await queue.close()

    assert queue.state is QueueState.IDLE
    assert queue.pending == 1
