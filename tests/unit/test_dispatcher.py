"""Unit tests for the thread-backed Dispatcher."""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from pqbridge.db.dispatcher import Dispatcher
from pqbridge.infra.errors import ConnectionError


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_jobs_run_off_loop_thread_in_submission_order() -> None:
    dispatcher = Dispatcher("test-dispatcher")
    order: list[int] = []
    threads: set[str] = set()

    def job(i: int) -> int:
        time.sleep(0.005)
        order.append(i)
        threads.add(threading.current_thread().name)
        return i * 10

    futures = [dispatcher.submit(job, i) for i in range(10)]
    results = await asyncio.gather(*futures)

    assert results == [i * 10 for i in range(10)]
    assert order == list(range(10))
    assert threads == {"test-dispatcher"}
    assert threading.current_thread().name not in threads
    await dispatcher.stop()


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_completions_observed_in_submission_order() -> None:
    dispatcher = Dispatcher()
    observed: list[int] = []

    futures = [dispatcher.submit(lambda i=i: i) for i in range(20)]
    for future in futures:
        future.add_done_callback(lambda f: observed.append(f.result()))
    await asyncio.gather(*futures)

    assert observed == list(range(20))
    await dispatcher.stop()


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_job_exception_propagates_to_awaiter() -> None:
    dispatcher = Dispatcher()

    def fail() -> None:
        raise ValueError("bad input")

    with pytest.raises(ValueError, match="bad input"):
        await dispatcher.submit(fail)

    # 失敗後仍可繼續處理工作
    assert await dispatcher.submit(lambda: "ok") == "ok"
    await dispatcher.stop()


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_fail_outstanding_skips_queued_jobs() -> None:
    dispatcher = Dispatcher()
    gate = threading.Event()
    ran: list[str] = []

    def blocking() -> str:
        gate.wait(5)
        ran.append("blocking")
        return "blocking"

    first = dispatcher.submit(blocking)
    queued = dispatcher.submit(lambda: ran.append("queued"))
    await asyncio.sleep(0.05)
    assert dispatcher.busy is True
    assert dispatcher.pending == 2

    failed = dispatcher.fail_outstanding(lambda: ConnectionError("Connection closed"))
    gate.set()

    assert failed == 2
    with pytest.raises(ConnectionError):
        await first
    with pytest.raises(ConnectionError):
        await queued
    await dispatcher.stop()
    assert ran == ["blocking"]


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_stop_runs_finalizer_after_queued_work() -> None:
    dispatcher = Dispatcher()
    events: list[str] = []

    futures = [dispatcher.submit(lambda i=i: events.append(f"job{i}")) for i in range(3)]
    await dispatcher.stop(finalizer=lambda: events.append("finalizer"))

    await asyncio.gather(*futures)
    assert events == ["job0", "job1", "job2", "finalizer"]
    assert dispatcher.accepting is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_submit_after_stop_raises_connection_error() -> None:
    dispatcher = Dispatcher()
    await dispatcher.stop()

    with pytest.raises(ConnectionError) as exc_info:
        dispatcher.submit(lambda: None, label="query")
    assert exc_info.value.context["closed_by_client"] is True
    assert exc_info.value.context["operation"] == "query"


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_stop_twice_waits_for_same_shutdown() -> None:
    dispatcher = Dispatcher()
    calls: list[int] = []
    await dispatcher.submit(lambda: None)

    first = dispatcher.stop(finalizer=lambda: calls.append(1))
    second = dispatcher.stop(finalizer=lambda: calls.append(2))
    await asyncio.gather(first, second)

    assert calls == [1]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stop_without_thread_finishes_inline() -> None:
    dispatcher = Dispatcher()
    calls: list[str] = []

    future = dispatcher.stop(finalizer=lambda: calls.append("done"))

    assert future.done()
    assert calls == ["done"]


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_finalizer_failure_still_completes_stop() -> None:
    dispatcher = Dispatcher()
    await dispatcher.submit(lambda: None)

    def broken() -> None:
        raise RuntimeError("close failed")

    await asyncio.wait_for(dispatcher.stop(finalizer=broken), timeout=2)


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_idle_hook_runs_only_while_active() -> None:
    active = threading.Event()
    ticks: list[float] = []
    dispatcher = Dispatcher(
        idle_interval=0.01,
        idle_hook=lambda: ticks.append(time.monotonic()),
        idle_active=active.is_set,
    )
    await dispatcher.submit(lambda: None)
    await asyncio.sleep(0.05)
    assert ticks == []

    active.set()
    # 喚醒 worker 以套用新的 idle 間隔
    await dispatcher.submit(lambda: None)
    await asyncio.sleep(0.1)
    assert len(ticks) >= 3

    active.clear()
    await dispatcher.stop()
