"""Thread-backed bridge between blocking transport calls and asyncio callers.

Each :class:`Dispatcher` owns one daemon worker thread and a FIFO queue. Work
submitted from the event loop is executed on the worker strictly in submission
order, and each submission's :class:`asyncio.Future` is settled through
``loop.call_soon_threadsafe`` so completions are observed on the loop in the same
order. While the queue is empty the worker can run an *idle hook* at a fixed
interval; connections use it to poll for server notifications.
"""

from __future__ import annotations

import asyncio
import itertools
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from pqbridge.infra.errors import ConnectionError

LOGGER = structlog.get_logger(__name__)

_ids = itertools.count(1)


@dataclass(slots=True, eq=False)
class _Job:
    fn: Callable[..., Any]
    args: tuple[Any, ...]
    kwargs: dict[str, Any]
    future: asyncio.Future[Any]
    loop: asyncio.AbstractEventLoop
    label: str
    abandoned: bool = False


@dataclass(slots=True, eq=False)
class _Stop:
    finalizer: Callable[[], None] | None
    future: asyncio.Future[None]
    loop: asyncio.AbstractEventLoop
    waiters: list[asyncio.Future[None]] = field(default_factory=list)


def _settle(future: asyncio.Future[Any], result: Any, exc: BaseException | None) -> None:
    if future.done():
        return
    if exc is not None:
        future.set_exception(exc)
    else:
        future.set_result(result)


def _post(
    loop: asyncio.AbstractEventLoop,
    future: asyncio.Future[Any],
    result: Any = None,
    exc: BaseException | None = None,
) -> None:
    try:
        loop.call_soon_threadsafe(_settle, future, result, exc)
    except RuntimeError:
        # 呼叫端的事件迴圈已關閉，結果無人接收
        LOGGER.debug("db.dispatcher.loop_closed")


class Dispatcher:
    """Serializes blocking work for one connection onto a dedicated worker thread."""

    def __init__(
        self,
        name: str | None = None,
        *,
        idle_interval: float = 0.05,
        idle_hook: Callable[[], None] | None = None,
        idle_active: Callable[[], bool] | None = None,
    ) -> None:
        self.name = name or f"pqbridge-dispatcher-{next(_ids)}"
        self._idle_interval = idle_interval
        self._idle_hook = idle_hook
        self._idle_active = idle_active or (lambda: False)
        self._queue: queue.SimpleQueue[_Job | _Stop] = queue.SimpleQueue()
        self._lock = threading.Lock()
        self._outstanding: list[_Job] = []
        self._current: _Job | None = None
        self._thread: threading.Thread | None = None
        self._stop: _Stop | None = None

    @property
    def accepting(self) -> bool:
        return self._stop is None

    @property
    def pending(self) -> int:
        """Jobs submitted but not yet settled (queued plus running)."""
        with self._lock:
            return len(self._outstanding)

    @property
    def busy(self) -> bool:
        return self._current is not None

    def submit(
        self, fn: Callable[..., Any], *args: Any, label: str = "job", **kwargs: Any
    ) -> asyncio.Future[Any]:
        """Queue ``fn(*args, **kwargs)`` for the worker and return a future for its result."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        job = _Job(fn=fn, args=args, kwargs=kwargs, future=future, loop=loop, label=label)
        with self._lock:
            if self._stop is not None:
                raise ConnectionError(
                    "Connection closed", context={"closed_by_client": True, "operation": label}
                )
            self._outstanding.append(job)
            self._ensure_thread()
        self._queue.put(job)
        return future

    def fail_outstanding(self, make_error: Callable[[], BaseException]) -> int:
        """Fail every queued or running job; queued jobs will never reach the transport."""
        with self._lock:
            jobs = list(self._outstanding)
            for job in jobs:
                job.abandoned = True
        for job in jobs:
            if not job.future.done():
                job.future.set_exception(make_error())
        return len(jobs)

    def stop(self, finalizer: Callable[[], None] | None = None) -> asyncio.Future[None]:
        """Stop accepting work; run ``finalizer`` on the worker after queued jobs finish.

        Calling ``stop`` again returns a future tied to the same shutdown.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._stop is not None:
                waiter: asyncio.Future[None] = loop.create_future()
                if self._stop.future.done():
                    waiter.set_result(None)
                else:
                    self._stop.waiters.append(waiter)
                return waiter
            stop = _Stop(finalizer=finalizer, future=loop.create_future(), loop=loop)
            self._stop = stop
            started = self._thread is not None
        if started:
            self._queue.put(stop)
        else:
            self._finish(stop)
        return stop.future

    def _ensure_thread(self) -> None:
        if self._thread is None:
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()

    def _run(self) -> None:
        while True:
            timeout = self._idle_interval if self._idle_active() else None
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                self._run_idle_hook()
                continue
            if isinstance(item, _Stop):
                self._finish(item)
                return
            self._run_job(item)
            if self._idle_active():
                self._run_idle_hook()

    def _run_job(self, job: _Job) -> None:
        with self._lock:
            if job.abandoned:
                self._discard(job)
                return
            self._current = job
        try:
            result = job.fn(*job.args, **job.kwargs)
        except Exception as exc:
            _post(job.loop, job.future, exc=exc)
        else:
            _post(job.loop, job.future, result=result)
        finally:
            with self._lock:
                self._current = None
                self._discard(job)

    def _discard(self, job: _Job) -> None:
        try:
            self._outstanding.remove(job)
        except ValueError:
            pass

    def _run_idle_hook(self) -> None:
        if self._idle_hook is None:
            return
        try:
            self._idle_hook()
        except Exception:
            LOGGER.exception("db.dispatcher.idle_hook_failed", dispatcher=self.name)

    def _finish(self, stop: _Stop) -> None:
        if stop.finalizer is not None:
            try:
                stop.finalizer()
            except Exception as exc:
                LOGGER.warning("db.dispatcher.finalizer_failed", dispatcher=self.name, error=str(exc))
        LOGGER.debug("db.dispatcher.stopped", dispatcher=self.name)
        if threading.current_thread() is not self._thread:
            self._complete(stop)
            return
        try:
            stop.loop.call_soon_threadsafe(self._complete, stop)
        except RuntimeError:
            LOGGER.debug("db.dispatcher.loop_closed")

    def _complete(self, stop: _Stop) -> None:
        with self._lock:
            waiters, stop.waiters = stop.waiters, []
        _settle(stop.future, None, None)
        for waiter in waiters:
            _settle(waiter, None, None)
