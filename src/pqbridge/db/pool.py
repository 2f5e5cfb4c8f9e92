"""Bounded connection pool.

The pool hands out idle connections (most recently used first), opens new ones
while below ``max_size``, and parks further callers in a FIFO wait queue bounded
by ``connection_timeout_millis``. A background reaper closes connections that
sat idle longer than ``idle_timeout_millis`` while more than ``min_size`` are
idle. Broken connections are discarded on release and replaced on demand.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import structlog

from pqbridge.config.db_settings import (
    ConnectionConfig,
    ConnectionSettings,
    PoolConfig,
    redact_dsn,
)
from pqbridge.db.connection import Connection, QueryOutcome, TransportFactory
from pqbridge.db.statements import PreparedStatement
from pqbridge.infra.errors import ConnectionError, PoolClosedError, PoolTimeoutError

LOGGER = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PoolStatus:
    size: int
    idle: int
    checked_out: int
    waiting: int
    max_size: int
    closed: bool


@dataclass(slots=True)
class _IdleEntry:
    connection: Connection
    since: float


class PoolClient:
    """A checked-out connection. Call :meth:`release` (or use ``async with``) when done."""

    def __init__(self, pool: "Pool", connection: Connection) -> None:
        self._pool = pool
        self._connection: Connection | None = connection

    @property
    def connection(self) -> Connection:
        if self._connection is None:
            raise ConnectionError(
                "Client has already been released", context={"closed_by_client": True}
            )
        return self._connection

    @property
    def released(self) -> bool:
        return self._connection is None

    async def query(
        self, sql: str, params: Sequence[Any] | None = None, *, timeout: float | None = None
    ) -> QueryOutcome:
        return await self.connection.query(sql, params, timeout=timeout)

    def prepare(self, name: str, sql: str) -> PreparedStatement:
        return self.connection.prepare(name, sql)

    async def execute(
        self, name: str, params: Sequence[Any] | None = None, *, timeout: float | None = None
    ) -> QueryOutcome:
        return await self.connection.execute(name, params, timeout=timeout)

    async def pipeline(
        self, queries: Sequence[str], *, timeout: float | None = None
    ) -> list[QueryOutcome]:
        return await self.connection.pipeline(queries, timeout=timeout)

    def transaction(self) -> Any:
        return self.connection.transaction()

    def release(self, *, discard: bool = False) -> None:
        """Return the connection to the pool. Releasing twice is a no-op."""
        connection, self._connection = self._connection, None
        if connection is not None:
            self._pool.release(connection, discard=discard)

    async def __aenter__(self) -> "PoolClient":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.release()


def _resolve_config(
    config: str | ConnectionConfig | Mapping[str, Any],
    pool_config: PoolConfig | Mapping[str, Any] | None,
) -> tuple[str, PoolConfig]:
    if isinstance(config, str):
        connection_config = ConnectionConfig(connection_string=config)
    elif isinstance(config, ConnectionConfig):
        connection_config = config
    else:
        connection_config = ConnectionConfig.model_validate(dict(config))
    if pool_config is None:
        resolved = PoolConfig()
    elif isinstance(pool_config, PoolConfig):
        resolved = pool_config
    else:
        resolved = PoolConfig.model_validate(dict(pool_config))
    if connection_config.pool_size is not None:
        resolved = resolved.model_copy(
            update={
                "max_size": connection_config.pool_size,
                "min_size": min(resolved.min_size, connection_config.pool_size),
            }
        )
    return connection_config.connection_string, resolved


class Pool:
    """One pool per database target; every public method must run on one event loop."""

    def __init__(
        self,
        config: str | ConnectionConfig | Mapping[str, Any],
        pool_config: PoolConfig | Mapping[str, Any] | None = None,
        *,
        settings: ConnectionSettings | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        dsn, self._config = _resolve_config(config, pool_config)
        if settings is None:
            self._settings = ConnectionSettings(database_url=dsn)
        else:
            self._settings = settings.model_copy(update={"database_url": dsn})
        self._transport_factory = transport_factory
        self._idle: list[_IdleEntry] = []
        self._checked_out: set[Connection] = set()
        self._opening = 0
        self._waiters: deque[asyncio.Future[Connection]] = deque()
        self._reaper: asyncio.Task[None] | None = None
        self._closed = False
        self._serial = 0

    def __repr__(self) -> str:
        status = self.status()
        return (
            f"<Pool target={redact_dsn(self._settings.dsn)} size={status.size} "
            f"idle={status.idle} checked_out={status.checked_out} max={status.max_size}>"
        )

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def size(self) -> int:
        return len(self._idle) + len(self._checked_out) + self._opening

    def status(self) -> PoolStatus:
        return PoolStatus(
            size=self.size,
            idle=len(self._idle),
            checked_out=len(self._checked_out),
            waiting=len(self._waiters),
            max_size=self._config.max_size,
            closed=self._closed,
        )

    # --- lifecycle -------------------------------------------------------

    async def open(self) -> "Pool":
        """Eagerly create ``min_size`` connections and start the idle reaper."""
        self._check_open()
        self._ensure_reaper()
        missing = self._config.min_size - self.size
        if missing > 0:
            self._opening += missing
            try:
                created = await asyncio.gather(
                    *(self._open_connection() for _ in range(missing)), return_exceptions=True
                )
            finally:
                self._opening -= missing
            for item in created:
                if isinstance(item, BaseException):
                    LOGGER.warning("db.pool.fill_failed", error=str(item))
                elif self._closed:
                    await item.close()
                else:
                    self._idle.append(_IdleEntry(item, time.monotonic()))
        LOGGER.info(
            "db.pool.opened",
            target=redact_dsn(self._settings.dsn),
            min_size=self._config.min_size,
            max_size=self._config.max_size,
        )
        return self

    async def end(self) -> None:
        """Close every connection and reject queued and future acquisitions."""
        if self._closed:
            return
        self._closed = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolClosedError("Pool has been ended"))
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None
        idle, self._idle = self._idle, []
        closing = [entry.connection.close() for entry in idle]
        # 借出中的連線等目前的操作完成後才關閉
        closing.extend(conn.close(graceful=True) for conn in list(self._checked_out))
        await asyncio.gather(*closing, return_exceptions=True)
        LOGGER.info("db.pool.ended", target=redact_dsn(self._settings.dsn))

    async def __aenter__(self) -> "Pool":
        return await self.open()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.end()

    # --- acquire / release -----------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise PoolClosedError("Pool has been ended")

    def _new_connection(self) -> Connection:
        self._serial += 1
        return Connection(
            settings=self._settings,
            transport_factory=self._transport_factory,
            name=f"pqbridge-pool-{id(self):x}-{self._serial}",
        )

    async def _open_connection(self) -> Connection:
        connection = self._new_connection()
        try:
            await connection.open()
        except BaseException:
            await connection.close()
            raise
        return connection

    async def _take_idle(self) -> Connection | None:
        while self._idle:
            entry = self._idle.pop()
            connection = entry.connection
            if not connection.usable:
                await connection.close()
                continue
            if self._config.validate_on_acquire:
                self._checked_out.add(connection)
                try:
                    await connection.ping()
                except Exception as exc:
                    self._checked_out.discard(connection)
                    LOGGER.info("db.pool.validation_failed", error=str(exc))
                    await connection.close()
                    continue
                return connection
            self._checked_out.add(connection)
            return connection
        return None

    async def acquire(self) -> PoolClient:
        """Check out a connection, waiting up to ``connection_timeout_millis`` when exhausted."""
        self._check_open()
        self._ensure_reaper()

        connection = await self._take_idle()
        if connection is not None:
            return PoolClient(self, connection)

        # 已有人排隊時不插隊，維持 FIFO
        if self.size < self._config.max_size and not self._waiters:
            self._opening += 1
            try:
                connection = await self._open_connection()
            except BaseException:
                self._opening -= 1
                # 建立失敗釋出的名額轉給排隊中的呼叫者
                if not self._closed and self._waiters:
                    self._spawn(self._replace_for_waiter())
                raise
            self._opening -= 1
            if self._closed:
                await connection.close()
                raise PoolClosedError("Pool has been ended")
            self._checked_out.add(connection)
            LOGGER.debug("db.pool.connection_created", size=self.size)
            return PoolClient(self, connection)

        return PoolClient(self, await self._wait_for_connection())

    connect = acquire

    async def _wait_for_connection(self) -> Connection:
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[Connection] = loop.create_future()
        self._waiters.append(waiter)
        timeout = self._config.connection_timeout
        timer = loop.call_later(timeout, self._expire_waiter, waiter, timeout)
        LOGGER.debug("db.pool.acquire.queued", waiting=len(self._waiters))
        try:
            return await waiter
        except asyncio.CancelledError:
            # 若在取消前已分配到連線，歸還給下一位等待者
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                self.release(waiter.result())
            raise
        finally:
            timer.cancel()
            try:
                self._waiters.remove(waiter)
            except ValueError:
                pass

    def _expire_waiter(self, waiter: asyncio.Future[Connection], timeout: float) -> None:
        if waiter.done():
            return
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
        LOGGER.warning("db.pool.acquire.timeout", timeout_seconds=timeout)
        waiter.set_exception(
            PoolTimeoutError(
                f"Timed out after {timeout}s waiting for a connection",
                context={"timeout_seconds": timeout, "max_size": self._config.max_size},
            )
        )

    def _next_waiter(self) -> asyncio.Future[Connection] | None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                return waiter
        return None

    def release(self, connection: Connection, *, discard: bool = False) -> None:
        """Return ``connection``; broken, closed or mid-transaction connections are discarded."""
        if connection not in self._checked_out:
            LOGGER.debug("db.pool.release.unknown")
            return
        self._checked_out.discard(connection)

        reusable = (
            not discard
            and not self._closed
            and connection.usable
            and not connection.in_transaction
        )
        if not reusable:
            LOGGER.info(
                "db.pool.connection_discarded",
                broken=connection.broken,
                in_transaction=connection.in_transaction,
            )
            self._spawn(connection.close(graceful=not connection.broken))
            if not self._closed and self._waiters:
                self._spawn(self._replace_for_waiter())
            return

        waiter = self._next_waiter()
        if waiter is not None:
            self._checked_out.add(connection)
            waiter.set_result(connection)
            return
        self._idle.append(_IdleEntry(connection, time.monotonic()))

    async def _replace_for_waiter(self) -> None:
        if self.size >= self._config.max_size or not self._waiters:
            return
        self._opening += 1
        try:
            connection = await self._open_connection()
        except Exception as exc:
            waiter = self._next_waiter()
            if waiter is not None:
                waiter.set_exception(exc)
            return
        finally:
            self._opening -= 1
        self._checked_out.add(connection)
        self.release(connection)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        task.add_done_callback(_log_task_failure)

    # --- idle reaping ----------------------------------------------------

    def _ensure_reaper(self) -> None:
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(self._reap_idle(), name="pqbridge-pool-reaper")

    async def _reap_idle(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._config.reap_interval)
            await self.reap()

    async def reap(self) -> int:
        """Close connections idle longer than the idle timeout while above ``min_size`` idle."""
        now = time.monotonic()
        expired: list[Connection] = []
        # 由最久未使用者開始淘汰
        for entry in list(self._idle):
            if len(self._idle) <= self._config.min_size:
                break
            if now - entry.since >= self._config.idle_timeout or not entry.connection.usable:
                self._idle.remove(entry)
                expired.append(entry.connection)
        for connection in expired:
            await connection.close()
        if expired:
            LOGGER.debug("db.pool.reaped", count=len(expired), size=self.size)
        return len(expired)

    # --- conveniences ----------------------------------------------------

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[PoolClient]:
        client = await self.acquire()
        try:
            yield client
        finally:
            client.release()

    async def query(
        self, sql: str, params: Sequence[Any] | None = None, *, timeout: float | None = None
    ) -> QueryOutcome:
        """Acquire, run one statement, release (even when the statement fails)."""
        async with self.connection() as client:
            return await client.query(sql, params, timeout=timeout)

    async def pipeline(
        self, queries: Sequence[str], *, timeout: float | None = None
    ) -> list[QueryOutcome]:
        async with self.connection() as client:
            return await client.pipeline(queries, timeout=timeout)


def _log_task_failure(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.warning("db.pool.background_failed", error=str(exc))
