"""Single database connection: lazy handshake, serialized wire access, notifications.

A :class:`Connection` owns exactly one transport, one statement registry and one
notification router. Every operation that touches the wire is handed to the
connection's :class:`~pqbridge.db.dispatcher.Dispatcher`, so the caller's event
loop never blocks and concurrent callers on the same connection are serialized
in submission order.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Any

import structlog

from pqbridge.config.db_settings import ConnectionSettings, redact_dsn, validate_dsn
from pqbridge.db.dispatcher import Dispatcher
from pqbridge.db.notifications import NotificationHandler, NotificationRouter
from pqbridge.db.statements import PreparedStatement, StatementRegistry
from pqbridge.db.transport import PsycopgTransport
from pqbridge.infra.errors import ConnectionError, QueryTimeoutError
from pqbridge.infra.types.db import Row, StatementResult, TransportProtocol

LOGGER = structlog.get_logger(__name__)

TransportFactory = Callable[[ConnectionSettings], TransportProtocol]
QueryOutcome = list[Row] | int


class ConnectionState(str, enum.Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    IDLE = "idle"
    BUSY = "busy"


def _normalize_params(params: Sequence[Any] | None) -> tuple[Any, ...] | None:
    if params is None:
        return None
    if isinstance(params, (str, bytes)):
        raise TypeError("params must be a sequence of positional values, not a string")
    return tuple(params)


class Connection:
    """Asynchronous handle over one blocking database session.

    The session is opened on first use. ``close()`` is terminal; after a failed
    handshake the connection stays reusable and the next operation retries it.

    ``pool_size`` is accepted for parity with ``Pool(connection_string, pool_size)``
    and only validated: one Connection always owns exactly one session.
    """

    def __init__(
        self,
        dsn: str | None = None,
        pool_size: int | None = None,
        *,
        settings: ConnectionSettings | None = None,
        transport_factory: TransportFactory | None = None,
        name: str | None = None,
    ) -> None:
        if pool_size is not None and pool_size < 1:
            raise ValueError(f"pool_size must be at least 1, got {pool_size}")
        self._pool_size = pool_size
        if settings is None:
            settings = ConnectionSettings(database_url=dsn) if dsn else ConnectionSettings()
        elif dsn is not None:
            settings = settings.model_copy(update={"database_url": validate_dsn(dsn)})
        self._settings = settings
        self._transport: TransportProtocol = (transport_factory or PsycopgTransport)(settings)
        self._statements = StatementRegistry()
        self._router = NotificationRouter()
        self._dispatcher = Dispatcher(
            name,
            idle_interval=settings.notify_poll_interval_seconds,
            idle_hook=self._poll_notifications,
            idle_active=self._should_poll,
        )
        self._in_flight = 0
        self._tx_depth = 0
        self._closed = False
        # 下列兩個欄位由 worker 執行緒寫入
        self._was_connected = False
        self._broken: str | None = None

    def __repr__(self) -> str:
        return (
            f"<Connection {self._dispatcher.name} state={self.state.value} "
            f"target={redact_dsn(self._settings.dsn)}>"
        )

    # --- state -----------------------------------------------------------

    @property
    def settings(self) -> ConnectionSettings:
        return self._settings

    @property
    def pool_size(self) -> int | None:
        return self._pool_size

    @property
    def state(self) -> ConnectionState:
        if self._closed:
            return ConnectionState.CLOSED
        if not self._was_connected:
            return ConnectionState.CONNECTING if self._in_flight else ConnectionState.CLOSED
        if self._transport.closed:
            return ConnectionState.CLOSED
        return ConnectionState.BUSY if self._in_flight else ConnectionState.IDLE

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def is_listening(self) -> bool:
        return self._router.active

    @property
    def channels(self) -> list[str]:
        return self._router.channels

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def broken(self) -> bool:
        return self._broken is not None

    @property
    def usable(self) -> bool:
        """True unless the connection was closed or its session failed."""
        return not self._closed and self._broken is None

    @property
    def statements(self) -> StatementRegistry:
        return self._statements

    # --- wire plumbing ---------------------------------------------------

    def _check_usable(self, operation: str) -> None:
        if self._closed:
            raise ConnectionError(
                "Connection closed", context={"closed_by_client": True, "operation": operation}
            )
        if self._broken is not None:
            raise ConnectionError(
                f"Connection is unusable: {self._broken}",
                context={"operation": operation, "reason": self._broken},
            )

    def _on_wire(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Runs on the worker thread: open the session if needed, then call ``fn``."""
        if self._transport.closed:
            if self._was_connected:
                raise ConnectionError("Connection lost", context={"reason": self._broken})
            self._transport.connect()
            self._was_connected = True
            LOGGER.info(
                "db.connection.opened",
                connection=self._dispatcher.name,
                target=redact_dsn(self._settings.dsn),
            )
        return fn(*args, **kwargs)

    async def _call(
        self,
        fn: Callable[..., Any],
        *args: Any,
        label: str,
        timeout: float | None = None,
        weight: int = 1,
        **kwargs: Any,
    ) -> Any:
        self._check_usable(label)
        future = self._dispatcher.submit(self._on_wire, fn, *args, label=label, **kwargs)
        self._in_flight += weight
        future.add_done_callback(lambda f: self._on_job_done(f, weight))

        if timeout is None:
            timeout = self._settings.query_timeout_seconds
        if timeout is None:
            return await asyncio.shield(future)
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except TimeoutError:
            LOGGER.warning(
                "db.connection.timeout",
                connection=self._dispatcher.name,
                operation=label,
                timeout_seconds=timeout,
            )
            self._broken = f"{label} timed out after {timeout}s"
            self._shutdown(graceful=False, reason="timeout")
            raise QueryTimeoutError(
                f"{label} exceeded timeout of {timeout}s",
                context={"operation": label, "timeout_seconds": timeout},
            ) from None

    def _on_job_done(self, future: asyncio.Future[Any], weight: int) -> None:
        self._in_flight -= weight
        if future.cancelled():
            return
        exc = future.exception()
        if (
            isinstance(exc, ConnectionError)
            and self._was_connected
            and not exc.context.get("closed_by_client")
            and self._broken is None
        ):
            self._broken = exc.message
            LOGGER.warning(
                "db.connection.broken", connection=self._dispatcher.name, error=exc.message
            )

    def _should_poll(self) -> bool:
        return self._router.active and not self._closed and self._broken is None

    def _poll_notifications(self) -> None:
        """Worker-thread idle hook: forward buffered notifications to the router."""
        if self._transport.closed:
            return
        try:
            notifications = self._transport.drain_notifications()
        except ConnectionError as exc:
            self._broken = exc.message
            LOGGER.warning(
                "db.connection.notify_poll_failed",
                connection=self._dispatcher.name,
                error=exc.message,
            )
            return
        for notification in notifications:
            self._router.dispatch(notification)

    def _request_cancel(self) -> None:
        loop = asyncio.get_running_loop()
        cancel = loop.run_in_executor(None, self._transport.cancel)
        cancel.add_done_callback(self._log_cancel_result)

    def _log_cancel_result(self, future: asyncio.Future[None]) -> None:
        if not future.cancelled() and future.exception() is not None:
            LOGGER.warning(
                "db.connection.cancel_failed",
                connection=self._dispatcher.name,
                error=str(future.exception()),
            )

    def _shutdown(self, *, graceful: bool, reason: str) -> asyncio.Future[None]:
        if self._closed:
            return self._dispatcher.stop()
        self._closed = True
        self._router.clear()
        if not graceful:
            was_busy = self._dispatcher.busy
            failed = self._dispatcher.fail_outstanding(
                lambda: ConnectionError(
                    "Connection closed",
                    context={"closed_by_client": True, "reason": reason},
                )
            )
            if was_busy:
                self._request_cancel()
            if failed:
                LOGGER.info(
                    "db.connection.pending_failed",
                    connection=self._dispatcher.name,
                    count=failed,
                )
        LOGGER.info("db.connection.closing", connection=self._dispatcher.name, reason=reason)
        return self._dispatcher.stop(finalizer=self._finalize)

    def _finalize(self) -> None:
        self._transport.close()
        self._statements.clear()

    # --- operations ------------------------------------------------------

    async def open(self) -> "Connection":
        """Perform the handshake now instead of on first use."""
        await self._call(lambda: None, label="connect")
        return self

    async def query(
        self,
        sql: str,
        params: Sequence[Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> QueryOutcome:
        """Run one statement; return its rows, or the affected-row count."""
        result: StatementResult = await self._call(
            self._transport.execute, sql, _normalize_params(params), label="query", timeout=timeout
        )
        return result.outcome()

    def prepare(self, name: str, sql: str) -> PreparedStatement:
        """Register ``name`` for ``sql``; the server parses it on first ``execute``."""
        return self._statements.register(name, sql)

    async def execute(
        self,
        name: str,
        params: Sequence[Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> QueryOutcome:
        entry = self._statements.get(name)
        result: StatementResult = await self._call(
            self._transport.execute,
            entry.sql,
            _normalize_params(params),
            prepare=True,
            label="execute",
            timeout=timeout,
        )
        self._statements.mark_executed(entry)
        return result.outcome()

    def deallocate(self, name: str) -> bool:
        return self._statements.discard(name)

    async def pipeline(
        self, queries: Sequence[str], *, timeout: float | None = None
    ) -> list[QueryOutcome]:
        """Send every statement before reading any result; results keep submission order."""
        if isinstance(queries, str):
            raise TypeError("pipeline expects a sequence of SQL strings")
        statements = list(queries)
        if not statements:
            return []
        results: list[StatementResult] = await self._call(
            self._transport.pipeline,
            statements,
            label="pipeline",
            timeout=timeout,
            weight=len(statements),
        )
        return [result.outcome() for result in results]

    async def listen(self, channel: str, callback: NotificationHandler) -> None:
        """Subscribe ``callback`` to ``channel``; re-listening replaces the callback."""
        self._check_usable("listen")
        if not self._router.subscribe(channel, callback):
            return
        try:
            await self._call(self._transport.listen, channel, label="listen")
        except BaseException:
            self._router.unsubscribe(channel)
            raise
        LOGGER.info("db.connection.listen", connection=self._dispatcher.name, channel=channel)

    async def unlisten(self, channel: str) -> None:
        if not self._router.unsubscribe(channel):
            return
        if not self.usable:
            return
        await self._call(self._transport.unlisten, channel, label="unlisten")
        LOGGER.info("db.connection.unlisten", connection=self._dispatcher.name, channel=channel)

    async def ping(self, *, timeout: float | None = None) -> None:
        await self._call(self._transport.ping, label="ping", timeout=timeout)

    async def begin(self) -> None:
        await self.query("BEGIN")
        self._tx_depth = 1

    async def commit(self) -> None:
        try:
            await self.query("COMMIT")
        finally:
            self._tx_depth = 0

    async def rollback(self) -> None:
        try:
            await self.query("ROLLBACK")
        finally:
            self._tx_depth = 0

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Connection"]:
        """``BEGIN`` on enter; ``COMMIT`` on success, ``ROLLBACK`` on error."""
        await self.begin()
        try:
            yield self
        except BaseException:
            if self.usable:
                await self.rollback()
            else:
                self._tx_depth = 0
            raise
        await self.commit()

    async def close(self, *, graceful: bool = False) -> None:
        """Close the connection. Idempotent.

        Pending operations fail with :class:`ConnectionError` unless ``graceful``
        is set, in which case they are allowed to finish first. A non-graceful
        close waits at most ``close_timeout_seconds`` for the running call to
        honour the cancel, then aborts the session socket.
        """
        stopping = self._shutdown(graceful=graceful, reason="close")
        if graceful:
            await stopping
        else:
            grace = self._settings.close_timeout_seconds
            try:
                await asyncio.wait_for(asyncio.shield(stopping), grace)
            except TimeoutError:
                LOGGER.warning(
                    "db.connection.close_forced",
                    connection=self._dispatcher.name,
                    timeout_seconds=grace,
                )
                self._transport.abort()
                try:
                    await asyncio.wait_for(asyncio.shield(stopping), grace)
                except TimeoutError:
                    # worker 仍未結束；其 finalizer 之後才會關閉 transport
                    LOGGER.error("db.connection.worker_stuck", connection=self._dispatcher.name)
        LOGGER.info("db.connection.closed", connection=self._dispatcher.name)

    async def __aenter__(self) -> "Connection":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()
