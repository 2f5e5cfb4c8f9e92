"""Blocking psycopg session used by :class:`pqbridge.db.connection.Connection`.

Everything in here blocks. Instances are driven exclusively by the connection's
dispatcher worker thread, except :meth:`PsycopgTransport.cancel` and
:meth:`PsycopgTransport.abort`, which are safe from any thread.
"""

from __future__ import annotations

import os
import socket
from typing import Any, Sequence

import psycopg
import structlog
from psycopg import sql
from psycopg.pq import TransactionStatus
from psycopg.rows import dict_row

from pqbridge.config.db_settings import ConnectionSettings, redact_dsn
from pqbridge.infra.db_errors import map_driver_error, translate_driver_errors
from pqbridge.infra.errors import ConnectionError, PipelineError, QueryError
from pqbridge.infra.retry import call_with_retry
from pqbridge.infra.types.db import Notification, StatementResult

LOGGER = structlog.get_logger(__name__)


def _collect(cursor: psycopg.Cursor[Any]) -> StatementResult:
    if cursor.description is not None:
        rows = cursor.fetchall()
        return StatementResult(
            rows=list(rows),
            rowcount=cursor.rowcount,
            status=cursor.statusmessage,
            returns_rows=True,
        )
    return StatementResult(rowcount=cursor.rowcount, status=cursor.statusmessage)


class PsycopgTransport:
    """:class:`~pqbridge.infra.types.db.TransportProtocol` over a psycopg 3 connection.

    The session runs in autocommit mode with :class:`psycopg.RawCursor`, so
    statements use the server's own ``$1, $2, ...`` placeholders and parameter
    values travel separately from the SQL text.
    """

    def __init__(self, settings: ConnectionSettings) -> None:
        self._settings = settings
        self._conn: psycopg.Connection[Any] | None = None

    @property
    def closed(self) -> bool:
        return self._conn is None or self._conn.closed

    @property
    def in_transaction(self) -> bool:
        if self._conn is None or self._conn.closed:
            return False
        return self._conn.info.transaction_status != TransactionStatus.IDLE

    def connect(self) -> None:
        if not self.closed:
            return
        target = redact_dsn(self._settings.dsn)
        LOGGER.debug("db.transport.connect.start", target=target)
        try:
            self._conn = call_with_retry(
                self._open,
                max_attempts=self._settings.connect_attempts,
                initial_wait=self._settings.connect_retry_wait_seconds,
                retry_on=psycopg.OperationalError,
            )
        except (psycopg.Error, OSError) as exc:
            raise map_driver_error(exc, operation="connect") from exc
        LOGGER.debug("db.transport.connect.done", target=target)

    def _open(self) -> psycopg.Connection[Any]:
        conn = psycopg.connect(
            self._settings.dsn,
            autocommit=True,
            row_factory=dict_row,
            cursor_factory=psycopg.RawCursor,
            connect_timeout=max(1, int(self._settings.connect_timeout_seconds)),
            application_name=self._settings.application_name,
        )
        # 登錄的預備語句不應被驅動程式的 LRU 快取淘汰
        conn.prepared_max = self._settings.max_prepared_statements
        return conn

    def _require_open(self) -> psycopg.Connection[Any]:
        if self._conn is None or self._conn.closed:
            raise ConnectionError("Connection is not open", context={"closed": True})
        return self._conn

    def execute(
        self, query: str, params: Sequence[Any] | None = None, *, prepare: bool = False
    ) -> StatementResult:
        conn = self._require_open()
        with translate_driver_errors("execute", query):
            with conn.cursor() as cursor:
                # prepare=None 保留驅動程式預設的自動預備門檻
                cursor.execute(query, params, prepare=True if prepare else None)
                return _collect(cursor)

    def pipeline(self, queries: Sequence[str]) -> list[StatementResult]:
        conn = self._require_open()
        cursors: list[psycopg.Cursor[Any]] = []
        try:
            with conn.pipeline():
                for query in queries:
                    cursor = conn.cursor()
                    cursors.append(cursor)
                    cursor.execute(query)
        except psycopg.Error as exc:
            index = next(
                (i for i, cursor in enumerate(cursors) if cursor.pgresult is None),
                max(len(cursors) - 1, 0),
            )
            mapped = map_driver_error(exc, operation="pipeline", statement=queries[index])
            if not isinstance(mapped, QueryError):
                raise mapped from exc
            raise PipelineError(
                f"Pipeline statement {index} failed: {mapped.message}",
                index=index,
                statement=queries[index],
                cause=mapped,
                context={"sqlstate": mapped.sqlstate, "size": len(queries)},
            ) from exc
        try:
            return [_collect(cursor) for cursor in cursors]
        finally:
            for cursor in cursors:
                cursor.close()

    def listen(self, channel: str) -> None:
        conn = self._require_open()
        with translate_driver_errors("listen"):
            conn.execute(sql.SQL("LISTEN {}").format(sql.Identifier(channel)))

    def unlisten(self, channel: str) -> None:
        conn = self._require_open()
        with translate_driver_errors("unlisten"):
            conn.execute(sql.SQL("UNLISTEN {}").format(sql.Identifier(channel)))

    def drain_notifications(self) -> list[Notification]:
        conn = self._require_open()
        with translate_driver_errors("notifies"):
            return [
                Notification(channel=n.channel, payload=n.payload, pid=n.pid)
                for n in conn.notifies(timeout=0)
            ]

    def ping(self) -> None:
        self.execute("SELECT 1")

    def cancel(self) -> None:
        conn = self._conn
        if conn is None or conn.closed:
            return
        try:
            conn.cancel_safe()
        except psycopg.Error:
            LOGGER.warning("db.transport.cancel_failed", exc_info=True)

    def abort(self) -> None:
        """Shut the session socket down so a blocked worker call fails promptly.

        The libpq handle itself is left for :meth:`close` on the worker thread.
        """
        conn = self._conn
        if conn is None or conn.closed:
            return
        try:
            sock = socket.socket(fileno=os.dup(conn.pgconn.socket))
        except (psycopg.Error, OSError):
            LOGGER.warning("db.transport.abort_failed", exc_info=True)
            return
        with sock:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                LOGGER.debug("db.transport.abort_shutdown_failed", exc_info=True)
        LOGGER.info("db.transport.aborted")

    def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None and not conn.closed:
            conn.close()
            LOGGER.debug("db.transport.closed")
