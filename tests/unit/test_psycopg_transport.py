"""Unit tests for PsycopgTransport with psycopg.connect patched out."""

from __future__ import annotations

import socket
from types import SimpleNamespace
from unittest.mock import MagicMock

import psycopg
import pytest
from psycopg import errors as pg_errors
from psycopg import sql
from psycopg.pq import TransactionStatus
from psycopg.rows import dict_row

from pqbridge.config.db_settings import ConnectionSettings
from pqbridge.db.transport import PsycopgTransport
from pqbridge.infra.errors import ConnectionError, PipelineError, QueryError
from pqbridge.infra.types.db import Notification
from tests.fixtures.fake_transport import TEST_DSN


def _cursor(*, rows: list[dict] | None = None, rowcount: int = -1, status: str = "") -> MagicMock:
    cursor = MagicMock(name="cursor")
    cursor.description = [("id",)] if rows is not None else None
    cursor.fetchall.return_value = rows or []
    cursor.rowcount = rowcount
    cursor.statusmessage = status
    return cursor


@pytest.fixture
def pg_conn(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    conn = MagicMock(name="psycopg.Connection")
    conn.closed = False
    conn.info.transaction_status = TransactionStatus.IDLE
    monkeypatch.setattr(psycopg, "connect", MagicMock(return_value=conn))
    return conn


@pytest.fixture
def transport(settings: ConnectionSettings, pg_conn: MagicMock) -> PsycopgTransport:
    transport = PsycopgTransport(settings.model_copy(update={"max_prepared_statements": 32}))
    transport.connect()
    return transport


@pytest.mark.unit
def test_connect_configures_session(transport: PsycopgTransport, pg_conn: MagicMock) -> None:
    psycopg.connect.assert_called_once()  # type: ignore[attr-defined]
    args, kwargs = psycopg.connect.call_args  # type: ignore[attr-defined]

    assert args == (TEST_DSN,)
    assert kwargs["autocommit"] is True
    assert kwargs["row_factory"] is dict_row
    assert kwargs["cursor_factory"] is psycopg.RawCursor
    assert kwargs["application_name"] == "pqbridge"
    assert pg_conn.prepared_max == 32
    assert transport.closed is False


@pytest.mark.unit
def test_connect_retries_then_maps_failure(
    settings: ConnectionSettings, monkeypatch: pytest.MonkeyPatch
) -> None:
    connect = MagicMock(side_effect=psycopg.OperationalError("connection refused"))
    monkeypatch.setattr(psycopg, "connect", connect)
    transport = PsycopgTransport(
        settings.model_copy(update={"connect_attempts": 2, "connect_retry_wait_seconds": 0.0})
    )

    with pytest.raises(ConnectionError) as exc_info:
        transport.connect()

    assert connect.call_count == 2
    assert exc_info.value.context["operation"] == "connect"
    assert transport.closed is True


@pytest.mark.unit
def test_execute_returns_rows_and_forwards_prepare(
    transport: PsycopgTransport, pg_conn: MagicMock
) -> None:
    cursor = _cursor(rows=[{"id": 1, "name": "Alice"}], rowcount=1, status="SELECT 1")
    pg_conn.cursor.return_value.__enter__.return_value = cursor

    result = transport.execute("SELECT * FROM test_users WHERE name = $1", ("Alice",), prepare=True)

    cursor.execute.assert_called_once_with(
        "SELECT * FROM test_users WHERE name = $1", ("Alice",), prepare=True
    )
    assert result.outcome() == [{"id": 1, "name": "Alice"}]
    assert result.status == "SELECT 1"


@pytest.mark.unit
def test_execute_without_prepare_keeps_driver_default(
    transport: PsycopgTransport, pg_conn: MagicMock
) -> None:
    cursor = _cursor(rowcount=2, status="UPDATE 2")
    pg_conn.cursor.return_value.__enter__.return_value = cursor

    result = transport.execute("UPDATE test_users SET age = 1")

    cursor.execute.assert_called_once_with("UPDATE test_users SET age = 1", None, prepare=None)
    assert result.outcome() == 2


@pytest.mark.unit
def test_execute_maps_server_error(transport: PsycopgTransport, pg_conn: MagicMock) -> None:
    cursor = _cursor()
    cursor.execute.side_effect = pg_errors.UndefinedTable('relation "missing" does not exist')
    pg_conn.cursor.return_value.__enter__.return_value = cursor

    with pytest.raises(QueryError) as exc_info:
        transport.execute("SELECT * FROM missing")

    assert exc_info.value.sqlstate == "42P01"


@pytest.mark.unit
def test_execute_on_closed_transport_raises(settings: ConnectionSettings) -> None:
    with pytest.raises(ConnectionError):
        PsycopgTransport(settings).execute("SELECT 1")


@pytest.mark.unit
def test_pipeline_collects_results_in_order(transport: PsycopgTransport, pg_conn: MagicMock) -> None:
    cursors = [
        _cursor(rows=[{"id": 1}], rowcount=1, status="SELECT 1"),
        _cursor(rowcount=1, status="UPDATE 1"),
    ]
    pg_conn.cursor.side_effect = cursors

    results = transport.pipeline(["SELECT id FROM test_users", "UPDATE test_users SET age = 2"])

    pg_conn.pipeline.assert_called_once()
    assert [result.outcome() for result in results] == [[{"id": 1}], 1]
    for cursor in cursors:
        cursor.close.assert_called_once()


@pytest.mark.unit
def test_pipeline_failure_reports_first_unanswered_statement(
    transport: PsycopgTransport, pg_conn: MagicMock
) -> None:
    cursors = [_cursor(), _cursor(), _cursor()]
    cursors[0].pgresult = object()
    cursors[1].pgresult = None
    cursors[2].pgresult = None
    pg_conn.cursor.side_effect = cursors
    pg_conn.pipeline.return_value.__exit__.side_effect = pg_errors.SyntaxError("syntax error")

    with pytest.raises(PipelineError) as exc_info:
        transport.pipeline(["SELECT 1", "SELEC 2", "SELECT 3"])

    assert exc_info.value.index == 1
    assert exc_info.value.statement == "SELEC 2"
    assert isinstance(exc_info.value.cause, QueryError)
    assert exc_info.value.context["size"] == 3


@pytest.mark.unit
def test_pipeline_connection_failure_is_not_attributed(
    transport: PsycopgTransport, pg_conn: MagicMock
) -> None:
    pg_conn.cursor.side_effect = [_cursor()]
    pg_conn.pipeline.return_value.__exit__.side_effect = psycopg.OperationalError("server closed")

    with pytest.raises(ConnectionError):
        transport.pipeline(["SELECT 1"])


@pytest.mark.unit
def test_listen_quotes_channel(transport: PsycopgTransport, pg_conn: MagicMock) -> None:
    transport.listen("Order Events")
    transport.unlisten("Order Events")

    listen_sql = pg_conn.execute.call_args_list[0][0][0]
    unlisten_sql = pg_conn.execute.call_args_list[1][0][0]
    assert listen_sql == sql.SQL("LISTEN {}").format(sql.Identifier("Order Events"))
    assert unlisten_sql == sql.SQL("UNLISTEN {}").format(sql.Identifier("Order Events"))


@pytest.mark.unit
def test_drain_notifications_does_not_block(transport: PsycopgTransport, pg_conn: MagicMock) -> None:
    pg_conn.notifies.return_value = iter(
        [
            SimpleNamespace(channel="events", payload="a", pid=10),
            SimpleNamespace(channel="events", payload="b", pid=10),
        ]
    )

    drained = transport.drain_notifications()

    pg_conn.notifies.assert_called_once_with(timeout=0)
    assert drained == [
        Notification(channel="events", payload="a", pid=10),
        Notification(channel="events", payload="b", pid=10),
    ]


@pytest.mark.unit
def test_notifications_received_mid_query_stay_drainable(
    transport: PsycopgTransport, pg_conn: MagicMock
) -> None:
    # psycopg 3.3 起，查詢期間收到的通知會保留給 notifies()；註冊 handler 則會改走 handler
    major, minor = (int(part) for part in psycopg.__version__.split(".")[:2])
    assert (major, minor) >= (3, 3)

    pg_conn.cursor.return_value.__enter__.return_value = _cursor(rows=[{"pg_sleep": ""}], rowcount=1)
    transport.execute("SELECT pg_sleep(1)")
    pg_conn.notifies.return_value = iter([SimpleNamespace(channel="events", payload="x", pid=7)])

    assert transport.drain_notifications() == [Notification(channel="events", payload="x", pid=7)]
    pg_conn.add_notify_handler.assert_not_called()


@pytest.mark.unit
def test_in_transaction_follows_session_status(transport: PsycopgTransport, pg_conn: MagicMock) -> None:
    assert transport.in_transaction is False
    pg_conn.info.transaction_status = TransactionStatus.INTRANS
    assert transport.in_transaction is True


@pytest.mark.unit
def test_cancel_and_close(transport: PsycopgTransport, pg_conn: MagicMock) -> None:
    transport.cancel()
    pg_conn.cancel_safe.assert_called_once()

    transport.close()
    transport.close()

    pg_conn.close.assert_called_once()
    assert transport.closed is True
    assert transport.in_transaction is False
    transport.cancel()
    pg_conn.cancel_safe.assert_called_once()


@pytest.mark.unit
def test_abort_shuts_down_session_socket(transport: PsycopgTransport, pg_conn: MagicMock) -> None:
    client, server = socket.socketpair()
    with client, server:
        pg_conn.pgconn.socket = client.fileno()

        transport.abort()

        assert server.recv(1) == b""
        pg_conn.close.assert_not_called()
        # 原始 fd 仍由 libpq 持有，之後由 close() 釋放
        assert client.fileno() != -1
