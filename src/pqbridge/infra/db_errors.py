"""SQL error mapping for the transport layer.

This module converts psycopg exceptions into the pqbridge error taxonomy so that
no raw driver exception escapes the engine, and attaches enough context
(SQLSTATE, statement position, table/constraint names) for debugging.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Dict

import psycopg
import structlog

from pqbridge.infra.errors import ConnectionError, Error, QueryError

LOGGER = structlog.get_logger(__name__)

# PostgreSQL error codes that we handle
POSTGRES_ERROR_CODES = {
    # Connection errors
    "08000": "connection_exception",
    "08003": "connection_does_not_exist",
    "08006": "connection_failure",
    "08001": "sqlclient_unable_to_establish_sqlconnection",
    "08004": "sqlserver_rejected_establishment_of_sqlconnection",
    "08P01": "protocol_violation",
    # Prepared statement errors
    "26000": "invalid_sql_statement_name",
    "42P05": "duplicate_prepared_statement",
    # Integrity constraint violations
    "23000": "integrity_constraint_violation",
    "23502": "not_null_violation",
    "23503": "foreign_key_violation",
    "23505": "unique_violation",
    "23514": "check_violation",
    # Transaction errors
    "25001": "active_sql_transaction",
    "25P01": "no_active_sql_transaction",
    "25P02": "in_failed_sql_transaction",
    # Lock/Deadlock errors
    "40001": "serialization_failure",
    "40P01": "deadlock_detected",
    # Timeout / cancel
    "57014": "query_canceled",
    "57P01": "admin_shutdown",
    # Syntax / definition errors
    "42601": "syntax_error",
    "42P01": "undefined_table",
    "42P02": "undefined_parameter",
    "42703": "undefined_column",
    "42883": "undefined_function",
    "42704": "undefined_object",
}

_RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


def _diag_context(error: psycopg.Error) -> Dict[str, Any]:
    diag = error.diag
    context: Dict[str, Any] = {}
    for key, attr in (
        ("detail", "message_detail"),
        ("hint", "message_hint"),
        ("schema_name", "schema_name"),
        ("table_name", "table_name"),
        ("column_name", "column_name"),
        ("constraint_name", "constraint_name"),
    ):
        value = getattr(diag, attr, None)
        if value:
            context[key] = value
    position = getattr(diag, "statement_position", None)
    if position:
        try:
            context["position"] = int(position)
        except (TypeError, ValueError):
            context["position"] = position
    return context


def map_postgres_error(error: psycopg.Error, *, statement: str | None = None) -> QueryError:
    """Map a server-side rejection to :class:`QueryError` with SQLSTATE context."""
    sqlstate: str | None = error.sqlstate
    message = error.diag.message_primary or str(error)

    context: Dict[str, Any] = {
        "sqlstate": sqlstate,
        "error_type": POSTGRES_ERROR_CODES.get(sqlstate or "", "unknown_postgres_error"),
        "original_message": str(error),
    }
    if statement is not None:
        context["statement"] = statement
    context.update(_diag_context(error))

    if sqlstate in _RETRYABLE_SQLSTATES:
        context["retry_possible"] = True
    elif sqlstate == "57014":
        context["canceled"] = True

    return QueryError(message, context=context, cause=error)


def map_connection_error(error: BaseException, *, operation: str) -> ConnectionError:
    """Map a transport level failure to :class:`ConnectionError`."""
    sqlstate = getattr(error, "sqlstate", None)
    return ConnectionError(
        f"Connection error during {operation}: {error}",
        context={
            "operation": operation,
            "error_type": type(error).__name__,
            "sqlstate": sqlstate,
            "original_message": str(error),
        },
        cause=error,
    )


def _is_connection_failure(error: psycopg.Error) -> bool:
    sqlstate = error.sqlstate
    if sqlstate is not None:
        return sqlstate.startswith("08") or sqlstate in ("57P01", "57P02", "57P03")
    return isinstance(error, (psycopg.OperationalError, psycopg.InterfaceError))


def map_driver_error(
    error: BaseException, *, operation: str = "query", statement: str | None = None
) -> Error:
    """Map any psycopg exception to the pqbridge taxonomy.

    This is the main entry point for converting driver errors.
    """
    if isinstance(error, Error):
        return error
    if isinstance(error, psycopg.Error):
        if _is_connection_failure(error):
            return map_connection_error(error, operation=operation)
        return map_postgres_error(error, statement=statement)
    if isinstance(error, OSError):
        return map_connection_error(error, operation=operation)
    return Error(
        f"Database error: {error}",
        context={"operation": operation, "original_error": str(error)},
        cause=error,
    )


def is_retryable_error(error: Error) -> bool:
    """Check if an error is potentially retryable on a fresh attempt."""
    if isinstance(error, QueryError):
        return error.sqlstate in _RETRYABLE_SQLSTATES or bool(error.context.get("retry_possible"))
    return isinstance(error, ConnectionError) and not error.context.get("closed_by_client", False)


@contextmanager
def translate_driver_errors(operation: str, statement: str | None = None) -> Iterator[None]:
    """Re-raise driver exceptions raised inside the block as pqbridge errors."""
    try:
        yield
    except (psycopg.Error, OSError) as exc:
        mapped = map_driver_error(exc, operation=operation, statement=statement)
        LOGGER.debug(
            "db.transport.error",
            operation=operation,
            error_type=type(mapped).__name__,
            sqlstate=mapped.context.get("sqlstate"),
        )
        raise mapped from exc


__all__ = [
    "POSTGRES_ERROR_CODES",
    "is_retryable_error",
    "map_connection_error",
    "map_driver_error",
    "map_postgres_error",
    "translate_driver_errors",
]
