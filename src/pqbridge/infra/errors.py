"""錯誤型別階層。

Every failure surfaced by pqbridge is an instance of :class:`Error`. Each error
carries a human readable message, an optional context dictionary used for
structured logging, and the underlying cause (usually a psycopg exception).
"""

from __future__ import annotations

from typing import Any, Mapping, cast

_SENSITIVE_KEYS: tuple[str, ...] = (
    "password",
    "passwd",
    "secret",
    "token",
    "dsn",
    "conninfo",
    "authorization",
)


def _sanitize_context(context: Mapping[str, Any] | None) -> dict[str, Any]:
    """對錯誤 context 進行敏感資訊遮罩處理。"""
    if not context:
        return {}

    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            mapping = cast(Mapping[str, Any], value)
            return {
                k: (
                    "***redacted***"
                    if any(sk in str(k).lower() for sk in _SENSITIVE_KEYS)
                    else _sanitize(v)
                )
                for k, v in mapping.items()
            }
        return value

    sanitized: dict[str, Any] = {}
    for key, value in context.items():
        if any(sk in str(key).lower() for sk in _SENSITIVE_KEYS):
            sanitized[key] = "***redacted***"
        else:
            sanitized[key] = _sanitize(value)
    return sanitized


class Error(Exception):
    """Base error carrying a message, optional context and cause."""

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = dict(context or {})
        self.cause: BaseException | None = cause

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "context": dict(self.context),
            "cause": repr(self.cause) if self.cause is not None else None,
        }

    def __str__(self) -> str:  # pragma: no cover - 委派給 message
        return self.message

    def log_safe_context(self) -> dict[str, Any]:
        """回傳已遮罩敏感資訊後可安全寫入日誌的 context。"""
        return _sanitize_context(self.context)


class ConnectionError(Error):
    """Transport unreachable, handshake failed, or connection closed mid-operation."""


class QueryTimeoutError(ConnectionError):
    """A statement exceeded its timeout; the connection that ran it is discarded."""


class QueryError(Error):
    """The server rejected a statement."""

    @property
    def sqlstate(self) -> str | None:
        return self.context.get("sqlstate")

    @property
    def position(self) -> int | None:
        return self.context.get("position")

    @property
    def detail(self) -> str | None:
        return self.context.get("detail")

    @property
    def hint(self) -> str | None:
        return self.context.get("hint")


class NotPreparedError(Error):
    """``execute`` referenced a statement name that was never prepared."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Prepared statement not found: {name!r}",
            context={"statement_name": name},
        )
        self.name = name


class InvalidStatementNameError(Error):
    """``prepare`` was given a name that is not a well-formed identifier."""


class PipelineError(Error):
    """A statement inside a pipeline batch failed; the whole batch is reported as failed."""

    def __init__(
        self,
        message: str,
        *,
        index: int,
        statement: str | None = None,
        cause: BaseException | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        merged = {"index": index, "statement": statement}
        merged.update(context or {})
        super().__init__(message, context=merged, cause=cause)
        self.index = index
        self.statement = statement


class PoolError(Error):
    """Base class for pool level failures."""


class PoolTimeoutError(PoolError):
    """``acquire`` waited longer than ``connection_timeout_millis``."""


class PoolClosedError(PoolError):
    """The pool has been ended."""


__all__ = [
    "ConnectionError",
    "Error",
    "InvalidStatementNameError",
    "NotPreparedError",
    "PipelineError",
    "PoolClosedError",
    "PoolError",
    "PoolTimeoutError",
    "QueryError",
    "QueryTimeoutError",
]
