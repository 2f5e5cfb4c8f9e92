"""Lightweight typing protocols and value types for the transport seam.

The connection engine only ever talks to a transport through
:class:`TransportProtocol`. :class:`pqbridge.db.transport.PsycopgTransport` is the
real implementation; tests plug in an in-memory fake that satisfies the same
protocol structurally.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

Row = dict[str, Any]


@dataclass(frozen=True, slots=True)
class StatementResult:
    """Outcome of one statement as reported by the server."""

    rows: list[Row] = field(default_factory=list)
    rowcount: int = -1
    status: str | None = None
    returns_rows: bool = False

    def outcome(self) -> list[Row] | int:
        """Rows for row-returning statements, otherwise the affected-row count."""
        if self.returns_rows:
            return self.rows
        return self.rowcount


@dataclass(frozen=True, slots=True)
class Notification:
    channel: str
    payload: str
    pid: int = 0


class TransportProtocol(Protocol):
    """Blocking session with the server. Methods are called from one worker thread."""

    @property
    def closed(self) -> bool: ...

    @property
    def in_transaction(self) -> bool: ...

    def connect(self) -> None: ...

    def execute(
        self, query: str, params: Sequence[Any] | None = None, *, prepare: bool = False
    ) -> StatementResult: ...

    def pipeline(self, queries: Sequence[str]) -> list[StatementResult]: ...

    def listen(self, channel: str) -> None: ...

    def unlisten(self, channel: str) -> None: ...

    def drain_notifications(self) -> list[Notification]: ...

    def ping(self) -> None: ...

    # cancel 與 abort 可從其他執行緒呼叫
    def cancel(self) -> None: ...

    def abort(self) -> None: ...

    def close(self) -> None: ...


__all__ = [
    "Notification",
    "Row",
    "StatementResult",
    "TransportProtocol",
]
