from __future__ import annotations

import re
import time
from dataclasses import dataclass, field

import structlog

from pqbridge.infra.errors import InvalidStatementNameError, NotPreparedError

LOGGER = structlog.get_logger(__name__)

# PostgreSQL 識別字長度上限 (NAMEDATALEN - 1)
MAX_NAME_LENGTH = 63
_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")


def validate_statement_name(name: str) -> str:
    if not isinstance(name, str) or not _NAME_PATTERN.match(name):
        raise InvalidStatementNameError(
            f"Invalid prepared statement name: {name!r}",
            context={"statement_name": name},
        )
    if len(name) > MAX_NAME_LENGTH:
        raise InvalidStatementNameError(
            f"Prepared statement name exceeds {MAX_NAME_LENGTH} characters",
            context={"statement_name": name, "length": len(name)},
        )
    return name


@dataclass(slots=True)
class PreparedStatement:
    """One registry entry: caller-chosen name bound to SQL text."""

    name: str
    sql: str
    created_at: float = field(default_factory=time.monotonic)
    # Set once the server has parsed the statement for this connection.
    server_prepared: bool = False
    executions: int = 0


class StatementRegistry:
    """Per-connection mapping of statement name to :class:`PreparedStatement`.

    Re-registering a name replaces the previous entry (last write wins); if the
    SQL text changed, the new entry starts unprepared so the next ``execute``
    parses the new text on the server.
    """

    def __init__(self) -> None:
        self._entries: dict[str, PreparedStatement] = {}

    def register(self, name: str, sql: str) -> PreparedStatement:
        validate_statement_name(name)
        existing = self._entries.get(name)
        if existing is not None and existing.sql == sql:
            return existing
        if existing is not None:
            LOGGER.debug("db.statements.replaced", statement_name=name)
        entry = PreparedStatement(name=name, sql=sql)
        self._entries[name] = entry
        return entry

    def get(self, name: str) -> PreparedStatement:
        try:
            return self._entries[name]
        except KeyError:
            raise NotPreparedError(name) from None

    def mark_executed(self, entry: PreparedStatement) -> None:
        # 名稱可能在執行期間被重新登錄；只更新仍在登錄表中的那一筆
        if self._entries.get(entry.name) is entry:
            entry.server_prepared = True
            entry.executions += 1

    def discard(self, name: str) -> bool:
        return self._entries.pop(name, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def names(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)
