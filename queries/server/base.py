"""Driver boundary between the worker and a concrete database engine."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Sequence

from queries.client.conn import Engine
from queries.sql.objects import DBDetails, DBObject
from queries.shared.exceptions import DriverError, NotSupportedError

_log = logging.getLogger(__name__)

LIVENESS_QUERY = "SELECT 1"


@dataclass(frozen=True, slots=True)
class RowSet:
    """Raw rows of one statement with the server-declared type name of each column.

    ``columns`` is empty for statements that do not return rows; ``rowcount``
    is then the number of affected rows (or -1 when unknown). ``json_parsed``
    is set by drivers that hand JSON cells over already decoded.
    """

    columns: tuple[str, ...] = ()
    column_types: tuple[str, ...] = ()
    rows: Sequence[tuple[Any, ...]] = field(default_factory=list)
    rowcount: int = -1
    json_parsed: bool = False

    @property
    def has_result(self) -> bool:
        return bool(self.columns)


@dataclass(frozen=True, slots=True)
class Notification:
    channel: str
    payload: str


class Connection(ABC):
    """One live database session, owned by a single worker thread.

    Implementations translate driver-library exceptions into the project
    hierarchy: ``ServerError`` for refused statements, ``StatementTimeout``
    and ``StatementCancelled`` for aborted ones and ``ConnectionLostError``
    when the session is gone. ``cancel`` is the only method that may be
    called from another thread.
    """

    engine: Engine

    @abstractmethod
    def query(self, sql: str, timeout: float | None = None) -> RowSet:
        """Run a statement and return its rows (possibly none)."""

    @abstractmethod
    def execute(self, sql: str, timeout: float | None = None) -> int:
        """Run a statement and return the affected row count (0 when not applicable)."""

    @abstractmethod
    def info(self) -> DBDetails | None:
        """Best-effort server details; never raises."""

    @abstractmethod
    def introspect_schema(self) -> list[DBObject]:
        """Return the schema tree; raises SchemaError."""

    @abstractmethod
    def cancel(self) -> None:
        """Abort the statement currently running on this connection, if any."""

    @abstractmethod
    def close(self) -> None:
        ...

    def listen(self, channel: str) -> None:
        raise NotSupportedError(f"Notifications are not supported for {self.engine.value} connections")

    def unlisten(self, channel: str) -> None:
        raise NotSupportedError(f"Notifications are not supported for {self.engine.value} connections")

    def poll_notifications(self, timeout: float = 0.0) -> list[Notification]:
        return []

    def ping(self) -> bool:
        """Return True when the connection still answers a trivial query."""
        try:
            self.query(LIVENESS_QUERY, timeout=None)
        except DriverError as exc:
            _log.warning("Liveness probe failed: %s", exc)
            return False
        return True
