"""Messages exchanged through the main-thread channel, and the subscriber spine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

from queries.server.base import Connection
from queries.sql.objects import DBDetails, DBInfo, DBObject
from queries.sql.output import StatementOutput, snapshot
from queries.tables.table import Table

from .conn import ConnectionInfo, ConnURI

_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Intent: posted by callers, handled by the controller on the main thread


@dataclass(frozen=True, slots=True)
class ConnectRequest:
    uri: ConnURI


@dataclass(frozen=True, slots=True)
class DisconnectRequest:
    pass


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    script: str
    substitutions: Mapping[str, str] = field(default_factory=dict)
    parse: bool = True
    # Run EXPLAIN for every query instead of the query itself.
    plan: bool = False
    # "user" requests become the script repeated by interval schedules.
    origin: str = "user"


@dataclass(frozen=True, slots=True)
class CancelRequest:
    pass


@dataclass(frozen=True, slots=True)
class ScheduleRequest:
    schedule: Any


@dataclass(frozen=True, slots=True)
class SelectObjectRequest:
    path: tuple[int, ...] | None


@dataclass(frozen=True, slots=True)
class QuerySelectedRequest:
    pass


@dataclass(frozen=True, slots=True)
class ImportRequest:
    path: Path


@dataclass(frozen=True, slots=True)
class ExportRequest:
    table: Table
    path: Path


@dataclass(frozen=True, slots=True)
class ScheduleTick:
    generation: int


# ---------------------------------------------------------------------------
# Reports: posted by background tasks, tagged with the epoch they belong to


@dataclass(frozen=True, slots=True)
class ConnectSucceeded:
    epoch: int
    connection: Connection
    info: ConnectionInfo
    details: DBDetails | None


@dataclass(frozen=True, slots=True)
class ConnectFailed:
    epoch: int
    message: str


@dataclass(frozen=True, slots=True)
class ExecutionFinished:
    epoch: int
    exec_id: int
    results: list[StatementOutput]


@dataclass(frozen=True, slots=True)
class WorkerError:
    epoch: int
    exec_id: int | None
    message: str


@dataclass(frozen=True, slots=True)
class SchemaLoaded:
    epoch: int
    objects: list[DBObject]


@dataclass(frozen=True, slots=True)
class SchemaFailed:
    epoch: int
    message: str


@dataclass(frozen=True, slots=True)
class ConnectionLost:
    epoch: int
    message: str


@dataclass(frozen=True, slots=True)
class NotificationArrived:
    epoch: int
    channel: str
    payload: str


@dataclass(frozen=True, slots=True)
class ImportReady:
    epoch: int
    sql: str
    nrows: int


@dataclass(frozen=True, slots=True)
class ExportFinished:
    path: Path


@dataclass(frozen=True, slots=True)
class TaskFailed:
    epoch: int
    message: str


# ---------------------------------------------------------------------------
# Broadcast: what subscribers observe


@dataclass(frozen=True, slots=True)
class Connected:
    info: ConnectionInfo
    db_info: DBInfo | None = None


@dataclass(frozen=True, slots=True)
class ConnectionFailed:
    message: str


@dataclass(frozen=True, slots=True)
class Disconnected:
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class ExecutionCompleted:
    results: list[StatementOutput]


@dataclass(frozen=True, slots=True)
class Error:
    message: str


@dataclass(frozen=True, slots=True)
class SchemaUpdated:
    info: DBInfo


@dataclass(frozen=True, slots=True)
class ObjectSelected:
    obj: DBObject | None


@dataclass(frozen=True, slots=True)
class ExportCompleted:
    path: Path


EVENT_KINDS: dict[str, type] = {
    "connected": Connected,
    "conn_failure": ConnectionFailed,
    "disconnected": Disconnected,
    "exec_result": ExecutionCompleted,
    "error": Error,
    "schema_update": SchemaUpdated,
    "object_selected": ObjectSelected,
    "exported": ExportCompleted,
}

Subscriber = Callable[[Any], None]


class Callbacks:
    """Ordered subscriber lists, one per event kind. Subscribers are never removed."""

    def __init__(self) -> None:
        self._registry: dict[str, list[Subscriber]] = {kind: [] for kind in EVENT_KINDS}

    def bind(self, kind: str, subscriber: Subscriber) -> None:
        if kind not in self._registry:
            raise KeyError(f"Unknown event kind '{kind}'")
        self._registry[kind].append(subscriber)

    def count(self, kind: str) -> int:
        return len(self._registry[kind])

    def emit(self, event: Any) -> None:
        """Invoke every subscriber of the event's kind, in registration order.

        Result batches are copied per subscriber, so tables handed to one
        subscriber can be mutated without affecting the others.
        """
        kind = _kind_of(event)
        # Subscribers bound while this event is delivered only see later events.
        for subscriber in tuple(self._registry[kind]):
            if isinstance(event, ExecutionCompleted):
                subscriber(ExecutionCompleted(snapshot(event.results)))
            else:
                subscriber(event)


def _kind_of(event: Any) -> str:
    for kind, event_type in EVENT_KINDS.items():
        if isinstance(event, event_type):
            return kind
    raise TypeError(f"{type(event).__name__} is not a broadcast event")
