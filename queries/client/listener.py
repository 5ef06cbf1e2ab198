"""The SQL worker: a background thread that owns the live connection."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from queries.server.base import Connection
from queries.server.marshal import rowset_to_table
from queries.shared.config import ExecutionSettings
from queries.shared.exceptions import (
    ConnectionLostError,
    DecodeError,
    DriverError,
    FatalChannelLoss,
    NotSupportedError,
    SchemaError,
    ServerError,
    StatementCancelled,
    StatementTimeout,
)
from queries.sql import classifier
from queries.sql.classifier import SqlStatement, StatementKind
from queries.sql.output import Empty, Invalid, Modification, Statement, StatementOutput, Valid

from .conn import Engine
from .events import (
    ConnectionLost,
    ExecutionFinished,
    NotificationArrived,
    SchemaFailed,
    SchemaLoaded,
    WorkerError,
)
from .settings import SettingsStore

_log = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "statement timed out"
CANCEL_MESSAGE = "statement cancelled"
CANCELLED_BEFORE_START = "Execution cancelled before it started"
# SQLite has no JSON plan output; its plan comes back as rows.
PLAN_PREFIXES = {
    Engine.POSTGRES: "EXPLAIN (FORMAT json)",
    Engine.SQLITE: "EXPLAIN QUERY PLAN",
}
# Idle wait between notification polls while commands are absent.
POLL_INTERVAL_SECS = 0.2

_MODIFICATION_VERBS = {
    StatementKind.INSERT: "inserted",
    StatementKind.UPDATE: "updated",
    StatementKind.DELETE: "deleted",
}


@dataclass(frozen=True, slots=True)
class SetConnection:
    connection: Connection


@dataclass(frozen=True, slots=True)
class SendCommand:
    script: str
    exec_id: int
    substitutions: Mapping[str, str] = field(default_factory=dict)
    parse: bool = True
    plan: bool = False


@dataclass(frozen=True, slots=True)
class RefreshSchema:
    pass


@dataclass(frozen=True, slots=True)
class Listen:
    channel: str


@dataclass(frozen=True, slots=True)
class Unlisten:
    channel: str


@dataclass(frozen=True, slots=True)
class Shutdown:
    pass


class _ConnectionDropped(Exception):
    """The connection was found dead while running a command."""


class SqlListener:
    """Serialises every interaction with one database connection.

    Commands queue in arrival order and run one at a time on a daemon thread;
    results go back through ``emit`` (the main-thread channel), tagged with
    the connection ``epoch`` this worker was created for. ``cancel`` and
    ``shutdown`` are safe to call from any thread.
    """

    def __init__(
        self,
        emit: Callable[[Any], None],
        epoch: int,
        settings: SettingsStore,
        *,
        poll_interval: float = POLL_INTERVAL_SECS,
    ) -> None:
        self._emit = emit
        self.epoch = epoch
        self._settings = settings
        self._poll_interval = poll_interval
        self._commands: queue.Queue[Any] = queue.Queue()
        self._connection: Connection | None = None
        self._channels: set[str] = set()
        self._stopping = threading.Event()
        self._cancel = threading.Event()
        self._pending_lock = threading.Lock()
        self._pending_scripts = 0
        self._thread: threading.Thread | None = None

    # -- public API, any thread ---------------------------------------------

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"SqlListener-{self.epoch}")
        self._thread.start()

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def set_connection(self, connection: Connection) -> None:
        self._commands.put(SetConnection(connection))

    def send_command(
        self,
        script: str,
        exec_id: int,
        substitutions: Mapping[str, str] | None = None,
        parse: bool = True,
        plan: bool = False,
    ) -> None:
        with self._pending_lock:
            self._pending_scripts += 1
        self._commands.put(SendCommand(script, exec_id, dict(substitutions or {}), parse, plan))

    def refresh_schema(self) -> None:
        self._commands.put(RefreshSchema())

    def listen(self, channel: str) -> None:
        self._commands.put(Listen(channel))

    def unlisten(self, channel: str) -> None:
        self._commands.put(Unlisten(channel))

    def cancel(self) -> None:
        """Abort the running statement and abandon the rest of its script."""
        with self._pending_lock:
            if self._pending_scripts == 0:
                return
            self._cancel.set()
        connection = self._connection
        if connection is not None:
            connection.cancel()

    def shutdown(self, wait: float | None = None) -> None:
        self._stopping.set()
        self._commands.put(Shutdown())
        if wait is not None and self._thread is not None:
            self._thread.join(timeout=wait)

    # -- worker thread ------------------------------------------------------

    def _run(self) -> None:
        try:
            while True:
                try:
                    command = self._commands.get(timeout=self._poll_interval)
                except queue.Empty:
                    self._poll_notifications()
                    continue
                if isinstance(command, Shutdown):
                    break
                if self._stopping.is_set():
                    # Commands queued before a shutdown are dropped unanswered.
                    continue
                try:
                    self._handle(command)
                except _ConnectionDropped:
                    break
                self._poll_notifications()
        except FatalChannelLoss as exc:
            _log.error("Worker %d lost its event channel: %s", self.epoch, exc)
        finally:
            self._drop_connection()

    def _handle(self, command: Any) -> None:
        if isinstance(command, SetConnection):
            self._drop_connection()
            self._connection = command.connection
        elif isinstance(command, SendCommand):
            try:
                self._execute(command)
            finally:
                with self._pending_lock:
                    self._pending_scripts -= 1
                    if self._pending_scripts == 0:
                        self._cancel.clear()
        elif isinstance(command, RefreshSchema):
            self._refresh_schema()
        elif isinstance(command, Listen):
            self._listen(command.channel)
        elif isinstance(command, Unlisten):
            self._unlisten(command.channel)
        else:  # pragma: no cover - commands are built by this module
            raise TypeError(f"Unknown worker command {command!r}")

    def _require_connection(self, exec_id: int | None) -> Connection | None:
        if self._connection is None:
            self._emit(WorkerError(self.epoch, exec_id, "No active connection"))
        return self._connection

    def _execute(self, command: SendCommand) -> None:
        connection = self._require_connection(command.exec_id)
        if connection is None:
            return
        if self._cancel.is_set():
            self._emit(ExecutionFinished(self.epoch, command.exec_id, [Invalid(CANCELLED_BEFORE_START, False)]))
            return
        settings = self._settings.get()
        results, lost = run_script(
            connection,
            command.script,
            settings,
            substitutions=command.substitutions,
            parse=command.parse,
            plan=command.plan,
            cancelled=self._cancel.is_set,
        )
        self._emit(ExecutionFinished(self.epoch, command.exec_id, results))
        if lost is not None:
            self._emit(ConnectionLost(self.epoch, lost))
            raise _ConnectionDropped(lost)

    def _refresh_schema(self) -> None:
        connection = self._require_connection(None)
        if connection is None:
            return
        try:
            objects = connection.introspect_schema()
        except SchemaError as exc:
            self._emit(SchemaFailed(self.epoch, str(exc)))
            return
        self._emit(SchemaLoaded(self.epoch, objects))

    def _listen(self, channel: str) -> None:
        connection = self._require_connection(None)
        if connection is None:
            return
        try:
            connection.listen(channel)
        except (NotSupportedError, ServerError) as exc:
            self._emit(WorkerError(self.epoch, None, str(exc)))
            return
        self._channels.add(channel)

    def _unlisten(self, channel: str) -> None:
        if channel not in self._channels or self._connection is None:
            return
        self._channels.discard(channel)
        try:
            self._connection.unlisten(channel)
        except (NotSupportedError, ServerError) as exc:
            _log.warning("UNLISTEN %s failed: %s", channel, exc)

    def _poll_notifications(self) -> None:
        if not self._channels or self._connection is None:
            return
        try:
            received = self._connection.poll_notifications(0.0)
        except ConnectionLostError as exc:
            self._emit(ConnectionLost(self.epoch, str(exc)))
            raise _ConnectionDropped(str(exc)) from exc
        for notification in received:
            if notification.channel in self._channels:
                self._emit(NotificationArrived(self.epoch, notification.channel, notification.payload))

    def _drop_connection(self) -> None:
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        self._channels.clear()
        connection.close()
        _log.debug("Worker %d dropped its connection", self.epoch)


def prepare_statements(
    script: str,
    substitutions: Mapping[str, str],
    parse: bool,
) -> tuple[list[SqlStatement], str | None]:
    """Split, substitute and classify a script; returns statements and any lexer error."""
    if not parse:
        text = classifier.substitute(script.strip().rstrip(";").strip(), substitutions)
        if not text:
            return [], None
        return [SqlStatement(text, classifier.classify(text))], None
    parsed = classifier.parse_script(script)
    statements = []
    for statement in parsed.statements:
        text = classifier.substitute(statement.text, substitutions)
        statements.append(SqlStatement(text, classifier.classify(text)))
    return statements, parsed.error


def run_script(
    connection: Connection,
    script: str,
    settings: ExecutionSettings,
    *,
    substitutions: Mapping[str, str] | None = None,
    parse: bool = True,
    plan: bool = False,
    cancelled: Callable[[], bool] = lambda: False,
) -> tuple[list[StatementOutput], str | None]:
    """Execute a script statement by statement.

    Returns the outputs and, when the connection died along the way, the
    reason. Policy is checked for the whole script first: if any statement
    is refused, nothing runs and each refused statement yields an Invalid.
    After a timeout, a cancel or a lost connection the remaining statements
    are abandoned.

    With ``plan`` every query runs under EXPLAIN instead; a script holding
    anything but queries is refused as a whole.
    """
    statements, lex_error = prepare_statements(script, substitutions or {}, parse)
    if plan:
        if not all(classifier.is_plannable(statement) for statement in statements):
            return [Invalid(classifier.PLAN_REJECTION, False)], None
        prefix = PLAN_PREFIXES[connection.engine]
        statements = [classifier.explain_statement(statement, prefix) for statement in statements]
    rejected = classifier.check_policy(statements, settings)
    if rejected:
        return [Invalid(message, False) for _statement, message in rejected], None

    outputs: list[StatementOutput] = []
    for statement in statements:
        if cancelled():
            return outputs, None
        text = classifier.inject_row_limit(statement, settings.row_limit) if parse else statement.text
        try:
            outputs.append(_run_statement(connection, statement, text, settings))
        except StatementTimeout:
            outputs.append(Invalid(TIMEOUT_MESSAGE, False))
            if not connection.ping():
                return outputs, "Connection lost after statement timeout"
            return outputs, None
        except StatementCancelled:
            outputs.append(Invalid(CANCEL_MESSAGE, False))
            return outputs, None
        except ConnectionLostError as exc:
            outputs.append(Invalid(str(exc), True))
            return outputs, str(exc)
        except DecodeError as exc:
            outputs.append(Invalid(str(exc), False))
        except DriverError as exc:
            outputs.append(Invalid(str(exc), True))
    if lex_error is not None:
        outputs.append(Invalid(lex_error, False))
    return outputs, None


def _run_statement(
    connection: Connection,
    statement: SqlStatement,
    text: str,
    settings: ExecutionSettings,
) -> StatementOutput:
    timeout = float(settings.timeout_secs)
    if not statement.kind.may_return_rows:
        connection.execute(text, timeout)
        return Statement(statement.kind.value)
    rowset = connection.query(text, timeout)
    if rowset.has_result:
        return Valid(f"{text};", rowset_to_table(rowset, settings.column_limit))
    if statement.kind.is_dml:
        count = max(rowset.rowcount, 0)
        return Modification(f"{count} row(s) {_MODIFICATION_VERBS[statement.kind]}")
    if statement.kind is StatementKind.OTHER:
        return Statement(statement.keyword or StatementKind.OTHER.value)
    return Empty()
