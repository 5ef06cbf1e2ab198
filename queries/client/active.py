"""The active-connection controller.

``ActiveConnection`` is the single entry point for user intent (connect,
execute, cancel, schedule, select). Intent methods only post a message; all
state changes happen when the event loop hands that message to ``handle`` on
the main thread, so subscribers may call intent methods freely without
re-entering the controller.

Background work happens in three kinds of tasks: a short-lived connect task,
one ``SqlListener`` worker per live connection, and short-lived file tasks
for CSV import and export. Every report they post carries the connection
epoch it was started under; reports from an older epoch are dropped.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Sequence

from queries import server
from queries.server.base import Connection
from queries.shared.config import DEFAULT_APPLICATION_NAME, MIN_CONNECT_TIMEOUT_SECS
from queries.shared.exceptions import DriverError, ExportError, FatalChannelLoss, QueriesError
from queries.sql.objects import DBInfo, DBObject, DBTable, DBView
from queries.sql.output import Modification, changes_schema
from queries.tables import io as table_io
from queries.tables.table import Table, quote_identifier

from . import events as ev
from .conn import ConnectionInfo, ConnURI
from .listener import SqlListener
from .loop import EventLoop
from .schedule import QuerySchedule, Scheduler
from .settings import SettingsStore, process_settings

_log = logging.getLogger(__name__)

NO_CONNECTION = "No active connection"
BUSY = "Previous statement not completed yet."


class ConnectionState(Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    EXECUTING = "Executing"


@dataclass(slots=True)
class _Execution:
    exec_id: int
    started_at: float
    imported_rows: int | None = None


Connector = Callable[..., Connection]


class ActiveConnection:
    def __init__(
        self,
        loop: EventLoop,
        settings: SettingsStore | None = None,
        *,
        connector: Connector = server.connect,
        connect_timeout: int = MIN_CONNECT_TIMEOUT_SECS,
        application_name: str = DEFAULT_APPLICATION_NAME,
    ) -> None:
        self._loop = loop
        self._loop.set_handler(self.handle)
        self._settings = settings or process_settings()
        self._connector = connector
        self._connect_timeout = max(connect_timeout, MIN_CONNECT_TIMEOUT_SECS)
        self._application_name = application_name
        self._callbacks = ev.Callbacks()

        self._state = ConnectionState.DISCONNECTED
        self._epoch = 0
        self._exec_counter = 0
        self._execution: _Execution | None = None
        self._worker: SqlListener | None = None
        self._info: ConnectionInfo | None = None
        self._db_info: DBInfo | None = None
        self._selected: DBObject | None = None
        self._last_script: ev.ExecutionRequest | None = None
        self._scheduler = Scheduler(
            loop,
            on_interval=self._on_interval,
            on_notification=self._on_notification,
            listen=self._worker_listen,
            unlisten=self._worker_unlisten,
        )

    # -- observation ----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def info(self) -> ConnectionInfo | None:
        return self._info

    @property
    def db_info(self) -> DBInfo | None:
        return self._db_info

    @property
    def selected_object(self) -> DBObject | None:
        return self._selected

    @property
    def schedule(self) -> QuerySchedule:
        return self._scheduler.state

    @property
    def started_at(self) -> float | None:
        return self._execution.started_at if self._execution else None

    @property
    def settings(self) -> SettingsStore:
        return self._settings

    def connect_connected(self, subscriber: Callable[[ev.Connected], None]) -> None:
        self._callbacks.bind("connected", subscriber)

    def connect_conn_failure(self, subscriber: Callable[[ev.ConnectionFailed], None]) -> None:
        self._callbacks.bind("conn_failure", subscriber)

    def connect_disconnected(self, subscriber: Callable[[ev.Disconnected], None]) -> None:
        self._callbacks.bind("disconnected", subscriber)

    def connect_exec_result(self, subscriber: Callable[[ev.ExecutionCompleted], None]) -> None:
        self._callbacks.bind("exec_result", subscriber)

    def connect_error(self, subscriber: Callable[[ev.Error], None]) -> None:
        self._callbacks.bind("error", subscriber)

    def connect_schema_update(self, subscriber: Callable[[ev.SchemaUpdated], None]) -> None:
        self._callbacks.bind("schema_update", subscriber)

    def connect_object_selected(self, subscriber: Callable[[ev.ObjectSelected], None]) -> None:
        self._callbacks.bind("object_selected", subscriber)

    def connect_exported(self, subscriber: Callable[[ev.ExportCompleted], None]) -> None:
        self._callbacks.bind("exported", subscriber)

    # -- intent (any thread; handled later on the main thread) ------------------

    def send(self, message: Any) -> None:
        self._loop.post(message)

    def _reply(self, message: Any) -> bool:
        """Post a task thread's result; False when the loop is already gone."""
        try:
            self.send(message)
        except FatalChannelLoss as exc:
            _log.debug("Dropped %s from a background task: %s", type(message).__name__, exc)
            return False
        return True

    def connect(self, uri: ConnURI) -> None:
        self.send(ev.ConnectRequest(uri))

    def disconnect(self) -> None:
        self.send(ev.DisconnectRequest())

    def execute(
        self,
        script: str,
        substitutions: Mapping[str, str] | None = None,
        parse: bool = True,
        plan: bool = False,
    ) -> None:
        self.send(ev.ExecutionRequest(script, dict(substitutions or {}), parse, plan))

    def cancel(self) -> None:
        self.send(ev.CancelRequest())

    def set_schedule(self, schedule: QuerySchedule) -> None:
        self.send(ev.ScheduleRequest(schedule))

    def select_object(self, path: Sequence[int] | None) -> None:
        self.send(ev.SelectObjectRequest(tuple(path) if path is not None else None))

    def query_selected(self) -> None:
        self.send(ev.QuerySelectedRequest())

    def import_csv(self, path: str | Path) -> None:
        self.send(ev.ImportRequest(Path(path)))

    def export_table(self, table: Table, path: str | Path) -> None:
        self.send(ev.ExportRequest(table.copy(), Path(path)))

    def shutdown(self) -> None:
        """Tear everything down immediately; used when the channel is lost."""
        self._scheduler.stop()
        self._stop_worker(cancel=True)
        self._epoch += 1
        self._state = ConnectionState.DISCONNECTED
        self._loop.close()

    # -- dispatch (main thread) -------------------------------------------------

    def handle(self, message: Any) -> None:
        handler = self._HANDLERS.get(type(message))
        if handler is None:
            raise TypeError(f"Unexpected message {type(message).__name__}")
        handler(self, message)

    def _broadcast(self, event: Any) -> None:
        self._callbacks.emit(event)

    def _is_stale(self, epoch: int) -> bool:
        if epoch != self._epoch:
            _log.debug("Dropping report from stale epoch %d (current %d)", epoch, self._epoch)
            return True
        return False

    # connection lifecycle

    def _handle_connect(self, message: ev.ConnectRequest) -> None:
        if self._state in (ConnectionState.CONNECTED, ConnectionState.EXECUTING):
            self._handle_disconnect(ev.DisconnectRequest())
        self._epoch += 1
        self._state = ConnectionState.CONNECTING
        self._info = message.uri.info
        thread = threading.Thread(
            target=self._connect_task,
            args=(message.uri, self._epoch),
            daemon=True,
            name=f"connect-{self._epoch}",
        )
        thread.start()

    def _connect_task(self, uri: ConnURI, epoch: int) -> None:
        try:
            connection = self._connector(
                uri,
                connect_timeout=self._connect_timeout,
                application_name=self._application_name,
            )
        except DriverError as exc:
            self._reply(ev.ConnectFailed(epoch, str(exc)))
            return
        try:
            details = connection.info()
        except DriverError as exc:
            _log.warning("Unable to read server details: %s", exc)
            details = None
        if not self._reply(ev.ConnectSucceeded(epoch, connection, uri.info, details)):
            connection.close()

    def _handle_connect_succeeded(self, message: ev.ConnectSucceeded) -> None:
        if self._is_stale(message.epoch) or self._state is not ConnectionState.CONNECTING:
            threading.Thread(target=message.connection.close, daemon=True).start()
            return
        worker = SqlListener(self.send, message.epoch, self._settings)
        worker.start()
        worker.set_connection(message.connection)
        self._worker = worker
        self._state = ConnectionState.CONNECTED
        self._info = message.info
        self._db_info = DBInfo((), message.details)
        self._broadcast(ev.Connected(message.info, self._db_info))
        worker.refresh_schema()

    def _handle_connect_failed(self, message: ev.ConnectFailed) -> None:
        if self._is_stale(message.epoch) or self._state is not ConnectionState.CONNECTING:
            return
        self._state = ConnectionState.DISCONNECTED
        self._info = None
        self._broadcast(ev.ConnectionFailed(message.message))

    def _handle_disconnect(self, message: ev.DisconnectRequest) -> None:
        if self._state is ConnectionState.DISCONNECTED:
            return
        self._teardown(cancel=self._state is ConnectionState.EXECUTING)
        self._broadcast(ev.Disconnected())

    def _handle_connection_lost(self, message: ev.ConnectionLost) -> None:
        if self._is_stale(message.epoch) or self._state is ConnectionState.DISCONNECTED:
            return
        _log.warning("Connection lost: %s", message.message)
        self._teardown(cancel=False)
        self._broadcast(ev.Disconnected(message.message))

    def _teardown(self, cancel: bool) -> None:
        self._scheduler.stop()
        self._stop_worker(cancel=cancel)
        self._epoch += 1
        self._state = ConnectionState.DISCONNECTED
        self._execution = None
        self._info = None
        self._db_info = None
        self._selected = None

    def _stop_worker(self, cancel: bool) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        if cancel:
            worker.cancel()
        worker.shutdown()

    # execution

    def _handle_execution_request(self, message: ev.ExecutionRequest) -> None:
        if self._state is ConnectionState.EXECUTING:
            self._broadcast(ev.Error(BUSY))
            return
        if self._state is not ConnectionState.CONNECTED or self._worker is None:
            self._broadcast(ev.Error(NO_CONNECTION))
            return
        if message.origin == "user":
            self._last_script = message
        self._start_execution(message.script, message.substitutions, message.parse, plan=message.plan)

    def _start_execution(
        self,
        script: str,
        substitutions: Mapping[str, str],
        parse: bool,
        imported_rows: int | None = None,
        *,
        plan: bool = False,
    ) -> None:
        assert self._worker is not None
        self._exec_counter += 1
        self._execution = _Execution(self._exec_counter, self._loop.now(), imported_rows)
        self._state = ConnectionState.EXECUTING
        self._worker.send_command(script, self._exec_counter, substitutions, parse, plan)

    def _handle_execution_finished(self, message: ev.ExecutionFinished) -> None:
        execution = self._execution
        if (
            self._is_stale(message.epoch)
            or self._state is not ConnectionState.EXECUTING
            or execution is None
            or execution.exec_id != message.exec_id
        ):
            return
        self._state = ConnectionState.CONNECTED
        self._execution = None
        results = list(message.results)
        if execution.imported_rows is not None:
            results = [
                Modification(f"{execution.imported_rows} row(s) imported") if isinstance(out, Modification) else out
                for out in results
            ]
        self._broadcast(ev.ExecutionCompleted(results))
        if any(changes_schema(output) for output in results) and self._worker is not None:
            self._worker.refresh_schema()

    def _handle_worker_error(self, message: ev.WorkerError) -> None:
        if self._is_stale(message.epoch):
            return
        if (
            message.exec_id is not None
            and self._execution is not None
            and self._execution.exec_id == message.exec_id
        ):
            self._state = ConnectionState.CONNECTED
            self._execution = None
        self._broadcast(ev.Error(message.message))

    def _handle_cancel(self, message: ev.CancelRequest) -> None:
        if self._state is ConnectionState.EXECUTING and self._worker is not None:
            self._worker.cancel()

    # schema and selection

    def _handle_schema_loaded(self, message: ev.SchemaLoaded) -> None:
        if self._is_stale(message.epoch) or self._db_info is None:
            return
        self._db_info = replace(self._db_info, schema=tuple(message.objects))
        self._broadcast(ev.SchemaUpdated(self._db_info))

    def _handle_schema_failed(self, message: ev.SchemaFailed) -> None:
        if self._is_stale(message.epoch):
            return
        self._broadcast(ev.Error(message.message))

    def _handle_select_object(self, message: ev.SelectObjectRequest) -> None:
        obj = None
        if message.path is not None and self._db_info is not None:
            obj = self._db_info.object_at(message.path)
        self._selected = obj
        self._broadcast(ev.ObjectSelected(obj))

    def _handle_query_selected(self, message: ev.QuerySelectedRequest) -> None:
        script = selection_query(self._selected)
        if script is None:
            self._broadcast(ev.Error("Select a table or view first"))
            return
        self._handle_execution_request(ev.ExecutionRequest(script))

    # scheduling

    def _handle_schedule_request(self, message: ev.ScheduleRequest) -> None:
        try:
            self._scheduler.set(message.schedule)
        except ValueError as exc:
            self._broadcast(ev.Error(str(exc)))

    def _handle_schedule_tick(self, message: ev.ScheduleTick) -> None:
        self._scheduler.tick(message.generation)

    def _handle_notification(self, message: ev.NotificationArrived) -> None:
        if self._is_stale(message.epoch):
            return
        self._scheduler.notify(message.channel, message.payload)

    def _on_interval(self) -> None:
        # Ticks that find the controller busy or idle-without-script are dropped.
        if self._state is not ConnectionState.CONNECTED or self._last_script is None:
            _log.debug("Scheduled tick dropped in state %s", self._state.value)
            return
        last = self._last_script
        self._start_execution(last.script, last.substitutions, last.parse, plan=last.plan)

    def _on_notification(self, selection_path: tuple[int, ...] | None) -> None:
        if self._state is not ConnectionState.CONNECTED:
            _log.debug("Notification-triggered run dropped in state %s", self._state.value)
            return
        if selection_path is not None and self._db_info is not None:
            script = selection_query(self._db_info.object_at(selection_path))
            if script is not None:
                self._start_execution(script, {}, True)
                return
        if self._last_script is not None:
            last = self._last_script
            self._start_execution(last.script, last.substitutions, last.parse, plan=last.plan)

    def _worker_listen(self, channel: str) -> None:
        if self._worker is None:
            raise ValueError(NO_CONNECTION)
        self._worker.listen(channel)

    def _worker_unlisten(self, channel: str) -> None:
        if self._worker is not None:
            self._worker.unlisten(channel)

    # file tasks

    def _handle_import(self, message: ev.ImportRequest) -> None:
        if self._state is not ConnectionState.CONNECTED:
            self._broadcast(ev.Error(BUSY if self._state is ConnectionState.EXECUTING else NO_CONNECTION))
            return
        target = self._selected
        if not isinstance(target, DBTable):
            self._broadcast(ev.Error("Select a table to import into"))
            return
        threading.Thread(
            target=self._import_task,
            args=(message.path, target, self._epoch, self._info.engine.value),
            daemon=True,
            name="csv-import",
        ).start()

    def _import_task(self, path: Path, target: DBTable, epoch: int, dialect: str) -> None:
        columns = [col.name for col in target.cols]
        try:
            table = table_io.read_csv(path)
            sql = table.sql_table_insertion(
                f"{target.schema}.{target.name}",
                columns if len(columns) == len(table.columns) else None,
                dialect=dialect,
            )
        except ExportError as exc:
            self._reply(ev.TaskFailed(epoch, str(exc)))
            return
        except ValueError as exc:
            self._reply(ev.TaskFailed(epoch, f"Unable to import {path.name}: {exc}"))
            return
        if sql is None:
            self._reply(ev.TaskFailed(epoch, f"No rows to import from {path.name}"))
            return
        self._reply(ev.ImportReady(epoch, sql, table.shape()[0]))

    def _handle_import_ready(self, message: ev.ImportReady) -> None:
        if self._is_stale(message.epoch):
            return
        if self._state is not ConnectionState.CONNECTED:
            self._broadcast(ev.Error(BUSY))
            return
        self._start_execution(message.sql, {}, False, imported_rows=message.nrows)

    def _handle_export(self, message: ev.ExportRequest) -> None:
        threading.Thread(
            target=self._export_task,
            args=(message.table, message.path, self._epoch),
            daemon=True,
            name="export",
        ).start()

    def _export_task(self, table: Table, path: Path, epoch: int) -> None:
        try:
            written = table_io.write_table(table, path)
        except QueriesError as exc:
            self._reply(ev.TaskFailed(epoch, str(exc)))
            return
        self._reply(ev.ExportFinished(written))

    def _handle_export_finished(self, message: ev.ExportFinished) -> None:
        self._broadcast(ev.ExportCompleted(message.path))

    def _handle_task_failed(self, message: ev.TaskFailed) -> None:
        self._broadcast(ev.Error(message.message))

    _HANDLERS: dict[type, Callable[[ActiveConnection, Any], None]] = {
        ev.ConnectRequest: _handle_connect,
        ev.DisconnectRequest: _handle_disconnect,
        ev.ExecutionRequest: _handle_execution_request,
        ev.CancelRequest: _handle_cancel,
        ev.ScheduleRequest: _handle_schedule_request,
        ev.ScheduleTick: _handle_schedule_tick,
        ev.SelectObjectRequest: _handle_select_object,
        ev.QuerySelectedRequest: _handle_query_selected,
        ev.ImportRequest: _handle_import,
        ev.ExportRequest: _handle_export,
        ev.ConnectSucceeded: _handle_connect_succeeded,
        ev.ConnectFailed: _handle_connect_failed,
        ev.ConnectionLost: _handle_connection_lost,
        ev.ExecutionFinished: _handle_execution_finished,
        ev.WorkerError: _handle_worker_error,
        ev.SchemaLoaded: _handle_schema_loaded,
        ev.SchemaFailed: _handle_schema_failed,
        ev.NotificationArrived: _handle_notification,
        ev.ImportReady: _handle_import_ready,
        ev.ExportFinished: _handle_export_finished,
        ev.TaskFailed: _handle_task_failed,
    }


def selection_query(obj: DBObject | None) -> str | None:
    """Return the ``SELECT *`` script for a selected table or view."""
    if not isinstance(obj, (DBTable, DBView)):
        return None
    return f"SELECT * FROM {quote_identifier(obj.schema)}.{quote_identifier(obj.name)};"
