from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable

import pytest

from queries.client import events as ev
from queries.client.active import BUSY, NO_CONNECTION, ActiveConnection, ConnectionState, selection_query
from queries.client.conn import ConnURI
from queries.client.loop import EventLoop
from queries.client.schedule import Interval, Notification, Off
from queries.client.settings import SettingsStore
from queries.shared.config import ExecutionSettings
from queries.sql.classifier import DDL_REJECTION
from queries.sql.objects import DBColumn, DBFunction, DBSchema, DBTable, DBView
from queries.sql.output import Invalid, Modification, Statement, Valid
from queries.tables.column import Column
from queries.tables.field import DBType
from queries.tables.table import Table

ENDLESS_QUERY = (
    "WITH RECURSIVE r(n) AS (SELECT 1 UNION ALL SELECT n + 1 FROM r) "
    "SELECT count(*) FROM r"
)


class Recorder:
    """Collects every broadcast event in delivery order."""

    def __init__(self, active: ActiveConnection) -> None:
        self.events: list[Any] = []
        for binder in (
            active.connect_connected,
            active.connect_conn_failure,
            active.connect_disconnected,
            active.connect_exec_result,
            active.connect_error,
            active.connect_schema_update,
            active.connect_object_selected,
            active.connect_exported,
        ):
            binder(self.events.append)

    def of(self, kind: type) -> list[Any]:
        return [event for event in self.events if isinstance(event, kind)]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Harness:
    def __init__(
        self,
        settings: ExecutionSettings,
        connector: Callable[..., Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.loop = EventLoop(clock=clock)
        kwargs = {"connector": connector} if connector is not None else {}
        self.active = ActiveConnection(self.loop, SettingsStore(settings), **kwargs)
        self.recorder = Recorder(self.active)

    def wait_for(self, predicate: Callable[[], bool], timeout: float = 10.0) -> None:
        assert self.loop.run_until(predicate, timeout=timeout), "condition not reached in time"

    def settle(self, seconds: float) -> None:
        self.loop.run_until(lambda: False, timeout=seconds)

    def count(self, kind: type) -> int:
        return len(self.recorder.of(kind))

    def connect(self, uri: ConnURI) -> None:
        self.active.connect(uri)
        self.wait_for(lambda: self.count(ev.SchemaUpdated) >= 1 or self.count(ev.ConnectionFailed) >= 1)

    def run(self, script: str, **kwargs: Any) -> list[Any]:
        expected = self.count(ev.ExecutionCompleted) + 1
        self.active.execute(script, **kwargs)
        self.wait_for(lambda: self.count(ev.ExecutionCompleted) >= expected)
        return self.recorder.of(ev.ExecutionCompleted)[-1].results

    def close(self) -> None:
        self.active.disconnect()
        self.loop.run_pending()


@pytest.fixture()
def harness():
    h = Harness(ExecutionSettings(timeout_secs=1))
    yield h
    h.close()


@pytest.fixture()
def fake_harness(fake_connection):
    h = Harness(ExecutionSettings(), connector=lambda uri, **kwargs: fake_connection)
    yield h
    h.close()


def test_connect_and_select(harness: Harness, sqlite_uri: ConnURI) -> None:
    harness.connect(sqlite_uri)

    connected = harness.recorder.of(ev.Connected)
    assert len(connected) == 1
    assert connected[0].info == sqlite_uri.info
    assert connected[0].db_info.details.server.startswith("SQLite")
    assert harness.recorder.events.index(connected[0]) < harness.recorder.events.index(
        harness.recorder.of(ev.SchemaUpdated)[0]
    )
    assert harness.active.state is ConnectionState.CONNECTED

    results = harness.run("SELECT 1 AS n;")

    assert results == [Valid("SELECT 1 AS n LIMIT 500;", Table([Column(DBType.I64, [1])], ["n"]))]
    assert harness.active.state is ConnectionState.CONNECTED
    assert harness.active.started_at is None


def test_execute_without_connection(harness: Harness) -> None:
    harness.active.execute("SELECT 1")
    harness.loop.run_pending()
    assert harness.recorder.of(ev.Error) == [ev.Error(NO_CONNECTION)]
    assert harness.count(ev.ExecutionCompleted) == 0


def test_busy_guard_rejects_second_execution(harness: Harness, sqlite_uri: ConnURI) -> None:
    harness.connect(sqlite_uri)
    harness.active.execute(ENDLESS_QUERY)
    harness.active.execute("SELECT 2")
    harness.loop.run_pending()

    assert harness.active.state is ConnectionState.EXECUTING
    assert harness.active.started_at is not None
    assert harness.recorder.of(ev.Error) == [ev.Error(BUSY)]

    harness.wait_for(lambda: harness.count(ev.ExecutionCompleted) == 1)
    assert harness.recorder.of(ev.ExecutionCompleted)[0].results == [Invalid("statement timed out", False)]
    assert harness.active.state is ConnectionState.CONNECTED
    assert isinstance(harness.run("SELECT 3 AS n")[0], Valid)


def test_create_table_refreshes_schema(harness: Harness, sqlite_uri: ConnURI) -> None:
    harness.connect(sqlite_uri)
    assert harness.run("CREATE TABLE t(x int)") == [Statement("Create")]

    harness.wait_for(lambda: harness.count(ev.SchemaUpdated) == 2)
    info = harness.recorder.of(ev.SchemaUpdated)[-1].info
    assert info.schema == (DBSchema("main", (DBTable("main", "t", (DBColumn("x", DBType.I32, False),)),)),)
    assert harness.active.db_info == info


def test_policy_rejection_is_broadcast(harness: Harness, sqlite_uri: ConnURI) -> None:
    harness.connect(sqlite_uri)
    assert harness.run("DROP TABLE t") == [Invalid(DDL_REJECTION, False)]
    assert harness.active.state is ConnectionState.CONNECTED


def test_disconnect_during_execution(harness: Harness, sqlite_uri: ConnURI) -> None:
    harness.connect(sqlite_uri)
    harness.active.settings.update(timeout_secs=30)
    harness.active.execute(ENDLESS_QUERY)
    harness.loop.run_pending()
    time.sleep(0.3)

    harness.active.disconnect()
    harness.settle(1.0)

    assert harness.recorder.of(ev.Disconnected) == [ev.Disconnected()]
    assert harness.count(ev.ExecutionCompleted) == 0
    assert harness.active.state is ConnectionState.DISCONNECTED
    assert harness.active.info is None
    assert harness.active.schedule == Off()


def test_cancel_running_statement(harness: Harness, sqlite_uri: ConnURI) -> None:
    harness.connect(sqlite_uri)
    harness.active.settings.update(timeout_secs=30)
    harness.active.execute(ENDLESS_QUERY)
    harness.loop.run_pending()
    time.sleep(0.3)

    harness.active.cancel()
    harness.wait_for(lambda: harness.count(ev.ExecutionCompleted) == 1)

    assert harness.recorder.of(ev.ExecutionCompleted)[0].results == [Invalid("statement cancelled", False)]
    assert harness.active.state is ConnectionState.CONNECTED


def test_connect_failure(harness: Harness, tmp_path: Path) -> None:
    harness.connect(ConnURI.parse(str(tmp_path / "missing" / "db.sqlite")))
    failures = harness.recorder.of(ev.ConnectionFailed)
    assert len(failures) == 1
    assert failures[0].message.startswith("Directory does not exist")
    assert harness.active.state is ConnectionState.DISCONNECTED
    assert harness.count(ev.Connected) == 0


def test_disconnect_when_idle_is_silent(harness: Harness) -> None:
    harness.active.disconnect()
    harness.loop.run_pending()
    assert harness.recorder.events == []


def test_reconnect_disconnects_first(harness: Harness, sqlite_uri: ConnURI, tmp_path: Path) -> None:
    harness.connect(sqlite_uri)
    other = ConnURI.parse(str(tmp_path / "other.sqlite"))
    harness.active.connect(other)
    harness.wait_for(lambda: harness.count(ev.Connected) == 2)

    kinds = [type(event) for event in harness.recorder.events]
    assert kinds.index(ev.Disconnected) < len(kinds) - 1 - kinds[::-1].index(ev.Connected)
    assert harness.active.info == other.info


def test_stale_reports_are_dropped(harness: Harness, sqlite_uri: ConnURI) -> None:
    harness.connect(sqlite_uri)
    before = list(harness.recorder.events)

    harness.active.handle(ev.ExecutionFinished(999, 1, [Statement("Create")]))
    harness.active.handle(ev.ConnectionLost(999, "old connection"))
    harness.active.handle(ev.SchemaFailed(999, "old schema"))

    assert harness.recorder.events == before
    assert harness.active.state is ConnectionState.CONNECTED


def test_unexpected_message_type(harness: Harness) -> None:
    with pytest.raises(TypeError, match="Unexpected message"):
        harness.active.handle("not a message")


def test_subscribers_may_issue_intent(harness: Harness, sqlite_uri: ConnURI) -> None:
    harness.active.connect_connected(lambda event: harness.active.execute("SELECT 5 AS n"))
    harness.active.connect(sqlite_uri)
    harness.wait_for(lambda: harness.count(ev.ExecutionCompleted) == 1)
    table = harness.recorder.of(ev.ExecutionCompleted)[0].results[0].table
    assert table.columns[0].to_list() == [5]


def test_select_and_query_selected(harness: Harness, sqlite_uri: ConnURI) -> None:
    harness.connect(sqlite_uri)
    harness.active.query_selected()
    harness.loop.run_pending()
    assert harness.recorder.of(ev.Error) == [ev.Error("Select a table or view first")]

    harness.run("CREATE TABLE items(x int); INSERT INTO items VALUES (4)")
    harness.wait_for(lambda: harness.count(ev.SchemaUpdated) == 2)

    harness.active.select_object([0, 0])
    harness.loop.run_pending()
    selected = harness.recorder.of(ev.ObjectSelected)[-1].obj
    assert isinstance(selected, DBTable) and selected.name == "items"
    assert harness.active.selected_object == selected

    harness.active.query_selected()
    harness.wait_for(lambda: harness.count(ev.ExecutionCompleted) == 2)
    result = harness.recorder.of(ev.ExecutionCompleted)[-1].results[0]
    assert result.query == "SELECT * FROM main.items LIMIT 500;"
    assert result.table.columns[0].to_list() == [4]

    harness.active.select_object(None)
    harness.loop.run_pending()
    assert harness.recorder.of(ev.ObjectSelected)[-1] == ev.ObjectSelected(None)


def test_import_csv_into_selected_table(harness: Harness, sqlite_uri: ConnURI, tmp_path: Path) -> None:
    harness.connect(sqlite_uri)
    harness.active.import_csv(tmp_path / "nothing.csv")
    harness.loop.run_pending()
    assert harness.recorder.of(ev.Error)[-1] == ev.Error("Select a table to import into")

    harness.run("CREATE TABLE people(id int, name text)")
    harness.wait_for(lambda: harness.count(ev.SchemaUpdated) == 2)
    harness.active.select_object([0, 0])

    source = tmp_path / "people.csv"
    source.write_text("id,name\n1,Ann\n2,Bo\n", encoding="utf-8")
    harness.active.import_csv(source)
    harness.wait_for(lambda: harness.count(ev.ExecutionCompleted) == 2)

    assert harness.recorder.of(ev.ExecutionCompleted)[-1].results == [Modification("2 row(s) imported")]
    rows = harness.run("SELECT name FROM people ORDER BY id")[0].table.columns[0].to_list()
    assert rows == ["Ann", "Bo"]


def test_import_reports_unreadable_file(harness: Harness, sqlite_uri: ConnURI, tmp_path: Path) -> None:
    harness.connect(sqlite_uri)
    harness.run("CREATE TABLE people(id int)")
    harness.wait_for(lambda: harness.count(ev.SchemaUpdated) == 2)
    harness.active.select_object([0, 0])
    harness.active.import_csv(tmp_path / "absent.csv")
    harness.wait_for(lambda: harness.count(ev.Error) == 1)
    assert harness.recorder.of(ev.Error)[0].message.startswith("File not found")


def test_export_table(harness: Harness, tmp_path: Path) -> None:
    table = Table([Column(DBType.I32, [1, 2])], ["id"])
    harness.active.export_table(table, tmp_path / "out.csv")
    harness.wait_for(lambda: harness.count(ev.ExportCompleted) == 1)
    assert harness.recorder.of(ev.ExportCompleted)[0].path == tmp_path / "out.csv"
    assert (tmp_path / "out.csv").read_text(encoding="utf-8").splitlines() == ["id", "1", "2"]

    harness.active.export_table(table, tmp_path / "out.xlsx")
    harness.wait_for(lambda: harness.count(ev.Error) == 1)
    assert "Unsupported export format" in harness.recorder.of(ev.Error)[0].message


def test_interval_schedule_repeats_last_script(harness: Harness, sqlite_uri: ConnURI) -> None:
    harness.connect(sqlite_uri)
    harness.run("SELECT 1 AS n")
    harness.active.set_schedule(Interval(1))
    harness.wait_for(lambda: harness.count(ev.ExecutionCompleted) >= 3, timeout=10)
    assert isinstance(harness.active.schedule, Interval)

    harness.active.set_schedule(Off())
    harness.wait_for(lambda: harness.active.state is ConnectionState.CONNECTED)
    count = harness.count(ev.ExecutionCompleted)
    harness.settle(1.5)
    assert harness.count(ev.ExecutionCompleted) == count
    assert harness.active.schedule == Off()


def test_interval_without_script_does_nothing(harness: Harness, sqlite_uri: ConnURI) -> None:
    harness.connect(sqlite_uri)
    harness.active.set_schedule(Interval(1))
    harness.settle(1.5)
    assert harness.count(ev.ExecutionCompleted) == 0


def test_invalid_schedule_reports_error(harness: Harness) -> None:
    harness.active.set_schedule(Interval(0))
    harness.active.set_schedule(Notification("jobs"))
    harness.loop.run_pending()
    assert harness.recorder.of(ev.Error) == [
        ev.Error("Schedule interval must be at least one second"),
        ev.Error(NO_CONNECTION),
    ]
    assert harness.active.schedule == Off()


def test_notification_schedule_on_sqlite_reports_error(harness: Harness, sqlite_uri: ConnURI) -> None:
    harness.connect(sqlite_uri)
    harness.active.set_schedule(Notification("jobs"))
    harness.wait_for(lambda: harness.count(ev.Error) == 1)
    assert "Notifications are not supported" in harness.recorder.of(ev.Error)[0].message


def test_notification_schedule_reruns_last_script(fake_harness: Harness, fake_uri: ConnURI, fake_connection) -> None:
    fake_harness.connect(fake_uri)
    fake_harness.run("SELECT n FROM counter")
    fake_harness.active.set_schedule(Notification("jobs", '{"op": "insert"}'))
    fake_harness.wait_for(lambda: fake_connection.listened == ["jobs"])

    fake_connection.push("jobs", '{"op": "delete"}')
    fake_connection.push("jobs", '{"op": "insert"}')
    fake_harness.wait_for(lambda: fake_harness.count(ev.ExecutionCompleted) == 2)
    fake_harness.settle(0.5)

    assert fake_harness.count(ev.ExecutionCompleted) == 2
    assert fake_connection.queries == ["SELECT n FROM counter LIMIT 500"] * 2

    fake_harness.active.disconnect()
    fake_harness.loop.run_pending()
    assert fake_harness.active.schedule == Off()
    assert fake_connection.closed.wait(5)


def test_notification_with_selection_queries_object(
    fake_harness: Harness, fake_uri: ConnURI, fake_connection
) -> None:
    fake_connection.schema = [DBSchema("public", (DBTable("public", "Orders"),))]
    fake_harness.connect(fake_uri)
    fake_harness.active.set_schedule(Notification("jobs", None, (0, 0)))
    fake_harness.wait_for(lambda: fake_connection.listened == ["jobs"])

    fake_connection.push("jobs", "changed")
    fake_harness.wait_for(lambda: fake_harness.count(ev.ExecutionCompleted) == 1)
    assert fake_connection.queries == ['SELECT * FROM public."Orders" LIMIT 500']


def test_lost_connection_broadcasts_reason(fake_harness: Harness, fake_uri: ConnURI, fake_connection) -> None:
    fake_harness.connect(fake_uri)
    fake_connection.lost_message = "terminating connection due to administrator command"
    fake_harness.active.execute("SELECT 1")
    fake_harness.wait_for(lambda: fake_harness.count(ev.Disconnected) == 1)

    assert fake_harness.recorder.of(ev.ExecutionCompleted)[0].results == [
        Invalid("terminating connection due to administrator command", True)
    ]
    assert fake_harness.recorder.of(ev.Disconnected) == [
        ev.Disconnected("terminating connection due to administrator command")
    ]
    assert fake_harness.active.state is ConnectionState.DISCONNECTED


@pytest.mark.parametrize(
    ("obj", "expected"),
    [
        (DBTable("public", "orders"), "SELECT * FROM public.orders;"),
        (DBView("Sales", "by month"), 'SELECT * FROM "Sales"."by month";'),
        (DBSchema("public"), None),
        (DBFunction("public", "f"), None),
        (None, None),
    ],
)
def test_selection_query(obj: Any, expected: str | None) -> None:
    assert selection_query(obj) == expected


def test_subscribers_get_independent_result_tables(fake_harness: Harness, fake_uri: ConnURI) -> None:
    seen: list[int] = []
    fake_harness.active.connect_exec_result(lambda event: event.results[0].table.truncate(0))
    fake_harness.active.connect_exec_result(lambda event: seen.append(event.results[0].table.shape()[0]))
    fake_harness.connect(fake_uri)

    results = fake_harness.run("SELECT n FROM counter")

    assert seen == [1]
    assert results[0].table.shape()[0] == 1


def test_interval_tick_while_executing_is_dropped(fake_connection, fake_uri: ConnURI) -> None:
    clock = FakeClock()
    h = Harness(ExecutionSettings(), connector=lambda uri, **kwargs: fake_connection, clock=clock)
    gate = threading.Event()
    try:
        h.connect(fake_uri)
        h.run("SELECT n FROM counter")
        h.active.set_schedule(Interval(2))
        h.loop.run_pending()

        fake_connection.gate = gate
        fake_connection.entered.clear()
        h.active.execute("SELECT n FROM counter")
        h.loop.run_pending()
        assert fake_connection.entered.wait(5)

        for _ in range(4):
            clock.advance(1.0)
            h.loop.run_pending()
        assert h.active.state is ConnectionState.EXECUTING
        assert h.count(ev.ExecutionCompleted) == 1

        gate.set()
        h.wait_for(lambda: h.count(ev.ExecutionCompleted) == 2)
        h.settle(0.5)
        assert h.count(ev.ExecutionCompleted) == 2
        assert fake_connection.queries == ["SELECT n FROM counter LIMIT 500"] * 2
        assert h.active.state is ConnectionState.CONNECTED
    finally:
        gate.set()
        h.close()


def test_plan_request_explains_instead_of_running(fake_harness: Harness, fake_uri: ConnURI, fake_connection) -> None:
    fake_harness.connect(fake_uri)
    results = fake_harness.run("SELECT n FROM counter", plan=True)
    assert fake_connection.queries == ["EXPLAIN (FORMAT json) SELECT n FROM counter"]
    assert results[0].query == "EXPLAIN (FORMAT json) SELECT n FROM counter;"


def test_import_reports_unparseable_file(harness: Harness, sqlite_uri: ConnURI, tmp_path: Path) -> None:
    harness.connect(sqlite_uri)
    harness.run("CREATE TABLE people(id int)")
    harness.wait_for(lambda: harness.count(ev.SchemaUpdated) == 2)
    harness.active.select_object([0, 0])
    source = tmp_path / "empty.csv"
    source.write_bytes(b"")
    harness.active.import_csv(source)
    harness.wait_for(lambda: harness.count(ev.Error) == 1)
    assert harness.recorder.of(ev.Error)[0].message.startswith("Unable to parse empty.csv")
    assert harness.active.state is ConnectionState.CONNECTED


def test_task_results_after_loop_closed_are_dropped(
    fake_connection, fake_uri: ConnURI, tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    h = Harness(ExecutionSettings(), connector=lambda uri, **kwargs: fake_connection)
    h.loop.close()
    table = Table([Column(DBType.I32, [1])], ["id"])

    with caplog.at_level(logging.DEBUG, logger="queries.client.active"):
        h.active._connect_task(fake_uri, 0)
        h.active._export_task(table, tmp_path / "late.csv", 0)
        h.active._export_task(table, tmp_path / "late.xlsx", 0)

    assert fake_connection.closed.is_set()
    assert "Dropped ConnectSucceeded" in caplog.text
    assert "Dropped ExportFinished" in caplog.text
    assert "Dropped TaskFailed" in caplog.text
