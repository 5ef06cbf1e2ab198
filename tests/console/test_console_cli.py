from __future__ import annotations

import json
import sqlite3
from io import StringIO
from pathlib import Path

import pytest
from click.testing import CliRunner

from queries.console import render
from queries.console.main import _parse_params, cli
from queries.shared import paths
from queries.shared.logging import get_logger
from queries.sql.output import Invalid, Valid
from queries.tables.column import Column
from queries.tables.field import DBType
from queries.tables.table import Table


@pytest.fixture()
def runner(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> CliRunner:
    monkeypatch.setenv(paths.CONFIG_DIR_ENV, str(tmp_path / "config"))
    monkeypatch.delenv("QUERIES_URI", raising=False)
    monkeypatch.delenv("QUERIES_PASSWORD", raising=False)
    return CliRunner()


@pytest.fixture()
def database(tmp_path: Path) -> Path:
    path = tmp_path / "shop.db"
    connection = sqlite3.connect(path)
    connection.executescript(
        """
        CREATE TABLE customers (id INTEGER PRIMARY KEY, name TEXT);
        CREATE TABLE orders (id INTEGER PRIMARY KEY, customer_id INTEGER REFERENCES customers(id), total REAL);
        INSERT INTO customers VALUES (1, 'Ada'), (2, 'Grace');
        INSERT INTO orders VALUES (10, 1, 12.5);
        """
    )
    connection.commit()
    connection.close()
    return path


def _script(tmp_path: Path, text: str, name: str = "script.sql") -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_run_prints_csv(runner: CliRunner, database: Path, tmp_path: Path) -> None:
    script = _script(tmp_path, "SELECT name FROM customers ORDER BY id;")

    result = runner.invoke(cli, ["run", str(script), "--uri", str(database), "--format", "csv"])

    assert result.exit_code == 0, result.output
    assert result.stdout.splitlines() == ["name", "Ada", "Grace"]


def test_run_prints_json_with_substitutions(runner: CliRunner, database: Path, tmp_path: Path) -> None:
    script = _script(tmp_path, "SELECT id, name FROM customers WHERE name = '${who}';")

    result = runner.invoke(
        cli,
        ["run", str(script), "--uri", str(database), "--format", "json", "-p", "who=Grace"],
    )

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == [{"id": 2, "name": "Grace"}]


def test_run_applies_row_limit(runner: CliRunner, database: Path, tmp_path: Path) -> None:
    script = _script(tmp_path, "SELECT name FROM customers ORDER BY id;")

    result = runner.invoke(cli, ["run", str(script), "--uri", str(database), "--format", "tsv", "--limit", "1"])

    assert result.exit_code == 0, result.output
    assert result.stdout.splitlines() == ["name", "Ada"]


def test_run_rejects_ddl_without_flag(runner: CliRunner, database: Path, tmp_path: Path) -> None:
    script = _script(tmp_path, "DROP TABLE orders;")

    result = runner.invoke(cli, ["run", str(script), "--uri", str(database)])

    assert result.exit_code == 1
    assert "not permitted by current policy" in result.output
    with sqlite3.connect(database) as connection:
        assert connection.execute("SELECT count(*) FROM orders").fetchone() == (1,)


def test_run_accepts_ddl_with_flag(runner: CliRunner, database: Path, tmp_path: Path) -> None:
    script = _script(tmp_path, "DROP TABLE orders;")

    result = runner.invoke(cli, ["run", str(script), "--uri", str(database), "--accept-ddl"])

    assert result.exit_code == 0, result.output
    with sqlite3.connect(database) as connection:
        tables = [row[0] for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")]
    assert tables == ["customers"]


def test_run_plan_shows_query_plan(runner: CliRunner, database: Path, tmp_path: Path) -> None:
    script = _script(tmp_path, "SELECT name FROM customers;")

    result = runner.invoke(cli, ["run", str(script), "--uri", str(database), "--format", "csv", "--plan"])

    assert result.exit_code == 0, result.output
    lines = result.stdout.splitlines()
    assert "detail" in lines[0].split(",")
    assert any("customers" in line for line in lines[1:])


def test_run_plan_refuses_modifications(runner: CliRunner, database: Path, tmp_path: Path) -> None:
    script = _script(tmp_path, "SELECT 1; DELETE FROM orders;")

    result = runner.invoke(cli, ["run", str(script), "--uri", str(database), "--accept-dml", "--plan"])

    assert result.exit_code == 1
    assert "Only SELECT commands supported in plan mode" in result.output
    with sqlite3.connect(database) as connection:
        assert connection.execute("SELECT count(*) FROM orders").fetchone() == (1,)


def test_run_reports_server_errors(runner: CliRunner, database: Path, tmp_path: Path) -> None:
    script = _script(tmp_path, "SELECT * FROM missing_table;")

    result = runner.invoke(cli, ["run", str(script), "--uri", str(database), "--format", "csv"])

    assert result.exit_code == 1
    assert "missing_table" in result.output


def test_run_rejects_empty_script(runner: CliRunner, database: Path, tmp_path: Path) -> None:
    script = _script(tmp_path, "   \n")

    result = runner.invoke(cli, ["run", str(script), "--uri", str(database)])

    assert result.exit_code == 1
    assert "Script must not be empty." in result.output


def test_run_rejects_malformed_param(runner: CliRunner, database: Path, tmp_path: Path) -> None:
    script = _script(tmp_path, "SELECT 1;")

    result = runner.invoke(cli, ["run", str(script), "--uri", str(database), "-p", "oops"])

    assert result.exit_code == 1
    assert "Parameter 'oops' must be in KEY=VALUE format." in result.output


def test_run_requires_uri(runner: CliRunner, tmp_path: Path) -> None:
    script = _script(tmp_path, "SELECT 1;")

    result = runner.invoke(cli, ["run", str(script)])

    assert result.exit_code == 2
    assert "--uri" in result.output


def test_run_reports_connect_failure(runner: CliRunner, tmp_path: Path) -> None:
    script = _script(tmp_path, "SELECT 1;")
    missing = tmp_path / "nowhere" / "db.sqlite"

    result = runner.invoke(cli, ["run", str(script), "--uri", str(missing)])

    assert result.exit_code == 1
    assert "Directory does not exist" in result.output


def test_schema_json(runner: CliRunner, database: Path) -> None:
    result = runner.invoke(cli, ["schema", "--uri", str(database), "--format", "json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    (schema,) = payload["schemas"]
    assert schema["name"] == "main"
    tables = {table["name"]: table for table in schema["tables"]}
    assert set(tables) == {"customers", "orders"}
    assert tables["orders"]["foreign_keys"] == [{"from": "customer_id", "table": "main.customers", "to": "id"}]


def test_schema_dot(runner: CliRunner, database: Path) -> None:
    result = runner.invoke(cli, ["schema", "--uri", str(database), "--format", "dot"])

    assert result.exit_code == 0, result.output
    assert result.stdout.startswith("graph {")
    assert '"main.orders" -- "main.customers"' in result.stdout


def test_report_writes_output(runner: CliRunner, database: Path, tmp_path: Path) -> None:
    template = _script(tmp_path, "<ul><section><li><template>name</template></li></section></ul>", "layout.html")
    script = _script(tmp_path, "SELECT name FROM customers ORDER BY id;")
    output = tmp_path / "out.html"

    result = runner.invoke(
        cli, ["report", str(template), str(script), "--uri", str(database), "--output", str(output)]
    )

    assert result.exit_code == 0, result.output
    assert output.read_text(encoding="utf-8") == (
        "<ul><section><li>Ada</li></section><section><li>Grace</li></section></ul>"
    )


def test_report_rejects_unknown_extension(runner: CliRunner, database: Path, tmp_path: Path) -> None:
    template = _script(tmp_path, "<section></section>", "layout.txt")
    script = _script(tmp_path, "SELECT 1;")

    result = runner.invoke(cli, ["report", str(template), str(script), "--uri", str(database)])

    assert result.exit_code == 1
    assert "Invalid or missing file extension" in result.output


def test_watch_runs_script_repeatedly(runner: CliRunner, database: Path, tmp_path: Path) -> None:
    script = _script(tmp_path, "SELECT count(*) AS n FROM customers;")

    result = runner.invoke(
        cli,
        ["watch", str(script), "--uri", str(database), "--interval", "1", "--count", "2", "--format", "csv"],
    )

    assert result.exit_code == 0, result.output
    assert result.stdout.splitlines() == ["n", "2", "n", "2"]


def test_parse_params() -> None:
    assert _parse_params(["a=1", " b =x=y"]) == {"a": "1", "b": "x=y"}
    with pytest.raises(ValueError, match="keys cannot be empty"):
        _parse_params(["=1"])


def test_render_outputs_writes_tables_to_stream() -> None:
    stream = StringIO()
    table = Table([Column(DBType.F64, [1.25])], ["ratio"])
    outputs = [Valid("SELECT 1.25 AS ratio;", table), Invalid("boom", True)]

    render.render_outputs(outputs, output_format="csv", logger=get_logger(), precision=2, stream=stream)

    assert stream.getvalue().splitlines() == ["ratio", "1.25"]


def test_run_rejects_unknown_uri_scheme(runner: CliRunner, tmp_path: Path) -> None:
    script = _script(tmp_path, "SELECT 1;")

    result = runner.invoke(cli, ["run", str(script), "--uri", "mysql://root@localhost/shop"])

    assert result.exit_code == 1
    assert "Invalid connection URI: Unsupported URI scheme: mysql" in result.output
