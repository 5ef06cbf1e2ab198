"""SQLite driver built on the standard library module."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Sequence

from queries.client.conn import ConnURI, Engine
from queries.shared.exceptions import (
    ConnectError,
    ConnectionLostError,
    SchemaError,
    ServerError,
    StatementCancelled,
    StatementTimeout,
)
from queries.sql.objects import DBDetails, DBObject, assemble_schema

from .base import Connection, RowSet

_log = logging.getLogger(__name__)

SCHEMA_NAME = "main"
# Number of SQLite VM instructions between deadline checks.
_PROGRESS_STEPS = 1000


def infer_type_name(values: Sequence[Any]) -> str:
    """Guess a column type from the values SQLite returned for it.

    SQLite has no declared types for expressions, so the storage classes of
    the non-null values decide: integers, reals (mixed with integers), blobs
    and text. Text columns whose every value is a JSON object or array are
    reported as json.
    """
    present = [value for value in values if value is not None]
    if not present:
        return "text"
    if all(isinstance(value, int) for value in present):
        return "bigint"
    if all(isinstance(value, (int, float)) for value in present):
        return "double precision"
    if all(isinstance(value, bytes) for value in present):
        return "blob"
    if all(isinstance(value, str) and _looks_like_json(value) for value in present):
        return "json"
    return "text"


def _looks_like_json(value: str) -> bool:
    stripped = value.strip()
    if not stripped or stripped[0] not in "{[":
        return False
    try:
        json.loads(stripped)
    except ValueError:
        return False
    return True


class SqliteConnection(Connection):
    engine = Engine.SQLITE

    def __init__(self, connection: sqlite3.Connection, path: Path) -> None:
        self._conn = connection
        self._path = path
        self._deadline: float | None = None
        self._cancel_requested = threading.Event()
        self._conn.set_progress_handler(self._progress, _PROGRESS_STEPS)

    @classmethod
    def open(cls, uri: ConnURI) -> SqliteConnection:
        path = Path(uri.info.host).expanduser()
        if not path.parent.exists():
            raise ConnectError(f"Directory does not exist: {path.parent}")
        try:
            # isolation_level=None leaves transaction control to the scripts.
            connection = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False)
            connection.execute("PRAGMA foreign_keys = ON;")
        except sqlite3.Error as exc:
            raise ConnectError(str(exc)) from exc
        _log.debug("Opened SQLite database %s", path)
        return cls(connection, path)

    def _progress(self) -> int:
        if self._cancel_requested.is_set():
            return 1
        if self._deadline is not None and time.monotonic() > self._deadline:
            return 1
        return 0

    def _run(self, sql: str, timeout: float | None) -> sqlite3.Cursor:
        self._cancel_requested.clear()
        self._deadline = time.monotonic() + timeout if timeout else None
        try:
            return self._conn.execute(sql)
        except sqlite3.OperationalError as exc:
            raise self._translate(exc) from exc
        except sqlite3.ProgrammingError as exc:
            if "closed" in str(exc):
                raise ConnectionLostError(str(exc)) from exc
            raise ServerError(str(exc)) from exc
        except sqlite3.Error as exc:
            raise ServerError(str(exc)) from exc
        except ValueError as exc:
            raise ServerError(str(exc)) from exc

    def _translate(self, exc: sqlite3.OperationalError) -> Exception:
        if "interrupted" in str(exc):
            if self._cancel_requested.is_set():
                return StatementCancelled("statement cancelled")
            return StatementTimeout("statement timed out")
        return ServerError(str(exc))

    def query(self, sql: str, timeout: float | None = None) -> RowSet:
        cursor = self._run(sql, timeout)
        try:
            rows = cursor.fetchall()
        except sqlite3.OperationalError as exc:
            raise self._translate(exc) from exc
        finally:
            self._deadline = None
        if cursor.description is None:
            return RowSet(rowcount=max(cursor.rowcount, 0))
        columns = tuple(col[0] for col in cursor.description)
        types = tuple(infer_type_name([row[ix] for row in rows]) for ix in range(len(columns)))
        return RowSet(columns, types, rows, len(rows))

    def execute(self, sql: str, timeout: float | None = None) -> int:
        cursor = self._run(sql, timeout)
        self._deadline = None
        return max(cursor.rowcount, 0)

    def info(self) -> DBDetails | None:
        try:
            encoding = self._conn.execute("PRAGMA encoding").fetchone()[0]
        except sqlite3.Error as exc:
            _log.warning("Unable to read SQLite encoding: %s", exc)
            encoding = None
        size = _format_size(self._path.stat().st_size) if self._path.exists() else None
        return DBDetails(uptime=None, server=f"SQLite {sqlite3.sqlite_version}", size=size, locale=encoding)

    def introspect_schema(self) -> list[DBObject]:
        try:
            objects = self._conn.execute(
                "SELECT type, name FROM sqlite_master "
                "WHERE type IN ('table', 'view') AND name NOT LIKE 'sqlite_%' ORDER BY name"
            ).fetchall()
            tables = [(SCHEMA_NAME, name) for kind, name in objects if kind == "table"]
            views = [(SCHEMA_NAME, name) for kind, name in objects if kind == "view"]
            columns: list[tuple[str, str, str, str]] = []
            primary_keys: list[tuple[str, str, str]] = []
            relations: list[tuple[str, str, str, str, str, str]] = []
            for _kind, name in objects:
                quoted = name.replace("'", "''")
                for row in self._conn.execute(f"PRAGMA table_info('{quoted}')").fetchall():
                    columns.append((SCHEMA_NAME, name, row[1], row[2]))
                    if row[5]:
                        primary_keys.append((SCHEMA_NAME, name, row[1]))
                for row in self._conn.execute(f"PRAGMA foreign_key_list('{quoted}')").fetchall():
                    relations.append((SCHEMA_NAME, name, row[3], SCHEMA_NAME, row[2], row[4] or ""))
        except sqlite3.Error as exc:
            raise SchemaError(f"Unable to read SQLite schema: {exc}") from exc
        return list(assemble_schema([SCHEMA_NAME], tables, views, columns, primary_keys, relations))

    def cancel(self) -> None:
        self._cancel_requested.set()
        self._conn.interrupt()

    def close(self) -> None:
        try:
            self._conn.close()
        except sqlite3.Error as exc:
            _log.warning("Error while closing SQLite connection: %s", exc)


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("bytes", "kB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{int(value)} {unit}" if unit == "bytes" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} bytes"
