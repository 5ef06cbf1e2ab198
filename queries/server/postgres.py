"""PostgreSQL driver built on psycopg2."""

from __future__ import annotations

import logging
import select
import threading
from typing import Any

import psycopg2
import psycopg2.errors
import psycopg2.extensions

from queries.client.conn import ConnURI, Engine
from queries.shared.exceptions import (
    AuthError,
    ConnectError,
    ConnectionLostError,
    SchemaError,
    ServerError,
    StatementCancelled,
    StatementTimeout,
)
from queries.sql.objects import DBDetails, DBFunction, DBObject, assemble_schema
from queries.tables.field import DBType

from .base import Connection, Notification, RowSet

_log = logging.getLogger(__name__)

# Type names for the OIDs of the built-in types a result set commonly carries.
PG_TYPE_NAMES: dict[int, str] = {
    16: "bool",
    17: "bytea",
    18: "char",
    19: "name",
    20: "int8",
    21: "int2",
    23: "int4",
    25: "text",
    26: "int4",
    114: "json",
    142: "xml",
    199: "_json",
    700: "float4",
    701: "float8",
    1000: "_bool",
    1005: "_int2",
    1007: "_int4",
    1009: "_text",
    1015: "_varchar",
    1016: "_int8",
    1021: "_float4",
    1022: "_float8",
    1042: "bpchar",
    1043: "varchar",
    1082: "date",
    1083: "time",
    1114: "timestamp",
    1184: "timestamptz",
    1231: "_numeric",
    1266: "timetz",
    1700: "numeric",
    2249: "record",
    2279: "trigger",
    3802: "jsonb",
    3807: "_jsonb",
}

_SYSTEM_SCHEMAS = "('pg_catalog', 'information_schema')"

SCHEMAS_QUERY = f"""
SELECT schema_name FROM information_schema.schemata
WHERE schema_name NOT IN {_SYSTEM_SCHEMAS}
  AND schema_name NOT LIKE 'pg_toast%' AND schema_name NOT LIKE 'pg_temp%'
"""

TABLES_QUERY = f"""
SELECT schemaname, tablename FROM pg_catalog.pg_tables
WHERE schemaname NOT IN {_SYSTEM_SCHEMAS}
"""

VIEWS_QUERY = f"""
SELECT table_schema, table_name FROM information_schema.views
WHERE table_schema NOT IN {_SYSTEM_SCHEMAS}
"""

COLUMNS_QUERY = f"""
SELECT table_schema, table_name, column_name, data_type FROM information_schema.columns
WHERE table_schema NOT IN {_SYSTEM_SCHEMAS}
ORDER BY table_schema, table_name, ordinal_position
"""

PRIMARY_KEYS_QUERY = """
SELECT tc.table_schema, tc.table_name, kcu.column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema
WHERE tc.constraint_type = 'PRIMARY KEY'
"""

RELATIONS_QUERY = """
SELECT tc.table_schema, tc.table_name, kcu.column_name,
       ccu.table_schema, ccu.table_name, ccu.column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema
JOIN information_schema.constraint_column_usage ccu
  ON ccu.constraint_name = tc.constraint_name AND ccu.constraint_schema = tc.constraint_schema
WHERE tc.constraint_type = 'FOREIGN KEY'
"""

FUNCTIONS_QUERY = f"""
SELECT n.nspname, p.proname, oidvectortypes(p.proargtypes), p.proargnames,
       format_type(p.prorettype, NULL)
FROM pg_catalog.pg_proc p
JOIN pg_catalog.pg_namespace n ON n.oid = p.pronamespace
WHERE n.nspname NOT IN {_SYSTEM_SCHEMAS} AND p.prokind = 'f'
"""

DETAIL_QUERIES: dict[str, str] = {
    "server": "SHOW server_version",
    "locale": "SELECT datcollate FROM pg_database WHERE datname = current_database()",
    "size": "SELECT pg_size_pretty(pg_database_size(current_database()))",
    "uptime": "SELECT date_trunc('second', current_timestamp - pg_postmaster_start_time())::text",
}


def pg_type_name(oid: int) -> str:
    return PG_TYPE_NAMES.get(oid, "unknown")


def build_function(schema: str, name: str, arg_types: str, arg_names: Any, ret: str | None) -> DBFunction:
    """Build a DBFunction from a FUNCTIONS_QUERY row."""
    args = tuple(DBType.from_text(part) for part in arg_types.split(",") if part.strip()) if arg_types else ()
    names = tuple(arg_names) if arg_names else None
    ret_type = None if ret in (None, "void") else DBType.from_text(ret)
    return DBFunction(schema, name, args, names, ret_type)


class PostgresConnection(Connection):
    engine = Engine.POSTGRES

    def __init__(self, connection: psycopg2.extensions.connection) -> None:
        self._conn = connection
        self._statement_timeout_ms: int | None = None
        self._cancel_requested = threading.Event()

    @classmethod
    def open(cls, uri: ConnURI, *, connect_timeout: int, application_name: str) -> PostgresConnection:
        params = uri.connect_params()
        try:
            connection = psycopg2.connect(
                **params, connect_timeout=connect_timeout, application_name=application_name
            )
        except psycopg2.OperationalError as exc:
            message = str(exc).strip()
            if "password authentication failed" in message or "no password supplied" in message:
                raise AuthError(message) from exc
            raise ConnectError(message) from exc
        # Scripts manage their own transactions.
        connection.autocommit = True
        _log.debug("Connected to %s", uri.redacted())
        return cls(connection)

    def _set_timeout(self, cursor: psycopg2.extensions.cursor, timeout: float | None) -> None:
        timeout_ms = int(timeout * 1000) if timeout else 0
        if timeout_ms != self._statement_timeout_ms:
            cursor.execute("SET statement_timeout = %s", (timeout_ms,))
            self._statement_timeout_ms = timeout_ms

    def _run(self, sql: str, timeout: float | None) -> tuple[tuple[str, ...], tuple[str, ...], list[tuple[Any, ...]], int]:
        self._cancel_requested.clear()
        try:
            with self._conn.cursor() as cursor:
                self._set_timeout(cursor, timeout)
                cursor.execute(sql)
                if cursor.description is None:
                    return (), (), [], cursor.rowcount
                columns = tuple(col.name for col in cursor.description)
                types = tuple(pg_type_name(col.type_code) for col in cursor.description)
                return columns, types, cursor.fetchall(), cursor.rowcount
        except psycopg2.errors.QueryCanceled as exc:
            if self._cancel_requested.is_set():
                raise StatementCancelled("statement cancelled") from exc
            raise StatementTimeout("statement timed out") from exc
        except (psycopg2.InterfaceError, psycopg2.OperationalError) as exc:
            if self._conn.closed:
                raise ConnectionLostError(str(exc).strip()) from exc
            raise ServerError(str(exc).strip()) from exc
        except psycopg2.Error as exc:
            raise ServerError(_error_message(exc)) from exc

    def query(self, sql: str, timeout: float | None = None) -> RowSet:
        columns, types, rows, rowcount = self._run(sql, timeout)
        # psycopg2 registers typecasters for json and jsonb.
        return RowSet(columns, types, rows, rowcount, json_parsed=True)

    def execute(self, sql: str, timeout: float | None = None) -> int:
        _columns, _types, _rows, rowcount = self._run(sql, timeout)
        return max(rowcount, 0)

    def info(self) -> DBDetails | None:
        values: dict[str, str | None] = {}
        for key, sql in DETAIL_QUERIES.items():
            try:
                with self._conn.cursor() as cursor:
                    cursor.execute(sql)
                    row = cursor.fetchone()
                values[key] = str(row[0]) if row else None
            except psycopg2.Error as exc:
                _log.warning("Unable to read server detail '%s': %s", key, exc)
                values[key] = None
        return DBDetails(**values)

    def introspect_schema(self) -> list[DBObject]:
        try:
            with self._conn.cursor() as cursor:
                self._set_timeout(cursor, None)
                cursor.execute(SCHEMAS_QUERY)
                schemas = [row[0] for row in cursor.fetchall()]
                cursor.execute(TABLES_QUERY)
                tables = cursor.fetchall()
                cursor.execute(VIEWS_QUERY)
                views = cursor.fetchall()
                cursor.execute(COLUMNS_QUERY)
                columns = cursor.fetchall()
                cursor.execute(PRIMARY_KEYS_QUERY)
                primary_keys = cursor.fetchall()
                cursor.execute(RELATIONS_QUERY)
                relations = cursor.fetchall()
                cursor.execute(FUNCTIONS_QUERY)
                functions = [build_function(*row) for row in cursor.fetchall()]
        except psycopg2.Error as exc:
            raise SchemaError(f"Unable to read schema: {_error_message(exc)}") from exc
        return list(assemble_schema(schemas, tables, views, columns, primary_keys, relations, functions))

    def listen(self, channel: str) -> None:
        self._notify_command("LISTEN", channel)

    def unlisten(self, channel: str) -> None:
        self._notify_command("UNLISTEN", channel)

    def _notify_command(self, command: str, channel: str) -> None:
        try:
            with self._conn.cursor() as cursor:
                cursor.execute(f"{command} {psycopg2.extensions.quote_ident(channel, self._conn)}")
        except psycopg2.Error as exc:
            raise ServerError(_error_message(exc)) from exc

    def poll_notifications(self, timeout: float = 0.0) -> list[Notification]:
        try:
            if timeout > 0 and not self._conn.notifies:
                ready, _, _ = select.select([self._conn], [], [], timeout)
                if not ready:
                    return []
            self._conn.poll()
        except (psycopg2.InterfaceError, psycopg2.OperationalError) as exc:
            raise ConnectionLostError(str(exc).strip()) from exc
        received = [Notification(item.channel, item.payload) for item in self._conn.notifies]
        self._conn.notifies.clear()
        return received

    def cancel(self) -> None:
        self._cancel_requested.set()
        try:
            self._conn.cancel()
        except psycopg2.Error as exc:
            _log.warning("Cancel request failed: %s", exc)

    def close(self) -> None:
        if not self._conn.closed:
            self._conn.close()


def _error_message(exc: psycopg2.Error) -> str:
    return (exc.pgerror or str(exc)).strip()
