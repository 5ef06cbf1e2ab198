"""Scalar type model shared by result tables and the schema tree."""

from __future__ import annotations

import datetime as dt
import json
import math
import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

_TYPE_PARAMS_RE = re.compile(r"\(.*\)")

# Spelled like the engine names of a connection.
POSTGRES_DIALECT = "postgresql"
SQLITE_DIALECT = "sqlite"


class DBType(Enum):
    """Closed set of column types; the value is the canonical SQL name."""

    BOOL = "bool"
    I16 = "smallint"
    I32 = "integer"
    I64 = "bigint"
    F32 = "real"
    F64 = "double precision"
    NUMERIC = "numeric"
    TEXT = "text"
    DATE = "date"
    TIME = "time"
    BYTES = "bytea"
    JSON = "json"
    XML = "xml"
    ARRAY = "array"
    TRIGGER = "trigger"
    UNKNOWN = "unknown"

    @classmethod
    def from_text(cls, text: str | None) -> DBType:
        """Map a PostgreSQL or SQLite type name to a DBType.

        Length and precision modifiers are ignored, so ``varchar(20)`` and
        ``numeric(10,2)`` resolve like their bare names. Unrecognised names map
        to UNKNOWN.
        """
        if not text:
            return cls.UNKNOWN
        name = " ".join(_TYPE_PARAMS_RE.sub("", text).strip().lower().split())
        if name.startswith("_") or name.endswith("[]"):
            return cls.ARRAY
        if name in _ALIASES:
            return _ALIASES[name]
        if name.startswith("timestamp") or name.startswith("time ") or name == "time":
            return cls.TIME
        if name.startswith("character varying") or name.startswith("varchar"):
            return cls.TEXT
        return cls.UNKNOWN

    @property
    def sqlite_affinity(self) -> str:
        if self in (DBType.BOOL, DBType.I16, DBType.I32, DBType.I64):
            return "INTEGER"
        if self in (DBType.F32, DBType.F64):
            return "REAL"
        if self is DBType.BYTES:
            return "BLOB"
        return "TEXT"

    @property
    def is_integer(self) -> bool:
        return self in (DBType.I16, DBType.I32, DBType.I64)

    @property
    def is_float(self) -> bool:
        return self in (DBType.F32, DBType.F64)

    @property
    def is_numeric(self) -> bool:
        return self.is_integer or self.is_float or self is DBType.NUMERIC


_ALIASES: dict[str, DBType] = {
    "bool": DBType.BOOL,
    "boolean": DBType.BOOL,
    "bigint": DBType.I64,
    "bigserial": DBType.I64,
    "int8": DBType.I64,
    "integer": DBType.I32,
    "int": DBType.I32,
    "int4": DBType.I32,
    "serial": DBType.I32,
    "serial4": DBType.I32,
    "smallint": DBType.I16,
    "smallserial": DBType.I16,
    "int2": DBType.I16,
    "real": DBType.F32,
    "float4": DBType.F32,
    "double precision": DBType.F64,
    "float8": DBType.F64,
    "float": DBType.F64,
    "double": DBType.F64,
    "dp": DBType.F64,
    "numeric": DBType.NUMERIC,
    "decimal": DBType.NUMERIC,
    "text": DBType.TEXT,
    "char": DBType.TEXT,
    "character": DBType.TEXT,
    "bpchar": DBType.TEXT,
    "varchar": DBType.TEXT,
    "character varying": DBType.TEXT,
    "name": DBType.TEXT,
    "bit": DBType.TEXT,
    "cstring": DBType.TEXT,
    "date": DBType.DATE,
    "datetime": DBType.TIME,
    "timetz": DBType.TIME,
    "bytea": DBType.BYTES,
    "blob": DBType.BYTES,
    "json": DBType.JSON,
    "jsonb": DBType.JSON,
    "record": DBType.JSON,
    "xml": DBType.XML,
    "anyarray": DBType.ARRAY,
    "array": DBType.ARRAY,
    "trigger": DBType.TRIGGER,
    "unknown": DBType.UNKNOWN,
}


@dataclass(frozen=True, slots=True)
class Field:
    """One cell of a result table. A ``None`` value is SQL NULL."""

    kind: DBType
    value: Any = None

    @property
    def is_null(self) -> bool:
        return self.value is None

    def display(self, precision: int = 4) -> str:
        return display_value(self.kind, self.value, precision)

    def sql_literal(self, dialect: str = SQLITE_DIALECT) -> str:
        return sql_literal(self.kind, self.value, dialect)


def display_value(kind: DBType, value: Any, precision: int = 4) -> str:
    """Canonical text of a cell for rendering."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "true" if value else "false"
    if kind.is_float and isinstance(value, (int, float)):
        return f"{value:.{precision}f}"
    if kind is DBType.BYTES and isinstance(value, (bytes, bytearray, memoryview)):
        return f"Binary ({len(value)} bytes)"
    if kind is DBType.JSON:
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (list, tuple)):
        return "{" + ",".join(display_value(DBType.UNKNOWN, item, precision) for item in value) + "}"
    if isinstance(value, (dt.date, dt.time, dt.datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def sql_literal(kind: DBType, value: Any, dialect: str = SQLITE_DIALECT) -> str:
    """Render a cell as a literal usable in an INSERT statement for ``dialect``.

    ``dialect`` is ``"postgresql"`` or ``"sqlite"``; it decides how binary
    data and non-finite numbers are spelled.
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if kind.is_numeric and isinstance(value, (int, float, Decimal)):
        if isinstance(value, int) or _is_finite(value):
            return str(value)
        return _non_finite_literal(value, dialect)
    if isinstance(value, (bytes, bytearray, memoryview)):
        if dialect == POSTGRES_DIALECT:
            return "'\\x" + bytes(value).hex() + "'::bytea"
        return "X'" + bytes(value).hex() + "'"
    if kind is DBType.JSON:
        text = json.dumps(value, ensure_ascii=False)
    else:
        text = display_value(kind, value)
    return "'" + text.replace("'", "''") + "'"


def _is_finite(value: float | Decimal) -> bool:
    if isinstance(value, Decimal):
        return value.is_finite()
    return math.isfinite(value)


def _non_finite_literal(value: float | Decimal, dialect: str) -> str:
    is_nan = value.is_nan() if isinstance(value, Decimal) else math.isnan(value)
    if dialect == POSTGRES_DIALECT:
        if is_nan:
            return "'NaN'"
        return "'-Infinity'" if value < 0 else "'Infinity'"
    # SQLite stores NaN as NULL and reads overflowing literals as infinities.
    if is_nan:
        return "NULL"
    return "-9e999" if value < 0 else "9e999"
