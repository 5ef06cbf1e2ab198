"""Turning driver row sets into typed result tables."""

from __future__ import annotations

import datetime as dt
import json
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from queries.shared.exceptions import DecodeError
from queries.tables.column import Column, build_column
from queries.tables.field import DBType
from queries.tables.table import Table

from .base import RowSet


def _decode_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.lower() in ("t", "true", "f", "false"):
        return value.lower() in ("t", "true")
    raise ValueError(f"not a boolean: {value!r}")


def _decode_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (str, Decimal)):
        return int(value)
    raise ValueError(f"not an integer: {value!r}")


def _decode_float(value: Any) -> float:
    if isinstance(value, (int, float, Decimal, str)) and not isinstance(value, bool):
        return float(value)
    raise ValueError(f"not a number: {value!r}")


def _decode_numeric(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # repr keeps the shortest text form, avoiding binary expansion digits.
        return Decimal(repr(value))
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a decimal: {value!r}") from exc


def _decode_date(value: Any) -> dt.date | str:
    if isinstance(value, (dt.date, str)):
        return value
    raise ValueError(f"not a date: {value!r}")


def _decode_time(value: Any) -> dt.time | dt.datetime | str:
    if isinstance(value, (dt.time, dt.datetime, str)):
        return value
    raise ValueError(f"not a time: {value!r}")


def _decode_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    raise ValueError(f"not binary data: {value!r}")


def _decode_json(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        value = bytes(value).decode("utf-8")
    if isinstance(value, str):
        return json.loads(value)
    if isinstance(value, (dict, list, int, float, bool)):
        return value
    raise ValueError(f"not JSON: {value!r}")


def _decode_parsed_json(value: Any) -> Any:
    # Already decoded by the driver, so a str is a JSON string scalar.
    if value is None or isinstance(value, (dict, list, str, int, float, bool)):
        return value
    raise ValueError(f"not JSON: {value!r}")


def _decode_array(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    raise ValueError(f"not an array: {value!r}")


def _decode_text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


_DECODERS: dict[DBType, Callable[[Any], Any]] = {
    DBType.BOOL: _decode_bool,
    DBType.I16: _decode_int,
    DBType.I32: _decode_int,
    DBType.I64: _decode_int,
    DBType.F32: _decode_float,
    DBType.F64: _decode_float,
    DBType.NUMERIC: _decode_numeric,
    DBType.DATE: _decode_date,
    DBType.TIME: _decode_time,
    DBType.BYTES: _decode_bytes,
    DBType.JSON: _decode_json,
    DBType.ARRAY: _decode_array,
}


def decode_column(kind: DBType, name: str, values: list[Any], *, json_parsed: bool = False) -> Column:
    decoder = _decode_parsed_json if json_parsed and kind is DBType.JSON else _DECODERS.get(kind, _decode_text)
    decoded: list[Any] = []
    for row, value in enumerate(values):
        if value is None:
            decoded.append(None)
            continue
        try:
            decoded.append(decoder(value))
        except (ValueError, TypeError, UnicodeDecodeError) as exc:
            raise DecodeError(f"Unable to decode column '{name}' at row {row + 1} as {kind.value}: {exc}") from exc
    return build_column(kind, decoded)


def rowset_to_table(rowset: RowSet, column_limit: int | None = None) -> Table:
    """Build a Table from a row set, keeping at most ``column_limit`` leftmost columns.

    Raises DecodeError when any cell cannot be decoded; no partial table is
    returned in that case.
    """
    ncols = len(rowset.columns)
    if column_limit is not None and column_limit > 0:
        ncols = min(ncols, column_limit)
    columns: list[Column] = []
    for col in range(ncols):
        type_name = rowset.column_types[col] if col < len(rowset.column_types) else None
        values = [row[col] for row in rowset.rows]
        columns.append(
            decode_column(DBType.from_text(type_name), rowset.columns[col], values, json_parsed=rowset.json_parsed)
        )
    try:
        return Table(columns, rowset.columns[:ncols])
    except ValueError as exc:
        raise DecodeError(str(exc)) from exc
