"""File import/export for result tables, backed by pandas."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import pandas as pd
from pandas.api import types as ptypes

from queries.shared.exceptions import ExportError

from .column import build_column
from .field import DBType, display_value
from .table import Table

_log = logging.getLogger(__name__)

EXPORT_SUFFIXES = (".csv", ".json")


def table_to_frame(table: Table) -> pd.DataFrame:
    """Return a DataFrame with one column per table column, NULLs as None."""
    data: dict[str, list[Any]] = {}
    for name, column in zip(table.column_names, table.columns):
        if column.kind is DBType.BYTES:
            data[name] = [None if value is None else display_value(column.kind, value) for value in column.to_list()]
        else:
            data[name] = column.to_list()
    return pd.DataFrame(data, columns=table.column_names)


def frame_to_table(frame: pd.DataFrame, name: str | None = None) -> Table:
    """Build a Table from a DataFrame, inferring column types from dtypes."""
    columns = []
    for column_name in frame.columns:
        series = frame[column_name]
        kind = _kind_for_series(series)
        values = [_python_value(value) for value in series.tolist()]
        if kind is DBType.TEXT:
            values = [None if value is None else str(value) for value in values]
        elif kind is DBType.I64:
            values = [None if value is None else int(value) for value in values]
        columns.append(build_column(kind, values))
    return Table(columns, [str(column) for column in frame.columns], name=name)


def read_csv(path: str | Path) -> Table:
    """Read a CSV file with a header row into a Table."""
    source = Path(path)
    try:
        frame = pd.read_csv(source)
    except FileNotFoundError as exc:
        raise ExportError(f"File not found: {source}") from exc
    except OSError as exc:
        raise ExportError(f"Unable to read {source}: {exc}") from exc
    # ParserError, EmptyDataError and UnicodeDecodeError are all ValueErrors.
    except ValueError as exc:
        raise ExportError(f"Unable to parse {source.name}: {exc}") from exc
    _log.debug("Read %d row(s) from %s", len(frame), source)
    return frame_to_table(frame, name=source.stem)


def write_table(table: Table, path: str | Path) -> Path:
    """Write a table to CSV or JSON according to the file suffix."""
    target = Path(path)
    suffix = target.suffix.lower()
    if suffix not in EXPORT_SUFFIXES:
        raise ExportError(
            f"Unsupported export format '{target.suffix or target.name}'; use one of {', '.join(EXPORT_SUFFIXES)}."
        )
    frame = table_to_frame(table)
    try:
        if suffix == ".csv":
            for name, column in zip(table.column_names, table.columns):
                if column.kind is DBType.JSON:
                    frame[name] = [None if value is None else json.dumps(value) for value in column.to_list()]
            frame.to_csv(target, index=False)
        else:
            frame.to_json(target, orient="records", indent=2, default_handler=str)
    except OSError as exc:
        raise ExportError(f"Unable to write {target}: {exc}") from exc
    _log.debug("Exported %d row(s) to %s", len(frame), target)
    return target


def _kind_for_series(series: pd.Series) -> DBType:
    if ptypes.is_bool_dtype(series):
        return DBType.BOOL
    if ptypes.is_integer_dtype(series):
        return DBType.I64
    if ptypes.is_float_dtype(series):
        non_null = series.dropna()
        if len(non_null) and (non_null == non_null.round()).all():
            # Integer columns with gaps come back from pandas as floats.
            return DBType.I64
        return DBType.F64
    return DBType.TEXT


def _python_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    if hasattr(value, "item"):
        value = value.item()
    return value
