"""Output rendering helpers for the queries command line."""

from __future__ import annotations

import csv
import json
import sys
from typing import IO, Any, Sequence

from rich import box
from rich.console import Console
from rich.table import Table as RichTable
from rich.text import Text

from queries.shared.logging import Logger
from queries.sql.objects import DBFunction, DBInfo, DBSchema, DBTable, DBView
from queries.sql.output import Empty, Invalid, Modification, Statement, StatementOutput, Valid
from queries.tables.table import Table

OUTPUT_FORMAT_CHOICES = ("table", "tsv", "csv", "json")
SCHEMA_FORMAT_CHOICES = ("table", "json", "dot")


def render_outputs(
    outputs: Sequence[StatementOutput],
    *,
    output_format: str,
    logger: Logger,
    precision: int = 4,
    stream: IO[str] | None = None,
) -> None:
    """Render every statement output in order; payloads to ``stream``, messages to the logger."""
    output_stream = stream or sys.stdout
    for output in outputs:
        if isinstance(output, Valid):
            render_table(output.table, output_format=output_format, precision=precision, stream=output_stream)
            if output.table.plot_payload:
                logger.info("Result holds a plot payload.")
        elif isinstance(output, (Statement, Modification)):
            logger.success(output.description)
        elif isinstance(output, Invalid):
            prefix = "Server error" if output.by_engine else "Error"
            logger.error(f"{prefix}: {output.message}")
        elif isinstance(output, Empty):
            logger.info("Statement returned no rows.")


def render_table(table: Table, *, output_format: str, precision: int = 4, stream: IO[str] | None = None) -> None:
    output_stream = stream or sys.stdout
    fmt = (output_format or "table").lower()
    if fmt == "table":
        _render_rich(table, precision=precision, stream=output_stream)
    elif fmt == "csv":
        _render_delimited(table, precision=precision, stream=output_stream, delimiter=",")
    elif fmt == "tsv":
        _render_delimited(table, precision=precision, stream=output_stream, delimiter="\t")
    elif fmt == "json":
        _render_json(table, stream=output_stream)
    else:  # pragma: no cover - Click validation should prevent this
        raise ValueError(f"Unsupported output format '{output_format}'.")


def render_schema(info: DBInfo, *, output_format: str, logger: Logger, stream: IO[str] | None = None) -> None:
    """Render the schema tree as tables, JSON, or a Graphviz ER diagram."""
    output_stream = stream or sys.stdout
    fmt = (output_format or "table").lower()

    if fmt == "dot":
        output_stream.write(info.er_diagram() + "\n")
        return
    if fmt == "json":
        json.dump({"schemas": [_schema_payload(schema) for schema in info.schema]}, output_stream, indent=2)
        output_stream.write("\n")
        return

    console = Console(file=output_stream, highlight=False, force_terminal=False)
    if info.details is not None and info.details.server:
        console.print(f"[bold]{info.details.server}[/bold]")
    for obj in info.walk():
        if isinstance(obj, (DBTable, DBView)):
            label = "view" if isinstance(obj, DBView) else "table"
            console.print(f"[bold]{obj.qualified_name}[/bold] ({label})")
            column_table = RichTable(box=box.SIMPLE, show_header=True, header_style="bold")
            column_table.add_column("Column")
            column_table.add_column("Type")
            column_table.add_column("Key")
            for column in obj.cols:
                column_table.add_row(column.name, column.type.value, "PK" if column.is_pk else "")
            console.print(column_table)
            if isinstance(obj, DBTable) and obj.rels:
                fk_table = RichTable(box=box.SIMPLE, show_header=True, header_style="bold")
                fk_table.add_column("From")
                fk_table.add_column("References")
                for rel in obj.rels:
                    fk_table.add_row(rel.source_column, f"{rel.target_schema}.{rel.target_table}.{rel.target_column}")
                console.print(fk_table)
        elif isinstance(obj, DBFunction):
            args = ", ".join(_function_args(obj))
            ret = obj.ret.value if obj.ret else "void"
            console.print(f"{obj.schema}.{obj.name}({args}) -> {ret}")

    if not info.tables():
        logger.info("No tables found.")


def _render_rich(table: Table, *, precision: int, stream: IO[str]) -> None:
    console = Console(file=stream, highlight=False, force_terminal=False)
    rich_table = RichTable(box=box.SIMPLE_HEAVY, show_header=True, header_style="bold")
    header, *rows = table.text_rows(precision=precision)
    for name in header:
        rich_table.add_column(Text(name or ""))
    for row in rows:
        rich_table.add_row(*(Text(cell) for cell in row))
    console.print(rich_table)


def _render_delimited(table: Table, *, precision: int, stream: IO[str], delimiter: str) -> None:
    writer = csv.writer(stream, delimiter=delimiter)
    for row in table.text_rows(precision=precision):
        writer.writerow(row)


def _render_json(table: Table, *, stream: IO[str]) -> None:
    records = [
        {name: _json_value(value) for name, value in zip(table.column_names, row)}
        for row in table.rows()
    ]
    json.dump(records, stream, indent=2, default=str)
    stream.write("\n")


def _json_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


def _function_args(function: DBFunction) -> list[str]:
    names = function.arg_names or ("",) * len(function.args)
    return [f"{name} {arg.value}".strip() for name, arg in zip(names, function.args)]


def _schema_payload(schema: DBSchema) -> dict[str, Any]:
    payload: dict[str, Any] = {"name": schema.name, "tables": [], "views": [], "functions": []}
    for obj in schema.children:
        if isinstance(obj, DBTable):
            payload["tables"].append(
                {
                    "name": obj.name,
                    "columns": [{"name": c.name, "type": c.type.value, "primary_key": c.is_pk} for c in obj.cols],
                    "foreign_keys": [
                        {
                            "from": rel.source_column,
                            "table": f"{rel.target_schema}.{rel.target_table}",
                            "to": rel.target_column,
                        }
                        for rel in obj.rels
                    ],
                }
            )
        elif isinstance(obj, DBView):
            payload["views"].append(
                {"name": obj.name, "columns": [{"name": c.name, "type": c.type.value} for c in obj.cols]}
            )
        elif isinstance(obj, DBFunction):
            payload["functions"].append(
                {"name": obj.name, "args": _function_args(obj), "returns": obj.ret.value if obj.ret else None}
            )
    return payload
