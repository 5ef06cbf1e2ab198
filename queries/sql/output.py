"""Per-statement execution results."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Union

from queries.tables.table import Table

SCHEMA_CHANGING = frozenset({"Create", "Alter", "Drop"})


@dataclass(frozen=True, slots=True)
class Valid:
    """A statement that produced a result set."""

    query: str
    table: Table


@dataclass(frozen=True, slots=True)
class Statement:
    """A statement without a result set, described by its kind (e.g. ``Create``)."""

    description: str


@dataclass(frozen=True, slots=True)
class Modification:
    """INSERT/UPDATE/DELETE outcome, e.g. ``3 row(s) updated``."""

    description: str


@dataclass(frozen=True, slots=True)
class Empty:
    pass


@dataclass(frozen=True, slots=True)
class Invalid:
    """A failed statement; ``by_engine`` is False when the client refused it."""

    message: str
    by_engine: bool


StatementOutput = Union[Valid, Statement, Modification, Empty, Invalid]


def changes_schema(output: StatementOutput) -> bool:
    return isinstance(output, Statement) and output.description in SCHEMA_CHANGING


def first_error(outputs: Sequence[StatementOutput]) -> Invalid | None:
    return next((output for output in outputs if isinstance(output, Invalid)), None)


def snapshot(outputs: Sequence[StatementOutput]) -> list[StatementOutput]:
    """Copy a batch so each subscriber gets tables it can mutate freely."""
    return [Valid(output.query, output.table.copy()) if isinstance(output, Valid) else output for output in outputs]


def _condense(messages: list[str], noun: str) -> str | None:
    if not messages:
        return None
    *previous, last = messages
    if not previous:
        return last
    plural = "s" if len(previous) > 1 else ""
    return f"{last} (+{len(previous)} previous {noun}{plural})"


def condense_errors(outputs: Sequence[StatementOutput]) -> str | None:
    """Summarise the errors of a batch as its last error plus a count of earlier ones."""
    return _condense([output.message for output in outputs if isinstance(output, Invalid)], "error")


def condense_statement_outputs(outputs: Sequence[StatementOutput]) -> str | None:
    """Summarise the non-query outcomes of a batch the same way as errors."""
    return _condense(
        [output.description for output in outputs if isinstance(output, (Statement, Modification))],
        "change",
    )
