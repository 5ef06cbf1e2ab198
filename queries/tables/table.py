"""Result tables: rectangular sets of named, typed columns."""

from __future__ import annotations

from typing import Any, Iterator, Sequence

from .column import Column
from .field import SQLITE_DIALECT, DBType, sql_literal

# Key sets that identify a JSON cell as a plot description.
PLOT_SIGNATURES: tuple[frozenset[str], ...] = (
    frozenset({"elements", "layout", "design"}),
    frozenset({"plots", "layout", "design"}),
    frozenset({"x", "y", "mappings"}),
)


def is_plot_payload(value: Any) -> bool:
    """Return True when a JSON value carries one of the plot signatures."""
    if not isinstance(value, dict):
        return False
    keys = set(value)
    return any(signature <= keys for signature in PLOT_SIGNATURES)


def quote_identifier(name: str) -> str:
    """Double-quote an identifier when it is not a plain lowercase word."""
    plain = (
        bool(name)
        and (name[0].isalpha() or name[0] == "_")
        and all(ch.isalnum() or ch == "_" for ch in name)
        and name == name.lower()
    )
    if plain:
        return name
    return '"' + name.replace('"', '""') + '"'


def _quote_qualified(name: str) -> str:
    return ".".join(quote_identifier(part) for part in name.split("."))


class Table:
    """Ordered collection of equally long columns.

    ``name`` is an optional display label and ``relation`` the relation the
    rows were read from, when known.
    """

    def __init__(
        self,
        columns: Sequence[Column],
        column_names: Sequence[str],
        *,
        name: str | None = None,
        relation: str | None = None,
    ) -> None:
        if len(columns) != len(column_names):
            raise ValueError(
                f"Table has {len(columns)} columns but {len(column_names)} column names."
            )
        lengths = {len(column) for column in columns}
        if len(lengths) > 1:
            raise ValueError("Table columns differ in length.")
        self.columns: list[Column] = list(columns)
        self.column_names: list[str] = list(column_names)
        self.name = name
        self.relation = relation

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Table):
            return NotImplemented
        return (
            self.column_names == other.column_names
            and self.columns == other.columns
            and self.name == other.name
            and self.relation == other.relation
        )

    def __repr__(self) -> str:
        rows, cols = self.shape()
        return f"Table(names={self.column_names!r}, rows={rows}, cols={cols})"

    def shape(self) -> tuple[int, int]:
        rows = len(self.columns[0]) if self.columns else 0
        return rows, len(self.columns)

    def names(self) -> list[str]:
        return list(self.column_names)

    def types(self) -> list[DBType]:
        return [column.kind for column in self.columns]

    def get_column_by_name(self, name: str) -> Column | None:
        for column_name, column in zip(self.column_names, self.columns):
            if column_name == name:
                return column
        return None

    def rows(self) -> Iterator[tuple[Any, ...]]:
        """Yield rows as tuples of raw values."""
        nrows, _ = self.shape()
        for row in range(nrows):
            yield tuple(column.value_at(row) for column in self.columns)

    def single_json_field(self) -> Any | None:
        if self.shape() != (1, 1) or self.columns[0].kind is not DBType.JSON:
            return None
        return self.columns[0].value_at(0)

    @property
    def plot_payload(self) -> bool:
        return is_plot_payload(self.single_json_field())

    def copy(self) -> Table:
        return Table(
            [column.copy() for column in self.columns],
            self.column_names,
            name=self.name,
            relation=self.relation,
        )

    def truncate(self, n: int) -> None:
        for column in self.columns:
            column.truncate(n)

    def text_rows(
        self,
        max_rows: int | None = None,
        max_cols: int | None = None,
        precision: int = 4,
    ) -> list[list[str]]:
        """Return display text for the table; the first row is the header."""
        nrows, ncols = self.shape()
        if max_rows is not None:
            nrows = min(nrows, max_rows)
        if max_cols is not None:
            ncols = min(ncols, max_cols)
        content = [self.column_names[:ncols]]
        for row in range(nrows):
            content.append(
                [self.columns[col].display_content_at_index(row, precision) or "" for col in range(ncols)]
            )
        return content

    def sql_table_creation(self, name: str) -> str:
        """Return a CREATE TABLE statement with column types taken from this table."""
        definitions = ", ".join(
            f"{quote_identifier(column_name)} {_creation_type(column.kind)}"
            for column_name, column in zip(self.column_names, self.columns)
        )
        return f"CREATE TABLE {_quote_qualified(name)}({definitions});"

    def sql_table_insertion(
        self,
        name: str,
        columns: Sequence[str] | None = None,
        skip_nulls: bool = False,
        dialect: str = SQLITE_DIALECT,
    ) -> str | None:
        """Return a multi-row INSERT for this table's content.

        ``columns`` names the target columns, positionally matched with this
        table's columns. Rows holding any NULL are left out when ``skip_nulls``
        is set. Literals are spelled for ``dialect``. Returns None when there is
        nothing to insert.
        """
        if not self.columns:
            return None
        if columns is not None and len(columns) != len(self.columns):
            return None
        tuples: list[str] = []
        for row in self.rows():
            if skip_nulls and any(value is None for value in row):
                continue
            literals = ",".join(sql_literal(column.kind, value, dialect) for column, value in zip(self.columns, row))
            tuples.append(f"({literals})")
        if not tuples:
            return None
        target = _quote_qualified(name)
        if columns is not None:
            target += " (" + ", ".join(quote_identifier(column) for column in columns) + ")"
        return f"INSERT INTO {target} VALUES " + ",".join(tuples) + ";"


def _creation_type(kind: DBType) -> str:
    if kind in (DBType.ARRAY, DBType.TRIGGER, DBType.UNKNOWN):
        return DBType.TEXT.value
    if kind is DBType.TIME:
        return "timestamp"
    return kind.value
