"""Schema tree model: schemas, tables, views and functions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Iterator, Sequence, Union

from queries.tables.field import DBType


@dataclass(frozen=True, slots=True)
class DBColumn:
    name: str
    type: DBType
    is_pk: bool = False


@dataclass(frozen=True, slots=True)
class Relation:
    """Foreign key from a column of the owning table to another table."""

    target_schema: str
    target_table: str
    source_column: str
    target_column: str


@dataclass(frozen=True, slots=True)
class DBSchema:
    name: str
    children: tuple[DBObject, ...] = ()


@dataclass(frozen=True, slots=True)
class DBTable:
    schema: str
    name: str
    cols: tuple[DBColumn, ...] = ()
    rels: tuple[Relation, ...] = ()

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"


@dataclass(frozen=True, slots=True)
class DBView:
    schema: str
    name: str
    cols: tuple[DBColumn, ...] = ()

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"


@dataclass(frozen=True, slots=True)
class DBFunction:
    schema: str
    name: str
    args: tuple[DBType, ...] = ()
    arg_names: tuple[str, ...] | None = None
    ret: DBType | None = None


DBObject = Union[DBSchema, DBTable, DBView, DBFunction]


@dataclass(frozen=True, slots=True)
class DBDetails:
    """Best-effort server facts gathered right after connecting."""

    uptime: str | None = None
    server: str | None = None
    size: str | None = None
    locale: str | None = None


@dataclass(frozen=True, slots=True)
class DBInfo:
    schema: tuple[DBObject, ...] = ()
    details: DBDetails | None = None

    def walk(self) -> Iterator[DBObject]:
        """Yield every object of the tree, depth first."""
        stack = list(reversed(self.schema))
        while stack:
            obj = stack.pop()
            yield obj
            if isinstance(obj, DBSchema):
                stack.extend(reversed(obj.children))

    def tables(self) -> list[DBTable]:
        return [obj for obj in self.walk() if isinstance(obj, DBTable)]

    def find_table(self, name: str, schema: str | None = None) -> DBTable | None:
        for table in self.tables():
            if table.name == name and (schema is None or table.schema == schema):
                return table
        return None

    def schema_has_table(self, name: str) -> bool:
        return self.find_table(name) is not None

    def object_at(self, path: Sequence[int]) -> DBObject | None:
        """Resolve a tree path (one index per level) to an object."""
        if not path:
            return None
        level: Sequence[DBObject] = self.schema
        found: DBObject | None = None
        for index in path:
            if not 0 <= index < len(level):
                return None
            found = level[index]
            level = found.children if isinstance(found, DBSchema) else ()
        return found

    def er_diagram(self) -> str:
        """Return a Graphviz ``graph`` with one node per table and one edge per known relation."""
        tables = self.tables()
        known = {table.qualified_name for table in tables}
        lines = ["graph {"]
        for table in tables:
            lines.append(f'  "{table.qualified_name}" [shape=box];')
        for table in tables:
            for rel in table.rels:
                target = f"{rel.target_schema}.{rel.target_table}"
                if target not in known:
                    continue
                lines.append(
                    f'  "{table.qualified_name}" -- "{target}" '
                    f'[label="{rel.source_column}:{rel.target_column}"];'
                )
        lines.append("}")
        return "\n".join(lines)


@dataclass(slots=True)
class _TableParts:
    cols: list[DBColumn] = field(default_factory=list)
    rels: list[Relation] = field(default_factory=list)


def assemble_schema(
    schemas: Iterable[str],
    tables: Iterable[tuple[str, str]],
    views: Iterable[tuple[str, str]],
    columns: Iterable[tuple[str, str, str, str]],
    primary_keys: Iterable[tuple[str, str, str]],
    relations: Iterable[tuple[str, str, str, str, str, str]],
    functions: Iterable[DBFunction] = (),
) -> tuple[DBObject, ...]:
    """Assemble flat introspection rows into a sorted schema tree.

    ``columns`` rows are ``(schema, table, column, type_name)`` in ordinal
    order; ``primary_keys`` rows are ``(schema, table, column)``;
    ``relations`` rows are ``(schema, table, column, target_schema,
    target_table, target_column)``.
    """
    pk_set = set(primary_keys)
    parts: dict[tuple[str, str], _TableParts] = {}
    for schema, table, column, type_name in columns:
        parts.setdefault((schema, table), _TableParts()).cols.append(
            DBColumn(column, DBType.from_text(type_name), (schema, table, column) in pk_set)
        )
    for schema, table, column, target_schema, target_table, target_column in relations:
        parts.setdefault((schema, table), _TableParts()).rels.append(
            Relation(target_schema, target_table, column, target_column)
        )

    children: dict[str, list[DBObject]] = {name: [] for name in schemas}
    for schema, name in sorted(tables):
        table_parts = parts.get((schema, name), _TableParts())
        children.setdefault(schema, []).append(
            DBTable(schema, name, tuple(table_parts.cols), tuple(table_parts.rels))
        )
    for schema, name in sorted(views):
        view_parts = parts.get((schema, name), _TableParts())
        children.setdefault(schema, []).append(DBView(schema, name, tuple(view_parts.cols)))
    for function in sorted(functions, key=lambda fn: (fn.schema, fn.name)):
        children.setdefault(function.schema, []).append(function)

    return tuple(DBSchema(name, tuple(objs)) for name, objs in sorted(children.items()))
