"""Typed columnar storage for result tables."""

from __future__ import annotations

from typing import Any, Iterable, Iterator, Sequence

from .field import DBType, Field, display_value


class Column:
    """Densely packed, homogeneous sequence of values of one DBType."""

    __slots__ = ("kind", "_values")

    def __init__(self, kind: DBType, values: Iterable[Any] = ()) -> None:
        self.kind = kind
        self._values = list(values)

    @property
    def is_nullable(self) -> bool:
        return False

    @property
    def null_count(self) -> int:
        return 0

    def __len__(self) -> int:
        return len(self._values)

    def len(self) -> int:
        return len(self)

    def __iter__(self) -> Iterator[Any]:
        return iter(self.to_list())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Column):
            return NotImplemented
        return self.kind is other.kind and self.to_list() == other.to_list()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.name}, {self.to_list()!r})"

    def value_at(self, index: int) -> Any:
        """Return the raw value at ``index`` (None for NULL or out of range)."""
        field = self.at(index)
        return None if field is None else field.value

    def at(self, index: int) -> Field | None:
        if 0 <= index < len(self._values):
            return Field(self.kind, self._values[index])
        return None

    def truncate(self, n: int) -> None:
        del self._values[max(n, 0):]

    def to_list(self) -> list[Any]:
        return list(self._values)

    def copy(self) -> Column:
        return Column(self.kind, self._values)

    def display_content_at_index(self, index: int, precision: int = 4) -> str | None:
        field = self.at(index)
        if field is None:
            return None
        return display_value(self.kind, field.value, precision)


class NullableColumn(Column):
    """Column with NULLs, stored as dense values plus a row-to-dense index map.

    ``valid_ixs`` maps each non-null row index to its position in the dense
    value list; rows missing from the map are NULL. ``len(values) +
    null_count == len(column)`` always holds.
    """

    __slots__ = ("valid_ixs", "_n")

    def __init__(self, kind: DBType, values: Iterable[Any] = (), valid_ixs: dict[int, int] | None = None, n: int = 0) -> None:
        super().__init__(kind, values)
        self.valid_ixs: dict[int, int] = dict(valid_ixs or {})
        self._n = n
        if len(self.valid_ixs) != len(self._values) or len(self._values) > n:
            raise ValueError("Nullable column index map does not match its values.")

    @classmethod
    def from_optional(cls, kind: DBType, values: Sequence[Any]) -> NullableColumn:
        dense: list[Any] = []
        valid_ixs: dict[int, int] = {}
        for row, value in enumerate(values):
            if value is not None:
                valid_ixs[row] = len(dense)
                dense.append(value)
        return cls(kind, dense, valid_ixs, len(values))

    @property
    def is_nullable(self) -> bool:
        return True

    @property
    def null_count(self) -> int:
        return self._n - len(self._values)

    @property
    def values(self) -> list[Any]:
        return list(self._values)

    def __len__(self) -> int:
        return self._n

    def at(self, index: int) -> Field | None:
        if not 0 <= index < self._n:
            return None
        dense_ix = self.valid_ixs.get(index)
        if dense_ix is None:
            return Field(self.kind, None)
        return Field(self.kind, self._values[dense_ix])

    def truncate(self, n: int) -> None:
        n = max(n, 0)
        if n >= self._n:
            return
        self.valid_ixs = {row: ix for row, ix in self.valid_ixs.items() if row < n}
        # Dense positions follow row order, so the kept values are a prefix.
        del self._values[len(self.valid_ixs):]
        self._n = n

    def to_list(self) -> list[Any]:
        return [self.value_at(row) for row in range(self._n)]

    def copy(self) -> NullableColumn:
        return NullableColumn(self.kind, self._values, self.valid_ixs, self._n)


def build_column(kind: DBType, values: Sequence[Any]) -> Column:
    """Return a dense Column, promoted to NullableColumn when any value is None."""
    if any(value is None for value in values):
        return NullableColumn.from_optional(kind, values)
    return Column(kind, values)
