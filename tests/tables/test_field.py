from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from queries.tables.field import POSTGRES_DIALECT, SQLITE_DIALECT, DBType, Field, display_value, sql_literal


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("integer", DBType.I32),
        ("INT4", DBType.I32),
        ("bigint", DBType.I64),
        ("smallint", DBType.I16),
        ("double precision", DBType.F64),
        ("real", DBType.F32),
        ("numeric(10,2)", DBType.NUMERIC),
        ("character varying(20)", DBType.TEXT),
        ("varchar(8)", DBType.TEXT),
        ("timestamp with time zone", DBType.TIME),
        ("date", DBType.DATE),
        ("jsonb", DBType.JSON),
        ("bytea", DBType.BYTES),
        ("blob", DBType.BYTES),
        ("_int4", DBType.ARRAY),
        ("text[]", DBType.ARRAY),
        ("trigger", DBType.TRIGGER),
        ("geometry", DBType.UNKNOWN),
        ("", DBType.UNKNOWN),
        (None, DBType.UNKNOWN),
    ],
)
def test_from_text_maps_type_names(name: str | None, expected: DBType) -> None:
    assert DBType.from_text(name) is expected


def test_canonical_names_round_trip_through_from_text() -> None:
    for kind in (DBType.BOOL, DBType.I16, DBType.I32, DBType.I64, DBType.F32, DBType.F64, DBType.TEXT, DBType.JSON):
        assert DBType.from_text(kind.value) is kind


def test_display_value_formats() -> None:
    assert display_value(DBType.F64, 1.5, precision=2) == "1.50"
    assert display_value(DBType.BYTES, b"\x00\x01\x02") == "Binary (3 bytes)"
    assert display_value(DBType.BOOL, True) == "true"
    assert display_value(DBType.JSON, {"a": 1}) == '{"a": 1}'
    assert display_value(DBType.ARRAY, [1, 2, None]) == "{1,2,NULL}"
    assert display_value(DBType.DATE, dt.date(2024, 3, 1)) == "2024-03-01"
    assert display_value(DBType.NUMERIC, Decimal("1E+2")) == "100"
    assert display_value(DBType.TEXT, None) == "NULL"


def test_sql_literal_quotes_and_escapes() -> None:
    assert sql_literal(DBType.TEXT, "O'Brien") == "'O''Brien'"
    assert sql_literal(DBType.I32, 7) == "7"
    assert sql_literal(DBType.BOOL, False) == "FALSE"
    assert sql_literal(DBType.BYTES, b"\xff") == "X'ff'"
    assert sql_literal(DBType.TEXT, None) == "NULL"
    assert sql_literal(DBType.JSON, {"k": "v"}) == "'{\"k\": \"v\"}'"


def test_sql_literal_bytes_per_dialect() -> None:
    assert sql_literal(DBType.BYTES, b"\x00\xff", POSTGRES_DIALECT) == "'\\x00ff'::bytea"
    assert sql_literal(DBType.BYTES, b"\x00\xff", SQLITE_DIALECT) == "X'00ff'"


@pytest.mark.parametrize(
    ("value", "postgres", "sqlite"),
    [
        (float("nan"), "'NaN'", "NULL"),
        (float("inf"), "'Infinity'", "9e999"),
        (float("-inf"), "'-Infinity'", "-9e999"),
        (Decimal("NaN"), "'NaN'", "NULL"),
        (Decimal("-Infinity"), "'-Infinity'", "-9e999"),
        (2.5, "2.5", "2.5"),
    ],
)
def test_sql_literal_non_finite_numbers(value: object, postgres: str, sqlite: str) -> None:
    assert sql_literal(DBType.F64, value, POSTGRES_DIALECT) == postgres
    assert sql_literal(DBType.F64, value, SQLITE_DIALECT) == sqlite


def test_field_helpers() -> None:
    field = Field(DBType.F32, 2.0)
    assert not field.is_null
    assert field.display(precision=1) == "2.0"
    assert Field(DBType.TEXT).is_null
    assert Field(DBType.TEXT).sql_literal() == "NULL"
