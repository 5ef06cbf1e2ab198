from __future__ import annotations

import pytest

from queries.sql.notify import contains, parse_filter, payload_matches


def test_parse_filter_blank_means_everything() -> None:
    assert parse_filter(None) is None
    assert parse_filter("   ") is None
    assert parse_filter('{"table": "orders"}') == {"table": "orders"}


@pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '"text"'])
def test_parse_filter_rejects_non_objects(raw: str) -> None:
    with pytest.raises(ValueError, match="Notification filter"):
        parse_filter(raw)


def test_contains_is_subtree_match() -> None:
    actual = {"table": "orders", "op": "INSERT", "row": {"id": 3, "tags": ["a", "b"]}}
    assert contains({"table": "orders"}, actual)
    assert contains({"row": {"tags": ["b"]}}, actual)
    assert not contains({"row": {"tags": ["c"]}}, actual)
    assert not contains({"table": "users"}, actual)
    assert not contains({"missing": None}, actual)
    assert contains({}, actual)


def test_contains_keeps_booleans_apart_from_numbers() -> None:
    assert not contains(True, 1)
    assert not contains(1, True)
    assert contains(False, False)
    assert contains(1, 1.0)


def test_payload_matches() -> None:
    flt = parse_filter('{"op": "DELETE"}')
    assert payload_matches(flt, '{"op": "DELETE", "id": 9}')
    assert not payload_matches(flt, '{"op": "INSERT"}')
    assert not payload_matches(flt, "plain text payload")
    assert payload_matches(None, "plain text payload")
