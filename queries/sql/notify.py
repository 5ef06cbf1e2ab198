"""Matching of NOTIFY payloads against schedule filters."""

from __future__ import annotations

import json
from typing import Any


def parse_filter(filter_json: str | None) -> dict[str, Any] | None:
    """Parse a schedule filter; blank filters mean "match everything"."""
    if filter_json is None or not filter_json.strip():
        return None
    try:
        value = json.loads(filter_json)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Notification filter is not valid JSON: {exc.msg}") from exc
    if not isinstance(value, dict):
        raise ValueError("Notification filter must be a JSON object")
    return value


def contains(expected: Any, actual: Any) -> bool:
    """Return True when ``expected`` is a subtree of ``actual``.

    Objects match when every expected key is present with a matching value;
    arrays match when each expected element matches some actual element;
    scalars compare by equality.
    """
    if isinstance(expected, dict):
        return isinstance(actual, dict) and all(
            key in actual and contains(value, actual[key]) for key, value in expected.items()
        )
    if isinstance(expected, list):
        return isinstance(actual, list) and all(
            any(contains(item, candidate) for candidate in actual) for item in expected
        )
    if isinstance(expected, bool) or isinstance(actual, bool):
        return expected is actual
    return expected == actual


def payload_matches(filter_value: dict[str, Any] | None, payload: str) -> bool:
    """Return True when a raw NOTIFY payload satisfies the parsed filter."""
    if not filter_value:
        return True
    try:
        document = json.loads(payload)
    except (json.JSONDecodeError, TypeError):
        return False
    return contains(filter_value, document)
