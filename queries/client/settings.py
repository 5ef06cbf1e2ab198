"""Process-wide execution policy snapshot."""

from __future__ import annotations

import threading
from typing import Any

from queries.shared.config import ExecutionSettings, validate_execution_settings


class SettingsStore:
    """Holds one immutable ExecutionSettings value, replaced wholesale on update.

    Readers get the current snapshot without locking; writers serialise on a
    lock so concurrent ``update`` calls never lose a change.
    """

    def __init__(self, initial: ExecutionSettings | None = None) -> None:
        self._lock = threading.Lock()
        self._current = initial or ExecutionSettings()
        validate_execution_settings(self._current)

    def get(self) -> ExecutionSettings:
        return self._current

    def replace(self, settings: ExecutionSettings) -> ExecutionSettings:
        validate_execution_settings(settings)
        with self._lock:
            previous, self._current = self._current, settings
        return previous

    def update(self, **changes: Any) -> ExecutionSettings:
        with self._lock:
            self._current = self._current.with_changes(**changes)
            return self._current


_process_store = SettingsStore()


def process_settings() -> SettingsStore:
    """Return the store shared by every controller that was not given its own."""
    return _process_store
