"""Configuration loading utilities for the SQL client core."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping, MutableMapping

import yaml

from . import paths
from .exceptions import ConfigurationError

MIN_CONNECT_TIMEOUT_SECS = 10
DEFAULT_APPLICATION_NAME = "Queries"

_APPLICATION_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")


@dataclass(frozen=True, slots=True)
class ExecutionSettings:
    """Execution policy consulted by the classifier and the worker."""

    row_limit: int = 500
    column_limit: int = 25
    schedule_interval_secs: int = 1
    timeout_secs: int = 5
    accept_dml: bool = False
    accept_ddl: bool = False

    def with_changes(self, **changes: Any) -> ExecutionSettings:
        """Return a validated copy with the given fields replaced."""
        updated = replace(self, **changes)
        validate_execution_settings(updated)
        return updated


@dataclass(frozen=True, slots=True)
class ConnectionSettings:
    """Connection-level configuration."""

    application_name: str
    connect_timeout_secs: int
    save_credentials: bool


@dataclass(frozen=True, slots=True)
class ReportSettings:
    """Rendering options for tables and reports."""

    float_precision: int


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Top-level application configuration."""

    source_path: Path
    execution: ExecutionSettings
    connection: ConnectionSettings
    report: ReportSettings

    def with_execution(self, **changes: Any) -> AppConfig:
        """Return a copy with updated execution settings."""
        return replace(self, execution=self.execution.with_changes(**changes))


def _default_config() -> dict[str, Any]:
    defaults = ExecutionSettings()
    return {
        "execution": {
            "row_limit": defaults.row_limit,
            "column_limit": defaults.column_limit,
            "schedule_interval_secs": defaults.schedule_interval_secs,
            "timeout_secs": defaults.timeout_secs,
            "accept_dml": defaults.accept_dml,
            "accept_ddl": defaults.accept_ddl,
        },
        "connection": {
            "application_name": DEFAULT_APPLICATION_NAME,
            "connect_timeout_secs": MIN_CONNECT_TIMEOUT_SECS,
            "save_credentials": False,
        },
        "report": {
            "float_precision": 4,
        },
    }


ENV_OVERRIDE_SPEC: dict[str, tuple[str, type]] = {
    "execution.row_limit": ("QUERIES_ROW_LIMIT", int),
    "execution.column_limit": ("QUERIES_COLUMN_LIMIT", int),
    "execution.schedule_interval_secs": ("QUERIES_SCHEDULE_INTERVAL", int),
    "execution.timeout_secs": ("QUERIES_TIMEOUT", int),
    "execution.accept_dml": ("QUERIES_ACCEPT_DML", bool),
    "execution.accept_ddl": ("QUERIES_ACCEPT_DDL", bool),
    "connection.application_name": ("QUERIES_APPLICATION_NAME", str),
    "connection.connect_timeout_secs": ("QUERIES_CONNECT_TIMEOUT", int),
    "connection.save_credentials": ("QUERIES_SAVE_CREDENTIALS", bool),
}


def load_config(
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> AppConfig:
    """Load configuration from defaults, YAML file, and env overrides."""
    env = dict(os.environ if env is None else env)
    resolved_config_path = _resolve_config_path(config_path, env)
    file_data = _load_yaml(resolved_config_path)
    merged: dict[str, Any] = _deep_merge(_default_config(), file_data)
    merged = _apply_env_overrides(merged, env)
    return _build_config(merged, resolved_config_path)


def validate_execution_settings(settings: ExecutionSettings) -> None:
    """Raise ConfigurationError when a limit is outside its accepted range."""
    for field_name in ("row_limit", "column_limit", "schedule_interval_secs", "timeout_secs"):
        value = getattr(settings, field_name)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigurationError(f"{field_name} must be a positive integer (got {value!r}).")


def validate_application_name(name: str) -> str:
    if not _APPLICATION_NAME_RE.match(name):
        raise ConfigurationError("Application name at settings contain non-alphanumeric characters")
    return name


def _resolve_config_path(config_path: str | Path | None, env: Mapping[str, str]) -> Path:
    if config_path:
        return paths.resolve_path(config_path)
    return paths.default_config_path(env=env)


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Config file at {path} is not valid YAML: {exc}") from exc
        if not isinstance(data, MutableMapping):
            raise ConfigurationError(f"Config file at {path} must define a mapping root object.")
        return dict(data)


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], Mapping) and isinstance(value, Mapping):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(config: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    config_copy = _deep_merge(config, {})
    for dotted_key, (env_key, expected_type) in ENV_OVERRIDE_SPEC.items():
        if env_key not in env:
            continue
        raw_value = env[env_key]
        try:
            value = _coerce_env_value(raw_value, expected_type)
        except ValueError as exc:
            raise ConfigurationError(
                f"Environment override {env_key} has invalid value '{raw_value}': {exc}"
            ) from exc
        _assign_nested(config_copy, dotted_key.split("."), value)
    return config_copy


def _coerce_env_value(raw: str, expected_type: type) -> Any:
    cleaned = raw.strip()
    if expected_type is bool:
        lowered = cleaned.lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError("expected boolean (true/false)")
    if expected_type is int:
        return int(cleaned)
    return cleaned


def _assign_nested(target: MutableMapping[str, Any], keys: list[str], value: Any) -> None:
    current = target
    for key in keys[:-1]:
        if key not in current or not isinstance(current[key], MutableMapping):
            current[key] = {}
        current = current[key]  # type: ignore[assignment]
    current[keys[-1]] = value


def _as_bool(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"Setting '{key}' must be a boolean (got {value!r}).")
    return value


def _build_config(data: Mapping[str, Any], source_path: Path) -> AppConfig:
    try:
        exec_cfg = data["execution"]
        execution = ExecutionSettings(
            row_limit=int(exec_cfg["row_limit"]),
            column_limit=int(exec_cfg["column_limit"]),
            schedule_interval_secs=int(exec_cfg["schedule_interval_secs"]),
            timeout_secs=int(exec_cfg["timeout_secs"]),
            accept_dml=_as_bool(exec_cfg["accept_dml"], "execution.accept_dml"),
            accept_ddl=_as_bool(exec_cfg["accept_ddl"], "execution.accept_ddl"),
        )
        conn_cfg = data["connection"]
        connection = ConnectionSettings(
            application_name=validate_application_name(str(conn_cfg["application_name"])),
            # Connect attempts are never bounded below the minimum.
            connect_timeout_secs=max(MIN_CONNECT_TIMEOUT_SECS, int(conn_cfg["connect_timeout_secs"])),
            save_credentials=_as_bool(conn_cfg["save_credentials"], "connection.save_credentials"),
        )
        report = ReportSettings(float_precision=int(data["report"]["float_precision"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid configuration structure: {exc}") from exc

    validate_execution_settings(execution)
    if report.float_precision < 0:
        raise ConfigurationError("report.float_precision must not be negative.")

    return AppConfig(
        source_path=source_path,
        execution=execution,
        connection=connection,
        report=report,
    )
