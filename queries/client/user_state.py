"""Persisted user state: recent scripts, saved connections and certificates.

The document lives at ``~/.queries/state.yaml`` (``QUERIES_STATE_PATH``
overrides it) and is written atomically. Passwords are never part of it.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from queries.shared import paths
from queries.shared.config import ExecutionSettings
from queries.shared.exceptions import ConfigurationError, URIError

from .conn import ConnectionInfo, Engine, Security, TlsVersion

logger = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass(frozen=True, slots=True)
class CertificateEntry:
    """Root certificate remembered for a host."""

    host: str
    cert: str
    is_tls: bool = True


@dataclass(frozen=True, slots=True)
class EditorSettings:
    split_statements: bool = True
    font_size: int = 12


@dataclass(slots=True)
class UserState:
    scripts: tuple[Path, ...] = ()
    connections: tuple[ConnectionInfo, ...] = ()
    certificates: tuple[CertificateEntry, ...] = ()
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    editor: EditorSettings = field(default_factory=EditorSettings)

    def remember_connection(self, info: ConnectionInfo) -> None:
        """Add ``info``, replacing any saved connection to the same database."""
        kept = tuple(saved for saved in self.connections if not saved.is_like(info))
        self.connections = kept + (info,)

    def remember_script(self, path: str | Path) -> None:
        resolved = Path(path)
        self.scripts = tuple(script for script in self.scripts if script != resolved) + (resolved,)

    def certificate_for(self, host: str) -> CertificateEntry | None:
        for entry in self.certificates:
            if entry.host == host:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "scripts": [str(script) for script in self.scripts],
            "connections": [_connection_to_dict(info) for info in self.connections],
            "certificates": [
                {"host": entry.host, "cert": entry.cert, "is_tls": entry.is_tls}
                for entry in self.certificates
            ],
            "execution_settings": {item.name: getattr(self.execution, item.name) for item in fields(self.execution)},
            "editor_settings": {item.name: getattr(self.editor, item.name) for item in fields(self.editor)},
        }


def get_state_path(env: Mapping[str, str] | None = None) -> Path:
    return paths.default_state_path(env=env)


def load_user_state(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> UserState:
    """Load user state from disk, falling back to defaults when absent or unreadable."""
    resolved_path = Path(path) if path else get_state_path(env)
    if not resolved_path.exists():
        return UserState()
    try:
        with resolved_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (yaml.YAMLError, OSError) as exc:
        logger.warning("Failed to read user state from %s: %s; using defaults.", resolved_path, exc)
        return UserState()
    if not isinstance(data, Mapping):
        logger.warning("User state at %s is not a mapping; using defaults.", resolved_path)
        return UserState()
    return _parse_state(data)


def save_user_state(
    state: UserState,
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Path:
    """Write the state document atomically (temp file + rename)."""
    resolved_path = Path(path) if path else get_state_path(env)
    parent = resolved_path.parent
    if not parent.exists():
        parent.mkdir(parents=True, exist_ok=True, mode=0o700)

    content = yaml.safe_dump(state.to_dict(), sort_keys=False)
    fd, temp_path = tempfile.mkstemp(suffix=".tmp", prefix=".state_", dir=parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, resolved_path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise
    logger.debug("Saved user state to %s", resolved_path)
    return resolved_path


def _connection_to_dict(info: ConnectionInfo) -> dict[str, Any]:
    security = info.security
    return {
        "engine": info.engine.value,
        "host": info.host,
        "port": info.port,
        "user": info.user,
        "database": info.database,
        "tls_version": security.tls_version.label if security.tls_version else None,
        "cert_path": str(security.cert_path) if security.cert_path else None,
        "verify_hostname": security.verify_hostname,
    }


def _connection_from_dict(data: Mapping[str, Any]) -> ConnectionInfo:
    tls = data.get("tls_version")
    cert = data.get("cert_path")
    return ConnectionInfo(
        engine=Engine(data.get("engine", Engine.POSTGRES.value)),
        host=str(data.get("host", "")),
        port=data.get("port"),
        user=str(data.get("user") or ""),
        database=str(data.get("database") or ""),
        security=Security(
            tls_version=TlsVersion.parse(tls) if tls else None,
            cert_path=Path(cert) if cert else None,
            verify_hostname=data.get("verify_hostname"),
        ),
    )


def _parse_state(data: Mapping[str, Any]) -> UserState:
    connections = []
    for entry in data.get("connections") or []:
        try:
            connections.append(_connection_from_dict(entry))
        except (URIError, ValueError, TypeError) as exc:
            logger.warning("Skipping unreadable saved connection %r: %s", entry, exc)

    certificates = tuple(
        CertificateEntry(str(entry["host"]), str(entry["cert"]), bool(entry.get("is_tls", True)))
        for entry in data.get("certificates") or []
        if "host" in entry and "cert" in entry
    )

    execution = ExecutionSettings()
    try:
        execution = execution.with_changes(**_known_fields(ExecutionSettings, data.get("execution_settings")))
    except (ConfigurationError, TypeError) as exc:
        logger.warning("Ignoring saved execution settings: %s", exc)

    editor = EditorSettings(**_known_fields(EditorSettings, data.get("editor_settings")))

    return UserState(
        scripts=tuple(Path(script) for script in data.get("scripts") or []),
        connections=tuple(connections),
        certificates=certificates,
        execution=execution,
        editor=editor,
    )


def _known_fields(cls: type, raw: Any) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        return {}
    names = {item.name for item in fields(cls)}
    return {key: value for key, value in raw.items() if key in names}
