from __future__ import annotations

from pathlib import Path

import yaml

from queries.client.conn import ConnectionInfo, Engine, Security, TlsVersion
from queries.client.user_state import (
    CertificateEntry,
    EditorSettings,
    UserState,
    get_state_path,
    load_user_state,
    save_user_state,
)
from queries.shared import paths


def _remote() -> ConnectionInfo:
    return ConnectionInfo(
        Engine.POSTGRES,
        "db.example.com",
        5432,
        "bob",
        "shop",
        Security(TlsVersion.V1_2, Path("/etc/ssl/root.pem"), True),
    )


def test_missing_state_yields_defaults(tmp_path: Path) -> None:
    state = load_user_state(tmp_path / "absent.yaml")
    assert state == UserState()


def test_state_path_env_override(tmp_path: Path) -> None:
    env = {paths.STATE_FILE_ENV: str(tmp_path / "custom.yaml")}
    assert get_state_path(env) == tmp_path / "custom.yaml"


def test_round_trip(tmp_path: Path) -> None:
    state = UserState()
    state.remember_connection(_remote())
    state.remember_connection(ConnectionInfo.new_sqlite(tmp_path / "local.db"))
    state.remember_script(tmp_path / "report.sql")
    state.certificates = (CertificateEntry("db.example.com", "/etc/ssl/root.pem"),)
    state.execution = state.execution.with_changes(row_limit=50, accept_ddl=True)
    state.editor = EditorSettings(split_statements=False, font_size=14)

    target = tmp_path / "nested" / "state.yaml"
    assert save_user_state(state, target) == target

    loaded = load_user_state(target)
    assert loaded == state
    assert loaded.certificate_for("db.example.com").cert == "/etc/ssl/root.pem"
    assert loaded.certificate_for("other") is None


def test_saved_document_has_no_password(tmp_path: Path) -> None:
    state = UserState()
    state.remember_connection(_remote())
    target = save_user_state(state, tmp_path / "state.yaml")

    document = yaml.safe_load(target.read_text(encoding="utf-8"))
    assert document["version"] == 1
    assert document["connections"][0]["tls_version"] == "TLSv1.2"
    assert "password" not in document["connections"][0]
    assert list(tmp_path.glob(".state_*")) == []


def test_remember_connection_replaces_same_database() -> None:
    state = UserState()
    state.remember_connection(_remote())
    state.remember_connection(ConnectionInfo(Engine.POSTGRES, "db.example.com", 5432, "bob", "shop"))
    assert len(state.connections) == 1
    assert state.connections[0].security.is_insecure


def test_remember_script_moves_to_end() -> None:
    state = UserState()
    for name in ("a.sql", "b.sql", "a.sql"):
        state.remember_script(name)
    assert state.scripts == (Path("b.sql"), Path("a.sql"))


def test_unreadable_entries_are_skipped(tmp_path: Path) -> None:
    target = tmp_path / "state.yaml"
    target.write_text(
        yaml.safe_dump(
            {
                "connections": [
                    {"engine": "oracle", "host": "x"},
                    {"engine": "postgresql", "host": "h", "tls_version": "SSLv3"},
                    {"engine": "sqlite", "host": "/tmp/ok.db", "database": "ok.db"},
                ],
                "certificates": [{"host": "only-host"}],
                "execution_settings": {"row_limit": -1},
                "editor_settings": {"font_size": 16, "theme": "dark"},
            }
        ),
        encoding="utf-8",
    )

    state = load_user_state(target)

    assert [info.host for info in state.connections] == ["/tmp/ok.db"]
    assert state.certificates == ()
    assert state.execution.row_limit == 500
    assert state.editor == EditorSettings(font_size=16)


def test_malformed_documents_fall_back_to_defaults(tmp_path: Path) -> None:
    broken = tmp_path / "broken.yaml"
    broken.write_text("connections: [unclosed", encoding="utf-8")
    assert load_user_state(broken) == UserState()

    scalar = tmp_path / "scalar.yaml"
    scalar.write_text("just text", encoding="utf-8")
    assert load_user_state(scalar) == UserState()
