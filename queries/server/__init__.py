"""Database drivers behind the :class:`~queries.server.base.Connection` boundary."""

from __future__ import annotations

from queries.client.conn import ConnURI, Engine
from queries.shared.config import DEFAULT_APPLICATION_NAME, MIN_CONNECT_TIMEOUT_SECS

from .base import Connection


def connect(
    uri: ConnURI,
    *,
    connect_timeout: int = MIN_CONNECT_TIMEOUT_SECS,
    application_name: str = DEFAULT_APPLICATION_NAME,
) -> Connection:
    """Open a connection for ``uri``; blocking, so only call it off the main thread."""
    if uri.info.engine is Engine.SQLITE:
        from .sqlite import SqliteConnection

        return SqliteConnection.open(uri)

    from .postgres import PostgresConnection

    return PostgresConnection.open(
        uri,
        connect_timeout=max(connect_timeout, MIN_CONNECT_TIMEOUT_SECS),
        application_name=application_name,
    )
