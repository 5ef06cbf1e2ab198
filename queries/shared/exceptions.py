"""Project-wide custom exceptions."""

from __future__ import annotations


class QueriesError(Exception):
    """Base exception for the SQL client core."""


class ConfigurationError(QueriesError):
    """Raised when configuration loading or validation fails."""


class URIError(QueriesError):
    """Raised when a connection descriptor cannot be turned into a URI."""


class DriverError(QueriesError):
    """Raised by a database driver; carries the driver message verbatim."""


class ConnectError(DriverError):
    """Raised when a connection could not be established."""


class AuthError(ConnectError):
    """Raised when the server rejects the supplied credentials."""


class ServerError(DriverError):
    """Raised when the server refuses or fails a statement."""


class StatementTimeout(DriverError):
    """Raised when a statement exceeds the configured timeout."""


class StatementCancelled(DriverError):
    """Raised when a statement was aborted through the cancel primitive."""


class NotSupportedError(DriverError):
    """Raised when the engine lacks a requested capability."""


class ConnectionLostError(DriverError):
    """Raised when the underlying connection is no longer usable."""


class ClientReject(QueriesError):
    """Raised when a statement is refused before reaching the server."""


class DecodeError(QueriesError):
    """Raised when a result cell cannot be decoded into a column."""


class SchemaError(QueriesError):
    """Raised when schema introspection fails."""


class ExportError(QueriesError):
    """Raised when a table cannot be written to or read from a file."""


class ReportError(QueriesError):
    """Raised when a report template cannot be rendered."""


class FatalChannelLoss(QueriesError):
    """Raised when the main-thread event channel is closed or saturated."""
