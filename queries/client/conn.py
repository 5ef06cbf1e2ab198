"""Connection descriptors and URI construction."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, quote, unquote, urlsplit

from queries.shared.config import DEFAULT_APPLICATION_NAME, validate_application_name
from queries.shared.exceptions import ConfigurationError, URIError

DEFAULT_PG_PORT = 5432
LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1"})


class Engine(Enum):
    POSTGRES = "postgresql"
    SQLITE = "sqlite"


class TlsVersion(Enum):
    V1_0 = (1, 0)
    V1_1 = (1, 1)
    V1_2 = (1, 2)
    V1_3 = (1, 3)

    @property
    def label(self) -> str:
        major, minor = self.value
        return f"TLSv{major}.{minor}"

    @classmethod
    def parse(cls, text: str) -> TlsVersion:
        cleaned = text.strip().lower().removeprefix("tlsv").removeprefix("tls")
        for version in cls:
            if cleaned == "{}.{}".format(*version.value):
                return version
        raise URIError(f"Unsupported TLS version: {text}")


@dataclass(frozen=True, slots=True)
class Security:
    tls_version: TlsVersion | None = None
    cert_path: Path | None = None
    verify_hostname: bool | None = None

    @property
    def is_insecure(self) -> bool:
        return self.tls_version is None


@dataclass(frozen=True, slots=True)
class ConnectionInfo:
    """Where to connect; never holds a password.

    For SQLite connections ``host`` is the database file path.
    """

    engine: Engine
    host: str
    port: int | None = None
    user: str = ""
    database: str = ""
    security: Security = field(default_factory=Security)

    @property
    def is_default(self) -> bool:
        return False

    @classmethod
    def new_sqlite(cls, path: str | Path) -> ConnectionInfo:
        return cls(Engine.SQLITE, str(path), database=Path(path).name)

    @property
    def is_localhost(self) -> bool:
        return self.engine is Engine.SQLITE or _host_name(self.host) in LOCAL_HOSTS

    @property
    def is_encrypted(self) -> bool:
        return not self.security.is_insecure

    @property
    def is_verified(self) -> bool:
        return self.is_encrypted and self.security.cert_path is not None

    def is_like(self, other: ConnectionInfo | DefaultConnection) -> bool:
        """Return True when both point at the same database as the same user."""
        if not isinstance(other, ConnectionInfo):
            return False
        return (self.engine, self.host, self.port, self.user, self.database) == (
            other.engine,
            other.host,
            other.port,
            other.user,
            other.database,
        )

    def host_description(self) -> str:
        if self.engine is Engine.SQLITE:
            return "File"
        return "Local" if self.is_localhost else "Remote"

    def description(self) -> str:
        if self.engine is Engine.SQLITE:
            return self.host
        host = self.host if ":" in self.host else f"{self.host}:{self.port or DEFAULT_PG_PORT}"
        return f"{self.user}@{host}/{self.database}"


@dataclass(frozen=True, slots=True)
class DefaultConnection:
    """Placeholder for a connection form nobody has filled in yet."""

    @property
    def is_default(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class ConnURI:
    """A validated ConnectionInfo together with its password and canonical URI."""

    info: ConnectionInfo
    password: str = field(repr=False)
    uri: str = field(repr=False)

    def __str__(self) -> str:
        return self.redacted()

    def redacted(self) -> str:
        if self.info.engine is Engine.SQLITE:
            return self.uri
        return self.uri.replace(":" + quote(self.password, safe="") + "@", ":****@", 1)

    @classmethod
    def build(
        cls,
        info: ConnectionInfo,
        password: str = "",
        *,
        application_name: str = DEFAULT_APPLICATION_NAME,
    ) -> ConnURI:
        """Validate ``info`` and assemble the canonical URI; raises URIError."""
        if info.engine is Engine.SQLITE:
            if not info.host.strip():
                raise URIError("Missing host")
            return cls(info, "", "file://" + info.host)
        return _build_postgres(info, password, application_name)

    @classmethod
    def parse(
        cls,
        text: str,
        password: str | None = None,
        *,
        application_name: str = DEFAULT_APPLICATION_NAME,
    ) -> ConnURI:
        """Build a ConnURI from a URI string or a bare SQLite file path."""
        parts = urlsplit(text)
        if parts.scheme in ("", "file", "sqlite"):
            path = text if not parts.scheme else unquote(parts.path)
            if parts.netloc:
                path = parts.netloc + path
            return cls.build(ConnectionInfo.new_sqlite(path))
        if parts.scheme not in ("postgresql", "postgres"):
            raise URIError(f"Unsupported URI scheme: {parts.scheme}")

        params = {key: values[-1] for key, values in parse_qs(parts.query).items()}
        host = parts.hostname or ""
        try:
            port = parts.port
        except ValueError as exc:
            raise URIError(f"Invalid port in URI: {exc}") from exc
        if port is not None:
            host = f"{host}:{port}"
        info = ConnectionInfo(
            engine=Engine.POSTGRES,
            host=host,
            user=unquote(parts.username or ""),
            database=unquote(parts.path.lstrip("/")),
            security=_security_from_params(params),
        )
        resolved_password = password if password is not None else unquote(parts.password or "")
        return cls.build(info, resolved_password, application_name=application_name)

    def connect_params(self) -> dict[str, Any]:
        """Keyword arguments for the PostgreSQL driver."""
        host, port = _host_and_port(self.info)
        params: dict[str, Any] = {
            "host": host,
            "port": port,
            "user": self.info.user,
            "password": self.password,
            "dbname": self.info.database,
        }
        params.update(_ssl_params(self.info.security))
        return params


def _host_name(host: str) -> str:
    return host.split(":", 1)[0].strip()


def _split_host(host: str) -> tuple[str, int]:
    if host.count(":") > 1:
        raise URIError("Host string can contain only a single colon")
    if ":" not in host:
        return host, DEFAULT_PG_PORT
    name, port_text = host.split(":", 1)
    try:
        port = int(port_text)
    except ValueError as exc:
        raise URIError(f"Invalid port: {port_text}") from exc
    if not 0 < port < 65536:
        raise URIError(f"Invalid port: {port_text}")
    return name, port


def _host_and_port(info: ConnectionInfo) -> tuple[str, int]:
    name, port = _split_host(info.host)
    if info.port is not None and ":" not in info.host:
        port = info.port
    return name, port


def _ssl_params(security: Security) -> dict[str, str]:
    if security.is_insecure:
        return {"sslmode": "disable"}
    params = {
        "sslmode": "verify-full" if security.verify_hostname else "verify-ca",
        "ssl_min_protocol_version": security.tls_version.label,  # type: ignore[union-attr]
    }
    if security.cert_path is not None:
        params["sslrootcert"] = str(security.cert_path)
    return params


def _security_from_params(params: dict[str, str]) -> Security:
    sslmode = params.get("sslmode", "disable")
    if sslmode in ("disable", "allow", "prefer"):
        return Security()
    version = TlsVersion.V1_2
    if "ssl_min_protocol_version" in params:
        version = TlsVersion.parse(params["ssl_min_protocol_version"])
    cert = params.get("sslrootcert")
    return Security(
        tls_version=version,
        cert_path=Path(cert) if cert else None,
        verify_hostname=sslmode == "verify-full",
    )


def _build_postgres(info: ConnectionInfo, password: str, application_name: str) -> ConnURI:
    if not info.host.strip():
        raise URIError("Missing host")
    host_name, port = _host_and_port(info)
    if not host_name:
        raise URIError("Missing host")
    if not info.user:
        raise URIError("Missing user")
    if ":" in info.user:
        raise URIError("User field cannot contain ':' character")
    if not password:
        raise URIError("Missing password")
    if not info.database:
        raise URIError("Missing database")
    try:
        validate_application_name(application_name)
    except ConfigurationError as exc:
        raise URIError(str(exc)) from exc

    security = info.security
    if security.is_insecure:
        if host_name not in LOCAL_HOSTS:
            raise URIError("Non-encrypted connections are only allowed for localhost")
    else:
        if security.cert_path is None:
            raise URIError("Remote connections without a root certificate are unsupported")
        if security.verify_hostname is None:
            raise URIError("Hostname verification setting is missing")

    query = f"application_name={application_name}"
    for key, value in _ssl_params(security).items():
        query += f"&{key}={quote(value, safe='')}"
    uri = (
        f"postgresql://{quote(info.user, safe='')}:{quote(password, safe='')}"
        f"@{host_name}:{port}/{quote(info.database, safe='')}?{query}"
    )
    return ConnURI(info, password, uri)
