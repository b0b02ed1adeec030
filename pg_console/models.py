from dataclasses import dataclass, field
from typing import Any

from psycopg import sql
from psycopg.conninfo import make_conninfo

from . import settings
from .errors import ValidationError


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Credentials supplied by the browser with every request. Never stored."""

    host: str
    username: str
    password: str = field(default="", repr=False)
    port: int = 5432
    database: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "ConnectionDescriptor":
        if not isinstance(payload, dict):
            raise ValidationError("Connection details are required")

        host = payload.get("host")
        username = payload.get("username") or payload.get("user")
        if not host or not username:
            raise ValidationError("Connection details must include host and username")

        port = payload.get("port") or 5432
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid port: {port!r}") from None

        database = payload.get("database") or None
        return cls(
            host=str(host),
            username=str(username),
            password=str(payload.get("password") or ""),
            port=port,
            database=database,
        )

    def conninfo(self, database: str | None = None, timeout_ms: int | None = None) -> str:
        """Build a libpq connection string, optionally for another database."""
        params: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.username,
            "sslmode": settings.SSLMODE,
            "application_name": "pg-console",
        }
        if self.password:
            params["password"] = self.password
        dbname = database if database is not None else self.database
        if dbname:
            params["dbname"] = dbname
        if timeout_ms:
            # libpq only accepts whole seconds and treats anything below 2 as 2
            params["connect_timeout"] = max(2, -(-timeout_ms // 1000))
        return make_conninfo(**params)


@dataclass(frozen=True, order=True)
class TableIdentity:
    name: str
    schema: str = settings.DEFAULT_SCHEMA

    def identifier(self) -> sql.Identifier:
        return sql.Identifier(self.schema, self.name)

    def __str__(self) -> str:
        return f"{self.schema}.{self.name}"
