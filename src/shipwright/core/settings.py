"""Container-side database settings.

The orchestrator never interprets the runtime variables; it passes them to
the container verbatim. Inside the container the Startup Transition Runner
needs a typed view of the ``DATABASE_*`` subset to open a connection before
migrations run. ``DatabaseSettings`` is that view.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** A malformed port fails at startup, not mid-migration
    - **Environment-driven:** Reads the same variables the container receives
    - **Extra ignore:** Unrelated env vars never cause startup failures

Examples:
    >>> settings = DatabaseSettings(type="sqlite", name=":memory:")
    >>> settings.is_sqlite
    True

Tags:
    settings, configuration, pydantic, environment, database
"""

from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Typed ``DATABASE_*`` environment.

    Fields
    ──────
    type                : ``postgres`` or ``sqlite``
    host / port         : Server address (ignored for sqlite)
    username / password : Credentials (password never rendered)
    name                : Database name, or file path for sqlite
    synchronize         : Passed through; never acted upon here
    max_connections     : Passed through; the runner uses one connection
    ssl_enabled         : Request TLS from the server
    reject_unauthorized : Verify the server certificate when TLS is on
    """

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Connection ───────────────────────────────────────────────
    type: str = "postgres"
    host: str = "localhost"
    port: int = 5432
    username: str = "postgres"
    password: SecretStr = Field(default=SecretStr(""))
    name: str = "app"

    # ── Behaviour ────────────────────────────────────────────────
    synchronize: bool = False
    max_connections: int = 10
    ssl_enabled: bool = False
    reject_unauthorized: bool = True

    @property
    def is_sqlite(self) -> bool:
        return self.type.lower() in ("sqlite", "sqlite3")

    @property
    def is_postgres(self) -> bool:
        return self.type.lower() in ("postgres", "postgresql")

    def postgres_dsn_kwargs(self) -> dict:
        """Keyword arguments for ``psycopg2.connect``."""
        kwargs = {
            "host": self.host,
            "port": self.port,
            "user": self.username,
            "password": self.password.get_secret_value(),
            "dbname": self.name,
        }
        if self.ssl_enabled:
            kwargs["sslmode"] = "verify-full" if self.reject_unauthorized else "require"
        return kwargs

    def describe(self) -> str:
        """Connection target without credentials, for logs."""
        if self.is_sqlite:
            return f"sqlite:{self.name}"
        return f"{self.type}://{self.host}:{self.port}/{self.name}"


__all__ = ["DatabaseSettings"]
