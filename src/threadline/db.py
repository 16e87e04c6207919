"""PostgreSQL connection settings and the asyncpg pool shared by the postgres stores.

Settings come from ``[threadline.database].url`` when configured, otherwise
from ``DATABASE_URL`` and then the individual ``POSTGRES_*`` variables.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, quote, urlparse

import asyncpg

if TYPE_CHECKING:
    from threadline.config import DatabaseConfig

logger = logging.getLogger(__name__)

SSL_MODES = frozenset({"disable", "prefer", "allow", "require", "verify-ca", "verify-full"})

# asyncpg raises this when the server drops the connection during STARTTLS
_STARTTLS_LOST = "unexpected connection_lost() call"


def _sslmode(raw: str | None) -> str | None:
    mode = (raw or "").strip().lower()
    if not mode:
        return None
    if mode not in SSL_MODES:
        logger.warning("Ignoring unknown sslmode %r", raw)
        return None
    return mode


@dataclass(frozen=True)
class ConnectionSettings:
    """Where the routing tables live."""

    host: str = "localhost"
    port: int = 5432
    user: str = "threadline"
    password: str = "threadline"
    database: str = "threadline"
    sslmode: str | None = None

    @classmethod
    def from_url(cls, url: str, *, default_database: str = "threadline") -> ConnectionSettings:
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        return cls(
            host=parsed.hostname or cls.host,
            port=parsed.port or cls.port,
            user=parsed.username or cls.user,
            password=parsed.password or cls.password,
            database=parsed.path.lstrip("/") or default_database,
            sslmode=_sslmode(query.get("sslmode", [None])[0]),
        )

    @classmethod
    def from_env(
        cls,
        default_database: str = "threadline",
        environ: Mapping[str, str] | None = None,
    ) -> ConnectionSettings:
        """Read ``DATABASE_URL``, falling back to ``POSTGRES_*``.

        A database named by the environment overrides *default_database*.
        """
        env = os.environ if environ is None else environ
        if env.get("DATABASE_URL"):
            return cls.from_url(env["DATABASE_URL"], default_database=default_database)
        return cls(
            host=env.get("POSTGRES_HOST", cls.host),
            port=int(env.get("POSTGRES_PORT", cls.port)),
            user=env.get("POSTGRES_USER", cls.user),
            password=env.get("POSTGRES_PASSWORD", cls.password),
            database=env.get("POSTGRES_DB") or default_database,
            sslmode=_sslmode(env.get("POSTGRES_SSLMODE")),
        )

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> ConnectionSettings:
        """``[threadline.database].url`` when set, else the environment."""
        if config.url:
            return cls.from_url(config.url, default_database=config.name)
        return cls.from_env(config.name)

    @property
    def url(self) -> str:
        """libpq URL with quoted credentials, as alembic expects it."""
        auth = f"{quote(self.user, safe='')}:{quote(self.password, safe='')}"
        url = f"postgresql://{auth}@{self.host}:{self.port}/{self.database}"
        return f"{url}?sslmode={self.sslmode}" if self.sslmode else url

    @property
    def label(self) -> str:
        return f"{self.host}:{self.port}/{self.database}"


def should_retry_with_ssl_disable(exc: Exception, sslmode: str | None) -> bool:
    """True when no sslmode was pinned and the server dropped the TLS upgrade."""
    return sslmode is None and isinstance(exc, ConnectionError) and _STARTTLS_LOST in str(exc)


class Database:
    """One asyncpg pool plus the ``fetch``/``fetchrow``/``execute`` the stores call."""

    def __init__(
        self,
        settings: ConnectionSettings | None = None,
        *,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.settings = settings or ConnectionSettings()
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Database:
        return cls(
            ConnectionSettings.from_config(config),
            min_pool_size=config.min_pool_size,
            max_pool_size=config.max_pool_size,
        )

    async def connect(self) -> asyncpg.Pool:
        settings = self.settings
        kwargs: dict[str, Any] = {
            "host": settings.host,
            "port": settings.port,
            "user": settings.user,
            "password": settings.password,
            "database": settings.database,
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }
        if settings.sslmode is not None:
            kwargs["ssl"] = settings.sslmode
        try:
            self.pool = await asyncpg.create_pool(**kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, settings.sslmode):
                raise
            logger.info("TLS upgrade to %s was dropped; retrying with ssl=disable", settings.label)
            self.pool = await asyncpg.create_pool(**{**kwargs, "ssl": "disable"})
        logger.info("Opened routing pool on %s", settings.label)
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("Closed routing pool on %s", self.settings.label)

    def _pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(f"No open pool for {self.settings.label}; call connect() first")
        return self.pool

    async def fetch(self, query: str, *args: Any) -> list[Any]:
        return await self._pool().fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> Any:
        return await self._pool().fetchrow(query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        return await self._pool().execute(query, *args)


__all__ = ["ConnectionSettings", "Database", "SSL_MODES", "should_retry_with_ssl_disable"]
