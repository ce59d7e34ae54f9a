"""PostgreSQL connectivity for the token store.

Connection settings come from ``DATABASE_URL`` when it is set, otherwise from
the ``POSTGRES_*`` variables. A database named in the URL path takes
precedence over ``NEXTMEETING_DB_NAME``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs, unquote, urlparse

import asyncpg

logger = logging.getLogger(__name__)

_SSL_MODES = frozenset({"disable", "prefer", "allow", "require", "verify-ca", "verify-full"})

# asyncpg's message when a server without TLS drops the SSL upgrade request.
_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"


def _ssl_mode(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    mode = value.strip().lower()
    if mode not in _SSL_MODES:
        logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
        return None
    return mode


@dataclass(frozen=True)
class ConnectionParams:
    """Where the token database lives. ``database`` is only set from a URL."""

    host: str = "localhost"
    port: int = 5432
    user: str = "nextmeeting"
    password: str = field(default="nextmeeting", repr=False)
    ssl: str | None = None
    database: str | None = None

    @classmethod
    def from_url(cls, url: str) -> ConnectionParams:
        """Parse a libpq-style ``postgres://user:pw@host:port/db?sslmode=...`` URL."""
        parsed = urlparse(url)
        sslmode = parse_qs(parsed.query).get("sslmode", [None])[0]
        return cls(
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            user=unquote(parsed.username) if parsed.username else "nextmeeting",
            password=unquote(parsed.password) if parsed.password else "nextmeeting",
            ssl=_ssl_mode(sslmode),
            database=unquote(parsed.path.lstrip("/")) or None,
        )

    @classmethod
    def from_env(cls) -> ConnectionParams:
        database_url = os.environ.get("DATABASE_URL", "").strip()
        if database_url:
            return cls.from_url(database_url)

        raw_port = os.environ.get("POSTGRES_PORT", "5432")
        try:
            port = int(raw_port)
        except ValueError:
            raise ValueError(f"POSTGRES_PORT must be an integer, got: {raw_port}") from None
        return cls(
            host=os.environ.get("POSTGRES_HOST", "localhost"),
            port=port,
            user=os.environ.get("POSTGRES_USER", "nextmeeting"),
            password=os.environ.get("POSTGRES_PASSWORD", "nextmeeting"),
            ssl=_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
        )


def is_ssl_upgrade_loss(exc: BaseException, configured_ssl: str | None) -> bool:
    """True when a pool without an explicit sslmode should retry with ``ssl=disable``."""
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


class Database:
    """Owns the asyncpg pool that backs the token store."""

    def __init__(
        self,
        db_name: str,
        params: ConnectionParams | None = None,
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 4,
    ) -> None:
        self.db_name = db_name
        self.params = params or ConnectionParams()
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str) -> Database:
        params = ConnectionParams.from_env()
        return cls(params.database or db_name, params)

    def _pool_kwargs(self, ssl: str | None) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.params.host,
            "port": self.params.port,
            "user": self.params.user,
            "password": self.params.password,
            "database": self.db_name,
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }
        if ssl is not None:
            kwargs["ssl"] = ssl
        return kwargs

    async def connect(self) -> asyncpg.Pool:
        """Open the pool, falling back to ``ssl=disable`` after a lost SSL upgrade."""
        try:
            self.pool = await asyncpg.create_pool(**self._pool_kwargs(self.params.ssl))
        except Exception as exc:
            if not is_ssl_upgrade_loss(exc, self.params.ssl):
                raise
            logger.info("Retrying PostgreSQL pool creation with ssl=disable after SSL upgrade loss")
            self.pool = await asyncpg.create_pool(**self._pool_kwargs("disable"))
        logger.info(
            "Token database pool open: %s@%s:%d/%s",
            self.params.user,
            self.params.host,
            self.params.port,
            self.db_name,
        )
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("Token database pool closed: %s", self.db_name)
