"""Durable per-calendar OAuth token storage backed by the ``calendar_tokens`` table.

One row per authorized calendar, keyed by the calendar id reported by Google
for the user's primary calendar. The ``token`` column holds the serialized
``OAuthToken``.

Note: token values are NEVER logged and never appear in ``__repr__``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from nextmeeting.google import GoogleAppCredentials, GoogleCalendarClient, OAuthToken

if TYPE_CHECKING:
    import asyncpg
    import httpx

logger = logging.getLogger(__name__)

_TABLE = "calendar_tokens"

_TOKENS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    calendar_id TEXT PRIMARY KEY,
    token       TEXT NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


class TokenStore:
    """Async token store; hands out one ``GoogleCalendarClient`` per calendar.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.
    app_credentials:
        The OAuth client every stored token was issued to.
    http_client:
        Shared HTTP client used by every calendar client.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        app_credentials: GoogleAppCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self.pool = pool
        self._app = app_credentials
        self._http_client = http_client
        # calendar_id -> (serialized token the client was built from, client)
        self._clients: dict[str, tuple[str, GoogleCalendarClient]] = {}

    async def ensure_schema(self) -> None:
        """Create the ``calendar_tokens`` table if it does not exist."""
        async with self.pool.acquire() as conn:
            await conn.execute(_TOKENS_TABLE_DDL)

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def upsert(self, calendar_id: str, token: OAuthToken) -> None:
        """Insert or replace the token for *calendar_id*.

        Raises
        ------
        ValueError
            If *calendar_id* is empty.
        """
        calendar_id = calendar_id.strip()
        if not calendar_id:
            raise ValueError("calendar_id must be a non-empty string")

        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {_TABLE} (calendar_id, token)
                VALUES ($1, $2)
                ON CONFLICT (calendar_id) DO UPDATE SET
                    token      = EXCLUDED.token,
                    updated_at = now()
                """,
                calendar_id,
                token.model_dump_json(),
            )
        self._clients.pop(calendar_id, None)

        logger.info("Calendar token stored: calendar_id=%r", calendar_id)

    async def delete(self, calendar_id: str) -> bool:
        """Remove the token for *calendar_id*; return ``True`` if a row was deleted."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {_TABLE} WHERE calendar_id = $1",
                calendar_id,
            )
        self._clients.pop(calendar_id, None)
        deleted = result == "DELETE 1"
        if deleted:
            logger.info("Calendar token deleted: calendar_id=%r", calendar_id)
        return deleted

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def list_calendar_ids(self) -> list[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"SELECT calendar_id FROM {_TABLE} ORDER BY calendar_id")
        return [row["calendar_id"] for row in rows]

    async def enumerate(self) -> list[tuple[str, GoogleCalendarClient]]:
        """Return ``(calendar_id, client)`` for every stored token.

        Clients are reused across calls while the stored token is unchanged,
        so cached access tokens survive between refreshes.

        Raises
        ------
        CalendarCredentialError
            If any stored token cannot be decoded.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT calendar_id, token FROM {_TABLE} ORDER BY calendar_id"
            )

        pairs: list[tuple[str, GoogleCalendarClient]] = []
        live: dict[str, tuple[str, GoogleCalendarClient]] = {}
        for row in rows:
            calendar_id = row["calendar_id"]
            raw_token = row["token"]
            cached = self._clients.get(calendar_id)
            if cached is not None and cached[0] == raw_token:
                client = cached[1]
            else:
                client = GoogleCalendarClient(
                    self._app, OAuthToken.from_json(raw_token), self._http_client
                )
            live[calendar_id] = (raw_token, client)
            pairs.append((calendar_id, client))

        self._clients = live
        return pairs

    def __repr__(self) -> str:
        return f"TokenStore(pool={self.pool!r})"
