"""Service wiring: token store -> snapshot builder -> scheduler -> gauge deriver."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

import httpx

from nextmeeting.config import ExporterConfig
from nextmeeting.gauges import GaugeDeriver, GaugeSink
from nextmeeting.google import (
    GoogleAppCredentials,
    GoogleCalendarClient,
    exchange_code,
)
from nextmeeting.scheduler import RefreshScheduler
from nextmeeting.snapshot import SnapshotBuilder
from nextmeeting.token_store import TokenStore

logger = logging.getLogger(__name__)

FALLBACK_REDIRECT_URI = "http://localhost:{port}/auth"


def resolve_redirect_uri(config: ExporterConfig, app_credentials: GoogleAppCredentials) -> str:
    """Explicit config first, then the client-secrets file, then localhost on our port."""
    if config.redirect_uri:
        return config.redirect_uri
    if app_credentials.redirect_uris:
        return app_credentials.redirect_uris[0]
    return FALLBACK_REDIRECT_URI.format(port=config.port)


class NextMeetingService:
    """Owns the refresh and derivation loops for all authorized calendars."""

    def __init__(
        self,
        config: ExporterConfig,
        *,
        token_store: TokenStore,
        app_credentials: GoogleAppCredentials,
        http_client: httpx.AsyncClient,
        sink: GaugeSink | None = None,
    ) -> None:
        self.config = config
        self.token_store = token_store
        self.app_credentials = app_credentials
        self.http_client = http_client
        self.redirect_uri = resolve_redirect_uri(config, app_credentials)
        self.sink = sink if sink is not None else GaugeSink()

        builder = SnapshotBuilder(token_store, lookahead=timedelta(days=config.lookahead_days))
        self.scheduler = RefreshScheduler(
            builder,
            interval_s=config.refresh_interval_s,
            queue_size=config.manual_queue_size,
        )
        self.deriver = GaugeDeriver(
            lambda: self.scheduler.snapshot,
            self.sink,
            grace_window=timedelta(seconds=config.grace_window_s),
            interval_s=config.recompute_interval_s,
        )

    async def start(self) -> None:
        """Build the first snapshot, then start both background loops.

        Raises ``StartupRefreshError`` when the first build fails.
        """
        await self.scheduler.start()
        self.deriver.derive()
        self.deriver.start()
        logger.info(
            "Next-meeting service started: %d calendar(s)", len(self.scheduler.snapshot)
        )

    async def stop(self) -> None:
        await self.deriver.stop()
        await self.scheduler.stop()

    def request_refresh(self) -> bool:
        return self.scheduler.request_refresh()

    async def authorize_calendar(self, code: str) -> str:
        """Exchange *code*, store the token under the primary calendar id.

        Returns the calendar id. Raises ``TokenExchangeError`` for a failed
        exchange and ``CalendarAuthError`` when the calendar lookup fails.
        """
        token = await exchange_code(
            self.http_client,
            self.app_credentials,
            code=code,
            redirect_uri=self.redirect_uri,
        )
        client = GoogleCalendarClient(self.app_credentials, token, self.http_client)
        calendar_id = await client.get_primary_calendar_id()
        await self.token_store.upsert(calendar_id, client.token)
        logger.info("Calendar authorized: calendar_id=%r", calendar_id)
        if not self.request_refresh():
            logger.warning(
                "Calendar %r authorized but refresh queue is full; it will appear "
                "after the next timed refresh",
                calendar_id,
            )
        return calendar_id

    def health(self) -> dict[str, Any]:
        snapshot = self.scheduler.snapshot
        return {
            "status": "ok" if self.scheduler.running else "starting",
            "last_refresh_at": snapshot.built_at,
            "calendars": sorted(snapshot.calendars),
            "failed_calendars": sorted(snapshot.failures),
            "pending_refreshes": self.scheduler.pending_triggers,
            "dropped_refreshes": self.scheduler.triggers_dropped,
        }
