"""Shared fakes and helpers for the exporter test suite."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from nextmeeting.snapshot import Event

NOW = datetime(2024, 3, 4, 9, 0, tzinfo=UTC)


def make_event(
    offset: timedelta,
    *,
    attendees: Sequence[str] = (),
    title: str = "event",
    now: datetime = NOW,
) -> Event:
    return Event(title=title, starts=now + offset, attendees=frozenset(attendees))


def raw_event(
    starts: datetime | str | None,
    *,
    ends: datetime | str | None = None,
    attendees: Sequence[dict[str, Any]] = (),
    summary: str = "event",
) -> dict[str, Any]:
    """Build a Google Calendar event resource."""
    payload: dict[str, Any] = {"summary": summary}
    if starts is not None:
        payload["start"] = {"dateTime": starts if isinstance(starts, str) else starts.isoformat()}
    if ends is not None:
        payload["end"] = {"dateTime": ends if isinstance(ends, str) else ends.isoformat()}
    if attendees:
        payload["attendees"] = list(attendees)
    return payload


class FakeEventSource:
    """Event source returning canned raw events, or raising a canned error."""

    def __init__(
        self, events: Sequence[dict[str, Any]] = (), error: Exception | None = None
    ) -> None:
        self.events = list(events)
        self.error = error
        self.calls: list[tuple[datetime, datetime]] = []

    async def list_events(self, *, start_at: datetime, end_at: datetime) -> list[dict[str, Any]]:
        self.calls.append((start_at, end_at))
        if self.error is not None:
            raise self.error
        return list(self.events)


class FakeCredentials:
    """Credential source over a fixed mapping of calendar id -> event source."""

    def __init__(self, sources: dict[str, FakeEventSource] | None = None) -> None:
        self.sources = dict(sources or {})
        self.error: Exception | None = None
        self.enumerate_calls = 0

    async def enumerate(self) -> list[tuple[str, FakeEventSource]]:
        self.enumerate_calls += 1
        if self.error is not None:
            raise self.error
        return list(self.sources.items())


class FakeTokenStore(FakeCredentials):
    """Credential source that also records upserts."""

    def __init__(self, sources: dict[str, FakeEventSource] | None = None) -> None:
        super().__init__(sources)
        self.upserts: list[tuple[str, Any]] = []

    async def upsert(self, calendar_id: str, token: Any) -> None:
        self.upserts.append((calendar_id, token))


def make_pool(
    *,
    fetch_return: list | None = None,
    execute_return: str = "INSERT 0 1",
) -> MagicMock:
    """Build a minimal asyncpg pool mock."""
    conn = AsyncMock()
    conn.fetch.return_value = fetch_return or []
    conn.execute.return_value = execute_return

    cm = AsyncMock()
    cm.__aenter__ = AsyncMock(return_value=conn)
    cm.__aexit__ = AsyncMock(return_value=False)

    pool = MagicMock()
    pool.acquire.return_value = cm
    # Stash conn for easy assertion access
    pool._conn = conn
    return pool
