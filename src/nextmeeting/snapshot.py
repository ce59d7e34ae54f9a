"""Calendar snapshot model and builder.

A ``Snapshot`` is the immutable, point-in-time view of every authorized
calendar's upcoming events. ``SnapshotBuilder`` produces one per refresh:
it enumerates the token store, fetches each calendar concurrently, and
folds the per-calendar ``CalendarFetchResult`` values into the snapshot.

A failing calendar is recorded in ``Snapshot.failures`` and left out of
``Snapshot.calendars``; only a failure to enumerate credentials fails the
whole build.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from operator import attrgetter
from types import MappingProxyType
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, field_validator

from nextmeeting.google import parse_google_datetime

logger = logging.getLogger(__name__)

DEFAULT_LOOKAHEAD = timedelta(days=7)


class EventKind(StrEnum):
    MEETING = "meeting"
    FOCUS_TIME = "focusTime"


class Event(BaseModel):
    """One upcoming calendar entry.

    ``attendees`` never contains the authenticated user; attendees without an
    email appear by display name, or as ``""``. ``ends`` is ``None``
    when the provider did not report an end time.
    """

    model_config = ConfigDict(frozen=True)

    title: str = ""
    starts: datetime
    ends: datetime | None = None
    attendees: frozenset[str] = frozenset()

    @field_validator("starts")
    @classmethod
    def _require_aware_start(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("starts must be timezone-aware")
        return value

    @property
    def kind(self) -> EventKind:
        return EventKind.MEETING if self.attendees else EventKind.FOCUS_TIME


@dataclass(frozen=True)
class CalendarFetchResult:
    """Outcome of fetching one calendar: either ordered events or an error."""

    calendar_id: str
    events: tuple[Event, ...] = ()
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Snapshot:
    """Immutable mapping of calendar id to events sorted by start time."""

    calendars: Mapping[str, tuple[Event, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    built_at: datetime | None = None
    failures: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_results(
        cls, results: Sequence[CalendarFetchResult], *, built_at: datetime
    ) -> Snapshot:
        calendars: dict[str, tuple[Event, ...]] = {}
        failures: dict[str, str] = {}
        for result in results:
            if result.ok:
                calendars[result.calendar_id] = result.events
            else:
                failures[result.calendar_id] = result.error or "unknown error"
        return cls(
            calendars=MappingProxyType(calendars),
            built_at=built_at,
            failures=MappingProxyType(failures),
        )

    def __len__(self) -> int:
        return len(self.calendars)


class EventSource(Protocol):
    async def list_events(
        self, *, start_at: datetime, end_at: datetime
    ) -> list[dict[str, Any]]: ...


class CredentialSource(Protocol):
    async def enumerate(self) -> Sequence[tuple[str, EventSource]]: ...


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def normalize_event(raw: Mapping[str, Any]) -> Event | None:
    """Convert a raw Google event resource into an ``Event``.

    Returns ``None`` for events with no ``start.dateTime`` (including
    all-day events, which only carry ``start.date``).

    Raises
    ------
    ValueError
        If a present ``dateTime`` cannot be parsed.
    """
    start = raw.get("start")
    start_value = start.get("dateTime") if isinstance(start, Mapping) else None
    if not isinstance(start_value, str) or not start_value.strip():
        return None

    end = raw.get("end")
    end_value = end.get("dateTime") if isinstance(end, Mapping) else None
    ends = (
        parse_google_datetime(end_value)
        if isinstance(end_value, str) and end_value.strip()
        else None
    )

    attendees: set[str] = set()
    for attendee in raw.get("attendees") or ():
        if not isinstance(attendee, Mapping) or attendee.get("self"):
            continue
        # Rooms and resources may carry no email; they still make it a meeting.
        identity = attendee.get("email") or attendee.get("displayName") or ""
        attendees.add(identity if isinstance(identity, str) else "")

    summary = raw.get("summary")
    return Event(
        title=summary if isinstance(summary, str) else "",
        starts=parse_google_datetime(start_value),
        ends=ends,
        attendees=frozenset(attendees),
    )


def insert_sorted(events: list[Event], event: Event) -> None:
    """Insert *event* keeping *events* ascending by ``starts``.

    Equal start times keep arrival order.
    """
    bisect.insort_right(events, event, key=attrgetter("starts"))


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


async def fetch_calendar(
    calendar_id: str,
    client: EventSource,
    *,
    start_at: datetime,
    end_at: datetime,
) -> CalendarFetchResult:
    """Fetch and normalize one calendar; failures are returned, not raised."""
    try:
        raw_events = await client.list_events(start_at=start_at, end_at=end_at)
        events: list[Event] = []
        for raw in raw_events:
            event = normalize_event(raw)
            if event is not None:
                insert_sorted(events, event)
    except Exception as exc:
        logger.warning(
            "Calendar fetch failed: calendar_id=%r operation=list_events error=%s: %s",
            calendar_id,
            type(exc).__name__,
            exc,
        )
        return CalendarFetchResult(calendar_id=calendar_id, error=f"{type(exc).__name__}: {exc}")
    return CalendarFetchResult(calendar_id=calendar_id, events=tuple(events))


async def build_snapshot(
    pairs: Sequence[tuple[str, EventSource]],
    *,
    now: datetime,
    lookahead: timedelta = DEFAULT_LOOKAHEAD,
) -> Snapshot:
    """Fetch every calendar in ``[now, now + lookahead]`` concurrently."""
    end_at = now + lookahead
    results = await asyncio.gather(
        *(
            fetch_calendar(calendar_id, client, start_at=now, end_at=end_at)
            for calendar_id, client in pairs
        )
    )
    return Snapshot.from_results(results, built_at=now)


class SnapshotBuilder:
    """Builds snapshots from whatever credentials the store currently holds."""

    def __init__(
        self,
        credentials: CredentialSource,
        *,
        lookahead: timedelta = DEFAULT_LOOKAHEAD,
    ) -> None:
        self._credentials = credentials
        self._lookahead = lookahead

    async def build(self, now: datetime | None = None) -> Snapshot:
        """Build a fresh snapshot.

        Exceptions from credential enumeration propagate; per-calendar
        errors end up in ``Snapshot.failures``.
        """
        pairs = await self._credentials.enumerate()
        return await build_snapshot(
            pairs, now=now or datetime.now(UTC), lookahead=self._lookahead
        )
