"""Prometheus gauges for the next upcoming meeting / focus block per calendar.

Metrics exported (private registry, subsystem ``calendar``):
- calendar_next_meeting_seconds: Seconds from now until the event starts
- calendar_next_meeting_epoch_seconds: Event start as Unix epoch seconds

Both carry the labels:
- calendar: calendar id
- kind: ``meeting`` (has attendees) or ``focusTime`` (no attendees)

``GaugeDeriver`` recomputes every series from the current snapshot on a fast
timer and deletes series that no longer have a qualifying event.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from operator import attrgetter

from prometheus_client import CollectorRegistry, Gauge

from nextmeeting.snapshot import Event, EventKind, Snapshot

logger = logging.getLogger(__name__)

DEFAULT_GRACE_WINDOW = timedelta(minutes=3)
DEFAULT_RECOMPUTE_INTERVAL_S = 1.0

GaugeKey = tuple[str, EventKind]


class GaugeSink:
    """Labeled gauge pair that remembers which series it has published."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize the gauge families.

        Args:
            registry: Registry to register into; a fresh private registry
                when omitted.
        """
        self.registry = registry if registry is not None else CollectorRegistry()
        self._seconds = Gauge(
            "next_meeting_seconds",
            "Seconds until the next event of this kind starts",
            labelnames=["calendar", "kind"],
            subsystem="calendar",
            registry=self.registry,
        )
        self._epoch_seconds = Gauge(
            "next_meeting_epoch_seconds",
            "Start of the next event of this kind as Unix epoch seconds",
            labelnames=["calendar", "kind"],
            subsystem="calendar",
            registry=self.registry,
        )
        self._active: set[GaugeKey] = set()

    @property
    def active_keys(self) -> frozenset[GaugeKey]:
        return frozenset(self._active)

    def publish(self, calendar_id: str, kind: EventKind, event: Event, now: datetime) -> None:
        """Set both series for ``(calendar_id, kind)`` from *event*."""
        labels = {"calendar": calendar_id, "kind": kind.value}
        self._seconds.labels(**labels).set((event.starts - now).total_seconds())
        self._epoch_seconds.labels(**labels).set(event.starts.timestamp())
        self._active.add((calendar_id, kind))

    def retract(self, calendar_id: str, kind: EventKind) -> None:
        """Delete both series for ``(calendar_id, kind)``; no-op if absent."""
        key = (calendar_id, kind)
        if key not in self._active:
            return
        self._seconds.remove(calendar_id, kind.value)
        self._epoch_seconds.remove(calendar_id, kind.value)
        self._active.discard(key)


def select_next_events(
    events: Sequence[Event],
    now: datetime,
    grace_window: timedelta = DEFAULT_GRACE_WINDOW,
) -> dict[EventKind, Event]:
    """Return the earliest event of each kind starting after ``now - grace_window``.

    *events* must be sorted ascending by ``starts``. Scanning stops once
    both kinds are found.
    """
    first = bisect.bisect_right(events, now - grace_window, key=attrgetter("starts"))
    selected: dict[EventKind, Event] = {}
    for event in events[first:]:
        selected.setdefault(event.kind, event)
        if len(selected) == len(EventKind):
            break
    return selected


class GaugeDeriver:
    """Fast loop that maps the current snapshot onto the gauge sink."""

    def __init__(
        self,
        get_snapshot: Callable[[], Snapshot],
        sink: GaugeSink,
        *,
        grace_window: timedelta = DEFAULT_GRACE_WINDOW,
        interval_s: float = DEFAULT_RECOMPUTE_INTERVAL_S,
    ) -> None:
        """Initialize the deriver.

        Args:
            get_snapshot: Returns the currently published snapshot
            sink: Gauge sink to publish into
            grace_window: How long after its start an event is still reported
            interval_s: Seconds between derivation cycles
        """
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self._get_snapshot = get_snapshot
        self._sink = sink
        self._grace_window = grace_window
        self._interval_s = interval_s
        self._task: asyncio.Task | None = None

    def derive(self, now: datetime | None = None) -> None:
        """Run one derivation cycle against a single snapshot value."""
        now = now or datetime.now(UTC)
        snapshot = self._get_snapshot()

        wanted: set[GaugeKey] = set()
        for calendar_id, events in snapshot.calendars.items():
            for kind, event in select_next_events(events, now, self._grace_window).items():
                self._sink.publish(calendar_id, kind, event, now)
                wanted.add((calendar_id, kind))

        # Covers calendars that dropped out of the snapshot entirely.
        for calendar_id, kind in self._sink.active_keys - wanted:
            self._sink.retract(calendar_id, kind)

    def start(self) -> None:
        if self._task is not None:
            logger.warning("Gauge deriver already running")
            return
        self._task = asyncio.create_task(self._run_loop(), name="nextmeeting-derive")
        logger.info("Started gauge deriver: interval_s=%s", self._interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

        self._task = None
        logger.info("Gauge deriver stopped")

    async def _run_loop(self) -> None:
        try:
            while True:
                try:
                    self.derive()
                except Exception:
                    logger.exception("Gauge derivation cycle failed")
                await asyncio.sleep(self._interval_s)
        except asyncio.CancelledError:
            logger.debug("Gauge derivation loop cancelled")
            raise
