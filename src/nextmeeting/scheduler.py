"""Refresh scheduler: owns the current snapshot and decides when to rebuild it.

Two trigger sources feed one consumer loop:

- a fixed-cadence timer (``interval_s``, default 10 minutes)
- a bounded queue of manual refresh requests (``queue_size``, default 100)

Each trigger runs one build. A successful build replaces ``snapshot`` with a
single reference assignment, so readers on the same event loop always see a
complete snapshot. A failed build is logged and the previous snapshot stays.

Manual requests are never coalesced; when the queue is full the request is
dropped and ``request_refresh`` returns ``False``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Protocol

from nextmeeting.core.logging import refresh_log_context
from nextmeeting.core.telemetry import get_tracer
from nextmeeting.snapshot import Snapshot

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_S = 600.0
DEFAULT_QUEUE_SIZE = 100

TRIGGER_INITIAL = "initial"
TRIGGER_TIMER = "timer"
TRIGGER_MANUAL = "manual"


class StartupRefreshError(RuntimeError):
    """Raised when the first snapshot build at startup fails."""


class Builder(Protocol):
    async def build(self, now: datetime | None = None) -> Snapshot: ...


class RefreshScheduler:
    """Background task that rebuilds the snapshot on a timer and on demand."""

    def __init__(
        self,
        builder: Builder,
        *,
        interval_s: float = DEFAULT_INTERVAL_S,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")

        self._builder = builder
        self._interval_s = interval_s
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._snapshot = Snapshot()
        self._task: asyncio.Task | None = None
        self.builds_completed = 0
        self.builds_failed = 0
        self.triggers_dropped = 0

    @property
    def snapshot(self) -> Snapshot:
        """The most recently published snapshot."""
        return self._snapshot

    @property
    def pending_triggers(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Run the initial build, then start the background loop.

        Raises
        ------
        StartupRefreshError
            If the initial build fails. The loop is not started.
        """
        if self._task is not None:
            logger.warning("Refresh scheduler already running")
            return

        if not await self.refresh(TRIGGER_INITIAL):
            raise StartupRefreshError("Initial calendar snapshot build failed")

        self._task = asyncio.create_task(self._run_loop(), name="nextmeeting-refresh")
        logger.info("Started refresh scheduler: interval_s=%s", self._interval_s)

    async def stop(self) -> None:
        """Cancel the loop. An in-flight build is abandoned, never published."""
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

        self._task = None
        logger.info("Refresh scheduler stopped")

    def request_refresh(self) -> bool:
        """Enqueue a manual refresh without blocking.

        Returns ``False`` (and drops the request) when the queue is full.
        """
        try:
            self._queue.put_nowait(TRIGGER_MANUAL)
        except asyncio.QueueFull:
            self.triggers_dropped += 1
            logger.warning(
                "Manual refresh dropped: queue full (capacity=%d)", self._queue.maxsize
            )
            return False
        return True

    async def refresh(self, trigger: str) -> bool:
        """Build and publish a snapshot; return whether it was published."""
        tracer = get_tracer()
        with (
            refresh_log_context(trigger),
            tracer.start_as_current_span("nextmeeting.refresh") as span,
        ):
            span.set_attribute("nextmeeting.trigger", trigger)
            try:
                snapshot = await self._builder.build()
            except Exception:
                self.builds_failed += 1
                logger.exception("Calendar snapshot build failed (trigger=%s)", trigger)
                return False

            self._snapshot = snapshot
            self.builds_completed += 1
            span.set_attribute("nextmeeting.calendars", len(snapshot))
            span.set_attribute("nextmeeting.failed_calendars", len(snapshot.failures))

            logger.info(
                "Calendar snapshot refreshed (trigger=%s): %d calendar(s), %d failed",
                trigger,
                len(snapshot),
                len(snapshot.failures),
            )
        return True

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self._interval_s
        try:
            while True:
                timeout = max(next_tick - loop.time(), 0.0)
                try:
                    trigger = await asyncio.wait_for(self._queue.get(), timeout=timeout)
                except TimeoutError:
                    trigger = TRIGGER_TIMER
                    next_tick += self._interval_s
                    # Skip missed ticks after a long build instead of bursting.
                    if next_tick <= loop.time():
                        next_tick = loop.time() + self._interval_s

                await self.refresh(trigger)
        except asyncio.CancelledError:
            logger.debug("Refresh loop cancelled")
            raise
