"""Tests for next-event selection and gauge publication."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from types import MappingProxyType

import pytest
from prometheus_client import generate_latest

from nextmeeting.gauges import GaugeDeriver, GaugeSink, select_next_events
from nextmeeting.snapshot import Event, EventKind, Snapshot
from tests.conftest import NOW, make_event

pytestmark = pytest.mark.unit

SECONDS = "calendar_next_meeting_seconds"
EPOCH = "calendar_next_meeting_epoch_seconds"


def _snapshot(calendars: dict[str, list[Event]]) -> Snapshot:
    return Snapshot(
        calendars=MappingProxyType({k: tuple(v) for k, v in calendars.items()}),
        built_at=NOW,
    )


def _value(sink: GaugeSink, name: str, calendar: str, kind: str) -> float | None:
    return sink.registry.get_sample_value(name, {"calendar": calendar, "kind": kind})


class _Holder:
    """Mutable snapshot reference standing in for the scheduler."""

    def __init__(self, snapshot: Snapshot) -> None:
        self.snapshot = snapshot

    def get(self) -> Snapshot:
        return self.snapshot


def _deriver(snapshot: Snapshot) -> tuple[GaugeDeriver, GaugeSink, _Holder]:
    holder = _Holder(snapshot)
    sink = GaugeSink()
    return GaugeDeriver(holder.get, sink), sink, holder


# ---------------------------------------------------------------------------
# select_next_events
# ---------------------------------------------------------------------------


class TestSelectNextEvents:
    def test_first_of_each_kind(self):
        focus = make_event(timedelta(minutes=2))
        meeting = make_event(timedelta(minutes=10), attendees=["x"])
        later_focus = make_event(timedelta(minutes=20))

        selected = select_next_events([focus, meeting, later_focus], NOW)

        assert selected == {EventKind.FOCUS_TIME: focus, EventKind.MEETING: meeting}

    def test_earliest_meeting_wins(self):
        first = make_event(timedelta(minutes=1), attendees=["x"])
        second = make_event(timedelta(minutes=5), attendees=["y"])
        assert select_next_events([first, second], NOW) == {EventKind.MEETING: first}

    def test_grace_window_keeps_just_started_event(self):
        started = make_event(timedelta(minutes=-2), attendees=["x"])
        assert select_next_events([started], NOW) == {EventKind.MEETING: started}

    def test_event_past_grace_window_ignored(self):
        old = make_event(timedelta(minutes=-5), attendees=["x"])
        assert select_next_events([old], NOW) == {}

    def test_event_exactly_at_grace_boundary_ignored(self):
        boundary = make_event(timedelta(minutes=-3))
        assert select_next_events([boundary], NOW) == {}

    def test_custom_grace_window(self):
        started = make_event(timedelta(minutes=-5))
        selected = select_next_events([started], NOW, grace_window=timedelta(minutes=10))
        assert selected == {EventKind.FOCUS_TIME: started}

    def test_empty(self):
        assert select_next_events([], NOW) == {}


# ---------------------------------------------------------------------------
# GaugeSink
# ---------------------------------------------------------------------------


class TestGaugeSink:
    def test_publish_sets_both_series(self):
        sink = GaugeSink()
        event = make_event(timedelta(minutes=2))
        sink.publish("cal1", EventKind.FOCUS_TIME, event, NOW)

        assert _value(sink, SECONDS, "cal1", "focusTime") == pytest.approx(120.0)
        assert _value(sink, EPOCH, "cal1", "focusTime") == pytest.approx(event.starts.timestamp())
        assert sink.active_keys == {("cal1", EventKind.FOCUS_TIME)}

    def test_retract_removes_both_series(self):
        sink = GaugeSink()
        sink.publish("cal1", EventKind.MEETING, make_event(timedelta(minutes=2)), NOW)
        sink.retract("cal1", EventKind.MEETING)

        assert _value(sink, SECONDS, "cal1", "meeting") is None
        assert _value(sink, EPOCH, "cal1", "meeting") is None
        assert sink.active_keys == frozenset()

    def test_retract_unknown_key_is_noop(self):
        sink = GaugeSink()
        sink.retract("cal1", EventKind.MEETING)
        assert sink.active_keys == frozenset()

    def test_private_registry_per_sink(self):
        first, second = GaugeSink(), GaugeSink()
        first.publish("cal1", EventKind.MEETING, make_event(timedelta(minutes=2)), NOW)
        assert _value(second, SECONDS, "cal1", "meeting") is None


# ---------------------------------------------------------------------------
# GaugeDeriver
# ---------------------------------------------------------------------------


class TestGaugeDeriver:
    def test_focus_then_meeting(self):
        deriver, sink, _ = _deriver(
            _snapshot(
                {
                    "cal1": [
                        make_event(timedelta(minutes=2)),
                        make_event(timedelta(minutes=10), attendees=["x"]),
                    ]
                }
            )
        )
        deriver.derive(NOW)

        assert _value(sink, SECONDS, "cal1", "focusTime") == pytest.approx(120.0)
        assert _value(sink, SECONDS, "cal1", "meeting") == pytest.approx(600.0)

    def test_only_past_event_retracts_both(self):
        deriver, sink, holder = _deriver(
            _snapshot(
                {
                    "cal1": [
                        make_event(timedelta(minutes=1)),
                        make_event(timedelta(minutes=2), attendees=["x"]),
                    ]
                }
            )
        )
        deriver.derive(NOW)
        assert len(sink.active_keys) == 2

        holder.snapshot = _snapshot({"cal1": [make_event(timedelta(minutes=-5))]})
        deriver.derive(NOW)

        for kind in ("meeting", "focusTime"):
            assert _value(sink, SECONDS, "cal1", kind) is None
            assert _value(sink, EPOCH, "cal1", kind) is None

    def test_later_meeting_ignored(self):
        first = make_event(timedelta(minutes=1), attendees=["x"])
        deriver, sink, _ = _deriver(
            _snapshot({"cal1": [first, make_event(timedelta(minutes=5), attendees=["y"])]})
        )
        deriver.derive(NOW)

        assert _value(sink, SECONDS, "cal1", "meeting") == pytest.approx(60.0)
        assert _value(sink, EPOCH, "cal1", "meeting") == pytest.approx(first.starts.timestamp())
        assert _value(sink, SECONDS, "cal1", "focusTime") is None

    def test_retraction_is_idempotent(self):
        deriver, sink, _ = _deriver(_snapshot({"cal1": [make_event(timedelta(minutes=-10))]}))
        deriver.derive(NOW)
        first = generate_latest(sink.registry)
        deriver.derive(NOW)
        assert generate_latest(sink.registry) == first
        assert sink.active_keys == frozenset()

    def test_event_ages_out_of_grace_window(self):
        deriver, sink, _ = _deriver(
            _snapshot({"cal1": [make_event(timedelta(minutes=1), attendees=["x"])]})
        )
        deriver.derive(NOW)
        assert _value(sink, SECONDS, "cal1", "meeting") == pytest.approx(60.0)

        deriver.derive(NOW + timedelta(minutes=3))
        assert _value(sink, SECONDS, "cal1", "meeting") == pytest.approx(-120.0)

        deriver.derive(NOW + timedelta(minutes=4, seconds=1))
        assert _value(sink, SECONDS, "cal1", "meeting") is None

    def test_calendar_missing_from_new_snapshot_is_retracted(self):
        deriver, sink, holder = _deriver(
            _snapshot(
                {
                    "a": [make_event(timedelta(minutes=5), attendees=["x"])],
                    "b": [make_event(timedelta(minutes=5))],
                }
            )
        )
        deriver.derive(NOW)

        holder.snapshot = _snapshot({"b": [make_event(timedelta(minutes=5))]})
        deriver.derive(NOW)

        assert _value(sink, SECONDS, "a", "meeting") is None
        assert _value(sink, SECONDS, "b", "focusTime") == pytest.approx(300.0)

    def test_at_most_one_series_per_kind(self):
        events = [
            make_event(timedelta(minutes=m), attendees=["x"] if m % 2 else [])
            for m in range(1, 30)
        ]
        deriver, sink, _ = _deriver(_snapshot({"cal1": events}))
        deriver.derive(NOW)

        text = generate_latest(sink.registry).decode()
        seconds_lines = [line for line in text.splitlines() if line.startswith(f"{SECONDS}{{")]
        assert len(seconds_lines) == 2

    async def test_loop_publishes_and_stops(self):
        upcoming = make_event(timedelta(days=1), attendees=["x"], now=datetime.now(UTC))
        holder = _Holder(_snapshot({"cal1": [upcoming]}))
        sink = GaugeSink()
        deriver = GaugeDeriver(holder.get, sink, interval_s=0.01)

        deriver.start()
        for _ in range(100):
            if sink.active_keys:
                break
            await asyncio.sleep(0.01)
        await deriver.stop()

        assert sink.active_keys == {("cal1", EventKind.MEETING)}

    async def test_stop_without_start(self):
        deriver, _, _ = _deriver(Snapshot())
        await deriver.stop()

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            GaugeDeriver(Snapshot, GaugeSink(), interval_s=0)
