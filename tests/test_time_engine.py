"""Tests for the game clock, event queue and time engine."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from campaign_sim.clock import (
    EventKind,
    EventQueue,
    GameClock,
    PhaseAdvancePayload,
    PollingGenerationPayload,
    ScheduledEvent,
    SystemBroadcastPayload,
    TimeEngine,
    format_game_time,
    parse_game_time,
)
from campaign_sim.errors import DuplicateEventError, InvalidTimeError
from campaign_sim.state import EventType


START = datetime(2025, 1, 1, tzinfo=timezone.utc)


def poll_event(event_id: str, hours: int, persist: bool = False) -> ScheduledEvent:
    return ScheduledEvent(
        id=event_id,
        scheduled_for=START + timedelta(hours=hours),
        payload=PollingGenerationPayload(player_id="p1", cycle_sequence=1),
        persist=persist,
    )


@pytest.fixture
def fired(engine):
    """Record every polling-generation event the engine fires."""
    seen: list[str] = []
    engine.register_handler(EventKind.POLLING_GENERATION, lambda event, now: seen.append(event.id))
    return seen


class TestGameTime:
    """Parsing and formatting of game time values."""

    def test_parse_z_suffix(self):
        """Trailing Z is read as UTC."""
        assert parse_game_time("2025-01-01T01:00:00Z") == START + timedelta(hours=1)

    def test_naive_treated_as_utc(self):
        """Naive datetimes get UTC attached."""
        assert parse_game_time(datetime(2025, 1, 1)) == START

    def test_offset_normalised(self):
        """Other offsets are converted to UTC."""
        assert parse_game_time("2025-01-01T02:00:00+02:00") == START

    def test_unparseable_rejected(self):
        """Garbage strings raise InvalidTimeError."""
        with pytest.raises(InvalidTimeError):
            parse_game_time("yesterday")

    def test_wrong_type_rejected(self):
        with pytest.raises(InvalidTimeError):
            parse_game_time(12345)

    def test_format_round_trips(self):
        assert format_game_time(START) == "2025-01-01T00:00:00Z"

    def test_clock_refuses_negative_advance(self):
        clock = GameClock(current_time=START)
        with pytest.raises(InvalidTimeError):
            clock.advance(-1)

    def test_clock_normalises_naive_start(self):
        """A naive start is read as UTC so it compares with event due times."""
        clock = GameClock(current_time=datetime(2025, 1, 1))
        assert clock.current_time == START

        engine = TimeEngine(clock)
        engine.register_handler(EventKind.POLLING_GENERATION, lambda event, now: None)
        engine.schedule_event(poll_event("e1", 1))
        assert engine.fast_forward(1).processed_ids == ["e1"]

    def test_clock_converts_offset_start(self):
        clock = GameClock(current_time="2025-01-01T02:00:00+02:00")
        assert clock.current_time == START


class TestEventQueue:
    """Due-time ordering and at-most-once delivery."""

    def test_orders_by_due_time(self):
        queue = EventQueue()
        queue.push(poll_event("late", 3))
        queue.push(poll_event("early", 1))
        assert [e.id for e in queue.pending()] == ["early", "late"]

    def test_equal_times_are_fifo(self):
        """Events due at the same time pop in insertion order."""
        queue = EventQueue()
        for name in ["a", "b", "c"]:
            queue.push(poll_event(name, 1))
        popped = [queue.pop_due(START + timedelta(hours=1)).id for _ in range(3)]
        assert popped == ["a", "b", "c"]

    def test_peek_time(self):
        queue = EventQueue()
        assert queue.peek_time() is None
        queue.push(poll_event("late", 3))
        queue.push(poll_event("early", 1))
        assert queue.peek_time() == START + timedelta(hours=1)

    def test_pop_due_respects_time(self):
        queue = EventQueue()
        queue.push(poll_event("e1", 2))
        assert queue.pop_due(START + timedelta(hours=1)) is None
        assert queue.pop_due(START + timedelta(hours=2)).id == "e1"

    def test_duplicate_queued_id_rejected(self):
        queue = EventQueue()
        queue.push(poll_event("e1", 1))
        with pytest.raises(DuplicateEventError) as exc:
            queue.push(poll_event("e1", 5))
        assert exc.value.event_id == "e1"

    def test_fired_id_cannot_be_requeued(self):
        """An id is never accepted again once it has fired."""
        queue = EventQueue()
        queue.push(poll_event("e1", 0))
        queue.pop_due(START)
        assert queue.has_fired("e1")
        with pytest.raises(DuplicateEventError):
            queue.push(poll_event("e1", 1))

    def test_payload_discriminated_by_kind(self):
        """Payloads round-trip through the kind discriminator."""
        event = ScheduledEvent(
            scheduled_for="2025-01-01T00:00:00Z",
            payload={"kind": "phase_advance", "player_id": "p1", "cycle_sequence": 2},
        )
        assert isinstance(event.payload, PhaseAdvancePayload)
        assert event.kind == EventKind.PHASE_ADVANCE
        assert event.scheduled_for == START


class TestQueueQueries:
    """Read-only views of the engine's queue."""

    def test_next_event_time(self, engine, fired):
        assert engine.next_event_time() is None
        engine.schedule_event(poll_event("later", 5))
        engine.schedule_event(poll_event("sooner", 2))
        assert engine.next_event_time() == START + timedelta(hours=2)

        engine.fast_forward(2)
        assert engine.next_event_time() == START + timedelta(hours=5)

    def test_is_known_covers_queued_and_fired(self, engine, fired):
        engine.schedule_event(poll_event("e1", 1))
        assert engine.is_known("e1")
        assert not engine.is_known("e2")

        engine.fast_forward(1)
        assert engine.is_known("e1")
        assert engine.has_fired("e1")


class TestPauseResume:
    """Pause and resume toggling."""

    def test_pause_is_idempotent(self, engine, bus):
        """Pausing twice is a no-op, not an error, and notifies once."""
        engine.pause()
        engine.pause()
        assert engine.is_paused()
        assert len(bus.get_history(EventType.TIME_PAUSED)) == 1

    def test_resume_is_idempotent(self, engine, bus):
        engine.resume()
        assert not engine.is_paused()
        assert bus.get_history(EventType.TIME_RESUMED) == []

    def test_resume_after_pause(self, engine):
        engine.pause()
        engine.resume()
        assert not engine.is_paused()


class TestTickOnce:
    """Draining due events and advancing the clock."""

    def test_unpaused_tick_advances_one_step(self, engine):
        report = engine.tick_once()
        assert engine.get_game_time() == START + timedelta(hours=1)
        assert report.advanced_hours == 1

    def test_paused_tick_keeps_time_but_fires_due_events(self, engine, fired):
        """Pause freezes time, not overdue-event processing."""
        engine.schedule_event(poll_event("due", 0))
        engine.pause()

        report = engine.tick_once()

        assert engine.get_game_time() == START
        assert report.advanced_hours == 0
        assert fired == ["due"]

    def test_paused_ticks_never_move_time(self, engine):
        engine.pause()
        for _ in range(5):
            engine.tick_once()
        assert engine.get_game_time() == START

    def test_due_events_drain_before_advancing(self, engine, fired):
        """An event due one step ahead fires on the following tick."""
        engine.schedule_event(poll_event("next_hour", 1))
        engine.tick_once()
        assert fired == []
        engine.tick_once()
        assert fired == ["next_hour"]

    def test_event_fires_at_most_once(self, engine, fired):
        """Repeated ticks never deliver the same id twice."""
        engine.schedule_event(poll_event("once", 0))
        for _ in range(5):
            engine.tick_once()
        assert fired == ["once"]
        assert engine.has_fired("once")

    def test_custom_step(self, bus):
        engine = TimeEngine(GameClock(current_time=START), step_hours=6, bus=bus)
        engine.tick_once()
        assert engine.get_game_time() == START + timedelta(hours=6)

    def test_missing_handler_reported(self, engine):
        """An event with no registered handler is a reported failure."""
        engine.schedule_event(poll_event("orphan", 0))
        report = engine.tick_once()
        assert report.processed_ids == ["orphan"]
        assert len(report.failures) == 1
        assert isinstance(report.failures[0].error, LookupError)


class TestFailureIsolation:
    """A failing handler never aborts the rest of the tick."""

    def test_remaining_events_still_fire(self, engine):
        seen = []

        def handler(event, now):
            if event.id == "bad":
                raise RuntimeError("boom")
            seen.append(event.id)

        engine.register_handler(EventKind.POLLING_GENERATION, handler)
        engine.schedule_event(poll_event("bad", 0))
        engine.schedule_event(poll_event("good", 0))

        report = engine.tick_once()

        assert seen == ["good"]
        assert report.processed_ids == ["bad", "good"]
        assert [f.event_id for f in report.failures] == ["bad"]
        assert not report.ok

    def test_failed_event_is_not_retried(self, engine):
        """Failure still consumes the event."""
        calls = []

        def handler(event, now):
            calls.append(event.id)
            raise RuntimeError("boom")

        engine.register_handler(EventKind.POLLING_GENERATION, handler)
        engine.schedule_event(poll_event("bad", 0))
        engine.tick_once()
        engine.tick_once()
        assert calls == ["bad"]

    def test_history_records_persisted_outcomes(self, engine):
        def handler(event, now):
            if event.id == "bad":
                raise RuntimeError("boom")

        engine.register_handler(EventKind.POLLING_GENERATION, handler)
        engine.schedule_event(poll_event("bad", 0, persist=True))
        engine.schedule_event(poll_event("good", 0, persist=True))
        engine.schedule_event(poll_event("transient", 0))
        engine.tick_once()

        history = {h.event.id: h.succeeded for h in engine.get_history()}
        assert history == {"bad": False, "good": True}


class TestFastForward:
    """Jumping ahead and draining the skipped interval."""

    def test_scenario_two_hours(self, engine, fired):
        """00:00 + fast_forward(2) reads 02:00 and the 01:00 event fired once."""
        engine.schedule_event(poll_event("one_am", 1))

        report = engine.fast_forward(2)

        assert format_game_time(engine.get_game_time()) == "2025-01-01T02:00:00Z"
        assert fired == ["one_am"]
        assert report.processed_ids == ["one_am"]

        engine.tick_once()
        assert fired == ["one_am"]

    def test_events_fire_in_due_order(self, engine, fired):
        engine.schedule_event(poll_event("third", 5))
        engine.schedule_event(poll_event("first", 1))
        engine.schedule_event(poll_event("second", 3))
        engine.fast_forward(6)
        assert fired == ["first", "second", "third"]

    def test_events_beyond_interval_stay_queued(self, engine, fired):
        engine.schedule_event(poll_event("later", 10))
        engine.fast_forward(9)
        assert fired == []
        assert [e.id for e in engine.pending_events()] == ["later"]

    def test_follow_up_inside_interval_fires(self, engine):
        """Events scheduled by a handler within the skipped interval fire too."""
        seen = []

        def handler(event, now):
            seen.append(event.id)
            if event.id == "root":
                engine.schedule_event(ScheduledEvent(
                    id="child",
                    scheduled_for=event.scheduled_for + timedelta(hours=2),
                    payload=event.payload,
                ))

        engine.register_handler(EventKind.POLLING_GENERATION, handler)
        engine.schedule_event(poll_event("root", 1))
        engine.schedule_event(poll_event("between", 2))
        engine.fast_forward(4)

        assert seen == ["root", "between", "child"]

    def test_allowed_while_paused(self, engine):
        engine.pause()
        engine.fast_forward(3)
        assert engine.get_game_time() == START + timedelta(hours=3)
        assert engine.is_paused()

    @pytest.mark.parametrize("hours", [0, -1, 1.5, "2", True, None, 24 * 365 + 1])
    def test_rejects_bad_hours(self, engine, hours):
        """Hours must be a positive integer within one simulated year."""
        with pytest.raises(InvalidTimeError):
            engine.fast_forward(hours)
        assert engine.get_game_time() == START

    def test_one_year_is_accepted(self, engine):
        engine.fast_forward(24 * 365)
        assert engine.get_game_time() == START + timedelta(days=365)

    def test_notifies_sink(self, engine, bus):
        engine.fast_forward(5)
        notes = bus.get_history(EventType.TIME_FAST_FORWARDED)
        assert len(notes) == 1
        assert notes[0].data["hours"] == 5


class TestDrainAssociativity:
    """One long fast-forward equals many one-hour ones."""

    def _run(self, steps: list[int]) -> tuple[list[str], datetime, list[str]]:
        engine = TimeEngine(GameClock(current_time=START))
        engine.pause()
        seen: list[str] = []

        def handler(event, now):
            seen.append(event.id)
            if event.id.startswith("chain") and len(event.id) < len("chain") + 5:
                engine.schedule_event(ScheduledEvent(
                    id=event.id + "+",
                    scheduled_for=event.scheduled_for + timedelta(hours=1),
                    payload=event.payload,
                ))

        engine.register_handler(EventKind.POLLING_GENERATION, handler)
        engine.schedule_event(poll_event("e1", 1))
        engine.schedule_event(poll_event("chain", 2))
        engine.schedule_event(poll_event("e3", 3))
        engine.schedule_event(poll_event("e5", 5))
        engine.schedule_event(poll_event("e9", 9))

        for hours in steps:
            engine.fast_forward(hours)
            engine.tick_once()

        return seen, engine.get_game_time(), [e.id for e in engine.pending_events()]

    def test_single_jump_matches_hourly_steps(self):
        fired_a, time_a, pending_a = self._run([6])
        fired_b, time_b, pending_b = self._run([1] * 6)

        assert fired_a == fired_b
        assert time_a == time_b == START + timedelta(hours=6)
        assert pending_a == pending_b
        assert fired_a[:4] == ["e1", "chain", "e3", "chain+"]


class TestSetGameTime:
    """Administrative absolute set."""

    def test_sets_from_iso_string(self, engine, bus):
        engine.set_game_time("2025-03-01T12:00:00Z")
        assert engine.get_game_time() == datetime(2025, 3, 1, 12, tzinfo=timezone.utc)
        assert bus.get_history(EventType.TIME_SET)[0].data["after"] == "2025-03-01T12:00:00Z"

    def test_rewind_allowed_by_default(self, engine):
        engine.fast_forward(10)
        engine.set_game_time(START)
        assert engine.get_game_time() == START

    def test_rewind_refused_when_disabled(self, bus):
        engine = TimeEngine(GameClock(current_time=START), allow_rewind=False, bus=bus)
        with pytest.raises(InvalidTimeError):
            engine.set_game_time(START - timedelta(hours=1))
        assert engine.get_game_time() == START

    def test_unparseable_rejected(self, engine):
        with pytest.raises(InvalidTimeError):
            engine.set_game_time("not a time")

    def test_from_config(self, config, bus):
        engine = TimeEngine.from_config(
            {**config, "tick_step_hours": 3}, start="2025-06-01T00:00:00Z", bus=bus
        )
        engine.tick_once()
        assert engine.get_game_time() == datetime(2025, 6, 1, 3, tzinfo=timezone.utc)


class TestNotifications:
    """Fire-and-forget sink behaviour."""

    def test_start_emits_system_started(self, engine, bus):
        engine.start()
        assert bus.get_history(EventType.SYSTEM_STARTED)[0].data["game_time"] == "2025-01-01T00:00:00Z"

    def test_broadcast_delivered_on_tick(self, engine, bus):
        engine.broadcast("maintenance", window="1h")
        engine.tick_once()
        notes = bus.get_history(EventType.SYSTEM_BROADCAST)
        assert notes[0].data["message"] == "maintenance"
        assert notes[0].data["window"] == "1h"

    def test_failing_listener_never_breaks_tick(self, engine, bus):
        def explode(note):
            raise RuntimeError("sink down")

        bus.on(EventType.SYSTEM_BROADCAST, explode)
        bus.on(EventType.TIME_FAST_FORWARDED, explode)
        engine.schedule_event(ScheduledEvent(
            scheduled_for=START,
            payload=SystemBroadcastPayload(message="hello"),
        ))

        report = engine.fast_forward(1)

        assert report.ok
        assert engine.get_game_time() == START + timedelta(hours=1)


class TestConcurrency:
    """Writers from many threads keep at-most-once delivery."""

    def test_parallel_schedule_and_tick(self, engine):
        engine.pause()
        seen: list[str] = []
        lock = threading.Lock()

        def handler(event, now):
            with lock:
                seen.append(event.id)

        engine.register_handler(EventKind.POLLING_GENERATION, handler)

        def producer(n: int):
            for i in range(50):
                engine.schedule_event(poll_event(f"t{n}-{i}", 0))

        def ticker():
            for _ in range(100):
                engine.tick_once()

        threads = [threading.Thread(target=producer, args=(n,)) for n in range(4)]
        threads.append(threading.Thread(target=ticker))
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        engine.tick_once()

        assert len(seen) == 200
        assert len(set(seen)) == 200
        assert engine.get_game_time() == START
