"""
Time engine: the only mutator of game time.

Owns the GameClock and the EventQueue. External callers tick it; due
events are dispatched to handlers registered per payload kind.

Access discipline (one engine per process, passed to whoever needs it):
- Writers (tick_once, fast_forward, set_game_time, pause, resume,
  schedule_event) share one re-entrant critical section, so a handler
  may schedule follow-up events while a tick is draining.
- Readers (get_game_time, is_paused) never take the lock. They read a
  (time, paused) pair that is republished only after a write completes,
  so they never observe a clock that moved before its events drained.

Usage:
    engine = TimeEngine(GameClock(current_time=start), bus=bus)
    engine.register_handler(EventKind.PHASE_ADVANCE, on_phase_advance)
    engine.schedule_event(ScheduledEvent(scheduled_for=..., payload=...))
    report = engine.fast_forward(48)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from ..errors import InvalidTimeError
from ..state.event_bus import EventBus, EventType
from .clock import GameClock, format_game_time, parse_game_time
from .events import EventKind, EventQueue, ScheduledEvent, SystemBroadcastPayload


logger = logging.getLogger(__name__)

# Handler: (event, clock time at which the drain is running) -> None
EventHandler = Callable[[ScheduledEvent, datetime], None]


@dataclass
class EventFailure:
    """A single event whose handler raised during a tick."""
    event_id: str
    kind: EventKind
    error: Exception


@dataclass
class FiredEvent:
    """History record for an event scheduled with persist=True."""
    event: ScheduledEvent
    fired_at: datetime
    succeeded: bool


@dataclass
class TickReport:
    """What a tick_once / fast_forward call did."""
    processed: list[ScheduledEvent] = field(default_factory=list)
    failures: list[EventFailure] = field(default_factory=list)
    game_time: datetime | None = None
    advanced_hours: int = 0

    @property
    def processed_ids(self) -> list[str]:
        return [e.id for e in self.processed]

    @property
    def ok(self) -> bool:
        return not self.failures


class TimeEngine:
    """
    Authoritative game clock with a due-event queue.

    Pause freezes time advancement only. Overdue events still drain on
    every tick so nothing queued before a pause is dropped.
    """

    def __init__(
        self,
        clock: GameClock | None = None,
        *,
        step_hours: int = 1,
        max_fast_forward_hours: int = 24 * 365,
        allow_rewind: bool = True,
        bus: EventBus | None = None,
        history_limit: int = 1000,
    ):
        self._clock = clock or GameClock()
        self._queue = EventQueue()
        self._lock = threading.RLock()
        self._step_hours = step_hours
        self._max_fast_forward_hours = max_fast_forward_hours
        self._allow_rewind = allow_rewind
        self._bus = bus
        self._handlers: dict[EventKind, EventHandler] = {
            EventKind.SYSTEM_BROADCAST: self._on_system_broadcast,
        }
        self._history: list[FiredEvent] = []
        self._history_limit = history_limit
        self._published: tuple[datetime, bool] = (
            self._clock.current_time,
            self._clock.paused,
        )

    @classmethod
    def from_config(
        cls,
        config: dict,
        *,
        start: datetime | str | None = None,
        bus: EventBus | None = None,
    ) -> "TimeEngine":
        """Build an engine from a SimConfig mapping."""
        clock = GameClock()
        if start is not None:
            clock.current_time = parse_game_time(start)
        return cls(
            clock,
            step_hours=config.get("tick_step_hours", 1),
            max_fast_forward_hours=config.get("max_fast_forward_hours", 24 * 365),
            allow_rewind=config.get("allow_rewind", True),
            bus=bus,
        )

    # ─── Reads ───────────────────────────────────────────────

    def get_game_time(self) -> datetime:
        """Current clock value. No side effects, never blocks."""
        return self._published[0]

    def is_paused(self) -> bool:
        return self._published[1]

    @property
    def step_hours(self) -> int:
        return self._step_hours

    def pending_events(self) -> list[ScheduledEvent]:
        with self._lock:
            return self._queue.pending()

    def get_history(self) -> list[FiredEvent]:
        with self._lock:
            return list(self._history)

    def has_fired(self, event_id: str) -> bool:
        with self._lock:
            return self._queue.has_fired(event_id)

    def is_known(self, event_id: str) -> bool:
        """True if the id is queued or has fired, so scheduling it would fail."""
        with self._lock:
            return event_id in self._queue or self._queue.has_fired(event_id)

    def next_event_time(self) -> datetime | None:
        """Due time of the earliest queued event, or None if nothing is queued."""
        with self._lock:
            return self._queue.peek_time()

    # ─── Registration ────────────────────────────────────────

    def register_handler(self, kind: EventKind, handler: EventHandler) -> None:
        """Register the handler for one payload kind (replaces any previous)."""
        with self._lock:
            self._handlers[kind] = handler

    # ─── Writes ──────────────────────────────────────────────

    def start(self) -> None:
        """Announce engine startup on the notification sink."""
        self._notify(
            EventType.SYSTEM_STARTED,
            game_time=format_game_time(self.get_game_time()),
        )

    def set_game_time(self, value: datetime | str) -> datetime:
        """
        Administrative absolute set.

        Raises:
            InvalidTimeError: If the value cannot be parsed, or moves the
                clock backwards while rewinds are disabled.
        """
        target = parse_game_time(value)
        with self._lock:
            before = self._clock.current_time
            if target < before and not self._allow_rewind:
                raise InvalidTimeError(
                    f"Cannot move clock back from {format_game_time(before)} "
                    f"to {format_game_time(target)}"
                )
            self._clock.current_time = target
            self._publish()

        logger.info("Game time set %s -> %s", format_game_time(before), format_game_time(target))
        self._notify(
            EventType.TIME_SET,
            before=format_game_time(before),
            after=format_game_time(target),
        )
        return target

    def pause(self) -> None:
        """Freeze time advancement. Idempotent."""
        with self._lock:
            if self._clock.paused:
                return
            self._clock.paused = True
            self._publish()
        logger.info("Game clock paused at %s", format_game_time(self.get_game_time()))
        self._notify(EventType.TIME_PAUSED, game_time=format_game_time(self.get_game_time()))

    def resume(self) -> None:
        """Unfreeze time advancement. Idempotent."""
        with self._lock:
            if not self._clock.paused:
                return
            self._clock.paused = False
            self._publish()
        logger.info("Game clock resumed at %s", format_game_time(self.get_game_time()))
        self._notify(EventType.TIME_RESUMED, game_time=format_game_time(self.get_game_time()))

    def schedule_event(self, event: ScheduledEvent) -> ScheduledEvent:
        """
        Queue an event.

        Raises:
            DuplicateEventError: If the id is queued or has already fired.
        """
        with self._lock:
            self._queue.push(event)
        logger.debug(
            "Scheduled %s (%s) for %s",
            event.id, event.kind.value, format_game_time(event.scheduled_for),
        )
        return event

    def broadcast(self, message: str, **data) -> ScheduledEvent:
        """Queue a system broadcast due immediately."""
        with self._lock:
            event = ScheduledEvent(
                scheduled_for=self._clock.current_time,
                payload=SystemBroadcastPayload(message=message, data=data),
            )
            return self.schedule_event(event)

    def tick_once(self) -> TickReport:
        """
        Fire every due event, then advance by one step unless paused.

        Due events fire regardless of pause state.
        """
        with self._lock:
            report = self._drain()
            if not self._clock.paused:
                self._clock.advance(self._step_hours)
                report.advanced_hours = self._step_hours
            report.game_time = self._clock.current_time
            self._publish()
        return report

    def fast_forward(self, hours: int) -> TickReport:
        """
        Jump ahead ``hours`` and fire everything due in the skipped interval.

        Events fire in scheduled_for order, including follow-ups scheduled
        by handlers that fall inside the interval.

        Raises:
            InvalidTimeError: If hours is not a positive integer within
                one simulated year.
        """
        if isinstance(hours, bool) or not isinstance(hours, int):
            raise InvalidTimeError(f"Fast-forward hours must be an integer, got {hours!r}")
        if hours <= 0 or hours > self._max_fast_forward_hours:
            raise InvalidTimeError(
                f"Fast-forward hours must be between 1 and {self._max_fast_forward_hours}, "
                f"got {hours}"
            )

        with self._lock:
            self._clock.current_time = self._clock.current_time + timedelta(hours=hours)
            report = self._drain()
            report.advanced_hours = hours
            report.game_time = self._clock.current_time
            self._publish()

        logger.info(
            "Fast-forwarded %dh to %s (%d events, %d failures)",
            hours, format_game_time(report.game_time),
            len(report.processed), len(report.failures),
        )
        self._notify(
            EventType.TIME_FAST_FORWARDED,
            hours=hours,
            game_time=format_game_time(report.game_time),
            events_fired=len(report.processed),
        )
        return report

    # ─── Internals ───────────────────────────────────────────

    def _drain(self) -> TickReport:
        """Fire due events in order. Caller holds the lock."""
        report = TickReport()
        now = self._clock.current_time

        while True:
            event = self._queue.pop_due(now)
            if event is None:
                break

            report.processed.append(event)
            succeeded = True
            handler = self._handlers.get(event.kind)
            try:
                if handler is None:
                    raise LookupError(f"No handler registered for {event.kind.value}")
                handler(event, now)
                logger.debug("Fired %s (%s)", event.id, event.kind.value)
            except Exception as e:
                # One failing event never aborts the rest of the tick
                succeeded = False
                logger.exception("Event %s (%s) failed", event.id, event.kind.value)
                report.failures.append(EventFailure(event.id, event.kind, e))

            if event.persist:
                self._history.append(FiredEvent(event, now, succeeded))
                if len(self._history) > self._history_limit:
                    self._history = self._history[-self._history_limit :]

        return report

    def _publish(self) -> None:
        self._published = (self._clock.current_time, self._clock.paused)

    def _notify(self, event_type: EventType, **data) -> None:
        if self._bus is None:
            return
        try:
            self._bus.emit(event_type, **data)
        except Exception:
            logger.exception("Notification %s failed", event_type.value)

    def _on_system_broadcast(self, event: ScheduledEvent, now: datetime) -> None:
        payload = event.payload
        self._notify(
            EventType.SYSTEM_BROADCAST,
            message=payload.message,
            game_time=format_game_time(now),
            **payload.data,
        )
