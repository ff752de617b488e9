"""
Notification bus for simulator state changes.

Fire-and-forget sink for administrative clock actions, phase transitions,
polls and election results. Listeners subscribe by type and react without
coupling to the engines. A failing listener is logged and never rolls back
the operation that emitted the notification.

Usage:
    bus = EventBus()
    bus.on(EventType.PHASE_ADVANCED, my_handler)

    # Emitted by the phase machine
    bus.emit(EventType.PHASE_ADVANCED, player_id="p1", cycle_sequence=1,
             before="primary", after="general_campaign")

    def my_handler(note: Notification):
        print(f"{note.player_id} entered {note.data['after']}")

There is no module-level instance: one bus is built per
simulation and handed to the engines that publish on it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable


logger = logging.getLogger(__name__)


class EventType(Enum):
    """Notifications that can be published."""

    # System / clock
    SYSTEM_STARTED = "system.started"
    SYSTEM_BROADCAST = "system.broadcast"
    TIME_SET = "time.set"
    TIME_PAUSED = "time.paused"
    TIME_RESUMED = "time.resumed"
    TIME_FAST_FORWARDED = "time.fast_forwarded"

    # Campaign cycle
    CYCLE_STARTED = "cycle.started"
    PHASE_ADVANCED = "phase.advanced"
    ACTIVITY_RECORDED = "activity.recorded"
    CAMPAIGN_PAUSED = "campaign.paused"
    CAMPAIGN_RESUMED = "campaign.resumed"

    # Polling and results
    POLL_CAPTURED = "poll.captured"
    ELECTION_RESOLVED = "election.resolved"
    RECOUNT_FLAGGED = "recount.flagged"


@dataclass
class Notification:
    """
    Payload delivered to listeners.

    Attributes:
        type: The notification type
        data: Type-specific payload
        player_id: Player the notification concerns ("" for system notes)
        cycle_sequence: Cycle number, 0 for system notes
        timestamp: Wall-clock time of emission
    """

    type: EventType
    data: dict = field(default_factory=dict)
    player_id: str = ""
    cycle_sequence: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    def __str__(self) -> str:
        return f"[{self.type.value}] {self.data}"


NotificationHandler = Callable[[Notification], None]


class EventBus:
    """
    Synchronous notification bus.

    Listeners are called immediately on emit(), in subscription order.
    """

    def __init__(self, history_limit: int = 100):
        self._listeners: dict[EventType, list[NotificationHandler]] = {}
        self._history: list[Notification] = []
        self._history_limit = history_limit

    def on(self, event_type: EventType, handler: NotificationHandler) -> None:
        """Subscribe to a notification type."""
        if event_type not in self._listeners:
            self._listeners[event_type] = []
        if handler not in self._listeners[event_type]:
            self._listeners[event_type].append(handler)

    def off(self, event_type: EventType, handler: NotificationHandler) -> None:
        """Unsubscribe from a notification type."""
        if event_type in self._listeners and handler in self._listeners[event_type]:
            self._listeners[event_type].remove(handler)

    def emit(
        self,
        event_type: EventType,
        player_id: str = "",
        cycle_sequence: int = 0,
        **data,
    ) -> Notification:
        """
        Emit a notification to all subscribers.

        Returns:
            The emitted Notification (for chaining/testing)
        """
        note = Notification(
            type=event_type,
            data=data,
            player_id=player_id,
            cycle_sequence=cycle_sequence,
        )

        self._history.append(note)
        if len(self._history) > self._history_limit:
            self._history = self._history[-self._history_limit :]

        for handler in list(self._listeners.get(event_type, [])):
            try:
                handler(note)
            except Exception:
                logger.exception("Listener failed for %s", event_type.value)

        return note

    def clear(self) -> None:
        """Clear all listeners. Useful for testing."""
        self._listeners.clear()

    def get_history(self, event_type: EventType | None = None) -> list[Notification]:
        """Recent notifications, optionally filtered by type."""
        if event_type is None:
            return list(self._history)
        return [n for n in self._history if n.type == event_type]

    def listener_count(self, event_type: EventType) -> int:
        return len(self._listeners.get(event_type, []))
