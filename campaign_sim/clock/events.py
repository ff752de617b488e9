"""
Scheduled events and the due-time event queue.

Event payloads are a closed sum type discriminated by ``kind``:

    polling_generation   generate the next opinion snapshot for a player
    phase_advance        move a player's cycle one phase forward
    election_resolution  resolve a cycle that has reached election day
    system_broadcast     fire-and-forget notification to the sink

The queue orders by scheduled_for, breaking ties by insertion order so a
tick is deterministic. An event id is accepted once; it can never be queued
again after it fires.
"""

from __future__ import annotations

import heapq
import itertools
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ..errors import DuplicateEventError
from .clock import parse_game_time


class EventKind(str, Enum):
    """Discriminator for ScheduledEvent payloads."""
    POLLING_GENERATION = "polling_generation"
    PHASE_ADVANCE = "phase_advance"
    ELECTION_RESOLUTION = "election_resolution"
    SYSTEM_BROADCAST = "system_broadcast"


class PollingGenerationPayload(BaseModel):
    kind: Literal[EventKind.POLLING_GENERATION] = EventKind.POLLING_GENERATION
    player_id: str
    cycle_sequence: int
    poll_type: str = "national"   # PollType value
    state_code: str | None = None


class PhaseAdvancePayload(BaseModel):
    kind: Literal[EventKind.PHASE_ADVANCE] = EventKind.PHASE_ADVANCE
    player_id: str
    cycle_sequence: int
    attempt: int = 1


class ElectionResolutionPayload(BaseModel):
    kind: Literal[EventKind.ELECTION_RESOLUTION] = EventKind.ELECTION_RESOLUTION
    player_id: str
    cycle_sequence: int
    attempt: int = 1


class SystemBroadcastPayload(BaseModel):
    kind: Literal[EventKind.SYSTEM_BROADCAST] = EventKind.SYSTEM_BROADCAST
    message: str
    data: dict = Field(default_factory=dict)


EventPayload = Annotated[
    Union[
        PollingGenerationPayload,
        PhaseAdvancePayload,
        ElectionResolutionPayload,
        SystemBroadcastPayload,
    ],
    Field(discriminator="kind"),
]


class ScheduledEvent(BaseModel):
    """
    A callback request keyed by due time.

    Owned by the EventQueue until consumed. ``persist`` asks the engine to
    keep a record of the event in its history after it fires.
    """
    id: str = Field(default_factory=lambda: str(uuid4())[:8])
    scheduled_for: datetime
    payload: EventPayload
    persist: bool = False

    @field_validator("scheduled_for", mode="before")
    @classmethod
    def normalise_time(cls, value):
        return parse_game_time(value)

    @property
    def kind(self) -> EventKind:
        return self.payload.kind


class EventQueue:
    """
    Min-heap of scheduled events.

    Not thread-safe on its own; TimeEngine serialises every access.
    """

    def __init__(self):
        self._heap: list[tuple[datetime, int, ScheduledEvent]] = []
        self._queued: dict[str, ScheduledEvent] = {}
        self._fired: set[str] = set()
        self._counter = itertools.count()

    def push(self, event: ScheduledEvent) -> None:
        """
        Insert an event.

        Raises:
            DuplicateEventError: If the id is queued or has already fired.
        """
        if event.id in self._queued or event.id in self._fired:
            raise DuplicateEventError(event.id)
        heapq.heappush(self._heap, (event.scheduled_for, next(self._counter), event))
        self._queued[event.id] = event

    def peek_time(self) -> datetime | None:
        """Due time of the earliest event, or None if empty."""
        if not self._heap:
            return None
        return self._heap[0][0]

    def pop_due(self, now: datetime) -> ScheduledEvent | None:
        """
        Remove and return the earliest event due at or before ``now``.

        The event is marked fired before it is returned, so it can never
        be delivered a second time.
        """
        if not self._heap or self._heap[0][0] > now:
            return None
        _, _, event = heapq.heappop(self._heap)
        del self._queued[event.id]
        self._fired.add(event.id)
        return event

    def pending(self) -> list[ScheduledEvent]:
        """Queued events in firing order."""
        return [event for _, _, event in sorted(self._heap, key=lambda e: (e[0], e[1]))]

    def has_fired(self, event_id: str) -> bool:
        return event_id in self._fired

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._queued

    def __len__(self) -> int:
        return len(self._heap)
