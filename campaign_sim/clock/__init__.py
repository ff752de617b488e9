"""Game clock, scheduled events and the time engine."""

from .clock import GAME_EPOCH, GameClock, format_game_time, parse_game_time
from .events import (
    ElectionResolutionPayload,
    EventKind,
    EventPayload,
    EventQueue,
    PhaseAdvancePayload,
    PollingGenerationPayload,
    ScheduledEvent,
    SystemBroadcastPayload,
)
from .engine import EventFailure, FiredEvent, TickReport, TimeEngine

__all__ = [
    # Clock
    "GAME_EPOCH",
    "GameClock",
    "format_game_time",
    "parse_game_time",
    # Events
    "EventKind",
    "EventPayload",
    "EventQueue",
    "ScheduledEvent",
    "PollingGenerationPayload",
    "PhaseAdvancePayload",
    "ElectionResolutionPayload",
    "SystemBroadcastPayload",
    # Engine
    "TimeEngine",
    "TickReport",
    "EventFailure",
    "FiredEvent",
]
