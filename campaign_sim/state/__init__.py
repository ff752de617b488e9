"""State management for campaign simulations."""

from .event_bus import EventBus, EventType, Notification
from .schema import (
    PHASE_ORDER,
    CampaignPhase,
    CampaignPhaseState,
    ElectionResolutionResult,
    ElectionSummary,
    EvLead,
    ModifierEntry,
    ModifierSource,
    PollingAggregate,
    PollingSnapshot,
    PollType,
    StateBaseline,
    TrendDirection,
)
from .store import (
    CampaignStore,
    JsonCampaignStore,
    JsonSnapshotStore,
    MemoryCampaignStore,
    MemorySnapshotStore,
    SnapshotStore,
)
from .baseline import BaselineProvider, JsonBaselineProvider, StaticBaselineProvider

__all__ = [
    # Event bus
    "EventBus",
    "EventType",
    "Notification",
    # Schema
    "PHASE_ORDER",
    "CampaignPhase",
    "CampaignPhaseState",
    "ElectionResolutionResult",
    "ElectionSummary",
    "EvLead",
    "ModifierEntry",
    "ModifierSource",
    "PollingAggregate",
    "PollingSnapshot",
    "PollType",
    "StateBaseline",
    "TrendDirection",
    # Stores
    "CampaignStore",
    "SnapshotStore",
    "JsonCampaignStore",
    "JsonSnapshotStore",
    "MemoryCampaignStore",
    "MemorySnapshotStore",
    # Baseline data
    "BaselineProvider",
    "JsonBaselineProvider",
    "StaticBaselineProvider",
]
