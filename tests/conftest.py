"""
Pytest fixtures for campaign simulator tests.

Provides in-memory stores, a fixed clock start, a small baseline table
and short phase durations so whole cycles run in a few dozen hours.
"""

from datetime import datetime, timezone

import pytest

from campaign_sim.clock import GameClock, TimeEngine
from campaign_sim.config import merge_config
from campaign_sim.simulation import CampaignSimulation
from campaign_sim.state import (
    EventBus,
    MemoryCampaignStore,
    MemorySnapshotStore,
    StateBaseline,
    StaticBaselineProvider,
)
from campaign_sim.systems import CampaignPhaseMachine, ElectionResolver, PollingEngine


START = datetime(2025, 1, 1, tzinfo=timezone.utc)

# Announcement 10h, primary 10h, general 10h, election day 2h
CYCLE_HOURS = 32


class MutableBaselineProvider:
    """Baseline whose rows a test can change between ticks."""

    def __init__(self, rows: list[StateBaseline]):
        self.rows = rows

    def states(self) -> list[StateBaseline]:
        return list(self.rows)


def small_rows() -> list[StateBaseline]:
    return [
        StateBaseline(code="AA", name="Alpha", electors=10, baseline_margin=5.0, turnout_weight=2.0),
        StateBaseline(code="BB", name="Bravo", electors=8, baseline_margin=-3.0, turnout_weight=3.0),
        StateBaseline(code="CC", name="Charlie", electors=2, baseline_margin=0.2, turnout_weight=1.0),
    ]


@pytest.fixture
def config():
    """Short cycle, 20-elector pool, seeded polling."""
    return merge_config({
        "phase_durations_hours": {
            "announcement": 10,
            "primary": 10,
            "general_campaign": 10,
            "election_day": 2,
        },
        "polling_interval_hours": 3,
        "total_electors": 20,
        "polling_seed": 42,
    })


@pytest.fixture
def baseline():
    """Three-state table summing to 20 electors."""
    return StaticBaselineProvider(small_rows())


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def engine(bus):
    """Unpaused engine at 2025-01-01T00:00:00Z with a one-hour step."""
    return TimeEngine(GameClock(current_time=START), bus=bus)


@pytest.fixture
def campaign_store():
    """In-memory campaign store for testing."""
    return MemoryCampaignStore()


@pytest.fixture
def snapshot_store():
    return MemorySnapshotStore()


@pytest.fixture
def machine(campaign_store, config, bus):
    return CampaignPhaseMachine(campaign_store, config, bus=bus)


@pytest.fixture
def polling(snapshot_store, baseline, config, bus):
    return PollingEngine(snapshot_store, baseline, config, bus=bus)


@pytest.fixture
def resolver(baseline, config):
    return ElectionResolver(baseline, config)


@pytest.fixture
def simulation(engine, campaign_store, snapshot_store, baseline, config, bus):
    """Full simulation over in-memory stores and the small baseline."""
    return CampaignSimulation(engine, campaign_store, snapshot_store, baseline, config, bus=bus)


@pytest.fixture
def make_simulation(config):
    """Factory for independent simulations sharing the test config."""
    def _make(baseline=None, paused=False):
        sim = CampaignSimulation.create(
            config,
            start=START,
            baseline=baseline or StaticBaselineProvider(small_rows()),
        )
        if paused:
            sim.engine.pause()
        return sim
    return _make
