"""
Pydantic models for campaign simulator state.

Records are versioned for optimistic concurrency: the store compares the
``version`` a caller loaded against the stored one before accepting a save.
Designed to serialize to JSON but structured like database tables.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..clock.clock import parse_game_time


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------

class CampaignPhase(str, Enum):
    ANNOUNCEMENT = "announcement"          # Declaration, exploratory committee
    PRIMARY = "primary"                    # Fundraising push, primary contests
    GENERAL_CAMPAIGN = "general_campaign"  # Ads, debates, rallies
    ELECTION_DAY = "election_day"          # GOTV, polls close, resolution runs
    RESOLVED = "resolved"                  # Result recorded, cycle closed


PHASE_ORDER: list[CampaignPhase] = [
    CampaignPhase.ANNOUNCEMENT,
    CampaignPhase.PRIMARY,
    CampaignPhase.GENERAL_CAMPAIGN,
    CampaignPhase.ELECTION_DAY,
    CampaignPhase.RESOLVED,
]


class ModifierSource(str, Enum):
    """Where a state-level polling adjustment came from."""
    OUTREACH = "outreach"
    DONOR = "donor"
    EVENT = "event"


class PollType(str, Enum):
    """Polling methodology. Sample size, and so margin of error, depends on it."""
    NATIONAL = "national"    # Turnout-weighted across every state
    STATE = "state"          # One state's electorate
    TRACKING = "tracking"    # Rolling national sample
    EXIT = "exit"            # Election day only


class TrendDirection(str, Enum):
    RISING = "Rising"
    FALLING = "Falling"
    STABLE = "Stable"


def generate_id() -> str:
    return str(uuid4())[:8]


def _utc(value):
    return None if value is None else parse_game_time(value)


# -----------------------------------------------------------------------------
# Baseline Data
# -----------------------------------------------------------------------------

class StateBaseline(BaseModel):
    """One row of the read-only partisan-lean table."""
    code: str                           # "PA"
    name: str = ""
    electors: int = Field(ge=0)
    baseline_margin: float | None = None  # Signed points, positive favors the player's candidate
    turnout_weight: float = Field(default=1.0, ge=0)  # Expected votes, millions


# -----------------------------------------------------------------------------
# Election Results
# -----------------------------------------------------------------------------

class EvLead(BaseModel):
    """Electoral-vote leader. leader is None on an exact tie."""
    leader: str | None
    margin: int = 0


class ElectionSummary(BaseModel):
    ev_lead: EvLead
    national_popular_leader: str | None
    adjusted_margins: dict[str, float] = Field(default_factory=dict)
    # state -> candidate -> probability; each inner mapping sums to 1
    state_win_probability: dict[str, dict[str, float]] = Field(default_factory=dict)
    popular_vote_share: dict[str, float] = Field(default_factory=dict)
    overall_win_probability: dict[str, float] = Field(default_factory=dict)
    tie_probability: float = 0.0


class ElectionResolutionResult(BaseModel):
    """
    Final outcome of a cycle.

    Computed once at resolution time; immutable afterwards.
    """
    model_config = ConfigDict(frozen=True)

    player_id: str
    cycle_sequence: int
    resolved_at: datetime
    candidate_id: str
    opponent_id: str
    electoral_college: dict[str, int]
    recounts: list[str] = Field(default_factory=list)
    summary: ElectionSummary
    volatility_used: float = 0.0
    total_electors: int = 538

    @field_validator("resolved_at", mode="before")
    @classmethod
    def normalise_resolved_at(cls, value):
        return _utc(value)

    @property
    def winner(self) -> str | None:
        return self.summary.ev_lead.leader


# -----------------------------------------------------------------------------
# Campaign Cycle
# -----------------------------------------------------------------------------

class ModifierEntry(BaseModel):
    """Audit row for one phase-gated campaign activity."""
    action: str                  # "conduct_rally"
    source: ModifierSource
    state_code: str
    delta: float                 # Signed points applied to state_modifiers
    phase: CampaignPhase
    recorded_at: datetime


class CampaignPhaseState(BaseModel):
    """
    One campaign cycle for one player.

    Exactly one row per player (the highest cycle_sequence) may be
    non-resolved. Historical cycles are kept for audit, never deleted.
    """
    schema_version: str = "1.0.0"

    player_id: str
    cycle_sequence: int = Field(ge=1)
    phase: CampaignPhase = CampaignPhase.ANNOUNCEMENT
    started_at: datetime
    phase_started_at: datetime
    candidate_id: str
    opponent_id: str = "opponent"

    # stateCode -> signed adjustment from outreach/donor/event activity
    state_modifiers: dict[str, float] = Field(default_factory=dict)
    activity_log: list[ModifierEntry] = Field(default_factory=list)

    # Optimistic concurrency token, bumped by the store on every accepted save
    version: int = 0

    # Set while the player has paused this cycle; phase timing is frozen
    paused_at: datetime | None = None

    resolved_at: datetime | None = None
    resolution: ElectionResolutionResult | None = None

    @field_validator("started_at", "phase_started_at", "paused_at", "resolved_at", mode="before")
    @classmethod
    def normalise_times(cls, value):
        return _utc(value)

    @property
    def is_active(self) -> bool:
        return self.phase != CampaignPhase.RESOLVED

    @property
    def is_paused(self) -> bool:
        return self.paused_at is not None

    @property
    def candidates(self) -> tuple[str, str]:
        return (self.candidate_id, self.opponent_id)

    @property
    def key(self) -> str:
        return f"{self.player_id}#{self.cycle_sequence}"

    def apply_modifier(self, entry: ModifierEntry) -> None:
        """Add an activity's delta to its state and log it."""
        current = self.state_modifiers.get(entry.state_code, 0.0)
        self.state_modifiers[entry.state_code] = current + entry.delta
        self.activity_log.append(entry)


# -----------------------------------------------------------------------------
# Polling
# -----------------------------------------------------------------------------

class PollingSnapshot(BaseModel):
    """
    One opinion poll for one player's race.

    Immutable once created; snapshots form an append-only series per player.
    support_by_candidate sums to <= 100, the remainder is undecided.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    player_id: str
    cycle_sequence: int
    captured_at: datetime
    phase: CampaignPhase
    poll_type: PollType = PollType.NATIONAL
    state_code: str | None = None    # Set for STATE polls only
    support_by_candidate: dict[str, float]
    undecided: float
    sample_noise: dict[str, float] = Field(default_factory=dict)
    sample_size: int = 0
    margin_of_error: float = 0.0

    @field_validator("captured_at", mode="before")
    @classmethod
    def normalise_captured_at(cls, value):
        return _utc(value)

    @property
    def leader(self) -> str:
        return max(self.support_by_candidate, key=self.support_by_candidate.get)


class PollingAggregate(BaseModel):
    """Trend statistics over a window of snapshots. Derived, never stored."""
    player_id: str
    poll_type: PollType = PollType.NATIONAL
    state_code: str | None = None
    candidate_id: str            # The leading candidate the series describes
    window_hours: int
    window_start: datetime
    window_end: datetime
    sample_count: int
    average_support: float
    volatility: float            # Sample standard deviation
    trend_direction: TrendDirection
    momentum: float = 0.0        # Mean change per snapshot
    peak_support: float = 0.0
    low_support: float = 0.0
