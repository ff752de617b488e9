"""
Pydantic schemas for the campaign simulator HTTP API.

Request bodies carry their own constraints; a body that fails them is
answered with a 400 ValidationError envelope by the app. Membership checks
that need the simulation (known states) stay in the route handlers.
Response bodies reuse the state models where the shape already fits.
"""

from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, Field, StringConstraints

from ..clock.clock import parse_game_time
from ..errors import InvalidTimeError
from ..state.schema import CampaignPhaseState, PollType
from ..validation import (
    ACTION_PATTERN,
    MAX_MODIFIER_MAGNITUDE,
    PLAYER_ID_PATTERN,
    STATE_CODE_PATTERN,
)


MAX_REQUEST_HOURS = 24 * 365


def _reject_bool(value):
    if isinstance(value, bool):
        raise ValueError("must be a number, not a boolean")
    return value


def _game_time(value):
    try:
        return parse_game_time(value)
    except InvalidTimeError as e:
        raise ValueError(str(e)) from e


PlayerId = Annotated[str, StringConstraints(pattern=PLAYER_ID_PATTERN.pattern)]
StateCode = Annotated[str, StringConstraints(pattern=STATE_CODE_PATTERN.pattern, to_upper=True)]
ActionName = Annotated[str, StringConstraints(pattern=ACTION_PATTERN.pattern)]
GameTime = Annotated[datetime, BeforeValidator(_game_time)]

# Whole hours; digit strings are accepted, booleans and fractions are not
Hours = Annotated[int, Field(gt=0, le=MAX_REQUEST_HOURS), BeforeValidator(_reject_bool)]


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------

class SetTimeRequest(BaseModel):
    """Administrative absolute clock set."""
    time: GameTime  # ISO-8601, "Z" suffix accepted


class FastForwardRequest(BaseModel):
    hours: Hours


class StartCampaignRequest(BaseModel):
    player_id: PlayerId
    cycle_sequence: int | None = Field(default=None, ge=1)
    candidate_id: PlayerId | None = None
    opponent_id: PlayerId = "opponent"


class ActivityRequest(BaseModel):
    """One phase-gated campaign activity."""
    action: ActionName       # "conduct_rally"
    state_code: StateCode    # "PA"
    magnitude: float = Field(   # Signed percentage points
        strict=True,
        allow_inf_nan=False,
        ge=-MAX_MODIFIER_MAGNITUDE,
        le=MAX_MODIFIER_MAGNITUDE,
    )


class CommissionPollRequest(BaseModel):
    poll_type: PollType = PollType.NATIONAL
    state_code: StateCode | None = None  # Required for state polls only


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------

class TimeResponse(BaseModel):
    game_time: str
    paused: bool


class EventFailureInfo(BaseModel):
    event_id: str
    kind: str
    error: str


class TickResponse(BaseModel):
    """Outcome of a tick or fast-forward."""
    game_time: str
    paused: bool
    advanced_hours: int
    processed: list[str] = Field(default_factory=list)
    failures: list[EventFailureInfo] = Field(default_factory=list)


class CampaignProgress(BaseModel):
    phase: str
    phase_hours_remaining: float
    completion: float  # Percent of the scheduled cycle elapsed
    paused: bool = False


class CampaignResponse(BaseModel):
    campaign: CampaignPhaseState
    progress: CampaignProgress


class ErrorResponse(BaseModel):
    error: str    # Exception class name
    detail: str
