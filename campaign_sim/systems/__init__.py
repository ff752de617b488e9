"""Campaign subsystems: phase state machine, polling and election resolution."""

from .phases import (
    PHASE_GATED_ACTIONS,
    VALID_TRANSITIONS,
    CampaignPhaseMachine,
    allowed_actions,
    next_phase,
)
from .polling import PollingEngine, national_margin
from .resolution import ElectionResolver, elector_distribution, logistic

__all__ = [
    # Phases
    "CampaignPhaseMachine",
    "PHASE_GATED_ACTIONS",
    "VALID_TRANSITIONS",
    "allowed_actions",
    "next_phase",
    # Polling
    "PollingEngine",
    "national_margin",
    # Resolution
    "ElectionResolver",
    "elector_distribution",
    "logistic",
]
