"""
Campaign simulator HTTP API.

FastAPI boundary around one CampaignSimulation: clock control, campaign
cycles, activities, polling and election results.
"""

from .server import ERROR_STATUS, create_app, status_for
from .schemas import (
    ActivityRequest,
    CampaignProgress,
    CampaignResponse,
    CommissionPollRequest,
    ErrorResponse,
    FastForwardRequest,
    SetTimeRequest,
    StartCampaignRequest,
    TickResponse,
    TimeResponse,
)

__all__ = [
    "create_app",
    "status_for",
    "ERROR_STATUS",
    "ActivityRequest",
    "CampaignProgress",
    "CampaignResponse",
    "CommissionPollRequest",
    "ErrorResponse",
    "FastForwardRequest",
    "SetTimeRequest",
    "StartCampaignRequest",
    "TickResponse",
    "TimeResponse",
]
