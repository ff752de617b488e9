"""Simulation loop tying the time engine to the campaign systems."""

from .runner import (
    CampaignSimulation,
    advance_event_id,
    poll_event_id,
    resolve_event_id,
)

__all__ = [
    "CampaignSimulation",
    "advance_event_id",
    "poll_event_id",
    "resolve_event_id",
]
