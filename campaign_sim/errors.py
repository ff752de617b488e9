"""
Error taxonomy for the campaign simulator.

Every failing core operation raises one of these typed errors. All of them
are recoverable by the caller: retry, re-supply data, or surface the message
to the player. None of them should crash the process.
"""

from __future__ import annotations


class SimulationError(Exception):
    """Base class for all simulator errors."""
    pass


class ValidationError(SimulationError):
    """Malformed external input, rejected at the HTTP boundary."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Invalid {field}: {message}")


class InvalidTimeError(SimulationError):
    """A game time that cannot be parsed or breaks the clock's monotonicity policy."""
    pass


class DuplicateEventError(SimulationError):
    """An event id that is already queued or has already fired."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event '{event_id}' is already scheduled or has fired.")


class CycleAlreadyActiveError(SimulationError):
    """A new cycle was requested while the player's current cycle is unresolved."""

    def __init__(self, player_id: str, active_sequence: int):
        self.player_id = player_id
        self.active_sequence = active_sequence
        super().__init__(
            f"Player '{player_id}' already has active cycle {active_sequence}. "
            "Resolve it before starting another."
        )


class CycleSequenceError(SimulationError):
    """Cycle sequence numbers must increase per player."""

    def __init__(self, player_id: str, requested: int, last: int):
        self.player_id = player_id
        self.requested = requested
        self.last = last
        super().__init__(
            f"Cycle {requested} for player '{player_id}' must be greater than {last}."
        )


class CampaignNotFoundError(SimulationError):
    """No campaign cycle exists for the player."""

    def __init__(self, player_id: str):
        self.player_id = player_id
        super().__init__(f"No campaign found for player '{player_id}'.")


class InvalidTransitionError(SimulationError):
    """Attempted phase transition not allowed from the current phase."""

    def __init__(self, current: str, attempted: str):
        self.current = current
        self.attempted = attempted
        super().__init__(f"Cannot {attempted} during {current} phase.")


class ActionNotPermittedError(SimulationError):
    """Campaign activity not allowed in the current phase."""

    def __init__(self, action: str, phase: str, allowed: list[str]):
        self.action = action
        self.phase = phase
        self.allowed = allowed
        super().__init__(
            f"Action '{action}' not permitted during {phase} phase. "
            f"Allowed: {', '.join(allowed) or 'none'}"
        )


class InsufficientDataError(SimulationError):
    """Too few polling snapshots in the window to compute a trend."""

    def __init__(self, player_id: str, found: int, required: int = 2):
        self.player_id = player_id
        self.found = found
        self.required = required
        super().__init__(
            f"Player '{player_id}' has {found} snapshot(s) in window; need {required}."
        )


class IncompleteDataError(SimulationError):
    """Baseline data is missing or inconsistent; resolution cannot run."""

    def __init__(self, missing: list[str], detail: str = ""):
        self.missing = missing
        message = "Incomplete baseline data"
        if missing:
            message += f" for: {', '.join(missing)}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class StaleWriteError(SimulationError):
    """Record version doesn't match the stored version (optimistic concurrency)."""

    def __init__(self, key: str, expected: int, actual: int):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Stale write for '{key}': expected version {expected}, stored {actual}. "
            "Reload and retry."
        )


class CampaignPausedError(SimulationError):
    """The player's cycle is paused; it must be resumed first."""

    def __init__(self, player_id: str, cycle_sequence: int):
        self.player_id = player_id
        self.cycle_sequence = cycle_sequence
        super().__init__(
            f"Cycle {cycle_sequence} for player '{player_id}' is paused. Resume it first."
        )
