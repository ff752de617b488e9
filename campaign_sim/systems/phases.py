"""
Campaign phase state machine.

Owns the per-player campaign lifecycle:
    ANNOUNCEMENT → PRIMARY → GENERAL_CAMPAIGN → ELECTION_DAY → RESOLVED

Rules:
- Linear, one step per advance, no back-transitions.
- At most one non-resolved cycle per player; new cycles need a higher
  cycle_sequence than any before.
- Leaving ELECTION_DAY happens only through complete_resolution(), with
  a result in hand. A plain advance there is rejected.
- Advancing a RESOLVED cycle is a no-op.
- A paused cycle refuses advances and activities. Resuming shifts its
  start times by the paused span, so no phase time is lost. Election day
  cannot be paused.

Every mutation is load → change → save(expected_version), so concurrent
writers for the same cycle surface as StaleWriteError rather than lost
updates. Scheduling the follow-up events is the caller's job.

Usage:
    machine = CampaignPhaseMachine(store, config, bus=bus)
    record = machine.initialize_campaign("p1", 1, started_at=now, candidate_id="p1")
    record = machine.advance("p1", 1, at=now)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from ..clock.clock import format_game_time, parse_game_time
from ..config import SimConfig, default_config
from ..errors import (
    ActionNotPermittedError,
    CampaignNotFoundError,
    CampaignPausedError,
    CycleSequenceError,
    InvalidTransitionError,
    ValidationError,
)
from ..state.event_bus import EventBus, EventType
from ..state.schema import (
    PHASE_ORDER,
    CampaignPhase,
    CampaignPhaseState,
    ElectionResolutionResult,
    ModifierEntry,
    ModifierSource,
)
from ..state.store import CampaignStore


logger = logging.getLogger(__name__)


# ─── Configuration ───────────────────────────────────────────

VALID_TRANSITIONS: dict[CampaignPhase, set[CampaignPhase]] = {
    CampaignPhase.ANNOUNCEMENT: {CampaignPhase.PRIMARY},
    CampaignPhase.PRIMARY: {CampaignPhase.GENERAL_CAMPAIGN},
    CampaignPhase.GENERAL_CAMPAIGN: {CampaignPhase.ELECTION_DAY},
    CampaignPhase.ELECTION_DAY: {CampaignPhase.RESOLVED},  # Only with a result
    CampaignPhase.RESOLVED: set(),
}

# Activities a candidate may take in each phase, and where their
# polling effect is booked.
PHASE_GATED_ACTIONS: dict[CampaignPhase, dict[str, ModifierSource]] = {
    CampaignPhase.ANNOUNCEMENT: {
        "declare_candidacy": ModifierSource.EVENT,
        "build_exploratory_committee": ModifierSource.OUTREACH,
        "gather_petition_signatures": ModifierSource.OUTREACH,
        "initial_donor_outreach": ModifierSource.DONOR,
    },
    CampaignPhase.PRIMARY: {
        "host_fundraising_event": ModifierSource.DONOR,
        "donor_outreach": ModifierSource.DONOR,
        "pac_formation": ModifierSource.DONOR,
        "campaign_finance_filing": ModifierSource.DONOR,
        "build_campaign_infrastructure": ModifierSource.OUTREACH,
    },
    CampaignPhase.GENERAL_CAMPAIGN: {
        "purchase_advertising": ModifierSource.OUTREACH,
        "schedule_debate": ModifierSource.EVENT,
        "conduct_rally": ModifierSource.EVENT,
        "release_policy_position": ModifierSource.EVENT,
        "commission_polling": ModifierSource.OUTREACH,
        "voter_outreach": ModifierSource.OUTREACH,
        "media_appearances": ModifierSource.EVENT,
    },
    CampaignPhase.ELECTION_DAY: {
        "final_advertising_push": ModifierSource.OUTREACH,
        "gotv_operations": ModifierSource.OUTREACH,
        "last_minute_events": ModifierSource.EVENT,
        "monitor_early_voting": ModifierSource.OUTREACH,
    },
    CampaignPhase.RESOLVED: {},
}


def next_phase(phase: CampaignPhase) -> CampaignPhase | None:
    """The phase after ``phase`` in the linear order, or None at the end."""
    index = PHASE_ORDER.index(phase)
    if index + 1 >= len(PHASE_ORDER):
        return None
    return PHASE_ORDER[index + 1]


def allowed_actions(phase: CampaignPhase) -> list[str]:
    return sorted(PHASE_GATED_ACTIONS.get(phase, {}))


class CampaignPhaseMachine:
    """
    Applies phase transitions and activities to stored cycles.

    Stateless apart from its collaborators: every call reads the current
    record from the store, so independent players never contend.
    """

    def __init__(
        self,
        store: CampaignStore,
        config: SimConfig | None = None,
        bus: EventBus | None = None,
    ):
        self.store = store
        self.config = config or default_config()
        self._bus = bus

    # ─── Queries ─────────────────────────────────────────────

    def current(self, player_id: str) -> CampaignPhaseState:
        """
        Latest cycle for a player, resolved or not.

        Raises:
            CampaignNotFoundError: If the player never started a cycle.
        """
        record = self.store.load(player_id)
        if record is None:
            raise CampaignNotFoundError(player_id)
        return record

    def active_cycle(self, player_id: str) -> CampaignPhaseState | None:
        """The player's non-resolved cycle, if any."""
        record = self.store.load(player_id)
        if record is None or not record.is_active:
            return None
        return record

    def history(self, player_id: str) -> list[CampaignPhaseState]:
        return self.store.history(player_id)

    def get_cycle(self, player_id: str, cycle_sequence: int) -> CampaignPhaseState:
        record = self.store.load_cycle(player_id, cycle_sequence)
        if record is None:
            raise CampaignNotFoundError(player_id)
        return record

    def phase_duration(self, phase: CampaignPhase) -> timedelta:
        """Configured length of a phase. RESOLVED has none."""
        hours = self.config.get("phase_durations_hours", {}).get(phase.value, 0)
        return timedelta(hours=hours)

    def phase_time_remaining(self, record: CampaignPhaseState, now: datetime) -> timedelta:
        """Time left in the current phase, never negative."""
        if not record.is_active:
            return timedelta(0)
        duration = self.phase_duration(record.phase)
        # The clock stops for a paused cycle
        now = record.paused_at if record.is_paused else parse_game_time(now)
        elapsed = max(now - record.phase_started_at, timedelta(0))
        return max(duration - elapsed, timedelta(0))

    def campaign_completion(self, record: CampaignPhaseState, now: datetime) -> float:
        """Percentage (0-100) of the scheduled cycle that has elapsed."""
        if not record.is_active:
            return 100.0

        active_phases = PHASE_ORDER[:-1]
        total = sum((self.phase_duration(p) for p in active_phases), timedelta(0))
        if total <= timedelta(0):
            return 0.0

        index = PHASE_ORDER.index(record.phase)
        done = sum((self.phase_duration(p) for p in active_phases[:index]), timedelta(0))
        current = self.phase_duration(record.phase) - self.phase_time_remaining(record, now)
        return round(min(100.0, (done + current) / total * 100), 2)

    # ─── Transitions ─────────────────────────────────────────

    def initialize_campaign(
        self,
        player_id: str,
        cycle_sequence: int,
        *,
        started_at: datetime,
        candidate_id: str | None = None,
        opponent_id: str = "opponent",
    ) -> CampaignPhaseState:
        """
        Create a new cycle in ANNOUNCEMENT.

        Raises:
            CycleAlreadyActiveError: If the player's latest cycle is unresolved.
            CycleSequenceError: If cycle_sequence is not above every earlier cycle.
        """
        if cycle_sequence < 1:
            raise CycleSequenceError(player_id, cycle_sequence, 0)

        candidate_id = candidate_id or player_id
        if candidate_id == opponent_id:
            raise ValidationError("opponent_id", "must differ from candidate_id")

        started_at = parse_game_time(started_at)
        record = CampaignPhaseState(
            player_id=player_id,
            cycle_sequence=cycle_sequence,
            started_at=started_at,
            phase_started_at=started_at,
            candidate_id=candidate_id,
            opponent_id=opponent_id,
        )
        # The active-cycle and sequence checks run inside the store's lock
        record = self.store.create(record)

        logger.info("Player %s started cycle %d at %s",
                    player_id, cycle_sequence, format_game_time(started_at))
        self._notify(
            EventType.CYCLE_STARTED,
            record,
            started_at=format_game_time(started_at),
        )
        return record

    def advance(self, player_id: str, cycle_sequence: int, at: datetime) -> CampaignPhaseState:
        """
        Move a cycle exactly one phase forward.

        No-op on a RESOLVED cycle.

        Raises:
            CampaignNotFoundError: If the cycle does not exist.
            InvalidTransitionError: From ELECTION_DAY, which only
                complete_resolution() may leave.
            CampaignPausedError: If the cycle is paused.
            StaleWriteError: If the record changed underneath us.
        """
        record = self.get_cycle(player_id, cycle_sequence)
        if not record.is_active:
            logger.debug("Advance on resolved cycle %s ignored", record.key)
            return record
        if record.is_paused:
            raise CampaignPausedError(player_id, cycle_sequence)

        target = next_phase(record.phase)
        if target == CampaignPhase.RESOLVED:
            raise InvalidTransitionError(record.phase.value, "advance without a resolution")
        return self._transition(record, target, parse_game_time(at))

    def complete_resolution(
        self,
        player_id: str,
        cycle_sequence: int,
        result: ElectionResolutionResult,
        at: datetime,
    ) -> CampaignPhaseState:
        """
        Attach the election result and move ELECTION_DAY → RESOLVED.

        Idempotent for an already-resolved cycle.

        Raises:
            InvalidTransitionError: If the cycle has not reached ELECTION_DAY.
        """
        record = self.get_cycle(player_id, cycle_sequence)
        if not record.is_active:
            return record
        if record.phase != CampaignPhase.ELECTION_DAY:
            raise InvalidTransitionError(record.phase.value, "resolve the election")

        at = parse_game_time(at)
        record.resolution = result
        record.resolved_at = at
        return self._transition(record, CampaignPhase.RESOLVED, at)

    def record_activity(
        self,
        player_id: str,
        action: str,
        state_code: str,
        magnitude: float,
        at: datetime,
    ) -> CampaignPhaseState:
        """
        Apply one phase-gated campaign activity to the active cycle.

        Raises:
            CampaignNotFoundError: If the player has no active cycle.
            ActionNotPermittedError: If the action is not allowed in this phase.
            CampaignPausedError: If the cycle is paused.
        """
        record = self.active_cycle(player_id)
        if record is None:
            raise CampaignNotFoundError(player_id)
        if record.is_paused:
            raise CampaignPausedError(player_id, record.cycle_sequence)

        permitted = PHASE_GATED_ACTIONS.get(record.phase, {})
        if action not in permitted:
            raise ActionNotPermittedError(action, record.phase.value, allowed_actions(record.phase))

        entry = ModifierEntry(
            action=action,
            source=permitted[action],
            state_code=state_code,
            delta=magnitude,
            phase=record.phase,
            recorded_at=parse_game_time(at),
        )
        expected = record.version
        record.apply_modifier(entry)
        record = self.store.save(record, expected_version=expected)

        logger.info("Player %s %s in %s (%+.2f)", player_id, action, state_code, magnitude)
        self._notify(
            EventType.ACTIVITY_RECORDED,
            record,
            action=action,
            source=entry.source.value,
            state_code=state_code,
            delta=magnitude,
        )
        return record

    def pause_campaign(self, player_id: str, at: datetime) -> CampaignPhaseState:
        """
        Freeze the player's active cycle at ``at``.

        Idempotent: pausing a paused cycle returns it unchanged.

        Raises:
            CampaignNotFoundError: If the player has no active cycle.
            InvalidTransitionError: On ELECTION_DAY.
        """
        record = self.active_cycle(player_id)
        if record is None:
            raise CampaignNotFoundError(player_id)
        if record.is_paused:
            return record
        if record.phase == CampaignPhase.ELECTION_DAY:
            raise InvalidTransitionError(record.phase.value, "pause the campaign")

        at = parse_game_time(at)
        expected = record.version
        record.paused_at = at
        record = self.store.save(record, expected_version=expected)

        logger.info("Cycle %s paused at %s", record.key, format_game_time(at))
        self._notify(EventType.CAMPAIGN_PAUSED, record, at=format_game_time(at))
        return record

    def resume_campaign(self, player_id: str, at: datetime) -> CampaignPhaseState:
        """
        Unfreeze a paused cycle, pushing started_at and phase_started_at
        forward by the time spent paused.

        Idempotent: resuming a running cycle returns it unchanged.

        Raises:
            CampaignNotFoundError: If the player has no active cycle.
        """
        record = self.active_cycle(player_id)
        if record is None:
            raise CampaignNotFoundError(player_id)
        if not record.is_paused:
            return record

        at = parse_game_time(at)
        # A rewound clock never shifts the schedule backwards
        paused_for = max(at - record.paused_at, timedelta(0))
        expected = record.version
        record.started_at = record.started_at + paused_for
        record.phase_started_at = record.phase_started_at + paused_for
        record.paused_at = None
        record = self.store.save(record, expected_version=expected)

        logger.info("Cycle %s resumed at %s after %s",
                    record.key, format_game_time(at), paused_for)
        self._notify(
            EventType.CAMPAIGN_RESUMED,
            record,
            at=format_game_time(at),
            paused_hours=paused_for.total_seconds() / 3600,
        )
        return record

    # ─── Internals ───────────────────────────────────────────

    def _transition(
        self,
        record: CampaignPhaseState,
        to: CampaignPhase,
        at: datetime,
    ) -> CampaignPhaseState:
        if to not in VALID_TRANSITIONS.get(record.phase, set()):
            raise InvalidTransitionError(record.phase.value, f"transition to {to.value}")

        before = record.phase
        expected = record.version
        record.phase = to
        record.phase_started_at = at
        record = self.store.save(record, expected_version=expected)

        logger.info("Cycle %s: %s -> %s at %s",
                    record.key, before.value, to.value, format_game_time(at))
        self._notify(
            EventType.PHASE_ADVANCED,
            record,
            before=before.value,
            after=to.value,
            at=format_game_time(at),
        )
        return record

    def _notify(self, event_type: EventType, record: CampaignPhaseState, **data) -> None:
        if self._bus is None:
            return
        self._bus.emit(
            event_type,
            player_id=record.player_id,
            cycle_sequence=record.cycle_sequence,
            **data,
        )
