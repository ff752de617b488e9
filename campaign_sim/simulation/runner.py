"""
Campaign simulation loop.

Wires the time engine's scheduled events to the three campaign systems:

    polling_generation   → PollingEngine.generate_snapshot, then re-schedule
                           the same poll type one interval later
    phase_advance        → CampaignPhaseMachine.advance, then schedule the
                           next advance, or the resolution on ELECTION_DAY
    election_resolution  → ElectionResolver.resolve + complete_resolution

Follow-up events are scheduled relative to the firing event's own due time,
not the drain time, so a long fast-forward fires the same chain in the same
order as many short ones.

Event ids are derived from (player, cycle, purpose) so re-scheduling the
same step is rejected by the queue instead of firing twice.

A phase step that loses a write race is retried one tick later under an
attempt-suffixed id. Pausing a cycle leaves its pending step in the queue;
the step is skipped when it fires, and resuming queues a fresh one at the
shifted due time.

Usage:
    sim = CampaignSimulation.create(config)
    sim.start_campaign("p1")
    sim.engine.fast_forward(24 * 30)
    print(sim.aggregate("p1", 168).trend_direction)
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from pathlib import Path

from ..clock.clock import format_game_time
from ..clock.engine import TimeEngine
from ..clock.events import (
    ElectionResolutionPayload,
    EventKind,
    PhaseAdvancePayload,
    PollingGenerationPayload,
    ScheduledEvent,
)
from ..config import SimConfig, default_config
from ..errors import (
    CampaignNotFoundError,
    CampaignPausedError,
    IncompleteDataError,
    InsufficientDataError,
    StaleWriteError,
)
from ..state.baseline import BaselineProvider, JsonBaselineProvider
from ..state.event_bus import EventBus, EventType
from ..state.schema import (
    CampaignPhase,
    CampaignPhaseState,
    ElectionResolutionResult,
    PollingAggregate,
    PollingSnapshot,
    PollType,
)
from ..state.store import (
    CampaignStore,
    JsonCampaignStore,
    JsonSnapshotStore,
    MemoryCampaignStore,
    MemorySnapshotStore,
    SnapshotStore,
)
from ..systems.phases import CampaignPhaseMachine
from ..systems.polling import PollingEngine
from ..systems.resolution import ElectionResolver


logger = logging.getLogger(__name__)


def advance_event_id(
    player_id: str,
    cycle_sequence: int,
    phase: CampaignPhase,
    attempt: int = 1,
) -> str:
    base = f"{player_id}:{cycle_sequence}:advance:{phase.value}"
    return base if attempt == 1 else f"{base}:{attempt}"


def poll_event_id(
    player_id: str,
    cycle_sequence: int,
    at: datetime,
    poll_type: PollType = PollType.NATIONAL,
    state_code: str | None = None,
) -> str:
    if poll_type == PollType.NATIONAL:
        return f"{player_id}:{cycle_sequence}:poll:{format_game_time(at)}"
    scope = f"{poll_type.value}:{state_code}" if state_code else poll_type.value
    return f"{player_id}:{cycle_sequence}:poll:{scope}:{format_game_time(at)}"


def resolve_event_id(player_id: str, cycle_sequence: int, attempt: int) -> str:
    return f"{player_id}:{cycle_sequence}:resolve:{attempt}"


class CampaignSimulation:
    """
    One simulated world: a time engine plus the campaign systems it drives.

    Built once per process and handed to whoever needs it (the API app,
    the console command, tests). Holds no global state.
    """

    def __init__(
        self,
        engine: TimeEngine,
        campaigns: CampaignStore,
        snapshots: SnapshotStore,
        baseline: BaselineProvider,
        config: SimConfig | None = None,
        bus: EventBus | None = None,
    ):
        self.engine = engine
        self.config = config or default_config()
        self.bus = bus
        self.baseline = baseline
        self.phases = CampaignPhaseMachine(campaigns, self.config, bus=bus)
        self.polling = PollingEngine(
            snapshots,
            baseline,
            self.config,
            bus=bus,
            time_source=engine.get_game_time,
        )
        self.resolver = ElectionResolver(baseline, self.config)

        engine.register_handler(EventKind.POLLING_GENERATION, self._on_polling_generation)
        engine.register_handler(EventKind.PHASE_ADVANCE, self._on_phase_advance)
        engine.register_handler(EventKind.ELECTION_RESOLUTION, self._on_election_resolution)

    @classmethod
    def create(
        cls,
        config: SimConfig | None = None,
        *,
        start: datetime | str | None = None,
        data_dir: Path | str | None = None,
        baseline: BaselineProvider | None = None,
        bus: EventBus | None = None,
    ) -> "CampaignSimulation":
        """
        Build a simulation with default collaborators.

        In-memory stores unless ``data_dir`` is given, in which case cycles
        and snapshots are written as JSON under it.
        """
        config = config or default_config()
        bus = bus or EventBus()
        engine = TimeEngine.from_config(config, start=start, bus=bus)

        if data_dir is not None:
            root = Path(data_dir)
            campaigns: CampaignStore = JsonCampaignStore(root / "campaigns")
            snapshots: SnapshotStore = JsonSnapshotStore(root / "polling")
        else:
            campaigns = MemoryCampaignStore()
            snapshots = MemorySnapshotStore()

        return cls(
            engine,
            campaigns,
            snapshots,
            baseline or JsonBaselineProvider(),
            config,
            bus=bus,
        )

    # ─── Player operations ───────────────────────────────────

    def start_campaign(
        self,
        player_id: str,
        cycle_sequence: int | None = None,
        *,
        candidate_id: str | None = None,
        opponent_id: str = "opponent",
    ) -> CampaignPhaseState:
        """
        Open a new cycle at the current game time and schedule its first
        phase advance and polls.

        cycle_sequence defaults to one past the player's last cycle.
        """
        if cycle_sequence is None:
            latest = self.phases.store.load(player_id)
            cycle_sequence = latest.cycle_sequence + 1 if latest is not None else 1

        now = self.engine.get_game_time()
        record = self.phases.initialize_campaign(
            player_id,
            cycle_sequence,
            started_at=now,
            candidate_id=candidate_id,
            opponent_id=opponent_id,
        )
        self._schedule_advance(record)
        self._schedule_poll(record.player_id, record.cycle_sequence, now)

        known = {row.code for row in self.baseline.states()}
        for code in self.config.get("polled_states", []):
            if code not in known:
                logger.warning("Not polling unknown state %s", code)
                continue
            self._schedule_poll(
                record.player_id, record.cycle_sequence, now, PollType.STATE, code
            )
        return record

    def record_activity(
        self,
        player_id: str,
        action: str,
        state_code: str,
        magnitude: float,
    ) -> CampaignPhaseState:
        return self.phases.record_activity(
            player_id, action, state_code, magnitude, at=self.engine.get_game_time()
        )

    def pause_campaign(self, player_id: str) -> CampaignPhaseState:
        """Freeze the player's cycle. Scheduled steps that come due are skipped."""
        return self.phases.pause_campaign(player_id, at=self.engine.get_game_time())

    def resume_campaign(self, player_id: str) -> CampaignPhaseState:
        """
        Unfreeze the player's cycle and schedule its next phase step at the
        shifted due time.
        """
        before = self.phases.active_cycle(player_id)
        record = self.phases.resume_campaign(player_id, at=self.engine.get_game_time())
        if before is not None and before.is_paused:
            self._schedule_advance(record, attempt=self._next_advance_attempt(record))
        return record

    def commission_poll(
        self,
        player_id: str,
        poll_type: PollType,
        state_code: str | None = None,
    ) -> PollingSnapshot:
        """
        Take one extra poll of the player's active cycle right now.

        Raises:
            CampaignNotFoundError: If the player has no active cycle.
            CampaignPausedError: If the cycle is paused.
            ValidationError: If the poll type and state do not fit together.
        """
        record = self.phases.active_cycle(player_id)
        if record is None:
            raise CampaignNotFoundError(player_id)
        if record.is_paused:
            raise CampaignPausedError(player_id, record.cycle_sequence)
        return self.polling.generate_snapshot(
            player_id,
            record,
            captured_at=self.engine.get_game_time(),
            poll_type=poll_type,
            state_code=state_code,
        )

    def campaign(self, player_id: str) -> CampaignPhaseState:
        return self.phases.current(player_id)

    def history(self, player_id: str) -> list[CampaignPhaseState]:
        return self.phases.history(player_id)

    def snapshots(
        self,
        player_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        poll_type: PollType | None = None,
    ) -> list[PollingSnapshot]:
        series = self.polling.snapshots.for_player(player_id, since=since, until=until)
        if poll_type is not None:
            series = [s for s in series if s.poll_type == poll_type]
        return series

    def aggregate(
        self,
        player_id: str,
        window_hours: int,
        poll_type: PollType = PollType.NATIONAL,
        state_code: str | None = None,
    ) -> PollingAggregate:
        return self.polling.aggregate_trend(
            player_id,
            window_hours,
            now=self.engine.get_game_time(),
            poll_type=poll_type,
            state_code=state_code,
        )

    def result(self, player_id: str) -> ElectionResolutionResult | None:
        """Result of the player's latest cycle, or None while it is unresolved."""
        return self.phases.current(player_id).resolution

    def progress(self, player_id: str) -> dict:
        """Phase timing for the player's latest cycle."""
        record = self.phases.current(player_id)
        now = self.engine.get_game_time()
        remaining = self.phases.phase_time_remaining(record, now)
        return {
            "phase": record.phase.value,
            "phase_hours_remaining": remaining.total_seconds() / 3600,
            "completion": self.phases.campaign_completion(record, now),
            "paused": record.is_paused,
        }

    def run_to_resolution(
        self,
        player_id: str,
        max_hours: int | None = None,
    ) -> ElectionResolutionResult | None:
        """
        Fast-forward phase by phase until the player's cycle resolves.

        Returns None if it is still unresolved after ``max_hours``.

        Raises:
            CampaignPausedError: If the cycle is paused, since it would
                never resolve.
        """
        budget = max_hours or self.config.get("max_fast_forward_hours", 24 * 365)
        spent = 0
        while spent < budget:
            record = self.phases.current(player_id)
            if not record.is_active:
                return record.resolution
            if record.is_paused:
                raise CampaignPausedError(player_id, record.cycle_sequence)

            now = self.engine.get_game_time()
            remaining = self.phases.phase_time_remaining(record, now)
            if remaining <= timedelta(0):
                # Step overdue, e.g. waiting on a retry: jump to the next queued event
                due = self.engine.next_event_time()
                remaining = due - now if due is not None else timedelta(0)
            hours = max(1, math.ceil(remaining.total_seconds() / 3600))
            hours = min(hours, budget - spent)
            self.engine.fast_forward(hours)
            spent += hours
        return self.phases.current(player_id).resolution

    # ─── Scheduling ──────────────────────────────────────────

    def _schedule_advance(
        self,
        record: CampaignPhaseState,
        attempt: int = 1,
        due: datetime | None = None,
    ) -> None:
        """Queue the step out of the record's phase, by default when the phase ends."""
        if due is None:
            due = record.phase_started_at + self.phases.phase_duration(record.phase)
        if record.phase == CampaignPhase.ELECTION_DAY:
            event = ScheduledEvent(
                id=resolve_event_id(record.player_id, record.cycle_sequence, 1),
                scheduled_for=due,
                payload=ElectionResolutionPayload(
                    player_id=record.player_id,
                    cycle_sequence=record.cycle_sequence,
                ),
                persist=True,
            )
        else:
            event = ScheduledEvent(
                id=advance_event_id(
                    record.player_id, record.cycle_sequence, record.phase, attempt
                ),
                scheduled_for=due,
                payload=PhaseAdvancePayload(
                    player_id=record.player_id,
                    cycle_sequence=record.cycle_sequence,
                    attempt=attempt,
                ),
                persist=True,
            )
        self.engine.schedule_event(event)

    def _next_advance_attempt(self, record: CampaignPhaseState) -> int:
        """Lowest attempt number above 1 whose advance id the engine has not seen."""
        attempt = 2
        while self.engine.is_known(
            advance_event_id(record.player_id, record.cycle_sequence, record.phase, attempt)
        ):
            attempt += 1
        return attempt

    def _schedule_poll(
        self,
        player_id: str,
        cycle_sequence: int,
        due: datetime,
        poll_type: PollType = PollType.NATIONAL,
        state_code: str | None = None,
    ) -> None:
        self.engine.schedule_event(ScheduledEvent(
            id=poll_event_id(player_id, cycle_sequence, due, poll_type, state_code),
            scheduled_for=due,
            payload=PollingGenerationPayload(
                player_id=player_id,
                cycle_sequence=cycle_sequence,
                poll_type=poll_type.value,
                state_code=state_code,
            ),
        ))

    # ─── Event handlers ──────────────────────────────────────

    def _on_polling_generation(self, event: ScheduledEvent, now: datetime) -> None:
        payload = event.payload
        record = self.phases.store.load_cycle(payload.player_id, payload.cycle_sequence)
        if record is None or not record.is_active:
            logger.debug("Polling stopped for %s:%d", payload.player_id, payload.cycle_sequence)
            return

        poll_type = PollType(payload.poll_type)
        if record.is_paused:
            logger.debug("No %s poll for paused cycle %s", poll_type.value, record.key)
        else:
            self.polling.generate_snapshot(
                payload.player_id,
                record,
                captured_at=event.scheduled_for,
                poll_type=poll_type,
                state_code=payload.state_code,
            )

        interval = self.config.get("polling_interval_hours", 72)
        if interval > 0:
            self._schedule_poll(
                payload.player_id,
                payload.cycle_sequence,
                event.scheduled_for + timedelta(hours=interval),
                poll_type,
                payload.state_code,
            )

    def _on_phase_advance(self, event: ScheduledEvent, now: datetime) -> None:
        payload = event.payload
        record = self.phases.get_cycle(payload.player_id, payload.cycle_sequence)
        if not record.is_active:
            return
        if record.is_paused or self.phases.phase_time_remaining(record, event.scheduled_for) > timedelta(0):
            # Paused, or re-timed by a resume; resume_campaign owns the next step
            logger.debug("Advance %s for %s skipped", event.id, record.key)
            return

        try:
            record = self.phases.advance(
                payload.player_id, payload.cycle_sequence, at=event.scheduled_for
            )
        except StaleWriteError as e:
            retry_at = now + timedelta(hours=max(1, self.engine.step_hours))
            attempt = self._next_advance_attempt(record)
            logger.warning(
                "Advance of %s attempt %d failed (%s); retrying at %s",
                record.key, payload.attempt, e, format_game_time(retry_at),
            )
            self._schedule_advance(record, attempt=attempt, due=retry_at)
            raise

        if record.is_active:
            self._schedule_advance(record)

    def _on_election_resolution(self, event: ScheduledEvent, now: datetime) -> None:
        payload = event.payload
        record = self.phases.get_cycle(payload.player_id, payload.cycle_sequence)
        if not record.is_active:
            return

        try:
            result = self.resolver.resolve(
                record,
                volatility=self._cycle_volatility(record, event.scheduled_for),
                resolved_at=event.scheduled_for,
            )
            record = self.phases.complete_resolution(
                payload.player_id, payload.cycle_sequence, result, at=event.scheduled_for
            )
        except (IncompleteDataError, StaleWriteError) as e:
            retry_at = now + timedelta(hours=max(1, self.engine.step_hours))
            logger.warning(
                "Resolution of %s attempt %d failed (%s); retrying at %s",
                record.key, payload.attempt, e, format_game_time(retry_at),
            )
            self.engine.schedule_event(ScheduledEvent(
                id=resolve_event_id(payload.player_id, payload.cycle_sequence, payload.attempt + 1),
                scheduled_for=retry_at,
                payload=ElectionResolutionPayload(
                    player_id=payload.player_id,
                    cycle_sequence=payload.cycle_sequence,
                    attempt=payload.attempt + 1,
                ),
                persist=True,
            ))
            raise

        if self.bus is not None:
            self.bus.emit(
                EventType.ELECTION_RESOLVED,
                player_id=record.player_id,
                cycle_sequence=record.cycle_sequence,
                winner=result.winner,
                electoral_college=dict(result.electoral_college),
            )
            if result.recounts:
                self.bus.emit(
                    EventType.RECOUNT_FLAGGED,
                    player_id=record.player_id,
                    cycle_sequence=record.cycle_sequence,
                    states=list(result.recounts),
                )

    def _cycle_volatility(self, record: CampaignPhaseState, at: datetime) -> float | None:
        """Polling volatility over the resolution window, or None if too few polls."""
        try:
            aggregate = self.polling.aggregate_trend(
                record.player_id,
                self.config.get("resolution_window_hours", 720),
                now=at,
                cycle_sequence=record.cycle_sequence,
            )
        except InsufficientDataError:
            logger.debug("Too few polls for %s; using default volatility", record.key)
            return None
        return aggregate.volatility
