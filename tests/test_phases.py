"""Tests for the campaign phase state machine."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from campaign_sim.errors import (
    ActionNotPermittedError,
    CampaignNotFoundError,
    CampaignPausedError,
    CycleAlreadyActiveError,
    CycleSequenceError,
    InvalidTransitionError,
    StaleWriteError,
    ValidationError,
)
from campaign_sim.state import CampaignPhase, EventType, MemoryCampaignStore, ModifierSource
from campaign_sim.systems import CampaignPhaseMachine
from campaign_sim.systems import PHASE_GATED_ACTIONS, allowed_actions, next_phase


START = datetime(2025, 1, 1, tzinfo=timezone.utc)


def hours(n: int) -> datetime:
    return START + timedelta(hours=n)


def advance_to(machine, phase: CampaignPhase, player_id: str = "p1", cycle: int = 1):
    record = machine.get_cycle(player_id, cycle)
    step = 0
    while record.phase != phase:
        step += 1
        record = machine.advance(player_id, cycle, at=hours(step))
    return record


def resolve(machine, resolver, player_id: str = "p1", cycle: int = 1):
    record = advance_to(machine, CampaignPhase.ELECTION_DAY, player_id, cycle)
    result = resolver.resolve(record, resolved_at=hours(40))
    return machine.complete_resolution(player_id, cycle, result, at=hours(40))


class TestInitializeCampaign:
    """Creating cycles."""

    def test_creates_announcement_record(self, machine):
        record = machine.initialize_campaign("p1", 1, started_at=START)
        assert record.phase == CampaignPhase.ANNOUNCEMENT
        assert record.cycle_sequence == 1
        assert record.candidate_id == "p1"
        assert record.started_at == START
        assert record.version == 1

    def test_second_cycle_while_active_fails(self, machine):
        """Cycle 2 is refused while cycle 1 is not resolved."""
        machine.initialize_campaign("p1", 1, started_at=START)
        with pytest.raises(CycleAlreadyActiveError) as exc:
            machine.initialize_campaign("p1", 2, started_at=START)
        assert exc.value.active_sequence == 1

    def test_new_cycle_after_resolution(self, machine, resolver):
        machine.initialize_campaign("p1", 1, started_at=START)
        resolve(machine, resolver)

        record = machine.initialize_campaign("p1", 2, started_at=hours(50))

        assert record.cycle_sequence == 2
        assert [c.cycle_sequence for c in machine.history("p1")] == [1, 2]

    def test_sequence_must_increase(self, machine, resolver):
        machine.initialize_campaign("p1", 3, started_at=START)
        resolve(machine, resolver, cycle=3)
        with pytest.raises(CycleSequenceError):
            machine.initialize_campaign("p1", 3, started_at=hours(50))

    def test_sequence_starts_at_one(self, machine):
        with pytest.raises(CycleSequenceError):
            machine.initialize_campaign("p1", 0, started_at=START)

    def test_players_are_independent(self, machine):
        machine.initialize_campaign("p1", 1, started_at=START)
        record = machine.initialize_campaign("p2", 1, started_at=START)
        assert record.player_id == "p2"

    def test_candidate_must_differ_from_opponent(self, machine):
        with pytest.raises(ValidationError):
            machine.initialize_campaign("p1", 1, started_at=START, opponent_id="p1")

    def test_emits_cycle_started(self, machine, bus):
        machine.initialize_campaign("p1", 1, started_at=START)
        note = bus.get_history(EventType.CYCLE_STARTED)[0]
        assert note.player_id == "p1"
        assert note.cycle_sequence == 1


class TestAdvance:
    """Linear phase transitions."""

    def test_advances_one_phase_per_call(self, machine):
        machine.initialize_campaign("p1", 1, started_at=START)
        phases = [machine.advance("p1", 1, at=hours(i)).phase for i in range(1, 4)]
        assert phases == [
            CampaignPhase.PRIMARY,
            CampaignPhase.GENERAL_CAMPAIGN,
            CampaignPhase.ELECTION_DAY,
        ]

    def test_records_phase_start(self, machine):
        machine.initialize_campaign("p1", 1, started_at=START)
        record = machine.advance("p1", 1, at=hours(7))
        assert record.phase_started_at == hours(7)

    def test_election_day_needs_resolution(self, machine):
        """A plain advance cannot leave ELECTION_DAY."""
        machine.initialize_campaign("p1", 1, started_at=START)
        advance_to(machine, CampaignPhase.ELECTION_DAY)
        with pytest.raises(InvalidTransitionError):
            machine.advance("p1", 1, at=hours(10))
        assert machine.current("p1").phase == CampaignPhase.ELECTION_DAY

    def test_advance_on_resolved_is_noop(self, machine, resolver):
        machine.initialize_campaign("p1", 1, started_at=START)
        resolved = resolve(machine, resolver)

        again = machine.advance("p1", 1, at=hours(99))

        assert again.phase == CampaignPhase.RESOLVED
        assert again.version == resolved.version

    def test_unknown_cycle(self, machine):
        with pytest.raises(CampaignNotFoundError):
            machine.advance("nobody", 1, at=START)

    def test_emits_phase_advanced(self, machine, bus):
        machine.initialize_campaign("p1", 1, started_at=START)
        machine.advance("p1", 1, at=hours(1))
        note = bus.get_history(EventType.PHASE_ADVANCED)[0]
        assert note.data["before"] == "announcement"
        assert note.data["after"] == "primary"

    def test_next_phase_order(self):
        assert next_phase(CampaignPhase.ANNOUNCEMENT) == CampaignPhase.PRIMARY
        assert next_phase(CampaignPhase.RESOLVED) is None


class TestCompleteResolution:
    """ELECTION_DAY → RESOLVED with a result."""

    def test_attaches_result(self, machine, resolver):
        machine.initialize_campaign("p1", 1, started_at=START)
        record = resolve(machine, resolver)

        assert record.phase == CampaignPhase.RESOLVED
        assert record.resolution is not None
        assert record.resolved_at == hours(40)
        assert machine.active_cycle("p1") is None

    def test_refused_before_election_day(self, machine, resolver):
        record = machine.initialize_campaign("p1", 1, started_at=START)
        result = resolver.resolve(record, resolved_at=hours(1))
        with pytest.raises(InvalidTransitionError):
            machine.complete_resolution("p1", 1, result, at=hours(1))

    def test_idempotent_once_resolved(self, machine, resolver):
        machine.initialize_campaign("p1", 1, started_at=START)
        first = resolve(machine, resolver)
        again = machine.complete_resolution("p1", 1, first.resolution, at=hours(60))
        assert again.resolved_at == first.resolved_at


class TestRecordActivity:
    """Phase-gated activities and the modifier audit trail."""

    def test_permitted_activity_applies_modifier(self, machine):
        machine.initialize_campaign("p1", 1, started_at=START)
        record = machine.record_activity("p1", "declare_candidacy", "AA", 1.5, at=hours(1))

        assert record.state_modifiers == {"AA": 1.5}
        entry = record.activity_log[0]
        assert entry.source == ModifierSource.EVENT
        assert entry.phase == CampaignPhase.ANNOUNCEMENT
        assert entry.recorded_at == hours(1)

    def test_modifiers_accumulate(self, machine):
        machine.initialize_campaign("p1", 1, started_at=START)
        machine.record_activity("p1", "declare_candidacy", "AA", 1.5, at=hours(1))
        record = machine.record_activity("p1", "gather_petition_signatures", "AA", -0.5, at=hours(2))
        assert record.state_modifiers["AA"] == pytest.approx(1.0)
        assert len(record.activity_log) == 2

    def test_action_outside_phase_refused(self, machine):
        machine.initialize_campaign("p1", 1, started_at=START)
        with pytest.raises(ActionNotPermittedError) as exc:
            machine.record_activity("p1", "gotv_operations", "AA", 1.0, at=hours(1))
        assert "declare_candidacy" in exc.value.allowed

    def test_no_active_cycle(self, machine, resolver):
        with pytest.raises(CampaignNotFoundError):
            machine.record_activity("p1", "declare_candidacy", "AA", 1.0, at=START)

        machine.initialize_campaign("p1", 1, started_at=START)
        resolve(machine, resolver)
        with pytest.raises(CampaignNotFoundError):
            machine.record_activity("p1", "declare_candidacy", "AA", 1.0, at=hours(50))

    def test_every_active_phase_has_actions(self):
        for phase in [
            CampaignPhase.ANNOUNCEMENT,
            CampaignPhase.PRIMARY,
            CampaignPhase.GENERAL_CAMPAIGN,
            CampaignPhase.ELECTION_DAY,
        ]:
            assert allowed_actions(phase)
        assert PHASE_GATED_ACTIONS[CampaignPhase.RESOLVED] == {}


class TestOptimisticConcurrency:
    """Writers holding an old version are rejected."""

    def test_stale_save_rejected(self, machine, campaign_store):
        machine.initialize_campaign("p1", 1, started_at=START)
        stale = campaign_store.load("p1")

        machine.advance("p1", 1, at=hours(1))

        stale.phase = CampaignPhase.GENERAL_CAMPAIGN
        with pytest.raises(StaleWriteError) as exc:
            campaign_store.save(stale, expected_version=stale.version)
        assert exc.value.expected == 1
        assert exc.value.actual == 2


class BarrierCampaignStore(MemoryCampaignStore):
    """Holds every create() until two callers have arrived."""

    def __init__(self):
        super().__init__()
        self.barrier = threading.Barrier(2, timeout=5)

    def create(self, record):
        self.barrier.wait()
        return super().create(record)


class TestConcurrentStarts:
    """Simultaneous starts for one player leave a single active cycle."""

    def test_only_one_start_wins(self, config):
        store = BarrierCampaignStore()
        machine = CampaignPhaseMachine(store, config)
        started, errors = [], []

        def start(sequence):
            try:
                started.append(machine.initialize_campaign("p1", sequence, started_at=START))
            except (CycleAlreadyActiveError, CycleSequenceError) as e:
                errors.append(e)

        threads = [threading.Thread(target=start, args=(seq,)) for seq in (1, 2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(started) == 1
        assert len(errors) == 1
        active = [c.cycle_sequence for c in store.history("p1") if c.is_active]
        assert active == [started[0].cycle_sequence]


class TestPauseResume:
    """Freezing one cycle's schedule."""

    def test_pause_records_time(self, machine):
        machine.initialize_campaign("p1", 1, started_at=START)
        record = machine.pause_campaign("p1", at=hours(4))
        assert record.is_paused
        assert record.paused_at == hours(4)

    def test_time_remaining_frozen_while_paused(self, machine):
        machine.initialize_campaign("p1", 1, started_at=START)
        record = machine.pause_campaign("p1", at=hours(4))

        assert machine.phase_time_remaining(record, hours(4)) == timedelta(hours=6)
        assert machine.phase_time_remaining(record, hours(40)) == timedelta(hours=6)

    def test_resume_shifts_schedule(self, machine):
        machine.initialize_campaign("p1", 1, started_at=START)
        machine.pause_campaign("p1", at=hours(4))

        record = machine.resume_campaign("p1", at=hours(14))

        assert not record.is_paused
        assert record.started_at == hours(10)
        assert record.phase_started_at == hours(10)
        assert machine.phase_time_remaining(record, hours(14)) == timedelta(hours=6)

    def test_pause_and_resume_are_idempotent(self, machine):
        machine.initialize_campaign("p1", 1, started_at=START)
        first = machine.pause_campaign("p1", at=hours(2))
        again = machine.pause_campaign("p1", at=hours(5))
        assert again.paused_at == hours(2)
        assert again.version == first.version

        resumed = machine.resume_campaign("p1", at=hours(6))
        assert machine.resume_campaign("p1", at=hours(9)).version == resumed.version

    def test_paused_cycle_refuses_advance_and_activities(self, machine):
        machine.initialize_campaign("p1", 1, started_at=START)
        machine.pause_campaign("p1", at=hours(1))

        with pytest.raises(CampaignPausedError):
            machine.advance("p1", 1, at=hours(10))
        with pytest.raises(CampaignPausedError):
            machine.record_activity("p1", "declare_candidacy", "AA", 1.0, at=hours(2))

    def test_no_pause_on_election_day(self, machine):
        machine.initialize_campaign("p1", 1, started_at=START)
        advance_to(machine, CampaignPhase.ELECTION_DAY)
        with pytest.raises(InvalidTransitionError):
            machine.pause_campaign("p1", at=hours(5))

    def test_needs_active_cycle(self, machine, resolver):
        with pytest.raises(CampaignNotFoundError):
            machine.pause_campaign("p1", at=START)

        machine.initialize_campaign("p1", 1, started_at=START)
        resolve(machine, resolver)
        with pytest.raises(CampaignNotFoundError):
            machine.resume_campaign("p1", at=hours(41))

    def test_emits_paused_and_resumed(self, machine, bus):
        machine.initialize_campaign("p1", 1, started_at=START)
        machine.pause_campaign("p1", at=hours(1))
        machine.resume_campaign("p1", at=hours(4))

        paused = bus.get_history(EventType.CAMPAIGN_PAUSED)[0]
        resumed = bus.get_history(EventType.CAMPAIGN_RESUMED)[0]
        assert paused.data["at"] == "2025-01-01T01:00:00Z"
        assert resumed.data["paused_hours"] == 3.0


class TestPhaseTiming:
    """Time remaining and overall completion."""

    def test_time_remaining_at_start(self, machine):
        record = machine.initialize_campaign("p1", 1, started_at=START)
        assert machine.phase_time_remaining(record, START) == timedelta(hours=10)

    def test_time_remaining_counts_down(self, machine):
        record = machine.initialize_campaign("p1", 1, started_at=START)
        assert machine.phase_time_remaining(record, hours(4)) == timedelta(hours=6)
        assert machine.phase_time_remaining(record, hours(25)) == timedelta(0)

    def test_completion_progresses(self, machine):
        record = machine.initialize_campaign("p1", 1, started_at=START)
        assert machine.campaign_completion(record, START) == 0.0

        record = machine.advance("p1", 1, at=hours(10))
        # 10h announcement + 6h primary of a 32h cycle
        assert machine.campaign_completion(record, hours(16)) == pytest.approx(50.0)

    def test_resolved_is_complete(self, machine, resolver):
        machine.initialize_campaign("p1", 1, started_at=START)
        record = resolve(machine, resolver)
        assert machine.campaign_completion(record, hours(40)) == 100.0
        assert machine.phase_time_remaining(record, hours(40)) == timedelta(0)
