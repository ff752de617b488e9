"""
Polling engine.

Turns a cycle's accumulated state modifiers into opinion snapshots, and a
window of snapshots into trend statistics.

Snapshot model:
- National margin is the turnout-weighted mean of each state's baseline
  lean plus its modifiers.
- A STATE poll uses that one state's lean plus its modifier instead.
- Decided voters split around that margin; the undecided bucket shrinks
  as the cycle nears election day.
- Each candidate gets uniform jitter of up to jitter_max × decay[phase],
  widened or narrowed by sqrt(national sample / poll sample).
- Shares are clamped to [0, 100] and scaled down if they exceed 100.

Randomness is seeded per (seed, player, capture time) when a seed is
given, so replays produce identical series.
"""

from __future__ import annotations

import logging
import math
import random
import statistics
from datetime import datetime, timedelta
from typing import Callable

from ..clock.clock import format_game_time, parse_game_time
from ..config import SimConfig, default_config
from ..errors import InsufficientDataError, InvalidTimeError, ValidationError
from ..state.baseline import BaselineProvider
from ..state.event_bus import EventBus, EventType
from ..state.schema import (
    CampaignPhase,
    CampaignPhaseState,
    PollingAggregate,
    PollingSnapshot,
    PollType,
    TrendDirection,
)
from ..state.store import SnapshotStore


logger = logging.getLogger(__name__)


def national_margin(record: CampaignPhaseState, baseline: BaselineProvider) -> float:
    """
    Turnout-weighted national margin in points (positive favors the candidate).

    Modifiers for states missing from the baseline table count with the
    average turnout weight.
    """
    rows = baseline.states()
    weights = {row.code: row.turnout_weight for row in rows}
    leans = {row.code: row.baseline_margin or 0.0 for row in rows}

    default_weight = (sum(weights.values()) / len(weights)) if weights else 1.0
    for code in record.state_modifiers:
        weights.setdefault(code, default_weight)
        leans.setdefault(code, 0.0)

    total_weight = sum(weights.values())
    if total_weight <= 0:
        return 0.0

    weighted = sum(
        (leans[code] + record.state_modifiers.get(code, 0.0)) * weight
        for code, weight in weights.items()
    )
    return weighted / total_weight


def state_margin(record: CampaignPhaseState, baseline: BaselineProvider, state_code: str) -> float:
    """One state's baseline lean plus the cycle's modifiers there."""
    for row in baseline.states():
        if row.code == state_code:
            return (row.baseline_margin or 0.0) + record.state_modifiers.get(state_code, 0.0)
    raise ValidationError("state_code", f"unknown state '{state_code}'")


class PollingEngine:
    """
    Generates and aggregates polling snapshots.

    Snapshots go to the injected SnapshotStore; aggregates are derived on
    demand and never stored.
    """

    def __init__(
        self,
        snapshots: SnapshotStore,
        baseline: BaselineProvider,
        config: SimConfig | None = None,
        bus: EventBus | None = None,
        time_source: Callable[[], datetime] | None = None,
    ):
        self.snapshots = snapshots
        self.baseline = baseline
        self.config = config or default_config()
        self._bus = bus
        self._time_source = time_source

    def _now(self, now: datetime | None) -> datetime:
        if now is not None:
            return parse_game_time(now)
        if self._time_source is None:
            raise InvalidTimeError("No reference time given and no time source configured")
        return self._time_source()

    def _rng(
        self,
        player_id: str,
        captured_at: datetime,
        seed: int | None,
        stream: str = "",
    ) -> random.Random:
        if seed is None:
            seed = self.config.get("polling_seed")
        if seed is None:
            return random.Random()
        key = f"{seed}:{player_id}:{format_game_time(captured_at)}"
        return random.Random(f"{key}:{stream}" if stream else key)

    def sample_size(self, poll_type: PollType) -> int:
        return self.config.get("sample_sizes", {}).get(PollType(poll_type).value, 1200)

    def jitter_bound(
        self,
        record: CampaignPhaseState,
        poll_type: PollType = PollType.NATIONAL,
    ) -> float:
        """Maximum absolute noise per candidate for the record's phase and poll type."""
        decay = self.config.get("jitter_decay", {}).get(record.phase.value, 1.0)
        bound = self.config.get("jitter_max", 3.0) * decay

        national = self.sample_size(PollType.NATIONAL)
        size = self.sample_size(poll_type)
        if size > 0 and national > 0:
            bound *= math.sqrt(national / size)
        return bound

    def generate_snapshot(
        self,
        player_id: str,
        phase_state: CampaignPhaseState,
        captured_at: datetime | None = None,
        seed: int | None = None,
        poll_type: PollType = PollType.NATIONAL,
        state_code: str | None = None,
    ) -> PollingSnapshot:
        """
        Capture one poll for a player's current cycle and append it.

        Deterministic when a seed is passed or configured.

        Raises:
            ValidationError: If a STATE poll names no known state, another
                type names one, or an EXIT poll is taken before election day.
        """
        poll_type = PollType(poll_type)
        if poll_type == PollType.STATE:
            if state_code is None:
                raise ValidationError("state_code", "a state poll needs a state")
            margin = state_margin(phase_state, self.baseline, state_code)
        else:
            if state_code is not None:
                raise ValidationError("state_code", f"{poll_type.value} polls cover every state")
            if poll_type == PollType.EXIT and phase_state.phase != CampaignPhase.ELECTION_DAY:
                raise ValidationError("poll_type", "exit polls are taken on election day only")
            margin = national_margin(phase_state, self.baseline)

        captured_at = self._now(captured_at)
        stream = "" if poll_type == PollType.NATIONAL else f"{poll_type.value}:{state_code or ''}"
        rng = self._rng(player_id, captured_at, seed, stream)

        undecided_target = self.config.get("undecided_by_phase", {}).get(
            phase_state.phase.value, 0.0
        )
        decided = 100.0 - undecided_target
        bound = self.jitter_bound(phase_state, poll_type)

        centre = {
            phase_state.candidate_id: decided / 2 + margin / 2,
            phase_state.opponent_id: decided / 2 - margin / 2,
        }
        noise = {cid: rng.uniform(-bound, bound) for cid in centre}
        support = {cid: min(100.0, max(0.0, centre[cid] + noise[cid])) for cid in centre}

        total = sum(support.values())
        if total > 100.0:
            support = {cid: value * 100.0 / total for cid, value in support.items()}
            total = sum(support.values())

        sample_size = self.sample_size(poll_type)
        snapshot = PollingSnapshot(
            player_id=player_id,
            cycle_sequence=phase_state.cycle_sequence,
            captured_at=captured_at,
            phase=phase_state.phase,
            poll_type=poll_type,
            state_code=state_code,
            support_by_candidate=support,
            undecided=max(0.0, 100.0 - total),
            sample_noise=noise,
            sample_size=sample_size,
            margin_of_error=round(100 / math.sqrt(sample_size), 2) if sample_size > 0 else 0.0,
        )
        self.snapshots.append(snapshot)

        logger.debug(
            "%s poll %s for %s at %s: %s",
            poll_type.value, snapshot.id, player_id, format_game_time(captured_at),
            {cid: round(v, 2) for cid, v in support.items()},
        )
        if self._bus is not None:
            self._bus.emit(
                EventType.POLL_CAPTURED,
                player_id=player_id,
                cycle_sequence=phase_state.cycle_sequence,
                snapshot_id=snapshot.id,
                poll_type=poll_type.value,
                state_code=state_code,
                leader=snapshot.leader,
                support=dict(support),
            )
        return snapshot

    def aggregate_trend(
        self,
        player_id: str,
        window_hours: int,
        now: datetime | None = None,
        cycle_sequence: int | None = None,
        poll_type: PollType = PollType.NATIONAL,
        state_code: str | None = None,
    ) -> PollingAggregate:
        """
        Trend statistics over snapshots captured in [now - window_hours, now].

        Only polls of one type (and, for STATE polls, one state) form a series.

        The series followed is the candidate with the highest mean support
        across the window.

        Raises:
            InvalidTimeError: If window_hours is not positive.
            InsufficientDataError: If fewer than two snapshots fall in the window.
        """
        if isinstance(window_hours, bool) or not isinstance(window_hours, int) or window_hours <= 0:
            raise InvalidTimeError(f"Window must be a positive number of hours, got {window_hours!r}")

        end = self._now(now)
        start = end - timedelta(hours=window_hours)
        window = self.snapshots.for_player(player_id, since=start, until=end)
        if cycle_sequence is not None:
            window = [s for s in window if s.cycle_sequence == cycle_sequence]
        poll_type = PollType(poll_type)
        window = [s for s in window if s.poll_type == poll_type and s.state_code == state_code]

        if len(window) < 2:
            raise InsufficientDataError(player_id, len(window))

        candidates: list[str] = []
        for snapshot in window:
            for cid in snapshot.support_by_candidate:
                if cid not in candidates:
                    candidates.append(cid)

        def mean_support(cid: str) -> float:
            return statistics.fmean(s.support_by_candidate.get(cid, 0.0) for s in window)

        leader = max(candidates, key=mean_support)
        series = [s.support_by_candidate.get(leader, 0.0) for s in window]

        change = series[-1] - series[0]
        epsilon = self.config.get("trend_epsilon", 0.5)
        if change > epsilon:
            direction = TrendDirection.RISING
        elif change < -epsilon:
            direction = TrendDirection.FALLING
        else:
            direction = TrendDirection.STABLE

        return PollingAggregate(
            player_id=player_id,
            poll_type=poll_type,
            state_code=state_code,
            candidate_id=leader,
            window_hours=window_hours,
            window_start=start,
            window_end=end,
            sample_count=len(series),
            average_support=statistics.fmean(series),
            volatility=statistics.stdev(series),
            trend_direction=direction,
            momentum=change / (len(series) - 1),
            peak_support=max(series),
            low_support=min(series),
        )
