"""
Election resolution engine.

Turns a cycle's final state modifiers and the baseline partisan-lean table
into a state-by-state, electoral-college result.

Per state:
    adjusted_margin = baseline_margin + sum(modifiers)
    P(candidate)    = logistic(adjusted_margin / (logistic_scale + volatility))
    P(opponent)     = 1 - P(candidate)

Winner-take-all on the sign of the margin; an exact zero goes to the
opponent. States within recount_threshold points are flagged for recount
but the provisional call stands.

Pure computation: no I/O, no clock, no mutation of the input record.
Resolution is all-or-nothing; missing baseline data raises before any
partial result is built.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime

from ..clock.clock import parse_game_time
from ..config import SimConfig, default_config
from ..errors import IncompleteDataError
from ..state.baseline import BaselineProvider
from ..state.schema import (
    CampaignPhaseState,
    ElectionResolutionResult,
    ElectionSummary,
    EvLead,
    StateBaseline,
)


logger = logging.getLogger(__name__)


def logistic(x: float) -> float:
    """Numerically stable 1 / (1 + e^-x)."""
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def elector_distribution(outcomes: list[tuple[int, float]], total: int) -> list[float]:
    """
    Exact distribution of the candidate's electoral votes.

    ``outcomes`` holds (electors, P(candidate wins state)) per state, with
    states independent. Entry k of the result is P(candidate gets k).
    """
    dist = [0.0] * (total + 1)
    dist[0] = 1.0
    reached = 0
    for electors, p in outcomes:
        reached += electors
        for k in range(reached, electors - 1, -1):
            dist[k] = dist[k] * (1.0 - p) + dist[k - electors] * p
        for k in range(electors - 1, -1, -1):
            dist[k] = dist[k] * (1.0 - p)
    return dist


class ElectionResolver:
    """Computes ElectionResolutionResult for a terminal cycle."""

    def __init__(self, baseline: BaselineProvider, config: SimConfig | None = None):
        self.baseline = baseline
        self.config = config or default_config()

    def _checked_rows(self) -> list[StateBaseline]:
        rows = self.baseline.states()
        if not rows:
            raise IncompleteDataError([], "baseline table is empty")

        missing = [row.code for row in rows if row.baseline_margin is None]
        if missing:
            raise IncompleteDataError(missing)

        total = self.config.get("total_electors", 538)
        counted = sum(row.electors for row in rows)
        if counted != total:
            raise IncompleteDataError(
                [], f"baseline electors sum to {counted}, expected {total}"
            )
        return rows

    def resolve(
        self,
        phase_state: CampaignPhaseState,
        volatility: float | None = None,
        resolved_at: datetime | None = None,
    ) -> ElectionResolutionResult:
        """
        Resolve the election for one cycle.

        Args:
            phase_state: The cycle being resolved
            volatility: Polling volatility for the cycle; default_volatility if None
            resolved_at: Game time stamped on the result; defaults to the
                start of the cycle's current phase

        Raises:
            IncompleteDataError: If any state lacks a baseline margin or the
                elector counts do not add up to the configured pool.
        """
        rows = self._checked_rows()
        candidate = phase_state.candidate_id
        opponent = phase_state.opponent_id

        known = {row.code for row in rows}
        unknown = sorted(set(phase_state.state_modifiers) - known)
        if unknown:
            logger.warning(
                "Cycle %s has modifiers for unknown states %s; ignoring them",
                phase_state.key, ", ".join(unknown),
            )

        if volatility is None:
            volatility = self.config.get("default_volatility", 1.5)
        volatility = max(0.0, float(volatility))
        scale = self.config.get("logistic_scale", 2.0) + volatility
        threshold = self.config.get("recount_threshold", 0.5)

        electoral_college = {candidate: 0, opponent: 0}
        adjusted_margins: dict[str, float] = {}
        state_win_probability: dict[str, dict[str, float]] = {}
        recounts: list[str] = []
        outcomes: list[tuple[int, float]] = []
        votes = {candidate: 0.0, opponent: 0.0}

        for row in rows:
            margin = round(row.baseline_margin + phase_state.state_modifiers.get(row.code, 0.0), 10)
            adjusted_margins[row.code] = margin

            if scale > 0:
                p = logistic(margin / scale)
            else:
                p = 1.0 if margin > 0 else 0.0 if margin < 0 else 0.5
            state_win_probability[row.code] = {candidate: p, opponent: 1.0 - p}
            outcomes.append((row.electors, p))

            winner = candidate if margin > 0 else opponent
            electoral_college[winner] += row.electors

            if abs(margin) <= threshold:
                recounts.append(row.code)

            share = min(100.0, max(0.0, 50.0 + margin / 2))
            votes[candidate] += share * row.turnout_weight
            votes[opponent] += (100.0 - share) * row.turnout_weight

        total = self.config.get("total_electors", 538)
        summary = ElectionSummary(
            ev_lead=self._ev_lead(electoral_college, candidate, opponent),
            national_popular_leader=self._popular_leader(votes, candidate, opponent),
            adjusted_margins=adjusted_margins,
            state_win_probability=state_win_probability,
            popular_vote_share=self._vote_shares(votes),
            **self._win_probabilities(outcomes, total, candidate, opponent),
        )

        result = ElectionResolutionResult(
            player_id=phase_state.player_id,
            cycle_sequence=phase_state.cycle_sequence,
            resolved_at=parse_game_time(resolved_at or phase_state.phase_started_at),
            candidate_id=candidate,
            opponent_id=opponent,
            electoral_college=electoral_college,
            recounts=recounts,
            summary=summary,
            volatility_used=volatility,
            total_electors=total,
        )

        logger.info(
            "Resolved %s: %s %d - %s %d, %d recount(s)",
            phase_state.key, candidate, electoral_college[candidate],
            opponent, electoral_college[opponent], len(recounts),
        )
        return result

    # ─── Summary helpers ─────────────────────────────────────

    @staticmethod
    def _ev_lead(college: dict[str, int], candidate: str, opponent: str) -> EvLead:
        diff = college[candidate] - college[opponent]
        if diff == 0:
            return EvLead(leader=None, margin=0)
        return EvLead(leader=candidate if diff > 0 else opponent, margin=abs(diff))

    @staticmethod
    def _popular_leader(votes: dict[str, float], candidate: str, opponent: str) -> str | None:
        if math.isclose(votes[candidate], votes[opponent], rel_tol=0.0, abs_tol=1e-9):
            return None
        return candidate if votes[candidate] > votes[opponent] else opponent

    @staticmethod
    def _vote_shares(votes: dict[str, float]) -> dict[str, float]:
        total = sum(votes.values())
        if total <= 0:
            return {cid: 50.0 for cid in votes}
        return {cid: value / total * 100.0 for cid, value in votes.items()}

    @staticmethod
    def _win_probabilities(
        outcomes: list[tuple[int, float]],
        total: int,
        candidate: str,
        opponent: str,
    ) -> dict:
        dist = elector_distribution(outcomes, total)
        majority = total // 2 + 1
        p_candidate = sum(dist[majority:])
        p_opponent = sum(dist[: total - majority + 1])
        p_tie = dist[total // 2] if total % 2 == 0 else 0.0
        return {
            "overall_win_probability": {candidate: p_candidate, opponent: p_opponent},
            "tie_probability": p_tie,
        }
