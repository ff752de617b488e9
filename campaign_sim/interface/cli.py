"""
Command-line interface for the campaign simulator.

    campaign-sim run --player p1 --seed 7 --activity conduct_rally:PA:3
    campaign-sim config --write campaign_sim.json

``run`` starts a cycle, steps through each phase applying any activities
that phase permits, resolves the election and renders the result.
"""

import argparse
import logging
import math
import sys

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import get_config_path, load_config, save_config
from ..errors import SimulationError
from ..simulation.runner import CampaignSimulation
from ..state.schema import ElectionResolutionResult, PollingAggregate
from ..systems.phases import PHASE_GATED_ACTIONS
from ..validation import (
    parse_timestamp,
    validate_action,
    validate_hours,
    validate_magnitude,
    validate_player_id,
    validate_state_code,
)


console = Console()

THEME = {
    "primary": "steel_blue",
    "candidate": "cyan",
    "opponent": "dark_red",
    "warning": "dark_goldenrod",
    "dim": "dim",
}


def parse_activity(text: str) -> tuple[str, str, float]:
    """ACTION:STATE:MAGNITUDE, e.g. conduct_rally:PA:2.5"""
    parts = text.split(":")
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(f"expected ACTION:STATE:MAGNITUDE, got {text!r}")
    action, state, magnitude = parts
    try:
        value = float(magnitude)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"magnitude must be a number, got {magnitude!r}") from e
    return action, state, value


# -----------------------------------------------------------------------------
# Rendering
# -----------------------------------------------------------------------------

def render_trend(aggregate: PollingAggregate) -> None:
    console.print(
        f"[{THEME['dim']}]Polling ({aggregate.sample_count} polls, "
        f"{aggregate.window_hours}h): {aggregate.candidate_id} "
        f"{aggregate.average_support:.1f}% ±{aggregate.volatility:.2f}, "
        f"{aggregate.trend_direction.value}[/{THEME['dim']}]"
    )


def render_result(
    result: ElectionResolutionResult,
    electors: dict[str, int] | None = None,
    show_states: bool = True,
) -> None:
    candidate, opponent = result.candidate_id, result.opponent_id
    summary = result.summary

    if show_states:
        table = Table(title="State Results", box=None)
        table.add_column("State", style="bold")
        table.add_column("EV", justify="right")
        table.add_column("Margin", justify="right")
        table.add_column(f"P({candidate})", justify="right")
        table.add_column("Call")
        table.add_column("")

        for code, margin in summary.adjusted_margins.items():
            p = summary.state_win_probability[code][candidate]
            winner = candidate if margin > 0 else opponent
            colour = THEME["candidate"] if winner == candidate else THEME["opponent"]
            table.add_row(
                code,
                str((electors or {}).get(code, "")),
                f"{margin:+.1f}",
                f"{p:.1%}",
                f"[{colour}]{winner}[/{colour}]",
                f"[{THEME['warning']}]RECOUNT[/{THEME['warning']}]" if code in result.recounts else "",
            )
        console.print(table)
        console.print()

    totals = Table(title="Electoral College", box=None)
    totals.add_column("Candidate", style="bold")
    totals.add_column("Electors", justify="right")
    totals.add_column("Popular vote", justify="right")
    totals.add_column("Win probability", justify="right")
    for cid in (candidate, opponent):
        totals.add_row(
            cid,
            str(result.electoral_college.get(cid, 0)),
            f"{summary.popular_vote_share.get(cid, 0.0):.1f}%",
            f"{summary.overall_win_probability.get(cid, 0.0):.1%}",
        )
    console.print(totals)

    leader = summary.ev_lead.leader
    headline = (
        f"{leader} wins by {summary.ev_lead.margin} electoral votes"
        if leader else "Electoral college tie"
    )
    details = [
        f"Popular vote leader: {summary.national_popular_leader or 'tied'}",
        f"Tie probability: {summary.tie_probability:.2%}",
        f"Recounts: {', '.join(result.recounts) or 'none'}",
    ]
    console.print(Panel("\n".join([headline, *details]), border_style=THEME["primary"]))


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

def cmd_run(args) -> int:
    config = load_config(args.config)
    if args.seed is not None:
        config["polling_seed"] = args.seed

    start = parse_timestamp(args.start, "start") if args.start else None
    sim = CampaignSimulation.create(config, start=start)
    electors = {row.code: row.electors for row in sim.baseline.states()}
    known = set(electors)

    player_id = validate_player_id(args.player)
    activities = [
        (validate_action(a), validate_state_code(s, known=known), validate_magnitude(m))
        for a, s, m in args.activity
    ]

    sim.engine.start()
    record = sim.start_campaign(player_id, candidate_id=args.candidate, opponent_id=args.opponent)
    console.print(f"[{THEME['primary']}]Cycle {record.cycle_sequence} started for {player_id}[/{THEME['primary']}]")

    applied: set[int] = set()
    while record.is_active:
        permitted = PHASE_GATED_ACTIONS.get(record.phase, {})
        for index, (action, state, magnitude) in enumerate(activities):
            if index not in applied and action in permitted:
                sim.record_activity(player_id, action, state, magnitude)
                applied.add(index)
                console.print(f"  {record.phase.value}: {action} in {state} ({magnitude:+g})")

        before = record.phase
        if applied == set(range(len(activities))):
            sim.run_to_resolution(player_id)
        else:
            sim.engine.fast_forward(_hours_left_in_phase(sim, player_id))
        record = sim.campaign(player_id)
        if record.phase == before and record.is_active:
            console.print(f"[{THEME['warning']}]Cycle stalled in {before.value}[/{THEME['warning']}]")
            return 1

    skipped = [activities[i][0] for i in range(len(activities)) if i not in applied]
    if skipped:
        console.print(f"[{THEME['warning']}]Not permitted in any phase: {', '.join(skipped)}[/{THEME['warning']}]")

    window = validate_hours(
        config.get("resolution_window_hours", 720), field="resolution_window_hours"
    )
    try:
        render_trend(sim.aggregate(player_id, window))
    except SimulationError as e:
        console.print(f"[{THEME['dim']}]{e}[/{THEME['dim']}]")

    render_result(record.resolution, electors, show_states=not args.summary)
    return 0


def _hours_left_in_phase(sim: CampaignSimulation, player_id: str) -> int:
    hours = math.ceil(sim.progress(player_id)["phase_hours_remaining"])
    return max(1, hours)


def cmd_config(args) -> int:
    path = get_config_path(args.write or args.config)
    if args.write:
        config = load_config(args.config)
        if not save_config(config, path):
            console.print(f"[{THEME['opponent']}]Could not write {path}[/{THEME['opponent']}]")
            return 1
        console.print(f"Wrote {path}")
        return 0

    table = Table(title=f"Configuration ({path})", box=None)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in load_config(args.config).items():
        table.add_row(key, str(value))
    console.print(table)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="campaign-sim", description="Political campaign simulator")
    parser.add_argument("--config", default=None, help="Path to a JSON config file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Simulate one campaign cycle to resolution")
    run.add_argument("--player", default="player1", help="Player id (default: player1)")
    run.add_argument("--candidate", default=None, help="Candidate id (default: player id)")
    run.add_argument("--opponent", default="opponent", help="Opponent id")
    run.add_argument("--seed", type=int, default=None, help="Polling seed for reproducible runs")
    run.add_argument("--start", default=None, help="Initial game time, ISO-8601")
    run.add_argument(
        "--activity",
        type=parse_activity,
        action="append",
        default=[],
        help="ACTION:STATE:MAGNITUDE, applied in the first phase that permits it (repeatable)",
    )
    run.add_argument("--summary", action="store_true", help="Skip the per-state table")
    run.set_defaults(func=cmd_run)

    cfg = sub.add_parser("config", help="Show or write the configuration")
    cfg.add_argument("--write", default=None, metavar="PATH", help="Write the effective config to PATH")
    cfg.set_defaults(func=cmd_config)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except SimulationError as e:
        console.print(f"[{THEME['opponent']}]Error:[/{THEME['opponent']}] {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
