"""Read-only status and history reports."""

from __future__ import annotations

from typing import List

from tuner.data.player_pool import players_for_band
from tuner.loop.sweep_planner import plan_progress
from tuner.models import ELO_BANDS, TunerState
from tuner.scoring.composite_score import format_delta, format_score


def format_status(state: TunerState) -> str:
    lines: List[str] = [
        f"Cycle:           {state.cycle}",
        f"Phase:           {state.phase.value}",
        f"Last checkpoint: {state.last_checkpoint}",
        "",
        f"Player pool ({len(state.player_pool)}):",
    ]
    for band, config in ELO_BANDS.items():
        players = players_for_band(state.player_pool, band)
        names = ", ".join(f"{p.username} ({p.estimated_elo})" for p in players) or "-"
        lines.append(f"  {band.value:<13} {len(players)}/{config.target_players}  {names}")

    lines += ["", f"Datasets: {len(state.datasets)}"]
    for ref in sorted(state.datasets, key=lambda d: d.elo):
        lines.append(f"  {ref.name:<20} {ref.elo:>5}  {ref.game_count} games")

    if state.current_plan is not None:
        p = plan_progress(state.current_plan)
        lines += [
            "",
            f"Sweep plan ({state.current_plan.status.value}): {p.complete}/{p.total} complete, "
            f"{p.running} running, {p.pending} pending, {p.skipped} skipped",
        ]

    if state.completed_cycles:
        last = state.completed_cycles[-1]
        if last.baseline_score is not None:
            lines += ["", f"Last baseline score: {format_score(last.baseline_score)} (cycle {last.cycle})"]
    lines.append(f"Accepted changes: {len(state.accepted_changes)}")

    if state.pending_proposal:
        lines += ["", f"Pending proposal: {state.pending_proposal}", "Run `accept` or `reject`."]
    return "\n".join(lines)


def format_history(state: TunerState) -> str:
    if not state.completed_cycles:
        return "No completed cycles yet."
    lines = [
        f"{'Cycle':<6} {'Outcome':<9} {'Baseline':>9} {'Best':>8} {'Exps':>5}  Changes",
        "-" * 60,
    ]
    for c in state.completed_cycles:
        score = format_score(c.baseline_score) if c.baseline_score is not None else "-"
        changes = ", ".join(f"{ch.path}={ch.new_value}" for ch in c.config_changes) or "-"
        lines.append(
            f"{c.cycle:<6} {'accepted' if c.accepted else 'rejected':<9} {score:>9} "
            f"{format_delta(c.best_score_delta):>8} {c.experiments_run:>5}  {changes}"
        )
    return "\n".join(lines)
