"""Advisory prompt assembly.

Builds the single markdown document handed to the advisory service. Score
deltas in the experiments table are measured against the triage baseline
(the same dataset subset and fidelity the experiments ran on); the full
baseline is shown separately for absolute calibration.
"""

from __future__ import annotations

import json
from typing import List, Optional, Sequence

from tuner.analysis.regression_check import RegressionReport, format_regression_markdown
from tuner.config.bot_config import BotConfig
from tuner.models import GAME_PHASES, AggregatedResult, CycleRecord, Metrics, SweepRecord
from tuner.scoring.composite_score import (
    composite_score,
    format_delta,
    format_score,
    format_strength,
    strength_gap,
)
from tuner.scoring.nan_safe import format_number

HISTORY_CYCLES = 5
TOP_BREAKDOWNS = 5

BOT_NOTES = """\
- Opening moves come from a trie of the player's own games (`trie.*`) until the line runs out.
- Outside the book the engine searches to a skill-dependent depth (`depth_by_skill`,
  adjusted by `complexity_depth.*` for tactical and quiet positions).
- The move is sampled from the top `boltzmann.multi_pv_count` lines with a softmax whose
  temperature comes from `boltzmann.temperature_by_skill` (never below `temperature_floor`).
- Skill is adjusted per phase from the player's CPL profile (`dynamic_skill.*`), and style
  bonuses (`move_style.*`) bias captures, checks and quiet moves.
- Triage runs cap search depth and multi-PV and skip CPL analysis, so CPL columns read N/A."""

GUIDANCE = """\
- Prefer ONE high-confidence change per cycle. Combine changes only when they are provably
  independent (different subsystems, no shared positions of effect).
- Flag Elo-band interaction risk: a change that helps one band often hurts another.
- Address any critical regression before proposing new exploration.
- Treat small deltas (under ~0.5%) on low sample counts as noise, not signal.
- Keep `proposed_config` a complete configuration: the current best with your changes applied."""

RESPONSE_FORMAT = """\
Respond with exactly one fenced JSON block:

```json
{
  "summary": "one paragraph",
  "ranked_changes": [
    {"path": "boltzmann.temperature_floor", "new_value": 0.2, "score_delta": 0.012, "reasoning": "..."}
  ],
  "proposed_config": { "...": "full configuration" },
  "code_proposals": ["..."],
  "next_priorities": ["..."],
  "warnings": ["..."]
}
```"""


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


def _metrics_row(label: str, score: float, delta: Optional[float], m: Metrics) -> str:
    delta_text = format_delta(delta) if delta is not None else "-"
    return (
        f"| {label} | {format_score(score)} | {delta_text} | {_pct(m.match_rate)} | "
        f"{_pct(m.top_n_rate)} | {_pct(m.book_coverage)} | {format_number(m.cpl_delta)} | "
        f"{m.total_positions} |"
    )


_METRICS_HEADER = [
    "| Experiment | Score | Delta | Match | Top-N | Book | CPL Delta | Positions |",
    "|------------|-------|-------|-------|-------|------|-----------|-----------|",
]


def _baseline_section(baseline: AggregatedResult) -> List[str]:
    m = baseline.aggregated_metrics
    lines = [
        "## Baseline (all datasets)",
        "",
        f"- Composite score: {format_score(baseline.composite_score)}",
        f"- Match rate: {_pct(m.match_rate)}, top-N rate: {_pct(m.top_n_rate)}, "
        f"book coverage: {_pct(m.book_coverage)}",
        f"- Player CPL: {format_number(m.avg_actual_cpl)}, bot CPL: "
        f"{format_number(m.avg_bot_cpl)}, CPL delta: {format_number(m.cpl_delta)}",
        "",
        "| Phase | Positions | Match | Top-N | Player CPL | Bot CPL |",
        "|-------|-----------|-------|-------|------------|---------|",
    ]
    for phase in GAME_PHASES:
        p = m.phase(phase)
        lines.append(
            f"| {phase} | {p.positions} | {_pct(p.match_rate)} | {_pct(p.top_n_rate)} | "
            f"{format_number(p.avg_cpl)} | {format_number(p.bot_avg_cpl)} |"
        )
    lines += [
        "",
        "### Strength Calibration by Dataset",
        "",
        "| Dataset | Elo | Score | Match | Calibration |",
        "|---------|-----|-------|-------|-------------|",
    ]
    for d in sorted(baseline.dataset_metrics, key=lambda d: d.elo):
        lines.append(
            f"| {d.dataset} | {d.elo} | {format_score(composite_score(d.metrics))} | "
            f"{_pct(d.metrics.match_rate)} | {format_strength(d.metrics)} |"
        )
    return lines


def _experiments_section(
    triage_baseline: AggregatedResult, experiments: Sequence[AggregatedResult]
) -> List[str]:
    ranked = sorted(experiments, key=lambda r: r.score_delta, reverse=True)
    improved = sum(1 for r in ranked if r.score_delta > 0)
    lines = [
        "## Experiments (triage, sorted by score delta)",
        "",
        f"{len(ranked)} experiments run, {improved} improved on the triage baseline, "
        f"{len(ranked) - improved} did not.",
        "",
        *_METRICS_HEADER,
        _metrics_row(
            "**triage baseline**", triage_baseline.composite_score, None,
            triage_baseline.aggregated_metrics,
        ),
    ]
    for r in ranked:
        lines.append(
            _metrics_row(r.description, r.composite_score, r.score_delta, r.aggregated_metrics)
        )
    return lines


def _history_section(completed_cycles: Sequence[CycleRecord]) -> List[str]:
    recent = list(completed_cycles)[-HISTORY_CYCLES:]
    if not recent:
        return ["## Cycle History", "", "No completed cycles yet."]
    lines = [
        "## Cycle History",
        "",
        "| Cycle | Outcome | Baseline Score | Best Delta | Changes |",
        "|-------|---------|----------------|------------|---------|",
    ]
    for c in recent:
        score = format_score(c.baseline_score) if c.baseline_score is not None else "-"
        changes = ", ".join(f"`{ch.path}`" for ch in c.config_changes) or "-"
        lines.append(
            f"| {c.cycle} | {'accepted' if c.accepted else 'rejected'} | {score} | "
            f"{format_delta(c.best_score_delta)} | {changes} |"
        )
    scores = [format_score(c.baseline_score) for c in recent if c.baseline_score is not None]
    if scores:
        lines += ["", f"Score trajectory: {' -> '.join(scores)}"]
    return lines


def _progression_section(
    history: Sequence[SweepRecord], current_cycle: int, current: AggregatedResult
) -> List[str]:
    points = [(r.cycle, r.baseline) for r in history if r.baseline is not None]
    points.append((current_cycle, current))
    lines = [
        "## Metrics Progression (full baselines)",
        "",
        "| Cycle | Score | Match | Top-N | Book | CPL Delta |",
        "|-------|-------|-------|-------|------|-----------|",
    ]
    for cycle, baseline in points:
        m = baseline.aggregated_metrics
        lines.append(
            f"| {cycle} | {format_score(baseline.composite_score)} | {_pct(m.match_rate)} | "
            f"{_pct(m.top_n_rate)} | {_pct(m.book_coverage)} | {format_number(m.cpl_delta)} |"
        )

    datasets = sorted(
        {(d.elo, d.dataset) for _, b in points for d in b.dataset_metrics}
    )
    if datasets:
        header = "| Dataset | Elo | " + " | ".join(f"C{cycle}" for cycle, _ in points) + " |"
        lines += [
            "",
            "### Strength Progression (bot CPL - player CPL; positive = too weak)",
            "",
            header,
            "|" + "---|" * (len(points) + 2),
        ]
        for elo, name in datasets:
            cells = []
            for _, baseline in points:
                match = next((d for d in baseline.dataset_metrics if d.dataset == name), None)
                cells.append(
                    format_number(strength_gap(match.metrics), 1) if match else "-"
                )
            lines.append(f"| {name} | {elo} | " + " | ".join(cells) + " |")
    return lines


def _breakdown_section(experiments: Sequence[AggregatedResult]) -> List[str]:
    top = sorted(experiments, key=lambda r: r.score_delta, reverse=True)[:TOP_BREAKDOWNS]
    lines = ["## Top Experiment Breakdowns"]
    for r in top:
        lines += [
            "",
            f"### {r.description} ({format_delta(r.score_delta)})",
            "",
            f"Override: `{json.dumps(r.config_override)}`",
            "",
            "| Dataset | Elo | Score | Match | Top-N | Book |",
            "|---------|-----|-------|-------|-------|------|",
        ]
        for d in sorted(r.dataset_metrics, key=lambda d: d.elo):
            m = d.metrics
            lines.append(
                f"| {d.dataset} | {d.elo} | {format_score(composite_score(m))} | "
                f"{_pct(m.match_rate)} | {_pct(m.top_n_rate)} | {_pct(m.book_coverage)} |"
            )
    return lines


def build_analysis_prompt(
    best_config: BotConfig,
    record: SweepRecord,
    regression: Optional[RegressionReport] = None,
    completed_cycles: Sequence[CycleRecord] = (),
    history: Sequence[SweepRecord] = (),
) -> str:
    """Assemble the advisory prompt for one cycle's sweep results."""
    if record.baseline is None or record.triage_baseline is None:
        raise ValueError(f"Sweep record for cycle {record.cycle} has no baseline")

    sections: List[List[str]] = [
        [
            f"# Bot Tuning Analysis: Cycle {record.cycle}",
            "",
            "You are tuning a chess bot that imitates specific human players. Each experiment",
            "changed exactly one configuration parameter and was scored on how closely the bot's",
            "moves match the players' real moves.",
        ],
        ["## How the Bot Works", "", BOT_NOTES],
        [
            "## Current Best Configuration",
            "",
            "```json",
            json.dumps(best_config.model_dump(), indent=2),
            "```",
        ],
        [format_regression_markdown(regression).rstrip()],
        _baseline_section(record.baseline),
        _experiments_section(record.triage_baseline, record.experiments),
        _history_section(completed_cycles),
        _progression_section(history, record.cycle, record.baseline),
        _breakdown_section(record.experiments),
        ["## Guidelines", "", GUIDANCE],
        ["## Response Format", "", RESPONSE_FORMAT],
    ]
    return "\n\n".join("\n".join(section) for section in sections) + "\n"
