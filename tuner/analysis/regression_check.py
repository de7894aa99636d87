"""Cross-cycle regression check.

Compares the current cycle's baseline to the previous cycle's baseline at
three granularities: the composite score, individual metrics, and each
dataset (Elo band). Fixed absolute thresholds classify every delta, and
multi-cycle trend notes are derived from the full baseline history.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from tuner.models import AggregatedResult, ConfigChange, CycleRecord, Metrics, classify_elo_band
from tuner.scoring.composite_score import composite_score, format_delta, format_score, strength_gap
from tuner.scoring.nan_safe import format_number, is_missing

logger = logging.getLogger(__name__)

# Float tolerance so a delta that equals a threshold on paper (0.60 -> 0.55)
# still reaches it after binary rounding.
SEVERITY_TOLERANCE = 1e-9

# Gap change (CPL units) below which a band counts as stable
CONVERGENCE_THRESHOLD = 1.5


class Direction(str, Enum):
    IMPROVED = "improved"
    REGRESSED = "regressed"
    STABLE = "stable"


class Severity(str, Enum):
    NONE = "none"
    MINOR = "minor"
    CRITICAL = "critical"


class Convergence(str, Enum):
    CONVERGING = "converging"
    DIVERGING = "diverging"
    STABLE = "stable"


@dataclass(frozen=True)
class Thresholds:
    minor: float
    critical: float


THRESHOLDS: Dict[str, Thresholds] = {
    "composite_score": Thresholds(0.005, 0.015),
    "match_rate": Thresholds(0.02, 0.05),
    "top_n_rate": Thresholds(0.02, 0.05),
    "book_coverage": Thresholds(0.03, 0.08),
    "cpl_delta": Thresholds(2.0, 5.0),
    "cpl_gap": Thresholds(3.0, 8.0),
    "elo_band": Thresholds(0.02, 0.05),
}

RATE_METRICS = ("match_rate", "top_n_rate", "book_coverage")
LOWER_IS_BETTER = ("cpl_delta", "cpl_gap")

METRIC_LABELS = {
    "match_rate": "Match Rate",
    "top_n_rate": "Top-N Rate",
    "book_coverage": "Book Coverage",
    "cpl_delta": "CPL Delta",
    "cpl_gap": "|Bot - Actual| CPL",
}


@dataclass
class MetricDelta:
    metric: str
    previous: float
    current: float
    delta: float
    direction: Direction
    severity: Severity
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "previous": _json_number(self.previous),
            "current": _json_number(self.current),
            "delta": _json_number(self.delta),
            "direction": self.direction.value,
            "severity": self.severity.value,
            "note": self.note,
        }


@dataclass
class BandDelta:
    dataset: str
    elo: int
    previous_score: float
    current_score: float
    score_delta: float
    previous_gap: float
    current_gap: float
    gap_delta: float
    convergence: Convergence
    severity: Severity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataset": self.dataset,
            "elo": self.elo,
            "previous_score": self.previous_score,
            "current_score": self.current_score,
            "score_delta": self.score_delta,
            "previous_gap": _json_number(self.previous_gap),
            "current_gap": _json_number(self.current_gap),
            "gap_delta": _json_number(self.gap_delta),
            "convergence": self.convergence.value,
            "severity": self.severity.value,
        }


@dataclass
class StrengthCalibration:
    previous_avg_gap: float
    current_avg_gap: float
    convergence: Convergence

    def to_dict(self) -> Dict[str, Any]:
        return {
            "previous_avg_gap": _json_number(self.previous_avg_gap),
            "current_avg_gap": _json_number(self.current_avg_gap),
            "convergence": self.convergence.value,
        }


@dataclass
class RegressionReport:
    """Comparison of two consecutive cycle baselines."""
    previous_cycle: int
    current_cycle: int
    previous_score: float
    current_score: float
    score_delta: float
    overall_direction: Direction
    overall_severity: Severity
    metric_deltas: List[MetricDelta] = field(default_factory=list)
    band_deltas: List[BandDelta] = field(default_factory=list)
    calibration: Optional[StrengthCalibration] = None
    config_changes: List[ConfigChange] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    def metric(self, name: str) -> Optional[MetricDelta]:
        return next((m for m in self.metric_deltas if m.metric == name), None)

    @property
    def has_critical(self) -> bool:
        return self.overall_severity == Severity.CRITICAL or any(
            m.severity == Severity.CRITICAL for m in self.metric_deltas
        )

    def summary(self) -> str:
        return (
            f"Cycle {self.previous_cycle} -> {self.current_cycle}: "
            f"{self.overall_direction.value} ({format_delta(self.score_delta)}, "
            f"severity {self.overall_severity.value})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "previous_cycle": self.previous_cycle,
            "current_cycle": self.current_cycle,
            "previous_score": self.previous_score,
            "current_score": self.current_score,
            "score_delta": self.score_delta,
            "overall_direction": self.overall_direction.value,
            "overall_severity": self.overall_severity.value,
            "metric_deltas": [m.to_dict() for m in self.metric_deltas],
            "band_deltas": [b.to_dict() for b in self.band_deltas],
            "calibration": self.calibration.to_dict() if self.calibration else None,
            "config_changes": [c.model_dump() for c in self.config_changes],
            "notes": list(self.notes),
        }


def _json_number(value: float) -> Optional[float]:
    return None if is_missing(value) else value


# =============================================================================
# Classification
# =============================================================================


def classify_severity(effective_delta: float, thresholds: Thresholds) -> Severity:
    """Severity of a delta already oriented so positive means better."""
    if is_missing(effective_delta):
        return Severity.NONE
    magnitude = -effective_delta
    if magnitude >= thresholds.critical - SEVERITY_TOLERANCE:
        return Severity.CRITICAL
    if magnitude >= thresholds.minor - SEVERITY_TOLERANCE:
        return Severity.MINOR
    return Severity.NONE


def classify_direction(effective_delta: float, thresholds: Thresholds) -> Direction:
    if is_missing(effective_delta):
        return Direction.STABLE
    if effective_delta > thresholds.minor * 0.5:
        return Direction.IMPROVED
    if classify_severity(effective_delta, thresholds) != Severity.NONE:
        return Direction.REGRESSED
    return Direction.STABLE


def classify_convergence(gap_delta: float) -> Convergence:
    """``gap_delta`` is previous gap minus current gap; positive means closer."""
    if is_missing(gap_delta) or abs(gap_delta) < CONVERGENCE_THRESHOLD:
        return Convergence.STABLE
    return Convergence.CONVERGING if gap_delta > 0 else Convergence.DIVERGING


def _metric_value(metrics: Metrics, name: str) -> float:
    if name == "cpl_gap":
        return abs(strength_gap(metrics))
    return getattr(metrics, name)


def compare_metric(name: str, previous: float, current: float) -> MetricDelta:
    thresholds = THRESHOLDS[name]
    if is_missing(previous) or is_missing(current):
        return MetricDelta(
            name, previous, current, float("nan"), Direction.STABLE, Severity.NONE, "N/A"
        )

    delta = current - previous
    if name not in LOWER_IS_BETTER and previous == 0 and current > 0:
        # Previously unmeasured
        return MetricDelta(
            name, previous, current, delta, Direction.IMPROVED, Severity.NONE, "(new)"
        )

    effective = -delta if name in LOWER_IS_BETTER else delta
    return MetricDelta(
        name,
        previous,
        current,
        delta,
        classify_direction(effective, thresholds),
        classify_severity(effective, thresholds),
    )


def _abs_gaps(result: AggregatedResult) -> List[float]:
    return [abs(strength_gap(d.metrics)) for d in result.dataset_metrics]


def average_gap(result: AggregatedResult) -> float:
    gaps = np.asarray(_abs_gaps(result), dtype=float)
    gaps = gaps[~np.isnan(gaps)]
    return float(gaps.mean()) if gaps.size else float("nan")


def compare_bands(current: AggregatedResult, previous: AggregatedResult) -> List[BandDelta]:
    """Per-dataset deltas for datasets present in both baselines, by Elo."""
    previous_by_name = {d.dataset: d for d in previous.dataset_metrics}
    deltas: List[BandDelta] = []
    for curr in sorted(current.dataset_metrics, key=lambda d: d.elo):
        prev = previous_by_name.get(curr.dataset)
        if prev is None:
            continue
        prev_score = composite_score(prev.metrics)
        curr_score = composite_score(curr.metrics)
        score_delta = curr_score - prev_score
        prev_gap = abs(strength_gap(prev.metrics))
        curr_gap = abs(strength_gap(curr.metrics))
        gap_delta = prev_gap - curr_gap
        deltas.append(BandDelta(
            dataset=curr.dataset,
            elo=curr.elo,
            previous_score=prev_score,
            current_score=curr_score,
            score_delta=score_delta,
            previous_gap=prev_gap,
            current_gap=curr_gap,
            gap_delta=gap_delta,
            convergence=classify_convergence(gap_delta),
            severity=classify_severity(score_delta, THRESHOLDS["elo_band"]),
        ))
    return deltas


def extract_config_diffs(
    completed_cycles: Sequence[CycleRecord], previous_cycle: int, current_cycle: int
) -> List[ConfigChange]:
    """Changes accepted between the two baselines."""
    changes: List[ConfigChange] = []
    for record in completed_cycles:
        if record.accepted and previous_cycle <= record.cycle < current_cycle:
            changes.extend(record.config_changes)
    return changes


# =============================================================================
# Multi-cycle notes
# =============================================================================


def _trailing_streak(values: Sequence[float], worse: Callable[[float, float], bool]) -> int:
    streak = 0
    for prev, curr in zip(values, values[1:]):
        if is_missing(prev) or is_missing(curr) or not worse(prev, curr):
            streak = 0
        else:
            streak += 1
    return streak


def generate_notes(
    metric_deltas: Sequence[MetricDelta],
    band_deltas: Sequence[BandDelta],
    overall_direction: Direction,
    historical_baselines: Sequence[AggregatedResult],
    current: AggregatedResult,
) -> List[str]:
    notes: List[str] = []

    if len(historical_baselines) >= 2:
        sequence = [h.aggregated_metrics for h in historical_baselines]
        sequence.append(current.aggregated_metrics)

        for key in RATE_METRICS:
            streak = _trailing_streak(
                [getattr(m, key) for m in sequence], lambda a, b: b < a
            )
            if streak >= 2:
                notes.append(
                    f"{key} has declined for {streak} consecutive cycles; "
                    f"consider investigating root cause"
                )

        streak = _trailing_streak([m.cpl_delta for m in sequence], lambda a, b: b > a)
        if streak >= 2:
            notes.append(
                f"cpl_delta has worsened for {streak} consecutive cycles; "
                f"error pattern fit is deteriorating"
            )

    for band in band_deltas:
        if band.convergence == Convergence.DIVERGING and band.severity != Severity.NONE:
            notes.append(
                f"{band.dataset} ({band.elo} Elo) strength diverging; investigate "
                f"{classify_elo_band(band.elo).value} band calibration"
            )

    critical = [m.metric for m in metric_deltas if m.severity == Severity.CRITICAL]
    if critical and overall_direction == Direction.IMPROVED:
        notes.append(
            f"Overall score improved but {', '.join(critical)} regressed critically; "
            f"composite score may be masking problems"
        )

    return notes


# =============================================================================
# Entry point
# =============================================================================


def run_regression_check(
    current: AggregatedResult,
    previous: Optional[AggregatedResult],
    current_cycle: int,
    previous_cycle: int,
    completed_cycles: Sequence[CycleRecord] = (),
    historical_baselines: Sequence[AggregatedResult] = (),
) -> Optional[RegressionReport]:
    """Compare the current baseline to the previous cycle's.

    Returns None when there is no previous baseline.

    Args:
        current: Full baseline of the current cycle
        previous: Full baseline of the previous cycle
        current_cycle: Current cycle number
        previous_cycle: Cycle number of ``previous``
        completed_cycles: Cycle history, for the config changes in between
        historical_baselines: All earlier baselines, oldest first
    """
    if previous is None:
        return None

    score_delta = current.composite_score - previous.composite_score
    overall_th = THRESHOLDS["composite_score"]
    overall_direction = classify_direction(score_delta, overall_th)

    metric_deltas = [
        compare_metric(
            name,
            _metric_value(previous.aggregated_metrics, name),
            _metric_value(current.aggregated_metrics, name),
        )
        for name in (*RATE_METRICS, *LOWER_IS_BETTER)
    ]
    band_deltas = compare_bands(current, previous)

    prev_gap = average_gap(previous)
    curr_gap = average_gap(current)
    calibration = StrengthCalibration(
        previous_avg_gap=prev_gap,
        current_avg_gap=curr_gap,
        convergence=classify_convergence(prev_gap - curr_gap),
    )

    report = RegressionReport(
        previous_cycle=previous_cycle,
        current_cycle=current_cycle,
        previous_score=previous.composite_score,
        current_score=current.composite_score,
        score_delta=score_delta,
        overall_direction=overall_direction,
        overall_severity=classify_severity(score_delta, overall_th),
        metric_deltas=metric_deltas,
        band_deltas=band_deltas,
        calibration=calibration,
        config_changes=extract_config_diffs(completed_cycles, previous_cycle, current_cycle),
        notes=generate_notes(
            metric_deltas, band_deltas, overall_direction, historical_baselines, current
        ),
    )
    if report.has_critical:
        logger.warning(f"Critical regression: {report.summary()}")
    return report


# =============================================================================
# Formatting
# =============================================================================


def _format_metric_value(name: str, value: float) -> str:
    if name in LOWER_IS_BETTER:
        return format_number(value, 1)
    return format_number(value * 100 if not is_missing(value) else value, 1, "%")


def _format_metric_delta(m: MetricDelta) -> str:
    if is_missing(m.delta):
        return "N/A"
    if m.metric in LOWER_IS_BETTER:
        text = f"{m.delta:+.1f}"
    else:
        text = f"{m.delta * 100:+.2f}%"
    return f"{text} {m.note}".strip()


def format_regression_console(report: Optional[RegressionReport]) -> str:
    """Plain-text report for the terminal."""
    if report is None:
        return "Regression check: no previous cycle to compare against."

    lines = [
        f"Regression check (cycle {report.previous_cycle} -> {report.current_cycle})",
        f"  Composite: {format_score(report.previous_score)} -> "
        f"{format_score(report.current_score)} ({format_delta(report.score_delta)}) "
        f"[{report.overall_direction.value}/{report.overall_severity.value}]",
    ]
    for m in report.metric_deltas:
        lines.append(
            f"  {METRIC_LABELS[m.metric]:<20} {_format_metric_value(m.metric, m.previous):>8} -> "
            f"{_format_metric_value(m.metric, m.current):>8}  {_format_metric_delta(m):<12} "
            f"[{m.direction.value}/{m.severity.value}]"
        )
    for b in report.band_deltas:
        lines.append(
            f"  {b.dataset} ({b.elo}): {format_delta(b.score_delta)}, gap "
            f"{format_number(b.previous_gap)} -> {format_number(b.current_gap)} "
            f"[{b.convergence.value}/{b.severity.value}]"
        )
    if report.calibration is not None:
        c = report.calibration
        lines.append(
            f"  Avg strength gap: {format_number(c.previous_avg_gap)} -> "
            f"{format_number(c.current_avg_gap)} [{c.convergence.value}]"
        )
    for change in report.config_changes:
        lines.append(f"  Changed {change.path}: {change.old_value} -> {change.new_value}")
    for note in report.notes:
        lines.append(f"  NOTE: {note}")
    return "\n".join(lines)


def format_regression_markdown(report: Optional[RegressionReport]) -> str:
    """Markdown section for the advisory prompt and proposal report."""
    if report is None:
        return "## Regression Check\n\nFirst cycle: no previous baseline to compare against.\n"

    lines = [
        f"## Regression Check (cycle {report.previous_cycle} -> {report.current_cycle})",
        "",
        f"**Overall:** {report.overall_direction.value} "
        f"({format_score(report.previous_score)} -> {format_score(report.current_score)}, "
        f"{format_delta(report.score_delta)}, severity {report.overall_severity.value})",
        "",
        "| Metric | Previous | Current | Delta | Direction | Severity |",
        "|--------|----------|---------|-------|-----------|----------|",
    ]
    for m in report.metric_deltas:
        lines.append(
            f"| {METRIC_LABELS[m.metric]} | {_format_metric_value(m.metric, m.previous)} | "
            f"{_format_metric_value(m.metric, m.current)} | {_format_metric_delta(m)} | "
            f"{m.direction.value} | {m.severity.value} |"
        )

    if report.band_deltas:
        lines += [
            "",
            "### Per-Band Changes",
            "",
            "| Dataset | Elo | Score Delta | Gap (prev -> curr) | Convergence | Severity |",
            "|---------|-----|-------------|--------------------|-------------|----------|",
        ]
        for b in report.band_deltas:
            lines.append(
                f"| {b.dataset} | {b.elo} | {format_delta(b.score_delta)} | "
                f"{format_number(b.previous_gap)} -> {format_number(b.current_gap)} | "
                f"{b.convergence.value} | {b.severity.value} |"
            )

    if report.calibration is not None:
        c = report.calibration
        lines += [
            "",
            f"**Strength calibration:** average |bot - actual| CPL gap "
            f"{format_number(c.previous_avg_gap)} -> {format_number(c.current_avg_gap)} "
            f"({c.convergence.value})",
        ]

    if report.config_changes:
        lines += ["", "### Config Changes Since Previous Baseline", ""]
        for change in report.config_changes:
            lines.append(
                f"- `{change.path}`: {change.old_value} -> {change.new_value} "
                f"({format_delta(change.score_delta)})"
            )

    if report.notes:
        lines += ["", "### Researcher Notes", ""]
        lines += [f"- {note}" for note in report.notes]

    return "\n".join(lines) + "\n"
