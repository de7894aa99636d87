"""Position-weighted aggregation of per-dataset metrics."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Sequence

import numpy as np

from tuner.models import (
    GAME_PHASES,
    AggregatedResult,
    DatasetMetrics,
    Metrics,
    PhaseBreakdown,
    PhaseMetrics,
)
from tuner.scoring.composite_score import composite_score

_TOP_LEVEL_FIELDS = (
    "match_rate",
    "top_n_rate",
    "book_coverage",
    "avg_actual_cpl",
    "avg_bot_cpl",
    "cpl_delta",
)
_PHASE_FIELDS = ("match_rate", "top_n_rate", "avg_cpl", "bot_avg_cpl")


def weighted_mean(values: Sequence[float], weights: Sequence[float]) -> float:
    """Weighted mean over entries whose value is present and weight positive.

    Returns NaN when no entry qualifies.
    """
    vals = np.asarray(values, dtype=float)
    wts = np.asarray(weights, dtype=float)
    mask = ~np.isnan(vals) & (wts > 0)
    if not mask.any():
        return math.nan
    return float(np.average(vals[mask], weights=wts[mask]))


def empty_metrics() -> Metrics:
    """Zero rates with missing CPL figures."""
    return Metrics()


def _rate(value: float) -> float:
    # Rates are always measured; an all-missing rate aggregates to zero.
    return 0.0 if math.isnan(value) else value


def average_metrics(metrics_list: Sequence[Metrics]) -> Metrics:
    """Average metrics weighted by ``total_positions``.

    Phase breakdowns are weighted by each phase's own position count.
    """
    weights = [m.total_positions for m in metrics_list]
    total = sum(weights)
    if total <= 0:
        return empty_metrics()

    top: Dict[str, float] = {
        name: weighted_mean([getattr(m, name) for m in metrics_list], weights)
        for name in _TOP_LEVEL_FIELDS
    }

    phases: Dict[str, PhaseMetrics] = {}
    for phase in GAME_PHASES:
        entries = [m.phase(phase) for m in metrics_list]
        phase_weights = [p.positions for p in entries]
        values: Dict[str, Any] = {
            name: weighted_mean([getattr(p, name) for p in entries], phase_weights)
            for name in _PHASE_FIELDS
        }
        values["match_rate"] = _rate(values["match_rate"])
        values["top_n_rate"] = _rate(values["top_n_rate"])
        phases[phase] = PhaseMetrics(positions=sum(phase_weights), **values)

    return Metrics(
        total_positions=total,
        match_rate=_rate(top["match_rate"]),
        top_n_rate=_rate(top["top_n_rate"]),
        book_coverage=_rate(top["book_coverage"]),
        avg_actual_cpl=top["avg_actual_cpl"],
        avg_bot_cpl=top["avg_bot_cpl"],
        cpl_delta=top["cpl_delta"],
        by_phase=PhaseBreakdown(**phases),
    )


def aggregate_experiment_results(
    experiment_id: str,
    parameter: str,
    description: str,
    config_override: Dict[str, Any],
    dataset_metrics: List[DatasetMetrics],
    baseline_score: float,
) -> AggregatedResult:
    """Aggregate one experiment's per-dataset metrics and score it.

    ``baseline_score`` must come from the same dataset subset.
    """
    aggregated = average_metrics([d.metrics for d in dataset_metrics])
    score = composite_score(aggregated)
    return AggregatedResult(
        experiment_id=experiment_id,
        parameter=parameter,
        description=description,
        config_override=config_override,
        dataset_metrics=dataset_metrics,
        aggregated_metrics=aggregated,
        composite_score=score,
        score_delta=score - baseline_score,
    )


def subset_baseline_score(baseline: AggregatedResult, dataset_names: Sequence[str]) -> float:
    """Re-score a baseline over only the named datasets.

    An experiment that failed on some datasets is compared against the
    baseline restricted to the datasets it actually ran on.
    """
    wanted = set(dataset_names)
    subset = [d.metrics for d in baseline.dataset_metrics if d.dataset in wanted]
    return composite_score(average_metrics(subset))
