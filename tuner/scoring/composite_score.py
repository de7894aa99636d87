"""Composite score: one [0, 1] ranking scalar per Metrics.

Sub-scores and weights:
    match rate            0.30
    top-N rate            0.25
    CPL delta             0.25   1 - min(1, cpl_delta / 50)
    book coverage         0.10
    CPL similarity        0.10   1 - min(1, |bot - actual| / 30)

When any CPL figure is missing (fast triage runs skip error analysis) the two
CPL terms are dropped and the remaining weights renormalized, so triage and
full scores stay on the same scale.
"""

from __future__ import annotations

from tuner.models import Metrics
from tuner.scoring.nan_safe import is_missing

WEIGHTS = {
    "match_rate": 0.30,
    "top_n_rate": 0.25,
    "cpl_delta": 0.25,
    "book_coverage": 0.10,
    "cpl_similarity": 0.10,
}

CPL_DELTA_SCALE = 50.0
CPL_SIMILARITY_SCALE = 30.0
CALIBRATED_WITHIN_CP = 2.0

_RATE_TERMS = ("match_rate", "top_n_rate", "book_coverage")


def _unit(x: float) -> float:
    return max(0.0, min(1.0, x))


def has_cpl_data(metrics: Metrics) -> bool:
    return not (
        is_missing(metrics.cpl_delta)
        or is_missing(metrics.avg_bot_cpl)
        or is_missing(metrics.avg_actual_cpl)
    )


def composite_score(metrics: Metrics) -> float:
    """Blend the metric sub-scores into a single value in [0, 1]."""
    sub_scores = {key: _unit(getattr(metrics, key)) for key in _RATE_TERMS}

    if has_cpl_data(metrics):
        sub_scores["cpl_delta"] = 1.0 - min(1.0, metrics.cpl_delta / CPL_DELTA_SCALE)
        gap = abs(metrics.avg_bot_cpl - metrics.avg_actual_cpl)
        sub_scores["cpl_similarity"] = 1.0 - min(1.0, gap / CPL_SIMILARITY_SCALE)

    total_weight = sum(WEIGHTS[key] for key in sub_scores)
    score = sum(WEIGHTS[key] * _unit(value) for key, value in sub_scores.items())
    return _unit(score / total_weight)


def strength_gap(metrics: Metrics) -> float:
    """Bot CPL minus player CPL; positive means the bot plays weaker. NaN if unknown."""
    if is_missing(metrics.avg_bot_cpl) or is_missing(metrics.avg_actual_cpl):
        return float("nan")
    return metrics.avg_bot_cpl - metrics.avg_actual_cpl


def format_score(score: float) -> str:
    return f"{score * 100:.1f}%"


def format_delta(delta: float) -> str:
    sign = "+" if delta >= 0 else ""
    return f"{sign}{delta * 100:.2f}%"


def format_strength(metrics: Metrics) -> str:
    """Describe how the bot's error rate compares to the player's."""
    gap = strength_gap(metrics)
    if is_missing(gap):
        return "CPL N/A (triage)"
    if abs(gap) < CALIBRATED_WITHIN_CP:
        return "≈ calibrated"
    if gap < 0:
        return f"{abs(gap):.0f}cp too strong"
    return f"{gap:.0f}cp too weak"
