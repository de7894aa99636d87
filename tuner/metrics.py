"""Prometheus metrics for the tuning loop.

Counters and gauges are module-level so phase drivers can record telemetry
without managing metric instances. The CLI can dump the default registry to
a node-exporter textfile after each command.
"""

from __future__ import annotations

from pathlib import Path
from typing import Final

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, write_to_textfile


TUNER_EXPERIMENTS: Final[Counter] = Counter(
    "tuner_experiments_total",
    "Sweep experiments finished, labeled by outcome (complete or skipped).",
    labelnames=("outcome",),
)

TUNER_EXPERIMENT_LATENCY: Final[Histogram] = Histogram(
    "tuner_experiment_latency_seconds",
    "Wall time of one experiment across its triage datasets.",
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

TUNER_DATASET_FETCHES: Final[Counter] = Counter(
    "tuner_dataset_fetches_total",
    "Player dataset requests, labeled by outcome (fetched, cached, failed).",
    labelnames=("outcome",),
)

TUNER_PLAYER_VALIDATIONS: Final[Counter] = Counter(
    "tuner_player_validations_total",
    "Player pool validations, labeled by outcome (valid, removed, failed).",
    labelnames=("outcome",),
)

TUNER_ADVISORY_REQUESTS: Final[Counter] = Counter(
    "tuner_advisory_requests_total",
    "Proposal syntheses, labeled by outcome (used, fallback, failed).",
    labelnames=("outcome",),
)

TUNER_CYCLE: Final[Gauge] = Gauge(
    "tuner_cycle",
    "Current tuning cycle number.",
)

TUNER_BASELINE_SCORE: Final[Gauge] = Gauge(
    "tuner_baseline_composite_score",
    "Composite score of the most recent baseline, labeled by scope (full or triage).",
    labelnames=("scope",),
)


def export_textfile(path: str | Path) -> None:
    """Write the default registry in Prometheus text format."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    write_to_textfile(str(target), REGISTRY)
