"""
Shared pytest fixtures for tuner tests.

Factories build metrics, dataset refs, aggregated results and proposals with
sensible defaults so each test only spells out the fields it cares about.
"""

import math
from typing import Callable, Dict, List, Optional

import pytest

from tuner.config.bot_config import BotConfig
from tuner.config.settings import TunerSettings
from tuner.loop.experiment_runner import RunConfig
from tuner.models import (
    AggregatedResult,
    ConfigChange,
    DatasetMetrics,
    DatasetRef,
    Metrics,
    PhaseBreakdown,
    PhaseMetrics,
    Proposal,
    SweepRecord,
    classify_elo_band,
)
from tuner.scoring.composite_score import composite_score
from tuner.state.store import StateStore

NAN = float("nan")


# =============================================================================
# Factories
# =============================================================================


def make_metrics(
    match_rate: float = 0.5,
    top_n_rate: float = 0.7,
    book_coverage: float = 0.2,
    avg_actual_cpl: float = NAN,
    avg_bot_cpl: float = NAN,
    cpl_delta: Optional[float] = None,
    total_positions: int = 100,
    phases: Optional[Dict[str, PhaseMetrics]] = None,
) -> Metrics:
    if cpl_delta is None:
        if math.isnan(avg_actual_cpl) or math.isnan(avg_bot_cpl):
            cpl_delta = NAN
        else:
            cpl_delta = abs(avg_bot_cpl - avg_actual_cpl)
    return Metrics(
        total_positions=total_positions,
        match_rate=match_rate,
        top_n_rate=top_n_rate,
        book_coverage=book_coverage,
        avg_actual_cpl=avg_actual_cpl,
        avg_bot_cpl=avg_bot_cpl,
        cpl_delta=cpl_delta,
        by_phase=PhaseBreakdown(**(phases or {})),
    )


def make_dataset(name: str = "alice", elo: int = 1500, tmp_dir=None) -> DatasetRef:
    path = f"{tmp_dir}/{name}.json" if tmp_dir else f"/tmp/{name}.json"
    return DatasetRef(
        name=name,
        username=name.lower(),
        band=classify_elo_band(elo),
        elo=elo,
        game_count=50,
        path=path,
    )


def make_result(
    metrics: Optional[Metrics] = None,
    experiment_id: str = "baseline",
    description: str = "Current best config",
    config_override: Optional[dict] = None,
    dataset_metrics: Optional[List[DatasetMetrics]] = None,
    baseline_score: Optional[float] = None,
    parameter: str = "baseline",
) -> AggregatedResult:
    metrics = metrics or make_metrics()
    score = composite_score(metrics)
    return AggregatedResult(
        experiment_id=experiment_id,
        parameter=parameter,
        description=description,
        config_override=config_override or {},
        dataset_metrics=dataset_metrics or [],
        aggregated_metrics=metrics,
        composite_score=score,
        score_delta=0.0 if baseline_score is None else score - baseline_score,
    )


def make_experiment(
    score_delta: float,
    index: int = 0,
    override: Optional[dict] = None,
    description: Optional[str] = None,
) -> AggregatedResult:
    override = override or {"error": {"mistake": 125}}
    result = make_result(
        experiment_id=f"sweep-{index:03d}-test",
        parameter="error.mistake",
        description=description or f"Experiment {index}",
        config_override=override,
    )
    result.score_delta = score_delta
    result.composite_score = 0.5 + score_delta
    return result


def make_record(
    experiments: Optional[List[AggregatedResult]] = None,
    cycle: int = 1,
    baseline: Optional[AggregatedResult] = None,
) -> SweepRecord:
    baseline = baseline or make_result()
    return SweepRecord(
        cycle=cycle,
        seed=42,
        base_config=BotConfig(),
        baseline=baseline,
        triage_baseline=baseline,
        triage_datasets=[d.dataset for d in baseline.dataset_metrics],
        experiments=experiments or [],
    )


def make_proposal(
    cycle: int = 1,
    changes: Optional[List[ConfigChange]] = None,
    proposed_config: Optional[BotConfig] = None,
    experiments: Optional[List[AggregatedResult]] = None,
    advisory_used: bool = False,
) -> Proposal:
    baseline = make_result()
    return Proposal(
        cycle=cycle,
        baseline_score=baseline.composite_score,
        baseline_metrics=baseline.aggregated_metrics,
        ranked_experiments=experiments or [],
        experiments_run=len(experiments or []),
        proposed_config=proposed_config or BotConfig(),
        config_changes=changes or [],
        summary="Test proposal",
        advisory_used=advisory_used,
    )


class FakeTester:
    """In-memory accuracy tester.

    ``score_fn(dataset, config)`` returns the metrics for a run;
    ``fail_when(dataset, config)`` makes a run raise.
    """

    def __init__(
        self,
        score_fn: Optional[Callable[[DatasetRef, RunConfig], Metrics]] = None,
        fail_when: Optional[Callable[[DatasetRef, RunConfig], bool]] = None,
    ):
        self.calls: List[tuple] = []
        self.closed = False
        self.score_fn = score_fn
        self.fail_when = fail_when

    def run(self, dataset: DatasetRef, config: RunConfig) -> Metrics:
        self.calls.append((dataset.name, config))
        if self.fail_when is not None and self.fail_when(dataset, config):
            raise RuntimeError("engine crashed")
        if self.score_fn is not None:
            return self.score_fn(dataset, config)
        return make_metrics()

    def close(self) -> None:
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def metrics_factory():
    return make_metrics


@pytest.fixture
def dataset_factory():
    return make_dataset


@pytest.fixture
def result_factory():
    return make_result


@pytest.fixture
def experiment_factory():
    return make_experiment


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def proposal_factory():
    return make_proposal


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temp dir with no network delays."""
    return TunerSettings(
        root_dir=tmp_path / "tuner",
        user_call_delay_seconds=0.0,
        player_delay_seconds=0.0,
        max_experiments=3,
        triage_positions=10,
        discover_players=False,
    )


@pytest.fixture
def store(settings):
    return StateStore(settings.root_dir)


@pytest.fixture
def four_datasets(tmp_path):
    return [
        make_dataset("alice", 1200, tmp_path),
        make_dataset("bob", 1600, tmp_path),
        make_dataset("carol", 1900, tmp_path),
        make_dataset("dave", 2400, tmp_path),
    ]


@pytest.fixture
def fake_tester_cls():
    return FakeTester
