"""Experiment execution through the accuracy-test collaborator.

The tester wraps the chess engine and is expensive to start, so one
instance is created per sweep and reused for the baseline and every
experiment. Runs are strictly sequential; the same seed replays the same
sampled positions, which is what makes scores comparable.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from tuner.models import DatasetRef, ExperimentSpec, Metrics

logger = logging.getLogger(__name__)

# Reduced-fidelity caps layered on in triage mode
TRIAGE_DEPTH_BY_SKILL: List[List[int]] = [[6, 4], [12, 6], [20, 8]]
TRIAGE_MULTI_PV_COUNT = 2


@dataclass
class RunConfig:
    seed: int
    label: str
    overrides: Dict[str, Any] = field(default_factory=dict)
    position_cap: Optional[int] = None
    fast_mode: bool = False


class AccuracyTester(Protocol):
    """Accuracy-test collaborator.

    ``run`` replays a dataset's positions through the bot under the given
    overrides and returns the resulting metrics. Implementations may also
    provide ``close()`` to release the engine.
    """

    def run(self, dataset: DatasetRef, config: RunConfig) -> Metrics:
        ...


def build_triage_overrides(override: Dict[str, Any]) -> Dict[str, Any]:
    """Layer triage speed caps onto an override without masking what it tests.

    The depth table is capped unless the override sets ``depth_by_skill``;
    multi-PV is reduced unless the override sets
    ``boltzmann.multi_pv_count``. Other boltzmann keys are preserved.
    """
    result = copy.deepcopy(override)
    if "depth_by_skill" not in result:
        result["depth_by_skill"] = copy.deepcopy(TRIAGE_DEPTH_BY_SKILL)

    boltzmann = dict(result.get("boltzmann") or {})
    if "multi_pv_count" not in boltzmann:
        boltzmann["multi_pv_count"] = TRIAGE_MULTI_PV_COUNT
    result["boltzmann"] = boltzmann
    return result


def run_experiment(
    tester: AccuracyTester,
    dataset: DatasetRef,
    spec: ExperimentSpec,
    fast_mode: bool = True,
) -> Metrics:
    overrides = build_triage_overrides(spec.config_override) if fast_mode else spec.config_override
    config = RunConfig(
        seed=spec.seed,
        label=spec.id,
        overrides=overrides,
        position_cap=spec.max_positions,
        fast_mode=fast_mode,
    )
    logger.debug(f"Running {spec.id} on {dataset.name}")
    return tester.run(dataset, config)


def run_baseline(
    tester: AccuracyTester,
    dataset: DatasetRef,
    seed: int,
    position_cap: Optional[int] = None,
    fast_mode: bool = True,
    label: str = "baseline",
) -> Metrics:
    """Run the unmodified config, with the same triage caps as experiments."""
    config = RunConfig(
        seed=seed,
        label=label,
        overrides=build_triage_overrides({}) if fast_mode else {},
        position_cap=position_cap,
        fast_mode=fast_mode,
    )
    logger.debug(f"Running baseline on {dataset.name}")
    return tester.run(dataset, config)


def select_triage_datasets(datasets: Sequence[DatasetRef]) -> List[DatasetRef]:
    """Lowest, median and highest Elo datasets; all of them when three or fewer."""
    if len(datasets) <= 3:
        return list(datasets)
    by_elo = sorted(datasets, key=lambda d: d.elo)
    return [by_elo[0], by_elo[len(by_elo) // 2], by_elo[-1]]


def close_tester(tester: AccuracyTester) -> None:
    close = getattr(tester, "close", None)
    if callable(close):
        close()
