"""Sweep planning: expand the parameter registry into tracked experiments."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from tuner.config.bot_config import BotConfig
from tuner.errors import InvalidStateError
from tuner.loop.perturbation import generate_all_variants
from tuner.models import (
    DatasetRef,
    ExperimentSpec,
    ExperimentStatus,
    PlanStatus,
    SweepPlan,
)

_STATUS_ORDER = {
    ExperimentStatus.PENDING: 0,
    ExperimentStatus.TRIAGE: 1,
    ExperimentStatus.PROMOTED: 2,
    ExperimentStatus.RUNNING: 3,
    ExperimentStatus.COMPLETE: 4,
}
_TERMINAL = (ExperimentStatus.COMPLETE, ExperimentStatus.SKIPPED)
_IN_FLIGHT = (ExperimentStatus.TRIAGE, ExperimentStatus.PROMOTED, ExperimentStatus.RUNNING)


@dataclass
class PlanOptions:
    max_experiments: int = 40
    triage_positions: int = 50
    base_seed: int = 42
    fast_mode: bool = True

    @property
    def position_cap(self) -> Optional[int]:
        return self.triage_positions if self.fast_mode else None


@dataclass
class PlanProgress:
    total: int
    complete: int
    running: int
    pending: int
    skipped: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "complete": self.complete,
            "running": self.running,
            "pending": self.pending,
            "skipped": self.skipped,
        }


def experiment_id(index: int, label: str) -> str:
    slug = re.sub(r"[^a-zA-Z0-9.-]", "_", label)[:40]
    return f"sweep-{index:03d}-{slug}"


def create_sweep_plan(
    best_config: BotConfig,
    datasets: Sequence[DatasetRef],
    options: Optional[PlanOptions] = None,
) -> SweepPlan:
    """One experiment per generated variant, all sharing the baseline seed.

    Experiments carry the plan's position cap, which is the triage cap in
    fast mode and uncapped otherwise; the baseline runs under the same cap.

    Deterministic: the same config, datasets and options give the same ids
    and overrides.
    """
    options = options or PlanOptions()
    dataset_names = [d.name for d in datasets]
    variants = generate_all_variants(best_config, options.max_experiments)

    experiments = [
        ExperimentSpec(
            id=experiment_id(i, variant.label),
            parameter=variant.parameter,
            description=variant.description,
            config_override=variant.override,
            datasets=list(dataset_names),
            max_positions=options.position_cap,
            seed=options.base_seed,
        )
        for i, variant in enumerate(variants)
    ]

    return SweepPlan(
        base_config=best_config.model_copy(deep=True),
        position_cap=options.position_cap,
        fast_mode=options.fast_mode,
        experiments=experiments,
    )


def is_plan_complete(plan: SweepPlan) -> bool:
    return all(e.status in _TERMINAL for e in plan.experiments)


def plan_progress(plan: SweepPlan) -> PlanProgress:
    statuses = [e.status for e in plan.experiments]
    return PlanProgress(
        total=len(statuses),
        complete=sum(1 for s in statuses if s == ExperimentStatus.COMPLETE),
        running=sum(1 for s in statuses if s in _IN_FLIGHT),
        pending=sum(1 for s in statuses if s == ExperimentStatus.PENDING),
        skipped=sum(1 for s in statuses if s == ExperimentStatus.SKIPPED),
    )


def remaining_experiments(plan: SweepPlan) -> List[ExperimentSpec]:
    """Experiments not yet finished, in plan order.

    Includes ones left in flight by an interrupted run.
    """
    return [e for e in plan.experiments if e.status not in _TERMINAL]


def next_pending_experiment(plan: SweepPlan) -> Optional[ExperimentSpec]:
    remaining = remaining_experiments(plan)
    return remaining[0] if remaining else None


def promotable_experiments(
    plan: SweepPlan, baseline_score: float, top_n: int = 5
) -> List[ExperimentSpec]:
    """Completed experiments whose triage score beats the baseline, best first."""
    candidates = [
        e
        for e in plan.experiments
        if e.status == ExperimentStatus.COMPLETE
        and e.triage_score is not None
        and e.triage_score > baseline_score
    ]
    candidates.sort(key=lambda e: e.triage_score, reverse=True)
    return candidates[:top_n]


def advance_status(spec: ExperimentSpec, status: ExperimentStatus) -> None:
    """Move an experiment forward; statuses never go backwards."""
    if spec.status == status:
        return
    if spec.status in _TERMINAL:
        raise InvalidStateError(
            "Experiment already finished",
            context={"id": spec.id, "status": spec.status.value, "requested": status.value},
        )
    if status != ExperimentStatus.SKIPPED and _STATUS_ORDER[status] < _STATUS_ORDER[spec.status]:
        raise InvalidStateError(
            "Experiment status cannot move backwards",
            context={"id": spec.id, "status": spec.status.value, "requested": status.value},
        )
    spec.status = status


def mark_plan_status(plan: SweepPlan) -> None:
    if is_plan_complete(plan):
        plan.status = PlanStatus.COMPLETE
    elif any(e.status != ExperimentStatus.PENDING for e in plan.experiments):
        plan.status = PlanStatus.RUNNING
