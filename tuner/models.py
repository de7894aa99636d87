"""
Pydantic models for tuner state, experiments and proposals.

Everything persisted to disk is defined here. Error-magnitude fields on
Metrics are NaN when unmeasured; the before-validators restore that
semantic when a serialized null is loaded back.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from tuner.config.bot_config import DEFAULT_CONFIG, BotConfig
from tuner.scoring.nan_safe import nan_safe

STATE_VERSION = 1

GAME_PHASES = ("opening", "middlegame", "endgame")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class EloBand(str, Enum):
    """Elo band enumeration"""
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"
    MASTER = "master"


class TunerPhase(str, Enum):
    """Cycle phase, in transition order"""
    IDLE = "idle"
    GATHER = "gather"
    SWEEP = "sweep"
    ANALYZE = "analyze"
    WAITING = "waiting"


class ExperimentStatus(str, Enum):
    """Experiment lifecycle status"""
    PENDING = "pending"
    TRIAGE = "triage"
    PROMOTED = "promoted"
    RUNNING = "running"
    COMPLETE = "complete"
    SKIPPED = "skipped"


class PlanStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"


# =============================================================================
# Player pool
# =============================================================================


class EloBandConfig(BaseModel):
    """Elo range [min, max) and desired player count for one band."""
    min: int
    max: int
    target_players: int


ELO_BANDS: Dict[EloBand, EloBandConfig] = {
    EloBand.BEGINNER: EloBandConfig(min=1100, max=1400, target_players=2),
    EloBand.INTERMEDIATE: EloBandConfig(min=1400, max=1700, target_players=2),
    EloBand.ADVANCED: EloBandConfig(min=1700, max=2000, target_players=2),
    EloBand.EXPERT: EloBandConfig(min=2000, max=2300, target_players=2),
    EloBand.MASTER: EloBandConfig(min=2300, max=3500, target_players=1),
}


def classify_elo_band(elo: float) -> EloBand:
    if elo < 1400:
        return EloBand.BEGINNER
    if elo < 1700:
        return EloBand.INTERMEDIATE
    if elo < 2000:
        return EloBand.ADVANCED
    if elo < 2300:
        return EloBand.EXPERT
    return EloBand.MASTER


class PlayerEntry(BaseModel):
    username: str
    band: EloBand
    estimated_elo: int


class DatasetRef(BaseModel):
    """Pointer to a cached per-player dataset file."""
    name: str
    username: str
    band: EloBand
    elo: int
    game_count: int
    path: str


# =============================================================================
# Metrics
# =============================================================================


class PhaseMetrics(BaseModel):
    positions: int = 0
    match_rate: float = 0.0
    top_n_rate: float = 0.0
    avg_cpl: float = math.nan
    bot_avg_cpl: float = math.nan

    @field_validator("avg_cpl", "bot_avg_cpl", mode="before")
    @classmethod
    def _restore_missing(cls, v: Any) -> float:
        return nan_safe(v)


class PhaseBreakdown(BaseModel):
    opening: PhaseMetrics = Field(default_factory=PhaseMetrics)
    middlegame: PhaseMetrics = Field(default_factory=PhaseMetrics)
    endgame: PhaseMetrics = Field(default_factory=PhaseMetrics)


class Metrics(BaseModel):
    """Accuracy of the bot against one dataset, or a weighted aggregate.

    ``avg_actual_cpl`` is the player's average centipawn loss, ``avg_bot_cpl``
    the bot's over the same positions, ``cpl_delta`` their absolute gap.
    """
    total_positions: int = 0
    match_rate: float = 0.0
    top_n_rate: float = 0.0
    book_coverage: float = 0.0
    avg_actual_cpl: float = math.nan
    avg_bot_cpl: float = math.nan
    cpl_delta: float = math.nan
    by_phase: PhaseBreakdown = Field(default_factory=PhaseBreakdown)

    @field_validator("avg_actual_cpl", "avg_bot_cpl", "cpl_delta", mode="before")
    @classmethod
    def _restore_missing(cls, v: Any) -> float:
        return nan_safe(v)

    def phase(self, name: str) -> PhaseMetrics:
        return getattr(self.by_phase, name)


class DatasetMetrics(BaseModel):
    dataset: str
    elo: int
    metrics: Metrics


# =============================================================================
# Experiments
# =============================================================================


class ExperimentSpec(BaseModel):
    id: str
    parameter: str
    description: str
    config_override: Dict[str, Any]
    datasets: List[str]
    max_positions: Optional[int] = None
    seed: int
    status: ExperimentStatus = ExperimentStatus.PENDING
    triage_score: Optional[float] = None


class SweepPlan(BaseModel):
    base_config: BotConfig
    baseline_label: str = "baseline"
    # Applies to the baseline and every experiment of the plan
    position_cap: Optional[int] = None
    fast_mode: bool = True
    experiments: List[ExperimentSpec] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)
    status: PlanStatus = PlanStatus.PENDING


class AggregatedResult(BaseModel):
    experiment_id: str
    parameter: str
    description: str
    config_override: Dict[str, Any] = Field(default_factory=dict)
    dataset_metrics: List[DatasetMetrics] = Field(default_factory=list)
    aggregated_metrics: Metrics = Field(default_factory=Metrics)
    composite_score: float = 0.0
    score_delta: float = 0.0


class SweepRecord(BaseModel):
    """Sweep results for one cycle, rewritten after every experiment."""
    cycle: int
    seed: int
    base_config: BotConfig
    baseline: Optional[AggregatedResult] = None
    triage_baseline: Optional[AggregatedResult] = None
    triage_datasets: List[str] = Field(default_factory=list)
    experiments: List[AggregatedResult] = Field(default_factory=list)
    timestamp: str = Field(default_factory=utc_now)


# =============================================================================
# Proposals and history
# =============================================================================


class ConfigChange(BaseModel):
    path: str
    old_value: Any = None
    new_value: Any = None
    score_delta: float = 0.0
    description: str = ""


class Proposal(BaseModel):
    cycle: int
    timestamp: str = Field(default_factory=utc_now)
    baseline_score: float
    baseline_metrics: Metrics
    baseline_dataset_metrics: List[DatasetMetrics] = Field(default_factory=list)
    ranked_experiments: List[AggregatedResult] = Field(default_factory=list)
    experiments_run: int = 0
    proposed_config: BotConfig
    config_changes: List[ConfigChange] = Field(default_factory=list)
    summary: str = ""
    code_proposals: List[str] = Field(default_factory=list)
    next_priorities: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    regression_summary: Optional[str] = None
    advisory_used: bool = False


class CycleRecord(BaseModel):
    cycle: int
    timestamp: str = Field(default_factory=utc_now)
    datasets_used: List[str] = Field(default_factory=list)
    experiments_run: int = 0
    best_score_delta: float = 0.0
    accepted: bool
    config_changes: List[ConfigChange] = Field(default_factory=list)
    baseline_score: Optional[float] = None
    baseline_metrics: Optional[Metrics] = None
    baseline_dataset_metrics: List[DatasetMetrics] = Field(default_factory=list)


class TunerState(BaseModel):
    version: int = STATE_VERSION
    cycle: int = 1
    phase: TunerPhase = TunerPhase.IDLE
    player_pool: List[PlayerEntry] = Field(default_factory=list)
    datasets: List[DatasetRef] = Field(default_factory=list)
    current_plan: Optional[SweepPlan] = None
    best_config: BotConfig = Field(default_factory=lambda: DEFAULT_CONFIG.model_copy(deep=True))
    completed_cycles: List[CycleRecord] = Field(default_factory=list)
    accepted_changes: List[ConfigChange] = Field(default_factory=list)
    pending_proposal: Optional[str] = None
    last_checkpoint: str = Field(default_factory=utc_now)
