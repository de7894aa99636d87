"""Bot configuration schema.

Typed mirror of the move-selection bot's configuration, the known-good
default, the one-level merge used to apply partial overrides, and the
closed set of dot-paths the tuner may read or write.
"""

from __future__ import annotations

import copy
import json
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from tuner.errors import ConfigurationError


class _Section(BaseModel):
    class Config:
        extra = "forbid"


class EloRange(_Section):
    min: int = 1100
    max: int = 2800


class SkillRange(_Section):
    min: int = 0
    max: int = 20


class PhaseConfig(_Section):
    """Material boundaries between opening, middlegame and endgame."""
    opening_above: int = 10
    endgame_at_or_below: int = 6


class ErrorConfig(_Section):
    """Centipawn loss thresholds classifying mistakes and blunders."""
    mistake: int = 100
    blunder: int = 300


class DynamicSkillConfig(_Section):
    scale: float = -3
    perfect_phase_bonus: float = 6
    min_overall_moves: int = 50
    min_phase_moves: int = 10


class BoltzmannConfig(_Section):
    """Softmax move sampling over the engine's top candidate lines.

    ``temperature_by_skill`` is a tier table of ``[max_skill, temperature]``.
    """
    multi_pv_count: int = 4
    temperature_floor: float = 0.1
    temperature_scale: float = 15
    temperature_by_skill: List[List[float]] = Field(
        default_factory=lambda: [[5, 150], [10, 90], [15, 45], [20, 15]]
    )


class ComplexityDepthConfig(_Section):
    capture_threshold: int = 6
    quiet_threshold: int = 1
    tactical_bonus: int = 2
    quiet_reduction: int = 1


class MoveStyleConfig(_Section):
    influence: float = 0.5
    skill_damping: float = 0.7
    capture_bonus: float = 20
    check_bonus: float = 15
    quiet_bonus: float = 10


class TrieConfig(_Section):
    """Opening book built from the player's own games."""
    max_ply: int = 40
    min_games: int = 3


class ThinkTimeConfig(_Section):
    enabled: bool = True
    base_by_phase: Dict[str, int] = Field(
        default_factory=lambda: {"opening": 1500, "middlegame": 3000, "endgame": 2500}
    )
    book_move_range: List[int] = Field(default_factory=lambda: [500, 2000])
    difficulty_bonus_max: int = 2000
    close_eval_threshold: int = 20
    jitter: int = 1000
    minimum: int = 300


class BotConfig(BaseModel):
    """Full bot configuration."""
    elo: EloRange = Field(default_factory=EloRange)
    skill: SkillRange = Field(default_factory=SkillRange)
    phase: PhaseConfig = Field(default_factory=PhaseConfig)
    error: ErrorConfig = Field(default_factory=ErrorConfig)
    dynamic_skill: DynamicSkillConfig = Field(default_factory=DynamicSkillConfig)
    boltzmann: BoltzmannConfig = Field(default_factory=BoltzmannConfig)
    depth_by_skill: List[List[int]] = Field(
        default_factory=lambda: [
            [3, 5], [6, 7], [9, 10], [12, 12], [15, 15], [17, 17], [19, 20], [20, 22],
        ]
    )
    complexity_depth: ComplexityDepthConfig = Field(default_factory=ComplexityDepthConfig)
    move_style: MoveStyleConfig = Field(default_factory=MoveStyleConfig)
    trie: TrieConfig = Field(default_factory=TrieConfig)
    think_time: ThinkTimeConfig = Field(default_factory=ThinkTimeConfig)

    class Config:
        extra = "forbid"


DEFAULT_CONFIG = BotConfig()


class ConfigPath(str, Enum):
    """Addressable configuration paths, at most two segments deep."""
    ELO_MIN = "elo.min"
    ELO_MAX = "elo.max"
    SKILL_MIN = "skill.min"
    SKILL_MAX = "skill.max"
    PHASE_OPENING_ABOVE = "phase.opening_above"
    PHASE_ENDGAME_AT_OR_BELOW = "phase.endgame_at_or_below"
    ERROR_MISTAKE = "error.mistake"
    ERROR_BLUNDER = "error.blunder"
    DYNAMIC_SKILL_SCALE = "dynamic_skill.scale"
    DYNAMIC_SKILL_PERFECT_PHASE_BONUS = "dynamic_skill.perfect_phase_bonus"
    DYNAMIC_SKILL_MIN_OVERALL_MOVES = "dynamic_skill.min_overall_moves"
    DYNAMIC_SKILL_MIN_PHASE_MOVES = "dynamic_skill.min_phase_moves"
    BOLTZMANN_MULTI_PV_COUNT = "boltzmann.multi_pv_count"
    BOLTZMANN_TEMPERATURE_FLOOR = "boltzmann.temperature_floor"
    BOLTZMANN_TEMPERATURE_SCALE = "boltzmann.temperature_scale"
    BOLTZMANN_TEMPERATURE_BY_SKILL = "boltzmann.temperature_by_skill"
    DEPTH_BY_SKILL = "depth_by_skill"
    COMPLEXITY_CAPTURE_THRESHOLD = "complexity_depth.capture_threshold"
    COMPLEXITY_QUIET_THRESHOLD = "complexity_depth.quiet_threshold"
    COMPLEXITY_TACTICAL_BONUS = "complexity_depth.tactical_bonus"
    COMPLEXITY_QUIET_REDUCTION = "complexity_depth.quiet_reduction"
    MOVE_STYLE_INFLUENCE = "move_style.influence"
    MOVE_STYLE_SKILL_DAMPING = "move_style.skill_damping"
    MOVE_STYLE_CAPTURE_BONUS = "move_style.capture_bonus"
    MOVE_STYLE_CHECK_BONUS = "move_style.check_bonus"
    MOVE_STYLE_QUIET_BONUS = "move_style.quiet_bonus"
    TRIE_MAX_PLY = "trie.max_ply"
    TRIE_MIN_GAMES = "trie.min_games"
    THINK_TIME_ENABLED = "think_time.enabled"
    THINK_TIME_BASE_BY_PHASE = "think_time.base_by_phase"
    THINK_TIME_BOOK_MOVE_RANGE = "think_time.book_move_range"
    THINK_TIME_DIFFICULTY_BONUS_MAX = "think_time.difficulty_bonus_max"
    THINK_TIME_CLOSE_EVAL_THRESHOLD = "think_time.close_eval_threshold"
    THINK_TIME_JITTER = "think_time.jitter"
    THINK_TIME_MINIMUM = "think_time.minimum"

    @property
    def parts(self) -> Tuple[str, ...]:
        return tuple(self.value.split("."))


def resolve_path(path: ConfigPath | str) -> ConfigPath:
    """Validate a dot-path against the closed set of addressable paths."""
    if isinstance(path, ConfigPath):
        return path
    try:
        return ConfigPath(path)
    except ValueError:
        raise ConfigurationError(
            f"Unknown config path: {path}", context={"path": path}
        ) from None


def get_config_value(config: BotConfig, path: ConfigPath | str) -> Any:
    """Read the value at ``path``; containers are returned as copies."""
    value: Any = config
    for part in resolve_path(path).parts:
        value = getattr(value, part)
    if isinstance(value, BaseModel):
        return value.model_dump()
    return copy.deepcopy(value)


def build_override(path: ConfigPath | str, value: Any) -> Dict[str, Any]:
    """Build the partial config that sets ``path`` to ``value``."""
    parts = resolve_path(path).parts
    if len(parts) == 1:
        return {parts[0]: value}
    return {parts[0]: {parts[1]: value}}


def set_config_value(config: BotConfig, path: ConfigPath | str, value: Any) -> BotConfig:
    """Return a new config with ``path`` set to ``value``."""
    return merge_config(config, build_override(path, value))


def merge_config(base: BotConfig | Dict[str, Any], partial: Optional[Dict[str, Any]]) -> BotConfig:
    """Merge a partial config over ``base``, one level deep.

    Nested sections present in both are dict-merged so keys the partial
    omits are preserved. Lists and scalars are replaced wholesale, as is
    anything nested two levels down (e.g. ``think_time.base_by_phase``).
    """
    merged = base.model_dump() if isinstance(base, BotConfig) else copy.deepcopy(base)
    for key, value in (partial or {}).items():
        current = merged.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            merged[key] = {**current, **copy.deepcopy(value)}
        else:
            merged[key] = copy.deepcopy(value)
    try:
        return BotConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(
            "Merged config failed validation",
            context={"errors": e.error_count(), "detail": str(e).splitlines()[0]},
        ) from e


def first_override_leaf(override: Dict[str, Any]) -> Optional[Tuple[str, Any]]:
    """Return ``(dot_path, value)`` for the first leaf of an override."""
    for key, value in override.items():
        if isinstance(value, dict) and value:
            sub_key, sub_value = next(iter(value.items()))
            return f"{key}.{sub_key}", sub_value
        return key, value
    return None


def _normalize(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def values_equal(a: Any, b: Any) -> bool:
    """Structural equality as the values would serialize (150 == 150.0)."""
    return json.dumps(_normalize(a), sort_keys=True) == json.dumps(_normalize(b), sort_keys=True)


def diff_configs(old: BotConfig, new: BotConfig) -> List[Tuple[str, Any, Any]]:
    """``(path, old_value, new_value)`` for every addressable path that differs."""
    diffs = []
    for path in ConfigPath:
        before = get_config_value(old, path)
        after = get_config_value(new, path)
        if not values_equal(before, after):
            diffs.append((path.value, before, after))
    return diffs
