"""Tunable parameter registry.

Each entry names a config path, a priority (1 is explored first) and a
perturbation policy that maps the current value to labeled candidates.
Policies are chosen by value shape: multiplicative scaling for smoothing
coefficients, clamped additive deltas for thresholds, per-tier offsets for
lookup tables, small integer steps for counts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, NamedTuple, Optional, Sequence

from tuner.config.bot_config import ConfigPath, values_equal


class Candidate(NamedTuple):
    value: Any
    label: str


PerturbFn = Callable[[Any], List[Candidate]]


@dataclass(frozen=True)
class TunableParameter:
    path: ConfigPath
    name: str
    priority: int
    description: str
    perturb: PerturbFn


def _fmt(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _dedupe(current: Any, values: Sequence[Any]) -> List[Any]:
    out: List[Any] = []
    for v in values:
        if values_equal(v, current) or any(values_equal(v, seen) for seen in out):
            continue
        out.append(v)
    return out


def _scalar_candidates(current: Any, values: Sequence[Any]) -> List[Candidate]:
    return [
        Candidate(v, f"{_fmt(current)} -> {_fmt(v)}")
        for v in _dedupe(current, values)
    ]


# =============================================================================
# Perturbation policies
# =============================================================================


def additive(deltas: Sequence[float], floor: Optional[float] = None) -> PerturbFn:
    """Clamped additive deltas, for thresholds and bonuses."""
    def perturb(n: Any) -> List[Candidate]:
        values = [n + d if floor is None else max(floor, n + d) for d in deltas]
        return _scalar_candidates(n, values)
    return perturb


def multiplicative(
    factors: Sequence[float], digits: Optional[int] = 2, integer: bool = False
) -> PerturbFn:
    """Scale by each factor, for smoothing coefficients."""
    def perturb(n: Any) -> List[Candidate]:
        if integer:
            values = [int(round(n * f)) for f in factors]
        else:
            values = [round(n * f, digits) for f in factors]
        return _scalar_candidates(n, values)
    return perturb


def explicit(fn: Callable[[Any], Sequence[Any]]) -> PerturbFn:
    """Candidates computed directly from the current value."""
    def perturb(n: Any) -> List[Candidate]:
        return _scalar_candidates(n, fn(n))
    return perturb


def _tier_indices(tiers: Sequence[Any]) -> List[int]:
    if not tiers:
        return []
    return sorted({0, len(tiers) // 2, len(tiers) - 1})


def tier_scale(up: float, down: float, floor: int = 1) -> PerturbFn:
    """Scale one tier's value at a time (low, middle and high tiers)."""
    def perturb(tiers: Any) -> List[Candidate]:
        out: List[Candidate] = []
        for i in _tier_indices(tiers):
            skill, value = tiers[i]
            options = [(up, round(value * up))]
            if value > floor:
                options.append((down, max(floor, round(value * down))))
            for factor, new_value in options:
                if values_equal(new_value, value):
                    continue
                table = [list(t) for t in tiers]
                table[i][1] = new_value
                out.append(Candidate(
                    table,
                    f"tier[{i}] x{factor} (skill<={_fmt(skill)}: "
                    f"{_fmt(value)} -> {_fmt(new_value)})",
                ))
        return out
    return perturb


def tier_offset(step: int, floor: int = 1, lower_above: int = 3) -> PerturbFn:
    """Shift one tier's value by +/- step; only tiers above ``lower_above`` go down."""
    def perturb(tiers: Any) -> List[Candidate]:
        out: List[Candidate] = []
        for i in _tier_indices(tiers):
            skill, value = tiers[i]
            options = [("+", value + step)]
            if value > lower_above:
                options.append(("-", max(floor, value - step)))
            for sign, new_value in options:
                if new_value == value:
                    continue
                table = [list(t) for t in tiers]
                table[i][1] = new_value
                out.append(Candidate(
                    table,
                    f"tier[{i}] {sign}{step} (skill<={_fmt(skill)}: "
                    f"{_fmt(value)} -> {_fmt(new_value)})",
                ))
        return out
    return perturb


# =============================================================================
# Registry
# =============================================================================


PARAMETER_REGISTRY: List[TunableParameter] = [
    TunableParameter(
        ConfigPath.BOLTZMANN_TEMPERATURE_BY_SKILL, "Temperature by skill", 1,
        "Sampling temperature per skill tier; dominates move variety",
        tier_scale(up=1.3, down=0.7),
    ),
    TunableParameter(
        ConfigPath.DEPTH_BY_SKILL, "Depth by skill", 2,
        "Search depth per skill tier",
        tier_offset(step=2),
    ),
    TunableParameter(
        ConfigPath.MOVE_STYLE_INFLUENCE, "Style influence", 3,
        "How strongly the player's style profile biases candidate moves",
        explicit(lambda n: [0, round(n * 0.5, 2), round(min(1, n * 1.5), 2), 1]),
    ),
    TunableParameter(
        ConfigPath.MOVE_STYLE_SKILL_DAMPING, "Style skill damping", 3,
        "Style influence reduction at higher skill",
        explicit(lambda n: [0, round(max(0, n - 0.3), 2), 1]),
    ),
    TunableParameter(
        ConfigPath.DYNAMIC_SKILL_SCALE, "Dynamic skill scale", 3,
        "Skill adjustment per unit of phase CPL difference",
        additive([-1, -0.5, 0.5, 1]),
    ),
    TunableParameter(
        ConfigPath.DYNAMIC_SKILL_PERFECT_PHASE_BONUS, "Perfect phase bonus", 4,
        "Skill bonus for phases the player plays near-perfectly",
        additive([-2, 2, 4], floor=0),
    ),
    TunableParameter(
        ConfigPath.COMPLEXITY_CAPTURE_THRESHOLD, "Capture complexity threshold", 4,
        "Capture count that marks a position as tactical",
        additive([-2, 2, 4], floor=2),
    ),
    TunableParameter(
        ConfigPath.COMPLEXITY_QUIET_THRESHOLD, "Quiet complexity threshold", 4,
        "Capture count at or below which a position counts as quiet",
        explicit(lambda n: [0, n + 1]),
    ),
    TunableParameter(
        ConfigPath.COMPLEXITY_TACTICAL_BONUS, "Tactical depth bonus", 4,
        "Extra search depth in tactical positions",
        additive([-1, 1], floor=1),
    ),
    TunableParameter(
        ConfigPath.ERROR_MISTAKE, "Mistake threshold", 5,
        "CPL at which a move counts as a mistake",
        additive([-25, 25, 50], floor=25),
    ),
    TunableParameter(
        ConfigPath.ERROR_BLUNDER, "Blunder threshold", 5,
        "CPL at which a move counts as a blunder",
        additive([-50, 50], floor=100),
    ),
    TunableParameter(
        ConfigPath.COMPLEXITY_QUIET_REDUCTION, "Quiet depth reduction", 5,
        "Search depth removed in quiet positions",
        explicit(lambda n: [0, n + 1]),
    ),
    TunableParameter(
        ConfigPath.MOVE_STYLE_CAPTURE_BONUS, "Capture bonus", 6,
        "Style bonus for captures",
        additive([-10, 10, 20], floor=0),
    ),
    TunableParameter(
        ConfigPath.MOVE_STYLE_CHECK_BONUS, "Check bonus", 6,
        "Style bonus for checks",
        additive([-10, 10, 20], floor=0),
    ),
    TunableParameter(
        ConfigPath.DYNAMIC_SKILL_MIN_OVERALL_MOVES, "Dynamic skill min moves", 6,
        "Moves required before dynamic skill adjusts",
        multiplicative([0.6, 1.5], integer=True),
    ),
    TunableParameter(
        ConfigPath.MOVE_STYLE_QUIET_BONUS, "Quiet bonus", 7,
        "Style bonus for quiet moves",
        additive([-10, 10, 20], floor=0),
    ),
    TunableParameter(
        ConfigPath.TRIE_MIN_GAMES, "Book min games", 7,
        "Games a line needs before the opening book plays it",
        additive([-1, 1, 2], floor=1),
    ),
    TunableParameter(
        ConfigPath.BOLTZMANN_TEMPERATURE_FLOOR, "Temperature floor", 8,
        "Lowest sampling temperature at any skill",
        multiplicative([0.5, 2, 3]),
    ),
    TunableParameter(
        ConfigPath.BOLTZMANN_MULTI_PV_COUNT, "Multi-PV count", 9,
        "Candidate lines considered for sampling",
        additive([-1, 1, 2], floor=2),
    ),
    TunableParameter(
        ConfigPath.PHASE_OPENING_ABOVE, "Opening boundary", 10,
        "Piece count above which the game is in the opening",
        additive([-1, 1], floor=6),
    ),
    TunableParameter(
        ConfigPath.PHASE_ENDGAME_AT_OR_BELOW, "Endgame boundary", 10,
        "Piece count at or below which the game is an endgame",
        additive([-1, 1], floor=2),
    ),
]
