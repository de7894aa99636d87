"""Variant generation: one-at-a-time perturbations of the best config."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from tuner.config.bot_config import BotConfig, build_override, get_config_value
from tuner.loop.parameter_registry import PARAMETER_REGISTRY, TunableParameter

logger = logging.getLogger(__name__)


@dataclass
class ConfigVariant:
    """A single-parameter change to the base config."""
    parameter: str
    name: str
    priority: int
    label: str
    description: str
    value: Any
    override: Dict[str, Any]


def generate_variants(config: BotConfig, param: TunableParameter) -> List[ConfigVariant]:
    current = get_config_value(config, param.path)
    if current is None:
        logger.warning(f"Config has no value at {param.path.value}, skipping")
        return []
    return [
        ConfigVariant(
            parameter=param.path.value,
            name=param.name,
            priority=param.priority,
            label=candidate.label,
            description=f"{param.name}: {candidate.label}",
            value=candidate.value,
            override=build_override(param.path, candidate.value),
        )
        for candidate in param.perturb(current)
    ]


def generate_all_variants(
    config: BotConfig,
    max_total: Optional[int] = None,
    registry: Sequence[TunableParameter] = PARAMETER_REGISTRY,
) -> List[ConfigVariant]:
    """Variants for every registered parameter, highest priority first.

    Parameters with equal priority keep registry order. The list is cut at
    ``max_total`` so a short sweep explores the most impactful knobs.
    """
    variants: List[ConfigVariant] = []
    for param in sorted(registry, key=lambda p: p.priority):
        variants.extend(generate_variants(config, param))
        if max_total is not None and len(variants) >= max_total:
            break
    if max_total is not None:
        variants = variants[:max_total]
    return variants
