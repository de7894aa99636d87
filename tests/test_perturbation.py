"""Tests for the parameter registry and variant generation."""

import pytest

from tuner.config.bot_config import (
    BotConfig,
    ConfigPath,
    get_config_value,
    merge_config,
    values_equal,
)
from tuner.loop.parameter_registry import (
    PARAMETER_REGISTRY,
    TunableParameter,
    additive,
    explicit,
    multiplicative,
    tier_offset,
    tier_scale,
)
from tuner.loop.perturbation import generate_all_variants, generate_variants


def _registry_entry(path: ConfigPath) -> TunableParameter:
    return next(p for p in PARAMETER_REGISTRY if p.path == path)


class TestPolicies:
    """Tests for perturbation policies."""

    def test_additive_clamps_at_floor(self):
        values = [c.value for c in additive([-25, 25, 50], floor=25)(40)]
        assert values == [25, 65, 90]

    def test_additive_drops_candidates_equal_to_current(self):
        values = [c.value for c in additive([-1, 1, 2], floor=2)(2)]
        assert values == [3, 4]

    def test_candidates_are_deduplicated(self):
        values = [c.value for c in additive([-5, -10], floor=0)(3)]
        assert values == [0]

    def test_multiplicative_integer(self):
        values = [c.value for c in multiplicative([0.6, 1.5], integer=True)(50)]
        assert values == [30, 75]

    def test_explicit_labels(self):
        candidates = explicit(lambda n: [0, n + 1])(1)
        assert [c.label for c in candidates] == ["1 -> 0", "1 -> 2"]

    def test_tier_scale_touches_low_middle_high(self):
        tiers = [[5, 150], [10, 90], [15, 45], [20, 15]]
        candidates = tier_scale(up=1.3, down=0.7)(tiers)

        assert len(candidates) == 6
        assert candidates[0].value[0] == [5, 195]
        assert candidates[1].value[0] == [5, 105]
        assert candidates[0].label == "tier[0] x1.3 (skill<=5: 150 -> 195)"
        # Input table untouched
        assert tiers[0] == [5, 150]

    def test_tier_offset_only_lowers_above_threshold(self):
        candidates = tier_offset(step=2)([[3, 3], [10, 12]])
        labels = [c.label for c in candidates]
        assert "tier[0] +2 (skill<=3: 3 -> 5)" in labels
        assert not any(label.startswith("tier[0] -") for label in labels)
        assert "tier[1] -2 (skill<=10: 12 -> 10)" in labels


class TestRegistry:
    def test_paths_are_unique(self):
        paths = [p.path for p in PARAMETER_REGISTRY]
        assert len(paths) == len(set(paths))

    def test_temperature_table_is_explored_first(self):
        first = min(PARAMETER_REGISTRY, key=lambda p: p.priority)
        assert first.path == ConfigPath.BOLTZMANN_TEMPERATURE_BY_SKILL

    def test_every_entry_produces_candidates_on_default(self):
        config = BotConfig()
        for param in PARAMETER_REGISTRY:
            assert generate_variants(config, param), param.path.value


class TestGenerateVariants:
    """Tests for variant generation."""

    def test_variant_fields(self):
        param = _registry_entry(ConfigPath.ERROR_MISTAKE)
        variants = generate_variants(BotConfig(), param)

        assert [v.value for v in variants] == [75, 125, 150]
        assert variants[0].override == {"error": {"mistake": 75}}
        assert variants[0].description == "Mistake threshold: 100 -> 75"
        assert variants[0].parameter == "error.mistake"

    def test_all_variants_sorted_by_priority(self):
        variants = generate_all_variants(BotConfig())
        priorities = [v.priority for v in variants]
        assert priorities == sorted(priorities)
        assert variants[0].parameter == "boltzmann.temperature_by_skill"

    @pytest.mark.parametrize("cap", [1, 5, 25])
    def test_cap_truncates(self, cap):
        assert len(generate_all_variants(BotConfig(), cap)) == cap

    def test_every_variant_changes_exactly_its_path(self):
        base = BotConfig()
        for variant in generate_all_variants(base):
            merged = merge_config(base, variant.override)
            assert not values_equal(
                get_config_value(merged, variant.parameter),
                get_config_value(base, variant.parameter),
            )

    def test_deterministic(self):
        a = generate_all_variants(BotConfig(), 30)
        b = generate_all_variants(BotConfig(), 30)
        assert [v.override for v in a] == [v.override for v in b]
