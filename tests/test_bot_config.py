"""Tests for the bot config schema, path helpers and merge semantics."""

import pytest

from tuner.config.bot_config import (
    DEFAULT_CONFIG,
    BotConfig,
    ConfigPath,
    build_override,
    diff_configs,
    first_override_leaf,
    get_config_value,
    merge_config,
    resolve_path,
    set_config_value,
    values_equal,
)
from tuner.errors import ConfigurationError


class TestConfigPaths:
    """Tests for dot-path resolution and access."""

    def test_every_path_resolves_on_default(self):
        for path in ConfigPath:
            assert len(path.parts) <= 2
            assert get_config_value(DEFAULT_CONFIG, path) is not None

    def test_unknown_path_raises(self):
        with pytest.raises(ConfigurationError):
            resolve_path("error.nonexistent")

    def test_get_returns_copy(self):
        table = get_config_value(DEFAULT_CONFIG, "depth_by_skill")
        table[0][1] = 99
        assert DEFAULT_CONFIG.depth_by_skill[0][1] == 5

    def test_build_override_depth(self):
        assert build_override("depth_by_skill", [[20, 4]]) == {"depth_by_skill": [[20, 4]]}
        assert build_override(ConfigPath.ERROR_MISTAKE, 125) == {"error": {"mistake": 125}}

    def test_set_value_returns_new_config(self):
        updated = set_config_value(DEFAULT_CONFIG, "error.mistake", 150)
        assert updated.error.mistake == 150
        assert updated.error.blunder == 300
        assert DEFAULT_CONFIG.error.mistake == 100


class TestMergeConfig:
    """Tests for the one-level merge."""

    def test_nested_section_keeps_omitted_keys(self):
        merged = merge_config(BotConfig(), {"boltzmann": {"temperature_floor": 0.2}})
        assert merged.boltzmann.temperature_floor == 0.2
        assert merged.boltzmann.multi_pv_count == 4
        assert merged.boltzmann.temperature_by_skill == [[5, 150], [10, 90], [15, 45], [20, 15]]

    def test_lists_replace_wholesale(self):
        merged = merge_config(BotConfig(), {"depth_by_skill": [[20, 4]]})
        assert merged.depth_by_skill == [[20, 4]]

    def test_second_level_dicts_replace_wholesale(self):
        merged = merge_config(
            BotConfig(), {"think_time": {"base_by_phase": {"opening": 100}}}
        )
        assert merged.think_time.base_by_phase == {"opening": 100}
        assert merged.think_time.jitter == 1000

    def test_none_partial_is_identity(self):
        assert merge_config(BotConfig(), None) == BotConfig()

    def test_unknown_key_is_rejected(self):
        with pytest.raises(ConfigurationError):
            merge_config(BotConfig(), {"error": {"typo": 1}})

    def test_base_is_not_mutated(self):
        base = BotConfig()
        merge_config(base, {"error": {"mistake": 125}})
        assert base.error.mistake == 100


class TestDiffHelpers:
    def test_values_equal_ignores_int_float(self):
        assert values_equal(150, 150.0)
        assert values_equal([[5, 150.0]], [[5, 150]])
        assert not values_equal(150, 151)

    def test_diff_configs_lists_changed_paths(self):
        new = merge_config(BotConfig(), {"error": {"mistake": 125}, "trie": {"min_games": 4}})
        diffs = diff_configs(BotConfig(), new)
        assert ("error.mistake", 100, 125) in diffs
        assert ("trie.min_games", 3, 4) in diffs
        assert len(diffs) == 2

    def test_diff_of_identical_configs_is_empty(self):
        assert diff_configs(BotConfig(), BotConfig()) == []

    def test_first_override_leaf(self):
        assert first_override_leaf({"error": {"mistake": 125}}) == ("error.mistake", 125)
        assert first_override_leaf({"depth_by_skill": [[1, 2]]}) == ("depth_by_skill", [[1, 2]])
        assert first_override_leaf({}) is None
