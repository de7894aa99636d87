"""Tests for durable tuner state and sweep records."""

import json
import math

from tuner.config.bot_config import BotConfig, merge_config
from tuner.data.player_pool import SEED_PLAYERS
from tuner.models import CycleRecord, TunerPhase
from tuner.state.store import StateStore, create_initial_state


class TestStateStore:
    """Tests for loading and checkpointing TunerState."""

    def test_load_missing_returns_none(self, store):
        assert store.load() is None

    def test_get_or_create_initializes_and_saves(self, store):
        state = store.get_or_create()
        assert state.cycle == 1
        assert state.phase == TunerPhase.IDLE
        assert len(state.player_pool) == len(SEED_PLAYERS)
        assert state.best_config == BotConfig()
        assert store.state_path.exists()

    def test_round_trip_preserves_phase_cycle_and_config(self, store):
        state = create_initial_state()
        state.cycle = 3
        state.phase = TunerPhase.SWEEP
        state.best_config = merge_config(state.best_config, {"error": {"mistake": 125}})
        store.checkpoint(state, "test")

        loaded = store.load()
        assert loaded.cycle == 3
        assert loaded.phase == TunerPhase.SWEEP
        assert loaded.best_config.error.mistake == 125
        assert loaded.best_config.error.blunder == 300

    def test_nan_restored_after_reload(self, store, metrics_factory):
        state = create_initial_state()
        state.completed_cycles.append(CycleRecord(
            cycle=1, accepted=True, baseline_score=0.5,
            baseline_metrics=metrics_factory(),
        ))
        store.save(state)

        raw = json.loads(store.state_path.read_text())
        assert raw["completed_cycles"][0]["baseline_metrics"]["avg_bot_cpl"] is None

        loaded = store.load()
        metrics = loaded.completed_cycles[0].baseline_metrics
        assert math.isnan(metrics.avg_bot_cpl)
        assert math.isnan(metrics.cpl_delta)
        assert metrics.match_rate == 0.5

    def test_missing_config_sections_are_backfilled(self, store):
        store.save(create_initial_state())
        raw = json.loads(store.state_path.read_text())
        del raw["best_config"]["trie"]
        raw["best_config"]["error"] = {"mistake": 80}
        store.state_path.write_text(json.dumps(raw))

        loaded = store.load()
        assert loaded.best_config.trie.min_games == 3
        assert loaded.best_config.error.mistake == 80
        assert loaded.best_config.error.blunder == 300

    def test_corrupt_state_starts_fresh(self, store):
        store.state_path.parent.mkdir(parents=True, exist_ok=True)
        store.state_path.write_text("{not json")

        assert store.load() is None
        state = store.get_or_create()
        assert state.cycle == 1

    def test_save_updates_checkpoint_time(self, store):
        state = create_initial_state()
        state.last_checkpoint = "2000-01-01T00:00:00+00:00"
        store.save(state)
        assert state.last_checkpoint != "2000-01-01T00:00:00+00:00"

    def test_no_temp_files_left_behind(self, store):
        store.save(create_initial_state())
        leftovers = [p for p in store.root_dir.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_export_best_config(self, store):
        state = create_initial_state()
        path = store.export_best_config(state)
        assert json.loads(path.read_text())["error"] == {"mistake": 100, "blunder": 300}


class TestSweepRecords:
    """Tests for per-cycle sweep record files."""

    def test_round_trip(self, store, record_factory, experiment_factory):
        record = record_factory([experiment_factory(0.01)], cycle=2)
        store.save_sweep_record(record)

        loaded = store.load_sweep_record(2)
        assert loaded.cycle == 2
        assert loaded.experiments[0].score_delta == 0.01
        assert math.isnan(loaded.baseline.aggregated_metrics.avg_bot_cpl)

    def test_missing_record(self, store):
        assert store.load_sweep_record(5) is None

    def test_corrupt_record_is_ignored(self, store):
        path = store.sweep_record_path(1)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("garbage")
        assert store.load_sweep_record(1) is None

    def test_historical_records_ordered_and_filtered(self, store, record_factory):
        for cycle in (3, 1, 2, 4):
            store.save_sweep_record(record_factory(cycle=cycle))
        no_baseline = record_factory(cycle=5)
        no_baseline.baseline = None
        store.save_sweep_record(no_baseline)

        assert store.sweep_cycles() == [1, 2, 3, 4, 5]
        assert [r.cycle for r in store.historical_records(4)] == [1, 2, 3]
        assert [r.cycle for r in store.historical_records(10)] == [1, 2, 3, 4]

    def test_no_results_dir(self, tmp_path):
        assert StateStore(tmp_path / "empty").sweep_cycles() == []
