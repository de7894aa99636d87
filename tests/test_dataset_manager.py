"""Tests for per-player dataset caching."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from tuner.data.dataset_manager import DatasetManager, load_dataset
from tuner.errors import DatasetError, PlayerNotFoundError
from tuner.models import DatasetRef, EloBand, PlayerEntry


def _game(user_id, rating, variant="standard", moves="e4 e5 Nf3", analysis=False):
    game = {
        "variant": variant,
        "moves": moves,
        "players": {
            "white": {"user": {"id": user_id}, "rating": rating},
            "black": {"user": {"id": "opponent"}, "rating": 1500},
        },
    }
    if analysis:
        game["analysis"] = [{"eval": 20}]
    return game


@pytest.fixture
def player():
    return PlayerEntry(username="Alice", band=EloBand.BEGINNER, estimated_elo=1300)


@pytest.fixture
def client():
    c = MagicMock()
    c.fetch_user.return_value = {"id": "alice", "username": "Alice"}
    c.fetch_games.return_value = [
        _game("alice", 1500, analysis=True),
        _game("alice", 1600),
        _game("alice", 1700, variant="chess960"),
        _game("alice", 1800, moves=""),
    ]
    return c


@pytest.fixture
def manager(tmp_path, client):
    return DatasetManager(tmp_path / "datasets", client, sleep=MagicMock())


class TestCreateForPlayer:
    """Tests for DatasetManager.create_for_player."""

    def test_fetch_filters_and_writes(self, manager, client, player):
        ref = manager.create_for_player(player, max_games=50, speeds=["blitz"])

        assert ref.name == "Alice"
        assert ref.username == "alice"
        assert ref.game_count == 2
        assert ref.elo == 1550
        assert ref.band == EloBand.INTERMEDIATE
        client.fetch_games.assert_called_once_with("Alice", 50, ["blitz"])
        manager._sleep.assert_called_once_with(1.5)

        record = json.loads(manager.dataset_path("Alice").read_text())
        assert record["game_count"] == 2
        assert record["games_with_evals"] == 1
        assert record["speeds"] == ["blitz"]
        assert "created_at" in record

    def test_fresh_cache_is_reused(self, manager, client, player):
        manager.create_for_player(player)
        client.reset_mock()

        ref = manager.create_for_player(player)

        assert ref.game_count == 2
        client.fetch_user.assert_not_called()
        client.fetch_games.assert_not_called()

    def test_stale_cache_is_refetched(self, manager, client, player):
        manager.create_for_player(player)
        path = manager.dataset_path("Alice")
        record = json.loads(path.read_text())
        record["created_at"] = (datetime.now(timezone.utc) - timedelta(days=8)).isoformat()
        path.write_text(json.dumps(record))
        client.reset_mock()

        manager.create_for_player(player)

        client.fetch_games.assert_called_once()

    def test_failed_rewrite_keeps_previous_file(self, manager, client, player):
        manager.create_for_player(player)
        path = manager.dataset_path("Alice")
        record = json.loads(path.read_text())
        record["created_at"] = (datetime.now(timezone.utc) - timedelta(days=8)).isoformat()
        previous = json.dumps(record)
        path.write_text(previous)

        with patch("tuner.state.store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                manager.create_for_player(player)

        assert path.read_text() == previous
        assert [p.name for p in manager.datasets_dir.iterdir()] == ["Alice.json"]

    def test_unreadable_cache_is_refetched(self, manager, client, player):
        manager.datasets_dir.mkdir(parents=True)
        manager.dataset_path("Alice").write_text("not json")

        assert manager.create_for_player(player) is not None
        client.fetch_games.assert_called_once()

    def test_missing_player_is_skipped(self, manager, client, player):
        client.fetch_user.side_effect = PlayerNotFoundError("Player not found")
        assert manager.create_for_player(player) is None
        assert not manager.dataset_path("Alice").exists()

    def test_no_standard_games_is_skipped(self, manager, client, player):
        client.fetch_games.return_value = [_game("alice", 1500, variant="atomic")]
        assert manager.create_for_player(player) is None


class TestCreateAll:
    def test_pauses_between_players_and_reports(self, tmp_path, client):
        sleep = MagicMock()
        manager = DatasetManager(
            tmp_path, client, user_call_delay=0.5, player_delay=2.0, sleep=sleep
        )
        players = [
            PlayerEntry(username=name, band=EloBand.BEGINNER, estimated_elo=1200)
            for name in ("a", "b", "c")
        ]
        seen = []

        refs = manager.create_all(players, on_dataset=seen.append)

        assert [r.name for r in refs] == ["a", "b", "c"]
        assert seen == refs
        delays = [call.args[0] for call in sleep.call_args_list]
        assert delays.count(2.0) == 2
        assert delays.count(0.5) == 3


class TestLoadDataset:
    def test_load(self, manager, player):
        ref = manager.create_for_player(player)
        assert load_dataset(ref)["name"] == "Alice"

    def test_missing_file_raises(self, tmp_path):
        ref = DatasetRef(name="x", username="x", band=EloBand.BEGINNER, elo=1200,
                         game_count=0, path=str(tmp_path / "x.json"))
        with pytest.raises(DatasetError):
            load_dataset(ref)
