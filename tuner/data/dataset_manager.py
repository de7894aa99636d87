"""Per-player test datasets cached on disk.

Each player's rated games are stored as one JSON file stamped with
``created_at``. A cached file younger than the freshness window is reused
instead of hitting the API again.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from tuner.data.lichess_client import LichessClient
from tuner.errors import DatasetError, PlayerDataError, PlayerNotFoundError
from tuner.metrics import TUNER_DATASET_FETCHES
from tuner.models import DatasetRef, PlayerEntry, classify_elo_band, utc_now
from tuner.state.store import atomic_write

logger = logging.getLogger(__name__)


def _standard_games(games: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [g for g in games if g.get("variant") == "standard" and g.get("moves")]


def _player_ratings(games: Sequence[Dict[str, Any]], user_id: str) -> List[int]:
    ratings = []
    for g in games:
        players = g.get("players") or {}
        white = players.get("white") or {}
        is_white = ((white.get("user") or {}).get("id") or "").lower() == user_id.lower()
        side = white if is_white else (players.get("black") or {})
        if side.get("rating"):
            ratings.append(side["rating"])
    return ratings


class DatasetManager:
    """Builds, caches and loads player datasets."""

    def __init__(
        self,
        datasets_dir: Path,
        client: LichessClient,
        max_age_days: float = 7.0,
        user_call_delay: float = 1.5,
        player_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.datasets_dir = Path(datasets_dir)
        self.client = client
        self.max_age = timedelta(days=max_age_days)
        self.user_call_delay = user_call_delay
        self.player_delay = player_delay
        self._sleep = sleep

    def dataset_path(self, username: str) -> Path:
        return self.datasets_dir / f"{username}.json"

    def _cached_ref(self, player: PlayerEntry, path: Path) -> Optional[DatasetRef]:
        if not path.exists():
            return None
        try:
            record = json.loads(path.read_text())
            created = datetime.fromisoformat(record["created_at"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable dataset {path}: {e}")
            return None
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        if datetime.now(timezone.utc) - created >= self.max_age:
            return None
        return DatasetRef(
            name=player.username,
            username=record.get("username", player.username),
            band=player.band,
            elo=record.get("estimated_elo", player.estimated_elo),
            game_count=record.get("game_count", 0),
            path=str(path),
        )

    def create_for_player(
        self,
        player: PlayerEntry,
        max_games: int = 100,
        speeds: Sequence[str] = ("blitz", "rapid"),
    ) -> Optional[DatasetRef]:
        """Fetch or reuse a player's dataset; None when the player is skipped."""
        self.datasets_dir.mkdir(parents=True, exist_ok=True)
        path = self.dataset_path(player.username)

        cached = self._cached_ref(player, path)
        if cached is not None:
            logger.info(f"Reusing cached dataset for {player.username} ({cached.game_count} games)")
            TUNER_DATASET_FETCHES.labels(outcome="cached").inc()
            return cached

        logger.info(f"Fetching games for {player.username} (max {max_games}, {','.join(speeds)})")
        try:
            user = self.client.fetch_user(player.username)
            self._sleep(self.user_call_delay)
            games = self.client.fetch_games(player.username, max_games, speeds)
        except PlayerNotFoundError:
            logger.info(f"Player {player.username} not found on Lichess, skipping")
            TUNER_DATASET_FETCHES.labels(outcome="failed").inc()
            return None
        except PlayerDataError as e:
            logger.warning(f"Error fetching games for {player.username}: {e}")
            TUNER_DATASET_FETCHES.labels(outcome="failed").inc()
            return None

        standard = _standard_games(games)
        if not standard:
            logger.info(f"No standard games found for {player.username}, skipping")
            TUNER_DATASET_FETCHES.labels(outcome="failed").inc()
            return None

        user_id = user.get("id") or player.username.lower()
        ratings = _player_ratings(standard, user_id)
        elo = round(sum(ratings) / len(ratings)) if ratings else player.estimated_elo
        with_evals = sum(1 for g in standard if g.get("analysis"))

        record = {
            "name": player.username,
            "username": user_id,
            "estimated_elo": elo,
            "speeds": list(speeds),
            "created_at": utc_now(),
            "game_count": len(standard),
            "games_with_evals": with_evals,
            "games": standard,
        }
        atomic_write(path, json.dumps(record, indent=2))
        logger.info(f"Saved {len(standard)} games ({with_evals} with evals) for {player.username}")
        TUNER_DATASET_FETCHES.labels(outcome="fetched").inc()

        return DatasetRef(
            name=player.username,
            username=user_id,
            band=classify_elo_band(elo),
            elo=elo,
            game_count=len(standard),
            path=str(path),
        )

    def create_all(
        self,
        players: Sequence[PlayerEntry],
        max_games: int = 100,
        speeds: Sequence[str] = ("blitz", "rapid"),
        on_dataset: Optional[Callable[[DatasetRef], None]] = None,
    ) -> List[DatasetRef]:
        """Create datasets for every player, pausing between players.

        ``on_dataset`` runs after each successful fetch so the caller can
        checkpoint.
        """
        refs: List[DatasetRef] = []
        for i, player in enumerate(players):
            ref = self.create_for_player(player, max_games, speeds)
            if ref is not None:
                refs.append(ref)
                if on_dataset is not None:
                    on_dataset(ref)
            if i < len(players) - 1:
                self._sleep(self.player_delay)
        return refs


def load_dataset(ref: DatasetRef) -> Dict[str, Any]:
    """Read a dataset's JSON record."""
    try:
        return json.loads(Path(ref.path).read_text())
    except (OSError, ValueError) as e:
        raise DatasetError("Failed to load dataset", context={"path": ref.path}) from e
