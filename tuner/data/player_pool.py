"""Elo-stratified player pool."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from tuner.data.lichess_client import LichessClient
from tuner.errors import PlayerDataError, PlayerNotFoundError
from tuner.metrics import TUNER_PLAYER_VALIDATIONS
from tuner.models import ELO_BANDS, EloBand, PlayerEntry, classify_elo_band

logger = logging.getLogger(__name__)

SEED_PLAYERS: List[PlayerEntry] = [
    PlayerEntry(username="benjoboli", band=EloBand.BEGINNER, estimated_elo=1200),
    PlayerEntry(username="ElizavetaPetrova", band=EloBand.BEGINNER, estimated_elo=1200),
    PlayerEntry(username="biciado", band=EloBand.BEGINNER, estimated_elo=1300),
    PlayerEntry(username="Chess-Network", band=EloBand.INTERMEDIATE, estimated_elo=1500),
    PlayerEntry(username="Rodigheri", band=EloBand.INTERMEDIATE, estimated_elo=1700),
    PlayerEntry(username="Lance5500", band=EloBand.ADVANCED, estimated_elo=1850),
    PlayerEntry(username="Fins", band=EloBand.ADVANCED, estimated_elo=1950),
    PlayerEntry(username="opperwezen", band=EloBand.EXPERT, estimated_elo=2150),
    PlayerEntry(username="BeepBeepImAJeep", band=EloBand.EXPERT, estimated_elo=2250),
    PlayerEntry(username="penguingim1", band=EloBand.MASTER, estimated_elo=2700),
    PlayerEntry(username="DrNykterstein", band=EloBand.MASTER, estimated_elo=2850),
]

_PERF_KEYS = ("rapid", "blitz", "classical", "bullet")


def seed_pool() -> List[PlayerEntry]:
    return [p.model_copy() for p in SEED_PLAYERS]


def players_for_band(pool: Sequence[PlayerEntry], band: EloBand) -> List[PlayerEntry]:
    return [p for p in pool if p.band == band]


def bands_needing_players(pool: Sequence[PlayerEntry]) -> Dict[EloBand, int]:
    """Shortfall against each band's target, for bands below target."""
    needs: Dict[EloBand, int] = {}
    for band, config in ELO_BANDS.items():
        current = len(players_for_band(pool, band))
        if current < config.target_players:
            needs[band] = config.target_players - current
    return needs


def missing_seed_players(pool: Sequence[PlayerEntry]) -> List[PlayerEntry]:
    known = {p.username.lower() for p in pool}
    return [p.model_copy() for p in SEED_PLAYERS if p.username.lower() not in known]


def add_player(pool: List[PlayerEntry], entry: PlayerEntry) -> bool:
    """Append ``entry`` unless the username (case-insensitive) is present."""
    if any(p.username.lower() == entry.username.lower() for p in pool):
        return False
    pool.append(entry)
    return True


def estimate_elo_from_profile(profile: Dict[str, Any], fallback: int) -> int:
    perfs = profile.get("perfs") or {}
    ratings = [
        perfs[key]["rating"]
        for key in _PERF_KEYS
        if isinstance(perfs.get(key), dict) and perfs[key].get("rating")
    ]
    if not ratings:
        return fallback
    return round(sum(ratings) / len(ratings))


def validate_player(client: LichessClient, entry: PlayerEntry) -> Optional[PlayerEntry]:
    """Refresh a player's canonical username, Elo and band.

    Returns None when the account does not exist. Other API failures
    propagate so the caller can keep the entry and retry later.
    """
    try:
        profile = client.fetch_user(entry.username)
    except PlayerNotFoundError:
        return None
    elo = estimate_elo_from_profile(profile, entry.estimated_elo)
    return PlayerEntry(
        username=profile.get("username") or entry.username,
        band=classify_elo_band(elo),
        estimated_elo=elo,
    )


def validate_pool(
    pool: Sequence[PlayerEntry],
    client: LichessClient,
    delay_seconds: float = 1.5,
    sleep: Callable[[float], None] = time.sleep,
) -> List[PlayerEntry]:
    """Validate every player, dropping accounts that no longer exist.

    Players that fail for transient reasons (rate limits, network) are kept
    unchanged.
    """
    validated: List[PlayerEntry] = []
    for i, entry in enumerate(pool):
        try:
            result = validate_player(client, entry)
        except PlayerDataError as e:
            logger.warning(f"Could not validate {entry.username}, keeping as-is: {e}")
            TUNER_PLAYER_VALIDATIONS.labels(outcome="failed").inc()
            validated.append(entry)
        else:
            if result is None:
                logger.info(f"Removed {entry.username} (not found on Lichess)")
                TUNER_PLAYER_VALIDATIONS.labels(outcome="removed").inc()
            else:
                if result.band != entry.band:
                    logger.info(
                        f"{result.username} moved {entry.band.value} -> {result.band.value} "
                        f"({result.estimated_elo})"
                    )
                TUNER_PLAYER_VALIDATIONS.labels(outcome="valid").inc()
                validated.append(result)

        if i < len(pool) - 1:
            sleep(delay_seconds)
    return validated
