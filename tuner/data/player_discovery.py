"""Opponent mining to fill under-represented Elo bands.

Seed players' games contain plenty of active opponents at nearby ratings,
which is the easiest way to populate the lower bands.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from tuner.models import ELO_BANDS, EloBand, PlayerEntry, classify_elo_band


@dataclass
class OpponentInfo:
    username: str
    rating: int
    game_count: int


def extract_opponents(
    games: Iterable[Dict[str, Any]],
    known_username: str,
    exclude: Iterable[str] = (),
) -> List[OpponentInfo]:
    """Opponents of ``known_username``, most frequent first."""
    excluded = {name.lower() for name in exclude}
    seen: Dict[str, Dict[str, Any]] = {}

    for game in games:
        players = game.get("players") or {}
        white = players.get("white") or {}
        black = players.get("black") or {}
        white_id = (white.get("user") or {}).get("id")
        black_id = (black.get("user") or {}).get("id")
        if not white_id or not black_id:
            continue

        opponent = black if white_id.lower() == known_username.lower() else white
        user = opponent.get("user") or {}
        name = user.get("name") or user.get("id")
        rating = opponent.get("rating")
        if not name or not rating or name.lower() in excluded:
            continue

        entry = seen.setdefault(name.lower(), {"username": name, "ratings": []})
        entry["ratings"].append(rating)

    opponents = [
        OpponentInfo(
            username=e["username"],
            rating=round(sum(e["ratings"]) / len(e["ratings"])),
            game_count=len(e["ratings"]),
        )
        for e in seen.values()
    ]
    return sorted(opponents, key=lambda o: o.game_count, reverse=True)


def extract_all_opponents(
    games_by_player: Mapping[str, Sequence[Dict[str, Any]]],
    exclude: Iterable[str] = (),
) -> List[OpponentInfo]:
    """Merge opponents across players, averaging rating by game count."""
    excluded = list(exclude)
    merged: Dict[str, OpponentInfo] = {}
    for username, games in games_by_player.items():
        for opp in extract_opponents(games, username, excluded):
            key = opp.username.lower()
            existing = merged.get(key)
            if existing is None:
                merged[key] = OpponentInfo(opp.username, opp.rating, opp.game_count)
                continue
            total = existing.game_count + opp.game_count
            existing.rating = round(
                (existing.rating * existing.game_count + opp.rating * opp.game_count) / total
            )
            existing.game_count = total
    return sorted(merged.values(), key=lambda o: o.game_count, reverse=True)


def pick_opponents_for_bands(
    opponents: Sequence[OpponentInfo],
    pool: Sequence[PlayerEntry],
    max_per_band: int = 2,
) -> List[PlayerEntry]:
    """Most active opponents whose rating falls in each under-target band."""
    known = {p.username.lower() for p in pool}
    counts: Dict[EloBand, int] = {}
    for player in pool:
        counts[player.band] = counts.get(player.band, 0) + 1

    discovered: List[PlayerEntry] = []
    for band, config in ELO_BANDS.items():
        needed = min(max_per_band, config.target_players - counts.get(band, 0))
        if needed <= 0:
            continue
        candidates = [
            o for o in opponents
            if config.min <= o.rating < config.max and o.username.lower() not in known
        ]
        for opp in candidates[:needed]:
            discovered.append(PlayerEntry(
                username=opp.username,
                band=classify_elo_band(opp.rating),
                estimated_elo=opp.rating,
            ))
            known.add(opp.username.lower())
    return discovered
