"""Lichess player-data client.

Thin ``requests`` wrapper over the two public endpoints the tuner needs.
Rate limiting is the caller's job: the gather phase sleeps between calls.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

from tuner.config.settings import TunerSettings
from tuner.errors import PlayerDataError, PlayerNotFoundError, RateLimitedError

logger = logging.getLogger(__name__)


class LichessClient:
    """Fetches player profiles and rated games."""

    def __init__(
        self,
        base_url: str = "https://lichess.org",
        token: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    @classmethod
    def from_settings(cls, settings: TunerSettings) -> "LichessClient":
        return cls(
            base_url=settings.lichess_base_url,
            token=settings.lichess_token,
            timeout=settings.request_timeout_seconds,
        )

    def _get(self, path: str, username: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise PlayerDataError(
                f"Request failed: {e}", context={"username": username}
            ) from e
        if response.status_code == 404:
            raise PlayerNotFoundError("Player not found", context={"username": username})
        if response.status_code == 429:
            raise RateLimitedError("Rate limited by Lichess", context={"username": username})
        if response.status_code >= 400:
            raise PlayerDataError(
                f"HTTP {response.status_code}", context={"username": username}
            )
        return response

    def fetch_user(self, username: str) -> Dict[str, Any]:
        """Return the public profile; raises PlayerNotFoundError for unknown or closed accounts."""
        profile = self._get(f"/api/user/{username}", username).json()
        if profile.get("closed") or profile.get("disabled"):
            raise PlayerNotFoundError("Account closed", context={"username": username})
        return profile

    def fetch_games(
        self, username: str, max_games: int, speeds: Sequence[str]
    ) -> List[Dict[str, Any]]:
        """Return up to ``max_games`` rated games with evals and clocks."""
        params = {
            "max": max_games,
            "rated": "true",
            "pgnInJson": "true",
            "clocks": "true",
            "evals": "true",
            "opening": "true",
            "perfType": ",".join(speeds),
        }
        response = self._get(
            f"/api/games/user/{username}",
            username,
            params=params,
            headers={"Accept": "application/x-ndjson"},
        )
        games = []
        for line in response.text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                games.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed game line for {username}")
        return games
