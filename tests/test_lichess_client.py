"""Tests for the Lichess client, with a mocked requests session."""

from unittest.mock import MagicMock

import pytest
import requests

from tuner.config.settings import TunerSettings
from tuner.data.lichess_client import LichessClient
from tuner.errors import PlayerDataError, PlayerNotFoundError, RateLimitedError


def _response(status=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = payload or {}
    response.text = text
    return response


@pytest.fixture
def session():
    s = MagicMock()
    s.headers = {}
    return s


class TestLichessClient:
    """Tests for LichessClient."""

    def test_fetch_user(self, session):
        session.get.return_value = _response(payload={"id": "alice", "username": "Alice"})
        client = LichessClient(base_url="https://example.org/", session=session, timeout=5)

        profile = client.fetch_user("Alice")

        assert profile["username"] == "Alice"
        url = session.get.call_args[0][0]
        assert url == "https://example.org/api/user/Alice"
        assert session.get.call_args[1]["timeout"] == 5

    def test_token_sets_auth_header(self, session):
        LichessClient(token="secret", session=session)
        assert session.headers["Authorization"] == "Bearer secret"

    @pytest.mark.parametrize(
        "status,error",
        [(404, PlayerNotFoundError), (429, RateLimitedError), (500, PlayerDataError)],
    )
    def test_http_errors(self, session, status, error):
        session.get.return_value = _response(status=status)
        with pytest.raises(error):
            LichessClient(session=session).fetch_user("alice")

    def test_rate_limit_is_a_player_data_error(self):
        assert issubclass(RateLimitedError, PlayerDataError)
        assert not issubclass(RateLimitedError, PlayerNotFoundError)

    def test_network_error(self, session):
        session.get.side_effect = requests.ConnectionError("down")
        with pytest.raises(PlayerDataError):
            LichessClient(session=session).fetch_user("alice")

    def test_closed_account_is_not_found(self, session):
        session.get.return_value = _response(payload={"id": "alice", "closed": True})
        with pytest.raises(PlayerNotFoundError):
            LichessClient(session=session).fetch_user("alice")

    def test_fetch_games_parses_ndjson(self, session):
        session.get.return_value = _response(text='{"id": "g1"}\n\n{broken\n{"id": "g2"}\n')
        client = LichessClient(session=session)

        games = client.fetch_games("alice", 50, ["blitz", "rapid"])

        assert [g["id"] for g in games] == ["g1", "g2"]
        kwargs = session.get.call_args[1]
        assert kwargs["params"]["max"] == 50
        assert kwargs["params"]["perfType"] == "blitz,rapid"
        assert kwargs["headers"]["Accept"] == "application/x-ndjson"

    def test_from_settings(self):
        settings = TunerSettings(lichess_base_url="https://lichess.dev", request_timeout_seconds=3)
        client = LichessClient.from_settings(settings)
        assert client.base_url == "https://lichess.dev"
        assert client.timeout == 3
