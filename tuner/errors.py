"""
Tuner Error Hierarchy

Unified exception hierarchy for the tuning loop. All custom exceptions
inherit from TunerError so callers can catch and log them uniformly.

Usage:
    from tuner.errors import PlayerNotFoundError, RateLimitedError

    try:
        profile = client.fetch_user(username)
    except RateLimitedError as e:
        logger.warning(f"Skipping {username}: {e}")
"""

from typing import Any

__all__ = [
    "AdvisoryError",
    "ConfigurationError",
    "DatasetError",
    "InvalidStateError",
    "PlayerDataError",
    "PlayerNotFoundError",
    "ProposalError",
    "RateLimitedError",
    "StateError",
    "TunerError",
]


class TunerError(Exception):
    """Base exception for all tuner errors.

    Attributes:
        code: Machine-readable error code for categorization
        message: Human-readable error description
        context: Additional context for debugging
    """
    code: str = "TUNER_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"[{self.code}] {self.message} ({ctx})"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(TunerError):
    """Invalid bot configuration, override, or settings value.

    Raised for unknown config paths, overrides nested deeper than the
    merge depth, and settings files that fail to parse.
    """
    code: str = "CONFIGURATION_ERROR"


# =============================================================================
# Player Data Errors
# =============================================================================


class PlayerDataError(TunerError):
    """Player API request failed.

    Per-player failures are skippable: the caller logs them and moves on.
    """
    code: str = "PLAYER_DATA_ERROR"


class PlayerNotFoundError(PlayerDataError):
    """Player does not exist or the account is closed."""
    code: str = "PLAYER_NOT_FOUND"


class RateLimitedError(PlayerDataError):
    """Player API answered 429 Too Many Requests."""
    code: str = "RATE_LIMITED"


class DatasetError(TunerError):
    """Dataset could not be built or read from disk."""
    code: str = "DATASET_ERROR"


# =============================================================================
# State Errors
# =============================================================================


class StateError(TunerError):
    """Persisted tuner state could not be read or written."""
    code: str = "STATE_ERROR"


class InvalidStateError(StateError):
    """Illegal transition, e.g. moving an experiment status backwards."""
    code: str = "INVALID_STATE"


# =============================================================================
# Analysis Errors
# =============================================================================


class AdvisoryError(TunerError):
    """Advisory text-completion service failed or returned no content."""
    code: str = "ADVISORY_ERROR"


class ProposalError(TunerError):
    """Proposal could not be read from or written to disk."""
    code: str = "PROPOSAL_ERROR"
