"""Advisory text-completion clients.

The proposal synthesizer only needs ``complete(prompt) -> str``. The
Anthropic Messages adapter below retries rate limits and server errors with
exponential backoff and raises AdvisoryError for anything else; the caller
routes every failure to the statistical fallback.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol

import requests

from tuner.config.settings import TunerSettings
from tuner.errors import AdvisoryError

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

SYSTEM_PROMPT = (
    "You are a careful research assistant tuning a human-imitating chess bot. "
    "Base every recommendation on the measured results you are given."
)


class AdvisoryClient(Protocol):
    def complete(self, prompt: str) -> str:
        ...


class AnthropicAdvisor:
    """Advisory client backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 8192,
        api_url: str = "https://api.anthropic.com/v1/messages",
        timeout: Optional[float] = None,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not api_key:
            raise AdvisoryError("Anthropic API key is empty")
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.api_url = api_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = session or requests.Session()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: TunerSettings) -> Optional["AnthropicAdvisor"]:
        """Build a client, or None when no API key is configured."""
        if not settings.anthropic_api_key:
            return None
        return cls(
            api_key=settings.anthropic_api_key,
            model=settings.advisory_model,
            max_tokens=settings.advisory_max_tokens,
            api_url=settings.anthropic_api_url,
            timeout=settings.advisory_timeout_seconds,
        )

    def _payload(self, prompt: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": prompt}],
        }

    def complete(self, prompt: str) -> str:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        for attempt in range(self.max_retries + 1):
            try:
                response = self.session.post(
                    self.api_url, headers=headers, json=self._payload(prompt), timeout=self.timeout
                )
            except requests.RequestException as e:
                raise AdvisoryError(f"Advisory API unreachable: {e}") from e
            retryable = response.status_code == 429 or response.status_code >= 500
            if retryable and attempt < self.max_retries:
                delay = 2 ** attempt
                logger.warning(
                    f"Advisory API returned {response.status_code}, retrying in {delay}s"
                )
                self._sleep(delay)
                continue
            if response.status_code >= 400:
                raise AdvisoryError(
                    "Advisory API request failed",
                    context={"status": response.status_code, "body": response.text[:200]},
                )
            data = response.json()
            text = "".join(
                block.get("text", "")
                for block in data.get("content", [])
                if block.get("type") == "text"
            )
            if not text:
                raise AdvisoryError("Advisory API returned no text content")
            return text
        raise AdvisoryError("Advisory API retries exhausted", context={"retries": self.max_retries})
