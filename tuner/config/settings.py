"""Runtime settings for the tuner.

Defaults are overridden first by an optional YAML file and then by
``TUNER_<FIELD>`` environment variables, e.g. ``TUNER_TRIAGE_POSITIONS=30``.

Example ``tuner.yaml``::

    root_dir: ./tuner-data
    speeds: [blitz, rapid]
    max_experiments: 25
    accuracy_tester: outprep_harness.tester:create_tester
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from tuner.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "TUNER_"
DEFAULT_SETTINGS_FILE = "tuner.yaml"


@dataclass
class TunerSettings:
    """Tuner runtime settings."""
    # Storage
    root_dir: Path = Path("tuner-data")

    # Player API
    lichess_base_url: str = "https://lichess.org"
    lichess_token: Optional[str] = None
    request_timeout_seconds: float = 30.0
    user_call_delay_seconds: float = 1.5
    player_delay_seconds: float = 2.0
    dataset_max_age_days: float = 7.0
    max_games: int = 100
    speeds: List[str] = field(default_factory=lambda: ["blitz", "rapid"])
    discover_players: bool = True

    # Sweep
    max_experiments: int = 40
    triage_positions: int = 50
    seed: int = 42
    triage_mode: bool = True
    accuracy_tester: Optional[str] = None

    # Advisory
    anthropic_api_url: str = "https://api.anthropic.com/v1/messages"
    anthropic_api_key: Optional[str] = None
    advisory_model: str = "claude-sonnet-4-20250514"
    advisory_max_tokens: int = 8192
    advisory_timeout_seconds: float = 600.0

    # Observability
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    metrics_textfile: Optional[Path] = None

    @property
    def datasets_dir(self) -> Path:
        return self.root_dir / "experiments" / "datasets"

    @property
    def proposals_dir(self) -> Path:
        return self.root_dir / "proposals"

    @classmethod
    def load(
        cls,
        config_path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "TunerSettings":
        """Build settings from defaults, an optional YAML file and the environment."""
        values: Dict[str, Any] = {}

        path = config_path
        if path is None and Path(DEFAULT_SETTINGS_FILE).exists():
            path = Path(DEFAULT_SETTINGS_FILE)
        if path is not None:
            values.update(_read_yaml(path))

        env = os.environ if environ is None else environ
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is not None:
                values[f.name] = raw

        if "anthropic_api_key" not in values and env.get("ANTHROPIC_API_KEY"):
            values["anthropic_api_key"] = env["ANTHROPIC_API_KEY"]
        if "lichess_token" not in values and env.get("LICHESS_TOKEN"):
            values["lichess_token"] = env["LICHESS_TOKEN"]

        return cls.from_dict(values)

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "TunerSettings":
        defaults = cls()
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, raw in values.items():
            if key not in known:
                logger.warning(f"Ignoring unknown setting: {key}")
                continue
            kwargs[key] = _coerce(key, raw, getattr(defaults, key))
        return cls(**kwargs)


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Missing settings file: {path}")
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {path} must contain a mapping")
    return data


def _coerce(name: str, raw: Any, default: Any) -> Any:
    """Convert a YAML or env value to the type of the field default."""
    if raw is None:
        return None
    try:
        if isinstance(default, bool):
            if isinstance(raw, str):
                return raw.strip().lower() in ("1", "true", "yes", "on")
            return bool(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if isinstance(default, list):
            if isinstance(raw, str):
                return [s.strip() for s in raw.split(",") if s.strip()]
            return [str(s) for s in raw]
        if isinstance(default, Path) or name.endswith(("_dir", "_file", "_textfile")):
            return Path(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid value for setting {name}", context={"value": raw}
        ) from e
    return str(raw)
