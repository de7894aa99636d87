"""Durable tuner state.

The whole TunerState is one JSON document, rewritten atomically on every
checkpoint. Sweep results get one JSON file per cycle. Nothing saves
implicitly: phase functions call ``checkpoint`` after each mutation.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from tuner.config.bot_config import DEFAULT_CONFIG, merge_config
from tuner.data.player_pool import seed_pool
from tuner.errors import ConfigurationError, StateError
from tuner.metrics import TUNER_CYCLE
from tuner.models import SweepRecord, TunerState, utc_now

logger = logging.getLogger(__name__)

_SWEEP_FILE = re.compile(r"^sweep-cycle-(\d+)\.json$")


def atomic_write(path: Path, text: str) -> None:
    """Write ``text`` to a temp file beside ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def create_initial_state() -> TunerState:
    return TunerState(player_pool=seed_pool())


class StateStore:
    """Loads and checkpoints tuner state and per-cycle sweep records."""

    def __init__(self, root_dir: Path):
        self.root_dir = Path(root_dir)
        self.state_path = self.root_dir / "tuner-state.json"
        self.results_dir = self.root_dir / "experiments" / "results"

    # -------------------------------------------------------------------------
    # Tuner state
    # -------------------------------------------------------------------------

    def load(self) -> Optional[TunerState]:
        """Load persisted state; None when absent or unreadable."""
        if not self.state_path.exists():
            return None
        try:
            state = TunerState.model_validate_json(self.state_path.read_text())
        except (OSError, ValidationError, ValueError) as e:
            logger.error(
                f"Tuner state at {self.state_path} is corrupt, starting fresh: {e}"
            )
            return None
        return self._backfill(state)

    def _backfill(self, state: TunerState) -> TunerState:
        # Sections added to the schema since the state was written take defaults
        try:
            state.best_config = merge_config(DEFAULT_CONFIG, state.best_config.model_dump())
        except ConfigurationError as e:
            logger.error(f"Persisted best config is invalid, keeping as loaded: {e}")
        return state

    def save(self, state: TunerState) -> None:
        state.last_checkpoint = utc_now()
        try:
            atomic_write(self.state_path, state.model_dump_json(indent=2))
        except OSError as e:
            raise StateError("Failed to write tuner state", context={"path": str(self.state_path)}) from e
        TUNER_CYCLE.set(state.cycle)

    def checkpoint(self, state: TunerState, reason: str = "") -> None:
        """Persist ``state`` synchronously."""
        self.save(state)
        if reason:
            logger.debug(f"Checkpoint: {reason}")

    def get_or_create(self) -> TunerState:
        state = self.load()
        if state is None:
            state = create_initial_state()
            self.save(state)
            logger.info(f"Initialized tuner state at {self.state_path}")
        return state

    # -------------------------------------------------------------------------
    # Sweep records
    # -------------------------------------------------------------------------

    def sweep_record_path(self, cycle: int) -> Path:
        return self.results_dir / f"sweep-cycle-{cycle}.json"

    def load_sweep_record(self, cycle: int) -> Optional[SweepRecord]:
        path = self.sweep_record_path(cycle)
        if not path.exists():
            return None
        try:
            return SweepRecord.model_validate_json(path.read_text())
        except (OSError, ValidationError, ValueError) as e:
            logger.error(f"Sweep record {path} is corrupt, ignoring: {e}")
            return None

    def save_sweep_record(self, record: SweepRecord) -> None:
        record.timestamp = utc_now()
        try:
            atomic_write(self.sweep_record_path(record.cycle), record.model_dump_json(indent=2))
        except OSError as e:
            raise StateError("Failed to write sweep record", context={"cycle": record.cycle}) from e

    def sweep_cycles(self) -> List[int]:
        if not self.results_dir.exists():
            return []
        cycles = []
        for path in self.results_dir.iterdir():
            match = _SWEEP_FILE.match(path.name)
            if match:
                cycles.append(int(match.group(1)))
        return sorted(cycles)

    def historical_records(self, before_cycle: int) -> List[SweepRecord]:
        """Sweep records of earlier cycles that have a baseline, oldest first."""
        records = []
        for cycle in self.sweep_cycles():
            if cycle >= before_cycle:
                continue
            record = self.load_sweep_record(cycle)
            if record is not None and record.baseline is not None:
                records.append(record)
        return records

    def export_best_config(self, state: TunerState, path: Optional[Path] = None) -> Path:
        target = path or self.root_dir / "best-config.json"
        atomic_write(target, json.dumps(state.best_config.model_dump(), indent=2))
        return target
