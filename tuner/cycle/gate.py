"""Accept/reject gate for pending proposals.

Only the ``waiting`` phase accepts either action; anywhere else they are a
no-op that explains what to run instead. Every state change is checkpointed
before the outcome is returned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from tuner.analysis.proposal import archive_rejected, latest_proposal_dir, load_proposal
from tuner.config.bot_config import BotConfig, diff_configs, merge_config, set_config_value
from tuner.models import ConfigChange, CycleRecord, Proposal, TunerPhase, TunerState
from tuner.state.store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class PhaseOutcome:
    """Result of a phase trigger; ``ok`` is False for no-ops."""
    ok: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


_PHASE_GUIDANCE = {
    TunerPhase.IDLE: "Run `start` to begin a cycle.",
    TunerPhase.GATHER: "A gather is in progress or was interrupted; run `start` to resume.",
    TunerPhase.SWEEP: "A sweep is in progress or was interrupted; run `start` to resume.",
    TunerPhase.ANALYZE: "Sweep finished but not analyzed; run `analyze`.",
}


def _not_waiting(state: TunerState, action: str) -> PhaseOutcome:
    return PhaseOutcome(
        ok=False,
        message=(
            f"Nothing to {action}: tuner is in the '{state.phase.value}' phase. "
            f"{_PHASE_GUIDANCE.get(state.phase, '')}"
        ).strip(),
    )


def _pending_dir(state: TunerState, proposals_dir: Path) -> Optional[Path]:
    if state.pending_proposal:
        directory = Path(state.pending_proposal)
        if directory.exists():
            return directory
        logger.warning(f"Pending proposal {directory} is missing, using latest on disk")
    return latest_proposal_dir(proposals_dir)


def _audit_changes(
    old: BotConfig, new: BotConfig, proposed: List[ConfigChange]
) -> List[ConfigChange]:
    """Changes actually applied, annotated from the proposal where it covers them."""
    by_path = {c.path: c for c in proposed}
    applied = []
    for path, before, after in diff_configs(old, new):
        source = by_path.get(path)
        applied.append(ConfigChange(
            path=path,
            old_value=before,
            new_value=after,
            score_delta=source.score_delta if source else 0.0,
            description=source.description if source else "From proposed config",
        ))
    return applied


def _cycle_record(
    state: TunerState, proposal: Optional[Proposal], accepted: bool, changes: List[ConfigChange]
) -> CycleRecord:
    record = CycleRecord(
        cycle=state.cycle,
        datasets_used=[d.name for d in state.datasets],
        accepted=accepted,
        config_changes=changes,
    )
    if proposal is not None:
        record.experiments_run = proposal.experiments_run
        record.best_score_delta = (
            proposal.ranked_experiments[0].score_delta if proposal.ranked_experiments else 0.0
        )
        record.baseline_score = proposal.baseline_score
        record.baseline_metrics = proposal.baseline_metrics
        record.baseline_dataset_metrics = proposal.baseline_dataset_metrics
    return record


def _close_cycle(state: TunerState, record: CycleRecord) -> None:
    state.completed_cycles.append(record)
    state.current_plan = None
    state.pending_proposal = None
    state.cycle += 1
    state.phase = TunerPhase.IDLE


def accept_proposal(
    state: TunerState,
    store: StateStore,
    proposals_dir: Path,
    change_index: Optional[int] = None,
) -> PhaseOutcome:
    """Apply the pending proposal and close the cycle.

    With ``change_index`` (1-based) only that change is applied; otherwise
    the proposed config is merged one level deep over the current best.
    """
    if state.phase != TunerPhase.WAITING:
        return _not_waiting(state, "accept")

    directory = _pending_dir(state, proposals_dir)
    if directory is None:
        return PhaseOutcome(ok=False, message="No pending proposal found. Run `analyze` first.")
    proposal = load_proposal(directory)

    if change_index is not None:
        if not 1 <= change_index <= len(proposal.config_changes):
            return PhaseOutcome(
                ok=False,
                message=(
                    f"Change {change_index} does not exist; the proposal has "
                    f"{len(proposal.config_changes)} change(s)."
                ),
            )
        chosen = proposal.config_changes[change_index - 1]
        new_config = set_config_value(state.best_config, chosen.path, chosen.new_value)
    else:
        new_config = merge_config(state.best_config, proposal.proposed_config.model_dump())

    applied = _audit_changes(state.best_config, new_config, proposal.config_changes)
    cycle = state.cycle

    state.best_config = new_config
    state.accepted_changes.extend(applied)
    _close_cycle(state, _cycle_record(state, proposal, accepted=True, changes=applied))
    store.checkpoint(state, f"accepted cycle {cycle}")
    exported = store.export_best_config(state)

    if applied:
        logger.info(f"Cycle {cycle} accepted with {len(applied)} change(s)")
        for change in applied:
            logger.info(f"  {change.path}: {change.old_value} -> {change.new_value}")
    else:
        logger.info(f"Cycle {cycle} accepted with no config changes")

    return PhaseOutcome(
        ok=True,
        message=(
            f"Accepted cycle {cycle}: {len(applied)} change(s) applied. "
            f"Best config written to {exported}. Now on cycle {state.cycle}."
        ),
        details={"cycle": cycle, "changes": [c.model_dump() for c in applied]},
    )


def reject_proposal(state: TunerState, store: StateStore, proposals_dir: Path) -> PhaseOutcome:
    """Archive the pending proposal and close the cycle without changes."""
    if state.phase != TunerPhase.WAITING:
        return _not_waiting(state, "reject")

    directory = _pending_dir(state, proposals_dir)
    proposal = load_proposal(directory) if directory is not None else None
    archived = archive_rejected(directory) if directory is not None else None

    cycle = state.cycle
    _close_cycle(state, _cycle_record(state, proposal, accepted=False, changes=[]))
    store.checkpoint(state, f"rejected cycle {cycle}")

    logger.info(f"Cycle {cycle} rejected" + (f", archived to {archived}" if archived else ""))
    return PhaseOutcome(
        ok=True,
        message=f"Rejected cycle {cycle}. Now on cycle {state.cycle}.",
        details={"cycle": cycle, "archived": str(archived) if archived else None},
    )
