"""Proposal synthesis, persistence and reporting.

A proposal is built from the advisory service's structured answer when one
parses, otherwise from a deterministic statistical fallback. Each proposal
gets its own directory that is never overwritten; rejected proposals are
renamed with a ``rejected-`` prefix.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from tuner.analysis.regression_check import RegressionReport
from tuner.config.bot_config import (
    BotConfig,
    first_override_leaf,
    get_config_value,
    merge_config,
    set_config_value,
    values_equal,
)
from tuner.errors import ConfigurationError, ProposalError
from tuner.models import ConfigChange, Proposal, SweepRecord
from tuner.scoring.composite_score import format_delta, format_score

logger = logging.getLogger(__name__)

FALLBACK_TOP_N = 5
REJECTED_PREFIX = "rejected-"
PROPOSAL_FILE = "proposal.json"
REPORT_FILE = "proposal.md"

_JSON_BLOCK = re.compile(r"```json\s*(.*?)```", re.DOTALL)


class RankedChange(BaseModel):
    path: str
    new_value: Any
    score_delta: float = 0.0
    reasoning: str = ""

    class Config:
        extra = "forbid"


class AdvisoryAnalysis(BaseModel):
    """Structured answer expected from the advisory service."""
    summary: str
    ranked_changes: List[RankedChange]
    proposed_config: Optional[Dict[str, Any]] = None
    code_proposals: List[str] = Field(default_factory=list)
    next_priorities: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @field_validator("code_proposals", "next_priorities", "warnings", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> List[str]:
        if v is None:
            return []
        return [item if isinstance(item, str) else json.dumps(item) for item in v]

    class Config:
        extra = "forbid"


def parse_advisory_response(text: str) -> Optional[AdvisoryAnalysis]:
    """Extract the fenced JSON block; None when absent or malformed."""
    match = _JSON_BLOCK.search(text or "")
    if not match:
        logger.warning("Advisory response has no ```json block")
        return None
    try:
        return AdvisoryAnalysis.model_validate(json.loads(match.group(1)))
    except json.JSONDecodeError as e:
        logger.warning(f"Advisory JSON block does not parse: {e}")
    except ValidationError as e:
        logger.warning(f"Advisory JSON block has unexpected shape: {e.error_count()} errors")
    return None


# =============================================================================
# Synthesis
# =============================================================================


def _advisory_changes(
    best_config: BotConfig, analysis: AdvisoryAnalysis, warnings: List[str]
) -> List[ConfigChange]:
    changes: List[ConfigChange] = []
    for rc in analysis.ranked_changes:
        try:
            old_value = get_config_value(best_config, rc.path)
        except ConfigurationError:
            warnings.append(f"Ignored change to unknown config path {rc.path}")
            continue
        if values_equal(old_value, rc.new_value):
            continue
        changes.append(ConfigChange(
            path=rc.path,
            old_value=old_value,
            new_value=rc.new_value,
            score_delta=rc.score_delta,
            description=rc.reasoning,
        ))
    return changes


def _advisory_config(
    best_config: BotConfig,
    analysis: AdvisoryAnalysis,
    changes: List[ConfigChange],
    warnings: List[str],
) -> BotConfig:
    if analysis.proposed_config:
        try:
            return merge_config(best_config, analysis.proposed_config)
        except ConfigurationError as e:
            warnings.append(f"Proposed config was invalid ({e.message}); applied ranked changes instead")

    config = best_config
    for change in changes:
        try:
            config = set_config_value(config, change.path, change.new_value)
        except ConfigurationError as e:
            warnings.append(f"Could not apply {change.path}: {e.message}")
    return config


def _fallback_changes(best_config: BotConfig, record: SweepRecord) -> List[ConfigChange]:
    ranked = sorted(record.experiments, key=lambda r: r.score_delta, reverse=True)
    changes: List[ConfigChange] = []
    for result in [r for r in ranked if r.score_delta > 0][:FALLBACK_TOP_N]:
        leaf = first_override_leaf(result.config_override)
        if leaf is None:
            continue
        path, new_value = leaf
        old_value = get_config_value(best_config, path)
        if values_equal(old_value, new_value):
            continue
        changes.append(ConfigChange(
            path=path,
            old_value=old_value,
            new_value=new_value,
            score_delta=result.score_delta,
            description=result.description,
        ))
    return changes


def _fallback_summary(changes: List[ConfigChange]) -> str:
    if not changes:
        return (
            "No experiments improved on the baseline. Consider larger perturbations "
            "or new tunable parameters."
        )
    best = changes[0]
    return (
        f"Found {len(changes)} improving experiment(s). Best: {best.description} "
        f"({format_delta(best.score_delta)}). Changes are independent alternatives; "
        f"combining them needs review."
    )


def _fallback_priorities(changes: List[ConfigChange]) -> List[str]:
    if not changes:
        return ["Try larger perturbation ranges", "Consider new tunable parameters"]
    priorities: List[str] = []
    for change in changes[:3]:
        item = f"Continue exploring {change.path} with finer granularity"
        if item not in priorities:
            priorities.append(item)
    return priorities


def generate_proposal(
    cycle: int,
    best_config: BotConfig,
    record: SweepRecord,
    analysis: Optional[AdvisoryAnalysis] = None,
    regression: Optional[RegressionReport] = None,
) -> Proposal:
    """Build a proposal from the advisory analysis, or statistically without one.

    The fallback lists up to five positive-delta experiments as independent
    changes and leaves ``proposed_config`` equal to the current best.
    """
    if record.baseline is None:
        raise ProposalError("Sweep record has no baseline", context={"cycle": record.cycle})

    warnings: List[str] = []
    if regression is not None and regression.has_critical:
        warnings.append(
            f"Critical regression since cycle {regression.previous_cycle}; "
            f"review the regression report before accepting"
        )

    if analysis is not None:
        changes = _advisory_changes(best_config, analysis, warnings)
        proposed = _advisory_config(best_config, analysis, changes, warnings)
        summary = analysis.summary
        code_proposals = analysis.code_proposals
        next_priorities = analysis.next_priorities
        warnings.extend(analysis.warnings)
    else:
        changes = _fallback_changes(best_config, record)
        proposed = best_config.model_copy(deep=True)
        summary = _fallback_summary(changes)
        code_proposals = []
        next_priorities = _fallback_priorities(changes)

    return Proposal(
        cycle=cycle,
        baseline_score=record.baseline.composite_score,
        baseline_metrics=record.baseline.aggregated_metrics,
        baseline_dataset_metrics=record.baseline.dataset_metrics,
        ranked_experiments=sorted(record.experiments, key=lambda r: r.score_delta, reverse=True),
        experiments_run=len(record.experiments),
        proposed_config=proposed,
        config_changes=changes,
        summary=summary,
        code_proposals=code_proposals,
        next_priorities=next_priorities,
        warnings=warnings,
        regression_summary=regression.summary() if regression else None,
        advisory_used=analysis is not None,
    )


# =============================================================================
# Persistence
# =============================================================================


def proposal_dir_name(proposal: Proposal) -> str:
    stamp = re.sub(r"[:.]", "-", proposal.timestamp)[:19]
    return f"{stamp}-cycle-{proposal.cycle}"


def write_proposal(
    proposal: Proposal,
    proposals_dir: Path,
    regression_markdown: str = "",
) -> Path:
    """Write proposal.json and proposal.md into a fresh directory."""
    proposals_dir.mkdir(parents=True, exist_ok=True)
    base = proposal_dir_name(proposal)
    target = proposals_dir / base
    suffix = 2
    while target.exists() or (proposals_dir / f"{REJECTED_PREFIX}{target.name}").exists():
        target = proposals_dir / f"{base}-{suffix}"
        suffix += 1
    target.mkdir()

    (target / PROPOSAL_FILE).write_text(proposal.model_dump_json(indent=2))
    (target / REPORT_FILE).write_text(format_proposal_markdown(proposal, regression_markdown))
    logger.info(f"Proposal written to {target}")
    return target


def load_proposal(directory: Path) -> Proposal:
    path = directory / PROPOSAL_FILE
    try:
        return Proposal.model_validate_json(path.read_text())
    except FileNotFoundError as e:
        raise ProposalError("Proposal file missing", context={"path": str(path)}) from e
    except ValidationError as e:
        raise ProposalError("Proposal file is invalid", context={"path": str(path)}) from e


def latest_proposal_dir(proposals_dir: Path) -> Optional[Path]:
    """Most recent proposal directory that has not been rejected."""
    if not proposals_dir.exists():
        return None
    candidates = sorted(
        p for p in proposals_dir.iterdir()
        if p.is_dir() and not p.name.startswith(REJECTED_PREFIX) and (p / PROPOSAL_FILE).exists()
    )
    return candidates[-1] if candidates else None


def archive_rejected(directory: Path) -> Path:
    target = directory.with_name(f"{REJECTED_PREFIX}{directory.name}")
    directory.rename(target)
    return target


# =============================================================================
# Report
# =============================================================================


def format_proposal_markdown(proposal: Proposal, regression_markdown: str = "") -> str:
    lines = [
        f"# Tuning Proposal: Cycle {proposal.cycle}",
        "",
        f"- Generated: {proposal.timestamp}",
        f"- Baseline score: {format_score(proposal.baseline_score)}",
        f"- Experiments run: {proposal.experiments_run}",
        f"- Analysis: {'advisory' if proposal.advisory_used else 'statistical fallback'}",
        "",
        "## Summary",
        "",
        proposal.summary or "(none)",
        "",
        "## Proposed Changes",
        "",
    ]
    if proposal.config_changes:
        lines += [
            "| # | Path | Old | New | Score Delta | Rationale |",
            "|---|------|-----|-----|-------------|-----------|",
        ]
        for i, c in enumerate(proposal.config_changes, start=1):
            lines.append(
                f"| {i} | `{c.path}` | `{json.dumps(c.old_value)}` | `{json.dumps(c.new_value)}` | "
                f"{format_delta(c.score_delta)} | {c.description} |"
            )
    else:
        lines.append("No configuration changes proposed.")

    top = proposal.ranked_experiments[:10]
    if top:
        lines += [
            "",
            "## Top Experiments",
            "",
            "| Experiment | Score | Delta |",
            "|------------|-------|-------|",
        ]
        lines += [
            f"| {r.description} | {format_score(r.composite_score)} | {format_delta(r.score_delta)} |"
            for r in top
        ]

    for title, items in (
        ("Warnings", proposal.warnings),
        ("Next Priorities", proposal.next_priorities),
        ("Code Proposals", proposal.code_proposals),
    ):
        if items:
            lines += ["", f"## {title}", ""] + [f"- {item}" for item in items]

    if regression_markdown:
        lines += ["", regression_markdown.rstrip()]

    lines += [
        "",
        "## Review",
        "",
        "- `outprep-tuner accept` applies the proposed config.",
        "- `outprep-tuner accept --change N` applies only change N from the table above.",
        "- `outprep-tuner reject` archives this proposal.",
    ]
    return "\n".join(lines) + "\n"
