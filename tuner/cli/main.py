"""
Outprep Tuner CLI

Phase triggers and read-only reports for the tuning loop.

Usage:
    # Run (or resume) a cycle up to the review point
    outprep-tuner start

    # Run single phases
    outprep-tuner gather
    outprep-tuner sweep --max-experiments 25 --triage-positions 10
    outprep-tuner analyze

    # Review the pending proposal
    outprep-tuner accept            # apply the proposed config
    outprep-tuner accept --change 2 # apply only change 2
    outprep-tuner reject

    # Reports
    outprep-tuner status
    outprep-tuner history
"""

from __future__ import annotations

import argparse
import importlib
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence, Tuple

from tuner.config.settings import TunerSettings
from tuner.core.logging_config import configure_third_party_loggers, setup_logging
from tuner.cycle.gate import PhaseOutcome
from tuner.errors import ConfigurationError, TunerError
from tuner.loop.sweep_planner import PlanOptions
from tuner.models import TunerState
from tuner.state.store import StateStore

logger = logging.getLogger(__name__)

# The `start` command runs fewer experiments than the planner defaults
START_MAX_EXPERIMENTS = 25
START_TRIAGE_POSITIONS = 10


def load_tester_factory(spec: Optional[str]):
    """Resolve a ``module:callable`` path to the accuracy-tester factory."""
    if not spec:
        raise ConfigurationError(
            "No accuracy tester configured; set accuracy_tester in tuner.yaml "
            "or TUNER_ACCURACY_TESTER to 'package.module:factory'"
        )
    module_name, _, attr = spec.partition(":")
    if not attr:
        raise ConfigurationError(f"Accuracy tester must be 'module:callable', got {spec!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigurationError(f"{spec} is not callable")
    return factory


def _context(args: argparse.Namespace) -> Tuple[TunerSettings, StateStore, TunerState]:
    settings = TunerSettings.load(Path(args.config) if args.config else None)
    if args.root:
        settings.root_dir = Path(args.root)
    store = StateStore(settings.root_dir)
    return settings, store, store.get_or_create()


def _plan_options(args: argparse.Namespace, settings: TunerSettings, start: bool = False) -> PlanOptions:
    default_max = START_MAX_EXPERIMENTS if start else settings.max_experiments
    default_positions = START_TRIAGE_POSITIONS if start else settings.triage_positions
    return PlanOptions(
        max_experiments=args.max_experiments if args.max_experiments is not None else default_max,
        triage_positions=(
            args.triage_positions if args.triage_positions is not None else default_positions
        ),
        base_seed=args.seed if args.seed is not None else settings.seed,
        fast_mode=settings.triage_mode,
    )


def _report(outcome: PhaseOutcome) -> int:
    regression = outcome.details.get("regression")
    if regression:
        print(regression)
        print()
    print(outcome.message)
    return 0 if outcome.ok else 1


def _advisor(settings: TunerSettings):
    from tuner.analysis.advisor import AnthropicAdvisor

    advisor = AnthropicAdvisor.from_settings(settings)
    if advisor is None:
        logger.info("ANTHROPIC_API_KEY not set; proposals will use the statistical fallback")
    return advisor


def cmd_start(args: argparse.Namespace) -> int:
    """Run or resume a full cycle."""
    from tuner.cycle.phases import run_start

    settings, store, state = _context(args)
    tester_factory = load_tester_factory(settings.accuracy_tester)
    outcome = run_start(
        state,
        store,
        settings,
        tester_factory,
        advisor=_advisor(settings),
        options=_plan_options(args, settings, start=True),
        force_gather=args.force_gather,
        skip_gather=args.skip_gather,
    )
    return _report(outcome)


def cmd_gather(args: argparse.Namespace) -> int:
    """Validate players and fetch datasets."""
    from tuner.cycle.phases import run_gather

    settings, store, state = _context(args)
    if args.max_games is not None:
        settings.max_games = args.max_games
    if args.speeds:
        settings.speeds = [s.strip() for s in args.speeds.split(",") if s.strip()]
    return _report(run_gather(state, store, settings))


def cmd_sweep(args: argparse.Namespace) -> int:
    """Run the baseline and the experiment sweep."""
    from tuner.cycle.phases import run_sweep

    settings, store, state = _context(args)
    tester_factory = load_tester_factory(settings.accuracy_tester)
    return _report(run_sweep(state, store, settings, tester_factory, _plan_options(args, settings)))


def cmd_analyze(args: argparse.Namespace) -> int:
    """Analyze sweep results and write a proposal."""
    from tuner.cycle.phases import run_analyze

    settings, store, state = _context(args)
    advisor = None if args.no_advisory else _advisor(settings)
    return _report(run_analyze(state, store, settings, advisor))


def cmd_accept(args: argparse.Namespace) -> int:
    """Accept the pending proposal."""
    from tuner.cycle.gate import accept_proposal

    settings, store, state = _context(args)
    return _report(accept_proposal(state, store, settings.proposals_dir, args.change))


def cmd_reject(args: argparse.Namespace) -> int:
    """Reject the pending proposal."""
    from tuner.cycle.gate import reject_proposal

    settings, store, state = _context(args)
    return _report(reject_proposal(state, store, settings.proposals_dir))


def cmd_status(args: argparse.Namespace) -> int:
    from tuner.cycle.reports import format_status

    _, _, state = _context(args)
    print(state.model_dump_json(indent=2) if args.json else format_status(state))
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    from tuner.cycle.reports import format_history

    _, _, state = _context(args)
    print(format_history(state))
    return 0


def _add_sweep_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--max-experiments", type=int, help="Maximum experiments in the sweep")
    parser.add_argument("--triage-positions", type=int, help="Positions per dataset in triage runs")
    parser.add_argument("--seed", type=int, help="Seed shared by baseline and experiments")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="outprep-tuner",
        description="Outprep bot configuration tuner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  start     Run or resume a cycle up to the review point
  gather    Validate the player pool and fetch datasets
  sweep     Run baseline and one-at-a-time experiments
  analyze   Regression check and proposal synthesis
  accept    Apply the pending proposal
  reject    Archive the pending proposal
  status    Show tuner state
  history   Show completed cycles
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--config", help="Settings file (default: ./tuner.yaml if present)")
    parser.add_argument("--root", help="Tuner data directory (overrides settings)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    start_parser = subparsers.add_parser("start", help="Run or resume a cycle")
    _add_sweep_options(start_parser)
    start_parser.add_argument("--force-gather", action="store_true", help="Gather even if datasets exist")
    start_parser.add_argument("--skip-gather", action="store_true", help="Reuse existing datasets")

    gather_parser = subparsers.add_parser("gather", help="Fetch player datasets")
    gather_parser.add_argument("--max-games", type=int, help="Games to fetch per player")
    gather_parser.add_argument("--speeds", help="Comma-separated speeds, e.g. blitz,rapid")

    sweep_parser = subparsers.add_parser("sweep", help="Run the experiment sweep")
    _add_sweep_options(sweep_parser)

    analyze_parser = subparsers.add_parser("analyze", help="Write a proposal")
    analyze_parser.add_argument(
        "--no-advisory", action="store_true", help="Use the statistical fallback only"
    )

    accept_parser = subparsers.add_parser("accept", help="Accept the pending proposal")
    accept_parser.add_argument("--change", type=int, help="Apply only this change (1-based)")

    subparsers.add_parser("reject", help="Reject the pending proposal")

    status_parser = subparsers.add_parser("status", help="Show tuner state")
    status_parser.add_argument("--json", action="store_true", help="Dump raw state as JSON")

    subparsers.add_parser("history", help="Show completed cycles")
    return parser


COMMANDS = {
    "start": cmd_start,
    "gather": cmd_gather,
    "sweep": cmd_sweep,
    "analyze": cmd_analyze,
    "accept": cmd_accept,
    "reject": cmd_reject,
    "status": cmd_status,
    "history": cmd_history,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    settings = TunerSettings.load(Path(args.config) if args.config else None)
    setup_logging(
        "tuner",
        level="DEBUG" if args.verbose else settings.log_level,
        log_file=settings.log_file,
    )
    configure_third_party_loggers()

    try:
        code = COMMANDS[args.command](args)
    except TunerError as e:
        logger.error(str(e))
        code = 1

    if settings.metrics_textfile:
        from tuner.metrics import export_textfile

        export_textfile(settings.metrics_textfile)
    return code


if __name__ == "__main__":
    sys.exit(main())
