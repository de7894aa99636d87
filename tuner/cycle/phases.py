"""Phase drivers for one tuning cycle.

Each driver takes the state explicitly, advances it through one phase and
checkpoints after every unit of work (one player fetch, one experiment, one
phase transition), so a killed process resumes from the persisted phase and
loses at most the unit in flight.

    idle -> gather -> sweep -> analyze -> waiting -> (accept | reject) -> idle
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from tuner.analysis.advisor import AdvisoryClient
from tuner.analysis.prompt_builder import build_analysis_prompt
from tuner.analysis.proposal import AdvisoryAnalysis, generate_proposal, parse_advisory_response, write_proposal
from tuner.analysis.regression_check import (
    format_regression_console,
    format_regression_markdown,
    run_regression_check,
)
from tuner.config.settings import TunerSettings
from tuner.cycle.gate import PhaseOutcome
from tuner.data.dataset_manager import DatasetManager, load_dataset
from tuner.data.lichess_client import LichessClient
from tuner.data.player_discovery import extract_all_opponents, pick_opponents_for_bands
from tuner.data.player_pool import (
    add_player,
    bands_needing_players,
    missing_seed_players,
    seed_pool,
    validate_pool,
)
from tuner.errors import DatasetError
from tuner.loop.experiment_runner import (
    AccuracyTester,
    close_tester,
    run_baseline,
    run_experiment,
    select_triage_datasets,
)
from tuner.loop.result_aggregator import aggregate_experiment_results, subset_baseline_score
from tuner.loop.sweep_planner import (
    PlanOptions,
    advance_status,
    create_sweep_plan,
    mark_plan_status,
    next_pending_experiment,
    plan_progress,
    promotable_experiments,
)
from tuner.metrics import (
    TUNER_ADVISORY_REQUESTS,
    TUNER_BASELINE_SCORE,
    TUNER_EXPERIMENT_LATENCY,
    TUNER_EXPERIMENTS,
)
from tuner.models import (
    AggregatedResult,
    DatasetMetrics,
    DatasetRef,
    ExperimentStatus,
    PlayerEntry,
    SweepPlan,
    SweepRecord,
    TunerPhase,
    TunerState,
)
from tuner.scoring.composite_score import format_delta, format_score
from tuner.state.store import StateStore

logger = logging.getLogger(__name__)

TesterFactory = Callable[[], AccuracyTester]


def _waiting_guidance(state: TunerState) -> PhaseOutcome:
    return PhaseOutcome(
        ok=False,
        message=(
            f"Cycle {state.cycle} has a proposal awaiting review"
            + (f" at {state.pending_proposal}" if state.pending_proposal else "")
            + ". Run `accept` or `reject` first."
        ),
    )


def _upsert_dataset(datasets: List[DatasetRef], ref: DatasetRef) -> None:
    for i, existing in enumerate(datasets):
        if existing.name.lower() == ref.name.lower():
            datasets[i] = ref
            return
    datasets.append(ref)


# =============================================================================
# Gather
# =============================================================================


def _discover_players(state: TunerState) -> List[PlayerEntry]:
    games_by_player = {}
    for ref in state.datasets:
        try:
            games_by_player[ref.username] = load_dataset(ref).get("games", [])
        except DatasetError as e:
            logger.warning(f"Skipping {ref.name} for discovery: {e}")
    opponents = extract_all_opponents(
        games_by_player, exclude=[p.username for p in state.player_pool]
    )
    return pick_opponents_for_bands(opponents, state.player_pool)


def run_gather(
    state: TunerState,
    store: StateStore,
    settings: TunerSettings,
    client: Optional[LichessClient] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PhaseOutcome:
    """Validate the player pool and fetch (or reuse) one dataset per player."""
    if state.phase == TunerPhase.WAITING:
        return _waiting_guidance(state)

    state.phase = TunerPhase.GATHER
    store.checkpoint(state, "gather started")

    client = client or LichessClient.from_settings(settings)
    if not state.player_pool:
        state.player_pool = seed_pool()

    logger.info(f"Validating {len(state.player_pool)} players")
    state.player_pool = validate_pool(
        state.player_pool, client, settings.user_call_delay_seconds, sleep
    )
    store.checkpoint(state, "player pool validated")

    manager = DatasetManager(
        settings.datasets_dir,
        client,
        max_age_days=settings.dataset_max_age_days,
        user_call_delay=settings.user_call_delay_seconds,
        player_delay=settings.player_delay_seconds,
        sleep=sleep,
    )

    def on_dataset(ref: DatasetRef) -> None:
        _upsert_dataset(state.datasets, ref)
        store.checkpoint(state, f"dataset {ref.name}")

    known = {p.username.lower() for p in state.player_pool}
    state.datasets = [d for d in state.datasets if d.name.lower() in known]
    manager.create_all(state.player_pool, settings.max_games, settings.speeds, on_dataset)

    needs = bands_needing_players(state.player_pool)
    if settings.discover_players and needs:
        logger.info(
            "Bands below target: "
            + ", ".join(f"{band.value} (+{n})" for band, n in needs.items())
        )
        discovered = _discover_players(state)
        if discovered:
            refs = manager.create_all(discovered, settings.max_games, settings.speeds, on_dataset)
            fetched = {r.name.lower() for r in refs}
            for player in discovered:
                if player.username.lower() in fetched and add_player(state.player_pool, player):
                    logger.info(
                        f"Discovered {player.username} ({player.band.value}, {player.estimated_elo})"
                    )
            store.checkpoint(state, "discovered players added")

    if not state.datasets:
        store.checkpoint(state, "gather produced no datasets")
        return PhaseOutcome(ok=False, message="No datasets could be gathered; check network and player pool.")

    state.phase = TunerPhase.SWEEP
    store.checkpoint(state, "gather complete")
    return PhaseOutcome(
        ok=True,
        message=f"Gathered {len(state.datasets)} datasets from {len(state.player_pool)} players.",
        details={"datasets": [d.name for d in state.datasets]},
    )


# =============================================================================
# Sweep
# =============================================================================


def _baseline_result(label: str, dataset_metrics: List[DatasetMetrics]) -> AggregatedResult:
    result = aggregate_experiment_results(
        label, "baseline", "Current best config", {}, dataset_metrics, baseline_score=0.0
    )
    result.score_delta = 0.0
    return result


def _run_baseline(
    tester: AccuracyTester,
    state: TunerState,
    record: SweepRecord,
    plan: SweepPlan,
    seed: int,
) -> bool:
    fast_mode = plan.fast_mode
    dataset_metrics = []
    for ds in state.datasets:
        try:
            metrics = run_baseline(tester, ds, seed, plan.position_cap, fast_mode)
        except Exception as e:
            logger.warning(f"Baseline failed on {ds.name}: {e}")
            continue
        dataset_metrics.append(DatasetMetrics(dataset=ds.name, elo=ds.elo, metrics=metrics))
    if not dataset_metrics:
        return False

    triage_names = [d.name for d in select_triage_datasets(state.datasets)] if fast_mode else [
        d.name for d in state.datasets
    ]
    record.baseline = _baseline_result("baseline", dataset_metrics)
    record.triage_baseline = _baseline_result(
        "triage-baseline", [d for d in dataset_metrics if d.dataset in triage_names]
    )
    record.triage_datasets = triage_names

    TUNER_BASELINE_SCORE.labels(scope="full").set(record.baseline.composite_score)
    TUNER_BASELINE_SCORE.labels(scope="triage").set(record.triage_baseline.composite_score)
    logger.info(
        f"Baseline: {format_score(record.baseline.composite_score)} (all datasets), "
        f"{format_score(record.triage_baseline.composite_score)} "
        f"(triage: {', '.join(triage_names)})"
    )
    return True


def run_sweep(
    state: TunerState,
    store: StateStore,
    settings: TunerSettings,
    tester_factory: TesterFactory,
    options: Optional[PlanOptions] = None,
) -> PhaseOutcome:
    """Run the baseline and every pending experiment of the cycle's plan."""
    if state.phase == TunerPhase.WAITING:
        return _waiting_guidance(state)
    if not state.datasets:
        return PhaseOutcome(ok=False, message="No datasets available. Run `gather` first.")

    options = options or PlanOptions(
        max_experiments=settings.max_experiments,
        triage_positions=settings.triage_positions,
        base_seed=settings.seed,
        fast_mode=settings.triage_mode,
    )
    dataset_names = [d.name for d in state.datasets]

    plan = state.current_plan
    regenerate = (
        plan is None
        or plan.base_config != state.best_config
        or plan.fast_mode != options.fast_mode
        or (plan.experiments and plan.experiments[0].datasets != dataset_names)
        or (plan.experiments and plan.experiments[0].seed != options.base_seed)
    )
    if regenerate:
        if plan is not None:
            logger.info("Discarding plan built for a different config, mode, seed or dataset set")
        plan = create_sweep_plan(state.best_config, state.datasets, options)
        state.current_plan = plan
        logger.info(f"Created sweep plan with {len(plan.experiments)} experiments")

    record = store.load_sweep_record(state.cycle)
    if (
        regenerate
        or record is None
        or record.seed != options.base_seed
        or record.base_config != state.best_config
    ):
        record = SweepRecord(cycle=state.cycle, seed=options.base_seed, base_config=state.best_config)

    state.phase = TunerPhase.SWEEP
    store.checkpoint(state, "sweep started")

    in_flight = ExperimentStatus.TRIAGE if plan.fast_mode else ExperimentStatus.RUNNING
    tester = tester_factory()
    try:
        if record.baseline is None or record.triage_baseline is None:
            if not _run_baseline(tester, state, record, plan, options.base_seed):
                return PhaseOutcome(ok=False, message="Baseline failed on every dataset; see log.")
            store.save_sweep_record(record)

        triage_refs = [d for d in state.datasets if d.name in record.triage_datasets]
        triage_score = record.triage_baseline.composite_score
        baseline_names = {d.dataset for d in record.baseline.dataset_metrics}
        finished = {r.experiment_id: r for r in record.experiments}

        while True:
            spec = next_pending_experiment(plan)
            if spec is None:
                break
            if spec.id in finished:
                # Result saved before an interruption, state checkpoint was not
                spec.triage_score = triage_score + finished[spec.id].score_delta
                advance_status(spec, ExperimentStatus.COMPLETE)
                store.checkpoint(state, f"{spec.id} recovered")
                continue

            advance_status(spec, in_flight)
            mark_plan_status(plan)
            store.checkpoint(state, f"{spec.id} started")

            started = time.monotonic()
            dataset_metrics = []
            for ds in triage_refs:
                if ds.name not in baseline_names:
                    continue
                try:
                    metrics = run_experiment(tester, ds, spec, plan.fast_mode)
                except Exception as e:
                    logger.warning(f"{spec.id} failed on {ds.name}: {e}")
                    continue
                dataset_metrics.append(DatasetMetrics(dataset=ds.name, elo=ds.elo, metrics=metrics))
            TUNER_EXPERIMENT_LATENCY.observe(time.monotonic() - started)

            if not dataset_metrics:
                advance_status(spec, ExperimentStatus.SKIPPED)
                TUNER_EXPERIMENTS.labels(outcome="skipped").inc()
                store.checkpoint(state, f"{spec.id} skipped")
                logger.warning(f"Skipped {spec.id}: failed on every dataset")
                continue

            # Delta against the baseline over exactly the datasets this run covered
            covered = [d.dataset for d in dataset_metrics]
            result = aggregate_experiment_results(
                spec.id,
                spec.parameter,
                spec.description,
                spec.config_override,
                dataset_metrics,
                baseline_score=subset_baseline_score(record.baseline, covered),
            )
            record.experiments.append(result)
            store.save_sweep_record(record)

            spec.triage_score = triage_score + result.score_delta
            advance_status(spec, ExperimentStatus.COMPLETE)
            TUNER_EXPERIMENTS.labels(outcome="complete").inc()
            store.checkpoint(state, f"{spec.id} complete")

            progress = plan_progress(plan)
            logger.info(
                f"[{progress.complete + progress.skipped}/{progress.total}] {spec.description}: "
                f"{format_score(result.composite_score)} ({format_delta(result.score_delta)})"
                + (f" on {len(covered)}/{len(triage_refs)} datasets" if len(covered) < len(triage_refs) else "")
            )
    finally:
        close_tester(tester)

    mark_plan_status(plan)
    state.phase = TunerPhase.ANALYZE
    store.checkpoint(state, "sweep complete")

    promising = promotable_experiments(plan, triage_score)
    if promising:
        logger.info(
            "Beat the baseline: "
            + ", ".join(f"{e.id} ({format_delta(e.triage_score - triage_score)})" for e in promising)
        )
    improved = sum(1 for r in record.experiments if r.score_delta > 0)
    details = plan_progress(plan).to_dict()
    details["promotable"] = [e.id for e in promising]
    return PhaseOutcome(
        ok=True,
        message=(
            f"Sweep complete: {len(record.experiments)} experiments, {improved} improved "
            f"on the triage baseline. Results in {store.sweep_record_path(state.cycle)}."
        ),
        details=details,
    )


# =============================================================================
# Analyze
# =============================================================================


def _request_analysis(advisor: Optional[AdvisoryClient], prompt: str) -> Optional[AdvisoryAnalysis]:
    if advisor is None:
        logger.info("No advisory client configured; using statistical fallback")
        TUNER_ADVISORY_REQUESTS.labels(outcome="fallback").inc()
        return None
    try:
        response = advisor.complete(prompt)
    except Exception as e:
        logger.error(
            f"Advisory request failed: {e}. Check ANTHROPIC_API_KEY and network access, "
            f"then rerun `analyze` for an advisory proposal. Using statistical fallback."
        )
        TUNER_ADVISORY_REQUESTS.labels(outcome="failed").inc()
        return None
    analysis = parse_advisory_response(response)
    if analysis is None:
        logger.warning("Advisory response could not be parsed; using statistical fallback")
        TUNER_ADVISORY_REQUESTS.labels(outcome="fallback").inc()
    else:
        TUNER_ADVISORY_REQUESTS.labels(outcome="used").inc()
    return analysis


def run_analyze(
    state: TunerState,
    store: StateStore,
    settings: TunerSettings,
    advisor: Optional[AdvisoryClient] = None,
) -> PhaseOutcome:
    """Check for regressions, synthesize a proposal and wait for review."""
    if state.phase == TunerPhase.WAITING:
        return _waiting_guidance(state)

    record = store.load_sweep_record(state.cycle)
    if record is None or record.baseline is None or record.triage_baseline is None:
        return PhaseOutcome(
            ok=False, message=f"No sweep results for cycle {state.cycle}. Run `sweep` first."
        )

    state.phase = TunerPhase.ANALYZE
    store.checkpoint(state, "analyze started")

    history = store.historical_records(state.cycle)
    previous = history[-1] if history else None
    regression = run_regression_check(
        record.baseline,
        previous.baseline if previous else None,
        current_cycle=state.cycle,
        previous_cycle=previous.cycle if previous else 0,
        completed_cycles=state.completed_cycles,
        historical_baselines=[r.baseline for r in history],
    )

    prompt = build_analysis_prompt(
        state.best_config, record, regression, state.completed_cycles, history
    )
    analysis = _request_analysis(advisor, prompt)
    proposal = generate_proposal(state.cycle, state.best_config, record, analysis, regression)

    directory = write_proposal(proposal, settings.proposals_dir, format_regression_markdown(regression))
    (directory / "prompt.md").write_text(prompt)

    state.pending_proposal = str(directory)
    state.phase = TunerPhase.WAITING
    store.checkpoint(state, "proposal written")

    return PhaseOutcome(
        ok=True,
        message=(
            f"Proposal for cycle {state.cycle} written to {directory} "
            f"({len(proposal.config_changes)} change(s), "
            f"{'advisory' if proposal.advisory_used else 'statistical fallback'}). "
            f"Review it, then run `accept` or `reject`."
        ),
        details={
            "proposal_dir": str(directory),
            "regression": format_regression_console(regression),
        },
    )


# =============================================================================
# Start / resume
# =============================================================================


def run_start(
    state: TunerState,
    store: StateStore,
    settings: TunerSettings,
    tester_factory: TesterFactory,
    advisor: Optional[AdvisoryClient] = None,
    client: Optional[LichessClient] = None,
    options: Optional[PlanOptions] = None,
    force_gather: bool = False,
    skip_gather: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> PhaseOutcome:
    """Run the cycle from the persisted phase up to ``waiting``."""
    if state.phase == TunerPhase.WAITING:
        return _waiting_guidance(state)

    if state.phase == TunerPhase.IDLE:
        missing = missing_seed_players(state.player_pool)
        for player in missing:
            add_player(state.player_pool, player)
        if missing:
            logger.info(f"Restored {len(missing)} seed player(s) to the pool")
        if state.current_plan is not None:
            logger.info("Discarding sweep plan left from an earlier run")
            state.current_plan = None

        needs_gather = force_gather or bool(missing) or not state.datasets
        if skip_gather and not state.datasets:
            store.checkpoint(state, "start aborted")
            return PhaseOutcome(ok=False, message="Cannot skip gather: no datasets yet.")
        state.phase = TunerPhase.SWEEP if skip_gather or not needs_gather else TunerPhase.GATHER
        store.checkpoint(state, f"cycle {state.cycle} started")
        logger.info(f"Starting cycle {state.cycle}")
    else:
        logger.info(f"Resuming cycle {state.cycle} from the '{state.phase.value}' phase")

    outcome = PhaseOutcome(ok=True, message="")
    if state.phase == TunerPhase.GATHER:
        outcome = run_gather(state, store, settings, client=client, sleep=sleep)
        if not outcome.ok:
            return outcome
    if state.phase == TunerPhase.SWEEP:
        outcome = run_sweep(state, store, settings, tester_factory, options)
        if not outcome.ok:
            return outcome
    if state.phase == TunerPhase.ANALYZE:
        outcome = run_analyze(state, store, settings, advisor)
    return outcome
