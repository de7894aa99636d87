"""Tests for accepting and rejecting pending proposals."""

import json

import pytest

from tuner.analysis.proposal import REJECTED_PREFIX, write_proposal
from tuner.config.bot_config import BotConfig, merge_config
from tuner.cycle.gate import accept_proposal, reject_proposal
from tuner.models import ConfigChange, TunerPhase
from tuner.state.store import create_initial_state

MISTAKE_CHANGE = ConfigChange(
    path="error.mistake", old_value=100, new_value=125,
    score_delta=0.032, description="Mistake threshold: 100 -> 125",
)


@pytest.fixture
def proposals_dir(settings):
    return settings.proposals_dir


@pytest.fixture
def waiting_state(proposals_dir):
    """Build a waiting state with the given proposal pending."""
    def _make(proposal):
        state = create_initial_state()
        state.phase = TunerPhase.WAITING
        state.pending_proposal = str(write_proposal(proposal, proposals_dir))
        return state
    return _make


class TestAcceptProposal:
    """Tests for accept_proposal."""

    def test_outside_waiting_is_noop(self, store, proposals_dir):
        state = create_initial_state()
        outcome = accept_proposal(state, store, proposals_dir)

        assert not outcome.ok
        assert "Nothing to accept" in outcome.message
        assert "start" in outcome.message
        assert state.cycle == 1
        assert state.completed_cycles == []

    def test_zero_change_accept_closes_cycle(self, store, proposals_dir, waiting_state, proposal_factory):
        state = waiting_state(proposal_factory())

        outcome = accept_proposal(state, store, proposals_dir)

        assert outcome.ok
        assert state.cycle == 2
        assert state.phase == TunerPhase.IDLE
        assert state.pending_proposal is None
        assert state.current_plan is None
        record = state.completed_cycles[-1]
        assert record.cycle == 1
        assert record.accepted is True
        assert record.config_changes == []
        assert state.best_config == BotConfig()

        persisted = store.load()
        assert persisted.cycle == 2
        assert persisted.completed_cycles[-1].accepted is True

    def test_accept_applies_proposed_config(self, store, proposals_dir, waiting_state, proposal_factory):
        proposed = merge_config(BotConfig(), {"error": {"mistake": 125}})
        state = waiting_state(proposal_factory(changes=[MISTAKE_CHANGE], proposed_config=proposed))

        outcome = accept_proposal(state, store, proposals_dir)

        assert outcome.ok
        assert state.best_config.error.mistake == 125
        assert len(state.accepted_changes) == 1
        applied = state.completed_cycles[-1].config_changes[0]
        assert applied.path == "error.mistake"
        assert applied.score_delta == pytest.approx(0.032)

        exported = json.loads((store.root_dir / "best-config.json").read_text())
        assert exported["error"]["mistake"] == 125

    def test_unlisted_config_differences_are_audited(self, store, proposals_dir, waiting_state, proposal_factory):
        proposed = merge_config(BotConfig(), {"error": {"mistake": 125}, "trie": {"min_games": 4}})
        state = waiting_state(proposal_factory(changes=[MISTAKE_CHANGE], proposed_config=proposed))

        accept_proposal(state, store, proposals_dir)

        changes = {c.path: c for c in state.completed_cycles[-1].config_changes}
        assert set(changes) == {"error.mistake", "trie.min_games"}
        assert changes["trie.min_games"].description == "From proposed config"

    def test_accept_single_change(self, store, proposals_dir, waiting_state, proposal_factory):
        other = ConfigChange(path="trie.min_games", old_value=3, new_value=4, score_delta=0.01)
        state = waiting_state(proposal_factory(changes=[MISTAKE_CHANGE, other]))

        outcome = accept_proposal(state, store, proposals_dir, change_index=2)

        assert outcome.ok
        assert state.best_config.trie.min_games == 4
        assert state.best_config.error.mistake == 100

    def test_accept_out_of_range_change(self, store, proposals_dir, waiting_state, proposal_factory):
        state = waiting_state(proposal_factory(changes=[MISTAKE_CHANGE]))

        outcome = accept_proposal(state, store, proposals_dir, change_index=3)

        assert not outcome.ok
        assert state.phase == TunerPhase.WAITING
        assert state.cycle == 1

    def test_missing_pending_falls_back_to_latest(self, store, proposals_dir, waiting_state, proposal_factory):
        state = waiting_state(proposal_factory())
        state.pending_proposal = str(proposals_dir / "vanished")

        assert accept_proposal(state, store, proposals_dir).ok


class TestRejectProposal:
    """Tests for reject_proposal."""

    def test_reject_archives_and_closes_cycle(self, store, proposals_dir, waiting_state, proposal_factory):
        state = waiting_state(proposal_factory(changes=[MISTAKE_CHANGE]))
        pending = state.pending_proposal

        outcome = reject_proposal(state, store, proposals_dir)

        assert outcome.ok
        assert outcome.details["archived"].split("/")[-1].startswith(REJECTED_PREFIX)
        assert not (proposals_dir / pending.split("/")[-1]).exists()
        assert state.cycle == 2
        assert state.phase == TunerPhase.IDLE
        record = state.completed_cycles[-1]
        assert record.accepted is False
        assert record.config_changes == []
        assert state.best_config == BotConfig()
        assert store.load().cycle == 2

    def test_reject_outside_waiting(self, store, proposals_dir):
        state = create_initial_state()
        state.phase = TunerPhase.ANALYZE
        outcome = reject_proposal(state, store, proposals_dir)

        assert not outcome.ok
        assert "analyze" in outcome.message
