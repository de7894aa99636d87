"""Tests for the command-line interface."""

import json
import logging
import textwrap

import pytest

from tuner.cli.main import build_parser, load_tester_factory, main
from tuner.errors import ConfigurationError
from tuner.state.store import StateStore

HARNESS = textwrap.dedent("""
    from tuner.models import Metrics


    class Tester:
        def run(self, dataset, config):
            return Metrics(total_positions=10, match_rate=0.5, top_n_rate=0.6)


    def create_tester():
        return Tester()
""")


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for var in ("TUNER_ACCURACY_TESTER", "TUNER_ROOT_DIR", "ANTHROPIC_API_KEY",
                "TUNER_ANTHROPIC_API_KEY", "TUNER_METRICS_TEXTFILE"):
        monkeypatch.delenv(var, raising=False)
    yield tmp_path
    logging.getLogger("tuner").handlers.clear()


@pytest.fixture
def harness(workdir, monkeypatch):
    (workdir / "tuner_cli_harness.py").write_text(HARNESS)
    monkeypatch.syspath_prepend(str(workdir))
    (workdir / "tuner.yaml").write_text(
        "accuracy_tester: tuner_cli_harness:create_tester\n"
        "max_experiments: 2\n"
        "triage_positions: 5\n"
    )
    return workdir


class TestParser:
    def test_commands_parse(self):
        parser = build_parser()
        args = parser.parse_args(["--root", "/tmp/x", "accept", "--change", "2"])
        assert args.command == "accept"
        assert args.change == 2
        assert args.root == "/tmp/x"

    def test_sweep_options(self):
        args = build_parser().parse_args(["sweep", "--max-experiments", "5", "--seed", "9"])
        assert args.max_experiments == 5
        assert args.seed == 9
        assert args.triage_positions is None

    def test_no_command_prints_help(self, workdir, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()


class TestLoadTesterFactory:
    """Tests for resolving the accuracy tester factory."""

    def test_resolves_callable(self):
        assert load_tester_factory("json:dumps") is json.dumps

    @pytest.mark.parametrize("spec", [None, "", "json", "json:not_there"])
    def test_invalid_specs(self, spec):
        with pytest.raises(ConfigurationError):
            load_tester_factory(spec)


class TestCommands:
    """Tests for CLI commands against a temp data directory."""

    def test_status(self, workdir, capsys):
        assert main(["--root", str(workdir / "data"), "status"]) == 0
        out = capsys.readouterr().out
        assert "Cycle:           1" in out
        assert "Phase:           idle" in out

    def test_status_json(self, workdir, capsys):
        main(["--root", str(workdir / "data"), "status", "--json"])
        state = json.loads(capsys.readouterr().out)
        assert state["cycle"] == 1
        assert state["phase"] == "idle"

    def test_history_empty(self, workdir, capsys):
        assert main(["--root", str(workdir / "data"), "history"]) == 0
        assert "No completed cycles yet." in capsys.readouterr().out

    def test_accept_when_idle(self, workdir, capsys):
        assert main(["--root", str(workdir / "data"), "accept"]) == 1
        assert "Nothing to accept" in capsys.readouterr().out

    def test_sweep_without_tester_configured(self, workdir):
        assert main(["--root", str(workdir / "data"), "sweep"]) == 1

    def test_sweep_analyze_accept(self, harness, four_datasets, capsys):
        root = harness / "data"
        store = StateStore(root)
        state = store.get_or_create()
        state.datasets = list(four_datasets)
        store.save(state)

        assert main(["--root", str(root), "sweep"]) == 0
        assert main(["--root", str(root), "analyze", "--no-advisory"]) == 0
        assert store.load().phase.value == "waiting"
        assert main(["--root", str(root), "accept"]) == 0
        capsys.readouterr()

        assert main(["--root", str(root), "history"]) == 0
        out = capsys.readouterr().out
        assert "accepted" in out
        assert store.load().cycle == 2
        assert (root / "best-config.json").exists()

    def test_metrics_textfile(self, workdir, monkeypatch):
        target = workdir / "metrics" / "tuner.prom"
        monkeypatch.setenv("TUNER_METRICS_TEXTFILE", str(target))

        main(["--root", str(workdir / "data"), "status"])

        assert "tuner_cycle" in target.read_text()
