"""Tests for fleet_core.cli."""

import json
from unittest.mock import patch

import pytest

from fleet_core.cli.main import load_factory, main
from fleet_core.config import ConfigManager
from fleet_core.registry import SupervisorRegistry

from .conftest import duration_agent, simple_agent


@pytest.fixture
def data_dir(tmp_path):
    manager = ConfigManager(str(tmp_path))
    manager.save_agent(simple_agent("alpha"))
    manager.save_agent(duration_agent("beta", meal_breaks=1, short_breaks=2, break_timing_variance=30))
    return str(tmp_path)


def _run(capsys, *argv):
    with patch("fleet_core.cli.main.setup_logging"):
        code = main(list(argv))
    return code, capsys.readouterr().out


class TestCommands:
    def test_agents(self, capsys, data_dir):
        """Agents are listed with their schedule mode."""
        code, out = _run(capsys, "--data-dir", data_dir, "--json", "agents")
        assert code == 0
        data = json.loads(out)
        assert [a["name"] for a in data] == ["alpha", "beta"]
        assert data[1]["schedule"] == "duration"

    def test_window(self, capsys, data_dir):
        """Window reports whether the agent may run now."""
        code, out = _run(capsys, "--data-dir", data_dir, "--json", "window", "alpha")
        assert code == 0
        data = json.loads(out)
        assert data["agent"] == "alpha"
        assert isinstance(data["within_schedule"], bool)

    def test_plan_is_reproducible_with_seed(self, capsys, data_dir):
        """The same seed gives the same plan."""
        _, first = _run(capsys, "--data-dir", data_dir, "--json", "plan", "beta", "--seed", "7", "--wake", "09:00")
        _, second = _run(capsys, "--data-dir", data_dir, "--json", "plan", "beta", "--seed", "7", "--wake", "09:00")
        assert first == second

        plan = json.loads(first)
        assert plan["wake"] == "09:00"
        assert len(plan["breaks"]) == 3

    def test_history_empty(self, capsys, data_dir):
        """An agent with no closed days has an empty history."""
        code, out = _run(capsys, "--data-dir", data_dir, "--json", "history", "alpha")
        assert code == 0
        assert json.loads(out) == []

    def test_plain_output(self, capsys, data_dir):
        """Without --json output is key=value text."""
        _, out = _run(capsys, "--data-dir", data_dir, "agents")
        assert "name=alpha" in out

    def test_no_command(self, capsys):
        """Running without a command prints help and fails."""
        code, _ = _run(capsys)
        assert code == 1

    def test_serve_needs_factory(self, capsys, data_dir, monkeypatch):
        """serve refuses to run without a component factory."""
        monkeypatch.delenv("FLEET_COMPONENT_FACTORY", raising=False)
        code, out = _run(capsys, "--data-dir", data_dir, "serve")
        assert code == 2
        assert "--factory" in out


class TestLoadFactory:
    def test_valid_factory_path(self):
        """module:attr specs are imported."""
        assert load_factory("fleet_core.registry:SupervisorRegistry") is SupervisorRegistry

    @pytest.mark.parametrize("spec", ["fleet_core.registry", ":thing", "module:"])
    def test_invalid_factory_path(self, spec):
        """Specs without both parts are rejected."""
        with pytest.raises(ValueError):
            load_factory(spec)
