"""Tests for fleet_core.registry."""

import threading
from unittest.mock import MagicMock

import pytest

from fleet_core.config import AgentConfig
from fleet_core.errors import AlreadyRunningError, UnknownAgentError, UnrecoverableClientError
from fleet_core.events import EventType
from fleet_core.registry import SupervisorRegistry
from fleet_core.supervisor import SupervisorStats, SupervisorStatus

from .conftest import FakeDriver, FakeProcess, FakeTask, make_components, wait_until


class Factory:
    """Component factory that records every build."""

    def __init__(self, with_process: bool = False):
        self.with_process = with_process
        self.builds = []
        self.processes = []

    def __call__(self, name, config, attach):
        process = FakeProcess() if self.with_process else None
        components = make_components(
            driver=FakeDriver(), tasks=[FakeTask(block=True)], process=process,
        )
        self.builds.append((name, attach))
        self.processes.append(process)
        return components


@pytest.fixture
def agents(config_manager):
    for name in ("alpha", "beta"):
        config_manager.save_agent(AgentConfig(name))
    return config_manager


def _registry(config_manager, factory=None, events=None):
    return SupervisorRegistry(
        factory or Factory(),
        config_manager=config_manager,
        events=events,
        sleep=lambda seconds: None,
        detector_poll_interval=0.01,
    )


def _start_in_thread(registry, name, **kwargs):
    errors = []

    def run():
        try:
            registry.start(name, **kwargs)
        except Exception as e:
            errors.append(e)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread, errors


def _in_session(registry, name):
    return lambda: registry.status(name).status == SupervisorStatus.IN_SESSION


class TestStartStop:
    def test_unknown_agent(self, agents):
        """Starting an unconfigured agent is rejected."""
        with pytest.raises(UnknownAgentError):
            _registry(agents).start("gamma")

    def test_start_and_stop(self, agents):
        """A started agent is listed until stopped."""
        registry = _registry(agents)
        thread, errors = _start_in_thread(registry, "alpha")
        assert wait_until(_in_session(registry, "alpha"))
        assert registry.list_running() == ["alpha"]
        assert registry.get_context("alpha").name == "alpha"

        registry.stop("alpha")
        thread.join(timeout=3.0)
        assert not thread.is_alive()
        assert errors == []
        assert registry.list_running() == []

    def test_second_start_is_rejected(self, agents):
        """A running name cannot be started again."""
        registry = _registry(agents)
        thread, _ = _start_in_thread(registry, "alpha")
        assert wait_until(_in_session(registry, "alpha"))

        with pytest.raises(AlreadyRunningError, match="already running"):
            registry.start("alpha")

        registry.stop("alpha")
        thread.join(timeout=3.0)

    def test_concurrent_starts_yield_one_instance(self, agents):
        """Two simultaneous starts give one instance and one rejection."""
        registry = _registry(agents)
        barrier = threading.Barrier(2)
        errors = []

        def run():
            barrier.wait()
            try:
                registry.start("alpha")
            except AlreadyRunningError as e:
                errors.append(e)

        threads = [threading.Thread(target=run, daemon=True) for _ in range(2)]
        for t in threads:
            t.start()

        assert wait_until(lambda: len(errors) == 1)
        assert registry.list_running() == ["alpha"]

        registry.stop("alpha")
        for t in threads:
            t.join(timeout=3.0)
        assert len(errors) == 1

    def test_stop_all(self, agents):
        """Every running agent is stopped."""
        registry = _registry(agents)
        threads = [_start_in_thread(registry, name)[0] for name in ("alpha", "beta")]
        assert wait_until(lambda: registry.list_running() == ["alpha", "beta"])

        registry.stop_all()
        for t in threads:
            t.join(timeout=3.0)
        assert registry.list_running() == []

    def test_stop_unknown_is_noop(self, agents):
        """Stopping something that is not running does nothing."""
        _registry(agents).stop("alpha")

    def test_failed_supervisor_is_released(self, agents):
        """An agent whose loop crashes without a detector is unregistered."""
        def factory(name, config, attach):
            driver = FakeDriver(in_session=False)
            driver.enter_errors = [UnrecoverableClientError("stuck in menu")]
            return make_components(driver=driver)

        registry = _registry(agents, factory=factory)
        registry.start("alpha")
        assert registry.list_running() == []

    def test_process_surviving_kill_is_restarted(self, agents):
        """A client that outlives its kill is released and started again."""
        drivers = []

        def factory(name, config, attach):
            driver = FakeDriver(in_session=False)
            if not drivers:
                driver.enter_errors = [UnrecoverableClientError("stuck in menu")]
            drivers.append(driver)
            return make_components(driver=driver, tasks=[FakeTask(block=True)], process=FakeProcess())

        registry = _registry(agents, factory=factory)
        thread, errors = _start_in_thread(registry, "alpha")
        thread.join(timeout=3.0)
        assert not thread.is_alive()
        assert errors == []
        assert drivers[0].killed == 1

        assert wait_until(lambda: len(drivers) == 2)
        assert wait_until(_in_session(registry, "alpha"))
        assert registry.list_running() == ["alpha"]

        registry.stop("alpha")
        assert wait_until(lambda: registry.list_running() == [])

    def test_killed_process_is_left_to_detector(self, agents):
        """When the kill takes, the crash detector owns the restart."""
        processes = []

        def factory(name, config, attach):
            driver = FakeDriver(in_session=False)
            process = FakeProcess()
            if not processes:
                driver.enter_errors = [UnrecoverableClientError("stuck in menu")]
                driver.kill = lambda: setattr(process, "alive", False)
            processes.append(process)
            return make_components(driver=driver, tasks=[FakeTask(block=True)], process=process)

        events = MagicMock()
        registry = _registry(agents, factory=factory, events=events)
        thread, _ = _start_in_thread(registry, "alpha")
        thread.join(timeout=3.0)

        assert wait_until(lambda: len(processes) == 2)
        assert wait_until(_in_session(registry, "alpha"))
        types = [call.args[0].type for call in events.send.call_args_list]
        assert EventType.AGENT_CRASHED in types

        registry.stop("alpha")


class TestLookups:
    def test_missing_agent(self, agents):
        """Lookups for a name that is not running return empty values."""
        registry = _registry(agents)
        assert registry.status("alpha") == SupervisorStats()
        assert registry.status("alpha").status == SupervisorStatus.NOT_STARTED
        assert registry.get_data("alpha") is None
        assert registry.get_context("alpha") is None
        assert registry.toggle_pause("alpha") is None

    def test_available_agents(self, agents):
        """Available agents come from configuration."""
        assert _registry(agents).available_agents() == ["alpha", "beta"]

    def test_toggle_pause_running(self, agents):
        """A running agent can be paused and resumed."""
        registry = _registry(agents)
        thread, _ = _start_in_thread(registry, "alpha")
        assert wait_until(_in_session(registry, "alpha"))

        assert registry.toggle_pause("alpha") is True
        assert registry.status("alpha").status == SupervisorStatus.PAUSED
        assert registry.toggle_pause("alpha") is False

        registry.stop("alpha")
        thread.join(timeout=3.0)

    def test_reload_config_updates_running(self, agents):
        """Reloading hands running agents their new configuration."""
        registry = _registry(agents)
        thread, _ = _start_in_thread(registry, "alpha")
        assert wait_until(_in_session(registry, "alpha"))

        agents.save_agent(AgentConfig("alpha", max_session_seconds=900))
        registry.reload_config()
        assert registry.get_context("alpha").config.max_session_seconds == 900

        registry.stop("alpha")
        thread.join(timeout=3.0)


class TestRestartPolicy:
    def test_crash_restarts_agent(self, agents):
        """A vanished process is replaced by a fresh instance."""
        factory = Factory(with_process=True)
        events = MagicMock()
        registry = _registry(agents, factory=factory, events=events)
        thread, _ = _start_in_thread(registry, "alpha")
        assert wait_until(_in_session(registry, "alpha"))

        factory.processes[0].alive = False
        assert wait_until(lambda: len(factory.builds) == 2)
        assert wait_until(_in_session(registry, "alpha"))
        assert registry.list_running() == ["alpha"]

        types = [call.args[0].type for call in events.send.call_args_list]
        assert EventType.AGENT_CRASHED in types

        registry.stop("alpha")
        thread.join(timeout=3.0)

    def test_manual_mode_is_not_restarted(self, agents):
        """A manual agent whose process dies is only stopped."""
        factory = Factory(with_process=True)
        registry = _registry(agents, factory=factory)
        thread, _ = _start_in_thread(registry, "alpha", manual_mode=True)
        assert wait_until(_in_session(registry, "alpha"))

        factory.processes[0].alive = False
        assert wait_until(lambda: registry.list_running() == [])
        thread.join(timeout=3.0)
        assert len(factory.builds) == 1

    def test_clean_stop_starts_next_agent(self, agents):
        """A clean stop with a successor hands over to it."""
        factory = Factory()
        registry = _registry(agents, factory=factory)
        thread, _ = _start_in_thread(registry, "alpha")
        assert wait_until(_in_session(registry, "alpha"))

        registry.get_context("alpha").request_stop(restart_with="beta")
        assert wait_until(lambda: registry.list_running() == ["beta"])
        thread.join(timeout=3.0)
        assert [name for name, _ in factory.builds] == ["alpha", "beta"]

        registry.stop("beta")

    def test_clean_stop_without_successor(self, agents):
        """A plain clean stop does not restart anything."""
        factory = Factory()
        registry = _registry(agents, factory=factory)
        thread, _ = _start_in_thread(registry, "alpha")
        assert wait_until(_in_session(registry, "alpha"))

        registry.get_context("alpha").request_stop()
        assert wait_until(lambda: registry.list_running() == [])
        thread.join(timeout=3.0)
        assert len(factory.builds) == 1

    def test_waits_for_token_auth_login(self, agents):
        """A TokenAuth restart waits while another agent is still starting."""
        agents.save_agent(AgentConfig("alpha", auth_method="TokenAuth"))
        agents.save_agent(AgentConfig("beta", auth_method="TokenAuth"))
        registry = _registry(agents)

        starting = MagicMock()
        starting.stats.return_value = SupervisorStats(status=SupervisorStatus.STARTING)
        registry._supervisors["beta"] = starting

        def settle(seconds):
            starting.stats.return_value = SupervisorStats(status=SupervisorStatus.IN_SESSION)

        registry._sleep = MagicMock(side_effect=settle)
        registry._wait_for_token_auth("alpha")
        registry._sleep.assert_called_once_with(agents.global_config.registry.token_auth_poll_seconds)

    def test_no_wait_without_token_auth(self, agents):
        """Agents without TokenAuth do not wait on each other."""
        registry = _registry(agents)
        starting = MagicMock()
        starting.stats.return_value = SupervisorStats(status=SupervisorStatus.STARTING)
        registry._supervisors["beta"] = starting

        registry._sleep = MagicMock()
        registry._wait_for_token_auth("alpha")
        registry._sleep.assert_not_called()
