"""Shared fakes and fixtures for fleet_core tests."""

import threading
import time
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import pytest

from fleet_core.config import (
    AgentConfig,
    ConfigManager,
    DurationConfig,
    SchedulerConfig,
    SupervisorSettings,
    WatchdogSettings,
)
from fleet_core.errors import SessionError
from fleet_core.interfaces import (
    AgentComponents,
    HealthService,
    MaintenanceNeeds,
    MaintenanceService,
    ProcessDriver,
    ProcessHandle,
    Routines,
    Task,
)
from fleet_core.supervisor import SupervisorStats, SupervisorStatus


# ============================================================================
# CLOCK
# ============================================================================

class FakeClock:
    """Mutable "now" for injection as ``clock=``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# ============================================================================
# COLLABORATORS
# ============================================================================

class FakeDriver(ProcessDriver):

    def __init__(self, in_session: bool = True, position=(0.0, 0.0)):
        self.session = in_session
        self.position = position
        self.latency: Optional[float] = None
        self.refreshes = 0
        self.killed = 0
        self.exits = 0
        self.enter_errors: List[Exception] = []
        self.enter_calls = 0
        self.enter_delay = 0.0
        self.inputs = []

    def refresh_state(self):
        self.refreshes += 1
        return {"refresh": self.refreshes}

    def is_running(self) -> bool:
        return self.killed == 0

    def current_position(self):
        return self.position

    def send_input(self, *args, **kwargs) -> None:
        self.inputs.append(args)

    def exit_session(self) -> None:
        self.exits += 1
        self.session = False

    def in_session(self) -> bool:
        return self.session

    def enter_session(self) -> None:
        self.enter_calls += 1
        if self.enter_delay:
            threading.Event().wait(self.enter_delay)
        if self.enter_errors:
            raise self.enter_errors.pop(0)
        self.session = True

    def kill(self) -> None:
        self.killed += 1
        self.session = False

    def latency_ms(self):
        return self.latency


class FakeHealth(HealthService):

    def __init__(self, error: Optional[SessionError] = None, after: int = 0):
        self.error = error
        self.after = after
        self.calls = 0

    def check_health_and_react(self):
        self.calls += 1
        if self.error is not None and self.calls > self.after:
            return self.error
        return None


class FakeMaintenance(MaintenanceService):

    def __init__(self, needs: Optional[MaintenanceNeeds] = None, level: int = 1):
        self.needs = needs or MaintenanceNeeds()
        self.level = level
        self.actions: List[str] = []
        self.priorities_seen = []
        self.return_error: Optional[SessionError] = None
        self.ctx = None

    def peek(self) -> MaintenanceNeeds:
        needs, self.needs = self.needs, MaintenanceNeeds()
        return needs

    def current_level(self) -> int:
        return self.level

    def _record(self, name: str) -> None:
        self.actions.append(name)
        if self.ctx is not None:
            self.priorities_seen.append(self.ctx.priority.value)

    def correct_position(self) -> None:
        self._record("correct_position")

    def pickup(self) -> None:
        self._record("pickup")

    def buff(self) -> None:
        self._record("buff")

    def refill(self) -> None:
        self._record("refill")

    def return_to_base(self) -> None:
        self._record("return_to_base")
        if self.return_error is not None:
            raise self.return_error


class RecordingRoutines(Routines):

    def __init__(self):
        self.calls = []

    def pre_run(self, first_run: bool) -> None:
        self.calls.append(("pre", first_run))

    def post_run(self, is_last: bool) -> None:
        self.calls.append(("post", is_last))


class FakeTask(Task):

    def __init__(self, name: str = "run", error: Optional[Exception] = None,
                 block: bool = False, skip_routines: bool = False):
        self._name = name
        self.error = error
        self.block = block
        self.skip_routines = skip_routines
        self.ran = 0

    @property
    def name(self) -> str:
        return self._name

    def run(self, ctx) -> None:
        self.ran += 1
        if self.block:
            ctx.cancel.wait(5.0)
        if self.error is not None:
            raise self.error

    def skip_pre_post_routines(self) -> bool:
        return self.skip_routines


class FakeProcess(ProcessHandle):

    def __init__(self):
        self.alive = True

    def is_alive(self) -> bool:
        return self.alive


def make_components(driver=None, health=None, tasks=None, maintenance=None,
                    routines=None, process=None) -> AgentComponents:
    task_list = tasks if tasks is not None else []
    return AgentComponents(
        driver=driver or FakeDriver(),
        health=health or FakeHealth(),
        tasks=lambda: list(task_list),
        maintenance=maintenance,
        routines=routines or Routines(),
        process=process,
    )


# ============================================================================
# REGISTRY FAKE (scheduler tests)
# ============================================================================

class FakeRegistry:
    """Start/stop/status surface only; records calls."""

    def __init__(self):
        self.running = set()
        self.starts: List[str] = []
        self.stops: List[str] = []

    def start(self, name, attach=False, manual=False):
        self.starts.append(name)
        self.running.add(name)

    def stop(self, name):
        self.stops.append(name)
        self.running.discard(name)

    def status(self, name):
        if name in self.running:
            return SupervisorStats(status=SupervisorStatus.IN_SESSION)
        return SupervisorStats()


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def fast_settings() -> SupervisorSettings:
    return SupervisorSettings(
        menu_action_timeout_seconds=1.0,
        max_time_out_of_session_seconds=60.0,
        transient_retry_budget=3,
        inter_session_idle_ms=[1, 2],
        exit_session_timeout_seconds=1.0,
        tick_ms=[1, 3],
    )


@pytest.fixture
def watchdog() -> WatchdogSettings:
    return WatchdogSettings()


@pytest.fixture
def config_manager(tmp_path) -> ConfigManager:
    manager = ConfigManager(str(tmp_path))
    manager.global_config.registry.restart_settle_seconds = 0
    manager.global_config.registry.token_auth_poll_seconds = 0.01
    manager.global_config.registry.kill_grace_seconds = 0.2
    manager.global_config.supervisor.tick_ms = [1, 3]
    manager.global_config.supervisor.inter_session_idle_ms = [1, 2]
    return manager


def duration_agent(name: str = "alpha", **duration_kwargs) -> AgentConfig:
    defaults = dict(wake_up_time="08:00", play_hours=6, meal_breaks=0, short_breaks=0)
    defaults.update(duration_kwargs)
    return AgentConfig(
        name=name,
        scheduler=SchedulerConfig(enabled=True, mode="duration", duration=DurationConfig(**defaults)),
    )


def simple_agent(name: str = "alpha", start: str = "09:00", stop: str = "17:00") -> AgentConfig:
    return AgentConfig(
        name=name,
        scheduler=SchedulerConfig(
            enabled=True, mode="simple", simple_start_time=start, simple_stop_time=stop
        ),
    )
