"""
SUPERVISOR_REGISTRY
===================

Central owner of every running agent instance.

The registry guarantees at most one running supervisor per agent name and
owns construction, start, stop, pause/resume and crash-triggered restart.

Responsibilities
----------------
- **Construction**: the injected ``ComponentFactory`` builds the agent's
  collaborators (process driver, health, maintenance, tasks). The registry
  wraps them in an AgentContext, a Supervisor (which owns the
  PriorityExecutor) and a CrashDetector.
- **Uniqueness**: ``start()`` checks for an existing instance twice, once
  under the shared lock and once under the exclusive lock right before
  registering. Two concurrent starts for the same name yield exactly one
  running instance and one AlreadyRunningError.
- **Lock discipline**: the exclusive lock only ever guards map edits.
  ``Supervisor.start()`` (blocks for the whole session) and every
  ``stop()`` run outside it, so a restart fired from a crash detector never
  deadlocks against an in-flight ``start()``.
- **Restart policy** (crash detector callback or clean-stop request):
    manual mode        -> stop, no restart
    clean stop + next  -> stop, settle, start the next agent
    clean stop         -> stop, no restart
    otherwise          -> stop, settle, wait out any other TokenAuth login
                          in progress, start the same agent again

Agent errors never propagate to ``start()``'s caller; they are logged.

Entry Points
------------
::

    registry = SupervisorRegistry(component_factory)
    threading.Thread(target=registry.start, args=("alpha",)).start()
    registry.status("alpha").status
    registry.stop("alpha")
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .config import ConfigManager, get_config_manager
from .context import AgentContext
from .crash_detector import CrashDetector, PidProcessHandle
from .errors import AlreadyRunningError, UnknownAgentError
from .events import Event, EventBus, EventType
from .interfaces import ComponentFactory
from .rwlock import RWLock
from .supervisor import Supervisor, SupervisorStats, SupervisorStatus

logger = logging.getLogger(__name__)


class SupervisorRegistry:
    """
    Registry of running supervisors keyed by agent name.

    Args:
        component_factory: ``factory(name, agent_config, attach) -> AgentComponents``.
        config_manager: ConfigManager (global singleton by default).
        events: Optional EventBus shared by every supervisor.
        clock: Returns "now"; passed to supervisors.
        sleep: Sleep function used for settle delays and TokenAuth polling.
        detector_poll_interval: Crash detector polling period in seconds.
    """

    def __init__(
        self,
        component_factory: ComponentFactory,
        config_manager: Optional[ConfigManager] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
        detector_poll_interval: float = 1.0,
    ):
        self._factory = component_factory
        self._config = config_manager or get_config_manager()
        self._events = events
        self._clock = clock
        self._sleep = sleep
        self._detector_poll_interval = detector_poll_interval

        self._supervisors: Dict[str, Supervisor] = {}
        self._detectors: Dict[str, CrashDetector] = {}
        self._lock = RWLock()

    @property
    def config_manager(self) -> ConfigManager:
        return self._config

    # ========================================================================
    # START / STOP
    # ========================================================================

    def start(self, name: str, attach_to_existing: bool = False, manual_mode: bool = False) -> None:
        """
        Build, register and run ``name``. Blocks until the session ends.

        Raises:
            AlreadyRunningError: an instance named ``name`` is registered.
            UnknownAgentError: no configuration exists for ``name``.
        """
        with self._lock.read():
            if name in self._supervisors:
                raise AlreadyRunningError(name)

        if name not in self._config.list_agents():
            raise UnknownAgentError(name)

        config = self._config.load_agent(name)
        supervisor = self._build_supervisor(name, config, attach_to_existing, manual_mode)
        detector = self._build_detector(name, supervisor)

        duplicate = False
        old_detector = None
        with self._lock.write():
            if name in self._supervisors:
                duplicate = True
            else:
                old_detector = self._detectors.pop(name, None)
                self._supervisors[name] = supervisor
                if detector is not None:
                    self._detectors[name] = detector

        if duplicate:
            supervisor.stop()
            raise AlreadyRunningError(name)

        if old_detector is not None:
            old_detector.stop()
        if detector is not None:
            detector.start()

        logger.info(
            f"Agent '{name}' registered (attach={attach_to_existing}, manual={manual_mode})"
        )
        try:
            supervisor.start()
        except Exception as e:
            logger.error(f"Agent '{name}' ended with error: {e}")
        finally:
            self._release_finished(name, supervisor)

    def stop(self, name: str) -> None:
        """Remove ``name`` from the registry, then stop it outside the lock."""
        with self._lock.write():
            supervisor = self._supervisors.pop(name, None)
            detector = self._detectors.pop(name, None)

        if detector is not None:
            detector.stop()
        if supervisor is not None:
            supervisor.stop()
            logger.info(f"Agent '{name}' stopped")

    def stop_all(self) -> None:
        with self._lock.read():
            names = list(self._supervisors)
        for name in names:
            self.stop(name)

    def _release_finished(self, name: str, supervisor: Supervisor) -> None:
        """
        Drop a supervisor whose run loop returned on its own.

        A crashed supervisor with a live detector stays registered while the
        killed process goes away, so the detector's restart policy picks it
        up. If the process outlives ``kill_grace_seconds`` the detector is
        disarmed and the restart policy runs from here instead.
        """
        with self._lock.write():
            if self._supervisors.get(name) is not supervisor:
                return
            detector = self._detectors.get(name)
            release = supervisor.stats().status != SupervisorStatus.CRASHED or detector is None
            if release:
                self._supervisors.pop(name, None)
                self._detectors.pop(name, None)

        if release:
            if detector is not None:
                detector.stop()
            return

        grace = self._config.global_config.registry.kill_grace_seconds
        if detector.wait_fired(grace) or not detector.disarm():
            return
        with self._lock.read():
            if self._supervisors.get(name) is not supervisor:
                return
        logger.warning(f"Process for '{name}' survived the kill, restarting without the crash detector")
        self._spawn(self._apply_restart_policy, name, supervisor)

    def _stop_instance(self, name: str, supervisor: Supervisor) -> None:
        """Like ``stop()`` but only if ``name`` still maps to ``supervisor``."""
        with self._lock.write():
            if self._supervisors.get(name) is supervisor:
                self._supervisors.pop(name, None)
                detector = self._detectors.pop(name, None)
            else:
                detector = None

        if detector is not None:
            detector.stop()
        supervisor.stop()

    # ========================================================================
    # CONSTRUCTION
    # ========================================================================

    def _build_supervisor(self, name: str, config: Any, attach: bool, manual: bool) -> Supervisor:
        components = self._factory(name, config, attach)
        ctx = AgentContext(name, config, manual_mode=manual)
        global_config = self._config.global_config
        supervisor = Supervisor(
            ctx,
            components,
            global_config.supervisor,
            global_config.watchdog,
            events=self._events,
            clock=self._clock,
        )
        ctx.stop_fn = lambda _name: self._spawn(self._apply_restart_policy, name, supervisor)
        return supervisor

    def _build_detector(self, name: str, supervisor: Supervisor) -> Optional[CrashDetector]:
        handle = supervisor.components.process
        if handle is None and supervisor.components.driver.pid:
            handle = PidProcessHandle(supervisor.components.driver.pid)
        if handle is None:
            logger.debug(f"No process handle for '{name}', crash detection disabled")
            return None
        return CrashDetector(
            name,
            handle,
            on_crash=lambda: self._on_crash(name, supervisor),
            poll_interval=self._detector_poll_interval,
        )

    @staticmethod
    def _spawn(target: Callable, *args: Any) -> None:
        threading.Thread(target=target, args=args, daemon=True).start()

    # ========================================================================
    # RESTART POLICY
    # ========================================================================

    def _on_crash(self, name: str, supervisor: Supervisor) -> None:
        supervisor.mark_crashed()
        if self._events is not None:
            self._events.send(Event(EventType.AGENT_CRASHED, agent=name, message="Process disappeared"))
        self._apply_restart_policy(name, supervisor)

    def _apply_restart_policy(self, name: str, supervisor: Supervisor) -> None:
        ctx = supervisor.ctx
        settle = self._config.global_config.registry.restart_settle_seconds

        if ctx.manual_mode:
            logger.info(f"Agent '{name}' is in manual mode, stopping without restart")
            ctx.manual_mode = False
            self._stop_instance(name, supervisor)
            return

        if ctx.clean_stop_requested:
            next_name = ctx.restart_with
            self._stop_instance(name, supervisor)
            if next_name and next_name != name:
                logger.info(f"Agent '{name}' stopped cleanly, starting '{next_name}' in {settle:.0f}s")
                self._sleep(settle)
                self._start_logged(next_name)
            else:
                logger.info(f"Agent '{name}' stopped cleanly, not restarting")
            return

        logger.warning(f"Agent '{name}' crashed, restarting in {settle:.0f}s")
        self._stop_instance(name, supervisor)
        self._sleep(settle)
        self._wait_for_token_auth(name)
        self._start_logged(name)

    def _wait_for_token_auth(self, name: str) -> None:
        """Poll while another TokenAuth-sharing agent is mid-start."""
        poll = self._config.global_config.registry.token_auth_poll_seconds
        mine = self._config.load_agent(name).uses_token_auth

        while True:
            blocker = None
            with self._lock.read():
                for other, sup in self._supervisors.items():
                    if other == name or sup.stats().status != SupervisorStatus.STARTING:
                        continue
                    if mine or self._config.load_agent(other).uses_token_auth:
                        blocker = other
                        break
            if blocker is None:
                return
            logger.info(f"Agent '{name}' waiting for '{blocker}' to finish TokenAuth login")
            self._sleep(poll)

    def _start_logged(self, name: str) -> None:
        try:
            self.start(name)
        except (AlreadyRunningError, UnknownAgentError) as e:
            logger.warning(f"Restart of '{name}' skipped: {e}")

    # ========================================================================
    # READ-ONLY LOOKUPS
    # ========================================================================

    def _get(self, name: str) -> Optional[Supervisor]:
        with self._lock.read():
            return self._supervisors.get(name)

    def status(self, name: str) -> SupervisorStats:
        supervisor = self._get(name)
        return supervisor.stats() if supervisor is not None else SupervisorStats()

    def get_data(self, name: str) -> Any:
        supervisor = self._get(name)
        return supervisor.get_data() if supervisor is not None else None

    def get_context(self, name: str) -> Optional[AgentContext]:
        supervisor = self._get(name)
        return supervisor.ctx if supervisor is not None else None

    def list_running(self) -> List[str]:
        with self._lock.read():
            return sorted(self._supervisors)

    def available_agents(self) -> List[str]:
        return self._config.list_agents()

    # ========================================================================
    # CONTROL
    # ========================================================================

    def toggle_pause(self, name: str) -> Optional[bool]:
        """Pause/resume ``name``; True when paused, None when not running."""
        supervisor = self._get(name)
        if supervisor is None:
            logger.warning(f"Cannot pause '{name}': not running")
            return None
        return supervisor.toggle_pause()

    def reload_config(self) -> None:
        """Re-read configs from disk and hand running agents their new config."""
        self._config.reload()
        with self._lock.read():
            running = dict(self._supervisors)
        for name, supervisor in running.items():
            supervisor.ctx.config = self._config.load_agent(name)
        logger.info(f"Configuration reloaded ({len(running)} running agents updated)")


# Global registry instance
_registry: Optional[SupervisorRegistry] = None


def get_registry(component_factory: Optional[ComponentFactory] = None, **kwargs: Any) -> SupervisorRegistry:
    """Get or create the global registry. The first call must pass a factory."""
    global _registry
    if _registry is None:
        if component_factory is None:
            raise RuntimeError("get_registry() needs a component_factory on first use")
        _registry = SupervisorRegistry(component_factory, **kwargs)
    return _registry
