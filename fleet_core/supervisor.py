"""
SUPERVISOR
==========

Owns one agent's session loop.

``start()`` blocks the calling thread until the agent is stopped (or the
client becomes unrecoverable). Each iteration:

1. Drives the client through its menus into a session. Every menu step is
   bounded by ``menu_action_timeout_seconds``; transient failures are retried
   (100 ms for loading-type errors, 1 s otherwise) until the retry budget is
   spent, then escalate to UnrecoverableClientError. The client is killed on
   any unrecoverable condition so the crash detector can restart it.
2. Runs the PriorityExecutor over a fresh task list.
3. Exits the session. The exit call shares the menu-step timeout and the
   wait for it is bounded; either limit kills the client. An interrupt
   result loops straight back; otherwise a random 4-20 s idle precedes the
   next one.

Manual-mode supervisors never run sessions; they idle until stopped.
"""

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .context import AgentContext, ExecutionPriority
from .errors import ErrorKind, SessionError, TransientError, UnrecoverableClientError
from .events import Event, EventBus, EventType
from .executor import PriorityExecutor
from .interfaces import AgentComponents

logger = logging.getLogger(__name__)

QUICK_RETRY_S = 0.1
SLOW_RETRY_S = 1.0
QUICK_RETRY_MARKERS = ("loading", "idle")


class SupervisorStatus(str, Enum):
    NOT_STARTED = ""
    STARTING = "Starting"
    IN_SESSION = "InSession"
    PAUSED = "Paused"
    STOPPING = "Stopping"
    CRASHED = "Crashed"
    WAITING_FOR_SCHEDULE = "WaitingForSchedule"


# Statuses that count as "not running" for the scheduler and restart policy
NOT_STARTED_STATUSES = frozenset({
    SupervisorStatus.NOT_STARTED,
    SupervisorStatus.CRASHED,
    SupervisorStatus.WAITING_FOR_SCHEDULE,
})


@dataclass
class SupervisorStats:
    status: SupervisorStatus = SupervisorStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    sessions: int = 0
    last_result: Optional[str] = None
    last_error: Optional[str] = None
    current_task: Optional[str] = None
    manual_mode: bool = False

    def to_dict(self) -> Dict:
        return {
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "sessions": self.sessions,
            "last_result": self.last_result,
            "last_error": self.last_error,
            "current_task": self.current_task,
            "manual_mode": self.manual_mode,
        }


def _is_quick_retry(message: str) -> bool:
    lowered = (message or "").lower()
    return not lowered or any(marker in lowered for marker in QUICK_RETRY_MARKERS)


class Supervisor:
    """Session loop for one agent. Built by the registry, one per start."""

    def __init__(
        self,
        ctx: AgentContext,
        components: AgentComponents,
        settings: Any,
        watchdog: Any,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.ctx = ctx
        self.components = components
        self.settings = settings
        self.events = events
        self.clock = clock
        self.executor = PriorityExecutor(
            ctx, components, watchdog, events=events, clock=clock, tick_ms=settings.tick_ms
        )

        self._stats = SupervisorStats(manual_mode=ctx.manual_mode)
        self._stopped = threading.Event()
        self._menu_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"menu-{ctx.name}")
        self._rng = random.Random()

    @property
    def name(self) -> str:
        return self.ctx.name

    @property
    def process(self) -> Any:
        return self.components.process

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self) -> None:
        """Run sessions until stopped. Blocks the calling thread."""
        self._stats.status = SupervisorStatus.STARTING
        self._stats.started_at = self.clock()
        logger.info(f"Supervisor '{self.name}' starting")

        try:
            if self.ctx.manual_mode:
                self._stats.status = SupervisorStatus.IN_SESSION
                logger.info(f"Supervisor '{self.name}' in manual mode, idling until stopped")
                self._stopped.wait()
                return

            while not self._stopped.is_set():
                self._ensure_in_session()
                if self._stopped.is_set():
                    break

                result = self._run_session()
                if self._stopped.is_set() or (result is not None and result.kind == ErrorKind.STOPPED):
                    break
                if result is not None and result.is_interrupt:
                    continue
                self._idle_between_sessions()
        except UnrecoverableClientError as e:
            self._stats.status = SupervisorStatus.CRASHED
            self._stats.last_error = e.message
            raise
        finally:
            if self._stats.status != SupervisorStatus.CRASHED:
                self._stats.status = SupervisorStatus.NOT_STARTED
            self._menu_pool.shutdown(wait=False)
            logger.info(f"Supervisor '{self.name}' exited")

    def stop(self) -> None:
        """Cancel the session. Never blocks on the executor loops."""
        if self._stopped.is_set():
            return
        logger.info(f"Stopping supervisor '{self.name}'")
        if self._stats.status != SupervisorStatus.CRASHED:
            self._stats.status = SupervisorStatus.STOPPING
        self._stopped.set()
        self.ctx.priority.set(ExecutionPriority.STOP)
        self.ctx.cancel.set()

        if getattr(self.ctx.config, "kill_client_on_stop", False):
            self._kill_client("stop requested")
        self._send(EventType.AGENT_STOPPED, "Agent stopped")

    def toggle_pause(self) -> bool:
        """Pause or resume; returns True when now paused."""
        if self.ctx.priority.restore(ExecutionPriority.PAUSE):
            self._stats.status = SupervisorStatus.IN_SESSION
            logger.info(f"Supervisor '{self.name}' resumed")
            self._send(EventType.AGENT_RESUMED, "Agent resumed")
            return False

        self.ctx.priority.set(ExecutionPriority.PAUSE)
        self._stats.status = SupervisorStatus.PAUSED
        logger.info(f"Supervisor '{self.name}' paused")
        self._send(EventType.AGENT_PAUSED, "Agent paused")
        return True

    def mark_crashed(self) -> None:
        self._stats.status = SupervisorStatus.CRASHED

    @property
    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    def stats(self) -> SupervisorStats:
        snapshot = SupervisorStats(**vars(self._stats))
        snapshot.current_task = self.ctx.current_task
        return snapshot

    def get_data(self) -> Any:
        return self.ctx.data

    # ========================================================================
    # MENU FLOW
    # ========================================================================

    def _call_with_timeout(self, fn: Callable[[], Any], label: str) -> Any:
        timeout = self.settings.menu_action_timeout_seconds
        future = self._menu_pool.submit(fn)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            raise UnrecoverableClientError(f"{label} timed out after {timeout:.0f}s")

    def _ensure_in_session(self) -> None:
        driver = self.components.driver
        out_since = self.clock()
        max_out = timedelta(seconds=self.settings.max_time_out_of_session_seconds)
        failures = 0

        while not self._stopped.is_set() and not driver.in_session():
            if self.clock() - out_since > max_out:
                self._kill_client("stuck outside a session")
                raise UnrecoverableClientError(
                    f"not in a session for more than {max_out.total_seconds():.0f}s"
                )
            try:
                self._call_with_timeout(driver.enter_session, "menu step")
                failures = 0
            except TransientError as e:
                failures += 1
                if failures > self.settings.transient_retry_budget:
                    self._kill_client("menu retries exhausted")
                    raise UnrecoverableClientError(
                        f"menu step failed {failures} times in a row: {e.message}"
                    ) from e
                delay = QUICK_RETRY_S if _is_quick_retry(e.message) else SLOW_RETRY_S
                logger.warning(f"Menu step failed for '{self.name}' ({failures}): {e.message}")
                self._stopped.wait(delay)
            except UnrecoverableClientError as e:
                self._kill_client(e.message)
                raise

    # ========================================================================
    # SESSION
    # ========================================================================

    def _run_session(self) -> Optional[SessionError]:
        self.ctx.begin_session(self.clock())
        if self._stopped.is_set():
            self.ctx.priority.set(ExecutionPriority.STOP)
            self.ctx.cancel.set()
            return None

        self._stats.sessions += 1
        self._stats.status = SupervisorStatus.IN_SESSION
        self._send(EventType.SESSION_CREATED, f"Session {self._stats.sessions} started")

        result = self.executor.run(self.components.tasks())

        self._stats.last_result = result.kind.value if result is not None else "finished_ok"
        if result is not None and result.is_fatal:
            self._stats.last_error = result.message

        if not self._stopped.is_set():
            self._exit_session()
        self._send(
            EventType.SESSION_FINISHED,
            result.message if result is not None else "Session finished",
            reason=self._stats.last_result,
        )
        return result

    def _exit_session(self) -> None:
        driver = self.components.driver
        try:
            self._call_with_timeout(driver.exit_session, "session exit")
        except UnrecoverableClientError:
            self._kill_client("session exit hung")
            raise
        deadline = self.clock() + timedelta(seconds=self.settings.exit_session_timeout_seconds)
        while driver.in_session():
            if self.clock() >= deadline:
                self._kill_client("session exit timed out")
                raise UnrecoverableClientError("could not leave the session in time")
            if self._stopped.wait(0.5):
                return

    def _idle_between_sessions(self) -> None:
        low, high = self.settings.inter_session_idle_ms
        delay = self._rng.uniform(low, high) / 1000.0
        logger.debug(f"Supervisor '{self.name}' idling {delay:.1f}s before next session")
        self._stopped.wait(delay)

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _kill_client(self, reason: str) -> None:
        logger.warning(f"Killing client for '{self.name}': {reason}")
        try:
            self.components.driver.kill()
        except Exception as e:
            logger.error(f"Failed to kill client for '{self.name}': {e}")

    def _send(self, event_type: EventType, message: str, **data: Any) -> None:
        if self.events is not None:
            self.events.send(Event(event_type, agent=self.name, message=message, data=data))
