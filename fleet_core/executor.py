"""
PRIORITY EXECUTOR
=================

Runs one agent session as four concurrent loops sharing a PriorityToken and
one cancellation scope (``ctx.cancel``).

Loops
-----
1. refresh      re-reads process state every tick (skipped while paused)
2. watchdog     health check, global idle detection, max session length,
                sustained latency (skipped while paused)
3. maintenance  peeks for pickup/buff/refill/return/position correction and
                only then raises priority to High, acts in a fixed order,
                and restores Normal
4. runner       executes the task list with pre/post routines

Every loop ticks on a random 70-130 ms interval. The first loop to finish
cancels the scope; the session result is the first non-None result in
completion order. Loops return SessionError values instead of raising.
"""

import logging
import math
import random
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Sequence

from .context import AgentContext, ExecutionPriority, set_current_context
from .errors import (
    ErrorKind,
    HighLatencyError,
    IdleTimeoutError,
    MaxDurationError,
    SessionError,
)
from .events import Event, EventBus, EventType
from .health import LatencyMonitor
from .interfaces import AgentComponents, Task

logger = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS
# ============================================================================

LOOP_COUNT = 4
DEFAULT_TICK_MS = (70, 130)

FINISH_REASONS = {
    ErrorKind.HEALTH_CRITICAL: "health_critical",
    ErrorKind.DIED: "died",
    ErrorKind.INTERRUPT: "interrupted",
    ErrorKind.STOPPED: "stopped",
}


def _distance(a: Sequence[float], b: Sequence[float]) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


class PriorityExecutor:
    """
    One session's loop set for one agent.

    Args:
        ctx: The agent's AgentContext (priority token + cancel scope).
        components: Collaborators built for this agent.
        watchdog: WatchdogSettings (idle and latency thresholds).
        events: Optional EventBus for task started/finished events.
        clock: Returns "now"; injectable for tests.
        tick_ms: (low, high) jittered tick interval in milliseconds.
    """

    def __init__(
        self,
        ctx: AgentContext,
        components: AgentComponents,
        watchdog: Any,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = datetime.now,
        tick_ms: Sequence[int] = DEFAULT_TICK_MS,
    ):
        self.ctx = ctx
        self.components = components
        self.watchdog = watchdog
        self.events = events
        self.clock = clock
        self.tick_ms = (tick_ms[0], tick_ms[1])
        self.latency = LatencyMonitor(
            threshold_ms=watchdog.latency_threshold_ms,
            sustained_seconds=watchdog.latency_sustained_seconds,
            check_interval_seconds=watchdog.latency_check_interval_seconds,
        )
        self._rng = random.Random()

    # ========================================================================
    # ENTRY POINT
    # ========================================================================

    def run(self, tasks: List[Task]) -> Optional[SessionError]:
        """Run all loops until one finishes; returns the first non-None result."""
        cancel = self.ctx.cancel
        self.latency.reset()
        loops = [
            ("refresh", self._refresh_loop),
            ("watchdog", self._watchdog_loop),
            ("maintenance", self._maintenance_loop),
            ("runner", lambda: self._runner_loop(tasks)),
        ]

        result: Optional[SessionError] = None
        with ThreadPoolExecutor(
            max_workers=LOOP_COUNT, thread_name_prefix=f"exec-{self.ctx.name}"
        ) as pool:
            futures = [pool.submit(self._guard, name, fn) for name, fn in loops]
            for future in as_completed(futures):
                outcome = future.result()
                cancel.set()
                if result is None and outcome is not None:
                    result = outcome

        if result is not None:
            logger.info(f"Session for '{self.ctx.name}' ended: [{result.kind.value}] {result.message}")
        return result

    def _guard(self, loop_name: str, fn: Callable[[], Optional[SessionError]]) -> Optional[SessionError]:
        set_current_context(self.ctx)
        try:
            return fn()
        except SessionError as e:
            return e
        except Exception as e:
            logger.exception(f"{loop_name} loop crashed for '{self.ctx.name}'")
            return SessionError(f"{loop_name} loop crashed: {e}", ErrorKind.GENERIC)
        finally:
            set_current_context(None)

    def _wait_tick(self) -> bool:
        """Sleep one jittered tick; True once the scope is cancelled."""
        low, high = self.tick_ms
        return self.ctx.cancel.wait(self._rng.uniform(low, high) / 1000.0)

    def _paused(self) -> bool:
        return self.ctx.priority.value == ExecutionPriority.PAUSE

    # ========================================================================
    # BACKGROUND LOOPS
    # ========================================================================

    def _refresh_loop(self) -> Optional[SessionError]:
        driver = self.components.driver
        while not self._wait_tick():
            if self._paused():
                continue
            self.ctx.data = driver.refresh_state()
        return None

    def _watchdog_loop(self) -> Optional[SessionError]:
        while not self._wait_tick():
            if self._paused():
                self._hold_watchdog_timers()
                continue
            err = self.components.health.check_health_and_react()
            if err is not None:
                logger.error(f"Health check failed for '{self.ctx.name}': {err.message}")
                return err
            now = self.clock()
            err = self.check_idle(now) or self.check_max_duration(now) or self.check_latency(now)
            if err is not None:
                logger.error(f"Watchdog ending session for '{self.ctx.name}': {err.message}")
                return err
        return None

    def _hold_watchdog_timers(self) -> None:
        """Paused time counts as activity for the idle and latency checks."""
        self.ctx.last_position_check = self.clock()
        self.latency.reset()

    def check_idle(self, now: datetime) -> Optional[SessionError]:
        position = self.components.driver.current_position()
        if position is None:
            return None

        ctx = self.ctx
        if ctx.last_position is None or _distance(position, ctx.last_position) > self.watchdog.min_movement:
            ctx.last_position = position
            ctx.last_position_check = now
            ctx.touch(now)
            return None

        since = ctx.last_position_check or now
        idle_for = now - since
        if idle_for > timedelta(seconds=self.watchdog.idle_threshold_seconds):
            return IdleTimeoutError(f"player globally idle for {int(idle_for.total_seconds())}s")
        return None

    def check_max_duration(self, now: datetime) -> Optional[SessionError]:
        limit = getattr(self.ctx.config, "max_session_seconds", 0) or 0
        started = self.ctx.session_started_at
        if limit <= 0 or started is None:
            return None
        if now - started > timedelta(seconds=limit):
            return MaxDurationError(f"max session length of {limit}s exceeded")
        return None

    def check_latency(self, now: datetime) -> Optional[SessionError]:
        if self.latency.observe(self.components.driver.latency_ms(), now):
            return HighLatencyError(
                f"sustained high latency ({self.latency.last_reading:.0f} ms "
                f"> {self.latency.threshold_ms:.0f} ms)"
            )
        return None

    # ========================================================================
    # MAINTENANCE LOOP
    # ========================================================================

    def _maintenance_loop(self) -> Optional[SessionError]:
        maintenance = self.components.maintenance
        if maintenance is None:
            self.ctx.cancel.wait()
            return None

        stop_at = getattr(self.ctx.config, "stop_at_level", 0) or 0
        while not self._wait_tick():
            if self.ctx.priority.value != ExecutionPriority.NORMAL:
                continue

            if stop_at and maintenance.current_level() >= stop_at:
                logger.info(f"'{self.ctx.name}' reached level {stop_at}, requesting stop")
                self.ctx.request_stop()
                return None

            needs = maintenance.peek()
            if not needs.any():
                continue
            if not self.ctx.priority.try_raise(ExecutionPriority.HIGH):
                continue
            try:
                self._perform_maintenance(needs)
            finally:
                self.ctx.priority.restore(ExecutionPriority.HIGH)
        return None

    def _perform_maintenance(self, needs: Any) -> None:
        maintenance = self.components.maintenance
        steps = [
            (needs.correct_position, "position correction", maintenance.correct_position),
            (needs.pickup, "pickup", maintenance.pickup),
            (needs.buff, "buff", maintenance.buff),
            (needs.refill, "refill", maintenance.refill),
        ]
        for needed, label, action in steps:
            if not needed:
                continue
            try:
                action()
            except SessionError as e:
                logger.warning(f"{label} failed for '{self.ctx.name}': {e.message}")

        if needs.return_to_base:
            # Failure here is fatal and propagates out of the loop
            maintenance.return_to_base()

    # ========================================================================
    # TASK RUNNER
    # ========================================================================

    def _runner_loop(self, tasks: List[Task]) -> Optional[SessionError]:
        ctx = self.ctx
        routines = self.components.routines
        first_run = True

        for index, task in enumerate(tasks):
            if ctx.is_cancelled:
                return None
            ctx.priority.wait_turn(ExecutionPriority.NORMAL, cancel=ctx.cancel)

            ctx.current_task = task.name
            self._send(EventType.TASK_STARTED, f"Starting {task.name}", task=task.name)
            skip_routines = task.skip_pre_post_routines()
            if not skip_routines:
                routines.pre_run(first_run)
                first_run = False

            try:
                task.run(ctx)
            except SessionError as e:
                reason = FINISH_REASONS.get(e.kind, "error")
                self._send(EventType.TASK_FINISHED, e.message, task=task.name, reason=reason)
                if e.is_interrupt:
                    logger.info(f"Task {task.name} interrupted for '{ctx.name}': {e.message}")
                else:
                    logger.error(f"Task {task.name} failed for '{ctx.name}': {e.message}")
                return e

            self._send(EventType.TASK_FINISHED, f"Finished {task.name}", task=task.name, reason="finished_ok")
            if not skip_routines:
                routines.post_run(index == len(tasks) - 1)

        ctx.current_task = None
        return None

    def _send(self, event_type: EventType, message: str, **data: Any) -> None:
        if self.events is not None:
            self.events.send(Event(event_type, agent=self.ctx.name, message=message, data=data))
