"""
AGENT CONTEXT
=============

Per-agent shared state and the cooperative priority token.

One ``AgentContext`` exists per running agent. It is handed to every executor
loop and, through ``get_current_context()``, is reachable from task code deep
in the call stack without threading it through every signature.

Priority contract
-----------------
``ExecutionPriority`` is a hint, not a lock. Only the high-priority
maintenance loop and the pause/stop control path raise it above Normal, and
the maintenance loop always restores Normal when its action finishes.

Code that performs non-trivial side effects on the driven process MUST call
``ctx.priority.wait_turn()`` first. The call returns immediately while the
token reads the caller's own priority, blocks while another priority holds
it, and raises ``StopRequested`` once the token reads Stop.

Usage::

    from fleet_core.context import get_current_context

    ctx = get_current_context()
    ctx.priority.wait_turn()
    driver.send_input("click", x, y)
"""

import contextvars
import logging
import threading
from datetime import datetime
from enum import IntEnum
from typing import Any, Callable, Optional, Tuple

from .errors import StopRequested

logger = logging.getLogger(__name__)

Position = Tuple[float, float]


# ============================================================================
# PRIORITY
# ============================================================================

class ExecutionPriority(IntEnum):
    BACKGROUND = 0
    NORMAL = 1
    HIGH = 2
    PAUSE = 3
    STOP = 4


class PriorityToken:
    """Shared, cooperatively-read priority value for one agent."""

    WAIT_SLICE_S = 0.1

    def __init__(self, initial: ExecutionPriority = ExecutionPriority.NORMAL):
        self._value = initial
        self._cond = threading.Condition()

    @property
    def value(self) -> ExecutionPriority:
        return self._value

    def set(self, priority: ExecutionPriority) -> None:
        with self._cond:
            # Stop is terminal for the session
            if self._value == ExecutionPriority.STOP and priority != ExecutionPriority.STOP:
                return
            self._value = priority
            self._cond.notify_all()

    def try_raise(self, priority: ExecutionPriority) -> bool:
        """Raise to ``priority`` only if the token currently reads Normal."""
        with self._cond:
            if self._value != ExecutionPriority.NORMAL:
                return False
            self._value = priority
            self._cond.notify_all()
            return True

    def restore(self, expected: ExecutionPriority) -> bool:
        """Set Normal again, but only if the token still reads ``expected``."""
        with self._cond:
            if self._value != expected:
                return False
            self._value = ExecutionPriority.NORMAL
            self._cond.notify_all()
            return True

    def reset(self) -> None:
        """Force Normal, including out of Stop. Used between sessions."""
        with self._cond:
            self._value = ExecutionPriority.NORMAL
            self._cond.notify_all()

    def wait_turn(
        self,
        mine: ExecutionPriority = ExecutionPriority.NORMAL,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> bool:
        """
        Block until the token reads ``mine``.

        Returns False if ``timeout`` elapsed first. Raises StopRequested when
        the token reads Stop or ``cancel`` is set.
        """
        waited = 0.0
        with self._cond:
            while self._value != mine:
                if self._value == ExecutionPriority.STOP:
                    raise StopRequested("Agent is stopped")
                if cancel is not None and cancel.is_set():
                    raise StopRequested("Session cancelled")
                if timeout is not None and waited >= timeout:
                    return False
                self._cond.wait(self.WAIT_SLICE_S)
                waited += self.WAIT_SLICE_S
        return True

    def __repr__(self) -> str:
        return f"PriorityToken({self._value.name})"


# ============================================================================
# AGENT CONTEXT
# ============================================================================

class AgentContext:
    """
    Mutable per-agent state shared by the executor loops and the registry.

    Attributes:
        name: Agent name (registry key).
        config: The agent's AgentConfig.
        priority: Shared PriorityToken.
        cancel: Cancellation event for the current session scope.
        manual_mode: Agent was started for manual play; never auto-restarted.
        clean_stop_requested: A deliberate stop was asked for (not a crash).
        restart_with: Agent to start instead once this one stops cleanly.
        stop_fn: Set by the registry; stops this agent by name.
    """

    def __init__(self, name: str, config: Any = None, manual_mode: bool = False):
        self.name = name
        self.config = config
        self.priority = PriorityToken()
        self.cancel = threading.Event()
        self.manual_mode = manual_mode

        self.clean_stop_requested = False
        self.restart_with: Optional[str] = None
        self.stop_fn: Optional[Callable[[str], Any]] = None

        # Activity tracking
        self.last_activity: Optional[datetime] = None
        self.last_position: Optional[Position] = None
        self.last_position_check: Optional[datetime] = None
        self.session_started_at: Optional[datetime] = None

        # Latest state snapshot from the process driver
        self.data: Any = None
        self.current_task: Optional[str] = None

    # ------------------------------------------------------------------------
    # Session scope
    # ------------------------------------------------------------------------

    def begin_session(self, now: Optional[datetime] = None) -> threading.Event:
        """Open a fresh cancellation scope and reset activity tracking."""
        now = now or datetime.now()
        self.cancel = threading.Event()
        self.priority.reset()
        self.session_started_at = now
        self.last_activity = now
        self.last_position = None
        self.last_position_check = now
        self.current_task = None
        return self.cancel

    def touch(self, now: Optional[datetime] = None) -> None:
        self.last_activity = now or datetime.now()

    @property
    def is_cancelled(self) -> bool:
        return self.cancel.is_set()

    # ------------------------------------------------------------------------
    # Stop requests
    # ------------------------------------------------------------------------

    def request_stop(self, restart_with: Optional[str] = None) -> None:
        """Ask the registry for a clean stop of this agent."""
        self.clean_stop_requested = True
        if restart_with:
            self.restart_with = restart_with
        logger.info(
            f"Agent '{self.name}' requested clean stop"
            + (f" (next: {restart_with})" if restart_with else "")
        )
        if self.stop_fn is not None:
            self.stop_fn(self.name)
        else:
            self.priority.set(ExecutionPriority.STOP)
            self.cancel.set()


# ============================================================================
# CURRENT CONTEXT LOOKUP
# ============================================================================

_current_context: contextvars.ContextVar[Optional[AgentContext]] = contextvars.ContextVar(
    "fleet_agent_context", default=None
)


def set_current_context(ctx: Optional[AgentContext]) -> None:
    """Bind ``ctx`` for the current thread/execution context."""
    _current_context.set(ctx)


def get_current_context() -> Optional[AgentContext]:
    """Get the bound AgentContext, or None outside an executor loop."""
    return _current_context.get()
