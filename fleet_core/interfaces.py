"""
COLLABORATOR INTERFACES
=======================

Abstract services the supervisor consumes. Concrete implementations (memory
readers, input injection, task scripts) live outside this package and are
handed to the registry through a ``ComponentFactory``.

::

    ProcessDriver       refresh_state / is_running / current_position / send_input /
                        exit_session / in_session / enter_session / kill
    HealthService       check_health_and_react -> Optional[SessionError]
    MaintenanceService  peek -> MaintenanceNeeds, then the five actions
    Routines            pre_run / post_run around every task
    Task                name / run(ctx) / skip_pre_post_routines
    ProcessHandle       is_alive (watched by CrashDetector)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from .context import AgentContext, Position
from .errors import SessionError


# ============================================================================
# PROCESS DRIVER
# ============================================================================

class ProcessDriver(ABC):
    """Reads and drives one external interactive-session process."""

    @abstractmethod
    def refresh_state(self) -> Any:
        """Re-read the process state; returns the new snapshot."""
        pass

    @abstractmethod
    def is_running(self) -> bool:
        pass

    @abstractmethod
    def current_position(self) -> Optional[Position]:
        pass

    @abstractmethod
    def send_input(self, *args, **kwargs) -> None:
        pass

    @abstractmethod
    def exit_session(self) -> None:
        pass

    @abstractmethod
    def in_session(self) -> bool:
        """True once the process is past its menus and inside a session."""
        pass

    @abstractmethod
    def enter_session(self) -> None:
        """
        Perform one menu-flow step towards a session.

        Raises TransientError for a retryable failure and
        UnrecoverableClientError when the client is stuck for good.
        """
        pass

    @abstractmethod
    def kill(self) -> None:
        """Hard-kill the driven process."""
        pass

    def latency_ms(self) -> Optional[float]:
        """Current round-trip latency, or None when unknown."""
        return None

    @property
    def pid(self) -> Optional[int]:
        return None


# ============================================================================
# HEALTH / MAINTENANCE
# ============================================================================

class HealthService(ABC):

    @abstractmethod
    def check_health_and_react(self) -> Optional[SessionError]:
        """Return None, or a classified fatal SessionError."""
        pass


@dataclass
class MaintenanceNeeds:
    """Read-only peek result for the high-priority loop."""
    correct_position: bool = False
    pickup: bool = False
    buff: bool = False
    refill: bool = False
    return_to_base: bool = False

    def any(self) -> bool:
        return (
            self.correct_position or self.pickup or self.buff
            or self.refill or self.return_to_base
        )


class MaintenanceService(ABC):
    """Interrupting actions. ``peek`` must never touch the priority token."""

    @abstractmethod
    def peek(self) -> MaintenanceNeeds:
        pass

    def current_level(self) -> int:
        return 0

    def correct_position(self) -> None:
        pass

    def pickup(self) -> None:
        pass

    def buff(self) -> None:
        pass

    def refill(self) -> None:
        pass

    def return_to_base(self) -> None:
        """Raise SessionError if the trip back fails."""
        pass


class Routines:
    """Pre/post task routines. The default does nothing."""

    def pre_run(self, first_run: bool) -> None:
        pass

    def post_run(self, is_last: bool) -> None:
        pass


# ============================================================================
# TASKS
# ============================================================================

class Task(ABC):
    """One automated run executed by the normal-priority loop."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def run(self, ctx: AgentContext) -> None:
        """Execute the run. Raise a SessionError subclass to classify failure."""
        pass

    def skip_pre_post_routines(self) -> bool:
        return False


# ============================================================================
# PROCESS HANDLE / COMPONENTS
# ============================================================================

class ProcessHandle(ABC):

    @abstractmethod
    def is_alive(self) -> bool:
        pass


@dataclass
class AgentComponents:
    """Everything the registry needs to build one supervisor."""
    driver: ProcessDriver
    health: HealthService
    tasks: Callable[[], List[Task]]
    maintenance: Optional[MaintenanceService] = None
    routines: Routines = field(default_factory=Routines)
    process: Optional[ProcessHandle] = None


# factory(name, agent_config, attach_to_existing) -> AgentComponents
ComponentFactory = Callable[[str, Any, bool], AgentComponents]
