"""
SESSION ERRORS
==============

Typed outcomes for an agent session.

Every condition that ends (or threatens) a session is raised or returned as a
``SessionError`` carrying an ``ErrorKind``. Executor loops return these values
through the task group instead of unwinding the whole process, so callers can
branch on the kind:

- Fatal-session: health_critical, died, idle, max_duration, high_latency, generic
- Interrupt: a higher-priority external workflow must take over
- Unrecoverable-client: the driven process is stuck and must be killed
- Transient: one menu step failed; retried until the retry budget is spent
- Stopped: the operator (or a clean-stop request) ended the session
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    HEALTH_CRITICAL = "health_critical"
    DIED = "died"
    IDLE = "idle"
    MAX_DURATION = "max_duration"
    HIGH_LATENCY = "high_latency"
    INTERRUPT = "interrupt"
    UNRECOVERABLE_CLIENT = "unrecoverable_client"
    TRANSIENT = "transient"
    STOPPED = "stopped"
    GENERIC = "generic"


FATAL_KINDS = frozenset({
    ErrorKind.HEALTH_CRITICAL,
    ErrorKind.DIED,
    ErrorKind.IDLE,
    ErrorKind.MAX_DURATION,
    ErrorKind.HIGH_LATENCY,
    ErrorKind.GENERIC,
})


# ============================================================================
# SESSION ERRORS
# ============================================================================

class SessionError(Exception):
    """Base class for every classified session outcome."""

    kind: ErrorKind = ErrorKind.GENERIC

    def __init__(self, message: str = "", kind: Optional[ErrorKind] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if kind is not None:
            self.kind = kind

    @property
    def is_fatal(self) -> bool:
        return self.kind in FATAL_KINDS

    @property
    def is_interrupt(self) -> bool:
        return self.kind == ErrorKind.INTERRUPT

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


class HealthCriticalError(SessionError):
    kind = ErrorKind.HEALTH_CRITICAL


class DiedError(SessionError):
    kind = ErrorKind.DIED


class IdleTimeoutError(SessionError):
    kind = ErrorKind.IDLE


class MaxDurationError(SessionError):
    kind = ErrorKind.MAX_DURATION


class HighLatencyError(SessionError):
    kind = ErrorKind.HIGH_LATENCY


class InterruptError(SessionError):
    """A higher-priority workflow needs the session; not a crash."""
    kind = ErrorKind.INTERRUPT


class UnrecoverableClientError(SessionError):
    """The driven process is stuck in a menu and must be killed."""
    kind = ErrorKind.UNRECOVERABLE_CLIENT


class TransientError(SessionError):
    kind = ErrorKind.TRANSIENT


class StopRequested(SessionError):
    """Raised at a priority checkpoint once the token reads Stop."""
    kind = ErrorKind.STOPPED


# ============================================================================
# REGISTRY ERRORS
# ============================================================================

class RegistryError(Exception):
    """Raised by the supervisor registry for bookkeeping failures."""
    pass


class AlreadyRunningError(RegistryError):

    def __init__(self, name: str):
        super().__init__(f"Agent '{name}' is already running")
        self.name = name


class UnknownAgentError(RegistryError):

    def __init__(self, name: str):
        super().__init__(f"Agent '{name}' is not configured")
        self.name = name
