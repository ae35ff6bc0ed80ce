"""
FLEET_CORE
==========

Supervisor for fleets of long-running automated agents.

Features:
- Per-agent priority executor (refresh, watchdog, maintenance, task runner)
- Supervisor registry with single-instance enforcement and crash restarts
- Time-window scheduler (simple, weekly time slots, duration day plans)
- Webhook notifications, FastAPI control surface, CLI

Usage:
    from fleet_core import SupervisorRegistry, Scheduler, get_config_manager

    registry = SupervisorRegistry(build_components)
    scheduler = Scheduler(registry, get_config_manager())
    scheduler.start()
"""

__version__ = "1.0.0"

# Configuration
from .config import (
    ConfigManager,
    GlobalConfig,
    AgentConfig,
    SchedulerConfig,
    DurationConfig,
    get_config_manager,
)

# Errors
from .errors import (
    ErrorKind,
    SessionError,
    HealthCriticalError,
    DiedError,
    IdleTimeoutError,
    MaxDurationError,
    HighLatencyError,
    InterruptError,
    UnrecoverableClientError,
    TransientError,
    StopRequested,
    RegistryError,
    AlreadyRunningError,
    UnknownAgentError,
)

# Context
from .context import (
    AgentContext,
    ExecutionPriority,
    PriorityToken,
    get_current_context,
)

# Collaborators
from .interfaces import (
    AgentComponents,
    HealthService,
    MaintenanceNeeds,
    MaintenanceService,
    ProcessDriver,
    ProcessHandle,
    Routines,
    Task,
)

# Runtime
from .executor import PriorityExecutor
from .supervisor import Supervisor, SupervisorStats, SupervisorStatus
from .crash_detector import CrashDetector, PidProcessHandle
from .registry import SupervisorRegistry, get_registry
from .events import Event, EventBus, EventType, WebhookNotifier

# Scheduling
from .scheduler import Scheduler, DurationState, HistoryEntry, Phase, plan_breaks

__all__ = [
    "ConfigManager",
    "GlobalConfig",
    "AgentConfig",
    "SchedulerConfig",
    "DurationConfig",
    "get_config_manager",
    "ErrorKind",
    "SessionError",
    "HealthCriticalError",
    "DiedError",
    "IdleTimeoutError",
    "MaxDurationError",
    "HighLatencyError",
    "InterruptError",
    "UnrecoverableClientError",
    "TransientError",
    "StopRequested",
    "RegistryError",
    "AlreadyRunningError",
    "UnknownAgentError",
    "AgentContext",
    "ExecutionPriority",
    "PriorityToken",
    "get_current_context",
    "AgentComponents",
    "HealthService",
    "MaintenanceNeeds",
    "MaintenanceService",
    "ProcessDriver",
    "ProcessHandle",
    "Routines",
    "Task",
    "PriorityExecutor",
    "Supervisor",
    "SupervisorStats",
    "SupervisorStatus",
    "CrashDetector",
    "PidProcessHandle",
    "SupervisorRegistry",
    "get_registry",
    "Event",
    "EventBus",
    "EventType",
    "WebhookNotifier",
    "Scheduler",
    "DurationState",
    "HistoryEntry",
    "Phase",
    "plan_breaks",
]
