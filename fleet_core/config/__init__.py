"""
Configuration management for the fleet supervisor.
"""

from .loader import (
    ConfigManager,
    GlobalConfig,
    SchedulerSettings,
    RegistrySettings,
    SupervisorSettings,
    WatchdogSettings,
    ApiSettings,
    NotificationSettings,
    AgentConfig,
    SchedulerConfig,
    DurationConfig,
    DaySchedule,
    TimeRange,
    get_config_manager,
)

__all__ = [
    "ConfigManager",
    "GlobalConfig",
    "SchedulerSettings",
    "RegistrySettings",
    "SupervisorSettings",
    "WatchdogSettings",
    "ApiSettings",
    "NotificationSettings",
    "AgentConfig",
    "SchedulerConfig",
    "DurationConfig",
    "DaySchedule",
    "TimeRange",
    "get_config_manager",
]
