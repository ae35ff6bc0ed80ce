"""
CONFIG_LOADER
=============

Configuration management for the fleet supervisor.

Handles:
- Global configuration (paths, scheduler tick, restart timings, watchdog limits)
- Agent configurations (per-agent settings and schedules)

Layout::

    <data_dir>/CONFIG/config.json            global
    <data_dir>/AGENTS/<name>/config.json     one per agent
    <data_dir>/AGENTS/<name>/scheduler_state.json
    <data_dir>/AGENTS/<name>/scheduler_history.json

Usage:
    from fleet_core.config import get_config_manager

    config = get_config_manager()
    print(config.global_config.scheduler.tick_seconds)

    agent = config.load_agent("alpha")
    print(agent.scheduler.mode)
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

DATA_DIR_ENV = "FLEET_DATA_DIR"


# ============================================================================
# PATH RESOLUTION
# ============================================================================

def _find_data_dir() -> Path:
    """
    Find the data directory.

    ``FLEET_DATA_DIR`` wins. Otherwise walk up from the working directory
    looking for data/fleet/CONFIG/config.json, falling back to ./data/fleet.
    """
    env = os.environ.get(DATA_DIR_ENV)
    if env:
        return Path(env).resolve()

    current = Path.cwd().resolve()
    for _ in range(5):
        if (current / "data" / "fleet" / "CONFIG" / "config.json").exists():
            return current / "data" / "fleet"
        if current.parent == current:
            break
        current = current.parent

    return Path.cwd().resolve() / "data" / "fleet"


# ============================================================================
# GLOBAL CONFIG
# ============================================================================

@dataclass
class SchedulerSettings:
    enabled: bool = True
    tick_seconds: float = 30.0

    def to_dict(self) -> Dict:
        return {"enabled": self.enabled, "tick_seconds": self.tick_seconds}

    @classmethod
    def from_dict(cls, data: Dict) -> "SchedulerSettings":
        return cls(
            enabled=data.get("enabled", True),
            tick_seconds=data.get("tick_seconds", 30.0),
        )


@dataclass
class RegistrySettings:
    """Restart policy timings."""
    restart_settle_seconds: float = 5.0
    token_auth_poll_seconds: float = 5.0
    kill_grace_seconds: float = 10.0

    def to_dict(self) -> Dict:
        return {
            "restart_settle_seconds": self.restart_settle_seconds,
            "token_auth_poll_seconds": self.token_auth_poll_seconds,
            "kill_grace_seconds": self.kill_grace_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "RegistrySettings":
        return cls(
            restart_settle_seconds=data.get("restart_settle_seconds", 5.0),
            token_auth_poll_seconds=data.get("token_auth_poll_seconds", 5.0),
            kill_grace_seconds=data.get("kill_grace_seconds", 10.0),
        )


@dataclass
class SupervisorSettings:
    """Session loop limits."""
    menu_action_timeout_seconds: float = 30.0
    max_time_out_of_session_seconds: float = 180.0
    transient_retry_budget: int = 3
    inter_session_idle_ms: List[int] = field(default_factory=lambda: [4000, 20000])
    exit_session_timeout_seconds: float = 15.0
    tick_ms: List[int] = field(default_factory=lambda: [70, 130])

    def to_dict(self) -> Dict:
        return {
            "menu_action_timeout_seconds": self.menu_action_timeout_seconds,
            "max_time_out_of_session_seconds": self.max_time_out_of_session_seconds,
            "transient_retry_budget": self.transient_retry_budget,
            "inter_session_idle_ms": list(self.inter_session_idle_ms),
            "exit_session_timeout_seconds": self.exit_session_timeout_seconds,
            "tick_ms": list(self.tick_ms),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SupervisorSettings":
        return cls(
            menu_action_timeout_seconds=data.get("menu_action_timeout_seconds", 30.0),
            max_time_out_of_session_seconds=data.get("max_time_out_of_session_seconds", 180.0),
            transient_retry_budget=data.get("transient_retry_budget", 3),
            inter_session_idle_ms=list(data.get("inter_session_idle_ms", [4000, 20000])),
            exit_session_timeout_seconds=data.get("exit_session_timeout_seconds", 15.0),
            tick_ms=list(data.get("tick_ms", [70, 130])),
        )


@dataclass
class WatchdogSettings:
    """Idle and latency thresholds for the health watchdog loop."""
    min_movement: float = 30.0
    idle_threshold_seconds: float = 120.0
    latency_threshold_ms: float = 500.0
    latency_sustained_seconds: float = 30.0
    latency_check_interval_seconds: float = 2.0

    def to_dict(self) -> Dict:
        return {
            "min_movement": self.min_movement,
            "idle_threshold_seconds": self.idle_threshold_seconds,
            "latency_threshold_ms": self.latency_threshold_ms,
            "latency_sustained_seconds": self.latency_sustained_seconds,
            "latency_check_interval_seconds": self.latency_check_interval_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "WatchdogSettings":
        return cls(
            min_movement=data.get("min_movement", 30.0),
            idle_threshold_seconds=data.get("idle_threshold_seconds", 120.0),
            latency_threshold_ms=data.get("latency_threshold_ms", 500.0),
            latency_sustained_seconds=data.get("latency_sustained_seconds", 30.0),
            latency_check_interval_seconds=data.get("latency_check_interval_seconds", 2.0),
        )


@dataclass
class ApiSettings:
    host: str = "127.0.0.1"
    port: int = 8500

    def to_dict(self) -> Dict:
        return {"host": self.host, "port": self.port}

    @classmethod
    def from_dict(cls, data: Dict) -> "ApiSettings":
        return cls(host=data.get("host", "127.0.0.1"), port=data.get("port", 8500))


@dataclass
class NotificationSettings:
    enabled: bool = False
    webhook_url: Optional[str] = None

    def to_dict(self) -> Dict:
        return {"enabled": self.enabled, "webhook_url": self.webhook_url}

    @classmethod
    def from_dict(cls, data: Dict) -> "NotificationSettings":
        return cls(enabled=data.get("enabled", False), webhook_url=data.get("webhook_url"))


@dataclass
class GlobalConfig:
    """Complete global configuration."""
    agents_dir: str = "AGENTS"   # relative to the data dir
    logs_dir: str = "LOGS"
    log_level: str = "INFO"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    watchdog: WatchdogSettings = field(default_factory=WatchdogSettings)
    api: ApiSettings = field(default_factory=ApiSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    def to_dict(self) -> Dict:
        return {
            "paths": {"agents_dir": self.agents_dir, "logs_dir": self.logs_dir},
            "log_level": self.log_level,
            "scheduler": self.scheduler.to_dict(),
            "registry": self.registry.to_dict(),
            "supervisor": self.supervisor.to_dict(),
            "watchdog": self.watchdog.to_dict(),
            "api": self.api.to_dict(),
            "notifications": self.notifications.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "GlobalConfig":
        paths = data.get("paths", {})
        return cls(
            agents_dir=paths.get("agents_dir", "AGENTS"),
            logs_dir=paths.get("logs_dir", "LOGS"),
            log_level=data.get("log_level", "INFO"),
            scheduler=SchedulerSettings.from_dict(data.get("scheduler", {})),
            registry=RegistrySettings.from_dict(data.get("registry", {})),
            supervisor=SupervisorSettings.from_dict(data.get("supervisor", {})),
            watchdog=WatchdogSettings.from_dict(data.get("watchdog", {})),
            api=ApiSettings.from_dict(data.get("api", {})),
            notifications=NotificationSettings.from_dict(data.get("notifications", {})),
        )


# ============================================================================
# SCHEDULE CONFIG
# ============================================================================

@dataclass
class TimeRange:
    """One "HH:MM"-"HH:MM" range; zero variance falls back to the global one."""
    start: str
    end: str
    start_variance_min: int = 0
    end_variance_min: int = 0

    def to_dict(self) -> Dict:
        return {
            "start": self.start,
            "end": self.end,
            "start_variance_min": self.start_variance_min,
            "end_variance_min": self.end_variance_min,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "TimeRange":
        return cls(
            start=data.get("start", ""),
            end=data.get("end", ""),
            start_variance_min=data.get("start_variance_min", 0),
            end_variance_min=data.get("end_variance_min", 0),
        )


@dataclass
class DaySchedule:
    day_of_week: int  # 0 = Sunday ... 6 = Saturday
    time_ranges: List[TimeRange] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "day_of_week": self.day_of_week,
            "time_ranges": [r.to_dict() for r in self.time_ranges],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "DaySchedule":
        return cls(
            day_of_week=data.get("day_of_week", 0),
            time_ranges=[TimeRange.from_dict(r) for r in data.get("time_ranges", [])],
        )


@dataclass
class DurationConfig:
    """Duration-mode day plan. Durations are minutes unless named *_hours."""
    wake_up_time: str = "08:00"
    wake_up_variance_min: int = 0
    play_hours: int = 8
    play_hours_variance: int = 0
    meal_breaks: int = 2
    short_breaks: int = 3
    meal_break_duration: int = 45
    short_break_duration: int = 10
    meal_break_variance: int = 0
    short_break_variance: int = 0
    break_timing_variance: int = 0
    jitter_min: int = 0     # percent; 0 and 0 disables jitter
    jitter_max: int = 0     # percent

    def to_dict(self) -> Dict:
        return {
            "wake_up_time": self.wake_up_time,
            "wake_up_variance_min": self.wake_up_variance_min,
            "play_hours": self.play_hours,
            "play_hours_variance": self.play_hours_variance,
            "meal_breaks": self.meal_breaks,
            "short_breaks": self.short_breaks,
            "meal_break_duration": self.meal_break_duration,
            "short_break_duration": self.short_break_duration,
            "meal_break_variance": self.meal_break_variance,
            "short_break_variance": self.short_break_variance,
            "break_timing_variance": self.break_timing_variance,
            "jitter_min": self.jitter_min,
            "jitter_max": self.jitter_max,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "DurationConfig":
        defaults = cls()
        return cls(**{k: data.get(k, getattr(defaults, k)) for k in defaults.to_dict()})


@dataclass
class SchedulerConfig:
    enabled: bool = False
    mode: str = "simple"  # simple | timeSlots | duration
    simple_start_time: str = ""
    simple_stop_time: str = ""
    global_variance_min: int = 0
    days: List[DaySchedule] = field(default_factory=list)
    duration: DurationConfig = field(default_factory=DurationConfig)

    def to_dict(self) -> Dict:
        return {
            "enabled": self.enabled,
            "mode": self.mode,
            "simple_start_time": self.simple_start_time,
            "simple_stop_time": self.simple_stop_time,
            "global_variance_min": self.global_variance_min,
            "days": [d.to_dict() for d in self.days],
            "duration": self.duration.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SchedulerConfig":
        return cls(
            enabled=data.get("enabled", False),
            mode=data.get("mode") or "simple",
            simple_start_time=data.get("simple_start_time", ""),
            simple_stop_time=data.get("simple_stop_time", ""),
            global_variance_min=data.get("global_variance_min", 0),
            days=[DaySchedule.from_dict(d) for d in data.get("days", [])],
            duration=DurationConfig.from_dict(data.get("duration", {})),
        )


# ============================================================================
# AGENT CONFIG
# ============================================================================

@dataclass
class AgentConfig:
    """Configuration for a single agent."""
    name: str
    enabled: bool = True
    auth_method: str = ""
    max_session_seconds: int = 0   # 0 = unlimited
    stop_at_level: int = 0         # 0 = disabled
    kill_client_on_stop: bool = False
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @property
    def uses_token_auth(self) -> bool:
        return self.auth_method == "TokenAuth"

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "enabled": self.enabled,
            "auth_method": self.auth_method,
            "max_session_seconds": self.max_session_seconds,
            "stop_at_level": self.stop_at_level,
            "kill_client_on_stop": self.kill_client_on_stop,
            "scheduler": self.scheduler.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "AgentConfig":
        return cls(
            name=data["name"],
            enabled=data.get("enabled", True),
            auth_method=data.get("auth_method", ""),
            max_session_seconds=data.get("max_session_seconds", 0),
            stop_at_level=data.get("stop_at_level", 0),
            kill_client_on_stop=data.get("kill_client_on_stop", False),
            scheduler=SchedulerConfig.from_dict(data.get("scheduler", {})),
        )


# ============================================================================
# CONFIG MANAGER
# ============================================================================

class ConfigManager:
    """
    Manages loading and caching of configurations.
    """

    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir = Path(data_dir).resolve() if data_dir else _find_data_dir()
        self._global_config: Optional[GlobalConfig] = None
        self._agent_configs: Dict[str, AgentConfig] = {}

    @property
    def config_path(self) -> Path:
        return self.data_dir / "CONFIG" / "config.json"

    @property
    def global_config(self) -> GlobalConfig:
        if self._global_config is None:
            self._global_config = self.load_global()
        return self._global_config

    @property
    def agents_dir(self) -> Path:
        return self.data_dir / self.global_config.agents_dir

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / self.global_config.logs_dir

    def load_global(self) -> GlobalConfig:
        """Load global configuration; defaults when the file is missing."""
        if self.config_path.exists():
            data = json.loads(self.config_path.read_text(encoding="utf-8"))
            self._global_config = GlobalConfig.from_dict(data)
        else:
            self._global_config = GlobalConfig()
        return self._global_config

    def save_global(self) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(
            json.dumps(self.global_config.to_dict(), indent=2), encoding="utf-8"
        )

    def get_agent_dir(self, name: str) -> Path:
        return self.agents_dir / name

    def load_agent(self, name: str, reload: bool = False) -> AgentConfig:
        """Load one agent's configuration (cached unless ``reload``)."""
        if not reload and name in self._agent_configs:
            return self._agent_configs[name]

        path = self.get_agent_dir(name) / "config.json"
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8"))
            data.setdefault("name", name)
            config = AgentConfig.from_dict(data)
        else:
            config = AgentConfig(name=name)

        self._agent_configs[name] = config
        return config

    def save_agent(self, config: AgentConfig) -> None:
        agent_dir = self.get_agent_dir(config.name)
        agent_dir.mkdir(parents=True, exist_ok=True)
        (agent_dir / "config.json").write_text(
            json.dumps(config.to_dict(), indent=2), encoding="utf-8"
        )
        self._agent_configs[config.name] = config

    def list_agents(self) -> List[str]:
        """Names of every agent directory holding a config.json."""
        if not self.agents_dir.exists():
            return []
        return sorted(
            p.name for p in self.agents_dir.iterdir()
            if p.is_dir() and (p / "config.json").exists()
        )

    def load_all_agents(self) -> Dict[str, AgentConfig]:
        return {name: self.load_agent(name) for name in self.list_agents()}

    def reload(self) -> None:
        """Drop caches so the next access re-reads from disk."""
        self._global_config = None
        self._agent_configs.clear()
        logger.info("Configuration caches cleared")


# Global config manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager(data_dir: Optional[str] = None) -> ConfigManager:
    """Get or create the global config manager."""
    global _config_manager
    if _config_manager is None or data_dir is not None:
        _config_manager = ConfigManager(data_dir)
    return _config_manager
