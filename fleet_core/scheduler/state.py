"""
SCHEDULER STATE
===============

Duration-mode state and its per-agent persistence.

Files (one directory per agent)::

    <agents_dir>/<name>/scheduler_state.json     DurationState
    <agents_dir>/<name>/scheduler_history.json   {"history": [HistoryEntry, ...]}

History is newest first and capped at ``MAX_HISTORY_ENTRIES``. Persistence is
best effort: read and write failures are logged and never raised, so the
in-memory state machine keeps moving.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

STATE_FILENAME = "scheduler_state.json"
HISTORY_FILENAME = "scheduler_history.json"
MAX_HISTORY_ENTRIES = 30


class Phase(str, Enum):
    RESTING = "resting"
    PLAYING = "playing"
    ON_BREAK = "onBreak"


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt_from_str(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class ScheduledBreak:
    type: str                 # "meal" | "short"
    start_time: datetime
    duration: int             # minutes

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration)

    def to_dict(self) -> Dict:
        return {
            "type": self.type,
            "startTime": self.start_time.isoformat(),
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ScheduledBreak":
        return cls(
            type=data.get("type", "short"),
            start_time=datetime.fromisoformat(data["startTime"]),
            duration=data.get("duration", 0),
        )


@dataclass
class DurationState:
    """Persisted duration-mode progress for one agent."""
    current_phase: Phase = Phase.RESTING
    phase_start_time: Optional[datetime] = None
    phase_end_time: Optional[datetime] = None   # only meaningful while on break
    today_wake_time: Optional[datetime] = None
    today_rest_time: Optional[datetime] = None
    played_minutes: int = 0
    played_minutes_at_phase_start: int = 0
    scheduled_breaks: List[ScheduledBreak] = field(default_factory=list)
    current_break_idx: int = 0
    last_updated: Optional[datetime] = None
    last_seen_running: Optional[datetime] = None

    @property
    def total_break_minutes(self) -> int:
        return sum(b.duration for b in self.scheduled_breaks)

    def next_break(self) -> Optional[ScheduledBreak]:
        if 0 <= self.current_break_idx < len(self.scheduled_breaks):
            return self.scheduled_breaks[self.current_break_idx]
        return None

    def to_dict(self) -> Dict:
        return {
            "currentPhase": self.current_phase.value,
            "phaseStartTime": _dt_to_str(self.phase_start_time),
            "phaseEndTime": _dt_to_str(self.phase_end_time),
            "todayWakeTime": _dt_to_str(self.today_wake_time),
            "todayRestTime": _dt_to_str(self.today_rest_time),
            "playedMinutes": self.played_minutes,
            "playedMinutesAtPhaseStart": self.played_minutes_at_phase_start,
            "scheduledBreaks": [b.to_dict() for b in self.scheduled_breaks],
            "currentBreakIdx": self.current_break_idx,
            "lastUpdated": _dt_to_str(self.last_updated),
            "lastSeenRunning": _dt_to_str(self.last_seen_running),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "DurationState":
        return cls(
            current_phase=Phase(data.get("currentPhase") or Phase.RESTING.value),
            phase_start_time=_dt_from_str(data.get("phaseStartTime")),
            phase_end_time=_dt_from_str(data.get("phaseEndTime")),
            today_wake_time=_dt_from_str(data.get("todayWakeTime")),
            today_rest_time=_dt_from_str(data.get("todayRestTime")),
            played_minutes=data.get("playedMinutes", 0),
            played_minutes_at_phase_start=data.get("playedMinutesAtPhaseStart", 0),
            scheduled_breaks=[ScheduledBreak.from_dict(b) for b in data.get("scheduledBreaks") or []],
            current_break_idx=data.get("currentBreakIdx", 0),
            last_updated=_dt_from_str(data.get("lastUpdated")),
            last_seen_running=_dt_from_str(data.get("lastSeenRunning")),
        )


@dataclass(frozen=True)
class HistoryEntry:
    """One closed-out day."""
    date: str            # YYYY-MM-DD
    wake_time: str       # HH:MM
    sleep_time: str      # HH:MM
    total_play_minutes: int
    total_break_minutes: int
    breaks: tuple = ()

    @classmethod
    def from_state(cls, state: DurationState) -> "HistoryEntry":
        return cls(
            date=state.today_wake_time.strftime("%Y-%m-%d"),
            wake_time=state.today_wake_time.strftime("%H:%M"),
            sleep_time=state.today_rest_time.strftime("%H:%M") if state.today_rest_time else "",
            total_play_minutes=state.played_minutes,
            total_break_minutes=state.total_break_minutes,
            breaks=tuple(state.scheduled_breaks),
        )

    def to_dict(self) -> Dict:
        return {
            "date": self.date,
            "wakeTime": self.wake_time,
            "sleepTime": self.sleep_time,
            "totalPlayMinutes": self.total_play_minutes,
            "totalBreakMinutes": self.total_break_minutes,
            "breaks": [b.to_dict() for b in self.breaks],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "HistoryEntry":
        return cls(
            date=data.get("date", ""),
            wake_time=data.get("wakeTime", ""),
            sleep_time=data.get("sleepTime", ""),
            total_play_minutes=data.get("totalPlayMinutes", 0),
            total_break_minutes=data.get("totalBreakMinutes", 0),
            breaks=tuple(ScheduledBreak.from_dict(b) for b in data.get("breaks") or []),
        )


# ============================================================================
# STATE STORE
# ============================================================================

class StateStore:
    """Reads and writes scheduler state and history under ``agents_dir``."""

    def __init__(self, agents_dir: str):
        self.agents_dir = Path(agents_dir)

    def state_path(self, name: str) -> Path:
        return self.agents_dir / name / STATE_FILENAME

    def history_path(self, name: str) -> Path:
        return self.agents_dir / name / HISTORY_FILENAME

    def load_state(self, name: str) -> Optional[DurationState]:
        """Stored state, or None when absent or unreadable."""
        path = self.state_path(name)
        if not path.exists():
            return None
        try:
            return DurationState.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to read scheduler state for '{name}': {e}")
            return None

    def save_state(self, name: str, state: DurationState) -> bool:
        path = self.state_path(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(state.to_dict(), indent=2), encoding="utf-8")
            tmp.replace(path)
            return True
        except OSError as e:
            logger.warning(f"Failed to save scheduler state for '{name}': {e}")
            return False

    def delete_state(self, name: str) -> None:
        try:
            self.state_path(name).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to delete scheduler state for '{name}': {e}")

    def load_history(self, name: str) -> List[HistoryEntry]:
        path = self.history_path(name)
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return [HistoryEntry.from_dict(e) for e in data.get("history") or []]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to read scheduler history for '{name}': {e}")
            return []

    def append_history(self, name: str, entry: HistoryEntry) -> List[HistoryEntry]:
        """Prepend ``entry`` and keep the newest ``MAX_HISTORY_ENTRIES``."""
        history = [entry] + self.load_history(name)
        history = history[:MAX_HISTORY_ENTRIES]

        path = self.history_path(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(
                json.dumps({"history": [e.to_dict() for e in history]}, indent=2),
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning(f"Failed to save scheduler history for '{name}': {e}")
        return history
