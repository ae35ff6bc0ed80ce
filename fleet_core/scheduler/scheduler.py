"""
SCHEDULER
=========

Decides, without operator input, when each configured agent should run.

A single daemon thread ticks every ``tick_seconds`` (30s by default) and
evaluates every agent whose schedule is enabled, using exactly one mode:

- ``simple``: one daily ``[start, stop)`` window, wrapping past midnight
  when stop < start.
- ``timeSlots``: weekly table of ranges, each edge shifted by a
  deterministic per-day offset. First matching range wins per tick.
- ``duration``: a stateful day plan (Resting -> Playing -> OnBreak ->
  Playing -> ... -> Resting) with randomized wake time, play length and
  breaks. State is persisted after every mutation.

Evaluators are idempotent per tick. Starts are dispatched on a background
thread (``registry.start`` blocks for the whole session); stops are
synchronous. The scheduler only uses the registry's ``start`` / ``stop`` /
``status`` surface.

Usage:
    from fleet_core.scheduler import Scheduler

    scheduler = Scheduler(registry, get_config_manager())
    scheduler.start()
    ...
    scheduler.is_within_schedule("alpha")
    scheduler.next_window_start("alpha")
"""

import logging
import random
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import RegistryError
from ..supervisor import NOT_STARTED_STATUSES
from .breaks import apply_jitter, plan_breaks, random_in_range
from .state import DurationState, HistoryEntry, Phase, ScheduledBreak, StateStore
from .windows import (
    TimeWindowError,
    at_time,
    jittered_range,
    parse_hhmm,
    window_contains,
)

logger = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_TICK_SECONDS = 30.0
RESUME_GAP = timedelta(minutes=2)
DEFAULT_WAKE_TIME = "08:00"

MODE_SIMPLE = "simple"
MODE_TIME_SLOTS = "timeSlots"
MODE_DURATION = "duration"


def _weekday(now: datetime) -> int:
    """Day of week with 0 = Sunday."""
    return (now.weekday() + 1) % 7


def _resolve_mode(mode: Optional[str]) -> str:
    if not mode:
        return MODE_SIMPLE
    if mode in (MODE_SIMPLE, MODE_DURATION):
        return mode
    return MODE_TIME_SLOTS


class Scheduler:
    """
    Time-window scheduler over a supervisor registry.

    Args:
        registry: Object exposing ``start(name, attach, manual)``,
            ``stop(name)`` and ``status(name)``.
        config_manager: ConfigManager providing agent configs.
        store: StateStore for duration state/history (default: agents_dir).
        clock: Returns "now"; local wall-clock time by default.
        rng: Random source for day plans.
        tick_seconds: Tick interval (default from global config).
        async_start: Dispatch starts on a background thread.
    """

    def __init__(
        self,
        registry: Any,
        config_manager: Any,
        store: Optional[StateStore] = None,
        clock: Callable[[], datetime] = datetime.now,
        rng: Optional[random.Random] = None,
        tick_seconds: Optional[float] = None,
        async_start: bool = True,
    ):
        self._registry = registry
        self._config = config_manager
        self._store = store or StateStore(str(config_manager.agents_dir))
        self._clock = clock
        self._rng = rng or random.Random()
        self._async_start = async_start
        if tick_seconds is None:
            tick_seconds = config_manager.global_config.scheduler.tick_seconds
        self.tick_seconds = tick_seconds or DEFAULT_TICK_SECONDS

        self._states: Dict[str, DurationState] = {}
        self._states_lock = threading.RLock()

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_tick: Optional[datetime] = None

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self) -> None:
        """Start the tick loop in a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="fleet-scheduler")
        self._thread.start()
        logger.info(f"Scheduler started (tick every {self.tick_seconds:.0f}s)")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(self.tick_seconds)

    def tick(self) -> None:
        """Evaluate every enabled agent once. Never raises."""
        now = self._clock()
        self.last_tick = now
        try:
            agents = self._config.load_all_agents()
        except Exception as e:
            logger.error(f"Scheduler could not load agent configs: {e}")
            return

        for name, cfg in agents.items():
            if not cfg.scheduler.enabled:
                continue
            try:
                self.evaluate(name, cfg, now)
            except Exception:
                logger.exception(f"Scheduler evaluation failed for '{name}'")

    def evaluate(self, name: str, cfg: Any, now: Optional[datetime] = None) -> None:
        """Run the mode-specific evaluator for one agent."""
        now = now or self._clock()
        mode = _resolve_mode(cfg.scheduler.mode)
        if mode == MODE_SIMPLE:
            self._evaluate_simple(name, cfg, now)
        elif mode == MODE_DURATION:
            self._evaluate_duration(name, cfg, now)
        else:
            self._evaluate_time_slots(name, cfg, now)

    # ========================================================================
    # REGISTRY SURFACE
    # ========================================================================

    def _is_running(self, name: str) -> bool:
        stats = self._registry.status(name)
        status = getattr(stats, "status", stats)
        return status not in NOT_STARTED_STATUSES

    def _start_agent(self, name: str, reason: str) -> None:
        logger.info(f"Scheduler starting '{name}': {reason}")
        if self._async_start:
            threading.Thread(
                target=self._run_start, args=(name,), daemon=True, name=f"start-{name}"
            ).start()
        else:
            self._run_start(name)

    def _run_start(self, name: str) -> None:
        try:
            self._registry.start(name, False, False)
        except RegistryError as e:
            logger.warning(f"Scheduler could not start '{name}': {e}")

    def _stop_agent(self, name: str, reason: str) -> None:
        logger.info(f"Scheduler stopping '{name}': {reason}")
        try:
            self._registry.stop(name)
        except RegistryError as e:
            logger.warning(f"Scheduler could not stop '{name}': {e}")

    # ========================================================================
    # SIMPLE MODE
    # ========================================================================

    def _simple_window(self, cfg: Any) -> Tuple[Any, Any]:
        sched = cfg.scheduler
        return parse_hhmm(sched.simple_start_time), parse_hhmm(sched.simple_stop_time)

    def _evaluate_simple(self, name: str, cfg: Any, now: datetime) -> None:
        try:
            start, stop = self._simple_window(cfg)
        except TimeWindowError as e:
            logger.warning(f"Simple schedule for '{name}' is invalid, skipping: {e}")
            return

        label = f"{cfg.scheduler.simple_start_time}-{cfg.scheduler.simple_stop_time}"
        in_window = window_contains(now, start, stop)
        running = self._is_running(name)
        if in_window and not running:
            self._start_agent(name, f"inside simple window {label}")
        elif not in_window and running:
            self._stop_agent(name, f"outside simple window {label}")

    # ========================================================================
    # TIME-SLOTS MODE
    # ========================================================================

    def _slot_windows(self, name: str, cfg: Any, day: datetime) -> List[Tuple[datetime, datetime]]:
        """Jittered ``(start, end)`` pairs for ``day``'s weekday; invalid ranges skipped."""
        sched = cfg.scheduler
        windows = []
        weekday = _weekday(day)
        for entry in sched.days:
            if entry.day_of_week != weekday:
                continue
            for time_range in entry.time_ranges:
                try:
                    start_t, end_t = parse_hhmm(time_range.start), parse_hhmm(time_range.end)
                except TimeWindowError as e:
                    logger.warning(f"Time slot for '{name}' is invalid, skipping: {e}")
                    continue
                windows.append(jittered_range(
                    name, day, start_t, end_t,
                    time_range.start_variance_min or sched.global_variance_min,
                    time_range.end_variance_min or sched.global_variance_min,
                ))
        return windows

    def _evaluate_time_slots(self, name: str, cfg: Any, now: datetime) -> None:
        windows = self._slot_windows(name, cfg, now)
        if not windows:
            return

        running = self._is_running(name)
        for start, end in windows:
            if start <= now < end:
                if not running:
                    self._start_agent(
                        name, f"inside time slot {start:%H:%M}-{end:%H:%M}"
                    )
                return

        if running:
            labels = ", ".join(f"{s:%H:%M}-{e:%H:%M}" for s, e in windows)
            self._stop_agent(name, f"outside time slots {labels}")

    # ========================================================================
    # DURATION MODE
    # ========================================================================

    def _get_or_create_state(self, name: str) -> DurationState:
        with self._states_lock:
            state = self._states.get(name)
            if state is None:
                state = self._store.load_state(name) or DurationState()
                self._states[name] = state
            return state

    def _save(self, name: str, state: DurationState) -> None:
        self._store.save_state(name, state)

    @staticmethod
    def _is_new_day(state: DurationState, now: datetime) -> bool:
        if state.today_wake_time is None:
            return True
        return state.today_wake_time.date() != now.date()

    def _build_breaks(self, cfg: Any, wake: datetime, play_hours: int) -> List[ScheduledBreak]:
        return [
            ScheduledBreak(
                type=b.type,
                start_time=wake + timedelta(minutes=b.offset_minutes),
                duration=b.duration_minutes,
            )
            for b in plan_breaks(cfg.scheduler.duration, play_hours, self._rng)
        ]

    def _initialize_new_day(self, name: str, cfg: Any, state: DurationState, now: datetime) -> None:
        duration = cfg.scheduler.duration

        if state.today_wake_time is not None and state.played_minutes > 0:
            self._store.append_history(name, HistoryEntry.from_state(state))

        try:
            wake_tod = parse_hhmm(duration.wake_up_time or DEFAULT_WAKE_TIME)
        except TimeWindowError as e:
            logger.warning(f"Duration schedule for '{name}': {e}; using {DEFAULT_WAKE_TIME}")
            wake_tod = parse_hhmm(DEFAULT_WAKE_TIME)

        wake_variance = apply_jitter(
            duration.wake_up_variance_min, duration.jitter_min, duration.jitter_max, self._rng
        )
        wake = at_time(now, wake_tod) + timedelta(
            minutes=random_in_range(-wake_variance, wake_variance, self._rng)
        )

        play_hours = max(1, duration.play_hours)
        play_variance = apply_jitter(
            duration.play_hours_variance * 60, duration.jitter_min, duration.jitter_max, self._rng
        ) // 60
        actual_hours = max(1, play_hours + random_in_range(-play_variance, play_variance, self._rng))

        breaks = self._build_breaks(cfg, wake, actual_hours)
        total_break = sum(b.duration for b in breaks)

        state.today_wake_time = wake
        state.today_rest_time = wake + timedelta(hours=actual_hours, minutes=total_break)
        state.current_phase = Phase.RESTING
        state.played_minutes = 0
        state.played_minutes_at_phase_start = 0
        state.scheduled_breaks = breaks
        state.current_break_idx = 0
        state.last_seen_running = None
        state.last_updated = now

        logger.info(
            f"Initialized day plan for '{name}': wake {wake:%H:%M}, rest "
            f"{state.today_rest_time:%H:%M}, {actual_hours}h play, {len(breaks)} breaks"
        )
        self._save(name, state)

    def _evaluate_duration(self, name: str, cfg: Any, now: datetime) -> None:
        # Readers copy the state under the same lock
        with self._states_lock:
            state = self._get_or_create_state(name)

            if self._is_new_day(state, now):
                self._initialize_new_day(name, cfg, state, now)

            if state.current_phase == Phase.RESTING:
                self._evaluate_resting(name, cfg, state, now)
            elif state.current_phase == Phase.PLAYING:
                self._evaluate_playing(name, state, now)
            elif state.current_phase == Phase.ON_BREAK:
                if state.phase_end_time is None or now >= state.phase_end_time:
                    state.current_break_idx += 1
                    self._transition_to_playing(name, state, now, "break over")

    def _evaluate_resting(self, name: str, cfg: Any, state: DurationState, now: datetime) -> None:
        if self._is_running(name):
            budget = max(1, cfg.scheduler.duration.play_hours) * 60
            if state.played_minutes >= budget:
                self._stop_agent(
                    name, f"manual start while resting, budget already met ({state.played_minutes} min)"
                )
            elif state.played_minutes > 0:
                self._resume_with_remaining(name, state, now, budget - state.played_minutes)
                self._transition_to_playing(name, state, now, "manual start with remaining budget")
            else:
                self._recalculate_from_now(name, cfg, state, now)
                self._transition_to_playing(name, state, now, "manual start, nothing played today")
            return

        if state.today_wake_time <= now < state.today_rest_time:
            self._transition_to_playing(name, state, now, "wake time reached")

    def _evaluate_playing(self, name: str, state: DurationState, now: datetime) -> None:
        skipped = 0
        while state.current_break_idx < len(state.scheduled_breaks):
            if now > state.scheduled_breaks[state.current_break_idx].end_time:
                state.current_break_idx += 1
                skipped += 1
            else:
                break
        if skipped:
            logger.info(f"Skipped {skipped} past break(s) for '{name}'")
            self._save(name, state)

        upcoming = state.next_break()
        if upcoming is not None and now >= upcoming.start_time:
            self._transition_to_break(name, state, upcoming, now)
            return

        if self._is_running(name):
            if state.last_seen_running is None or now - state.last_seen_running > RESUME_GAP:
                logger.info(
                    f"Detected resume for '{name}', resetting phase timing "
                    f"(accumulated {state.played_minutes} min)"
                )
                state.phase_start_time = now
                state.played_minutes_at_phase_start = state.played_minutes
            state.last_seen_running = now

            elapsed = int((now - state.phase_start_time).total_seconds() // 60)
            state.played_minutes = max(
                state.played_minutes, state.played_minutes_at_phase_start + elapsed
            )
            state.last_updated = now
            self._save(name, state)

        if now >= state.today_rest_time:
            self._transition_to_resting(name, state, now)

    # ------------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------------

    def _transition_to_playing(self, name: str, state: DurationState, now: datetime, reason: str) -> None:
        state.current_phase = Phase.PLAYING
        state.phase_start_time = now
        state.played_minutes_at_phase_start = state.played_minutes
        state.last_updated = now
        logger.info(f"Duration schedule '{name}' -> PLAYING ({reason}, played {state.played_minutes} min)")

        if not self._is_running(name):
            self._start_agent(name, reason)
        self._save(name, state)

    def _transition_to_break(self, name: str, state: DurationState, brk: ScheduledBreak, now: datetime) -> None:
        state.current_phase = Phase.ON_BREAK
        state.phase_start_time = now
        state.phase_end_time = now + timedelta(minutes=brk.duration)
        state.last_seen_running = None
        state.last_updated = now
        logger.info(
            f"Duration schedule '{name}' -> BREAK ({brk.type}, {brk.duration} min, "
            f"resume at {state.phase_end_time:%H:%M})"
        )
        self._stop_agent(name, f"{brk.type} break")
        self._save(name, state)

    def _transition_to_resting(self, name: str, state: DurationState, now: datetime) -> None:
        state.current_phase = Phase.RESTING
        state.phase_start_time = now
        state.last_seen_running = None
        state.last_updated = now
        logger.info(
            f"Duration schedule '{name}' -> RESTING (played {state.played_minutes} min, next wake tomorrow)"
        )
        self._stop_agent(name, "play time over for today")
        self._save(name, state)

    def _resume_with_remaining(self, name: str, state: DurationState, now: datetime, remaining: int) -> None:
        state.today_rest_time = now + timedelta(minutes=remaining)
        state.scheduled_breaks = []
        state.current_break_idx = 0
        logger.info(
            f"Resuming '{name}' with {remaining} min remaining, rest at {state.today_rest_time:%H:%M}"
        )
        self._save(name, state)

    def _recalculate_from_now(self, name: str, cfg: Any, state: DurationState, now: datetime) -> None:
        play_hours = max(1, cfg.scheduler.duration.play_hours)
        breaks = self._build_breaks(cfg, now, play_hours)

        state.today_wake_time = now
        state.today_rest_time = now + timedelta(
            hours=play_hours, minutes=sum(b.duration for b in breaks)
        )
        state.scheduled_breaks = breaks
        state.current_break_idx = 0
        state.played_minutes = 0
        logger.info(
            f"Recalculated day plan for '{name}' from {now:%H:%M}, rest at {state.today_rest_time:%H:%M}"
        )
        self._save(name, state)

    # ========================================================================
    # READ-ONLY QUERIES
    # ========================================================================

    def _agent_config(self, name: str) -> Any:
        return self._config.load_agent(name)

    def is_within_schedule(self, name: str, cfg: Any = None, now: Optional[datetime] = None) -> bool:
        """
        Whether ``name`` is currently inside its permitted window.

        Disabled schedules, misconfigured times and duration agents with no
        state yet all allow the start.
        """
        cfg = cfg or self._agent_config(name)
        if not cfg.scheduler.enabled:
            return True
        now = now or self._clock()
        mode = _resolve_mode(cfg.scheduler.mode)

        if mode == MODE_SIMPLE:
            try:
                start, stop = self._simple_window(cfg)
            except TimeWindowError:
                return True
            return window_contains(now, start, stop)

        if mode == MODE_DURATION:
            state = self.get_state(name)
            if state is None:
                return True
            return state.current_phase == Phase.PLAYING

        return any(start <= now < end for start, end in self._slot_windows(name, cfg, now))

    def next_window_start(self, name: str, cfg: Any = None, now: Optional[datetime] = None) -> Optional[datetime]:
        """Next time the window opens, or None when already open or unknown."""
        cfg = cfg or self._agent_config(name)
        if not cfg.scheduler.enabled:
            return None
        now = now or self._clock()
        mode = _resolve_mode(cfg.scheduler.mode)

        if mode == MODE_SIMPLE:
            try:
                start_t, stop_t = self._simple_window(cfg)
            except TimeWindowError:
                return None
            if window_contains(now, start_t, stop_t):
                return None
            start = at_time(now, start_t)
            return start if start > now else start + timedelta(days=1)

        if mode == MODE_DURATION:
            state = self.get_state(name)
            if state is None:
                return None
            if state.current_phase == Phase.RESTING and state.today_wake_time and state.today_wake_time > now:
                return state.today_wake_time
            if state.current_phase == Phase.ON_BREAK and state.phase_end_time and state.phase_end_time > now:
                return state.phase_end_time
            return None

        for offset in range(8):
            day = now + timedelta(days=offset)
            starts = [s for s, _ in self._slot_windows(name, cfg, day) if s > now]
            if starts:
                return min(starts)
        return None

    def get_state(self, name: str) -> Optional[DurationState]:
        """Snapshot of the in-memory duration state (loaded from disk on first use)."""
        with self._states_lock:
            state = self._states.get(name)
            if state is None:
                state = self._store.load_state(name)
                if state is not None:
                    self._states[name] = state
            if state is None:
                return None
            return DurationState.from_dict(state.to_dict())

    def get_history(self, name: str) -> List[HistoryEntry]:
        return self._store.load_history(name)

    def reset_state(self, name: str) -> None:
        """Forget today's plan; the next evaluation initializes a fresh day."""
        with self._states_lock:
            self._states.pop(name, None)
        self._store.delete_state(name)
        logger.info(f"Duration state reset for '{name}'")
