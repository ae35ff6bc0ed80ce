"""
CRASH DETECTOR
==============

Watches one external process and fires a restart callback when it dies.

The callback runs on the detector's own thread, at most once per detector.
``stop()`` disarms it; a stopped detector never fires. ``disarm()`` also
reports whether the callback had already been claimed.
"""

import logging
import threading
from typing import Callable, Optional

import psutil

from .interfaces import ProcessHandle

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 1.0


class PidProcessHandle(ProcessHandle):
    """ProcessHandle backed by a PID, probed through psutil."""

    def __init__(self, pid: int):
        self.pid = pid

    def is_alive(self) -> bool:
        try:
            proc = psutil.Process(self.pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # Exists, just not ours to inspect
            return True

    def __repr__(self) -> str:
        return f"PidProcessHandle({self.pid})"


class CrashDetector:

    def __init__(
        self,
        name: str,
        process: ProcessHandle,
        on_crash: Callable[[], None],
        poll_interval: float = DEFAULT_POLL_INTERVAL_S,
    ):
        self.name = name
        self.process = process
        self.on_crash = on_crash
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._fired = False
        self._fired_event = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def fired(self) -> bool:
        return self._fired

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, daemon=True, name=f"crash-detector-{self.name}"
        )
        self._thread.start()

    def stop(self) -> None:
        """Disarm. Safe to call from the callback itself."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.poll_interval + 1.0)

    def wait_fired(self, timeout: float) -> bool:
        """Block up to ``timeout`` seconds for the callback to be claimed."""
        return self._fired_event.wait(timeout)

    def disarm(self) -> bool:
        """Stop watching. True if the callback had not fired and never will."""
        with self._lock:
            self._stop_event.set()
            if self._fired:
                return False
        self.stop()
        return True

    def _run(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            if self.process.is_alive():
                continue
            with self._lock:
                if self._stop_event.is_set() or self._fired:
                    return
                self._fired = True
                self._fired_event.set()
            logger.warning(f"Process for '{self.name}' disappeared, invoking restart policy")
            try:
                self.on_crash()
            except Exception:
                logger.exception(f"Restart callback failed for '{self.name}'")
            return
