"""
EVENTS
======

Fire-and-forget notification sink for session and task lifecycle events.

``EventBus.send()`` only enqueues; a daemon worker thread hands each event to
every registered handler. A failing handler is logged and never affects the
sender or the other handlers.

Usage::

    bus = EventBus()
    bus.register(WebhookNotifier("https://hooks.example.com/fleet"))
    bus.send(Event(EventType.SESSION_CREATED, agent="alpha", message="session 3"))
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SESSION_CREATED = "session_created"
    SESSION_FINISHED = "session_finished"
    TASK_STARTED = "task_started"
    TASK_FINISHED = "task_finished"
    AGENT_PAUSED = "agent_paused"
    AGENT_RESUMED = "agent_resumed"
    AGENT_STOPPED = "agent_stopped"
    AGENT_CRASHED = "agent_crashed"


@dataclass
class Event:
    type: EventType
    agent: str
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict:
        return {
            "type": self.type.value,
            "agent": self.agent,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[Event], None]


class EventBus:
    """Queue-backed dispatcher; handlers run on one daemon thread."""

    def __init__(self):
        self._handlers: List[EventHandler] = []
        self._lock = threading.Lock()
        self._queue: "queue.Queue[Optional[Event]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def register(self, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def unregister(self, handler: EventHandler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def send(self, event: Event) -> None:
        self._ensure_worker()
        self._queue.put(event)

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._run, daemon=True, name="fleet-events")
                self._thread.start()

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                self.dispatch(event)
            finally:
                self._queue.task_done()

    def dispatch(self, event: Event) -> None:
        """Deliver ``event`` synchronously to every handler."""
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.warning(f"Event handler failed for {event.type.value} ({event.agent}): {e}")

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every queued event has been dispatched."""
        if self._thread is None:
            return
        if timeout is None:
            self._queue.join()
            return
        done = threading.Event()
        threading.Thread(target=lambda: (self._queue.join(), done.set()), daemon=True).start()
        done.wait(timeout)

    def close(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            self._queue.put(None)
            self._thread.join(timeout=5.0)
        self._thread = None


class WebhookNotifier:
    """POSTs each event as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 10.0, event_types: Optional[List[EventType]] = None):
        self.url = url
        self.timeout = timeout
        self.event_types = set(event_types) if event_types else None

    def __call__(self, event: Event) -> None:
        if self.event_types is not None and event.type not in self.event_types:
            return
        resp = requests.post(self.url, json=event.to_dict(), timeout=self.timeout)
        resp.raise_for_status()


def build_event_bus(settings: Any = None) -> EventBus:
    """EventBus with a webhook handler when notifications are configured."""
    bus = EventBus()
    if settings is not None and settings.enabled and settings.webhook_url:
        bus.register(WebhookNotifier(settings.webhook_url))
        logger.info("Webhook notifications enabled")
    return bus
