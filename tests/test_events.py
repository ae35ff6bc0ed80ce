"""Tests for fleet_core.events."""

from unittest.mock import MagicMock, patch

import requests

from fleet_core.config import NotificationSettings
from fleet_core.events import Event, EventBus, EventType, WebhookNotifier, build_event_bus


def _event(event_type=EventType.SESSION_CREATED):
    return Event(event_type, agent="alpha", message="session 1", data={"n": 1})


class TestEventBus:
    def test_delivers_to_every_handler(self):
        """Each registered handler receives the event."""
        bus = EventBus()
        first, second = MagicMock(), MagicMock()
        bus.register(first)
        bus.register(second)

        event = _event()
        bus.send(event)
        bus.flush(timeout=2.0)
        first.assert_called_once_with(event)
        second.assert_called_once_with(event)
        bus.close()

    def test_failing_handler_is_isolated(self):
        """One handler raising does not block the others."""
        bus = EventBus()
        broken = MagicMock(side_effect=RuntimeError("down"))
        healthy = MagicMock()
        bus.register(broken)
        bus.register(healthy)

        bus.dispatch(_event())
        healthy.assert_called_once()

    def test_unregister(self):
        """Unregistered handlers stop receiving events."""
        bus = EventBus()
        handler = MagicMock()
        bus.register(handler)
        bus.unregister(handler)
        bus.dispatch(_event())
        handler.assert_not_called()

    def test_to_dict(self):
        """Events serialize with their type value."""
        data = _event(EventType.AGENT_CRASHED).to_dict()
        assert data["type"] == "agent_crashed"
        assert data["agent"] == "alpha"
        assert data["data"] == {"n": 1}
        assert "timestamp" in data


class TestWebhookNotifier:
    @patch("fleet_core.events.requests.post")
    def test_posts_json(self, mock_post):
        """Events are POSTed as JSON with a timeout."""
        notifier = WebhookNotifier("https://hooks.example.com/x", timeout=3)
        event = _event()
        notifier(event)

        mock_post.assert_called_once_with(
            "https://hooks.example.com/x", json=event.to_dict(), timeout=3
        )
        mock_post.return_value.raise_for_status.assert_called_once()

    @patch("fleet_core.events.requests.post")
    def test_filters_event_types(self, mock_post):
        """Only the selected event types are sent."""
        notifier = WebhookNotifier("https://hooks.example.com/x", event_types=[EventType.AGENT_CRASHED])
        notifier(_event(EventType.TASK_STARTED))
        mock_post.assert_not_called()

    @patch("fleet_core.events.requests.post")
    def test_http_errors_stay_inside_the_bus(self, mock_post):
        """A webhook failure is logged by the bus, not raised to the sender."""
        mock_post.return_value.raise_for_status.side_effect = requests.HTTPError("500")
        bus = EventBus()
        bus.register(WebhookNotifier("https://hooks.example.com/x"))
        bus.dispatch(_event())
        mock_post.assert_called_once()


class TestBuildEventBus:
    def test_without_settings(self):
        """No settings gives a bus with no handlers."""
        assert build_event_bus()._handlers == []

    def test_with_webhook(self):
        """An enabled webhook registers a notifier."""
        bus = build_event_bus(NotificationSettings(enabled=True, webhook_url="https://hooks.example.com/x"))
        assert len(bus._handlers) == 1
        assert isinstance(bus._handlers[0], WebhookNotifier)
