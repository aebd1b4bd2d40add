"""
Unit tests for the notification hub.

Uses in-memory transports recording every message sent.
"""

import json
import time
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from ai_carbon_monitor.notifications.hub import (
    EVENT_CONNECTION,
    EVENT_HEARTBEAT,
    EVENT_PONG,
    EVENT_SUBSCRIBED,
    EVENT_USAGE_UPDATE,
    NotificationHub,
    SubscriberConnectionError,
)


class FakeTransport:
    """Transport collecting decoded messages."""

    def __init__(self, fail_on_send: bool = False):
        self.messages = []
        self.is_open = True
        self.closed = False
        self.fail_on_send = fail_on_send

    def send(self, message: str) -> None:
        if self.fail_on_send:
            raise SubscriberConnectionError("connection reset")
        self.messages.append(json.loads(message))

    def close(self) -> None:
        self.closed = True
        self.is_open = False

    def types(self):
        return [message["type"] for message in self.messages]


class FakeClock:
    """Clock advancing one second per reading."""

    def __init__(self):
        self.now = datetime(2025, 8, 29, 12, 0, 0)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def hub():
    hub = NotificationHub(max_subscribers=3, heartbeat_interval=30, clock=FakeClock())
    yield hub
    hub.shutdown()


class TestRegistration:
    """Test connect, welcome and eviction."""

    def test_welcome_sent(self, hub):
        transport = FakeTransport()
        subscriber_id = hub.register(transport)

        assert hub.subscriber_count == 1
        assert transport.types() == [EVENT_CONNECTION]
        welcome = transport.messages[0]
        assert welcome["data"]["client_id"] == subscriber_id
        assert "timestamp" in welcome

    def test_unique_ids(self, hub):
        ids = {hub.register(FakeTransport()) for _ in range(3)}
        assert len(ids) == 3

    def test_oldest_evicted_beyond_maximum(self, hub):
        """Verify exactly the oldest subscriber is dropped at the limit."""
        transports = [FakeTransport() for _ in range(4)]
        ids = [hub.register(transport) for transport in transports]

        assert hub.subscriber_count == 3
        assert transports[0].closed
        assert not any(t.closed for t in transports[1:])
        remaining = {info["id"] for info in hub.subscriber_info()}
        assert remaining == set(ids[1:])
        assert transports[3].types() == [EVENT_CONNECTION]

    def test_unregister(self, hub):
        subscriber_id = hub.register(FakeTransport())
        hub.unregister(subscriber_id)
        hub.unregister(subscriber_id)
        assert hub.subscriber_count == 0

    def test_invalid_limits_rejected(self):
        with pytest.raises(ValueError, match="max_subscribers must be > 0"):
            NotificationHub(max_subscribers=0)
        with pytest.raises(ValueError, match="heartbeat_interval must be > 0"):
            NotificationHub(heartbeat_interval=0)
        with pytest.raises(ValueError, match="heartbeat_interval must be > 0"):
            NotificationHub(heartbeat_interval=float("nan"))


class TestBroadcast:
    """Test fan-out and lazy cleanup."""

    def test_delivered_to_all(self, hub):
        transports = [FakeTransport() for _ in range(2)]
        for transport in transports:
            hub.register(transport)

        sent = hub.broadcast(EVENT_USAGE_UPDATE, {"new_records": 2, "cost": Decimal("3.10")})

        assert sent == 2
        for transport in transports:
            message = transport.messages[-1]
            assert message["type"] == EVENT_USAGE_UPDATE
            assert message["data"] == {"new_records": 2, "cost": 3.1}

    def test_closed_transport_removed(self, hub):
        """Verify closed subscribers are pruned by a broadcast."""
        alive, dead = FakeTransport(), FakeTransport()
        hub.register(alive)
        hub.register(dead)
        dead.is_open = False

        assert hub.broadcast(EVENT_USAGE_UPDATE, {}) == 1
        assert hub.subscriber_count == 1

    def test_failing_send_removed_and_others_served(self, hub):
        """Verify one failing subscriber does not stop the broadcast."""
        healthy = FakeTransport()
        hub.register(healthy)
        broken = FakeTransport()
        hub.register(broken)
        broken.fail_on_send = True
        other = FakeTransport()
        hub.register(other)

        assert hub.broadcast(EVENT_USAGE_UPDATE, {"new_records": 1}) == 2
        assert hub.subscriber_count == 2
        assert healthy.types()[-1] == EVENT_USAGE_UPDATE
        assert other.types()[-1] == EVENT_USAGE_UPDATE

    def test_failed_welcome_removes_subscriber(self, hub):
        hub.register(FakeTransport(fail_on_send=True))
        assert hub.subscriber_count == 0

    def test_failed_welcome_at_limit_keeps_oldest(self, hub):
        """Verify a newcomer dropped on welcome does not evict anyone."""
        transports = [FakeTransport() for _ in range(3)]
        for transport in transports:
            hub.register(transport)

        hub.register(FakeTransport(fail_on_send=True))

        assert hub.subscriber_count == 3
        assert not any(t.closed for t in transports)

    def test_broadcast_without_subscribers(self, hub):
        assert hub.broadcast(EVENT_USAGE_UPDATE, {}) == 0


class TestHeartbeat:
    """Test heartbeat events and sweeping."""

    def test_heartbeat_reports_count_and_sweeps(self, hub):
        first, second = FakeTransport(), FakeTransport()
        hub.register(first)
        hub.register(second)
        second.is_open = False

        hub.heartbeat()

        assert first.types()[-1] == EVENT_HEARTBEAT
        assert first.messages[-1]["data"]["client_count"] == 2
        assert hub.subscriber_count == 1

    def test_sweep_removes_only_closed(self, hub):
        open_transport, closed_transport = FakeTransport(), FakeTransport()
        hub.register(open_transport)
        hub.register(closed_transport)
        closed_transport.is_open = False

        assert hub.sweep() == 1
        assert hub.sweep() == 0
        assert hub.subscriber_count == 1

    def test_heartbeat_thread(self):
        hub = NotificationHub(heartbeat_interval=0.05)
        transport = FakeTransport()
        hub.register(transport)
        hub.start_heartbeat()
        try:
            deadline = time.monotonic() + 5
            while EVENT_HEARTBEAT not in transport.types() and time.monotonic() < deadline:
                time.sleep(0.01)
            assert EVENT_HEARTBEAT in transport.types()
        finally:
            hub.shutdown()


class TestInboundMessages:
    """Test the ping/subscribe protocol."""

    def test_ping_answered_with_pong(self, hub):
        transport = FakeTransport()
        subscriber_id = hub.register(transport)

        hub.handle_message(subscriber_id, json.dumps({"type": "ping"}))

        assert transport.types()[-1] == EVENT_PONG
        assert hub.subscriber_info()[0]["last_ping"] is not None

    def test_subscribe_echoes_channels(self, hub):
        transport = FakeTransport()
        subscriber_id = hub.register(transport)

        hub.handle_message(subscriber_id, json.dumps({"type": "subscribe", "channels": ["usage"]}))
        assert transport.messages[-1]["type"] == EVENT_SUBSCRIBED
        assert transport.messages[-1]["data"] == {"channels": ["usage"]}

        hub.handle_message(subscriber_id, json.dumps({"type": "subscribe"}))
        assert transport.messages[-1]["data"] == {"channels": ["usage-updates"]}

    @pytest.mark.parametrize("raw", ["not json", json.dumps({"type": "reboot"}), json.dumps([1, 2])])
    def test_other_messages_ignored(self, hub, raw):
        transport = FakeTransport()
        subscriber_id = hub.register(transport)

        hub.handle_message(subscriber_id, raw)

        assert transport.types() == [EVENT_CONNECTION]
        assert hub.subscriber_count == 1


class TestShutdown:
    """Test teardown."""

    def test_closes_all_and_is_idempotent(self, hub):
        transports = [FakeTransport() for _ in range(2)]
        for transport in transports:
            hub.register(transport)
        hub.start_heartbeat()

        hub.shutdown()
        hub.shutdown()

        assert hub.subscriber_count == 0
        assert all(transport.closed for transport in transports)
