"""
Fan-out of usage events to connected subscribers.

The hub is transport agnostic: anything with send(), close() and an
is_open property can be registered, e.g. a thin adapter around a
websocket connection.
"""

import itertools
import json
import logging
import math
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

EVENT_CONNECTION = "connection"
EVENT_USAGE_UPDATE = "usage-update"
EVENT_COLLECTION_ERROR = "collection-error"
EVENT_HEARTBEAT = "heartbeat"
EVENT_PONG = "pong"
EVENT_SUBSCRIBED = "subscribed"

DEFAULT_CHANNELS = ["usage-updates"]
DEFAULT_MAX_SUBSCRIBERS = 50
DEFAULT_HEARTBEAT_INTERVAL = 30.0


class SubscriberConnectionError(Exception):
    """Raised by transports when a message cannot be delivered."""


class Transport(Protocol):
    """Bidirectional message connection to one subscriber."""

    @property
    def is_open(self) -> bool: ...

    def send(self, message: str) -> None: ...

    def close(self) -> None: ...


@dataclass
class Subscriber:
    """A registered subscriber connection."""
    id: str
    transport: Transport
    connected_at: datetime
    last_ping: Optional[datetime] = None
    # Tie-breaker for subscribers connected within the same clock tick
    sequence: int = field(default=0, repr=False)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class NotificationHub:
    """Registry of live subscribers with broadcast and heartbeat."""

    def __init__(
        self,
        max_subscribers: int = DEFAULT_MAX_SUBSCRIBERS,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize an empty hub.

        Args:
            max_subscribers: Live subscriber limit; the oldest is evicted
                when a registration exceeds it
            heartbeat_interval: Seconds between heartbeat events
            clock: Source of timestamps, replaceable in tests

        Raises:
            ValueError: If max_subscribers or heartbeat_interval is not positive
        """
        if max_subscribers <= 0:
            raise ValueError("max_subscribers must be > 0")
        if not math.isfinite(heartbeat_interval) or heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be > 0")

        self.max_subscribers = max_subscribers
        self.heartbeat_interval = heartbeat_interval
        self._clock = clock
        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = threading.RLock()
        self._sequence = itertools.count()
        self._heartbeat_stop = threading.Event()
        self._heartbeat_thread: Optional[threading.Thread] = None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscriber_info(self) -> List[Dict[str, Any]]:
        """Describe live subscribers for status reporting."""
        with self._lock:
            return [
                {
                    "id": sub.id,
                    "connected_at": sub.connected_at,
                    "last_ping": sub.last_ping,
                }
                for sub in self._subscribers.values()
            ]

    def _message(self, event_type: str, data: Any) -> str:
        return json.dumps(
            {
                "type": event_type,
                "data": data,
                "timestamp": self._clock().isoformat(),
            },
            default=_json_default,
        )

    def register(self, transport: Transport) -> str:
        """Register a connection and greet it.

        If the registry then holds more than max_subscribers, the oldest
        connected subscriber is closed and removed.

        Returns:
            The new subscriber id
        """
        subscriber_id = f"client_{uuid.uuid4().hex[:12]}"
        subscriber = Subscriber(
            id=subscriber_id,
            transport=transport,
            connected_at=self._clock(),
            sequence=next(self._sequence),
        )
        with self._lock:
            self._subscribers[subscriber_id] = subscriber
            count = len(self._subscribers)
        logger.info("Subscriber connected: %s (%d connected)", subscriber_id, count)

        self.send_to(subscriber_id, EVENT_CONNECTION, {
            "message": "Connected to AI Carbon Monitor",
            "client_id": subscriber_id,
        })

        with self._lock:
            count = len(self._subscribers)
        if count > self.max_subscribers:
            logger.warning("Too many subscribers (%d), closing oldest", count)
            self._evict_oldest()
        return subscriber_id

    def _evict_oldest(self) -> None:
        with self._lock:
            if not self._subscribers:
                return
            oldest = min(
                self._subscribers.values(),
                key=lambda sub: (sub.connected_at, sub.sequence),
            )
            del self._subscribers[oldest.id]
        _close_quietly(oldest)
        logger.info("Disconnected oldest subscriber: %s", oldest.id)

    def unregister(self, subscriber_id: str) -> None:
        """Forget a subscriber whose transport closed or failed."""
        with self._lock:
            removed = self._subscribers.pop(subscriber_id, None)
            count = len(self._subscribers)
        if removed is not None:
            logger.info("Subscriber disconnected: %s (%d connected)", subscriber_id, count)

    def send_to(self, subscriber_id: str, event_type: str, data: Any) -> bool:
        """Send one event to a single subscriber.

        Returns:
            True if the message was handed to an open transport
        """
        with self._lock:
            subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None or not subscriber.transport.is_open:
            return False

        try:
            subscriber.transport.send(self._message(event_type, data))
        except Exception as e:
            logger.error("Failed to send message to subscriber %s: %s", subscriber_id, e)
            self.unregister(subscriber_id)
            return False
        return True

    def broadcast(self, event_type: str, data: Any) -> int:
        """Send an event to every open subscriber.

        Subscribers whose transport is closed or whose send fails are
        removed from the registry.

        Returns:
            Number of subscribers the event was delivered to
        """
        message = self._message(event_type, data)
        with self._lock:
            subscribers = list(self._subscribers.values())

        sent_count = 0
        dead = []
        for subscriber in subscribers:
            if not subscriber.transport.is_open:
                dead.append(subscriber.id)
                continue
            try:
                subscriber.transport.send(message)
                sent_count += 1
            except Exception as e:
                logger.error("Failed to broadcast to subscriber %s: %s", subscriber.id, e)
                dead.append(subscriber.id)

        if dead:
            with self._lock:
                for subscriber_id in dead:
                    self._subscribers.pop(subscriber_id, None)

        logger.debug("Broadcasted %s to %d subscribers", event_type, sent_count)
        return sent_count

    def sweep(self) -> int:
        """Remove subscribers whose transport is no longer open.

        Returns:
            Number of subscribers removed
        """
        with self._lock:
            dead = [
                subscriber_id
                for subscriber_id, sub in self._subscribers.items()
                if not sub.transport.is_open
            ]
            for subscriber_id in dead:
                del self._subscribers[subscriber_id]

        if dead:
            logger.debug("Cleaned up %d dead subscriber connections", len(dead))
        return len(dead)

    def heartbeat(self) -> None:
        """Broadcast liveness with the subscriber count, then sweep."""
        self.broadcast(EVENT_HEARTBEAT, {
            "timestamp": self._clock().isoformat(),
            "client_count": self.subscriber_count,
        })
        self.sweep()

    def start_heartbeat(self) -> None:
        """Start the periodic heartbeat thread if not already running."""
        if self._heartbeat_thread is not None:
            return
        self._heartbeat_stop.clear()
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            name="notification-heartbeat",
            daemon=True,
        )
        self._heartbeat_thread.start()
        logger.info("Heartbeat started (%.0fs interval)", self.heartbeat_interval)

    def _heartbeat_loop(self) -> None:
        while not self._heartbeat_stop.wait(self.heartbeat_interval):
            try:
                self.heartbeat()
            except Exception:
                logger.exception("Heartbeat failed")

    def handle_message(self, subscriber_id: str, raw: str) -> None:
        """Answer an inbound subscriber message.

        Only 'ping' and 'subscribe' are understood; anything else is logged
        and ignored.
        """
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Invalid message from subscriber %s: %s", subscriber_id, e)
            return
        if not isinstance(message, dict):
            logger.warning("Invalid message from subscriber %s: not an object", subscriber_id)
            return

        logger.debug("Message from subscriber %s: %s", subscriber_id, message)
        message_type = message.get("type")

        if message_type == "ping":
            with self._lock:
                subscriber = self._subscribers.get(subscriber_id)
                if subscriber is not None:
                    subscriber.last_ping = self._clock()
            self.send_to(subscriber_id, EVENT_PONG, {
                "timestamp": self._clock().isoformat(),
            })
        elif message_type == "subscribe":
            self.send_to(subscriber_id, EVENT_SUBSCRIBED, {
                "channels": message.get("channels") or list(DEFAULT_CHANNELS),
            })
        else:
            logger.warning(
                "Unknown message type from subscriber %s: %s",
                subscriber_id, message_type
            )

    def shutdown(self) -> None:
        """Stop the heartbeat and close every connection. Safe to repeat."""
        self._heartbeat_stop.set()
        thread = self._heartbeat_thread
        self._heartbeat_thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.heartbeat_interval)

        with self._lock:
            subscribers = list(self._subscribers.values())
            self._subscribers.clear()
        for subscriber in subscribers:
            _close_quietly(subscriber)
        logger.info("Notification hub shutdown complete")


def _close_quietly(subscriber: Subscriber) -> None:
    try:
        subscriber.transport.close()
    except Exception as e:
        logger.debug("Error closing subscriber %s: %s", subscriber.id, e)
