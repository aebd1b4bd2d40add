"""
Subscriber notifications for AI Carbon Monitor.

Pushes usage updates and collection errors to connected observers.
"""

from .hub import NotificationHub, SubscriberConnectionError, Transport

__all__ = ["NotificationHub", "SubscriberConnectionError", "Transport"]
