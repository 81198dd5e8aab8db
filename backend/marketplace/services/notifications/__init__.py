"""Notification persistence, bot delivery, and inbox services."""

from marketplace.services.notifications.dispatcher import NotificationDispatcher
from marketplace.services.notifications.queue import NotificationEvent, QueuedTask

__all__ = ["NotificationDispatcher", "NotificationEvent", "QueuedTask"]
