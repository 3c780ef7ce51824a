"""
Outbound notification delivery.

Workflows and the action executor hand finished Notification records to a
Notifier; channel fan-out (in-app, email, SMS) belongs to the platform.
"""

import logging
import threading
from typing import Protocol, runtime_checkable

from propagent.schemas.domain import Notification

logger = logging.getLogger(__name__)


@runtime_checkable
class Notifier(Protocol):
    """
    Protocol for notification delivery.

    Implementations should return once the notification is accepted for
    delivery; failures raise and are handled by the calling workflow.
    """

    def deliver(self, notification: Notification) -> None:
        ...


class InMemoryNotifier:
    """Collects delivered notifications, for tests and dry runs."""

    def __init__(self):
        self.sent: list[Notification] = []
        self._lock = threading.Lock()

    def deliver(self, notification: Notification) -> None:
        with self._lock:
            self.sent.append(notification)

    def for_user(self, user_id: str) -> list[Notification]:
        with self._lock:
            return [n for n in self.sent if n.user_id == user_id]


class LoggingNotifier:
    """Writes each notification to the log instead of delivering it."""

    def deliver(self, notification: Notification) -> None:
        logger.info(
            f"Notification for {notification.user_id}: {notification.title}",
            extra={"event": "notification", "metadata": notification.to_dict()},
        )
