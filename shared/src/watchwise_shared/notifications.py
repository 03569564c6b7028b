"""Notification events for the (external) delivery dispatcher.

Events are persisted to the notifications collection; push delivery reads
them from there. Events that must be emitted exactly once are staged inside
the transaction that causes them.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .firestore import model_to_firestore
from .models import Collection, Notification, NotificationType, utcnow
from .store import DocumentStore, Transaction

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Writes notification events to the store."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock

    def build(
        self,
        recipient_id: str,
        type: NotificationType,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> Notification:
        return Notification(
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            data=data or {},
            timestamp=self._clock(),
        )

    def emit(self, notification: Notification) -> str:
        """Persist a notification outside any transaction."""
        notification_id = self._store.add(
            Collection.NOTIFICATIONS, model_to_firestore(notification)
        )
        logger.info(
            "Sent %s notification to %s: %s",
            notification.type,
            notification.recipient_id,
            notification.title,
        )
        return notification_id

    def stage(self, transaction: Transaction, notification: Notification) -> str:
        """Add a notification to a transaction so it commits with it."""
        notification_id = transaction.create(
            Collection.NOTIFICATIONS, model_to_firestore(notification)
        )
        logger.debug(
            "Staged %s notification for %s", notification.type, notification.recipient_id
        )
        return notification_id
