"""Tests for notification events."""

import pytest

from watchwise_shared import Collection, Notification, NotificationType
from watchwise_shared.notifications import NotificationDispatcher
from watchwise_shared.store import MemoryStore, Transaction


def _build(dispatcher: NotificationDispatcher) -> Notification:
    return dispatcher.build(
        recipient_id="parent1",
        type=NotificationType.DEVICE_UNLINKED,
        title="Device Unlinked",
        message="Sam's device has been unlinked from your account.",
    )


def test_emit_persists_event(
    dispatcher: NotificationDispatcher, store: MemoryStore, clock
) -> None:
    notification_id = dispatcher.emit(_build(dispatcher))

    data = store.get(Collection.NOTIFICATIONS, notification_id)
    assert data is not None
    assert data["recipientId"] == "parent1"
    assert data["type"] == "device_unlinked"
    assert data["timestamp"] == clock.now
    assert data["isRead"] is False
    assert data["data"] == {}


def test_staged_event_commits_with_transaction(
    dispatcher: NotificationDispatcher, store: MemoryStore
) -> None:
    def stage(transaction: Transaction) -> str:
        return dispatcher.stage(transaction, _build(dispatcher))

    notification_id = store.run_transaction(stage)

    assert store.get(Collection.NOTIFICATIONS, notification_id) is not None


def test_staged_event_discarded_on_abort(
    dispatcher: NotificationDispatcher, store: MemoryStore
) -> None:
    def stage_then_fail(transaction: Transaction) -> None:
        dispatcher.stage(transaction, _build(dispatcher))
        raise RuntimeError("abort")

    with pytest.raises(RuntimeError):
        store.run_transaction(stage_then_fail)

    assert store.query(Collection.NOTIFICATIONS) == []
