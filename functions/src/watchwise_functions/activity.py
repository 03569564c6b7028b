"""Heartbeat and activity tracking for child devices.

The tracker is the only writer of liveness fields. Every signal carries the
time it was sent; a signal older than what is already stored is a no-op, so
retried or reordered deliveries never move liveness backwards.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from watchwise_shared import ActivityType, Collection, HeartbeatRecord, Relationship, utcnow
from watchwise_shared.errors import InvalidFormat, MalformedDocument
from watchwise_shared.firestore import model_to_firestore, parse_document
from watchwise_shared.store import DocumentStore, Transaction

from .auth import require_caller

logger = logging.getLogger(__name__)

_INACTIVE_TYPES = {ActivityType.APP_SHUTDOWN, ActivityType.MONITORING_STOPPED}

# Signals that restart the heartbeat cycle, ending any graceful closure.
_LIVENESS_TYPES = {
    ActivityType.HEARTBEAT,
    ActivityType.APP_OPENED,
    ActivityType.APP_ACTIVE,
    ActivityType.MONITORING_STARTED,
}


def parse_activity_type(value: str) -> ActivityType:
    try:
        return ActivityType(value)
    except ValueError as e:
        raise InvalidFormat(f"Unknown activity type: {value!r}") from e


def _is_newer(at: datetime, stored: datetime | None) -> bool:
    return stored is None or at > stored


class ActivityTracker:
    """Records heartbeats and app lifecycle signals from child devices."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock

    def record_activity(
        self,
        caller: str | None,
        activity_type: str,
        device_info: dict[str, Any] | None = None,
        sent_at: datetime | None = None,
    ) -> bool:
        """Apply one activity signal.

        Returns False when the signal is older than the stored heartbeat and
        was ignored.
        """
        child_user_id = require_caller(caller)
        activity = parse_activity_type(activity_type)

        def record(transaction: Transaction) -> bool:
            at = sent_at or self._clock()

            heartbeat_data = transaction.get(Collection.HEARTBEATS, child_user_id)
            profile_data = transaction.get(Collection.USERS, child_user_id) or {}
            relationships = transaction.query(
                Collection.RELATIONSHIPS,
                ("childUserId", "==", child_user_id),
                ("isActive", "==", True),
            )

            if heartbeat_data is not None:
                try:
                    previous = parse_document(HeartbeatRecord, heartbeat_data, child_user_id)
                except MalformedDocument:
                    logger.warning("Replacing malformed heartbeat record for %s", child_user_id)
                else:
                    if not _is_newer(at, previous.timestamp):
                        return False

            record = HeartbeatRecord(
                child_user_id=child_user_id,
                timestamp=at,
                activity_type=activity,
                device_info=device_info,
                is_active=activity not in _INACTIVE_TYPES,
            )
            transaction.set(Collection.HEARTBEATS, child_user_id, model_to_firestore(record))

            profile: dict[str, Any] = {"lastActivityType": str(activity)}
            if _is_newer(at, profile_data.get("lastActiveAt")):
                profile["lastActiveAt"] = at
            if device_info is not None:
                profile["deviceInfo"] = device_info
            if activity == ActivityType.APP_SHUTDOWN:
                profile["lastGracefulShutdown"] = at
            transaction.set(Collection.USERS, child_user_id, profile, merge=True)

            for snap in relationships:
                try:
                    relationship = parse_document(Relationship, snap.data, snap.id)
                except MalformedDocument:
                    logger.warning("Skipping malformed relationship %s", snap.id)
                    continue
                if not _is_newer(at, relationship.last_sync_at):
                    continue
                transaction.update(
                    Collection.RELATIONSHIPS,
                    snap.id,
                    _relationship_updates(relationship, activity, at, device_info),
                )
            return True

        applied = self._store.run_transaction(record)
        if applied:
            logger.debug("Recorded %s for %s", activity, child_user_id)
        else:
            logger.info("Ignored stale %s for %s", activity, child_user_id)
        return applied


def _relationship_updates(
    relationship: Relationship,
    activity: ActivityType,
    at: datetime,
    device_info: dict[str, Any] | None,
) -> dict[str, Any]:
    updates: dict[str, Any] = {"lastSyncAt": at}
    if device_info is not None:
        updates["childDeviceInfo"] = device_info

    if activity == ActivityType.APP_SHUTDOWN:
        updates["isNormalClosure"] = True
        updates["missedHeartbeats"] = 0
        updates["lastGracefulShutdown"] = at
    elif activity in _LIVENESS_TYPES:
        if _is_newer(at, relationship.last_heartbeat_at):
            updates["lastHeartbeatAt"] = at
        updates["missedHeartbeats"] = 0
        updates["isNormalClosure"] = False
    return updates
