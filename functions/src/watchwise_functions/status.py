"""Parent-side view of paired child devices."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel

from watchwise_shared import Collection, HeartbeatRecord, Relationship, utcnow
from watchwise_shared.errors import MalformedDocument
from watchwise_shared.firestore import parse_document
from watchwise_shared.store import DocumentStore

from .auth import require_caller

logger = logging.getLogger(__name__)

ONLINE_WINDOW = timedelta(minutes=5)
HEARTBEAT_OFFLINE_AFTER = timedelta(hours=24)


class DeviceStatus(StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"


class ChildDeviceStatus(BaseModel):
    """One paired child as shown to the parent."""

    relationship_id: str
    child_user_id: str
    child_name: str
    device_name: str
    paired_at: datetime
    last_sync_at: datetime | None = None
    last_heartbeat_at: datetime | None = None
    missed_heartbeats: int = 0
    status: DeviceStatus
    heartbeat_status: DeviceStatus


def device_status(last_seen: datetime | None, now: datetime, window: timedelta) -> DeviceStatus:
    if last_seen is not None and now - last_seen <= window:
        return DeviceStatus.ONLINE
    return DeviceStatus.OFFLINE


class StatusService:
    """Lists the children paired with a parent and their liveness."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock

    def list_children(self, parent_id: str | None) -> list[ChildDeviceStatus]:
        parent_id = require_caller(parent_id)
        now = self._clock()
        snapshots = self._store.query(
            Collection.RELATIONSHIPS,
            ("parentUserId", "==", parent_id),
            ("isActive", "==", True),
        )

        children = []
        for snap in snapshots:
            try:
                relationship = parse_document(Relationship, snap.data, snap.id)
            except MalformedDocument:
                logger.warning("Skipping malformed relationship %s", snap.id)
                continue
            last_heartbeat = self._last_heartbeat(relationship)
            children.append(
                ChildDeviceStatus(
                    relationship_id=snap.id,
                    child_user_id=relationship.child_user_id,
                    child_name=relationship.child_name,
                    device_name=relationship.device_name,
                    paired_at=relationship.created_at,
                    last_sync_at=relationship.last_sync_at,
                    last_heartbeat_at=last_heartbeat,
                    missed_heartbeats=relationship.missed_heartbeats,
                    status=device_status(relationship.last_sync_at, now, ONLINE_WINDOW),
                    heartbeat_status=device_status(
                        last_heartbeat, now, HEARTBEAT_OFFLINE_AFTER
                    ),
                )
            )
        children.sort(key=lambda child: child.paired_at, reverse=True)
        return children

    def _last_heartbeat(self, relationship: Relationship) -> datetime | None:
        data = self._store.get(Collection.HEARTBEATS, relationship.child_user_id)
        if data is None:
            return relationship.last_heartbeat_at
        try:
            record = parse_document(HeartbeatRecord, data, relationship.child_user_id)
        except MalformedDocument:
            logger.warning("Ignoring malformed heartbeat for %s", relationship.child_user_id)
            return relationship.last_heartbeat_at
        return record.timestamp
