"""Firestore data models for WatchWise.

These models define the schema for all Firestore collections shared by the
backend functions and the device clients. Stored field names are camelCase;
see `watchwise_shared.firestore` for the conversion.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field

SCHEMA_VERSION = 1

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


def utcnow() -> datetime:
    return datetime.now(UTC)


class Collection(StrEnum):
    PAIRING_REQUESTS = "pairingRequests"
    RELATIONSHIPS = "parentChildRelationships"
    HEARTBEATS = "heartbeats"
    USERS = "users"
    APP_RESTRICTIONS = "appRestrictions"
    BEDTIME_SETTINGS = "bedtimeSettings"
    NEW_APP_DETECTIONS = "newAppDetections"
    DELETED_APPS = "deletedApps"
    NOTIFICATIONS = "notifications"


class UserType(StrEnum):
    PARENT = "parent"
    CHILD = "child"


class ActivityType(StrEnum):
    APP_OPENED = "app_opened"
    APP_ACTIVE = "app_active"
    APP_BACKGROUND = "app_background"
    APP_SHUTDOWN = "app_shutdown"
    HEARTBEAT = "heartbeat"
    MONITORING_STARTED = "monitoring_started"
    MONITORING_STOPPED = "monitoring_stopped"


class NotificationType(StrEnum):
    INACTIVITY_ALERT = "inactivity_alert"
    MISSED_HEARTBEAT = "missed_heartbeat"
    DEVICE_UNLINKED = "device_unlinked"
    APP_LIMIT_EXCEEDED = "app_limit_exceeded"
    NEW_APP_DETECTED = "new_app_detected"


class DetectionResolution(StrEnum):
    MONITORED = "monitored"
    IGNORED = "ignored"


class DeletionResolution(StrEnum):
    RESTORED = "restored"
    REMOVED = "removed"


class Document(BaseModel):
    """Base for stored documents. Unknown fields are dropped on parse."""

    model_config = ConfigDict(extra="ignore")

    schema_version: int = SCHEMA_VERSION


class PairingCode(Document):
    """Firestore: pairingRequests/{requestId}"""

    pair_code: Annotated[str, Field(pattern=r"^\d{6}$")]
    child_user_id: str
    child_name: str
    device_name: str
    created_at: datetime
    expires_at: datetime
    is_active: bool = False  # true once consumed by a parent
    is_expired: bool = False
    parent_user_id: str | None = None
    paired_at: datetime | None = None
    device_info: dict[str, Any] | None = None

    def is_past_deadline(self, now: datetime) -> bool:
        return self.expires_at < now


class Relationship(Document):
    """Firestore: parentChildRelationships/{relationshipId}"""

    parent_user_id: str
    child_user_id: str
    child_name: str
    device_name: str
    pairing_code: str
    created_at: datetime
    is_active: bool = True
    last_sync_at: datetime | None = None
    last_heartbeat_at: datetime | None = None
    missed_heartbeats: Annotated[int, Field(ge=0)] = 0
    is_normal_closure: bool = False
    last_graceful_shutdown: datetime | None = None
    device_info: dict[str, Any] | None = None
    child_device_info: dict[str, Any] | None = None
    unlinked_at: datetime | None = None
    unlinked_by: str | None = None


class HeartbeatRecord(Document):
    """Firestore: heartbeats/{childUserId}"""

    child_user_id: str
    timestamp: datetime
    activity_type: ActivityType = ActivityType.HEARTBEAT
    device_info: dict[str, Any] | None = None
    is_active: bool = True


class UserProfile(Document):
    """Firestore: users/{userId}

    Only the fields this subsystem reads or writes.
    """

    user_type: UserType | None = None
    display_name: str | None = None
    is_device_paired: bool = False
    paired_with_parent: str | None = None
    last_active_at: datetime | None = None
    last_activity_type: ActivityType | None = None


class AppRestriction(Document):
    """Firestore: appRestrictions/{parentId}_{bundleId}"""

    bundle_id: str
    parent_id: str
    time_limit: Annotated[float, Field(ge=0)] = 0.0  # seconds, 0 = no limit
    is_disabled: bool = False
    daily_usage: Annotated[float, Field(ge=0)] = 0.0  # seconds
    last_reset_date: str  # YYYY-MM-DD, device-local
    limit_exceeded_on: str | None = None
    last_updated: datetime | None = None

    @staticmethod
    def document_id(parent_id: str, bundle_id: str) -> str:
        return f"{parent_id}_{bundle_id}"

    @property
    def limit_reached(self) -> bool:
        return self.time_limit > 0 and self.daily_usage >= self.time_limit

    @property
    def usage_percentage(self) -> float:
        if self.time_limit <= 0:
            return 0.0
        return min(self.daily_usage / self.time_limit, 1.0)


class BedtimeSettings(Document):
    """Firestore: bedtimeSettings/{userId}

    Days are ISO weekdays, 1 = Monday through 7 = Sunday.
    """

    is_enabled: bool = False
    start_time: Annotated[str, Field(pattern=HHMM_PATTERN)] = "21:00"
    end_time: Annotated[str, Field(pattern=HHMM_PATTERN)] = "07:00"
    enabled_days: list[Annotated[int, Field(ge=1, le=7)]] = Field(
        default_factory=lambda: [1, 2, 3, 4, 5, 6, 7]
    )
    last_updated: datetime | None = None


class NewAppDetection(Document):
    """Firestore: newAppDetections/{parentId}_{bundleId}"""

    bundle_id: str
    app_name: str
    detected_at: datetime
    parent_id: str
    device_id: str | None = None
    is_processed: bool = False
    processed_at: datetime | None = None
    resolution: DetectionResolution | None = None

    @staticmethod
    def document_id(parent_id: str, bundle_id: str) -> str:
        return f"{parent_id}_{bundle_id}"


class DeletedApp(Document):
    """Firestore: deletedApps/{parentId}_{bundleId}"""

    bundle_id: str
    app_name: str
    deleted_at: datetime
    parent_id: str
    device_id: str | None = None
    was_monitored: bool = False
    is_processed: bool = False
    processed_at: datetime | None = None
    resolution: DeletionResolution | None = None

    @staticmethod
    def document_id(parent_id: str, bundle_id: str) -> str:
        return f"{parent_id}_{bundle_id}"


class Notification(Document):
    """Firestore: notifications/{notificationId}"""

    recipient_id: str
    type: NotificationType
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    is_read: bool = False


class AppUsageSample(BaseModel):
    """One usage measurement reported by the device's usage source."""

    bundle_id: str
    app_name: str | None = None
    duration: Annotated[float, Field(ge=0)]  # seconds
    timestamp: datetime
