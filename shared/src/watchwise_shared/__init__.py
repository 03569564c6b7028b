from .models import (
    ActivityType,
    AppRestriction,
    AppUsageSample,
    BedtimeSettings,
    Collection,
    DeletedApp,
    DeletionResolution,
    DetectionResolution,
    HeartbeatRecord,
    NewAppDetection,
    Notification,
    NotificationType,
    PairingCode,
    Relationship,
    UserProfile,
    UserType,
    utcnow,
)

__all__ = [
    "ActivityType",
    "AppRestriction",
    "AppUsageSample",
    "BedtimeSettings",
    "Collection",
    "DeletedApp",
    "DeletionResolution",
    "DetectionResolution",
    "HeartbeatRecord",
    "NewAppDetection",
    "Notification",
    "NotificationType",
    "PairingCode",
    "Relationship",
    "UserProfile",
    "UserType",
    "utcnow",
]
