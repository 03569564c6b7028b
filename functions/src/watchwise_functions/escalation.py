"""Missed-heartbeat escalation levels and their messages."""

from datetime import datetime, timedelta
from enum import IntEnum


class EscalationLevel(IntEnum):
    """Notification ladder for consecutive missed heartbeats."""

    FIRST_MISS = 1
    SECOND_MISS = 2
    MULTIPLE_MISSES = 3
    EXTENDED_FAILURE = 5


def escalation_level(missed: int) -> EscalationLevel | None:
    """Map a missed-heartbeat count to its escalation level."""
    if missed <= 0:
        return None
    elif missed == 1:
        return EscalationLevel.FIRST_MISS
    elif missed == 2:
        return EscalationLevel.SECOND_MISS
    elif missed < EscalationLevel.EXTENDED_FAILURE:
        return EscalationLevel.MULTIPLE_MISSES
    return EscalationLevel.EXTENDED_FAILURE


def missed_heartbeat_count(
    last_heartbeat_at: datetime, now: datetime, interval: timedelta
) -> int:
    """Number of whole heartbeat intervals elapsed since the last heartbeat."""
    if now <= last_heartbeat_at:
        return 0
    return (now - last_heartbeat_at) // interval


def should_escalate(missed: int, stored: int) -> bool:
    """Only a strictly higher count is persisted, so the count never regresses."""
    return missed > stored


def should_notify(missed: int, stored: int) -> bool:
    """Notify once per level: a higher count within the same level is silent."""
    return (escalation_level(missed) or 0) > (escalation_level(stored) or 0)


def missed_heartbeat_message(missed: int, child_name: str) -> tuple[str, str]:
    """Return the (title, message) for a missed-heartbeat notification."""
    level = escalation_level(missed)
    if level == EscalationLevel.FIRST_MISS:
        return (
            "First Heartbeat Missed",
            f"{child_name}'s device missed its first heartbeat. This could "
            "indicate the app was closed or the device is having connectivity issues.",
        )
    elif level == EscalationLevel.SECOND_MISS:
        return (
            "Second Heartbeat Missed",
            f"{child_name}'s device has missed 2 consecutive heartbeats. The app "
            "may have been deleted or the device is turned off.",
        )
    elif level == EscalationLevel.MULTIPLE_MISSES:
        return (
            "Multiple Heartbeats Missed",
            f"{child_name}'s device has missed {missed} consecutive heartbeats. "
            "Please check if the WatchWise app is still installed and running.",
        )
    return (
        "Extended Heartbeat Failure",
        f"{child_name}'s device has been offline for over 5 hours. The WatchWise "
        "app may have been deleted or the device is experiencing issues.",
    )
