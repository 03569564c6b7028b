"""Bedtime window evaluation."""

from datetime import datetime, time, timedelta

from watchwise_shared import BedtimeSettings


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def is_within_window(start: time, end: time, at: time) -> bool:
    """Whether ``at`` falls in [start, end), wrapping past midnight if start > end."""
    if start == end:
        return False
    if start < end:
        return start <= at < end
    return at >= start or at < end


def is_bedtime(settings: BedtimeSettings, at: datetime) -> bool:
    """Whether bedtime applies at the device-local time ``at``.

    After midnight in an overnight window, the day the window started decides
    whether it is enabled.
    """
    if not settings.is_enabled:
        return False
    start = parse_hhmm(settings.start_time)
    end = parse_hhmm(settings.end_time)
    now = at.time()
    if not is_within_window(start, end, now):
        return False

    window_day = at
    if start > end and now < end:
        window_day = at - timedelta(days=1)
    return window_day.isoweekday() in settings.enabled_days
