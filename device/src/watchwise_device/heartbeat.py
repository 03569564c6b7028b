"""Fire-and-forget liveness signals from the child device."""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from watchwise_shared import ActivityType, utcnow
from watchwise_shared.errors import WatchWiseError

logger = logging.getLogger(__name__)


class ActivityRecorder(Protocol):
    def __call__(
        self,
        caller: str | None,
        activity_type: str,
        device_info: dict[str, Any] | None = None,
        sent_at: datetime | None = None,
    ) -> bool: ...


class HeartbeatSender:
    """Sends activity signals and tracks whether the last one got through.

    A failed send is logged and dropped; the next scheduled heartbeat
    supersedes it.
    """

    def __init__(
        self,
        record: ActivityRecorder,
        user_id: str,
        device_info: dict[str, Any] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._record = record
        self._user_id = user_id
        self._device_info = device_info
        self._clock = clock
        self.is_online = False
        self.last_success: datetime | None = None
        self.failures = 0

    def send(self, activity_type: ActivityType = ActivityType.HEARTBEAT) -> bool:
        sent_at = self._clock()
        try:
            self._record(
                self._user_id,
                str(activity_type),
                device_info=self._device_info,
                sent_at=sent_at,
            )
        except WatchWiseError as e:
            self.failures += 1
            if self.is_online:
                logger.warning("Lost connection, %s not delivered: %s", activity_type, e)
            else:
                logger.debug("Still offline, %s not delivered: %s", activity_type, e)
            self.is_online = False
            return False

        if not self.is_online:
            logger.info("Connected, %s delivered", activity_type)
        self.is_online = True
        self.last_success = sent_at
        return True

    def heartbeat(self) -> bool:
        return self.send(ActivityType.HEARTBEAT)
