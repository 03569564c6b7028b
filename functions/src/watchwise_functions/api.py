"""Callable-function surface for the mobile apps.

Each operation takes the verified caller id and the request payload (a dict
with camelCase keys) and returns a JSON-serializable response. Failures are
returned as ``{"error": {"code": ..., "message": ...}}`` with the user-facing
message of the error.
"""

import logging
from collections.abc import Callable
from typing import Any

from watchwise_shared.errors import InvalidFormat, WatchWiseError
from watchwise_shared.firestore import to_camel

from .activity import ActivityTracker
from .pairing import PairingService
from .status import StatusService

logger = logging.getLogger(__name__)

Handler = Callable[[str | None, dict[str, Any]], dict[str, Any]]


def error_response(exc: WatchWiseError) -> dict[str, Any]:
    return {"error": {"code": exc.code, "message": exc.user_message}}


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidFormat(f"Missing required field {key!r}")
    return value.strip()


class WatchWiseApi:
    """Dispatches callable operations to the backend services."""

    def __init__(
        self,
        pairing: PairingService,
        activity: ActivityTracker,
        status: StatusService,
    ):
        self._pairing = pairing
        self._activity = activity
        self._status = status

    @property
    def operations(self) -> dict[str, Handler]:
        return {
            "generateCode": self.generate_code,
            "submitCode": self.submit_code,
            "unpair": self.unpair,
            "recordActivity": self.record_activity,
            "listChildren": self.list_children,
        }

    def call(self, operation: str, caller: str | None, data: dict[str, Any]) -> dict[str, Any]:
        """Run one operation, mapping errors to an error response."""
        handler = self.operations.get(operation)
        if handler is None:
            return error_response(InvalidFormat(f"Unknown operation {operation!r}"))
        try:
            return handler(caller, data)
        except WatchWiseError as e:
            logger.info("%s failed for %s: %s", operation, caller, e)
            return error_response(e)

    def generate_code(self, caller: str | None, data: dict[str, Any]) -> dict[str, Any]:
        issued = self._pairing.generate_code(
            caller,
            child_name=_require_str(data, "childName"),
            device_name=_require_str(data, "deviceName"),
            device_info=data.get("deviceInfo"),
        )
        return {"code": issued.code, "expiresAt": issued.expires_at.isoformat()}

    def submit_code(self, caller: str | None, data: dict[str, Any]) -> dict[str, Any]:
        result = self._pairing.pair(_require_str(data, "code"), caller)
        return {
            "success": True,
            "relationshipId": result.relationship_id,
            "childName": result.child_name,
            "deviceName": result.device_name,
        }

    def unpair(self, caller: str | None, data: dict[str, Any]) -> dict[str, Any]:
        self._pairing.unpair(_require_str(data, "relationshipId"), caller)
        return {"success": True}

    def record_activity(self, caller: str | None, data: dict[str, Any]) -> dict[str, Any]:
        applied = self._activity.record_activity(
            caller,
            _require_str(data, "activityType"),
            device_info=data.get("deviceInfo"),
        )
        return {"success": True, "applied": applied}

    def list_children(self, caller: str | None, data: dict[str, Any]) -> dict[str, Any]:
        children = self._status.list_children(caller)
        return {
            "children": [
                {to_camel(key): value for key, value in child.model_dump(mode="json").items()}
                for child in children
            ]
        }
