"""Configuration for the child device agent."""

from datetime import tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo

from pydantic import BaseModel


class DeviceConfig(BaseModel):
    """Local configuration for this device."""

    user_id: str
    parent_id: str
    device_id: str
    device_name: str
    child_name: str
    firebase_credentials_path: Path | None = None
    cache_dir: Path = Path.home() / ".watchwise" / "cache"
    timezone: str | None = None  # IANA name; system local time when unset
    heartbeat_interval_seconds: int = 900
    bedtime_check_interval_seconds: int = 60
    restriction_refresh_seconds: int = 60
    new_app_check_interval_seconds: int = 300
    usage_spool_path: Path = Path.home() / ".watchwise" / "usage.jsonl"
    installed_apps_path: Path | None = None  # JSON list of bundle ids, kept by the platform
    deleted_app_check_interval_seconds: int = 600

    @property
    def tz(self) -> tzinfo | None:
        return ZoneInfo(self.timezone) if self.timezone else None

    @property
    def device_info(self) -> dict[str, str]:
        return {"deviceId": self.device_id, "deviceName": self.device_name}


def load_config(path: Path) -> DeviceConfig:
    """Load configuration from a JSON file."""
    return DeviceConfig.model_validate_json(path.read_text())
