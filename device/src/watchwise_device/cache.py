"""Local cache for offline enforcement.

Mirrors the parent's app restrictions and bedtime settings so the device
keeps enforcing them without a connection. Restriction entries are only
replaced by a copy at least as new as the cached one.
"""

import json
import logging
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

from watchwise_shared import AppRestriction, BedtimeSettings, utcnow

logger = logging.getLogger(__name__)


class CachedRestrictions(BaseModel):
    """Cached restrictions keyed by bundle id."""

    items: dict[str, AppRestriction] = Field(default_factory=dict)
    synced_at: datetime | None = None


class CachedBedtime(BaseModel):
    settings: BedtimeSettings
    cached_at: datetime


class BedtimeEnforcement(BaseModel):
    """What the enforcement layer applies while bedtime is on."""

    is_active: bool = True
    start_time: str
    end_time: str
    applied_at: datetime

    def same_window(self, other: "BedtimeEnforcement") -> bool:
        return (self.start_time, self.end_time) == (other.start_time, other.end_time)


def _write_atomic(path: Path, text: str) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text)
    tmp.replace(path)


class LocalCache:
    """Manages local cache for offline operation."""

    def __init__(self, cache_dir: Path):
        self._cache_dir = cache_dir
        self._cache_dir.mkdir(parents=True, exist_ok=True)

    @property
    def _restrictions_path(self) -> Path:
        return self._cache_dir / "restrictions.json"

    @property
    def _bedtime_path(self) -> Path:
        return self._cache_dir / "bedtime.json"

    @property
    def _enforcement_path(self) -> Path:
        return self._cache_dir / "bedtime_enforcement.json"

    @property
    def _known_apps_path(self) -> Path:
        return self._cache_dir / "known_apps.json"

    def _load_restrictions(self) -> CachedRestrictions:
        if not self._restrictions_path.exists():
            return CachedRestrictions()
        try:
            return CachedRestrictions.model_validate_json(self._restrictions_path.read_text())
        except (OSError, ValueError):
            logger.exception("Failed to load restrictions cache")
            return CachedRestrictions()

    def _save_restrictions(self, cached: CachedRestrictions) -> None:
        _write_atomic(self._restrictions_path, cached.model_dump_json(indent=2))

    def load_restrictions(self) -> dict[str, AppRestriction]:
        return self._load_restrictions().items

    def get_restriction(self, bundle_id: str) -> AppRestriction | None:
        return self._load_restrictions().items.get(bundle_id)

    def put_restriction(self, restriction: AppRestriction) -> bool:
        """Cache a restriction unless the cached copy is newer.

        Returns True if the cache was updated.
        """
        cached = self._load_restrictions()
        current = cached.items.get(restriction.bundle_id)
        if (
            current is not None
            and current.last_updated is not None
            and restriction.last_updated is not None
            and restriction.last_updated < current.last_updated
        ):
            logger.debug("Ignoring stale restriction for %s", restriction.bundle_id)
            return False
        cached.items[restriction.bundle_id] = restriction
        self._save_restrictions(cached)
        return True

    def remove_restriction(self, bundle_id: str) -> None:
        cached = self._load_restrictions()
        if cached.items.pop(bundle_id, None) is not None:
            self._save_restrictions(cached)

    def replace_restrictions(self, restrictions: list[AppRestriction]) -> None:
        """Replace the whole mirror with a fresh pull from the store."""
        cached = CachedRestrictions(
            items={r.bundle_id: r for r in restrictions}, synced_at=utcnow()
        )
        self._save_restrictions(cached)
        logger.debug("Cached %d restrictions", len(restrictions))

    def last_restriction_sync(self) -> datetime | None:
        return self._load_restrictions().synced_at

    def save_bedtime(self, settings: BedtimeSettings | None) -> None:
        """Cache bedtime settings; None removes them."""
        if settings is None:
            self._bedtime_path.unlink(missing_ok=True)
            return
        cached = CachedBedtime(settings=settings, cached_at=utcnow())
        _write_atomic(self._bedtime_path, cached.model_dump_json(indent=2))

    def load_bedtime(self) -> BedtimeSettings | None:
        """Load cached bedtime settings. Returns None if no cache exists."""
        if not self._bedtime_path.exists():
            return None
        try:
            return CachedBedtime.model_validate_json(self._bedtime_path.read_text()).settings
        except (OSError, ValueError):
            logger.exception("Failed to load bedtime cache")
            return None

    def apply_bedtime_enforcement(self, enforcement: BedtimeEnforcement) -> bool:
        """Store the bedtime payload. Re-applying the same window is a no-op."""
        current = self.load_bedtime_enforcement()
        if current is not None and current.same_window(enforcement):
            return False
        _write_atomic(self._enforcement_path, enforcement.model_dump_json(indent=2))
        logger.info(
            "Bedtime enforcement on (%s-%s)", enforcement.start_time, enforcement.end_time
        )
        return True

    def clear_bedtime_enforcement(self) -> bool:
        if not self._enforcement_path.exists():
            return False
        self._enforcement_path.unlink()
        logger.info("Bedtime enforcement off")
        return True

    def load_bedtime_enforcement(self) -> BedtimeEnforcement | None:
        if not self._enforcement_path.exists():
            return None
        try:
            return BedtimeEnforcement.model_validate_json(self._enforcement_path.read_text())
        except (OSError, ValueError):
            logger.exception("Failed to load bedtime enforcement cache")
            return None

    def load_known_apps(self) -> set[str] | None:
        """Bundle ids seen on this device. None before the first scan."""
        if not self._known_apps_path.exists():
            return None
        try:
            return set(json.loads(self._known_apps_path.read_text()))
        except (OSError, ValueError):
            logger.exception("Failed to load known apps cache")
            return None

    def save_known_apps(self, bundle_ids: set[str]) -> None:
        _write_atomic(self._known_apps_path, json.dumps(sorted(bundle_ids), indent=2))
