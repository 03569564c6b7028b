"""Detection of apps removed from the child's device.

The platform layer keeps a JSON list of installed bundle ids. Apps that were
known on this device but are missing from that list are recorded for the
parent, who either restores them to monitoring or drops their restriction.
"""

import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path

from watchwise_shared import Collection, DeletedApp, DeletionResolution, utcnow
from watchwise_shared.errors import MalformedDocument, NotFound
from watchwise_shared.firestore import model_to_firestore, parse_document
from watchwise_shared.store import DocumentStore, Transaction

from .apps import app_display_name
from .cache import LocalCache
from .new_apps import DEFAULT_TIME_LIMIT
from .restrictions import RestrictionSynchronizer

logger = logging.getLogger(__name__)


def load_installed_apps(path: Path) -> set[str] | None:
    """Read the installed-app inventory. None when it is missing or unreadable."""
    if not path.exists():
        return None
    try:
        return set(json.loads(path.read_text()))
    except (OSError, ValueError, TypeError):
        logger.exception("Failed to read installed apps from %s", path)
        return None


class DeletedAppDetector:
    """Compares the installed apps with the apps already seen on this device."""

    def __init__(
        self,
        store: DocumentStore,
        cache: LocalCache,
        parent_id: str,
        device_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._cache = cache
        self._parent_id = parent_id
        self._device_id = device_id
        self._clock = clock

    def _doc_id(self, bundle_id: str) -> str:
        return DeletedApp.document_id(self._parent_id, bundle_id)

    def check_for_deleted_apps(self, installed: Iterable[str]) -> list[DeletedApp]:
        """Record known apps that are no longer installed.

        Deleted apps leave the known set, so a reinstall is picked up again by
        new app detection.
        """
        installed = set(installed)
        known = self._cache.load_known_apps()
        if known is None:
            self._cache.save_known_apps(installed)
            logger.info("Recorded %d installed apps as the baseline", len(installed))
            return []

        deleted = []
        for bundle_id in sorted(known - installed):
            record = self._record_deletion(bundle_id)
            if record is not None:
                deleted.append(record)
            known.discard(bundle_id)
        self._cache.save_known_apps(known)
        return deleted

    def _record_deletion(self, bundle_id: str) -> DeletedApp | None:
        doc_id = self._doc_id(bundle_id)
        was_monitored = self._cache.get_restriction(bundle_id) is not None

        def record(transaction: Transaction) -> DeletedApp | None:
            data = transaction.get(Collection.DELETED_APPS, doc_id)
            if data is not None:
                try:
                    existing = parse_document(DeletedApp, data, doc_id)
                except MalformedDocument:
                    logger.warning("Replacing malformed deletion record %s", doc_id)
                else:
                    if not existing.is_processed:
                        return None
            deleted = DeletedApp(
                bundle_id=bundle_id,
                app_name=app_display_name(bundle_id),
                deleted_at=self._clock(),
                parent_id=self._parent_id,
                device_id=self._device_id,
                was_monitored=was_monitored,
            )
            transaction.set(Collection.DELETED_APPS, doc_id, model_to_firestore(deleted))
            return deleted

        deleted = self._store.run_transaction(record)
        if deleted is not None:
            logger.info("App deleted: %s (%s)", deleted.app_name, bundle_id)
        return deleted

    def pending(self) -> list[DeletedApp]:
        """Deletions the parent has not acted on yet, newest first."""
        snapshots = self._store.query(
            Collection.DELETED_APPS,
            ("parentId", "==", self._parent_id),
            ("isProcessed", "==", False),
        )
        deleted = []
        for snap in snapshots:
            try:
                deleted.append(parse_document(DeletedApp, snap.data, snap.id))
            except MalformedDocument:
                logger.warning("Skipping malformed deletion record %s", snap.id)
        deleted.sort(key=lambda d: d.deleted_at, reverse=True)
        return deleted

    def _get(self, bundle_id: str) -> DeletedApp:
        doc_id = self._doc_id(bundle_id)
        data = self._store.get(Collection.DELETED_APPS, doc_id)
        if data is None:
            raise NotFound(f"No deletion recorded for {bundle_id}")
        return parse_document(DeletedApp, data, doc_id)

    def _mark_processed(self, bundle_id: str, resolution: DeletionResolution) -> DeletedApp:
        doc_id = self._doc_id(bundle_id)

        def mark(transaction: Transaction) -> DeletedApp:
            data = transaction.get(Collection.DELETED_APPS, doc_id)
            if data is None:
                raise NotFound(f"No deletion recorded for {bundle_id}")
            deleted = parse_document(DeletedApp, data, doc_id)
            if deleted.is_processed:
                return deleted
            now = self._clock()
            transaction.update(
                Collection.DELETED_APPS,
                doc_id,
                {"isProcessed": True, "processedAt": now, "resolution": str(resolution)},
            )
            deleted.is_processed = True
            deleted.processed_at = now
            deleted.resolution = resolution
            return deleted

        return self._store.run_transaction(mark)

    def restore_to_monitoring(
        self,
        bundle_id: str,
        synchronizer: RestrictionSynchronizer,
        time_limit: float = DEFAULT_TIME_LIMIT,
    ) -> DeletedApp:
        """Keep a restriction for the app so it is enforced if reinstalled."""
        deleted = self._get(bundle_id)
        if deleted.is_processed:
            return deleted
        synchronizer.set_limit(bundle_id, time_limit)
        deleted = self._mark_processed(bundle_id, DeletionResolution.RESTORED)
        logger.info("Restored %s to monitoring", deleted.app_name)
        return deleted

    def remove_from_monitoring(
        self, bundle_id: str, synchronizer: RestrictionSynchronizer
    ) -> DeletedApp:
        """Drop the restriction of a deleted app."""
        deleted = self._get(bundle_id)
        if deleted.is_processed:
            return deleted
        synchronizer.remove(bundle_id)
        deleted = self._mark_processed(bundle_id, DeletionResolution.REMOVED)
        logger.info("Removed %s from monitoring", deleted.app_name)
        return deleted
