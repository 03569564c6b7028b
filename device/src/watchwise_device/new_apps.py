"""Detection of apps the child starts using for the first time."""

import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from watchwise_shared import (
    AppUsageSample,
    Collection,
    DetectionResolution,
    NewAppDetection,
    NotificationType,
    utcnow,
)
from watchwise_shared.errors import MalformedDocument, NotFound
from watchwise_shared.firestore import model_to_firestore, parse_document
from watchwise_shared.notifications import NotificationDispatcher
from watchwise_shared.store import DocumentStore, Transaction

from .apps import app_display_name
from .cache import LocalCache
from .restrictions import RestrictionSynchronizer

logger = logging.getLogger(__name__)

DEFAULT_TIME_LIMIT = 2 * 60 * 60  # seconds


class NewAppDetector:
    """Compares usage samples with the apps already seen on this device."""

    def __init__(
        self,
        store: DocumentStore,
        cache: LocalCache,
        dispatcher: NotificationDispatcher,
        parent_id: str,
        device_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._cache = cache
        self._dispatcher = dispatcher
        self._parent_id = parent_id
        self._device_id = device_id
        self._clock = clock

    def _doc_id(self, bundle_id: str) -> str:
        return NewAppDetection.document_id(self._parent_id, bundle_id)

    def check_for_new_apps(self, samples: Iterable[AppUsageSample]) -> list[NewAppDetection]:
        """Record and announce apps not seen before.

        The first scan on a device only records the baseline.
        """
        names: dict[str, str] = {}
        for sample in samples:
            names.setdefault(sample.bundle_id, app_display_name(sample.bundle_id, sample.app_name))

        known = self._cache.load_known_apps()
        if known is None:
            self._cache.save_known_apps(set(names))
            logger.info("Recorded %d apps as the baseline", len(names))
            return []

        detections = []
        for bundle_id, app_name in names.items():
            if bundle_id in known:
                continue
            detection = self._record_detection(bundle_id, app_name)
            if detection is not None:
                detections.append(detection)
            known.add(bundle_id)
        self._cache.save_known_apps(known)
        return detections

    def _record_detection(self, bundle_id: str, app_name: str) -> NewAppDetection | None:
        doc_id = self._doc_id(bundle_id)

        def record(transaction: Transaction) -> NewAppDetection | None:
            if transaction.get(Collection.NEW_APP_DETECTIONS, doc_id) is not None:
                return None
            detection = NewAppDetection(
                bundle_id=bundle_id,
                app_name=app_name,
                detected_at=self._clock(),
                parent_id=self._parent_id,
                device_id=self._device_id,
            )
            transaction.set(Collection.NEW_APP_DETECTIONS, doc_id, model_to_firestore(detection))
            self._dispatcher.stage(
                transaction,
                self._dispatcher.build(
                    recipient_id=self._parent_id,
                    type=NotificationType.NEW_APP_DETECTED,
                    title="New App Detected",
                    message=f"{app_name} has been installed on your child's device",
                    data={"bundleId": bundle_id, "appName": app_name},
                ),
            )
            return detection

        detection = self._store.run_transaction(record)
        if detection is not None:
            logger.info("Detected new app %s (%s)", app_name, bundle_id)
        return detection

    def pending(self) -> list[NewAppDetection]:
        """Detections the parent has not acted on yet, newest first."""
        snapshots = self._store.query(
            Collection.NEW_APP_DETECTIONS,
            ("parentId", "==", self._parent_id),
            ("isProcessed", "==", False),
        )
        detections = []
        for snap in snapshots:
            try:
                detections.append(parse_document(NewAppDetection, snap.data, snap.id))
            except MalformedDocument:
                logger.warning("Skipping malformed detection %s", snap.id)
        detections.sort(key=lambda d: d.detected_at, reverse=True)
        return detections

    def _resolve(
        self, bundle_id: str, resolution: DetectionResolution
    ) -> tuple[NewAppDetection, bool]:
        doc_id = self._doc_id(bundle_id)

        def resolve(transaction: Transaction) -> tuple[NewAppDetection, bool]:
            data = transaction.get(Collection.NEW_APP_DETECTIONS, doc_id)
            if data is None:
                raise NotFound(f"No detection for {bundle_id}")
            detection = parse_document(NewAppDetection, data, doc_id)
            if detection.is_processed:
                return detection, False
            now = self._clock()
            transaction.update(
                Collection.NEW_APP_DETECTIONS,
                doc_id,
                {"isProcessed": True, "processedAt": now, "resolution": str(resolution)},
            )
            detection.is_processed = True
            detection.processed_at = now
            detection.resolution = resolution
            return detection, True

        return self._store.run_transaction(resolve)

    def add_to_monitoring(
        self,
        bundle_id: str,
        synchronizer: RestrictionSynchronizer,
        time_limit: float = DEFAULT_TIME_LIMIT,
    ) -> NewAppDetection:
        """Start monitoring a detected app with a default daily limit.

        The restriction is written before the detection is closed, so a
        failure in between leaves the detection pending and retryable.
        """
        doc_id = self._doc_id(bundle_id)
        data = self._store.get(Collection.NEW_APP_DETECTIONS, doc_id)
        if data is None:
            raise NotFound(f"No detection for {bundle_id}")
        detection = parse_document(NewAppDetection, data, doc_id)
        if detection.is_processed:
            return detection

        synchronizer.set_limit(bundle_id, time_limit)
        detection, changed = self._resolve(bundle_id, DetectionResolution.MONITORED)
        if changed:
            logger.info("Added %s to monitoring", bundle_id)
        return detection

    def ignore(self, bundle_id: str) -> NewAppDetection:
        detection, changed = self._resolve(bundle_id, DetectionResolution.IGNORED)
        if changed:
            logger.info("Ignoring %s", bundle_id)
        return detection
