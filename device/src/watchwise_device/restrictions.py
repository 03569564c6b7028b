"""Synchronizes app restrictions and bedtime between the store and the device.

The store is the source of truth. Every mutation is a single-document
read-modify-write transaction on ``appRestrictions/{parentId}_{bundleId}``,
after which the result is pushed into the local cache the enforcement layer
reads. Days are counted on the device-local calendar.
"""

import logging
from collections.abc import Callable
from datetime import datetime, tzinfo

from watchwise_shared import (
    AppRestriction,
    BedtimeSettings,
    Collection,
    NotificationType,
    utcnow,
)
from watchwise_shared.errors import (
    InvalidFormat,
    MalformedDocument,
    RestrictionNotFound,
    TransientStoreFailure,
    Unauthenticated,
)
from watchwise_shared.firestore import model_to_firestore, parse_document
from watchwise_shared.notifications import NotificationDispatcher
from watchwise_shared.store import DocumentStore, Transaction

from .apps import app_display_name
from .bedtime import is_bedtime
from .cache import BedtimeEnforcement, LocalCache

logger = logging.getLogger(__name__)


class RestrictionSynchronizer:
    """Reads and writes the parent's restrictions for one child device."""

    def __init__(
        self,
        store: DocumentStore,
        cache: LocalCache,
        dispatcher: NotificationDispatcher,
        parent_id: str,
        clock: Callable[[], datetime] = utcnow,
        timezone: tzinfo | None = None,
    ):
        if not parent_id:
            raise Unauthenticated("No parent account bound to this device")
        self._store = store
        self._cache = cache
        self._dispatcher = dispatcher
        self._parent_id = parent_id
        self._clock = clock
        self._timezone = timezone

    def _local(self, at: datetime) -> datetime:
        return at.astimezone(self._timezone)

    def _today(self, at: datetime) -> str:
        return self._local(at).date().isoformat()

    def _doc_id(self, bundle_id: str) -> str:
        return AppRestriction.document_id(self._parent_id, bundle_id)

    def _read(self, transaction: Transaction, bundle_id: str) -> AppRestriction | None:
        doc_id = self._doc_id(bundle_id)
        data = transaction.get(Collection.APP_RESTRICTIONS, doc_id)
        if data is None:
            return None
        return parse_document(AppRestriction, data, doc_id)

    def _write(self, transaction: Transaction, restriction: AppRestriction) -> None:
        transaction.set(
            Collection.APP_RESTRICTIONS,
            self._doc_id(restriction.bundle_id),
            model_to_firestore(restriction),
        )

    def _new_restriction(self, bundle_id: str, now: datetime) -> AppRestriction:
        return AppRestriction(
            bundle_id=bundle_id,
            parent_id=self._parent_id,
            last_reset_date=self._today(now),
            last_updated=now,
        )

    def _roll_over(self, restriction: AppRestriction, today: str) -> None:
        """Start a new day: usage back to zero, limit lockouts lifted."""
        if today <= restriction.last_reset_date:
            return
        restriction.daily_usage = 0.0
        restriction.last_reset_date = today
        if restriction.limit_exceeded_on is not None:
            restriction.is_disabled = False
            restriction.limit_exceeded_on = None
            logger.info("Re-enabled %s for the new day", restriction.bundle_id)

    def _stage_limit_exceeded(
        self, transaction: Transaction, restriction: AppRestriction, today: str
    ) -> None:
        restriction.is_disabled = True
        restriction.limit_exceeded_on = today
        app_name = app_display_name(restriction.bundle_id)
        self._dispatcher.stage(
            transaction,
            self._dispatcher.build(
                recipient_id=self._parent_id,
                type=NotificationType.APP_LIMIT_EXCEEDED,
                title="App Time Limit Exceeded",
                message=f"{app_name} has reached its daily time limit",
                data={
                    "bundleId": restriction.bundle_id,
                    "appName": app_name,
                    "timeLimit": restriction.time_limit,
                    "dailyUsage": restriction.daily_usage,
                },
            ),
        )
        logger.info("%s reached its daily limit, disabling", restriction.bundle_id)

    def _mutate(
        self,
        bundle_id: str,
        change: Callable[[Transaction, AppRestriction, datetime], None],
        message: str,
        *args: object,
        create: bool = True,
    ) -> AppRestriction:
        def mutate(transaction: Transaction) -> AppRestriction:
            now = self._clock()
            restriction = self._read(transaction, bundle_id)
            if restriction is None:
                if not create:
                    raise RestrictionNotFound(f"No restriction for {bundle_id}")
                restriction = self._new_restriction(bundle_id, now)
            self._roll_over(restriction, self._today(now))
            change(transaction, restriction, now)
            restriction.last_updated = now
            self._write(transaction, restriction)
            return restriction

        restriction = self._store.run_transaction(mutate)
        self._cache.put_restriction(restriction)
        logger.info(message, bundle_id, *args)
        return restriction

    def set_limit(self, bundle_id: str, seconds: float) -> AppRestriction:
        """Set the daily time limit (seconds, 0 clears it)."""
        if seconds < 0:
            raise InvalidFormat("Time limit cannot be negative")

        def change(transaction: Transaction, restriction: AppRestriction, now: datetime) -> None:
            restriction.time_limit = seconds
            if restriction.limit_exceeded_on is not None and not restriction.limit_reached:
                restriction.is_disabled = False
                restriction.limit_exceeded_on = None
            elif restriction.limit_reached and not restriction.is_disabled:
                self._stage_limit_exceeded(transaction, restriction, self._today(now))

        return self._mutate(bundle_id, change, "Set limit for %s to %ss", seconds)

    def disable(self, bundle_id: str) -> AppRestriction:
        def change(transaction: Transaction, restriction: AppRestriction, now: datetime) -> None:
            restriction.is_disabled = True
            restriction.limit_exceeded_on = None

        return self._mutate(bundle_id, change, "Disabled %s")

    def enable(self, bundle_id: str) -> AppRestriction:
        """Re-enable an app. Raises RestrictionNotFound if it is not monitored."""

        def change(transaction: Transaction, restriction: AppRestriction, now: datetime) -> None:
            restriction.is_disabled = False
            restriction.limit_exceeded_on = None

        return self._mutate(bundle_id, change, "Enabled %s", create=False)

    def remove(self, bundle_id: str) -> bool:
        """Stop monitoring an app. Returns False if it was not monitored."""

        def remove(transaction: Transaction) -> bool:
            doc_id = self._doc_id(bundle_id)
            if transaction.get(Collection.APP_RESTRICTIONS, doc_id) is None:
                return False
            transaction.delete(Collection.APP_RESTRICTIONS, doc_id)
            return True

        removed = self._store.run_transaction(remove)
        self._cache.remove_restriction(bundle_id)
        if removed:
            logger.info("Removed restriction for %s", bundle_id)
        return removed

    def record_usage(self, bundle_id: str, elapsed: float) -> AppRestriction | None:
        """Add usage time for an app.

        Returns the updated restriction, or None when the app is not monitored.
        Crossing the limit disables the app and notifies the parent once.
        """
        if elapsed < 0:
            raise InvalidFormat("Elapsed time cannot be negative")

        def record(transaction: Transaction) -> AppRestriction | None:
            now = self._clock()
            today = self._today(now)
            restriction = self._read(transaction, bundle_id)
            if restriction is None:
                return None
            self._roll_over(restriction, today)
            restriction.daily_usage += elapsed
            if not restriction.is_disabled and restriction.limit_reached:
                self._stage_limit_exceeded(transaction, restriction, today)
            restriction.last_updated = now
            self._write(transaction, restriction)
            return restriction

        restriction = self._store.run_transaction(record)
        if restriction is not None:
            self._cache.put_restriction(restriction)
            logger.debug(
                "Recorded %.0fs for %s (%.0f/%.0fs)",
                elapsed,
                bundle_id,
                restriction.daily_usage,
                restriction.time_limit,
            )
        return restriction

    def set_bedtime(self, settings: BedtimeSettings) -> BedtimeSettings:
        """Persist bedtime settings and apply them on the device."""
        settings = settings.model_copy(update={"last_updated": self._clock()})
        self._store.set(
            Collection.BEDTIME_SETTINGS, self._parent_id, model_to_firestore(settings)
        )
        self._cache.save_bedtime(settings)
        logger.info(
            "Saved bedtime %s-%s (enabled=%s)",
            settings.start_time,
            settings.end_time,
            settings.is_enabled,
        )
        self.evaluate_bedtime()
        return settings

    def evaluate_bedtime(self, at: datetime | None = None) -> bool:
        """Apply or clear the bedtime override from the cached settings.

        Never touches the per-app restriction records.
        """
        at = at or self._clock()
        settings = self._cache.load_bedtime()
        if settings is None or not is_bedtime(settings, self._local(at)):
            self._cache.clear_bedtime_enforcement()
            return False
        self._cache.apply_bedtime_enforcement(
            BedtimeEnforcement(
                start_time=settings.start_time,
                end_time=settings.end_time,
                applied_at=at,
            )
        )
        return True

    def refresh(self) -> bool:
        """Pull restrictions and bedtime settings into the cache.

        Returns False (keeping the cache as is) when the store is unreachable.
        """
        try:
            snapshots = self._store.query(
                Collection.APP_RESTRICTIONS, ("parentId", "==", self._parent_id)
            )
            bedtime_data = self._store.get(Collection.BEDTIME_SETTINGS, self._parent_id)
        except TransientStoreFailure:
            logger.warning("Store unreachable, enforcing cached restrictions")
            return False

        restrictions = []
        for snap in snapshots:
            try:
                restrictions.append(parse_document(AppRestriction, snap.data, snap.id))
            except MalformedDocument:
                logger.warning("Skipping malformed restriction %s", snap.id)
        self._cache.replace_restrictions(restrictions)

        bedtime = None
        if bedtime_data is not None:
            try:
                bedtime = parse_document(BedtimeSettings, bedtime_data, self._parent_id)
            except MalformedDocument:
                logger.warning("Ignoring malformed bedtime settings for %s", self._parent_id)
        self._cache.save_bedtime(bedtime)
        logger.debug("Refreshed %d restrictions", len(restrictions))
        return True

    def is_app_blocked(self, bundle_id: str, at: datetime | None = None) -> bool:
        """Whether the enforcement layer should block an app right now."""
        at = at or self._clock()
        if self._cache.load_bedtime_enforcement() is not None:
            return True
        restriction = self._cache.get_restriction(bundle_id)
        if restriction is None or not restriction.is_disabled:
            return False
        if restriction.limit_exceeded_on is not None:
            return restriction.limit_exceeded_on >= self._today(at)
        return True
