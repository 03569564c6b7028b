"""Scheduled reconciliation sweeps.

Each sweep reads a snapshot of the documents it cares about and writes
idempotent updates, so a sweep that fails part way is safely re-run on its
next tick. Documents that fail to parse are skipped and logged.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from watchwise_shared import (
    Collection,
    NotificationType,
    PairingCode,
    Relationship,
    UserProfile,
    UserType,
    utcnow,
)
from watchwise_shared.errors import MalformedDocument, TransientStoreFailure
from watchwise_shared.firestore import parse_document
from watchwise_shared.notifications import NotificationDispatcher
from watchwise_shared.scheduler import Scheduler
from watchwise_shared.store import DocumentStore, Transaction

from .config import SweepSettings
from .escalation import (
    missed_heartbeat_count,
    missed_heartbeat_message,
    should_escalate,
    should_notify,
)

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome of one sweep run."""

    name: str
    examined: int = 0
    changed: int = 0
    skipped: int = 0
    notifications: int = 0


class ReconciliationEngine:
    """Runs the code, purge, inactivity and missed-heartbeat sweeps."""

    def __init__(
        self,
        store: DocumentStore,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
        settings: SweepSettings | None = None,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._clock = clock
        self._settings = settings or SweepSettings()

    @property
    def sweeps(self) -> dict[str, Callable[[], SweepResult]]:
        return {
            "codes": self.expire_codes,
            "purge": self.purge_stale_requests,
            "inactivity": self.check_inactive_children,
            "heartbeats": self.check_missed_heartbeats,
        }

    def expire_codes(self) -> SweepResult:
        """Flag unexpired codes whose deadline has passed."""
        result = SweepResult("codes")
        now = self._clock()
        snapshots = self._store.query(
            Collection.PAIRING_REQUESTS,
            ("isExpired", "==", False),
            ("expiresAt", "<", now),
        )
        batch = self._store.batch()
        for snap in snapshots:
            result.examined += 1
            try:
                parse_document(PairingCode, snap.data, snap.id)
            except MalformedDocument:
                logger.warning("Skipping malformed pairing request %s", snap.id)
                result.skipped += 1
                continue
            batch.update(
                Collection.PAIRING_REQUESTS,
                snap.id,
                {"isExpired": True, "cleanedUpAt": now},
            )
        result.changed = batch.commit()
        if result.changed:
            logger.info("Expired %d pairing codes", result.changed)
        return result

    def purge_stale_requests(self) -> SweepResult:
        """Delete pairing requests older than the stale-request age."""
        result = SweepResult("purge")
        cutoff = self._clock() - self._settings.stale_request_age
        snapshots = self._store.query(
            Collection.PAIRING_REQUESTS, ("createdAt", "<", cutoff)
        )
        batch = self._store.batch()
        for snap in snapshots:
            result.examined += 1
            batch.delete(Collection.PAIRING_REQUESTS, snap.id)
        result.changed = batch.commit()
        if result.changed:
            logger.info("Purged %d stale pairing requests", result.changed)
        return result

    def check_inactive_children(self) -> SweepResult:
        """Alert parents of children who have not opened the app in days."""
        result = SweepResult("inactivity")
        cutoff = self._clock() - self._settings.inactivity_threshold
        children = self._store.query(
            Collection.USERS,
            ("userType", "==", str(UserType.CHILD)),
            ("lastActiveAt", "<", cutoff),
        )
        for child in children:
            result.examined += 1
            try:
                parse_document(UserProfile, child.data, child.id)
            except MalformedDocument:
                logger.warning("Skipping malformed user %s", child.id)
                result.skipped += 1
                continue

            relationships = self._store.query(
                Collection.RELATIONSHIPS,
                ("childUserId", "==", child.id),
                ("isActive", "==", True),
            )
            for snap in relationships:
                try:
                    relationship = parse_document(Relationship, snap.data, snap.id)
                except MalformedDocument:
                    logger.warning("Skipping malformed relationship %s", snap.id)
                    result.skipped += 1
                    continue
                self._dispatcher.emit(
                    self._dispatcher.build(
                        recipient_id=relationship.parent_user_id,
                        type=NotificationType.INACTIVITY_ALERT,
                        title="Child Device Inactive",
                        message=(
                            f"{relationship.child_name} hasn't opened WatchWise in "
                            f"{self._settings.inactivity_days} days. Please check on "
                            "their device."
                        ),
                        data={
                            "childUserId": child.id,
                            "childName": relationship.child_name,
                            "relationshipId": snap.id,
                        },
                    )
                )
                result.notifications += 1
        if result.notifications:
            logger.info("Sent %d inactivity alerts", result.notifications)
        return result

    def check_missed_heartbeats(self) -> SweepResult:
        """Escalate relationships whose device has gone quiet."""
        result = SweepResult("heartbeats")
        snapshots = self._store.query(
            Collection.RELATIONSHIPS, ("isActive", "==", True)
        )
        for snap in snapshots:
            result.examined += 1
            try:
                relationship = parse_document(Relationship, snap.data, snap.id)
            except MalformedDocument:
                logger.warning("Skipping malformed relationship %s", snap.id)
                result.skipped += 1
                continue
            if self._missed_heartbeats(relationship, self._clock()) is None:
                continue
            changed, notified = self._escalate(snap.id)
            if changed:
                result.changed += 1
            if notified:
                result.notifications += 1
        if result.changed:
            logger.info("Escalated %d relationships for missed heartbeats", result.changed)
        return result

    def _missed_heartbeats(self, relationship: Relationship, now: datetime) -> int | None:
        """Missed count if it is higher than the stored one, else None."""
        if not relationship.is_active or relationship.is_normal_closure:
            return None
        last = (
            relationship.last_heartbeat_at
            or relationship.last_sync_at
            or relationship.created_at
        )
        if now - last <= self._settings.missed_heartbeat_grace:
            return None
        missed = missed_heartbeat_count(last, now, self._settings.heartbeat_interval)
        if not should_escalate(missed, relationship.missed_heartbeats):
            return None
        return missed

    def _escalate(self, relationship_id: str) -> tuple[bool, bool]:
        """Persist the new count, and its notification when the level rises.

        Both happen in one transaction. Returns (changed, notified).
        """

        def escalate(transaction: Transaction) -> tuple[bool, bool]:
            data = transaction.get(Collection.RELATIONSHIPS, relationship_id)
            if data is None:
                return False, False
            relationship = parse_document(Relationship, data, relationship_id)
            missed = self._missed_heartbeats(relationship, self._clock())
            if missed is None:
                return False, False
            transaction.update(
                Collection.RELATIONSHIPS,
                relationship_id,
                {"missedHeartbeats": missed},
            )
            if not should_notify(missed, relationship.missed_heartbeats):
                logger.debug(
                    "Relationship %s at %d missed heartbeats, level unchanged",
                    relationship_id,
                    missed,
                )
                return True, False
            title, message = missed_heartbeat_message(missed, relationship.child_name)
            self._dispatcher.stage(
                transaction,
                self._dispatcher.build(
                    recipient_id=relationship.parent_user_id,
                    type=NotificationType.MISSED_HEARTBEAT,
                    title=title,
                    message=message,
                    data={
                        "childUserId": relationship.child_user_id,
                        "childName": relationship.child_name,
                        "relationshipId": relationship_id,
                        "missedCount": missed,
                    },
                ),
            )
            logger.info(
                "Relationship %s missed %d heartbeats", relationship_id, missed
            )
            return True, True

        try:
            return self._store.run_transaction(escalate)
        except MalformedDocument:
            logger.warning("Skipping malformed relationship %s", relationship_id)
            return False, False

    def run_all(self) -> list[SweepResult]:
        """Run every sweep once. A failing sweep does not stop the others."""
        results = []
        for name, sweep in self.sweeps.items():
            try:
                results.append(sweep())
            except TransientStoreFailure:
                logger.exception("Sweep %s failed, will retry on next run", name)
        return results

    def schedule(self, scheduler: Scheduler) -> None:
        """Register every sweep on its own ticker."""
        intervals: dict[str, timedelta] = {
            "codes": timedelta(minutes=self._settings.code_sweep_minutes),
            "purge": timedelta(minutes=self._settings.stale_purge_minutes),
            "inactivity": timedelta(hours=self._settings.inactivity_sweep_hours),
            "heartbeats": timedelta(minutes=self._settings.heartbeat_sweep_minutes),
        }
        for name, sweep in self.sweeps.items():
            scheduler.every(f"sweep-{name}", intervals[name], sweep)
            logger.info("Scheduled %s sweep every %s", name, intervals[name])
