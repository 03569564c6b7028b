"""Pairing code generation and the parent-child pairing protocol.

A child device requests a short-lived 6-digit code; a parent submits it to
create a Relationship. Consuming the code, creating the relationship and
flagging the child's profile commit in one transaction, so racing
submissions of the same code produce exactly one relationship.
"""

import logging
import random
import re
import string
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from watchwise_shared import (
    Collection,
    NotificationType,
    PairingCode,
    Relationship,
    UserType,
    utcnow,
)
from watchwise_shared.errors import (
    AlreadyPaired,
    CodeExpired,
    CodeNotFound,
    InvalidCodeFormat,
    MalformedDocument,
    PermissionDenied,
    RelationshipNotFound,
)
from watchwise_shared.firestore import model_to_firestore, parse_document
from watchwise_shared.notifications import NotificationDispatcher
from watchwise_shared.scheduler import Scheduler
from watchwise_shared.store import DocumentStore, Snapshot, Transaction

from .auth import require_caller

logger = logging.getLogger(__name__)

CODE_LENGTH = 6
CODE_TTL = timedelta(minutes=10)
MAX_CODE_ATTEMPTS = 5

_CODE_RE = re.compile(rf"^\d{{{CODE_LENGTH}}}$")


@dataclass(frozen=True)
class IssuedCode:
    code: str
    expires_at: datetime
    document_id: str


@dataclass(frozen=True)
class PairingResult:
    relationship_id: str
    child_user_id: str
    child_name: str
    device_name: str


def generate_pair_code(rng: random.Random) -> str:
    """Generate a digit-uniform 6-digit code."""
    return "".join(rng.choice(string.digits) for _ in range(CODE_LENGTH))


def is_valid_code(code: str) -> bool:
    return bool(_CODE_RE.match(code))


def _parse_codes(snapshots: list[Snapshot]) -> list[tuple[str, PairingCode]]:
    codes = []
    for snap in snapshots:
        try:
            codes.append((snap.id, parse_document(PairingCode, snap.data, snap.id)))
        except MalformedDocument:
            logger.warning("Skipping malformed pairing request %s", snap.id)
    return codes


def _active_relationships(
    transaction: Transaction, parent_user_id: str, child_user_id: str
) -> list[Snapshot]:
    return transaction.query(
        Collection.RELATIONSHIPS,
        ("parentUserId", "==", parent_user_id),
        ("childUserId", "==", child_user_id),
        ("isActive", "==", True),
    )


class PairingService:
    """Issues pairing codes and turns them into relationships."""

    def __init__(
        self,
        store: DocumentStore,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
        scheduler: Scheduler | None = None,
        code_ttl: timedelta = CODE_TTL,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._clock = clock
        self._rng = rng or random.SystemRandom()
        self._scheduler = scheduler
        self._code_ttl = code_ttl

    def generate_code(
        self,
        caller: str | None,
        child_name: str,
        device_name: str,
        device_info: dict[str, Any] | None = None,
    ) -> IssuedCode:
        """Create and persist a pairing code for the calling child."""
        child_user_id = require_caller(caller)
        now = self._clock()

        code = generate_pair_code(self._rng)
        for attempt in range(1, MAX_CODE_ATTEMPTS):
            if not self._is_code_live(code, now):
                break
            logger.info("Pairing code collision on attempt %d, regenerating", attempt)
            code = generate_pair_code(self._rng)

        pairing_code = PairingCode(
            pair_code=code,
            child_user_id=child_user_id,
            child_name=child_name,
            device_name=device_name,
            created_at=now,
            expires_at=now + self._code_ttl,
            device_info=device_info,
        )
        document_id = self._store.add(
            Collection.PAIRING_REQUESTS, model_to_firestore(pairing_code)
        )
        logger.info("Generated pairing code for child %s (request %s)", child_user_id, document_id)

        if self._scheduler is not None:
            self._scheduler.call_later(
                f"expire-code-{document_id}",
                pairing_code.expires_at - now,
                lambda: self.expire_code(document_id),
            )

        return IssuedCode(code=code, expires_at=pairing_code.expires_at, document_id=document_id)

    def expire_code(self, document_id: str) -> bool:
        """Flag one code as expired if it is still unconsumed and past its deadline."""

        def expire(transaction: Transaction) -> bool:
            data = transaction.get(Collection.PAIRING_REQUESTS, document_id)
            if data is None:
                return False
            code = parse_document(PairingCode, data, document_id)
            if code.is_active or code.is_expired or not code.is_past_deadline(self._clock()):
                return False
            transaction.update(
                Collection.PAIRING_REQUESTS, document_id, {"isExpired": True}
            )
            return True

        expired = self._store.run_transaction(expire)
        if expired:
            logger.info("Marked pairing request %s as expired", document_id)
        return expired

    def _is_code_live(self, code: str, now: datetime) -> bool:
        snapshots = self._store.query(
            Collection.PAIRING_REQUESTS,
            ("pairCode", "==", code),
            ("isActive", "==", False),
            ("isExpired", "==", False),
        )
        return any(not pc.is_past_deadline(now) for _, pc in _parse_codes(snapshots))

    def pair(self, code: str, parent_user_id: str | None) -> PairingResult:
        """Validate a code and create the parent-child relationship."""
        parent_user_id = require_caller(parent_user_id)
        code = code.strip()
        if not is_valid_code(code):
            raise InvalidCodeFormat(f"Pairing code must be {CODE_LENGTH} digits")

        def pair_in_transaction(transaction: Transaction) -> PairingResult:
            now = self._clock()
            candidates = _parse_codes(
                transaction.query(Collection.PAIRING_REQUESTS, ("pairCode", "==", code))
            )
            pending = [(doc_id, pc) for doc_id, pc in candidates if not pc.is_active]

            if not pending:
                for _, consumed in candidates:
                    if _active_relationships(
                        transaction, parent_user_id, consumed.child_user_id
                    ):
                        raise AlreadyPaired(f"Code {code} already paired")
                raise CodeNotFound(f"No pending pairing request for code {code}")

            live = [
                (doc_id, pc)
                for doc_id, pc in pending
                if not pc.is_expired and not pc.is_past_deadline(now)
            ]
            if not live:
                raise CodeExpired(f"Pairing code {code} expired")

            request_id, request = max(live, key=lambda item: item[1].created_at)

            if _active_relationships(transaction, parent_user_id, request.child_user_id):
                raise AlreadyPaired(
                    f"Parent {parent_user_id} already paired with {request.child_user_id}"
                )

            relationship = Relationship(
                parent_user_id=parent_user_id,
                child_user_id=request.child_user_id,
                child_name=request.child_name,
                device_name=request.device_name,
                pairing_code=code,
                created_at=now,
                last_sync_at=now,
                last_heartbeat_at=now,
                device_info=request.device_info,
            )
            relationship_id = transaction.create(
                Collection.RELATIONSHIPS, model_to_firestore(relationship)
            )
            transaction.update(
                Collection.PAIRING_REQUESTS,
                request_id,
                {"isActive": True, "parentUserId": parent_user_id, "pairedAt": now},
            )
            transaction.set(
                Collection.USERS,
                request.child_user_id,
                {
                    "userType": str(UserType.CHILD),
                    "isDevicePaired": True,
                    "pairedWithParent": parent_user_id,
                    "pairedAt": now,
                },
                merge=True,
            )
            return PairingResult(
                relationship_id=relationship_id,
                child_user_id=request.child_user_id,
                child_name=request.child_name,
                device_name=request.device_name,
            )

        result = self._store.run_transaction(pair_in_transaction)
        logger.info(
            "Paired parent %s with %s's device (relationship %s)",
            parent_user_id,
            result.child_name,
            result.relationship_id,
        )
        return result

    def unpair(self, relationship_id: str, requesting_user_id: str | None) -> Relationship:
        """Deactivate a relationship. Only its parent or child may do this."""
        requester = require_caller(requesting_user_id)

        def unpair_in_transaction(transaction: Transaction) -> tuple[Relationship, bool]:
            now = self._clock()
            data = transaction.get(Collection.RELATIONSHIPS, relationship_id)
            if data is None:
                raise RelationshipNotFound(f"Relationship {relationship_id} not found")
            relationship = parse_document(Relationship, data, relationship_id)
            if requester not in (relationship.parent_user_id, relationship.child_user_id):
                raise PermissionDenied(
                    f"{requester} is not a party to relationship {relationship_id}"
                )
            if not relationship.is_active:
                return relationship, False

            remaining = [
                snap
                for snap in transaction.query(
                    Collection.RELATIONSHIPS,
                    ("childUserId", "==", relationship.child_user_id),
                    ("isActive", "==", True),
                )
                if snap.id != relationship_id
            ]

            transaction.update(
                Collection.RELATIONSHIPS,
                relationship_id,
                {"isActive": False, "unlinkedAt": now, "unlinkedBy": requester},
            )
            if not remaining:
                transaction.set(
                    Collection.USERS,
                    relationship.child_user_id,
                    {"isDevicePaired": False, "pairedWithParent": None, "unlinkedAt": now},
                    merge=True,
                )

            other_party = (
                relationship.child_user_id
                if requester == relationship.parent_user_id
                else relationship.parent_user_id
            )
            self._dispatcher.stage(
                transaction,
                self._dispatcher.build(
                    recipient_id=other_party,
                    type=NotificationType.DEVICE_UNLINKED,
                    title="Device Unlinked",
                    message=(
                        f"{relationship.child_name}'s device has been unlinked "
                        "from your account."
                    ),
                    data={
                        "relationshipId": relationship_id,
                        "childUserId": relationship.child_user_id,
                        "childName": relationship.child_name,
                    },
                ),
            )
            relationship.is_active = False
            relationship.unlinked_at = now
            relationship.unlinked_by = requester
            return relationship, True

        relationship, changed = self._store.run_transaction(unpair_in_transaction)
        if changed:
            logger.info("Unlinked relationship %s (by %s)", relationship_id, requester)
        else:
            logger.info("Relationship %s was already unlinked", relationship_id)
        return relationship
