"""Tests for pairing code generation and the pairing protocol."""

import random
import threading
from datetime import timedelta

import pytest

from watchwise_functions.pairing import (
    PairingService,
    generate_pair_code,
    is_valid_code,
)
from watchwise_shared import Collection, PairingCode, Relationship
from watchwise_shared.errors import (
    AlreadyPaired,
    CodeExpired,
    CodeNotFound,
    InvalidCodeFormat,
    InvalidFormat,
    PermissionDenied,
    RelationshipNotFound,
    Unauthenticated,
)
from watchwise_shared.firestore import parse_document
from watchwise_shared.notifications import NotificationDispatcher
from watchwise_shared.store import MemoryStore


class SequenceRng(random.Random):
    """Produces the digits of the given codes in order."""

    def __init__(self, *codes: str):
        super().__init__()
        self._digits = iter("".join(codes))

    def choice(self, seq):  # type: ignore[no-untyped-def, override]
        return next(self._digits)


class RecordingScheduler:
    def __init__(self) -> None:
        self.calls: list[tuple[str, timedelta]] = []

    def call_later(self, name, delay, fn):  # type: ignore[no-untyped-def]
        self.calls.append((name, delay))


@pytest.fixture
def service(store: MemoryStore, dispatcher: NotificationDispatcher, clock) -> PairingService:
    return PairingService(store, dispatcher, clock=clock, rng=SequenceRng("482913"))


def _relationships(store: MemoryStore) -> list[Relationship]:
    return [
        parse_document(Relationship, snap.data, snap.id)
        for snap in store.query(Collection.RELATIONSHIPS)
    ]


def _notifications(store: MemoryStore, type: str) -> list[dict]:
    return [snap.data for snap in store.query(Collection.NOTIFICATIONS, ("type", "==", type))]


class TestCodeGeneration:
    def test_codes_are_six_digits(self) -> None:
        rng = random.Random(7)
        for _ in range(50):
            code = generate_pair_code(rng)
            assert is_valid_code(code)

    def test_code_format_validation(self) -> None:
        assert is_valid_code("012345")
        assert not is_valid_code("12345")
        assert not is_valid_code("1234567")
        assert not is_valid_code("12a456")

    def test_generate_persists_pending_code(
        self, service: PairingService, store: MemoryStore, clock
    ) -> None:
        issued = service.generate_code("child1", "Sam", "Sam's iPad", {"model": "iPad"})

        assert issued.code == "482913"
        assert issued.expires_at == clock.now + timedelta(minutes=10)
        stored = parse_document(
            PairingCode, store.get(Collection.PAIRING_REQUESTS, issued.document_id)
        )
        assert stored.child_user_id == "child1"
        assert stored.child_name == "Sam"
        assert not stored.is_active
        assert not stored.is_expired
        assert stored.device_info == {"model": "iPad"}

    def test_generate_requires_identity(self, service: PairingService) -> None:
        with pytest.raises(Unauthenticated):
            service.generate_code(None, "Sam", "iPad")
        with pytest.raises(Unauthenticated):
            service.generate_code("", "Sam", "iPad")

    def test_regenerates_on_live_collision(
        self, store: MemoryStore, dispatcher: NotificationDispatcher, clock
    ) -> None:
        service = PairingService(
            store, dispatcher, clock=clock, rng=SequenceRng("111111", "111111", "222222")
        )
        first = service.generate_code("child1", "Sam", "iPad")
        second = service.generate_code("child2", "Alex", "Phone")

        assert first.code == "111111"
        assert second.code == "222222"

    def test_expired_code_may_be_reissued(
        self, store: MemoryStore, dispatcher: NotificationDispatcher, clock
    ) -> None:
        service = PairingService(
            store, dispatcher, clock=clock, rng=SequenceRng("111111", "111111")
        )
        service.generate_code("child1", "Sam", "iPad")
        clock.advance(minutes=11)

        assert service.generate_code("child2", "Alex", "Phone").code == "111111"

    def test_schedules_expiry_at_deadline(
        self, store: MemoryStore, dispatcher: NotificationDispatcher, clock
    ) -> None:
        scheduler = RecordingScheduler()
        service = PairingService(
            store, dispatcher, clock=clock, rng=SequenceRng("482913"), scheduler=scheduler  # type: ignore[arg-type]
        )
        issued = service.generate_code("child1", "Sam", "iPad")

        assert scheduler.calls == [(f"expire-code-{issued.document_id}", timedelta(minutes=10))]


class TestExpireCode:
    def test_marks_code_expired_after_deadline(
        self, service: PairingService, store: MemoryStore, clock
    ) -> None:
        issued = service.generate_code("child1", "Sam", "iPad")
        assert not service.expire_code(issued.document_id)

        clock.advance(minutes=10, seconds=1)
        assert service.expire_code(issued.document_id)
        assert store.get(Collection.PAIRING_REQUESTS, issued.document_id)["isExpired"]  # type: ignore[index]
        assert not service.expire_code(issued.document_id)

    def test_consumed_code_is_never_expired(self, service: PairingService, clock) -> None:
        issued = service.generate_code("child1", "Sam", "iPad")
        service.pair(issued.code, "parent1")
        clock.advance(minutes=11)

        assert not service.expire_code(issued.document_id)

    def test_missing_code(self, service: PairingService) -> None:
        assert not service.expire_code("gone")


class TestPair:
    def test_pairing_scenario(self, service: PairingService, store: MemoryStore, clock) -> None:
        issued = service.generate_code("child1", "Sam", "Sam's iPad")
        assert issued.code == "482913"

        clock.advance(minutes=5)
        result = service.pair("482913", "parent1")

        assert result.child_name == "Sam"
        assert result.device_name == "Sam's iPad"
        relationship = parse_document(
            Relationship, store.get(Collection.RELATIONSHIPS, result.relationship_id)
        )
        assert relationship.is_active
        assert relationship.parent_user_id == "parent1"
        assert relationship.child_user_id == "child1"
        assert relationship.last_heartbeat_at == clock.now
        assert relationship.last_sync_at == clock.now
        assert relationship.missed_heartbeats == 0

        request = store.get(Collection.PAIRING_REQUESTS, issued.document_id)
        assert request["isActive"] is True  # type: ignore[index]
        assert request["parentUserId"] == "parent1"  # type: ignore[index]
        profile = store.get(Collection.USERS, "child1")
        assert profile["isDevicePaired"] is True  # type: ignore[index]
        assert profile["pairedWithParent"] == "parent1"  # type: ignore[index]
        assert profile["userType"] == "child"  # type: ignore[index]

        clock.advance(minutes=1)
        with pytest.raises(AlreadyPaired):
            service.pair("482913", "parent1")
        assert len(_relationships(store)) == 1

    def test_expired_code_rejected_before_sweep(self, service: PairingService, clock) -> None:
        service.generate_code("child1", "Sam", "iPad")
        clock.advance(minutes=11)

        with pytest.raises(CodeExpired) as exc_info:
            service.pair("482913", "parent1")
        assert exc_info.value.user_message == (
            "This pairing code has expired. Please generate a new code."
        )

    def test_code_flagged_expired_rejected(
        self, service: PairingService, store: MemoryStore
    ) -> None:
        issued = service.generate_code("child1", "Sam", "iPad")
        store.update(Collection.PAIRING_REQUESTS, issued.document_id, {"isExpired": True})

        with pytest.raises(CodeExpired):
            service.pair(issued.code, "parent1")

    def test_unknown_code(self, service: PairingService) -> None:
        with pytest.raises(CodeNotFound):
            service.pair("000000", "parent1")

    def test_consumed_code_for_another_parent_not_found(self, service: PairingService) -> None:
        issued = service.generate_code("child1", "Sam", "iPad")
        service.pair(issued.code, "parent1")

        with pytest.raises(CodeNotFound):
            service.pair(issued.code, "parent2")

    @pytest.mark.parametrize("code", ["", "12345", "abcdef", "1234567"])
    def test_invalid_format(self, service: PairingService, code: str) -> None:
        with pytest.raises(InvalidCodeFormat):
            service.pair(code, "parent1")
        assert issubclass(InvalidCodeFormat, InvalidFormat)

    def test_surrounding_whitespace_ignored(self, service: PairingService) -> None:
        service.generate_code("child1", "Sam", "iPad")
        assert service.pair(" 482913 ", "parent1").child_name == "Sam"

    def test_requires_identity(self, service: PairingService) -> None:
        with pytest.raises(Unauthenticated):
            service.pair("482913", None)

    def test_new_code_for_already_paired_child(
        self, store: MemoryStore, dispatcher: NotificationDispatcher, clock
    ) -> None:
        service = PairingService(
            store, dispatcher, clock=clock, rng=SequenceRng("111111", "222222")
        )
        service.generate_code("child1", "Sam", "iPad")
        service.pair("111111", "parent1")
        service.generate_code("child1", "Sam", "iPad")

        with pytest.raises(AlreadyPaired):
            service.pair("222222", "parent1")

    def test_second_parent_can_pair_same_child(
        self, store: MemoryStore, dispatcher: NotificationDispatcher, clock
    ) -> None:
        service = PairingService(
            store, dispatcher, clock=clock, rng=SequenceRng("111111", "222222")
        )
        service.generate_code("child1", "Sam", "iPad")
        service.pair("111111", "parent1")
        service.generate_code("child1", "Sam", "iPad")
        service.pair("222222", "parent2")

        parents = sorted(r.parent_user_id for r in _relationships(store))
        assert parents == ["parent1", "parent2"]

    def test_concurrent_submissions_pair_exactly_once(
        self, service: PairingService, store: MemoryStore
    ) -> None:
        issued = service.generate_code("child1", "Sam", "iPad")
        barrier = threading.Barrier(8)
        outcomes: list[object] = []
        lock = threading.Lock()

        def submit(parent_id: str) -> None:
            barrier.wait()
            try:
                outcome: object = service.pair(issued.code, parent_id)
            except (AlreadyPaired, CodeNotFound) as e:
                outcome = e
            with lock:
                outcomes.append(outcome)

        threads = [
            threading.Thread(target=submit, args=(f"parent{i % 2}",)) for i in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        successes = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(outcomes) == 8
        assert len(successes) == 1
        assert len(_relationships(store)) == 1
        request = store.get(Collection.PAIRING_REQUESTS, issued.document_id)
        assert request["isActive"] is True  # type: ignore[index]


class TestUnpair:
    @pytest.fixture
    def relationship_id(self, service: PairingService) -> str:
        service.generate_code("child1", "Sam", "iPad")
        return service.pair("482913", "parent1").relationship_id

    def test_parent_unpairs(
        self, service: PairingService, store: MemoryStore, relationship_id: str
    ) -> None:
        relationship = service.unpair(relationship_id, "parent1")

        assert not relationship.is_active
        assert relationship.unlinked_by == "parent1"
        stored = store.get(Collection.RELATIONSHIPS, relationship_id)
        assert stored["isActive"] is False  # type: ignore[index]
        assert store.get(Collection.USERS, "child1")["isDevicePaired"] is False  # type: ignore[index]

        notifications = _notifications(store, "device_unlinked")
        assert len(notifications) == 1
        assert notifications[0]["recipientId"] == "child1"
        assert notifications[0]["message"] == "Sam's device has been unlinked from your account."

    def test_child_unpairs_notifies_parent(
        self, service: PairingService, store: MemoryStore, relationship_id: str
    ) -> None:
        service.unpair(relationship_id, "child1")
        notifications = _notifications(store, "device_unlinked")
        assert [n["recipientId"] for n in notifications] == ["parent1"]

    def test_stranger_denied(self, service: PairingService, relationship_id: str) -> None:
        with pytest.raises(PermissionDenied):
            service.unpair(relationship_id, "someone-else")

    def test_missing_relationship(self, service: PairingService) -> None:
        with pytest.raises(RelationshipNotFound):
            service.unpair("nope", "parent1")

    def test_unpair_twice_is_noop(
        self, service: PairingService, store: MemoryStore, relationship_id: str
    ) -> None:
        service.unpair(relationship_id, "parent1")
        relationship = service.unpair(relationship_id, "parent1")

        assert not relationship.is_active
        assert len(_notifications(store, "device_unlinked")) == 1

    def test_child_stays_paired_with_other_parent(
        self, store: MemoryStore, dispatcher: NotificationDispatcher, clock
    ) -> None:
        service = PairingService(
            store, dispatcher, clock=clock, rng=SequenceRng("111111", "222222")
        )
        service.generate_code("child1", "Sam", "iPad")
        first = service.pair("111111", "parent1")
        service.generate_code("child1", "Sam", "iPad")
        service.pair("222222", "parent2")

        service.unpair(first.relationship_id, "parent1")
        assert store.get(Collection.USERS, "child1")["isDevicePaired"] is True  # type: ignore[index]

    def test_can_pair_again_after_unpair(
        self, store: MemoryStore, dispatcher: NotificationDispatcher, clock
    ) -> None:
        service = PairingService(
            store, dispatcher, clock=clock, rng=SequenceRng("111111", "222222")
        )
        service.generate_code("child1", "Sam", "iPad")
        first = service.pair("111111", "parent1")
        service.unpair(first.relationship_id, "parent1")
        service.generate_code("child1", "Sam", "iPad")

        second = service.pair("222222", "parent1")
        assert second.relationship_id != first.relationship_id
