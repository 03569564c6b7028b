"""Tests for the Firestore-backed document store, driven by a fake client."""

from typing import Any

import pytest
from google.api_core import exceptions as google_exceptions

from watchwise_shared import firestore as firestore_store
from watchwise_shared.errors import NotFound, TransientStoreFailure
from watchwise_shared.firestore import MAX_BATCH_WRITES, FirestoreStore
from watchwise_shared.store import Snapshot, Transaction


class FakeDoc:
    def __init__(self, doc_id: str, data: dict[str, Any] | None):
        self.id = doc_id
        self.exists = data is not None
        self._data = data

    def to_dict(self) -> dict[str, Any] | None:
        return dict(self._data) if self._data is not None else None


class FakeRef:
    def __init__(self, db: "FakeDb", collection: str, doc_id: str):
        self.db = db
        self.collection = collection
        self.id = doc_id

    @property
    def path(self) -> tuple[str, str]:
        return self.collection, self.id

    def get(self, transaction: Any = None) -> FakeDoc:
        self.db.reads.append((self.path, transaction))
        if self.db.fail_with is not None:
            raise self.db.fail_with
        return FakeDoc(self.id, self.db.docs.get(self.path))

    def set(self, data: dict[str, Any], merge: bool = False) -> None:
        if self.db.fail_with is not None:
            raise self.db.fail_with
        self.db.docs[self.path] = dict(data)


class FakeQuery:
    def __init__(self, db: "FakeDb", collection: str):
        self.db = db
        self.collection = collection
        self.filters: list[tuple[str, str, Any]] = []
        self.ordering: tuple[str, str] | None = None
        self.limit_to: int | None = None

    def where(self, filter: Any) -> "FakeQuery":
        self.filters.append((filter.field_path, filter.op_string, filter.value))
        return self

    def order_by(self, field_path: str, direction: str) -> "FakeQuery":
        self.ordering = (field_path, direction)
        return self

    def limit(self, count: int) -> "FakeQuery":
        self.limit_to = count
        return self

    def stream(self, transaction: Any = None) -> list[FakeDoc]:
        self.db.queries.append((self, transaction))
        if self.db.fail_with is not None:
            raise self.db.fail_with
        return [
            FakeDoc(doc_id, data)
            for (collection, doc_id), data in self.db.docs.items()
            if collection == self.collection
        ]


class FakeCollection(FakeQuery):
    def document(self, doc_id: str | None = None) -> FakeRef:
        if doc_id is None:
            self.db.next_id += 1
            doc_id = f"auto-{self.db.next_id}"
        return FakeRef(self.db, self.collection, doc_id)


class FakeBatch:
    def __init__(self, db: "FakeDb"):
        self.db = db
        self.writes: list[tuple[str, tuple[str, str]]] = []

    def set(self, ref: FakeRef, data: dict[str, Any], merge: bool = False) -> None:
        self.writes.append(("set", ref.path))

    def update(self, ref: FakeRef, data: dict[str, Any]) -> None:
        self.writes.append(("update", ref.path))

    def delete(self, ref: FakeRef) -> None:
        self.writes.append(("delete", ref.path))

    def commit(self) -> None:
        if self.db.fail_with is not None:
            raise self.db.fail_with
        self.db.commits.append(len(self.writes))


class FakeTransaction:
    def __init__(self, max_attempts: int):
        self.max_attempts = max_attempts
        self.writes: list[tuple[str, tuple[str, str], dict[str, Any] | None]] = []

    def create(self, ref: FakeRef, data: dict[str, Any]) -> None:
        self.writes.append(("create", ref.path, data))

    def set(self, ref: FakeRef, data: dict[str, Any], merge: bool = False) -> None:
        self.writes.append(("set", ref.path, data))

    def update(self, ref: FakeRef, data: dict[str, Any]) -> None:
        self.writes.append(("update", ref.path, data))

    def delete(self, ref: FakeRef) -> None:
        self.writes.append(("delete", ref.path, None))


class FakeDb:
    """Just enough of firestore.Client for FirestoreStore."""

    def __init__(self) -> None:
        self.docs: dict[tuple[str, str], dict[str, Any]] = {}
        self.reads: list[tuple[tuple[str, str], Any]] = []
        self.queries: list[tuple[FakeQuery, Any]] = []
        self.commits: list[int] = []
        self.transactions: list[FakeTransaction] = []
        self.fail_with: Exception | None = None
        self.next_id = 0

    def collection(self, name: str) -> FakeCollection:
        return FakeCollection(self, name)

    def batch(self) -> FakeBatch:
        return FakeBatch(self)

    def transaction(self, max_attempts: int) -> FakeTransaction:
        transaction = FakeTransaction(max_attempts)
        self.transactions.append(transaction)
        return transaction


@pytest.fixture
def db() -> FakeDb:
    return FakeDb()


@pytest.fixture
def firestore(db: FakeDb) -> FirestoreStore:
    return FirestoreStore(db, max_attempts=3)  # type: ignore[arg-type]


class TestDocuments:
    def test_get_missing_and_existing(self, firestore: FirestoreStore, db: FakeDb) -> None:
        assert firestore.get("users", "child1") is None

        firestore.set("users", "child1", {"userType": "child"})
        assert firestore.get("users", "child1") == {"userType": "child"}

    def test_query_applies_filters_order_and_limit(
        self, firestore: FirestoreStore, db: FakeDb
    ) -> None:
        db.docs[("relationships", "r1")] = {"isActive": True}
        db.docs[("users", "child1")] = {"userType": "child"}

        snapshots = firestore.query(
            "relationships",
            ("parentUserId", "==", "parent1"),
            ("isActive", "==", True),
            order_by="createdAt",
            descending=True,
            limit=10,
        )

        assert snapshots == [Snapshot("r1", {"isActive": True})]
        [(query, transaction)] = db.queries
        assert query.filters == [("parentUserId", "==", "parent1"), ("isActive", "==", True)]
        assert query.ordering == ("createdAt", "DESCENDING")
        assert query.limit_to == 10
        assert transaction is None


class TestErrorTranslation:
    @pytest.mark.parametrize(
        "error",
        [
            google_exceptions.ServiceUnavailable("backend down"),
            google_exceptions.DeadlineExceeded("too slow"),
            google_exceptions.RetryError("gave up", None),
        ],
    )
    def test_api_failures_are_transient(
        self, firestore: FirestoreStore, db: FakeDb, error: Exception
    ) -> None:
        db.fail_with = error
        with pytest.raises(TransientStoreFailure):
            firestore.get("users", "child1")
        with pytest.raises(TransientStoreFailure):
            firestore.query("users")

    def test_missing_document(self, firestore: FirestoreStore, db: FakeDb) -> None:
        db.fail_with = google_exceptions.NotFound("no such document")
        with pytest.raises(NotFound):
            firestore.set("users", "child1", {"a": 1})

    def test_failed_batch_commit(self, firestore: FirestoreStore, db: FakeDb) -> None:
        batch = firestore.batch()
        batch.delete("pairingRequests", "old")
        db.fail_with = google_exceptions.ServiceUnavailable("backend down")

        with pytest.raises(TransientStoreFailure):
            batch.commit()


class TestBatch:
    def test_commits_in_chunks(self, firestore: FirestoreStore, db: FakeDb) -> None:
        batch = firestore.batch()
        for i in range(2 * MAX_BATCH_WRITES + 1):
            batch.update("pairingRequests", f"code{i}", {"isExpired": True})

        assert batch.commit() == 2 * MAX_BATCH_WRITES + 1
        assert db.commits == [MAX_BATCH_WRITES, MAX_BATCH_WRITES, 1]

        # Committed writes are not replayed.
        assert batch.commit() == 0
        assert len(db.commits) == 3

    def test_mixed_writes(self, firestore: FirestoreStore, db: FakeDb) -> None:
        batch = firestore.batch()
        batch.set("users", "child1", {"a": 1}, merge=True)
        batch.update("relationships", "r1", {"missedHeartbeats": 2})
        batch.delete("pairingRequests", "old")

        assert batch.commit() == 3
        assert db.commits == [3]


class TestRunTransaction:
    @pytest.fixture(autouse=True)
    def plain_transactional(self, monkeypatch: pytest.MonkeyPatch) -> None:
        # The real decorator drives begin/commit RPCs on a live transaction.
        monkeypatch.setattr(firestore_store.firestore, "transactional", lambda fn: fn)

    def test_callback_gets_transaction_wrapper(
        self, firestore: FirestoreStore, db: FakeDb
    ) -> None:
        db.docs[("pairingRequests", "req1")] = {"pairCode": "482913", "isActive": False}

        def pair(transaction: Transaction) -> str:
            assert isinstance(transaction, firestore_store._FirestoreTransaction)
            request = transaction.get("pairingRequests", "req1")
            assert request is not None
            [snap] = transaction.query("pairingRequests", ("pairCode", "==", "482913"))
            assert snap.id == "req1"
            relationship_id = transaction.create("relationships", {"isActive": True})
            transaction.update("pairingRequests", "req1", {"isActive": True})
            transaction.set("users", "child1", {"isDevicePaired": True}, merge=True)
            transaction.delete("pairingRequests", "stale")
            return relationship_id

        relationship_id = firestore.run_transaction(pair)

        [transaction] = db.transactions
        assert transaction.max_attempts == 3
        assert relationship_id == "auto-1"
        assert db.reads == [(("pairingRequests", "req1"), transaction)]
        assert db.queries[0][1] is transaction
        assert [(kind, path) for kind, path, _ in transaction.writes] == [
            ("create", ("relationships", "auto-1")),
            ("update", ("pairingRequests", "req1")),
            ("set", ("users", "child1")),
            ("delete", ("pairingRequests", "stale")),
        ]

    def test_failure_inside_transaction_is_translated(
        self, firestore: FirestoreStore, db: FakeDb
    ) -> None:
        db.fail_with = google_exceptions.Aborted("contention")

        with pytest.raises(TransientStoreFailure):
            firestore.run_transaction(lambda transaction: transaction.get("users", "child1"))
