"""Document store interface and the in-process implementation.

Services talk to a `DocumentStore` instead of a Firestore client directly so
the same code runs against Firestore (`watchwise_shared.firestore.FirestoreStore`)
and against `MemoryStore` for local runs and tests. Documents are plain dicts
with camelCase keys, exactly as they are stored.
"""

import copy
import itertools
import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .errors import NotFound, TransientStoreFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (field, operator, value); operators: ==, !=, <, <=, >, >=, in
Filter = tuple[str, str, Any]

DEFAULT_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class Snapshot:
    """A document read from a query."""

    id: str
    data: dict[str, Any]


class Transaction:
    """Reads and buffered writes that commit atomically.

    All reads must happen before the first write, as with Firestore.
    """

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def query(self, collection: str, *filters: Filter) -> list[Snapshot]:
        raise NotImplementedError

    def create(self, collection: str, data: dict[str, Any]) -> str:
        """Create a document with a generated id and return the id."""
        raise NotImplementedError

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        raise NotImplementedError

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        raise NotImplementedError

    def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError


class WriteBatch:
    """Blind writes applied together on commit."""

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        raise NotImplementedError

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        raise NotImplementedError

    def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError

    def commit(self) -> int:
        """Apply the writes. Returns the number of writes applied."""
        raise NotImplementedError


class DocumentStore:
    """Keyed document collections with queries, batches and transactions."""

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def add(self, collection: str, data: dict[str, Any]) -> str:
        raise NotImplementedError

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        raise NotImplementedError

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Update fields of an existing document. Raises NotFound if absent."""
        raise NotImplementedError

    def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError

    def query(
        self,
        collection: str,
        *filters: Filter,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Snapshot]:
        raise NotImplementedError

    def batch(self) -> WriteBatch:
        raise NotImplementedError

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """Run ``fn`` in a transaction, retrying it on write conflicts.

        Exceptions raised by ``fn`` abort the transaction without writes.
        """
        raise NotImplementedError


def matches(data: dict[str, Any], filters: tuple[Filter, ...]) -> bool:
    """Evaluate query filters against a document, Firestore style.

    Documents missing a filtered field never match.
    """
    for field_name, op, value in filters:
        if field_name not in data:
            return False
        current = data[field_name]
        try:
            if op == "==":
                ok = current == value
            elif op == "!=":
                ok = current != value
            elif op == "<":
                ok = current is not None and current < value
            elif op == "<=":
                ok = current is not None and current <= value
            elif op == ">":
                ok = current is not None and current > value
            elif op == ">=":
                ok = current is not None and current >= value
            elif op == "in":
                ok = current in value
            else:
                raise ValueError(f"Unsupported filter operator: {op}")
        except TypeError:
            ok = False
        if not ok:
            return False
    return True


class _Conflict(Exception):
    pass


@dataclass
class _Record:
    version: int
    data: dict[str, Any]


class MemoryStore(DocumentStore):
    """Thread-safe in-process document store.

    Transactions are optimistic: every document (and query result) read in a
    transaction is validated against its version at commit, and the
    transaction function is re-run on conflict.
    """

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self._collections: dict[str, dict[str, _Record]] = {}
        self._lock = threading.RLock()
        self._versions = itertools.count(1)
        self._max_attempts = max_attempts

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._docs(collection).get(doc_id)
            return copy.deepcopy(record.data) if record else None

    def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = new_document_id()
        self.set(collection, doc_id, data)
        return doc_id

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        with self._lock:
            self._write_set(collection, doc_id, data, merge)

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        with self._lock:
            self._write_update(collection, doc_id, data)

    def delete(self, collection: str, doc_id: str) -> None:
        with self._lock:
            self._docs(collection).pop(doc_id, None)

    def query(
        self,
        collection: str,
        *filters: Filter,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Snapshot]:
        with self._lock:
            results = [
                Snapshot(doc_id, copy.deepcopy(record.data))
                for doc_id, record in self._select(collection, filters)
            ]
        if order_by is not None:
            results = [s for s in results if order_by in s.data]
            results.sort(key=lambda s: s.data[order_by], reverse=descending)
        if limit is not None:
            results = results[:limit]
        return results

    def batch(self) -> WriteBatch:
        return _MemoryBatch(self)

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        for attempt in range(1, self._max_attempts + 1):
            transaction = _MemoryTransaction(self)
            result = fn(transaction)
            try:
                self._commit(transaction)
            except _Conflict:
                logger.debug("Transaction conflict, retrying (attempt %d)", attempt)
                continue
            return result
        raise TransientStoreFailure(
            f"Transaction failed after {self._max_attempts} attempts"
        )

    def _docs(self, collection: str) -> dict[str, _Record]:
        return self._collections.setdefault(collection, {})

    def _select(
        self, collection: str, filters: tuple[Filter, ...]
    ) -> list[tuple[str, _Record]]:
        return [
            (doc_id, record)
            for doc_id, record in sorted(self._docs(collection).items())
            if matches(record.data, filters)
        ]

    def _version_of(self, collection: str, doc_id: str) -> int | None:
        record = self._docs(collection).get(doc_id)
        return record.version if record else None

    def _write_set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool
    ) -> None:
        docs = self._docs(collection)
        existing = docs.get(doc_id)
        if merge and existing is not None:
            merged = copy.deepcopy(existing.data)
            merged.update(copy.deepcopy(data))
        else:
            merged = copy.deepcopy(data)
        docs[doc_id] = _Record(next(self._versions), merged)

    def _write_update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        existing = self._docs(collection).get(doc_id)
        if existing is None:
            raise NotFound(f"No document to update: {collection}/{doc_id}")
        self._write_set(collection, doc_id, data, merge=True)

    def _commit(self, transaction: "_MemoryTransaction") -> None:
        with self._lock:
            for (collection, doc_id), version in transaction.reads.items():
                if self._version_of(collection, doc_id) != version:
                    raise _Conflict()
            for collection, filters, seen in transaction.queries:
                current = {
                    doc_id: record.version
                    for doc_id, record in self._select(collection, filters)
                }
                if current != seen:
                    raise _Conflict()
            self._apply(transaction.writes)

    def _apply(self, writes: list["_Write"]) -> None:
        self._check_updates(writes)
        for kind, collection, doc_id, data, merge in writes:
            if kind == "set":
                self._write_set(collection, doc_id, data, merge)
            elif kind == "update":
                self._write_update(collection, doc_id, data)
            else:
                self._docs(collection).pop(doc_id, None)

    def _check_updates(self, writes: list["_Write"]) -> None:
        # Updates of missing documents abort the whole commit before any write.
        present: dict[tuple[str, str], bool] = {}
        for kind, collection, doc_id, _, _ in writes:
            key = (collection, doc_id)
            exists = present.get(key, doc_id in self._docs(collection))
            if kind == "update" and not exists:
                raise NotFound(f"No document to update: {collection}/{doc_id}")
            present[key] = kind != "delete"


# (kind, collection, doc_id, data, merge)
_Write = tuple[str, str, str, dict[str, Any], bool]


class _MemoryTransaction(Transaction):
    def __init__(self, store: MemoryStore):
        self._store = store
        self.reads: dict[tuple[str, str], int | None] = {}
        self.queries: list[tuple[str, tuple[Filter, ...], dict[str, int]]] = []
        self.writes: list[_Write] = []

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self._store._lock:
            self.reads[(collection, doc_id)] = self._store._version_of(collection, doc_id)
            return self._store.get(collection, doc_id)

    def query(self, collection: str, *filters: Filter) -> list[Snapshot]:
        with self._store._lock:
            selected = self._store._select(collection, filters)
            self.queries.append(
                (collection, filters, {doc_id: record.version for doc_id, record in selected})
            )
            return [Snapshot(doc_id, copy.deepcopy(record.data)) for doc_id, record in selected]

    def create(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = new_document_id()
        self.set(collection, doc_id, data)
        return doc_id

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        self.writes.append(("set", collection, doc_id, copy.deepcopy(data), merge))

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self.writes.append(("update", collection, doc_id, copy.deepcopy(data), True))

    def delete(self, collection: str, doc_id: str) -> None:
        self.writes.append(("delete", collection, doc_id, {}, False))


class _MemoryBatch(WriteBatch):
    def __init__(self, store: MemoryStore):
        self._store = store
        self._writes: list[_Write] = []

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        self._writes.append(("set", collection, doc_id, copy.deepcopy(data), merge))

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._writes.append(("update", collection, doc_id, copy.deepcopy(data), True))

    def delete(self, collection: str, doc_id: str) -> None:
        self._writes.append(("delete", collection, doc_id, {}, False))

    def commit(self) -> int:
        with self._store._lock:
            self._store._apply(self._writes)
        count = len(self._writes)
        self._writes = []
        return count


def new_document_id() -> str:
    """Generate a 20-character document id like Firestore auto-ids."""
    return uuid.uuid4().hex[:20]
