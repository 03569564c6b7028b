"""Firestore serialization helpers and the Firestore document store.

Handles conversion between Python snake_case and Firestore camelCase,
versioned parsing of stored documents, and the `DocumentStore`
implementation backed by google-cloud-firestore.
"""

import contextlib
import logging
import re
from collections.abc import Callable, Iterator
from datetime import datetime
from typing import Any, TypeVar

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore  # type: ignore[import-untyped]
from google.cloud.firestore_v1.base_query import FieldFilter  # type: ignore[import-untyped]
from pydantic import BaseModel, ValidationError

from .errors import MalformedDocument, NotFound, TransientStoreFailure
from .models import SCHEMA_VERSION
from .store import DEFAULT_MAX_ATTEMPTS, DocumentStore, Filter, Snapshot, Transaction, WriteBatch

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")

# Firestore rejects batches with more writes than this.
MAX_BATCH_WRITES = 500


def to_camel(string: str) -> str:
    """Convert snake_case to camelCase."""
    components = string.split("_")
    return components[0] + "".join(x.title() for x in components[1:])


def to_snake(string: str) -> str:
    """Convert camelCase to snake_case."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", string).lower()


def model_to_firestore(model: BaseModel) -> dict[str, Any]:
    """Convert a pydantic model to Firestore document format.

    - Converts field names from snake_case to camelCase
    - Keeps datetimes as-is (Firestore stores them as timestamps)
    - Converts enums to their string values
    """
    data = model.model_dump(mode="python")
    return _convert_keys_to_camel(data)


def _convert_keys_to_camel(data: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in data.items():
        camel_key = to_camel(key)
        if isinstance(value, dict):
            result[camel_key] = _convert_keys_to_camel(value)
        elif isinstance(value, list):
            result[camel_key] = [_plain(item) for item in value]
        else:
            result[camel_key] = _plain(value)
    return result


def _plain(value: Any) -> Any:
    # StrEnum members are str subclasses; store the bare value.
    if isinstance(value, str) and type(value) is not str:
        return str(value)
    return value


def firestore_to_dict(data: dict[str, Any]) -> dict[str, Any]:
    """Convert Firestore document to snake_case dict for pydantic parsing."""
    return _convert_keys_to_snake(data)


def _convert_keys_to_snake(data: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in data.items():
        snake_key = to_snake(key)
        if isinstance(value, dict):
            result[snake_key] = _convert_keys_to_snake(value)
        else:
            result[snake_key] = value
    return result


def _migrate_v0(data: dict[str, Any]) -> dict[str, Any]:
    """Documents written by the first app releases carry no schemaVersion."""
    migrated = dict(data)
    if "unpairedAt" in migrated and "unlinkedAt" not in migrated:
        migrated["unlinkedAt"] = migrated.pop("unpairedAt")
    reset = migrated.get("lastResetDate")
    if isinstance(reset, datetime):
        migrated["lastResetDate"] = reset.date().isoformat()
    migrated["schemaVersion"] = 1
    return migrated


# schemaVersion found -> function producing the next version
MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    0: _migrate_v0,
}


def migrate(data: dict[str, Any]) -> dict[str, Any]:
    """Bring a stored document up to the current schema version."""
    version = data.get("schemaVersion", 0)
    if not isinstance(version, int) or version > SCHEMA_VERSION:
        raise MalformedDocument(f"Unsupported schemaVersion: {version!r}")
    while version < SCHEMA_VERSION:
        data = MIGRATIONS[version](data)
        version = data["schemaVersion"]
    return data


def parse_document(model: type[M], data: dict[str, Any] | None, doc_id: str = "") -> M:
    """Parse a stored document into ``model``.

    Raises MalformedDocument when the document is missing or does not match
    the schema; callers decide whether to skip or surface it.
    """
    if data is None:
        raise MalformedDocument(f"Empty document {doc_id}")
    try:
        return model.model_validate(firestore_to_dict(migrate(data)))
    except ValidationError as e:
        raise MalformedDocument(f"Invalid {model.__name__} document {doc_id}: {e}") from e


@contextlib.contextmanager
def _store_errors() -> Iterator[None]:
    """Translate Google API failures into TransientStoreFailure."""
    try:
        yield
    except google_exceptions.NotFound as e:
        raise NotFound(str(e)) from e
    except google_exceptions.GoogleAPICallError as e:
        raise TransientStoreFailure(str(e)) from e
    except google_exceptions.RetryError as e:
        raise TransientStoreFailure(str(e)) from e


class FirestoreStore(DocumentStore):
    """DocumentStore backed by a google-cloud-firestore client."""

    def __init__(self, db: firestore.Client, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self._db = db
        self._max_attempts = max_attempts

    def _ref(self, collection: str, doc_id: str) -> firestore.DocumentReference:
        return self._db.collection(collection).document(doc_id)

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with _store_errors():
            doc = self._ref(collection, doc_id).get()
        return doc.to_dict() if doc.exists else None

    def add(self, collection: str, data: dict[str, Any]) -> str:
        with _store_errors():
            _, doc_ref = self._db.collection(collection).add(data)
        return doc_ref.id

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        with _store_errors():
            self._ref(collection, doc_id).set(data, merge=merge)

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        with _store_errors():
            self._ref(collection, doc_id).update(data)

    def delete(self, collection: str, doc_id: str) -> None:
        with _store_errors():
            self._ref(collection, doc_id).delete()

    def query(
        self,
        collection: str,
        *filters: Filter,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Snapshot]:
        query = _build_query(self._db.collection(collection), filters)
        if order_by is not None:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        if limit is not None:
            query = query.limit(limit)
        with _store_errors():
            return [Snapshot(doc.id, doc.to_dict()) for doc in query.stream()]

    def batch(self) -> WriteBatch:
        return _FirestoreBatch(self._db)

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        transaction = self._db.transaction(max_attempts=self._max_attempts)

        @firestore.transactional
        def run_in_transaction(transaction: firestore.Transaction) -> T:
            return fn(_FirestoreTransaction(self._db, transaction))

        with _store_errors():
            return run_in_transaction(transaction)


def _build_query(query: Any, filters: tuple[Filter, ...]) -> Any:
    for field_name, op, value in filters:
        query = query.where(filter=FieldFilter(field_name, op, value))
    return query


class _FirestoreTransaction(Transaction):
    def __init__(self, db: firestore.Client, transaction: firestore.Transaction):
        self._db = db
        self._transaction = transaction

    def _ref(self, collection: str, doc_id: str) -> firestore.DocumentReference:
        return self._db.collection(collection).document(doc_id)

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        doc = self._ref(collection, doc_id).get(transaction=self._transaction)
        return doc.to_dict() if doc.exists else None

    def query(self, collection: str, *filters: Filter) -> list[Snapshot]:
        query = _build_query(self._db.collection(collection), filters)
        return [
            Snapshot(doc.id, doc.to_dict())
            for doc in query.stream(transaction=self._transaction)
        ]

    def create(self, collection: str, data: dict[str, Any]) -> str:
        doc_ref = self._db.collection(collection).document()
        self._transaction.create(doc_ref, data)
        return doc_ref.id

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        self._transaction.set(self._ref(collection, doc_id), data, merge=merge)

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._transaction.update(self._ref(collection, doc_id), data)

    def delete(self, collection: str, doc_id: str) -> None:
        self._transaction.delete(self._ref(collection, doc_id))


class _FirestoreBatch(WriteBatch):
    """Write batch that commits in chunks Firestore accepts."""

    def __init__(self, db: firestore.Client):
        self._db = db
        self._writes: list[Callable[[Any], None]] = []

    def _ref(self, collection: str, doc_id: str) -> firestore.DocumentReference:
        return self._db.collection(collection).document(doc_id)

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        ref = self._ref(collection, doc_id)
        self._writes.append(lambda batch: batch.set(ref, data, merge=merge))

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        ref = self._ref(collection, doc_id)
        self._writes.append(lambda batch: batch.update(ref, data))

    def delete(self, collection: str, doc_id: str) -> None:
        ref = self._ref(collection, doc_id)
        self._writes.append(lambda batch: batch.delete(ref))

    def commit(self) -> int:
        committed = 0
        for start in range(0, len(self._writes), MAX_BATCH_WRITES):
            chunk = self._writes[start : start + MAX_BATCH_WRITES]
            batch = self._db.batch()
            for write in chunk:
                write(batch)
            with _store_errors():
                batch.commit()
            committed += len(chunk)
            logger.debug("Committed batch of %d writes", len(chunk))
        self._writes = []
        return committed
