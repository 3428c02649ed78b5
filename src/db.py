from __future__ import annotations

from threading import Lock
from typing import Any, Callable, Iterable, Protocol, Sequence, TypeVar

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from src.config import settings


T = TypeVar("T")

# Firestore caps a single batch or transaction at 500 writes.
FIRESTORE_MAX_OPERATIONS_PER_COMMIT = 500


class AtomicUnit(Protocol):
    """Writes staged here commit together or not at all. Reads come before writes."""

    def existing(self, paths: Sequence[str]) -> set[str]: ...

    def set(self, path: str, data: dict[str, Any]) -> None: ...

    def increment(self, path: str, counters: dict[str, int]) -> None: ...


class DocumentStore(Protocol):
    max_operations_per_commit: int

    def run_atomic(self, work: Callable[[AtomicUnit], T]) -> T: ...

    def get(self, path: str) -> dict[str, Any] | None: ...

    def query(
        self,
        collection_path: str,
        *,
        filters: Iterable[tuple[str, str, Any]] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    def add(self, collection_path: str, data: dict[str, Any]) -> str: ...


class _FirestoreAtomicUnit:
    def __init__(self, client: firestore.Client, transaction: firestore.Transaction):
        self._client = client
        self._transaction = transaction

    def existing(self, paths: Sequence[str]) -> set[str]:
        if not paths:
            return set()
        refs = [self._client.document(path) for path in paths]
        return {
            snapshot.reference.path
            for snapshot in self._client.get_all(refs, transaction=self._transaction)
            if snapshot.exists
        }

    def set(self, path: str, data: dict[str, Any]) -> None:
        self._transaction.set(self._client.document(path), data)

    def increment(self, path: str, counters: dict[str, int]) -> None:
        # update fails on a missing document; callers check existence first
        self._transaction.update(
            self._client.document(path),
            {field: firestore.Increment(amount) for field, amount in counters.items()},
        )


class FirestoreDocumentStore:
    def __init__(
        self,
        client: firestore.Client,
        *,
        max_operations_per_commit: int = FIRESTORE_MAX_OPERATIONS_PER_COMMIT,
        max_attempts: int = 5,
    ):
        self._client = client
        self.max_operations_per_commit = min(max_operations_per_commit, FIRESTORE_MAX_OPERATIONS_PER_COMMIT)
        self.max_attempts = max_attempts

    def run_atomic(self, work: Callable[[AtomicUnit], T]) -> T:
        transaction = self._client.transaction(max_attempts=self.max_attempts)

        @firestore.transactional
        def _run(txn: firestore.Transaction) -> T:
            return work(_FirestoreAtomicUnit(self._client, txn))

        return _run(transaction)

    def get(self, path: str) -> dict[str, Any] | None:
        snapshot = self._client.document(path).get()
        if not snapshot.exists:
            return None
        return {"id": snapshot.id, **(snapshot.to_dict() or {})}

    def query(
        self,
        collection_path: str,
        *,
        filters: Iterable[tuple[str, str, Any]] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        query = self._client.collection(collection_path)
        for field, op, value in filters:
            query = query.where(filter=FieldFilter(field, op, value))
        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        if limit is not None:
            query = query.limit(limit)
        return [{"id": doc.id, **(doc.to_dict() or {})} for doc in query.stream()]

    def add(self, collection_path: str, data: dict[str, Any]) -> str:
        _, ref = self._client.collection(collection_path).add(data)
        return ref.id


_store: DocumentStore | None = None
_store_lock = Lock()


def get_store() -> DocumentStore:
    global _store
    with _store_lock:
        if _store is None:
            client = firestore.Client(
                project=settings.gcp_project_id,
                database=settings.firestore_database,
            )
            _store = FirestoreDocumentStore(
                client,
                max_operations_per_commit=settings.engagement_commit_max_operations,
            )
        return _store
