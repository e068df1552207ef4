"""
Google Cloud Firestore store backend.

Translates firedoc query specs into Firestore queries and Google API
errors into the firedoc error taxonomy. Each run_attempt() is a single
Firestore transaction attempt; retrying on conflict is left to the caller.
"""

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from google.api_core import exceptions as gexc
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter as FirestoreFieldFilter
from loguru import logger

from ..exceptions import (
    DocumentAlreadyExistsError,
    DocumentNotFoundError,
    OperationCanceledError,
    StoreOperationError,
    TransactionConflictError,
    TransientStoreError,
)
from ..query import Document, QuerySpec
from .base import BackendTransaction, ChangeKind, StoreBackend, Subscription, T, WatchEvent

OPERATOR_MAP = {
    "==": "==",
    "!=": "!=",
    "<": "<",
    "<=": "<=",
    ">": ">",
    ">=": ">=",
    "array-contains": "array_contains",
    "array-contains-any": "array_contains_any",
    "in": "in",
    "not-in": "not-in",
}

TRANSIENT_ERRORS = (
    gexc.ServiceUnavailable,
    gexc.DeadlineExceeded,
    gexc.InternalServerError,
    gexc.TooManyRequests,
    gexc.RetryError,
)


def translate_error(error: BaseException, operation: str, path: Optional[str] = None) -> StoreOperationError:
    """
    Map a Google API error onto the firedoc error taxonomy.

    Args:
        error: Error raised by the Firestore client
        operation: Name of the failed operation
        path: Document or collection path involved

    Returns:
        StoreOperationError subclass instance (not raised)
    """
    if isinstance(error, gexc.NotFound):
        cls, message = DocumentNotFoundError, f"Document not found: {path}"
    elif isinstance(error, gexc.AlreadyExists):
        cls, message = DocumentAlreadyExistsError, f"Document already exists: {path}"
    elif isinstance(error, gexc.Aborted):
        cls, message = TransactionConflictError, f"Transaction aborted: {str(error)}"
    elif isinstance(error, gexc.Cancelled):
        cls, message = OperationCanceledError, f"Operation canceled: {str(error)}"
    elif isinstance(error, TRANSIENT_ERRORS):
        cls, message = TransientStoreError, f"Store temporarily unavailable: {str(error)}"
    else:
        cls, message = StoreOperationError, f"Store operation failed: {str(error)}"

    return cls(message, operation=operation, path=path)


@contextmanager
def _translated(operation: str, path: Optional[str] = None):
    try:
        yield
    except gexc.GoogleAPIError as e:
        raise translate_error(e, operation, path) from e


def _to_document(snapshot: Any) -> Document:
    return Document(
        path=snapshot.reference.path,
        data=snapshot.to_dict() if snapshot.exists else None,
        exists=snapshot.exists,
        create_time=snapshot.create_time,
        update_time=snapshot.update_time,
    )


def _subscription(watch: Any) -> Subscription:
    # the Watch closes itself, without a final snapshot, when its stream fails for good
    return Subscription(watch.unsubscribe, lambda: getattr(watch, "is_active", True))


def _change_kind(change_type: Any) -> ChangeKind:
    name = getattr(change_type, "name", str(change_type))
    try:
        return ChangeKind[name]
    except KeyError:
        logger.error(f"Missing remap for Firestore change type {change_type}")
        return ChangeKind.ERROR


class FirestoreTransaction(BackendTransaction):
    """Wraps one google.cloud.firestore.Transaction attempt."""

    def __init__(self, backend: 'FirestoreBackend', transaction: Any):
        self._backend = backend
        self._transaction = transaction

    def get(self, path: str) -> Optional[Document]:
        with _translated("transaction.get", path):
            snapshot = self._backend.client.document(path).get(
                transaction=self._transaction, **self._backend.call_options)
        return _to_document(snapshot) if snapshot.exists else None

    def run_query(self, spec: QuerySpec) -> Iterator[Document]:
        return self._backend._stream(spec, transaction=self._transaction)

    def create(self, path: str, data: Dict[str, Any]) -> None:
        with _translated("transaction.create", path):
            self._transaction.create(self._backend.client.document(path), data)

    def set(self, path: str, data: Dict[str, Any]) -> None:
        with _translated("transaction.set", path):
            self._transaction.set(self._backend.client.document(path), data)

    def delete(self, path: str) -> None:
        with _translated("transaction.delete", path):
            self._transaction.delete(self._backend.client.document(path))


class FirestoreBackend(StoreBackend):
    """Store backend on top of a google.cloud.firestore.Client."""

    def __init__(self, client: firestore.Client, timeout: Optional[float] = None):
        """
        Initialize FirestoreBackend.

        Args:
            client: Firestore client owning the connection
            timeout: Deadline in seconds for each request (client default when None)
        """
        self.client = client
        self.timeout = timeout
        self.call_options = {"timeout": timeout} if timeout is not None else {}
        logger.info(f"Firestore backend initialized for project {getattr(client, 'project', None)}")

    def get(self, path: str) -> Optional[Document]:
        with _translated("get", path):
            snapshot = self.client.document(path).get(**self.call_options)
        return _to_document(snapshot) if snapshot.exists else None

    def create(self, path: str, data: Dict[str, Any]) -> None:
        with _translated("create", path):
            self.client.document(path).create(data, **self.call_options)

    def set(self, path: str, data: Dict[str, Any]) -> None:
        with _translated("set", path):
            self.client.document(path).set(data, **self.call_options)

    def delete(self, path: str) -> None:
        with _translated("delete", path):
            self.client.document(path).delete(**self.call_options)

    def new_document_path(self, collection: str) -> str:
        return self.client.collection(collection).document().path

    def build_query(self, spec: QuerySpec) -> Any:
        """Translate a QuerySpec into a Firestore query."""
        if spec.all_descendants:
            query = self.client.collection_group(spec.collection)
        else:
            query = self.client.collection(spec.collection)

        for f in spec.filters:
            value = list(f.value) if isinstance(f.value, tuple) else f.value
            query = query.where(filter=FirestoreFieldFilter(f.field, OPERATOR_MAP[f.op], value))

        for ordering in spec.orders:
            query = query.order_by(ordering.field, direction=ordering.direction.value)

        if spec.projection is not None:
            query = query.select(list(spec.projection))

        if spec.start is not None:
            values = list(spec.start.values)
            query = query.start_at(values) if spec.start.inclusive else query.start_after(values)

        if spec.end is not None:
            values = list(spec.end.values)
            query = query.end_at(values) if spec.end.inclusive else query.end_before(values)

        if spec.offset:
            query = query.offset(spec.offset)

        if spec.limit is not None:
            query = query.limit_to_last(spec.limit) if spec.limit_to_last else query.limit(spec.limit)

        return query

    def _stream(self, spec: QuerySpec, transaction: Any = None) -> Iterator[Document]:
        query = self.build_query(spec)
        with _translated("run_query", spec.collection):
            # limit_to_last queries cannot be streamed
            if spec.limit_to_last:
                snapshots = query.get(transaction=transaction, **self.call_options)
            else:
                snapshots = query.stream(transaction=transaction, **self.call_options)
            for snapshot in snapshots:
                yield _to_document(snapshot)

    def run_query(self, spec: QuerySpec) -> Iterator[Document]:
        return self._stream(spec)

    def list_collections(self, path: Optional[str] = None) -> List[str]:
        with _translated("list_collections", path):
            if path:
                collections = self.client.document(path).collections(**self.call_options)
            else:
                collections = self.client.collections(**self.call_options)
            return [collection.id for collection in collections]

    def run_attempt(self, fn: Callable[[BackendTransaction], T]) -> T:
        # one attempt per call; conflicts surface as TransactionConflictError
        transaction = self.client.transaction(max_attempts=1)

        @firestore.transactional
        def attempt(native_transaction):
            return fn(FirestoreTransaction(self, native_transaction))

        try:
            return attempt(transaction)
        except ValueError as e:
            if isinstance(e.__cause__, gexc.Aborted):
                raise TransactionConflictError(
                    f"Transaction lost a write conflict: {str(e.__cause__)}",
                    operation="commit"
                ) from e
            raise
        except gexc.GoogleAPIError as e:
            raise translate_error(e, "commit") from e

    def watch_document(self, path: str, callback: Callable[[Document], None],
                       on_error: Callable[[BaseException], None]) -> Subscription:
        def on_snapshot(snapshots, changes, read_time):
            try:
                for snapshot in snapshots:
                    callback(_to_document(snapshot))
            except Exception as e:
                on_error(e)

        with _translated("watch_document", path):
            watch = self.client.document(path).on_snapshot(on_snapshot)
        return _subscription(watch)

    def watch_query(self, spec: QuerySpec, callback: Callable[[WatchEvent], None],
                    on_error: Callable[[BaseException], None]) -> Subscription:
        def on_snapshot(snapshots, changes, read_time):
            try:
                callback(WatchEvent(
                    documents=[_to_document(snapshot) for snapshot in snapshots],
                    changes=[(_change_kind(change.type), _to_document(change.document)) for change in changes],
                ))
            except Exception as e:
                on_error(e)

        with _translated("watch_query", spec.collection):
            watch = self.build_query(spec).on_snapshot(on_snapshot)
        return _subscription(watch)

    def close(self) -> None:
        self.client.close()
        logger.info("Firestore backend closed")
