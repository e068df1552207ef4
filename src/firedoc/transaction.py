"""
Transactions for firedoc library.

run_transaction() executes caller functions against one store transaction
and commits them as a unit. When the commit loses a write conflict the
whole unit, reads included, is discarded and run again from scratch with a
new transaction. Functions passed in must therefore be safe to run more
than once: no emails, no external calls that cannot be repeated.

Example:
    def move_credit(tx):
        src = tx.get("accounts/a")
        dst = tx.get("accounts/b")
        src["credit"] -= 1
        dst["credit"] += 1
        tx.add_or_replace("accounts/a", src)
        tx.add_or_replace("accounts/b", dst)

    store.run_transaction(move_credit)
"""

import threading
import time
from typing import Any, Callable, Iterator, Optional, Type, TypeVar

from .exceptions import (
    DocumentNotFoundError,
    OperationCanceledError,
    RetryExhaustedError,
    TransactionConflictError,
    ValidationError,
)
from .query import Document, DocumentIterator, Query, QuerySpec
from .serialization import encode
from .utils import (
    backoff_delay,
    escape,
    timing_context,
    unescape,
    validate_collection_path,
    validate_document_path,
)

T = TypeVar('T')

TransactionFunc = Callable[['Transaction'], Any]


class Transaction:
    """
    Transaction context handed to functions run by run_transaction().

    Offers the same document operations as DocumentStore, applied against
    one store transaction. Not safe for use from more than one thread.
    """

    def __init__(self, store: Any, handle: Any, cancel: Optional[threading.Event] = None):
        self._store = store
        self._handle = handle
        self._cancel = cancel
        self.log = store.log

    @property
    def store(self) -> Any:
        return self._store

    def check_canceled(self, operation: str = "transaction") -> None:
        """Raise OperationCanceledError if the transaction's cancel event is set."""
        if self._cancel is not None and self._cancel.is_set():
            raise OperationCanceledError(f"{operation} canceled", operation=operation)

    def get(self, path: str, target: Optional[Type[T]] = None) -> Any:
        """
        Read a document inside the transaction.

        Raises:
            DocumentNotFoundError: If the document doesn't exist
        """
        path = validate_document_path(path)
        self.check_canceled("transaction.get")
        doc = self._handle.get(path)
        if doc is None or not doc.exists:
            raise DocumentNotFoundError(f"Document not found: {path}", operation="transaction.get", path=path)
        return doc.to(target)

    def exists(self, path: str) -> bool:
        path = validate_document_path(path)
        self.check_canceled("transaction.exists")
        doc = self._handle.get(path)
        return doc is not None and doc.exists

    def add(self, path: str, value: Any) -> None:
        """Create a document; the commit fails if it already exists."""
        path = validate_document_path(path)
        self.check_canceled("transaction.add")
        data = encode(value)
        self._handle.create(path, data)
        self.log.debug(f"transaction add {path}: {data!r}")

    def add_or_replace(self, path: str, value: Any) -> None:
        path = validate_document_path(path)
        self.check_canceled("transaction.add_or_replace")
        data = encode(value)
        self._handle.set(path, data)
        self.log.debug(f"transaction add_or_replace {path}")

    def delete(self, path: str) -> None:
        path = validate_document_path(path)
        self.check_canceled("transaction.delete")
        self._handle.delete(path)
        self.log.debug(f"transaction delete {path}")

    def query(self, collection: str) -> Query:
        """Build a query whose documents() runs inside this transaction."""
        return Query(self, QuerySpec(collection=validate_collection_path(collection)))

    def query_group(self, collection_id: str) -> Query:
        return Query(self, QuerySpec(collection=_collection_id(collection_id), all_descendants=True))

    def documents(self, collection: str) -> DocumentIterator:
        return self.query(collection).documents()

    def query_iterator(self, collection: str, field_path: str, op: str, value: Any) -> DocumentIterator:
        return self.query(collection).where(field_path, op, value).documents()

    def run_query(self, spec: QuerySpec, cancel: Optional[threading.Event] = None) -> Iterator[Document]:
        if cancel is None:
            cancel = self._cancel
        self.check_canceled("transaction.run_query")
        documents = self._handle.run_query(spec)
        if cancel is None:
            return documents
        return _until_canceled(documents, cancel)

    def escape(self, raw: str) -> str:
        return escape(raw)

    def unescape(self, s: str) -> str:
        return unescape(s)


def _until_canceled(documents: Iterator[Document], cancel: threading.Event) -> Iterator[Document]:
    for doc in documents:
        if cancel.is_set():
            raise OperationCanceledError("transaction.run_query canceled", operation="transaction.run_query")
        yield doc


def _collection_id(collection_id: str) -> str:
    if not collection_id or '/' in collection_id:
        raise ValidationError(
            f"Collection group id must be a single non-empty segment: {collection_id}",
            field="collection_id",
            value=collection_id
        )
    return collection_id


def run_transaction(store: Any, *funcs: TransactionFunc, max_attempts: Optional[int] = None,
                    cancel: Optional[threading.Event] = None) -> Any:
    """
    Run funcs in order inside one transaction, retrying the unit on conflict.

    Args:
        store: DocumentStore that owns the backend
        *funcs: Functions taking a Transaction; the last return value is returned
        max_attempts: Attempt ceiling (defaults to the store's setting)
        cancel: Event that aborts the transaction; checked before each attempt,
            before each operation, before commit and during backoff

    Returns:
        Return value of the last function

    Raises:
        RetryExhaustedError: If every attempt lost a write conflict
        OperationCanceledError: If cancel was set
        Any exception raised by funcs, unchanged
    """
    if not funcs:
        raise ValidationError("run_transaction needs at least one function", field="funcs")

    attempts = store.transaction_max_attempts if max_attempts is None else max_attempts
    if attempts < 1:
        raise ValidationError("max_attempts must be at least 1", field="max_attempts", value=attempts)

    def attempt_unit(handle):
        tx = Transaction(store, handle, cancel)
        result = None
        for func in funcs:
            result = func(tx)
        # raising here discards the attempt instead of committing it
        tx.check_canceled("run_transaction")
        return result

    last_conflict = None
    for attempt in range(attempts):
        if cancel is not None and cancel.is_set():
            raise OperationCanceledError("Transaction canceled", operation="run_transaction")

        try:
            with timing_context(f"run_transaction(attempt={attempt + 1}/{attempts})"):
                return store.backend.run_attempt(attempt_unit)
        except TransactionConflictError as e:
            last_conflict = e

        if attempt == attempts - 1:
            break

        delay = backoff_delay(attempt, store.transaction_base_delay, store.transaction_max_delay)
        store.log.warning(
            f"Transaction conflict on attempt {attempt + 1}/{attempts}: {last_conflict}. "
            f"Retrying in {delay:.3f} seconds..."
        )
        if cancel is not None:
            if cancel.wait(delay):
                raise OperationCanceledError("Transaction canceled", operation="run_transaction")
        else:
            time.sleep(delay)

    store.log.error(f"Transaction failed after {attempts} attempts: {last_conflict}")
    raise RetryExhaustedError(
        f"Transaction failed after {attempts} attempts",
        operation="run_transaction",
        attempts=attempts,
        last_error=last_conflict
    ) from last_conflict
