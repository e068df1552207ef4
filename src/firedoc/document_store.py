"""
High-level DocumentStore API for firedoc library.

This module provides the main DocumentStore class that serves as the primary
interface for document operations, queries, transactions and listening.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Type, TypeVar

from loguru import logger

from . import atomic, listen
from .backends.base import StoreBackend
from .exceptions import DocumentNotFoundError, FiredocError, OperationCanceledError, TransientStoreError
from .query import Document, DocumentIterator, Query, QuerySpec, Where
from .serialization import encode
from .transaction import TransactionFunc, _collection_id, run_transaction
from .utils import (
    call_cancellable,
    escape,
    retry_with_backoff,
    timing_context,
    unescape,
    validate_collection_path,
    validate_document_path,
)

T = TypeVar('T')


class DocumentStore:
    """
    Path-addressed document store on top of a store backend.

    Every single-document call is independently atomic at the store.
    Multi-document read-modify-write sequences go through run_transaction()
    or the atomic_* helpers. Safe to share between threads.

    Example:
        with create_document_store() as store:
            store.add("users/alice", {"name": "Alice"})
            user = store.get("users/alice", User)
    """

    def __init__(
        self,
        backend: StoreBackend,
        log: Any = None,
        transaction_max_attempts: int = 5,
        transaction_base_delay: float = 0.05,
        transaction_max_delay: float = 2.0,
        retry_attempts: int = 3,
        max_workers: int = 4,
    ):
        """
        Initialize DocumentStore.

        Args:
            backend: Store backend owning the connection
            log: loguru logger to write diagnostics to (defaults to a bound global logger)
            transaction_max_attempts: Attempts per run_transaction() before giving up
            transaction_base_delay: First conflict backoff delay (seconds)
            transaction_max_delay: Cap on the conflict backoff delay (seconds)
            retry_attempts: Attempts for idempotent calls hitting transient errors
            max_workers: Worker threads for calls made with a cancel event
        """
        self.backend = backend
        self.log = log or logger.bind(component="firedoc")
        self.transaction_max_attempts = transaction_max_attempts
        self.transaction_base_delay = transaction_base_delay
        self.transaction_max_delay = transaction_max_delay
        self.retry_attempts = retry_attempts
        # runs backend calls that a cancel event may abandon
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="firedoc")

        self.log.info(f"DocumentStore initialized with {type(backend).__name__}")

    # ==========================================
    # Single-document operations
    # ==========================================

    def _call(self, fn: Callable[..., T], *args: Any, cancel: Optional[threading.Event] = None,
              retry: bool = True) -> T:
        """Run one backend call, retrying transient errors when retry is set."""
        @wraps(fn)
        def call():
            return call_cancellable(self._executor, lambda: fn(*args), cancel, fn.__name__)

        if retry:
            call = retry_with_backoff(
                max_attempts=self.retry_attempts,
                base_delay=self.transaction_base_delay,
                max_delay=self.transaction_max_delay,
                exceptions=(TransientStoreError,),
                cancel=cancel
            )(call)
        return call()

    def add(self, path: str, value: Any, cancel: Optional[threading.Event] = None) -> None:
        """
        Create a document.

        Not retried on transient errors: a retry after a lost response
        could report the caller's own write as already existing. A write
        canceled while in flight may still have been applied.

        Raises:
            DocumentAlreadyExistsError: If a document exists at path
            OperationCanceledError: If cancel was set before the call finished
        """
        path = validate_document_path(path)
        data = encode(value)
        self._call(self.backend.create, path, data, cancel=cancel, retry=False)
        self.log.debug(f"add {path}: {data!r}")

    def add_or_replace(self, path: str, value: Any, cancel: Optional[threading.Event] = None) -> None:
        """Create or overwrite a document."""
        path = validate_document_path(path)
        data = encode(value)
        self._call(self.backend.set, path, data, cancel=cancel)
        self.log.debug(f"add_or_replace {path}: {data!r}")

    def delete(self, path: str, cancel: Optional[threading.Event] = None) -> None:
        """Delete a document; deleting a missing document succeeds."""
        path = validate_document_path(path)
        self._call(self.backend.delete, path, cancel=cancel)
        self.log.debug(f"delete {path}")

    def get(self, path: str, target: Optional[Type[T]] = None,
            cancel: Optional[threading.Event] = None) -> Any:
        """
        Read a document.

        Args:
            path: Document path
            target: Type to decode into (dict when None)
            cancel: Event that aborts the read with OperationCanceledError

        Returns:
            Document fields decoded into target

        Raises:
            DocumentNotFoundError: If the document doesn't exist
            ValidationError: If the fields don't fit target
            OperationCanceledError: If cancel was set before the read finished
        """
        path = validate_document_path(path)
        doc = self._call(self.backend.get, path, cancel=cancel)
        if doc is None or not doc.exists:
            raise DocumentNotFoundError(f"Document not found: {path}", operation="get", path=path)
        return doc.to(target)

    def exists(self, path: str, cancel: Optional[threading.Event] = None) -> bool:
        path = validate_document_path(path)
        doc = self._call(self.backend.get, path, cancel=cancel)
        return doc is not None and doc.exists

    def collection_add(self, collection: str, value: Any, cancel: Optional[threading.Event] = None) -> str:
        """
        Add a document with an automatically generated id.

        Returns:
            str: Path of the new document
        """
        collection = validate_collection_path(collection)
        path = self.backend.new_document_path(collection)
        data = encode(value)
        self._call(self.backend.create, path, data, cancel=cancel, retry=False)
        self.log.debug(f"collection_add {collection} -> {path}")
        return path

    # ==========================================
    # Iteration and queries
    # ==========================================

    def documents(self, collection: str, cancel: Optional[threading.Event] = None) -> DocumentIterator:
        """Iterate over every document in a collection."""
        return self.query(collection).documents(cancel=cancel)

    def collections(self, path: Optional[str] = None, cancel: Optional[threading.Event] = None) -> List[str]:
        """
        List collection ids under a document, or the root collections.

        Args:
            path: Document path (None for the database root)
            cancel: Event that aborts the listing with OperationCanceledError
        """
        if path is not None:
            path = validate_document_path(path)
        return self._call(self.backend.list_collections, path, cancel=cancel)

    def query(self, collection: str) -> Query:
        return Query(self, QuerySpec(collection=validate_collection_path(collection)))

    def query_group(self, collection_id: str) -> Query:
        """Query every collection with the given id, wherever it is nested."""
        return Query(self, QuerySpec(collection=_collection_id(collection_id), all_descendants=True))

    def query_iterator(self, collection: str, field_path: str, op: str, value: Any,
                       cancel: Optional[threading.Event] = None) -> DocumentIterator:
        """Shorthand for a single-condition query over a collection."""
        return self.query(collection).where(field_path, op, value).documents(cancel=cancel)

    def collection_group_query(self, collection_id: str, wheres: Iterable[Where],
                               cancel: Optional[threading.Event] = None) -> DocumentIterator:
        """
        Shorthand for a multi-condition collection group query.

        Args:
            collection_id: Collection id to match at any depth
            wheres: (field, op, value) conditions, all of which must hold
            cancel: Event that ends the iteration with OperationCanceledError
        """
        query = self.query_group(collection_id)
        for field_path, op, value in wheres:
            query = query.where(field_path, op, value)
        return query.documents(cancel=cancel)

    def run_query(self, spec: QuerySpec, cancel: Optional[threading.Event] = None) -> Iterator[Document]:
        self.log.debug(f"run_query {spec!r}")
        documents = self.backend.run_query(spec)
        if cancel is None:
            return documents
        return self._cancellable_documents(iter(documents), cancel)

    def _cancellable_documents(self, documents: Iterator[Document],
                               cancel: threading.Event) -> Iterator[Document]:
        canceled = False
        try:
            while True:
                try:
                    doc = call_cancellable(self._executor, lambda: next(documents, None), cancel, "run_query")
                except OperationCanceledError:
                    canceled = True
                    raise
                if doc is None:
                    return
                yield doc
        finally:
            # a canceled fetch may still be running on the worker
            close = getattr(documents, "close", None)
            if close is not None and not canceled:
                close()

    # ==========================================
    # Transactions and atomic operations
    # ==========================================

    def run_transaction(self, *funcs: TransactionFunc, max_attempts: Optional[int] = None,
                        cancel: Optional[threading.Event] = None) -> Any:
        """
        Run funcs in order inside one transaction, retrying the unit on conflict.

        See firedoc.transaction.run_transaction.
        """
        return run_transaction(self, *funcs, max_attempts=max_attempts, cancel=cancel)

    def atomic_get_or_create(self, path: str, create_fn: Callable[[], Any],
                             target: Optional[Type[T]] = None) -> Any:
        return atomic.atomic_get_or_create(self, path, create_fn, target)

    def atomic_update(self, path: str, update_fn: Callable[[Any], Any],
                      target: Optional[Type[T]] = None) -> Any:
        return atomic.atomic_update(self, path, update_fn, target)

    # ==========================================
    # Listening
    # ==========================================

    def doc_listen(self, path: str, handler: Callable[[listen.DocumentChange], Any],
                   cancel: Optional[threading.Event] = None) -> None:
        listen.doc_listen(self, path, handler, cancel=cancel)

    def collection_listen(self, collection: str, handler: Callable[[listen.CollectionChanges], Any],
                          filter: Optional[listen.ListenFilter] = None,
                          cancel: Optional[threading.Event] = None) -> None:
        listen.collection_listen(self, collection, handler, filter=filter, cancel=cancel)

    # ==========================================
    # Path codec
    # ==========================================

    def escape(self, raw: str) -> str:
        return escape(raw)

    def unescape(self, s: str) -> str:
        return unescape(s)

    # ==========================================
    # Lifecycle
    # ==========================================

    def health_check(self) -> Dict[str, Any]:
        """
        Check that the backend answers.

        Returns:
            Health status dictionary

        Example:
            health = store.health_check()
            print(f"Store status: {health['status']}")
        """
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            with timing_context("health_check") as timer:
                collections = self.backend.list_collections(None)
        except FiredocError as e:
            self.log.error(f"Health check failed: {str(e)}")
            return {
                'status': 'error',
                'timestamp': timestamp,
                'backend': type(self.backend).__name__,
                'error': str(e)
            }

        self.log.info(f"Health check: healthy ({len(collections)} root collections)")
        return {
            'status': 'healthy',
            'timestamp': timestamp,
            'backend': type(self.backend).__name__,
            'root_collections': len(collections),
            'latency_seconds': timer.duration,
        }

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self.backend.close()
        self.log.info("DocumentStore closed")

    def __enter__(self) -> 'DocumentStore':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


# Convenience function for easy initialization
def create_document_store(config: Any = None, backend: Optional[StoreBackend] = None,
                          log: Any = None) -> DocumentStore:
    """
    Create a DocumentStore from configuration.

    Args:
        config: FiredocConfig (defaults to the global config)
        backend: Backend to use instead of the configured one
        log: loguru logger to inject

    Returns:
        DocumentStore instance

    Example:
        store = create_document_store()
        # or
        store = create_document_store(load_config(backend="memory"))
    """
    if config is None:
        from .config import get_config
        config = get_config()

    if backend is None:
        if config.backend == "memory":
            from .backends.memory import MemoryBackend
            backend = MemoryBackend()
        else:
            from .backends.firestore import FirestoreBackend
            from .client import Credentials, create_firestore_client
            client = create_firestore_client(config.project, config.database, Credentials.from_config(config))
            backend = FirestoreBackend(client, timeout=config.request_timeout)

    return DocumentStore(backend, log=log, **config.transaction_options())
