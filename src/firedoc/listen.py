"""
Live listening on documents and collections.

The backend pushes snapshots from its own threads; the listen loops pull
them from a queue and call the handler on the caller's thread, one event at
a time. A loop ends when the handler raises, when the cancel event is set,
or when the backend reports a stream error.

Example:
    def on_change(change):
        print(change.kind.name, change.path, change.data())

    stop = threading.Event()
    store.doc_listen("rooms/lobby", on_change, cancel=stop)
"""

import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from .backends.base import ChangeKind, Subscription, WatchEvent
from .exceptions import OperationCanceledError, StoreOperationError, ValidationError
from .query import MAX_DISJUNCTION_VALUES, DocumentIterator, FieldFilter, QuerySpec, validate_filter
from .utils import validate_collection_path, validate_document_path

T = TypeVar('T')

DEFAULT_POLL_INTERVAL = 0.1


@dataclass
class DocumentChange:
    """One changed document."""
    kind: ChangeKind
    path: str
    document: Any

    def data(self) -> Dict[str, Any]:
        return self.document.to_dict()

    def to(self, target: Optional[Type[T]] = None) -> Any:
        return self.document.to(target)


class CollectionChanges:
    """A collection snapshot: what changed and the full current result set."""

    def __init__(self, event: WatchEvent):
        self._event = event

    def changes(self) -> List[DocumentChange]:
        return [DocumentChange(kind, doc.path, doc) for kind, doc in self._event.changes]

    def documents(self) -> DocumentIterator:
        return DocumentIterator(iter(self._event.documents))


@dataclass(frozen=True)
class ListenFilter:
    """Single where() condition applied to a collection listen."""
    path: str
    op: str
    value: Any

    def validate(self) -> None:
        """
        Raises:
            ValidationError: If the condition cannot be listened on
        """
        if self.op in ("in", "not-in"):
            if not isinstance(self.value, (list, tuple)) or not all(isinstance(v, str) for v in self.value):
                raise ValidationError(
                    f"Filter value for '{self.op}' must be a list of strings",
                    field=self.path,
                    value=self.value
                )
            if len(self.value) > MAX_DISJUNCTION_VALUES:
                raise ValidationError(
                    f"Filter has too many values, {MAX_DISJUNCTION_VALUES} max",
                    field=self.path,
                    value=self.value
                )
        validate_filter(self.path, self.op, self.value)


class _StreamError:
    __slots__ = ("error",)

    def __init__(self, error: BaseException):
        self.error = error


def _pull(store: Any, subscribe: Callable[[Callable, Callable], Subscription],
          deliver: Callable[[Any], None], cancel: Optional[threading.Event],
          poll_interval: float, name: str) -> None:
    events: queue.Queue = queue.Queue()
    subscription = subscribe(events.put, lambda e: events.put(_StreamError(e)))
    store.log.debug(f"{name}: listening")

    try:
        while True:
            if cancel is not None and cancel.is_set():
                store.log.debug(f"{name}: canceled")
                raise OperationCanceledError(f"Listen canceled: {name}", operation="listen")

            try:
                item = events.get(timeout=poll_interval)
            except queue.Empty:
                if not subscription.is_active:
                    store.log.error(f"{name}: stream closed by the backend")
                    raise StoreOperationError(f"Listen stream closed: {name}", operation="listen")
                continue

            if isinstance(item, _StreamError):
                store.log.error(f"{name}: stream failed: {str(item.error)}")
                raise item.error

            deliver(item)
    finally:
        subscription.unsubscribe()
        store.log.debug(f"{name}: unsubscribed")


def doc_listen(store: Any, path: str, handler: Callable[[DocumentChange], Any],
               cancel: Optional[threading.Event] = None,
               poll_interval: float = DEFAULT_POLL_INTERVAL) -> None:
    """
    Call handler for every snapshot of one document until stopped.

    The first call reflects the current state. Kind is MODIFIED while the
    document exists and REMOVED when it does not.

    Args:
        store: DocumentStore to listen on
        path: Document path
        handler: Receives a DocumentChange; raising ends the listen
        cancel: Event that ends the listen with OperationCanceledError
        poll_interval: Seconds between cancel checks while idle

    Raises:
        OperationCanceledError: If cancel was set
        StoreOperationError: If the backend closed the stream on its own
        Whatever the handler or the backend stream raised
    """
    path = validate_document_path(path)

    def deliver(doc):
        kind = ChangeKind.MODIFIED if doc.exists else ChangeKind.REMOVED
        handler(DocumentChange(kind, doc.path, doc))

    _pull(
        store,
        lambda callback, on_error: store.backend.watch_document(path, callback, on_error),
        deliver,
        cancel,
        poll_interval,
        f"doc_listen({path})"
    )


def collection_listen(store: Any, collection: str, handler: Callable[[CollectionChanges], Any],
                      filter: Optional[ListenFilter] = None, cancel: Optional[threading.Event] = None,
                      poll_interval: float = DEFAULT_POLL_INTERVAL) -> None:
    """
    Call handler for every snapshot of a collection until stopped.

    Args:
        store: DocumentStore to listen on
        collection: Collection path
        handler: Receives CollectionChanges; raising ends the listen
        filter: Optional condition narrowing the documents watched
        cancel: Event that ends the listen with OperationCanceledError
        poll_interval: Seconds between cancel checks while idle

    Raises:
        ValidationError: If the filter is invalid
        OperationCanceledError: If cancel was set
        StoreOperationError: If the backend closed the stream on its own
        Whatever the handler or the backend stream raised
    """
    spec = QuerySpec(collection=validate_collection_path(collection))
    if filter is not None:
        filter.validate()
        value = tuple(filter.value) if isinstance(filter.value, list) else filter.value
        spec = QuerySpec(collection=spec.collection, filters=(FieldFilter(filter.path, filter.op, value),))

    _pull(
        store,
        lambda callback, on_error: store.backend.watch_query(spec, callback, on_error),
        lambda event: handler(CollectionChanges(event)),
        cancel,
        poll_interval,
        f"collection_listen({collection})"
    )
