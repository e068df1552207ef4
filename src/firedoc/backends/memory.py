"""
In-memory store backend.

Documents are versioned; a transaction records the version of everything
it reads (including the result set of each query it runs) and buffers its
writes. Commit revalidates the read set under the store lock and applies
the writes only if nothing changed, otherwise the attempt fails with
TransactionConflictError.
"""

import copy
import itertools
import secrets
import string
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from loguru import logger

from ..exceptions import (
    DocumentAlreadyExistsError,
    StoreOperationError,
    TransactionConflictError,
)
from ..query import Document, QuerySpec
from ..utils import parent_collection, safe_get
from .base import BackendTransaction, ChangeKind, StoreBackend, Subscription, T, WatchEvent

AUTO_ID_ALPHABET = string.ascii_letters + string.digits
AUTO_ID_LENGTH = 20

_MISSING = object()


@dataclass
class _Record:
    data: Dict[str, Any]
    version: int
    create_time: datetime
    update_time: datetime

    def to_document(self, path: str) -> Document:
        return Document(
            path=path,
            data=copy.deepcopy(self.data),
            exists=True,
            create_time=self.create_time,
            update_time=self.update_time,
        )


class _Watch:
    def __init__(self, callback: Callable[[Any], None], on_error: Callable[[BaseException], None],
                 path: Optional[str] = None, spec: Optional[QuerySpec] = None):
        self.callback = callback
        self.on_error = on_error
        self.path = path
        self.spec = spec
        self.results: Dict[str, Tuple[int, Document]] = {}
        self.initialized = False
        self.active = True


def _type_rank(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        return 1
    if isinstance(value, (int, float)):
        return 2
    if isinstance(value, datetime):
        return 3
    if isinstance(value, str):
        return 4
    if isinstance(value, bytes):
        return 5
    if isinstance(value, (list, tuple)):
        return 8
    if isinstance(value, dict):
        return 9
    return 10


def _compare(a: Any, b: Any) -> int:
    rank_a, rank_b = _type_rank(a), _type_rank(b)
    if rank_a != rank_b:
        return -1 if rank_a < rank_b else 1
    if rank_a == 9:
        a, b = sorted(a.items(), key=str), sorted(b.items(), key=str)
    elif rank_a == 10:
        a, b = str(a), str(b)
    try:
        if a < b:
            return -1
        if a > b:
            return 1
    except TypeError:
        a, b = str(a), str(b)
        return (a > b) - (a < b)
    return 0


def _matches(value: Any, op: str, operand: Any) -> bool:
    if value is _MISSING:
        return False
    if op == "==":
        return _compare(value, operand) == 0
    if op == "!=":
        return _compare(value, operand) != 0
    if op in ("<", "<=", ">", ">="):
        if _type_rank(value) != _type_rank(operand):
            return False
        c = _compare(value, operand)
        return {"<": c < 0, "<=": c <= 0, ">": c > 0, ">=": c >= 0}[op]
    if op == "array-contains":
        return isinstance(value, list) and operand in value
    if op == "array-contains-any":
        return isinstance(value, list) and any(v in value for v in operand)
    if op == "in":
        return any(_compare(value, v) == 0 for v in operand)
    if op == "not-in":
        return all(_compare(value, v) != 0 for v in operand)
    raise StoreOperationError(f"Unsupported filter operator '{op}'", operation="run_query")


def _project(data: Dict[str, Any], fields: Tuple[str, ...]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for field_path in fields:
        value = safe_get(data, field_path, _MISSING)
        if value is _MISSING:
            continue
        target = out
        parts = field_path.split('.')
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = value
    return out


def _cursor_position(doc: Document, spec: QuerySpec, values: Tuple[Any, ...]) -> int:
    for ordering, cursor_value in zip(spec.orders, values):
        c = _compare(doc.get(ordering.field), cursor_value)
        if ordering.direction.value == "DESCENDING":
            c = -c
        if c != 0:
            return c
    return 0


def evaluate_query(records: Dict[str, _Record], spec: QuerySpec) -> List[Tuple[Document, int]]:
    """
    Evaluate spec against a snapshot of records.

    Returns:
        List of (document, version) in result order
    """
    matched = []
    for path, record in records.items():
        collection = parent_collection(path)
        if spec.all_descendants:
            if collection.rsplit('/', 1)[-1] != spec.collection:
                continue
        elif collection != spec.collection:
            continue

        if not all(_matches(safe_get(record.data, f.field, _MISSING), f.op, f.value) for f in spec.filters):
            continue
        if any(safe_get(record.data, o.field, _MISSING) is _MISSING for o in spec.orders):
            continue
        matched.append((record.to_document(path), record.version))

    matched.sort(key=lambda item: item[0].path)
    for ordering in reversed(spec.orders):
        descending = ordering.direction.value == "DESCENDING"
        matched.sort(key=_SortKey.factory(ordering.field), reverse=descending)

    if spec.start is not None:
        start = spec.start
        matched = [
            item for item in matched
            if (_cursor_position(item[0], spec, start.values) >= 0 if start.inclusive
                else _cursor_position(item[0], spec, start.values) > 0)
        ]
    if spec.end is not None:
        end = spec.end
        matched = [
            item for item in matched
            if (_cursor_position(item[0], spec, end.values) <= 0 if end.inclusive
                else _cursor_position(item[0], spec, end.values) < 0)
        ]

    if spec.offset:
        matched = matched[spec.offset:]
    if spec.limit is not None:
        matched = matched[-spec.limit:] if spec.limit_to_last and spec.limit else matched[:spec.limit]

    if spec.projection is not None:
        for doc, _ in matched:
            doc.data = _project(doc.data, spec.projection)

    return matched


class _SortKey:
    __slots__ = ("value",)

    def __init__(self, value: Any):
        self.value = value

    def __lt__(self, other: '_SortKey') -> bool:
        return _compare(self.value, other.value) < 0

    @classmethod
    def factory(cls, field_path: str) -> Callable[[Tuple[Document, int]], '_SortKey']:
        return lambda item: cls(item[0].get(field_path))


class MemoryTransaction(BackendTransaction):
    """One optimistic transaction attempt against a MemoryBackend."""

    def __init__(self, backend: 'MemoryBackend'):
        self._backend = backend
        self._reads: Dict[str, int] = {}
        self._queries: List[Tuple[QuerySpec, List[Tuple[str, int]]]] = []
        self._writes: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []

    def _check_read_allowed(self, operation: str) -> None:
        if self._writes:
            raise StoreOperationError(
                "Reads must precede writes inside a transaction",
                operation=operation
            )

    def get(self, path: str) -> Optional[Document]:
        self._check_read_allowed("transaction.get")
        with self._backend._lock:
            self._backend._check_open()
            record = self._backend._records.get(path)
            self._reads.setdefault(path, record.version if record else 0)
            return record.to_document(path) if record else None

    def run_query(self, spec: QuerySpec) -> Iterator[Document]:
        self._check_read_allowed("transaction.run_query")
        with self._backend._lock:
            self._backend._check_open()
            results = evaluate_query(self._backend._records, spec)
        self._queries.append((spec, [(doc.path, version) for doc, version in results]))
        return iter([doc for doc, _ in results])

    def create(self, path: str, data: Dict[str, Any]) -> None:
        self._writes.append(("create", path, copy.deepcopy(data)))

    def set(self, path: str, data: Dict[str, Any]) -> None:
        self._writes.append(("set", path, copy.deepcopy(data)))

    def delete(self, path: str) -> None:
        self._writes.append(("delete", path, None))

    def commit(self) -> None:
        self._backend._commit(self._reads, self._queries, self._writes)


class MemoryBackend(StoreBackend):
    """
    Thread-safe in-process document store with optimistic transactions.

    Suitable for tests and local development; data lives only as long as
    the backend object.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._dispatch_lock = threading.RLock()
        self._records: Dict[str, _Record] = {}
        self._versions = itertools.count(1)
        self._watches: List[_Watch] = []
        self._pending: deque = deque()
        self._closed = False
        logger.info("Memory store backend initialized")

    def _check_open(self) -> None:
        if self._closed:
            raise StoreOperationError("Store backend is closed", operation="memory_backend")

    # ==========================================
    # Single-document operations
    # ==========================================

    def get(self, path: str) -> Optional[Document]:
        with self._lock:
            self._check_open()
            record = self._records.get(path)
            return record.to_document(path) if record else None

    def create(self, path: str, data: Dict[str, Any]) -> None:
        self._commit({}, [], [("create", path, copy.deepcopy(data))])

    def set(self, path: str, data: Dict[str, Any]) -> None:
        self._commit({}, [], [("set", path, copy.deepcopy(data))])

    def delete(self, path: str) -> None:
        self._commit({}, [], [("delete", path, None)])

    def new_document_path(self, collection: str) -> str:
        auto_id = ''.join(secrets.choice(AUTO_ID_ALPHABET) for _ in range(AUTO_ID_LENGTH))
        return f"{collection}/{auto_id}"

    def run_query(self, spec: QuerySpec) -> Iterator[Document]:
        with self._lock:
            self._check_open()
            results = evaluate_query(self._records, spec)
        return iter([doc for doc, _ in results])

    def list_collections(self, path: Optional[str] = None) -> List[str]:
        prefix = f"{path}/" if path else ""
        with self._lock:
            self._check_open()
            names = {
                doc_path[len(prefix):].split('/', 1)[0]
                for doc_path in self._records
                if doc_path.startswith(prefix) and '/' in doc_path[len(prefix):]
            }
        return sorted(names)

    # ==========================================
    # Transactions
    # ==========================================

    def run_attempt(self, fn: Callable[[BackendTransaction], T]) -> T:
        transaction = MemoryTransaction(self)
        result = fn(transaction)
        transaction.commit()
        return result

    def _commit(self, reads: Dict[str, int], queries: List[Tuple[QuerySpec, List[Tuple[str, int]]]],
                writes: List[Tuple[str, str, Optional[Dict[str, Any]]]]) -> None:
        with self._lock:
            self._check_open()

            for path, version in reads.items():
                record = self._records.get(path)
                current = record.version if record else 0
                if current != version:
                    raise TransactionConflictError(
                        f"Document changed since it was read: {path}",
                        operation="commit",
                        path=path
                    )

            for spec, seen in queries:
                current = [(doc.path, version) for doc, version in evaluate_query(self._records, spec)]
                if current != seen:
                    raise TransactionConflictError(
                        f"Query results changed since they were read: {spec.collection}",
                        operation="commit",
                        path=spec.collection
                    )

            staged: Dict[str, Optional[Dict[str, Any]]] = {}
            for op, path, data in writes:
                exists = staged[path] is not None if path in staged else path in self._records
                if op == "create" and exists:
                    raise DocumentAlreadyExistsError(
                        f"Document already exists: {path}",
                        operation="create",
                        path=path
                    )
                staged[path] = data

            now = datetime.now(timezone.utc)
            changed = []
            for path, data in staged.items():
                previous = self._records.get(path)
                if data is None:
                    if previous is not None:
                        del self._records[path]
                        changed.append(path)
                    continue
                self._records[path] = _Record(
                    data=data,
                    version=next(self._versions),
                    create_time=previous.create_time if previous else now,
                    update_time=now,
                )
                changed.append(path)

            if changed:
                self._queue_notifications(set(changed))

        self._dispatch()

    # ==========================================
    # Listeners
    # ==========================================

    def watch_document(self, path: str, callback: Callable[[Document], None],
                       on_error: Callable[[BaseException], None]) -> Subscription:
        watch = _Watch(callback, on_error, path=path)
        with self._lock:
            self._check_open()
            self._watches.append(watch)
            self._pending.append((watch, self._document_snapshot(path)))
        self._dispatch()
        return Subscription(lambda: self._unwatch(watch), lambda: watch.active)

    def watch_query(self, spec: QuerySpec, callback: Callable[[WatchEvent], None],
                    on_error: Callable[[BaseException], None]) -> Subscription:
        watch = _Watch(callback, on_error, spec=spec)
        with self._lock:
            self._check_open()
            self._watches.append(watch)
            event = self._diff(watch)
            self._pending.append((watch, event))
        self._dispatch()
        return Subscription(lambda: self._unwatch(watch), lambda: watch.active)

    def _unwatch(self, watch: _Watch) -> None:
        with self._lock:
            watch.active = False
            if watch in self._watches:
                self._watches.remove(watch)

    def _document_snapshot(self, path: str) -> Document:
        record = self._records.get(path)
        return record.to_document(path) if record else Document(path=path, exists=False)

    def _diff(self, watch: _Watch) -> Optional[WatchEvent]:
        results = evaluate_query(self._records, watch.spec)
        current = {doc.path: (version, doc) for doc, version in results}
        changes = []
        for path, (version, doc) in current.items():
            previous = watch.results.get(path)
            if previous is None:
                changes.append((ChangeKind.ADDED, doc))
            elif previous[0] != version:
                changes.append((ChangeKind.MODIFIED, doc))
        for path, (_, doc) in watch.results.items():
            if path not in current:
                changes.append((ChangeKind.REMOVED, doc))
        first = not watch.initialized
        watch.initialized = True
        watch.results = current
        if not changes and not first:
            return None
        return WatchEvent(documents=[doc for doc, _ in results], changes=changes)

    def _queue_notifications(self, changed: set) -> None:
        for watch in self._watches:
            if watch.path is not None:
                if watch.path in changed:
                    self._pending.append((watch, self._document_snapshot(watch.path)))
                continue
            event = self._diff(watch)
            if event is not None:
                self._pending.append((watch, event))

    def _dispatch(self) -> None:
        # notifications are queued under the store lock and drained in order
        with self._dispatch_lock:
            while True:
                try:
                    watch, payload = self._pending.popleft()
                except IndexError:
                    return
                if not watch.active:
                    continue
                try:
                    watch.callback(payload)
                except Exception as e:
                    logger.error(f"Listener callback failed: {str(e)}")
                    watch.on_error(e)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            for watch in self._watches:
                watch.active = False
            self._watches.clear()
            self._pending.clear()
        logger.info("Memory store backend closed")
