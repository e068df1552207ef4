"""
Store backend contract for firedoc library.

A backend is the only code that talks to the document database. Every
call is independently atomic; run_attempt() runs one transaction attempt
and reports a lost write conflict as TransactionConflictError so the
caller can retry the whole attempt.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from ..query import Document, QuerySpec

T = TypeVar('T')

ErrorCallback = Callable[[BaseException], None]


class ChangeKind(IntEnum):
    """Kind of a document change delivered by a listener."""
    ERROR = 0
    ADDED = 1
    REMOVED = 2
    MODIFIED = 3

    def __str__(self) -> str:
        return self.name


class Subscription:
    """
    Handle for a live watch stream.

    A stream can close on its own, for example when the server ends it
    with an unrecoverable error. is_active turns False once that happens
    and the stream delivers nothing more.
    """

    def __init__(self, unsubscribe: Callable[[], None], is_active: Optional[Callable[[], bool]] = None):
        self._unsubscribe = unsubscribe
        self._is_active = is_active

    def unsubscribe(self) -> None:
        self._unsubscribe()

    @property
    def is_active(self) -> bool:
        return self._is_active is None or bool(self._is_active())


@dataclass
class WatchEvent:
    """One batch of changes for a watched query."""
    documents: List[Document] = field(default_factory=list)
    changes: List[Any] = field(default_factory=list)  # (ChangeKind, Document) pairs


class BackendTransaction(ABC):
    """Handle for one transaction attempt; reads must precede writes."""

    @abstractmethod
    def get(self, path: str) -> Optional[Document]:
        """Read a document; None when it does not exist."""
        pass

    @abstractmethod
    def run_query(self, spec: QuerySpec) -> Iterator[Document]:
        """Run a query inside the transaction."""
        pass

    @abstractmethod
    def create(self, path: str, data: Dict[str, Any]) -> None:
        """Buffer a create; fails at commit if the document exists."""
        pass

    @abstractmethod
    def set(self, path: str, data: Dict[str, Any]) -> None:
        """Buffer an unconditional write."""
        pass

    @abstractmethod
    def delete(self, path: str) -> None:
        """Buffer a delete."""
        pass


class StoreBackend(ABC):
    """Abstract base class for document store backends."""

    @abstractmethod
    def get(self, path: str) -> Optional[Document]:
        """Read a document; None when it does not exist."""
        pass

    @abstractmethod
    def create(self, path: str, data: Dict[str, Any]) -> None:
        """Create a document; DocumentAlreadyExistsError if present."""
        pass

    @abstractmethod
    def set(self, path: str, data: Dict[str, Any]) -> None:
        """Create or replace a document."""
        pass

    @abstractmethod
    def delete(self, path: str) -> None:
        """Delete a document; deleting a missing document succeeds."""
        pass

    @abstractmethod
    def new_document_path(self, collection: str) -> str:
        """Return the path of a new, automatically named document."""
        pass

    @abstractmethod
    def run_query(self, spec: QuerySpec) -> Iterator[Document]:
        """Run a query and lazily yield matching documents."""
        pass

    @abstractmethod
    def list_collections(self, path: Optional[str] = None) -> List[str]:
        """List collection ids under a document, or at the root when path is None."""
        pass

    @abstractmethod
    def run_attempt(self, fn: Callable[[BackendTransaction], T]) -> T:
        """
        Run fn inside one fresh transaction and commit it.

        Raises:
            TransactionConflictError: If the attempt lost a write conflict
        """
        pass

    @abstractmethod
    def watch_document(self, path: str, callback: Callable[[Document], None],
                       on_error: ErrorCallback) -> Subscription:
        """Deliver a snapshot of path on every change."""
        pass

    @abstractmethod
    def watch_query(self, spec: QuerySpec, callback: Callable[[WatchEvent], None],
                    on_error: ErrorCallback) -> Subscription:
        """Deliver the result set and its changes on every change."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the connection."""
        pass
