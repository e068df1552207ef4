"""
firedoc - transactional, path-addressed access to Google Cloud Firestore.

This library wraps a document database with optimistic transactions that
retry on conflict, atomic get-or-create and update helpers, and a
collision-safe allocator for short unique codes.

Usage:
    from firedoc import create_document_store, CodeAllocator

    store = create_document_store()
    store.atomic_update("counters/visits", lambda c: c.update(n=c["n"] + 1))
    code = CodeAllocator(store).allocate("lobby", "user-42").code
"""

from .document_store import DocumentStore, create_document_store
from .transaction import Transaction, run_transaction
from .atomic import atomic_get_or_create, atomic_update
from .codes import AuditIssue, CodeAllocator, CodeRecord, create_code_allocator
from .query import ASC, DESC, Direction, Document, DocumentIterator, Query, QuerySpec, Where
from .listen import ChangeKind, CollectionChanges, DocumentChange, ListenFilter
from .indexes import FieldOverride, Index, IndexField, IndexSet, QueryScope
from .backends import MemoryBackend, StoreBackend
from .utils import build_path, escape, unescape, timing_context

from .config import FiredocConfig, get_config, load_config, set_config, setup_logging
from .exceptions import (
    FiredocError,
    ConfigurationError,
    StoreOperationError,
    DocumentNotFoundError,
    DocumentAlreadyExistsError,
    OperationCanceledError,
    TransientStoreError,
    ValidationError,
    CodespaceExhaustedError,
    RetryExhaustedError,
    is_not_found,
    is_already_exists,
    is_canceled,
)

__version__ = "0.1.0"

__all__ = [
    # Main API Classes
    "DocumentStore",
    "Transaction",
    "CodeAllocator",
    "CodeRecord",
    "AuditIssue",
    "Query",
    "QuerySpec",
    "Where",
    "Direction",
    "ASC",
    "DESC",
    "Document",
    "DocumentIterator",

    # Listening
    "ChangeKind",
    "CollectionChanges",
    "DocumentChange",
    "ListenFilter",

    # Index definitions
    "FieldOverride",
    "Index",
    "IndexField",
    "IndexSet",
    "QueryScope",

    # Backends
    "StoreBackend",
    "MemoryBackend",

    # Factory Functions
    "create_document_store",
    "create_code_allocator",
    "run_transaction",
    "atomic_get_or_create",
    "atomic_update",

    # Configuration
    "FiredocConfig",
    "get_config",
    "load_config",
    "set_config",
    "setup_logging",

    # Utilities
    "build_path",
    "escape",
    "unescape",
    "timing_context",

    # Exceptions
    "FiredocError",
    "ConfigurationError",
    "StoreOperationError",
    "DocumentNotFoundError",
    "DocumentAlreadyExistsError",
    "OperationCanceledError",
    "TransientStoreError",
    "ValidationError",
    "CodespaceExhaustedError",
    "RetryExhaustedError",
    "is_not_found",
    "is_already_exists",
    "is_canceled",
]
