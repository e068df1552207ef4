"""
Store backends for firedoc library.

The Firestore backend is imported lazily so the memory backend can be used
without loading the Google client libraries.
"""

from .base import BackendTransaction, ChangeKind, StoreBackend, Subscription, WatchEvent
from .memory import MemoryBackend

__all__ = [
    "BackendTransaction",
    "ChangeKind",
    "StoreBackend",
    "Subscription",
    "WatchEvent",
    "MemoryBackend",
    "FirestoreBackend",
]


def __getattr__(name):
    if name == "FirestoreBackend":
        from .firestore import FirestoreBackend
        return FirestoreBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
