"""
Atomic composite operations built from transaction primitives.
"""

from typing import Any, Callable, Optional, Type, TypeVar

from .exceptions import DocumentNotFoundError
from .serialization import decode, encode
from .utils import validate_document_path

T = TypeVar('T')

CreateFunc = Callable[[], Any]
UpdateFunc = Callable[[Any], Any]


def atomic_get_or_create(store: Any, path: str, create_fn: CreateFunc, target: Optional[Type[T]] = None) -> Any:
    """
    Return the document at path, creating it with create_fn() if absent.

    Concurrent callers racing on the same path converge on one winner:
    a loser's transaction is retried, finds the winner's document and
    returns it. create_fn may therefore run in callers whose value is
    discarded.

    Args:
        store: DocumentStore to operate on
        path: Document path
        create_fn: Called with no arguments; returns the value to store
        target: Type to decode the result into (dict when None)

    Returns:
        The stored value, decoded into target
    """
    path = validate_document_path(path)

    def get_or_create(tx):
        try:
            return tx.get(path, target)
        except DocumentNotFoundError:
            store.log.debug(f"{path} not found, creating")

        value = create_fn()
        tx.add(path, value)
        return decode(encode(value), target)

    return store.run_transaction(get_or_create)


def atomic_update(store: Any, path: str, update_fn: UpdateFunc, target: Optional[Type[T]] = None) -> Any:
    """
    Read-modify-write the document at path as one transaction.

    update_fn receives the current value decoded into target and either
    mutates it in place (returning None) or returns a replacement.

    Raises:
        DocumentNotFoundError: If the document doesn't exist

    Returns:
        The value written
    """
    path = validate_document_path(path)

    def read_modify_write(tx):
        value = tx.get(path, target)
        updated = update_fn(value)
        if updated is None:
            updated = value
        tx.add_or_replace(path, updated)
        return updated

    return store.run_transaction(read_modify_write)
