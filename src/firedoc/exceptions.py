"""
Custom exceptions for firedoc library.

This module defines all custom exceptions used throughout the library,
plus helpers for classifying an error by kind rather than by type.
"""

from typing import Optional, Dict, Any


class FiredocError(Exception):
    """Base exception for all firedoc related errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} (Details: {details_str})"
        return self.message


class ConfigurationError(FiredocError):
    """Raised when there are configuration-related errors."""

    def __init__(self, message: str, config_key: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.config_key = config_key
        details = details or {}
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, details)


class StoreOperationError(FiredocError):
    """Base exception for document store operation errors."""

    def __init__(self, message: str, operation: Optional[str] = None, path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        self.path = path
        details = details or {}
        if operation:
            details["operation"] = operation
        if path:
            details["path"] = path
        super().__init__(message, details)


class DocumentNotFoundError(StoreOperationError):
    """Raised when trying to access a document that doesn't exist."""
    pass


class DocumentAlreadyExistsError(StoreOperationError):
    """Raised when trying to create a document that already exists."""
    pass


class OperationCanceledError(StoreOperationError):
    """Raised when an operation is aborted by a cancellation signal."""
    pass


class TransactionConflictError(StoreOperationError):
    """
    Raised by a backend when a transaction attempt lost a write conflict.

    The transaction runner retries the whole attempt; callers of
    run_transaction never see this error.
    """
    pass


class TransientStoreError(StoreOperationError):
    """Raised when the store is temporarily unavailable and the call may be retried."""
    pass


class ValidationError(FiredocError):
    """Raised when a query, filter or path fails client-side validation."""

    def __init__(self, message: str, field: Optional[str] = None, value: Optional[Any] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.field = field
        self.value = value
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = value
        super().__init__(message, details)


class CodespaceExhaustedError(FiredocError):
    """Raised when every drawn code collided with an existing one."""

    def __init__(self, message: str, namespace: Optional[str] = None, attempts: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.namespace = namespace
        self.attempts = attempts
        details = details or {}
        if namespace is not None:
            details["namespace"] = namespace
        if attempts:
            details["attempts"] = attempts
        super().__init__(message, details)


class RetryExhaustedError(FiredocError):
    """Raised when all retry attempts have been exhausted."""

    def __init__(self, message: str, operation: Optional[str] = None, attempts: Optional[int] = None,
                 last_error: Optional[Exception] = None, details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        details = details or {}
        if operation:
            details["operation"] = operation
        if attempts:
            details["attempts"] = attempts
        if last_error:
            details["last_error"] = str(last_error)
        super().__init__(message, details)


def _error_chain(err: Optional[BaseException]):
    seen = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__ or err.__context__


def is_not_found(err: Optional[BaseException]) -> bool:
    """Check whether err, or anything in its cause chain, is a not-found outcome."""
    return any(isinstance(e, DocumentNotFoundError) for e in _error_chain(err))


def is_already_exists(err: Optional[BaseException]) -> bool:
    """Check whether err, or anything in its cause chain, is an already-exists outcome."""
    return any(isinstance(e, DocumentAlreadyExistsError) for e in _error_chain(err))


def is_canceled(err: Optional[BaseException]) -> bool:
    """
    Check whether err, or anything in its cause chain, is a cancellation.

    Args:
        err: Exception to inspect

    Returns:
        bool: True if the error was caused by cancellation
    """
    return any(isinstance(e, OperationCanceledError) for e in _error_chain(err))
