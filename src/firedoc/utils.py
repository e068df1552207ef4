"""
Utility functions for firedoc library.

This module contains the path codec and common helper functions used
throughout the library.
"""

import random
import threading
import time
from concurrent.futures import Executor, TimeoutError as FuturesTimeoutError
from typing import Any, Callable, Optional, TypeVar
from functools import wraps

from loguru import logger

from .exceptions import OperationCanceledError, RetryExhaustedError, ValidationError

T = TypeVar('T')

ESCAPE_CHAR = '\\'
SEPARATOR_PLACEHOLDER = '|'


def escape(raw: str) -> str:
    """
    Escape a raw string so it can be embedded as a single path segment.

    '/' becomes the placeholder '|'. A literal '|' or '\\' in the input is
    protected with a leading backslash so the mapping stays reversible.

    Args:
        raw: Raw string, possibly containing slashes

    Returns:
        str: Escaped segment containing no '/'

    Example:
        escape("users/alice")  # -> "users|alice"
    """
    out = []
    for c in raw:
        if c == ESCAPE_CHAR:
            out.append(ESCAPE_CHAR + ESCAPE_CHAR)
        elif c == SEPARATOR_PLACEHOLDER:
            out.append(ESCAPE_CHAR + SEPARATOR_PLACEHOLDER)
        elif c == '/':
            out.append(SEPARATOR_PLACEHOLDER)
        else:
            out.append(c)
    return ''.join(out)


def unescape(s: str) -> str:
    """
    Reverse escape().

    Args:
        s: Escaped path segment

    Returns:
        str: Original raw string
    """
    out = []
    escaped = False

    for c in s:
        if escaped:
            if c == ESCAPE_CHAR or c == SEPARATOR_PLACEHOLDER:
                out.append(c)
            else:
                # not produced by escape(); keep the backslash
                out.append(ESCAPE_CHAR + c)
            escaped = False
        elif c == ESCAPE_CHAR:
            escaped = True
        elif c == SEPARATOR_PLACEHOLDER:
            out.append('/')
        else:
            out.append(c)

    if escaped:
        out.append(ESCAPE_CHAR)

    return ''.join(out)


def build_path(*segments: str) -> str:
    """
    Build a document or collection path from raw segments.

    Args:
        *segments: Raw path components, each escaped before joining

    Returns:
        str: Slash-delimited path
    """
    return '/'.join(escape(str(segment)) for segment in segments)


def split_path(path: str) -> list:
    """Split a path into segments, rejecting empty segments."""
    if not path or not isinstance(path, str):
        raise ValidationError("Path must be a non-empty string", field="path", value=path)

    parts = path.strip('/').split('/')
    if any(not part for part in parts):
        raise ValidationError(f"Path contains an empty segment: {path}", field="path", value=path)
    return parts


def validate_document_path(path: str) -> str:
    """
    Validate that path names a document (even number of segments).

    Returns:
        str: Normalized path without leading/trailing slashes

    Raises:
        ValidationError: If the path does not name a document
    """
    parts = split_path(path)
    if len(parts) % 2 != 0:
        raise ValidationError(f"Document path must have an even number of segments: {path}",
                              field="path", value=path)
    return '/'.join(parts)


def validate_collection_path(path: str) -> str:
    """Validate that path names a collection (odd number of segments)."""
    parts = split_path(path)
    if len(parts) % 2 != 1:
        raise ValidationError(f"Collection path must have an odd number of segments: {path}",
                              field="path", value=path)
    return '/'.join(parts)


def parent_collection(path: str) -> str:
    """Return the collection path that contains a document path."""
    return path.rsplit('/', 1)[0]


def document_id(path: str) -> str:
    """Return the last segment of a document path."""
    return path.rsplit('/', 1)[-1]


def backoff_delay(attempt: int, base_delay: float, max_delay: float, backoff_factor: float = 2.0) -> float:
    """Exponential backoff with full jitter for the given zero-based attempt."""
    delay = min(base_delay * (backoff_factor ** attempt), max_delay)
    return random.uniform(0, delay)


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
    cancel: Optional[threading.Event] = None
) -> Callable:
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        base_delay: Initial delay between attempts (seconds)
        max_delay: Maximum delay between attempts (seconds)
        backoff_factor: Exponential backoff multiplier
        exceptions: Tuple of exceptions to catch and retry
        cancel: Event that stops further attempts with OperationCanceledError

    Returns:
        Decorated function
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            last_exception = None

            for attempt in range(max_attempts):
                if cancel is not None and cancel.is_set():
                    raise OperationCanceledError(f"{func.__name__} canceled", operation=func.__name__)

                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e

                    if attempt == max_attempts - 1:
                        logger.error(f"Function {func.__name__} failed after {max_attempts} attempts: {str(e)}")
                        raise RetryExhaustedError(
                            f"Function {func.__name__} failed after {max_attempts} attempts",
                            operation=func.__name__,
                            attempts=max_attempts,
                            last_error=e
                        ) from e

                    delay = min(base_delay * (backoff_factor ** attempt), max_delay)

                    logger.warning(
                        f"Function {func.__name__} failed on attempt {attempt + 1}/{max_attempts}: {str(e)}. "
                        f"Retrying in {delay:.2f} seconds..."
                    )

                    if cancel is None:
                        time.sleep(delay)
                    elif cancel.wait(delay):
                        raise OperationCanceledError(f"{func.__name__} canceled", operation=func.__name__) from e

            raise last_exception

        return wrapper
    return decorator


def call_cancellable(executor: Executor, fn: Callable[[], T], cancel: Optional[threading.Event],
                     operation: str, poll_interval: float = 0.05) -> T:
    """
    Run a blocking call so that a cancel event releases the caller.

    With no cancel event fn runs inline. Otherwise it runs on executor and
    the caller waits for either its result or the event. A canceled call is
    abandoned: its worker finishes on its own and the result is dropped.

    Args:
        executor: Executor that runs fn
        fn: Blocking call taking no arguments
        cancel: Event that aborts the wait
        operation: Operation name for the error
        poll_interval: Seconds between cancel checks

    Raises:
        OperationCanceledError: If cancel was set before fn finished
    """
    if cancel is None:
        return fn()

    if cancel.is_set():
        raise OperationCanceledError(f"{operation} canceled", operation=operation)

    future = executor.submit(fn)
    while True:
        try:
            return future.result(timeout=poll_interval)
        except FuturesTimeoutError:
            if cancel.is_set():
                future.cancel()
                logger.debug(f"{operation}: canceled while in progress")
                raise OperationCanceledError(f"{operation} canceled", operation=operation)


def timing_context(operation_name: str) -> 'TimingContext':
    """
    Create a timing context manager for performance measurement.

    Args:
        operation_name: Name of the operation being timed

    Returns:
        TimingContext: Context manager for timing
    """
    return TimingContext(operation_name)


class TimingContext:
    """Context manager for timing operations."""

    def __init__(self, operation_name: str):
        self.operation_name = operation_name
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.monotonic()
        duration = self.end_time - self.start_time

        if exc_type is None:
            logger.debug(f"Operation '{self.operation_name}' completed in {duration:.3f}s")
        else:
            logger.debug(f"Operation '{self.operation_name}' failed after {duration:.3f}s: {exc_val}")

    @property
    def duration(self) -> Optional[float]:
        """Get the duration of the operation."""
        if self.start_time is not None and self.end_time is not None:
            return self.end_time - self.start_time
        return None


def safe_get(dictionary: Any, key: str, default: Any = None) -> Any:
    """
    Safely get a value from a dictionary with dotted field path support.

    Args:
        dictionary: Dictionary to search
        key: Key or nested key path (e.g., "a.b.c")
        default: Default value if key not found

    Returns:
        Value from dictionary or default
    """
    try:
        value = dictionary
        for k in key.split('.'):
            value = value[k]
        return value
    except (KeyError, TypeError, AttributeError):
        return default
