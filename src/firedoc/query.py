"""
Query building and document iteration for firedoc library.

A Query is an immutable value: every clause method returns a new Query and
leaves the original untouched, so a partially built query can be reused
across branches. Nothing touches the store until documents() is called.

Example:
    adults = store.query("users").where("age", ">=", 18)
    first_page = adults.order_by("age").limit(10).documents()
    oldest = adults.order_by("age", DESC).limit(1).documents()
"""

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, NamedTuple, Optional, Tuple, Type, TypeVar

from .exceptions import ValidationError
from .serialization import decode
from .utils import document_id, safe_get

T = TypeVar('T')

MAX_DISJUNCTION_VALUES = 10

FILTER_OPERATORS = frozenset([
    "==", "!=", "<", "<=", ">", ">=",
    "array-contains", "array-contains-any", "in", "not-in",
])

LIST_OPERATORS = frozenset(["array-contains-any", "in", "not-in"])


class Direction(str, Enum):
    """Sort direction for order_by clauses."""
    ASCENDING = "ASCENDING"
    DESCENDING = "DESCENDING"


ASC = Direction.ASCENDING
DESC = Direction.DESCENDING


@dataclass(frozen=True)
class FieldFilter:
    """A single where() clause."""
    field: str
    op: str
    value: Any


class Where(NamedTuple):
    """Filter triple accepted by the shorthand query helpers."""
    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class Ordering:
    """A single order_by() clause."""
    field: str
    direction: Direction = Direction.ASCENDING


@dataclass(frozen=True)
class Cursor:
    """Pagination cursor; values line up with the orderings."""
    values: Tuple[Any, ...]
    inclusive: bool


@dataclass(frozen=True)
class QuerySpec:
    """
    Accumulated clause set of a query.

    Backends translate a QuerySpec into their native query form.
    """
    collection: str
    all_descendants: bool = False
    filters: Tuple[FieldFilter, ...] = ()
    orders: Tuple[Ordering, ...] = ()
    limit: Optional[int] = None
    limit_to_last: bool = False
    offset: int = 0
    start: Optional[Cursor] = None
    end: Optional[Cursor] = None
    projection: Optional[Tuple[str, ...]] = None

    def validate(self) -> None:
        """
        Check constraints that depend on the combination of clauses.

        Raises:
            ValidationError: If the clause set cannot be submitted
        """
        if self.limit_to_last and not self.orders:
            raise ValidationError(
                "limit_to_last requires at least one order_by clause",
                field="limit_to_last",
                value=self.limit
            )

        for name, cursor in (("start", self.start), ("end", self.end)):
            if cursor is None:
                continue
            if not cursor.values:
                raise ValidationError(f"{name} cursor needs at least one value", field=name)
            if len(cursor.values) > len(self.orders):
                raise ValidationError(
                    f"{name} cursor has {len(cursor.values)} values but the query has "
                    f"{len(self.orders)} order_by clauses",
                    field=name,
                    value=list(cursor.values)
                )


@dataclass
class Document:
    """A document read from the store."""
    path: str
    data: Optional[Dict[str, Any]] = None
    exists: bool = True
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None

    @property
    def id(self) -> str:
        return document_id(self.path)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.data or {})

    def to(self, target: Optional[Type[T]] = None) -> Any:
        """Decode the document fields into target (dict when None)."""
        return decode(self.data, target)

    def get(self, field_path: str, default: Any = None) -> Any:
        return safe_get(self.data or {}, field_path, default)


class DocumentIterator:
    """
    Lazy, single-pass, forward-only sequence of documents.

    Exhaustion raises StopIteration, which is distinct from any store
    error raised while fetching.
    """

    def __init__(self, documents: Iterator[Document]):
        self._documents = iter(documents)
        self._stopped = False

    def __iter__(self) -> 'DocumentIterator':
        return self

    def __next__(self) -> Document:
        if self._stopped:
            raise StopIteration
        try:
            return next(self._documents)
        except StopIteration:
            self._stopped = True
            raise

    def next_doc(self, target: Optional[Type[T]] = None) -> Tuple[str, Any]:
        """
        Fetch the next document decoded into target.

        Returns:
            Tuple of (document path, decoded value)

        Raises:
            StopIteration: When the sequence is exhausted
        """
        doc = next(self)
        return doc.path, doc.to(target)

    def stop(self) -> None:
        """Release the underlying stream; further reads are exhausted."""
        if not self._stopped:
            self._stopped = True
            close = getattr(self._documents, "close", None)
            if close is not None:
                close()

    def __enter__(self) -> 'DocumentIterator':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()


def validate_filter(field_path: str, op: str, value: Any) -> None:
    """
    Validate a single filter clause before it is submitted.

    Raises:
        ValidationError: On unknown operators or oversized value lists
    """
    if not field_path:
        raise ValidationError("Filter field path must not be empty", field="field")

    if op not in FILTER_OPERATORS:
        raise ValidationError(
            f"Unsupported filter operator '{op}'",
            field=field_path,
            details={"allowed": sorted(FILTER_OPERATORS)}
        )

    if op in LIST_OPERATORS:
        if not isinstance(value, (list, tuple)):
            raise ValidationError(f"Operator '{op}' requires a list of values", field=field_path, value=value)
        if not value:
            raise ValidationError(f"Operator '{op}' requires at least one value", field=field_path)
        if len(value) > MAX_DISJUNCTION_VALUES:
            raise ValidationError(
                f"Operator '{op}' accepts at most {MAX_DISJUNCTION_VALUES} values, got {len(value)}",
                field=field_path
            )


class Query:
    """
    Immutable query builder over a collection or collection group.

    Created by DocumentStore.query()/query_group() or the Transaction
    equivalents; the creator decides where documents() runs.
    """

    def __init__(self, runner: Any, spec: QuerySpec):
        self._runner = runner
        self._spec = spec

    @property
    def spec(self) -> QuerySpec:
        return self._spec

    def _with(self, **changes) -> 'Query':
        return Query(self._runner, replace(self._spec, **changes))

    def where(self, field_path: str, op: str, value: Any) -> 'Query':
        """
        Add a filter condition.

        The op argument must be one of "==", "!=", "<", "<=", ">", ">=",
        "array-contains", "array-contains-any", "in", or "not-in".
        """
        validate_filter(field_path, op, value)
        if op in LIST_OPERATORS:
            value = tuple(value)
        return self._with(filters=self._spec.filters + (FieldFilter(field_path, op, value),))

    def order_by(self, field_path: str, direction: Direction = Direction.ASCENDING) -> 'Query':
        """Add a sort ordering; orderings apply in the order added."""
        return self._with(orders=self._spec.orders + (Ordering(field_path, Direction(direction)),))

    def limit(self, count: int) -> 'Query':
        """Return at most count results from the start of the ordered set."""
        _check_count("limit", count)
        return self._with(limit=count, limit_to_last=False)

    def limit_to_last(self, count: int) -> 'Query':
        """Return at most count results from the end of the ordered set."""
        _check_count("limit_to_last", count)
        return self._with(limit=count, limit_to_last=True)

    def offset(self, count: int) -> 'Query':
        """Skip count results before returning any."""
        _check_count("offset", count)
        return self._with(offset=count)

    def start_at(self, *values: Any) -> 'Query':
        """Start at the given order_by field values (inclusive)."""
        return self._with(start=Cursor(tuple(values), inclusive=True))

    def start_after(self, *values: Any) -> 'Query':
        """Start after the given order_by field values (exclusive)."""
        return self._with(start=Cursor(tuple(values), inclusive=False))

    def end_at(self, *values: Any) -> 'Query':
        """End at the given order_by field values (inclusive)."""
        return self._with(end=Cursor(tuple(values), inclusive=True))

    def end_before(self, *values: Any) -> 'Query':
        """End before the given order_by field values (exclusive)."""
        return self._with(end=Cursor(tuple(values), inclusive=False))

    def select(self, *fields: str) -> 'Query':
        """Return only the named fields; no fields means references only."""
        return self._with(projection=tuple(fields))

    def documents(self, cancel: Optional[threading.Event] = None) -> DocumentIterator:
        """
        Execute the query and return a lazy iterator over the results.

        Args:
            cancel: Event that ends the iteration with OperationCanceledError
        """
        self._spec.validate()
        return DocumentIterator(self._runner.run_query(self._spec, cancel=cancel))

    def __repr__(self) -> str:
        return f"Query({self._spec!r})"


def _check_count(name: str, count: int) -> None:
    if not isinstance(count, int) or isinstance(count, bool) or count < 0:
        raise ValidationError(f"{name} must be a non-negative integer", field=name, value=count)
