"""
Payload encoding for firedoc library.

Documents travel to and from the store as plain key-value trees. Callers
work with their own shapes (pydantic models, dataclasses or dicts) and
name the target type when reading.
"""

import dataclasses
from functools import lru_cache
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

import pydantic
from pydantic import BaseModel, TypeAdapter

from .exceptions import ValidationError

T = TypeVar('T')


@lru_cache(maxsize=256)
def _adapter(target: Any) -> TypeAdapter:
    return TypeAdapter(target)


def encode(value: Any) -> Dict[str, Any]:
    """
    Encode a caller value into a key-value tree suitable for the store.

    Args:
        value: pydantic model, dataclass instance or mapping

    Returns:
        Dict[str, Any]: Plain dictionary

    Raises:
        ValidationError: If the value cannot be stored as a document
    """
    if isinstance(value, BaseModel):
        return value.model_dump(mode="python", by_alias=True)

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _adapter(type(value)).dump_python(value, mode="python")

    if isinstance(value, Mapping):
        return dict(value)

    raise ValidationError(
        f"Cannot store value of type {type(value).__name__} as a document",
        field="value"
    )


def decode(data: Optional[Mapping[str, Any]], target: Optional[Type[T]] = None) -> Any:
    """
    Decode a stored key-value tree into the caller's shape.

    Args:
        data: Stored document fields
        target: Type to decode into; a plain dict is returned when None

    Returns:
        Decoded value

    Raises:
        ValidationError: If the data does not fit the target type
    """
    fields = dict(data or {})
    if target is None or target is dict:
        return fields

    try:
        return _adapter(target).validate_python(fields)
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Document does not match {getattr(target, '__name__', target)}: {e.error_count()} error(s)",
            field=getattr(target, '__name__', str(target)),
            details={"errors": e.errors(include_url=False)}
        ) from e
