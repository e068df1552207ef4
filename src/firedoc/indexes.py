"""
Composite index definitions in the firestore.indexes.json format.

Example:
    indexes = IndexSet()
    indexes.add(Index.new("orders").asc("customer").desc("created"))
    indexes.write_file("firestore.indexes.json")
"""

from enum import Enum
from pathlib import Path
from typing import IO, List, Optional, Union

import pydantic
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ValidationError


class QueryScope(str, Enum):
    COLLECTION = "COLLECTION"
    COLLECTION_GROUP = "COLLECTION_GROUP"


class _IndexModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class IndexField(_IndexModel):
    """A single field within a composite index."""
    field_path: str = Field(alias="fieldPath")
    order: Optional[str] = None
    array_config: Optional[str] = Field(default=None, alias="arrayConfig")


class Index(_IndexModel):
    """A composite index; builder methods append fields and return self."""
    collection_group: str = Field(alias="collectionGroup")
    query_scope: QueryScope = Field(default=QueryScope.COLLECTION, alias="queryScope")
    fields: List[IndexField] = Field(default_factory=list)

    @classmethod
    def new(cls, collection_group: str) -> 'Index':
        return cls(collection_group=collection_group)

    def scope(self, scope: QueryScope) -> 'Index':
        self.query_scope = QueryScope(scope)
        return self

    def asc(self, field_path: str) -> 'Index':
        self.fields.append(IndexField(field_path=field_path, order="ASCENDING"))
        return self

    def desc(self, field_path: str) -> 'Index':
        self.fields.append(IndexField(field_path=field_path, order="DESCENDING"))
        return self

    def array_contains(self, field_path: str) -> 'Index':
        self.fields.append(IndexField(field_path=field_path, array_config="CONTAINS"))
        return self


class FieldOverride(_IndexModel):
    """A single-field index override."""
    collection_group: str = Field(alias="collectionGroup")
    field_path: str = Field(alias="fieldPath")
    indexes: List[IndexField] = Field(default_factory=list)


class IndexSet(_IndexModel):
    """
    Indexes and field overrides, serialized the way the Firebase CLI
    expects them in firestore.indexes.json.
    """
    indexes: List[Index] = Field(default_factory=list)
    field_overrides: List[FieldOverride] = Field(default_factory=list, alias="fieldOverrides")

    def add(self, *indexes: Index) -> None:
        self.indexes.extend(indexes)

    def remove(self, *indexes: Index) -> None:
        """Remove every index structurally equal to one of indexes."""
        self.indexes = [existing for existing in self.indexes if existing not in indexes]

    def add_field_override(self, *overrides: FieldOverride) -> None:
        self.field_overrides.extend(overrides)

    def to_json(self) -> str:
        return self.model_dump_json(indent=2, by_alias=True, exclude_none=True) + "\n"

    def write_json(self, stream: IO[str]) -> None:
        stream.write(self.to_json())

    def write_file(self, path: Union[str, Path]) -> None:
        with open(path, "w", encoding="utf-8") as f:
            self.write_json(f)
        logger.info(f"Wrote {len(self.indexes)} indexes and {len(self.field_overrides)} field overrides to {path}")

    @classmethod
    def read_json(cls, stream: IO[str]) -> 'IndexSet':
        """
        Decode an IndexSet from a text stream.

        Raises:
            ValidationError: If the content is not a valid index file
        """
        try:
            return cls.model_validate_json(stream.read())
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Invalid index definition file: {str(e)}",
                details={"errors": e.errors(include_url=False)}
            ) from e

    @classmethod
    def read_file(cls, path: Union[str, Path]) -> 'IndexSet':
        with open(path, "r", encoding="utf-8") as f:
            return cls.read_json(f)
