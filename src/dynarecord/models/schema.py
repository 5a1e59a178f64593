"""Table metadata models.

These models double as the meta-schema for ``create_table()``: a table
definition is accepted when it validates as a ``TableSchema``. Field aliases
follow JSON Schema naming (``$id``, ``title``, ``properties``) so a definition
exported from the metadata tables can be fed straight back in.
"""

from typing import Any, Literal, Mapping

import structlog
from pydantic import Field, NonNegativeInt, field_validator, model_validator

from dynarecord.models.base import (
    RecordModel,
    ensure_column_name,
    ensure_non_empty_text,
    ensure_slug,
    escape_document_keys,
    restore_document_keys,
)
from dynarecord.models.enums import ColumnType

logger = structlog.get_logger(__name__)


class ColumnDef(RecordModel):
    type: ColumnType
    description: str = ""
    is_index: bool = Field(default=False, alias="isIndex")
    is_unique: bool = Field(default=False, alias="isUnique")
    is_auto_increment: bool = Field(default=False, alias="isAutoIncrement")

    # JSON Schema keywords enforced by the validator
    enum: list[Any] | None = None
    min_length: int | None = Field(default=None, ge=0, alias="minLength")
    max_length: int | None = Field(default=None, ge=0, alias="maxLength")
    pattern: str | None = None
    minimum: int | float | None = None
    maximum: int | float | None = None
    exclusive_minimum: int | float | None = Field(default=None, alias="exclusiveMinimum")
    exclusive_maximum: int | float | None = Field(default=None, alias="exclusiveMaximum")

    @model_validator(mode="after")
    def _force_auto_increment_index(self) -> "ColumnDef":
        if not self.is_auto_increment:
            return self
        if self.type != ColumnType.INTEGER:
            raise ValueError("auto-increment columns must be of type 'integer'")
        if not (self.is_index and self.is_unique):
            logger.warning(
                "auto_increment_column_forced_unique",
                declared_index=self.is_index,
                declared_unique=self.is_unique,
            )
            self.is_index = True
            self.is_unique = True
        return self


class TableSchema(RecordModel):
    """Metadata of one table: slug, display name, columns and required fields."""

    slug: str = Field(alias="$id")
    name: str = Field(default="", alias="title")
    schema_uri: str | None = Field(default=None, alias="$schema")
    description: str = ""
    type: Literal["object"] = "object"
    columns: dict[str, ColumnDef] = Field(default_factory=dict, alias="properties")
    required: list[str] = Field(default_factory=list)
    additional_properties: bool | None = Field(default=None, alias="additionalProperties")

    @field_validator("slug", mode="before")
    @classmethod
    def _validate_slug(cls, value: Any) -> str:
        return ensure_slug(value)

    @field_validator("name", mode="before")
    @classmethod
    def _validate_name(cls, value: Any) -> str:
        if value is None or value == "":
            return ""
        return ensure_non_empty_text(value, "title")

    @field_validator("columns", mode="before")
    @classmethod
    def _validate_column_names(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            for key in value:
                ensure_column_name(key)
        return value

    @field_validator("required")
    @classmethod
    def _dedupe_required(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def _default_name(self) -> "TableSchema":
        if not self.name:
            self.name = self.slug
        return self

    @classmethod
    def empty(cls) -> "TableSchema":
        """Sentinel returned when a slug has no stored schema."""
        return cls.model_construct(**{"$id": "", "title": ""})

    @property
    def exists(self) -> bool:
        return bool(self.slug)

    @property
    def auto_increment_columns(self) -> list[str]:
        return [name for name, column in self.columns.items() if column.is_auto_increment]

    @property
    def json_schema(self) -> dict[str, Any]:
        """The raw JSON Schema document describing this table."""
        return self.to_record()

    def to_document(self) -> dict[str, Any]:
        """Form stored in the ``_schema`` metadata table."""
        return escape_document_keys(self.to_record())

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "TableSchema":
        return cls.model_validate(restore_document_keys(document))


class CounterRecord(RecordModel):
    """Current auto-increment sequence values of one table."""

    table_slug: str = Field(alias="_$id")
    sequences: dict[str, NonNegativeInt] = Field(default_factory=dict)


class IndexOptions(RecordModel):
    name: str
    unique: bool | None = None
    auto_increment: bool = Field(default=False, alias="autoIncrement")

    @field_validator("name", mode="before")
    @classmethod
    def _validate_name(cls, value: Any) -> str:
        return ensure_column_name(value)


__all__ = ["ColumnDef", "TableSchema", "CounterRecord", "IndexOptions"]
