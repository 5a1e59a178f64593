import re
from typing import Any, Mapping, Type, TypeVar

from pydantic import BaseModel, ConfigDict

T_Model = TypeVar("T_Model", bound="RecordModel")

# Keys the metadata tables cannot hold verbatim are stored with a "_" prefix.
_ESCAPED_KEY = re.compile(r"^_(\$.+)$")
_RESERVED_KEY = re.compile(r"^\$.+$")

_SLUG = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
_COLUMN_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class RecordModel(BaseModel):
    """Adds serialization helpers for storage adapters."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_record(cls: Type[T_Model], data: Mapping[str, Any] | BaseModel) -> T_Model:
        return cls.model_validate(data)


def escape_document_keys(document: Mapping[str, Any]) -> dict[str, Any]:
    """Prefix top-level ``$`` keys so the document can live in a metadata table."""
    return {f"_{key}" if _RESERVED_KEY.match(key) else key: value for key, value in document.items()}


def restore_document_keys(document: Mapping[str, Any]) -> dict[str, Any]:
    """Undo escape_document_keys()."""
    restored: dict[str, Any] = {}
    for key, value in document.items():
        match = _ESCAPED_KEY.match(key)
        restored[match.group(1) if match else key] = value
    return restored


def ensure_slug(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("table slug must be a string")
    if not _SLUG.match(value):
        raise ValueError("table slug must be lowercase, without whitespace, and must not start with '_'")
    return value


def ensure_column_name(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("column name must be a string")
    if not _COLUMN_NAME.match(value):
        raise ValueError(f"invalid column name '{value}'")
    return value


def ensure_non_empty_text(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    if not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value


def class_name_for(slug: str) -> str:
    """CamelCase name derived from a table slug, for generated classes."""
    return "".join(part.capitalize() for part in slug.replace("-", "_").split("_")) or "Table"
