from typing import Any

from pydantic import Field, model_validator

from dynarecord.models.base import RecordModel
from dynarecord.models.schema import TableSchema


class ExportDocument(RecordModel):
    """Portable snapshot of a database: table schemas plus their rows."""

    schemas: list[TableSchema] = Field(default_factory=list)
    tables: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_tables_have_schemas(self) -> "ExportDocument":
        slugs = [schema.slug for schema in self.schemas]
        if len(set(slugs)) != len(slugs):
            raise ValueError("schemas must have unique slugs")
        unknown = sorted(set(self.tables) - set(slugs))
        if unknown:
            raise ValueError(f"tables without a schema: {', '.join(unknown)}")
        return self

    def to_record(self) -> dict[str, Any]:
        # rows are kept verbatim, null values included
        return {"schemas": [schema.to_record() for schema in self.schemas], "tables": self.tables}

    def rows_for(self, slug: str) -> list[dict[str, Any]]:
        return self.tables.get(slug, [])


__all__ = ["ExportDocument"]
