"""Row validation against a table's stored JSON Schema.

The schema document is fetched through the registry, its escaped metadata
keys are restored, and the column definitions are compiled into a strict
pydantic model. Compiled models are cached per table slug.
"""

from typing import Any, Literal, Mapping

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from dynarecord.errors import TableNotFound
from dynarecord.models.base import class_name_for, restore_document_keys
from dynarecord.models.enums import ColumnType
from dynarecord.models.schema import ColumnDef, TableSchema
from dynarecord.services.schema_registry import SchemaSource

_PYTHON_TYPES: dict[ColumnType, Any] = {
    ColumnType.STRING: str,
    ColumnType.INTEGER: int,
    ColumnType.NUMBER: float,
    ColumnType.BOOLEAN: bool,
    ColumnType.NULL: None,
    ColumnType.OBJECT: dict[str, Any],
    ColumnType.ARRAY: list[Any],
}


class Violation(BaseModel):
    """One failed constraint: JSON pointer to the field plus the rule broken."""

    path: str
    rule: str
    message: str

    model_config = ConfigDict(frozen=True)


class ValidationResult(BaseModel):
    valid: bool
    violations: list[Violation] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class CompiledValidator:
    """Reusable check of candidate rows against one table's schema."""

    def __init__(self, slug: str, model: type[BaseModel]) -> None:
        self.slug = slug
        self._model = model

    def __call__(self, data: Mapping[str, Any]) -> ValidationResult:
        try:
            self._model.model_validate(dict(data))
        except ValidationError as e:
            return ValidationResult(valid=False, violations=[_violation(error) for error in e.errors()])
        return ValidationResult(valid=True)


class SchemaValidator:
    """Compiles and caches validators for tables known to a schema source."""

    def __init__(
        self,
        source: SchemaSource,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._source = source
        self._logger = logger or structlog.get_logger(__name__)
        self._compiled: dict[str, CompiledValidator] = {}

    async def compile(self, slug: str) -> CompiledValidator:
        """Load the schema of ``slug`` and compile it, reusing a cached result.

        Raises:
            TableNotFound: If no schema is stored for ``slug``.
        """
        cached = self._compiled.get(slug)
        if cached is not None:
            return cached

        document = await self._source.read_raw(slug)
        if document is None:
            raise TableNotFound(slug)
        schema = TableSchema.model_validate(restore_document_keys(document))
        compiled = CompiledValidator(slug, build_row_model(schema))
        self._compiled[slug] = compiled
        self._logger.debug("validator_compiled", table=slug, columns=list(schema.columns))
        return compiled

    async def validate(self, slug: str, data: Mapping[str, Any]) -> ValidationResult:
        validator = await self.compile(slug)
        return validator(data)

    def invalidate(self, slug: str | None = None) -> None:
        """Forget compiled validators so the next compile re-reads the schema."""
        if slug is None:
            self._compiled.clear()
        else:
            self._compiled.pop(slug, None)


def build_row_model(schema: TableSchema) -> type[BaseModel]:
    """Translate a table schema into a strict pydantic model.

    Columns become aliased fields so names such as ``_tag`` or ``json``
    cannot collide with pydantic's own attributes.
    """
    fields: dict[str, Any] = {}
    for position, (name, column) in enumerate(schema.columns.items()):
        annotation = _annotation(column)
        constraints = _constraints(column)
        if name in schema.required:
            fields[f"column_{position}"] = (annotation, Field(..., alias=name, **constraints))
        else:
            # absent is allowed; present values are still checked
            fields[f"column_{position}"] = (annotation, Field(default=None, alias=name, **constraints))

    extra = "forbid" if schema.additional_properties is False else "allow"
    return create_model(
        f"{class_name_for(schema.slug)}Row",
        __config__=ConfigDict(strict=True, extra=extra),
        **fields,
    )


def _annotation(column: ColumnDef) -> Any:
    if column.enum:
        return Literal[tuple(column.enum)]
    return _PYTHON_TYPES[column.type]


def _constraints(column: ColumnDef) -> dict[str, Any]:
    if column.enum:
        return {}
    if column.type == ColumnType.STRING:
        candidates = {"min_length": column.min_length, "max_length": column.max_length, "pattern": column.pattern}
    elif column.type in (ColumnType.INTEGER, ColumnType.NUMBER):
        candidates = {
            "ge": column.minimum,
            "le": column.maximum,
            "gt": column.exclusive_minimum,
            "lt": column.exclusive_maximum,
        }
    else:
        candidates = {}
    return {key: value for key, value in candidates.items() if value is not None}


def _violation(error: Mapping[str, Any]) -> Violation:
    path = "".join(f"/{part}" for part in error.get("loc", ()))
    return Violation(path=path, rule=error["type"], message=error["msg"])
