"""Unit tests for SchemaValidator."""

from typing import Any

import pytest

from dynarecord.errors import TableNotFound
from dynarecord.models.schema import TableSchema
from dynarecord.services.validator import SchemaValidator, build_row_model


class FakeSchemaSource:
    """Serves stored schema documents and counts reads."""

    def __init__(self, *definitions: dict[str, Any]) -> None:
        self.documents = {
            definition["$id"]: TableSchema.model_validate(definition).to_document() for definition in definitions
        }
        self.reads = 0

    async def read_raw(self, slug: str) -> dict[str, Any] | None:
        self.reads += 1
        return self.documents.get(slug)


PEOPLE = {
    "$id": "people",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "age": {"type": "integer", "minimum": 0},
        "score": {"type": "number"},
        "active": {"type": "boolean"},
        "role": {"type": "string", "enum": ["admin", "member"]},
        "tags": {"type": "array"},
        "meta": {"type": "object"},
    },
    "required": ["name"],
}


@pytest.fixture
def source() -> FakeSchemaSource:
    return FakeSchemaSource(PEOPLE, {**PEOPLE, "$id": "strict-people", "additionalProperties": False})


@pytest.fixture
def validator(source: FakeSchemaSource) -> SchemaValidator:
    return SchemaValidator(source)


async def test_accepts_valid_row(validator: SchemaValidator) -> None:
    result = await validator.validate(
        "people",
        {"name": "Ann", "age": 30, "score": 1.5, "active": True, "role": "admin", "tags": ["a"], "meta": {"k": 1}},
    )

    assert result.valid
    assert result.violations == []


async def test_optional_columns_may_be_absent(validator: SchemaValidator) -> None:
    result = await validator.validate("people", {"name": "Ann"})

    assert result.valid


async def test_integer_is_accepted_for_number_columns(validator: SchemaValidator) -> None:
    result = await validator.validate("people", {"name": "Ann", "score": 3})

    assert result.valid


async def test_reports_missing_required_field(validator: SchemaValidator) -> None:
    result = await validator.validate("people", {"age": 3})

    assert not result.valid
    assert [(v.path, v.rule) for v in result.violations] == [("/name", "missing")]


async def test_reports_type_mismatch_without_coercion(validator: SchemaValidator) -> None:
    result = await validator.validate("people", {"name": 5, "age": "3", "active": 1})

    rules = {v.path: v.rule for v in result.violations}
    assert rules == {"/name": "string_type", "/age": "int_type", "/active": "bool_type"}


async def test_boolean_is_not_an_integer(validator: SchemaValidator) -> None:
    result = await validator.validate("people", {"name": "Ann", "age": True})

    assert [v.path for v in result.violations] == ["/age"]


async def test_enforces_keyword_constraints(validator: SchemaValidator) -> None:
    result = await validator.validate("people", {"name": "", "age": -1, "role": "owner"})

    rules = {v.path: v.rule for v in result.violations}
    assert rules == {"/name": "string_too_short", "/age": "greater_than_equal", "/role": "literal_error"}


async def test_extra_fields_allowed_unless_forbidden(validator: SchemaValidator) -> None:
    assert (await validator.validate("people", {"name": "Ann", "nickname": "A"})).valid

    result = await validator.validate("strict-people", {"name": "Ann", "nickname": "A"})

    assert [(v.path, v.rule) for v in result.violations] == [("/nickname", "extra_forbidden")]


async def test_compiled_validators_are_cached(validator: SchemaValidator, source: FakeSchemaSource) -> None:
    first = await validator.compile("people")
    second = await validator.compile("people")

    assert first is second
    assert source.reads == 1


async def test_invalidate_forces_recompile(validator: SchemaValidator, source: FakeSchemaSource) -> None:
    await validator.compile("people")

    validator.invalidate("people")
    await validator.compile("people")
    validator.invalidate()
    await validator.compile("people")

    assert source.reads == 3


async def test_unknown_table_raises(validator: SchemaValidator) -> None:
    with pytest.raises(TableNotFound):
        await validator.compile("nobody")


def test_row_model_tolerates_column_names_that_shadow_pydantic_attributes() -> None:
    schema = TableSchema.model_validate(
        {"$id": "odd", "properties": {"json": {"type": "string"}, "_tag": {"type": "integer"}}}
    )

    model = build_row_model(schema)

    model.model_validate({"json": "x", "_tag": 1})
