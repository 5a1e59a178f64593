"""Unit tests for the SchemaRegistry service."""

from typing import Any

import pytest

from dynarecord.errors import (
    BackendError,
    ColumnExists,
    ColumnNotFound,
    IndexNotFound,
    NotFound,
    SchemaInvalid,
    TableExists,
    TableNotFound,
)
from dynarecord.models.enums import ColumnType
from dynarecord.services.connection import Connection
from dynarecord.services.memory_backend import MemoryBackend
from dynarecord.services.schema_registry import COUNTERS_TABLE, SCHEMA_TABLE, SchemaRegistry


class FlakyBackend(MemoryBackend):
    """MemoryBackend whose selected methods fail once armed."""

    def __init__(self) -> None:
        super().__init__()
        self.failing: dict[str, Exception] = {}

    def fail(self, method: str, error: Exception | None = None) -> None:
        self.failing[method] = error or BackendError(f"{method} failed")

    def _check(self, method: str) -> None:
        if method in self.failing:
            raise self.failing[method]

    async def create_index(self, table: str, column: str, unique: bool = False) -> None:
        self._check("create_index")
        await super().create_index(table, column, unique)

    async def update_one(self, table, match, row, upsert=False) -> int:
        self._check("update_one")
        return await super().update_one(table, match, row, upsert)

    async def drop_table(self, slug: str) -> None:
        self._check("drop_table")
        await super().drop_table(slug)


@pytest.fixture
def flaky() -> FlakyBackend:
    return FlakyBackend()


@pytest.fixture
async def flaky_registry(flaky: FlakyBackend) -> SchemaRegistry:
    registry = SchemaRegistry(Connection(flaky))
    await registry.initialize_schema()
    return registry


class TestCreateTable:
    async def test_create_then_read_returns_equal_schema(
        self, registry: SchemaRegistry, people_schema: dict[str, Any]
    ) -> None:
        created = await registry.create_table(people_schema)

        reader = SchemaRegistry(registry._connection)
        read = await reader.read("people")

        assert read.slug == created.slug == "people"
        assert read.name == "People"
        assert read.columns == created.columns
        assert read.required == ["name"]

    async def test_binds_registry_to_new_table(self, people: SchemaRegistry) -> None:
        assert people.slug == "people"
        assert people.name == "People"
        assert list(people.columns) == ["name", "id"]
        assert people.required == ["name"]
        assert people.json_schema["$id"] == "people"

    async def test_writes_metadata_documents(self, people: SchemaRegistry) -> None:
        backend = await people._connection.interface()

        schema_doc = await backend.find_one(SCHEMA_TABLE, {"_$id": "people"})
        counters = await people.read_counters("people")

        assert schema_doc["title"] == "People"
        assert "$id" not in schema_doc
        assert counters is not None
        assert counters.sequences == {"id": 0}

    async def test_creates_indexes_for_indexed_columns(self, people: SchemaRegistry) -> None:
        backend = await people._connection.interface()

        assert await backend.index_exists("people", "id")
        assert not await backend.index_exists("people", "name")
        assert await backend.index_exists(SCHEMA_TABLE, "_$id")
        assert await backend.index_exists(COUNTERS_TABLE, "_$id")

    async def test_existing_slug_raises_table_exists(
        self, people: SchemaRegistry, people_schema: dict[str, Any]
    ) -> None:
        other = SchemaRegistry(people._connection)

        with pytest.raises(TableExists):
            await other.create_table(people_schema)

        assert not other.table.exists
        assert (await other.read("people")).columns == people.columns

    @pytest.mark.parametrize(
        "definition",
        [
            {"properties": {"name": {"type": "string"}}},
            {"$id": "Bad Slug", "properties": {}},
            {"$id": "things", "properties": {"name": {"type": "text"}}},
            {"$id": "things", "properties": {"n": {"type": "string", "isAutoIncrement": True}}},
            {"$id": "things", "title": 7, "properties": {}},
        ],
    )
    async def test_invalid_definition_raises_schema_invalid(
        self, registry: SchemaRegistry, definition: dict[str, Any]
    ) -> None:
        with pytest.raises(SchemaInvalid):
            await registry.create_table(definition)

        backend = await registry._connection.interface()
        assert not await backend.table_exists("things")
        assert not registry.table.exists

    async def test_failure_after_table_creation_is_compensated(
        self, flaky: FlakyBackend, flaky_registry: SchemaRegistry, people_schema: dict[str, Any]
    ) -> None:
        flaky.fail("create_index")

        with pytest.raises(BackendError, match="create_index failed"):
            await flaky_registry.create_table(people_schema)

        assert not await flaky.table_exists("people")
        assert await flaky.find_one(SCHEMA_TABLE, {"_$id": "people"}) is None
        assert await flaky.find_one(COUNTERS_TABLE, {"_$id": "people"}) is None
        assert not flaky_registry.table.exists

    async def test_compensation_error_supersedes_original(
        self, flaky: FlakyBackend, flaky_registry: SchemaRegistry, people_schema: dict[str, Any]
    ) -> None:
        flaky.fail("create_index")
        flaky.fail("drop_table", RuntimeError("disk gone"))

        with pytest.raises(RuntimeError, match="disk gone"):
            await flaky_registry.create_table(people_schema)

        # remaining cleanup steps still ran
        assert await flaky.find_one(SCHEMA_TABLE, {"_$id": "people"}) is None

    async def test_compensation_ignores_nothing_to_clean_up(
        self, flaky: FlakyBackend, flaky_registry: SchemaRegistry, people_schema: dict[str, Any]
    ) -> None:
        flaky.fail("create_index")
        flaky.fail("drop_table", TableNotFound("people"))

        with pytest.raises(BackendError, match="create_index failed"):
            await flaky_registry.create_table(people_schema)


class TestReadAndDrop:
    async def test_read_unknown_slug_returns_sentinel(self, registry: SchemaRegistry) -> None:
        schema = await registry.read("nobody")

        assert schema.slug == ""
        assert not schema.exists

    async def test_read_raw_keeps_escaped_keys(self, people: SchemaRegistry) -> None:
        raw = await people.read_raw("people")

        assert raw["_$id"] == "people"

    async def test_drop_table_removes_data_and_metadata(self, people: SchemaRegistry) -> None:
        backend = await people._connection.interface()

        await people.drop_table()

        assert not await backend.table_exists("people")
        assert await people.read_raw("people") is None
        assert await people.read_counters("people") is None
        assert not people.table.exists

    async def test_mutators_require_a_bound_table(self, registry: SchemaRegistry) -> None:
        with pytest.raises(TableNotFound):
            await registry.drop_table()
        with pytest.raises(TableNotFound):
            await registry.add_column("age", "integer")

    async def test_rename_table_moves_data_and_metadata(self, people: SchemaRegistry) -> None:
        backend = await people._connection.interface()
        await backend.insert_one("people", {"name": "Ann", "id": 1})

        renamed = await people.rename_table("persons", "Persons")

        assert renamed.slug == "persons"
        assert renamed.name == "Persons"
        assert await backend.find("persons") == [{"name": "Ann", "id": 1}]
        assert await people.read_raw("people") is None
        assert (await SchemaRegistry(people._connection).read("persons")).name == "Persons"
        assert (await people.read_counters("persons")).sequences == {"id": 0}
        assert await people.read_counters("people") is None


class TestColumns:
    async def test_add_column_persists(self, people: SchemaRegistry) -> None:
        await people.add_column("age", "integer", "Age in years")

        stored = await SchemaRegistry(people._connection).read("people")
        assert stored.columns["age"].type is ColumnType.INTEGER
        assert stored.columns["age"].description == "Age in years"

    async def test_add_existing_column_leaves_definitions_unchanged(self, people: SchemaRegistry) -> None:
        before = people.table.model_copy(deep=True)

        with pytest.raises(ColumnExists) as exc_info:
            await people.add_column("name", "integer")

        assert exc_info.value.columns == ["name"]
        assert people.table == before
        assert await SchemaRegistry(people._connection).read("people") == before

    async def test_add_columns_reports_every_conflict(self, people: SchemaRegistry) -> None:
        before = people.table.model_copy(deep=True)

        with pytest.raises(ColumnExists) as exc_info:
            await people.add_columns({"age": {"type": "integer"}, "name": {"type": "string"}, "id": {"type": "integer"}})

        assert exc_info.value.columns == ["name", "id"]
        assert people.table == before

    async def test_add_columns_adds_all(self, people: SchemaRegistry) -> None:
        await people.add_columns({"age": {"type": "integer"}, "email": {"type": "string", "pattern": "@"}})

        assert list(people.columns) == ["name", "id", "age", "email"]

    async def test_add_column_with_unknown_type_raises_schema_invalid(self, people: SchemaRegistry) -> None:
        with pytest.raises(SchemaInvalid):
            await people.add_column("age", "decimal")

        assert "age" not in people.columns

    async def test_remove_column_drops_it_from_required(self, people: SchemaRegistry) -> None:
        await people.remove_column("name")

        assert "name" not in people.columns
        assert people.required == []
        assert (await SchemaRegistry(people._connection).read("people")).required == []

    async def test_remove_auto_increment_column_drops_its_sequence(self, people: SchemaRegistry) -> None:
        await people.remove_column("id")

        assert (await people.read_counters("people")).sequences == {}

    async def test_remove_unknown_column_raises(self, people: SchemaRegistry) -> None:
        with pytest.raises(ColumnNotFound):
            await people.remove_column("age")

    async def test_rename_column_carries_sequence_and_index(self, people: SchemaRegistry) -> None:
        backend = await people._connection.interface()
        await people.increment_counter("people", "id")

        await people.rename_column("id", "uid")

        assert list(people.columns) == ["name", "uid"]
        assert (await people.read_counters("people")).sequences == {"uid": 1}
        assert await backend.index_exists("people", "uid")
        assert not await backend.index_exists("people", "id")

    async def test_rename_column_updates_required(self, people: SchemaRegistry) -> None:
        await people.rename_column("name", "full_name")

        assert people.required == ["full_name"]

    async def test_rename_column_onto_existing_name_raises(self, people: SchemaRegistry) -> None:
        with pytest.raises(ColumnExists):
            await people.rename_column("name", "id")

    async def test_change_column_type(self, people: SchemaRegistry) -> None:
        await people.add_column("age", "string")

        await people.change_column_type("age", "integer")

        assert people.columns["age"].type is ColumnType.INTEGER

    async def test_define_replaces_column_map(self, people: SchemaRegistry) -> None:
        await people.define({"title": {"type": "string"}})

        assert list((await SchemaRegistry(people._connection).read("people")).columns) == ["title"]
        assert (await people.read_counters("people")).sequences == {}

    async def test_failed_write_restores_in_memory_definition(
        self, flaky: FlakyBackend, flaky_registry: SchemaRegistry, people_schema: dict[str, Any]
    ) -> None:
        await flaky_registry.create_table(people_schema)
        before = flaky_registry.table.model_copy(deep=True)
        flaky.fail("update_one")

        with pytest.raises(BackendError):
            await flaky_registry.add_column("age", "integer")

        assert flaky_registry.table == before


class TestIndexesAndCounters:
    async def test_add_auto_increment_index_forces_unique_and_seeds_sequence(self, people: SchemaRegistry) -> None:
        await people.add_column("serial", "integer")

        await people.add_index({"name": "serial", "unique": False, "autoIncrement": True})

        backend = await people._connection.interface()
        await backend.insert_one("people", {"name": "Ann", "serial": 5})
        with pytest.raises(BackendError):
            await backend.insert_one("people", {"name": "Bo", "serial": 5})
        assert (await people.read_counters("people")).sequences == {"id": 0, "serial": 0}

    async def test_add_plain_index_defaults_to_unique(self, people: SchemaRegistry) -> None:
        await people.add_index({"name": "name"})

        backend = await people._connection.interface()
        await backend.insert_one("people", {"name": "Ann"})
        with pytest.raises(BackendError):
            await backend.insert_one("people", {"name": "Ann"})

    async def test_remove_index_drops_sequence(self, people: SchemaRegistry) -> None:
        await people.remove_index("id")

        backend = await people._connection.interface()
        assert not await backend.index_exists("people", "id")
        assert (await people.read_counters("people")).sequences == {}

    async def test_remove_missing_index_raises(self, people: SchemaRegistry) -> None:
        with pytest.raises(IndexNotFound):
            await people.remove_index("name")

    async def test_increment_and_decrement_counter(self, people: SchemaRegistry) -> None:
        assert await people.increment_counter("people", "id") == 1
        assert await people.increment_counter("people", "id") == 2
        assert await people.decrement_counter("people", "id") == 1
        assert (await people.read_counters("people")).sequences["id"] == 1

    async def test_decrement_never_goes_below_zero(self, people: SchemaRegistry) -> None:
        assert await people.decrement_counter("people", "id") == 0

    async def test_decrement_with_stale_expectation_is_skipped(self, people: SchemaRegistry) -> None:
        await people.increment_counter("people", "id")
        await people.increment_counter("people", "id")

        assert await people.decrement_counter("people", "id", expected=1) == 2
        assert (await people.read_counters("people")).sequences["id"] == 2

    async def test_counter_for_unknown_column_raises(self, people: SchemaRegistry) -> None:
        with pytest.raises(NotFound):
            await people.increment_counter("people", "name")

    async def test_set_counter_resets_sequence(self, people: SchemaRegistry) -> None:
        await people.increment_counter("people", "id")

        await people.set_counter("people", "id")

        assert (await people.read_counters("people")).sequences["id"] == 0
