"""Schema registry: table metadata, indexes and auto-increment counters.

Table definitions live in the ``_schema`` metadata table and counter
sequences in ``_counters``, one document per table keyed by ``_$id``. Neither
store supports multi-document transactions, so every multi-step operation
here is a best-effort sequence; ``create_table()`` compensates on failure and
column mutators restore the in-memory definition when the write fails.
"""

import copy
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from typing import Any, Protocol

import structlog
from pydantic import TypeAdapter, ValidationError

from dynarecord.errors import (
    NOTHING_TO_CLEAN_UP,
    ColumnExists,
    ColumnNotFound,
    IndexNotFound,
    NotFound,
    SchemaInvalid,
    TableExists,
    TableNotFound,
)
from dynarecord.models.base import ensure_column_name
from dynarecord.models.schema import ColumnDef, CounterRecord, IndexOptions, TableSchema
from dynarecord.services.backend import StorageBackend
from dynarecord.services.connection import Connection

SCHEMA_TABLE = "_schema"
COUNTERS_TABLE = "_counters"
METADATA_KEY = "_$id"

_COLUMNS = TypeAdapter(dict[str, ColumnDef])


class CounterStore(Protocol):
    """Counter operations a record accessor may use.

    Only the schema registry mutates counter documents; accessors acquire
    and release sequence values through this interface.
    """

    async def read_counters(self, slug: str) -> CounterRecord | None: ...

    async def increment_counter(self, slug: str, column: str) -> int: ...

    async def decrement_counter(self, slug: str, column: str, expected: int | None = None) -> int: ...


class SchemaSource(Protocol):
    async def read_raw(self, slug: str) -> dict[str, Any] | None: ...


class SchemaRegistry:
    """Creates, alters and drops tables and owns their counter sequences.

    An instance is bound to one table at a time, either by ``create_table()``
    or by ``read()``. Schema mutations assume a single mutator; there is no
    optimistic versioning of the stored definition.
    """

    def __init__(
        self,
        connection: Connection,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._connection = connection
        self._logger = logger or structlog.get_logger(__name__)
        self.table = TableSchema.empty()

    @property
    def slug(self) -> str:
        return self.table.slug

    @property
    def name(self) -> str:
        return self.table.name

    @property
    def columns(self) -> dict[str, ColumnDef]:
        return self.table.columns

    @property
    def required(self) -> list[str]:
        return self.table.required

    @property
    def json_schema(self) -> dict[str, Any]:
        return self.table.json_schema

    async def initialize_schema(self) -> None:
        """Create the metadata tables and their unique ``_$id`` indexes if missing."""
        backend = await self._connection.interface()
        await self._ensure_metadata_tables(backend)
        self._logger.info("metadata_tables_initialized")

    async def create_table(self, schema: Mapping[str, Any] | TableSchema) -> TableSchema:
        """Create a table from a JSON Schema style definition.

        Args:
            schema: Definition with ``$id`` (slug), optional ``title``,
                ``properties`` (columns) and ``required``.

        Returns:
            The stored TableSchema; the registry is now bound to it.

        Raises:
            SchemaInvalid: If the definition fails the meta-schema.
            TableExists: If the slug is already taken.
        """
        definition = self._parse_definition(schema)
        slug = definition.slug
        backend = await self._connection.interface()

        await backend.create_table(slug)
        try:
            await self._ensure_metadata_tables(backend)
            await backend.insert_one(SCHEMA_TABLE, definition.to_document())
            await backend.insert_one(COUNTERS_TABLE, CounterRecord(table_slug=slug).to_record())
            self.table = definition
            for name, column in definition.columns.items():
                if column.is_index:
                    await self.add_index(
                        IndexOptions(name=name, unique=column.is_unique, auto_increment=column.is_auto_increment)
                    )
        except Exception as e:
            self.table = TableSchema.empty()
            self._logger.warning("create_table_compensating", table=slug, error=str(e))
            await self._undo_create(backend, slug)
            raise

        self._logger.info("table_created", table=slug, columns=list(definition.columns))
        return self.table

    async def drop_table(self) -> None:
        """Drop the bound table and its metadata rows."""
        self._require_bound()
        slug = self.slug
        backend = await self._connection.interface()
        await backend.delete_one(SCHEMA_TABLE, {METADATA_KEY: slug})
        await backend.drop_table(slug)
        await backend.delete_one(COUNTERS_TABLE, {METADATA_KEY: slug})
        self.table = TableSchema.empty()
        self._logger.info("table_dropped", table=slug)

    async def rename_table(self, new_slug: str, new_name: str | None = None) -> TableSchema:
        """Rename the bound table; ``new_name`` defaults to ``new_slug``."""
        self._require_bound()
        old_slug = self.slug
        renamed = self._parse_definition({**self.table.json_schema, "$id": new_slug, "title": new_name or new_slug})
        backend = await self._connection.interface()

        await backend.rename_table(old_slug, new_slug)
        await backend.update_one(SCHEMA_TABLE, {METADATA_KEY: old_slug}, renamed.to_document())
        counters = await self.read_counters(old_slug)
        if counters is not None:
            counters.table_slug = new_slug
            await backend.update_one(COUNTERS_TABLE, {METADATA_KEY: old_slug}, counters.to_record())

        self.table = renamed
        self._logger.info("table_renamed", old=old_slug, new=new_slug)
        return self.table

    async def read(self, slug: str) -> TableSchema:
        """Load and bind the schema of ``slug``.

        Returns:
            The stored TableSchema, or ``TableSchema.empty()`` (slug ``""``)
            when no table by that slug exists.
        """
        document = await self.read_raw(slug)
        if document is None:
            self._logger.debug("schema_not_found", table=slug)
            self.table = TableSchema.empty()
        else:
            self.table = TableSchema.from_document(document)
        return self.table

    async def read_raw(self, slug: str) -> dict[str, Any] | None:
        """The stored ``_schema`` document of ``slug``, keys still escaped."""
        backend = await self._connection.interface()
        return await backend.find_one(SCHEMA_TABLE, {METADATA_KEY: slug})

    async def define(self, columns: Mapping[str, Any]) -> TableSchema:
        """Replace the whole column map."""
        self._require_bound()
        parsed = self._parse_columns(columns)
        async with self._rollback_on_failure():
            self.table.columns = parsed
            await self._write_schema()
            await self._prune_sequences()
        return self.table

    async def add_column(self, name: str, type: str, description: str = "") -> TableSchema:
        self._require_bound()
        if name in self.table.columns:
            raise ColumnExists([name])
        parsed = self._parse_columns({name: {"type": type, "description": description}})
        async with self._rollback_on_failure():
            self.table.columns.update(parsed)
            await self._write_schema()
        self._logger.info("column_added", table=self.slug, column=name, type=type)
        return self.table

    async def add_columns(self, columns: Mapping[str, Any]) -> TableSchema:
        """Add several columns; nothing changes if any name is already taken."""
        self._require_bound()
        conflicts = [name for name in columns if name in self.table.columns]
        if conflicts:
            raise ColumnExists(conflicts)
        parsed = self._parse_columns(columns)
        async with self._rollback_on_failure():
            self.table.columns.update(parsed)
            await self._write_schema()
        self._logger.info("columns_added", table=self.slug, columns=list(parsed))
        return self.table

    async def remove_column(self, name: str) -> TableSchema:
        self._require_bound()
        self._require_column(name)
        async with self._rollback_on_failure():
            del self.table.columns[name]
            self.table.required = [field for field in self.table.required if field != name]
            await self._write_schema()
            await self._prune_sequences()
        self._logger.info("column_removed", table=self.slug, column=name)
        return self.table

    async def rename_column(self, name: str, new_name: str) -> TableSchema:
        """Rename a column, carrying its counter sequence and index along."""
        self._require_bound()
        self._require_column(name)
        if new_name in self.table.columns:
            raise ColumnExists([new_name])
        try:
            ensure_column_name(new_name)
        except (TypeError, ValueError) as e:
            raise SchemaInvalid(str(e)) from e

        column = self.table.columns[name]
        async with self._rollback_on_failure():
            self.table.columns = {new_name if key == name else key: value for key, value in self.table.columns.items()}
            self.table.required = [new_name if field == name else field for field in self.table.required]
            await self._write_schema()

            counters = await self.read_counters(self.slug)
            if counters is not None and name in counters.sequences:
                counters.sequences[new_name] = counters.sequences.pop(name)
                await self._write_counters(counters)

        if column.is_index:
            backend = await self._connection.interface()
            try:
                await backend.drop_index(self.slug, name)
            except IndexNotFound:
                self._logger.debug("renamed_column_had_no_index", table=self.slug, column=name)
            await backend.create_index(self.slug, new_name, unique=column.is_unique)

        self._logger.info("column_renamed", table=self.slug, old=name, new=new_name)
        return self.table

    async def change_column_type(self, name: str, new_type: str) -> TableSchema:
        self._require_bound()
        self._require_column(name)
        changed = self._parse_columns({name: {**self.table.columns[name].to_record(), "type": new_type}})
        async with self._rollback_on_failure():
            self.table.columns[name] = changed[name]
            await self._write_schema()
        self._logger.info("column_type_changed", table=self.slug, column=name, type=new_type)
        return self.table

    async def add_index(self, options: IndexOptions | Mapping[str, Any]) -> None:
        """Create a backend index; auto-increment indexes also seed a sequence at 0."""
        self._require_bound()
        if not isinstance(options, IndexOptions):
            try:
                options = IndexOptions.model_validate(options)
            except ValidationError as e:
                raise SchemaInvalid("Invalid index options", errors=e.errors(include_url=False)) from e

        unique = True if options.unique is None else options.unique
        if options.auto_increment and not unique:
            self._logger.warning("auto_increment_index_forced_unique", table=self.slug, column=options.name)
            unique = True

        backend = await self._connection.interface()
        await backend.create_index(self.slug, options.name, unique=unique)
        if options.auto_increment:
            await self.set_counter(self.slug, options.name)
        self._logger.info(
            "index_added",
            table=self.slug,
            column=options.name,
            unique=unique,
            auto_increment=options.auto_increment,
        )

    async def remove_index(self, name: str) -> None:
        """Drop a backend index and its counter sequence, if any."""
        self._require_bound()
        backend = await self._connection.interface()
        await backend.drop_index(self.slug, name)

        counters = await self.read_counters(self.slug)
        if counters is not None and name in counters.sequences:
            del counters.sequences[name]
            await self._write_counters(counters)
        self._logger.info("index_removed", table=self.slug, column=name)

    async def read_counters(self, slug: str) -> CounterRecord | None:
        backend = await self._connection.interface()
        document = await backend.find_one(COUNTERS_TABLE, {METADATA_KEY: slug})
        if document is None:
            return None
        return CounterRecord.model_validate(document)

    async def set_counter(self, slug: str, column: str) -> None:
        counters = await self._require_counters(slug)
        counters.sequences[column] = 0
        await self._write_counters(counters)

    async def increment_counter(self, slug: str, column: str) -> int:
        """Advance a sequence and return the new value.

        This is a read followed by a write; two concurrent callers can both
        read the same value and hand out the same number. The unique index
        on the auto-increment column rejects the second insert.
        """
        counters = await self._require_counters(slug)
        value = self._sequence(counters, column) + 1
        counters.sequences[column] = value
        await self._write_counters(counters)
        self._logger.debug("counter_incremented", table=slug, column=column, value=value)
        return value

    async def decrement_counter(self, slug: str, column: str, expected: int | None = None) -> int:
        """Step a sequence back by one and return the new value.

        Args:
            expected: When given, only roll back if the sequence still holds
                this value; if another writer has moved it on, the sequence
                is left alone and its current value returned.
        """
        counters = await self._require_counters(slug)
        current = self._sequence(counters, column)
        if expected is not None and current != expected:
            self._logger.warning(
                "counter_rollback_skipped",
                table=slug,
                column=column,
                expected=expected,
                current=current,
            )
            return current
        value = max(current - 1, 0)
        counters.sequences[column] = value
        await self._write_counters(counters)
        self._logger.debug("counter_decremented", table=slug, column=column, value=value)
        return value

    async def _ensure_metadata_tables(self, backend: StorageBackend) -> None:
        for table in (SCHEMA_TABLE, COUNTERS_TABLE):
            if await backend.table_exists(table):
                continue
            try:
                await backend.create_table(table)
            except TableExists:
                # created by a concurrent caller
                continue
            await backend.create_index(table, METADATA_KEY, unique=True)

    async def _prune_sequences(self) -> None:
        """Drop counter sequences whose column no longer exists."""
        counters = await self.read_counters(self.slug)
        if counters is None:
            return
        stale = [column for column in counters.sequences if column not in self.table.columns]
        if not stale:
            return
        for column in stale:
            del counters.sequences[column]
        await self._write_counters(counters)
        self._logger.debug("sequences_pruned", table=self.slug, columns=stale)

    async def _undo_create(self, backend: StorageBackend, slug: str) -> None:
        """Best-effort removal of everything create_table() may have written."""
        steps: list[Callable[[], Awaitable[Any]]] = [
            lambda: backend.drop_table(slug),
            lambda: backend.delete_one(SCHEMA_TABLE, {METADATA_KEY: slug}),
            lambda: backend.delete_one(COUNTERS_TABLE, {METADATA_KEY: slug}),
        ]
        failure: Exception | None = None
        for step in steps:
            try:
                await step()
            except NOTHING_TO_CLEAN_UP:
                continue
            except Exception as e:
                self._logger.error("create_table_compensation_failed", table=slug, error=str(e))
                failure = failure or e
        if failure is not None:
            raise failure

    async def _write_schema(self) -> None:
        backend = await self._connection.interface()
        matched = await backend.update_one(SCHEMA_TABLE, {METADATA_KEY: self.slug}, self.table.to_document())
        if not matched:
            raise TableNotFound(self.slug)

    async def _write_counters(self, counters: CounterRecord) -> None:
        backend = await self._connection.interface()
        matched = await backend.update_one(
            COUNTERS_TABLE,
            {METADATA_KEY: counters.table_slug},
            counters.to_record(),
        )
        if not matched:
            raise NotFound(f"No counters stored for table '{counters.table_slug}'")

    async def _require_counters(self, slug: str) -> CounterRecord:
        counters = await self.read_counters(slug)
        if counters is None:
            raise NotFound(f"No counters stored for table '{slug}'")
        return counters

    @asynccontextmanager
    async def _rollback_on_failure(self) -> AsyncIterator[None]:
        snapshot = copy.deepcopy(self.table)
        try:
            yield
        except Exception:
            self.table = snapshot
            raise

    def _sequence(self, counters: CounterRecord, column: str) -> int:
        if column not in counters.sequences:
            raise NotFound(f"Table '{counters.table_slug}' has no sequence for column '{column}'")
        return counters.sequences[column]

    def _require_bound(self) -> None:
        if not self.table.exists:
            raise TableNotFound(self.table.slug or "<unbound>")

    def _require_column(self, name: str) -> None:
        if name not in self.table.columns:
            raise ColumnNotFound(name)

    def _parse_definition(self, schema: Mapping[str, Any] | TableSchema) -> TableSchema:
        raw = schema.json_schema if isinstance(schema, TableSchema) else copy.deepcopy(dict(schema))
        try:
            return TableSchema.model_validate(raw)
        except ValidationError as e:
            raise SchemaInvalid(
                f"Invalid table definition ({e.error_count()} error(s))",
                errors=e.errors(include_url=False),
            ) from e
        except TypeError as e:
            raise SchemaInvalid(f"Invalid table definition: {e}") from e

    def _parse_columns(self, columns: Mapping[str, Any]) -> dict[str, ColumnDef]:
        try:
            for name in columns:
                ensure_column_name(name)
            return _COLUMNS.validate_python(copy.deepcopy(dict(columns)))
        except (ValidationError, TypeError, ValueError) as e:
            raise SchemaInvalid(f"Invalid column definition: {e}") from e
