"""Record accessor and the table-bound Model protocol.

A ``RecordAccessor`` is bound to one table. It snapshots the table schema
when opened, builds a ``Model`` subclass for that table, and implements the
save/destroy protocol:

- NEW   --save()-->    BOUND  acquire auto-increment values, validate, insert
- BOUND --save()-->    BOUND  validate, update the row matched by ``original``
- BOUND --destroy()--> VOID   delete the row matched by ``original``

A failed insert returns every sequence value it acquired, unless a drawn
value is already stored by a concurrent save; the counter then stays past it.
"""

import asyncio
import copy
import functools
from collections.abc import Callable, Mapping
from typing import Any, ClassVar

import structlog

from dynarecord.errors import CompensationFailed, DuplicateKey, NotPersisted, TableNotFound, ValidationFailed
from dynarecord.models.base import class_name_for
from dynarecord.models.enums import ModelState
from dynarecord.models.query import QueryOptions
from dynarecord.models.schema import TableSchema
from dynarecord.services.backend import apply_window
from dynarecord.services.collection import RecordCollection
from dynarecord.services.connection import Connection
from dynarecord.services.schema_registry import CounterStore, SchemaRegistry
from dynarecord.services.validator import SchemaValidator

Comparator = Callable[["Model", "Model"], int]


class Model:
    """One in-memory row of a table.

    ``data`` is the working copy callers edit; ``original`` is the last
    state known to match the backend, or ``None`` for a model that has never
    been saved. Subclasses are created per accessor and carry the accessor
    and the table's column names.
    """

    accessor: ClassVar["RecordAccessor"]
    columns: ClassVar[tuple[str, ...]] = ()

    def __init__(self, data: Mapping[str, Any] | None = None, *, persisted: bool = False) -> None:
        self.data: dict[str, Any] | None = copy.deepcopy(dict(data or {}))
        self.original: dict[str, Any] | None = copy.deepcopy(self.data) if persisted else None
        self._void = False
        # serialises save()/destroy() calls on this model
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(state={self.state.value}, data={self.data!r})"

    @property
    def state(self) -> ModelState:
        if self._void:
            return ModelState.VOID
        if self.original is None:
            return ModelState.NEW
        return ModelState.BOUND

    @property
    def is_dirty(self) -> bool:
        return self.state is ModelState.NEW or self.data != self.original

    async def save(self) -> "Model":
        """Insert or update this model's row.

        Raises:
            ValidationFailed: If ``data`` does not satisfy the table schema.
            NotPersisted: If the model was destroyed, or its row has vanished.
            CompensationFailed: If an insert failed and its counters could
                not be rolled back.
        """
        async with self._lock:
            if self.state is ModelState.VOID:
                raise NotPersisted("Model was destroyed")
            if self.state is ModelState.NEW:
                await self.accessor._insert(self)
            else:
                await self.accessor._update(self)
            return self

    async def destroy(self) -> "Model":
        """Delete this model's row and clear ``data`` and ``original``.

        Raises:
            NotPersisted: If the model was never saved or is already destroyed.
        """
        async with self._lock:
            if self.state is not ModelState.BOUND:
                raise NotPersisted("Model not saved in database yet")
            await self.accessor._delete(self)
            self.data = None
            self.original = None
            self._void = True
            return self

    def _mark_persisted(self) -> None:
        self.original = copy.deepcopy(self.data)


class RecordAccessor:
    """Query and persistence entry point for one table.

    Use ``await RecordAccessor.open(connection, slug)``; the schema snapshot
    taken there is not refreshed afterwards.
    """

    def __init__(
        self,
        connection: Connection,
        schema: TableSchema,
        counters: CounterStore,
        validator: SchemaValidator,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._connection = connection
        self._counters = counters
        self._validator = validator
        self._logger = logger or structlog.get_logger(__name__)
        self.schema = schema
        self.slug = schema.slug
        self.Model: type[Model] = type(
            f"{class_name_for(schema.slug)}Model",
            (Model,),
            {"accessor": self, "columns": tuple(schema.columns)},
        )

    @classmethod
    async def open(
        cls,
        connection: Connection,
        slug: str,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> "RecordAccessor":
        """Read the schema of ``slug`` and bind an accessor to it.

        Raises:
            TableNotFound: If the table has no stored schema.
        """
        registry = SchemaRegistry(connection, logger=logger)
        schema = await registry.read(slug)
        if not schema.exists:
            raise TableNotFound(slug)
        validator = SchemaValidator(registry, logger=logger)
        return cls(connection, schema.model_copy(deep=True), registry, validator, logger=logger)

    async def find_by(self, predicate: Mapping[str, Any]) -> Model | None:
        """First row matching ``predicate`` as a bound model, or None."""
        backend = await self._connection.interface()
        row = await backend.find_one(self.slug, predicate)
        if row is None:
            return None
        return self.Model(row, persisted=True)

    async def where(
        self,
        predicate: Mapping[str, Any] | None = None,
        order_by: str | Comparator | None = None,
        options: QueryOptions | None = None,
    ) -> RecordCollection:
        """Rows matching ``predicate`` as a collection of bound models.

        Args:
            predicate: Field/value pairs every returned row must equal.
            order_by: A field name (prefix ``-`` for descending) or a
                comparator taking two models. Defaults to backend order.
            options: Sort, limit and offset. With a comparator, limit and
                offset apply to the comparator-sorted result.
        """
        options = options or QueryOptions()
        sort = options.sort_keys()
        backend = await self._connection.interface()
        if order_by is None or isinstance(order_by, str):
            if order_by is not None:
                sort = [_field_sort(order_by), *sort]
            rows = await backend.find(self.slug, predicate, sort=sort, limit=options.limit, offset=options.offset)
            return RecordCollection(self.Model, rows, persisted=True)

        # the comparator orders the full result; the window is cut afterwards
        rows = await backend.find(self.slug, predicate, sort=sort)
        models = sorted(RecordCollection(self.Model, rows, persisted=True), key=functools.cmp_to_key(order_by))
        return RecordCollection.from_models(self.Model, apply_window(models, options.limit, options.offset))

    async def all(self) -> RecordCollection:
        return await self.where()

    async def first(self, n: int | None = None, options: QueryOptions | None = None) -> Model | RecordCollection | None:
        """First row as a model, or the first ``n`` rows when ``n`` is given."""
        return await self._edge(n, options, descending=False)

    async def last(self, n: int | None = None, options: QueryOptions | None = None) -> Model | RecordCollection | None:
        """Last row as a model, or the last ``n`` rows (last first) when ``n`` is given."""
        return await self._edge(n, options, descending=True)

    async def count(self, predicate: Mapping[str, Any] | None = None) -> int:
        backend = await self._connection.interface()
        return len(await backend.find(self.slug, predicate))

    async def close_connection(self) -> None:
        """Close the shared connection; tolerates a handshake that never completed."""
        await self._connection.close()

    async def _edge(self, n: int | None, options: QueryOptions | None, descending: bool) -> Model | RecordCollection | None:
        options = options or QueryOptions()
        backend = await self._connection.interface()
        rows = await backend.find(self.slug, sort=options.sort_keys() or None)
        if descending:
            rows.reverse()
        rows = rows[options.offset :]
        if n is None:
            return self.Model(rows[0], persisted=True) if rows else None
        return RecordCollection(self.Model, rows[:n], persisted=True)

    async def _insert(self, model: Model) -> None:
        counters = await self._counters.read_counters(self.slug)
        sequences = list(counters.sequences) if counters is not None else []
        previous = {column: model.data[column] for column in sequences if column in model.data}
        acquired: dict[str, int] = {}
        try:
            for column in sequences:
                value = await self._counters.increment_counter(self.slug, column)
                acquired[column] = value
                model.data[column] = value

            result = await self._validator.validate(self.slug, model.data)
            if not result.valid:
                raise ValidationFailed(self.slug, result.violations)

            backend = await self._connection.interface()
            await backend.insert_one(self.slug, model.data)
        except DuplicateKey as e:
            self._restore_data(model, acquired, previous)
            taken = await self._taken_sequences(acquired)
            if not taken:
                await self._release_counters(acquired, e)
                raise
            # a concurrent save already holds the drawn value; keep the counter past it
            self._logger.warning("insert_raced_counters_kept", table=self.slug, taken=taken)
            raise
        except Exception as e:
            self._restore_data(model, acquired, previous)
            await self._release_counters(acquired, e)
            raise

        model._mark_persisted()
        self._logger.debug("record_inserted", table=self.slug, sequences=acquired)

    async def _update(self, model: Model) -> None:
        result = await self._validator.validate(self.slug, model.data)
        if not result.valid:
            raise ValidationFailed(self.slug, result.violations)

        backend = await self._connection.interface()
        matched = await backend.update_one(self.slug, model.original, model.data)
        if not matched:
            raise NotPersisted(f"No row in '{self.slug}' matches this model's original data")
        model._mark_persisted()
        self._logger.debug("record_updated", table=self.slug)

    async def _delete(self, model: Model) -> None:
        backend = await self._connection.interface()
        deleted = await backend.delete_one(self.slug, model.original)
        if not deleted:
            self._logger.warning("record_already_deleted", table=self.slug)
        else:
            self._logger.debug("record_deleted", table=self.slug)

    async def _release_counters(self, acquired: dict[str, int], error: Exception) -> None:
        """Hand back sequence values taken by a failed insert, newest first.

        Every counter is attempted; the first rollback failure is raised
        as CompensationFailed once all of them have been tried.
        """
        if not acquired:
            return
        self._logger.warning("insert_failed_releasing_counters", table=self.slug, sequences=acquired, error=str(error))
        failures: list[tuple[str, Exception]] = []
        for column, value in reversed(acquired.items()):
            try:
                await self._counters.decrement_counter(self.slug, column, expected=value)
            except Exception as e:
                self._logger.error("counter_rollback_failed", table=self.slug, column=column, error=str(e))
                failures.append((column, e))
        if failures:
            column, cause = failures[0]
            raise CompensationFailed(
                f"Could not roll back counter {self.slug}.{column} after a failed insert",
                original_error=error,
            ) from cause

    async def _taken_sequences(self, acquired: dict[str, int]) -> list[str]:
        """Columns whose drawn value is already stored in another row."""
        backend = await self._connection.interface()
        return [column for column, value in acquired.items() if await backend.find_one(self.slug, {column: value})]

    def _restore_data(self, model: Model, acquired: dict[str, int], previous: dict[str, Any]) -> None:
        for column in acquired:
            if column in previous:
                model.data[column] = previous[column]
            else:
                model.data.pop(column, None)


def _field_sort(order_by: str) -> tuple[str, bool]:
    if order_by.startswith("-"):
        return order_by[1:], True
    return order_by, False
