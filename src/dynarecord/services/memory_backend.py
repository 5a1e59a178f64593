"""In-process document store backend.

Keeps every table as a list of rows in insertion order. Used by the test
factories and by ``memory://`` connection URLs; nothing survives close().
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Mapping

import structlog

from dynarecord.errors import DuplicateKey, IndexNotFound, TableExists, TableNotFound
from dynarecord.services.backend import Row, SortKeys, apply_window, row_matches, sort_rows, values_equal


@dataclass
class _MemoryTable:
    rows: list[Row] = field(default_factory=list)
    # column -> unique
    indexes: dict[str, bool] = field(default_factory=dict)


class MemoryBackend:
    """Stores tables in a dict; implements the StorageBackend protocol."""

    name = "memory"

    def __init__(self, logger: structlog.stdlib.BoundLogger | None = None) -> None:
        self._tables: dict[str, _MemoryTable] = {}
        self._logger = logger or structlog.get_logger(__name__)

    async def connect(self) -> None:
        self._logger.debug("memory_backend_connected")

    async def close(self) -> None:
        self._tables.clear()

    async def table_exists(self, slug: str) -> bool:
        return slug in self._tables

    async def create_table(self, slug: str) -> None:
        if slug in self._tables:
            raise TableExists(slug)
        self._tables[slug] = _MemoryTable()

    async def drop_table(self, slug: str) -> None:
        if self._tables.pop(slug, None) is None:
            raise TableNotFound(slug)

    async def rename_table(self, old: str, new: str) -> None:
        if old not in self._tables:
            raise TableNotFound(old)
        if new in self._tables:
            raise TableExists(new)
        self._tables[new] = self._tables.pop(old)

    async def insert_one(self, table: str, row: Mapping[str, Any]) -> None:
        target = self._require(table)
        candidate = copy.deepcopy(dict(row))
        self._check_unique(table, target, candidate, skip=None)
        target.rows.append(candidate)

    async def update_one(
        self,
        table: str,
        match: Mapping[str, Any],
        row: Mapping[str, Any],
        upsert: bool = False,
    ) -> int:
        target = self._tables.get(table)
        position = self._first_match(target, match) if target is not None else None
        if position is None:
            if upsert:
                await self.insert_one(table, row)
            return 0
        candidate = copy.deepcopy(dict(row))
        self._check_unique(table, target, candidate, skip=position)
        target.rows[position] = candidate
        return 1

    async def delete_one(self, table: str, match: Mapping[str, Any]) -> int:
        target = self._tables.get(table)
        if target is None:
            return 0
        position = self._first_match(target, match)
        if position is None:
            return 0
        del target.rows[position]
        return 1

    async def find_one(self, table: str, predicate: Mapping[str, Any] | None = None) -> Row | None:
        rows = await self.find(table, predicate, limit=1)
        return rows[0] if rows else None

    async def find(
        self,
        table: str,
        predicate: Mapping[str, Any] | None = None,
        sort: SortKeys | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Row]:
        target = self._tables.get(table)
        if target is None:
            return []
        rows = [row for row in target.rows if row_matches(row, predicate)]
        rows = apply_window(sort_rows(rows, sort), limit, offset)
        return copy.deepcopy(rows)

    async def create_index(self, table: str, column: str, unique: bool = False) -> None:
        target = self._require(table)
        if unique:
            seen: list[Any] = []
            for row in target.rows:
                if column not in row:
                    continue
                if any(values_equal(row[column], value) for value in seen):
                    raise DuplicateKey(table, column)
                seen.append(row[column])
        target.indexes[column] = unique
        self._logger.debug("memory_index_created", table=table, column=column, unique=unique)

    async def drop_index(self, table: str, column: str) -> None:
        target = self._require(table)
        if target.indexes.pop(column, None) is None:
            raise IndexNotFound(table, column)

    async def index_exists(self, table: str, column: str) -> bool:
        target = self._tables.get(table)
        return target is not None and column in target.indexes

    def _require(self, table: str) -> _MemoryTable:
        target = self._tables.get(table)
        if target is None:
            raise TableNotFound(table)
        return target

    def _first_match(self, target: _MemoryTable, match: Mapping[str, Any]) -> int | None:
        for position, row in enumerate(target.rows):
            if row_matches(row, match):
                return position
        return None

    def _check_unique(self, table: str, target: _MemoryTable, candidate: Row, skip: int | None) -> None:
        for column, unique in target.indexes.items():
            if not unique or column not in candidate:
                continue
            for position, row in enumerate(target.rows):
                if position == skip or column not in row:
                    continue
                if values_equal(row[column], candidate[column]):
                    raise DuplicateKey(table, column)
