"""Relational backend built on SQLAlchemy's async engine.

Uses SQLAlchemy's native async support with aiosqlite for non-blocking
database operations. Every table is a plain SQL table holding one JSON
document per row; indexes are expression indexes over ``json_extract`` so
unique columns are enforced by SQLite itself.
"""

import asyncio
from typing import Any, Mapping

import structlog
from sqlalchemy import JSON, Column, Integer, MetaData, Table, delete, func, insert, inspect, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from dynarecord.errors import DuplicateKey, IndexNotFound, TableExists, TableNotFound
from dynarecord.services.backend import Row, SortKeys, apply_window, row_matches

_SCALARS = (str, int, float, bool)


class SqlBackend:
    """Stores tables as JSON document rows in a SQL database.

    Accepts an AsyncEngine via dependency injection to support both
    persistent and in-memory databases for testing. SQLite admits a single
    writer, so statements issued through one backend are serialised.

    Unique keys are compared as ``json_extract`` values. Booleans equal
    the integers 0 and 1; objects compare by their serialised text.
    """

    name = "sql"

    def __init__(
        self,
        engine: AsyncEngine,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._engine = engine
        self._logger = logger or structlog.get_logger(__name__)
        self._quote = engine.dialect.identifier_preparer.quote_identifier
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        self._logger.info(
            "sql_backend_connected",
            url=self._engine.url.render_as_string(hide_password=True),
        )

    async def close(self) -> None:
        await self._engine.dispose()
        self._logger.debug("sql_backend_closed")

    async def table_exists(self, slug: str) -> bool:
        async with self._lock, self._engine.connect() as conn:
            return await self._has_table(conn, slug)

    async def create_table(self, slug: str) -> None:
        async with self._lock, self._engine.begin() as conn:
            if await self._has_table(conn, slug):
                raise TableExists(slug)
            await conn.run_sync(_document_table(slug).create)
        self._logger.debug("sql_table_created", table=slug)

    async def drop_table(self, slug: str) -> None:
        async with self._lock, self._engine.begin() as conn:
            await self._require(conn, slug)
            await conn.run_sync(_document_table(slug).drop)
        self._logger.debug("sql_table_dropped", table=slug)

    async def rename_table(self, old: str, new: str) -> None:
        async with self._lock, self._engine.begin() as conn:
            await self._require(conn, old)
            if await self._has_table(conn, new):
                raise TableExists(new)
            await conn.execute(text(f"ALTER TABLE {self._quote(old)} RENAME TO {self._quote(new)}"))

            # Index names embed the table slug; recreate them under the new one.
            prefix = _index_name(old, "")
            result = await conn.execute(text(f"PRAGMA index_list({self._quote(new)})"))
            for index in result.mappings().all():
                if not index["name"].startswith(prefix):
                    continue
                column = index["name"][len(prefix) :]
                await conn.execute(text(f"DROP INDEX {self._quote(index['name'])}"))
                await conn.execute(self._index_ddl(new, column, bool(index["unique"])))
        self._logger.debug("sql_table_renamed", old=old, new=new)

    async def insert_one(self, table: str, row: Mapping[str, Any]) -> None:
        try:
            async with self._lock, self._engine.begin() as conn:
                await self._require(conn, table)
                await conn.execute(insert(_document_table(table)).values(doc=dict(row)))
        except IntegrityError as exc:
            raise DuplicateKey(table) from exc

    async def update_one(
        self,
        table: str,
        match: Mapping[str, Any],
        row: Mapping[str, Any],
        upsert: bool = False,
    ) -> int:
        target = _document_table(table)
        try:
            async with self._lock, self._engine.begin() as conn:
                if not await self._has_table(conn, table):
                    if upsert:
                        raise TableNotFound(table)
                    return 0
                matches = await self._select(conn, target, match, limit=1)
                if not matches:
                    if upsert:
                        await conn.execute(insert(target).values(doc=dict(row)))
                    return 0
                row_id, _ = matches[0]
                await conn.execute(update(target).where(target.c.row_id == row_id).values(doc=dict(row)))
                return 1
        except IntegrityError as exc:
            raise DuplicateKey(table) from exc

    async def delete_one(self, table: str, match: Mapping[str, Any]) -> int:
        target = _document_table(table)
        async with self._lock, self._engine.begin() as conn:
            if not await self._has_table(conn, table):
                return 0
            matches = await self._select(conn, target, match, limit=1)
            if not matches:
                return 0
            row_id, _ = matches[0]
            await conn.execute(delete(target).where(target.c.row_id == row_id))
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
        async with self._lock, self._engine.connect() as conn:
            if not await self._has_table(conn, table):
                return []
            matches = await self._select(conn, _document_table(table), predicate, sort, limit, offset)
        return [doc for _, doc in matches]

    async def create_index(self, table: str, column: str, unique: bool = False) -> None:
        try:
            async with self._lock, self._engine.begin() as conn:
                await self._require(conn, table)
                await conn.execute(self._index_ddl(table, column, unique))
        except IntegrityError as exc:
            raise DuplicateKey(table, column) from exc
        self._logger.debug("sql_index_created", table=table, column=column, unique=unique)

    async def drop_index(self, table: str, column: str) -> None:
        async with self._lock, self._engine.begin() as conn:
            await self._require(conn, table)
            if not await self._has_index(conn, table, column):
                raise IndexNotFound(table, column)
            await conn.execute(text(f"DROP INDEX {self._quote(_index_name(table, column))}"))

    async def index_exists(self, table: str, column: str) -> bool:
        async with self._lock, self._engine.connect() as conn:
            return await self._has_index(conn, table, column)

    async def _select(
        self,
        conn: AsyncConnection,
        target: Table,
        predicate: Mapping[str, Any] | None,
        sort: SortKeys | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[tuple[int, Row]]:
        """Fetch ``(row_id, doc)`` pairs matching ``predicate``.

        Scalar predicate values are pushed down as ``json_extract``
        comparisons; every candidate is then re-checked in Python so that
        booleans, nulls and nested values follow the shared matching rules.
        """
        statement = select(target.c.row_id, target.c.doc)
        for key, value in (predicate or {}).items():
            if isinstance(value, _SCALARS):
                statement = statement.where(func.json_extract(target.c.doc, _json_path(key)) == value)
        ordering = []
        for field, descending in sort or ():
            expression = func.json_extract(target.c.doc, _json_path(field))
            ordering.append(expression.desc() if descending else expression.asc())
        ordering.append(target.c.row_id.asc())
        result = await conn.execute(statement.order_by(*ordering))
        matches = [(row_id, doc) for row_id, doc in result.all() if row_matches(doc, predicate)]
        return apply_window(matches, limit, offset)

    async def _has_table(self, conn: AsyncConnection, slug: str) -> bool:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table(slug))

    async def _require(self, conn: AsyncConnection, slug: str) -> None:
        if not await self._has_table(conn, slug):
            raise TableNotFound(slug)

    async def _has_index(self, conn: AsyncConnection, table: str, column: str) -> bool:
        result = await conn.execute(
            text("SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = :table AND name = :name"),
            {"table": table, "name": _index_name(table, column)},
        )
        return result.first() is not None

    def _index_ddl(self, table: str, column: str, unique: bool) -> Any:
        path = _json_path(column).replace("'", "''")
        kind = "UNIQUE INDEX" if unique else "INDEX"
        return text(
            f"CREATE {kind} IF NOT EXISTS {self._quote(_index_name(table, column))} "
            f"ON {self._quote(table)} (json_extract(doc, '{path}'))"
        )


def _document_table(slug: str) -> Table:
    return Table(
        slug,
        MetaData(),
        Column("row_id", Integer, primary_key=True, autoincrement=True),
        Column("doc", JSON, nullable=False),
    )


def _index_name(table: str, column: str) -> str:
    return f"ix_{table}__{column}"


def _json_path(field: str) -> str:
    return f'$."{field}"'


def create_async_engine_from_url(url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine, sharing one connection for in-memory SQLite."""
    if url.endswith(":memory:") or url.endswith("://"):
        return create_async_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False})
    return create_async_engine(url)


def create_async_engine_from_path(db_path: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine for the given database path.

    Args:
        db_path: Path to SQLite database file, or ":memory:" for in-memory.

    Returns:
        AsyncEngine instance configured for aiosqlite.
    """
    return create_async_engine_from_url(f"sqlite+aiosqlite:///{db_path}")
