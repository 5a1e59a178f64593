"""Storage backend contract.

A backend is a generic CRUD store holding tables of JSON-like rows. It knows
nothing about schemas or counters; those live in ordinary tables
(``_schema``, ``_counters``) addressed through the same primitives.

Matching and sorting helpers shared by the implementations live here too so
both backends agree on predicate and ordering semantics.
"""

from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

Row = dict[str, Any]
SortKeys = Sequence[tuple[str, bool]]

# Cross-type ordering: null < numbers < strings < objects < arrays < booleans
_TYPE_RANK = {type(None): 0, int: 1, float: 1, str: 2, dict: 3, list: 4, bool: 5}


@runtime_checkable
class StorageBackend(Protocol):
    """Generic asynchronous CRUD store.

    Rows passed in and returned are independent copies. Predicates map
    top-level field names to values and match by ``values_equal``.

    Unique indexes use each store's own key equality. The memory store
    compares keys with ``values_equal``. The SQL store compares
    ``json_extract`` results, where ``true`` equals ``1`` and objects are
    compared by their stored text, so key order matters.
    """

    name: str

    async def connect(self) -> None:
        """Perform the connection handshake. Raises on failure."""
        ...

    async def close(self) -> None:
        """Release underlying resources. Safe to call more than once."""
        ...

    async def table_exists(self, slug: str) -> bool: ...

    async def create_table(self, slug: str) -> None:
        """Create an empty table. Raises TableExists."""
        ...

    async def drop_table(self, slug: str) -> None:
        """Drop a table with its rows and indexes. Raises TableNotFound."""
        ...

    async def rename_table(self, old: str, new: str) -> None:
        """Raises TableNotFound or TableExists."""
        ...

    async def insert_one(self, table: str, row: Mapping[str, Any]) -> None:
        """Raises TableNotFound, or DuplicateKey on a unique index conflict."""
        ...

    async def update_one(
        self,
        table: str,
        match: Mapping[str, Any],
        row: Mapping[str, Any],
        upsert: bool = False,
    ) -> int:
        """Replace the first row matching ``match`` with ``row``.

        Returns:
            Number of rows matched (0 or 1). An upsert that inserts returns 0.
        """
        ...

    async def delete_one(self, table: str, match: Mapping[str, Any]) -> int:
        """Delete the first row matching ``match``. Returns rows deleted."""
        ...

    async def find_one(self, table: str, predicate: Mapping[str, Any] | None = None) -> Row | None: ...

    async def find(
        self,
        table: str,
        predicate: Mapping[str, Any] | None = None,
        sort: SortKeys | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Row]:
        """Rows matching ``predicate``; insertion order unless ``sort`` is given."""
        ...

    async def create_index(self, table: str, column: str, unique: bool = False) -> None: ...

    async def drop_index(self, table: str, column: str) -> None:
        """Raises IndexNotFound."""
        ...

    async def index_exists(self, table: str, column: str) -> bool: ...


def values_equal(left: Any, right: Any) -> bool:
    """Deep equality that keeps booleans distinct from numbers."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(values_equal(left[k], right[k]) for k in left)
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, (dict, list)) or isinstance(right, (dict, list)):
        return False
    comparable = type(left) is type(right) or (_is_number(left) and _is_number(right))
    return comparable and left == right


def row_matches(row: Mapping[str, Any], predicate: Mapping[str, Any] | None) -> bool:
    if not predicate:
        return True
    return all(key in row and values_equal(row[key], value) for key, value in predicate.items())


def sort_rows(rows: list[Row], sort: SortKeys | None) -> list[Row]:
    """Stable multi-key sort; rows missing a field sort as null."""
    if not sort:
        return rows
    ordered = list(rows)
    for field, descending in reversed(list(sort)):
        ordered.sort(key=lambda row: _sort_key(row.get(field)), reverse=descending)
    return ordered


def apply_window(rows: list[Row], limit: int | None, offset: int) -> list[Row]:
    if offset:
        rows = rows[offset:]
    if limit is not None:
        rows = rows[:limit]
    return rows


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _sort_key(value: Any) -> tuple[int, Any]:
    rank = _TYPE_RANK.get(type(value), 6)
    if isinstance(value, (dict, list)) or rank == 6:
        return rank, repr(value)
    if value is None:
        return rank, 0
    return rank, value
