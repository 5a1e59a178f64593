"""Shared fixtures: every backend-facing test runs against both backends."""

import copy
from typing import Any, AsyncIterator

import pytest

from dynarecord.config import reset_settings
from dynarecord.services.connection import Connection
from dynarecord.services.factory import create_test_connection
from dynarecord.services.schema_registry import SchemaRegistry

PEOPLE_SCHEMA: dict[str, Any] = {
    "$id": "people",
    "title": "People",
    "properties": {
        "name": {"type": "string"},
        "id": {"type": "integer", "isAutoIncrement": True},
    },
    "required": ["name"],
}


@pytest.fixture(params=["memory", "sql"])
async def connection(request: pytest.FixtureRequest) -> AsyncIterator[Connection]:
    """Connection to a fresh in-memory store of each backend kind."""
    connection = create_test_connection(request.param)
    yield connection
    await connection.close()


@pytest.fixture
async def registry(connection: Connection) -> SchemaRegistry:
    registry = SchemaRegistry(connection)
    await registry.initialize_schema()
    return registry


@pytest.fixture
def people_schema() -> dict[str, Any]:
    return copy.deepcopy(PEOPLE_SCHEMA)


@pytest.fixture
async def people(registry: SchemaRegistry, people_schema: dict[str, Any]) -> SchemaRegistry:
    """Registry bound to a freshly created ``people`` table."""
    await registry.create_table(people_schema)
    return registry


@pytest.fixture(autouse=True)
def clean_settings() -> None:
    reset_settings()
