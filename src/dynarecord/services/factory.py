"""Factory functions for creating connections to a storage backend.

Provides a production factory that picks the backend from a database URL and
a test factory that uses in-memory storage for fast, isolated testing.
"""

import structlog

from dynarecord.config import get_settings
from dynarecord.services.connection import Connection
from dynarecord.services.memory_backend import MemoryBackend
from dynarecord.services.sql_backend import SqlBackend, create_async_engine_from_url

MEMORY_URL = "memory://"


def create_connection(
    url: str | None = None,
    logger: structlog.stdlib.BoundLogger | None = None,
) -> Connection:
    """Create a Connection for the backend named by ``url``.

    Args:
        url: ``memory://`` for the in-process backend, or any SQLAlchemy
            async URL (e.g. ``sqlite+aiosqlite:///app.db``) for the SQL
            backend. Defaults to the configured ``database_url``.
        logger: Logger shared by the connection and its backend.

    Returns:
        A Connection whose handshake starts on first use.
    """
    logger = logger or structlog.get_logger(__name__)
    url = url or get_settings().database_url

    if url.startswith(MEMORY_URL):
        backend = MemoryBackend(logger=logger)
    else:
        backend = SqlBackend(engine=create_async_engine_from_url(url), logger=logger)

    logger.debug("connection_created", backend=backend.name)
    return Connection(backend, logger=logger)


def create_test_connection(backend: str = "memory") -> Connection:
    """Create a Connection with in-memory storage for testing.

    Each call creates independent storage, so tests don't interfere.

    Args:
        backend: ``"memory"`` or ``"sql"`` (in-memory SQLite).
    """
    if backend == "memory":
        return create_connection(MEMORY_URL)
    if backend == "sql":
        return create_connection("sqlite+aiosqlite:///:memory:")
    raise ValueError(f"Unknown backend: {backend}")
