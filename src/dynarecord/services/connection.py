"""Shared, lazily-established handle on a storage backend."""

import asyncio
from types import TracebackType

import structlog

from dynarecord.services.backend import StorageBackend


class Connection:
    """One awaitable handle per process, shared by registries and accessors.

    The backend handshake starts on the first ``interface()`` call and every
    caller awaits the same task, so operations queue behind it. A failed
    handshake fails every operation that awaits it.
    """

    def __init__(
        self,
        backend: StorageBackend,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._backend = backend
        self._logger = logger or structlog.get_logger(__name__)
        self._ready: asyncio.Future[StorageBackend] | None = None

    @property
    def backend_name(self) -> str:
        return self._backend.name

    def interface(self) -> "asyncio.Future[StorageBackend]":
        """Awaitable resolving to the connected backend."""
        if self._ready is None:
            self._ready = asyncio.ensure_future(self._handshake())
        return self._ready

    async def close(self) -> None:
        """Release the backend, even if the handshake never completed."""
        try:
            if self._ready is not None:
                await self._ready
        except Exception as e:
            self._logger.warning("connection_handshake_failed", backend=self._backend.name, error=str(e))
        finally:
            await self._backend.close()
            self._ready = None
            self._logger.info("connection_closed", backend=self._backend.name)

    async def __aenter__(self) -> "Connection":
        await self.interface()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def _handshake(self) -> StorageBackend:
        await self._backend.connect()
        self._logger.debug("connection_established", backend=self._backend.name)
        return self._backend
