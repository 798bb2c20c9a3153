"""Per-key asyncio coordination primitives.

``KeyedLock`` serializes work on one device (a pull sync, a push write)
while letting different devices proceed in parallel.  ``SingleFlight``
collapses concurrent token refreshes for the same device into one call.

Both are process-local; multiple workers rely on the store's upsert
semantics for correctness.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Hashable

logger = logging.getLogger("cardiowatch.wearables.sync.locks")


class KeyedLock:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or awaits it.

    Usage::

        locks = KeyedLock()
        async with locks.acquire(device.id):
            ...
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._refs: dict[Hashable, int] = {}

    @asynccontextmanager
    async def acquire(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class SingleFlight:
    """Share one in-flight call among concurrent callers with the same key.

    The first caller starts ``factory()``; callers arriving before it
    finishes await the same future and see the same result or exception.
    Once settled, the next call starts fresh.
    """

    def __init__(self) -> None:
        self._inflight: dict[Hashable, asyncio.Future] = {}

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        existing = self._inflight.get(key)
        if existing is not None:
            logger.debug("Joining in-flight call for %s", key)
            return await asyncio.shield(existing)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await factory()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so an unjoined failure does not warn at GC
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight
