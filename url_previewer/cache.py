"""TTL and capacity bounded cache with single-flight loading."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Awaitable, Callable, Generic, Hashable, TypeVar

log = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class MetadataCache(Generic[K, V]):
    """Maps a key to a loaded value, ``None`` included.

    Entries expire *ttl* seconds after insertion, whether the value is a
    hit or a miss. When full, the least recently used entry is evicted.
    Concurrent :meth:`get_with` calls for the same key share one load.
    """

    def __init__(
        self,
        capacity: int,
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[K, tuple[float, V]] = OrderedDict()
        self._inflight: dict[K, asyncio.Task[V]] = {}

    def __len__(self) -> int:
        self._purge_expired()
        return len(self._entries)

    def __contains__(self, key: K) -> bool:
        return self._lookup(key)[0]

    def get(self, key: K) -> V | None:
        """Return the cached value without loading, ``None`` when absent."""
        return self._lookup(key)[1]

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)

    async def get_with(self, key: K, loader: Callable[[], Awaitable[V]]) -> V:
        """Return the value for *key*, running *loader* once if it is missing.

        Callers that arrive while a load is in flight wait for that load
        instead of starting their own. Cancelling one waiter does not cancel
        the load for the others. A loader exception reaches every waiter and
        nothing is cached.
        """
        found, value = self._lookup(key)
        if found:
            return value  # type: ignore[return-value]

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(loader())
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._on_loaded(key, t))
        return await asyncio.shield(task)

    def _on_loaded(self, key: K, task: asyncio.Task[V]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if task.cancelled() or task.exception() is not None:
            return
        self._insert(key, task.result())

    def _lookup(self, key: K) -> tuple[bool, V | None]:
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return False, None
        self._entries.move_to_end(key)
        return True, value

    def _insert(self, key: K, value: V) -> None:
        self._entries[key] = (self._clock() + self.ttl, value)
        self._entries.move_to_end(key)
        self._purge_expired()
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            log.debug("Evicted %s from the preview cache", evicted)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
