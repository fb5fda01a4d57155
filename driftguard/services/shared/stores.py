"""
Keyed state stores
------------------
The only mutable shared state in the engine: open drift records, incidents and
auto-response cooldown timestamps. Each is keyed by a single string (workspace id
or incident id) behind a narrow interface:

  get / set / delete / compare_and_set / values / lock(key)

compare_and_set is the atomic primitive for check-then-write (cooldowns).
lock(key) yields a per-key asyncio.Lock for multi-step read-modify-write
sequences that span await points (record → escalate → alert). Locks live only
while a key has a holder or waiter.

InMemoryKeyedStore is process-local; a distributed implementation only has to
honour the same contract.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Generic, Optional, TypeVar

V = TypeVar("V")

_MISSING: Any = object()


class InMemoryKeyedStore(Generic[V]):

    def __init__(self) -> None:
        self._data: dict[str, V] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def get(self, key: str) -> Optional[V]:
        return self._data.get(key)

    def set(self, key: str, value: V) -> None:
        self._data[key] = value

    def delete(self, key: str) -> bool:
        return self._data.pop(key, _MISSING) is not _MISSING

    def compare_and_set(self, key: str, expected: Optional[V], new: V) -> bool:
        """
        Store `new` only if the current value is `expected` (None = absent).
        No await between read and write, so the swap is atomic on the event loop.
        """
        current = self._data.get(key)
        if current is not expected and current != expected:
            return False
        self._data[key] = new
        return True

    def values(self) -> list[V]:
        return list(self._data.values())

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        """Per-key lock; dropped once no holder or waiter is left."""
        lk = self._locks.get(key)
        if lk is None:
            lk = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lk:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]
