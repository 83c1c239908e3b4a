"""
store/kv.py -- Store protocol and the process-local in-memory implementation.

Every piece of shared mutable state (reset tokens, rate-limit counters, the
token-validation cache) lives behind KeyValueStore so tests get a fresh store
per case and production can swap in store/sql.py.

Concurrency contract:
  get/set/delete/sweep are individually atomic. A read-modify-write sequence
  on one key must run inside `with store.lock(key):` -- the per-key lock is
  what makes rate-limit increments and token redemption check-then-set safe
  under FastAPI's thread pool. Locks are per key, so contention on one email
  or token never blocks another.

  sweep() takes only the map-wide guard, never a per-key lock. Callers must
  not invoke it while holding a key lock they care about extending.

Limitation (preserved deliberately): MemoryStore is non-persistent and
process-local. A restart forgets every counter and outstanding token, and
two app instances never see each other's state.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Generic, Protocol, TypeVar

V = TypeVar("V")


class KeyValueStore(Protocol[V]):
    def get(self, key: str) -> V | None: ...

    def set(self, key: str, value: V) -> None: ...

    def delete(self, key: str) -> None: ...

    def sweep(self, predicate: Callable[[V], bool]) -> int: ...

    def lock(self, key: str): ...

    def __len__(self) -> int: ...


class KeyLocks:
    """Reference-counted per-key locks.

    A lock exists only while at least one thread holds or waits on it, so the
    table does not grow with every identifier ever seen.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [Lock, waiter count]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            slot = self._locks.setdefault(key, [threading.Lock(), 0])
            slot[1] += 1
        slot[0].acquire()
        try:
            yield
        finally:
            slot[0].release()
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._locks[key]


class MemoryStore(Generic[V]):
    """Dict-backed store. Values are held by reference, not copied.

    Usage:
        tokens: MemoryStore[ResetToken] = MemoryStore()
        with tokens.lock(raw):
            record = tokens.get(raw)
            ...
            tokens.set(raw, record)
    """

    def __init__(self) -> None:
        self._data: dict[str, V] = {}
        self._guard = threading.Lock()
        self._keys = KeyLocks()

    def get(self, key: str) -> V | None:
        with self._guard:
            return self._data.get(key)

    def set(self, key: str, value: V) -> None:
        with self._guard:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._guard:
            self._data.pop(key, None)

    def sweep(self, predicate: Callable[[V], bool]) -> int:
        """Delete every value for which predicate(value) is true. Returns count removed.

        Full O(n) scan under the map guard.
        """
        with self._guard:
            doomed = [k for k, v in self._data.items() if predicate(v)]
            for k in doomed:
                del self._data[k]
        return len(doomed)

    def lock(self, key: str):
        return self._keys.hold(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._data)

    def close(self) -> None:
        with self._guard:
            self._data.clear()
