"""Thread-safe memoisation of per-step moments.

Key equality policy
-------------------
``KeyPolicy.EXACT`` (default) compares time components by exact float
equality: callers are expected to reuse the identical grid value across paths,
and close-but-different grid points stay distinct entries. ``KeyPolicy.ROUNDED``
rounds every time component to a fixed number of decimals first, which merges
grid points that only differ by floating point noise. ``-0.0`` is normalised
to ``0.0`` under both policies.

Concurrency
-----------
Concurrent misses on the same key are serialised: the first caller computes
while the others wait on an event and then read the stored entry. All tables
of one entry are written under a single lock, so a reader sees either the
whole entry or nothing. ``clear()`` bumps a generation counter under the same
lock; an insert computed against an earlier generation is dropped.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Hashable, Iterable, Mapping

from .errors import ConfigurationError

logger = logging.getLogger("xasset.engine.cache")


class KeyPolicy(str, Enum):
    EXACT = "exact"
    ROUNDED = "rounded"

    @classmethod
    def parse(cls, value: "KeyPolicy | str") -> "KeyPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ConfigurationError(f"Unknown cache key policy: {value!r}") from exc


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    computations: int = 0
    discarded: int = 0
    flushes: int = 0


class _Pending:
    __slots__ = ("event",)

    def __init__(self) -> None:
        self.event = threading.Event()


class MomentCache:
    """Named tables sharing one key space, one lock and one flush generation."""

    def __init__(
        self,
        tables: Iterable[str],
        *,
        enabled: bool = True,
        key_policy: KeyPolicy | str = KeyPolicy.EXACT,
        decimals: int = 12,
        name: str = "moments",
    ) -> None:
        self._tables: dict[str, dict[Hashable, Any]] = {table: {} for table in tables}
        if not self._tables:
            raise ConfigurationError("MomentCache needs at least one table")
        self._lock = threading.Lock()
        self._inflight: dict[Hashable, _Pending] = {}
        self._generation = 0
        self.enabled = enabled
        self.key_policy = KeyPolicy.parse(key_policy)
        self.decimals = int(decimals)
        self.name = name
        self.stats = CacheStats()

    @property
    def tables(self) -> tuple[str, ...]:
        return tuple(self._tables)

    def make_key(self, *times: float, version: int = 0) -> tuple:
        parts = []
        for value in times:
            value = float(value)
            if self.key_policy is KeyPolicy.ROUNDED:
                value = round(value, self.decimals)
            parts.append(value + 0.0)
        return (int(version), *parts)

    def __len__(self) -> int:
        with self._lock:
            return len(next(iter(self._tables.values())))

    def size(self, table: str) -> int:
        with self._lock:
            return len(self._tables[table])

    def peek(self, table: str, key: Hashable) -> Any | None:
        with self._lock:
            return self._tables[table].get(key)

    def fetch(self, table: str, key: Hashable, compute: Callable[[], Mapping[str, Any]]) -> Any:
        """Return ``table[key]``, computing every table's value for ``key`` on a miss.

        ``compute`` must return a mapping with a value for each table. Errors
        raised by ``compute`` propagate and leave the cache untouched.
        """

        if table not in self._tables:
            raise KeyError(table)
        if not self.enabled:
            return self._checked(compute())[table]

        while True:
            with self._lock:
                store = self._tables[table]
                if key in store:
                    self.stats.hits += 1
                    return store[key]
                pending = self._inflight.get(key)
                owner = pending is None
                if owner:
                    pending = _Pending()
                    self._inflight[key] = pending
                    generation = self._generation
                    self.stats.misses += 1
            if owner:
                break
            # another thread is computing this key; re-check once it is done
            pending.event.wait()

        try:
            values = self._checked(compute())
        except BaseException:
            self._release(key, pending)
            raise

        with self._lock:
            self.stats.computations += 1
            if generation == self._generation:
                for name in self._tables:
                    self._tables[name].setdefault(key, values[name])
                result = self._tables[table][key]
            else:
                self.stats.discarded += 1
                logger.debug("%s cache: dropped insert for %r computed before a flush", self.name, key)
                result = values[table]
            if self._inflight.get(key) is pending:
                del self._inflight[key]
        pending.event.set()
        return result

    def _release(self, key: Hashable, pending: _Pending) -> None:
        with self._lock:
            if self._inflight.get(key) is pending:
                del self._inflight[key]
        pending.event.set()

    def _checked(self, values: Mapping[str, Any]) -> Mapping[str, Any]:
        missing = [name for name in self._tables if name not in values]
        if missing:
            raise KeyError(f"computation did not produce tables {missing}")
        return values

    def clear(self) -> None:
        with self._lock:
            entries = len(next(iter(self._tables.values())))
            for store in self._tables.values():
                store.clear()
            self._inflight.clear()
            self._generation += 1
            self.stats.flushes += 1
        logger.info("%s cache flushed (%d entries)", self.name, entries)


__all__ = ["KeyPolicy", "CacheStats", "MomentCache"]
