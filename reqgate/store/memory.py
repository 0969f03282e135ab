"""In-process store backend."""

from __future__ import annotations
import copy
import threading
import time
from typing import Any, Callable, Iterator, Optional

from .base import DurableStore


class MemoryStore(DurableStore):
    """
    Dict-backed store for a single process.

    Values are deep-copied on the way in and out so callers never share
    mutable state through it.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._rows: dict[str, tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> bool:
        row = self._rows.get(key)
        if row is None:
            return False
        expires_at = row[1]
        if expires_at is not None and expires_at <= self._clock():
            del self._rows[key]
            return False
        return True

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else self._clock() + ttl

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            if not self._live(key):
                return None
            return copy.deepcopy(self._rows[key][0])

    def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._rows[key] = (copy.deepcopy(value), self._expiry(ttl))

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        with self._lock:
            if self._live(key):
                return False
            self._rows[key] = (copy.deepcopy(value), self._expiry(ttl))
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            live = self._live(key)
            self._rows.pop(key, None)
            return live

    def scan(self, prefix: str) -> Iterator[tuple[str, Any]]:
        with self._lock:
            keys = [k for k in list(self._rows) if k.startswith(prefix) and self._live(k)]
            rows = [(k, copy.deepcopy(self._rows[k][0])) for k in sorted(keys)]
        yield from rows

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in list(self._rows) if k.startswith(prefix)]
            live = sum(1 for k in keys if self._live(k))
            for k in keys:
                self._rows.pop(k, None)
            return live

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for k in list(self._rows) if self._live(k))
