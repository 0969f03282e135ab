"""Durable key/value store interface shared by every governance component."""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Iterator, Optional


class DurableStore(ABC):
    """Key/value store with per-key TTL and an atomic create-if-absent.

    ``ttl`` is in seconds; ``None`` means the row never expires. Expired rows
    are invisible to every read even if the backend has not evicted them yet.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...

    @abstractmethod
    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """
        Create ``key`` only if no live row exists.

        Returns:
            True if this caller created the row, False if it already existed.
        """
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def scan(self, prefix: str) -> Iterator[tuple[str, Any]]:
        """Yield ``(key, value)`` for every live row whose key starts with ``prefix``."""
        ...

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        ...
