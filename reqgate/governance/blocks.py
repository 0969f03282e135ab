from __future__ import annotations
import math
import time
from typing import Callable, Optional

import structlog

from ..models.records import DomainBlock
from ..store.base import DurableStore

log = structlog.get_logger()


class DomainBlockRegistry:
    """Which domains are rate-limited, and until when.

    Rows carry no store TTL: an expired row stays until ``purge_expired`` or
    ``unblock`` removes it, but it is ignored by every lookup.
    """

    def __init__(self, store: DurableStore, prefix: str = "reqgate", clock: Callable[[], float] = time.time):
        self.store = store
        self.prefix = f"{prefix}:block:"
        self._clock = clock

    def _key(self, domain: str) -> str:
        return self.prefix + domain.lower()

    def get(self, domain: str) -> Optional[DomainBlock]:
        doc = self.store.get(self._key(domain))
        return None if doc is None else DomainBlock.model_validate(doc)

    def find_active(self, domain: str) -> Optional[DomainBlock]:
        block = self.get(domain)
        if block is None or not block.is_active(self._clock()):
            return None
        return block

    def is_blocked(self, domain: str) -> bool:
        return self.find_active(domain) is not None

    def remaining_seconds(self, domain: str) -> Optional[float]:
        block = self.find_active(domain)
        return None if block is None else block.remaining_seconds(self._clock())

    def remaining_minutes(self, domain: str) -> Optional[int]:
        seconds = self.remaining_seconds(domain)
        return None if seconds is None else math.ceil(seconds / 60)

    def block(self, domain: str, wait_minutes: int, reason: Optional[str] = None) -> DomainBlock:
        # Replace, never merge: the latest decision wins and durations do not stack.
        block = DomainBlock.starting(domain.lower(), self._clock(), wait_minutes, reason)
        key = self._key(domain)
        self.store.delete(key)
        self.store.put(key, block.doc())
        log.warning("domain_blocked", domain=block.domain, minutes=wait_minutes, reason=reason)
        return block

    def unblock(self, domain: str) -> bool:
        removed = self.store.delete(self._key(domain))
        if removed:
            log.info("domain_unblocked", domain=domain)
        return removed

    def all(self) -> list[DomainBlock]:
        return [DomainBlock.model_validate(doc) for _, doc in self.store.scan(self.prefix)]

    def active(self) -> list[DomainBlock]:
        now = self._clock()
        return [b for b in self.all() if b.is_active(now)]

    def expired(self) -> list[DomainBlock]:
        now = self._clock()
        return [b for b in self.all() if not b.is_active(now)]

    def purge_expired(self) -> int:
        removed = 0
        for block in self.expired():
            if self.store.delete(self._key(block.domain)):
                removed += 1
        if removed:
            log.info("expired_blocks_purged", count=removed)
        return removed
