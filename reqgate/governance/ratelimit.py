from __future__ import annotations
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

import structlog

from ..errors import RateLimited
from .blocks import DomainBlockRegistry

log = structlog.get_logger()

RATE_LIMIT_STATUS = 429


@dataclass(frozen=True)
class Allow:
    pass


@dataclass(frozen=True)
class Wait:
    seconds: float


Decision = Union[Allow, Wait]

ALLOW = Allow()


class RateLimiter:
    def __init__(
        self,
        registry: DomainBlockRegistry,
        enabled: bool = True,
        default_block_time: int = 15,
        wait_on_block: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.enabled = enabled
        self.default_block_time = default_block_time
        self.wait_on_block = wait_on_block
        self._clock = clock

    def guard(self, domain: str) -> Decision:
        """
        Allow, ask the caller to sleep (wait-on-block mode only), or raise.

        Raises:
            RateLimited: domain is blocked and the caller did not opt into waiting.
        """
        block = self.registry.find_active(domain)
        if block is None:
            return ALLOW
        seconds = block.remaining_seconds(self._clock())
        if self.wait_on_block:
            log.info("rate_limit_wait", domain=domain, seconds=round(seconds, 3))
            return Wait(seconds)
        raise RateLimited(domain, math.ceil(seconds / 60))

    def wait_minutes_for(self, retry_after: Optional[str]) -> int:
        if retry_after is not None:
            try:
                seconds = float(str(retry_after).strip())
            except ValueError:
                # HTTP-date or garbage
                return self.default_block_time
            if math.isfinite(seconds) and seconds > 0:
                return math.ceil(seconds / 60)
        return self.default_block_time

    def record_status(self, domain: str, status: int, retry_after: Optional[str] = None) -> None:
        if not self.enabled or status != RATE_LIMIT_STATUS:
            return
        self.registry.block(domain, self.wait_minutes_for(retry_after), reason=f"HTTP {status}")
