"""
Per-domain circuit breaker whose state lives in the shared store.

States:
  - CLOSED    : normal operation; consecutive failures are counted.
  - OPEN      : calls are rejected without being attempted.
  - HALF_OPEN : after the recovery time one probe call is let through. A
                successful probe closes the circuit, a failed one re-opens it.

Open -> half-open happens lazily on the next read once the recovery time has
elapsed; nothing runs in the background.
"""
from __future__ import annotations
import hashlib
import math
import time
from typing import Callable, Iterable, Optional

import structlog

from ..errors import CircuitOpen
from ..models.records import CircuitState, CircuitStatus
from ..store.base import DurableStore

log = structlog.get_logger()

DEFAULT_FAILURE_STATUSES = frozenset(range(500, 600))


class CircuitStateRegistry:
    """Read/write access to ``CircuitState`` rows and their probe locks.

    With ``namespace=None`` keys live under the deployment prefix. A namespace
    drops the prefix so deployments configured with the same namespace on the
    same store share circuit health.
    """

    def __init__(self, store: DurableStore, prefix: str = "reqgate", namespace: Optional[str] = None, ttl: float = 86400):
        self.store = store
        self.base = f"cb:{namespace}:" if namespace else f"{prefix}:cb:"
        self.ttl = ttl

    def state_key(self, domain: str) -> str:
        return self.base + hashlib.md5(domain.lower().encode("utf-8")).hexdigest()

    def probe_key(self, domain: str) -> str:
        return self.state_key(domain) + ":probe"

    def read(self, domain: str) -> CircuitState:
        doc = self.store.get(self.state_key(domain))
        return CircuitState() if doc is None else CircuitState.model_validate(doc)

    def write(self, domain: str, state: CircuitState) -> None:
        self.store.put(self.state_key(domain), state.doc(), ttl=self.ttl)

    def acquire_probe(self, domain: str, ttl: float) -> bool:
        return self.store.add(self.probe_key(domain), True, ttl=ttl)

    def release_probe(self, domain: str) -> None:
        self.store.delete(self.probe_key(domain))


class CircuitBreaker:
    def __init__(
        self,
        store: DurableStore,
        failure_threshold: int = 5,
        recovery_time: int = 60,
        failure_statuses: Iterable[int] = DEFAULT_FAILURE_STATUSES,
        namespace: Optional[str] = None,
        prefix: str = "reqgate",
        probe_timeout: float = 30,
        clock: Callable[[], float] = time.time,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_time = recovery_time
        self.failure_statuses = frozenset(failure_statuses)
        # probe lock lives at most as long as the call it guards
        self.probe_ttl = max(1, math.ceil(probe_timeout))
        self.registry = CircuitStateRegistry(
            store, prefix=prefix, namespace=namespace, ttl=max(86400, 2 * recovery_time)
        )
        self._clock = clock

    def is_failure_status(self, status: int) -> bool:
        return status in self.failure_statuses

    def _resolve(self, domain: str) -> CircuitState:
        data = self.registry.read(domain)
        if data.state is CircuitStatus.OPEN:
            elapsed = self._clock() - (data.opened_at or 0)
            if elapsed >= self.recovery_time:
                data = data.model_copy(update={"state": CircuitStatus.HALF_OPEN})
                self.registry.write(domain, data)
                log.info("circuit_half_open", domain=domain)
        return data

    def guard(self, domain: str) -> None:
        """
        Must be called before the request.

        Raises:
            CircuitOpen: circuit is open, or another probe is already in flight.
        """
        data = self._resolve(domain)
        if data.state is CircuitStatus.OPEN:
            remaining = max(0, self.recovery_time - (self._clock() - (data.opened_at or 0)))
            raise CircuitOpen(domain, math.ceil(remaining))
        if data.state is CircuitStatus.HALF_OPEN:
            if not self.registry.acquire_probe(domain, self.probe_ttl):
                raise CircuitOpen(domain, 0)
            log.info("circuit_probe_admitted", domain=domain)

    def record_success(self, domain: str) -> None:
        data = self.registry.read(domain)
        if data.state is CircuitStatus.HALF_OPEN:
            self.reset(domain)
            log.info("circuit_closed", domain=domain)
            return
        if data.state is CircuitStatus.CLOSED and data.consecutive_failures > 0:
            self.registry.write(domain, data.model_copy(update={"consecutive_failures": 0}))

    def record_failure(self, domain: str) -> None:
        data = self.registry.read(domain)
        if data.state is CircuitStatus.HALF_OPEN:
            self.registry.release_probe(domain)
            self._trip(domain)
            return
        if data.state is CircuitStatus.CLOSED:
            failures = data.consecutive_failures + 1
            if failures >= self.failure_threshold:
                self._trip(domain)
            else:
                self.registry.write(domain, data.model_copy(update={"consecutive_failures": failures}))

    def _trip(self, domain: str) -> None:
        self.registry.write(
            domain,
            CircuitState(
                state=CircuitStatus.OPEN,
                consecutive_failures=self.failure_threshold,
                opened_at=self._clock(),
            ),
        )
        log.warning("circuit_opened", domain=domain, recovery_s=self.recovery_time)

    def state(self, domain: str) -> CircuitStatus:
        return self._resolve(domain).state

    def status(self, domain: str) -> dict:
        data = self._resolve(domain)
        remaining = 0
        if data.state is CircuitStatus.OPEN:
            remaining = math.ceil(max(0, self.recovery_time - (self._clock() - (data.opened_at or 0))))
        return {
            "domain": domain,
            "state": data.state.value,
            "failures": data.consecutive_failures,
            "opened_at": data.opened_at,
            "remaining_seconds": remaining,
        }

    def reset(self, domain: str) -> None:
        self.registry.write(domain, CircuitState())
        self.registry.release_probe(domain)
