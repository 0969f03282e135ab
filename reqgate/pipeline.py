from __future__ import annotations
import json
import re
import time
from enum import Enum
from typing import Any, Callable, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

from .audit import AuditSink, NullAuditSink
from .config import CacheStrategy, ExpiresFormat, PipelineConfig
from .errors import PolicyRejection, UnsupportedMethod
from .governance.blocks import DomainBlockRegistry
from .governance.cache import ResponseCache
from .governance.circuit import CircuitBreaker
from .governance.ratelimit import RateLimiter, Wait
from .models.records import DomainBlock, Response
from .store.base import DurableStore
from .transport.base import Transport

log = structlog.get_logger()


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


def resolve_method(method: str | HttpMethod) -> HttpMethod:
    try:
        return HttpMethod(str(getattr(method, "value", method)).upper())
    except ValueError:
        raise UnsupportedMethod(str(method)) from None


def extract_domain(url: str) -> str:
    return (urlsplit(url).hostname or url).lower()


def _with_query(url: str, payload: Any, as_form: bool) -> tuple[str, Optional[bytes], dict[str, str]]:
    if not payload:
        return url, None, {}
    parts = urlsplit(url)
    qs: list[tuple[str, Any]] = parse_qsl(parts.query, keep_blank_values=True)
    for k, v in dict(payload).items():
        if isinstance(v, (list, tuple)):
            qs.extend((str(k), item) for item in v)
        else:
            qs.append((str(k), "" if v is None else v))
    query = urlencode(qs, doseq=True)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment)), None, {}


def _with_body(url: str, payload: Any, as_form: bool) -> tuple[str, Optional[bytes], dict[str, str]]:
    if payload is None:
        return url, None, {}
    if as_form:
        return url, urlencode(dict(payload), doseq=True).encode("utf-8"), {
            "Content-Type": "application/x-www-form-urlencoded"
        }
    return url, json.dumps(payload, default=str).encode("utf-8"), {"Content-Type": "application/json"}


_DISPATCH: dict[HttpMethod, Callable[[str, Any, bool], tuple[str, Optional[bytes], dict[str, str]]]] = {
    HttpMethod.GET: _with_query,
    HttpMethod.POST: _with_body,
    HttpMethod.PUT: _with_body,
    HttpMethod.PATCH: _with_body,
    HttpMethod.DELETE: _with_body,
}


class RequestPipeline:
    """
    Governs every outbound call: cache, rate limit, circuit breaker, transport,
    then outcome recording, always in that order.

    Instances are immutable from the caller's side: every ``with_*`` /
    ``without_*`` method returns a new pipeline over the same store, transport
    and audit sink with a copied config.
    """

    def __init__(
        self,
        config: PipelineConfig,
        store: DurableStore,
        transport: Transport,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.store = store
        self.transport = transport
        self.audit = audit or NullAuditSink()
        self._clock = clock
        self._sleep = sleep

        self.blocks = DomainBlockRegistry(store, prefix=config.key_prefix, clock=clock)
        self.rate_limiter = RateLimiter(
            self.blocks,
            enabled=config.rate_limit_enabled,
            default_block_time=config.default_block_time,
            wait_on_block=config.rate_limit_wait_on_block,
            clock=clock,
        )
        self.circuit = CircuitBreaker(
            store,
            failure_threshold=config.circuit_breaker_threshold,
            recovery_time=config.circuit_breaker_recovery_time,
            failure_statuses=config.circuit_breaker_failure_statuses,
            namespace=config.circuit_breaker_namespace,
            prefix=config.key_prefix,
            probe_timeout=config.timeout,
            clock=clock,
        )
        self.cache = ResponseCache(
            store,
            strategy=config.cache_strategy,
            ttl=config.cache_ttl,
            threshold=config.cache_threshold,
            period=config.cache_threshold_period,
            only_statuses=config.cache_only_statuses,
            except_statuses=config.cache_except_statuses,
            expires_field=config.cache_expires_field,
            expires_format=config.cache_expires_format,
            expires_fallback=config.cache_expires_fallback,
            prefix=config.key_prefix,
            clock=clock,
        )

    # ------------------------------------------------------------------ verbs

    def get(self, url: str, query: Optional[Mapping[str, Any]] = None, headers: Optional[Mapping[str, str]] = None) -> Response:
        return self.request(HttpMethod.GET, url, query, headers)

    def post(self, url: str, data: Any = None, headers: Optional[Mapping[str, str]] = None) -> Response:
        return self.request(HttpMethod.POST, url, data, headers)

    def put(self, url: str, data: Any = None, headers: Optional[Mapping[str, str]] = None) -> Response:
        return self.request(HttpMethod.PUT, url, data, headers)

    def patch(self, url: str, data: Any = None, headers: Optional[Mapping[str, str]] = None) -> Response:
        return self.request(HttpMethod.PATCH, url, data, headers)

    def delete(self, url: str, data: Any = None, headers: Optional[Mapping[str, str]] = None) -> Response:
        return self.request(HttpMethod.DELETE, url, data, headers)

    def request(
        self,
        method: str | HttpMethod,
        url: str,
        payload: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Response:
        """
        Run one governed call.

        Raises:
            UnsupportedMethod: verb outside ``HttpMethod``.
            RateLimited: domain is blocked (unless wait-on-block is enabled).
            CircuitOpen: circuit is open or a probe is already in flight.
            Exception: whatever the transport raised, unchanged.
        """
        verb = resolve_method(method)
        url = self._apply_protocol(url)
        domain = extract_domain(url)
        headers = dict(headers or {})
        key = self.cache.key_for(verb.value, url, payload)

        if self.cache.should_read(key):
            hit = self.cache.lookup(key)
            if hit is not None:
                log.debug("cache_hit", domain=domain, method=verb.value, url=url)
                return hit

        # built before the guards: nothing between circuit.guard and execute may raise
        req_url, body, body_headers = _DISPATCH[verb](url, payload, self.config.as_form)

        if self.config.rate_limit_enabled:
            decision = self.rate_limiter.guard(domain)
            if isinstance(decision, Wait):
                self._sleep(decision.seconds)

        if self.config.circuit_breaker_enabled:
            self.circuit.guard(domain)

        send_headers = {**body_headers, **headers}
        started = time.perf_counter()
        try:
            response = self.transport.execute(verb.value, req_url, send_headers, body, self.config.timeout)
        except Exception as e:
            elapsed = time.perf_counter() - started
            if self.config.circuit_breaker_enabled and not isinstance(e, PolicyRejection):
                self.circuit.record_failure(domain)
            log.warning("request_failed", domain=domain, method=verb.value, url=url, error=str(e))
            self._audit(
                self.audit.record_error, url, verb.value, headers, payload, str(e), elapsed
            )
            raise
        elapsed = time.perf_counter() - started

        if self.config.circuit_breaker_enabled:
            if self.circuit.is_failure_status(response.status):
                self.circuit.record_failure(domain)
            else:
                self.circuit.record_success(domain)
        self.rate_limiter.record_status(domain, response.status, response.header("Retry-After"))

        self._audit(
            self.audit.record_success, url, verb.value, headers, payload, response.status, response.body, elapsed
        )

        if self.cache.should_write(key, response.status):
            self.cache.store_response(key, response, self.cache.ttl_for(response))
        return response

    def _audit(self, record: Callable[..., None], *args: Any) -> None:
        if not self.config.logging_enabled:
            return
        try:
            record(*args)
        except Exception:
            log.warning("audit_sink_failed", sink=type(self.audit).__name__, exc_info=True)

    def _apply_protocol(self, url: str) -> str:
        protocol = (self.config.force_protocol or "").lower()
        if protocol not in ("http", "https"):
            return url
        return re.sub(r"^https?://", f"{protocol}://", url, count=1, flags=re.I)

    # ------------------------------------------------------------- forking

    def with_options(self, **changes: Any) -> "RequestPipeline":
        return RequestPipeline(
            self.config.fork(**changes),
            self.store,
            self.transport,
            self.audit,
            clock=self._clock,
            sleep=self._sleep,
        )

    def timeout(self, seconds: float) -> "RequestPipeline":
        return self.with_options(timeout=seconds)

    def without_logging(self) -> "RequestPipeline":
        return self.with_options(logging_enabled=False)

    def with_logging(self) -> "RequestPipeline":
        return self.with_options(logging_enabled=True)

    def without_rate_limit(self) -> "RequestPipeline":
        return self.with_options(rate_limit_enabled=False)

    def with_rate_limit(self) -> "RequestPipeline":
        return self.with_options(rate_limit_enabled=True)

    def wait_on_rate_limit(self) -> "RequestPipeline":
        return self.with_options(rate_limit_wait_on_block=True)

    def throw_on_rate_limit(self) -> "RequestPipeline":
        return self.with_options(rate_limit_wait_on_block=False)

    def force_http(self) -> "RequestPipeline":
        return self.with_options(force_protocol="http")

    def force_https(self) -> "RequestPipeline":
        return self.with_options(force_protocol="https")

    def without_forced_protocol(self) -> "RequestPipeline":
        return self.with_options(force_protocol=None)

    def as_form(self) -> "RequestPipeline":
        return self.with_options(as_form=True)

    def as_json(self) -> "RequestPipeline":
        return self.with_options(as_form=False)

    def with_cache(self, ttl: Optional[int] = None) -> "RequestPipeline":
        return self.with_options(cache_strategy=CacheStrategy.ALWAYS, cache_ttl=ttl or self.config.cache_ttl)

    def without_cache(self) -> "RequestPipeline":
        return self.with_options(cache_strategy=CacheStrategy.NEVER)

    def cache_when(self, threshold: int, period: int, ttl: Optional[int] = None) -> "RequestPipeline":
        return self.with_options(
            cache_strategy=CacheStrategy.CONDITIONAL,
            cache_threshold=threshold,
            cache_threshold_period=period,
            cache_ttl=ttl or self.config.cache_ttl,
        )

    def cache_only_statuses(self, *statuses: int) -> "RequestPipeline":
        return self.with_options(cache_only_statuses=frozenset(statuses), cache_except_statuses=None)

    def cache_except_statuses(self, *statuses: int) -> "RequestPipeline":
        return self.with_options(cache_except_statuses=frozenset(statuses), cache_only_statuses=None)

    def cache_using_expires(self, field: str, fallback_ttl: Optional[int] = None) -> "RequestPipeline":
        strategy = self.config.cache_strategy
        if strategy is CacheStrategy.NEVER:
            strategy = CacheStrategy.ALWAYS
        return self.with_options(
            cache_strategy=strategy, cache_expires_field=field, cache_expires_fallback=fallback_ttl
        )

    def expires_as_seconds(self) -> "RequestPipeline":
        return self.with_options(cache_expires_format=ExpiresFormat.SECONDS)

    def expires_as_minutes(self) -> "RequestPipeline":
        return self.with_options(cache_expires_format=ExpiresFormat.MINUTES)

    def expires_as_datetime(self) -> "RequestPipeline":
        return self.with_options(cache_expires_format=ExpiresFormat.DATETIME)

    def with_circuit_breaker(
        self, threshold: Optional[int] = None, recovery_time: Optional[int] = None
    ) -> "RequestPipeline":
        changes: dict[str, Any] = {"circuit_breaker_enabled": True}
        if threshold is not None:
            changes["circuit_breaker_threshold"] = threshold
        if recovery_time is not None:
            changes["circuit_breaker_recovery_time"] = recovery_time
        return self.with_options(**changes)

    def without_circuit_breaker(self) -> "RequestPipeline":
        return self.with_options(circuit_breaker_enabled=False)

    # --------------------------------------------------------------- admin

    def block_domain(self, domain: str, minutes: int, reason: Optional[str] = None) -> DomainBlock:
        return self.blocks.block(domain, minutes, reason=reason or "manual")

    def unblock_domain(self, domain: str) -> bool:
        return self.blocks.unblock(domain)

    def active_blocks(self) -> list[DomainBlock]:
        return self.blocks.active()

    def purge_expired_blocks(self) -> int:
        return self.blocks.purge_expired()

    def circuit_status(self, domain: str) -> dict:
        return self.circuit.status(domain)

    def reset_circuit(self, domain: str) -> None:
        self.circuit.reset(domain)
        log.info("circuit_reset", domain=domain)

    def clear_cache(self) -> int:
        return self.cache.clear()


def build_pipeline(
    config: Optional[PipelineConfig] = None,
    store: Optional[DurableStore] = None,
    transport: Optional[Transport] = None,
    audit: Optional[AuditSink] = None,
) -> RequestPipeline:
    """Wire a pipeline from settings, defaulting to Mongo + httpx."""
    config = config or PipelineConfig.from_settings()
    if store is None:
        from .store.mongo import default_store

        store = default_store()
    if transport is None:
        from .transport.httpx_transport import HttpxTransport

        transport = HttpxTransport()
    if audit is None and config.logging_enabled:
        from .audit import default_sink

        audit = default_sink()
    return RequestPipeline(config, store, transport, audit)
