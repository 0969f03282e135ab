from __future__ import annotations
import hashlib
import json
import math
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

from ..config import CacheStrategy, ExpiresFormat
from ..models.records import CachedResponse, Response
from ..store.base import DurableStore

log = structlog.get_logger()

MIN_TTL = 1


def normalize_url(url: str) -> str:
    parts = urlsplit(url)
    qs = sorted(parse_qsl(parts.query, keep_blank_values=True))
    return urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", urlencode(qs), "")
    )


def fingerprint(method: str, url: str, payload: Any = None) -> str:
    """Stable hash of method + normalized URL + payload."""
    raw = json.dumps(
        [method.upper(), normalize_url(url), payload],
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def dig(data: Any, path: str) -> Any:
    """Dot-notation lookup (``data.auth.expires``); list indexes are allowed."""
    node = data
    for part in path.split("."):
        if isinstance(node, dict) and part in node:
            node = node[part]
        elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            return None
    return node


def _coerce_datetime(value: Any) -> Optional[datetime]:
    """
    Accept ISO8601 / ``Y-m-d H:i:s`` strings, epoch seconds or epoch millis.
    Naive values are read as UTC. Returns None if not parseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
        if f > 10_000_000_000:
            f = f / 1000.0
        try:
            return datetime.fromtimestamp(f, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            try:
                return _coerce_datetime(float(s))
            except ValueError:
                return None
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return None


def _coerce_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


class ResponseCache:
    def __init__(
        self,
        store: DurableStore,
        strategy: CacheStrategy = CacheStrategy.NEVER,
        ttl: int = 3600,
        threshold: Optional[int] = None,
        period: Optional[int] = None,
        only_statuses: Optional[Iterable[int]] = None,
        except_statuses: Optional[Iterable[int]] = None,
        expires_field: Optional[str] = None,
        expires_format: ExpiresFormat = ExpiresFormat.DATETIME,
        expires_fallback: Optional[int] = None,
        prefix: str = "reqgate",
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.strategy = CacheStrategy(strategy)
        self.ttl = ttl
        self.threshold = threshold
        self.period = period
        self.only_statuses = frozenset(only_statuses) if only_statuses is not None else None
        self.except_statuses = frozenset(except_statuses) if except_statuses is not None else None
        self.expires_field = expires_field
        self.expires_format = ExpiresFormat(expires_format)
        self.expires_fallback = expires_fallback
        self.prefix = f"{prefix}:cache:"
        self._clock = clock
        if self.strategy is CacheStrategy.CONDITIONAL and (not threshold or not period):
            raise ValueError("conditional cache strategy needs cache_threshold and cache_threshold_period")

    def key_for(self, method: str, url: str, payload: Any = None) -> str:
        return self.prefix + fingerprint(method, url, payload)

    def _counter_key(self, key: str) -> str:
        return key + ":calls"

    def _window(self, key: str) -> list[float]:
        cutoff = self._clock() - self.period
        return [ts for ts in (self.store.get(self._counter_key(key)) or []) if ts > cutoff]

    def count_call(self, key: str) -> int:
        """Register one call for ``key`` in the sliding window and return the new count."""
        calls = self._window(key)
        calls.append(self._clock())
        self.store.put(self._counter_key(key), calls, ttl=self.period)
        return len(calls)

    def should_read(self, key: str) -> bool:
        if self.strategy is CacheStrategy.NEVER:
            return False
        if self.strategy is CacheStrategy.ALWAYS:
            return True
        return self.count_call(key) >= self.threshold

    def should_write(self, key: str, status: int) -> bool:
        if self.only_statuses is not None and status not in self.only_statuses:
            return False
        if self.except_statuses is not None and status in self.except_statuses:
            return False
        if self.strategy is CacheStrategy.NEVER:
            return False
        if self.strategy is CacheStrategy.ALWAYS:
            return True
        # should_read already counted this call
        return len(self._window(key)) >= self.threshold

    def ttl_for(self, response: Response) -> int:
        fallback = self.expires_fallback if self.expires_fallback is not None else self.ttl
        if not self.expires_field:
            return max(MIN_TTL, int(fallback))
        try:
            body = response.json()
        except ValueError:
            body = None
        value = dig(body, self.expires_field)
        ttl = self._interpret(value)
        if ttl is None:
            log.debug("cache_expires_fallback", field=self.expires_field, ttl=fallback)
            return max(MIN_TTL, int(fallback))
        return max(MIN_TTL, ttl)

    def _interpret(self, value: Any) -> Optional[int]:
        if self.expires_format is ExpiresFormat.DATETIME:
            dt = _coerce_datetime(value)
            if dt is None:
                return None
            return int(dt.timestamp() - self._clock())
        n = _coerce_number(value)
        if n is None:
            return None
        if self.expires_format is ExpiresFormat.MINUTES:
            n = n * 60
        return int(n)

    def lookup(self, key: str) -> Optional[Response]:
        doc = self.store.get(key)
        if doc is None:
            return None
        return Response.from_cached(CachedResponse.model_validate(doc))

    def store_response(self, key: str, response: Response, ttl: int) -> None:
        self.store.put(key, response.cached().doc(), ttl=max(MIN_TTL, ttl))
        log.debug("cache_stored", key=key, ttl=ttl, status=response.status)

    def clear(self) -> int:
        """Drop cached responses and call counters under this prefix only."""
        return self.store.delete_prefix(self.prefix)
