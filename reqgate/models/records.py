from __future__ import annotations
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utc_from_ts(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _as_aware(dt: datetime) -> datetime:
    return dt if getattr(dt, "tzinfo", None) else dt.replace(tzinfo=timezone.utc)


class DomainBlock(BaseModel):
    domain: str
    blocked_at: datetime
    wait_minutes: int
    unblock_at: datetime
    reason: Optional[str] = None

    @classmethod
    def starting(cls, domain: str, now: float, wait_minutes: int, reason: Optional[str] = None) -> "DomainBlock":
        blocked_at = utc_from_ts(now)
        return cls(
            domain=domain,
            blocked_at=blocked_at,
            wait_minutes=wait_minutes,
            unblock_at=blocked_at + timedelta(minutes=wait_minutes),
            reason=reason,
        )

    def remaining_seconds(self, now: float) -> float:
        return max(0.0, _as_aware(self.unblock_at).timestamp() - now)

    def is_active(self, now: float) -> bool:
        return _as_aware(self.unblock_at).timestamp() > now

    def doc(self) -> dict:
        return self.model_dump()


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitState(BaseModel):
    state: CircuitStatus = CircuitStatus.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None  # epoch seconds

    def doc(self) -> dict:
        return self.model_dump(mode="json")


class CachedResponse(BaseModel):
    status: int
    headers: dict[str, str] = {}
    body: bytes = b""

    def doc(self) -> dict:
        return self.model_dump()


class RequestLogEntry(BaseModel):
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    url: str
    method: str
    headers: dict[str, str] = {}
    payload: Any = None
    status_code: Optional[int] = None
    response: Any = None
    error_message: Optional[str] = None
    response_time: float = 0.0

    def doc(self) -> dict:
        return self.model_dump()


@dataclass
class Response:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def header(self, name: str) -> Optional[str]:
        lname = name.lower()
        for k, v in self.headers.items():
            if k.lower() == lname:
                return v
        return None

    def json(self) -> Any:
        return json.loads(self.body) if self.body else None

    def cached(self) -> CachedResponse:
        return CachedResponse(status=self.status, headers=dict(self.headers), body=self.body)

    @classmethod
    def from_cached(cls, entry: CachedResponse) -> "Response":
        return cls(status=entry.status, headers=dict(entry.headers), body=entry.body, from_cache=True)
