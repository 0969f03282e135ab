from __future__ import annotations
import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

import structlog
from pymongo.collection import Collection

from .models.records import RequestLogEntry

log = structlog.get_logger()


class AuditSink(ABC):
    @abstractmethod
    def record_success(
        self,
        url: str,
        method: str,
        headers: Mapping[str, str],
        payload: Any,
        status: int,
        body: bytes,
        elapsed: float,
    ) -> None:
        ...

    @abstractmethod
    def record_error(
        self,
        url: str,
        method: str,
        headers: Mapping[str, str],
        payload: Any,
        error_message: str,
        elapsed: float,
    ) -> None:
        ...


class NullAuditSink(AuditSink):
    def record_success(self, url, method, headers, payload, status, body, elapsed) -> None:
        return None

    def record_error(self, url, method, headers, payload, error_message, elapsed) -> None:
        return None


def _decode_body(body: bytes) -> Any:
    text = body.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return {"body": text}


class MongoAuditSink(AuditSink):
    """Writes one ``RequestLogEntry`` document per call into ``http_request_logs``."""

    def __init__(self, collection: Collection):
        self._coll = collection

    def record_success(self, url, method, headers, payload, status, body, elapsed) -> None:
        entry = RequestLogEntry(
            url=url,
            method=method.upper(),
            headers=dict(headers),
            payload=payload,
            status_code=status,
            response=_decode_body(body),
            response_time=elapsed,
        )
        self._coll.insert_one(entry.doc())

    def record_error(self, url, method, headers, payload, error_message, elapsed) -> None:
        entry = RequestLogEntry(
            url=url,
            method=method.upper(),
            headers=dict(headers),
            payload=payload,
            error_message=error_message,
            response_time=elapsed,
        )
        self._coll.insert_one(entry.doc())

    def purge_older_than(self, days: int, now: Optional[datetime] = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        n = self._coll.delete_many({"created_at": {"$lt": cutoff}}).deleted_count
        log.info("request_logs_purged", days=days, count=n)
        return n


def default_sink() -> MongoAuditSink:
    from .db.mongo import logs_collection

    return MongoAuditSink(logs_collection())
