"""MongoDB store backend, shared by every process pointed at the same collection."""

from __future__ import annotations
import re
import time
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

import structlog
from pymongo.collection import Collection
from pymongo.errors import AutoReconnect, DuplicateKeyError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..models.records import utc_from_ts
from .base import DurableStore

log = structlog.get_logger()

_retry = retry(
    retry=retry_if_exception_type(AutoReconnect),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    reraise=True,
)


class MongoStore(DurableStore):
    """
    One document per key: ``{_id: key, value: ..., expires_at: datetime|None}``.

    ``_id`` uniqueness makes ``insert_one`` the atomic create-if-absent, and
    the ``ttl_store`` index evicts expired rows in the background. Reads
    filter on ``expires_at`` themselves because the TTL monitor only runs
    about once a minute.
    """

    def __init__(self, collection: Collection, clock: Callable[[], float] = time.time):
        self._coll = collection
        self._clock = clock

    def _now(self) -> datetime:
        return utc_from_ts(self._clock())

    def _expiry(self, ttl: Optional[float]) -> Optional[datetime]:
        return None if ttl is None else utc_from_ts(self._clock() + ttl)

    def _live_filter(self) -> dict:
        return {"$or": [{"expires_at": None}, {"expires_at": {"$gt": self._now()}}]}

    @staticmethod
    def _prefix_filter(prefix: str) -> dict:
        return {"_id": {"$regex": "^" + re.escape(prefix)}}

    @_retry
    def get(self, key: str) -> Optional[Any]:
        doc = self._coll.find_one({"_id": key, **self._live_filter()})
        return None if doc is None else doc.get("value")

    @_retry
    def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._coll.replace_one(
            {"_id": key},
            {"_id": key, "value": value, "expires_at": self._expiry(ttl)},
            upsert=True,
        )

    # Not retried: a replayed insert could report our own row as a competitor's.
    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        self._coll.delete_one({"_id": key, "expires_at": {"$ne": None, "$lte": self._now()}})
        try:
            self._coll.insert_one({"_id": key, "value": value, "expires_at": self._expiry(ttl)})
        except DuplicateKeyError:
            return False
        return True

    @_retry
    def delete(self, key: str) -> bool:
        return self._coll.delete_one({"_id": key}).deleted_count > 0

    def scan(self, prefix: str) -> Iterator[tuple[str, Any]]:
        query = {"$and": [self._prefix_filter(prefix), self._live_filter()]}
        for doc in self._coll.find(query).sort("_id", 1):
            yield doc["_id"], doc.get("value")

    @_retry
    def delete_prefix(self, prefix: str) -> int:
        n = self._coll.delete_many(self._prefix_filter(prefix)).deleted_count
        log.info("store_prefix_deleted", prefix=prefix, count=n)
        return n


def default_store() -> MongoStore:
    from ..db.mongo import store_collection

    return MongoStore(store_collection())
