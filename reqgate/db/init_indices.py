from __future__ import annotations
from pymongo.collection import Collection


def ensure_store_indices(coll: Collection) -> None:
    # Rows with expires_at=None are never evicted by the TTL monitor.
    coll.create_index("expires_at", expireAfterSeconds=0, name="ttl_store")


def ensure_log_indices(coll: Collection) -> None:
    coll.create_index([("url", 1), ("created_at", -1)])
    coll.create_index([("status_code", 1), ("created_at", -1)])
    coll.create_index("created_at", name="created_at")
