from __future__ import annotations
from datetime import timezone

from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import ServerSelectionTimeoutError

from . import init_indices
from ..config import SETTINGS

_clients: dict[str, MongoClient] = {}


def get_client(uri: str | None = None) -> MongoClient:
    uri = uri or SETTINGS.mongo_uri
    client = _clients.get(uri)
    if client is None:
        client = MongoClient(
            uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=5000,
            tz_aware=True,
            tzinfo=timezone.utc,
        )
        _clients[uri] = client
    return client


def get_db(uri: str | None = None) -> Database:
    return get_client(uri)[SETTINGS.mongo_db]


def store_collection() -> Collection:
    return get_db(SETTINGS.store_mongo_uri).get_collection(SETTINGS.store_collection)


def logs_collection() -> Collection:
    return get_db(SETTINGS.logging_mongo_uri).get_collection(SETTINGS.logging_collection)


def ensure_indices() -> None:
    try:
        # Force a quick connectivity check
        get_client(SETTINGS.store_mongo_uri).admin.command("ping")
    except ServerSelectionTimeoutError as e:
        raise RuntimeError(
            "Cannot connect to MongoDB at the configured store URI. "
            "Start Mongo first (e.g., `docker compose up -d`) and retry."
        ) from e
    init_indices.ensure_store_indices(store_collection())
    init_indices.ensure_log_indices(logs_collection())
