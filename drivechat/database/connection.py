import logging
from typing import Optional

from drivechat.core.config import settings
from drivechat.store.base import DocumentStore
from drivechat.store.memory import InMemoryDocumentStore
from drivechat.store.mongo import MongoDocumentStore
from drivechat.utils.realtime_bus import create_bus


logger = logging.getLogger(__name__)

_store: Optional[DocumentStore] = None


def build_store() -> DocumentStore:
    feed = create_bus(settings.REDIS_URL)
    if settings.STORE_BACKEND == "mongo":
        store: DocumentStore = MongoDocumentStore.connect(settings.MONGO_URL, settings.MONGO_DB_NAME, feed)
    else:
        store = InMemoryDocumentStore(feed)
    store.retry_base_seconds = settings.SUBSCRIPTION_RETRY_SECONDS
    store.retry_max_seconds = settings.SUBSCRIPTION_RETRY_MAX_SECONDS
    return store


async def connect_store(store: Optional[DocumentStore] = None) -> DocumentStore:
    global _store
    _store = store or build_store()
    logger.info("Document store ready", extra={"backend": type(_store).__name__})
    return _store


async def close_store() -> None:
    global _store
    if _store is not None:
        await _store.close()
        _store = None


def get_store() -> DocumentStore:
    if _store is None:
        raise RuntimeError("Document store is not connected")
    return _store


async def store_dependency() -> DocumentStore:
    return get_store()
