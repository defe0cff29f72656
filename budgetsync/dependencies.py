"""Dependency Injection Module."""
import logging
from typing import Optional

from budgetsync.adapters.redis.client import close_redis, get_redis
from budgetsync.core.cipher import PayloadCipher
from budgetsync.core.rate_limiter import MemoryRateLimitStorage, RateLimiter, RateLimitStorage, RedisRateLimitStorage
from budgetsync.domain.handler import RequestHandler
from budgetsync.domain.interfaces import RecordStore
from budgetsync.settings import Settings, get_settings, resolve_secret_salt

logger = logging.getLogger(__name__)

_record_store: Optional[RecordStore] = None
_request_handler: Optional[RequestHandler] = None


def build_record_store(settings: Settings) -> RecordStore:
    """Select the durable store backend from configuration."""
    backend = settings.store_backend.lower()
    if backend == "memory":
        if settings.is_prod:
            raise RuntimeError("In PROD, STORE_BACKEND must be durable (file, redis or sql)")
        from budgetsync.adapters.memory_store.stores import MemoryRecordStore
        return MemoryRecordStore()
    if backend == "file":
        from budgetsync.adapters.json_store.stores import FileRecordStore
        return FileRecordStore(settings.data_dir)
    if backend == "redis":
        from budgetsync.adapters.redis.stores import RedisRecordStore
        return RedisRecordStore(get_redis(settings.redis_url))
    if backend == "sql":
        from budgetsync.adapters.sql.record_store import SqlRecordStore, create_record_engine
        return SqlRecordStore(create_record_engine(settings.database_url))
    raise RuntimeError(f"Unknown STORE_BACKEND: {settings.store_backend}")


def build_rate_limit_storage(settings: Settings) -> RateLimitStorage:
    backend = settings.rate_limit_backend.lower()
    if backend == "redis":
        return RedisRateLimitStorage(
            get_redis(settings.redis_url),
            prod=settings.is_prod,
            dev_fail_open=settings.rate_limit_dev_fail_open,
        )
    if backend != "memory":
        raise RuntimeError(f"Unknown RATE_LIMIT_BACKEND: {settings.rate_limit_backend}")
    return MemoryRateLimitStorage()


def build_request_handler(settings: Settings, store: Optional[RecordStore] = None) -> RequestHandler:
    limit = settings.rate_limit_requests if settings.rate_limit_enabled else 2 ** 31
    return RequestHandler(
        store=store or build_record_store(settings),
        rate_limiter=RateLimiter(
            build_rate_limit_storage(settings),
            limit=limit,
            window_seconds=settings.rate_limit_window_seconds,
        ),
        cipher=PayloadCipher(resolve_secret_salt(settings)),
        hot_cache_ttl=settings.hot_cache_ttl_seconds,
    )


def get_request_handler() -> RequestHandler:
    """Process-wide handler for the HTTP app. Tests override this dependency."""
    global _request_handler, _record_store
    if _request_handler is None:
        settings = get_settings()
        _record_store = build_record_store(settings)
        _request_handler = build_request_handler(settings, _record_store)
    return _request_handler


def get_record_store() -> RecordStore:
    return get_request_handler().store


async def close_dependencies() -> None:
    global _request_handler, _record_store
    if _record_store is not None:
        await _record_store.close()
    await close_redis()
    _record_store = None
    _request_handler = None
