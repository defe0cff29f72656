"""Redis Adapter - Shared connection and key layout."""
import redis.asyncio as redis
from typing import Optional

_redis_client: Optional[redis.Redis] = None


def get_redis(redis_url: str = "redis://localhost:6379/0") -> redis.Redis:
    """Get or create the process-wide connection used by the record store and rate limiter."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(redis_url, decode_responses=True)
    return _redis_client


async def close_redis():
    """Close Redis connection."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def record_key(storage_id: str) -> str:
    """Durable record key for one StorageKey."""
    return f"userdata:{storage_id}"
