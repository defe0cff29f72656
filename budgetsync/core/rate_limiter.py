import abc
import math
import time
import logging
from dataclasses import dataclass
from typing import Dict, Tuple

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds
    limit: int

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(1, int(math.ceil(self.reset_at - time.time()))))
        return headers


class RateLimitStorage(abc.ABC):
    @abc.abstractmethod
    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """
        Count one request against the key's fixed window.

        Args:
            key: Client identifier.
            limit: Max requests per window.
            window_seconds: Window length.

        Returns:
            RateLimitResult for this request.
        """
        pass


class MemoryRateLimitStorage(RateLimitStorage):
    def __init__(self):
        # key -> (count, window_reset_timestamp)
        self._windows: Dict[str, Tuple[int, float]] = {}

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = time.time()
        count, reset_at = self._windows.get(key, (0, 0.0))

        if now >= reset_at:
            # First request or expired window
            count, reset_at = 1, now + window_seconds
        else:
            count += 1

        self._windows[key] = (count, reset_at)
        return RateLimitResult(
            allowed=count <= limit,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            limit=limit,
        )

    def reset(self) -> None:
        self._windows.clear()


class RedisRateLimitStorage(RateLimitStorage):
    def __init__(self, redis_client, prod: bool = False, dev_fail_open: bool = False):
        self.redis = redis_client
        self.prod = prod
        self.dev_fail_open = dev_fail_open

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        redis_key = f"rl:{key}"
        now = time.time()
        try:
            current = await self.redis.incr(redis_key)
            if current == 1:
                # First request in window, set TTL
                await self.redis.expire(redis_key, window_seconds)

            ttl = await self.redis.ttl(redis_key)
            if ttl < 0:
                ttl = window_seconds

            return RateLimitResult(
                allowed=current <= limit,
                remaining=max(0, limit - current),
                reset_at=now + ttl,
                limit=limit,
            )
        except Exception as e:
            logger.error(f"Redis rate limit error: {e}")

            # Prod must fail closed; the handler maps this to a 500
            if self.prod:
                raise RuntimeError("Redis runtime failure in PROD") from e
            if self.dev_fail_open:
                return RateLimitResult(allowed=True, remaining=limit, reset_at=now, limit=limit)
            raise RuntimeError("Redis runtime failure in DEV") from e


class RateLimiter:
    """Per-client fixed-window request counter (30 requests / 60 s by default)."""

    def __init__(self, storage: RateLimitStorage, limit: int = 30, window_seconds: int = 60):
        self.storage = storage
        self.limit = limit
        self.window_seconds = window_seconds

    async def check(self, client_id: str) -> RateLimitResult:
        result = await self.storage.hit(client_id, self.limit, self.window_seconds)
        if not result.allowed:
            logger.info(f"Rate limited client {client_id} (limit={self.limit}/{self.window_seconds}s)")
        return result
