import pytest
from unittest.mock import patch, MagicMock, AsyncMock
from budgetsync.core.rate_limiter import RateLimiter, MemoryRateLimitStorage, RedisRateLimitStorage


@pytest.mark.asyncio
async def test_memory_rate_limiter_window():
    limiter = RateLimiter(MemoryRateLimitStorage(), limit=30, window_seconds=60)
    key = "ip:client-a"

    with patch("time.time") as mock_time:
        start_time = 1000.0
        mock_time.return_value = start_time

        # 1. 30 requests inside the window succeed
        for i in range(30):
            result = await limiter.check(key)
            assert result.allowed is True
            assert result.remaining == 29 - i

        # 2. The 31st is rejected
        result = await limiter.check(key)
        assert result.allowed is False
        assert result.remaining == 0
        assert "Retry-After" in result.headers()

        # 3. Still limited just before the window ends
        mock_time.return_value = start_time + 59.0
        assert (await limiter.check(key)).allowed is False

        # 4. New window after expiry
        mock_time.return_value = start_time + 60.0
        result = await limiter.check(key)
        assert result.allowed is True
        assert result.remaining == 29
        assert result.reset_at == start_time + 120.0


@pytest.mark.asyncio
async def test_clients_are_limited_independently():
    limiter = RateLimiter(MemoryRateLimitStorage(), limit=2, window_seconds=60)
    with patch("time.time", return_value=5000.0):
        assert (await limiter.check("a")).allowed
        assert (await limiter.check("a")).allowed
        assert not (await limiter.check("a")).allowed
        assert (await limiter.check("b")).allowed


@pytest.mark.asyncio
async def test_headers_when_allowed():
    limiter = RateLimiter(MemoryRateLimitStorage(), limit=5, window_seconds=60)
    with patch("time.time", return_value=1000.0):
        headers = (await limiter.check("a")).headers()
    assert headers["X-RateLimit-Limit"] == "5"
    assert headers["X-RateLimit-Remaining"] == "4"
    assert headers["X-RateLimit-Reset"] == "1060"
    assert "Retry-After" not in headers


@pytest.mark.asyncio
async def test_redis_rate_limiter():
    mock_redis = MagicMock()
    mock_redis.incr = AsyncMock(return_value=1)
    mock_redis.expire = AsyncMock()
    mock_redis.ttl = AsyncMock(return_value=60)

    limiter = RateLimiter(RedisRateLimitStorage(mock_redis), limit=30, window_seconds=60)

    result = await limiter.check("redis_key")
    assert result.allowed is True
    assert result.remaining == 29
    mock_redis.expire.assert_awaited_once_with("rl:redis_key", 60)

    # Over the limit
    mock_redis.incr.return_value = 31
    mock_redis.expire.reset_mock()
    result = await limiter.check("redis_key")
    assert result.allowed is False
    mock_redis.expire.assert_not_awaited()


@pytest.mark.asyncio
async def test_redis_failure_policy():
    mock_redis = MagicMock()
    mock_redis.incr = AsyncMock(side_effect=ConnectionError("down"))

    with pytest.raises(RuntimeError):
        await RateLimiter(RedisRateLimitStorage(mock_redis, prod=True)).check("k")

    with pytest.raises(RuntimeError):
        await RateLimiter(RedisRateLimitStorage(mock_redis)).check("k")

    result = await RateLimiter(RedisRateLimitStorage(mock_redis, dev_fail_open=True)).check("k")
    assert result.allowed is True
