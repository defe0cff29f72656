"""Tests for the client sync layer: cache, dedup, invalidation, retry, fallback."""
import asyncio
from typing import Any, Dict, List

import pytest

from budgetsync.client.local_store import MemoryLocalStore
from budgetsync.client.sync_client import SyncClient
from budgetsync.domain.interfaces import StorageKey
from budgetsync.errors import NetworkError, NoDataError, NotFoundError, RateLimitedError, ServerError

MOBILE = "+919876543210"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FakeTransport:
    """In-memory server stand-in. ``failures`` is a list of exceptions raised first."""

    def __init__(self):
        self.data: Dict[tuple, Any] = {}
        self.calls: List[dict] = []
        self.failures: List[BaseException] = []
        self.gate: asyncio.Event = asyncio.Event()
        self.gate.set()
        self.closed = False

    def count(self, action):
        return sum(1 for c in self.calls if c["action"] == action)

    async def post(self, body):
        self.calls.append(body)
        await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        key = (body["mobile"], body.get("dataType") or "user")
        if body["action"] == "save":
            self.data[key] = body["data"]
            return {"success": True, "message": "Data saved successfully",
                    "details": {"user": body["mobile"], "dataType": key[1], "timestamp": "t"}}
        if key not in self.data:
            raise NotFoundError("No data found")
        return self.data[key]

    async def aclose(self):
        self.closed = True


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_client(transport, local=None, clock=None, sleep=None, **kwargs):
    return SyncClient(
        transport,
        local,
        clock=clock or FakeClock(),
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_fetch_is_cached_within_ttl():
    transport = FakeTransport()
    transport.data[("9876543210", "categories")] = [{"name": "Food"}]
    clock = FakeClock()
    client = make_client(transport, clock=clock)

    assert await client.fetch(MOBILE, "categories") == [{"name": "Food"}]
    clock.now += 29 * 60
    assert await client.fetch(MOBILE, "categories") == [{"name": "Food"}]
    assert transport.count("get") == 1

    clock.now += 60
    await client.fetch(MOBILE, "categories")
    assert transport.count("get") == 2


@pytest.mark.asyncio
async def test_equivalent_identities_share_cache():
    transport = FakeTransport()
    transport.data[("9876543210", "user")] = {"name": "Asha"}
    client = make_client(transport)

    await client.fetch("+91 98765 43210")
    await client.fetch("9876543210")
    assert transport.count("get") == 1


@pytest.mark.asyncio
async def test_concurrent_fetches_share_one_request():
    transport = FakeTransport()
    transport.data[("9876543210", "transactions")] = [{"amount": 10}]
    transport.gate.clear()
    client = make_client(transport)

    tasks = [asyncio.ensure_future(client.fetch(MOBILE, "transactions")) for _ in range(5)]
    await asyncio.sleep(0)
    assert client.pending_reads == 1

    transport.gate.set()
    results = await asyncio.gather(*tasks)

    assert transport.count("get") == 1
    assert all(r == [{"amount": 10}] for r in results)
    assert client.pending_reads == 0


@pytest.mark.asyncio
async def test_failed_shared_fetch_releases_pending_entry():
    transport = FakeTransport()
    transport.failures = [ServerError(500)]
    client = make_client(transport)

    with pytest.raises(ServerError):
        await client.fetch(MOBILE)
    await asyncio.sleep(0)
    assert client.pending_reads == 0

    transport.data[("9876543210", "user")] = {"ok": True}
    assert await client.fetch(MOBILE) == {"ok": True}


@pytest.mark.asyncio
async def test_fetch_timeout_releases_pending_entry():
    transport = FakeTransport()
    transport.gate.clear()
    client = make_client(transport, request_timeout=0.01)

    with pytest.raises(NetworkError):
        await client.fetch(MOBILE)
    await asyncio.sleep(0)
    assert client.pending_reads == 0


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_read():
    transport = FakeTransport()
    transport.data[("9876543210", "user")] = {"v": 1}
    transport.gate.clear()
    client = make_client(transport)

    first = asyncio.ensure_future(client.fetch(MOBILE))
    second = asyncio.ensure_future(client.fetch(MOBILE))
    await asyncio.sleep(0)
    first.cancel()
    transport.gate.set()

    assert await second == {"v": 1}
    assert transport.count("get") == 1


@pytest.mark.asyncio
async def test_not_found_is_none_and_not_cached():
    transport = FakeTransport()
    client = make_client(transport)

    assert await client.fetch(MOBILE, "monthlyBudget") is None
    assert await client.fetch(MOBILE, "monthlyBudget") is None
    assert transport.count("get") == 2


@pytest.mark.asyncio
async def test_save_invalidates_cached_read():
    transport = FakeTransport()
    transport.data[("9876543210", "categories")] = ["old"]
    client = make_client(transport)

    assert await client.fetch(MOBILE, "categories") == ["old"]
    await client.save(MOBILE, "categories", ["new"])
    assert await client.fetch(MOBILE, "categories") == ["new"]


@pytest.mark.asyncio
async def test_save_detaches_in_flight_read():
    transport = FakeTransport()
    transport.data[("9876543210", "categories")] = ["old"]
    transport.gate.clear()
    client = make_client(transport)

    stale = asyncio.ensure_future(client.fetch(MOBILE, "categories"))
    await settle()
    save = asyncio.ensure_future(client.save(MOBILE, "categories", ["new"]))
    await settle()
    fresh = asyncio.ensure_future(client.fetch(MOBILE, "categories"))
    await settle()

    transport.gate.set()
    await asyncio.gather(stale, save)
    assert await fresh == ["new"]
    # The stale read must not have repopulated the cache
    assert await client.fetch(MOBILE, "categories") == ["new"]


@pytest.mark.asyncio
async def test_save_rejects_missing_data():
    client = make_client(FakeTransport())
    with pytest.raises(NoDataError):
        await client.save(MOBILE, "user", None)


@pytest.mark.asyncio
async def test_save_retries_then_succeeds():
    transport = FakeTransport()
    transport.failures = [NetworkError("1"), ServerError(503)]
    sleep = RecordingSleep()
    client = make_client(transport, sleep=sleep)

    ack = await client.save(MOBILE, "transactions", [{"amount": 5}])
    assert ack["success"] is True
    assert transport.count("save") == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_save_surfaces_last_error_after_three_attempts():
    transport = FakeTransport()
    last = ServerError(502)
    transport.failures = [NetworkError("1"), NetworkError("2"), last]
    client = make_client(transport)

    with pytest.raises(ServerError) as info:
        await client.save(MOBILE, "transactions", [])
    assert info.value is last
    assert transport.count("save") == 3


@pytest.mark.asyncio
async def test_save_does_not_retry_rate_limit():
    transport = FakeTransport()
    transport.failures = [RateLimitedError("429")]
    client = make_client(transport)

    with pytest.raises(RateLimitedError):
        await client.save(MOBILE, "user", {"a": 1})
    assert transport.count("save") == 1


@pytest.mark.asyncio
async def test_fallback_to_local_and_write_back():
    transport = FakeTransport()
    transport.failures = [NetworkError("offline")]
    local = MemoryLocalStore({"categories_9876543210": [{"name": "Food"}]})
    client = make_client(transport, local)

    assert await client.fetch(MOBILE, "categories") == [{"name": "Food"}]

    await client.wait_for_write_backs()
    assert transport.data[("9876543210", "categories")] == [{"name": "Food"}]
    assert transport.count("save") == 1


@pytest.mark.asyncio
async def test_fallback_without_local_data_propagates():
    transport = FakeTransport()
    transport.failures = [NetworkError("offline")]
    client = make_client(transport, MemoryLocalStore())

    with pytest.raises(NetworkError):
        await client.fetch(MOBILE, "categories")


@pytest.mark.asyncio
async def test_write_back_failure_reaches_hook():
    transport = FakeTransport()
    transport.failures = [NetworkError("offline")] * 4
    errors = []
    local = MemoryLocalStore({"budget_9876543210": {"amount": 100}})
    client = make_client(transport, local, on_write_back_error=lambda key, exc: errors.append((key, exc)))

    assert await client.fetch(MOBILE, "monthlyBudget") == {"amount": 100}
    await client.wait_for_write_backs()

    assert len(errors) == 1
    assert errors[0][0] == StorageKey("9876543210", "monthlyBudget")
    assert isinstance(errors[0][1], NetworkError)


@pytest.mark.asyncio
async def test_successful_fetch_and_save_mirror_local():
    transport = FakeTransport()
    transport.data[("9876543210", "transactions")] = [1, 2]
    local = MemoryLocalStore()
    client = make_client(transport, local)

    await client.fetch(MOBILE, "transactions")
    assert await local.get_item("transactions_9876543210") == [1, 2]

    transport.failures = [NetworkError("1")] * 3
    with pytest.raises(NetworkError):
        await client.save(MOBILE, "categories", ["kept offline"])
    assert await local.get_item("categories_9876543210") == ["kept offline"]


@pytest.mark.asyncio
async def test_clear_cache_for_identity_only():
    transport = FakeTransport()
    transport.data[("9876543210", "user")] = {"a": 1}
    transport.data[("9123456789", "user")] = {"b": 2}
    client = make_client(transport)

    await client.fetch(MOBILE)
    await client.fetch("9123456789")
    assert client.clear_cache(MOBILE) == 1

    await client.fetch(MOBILE)
    await client.fetch("9123456789")
    assert transport.count("get") == 3

    client.clear_all_cache()
    await client.fetch("9123456789")
    assert transport.count("get") == 4


@pytest.mark.asyncio
async def test_throttled_save_coalesces_to_latest():
    transport = FakeTransport()
    client = make_client(transport, throttle_window=0.05)

    await client.throttled_save(MOBILE, "categories", ["v1"])
    await asyncio.gather(
        client.throttled_save(MOBILE, "categories", ["v2"]),
        client.throttled_save(MOBILE, "categories", ["v3"]),
        client.throttled_save(MOBILE, "categories", ["v4"]),
    )

    saves = [c["data"] for c in transport.calls if c["action"] == "save"]
    assert saves == [["v1"], ["v4"]]
    assert transport.data[("9876543210", "categories")] == ["v4"]


@pytest.mark.asyncio
async def test_throttles_are_per_key():
    transport = FakeTransport()
    client = make_client(transport, throttle_window=10.0)

    await client.throttled_save(MOBILE, "categories", ["c"])
    await client.throttled_save(MOBILE, "transactions", ["t"])
    assert transport.count("save") == 2


@pytest.mark.asyncio
async def test_aclose_flushes_throttled_saves():
    transport = FakeTransport()
    client = make_client(transport, throttle_window=10.0)

    await client.throttled_save(MOBILE, "categories", ["first"])
    pending = asyncio.ensure_future(client.throttled_save(MOBILE, "categories", ["last"]))
    await asyncio.sleep(0)

    await client.aclose()
    await pending
    assert transport.data[("9876543210", "categories")] == ["last"]
    assert transport.closed


class GatedSleep(RecordingSleep):
    """Backoff sleep that waits until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def __call__(self, delay):
        self.delays.append(delay)
        await self.gate.wait()


class GatedLocalStore(MemoryLocalStore):
    def __init__(self, initial=None):
        super().__init__(initial)
        self.gate = asyncio.Event()
        self.gate.set()

    async def set_item(self, name, value):
        await self.gate.wait()
        await super().set_item(name, value)


@pytest.mark.asyncio
async def test_save_supersedes_write_back_waiting_in_backoff():
    transport = FakeTransport()
    transport.failures = [NetworkError("offline"), NetworkError("still offline")]
    sleep = GatedSleep()
    errors = []
    local = MemoryLocalStore({"categories_9876543210": [{"name": "Old"}]})
    client = make_client(transport, local, sleep=sleep, on_write_back_error=lambda key, exc: errors.append(exc))

    assert await client.fetch(MOBILE, "categories") == [{"name": "Old"}]
    await settle()
    assert sleep.delays == [1.0]

    await client.save(MOBILE, "categories", [{"name": "New"}])
    sleep.gate.set()
    await client.wait_for_write_backs()

    assert transport.data[("9876543210", "categories")] == [{"name": "New"}]
    assert transport.count("save") == 2
    assert errors == []


@pytest.mark.asyncio
async def test_fetch_during_save_does_not_serve_old_cache():
    transport = FakeTransport()
    transport.data[("9876543210", "categories")] = [{"name": "Old"}]
    local = GatedLocalStore()
    client = make_client(transport, local)

    assert await client.fetch(MOBILE, "categories") == [{"name": "Old"}]

    local.gate.clear()
    save = asyncio.ensure_future(client.save(MOBILE, "categories", [{"name": "New"}]))
    await settle()
    assert not save.done()

    # Goes to the network instead of the cache; the overlapping read is not kept
    await client.fetch(MOBILE, "categories")
    assert transport.count("get") == 2

    local.gate.set()
    await save

    assert await client.fetch(MOBILE, "categories") == [{"name": "New"}]
    assert transport.count("get") == 3
    assert await local.get_item("categories_9876543210") == [{"name": "New"}]
