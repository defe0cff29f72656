"""Client-side sync: TTL cache, in-flight dedup, retrying writes, local fallback."""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set, Tuple

from budgetsync.client.local_store import LocalStore
from budgetsync.client.retry import retry_async
from budgetsync.client.throttle import Throttle
from budgetsync.core.ttl_cache import MISSING, TtlCache
from budgetsync.domain.interfaces import DEFAULT_DATA_TYPE, StorageKey
from budgetsync.domain.models import ACTION_GET, ACTION_SAVE
from budgetsync.errors import NoDataError, NotFoundError, RequestTimeoutError, SyncError

logger = logging.getLogger(__name__)

CLIENT_CACHE_TTL = 30 * 60
REQUEST_TIMEOUT = 10.0
SAVE_ATTEMPTS = 3
RETRY_BASE_DELAY = 0.5
THROTTLE_WINDOW = 5.0

CacheKey = Tuple[StorageKey, str]


class Transport(Protocol):
    async def post(self, body: Dict[str, Any]) -> Any: ...

    async def aclose(self) -> None: ...


class SyncClient:
    """The four operations the application uses: fetch, save, clear_cache, clear_all_cache.

    All state (cache, pending table, throttles, background write-backs) is
    owned by the instance. Must be used from a single event loop.
    """

    def __init__(
        self,
        transport: Transport,
        local_store: Optional[LocalStore] = None,
        *,
        cache_ttl: float = CLIENT_CACHE_TTL,
        request_timeout: float = REQUEST_TIMEOUT,
        save_attempts: int = SAVE_ATTEMPTS,
        retry_base_delay: float = RETRY_BASE_DELAY,
        throttle_window: float = THROTTLE_WINDOW,
        on_write_back_error: Optional[Callable[[StorageKey, BaseException], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transport = transport
        self.local_store = local_store
        self.request_timeout = request_timeout
        self.save_attempts = save_attempts
        self.retry_base_delay = retry_base_delay
        self.throttle_window = throttle_window
        self.on_write_back_error = on_write_back_error
        self._sleep = sleep

        self._cache: TtlCache[CacheKey] = TtlCache(cache_ttl, clock=clock)
        self._pending: Dict[StorageKey, "asyncio.Task[Any]"] = {}
        self._generation: Dict[StorageKey, int] = {}
        self._throttles: Dict[StorageKey, Throttle] = {}
        self._background: Set["asyncio.Task[Any]"] = set()
        self._write_backs: Dict[StorageKey, "asyncio.Task[Any]"] = {}
        self._saves_in_flight: Dict[StorageKey, int] = {}

    # -- reads ---------------------------------------------------------------

    async def fetch(self, identity: str, data_type: str = DEFAULT_DATA_TYPE) -> Optional[Any]:
        """Return the payload for the key, or ``None`` when the server has none.

        Concurrent fetches of one key share a single network read. When the
        server cannot be reached the local copy is returned and written back.
        """
        key = StorageKey.build(identity, data_type)

        cached = self._cache.get((key, ACTION_GET))
        if cached is not MISSING:
            return cached

        task = self._pending.get(key)
        if task is None:
            # Registered before the first suspension point
            task = asyncio.ensure_future(self._fetch_remote(key))
            self._pending[key] = task
            task.add_done_callback(lambda t, k=key: self._settle_pending(k, t))

        return await asyncio.shield(task)

    def _settle_pending(self, key: StorageKey, task: "asyncio.Task[Any]") -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            # The exception is re-raised to every awaiting caller
            task.exception()

    async def _fetch_remote(self, key: StorageKey) -> Optional[Any]:
        generation = self._generation.get(key, 0)
        body = {"mobile": key.identity, "action": ACTION_GET, "dataType": key.data_type}
        try:
            payload = await asyncio.wait_for(self.transport.post(body), self.request_timeout)
        except NotFoundError:
            return None
        except asyncio.TimeoutError:
            logger.warning(f"Fetch {key.data_type} timed out after {self.request_timeout}s")
            return await self._recover_from_local(key, RequestTimeoutError("Fetch timed out"))
        except SyncError as e:
            logger.warning(f"Fetch {key.data_type} failed: {e.code} {e.message}")
            return await self._recover_from_local(key, e)

        # A save since this read started, or still running, makes the payload stale
        if self._generation.get(key, 0) == generation and key not in self._saves_in_flight:
            self._cache.set((key, ACTION_GET), payload)
            if self.local_store is not None:
                await self._mirror_local(key, payload)
        return payload

    async def _recover_from_local(self, key: StorageKey, error: SyncError) -> Any:
        local = await self.local_store.get(key) if self.local_store is not None else None
        if local is None:
            raise error

        if key in self._saves_in_flight:
            logger.info(f"Serving {key.data_type} from local storage, a save is already under way")
            return local
        logger.info(f"Serving {key.data_type} from local storage, scheduling write-back")
        self._schedule_write_back(key, local)
        return local

    def _schedule_write_back(self, key: StorageKey, data: Any) -> "asyncio.Task[Any]":
        generation = self._generation.get(key, 0)
        task = asyncio.ensure_future(self._write_back(key, data, generation))
        self._background.add(task)
        self._write_backs[key] = task
        task.add_done_callback(lambda t, k=key: self._write_back_done(k, t))
        return task

    def _write_back_done(self, key: StorageKey, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if self._write_backs.get(key) is task:
            del self._write_backs[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            logger.info(f"Write-back of {key.data_type} completed")
            return
        logger.error(f"Write-back of {key.data_type} failed: {exc!r}")
        if self.on_write_back_error is not None:
            try:
                self.on_write_back_error(key, exc)
            except Exception:
                logger.exception("on_write_back_error hook raised")

    # -- writes --------------------------------------------------------------

    async def save(self, identity: str, data_type: str, data: Any) -> Any:
        """Persist ``data`` for the key, retrying transient failures.

        Returns the server acknowledgement; raises the last error once
        attempts are exhausted.
        """
        if data is None:
            raise NoDataError("No data provided for saving")
        key = StorageKey.build(identity, data_type)
        self._invalidate_key(key)
        write_back = self._write_backs.get(key)
        if write_back is not None and not write_back.done():
            logger.info(f"Cancelling write-back of {key.data_type}, superseded by a new save")
            write_back.cancel()

        self._saves_in_flight[key] = self._saves_in_flight.get(key, 0) + 1
        try:
            if self.local_store is not None:
                await self._mirror_local(key, data)
            body = {"mobile": key.identity, "action": ACTION_SAVE, "dataType": key.data_type, "data": data}
            return await self._post_save(key, lambda: self.transport.post(body))
        finally:
            remaining = self._saves_in_flight.pop(key) - 1
            if remaining:
                self._saves_in_flight[key] = remaining
            # Reads that overlapped the write may have seen the old record
            self._invalidate_key(key)

    async def _write_back(self, key: StorageKey, data: Any, generation: int) -> Any:
        body = {"mobile": key.identity, "action": ACTION_SAVE, "dataType": key.data_type, "data": data}

        async def post_unless_superseded() -> Any:
            if self._generation.get(key, 0) != generation:
                logger.info(f"Write-back of {key.data_type} dropped, a newer save exists")
                return None
            return await self.transport.post(body)

        return await self._post_save(key, post_unless_superseded)

    async def _post_save(self, key: StorageKey, operation: Callable[[], Awaitable[Any]]) -> Any:
        return await retry_async(
            operation,
            attempts=self.save_attempts,
            base_delay=self.retry_base_delay,
            timeout=self.request_timeout,
            sleep=self._sleep,
            label=f"save {key.data_type}",
        )

    async def throttled_save(self, identity: str, data_type: str, data: Any) -> Any:
        """Coalesce bursts of saves to one key; the latest data always lands."""
        if data is None:
            raise NoDataError("No data provided for saving")
        key = StorageKey.build(identity, data_type)
        throttle = self._throttles.get(key)
        if throttle is None:
            throttle = Throttle(self.save, self.throttle_window)
            self._throttles[key] = throttle
        return await throttle(identity, data_type, data)

    def _invalidate_key(self, key: StorageKey) -> None:
        self._cache.invalidate(lambda k: k[0] == key)
        # Later fetches must not join or cache a read that started before this point
        self._generation[key] = self._generation.get(key, 0) + 1
        self._pending.pop(key, None)

    async def _mirror_local(self, key: StorageKey, data: Any) -> None:
        try:
            await self.local_store.put(key, data)
        except OSError as e:
            logger.warning(f"Could not update local copy of {key.data_type}: {e}")

    # -- cache control -------------------------------------------------------

    def clear_cache(self, identity: str) -> int:
        """Drop cached reads for one identity. Returns the number of entries removed."""
        digits = StorageKey.build(identity).identity
        return self._cache.invalidate(lambda k: k[0].identity == digits)

    def clear_all_cache(self) -> None:
        self._cache.clear()

    # -- lifecycle -----------------------------------------------------------

    @property
    def pending_reads(self) -> int:
        return len(self._pending)

    async def wait_for_write_backs(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        for throttle in list(self._throttles.values()):
            await throttle.flush()
        await self.wait_for_write_backs()
        await self.transport.aclose()

    async def __aenter__(self) -> "SyncClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
