"""Trailing-edge throttle for coroutine functions."""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Throttle(Generic[T]):
    """Run ``func`` at most once per ``window`` seconds without losing the last call.

    A call arriving ``window`` or more after the last executed call runs
    immediately. A call arriving sooner is deferred until the window
    elapses; every caller deferred into the same slot awaits the same result
    and the run uses the most recent arguments. Nothing is dropped: if any
    call happened, a run with the latest arguments follows.
    """

    def __init__(
        self,
        func: Callable[..., Awaitable[T]],
        window: float,
        *,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._func = func
        self.window = window
        self._clock = clock
        self._last_ran: Optional[float] = None
        self._pending_args: Optional[Tuple[Tuple[Any, ...], Dict[str, Any]]] = None
        self._pending_future: Optional["asyncio.Future[T]"] = None
        self._release_task: Optional["asyncio.Task[None]"] = None

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    @property
    def pending(self) -> bool:
        return self._pending_future is not None

    async def __call__(self, *args: Any, **kwargs: Any) -> T:
        if self._pending_future is not None:
            # A deferred run is scheduled; it will pick up these arguments
            self._pending_args = (args, kwargs)
            return await asyncio.shield(self._pending_future)

        now = self._now()
        if self._last_ran is None or now - self._last_ran >= self.window:
            self._last_ran = now
            return await self._func(*args, **kwargs)

        loop = asyncio.get_running_loop()
        self._pending_args = (args, kwargs)
        self._pending_future = loop.create_future()
        delay = self._last_ran + self.window - now
        future = self._pending_future
        self._release_task = loop.create_task(self._release_after(delay))
        return await asyncio.shield(future)

    async def _release_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._release()

    async def _release(self) -> None:
        future, call = self._pending_future, self._pending_args
        self._pending_future = None
        self._pending_args = None
        self._release_task = None
        if future is None or call is None:
            return

        self._last_ran = self._now()
        args, kwargs = call
        try:
            result = await self._func(*args, **kwargs)
        except Exception as e:
            if not future.done():
                future.set_exception(e)
            # Mark retrieved so an abandoned future does not warn at GC
            future.exception()
        else:
            if not future.done():
                future.set_result(result)

    async def flush(self) -> None:
        """Run a deferred call now instead of waiting for the window."""
        task = self._release_task
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await self._release()
