"""In-memory TTL cache with lazy eviction."""
import time
from typing import Any, Callable, Dict, Generic, Hashable, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)

# Distinguishes "no entry" from a cached falsy payload
MISSING = object()


class TtlCache(Generic[K]):
    """Entries are ``(payload, stored_at)``; valid while ``now - stored_at < ttl``.

    Expired entries are dropped when read. Not thread safe; intended for use
    from a single event loop.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[K, Tuple[Any, float]] = {}

    def get(self, key: K, default: Any = MISSING) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        payload, stored_at = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return default
        return payload

    def set(self, key: K, payload: Any) -> None:
        self._entries[key] = (payload, self._clock())

    def delete(self, key: K) -> bool:
        return self._entries.pop(key, MISSING) is not MISSING

    def invalidate(self, predicate: Callable[[K], bool]) -> int:
        """Remove every entry whose key matches. Returns the number removed."""
        doomed = [k for k in self._entries if predicate(k)]
        for k in doomed:
            del self._entries[k]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not MISSING  # type: ignore[arg-type]
