"""Device-local storage used as the fallback copy of synced data.

Keys follow the layout the web client kept in browser storage, so data
written there can be imported and migrated unchanged.
"""
import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from budgetsync.domain.interfaces import StorageKey

logger = logging.getLogger(__name__)

FY_ARCHIVE_PREFIX = "fy_archive_"

_LOCAL_KEY_FORMATS = {
    "transactions": "transactions_{id}",
    "monthlyBudget": "budget_{id}",
    "categories": "categories_{id}",
    "archivedMonth": "archive_{id}_last_month",
}


def local_key(key: StorageKey) -> str:
    """Map a StorageKey onto its device-local key."""
    fmt = _LOCAL_KEY_FORMATS.get(key.data_type)
    if fmt:
        return fmt.format(id=key.identity)
    if key.data_type.startswith(FY_ARCHIVE_PREFIX):
        return f"archive_{key.identity}_fy_{key.data_type[len(FY_ARCHIVE_PREFIX):]}"
    return f"{key.data_type}_{key.identity}"


def migration_flag_key(identity: str) -> str:
    return f"migration_complete_{identity}"


class LocalStore(ABC):
    """String-keyed JSON value store on the device."""

    @abstractmethod
    async def get_item(self, name: str) -> Optional[Any]: pass

    @abstractmethod
    async def set_item(self, name: str, value: Any) -> None: pass

    @abstractmethod
    async def remove_item(self, name: str) -> None: pass

    @abstractmethod
    async def keys(self) -> List[str]: pass

    async def get(self, key: StorageKey) -> Optional[Any]:
        return await self.get_item(local_key(key))

    async def put(self, key: StorageKey, value: Any) -> None:
        await self.set_item(local_key(key), value)

    async def remove(self, key: StorageKey) -> None:
        await self.remove_item(local_key(key))

    async def fy_archive_types(self, identity: str) -> List[str]:
        """Data types of every financial-year archive held for the identity."""
        prefix = f"archive_{identity}_fy_"
        return sorted(
            f"{FY_ARCHIVE_PREFIX}{name[len(prefix):]}"
            for name in await self.keys()
            if name.startswith(prefix)
        )


class MemoryLocalStore(LocalStore):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._items: Dict[str, Any] = dict(initial or {})

    async def get_item(self, name: str) -> Optional[Any]:
        return self._items.get(name)

    async def set_item(self, name: str, value: Any) -> None:
        self._items[name] = value

    async def remove_item(self, name: str) -> None:
        self._items.pop(name, None)

    async def keys(self) -> List[str]:
        return list(self._items)


class JsonFileLocalStore(LocalStore):
    """All items in one JSON document, rewritten atomically on change."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._items: Optional[Dict[str, Any]] = None
        self._lock = asyncio.Lock()

    def _load(self) -> Dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            logger.error(f"Local store {self.path} is corrupt, starting empty: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, items: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(items, f, indent=2, ensure_ascii=False)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    async def _items_loaded(self) -> Dict[str, Any]:
        if self._items is None:
            self._items = await asyncio.to_thread(self._load)
        return self._items

    async def get_item(self, name: str) -> Optional[Any]:
        return (await self._items_loaded()).get(name)

    async def set_item(self, name: str, value: Any) -> None:
        async with self._lock:
            items = await self._items_loaded()
            items[name] = value
            await asyncio.to_thread(self._dump, dict(items))

    async def remove_item(self, name: str) -> None:
        async with self._lock:
            items = await self._items_loaded()
            if items.pop(name, None) is not None:
                await asyncio.to_thread(self._dump, dict(items))

    async def keys(self) -> List[str]:
        return list(await self._items_loaded())
