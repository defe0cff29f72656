"""Memory Store Implementations (dev and tests; not durable)."""
from typing import Dict, Optional
import logging

from budgetsync.domain.interfaces import RecordStore, StorageKey

logger = logging.getLogger(__name__)


class MemoryRecordStore(RecordStore):
    def __init__(self):
        self._records: Dict[str, str] = {}

    async def get(self, key: StorageKey) -> Optional[str]:
        return self._records.get(key.storage_id)

    async def put(self, key: StorageKey, record: str) -> None:
        self._records[key.storage_id] = record

    def __len__(self) -> int:
        return len(self._records)
