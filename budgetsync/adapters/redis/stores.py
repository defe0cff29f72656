"""Redis Store Implementations."""
from typing import Optional
import logging

from redis.exceptions import RedisError

from budgetsync.adapters.redis.client import record_key
from budgetsync.domain.interfaces import RecordStore, StorageKey
from budgetsync.errors import StoreError

logger = logging.getLogger(__name__)


class RedisRecordStore(RecordStore):
    """SET/GET are atomic per key; durability follows the server's persistence config."""

    def __init__(self, redis_client):
        self.redis = redis_client

    async def get(self, key: StorageKey) -> Optional[str]:
        try:
            return await self.redis.get(record_key(key.storage_id))
        except RedisError as e:
            logger.error(f"Redis read failed for {key.data_type}: {e}")
            raise StoreError("Failed to read record") from e

    async def put(self, key: StorageKey, record: str) -> None:
        try:
            ok = await self.redis.set(record_key(key.storage_id), record)
        except RedisError as e:
            logger.error(f"Redis write failed for {key.data_type}: {e}")
            raise StoreError("Failed to write record") from e
        if not ok:
            raise StoreError("Redis rejected the write")

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError:
            return False
