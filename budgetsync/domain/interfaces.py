"""Domain types and persistence ports."""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from budgetsync.core.cipher import normalize_identity
from budgetsync.errors import InvalidRequestError

DEFAULT_DATA_TYPE = "user"

KNOWN_DATA_TYPES = ("user", "transactions", "monthlyBudget", "categories", "archivedMonth")


@dataclass(frozen=True)
class StorageKey:
    """(normalized identity, data type): the unit of caching and persistence."""
    identity: str
    data_type: str = DEFAULT_DATA_TYPE

    @classmethod
    def build(cls, mobile: Optional[str], data_type: Optional[str] = None) -> "StorageKey":
        digits = normalize_identity(mobile or "")
        if not digits:
            raise InvalidRequestError("Mobile number is required")
        return cls(identity=digits, data_type=data_type or DEFAULT_DATA_TYPE)

    @property
    def storage_id(self) -> str:
        return f"{self.identity}:{self.data_type}"


class RecordStore(ABC):
    """Durable key/value store for EncryptedRecords, one per StorageKey.

    ``put`` overwrites atomically; readers never observe a partial record.
    Failures raise ``StoreError``.
    """

    @abstractmethod
    async def get(self, key: StorageKey) -> Optional[str]: pass

    @abstractmethod
    async def put(self, key: StorageKey, record: str) -> None: pass

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
