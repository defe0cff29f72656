"""File-based Record Store.

One file per StorageKey. File names are the SHA-256 of the storage id so
phone numbers never appear on disk in clear and caller-defined data types
cannot escape the data directory.
"""
import asyncio
import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from budgetsync.domain.interfaces import RecordStore, StorageKey
from budgetsync.errors import StoreError

logger = logging.getLogger(__name__)


class FileRecordStore(RecordStore):
    def __init__(self, data_dir: str):
        self.data_dir = Path(data_dir)

    def _path(self, key: StorageKey) -> Path:
        name = hashlib.sha256(key.storage_id.encode("utf-8")).hexdigest()
        return self.data_dir / f"{name}.rec"

    def _read(self, path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="ascii")
        except FileNotFoundError:
            return None

    def _write(self, path: Path, record: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".rec")
        try:
            with os.fdopen(fd, "w", encoding="ascii") as f:
                f.write(record)
                f.flush()
                os.fsync(f.fileno())
            # Atomic on POSIX and Windows
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    async def get(self, key: StorageKey) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._read, self._path(key))
        except OSError as e:
            logger.error(f"File store read failed for {key.data_type}: {e}")
            raise StoreError("Failed to read record") from e

    async def put(self, key: StorageKey, record: str) -> None:
        try:
            await asyncio.to_thread(self._write, self._path(key), record)
        except OSError as e:
            logger.error(f"File store write failed for {key.data_type}: {e}")
            raise StoreError("Failed to write record") from e

    async def ping(self) -> bool:
        return await asyncio.to_thread(self._writable)

    def _writable(self) -> bool:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return os.access(self.data_dir, os.W_OK)
