"""SqlRecordStore - database-backed durable storage for encrypted records."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from budgetsync.adapters.sql.models import Base, UserRecord
from budgetsync.domain.interfaces import RecordStore, StorageKey
from budgetsync.errors import StoreError

logger = logging.getLogger(__name__)


def create_record_engine(database_url: str) -> Engine:
    engine = create_engine(database_url, pool_pre_ping=True)
    Base.metadata.create_all(engine)
    logger.info("Initialized record database engine")
    return engine


class SqlRecordStore(RecordStore):
    """Each put is a single transaction, so a record is either fully replaced or untouched."""

    def __init__(self, engine: Engine):
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    def _get(self, key: StorageKey) -> Optional[str]:
        with self._sessions() as db:
            row = db.execute(
                select(UserRecord.record).where(
                    UserRecord.identity == key.identity,
                    UserRecord.data_type == key.data_type,
                )
            ).scalar_one_or_none()
            return row

    def _put(self, key: StorageKey, record: str) -> None:
        db: Session
        with self._sessions() as db:
            with db.begin():
                existing = db.get(UserRecord, (key.identity, key.data_type))
                if existing:
                    existing.record = record
                    existing.updated_at = datetime.now(timezone.utc)
                else:
                    db.add(UserRecord(identity=key.identity, data_type=key.data_type, record=record))

    async def get(self, key: StorageKey) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._get, key)
        except SQLAlchemyError as e:
            logger.error(f"SQL read failed for {key.data_type}: {e}")
            raise StoreError("Failed to read record") from e

    async def put(self, key: StorageKey, record: str) -> None:
        try:
            await asyncio.to_thread(self._put, key, record)
        except SQLAlchemyError as e:
            logger.error(f"SQL write failed for {key.data_type}: {e}")
            raise StoreError("Failed to write record") from e

    async def ping(self) -> bool:
        def _ping() -> bool:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        try:
            return await asyncio.to_thread(_ping)
        except SQLAlchemyError as e:
            logger.error(f"Health check failed (sql): {e}")
            return False

    async def close(self) -> None:
        self._engine.dispose()
