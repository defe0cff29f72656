"""One-time upload of device-local data to the server."""
import logging
from dataclasses import dataclass, field
from typing import Dict, List

from budgetsync.client.local_store import LocalStore, migration_flag_key
from budgetsync.client.sync_client import SyncClient
from budgetsync.domain.interfaces import KNOWN_DATA_TYPES, StorageKey
from budgetsync.errors import SyncError

logger = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    migrated: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: bool = False

    @property
    def complete(self) -> bool:
        return not self.failed


async def is_migrated(local_store: LocalStore, identity: str) -> bool:
    digits = StorageKey.build(identity).identity
    return bool(await local_store.get_item(migration_flag_key(digits)))


async def migrate_local_to_server(client: SyncClient, identity: str, force: bool = False) -> MigrationReport:
    """Save every locally held data type for ``identity`` through ``client``.

    Profile first, then the known data types, then financial-year archives.
    A failing item is recorded and the rest continue. The completion flag is
    set only when nothing failed.
    """
    local_store = client.local_store
    if local_store is None:
        raise ValueError("client has no local store to migrate from")

    digits = StorageKey.build(identity).identity
    report = MigrationReport()
    if not force and await is_migrated(local_store, identity):
        report.skipped = True
        return report

    data_types = list(KNOWN_DATA_TYPES) + await local_store.fy_archive_types(digits)
    for data_type in data_types:
        data = await local_store.get(StorageKey(digits, data_type))
        if data is None:
            continue
        try:
            await client.save(identity, data_type, data)
        except SyncError as e:
            logger.error(f"Error migrating {data_type}: {e.code}")
            report.failed[data_type] = e.code
            continue
        report.migrated.append(data_type)

    if report.complete:
        await local_store.set_item(migration_flag_key(digits), True)
    logger.info(f"Migration finished: {len(report.migrated)} migrated, {len(report.failed)} failed")
    return report
