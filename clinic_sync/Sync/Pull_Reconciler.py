# Pull_Reconciler.py
# Description: Fetches server-side changes and merges them into the local store (server wins over synced records).
#
# Imports
import logging
from typing import Callable, Dict, Optional
#
# Local Imports
from clinic_sync.clinic_api.client import ClinicAPIClient
from clinic_sync.clinic_api.exceptions import ClinicAPIError
from clinic_sync.clinic_api.schemas import ChangesPage
from clinic_sync.Constants import META_LAST_SYNC_TIMESTAMP
from clinic_sync.DB.Sync_Store_DB import SyncStoreDB, SyncStoreDBError, SYNC_STATUS_PENDING, SYNC_STATUS_SYNCED, utc_now_iso
from clinic_sync.Metrics.metrics_logger import timeit
from clinic_sync.Sync.Entity_Registry import EntityDescriptor, EntityRegistry
from clinic_sync.Sync.Read_Cache import ReadCache
from clinic_sync.Sync.Sync_Models import EntityPullResult, PullResult
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


class PullReconciler:
    """
    Pulls every entity type changed since `last_sync_timestamp`.

    All pages are fetched before anything is written; the merge and the timestamp
    advance happen in one transaction. Any failure leaves the store and the
    timestamp untouched and is reported in the returned `PullResult`.
    """

    def __init__(self, store: SyncStoreDB, api: ClinicAPIClient, registry: EntityRegistry,
                 cache: Optional[ReadCache] = None, now: Callable[[], str] = utc_now_iso):
        self.store = store
        self.api = api
        self.registry = registry
        self.cache = cache
        self.now = now

    @property
    def last_sync_timestamp(self) -> Optional[str]:
        return self.store.get_meta(META_LAST_SYNC_TIMESTAMP)

    async def _fetch_all(self, since: Optional[str]) -> Dict[str, ChangesPage]:
        pages: Dict[str, ChangesPage] = {}
        for descriptor in self.registry:
            pages[descriptor.name] = await self.api.list_records(descriptor.endpoint, since=since)
            logger.debug(f"Pulled {len(pages[descriptor.name].items)} {descriptor.name} record(s) since {since}")
        return pages

    def _merge(self, descriptor: EntityDescriptor, page: ChangesPage) -> EntityPullResult:
        result = EntityPullResult(entity=descriptor.name)
        for record in page.items:
            if not isinstance(record, dict) or record.get("id") in (None, ""):
                logger.warning(f"Ignoring pulled {descriptor.name} record without an id: {record!r}")
                continue
            record_id = str(record["id"])
            local = self.store.get_record(descriptor.table, record_id)
            if local is not None and local["sync_status"] == SYNC_STATUS_PENDING:
                result.skipped_pending += 1
                continue
            self.store.save_record(descriptor.table, record_id, record, sync_status=SYNC_STATUS_SYNCED)
            result.updated += 1
        for record_id in page.deleted:
            local = self.store.get_record(descriptor.table, record_id)
            if local is None:
                continue
            if local["sync_status"] == SYNC_STATUS_PENDING:
                result.skipped_pending += 1
                continue
            self.store.purge_record(descriptor.table, record_id)
            result.deleted += 1
        return result

    @staticmethod
    def _next_timestamp(pages: Dict[str, ChangesPage], fallback: str) -> str:
        stamps = [p.server_timestamp for p in pages.values() if p.server_timestamp]
        return min(stamps) if stamps else fallback

    async def _run(self, since: Optional[str], replace: bool) -> PullResult:
        started_at = self.now()
        try:
            pages = await self._fetch_all(since)
        except ClinicAPIError as e:
            logger.warning(f"Pull failed, local data left unchanged: {e}")
            return PullResult(ok=False, error=str(e))

        result = PullResult()
        try:
            with self.store.transaction():
                for descriptor in self.registry:
                    if replace:
                        self.store.clear_table(descriptor.table, synced_only=True)
                    result.entities[descriptor.name] = self._merge(descriptor, pages[descriptor.name])
                result.server_timestamp = self._next_timestamp(pages, started_at)
                self.store.set_meta(META_LAST_SYNC_TIMESTAMP, result.server_timestamp)
        except SyncStoreDBError as e:
            logger.error(f"Pull merge failed and was rolled back: {e}", exc_info=True)
            return PullResult(ok=False, error=str(e))

        if self.cache is not None:
            self.cache.invalidate()
        logger.info(f"Pull complete: {result.updated} updated, {result.deleted} deleted, "
                    f"next since={result.server_timestamp}")
        return result

    @timeit(metric_name="sync_pull_duration_seconds")
    async def pull(self) -> PullResult:
        return await self._run(self.last_sync_timestamp, replace=False)

    async def download_all(self) -> PullResult:
        """Initial (or repair) download: replaces every synced record, keeps pending ones."""
        return await self._run(None, replace=True)

#
# End of Pull_Reconciler.py
#######################################################################################################################
