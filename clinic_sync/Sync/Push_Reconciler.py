# Push_Reconciler.py
# Description: Drains the sync queue against the server: creates with temp-id remapping, conflict-checked updates, deletes.
#
# Imports
import logging
from typing import Any, Callable, Dict, Optional
#
# Local Imports
from clinic_sync.clinic_api.client import ClinicAPIClient
from clinic_sync.clinic_api.exceptions import ClinicAPIError, APINotFoundError
from clinic_sync.Constants import META_LAST_PUSH_AT
from clinic_sync.DB.Sync_Store_DB import (
    SyncStoreDB, SyncStoreDBError, SYNC_STATUS_PENDING, SYNC_STATUS_SYNCED, utc_now_iso,
)
from clinic_sync.Metrics.metrics_logger import timeit
from clinic_sync.Sync.Conflict_Ledger import ConflictLedger
from clinic_sync.Sync.Entity_Registry import EntityDescriptor, EntityRegistry, unresolved_reference
from clinic_sync.Sync.Read_Cache import ReadCache
from clinic_sync.Sync.Sync_Models import EntityPushResult, ItemResult, SyncConflict, SyncQueueItem
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


def diverging_fields(patch: Dict[str, Any], base: Dict[str, Any], remote: Dict[str, Any]) -> list:
    """
    Fields the server changed behind the client's back: the server value differs from
    what the client last saw (`base`) and from what the client wants to write.
    Fields without a recorded base value are not checked.
    """
    fields = []
    for key, wanted in patch.items():
        if key not in base:
            continue
        server_value = remote.get(key)
        if server_value != base[key] and server_value != wanted:
            fields.append(key)
    return fields


class PushReconciler:
    """
    Sends queued mutations to the server, oldest first, entity types in registry order.

    Each item yields its own outcome; no single failure aborts the batch. A stop
    request (`request_stop()`) is honoured between items.
    """

    def __init__(self, store: SyncStoreDB, api: ClinicAPIClient, registry: EntityRegistry,
                 ledger: ConflictLedger, cache: Optional[ReadCache] = None,
                 now: Callable[[], str] = utc_now_iso):
        self.store = store
        self.api = api
        self.registry = registry
        self.ledger = ledger
        self.cache = cache
        self.now = now
        self._stop_requested = False

    def request_stop(self):
        self._stop_requested = True

    def reset_stop(self):
        self._stop_requested = False

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @timeit(metric_name="sync_push_duration_seconds")
    async def push_all(self) -> Dict[str, EntityPushResult]:
        """Stop requests persist until `reset_stop()`, which the orchestrator calls when a cycle begins."""
        results: Dict[str, EntityPushResult] = {}
        for descriptor in self.registry:
            if self._stop_requested:
                logger.info(f"Push stopped before {descriptor.name}")
                break
            results[descriptor.name] = await self.push_entity(descriptor)
        self.store.set_meta(META_LAST_PUSH_AT, self.now())
        return results

    async def push_entity(self, descriptor: EntityDescriptor) -> EntityPushResult:
        result = EntityPushResult(entity=descriptor.name)
        snapshot = self.store.get_queue_items(descriptor.name)
        if not snapshot:
            return result
        logger.info(f"Pushing {len(snapshot)} queued {descriptor.name} item(s)")

        for row in snapshot:
            if self._stop_requested:
                break
            current = self.store.get_queue_item(row["id"])
            if current is None:
                continue
            item = SyncQueueItem(**current)
            if not item.retryable or self.ledger.holds_item(item.id):
                result.add(ItemResult(item_id=item.id, operation=item.operation, entity_id=item.entity_id,
                                      outcome="skipped", error=item.last_error))
                continue
            try:
                item_result = await self._push_item(descriptor, item)
            except SyncStoreDBError as e:
                logger.error(f"Local store error while pushing {descriptor.name} item {item.id}: {e}", exc_info=True)
                item_result = ItemResult(item_id=item.id, operation=item.operation, entity_id=item.entity_id,
                                         outcome="error", error=str(e))
            result.add(item_result)

        if self.cache is not None:
            self.cache.invalidate(descriptor.name)
        logger.info(f"Push {descriptor.name}: {result.stats.success} ok, {result.stats.conflicts} conflict(s), "
                    f"{result.stats.errors} error(s), {result.stats.deferred} deferred")
        return result

    # --- Per-item handling ---
    async def _push_item(self, descriptor: EntityDescriptor, item: SyncQueueItem) -> ItemResult:
        if item.operation in ("create", "update"):
            unresolved = unresolved_reference(descriptor, item.data, self.store.get_record, self.registry)
            if unresolved is not None:
                logger.info(f"Deferring {descriptor.name} {item.operation} {item.entity_id}: "
                            f"'{unresolved}' still points at an unconfirmed record")
                return ItemResult(item_id=item.id, operation=item.operation, entity_id=item.entity_id,
                                  outcome="deferred")
        if item.operation == "create":
            return await self._push_create(descriptor, item)
        if item.operation == "update":
            return await self._push_update(descriptor, item)
        return await self._push_delete(descriptor, item)

    def _fail(self, item: SyncQueueItem, error: ClinicAPIError) -> ItemResult:
        retryable = error.retryable
        self.store.record_queue_failure(item.id, str(error), retryable=retryable)
        if retryable:
            logger.warning(f"{item.entity} {item.operation} {item.entity_id} failed, will retry: {error}")
        else:
            logger.error(f"{item.entity} {item.operation} {item.entity_id} rejected by the server, not retrying: {error}")
        return ItemResult(item_id=item.id, operation=item.operation, entity_id=item.entity_id,
                          outcome="error", error=str(error))

    async def _push_create(self, descriptor: EntityDescriptor, item: SyncQueueItem) -> ItemResult:
        temp_id = item.entity_id
        sent = dict(item.data or {})
        try:
            server_record = await self.api.create_record(descriptor.endpoint, descriptor.serializer(sent),
                                                         idempotency_key=temp_id)
        except ClinicAPIError as e:
            return self._fail(item, e)

        server_id = str(server_record["id"])
        with self.store.transaction():
            current = self.store.get_queue_item(item.id)
            self.store.delete_queue_item(item.id)
            local = self.store.get_record(descriptor.table, temp_id)
            if local is None:
                # Discarded locally while the create was in flight.
                self.store.save_record(descriptor.table, server_id, server_record, sync_status=SYNC_STATUS_PENDING,
                                       is_deleted=True, deleted_at=self.now())
                self.store.enqueue(descriptor.name, "delete", server_id, None)
                logger.info(f"{descriptor.name} {temp_id} was discarded during push; queued delete of {server_id}")
            else:
                self.store.rekey_record(descriptor.table, temp_id, server_id, server_record)
                self.store.replace_id_references(temp_id, server_id)
                later = (current or {}).get("data") or {}
                extra = {k: v for k, v in later.items() if sent.get(k) != v}
                if extra:
                    self.store.enqueue(descriptor.name, "update", server_id, extra,
                                       {k: server_record.get(k) for k in extra})
                    self.store.save_record(descriptor.table, server_id, {**server_record, **extra},
                                           sync_status=SYNC_STATUS_PENDING)
        logger.info(f"Confirmed {descriptor.name} {temp_id} as {server_id}")
        return ItemResult(item_id=item.id, operation="create", entity_id=temp_id, outcome="success",
                          server_id=server_id)

    async def _push_update(self, descriptor: EntityDescriptor, item: SyncQueueItem) -> ItemResult:
        patch = dict(item.data or {})
        try:
            remote = await self.api.get_record(descriptor.endpoint, item.entity_id)
        except ClinicAPIError as e:
            return self._fail(item, e)

        fields = diverging_fields(patch, item.base or {}, remote)
        if fields:
            local = self.store.get_record(descriptor.table, item.entity_id)
            self.ledger.add(SyncConflict(
                ref=str(item.id), operation_id=item.id, entity=descriptor.name, entity_id=item.entity_id,
                local=local["data"] if local else patch, remote=remote, fields=fields, detected_at=self.now(),
            ))
            return ItemResult(item_id=item.id, operation="update", entity_id=item.entity_id, outcome="conflict")

        try:
            updated = await self.api.update_record(descriptor.endpoint, item.entity_id, descriptor.serializer(patch))
        except ClinicAPIError as e:
            return self._fail(item, e)
        server_record = updated if updated and "id" in updated else {**remote, **patch}

        with self.store.transaction():
            current = self.store.get_queue_item(item.id)
            if current is None:
                return ItemResult(item_id=item.id, operation="update", entity_id=item.entity_id, outcome="success")
            later = current["data"] or {}
            extra = {k: v for k, v in later.items() if patch.get(k) != v}
            if extra:
                self.store.reset_queue_item(item.id, extra, {k: server_record.get(k) for k in extra})
                self.store.save_record(descriptor.table, item.entity_id, {**server_record, **extra},
                                       sync_status=SYNC_STATUS_PENDING)
            else:
                self.store.delete_queue_item(item.id)
                still_queued = any(i["entity_id"] == item.entity_id for i in self.store.get_queue_items(descriptor.name))
                local = self.store.get_record(descriptor.table, item.entity_id)
                if local is not None and not local["is_deleted"]:
                    self.store.save_record(descriptor.table, item.entity_id, server_record,
                                           sync_status=SYNC_STATUS_PENDING if still_queued else SYNC_STATUS_SYNCED)
        return ItemResult(item_id=item.id, operation="update", entity_id=item.entity_id, outcome="success")

    async def _push_delete(self, descriptor: EntityDescriptor, item: SyncQueueItem) -> ItemResult:
        try:
            await self.api.delete_record(descriptor.endpoint, item.entity_id)
        except APINotFoundError:
            logger.info(f"{descriptor.name} {item.entity_id} already absent on the server; purging locally")
        except ClinicAPIError as e:
            return self._fail(item, e)
        with self.store.transaction():
            self.store.purge_record(descriptor.table, item.entity_id)
            self.store.delete_queue_item(item.id)
        self.ledger.discard_for(descriptor.name, item.entity_id)
        return ItemResult(item_id=item.id, operation="delete", entity_id=item.entity_id, outcome="success")

#
# End of Push_Reconciler.py
#######################################################################################################################
