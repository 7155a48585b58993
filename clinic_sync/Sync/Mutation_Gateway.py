# Mutation_Gateway.py
# Description: Per-entity create/update/delete entry point that either calls the server or writes locally and queues.
#
# Imports
import logging
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING
#
# Local Imports
from clinic_sync.clinic_api.client import ClinicAPIClient
from clinic_sync.clinic_api.exceptions import ClinicAPIError, APINotFoundError
from clinic_sync.DB.Sync_Store_DB import (
    SyncStoreDB, RecordNotFoundError, InputError, SYNC_STATUS_PENDING, SYNC_STATUS_SYNCED,
)
from clinic_sync.Sync.Connectivity_Monitor import ConnectivityContext
from clinic_sync.Sync.Entity_Registry import EntityDescriptor, EntityRegistry, generate_temp_id, unresolved_reference
from clinic_sync.Sync.Read_Cache import ReadCache
from clinic_sync.Sync.Sync_Models import LocalRecord

if TYPE_CHECKING:
    from clinic_sync.Sync.Conflict_Ledger import ConflictLedger
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


class MutationGateway:
    """
    The only write path the UI uses for one entity type.

    Online, a mutation goes straight to the server and the answer is written through
    to the local store as `synced`. Offline (or when the server call fails with a
    retryable error) the mutation is applied to the local store and recorded in the
    sync queue in one transaction. Records that only exist locally (temp id) and
    records with queued mutations always take the local path so queue order is kept,
    and so does any payload that still references an unconfirmed (temp id) record.
    """

    def __init__(self, descriptor: EntityDescriptor, store: SyncStoreDB, api: ClinicAPIClient,
                 connectivity: ConnectivityContext, cache: Optional[ReadCache] = None,
                 ledger: Optional["ConflictLedger"] = None,
                 registry: Optional[EntityRegistry] = None,
                 temp_id_factory: Callable[[], str] = generate_temp_id):
        self.descriptor = descriptor
        self.store = store
        self.api = api
        self.connectivity = connectivity
        self.cache = cache if cache is not None else ReadCache()
        self.ledger = ledger
        self.registry = registry
        self.temp_id_factory = temp_id_factory

    @property
    def entity(self) -> str:
        return self.descriptor.name

    @property
    def table(self) -> str:
        return self.descriptor.table

    # --- Reads ---
    def get(self, record_id: str) -> Optional[LocalRecord]:
        def load():
            row = self.store.get_record(self.table, record_id, include_deleted=False)
            return LocalRecord.from_row(self.entity, row) if row else None
        return self.cache.get_or_load(self.entity, ("get", record_id), load)

    def list(self) -> List[LocalRecord]:
        def load():
            return [LocalRecord.from_row(self.entity, row) for row in self.store.list_records(self.table)]
        return self.cache.get_or_load(self.entity, "list", load)

    # --- Helpers ---
    def _local(self, record_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get_record(self.table, record_id)

    def _has_queued_items(self, record_id: str) -> bool:
        return any(item["entity_id"] == record_id for item in self.store.get_queue_items(self.entity))

    def _references_unconfirmed(self, data: Dict[str, Any]) -> bool:
        ref_field = unresolved_reference(self.descriptor, data, self.store.get_record, self.registry)
        if ref_field is None:
            return False
        logger.info(f"{self.entity} field '{ref_field}' points at an unconfirmed record; using the sync queue")
        return True

    def _write_through(self, server_record: Dict[str, Any]) -> LocalRecord:
        record_id = str(server_record["id"])
        row = self.store.save_record(self.table, record_id, server_record, sync_status=SYNC_STATUS_SYNCED)
        return LocalRecord.from_row(self.entity, row)

    def _changed(self):
        self.cache.invalidate(self.entity)

    def _drop_conflicts(self, record_id: str):
        if self.ledger is not None:
            self.ledger.discard_for(self.entity, record_id)

    @staticmethod
    def _should_fall_back(error: ClinicAPIError) -> bool:
        return error.retryable

    # --- create ---
    async def create(self, payload: Dict[str, Any]) -> LocalRecord:
        if not isinstance(payload, dict):
            raise InputError("Payload must be a mapping.")
        # Sent as the idempotency key and reused by the queued create if the direct call falls back.
        temp_id = self.temp_id_factory()
        if self.connectivity.is_online and not self._references_unconfirmed(payload):
            try:
                server_record = await self.api.create_record(self.descriptor.endpoint, self.descriptor.serializer(payload),
                                                             idempotency_key=temp_id)
            except ClinicAPIError as e:
                if not self._should_fall_back(e):
                    raise
                logger.warning(f"Direct create of {self.entity} failed ({e}); queueing it for later sync.")
            else:
                record = self._write_through(server_record)
                self._changed()
                logger.info(f"Created {self.entity} {record.id} on the server")
                return record
        return self._create_offline(payload, temp_id)

    def _create_offline(self, payload: Dict[str, Any], temp_id: Optional[str] = None) -> LocalRecord:
        temp_id = temp_id or self.temp_id_factory()
        data = {k: v for k, v in payload.items() if k != "id"}
        with self.store.transaction():
            row = self.store.save_record(self.table, temp_id, data, sync_status=SYNC_STATUS_PENDING, temp_id=temp_id)
            self.store.enqueue(self.entity, "create", temp_id, data)
        self._changed()
        logger.info(f"Created {self.entity} {temp_id} locally (pending sync)")
        return LocalRecord.from_row(self.entity, row)

    # --- update ---
    async def update(self, record_id: str, patch: Dict[str, Any]) -> LocalRecord:
        if not isinstance(patch, dict) or not patch:
            raise InputError("Patch must be a non-empty mapping.")
        patch = {k: v for k, v in patch.items() if k != "id"}
        existing = self._local(record_id)
        direct = (self.connectivity.is_online
                  and not (existing and existing["temp_id"])
                  and not self._has_queued_items(record_id)
                  and not self._references_unconfirmed(patch))
        if direct:
            try:
                server_record = await self.api.update_record(self.descriptor.endpoint, record_id, self.descriptor.serializer(patch))
            except ClinicAPIError as e:
                if not self._should_fall_back(e) or existing is None:
                    raise
                logger.warning(f"Direct update of {self.entity} {record_id} failed ({e}); queueing it for later sync.")
            else:
                if not server_record or "id" not in server_record:
                    server_record = {**(existing["data"] if existing else {}), **patch, "id": record_id}
                record = self._write_through(server_record)
                self._changed()
                return record
        return self._update_offline(record_id, patch)

    def _update_offline(self, record_id: str, patch: Dict[str, Any]) -> LocalRecord:
        with self.store.transaction():
            existing = self._local(record_id)
            if existing is None or existing["is_deleted"]:
                raise RecordNotFoundError(f"{self.entity} not found", entity=self.entity, entity_id=record_id)
            merged = {**existing["data"], **patch}

            if existing["temp_id"]:
                create_item = self.store.find_queue_item(self.entity, record_id, "create")
                if create_item is not None:
                    self.store.reset_queue_item(create_item["id"], {**(create_item["data"] or {}), **patch})
                else:
                    logger.warning(f"No queued create for local {self.entity} {record_id}; re-queueing it.")
                    self.store.enqueue(self.entity, "create", record_id, {k: v for k, v in merged.items() if k != "id"})
            else:
                base = {k: existing["data"].get(k) for k in patch}
                update_item = self.store.find_queue_item(self.entity, record_id, "update")
                if update_item is not None:
                    folded_base = dict(update_item["base"] or {})
                    for key, value in base.items():
                        folded_base.setdefault(key, value)
                    self.store.reset_queue_item(update_item["id"], {**(update_item["data"] or {}), **patch}, folded_base)
                else:
                    self.store.enqueue(self.entity, "update", record_id, dict(patch), base)

            row = self.store.save_record(self.table, record_id, merged, sync_status=SYNC_STATUS_PENDING,
                                         temp_id=existing["temp_id"])
        self._changed()
        logger.info(f"Updated {self.entity} {record_id} locally (pending sync)")
        return LocalRecord.from_row(self.entity, row)

    # --- delete ---
    async def delete(self, record_id: str) -> Optional[LocalRecord]:
        """
        Deletes a record. Returns the soft-deleted local record when the delete is
        queued, or None when the record is gone locally.
        """
        existing = self._local(record_id)
        if self.connectivity.is_online and not (existing and existing["temp_id"]):
            try:
                await self.api.delete_record(self.descriptor.endpoint, record_id)
            except APINotFoundError:
                logger.info(f"{self.entity} {record_id} was already gone on the server")
            except ClinicAPIError as e:
                if not self._should_fall_back(e) or existing is None:
                    raise
                logger.warning(f"Direct delete of {self.entity} {record_id} failed ({e}); queueing it for later sync.")
                return self._delete_offline(record_id)
            with self.store.transaction():
                self.store.purge_record(self.table, record_id)
                self.store.delete_queue_items_for(self.entity, record_id)
            self._drop_conflicts(record_id)
            self._changed()
            return None
        return self._delete_offline(record_id)

    def _delete_offline(self, record_id: str) -> Optional[LocalRecord]:
        with self.store.transaction():
            existing = self._local(record_id)
            if existing is None or existing["is_deleted"]:
                raise RecordNotFoundError(f"{self.entity} not found", entity=self.entity, entity_id=record_id)
            if existing["temp_id"]:
                self.store.purge_record(self.table, record_id)
                dropped = self.store.delete_queue_items_for(self.entity, record_id)
                result = None
                logger.info(f"Discarded never-synced {self.entity} {record_id} ({dropped} queued item(s) dropped)")
            else:
                self.store.delete_queue_items_for(self.entity, record_id, ["update"])
                row = self.store.mark_deleted(self.table, record_id)
                if self.store.find_queue_item(self.entity, record_id, "delete") is None:
                    self.store.enqueue(self.entity, "delete", record_id, None)
                result = LocalRecord.from_row(self.entity, row)
                logger.info(f"Soft-deleted {self.entity} {record_id} locally (pending sync)")
        self._drop_conflicts(record_id)
        self._changed()
        return result

#
# End of Mutation_Gateway.py
#######################################################################################################################
