# Conflict_Ledger.py
# Description: In-memory ledger of unresolved sync conflicts and their manual resolution.
#
# Imports
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, get_args
#
# Local Imports
from clinic_sync.DB.Sync_Store_DB import SyncStoreDB, SYNC_STATUS_PENDING, SYNC_STATUS_SYNCED
from clinic_sync.Sync.Entity_Registry import EntityRegistry
from clinic_sync.Sync.Read_Cache import ReadCache
from clinic_sync.Sync.Sync_Models import Resolution, SyncConflict
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)

ConflictListener = Callable[[List[SyncConflict]], None]
RESOLUTIONS = get_args(Resolution)


class ConflictNotFoundError(KeyError):
    """Raised when resolving a conflict reference the ledger does not hold."""
    pass


class ConflictLedger:
    """
    Transient, thread-safe collection of conflicts keyed by `ref`.

    Listeners receive the full current list after every change, so a UI can show a
    blocking resolution dialog without polling.
    """

    def __init__(self):
        self._conflicts: Dict[str, SyncConflict] = {}
        self._listeners: List[ConflictListener] = []
        self._lock = threading.RLock()

    def _notify(self):
        with self._lock:
            snapshot = list(self._conflicts.values())
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Conflict listener {listener!r} raised: {e}", exc_info=True)

    def subscribe(self, listener: ConflictListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def add(self, conflict: SyncConflict):
        with self._lock:
            self._conflicts[conflict.ref] = conflict
        logger.warning(f"Conflict on {conflict.entity} {conflict.entity_id}: fields {', '.join(conflict.fields)}")
        self._notify()

    def get(self, ref: str) -> Optional[SyncConflict]:
        with self._lock:
            return self._conflicts.get(ref)

    def list(self) -> List[SyncConflict]:
        with self._lock:
            return list(self._conflicts.values())

    def holds_item(self, item_id: int) -> bool:
        with self._lock:
            return any(c.operation_id == item_id for c in self._conflicts.values())

    def remove(self, ref: str) -> Optional[SyncConflict]:
        with self._lock:
            conflict = self._conflicts.pop(ref, None)
        if conflict is not None:
            self._notify()
        return conflict

    def discard_for(self, entity: str, entity_id: str) -> int:
        """Drops conflicts about one record (its queued update no longer exists)."""
        with self._lock:
            refs = [ref for ref, c in self._conflicts.items() if c.entity == entity and c.entity_id == entity_id]
            for ref in refs:
                del self._conflicts[ref]
        if refs:
            self._notify()
        return len(refs)

    def clear(self) -> int:
        with self._lock:
            count = len(self._conflicts)
            self._conflicts.clear()
        if count:
            logger.info(f"Cleared {count} conflict(s) without resolving them")
            self._notify()
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._conflicts)


class ConflictResolver:
    """Applies client-wins / server-wins decisions to the store and queue."""

    def __init__(self, store: SyncStoreDB, registry: EntityRegistry, ledger: ConflictLedger,
                 cache: Optional[ReadCache] = None):
        self.store = store
        self.registry = registry
        self.ledger = ledger
        self.cache = cache

    def resolve_conflict(self, ref: str, resolution: Resolution) -> SyncConflict:
        """
        server: adopt the remote values for the conflicting fields; other fields of the
        causing queue item stay queued, otherwise the item is dropped and the record synced.
        client: replace the queue item with a fresh update whose expected values are
        the current remote ones, so the next push applies the local value.
        """
        if resolution not in RESOLUTIONS:
            raise ValueError(f"Invalid resolution {resolution!r}; expected one of {RESOLUTIONS}")
        conflict = self.ledger.get(ref)
        if conflict is None:
            raise ConflictNotFoundError(ref)
        descriptor = self.registry.get(conflict.entity)

        with self.store.transaction():
            item = self.store.get_queue_item(conflict.operation_id)
            if resolution == "server":
                # Only the conflicting fields give way; other queued fields stay queued.
                kept: Dict[str, Any] = {}
                if item is not None:
                    kept = {k: v for k, v in (item["data"] or {}).items() if k not in conflict.fields}
                    if kept:
                        kept_base = {k: v for k, v in (item["base"] or {}).items() if k in kept}
                        self.store.reset_queue_item(item["id"], kept, kept_base)
                    else:
                        self.store.delete_queue_item(item["id"])
                still_queued = any(i["entity_id"] == conflict.entity_id
                                   for i in self.store.get_queue_items(conflict.entity))
                existing = self.store.get_record(descriptor.table, conflict.entity_id)
                if existing is not None and not existing["is_deleted"]:
                    self.store.save_record(
                        descriptor.table, conflict.entity_id, {**existing["data"], **conflict.remote, **kept},
                        sync_status=SYNC_STATUS_PENDING if still_queued else SYNC_STATUS_SYNCED)
            else:
                if item is not None and item["data"]:
                    local_patch = dict(item["data"])
                    self.store.delete_queue_item(item["id"])
                else:
                    local_patch = {f: conflict.local.get(f) for f in conflict.fields}
                new_base = {k: conflict.remote.get(k) for k in local_patch}
                self.store.enqueue(conflict.entity, "update", conflict.entity_id, local_patch, new_base)
                self.store.set_sync_status(descriptor.table, conflict.entity_id, SYNC_STATUS_PENDING)

        self.ledger.remove(ref)
        if self.cache is not None:
            self.cache.invalidate(conflict.entity)
        logger.info(f"Resolved conflict {ref} on {conflict.entity} {conflict.entity_id} in favour of the {resolution}")
        return conflict

    def resolve_all(self, resolution: Resolution) -> int:
        if resolution not in RESOLUTIONS:
            raise ValueError(f"Invalid resolution {resolution!r}; expected one of {RESOLUTIONS}")
        resolved = 0
        for conflict in self.ledger.list():
            self.resolve_conflict(conflict.ref, resolution)
            resolved += 1
        return resolved

    def clear_conflicts(self) -> int:
        return self.ledger.clear()

#
# End of Conflict_Ledger.py
#######################################################################################################################
