# Sync_Engine.py
# Description: Public surface of the offline sync engine, wiring store, API, connectivity and sync components together.
#
# Imports
import logging
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
#
# 3rd-party Libraries
import httpx
#
# Local Imports
from clinic_sync.clinic_api.client import ClinicAPIClient
from clinic_sync.config import SyncSettings
from clinic_sync.Constants import META_DEVICE_ID, META_LAST_ERROR, META_LAST_SYNC_TIMESTAMP
from clinic_sync.DB.Sync_Store_DB import SyncStoreDB
from clinic_sync.Sync.Conflict_Ledger import ConflictLedger, ConflictListener, ConflictResolver
from clinic_sync.Sync.Connectivity_Monitor import ConnectivityContext, ConnectivityMonitor, OnlineCallback
from clinic_sync.Sync.Entity_Registry import EntityRegistry, default_registry, generate_temp_id
from clinic_sync.Sync.Mutation_Gateway import MutationGateway
from clinic_sync.Sync.Pull_Reconciler import PullReconciler
from clinic_sync.Sync.Push_Reconciler import PushReconciler
from clinic_sync.Sync.Read_Cache import ReadCache
from clinic_sync.Sync.Retention_Sweeper import RetentionSweeper
from clinic_sync.Sync.Sync_Models import FullSyncResult, LocalRecord, Resolution, SyncConflict
from clinic_sync.Sync.Sync_Orchestrator import SyncListener, SyncOrchestrator
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Entry point for the host application.

    Usage:
        engine = SyncEngine.from_settings()
        await engine.start()
        patient = await engine.create("patient", {"nom": "Diallo"})
        await engine.sync_now()
        await engine.close()
    """

    def __init__(self, store: SyncStoreDB, api: ClinicAPIClient, connectivity: ConnectivityContext,
                 registry: Optional[EntityRegistry] = None, settings: Optional[SyncSettings] = None,
                 temp_id_factory: Callable[[], str] = generate_temp_id):
        self.store = store
        self.api = api
        self.connectivity = connectivity
        self.registry = registry or default_registry()
        self.settings = settings or SyncSettings(config={})

        missing = [t for t in self.registry.tables if t not in store.entity_tables]
        if missing:
            raise ValueError(f"Store is missing entity tables: {', '.join(missing)}")

        self.cache = ReadCache()
        self.ledger = ConflictLedger()
        self.gateways: Dict[str, MutationGateway] = {
            d.name: MutationGateway(d, store, api, connectivity, cache=self.cache, ledger=self.ledger,
                                    registry=self.registry, temp_id_factory=temp_id_factory)
            for d in self.registry
        }
        self.resolver = ConflictResolver(store, self.registry, self.ledger, cache=self.cache)
        self.push = PushReconciler(store, api, self.registry, self.ledger, cache=self.cache)
        self.pull = PullReconciler(store, api, self.registry, cache=self.cache)
        self.sweeper = RetentionSweeper(store, max_attempts=self.settings.max_attempts,
                                        max_age_days=self.settings.max_queue_age_days)
        self.orchestrator = SyncOrchestrator(
            store, connectivity, self.push, self.pull, sweeper=self.sweeper, cache=self.cache,
            settle_delay=self.settings.settle_delay, periodic_interval=self.settings.periodic_pull_interval,
        )

    @classmethod
    def from_settings(cls, settings: Optional[SyncSettings] = None, db_path: Optional[Union[str, Path]] = None,
                      registry: Optional[EntityRegistry] = None,
                      transport: Optional[httpx.AsyncBaseTransport] = None) -> "SyncEngine":
        settings = settings or SyncSettings()
        registry = registry or default_registry()
        store = SyncStoreDB(db_path if db_path is not None else settings.db_path, registry.tables)
        api = ClinicAPIClient(settings.api_base_url, token=settings.token, timeout=settings.request_timeout,
                              transport=transport)
        monitor = ConnectivityMonitor(api, health_path=settings.health_path, health_check_timeout=settings.health_check_timeout,
                                      retry_delay=settings.health_check_retry_delay)
        return cls(store, api, monitor, registry=registry, settings=settings)

    # --- Lifecycle ---
    async def start(self):
        """Sweeps the queue, wires automatic triggers and checks the server if the monitor supports it."""
        self.orchestrator.start()
        if isinstance(self.connectivity, ConnectivityMonitor):
            self.connectivity.interface_up()

    async def close(self):
        await self.orchestrator.stop()
        if isinstance(self.connectivity, ConnectivityMonitor):
            await self.connectivity.close()
        await self.api.close()
        self.store.close_connection()

    async def __aenter__(self) -> "SyncEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    # --- Mutations and reads ---
    def gateway(self, entity: str) -> MutationGateway:
        try:
            return self.gateways[entity]
        except KeyError:
            raise KeyError(f"Unknown entity type: {entity!r}") from None

    async def create(self, entity: str, payload: Dict[str, Any]) -> LocalRecord:
        return await self.gateway(entity).create(payload)

    async def update(self, entity: str, record_id: str, patch: Dict[str, Any]) -> LocalRecord:
        return await self.gateway(entity).update(record_id, patch)

    async def delete(self, entity: str, record_id: str) -> Optional[LocalRecord]:
        return await self.gateway(entity).delete(record_id)

    def get(self, entity: str, record_id: str) -> Optional[LocalRecord]:
        return self.gateway(entity).get(record_id)

    def list(self, entity: str) -> List[LocalRecord]:
        return self.gateway(entity).list()

    # --- Sync ---
    async def sync_now(self) -> Optional[FullSyncResult]:
        return await self.orchestrator.full_sync()

    async def pull_now(self) -> Optional[FullSyncResult]:
        return await self.orchestrator.pull_only()

    async def download_all(self) -> Optional[FullSyncResult]:
        return await self.orchestrator.download_all()

    def on_app_foreground(self):
        return self.orchestrator.on_app_foreground()

    def subscribe_sync(self, listener: SyncListener) -> Callable[[], None]:
        return self.orchestrator.subscribe(listener)

    # --- Conflicts ---
    def conflicts(self) -> List[SyncConflict]:
        return self.ledger.list()

    def subscribe_conflicts(self, listener: ConflictListener) -> Callable[[], None]:
        return self.ledger.subscribe(listener)

    def resolve_conflict(self, ref: str, resolution: Resolution) -> SyncConflict:
        return self.resolver.resolve_conflict(ref, resolution)

    def resolve_all(self, resolution: Resolution) -> int:
        return self.resolver.resolve_all(resolution)

    def clear_conflicts(self) -> int:
        return self.resolver.clear_conflicts()

    # --- Connectivity ---
    @property
    def is_online(self) -> bool:
        return self.connectivity.is_online

    def subscribe_online(self, callback: OnlineCallback) -> Callable[[], None]:
        return self.connectivity.subscribe(callback)

    # --- Diagnostics and maintenance ---
    @property
    def device_id(self) -> str:
        device_id = self.store.get_meta(META_DEVICE_ID)
        if device_id is None:
            device_id = f"device-{uuid.uuid4().hex}"
            self.store.set_meta(META_DEVICE_ID, device_id)
        return device_id

    def local_counts(self) -> Dict[str, int]:
        return {d.name: self.store.count_records(d.table) for d in self.registry}

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "online": self.is_online,
            "last_sync_timestamp": self.store.get_meta(META_LAST_SYNC_TIMESTAMP),
            "sync_in_progress": self.orchestrator.in_progress,
            "pending_operations": self.store.count_queue_items(),
            "queue": self.store.queue_counts(),
            "conflicts": len(self.ledger),
            "last_error": self.store.get_meta(META_LAST_ERROR),
            "local_counts": self.local_counts(),
        }

    def clear_local_data(self):
        """Wipes every local record, the queue, the conflicts and the sync timestamp (device id is kept)."""
        with self.store.transaction():
            for descriptor in self.registry:
                self.store.clear_table(descriptor.table)
            dropped = self.store.clear_queue()
            self.store.delete_meta(META_LAST_SYNC_TIMESTAMP)
            self.store.delete_meta(META_LAST_ERROR)
        self.ledger.clear()
        self.cache.invalidate()
        logger.warning(f"Cleared all local data ({dropped} queued change(s) discarded)")

#
# End of Sync_Engine.py
#######################################################################################################################
