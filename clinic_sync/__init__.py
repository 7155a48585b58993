# clinic_sync/__init__.py
from .Sync.Sync_Engine import SyncEngine
from .Sync.Connectivity_Monitor import ConnectivityContext, ConnectivityMonitor, StaticConnectivity
from .Sync.Conflict_Ledger import ConflictNotFoundError
from .Sync.Entity_Registry import EntityDescriptor, EntityRegistry, default_registry
from .Sync.Sync_Models import (
    LocalRecord, SyncQueueItem, SyncConflict, SyncStats, FullSyncResult, PullResult, SyncNotification
)
from .DB.Sync_Store_DB import SyncStoreDB, SyncStoreDBError, RecordNotFoundError, InputError

__version__ = "0.1.0"

__all__ = [
    "SyncEngine",
    "ConnectivityContext", "ConnectivityMonitor", "StaticConnectivity",
    "ConflictNotFoundError",
    "EntityDescriptor", "EntityRegistry", "default_registry",
    "LocalRecord", "SyncQueueItem", "SyncConflict", "SyncStats", "FullSyncResult", "PullResult",
    "SyncNotification",
    "SyncStoreDB", "SyncStoreDBError", "RecordNotFoundError", "InputError",
]
