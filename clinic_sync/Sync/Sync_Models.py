# Sync_Models.py
# Description: Data models shared by the gateway, the reconcilers and the orchestrator.
#
# Imports
from typing import List, Optional, Dict, Any, Literal
#
# 3rd-party Libraries
from pydantic import BaseModel, Field
#
# Local Imports
#
#######################################################################################################################
#
# Functions:

SyncStatus = Literal["synced", "pending"]
QueueOperation = Literal["create", "update", "delete"]
Resolution = Literal["client", "server"]
ItemOutcome = Literal["success", "conflict", "error", "deferred", "skipped"]


class LocalRecord(BaseModel):
    """Client-held copy of an entity plus its sync bookkeeping."""
    entity: str
    id: str
    temp_id: Optional[str] = None
    sync_status: SyncStatus = "synced"
    is_deleted: bool = False
    deleted_at: Optional[str] = None
    last_modified: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_row(cls, entity: str, row: Dict[str, Any]) -> "LocalRecord":
        return cls(entity=entity, **row)

    @property
    def is_local_only(self) -> bool:
        """True while the record has never been confirmed by the server."""
        return self.temp_id is not None


class SyncQueueItem(BaseModel):
    id: int
    entity: str
    operation: QueueOperation
    entity_id: str
    data: Optional[Dict[str, Any]] = None
    base: Optional[Dict[str, Any]] = None
    created_at: str
    attempts: int = 0
    last_attempt_at: Optional[str] = None
    last_error: Optional[str] = None
    retryable: bool = True


class SyncConflict(BaseModel):
    """
    A divergence between a queued local update and the server's current record.

    `ref` is the key used for resolution (the causing queue item id, as a string).
    `fields` lists every diverging field; `field` returns the first one.
    """
    ref: str
    operation_id: int
    temp_id: Optional[str] = None
    entity: str
    entity_id: str
    local: Dict[str, Any] = Field(default_factory=dict)
    remote: Dict[str, Any] = Field(default_factory=dict)
    fields: List[str] = Field(default_factory=list)
    detected_at: Optional[str] = None

    @property
    def field(self) -> Optional[str]:
        return self.fields[0] if self.fields else None


class SyncStats(BaseModel):
    success: int = 0
    conflicts: int = 0
    errors: int = 0
    deferred: int = 0

    def __add__(self, other: "SyncStats") -> "SyncStats":
        return SyncStats(
            success=self.success + other.success,
            conflicts=self.conflicts + other.conflicts,
            errors=self.errors + other.errors,
            deferred=self.deferred + other.deferred,
        )

    def record(self, outcome: str):
        if outcome == "success":
            self.success += 1
        elif outcome == "conflict":
            self.conflicts += 1
        elif outcome == "error":
            self.errors += 1
        elif outcome == "deferred":
            self.deferred += 1


class ItemResult(BaseModel):
    item_id: int
    operation: QueueOperation
    entity_id: str
    outcome: ItemOutcome
    server_id: Optional[str] = None
    error: Optional[str] = None


class EntityPushResult(BaseModel):
    entity: str
    stats: SyncStats = Field(default_factory=SyncStats)
    items: List[ItemResult] = Field(default_factory=list)

    def add(self, result: ItemResult):
        self.items.append(result)
        self.stats.record(result.outcome)


class EntityPullResult(BaseModel):
    entity: str
    updated: int = 0
    deleted: int = 0
    skipped_pending: int = 0


class PullResult(BaseModel):
    ok: bool = True
    entities: Dict[str, EntityPullResult] = Field(default_factory=dict)
    server_timestamp: Optional[str] = None
    error: Optional[str] = None

    @property
    def updated(self) -> int:
        return sum(e.updated for e in self.entities.values())

    @property
    def deleted(self) -> int:
        return sum(e.deleted for e in self.entities.values())


class FullSyncResult(BaseModel):
    push: Dict[str, EntityPushResult] = Field(default_factory=dict)
    pull: Optional[PullResult] = None
    cancelled: bool = False
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def stats(self) -> SyncStats:
        total = SyncStats()
        for entity_result in self.push.values():
            total = total + entity_result.stats
        return total


class SyncNotification(BaseModel):
    level: Literal["success", "warning", "error", "info"]
    message: str

#
# End of Sync_Models.py
#######################################################################################################################
