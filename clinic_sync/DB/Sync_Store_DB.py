# Sync_Store_DB.py
# Description: SQLite-backed Local Store, Sync Queue (outbox) and sync metadata for the offline sync engine.
#
"""
Sync_Store_DB.py
----------------

Persistent, transactional storage owned by the sync engine.

- One data table per entity type, keyed by `id`, holding the latest known snapshot
  of each record as JSON plus its sync bookkeeping (`sync_status`, `temp_id`,
  soft-delete flags, timestamps).
- One shared `sync_queue` table (the outbox) keyed by an auto-increment id.
  Items are ordered by `created_at`, ties broken by `id`.
- One `sync_meta` key/value table (`last_sync_timestamp`, `last_error`, ...).

Every public method and every `with store.transaction():` block holds a single
re-entrant lock, which makes this class the single writer boundary: the mutation
gateways and the reconcilers can run concurrently on the event loop (or on other
threads) without interleaving partial writes. All operations are synchronous.
"""
# Imports
import json
import logging
import re
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Optional, Any, Union, Iterable
#
# Third-Party Libraries
#
# Local Imports
#
########################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)

SYNC_STATUS_SYNCED = "synced"
SYNC_STATUS_PENDING = "pending"

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# --- Custom Exceptions ---
class SyncStoreDBError(Exception):
    """Base exception for SyncStoreDB related errors."""
    pass


class SchemaError(SyncStoreDBError):
    """Exception for schema version mismatches or migration failures."""
    pass


class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass


class RecordNotFoundError(SyncStoreDBError):
    """
    Raised when a record targeted by an offline update/delete does not exist locally.

    Attributes:
        entity (Optional[str]): The entity type or table involved.
        entity_id (Any): The id that could not be found.
    """

    def __init__(self, message="Record not found.", entity: Optional[str] = None, entity_id: Any = None):
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id

    def __str__(self):
        base = super().__str__()
        details = []
        if self.entity:
            details.append(f"Entity: {self.entity}")
        if self.entity_id:
            details.append(f"ID: {self.entity_id}")
        return f"{base} ({', '.join(details)})" if details else base


def utc_now_iso() -> str:
    """Current UTC time as ISO 8601 with millisecond precision and a 'Z' suffix."""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def _replace_value(obj: Any, old: str, new: str) -> Any:
    """Recursively replaces string values equal to `old` (keys are left alone)."""
    if isinstance(obj, str):
        return new if obj == old else obj
    if isinstance(obj, dict):
        return {k: _replace_value(v, old, new) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_replace_value(v, old, new) for v in obj]
    return obj


# --- Database Class ---
class SyncStoreDB:
    """
    Manages the SQLite connection and all Local Store / Sync Queue operations.

    Attributes:
        db_path (Path): Absolute path to the database file, or Path(":memory:").
        is_memory_db (bool): True if the database is in-memory.
        entity_tables (List[str]): Names of the per-entity data tables.
    """
    _CURRENT_SCHEMA_VERSION = 1
    _SCHEMA_NAME = "clinic_sync_schema"

    _SCHEMA_SQL_V1 = """
CREATE TABLE IF NOT EXISTS db_schema_version(
  schema_name TEXT PRIMARY KEY NOT NULL,
  version     INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_queue(
  id              INTEGER PRIMARY KEY AUTOINCREMENT,
  entity          TEXT    NOT NULL,
  operation       TEXT    NOT NULL CHECK(operation IN ('create','update','delete')),
  entity_id       TEXT    NOT NULL,
  data            TEXT,
  base            TEXT,
  created_at      TEXT    NOT NULL,
  attempts        INTEGER NOT NULL DEFAULT 0,
  last_attempt_at TEXT,
  last_error      TEXT,
  retryable       INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_entity ON sync_queue(entity, entity_id);
CREATE INDEX IF NOT EXISTS idx_sync_queue_created ON sync_queue(created_at, id);

CREATE TABLE IF NOT EXISTS sync_meta(
  key        TEXT PRIMARY KEY NOT NULL,
  value      TEXT,
  updated_at TEXT NOT NULL
);

INSERT OR REPLACE INTO db_schema_version(schema_name, version) VALUES('clinic_sync_schema', 1);
"""

    _ENTITY_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS {table}(
  id            TEXT PRIMARY KEY NOT NULL,
  temp_id       TEXT,
  data          TEXT NOT NULL,
  sync_status   TEXT NOT NULL DEFAULT 'synced' CHECK(sync_status IN ('synced','pending')),
  is_deleted    INTEGER NOT NULL DEFAULT 0,
  deleted_at    TEXT,
  last_modified TEXT NOT NULL,
  created_at    TEXT,
  updated_at    TEXT
);
CREATE INDEX IF NOT EXISTS idx_{table}_sync_status ON {table}(sync_status);
"""

    def __init__(self, db_path: Union[str, Path], entity_tables: Iterable[str]):
        """
        Opens (or creates) the store and ensures the schema and all entity tables exist.

        Args:
            db_path: Path to the SQLite database file or ":memory:".
            entity_tables: Names of the per-entity data tables to create.

        Raises:
            InputError: If a table name is not a plain SQL identifier.
            SyncStoreDBError: If the directory or connection cannot be created.
            SchemaError: If the schema is newer than supported or fails to apply.
        """
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.expanduser().resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            self.db_path = Path(db_path).expanduser().resolve() if not self.is_memory_db else Path(":memory:")
        self.db_path_str = str(self.db_path) if not self.is_memory_db else ':memory:'

        self.entity_tables: List[str] = []
        for table in entity_tables:
            if not _TABLE_NAME_RE.match(table) or table in ("sync_queue", "sync_meta", "db_schema_version"):
                raise InputError(f"Invalid entity table name: {table!r}")
            if table not in self.entity_tables:
                self.entity_tables.append(table)

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise SyncStoreDBError(f"Failed to create database directory {self.db_path.parent}: {e}") from e

        logger.info(f"Initializing SyncStoreDB for path: {self.db_path_str} (tables: {', '.join(self.entity_tables)})")
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        try:
            self._initialize_schema()
        except SyncStoreDBError:
            self.close_connection()
            raise
        except sqlite3.Error as e:
            logger.critical(f"FATAL: DB Initialization failed for {self.db_path_str}: {e}", exc_info=True)
            self.close_connection()
            raise SyncStoreDBError(f"Database initialization failed: {e}") from e

    # --- Connection Management ---
    def get_connection(self) -> sqlite3.Connection:
        """
        Returns the shared connection, opening it on first use.

        The connection runs in autocommit mode; multi-statement atomicity comes from
        `transaction()`, which issues an explicit BEGIN.
        """
        with self._lock:
            if self._conn is None:
                try:
                    conn = sqlite3.connect(self.db_path_str, check_same_thread=False, timeout=15, isolation_level=None)
                    conn.row_factory = sqlite3.Row
                    if not self.is_memory_db:
                        conn.execute("PRAGMA journal_mode=WAL;")
                    conn.execute("PRAGMA foreign_keys = ON;")
                    self._conn = conn
                    logger.debug(f"Opened SQLite connection to {self.db_path_str}")
                except sqlite3.Error as e:
                    logger.error(f"Failed to connect to database {self.db_path_str}: {e}", exc_info=True)
                    raise SyncStoreDBError(f"Failed to connect to database '{self.db_path_str}': {e}") from e
            return self._conn

    def close_connection(self):
        """Closes the connection, rolling back any transaction left open."""
        with self._lock:
            conn = self._conn
            if conn is None:
                return
            try:
                if conn.in_transaction:
                    logger.warning(f"Connection to {self.db_path_str} is in an uncommitted transaction during close. Rolling back.")
                    conn.rollback()
                conn.close()
                logger.debug(f"Closed connection to {self.db_path_str}.")
            except sqlite3.Error as e:
                logger.warning(f"Error during SQLite connection close for {self.db_path_str}: {e}")
            finally:
                self._conn = None

    # --- Query Execution ---
    def execute_query(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None, *,
                      script: bool = False) -> sqlite3.Cursor:
        """
        Executes a single SQL statement (or a script) under the store lock.

        Raises:
            SyncStoreDBError: For any SQLite error.
        """
        with self._lock:
            conn = self.get_connection()
            try:
                if logger.isEnabledFor(logging.DEBUG):
                    logger.debug(f"Executing SQL (script={script}): {query[:300]}... Params: {str(params)[:200]}...")
                cursor = conn.cursor()
                if script:
                    cursor.executescript(query)
                else:
                    cursor.execute(query, params or ())
                return cursor
            except sqlite3.IntegrityError as e:
                logger.warning(f"Integrity constraint violation: {query[:300]}... Error: {e}")
                raise SyncStoreDBError(f"Database constraint violation: {e}") from e
            except sqlite3.Error as e:
                logger.error(f"Query execution failed: {query[:300]}... Error: {e}", exc_info=True)
                raise SyncStoreDBError(f"Query execution failed: {e}") from e

    # --- Transaction Context ---
    def transaction(self) -> 'TransactionContextManager':
        """
        Returns a context manager for an atomic group of store operations.

        Usage:
            with store.transaction():
                store.insert_record(...)
                store.enqueue(...)
        """
        return TransactionContextManager(self)

    # --- Schema Initialization ---
    def _get_db_version(self, conn: sqlite3.Connection) -> int:
        try:
            cursor = conn.execute("SELECT version FROM db_schema_version WHERE schema_name = ? LIMIT 1",
                                  (self._SCHEMA_NAME,))
            result = cursor.fetchone()
            return result['version'] if result else 0
        except sqlite3.Error as e:
            if "no such table" in str(e).lower():
                return 0
            raise SchemaError(f"Could not determine schema version for '{self._SCHEMA_NAME}': {e}") from e

    def _initialize_schema(self):
        """
        Creates the queue/meta tables on a fresh database, verifies the version of an
        existing one, and creates any entity table that is missing. Entity tables can be
        added without a version bump since each one is independent.
        """
        conn = self.get_connection()
        current_db_version = self._get_db_version(conn)
        target_version = self._CURRENT_SCHEMA_VERSION
        logger.info(f"Checking DB schema '{self._SCHEMA_NAME}'. Current version: {current_db_version}. Code supports: {target_version}")

        if current_db_version > target_version:
            raise SchemaError(
                f"Database schema '{self._SCHEMA_NAME}' version ({current_db_version}) is newer than supported by code ({target_version}). Aborting.")
        if 0 < current_db_version < target_version:
            raise SchemaError(
                f"Migration path undefined for '{self._SCHEMA_NAME}' from version {current_db_version} to {target_version}.")

        script = "BEGIN;\n"
        if current_db_version == 0:
            script += self._SCHEMA_SQL_V1
        for table in self.entity_tables:
            script += self._ENTITY_TABLE_SQL.format(table=table)
        script += "COMMIT;\n"
        try:
            conn.executescript(script)
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.rollback()
            logger.error(f"Schema application failed for '{self._SCHEMA_NAME}': {e}", exc_info=True)
            raise SchemaError(f"DB schema V{target_version} setup failed for '{self._SCHEMA_NAME}': {e}") from e

        final_version = self._get_db_version(conn)
        if final_version != target_version:
            raise SchemaError(f"Schema version check failed. Expected {target_version}, got: {final_version}")
        logger.debug(f"Database schema '{self._SCHEMA_NAME}' is at version {final_version}.")

    # --- Internal Helpers ---
    def _check_table(self, table: str):
        if table not in self.entity_tables:
            raise InputError(f"Unknown entity table: {table!r}")

    @staticmethod
    def _record_from_row(row: sqlite3.Row) -> Dict[str, Any]:
        record = dict(row)
        record["data"] = json.loads(record["data"]) if record["data"] else {}
        record["is_deleted"] = bool(record["is_deleted"])
        return record

    @staticmethod
    def _queue_item_from_row(row: sqlite3.Row) -> Dict[str, Any]:
        item = dict(row)
        item["data"] = json.loads(item["data"]) if item["data"] is not None else None
        item["base"] = json.loads(item["base"]) if item["base"] is not None else None
        item["retryable"] = bool(item["retryable"])
        return item

    @staticmethod
    def _dump(value: Any) -> Optional[str]:
        return json.dumps(value, ensure_ascii=False) if value is not None else None

    # --- Local Records ---
    def get_record(self, table: str, record_id: str, include_deleted: bool = True) -> Optional[Dict[str, Any]]:
        self._check_table(table)
        query = f"SELECT * FROM {table} WHERE id = ?"
        if not include_deleted:
            query += " AND is_deleted = 0"
        row = self.execute_query(query, (record_id,)).fetchone()
        return self._record_from_row(row) if row else None

    def list_records(self, table: str, include_deleted: bool = False,
                     sync_status: Optional[str] = None) -> List[Dict[str, Any]]:
        self._check_table(table)
        clauses, params = [], []
        if not include_deleted:
            clauses.append("is_deleted = 0")
        if sync_status:
            clauses.append("sync_status = ?")
            params.append(sync_status)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.execute_query(f"SELECT * FROM {table}{where} ORDER BY rowid", tuple(params)).fetchall()
        return [self._record_from_row(r) for r in rows]

    def count_records(self, table: str) -> int:
        self._check_table(table)
        return self.execute_query(f"SELECT COUNT(*) FROM {table} WHERE is_deleted = 0").fetchone()[0]

    def save_record(self, table: str, record_id: str, data: Dict[str, Any], *,
                    sync_status: str = SYNC_STATUS_SYNCED, temp_id: Optional[str] = None,
                    is_deleted: bool = False, deleted_at: Optional[str] = None) -> Dict[str, Any]:
        """
        Inserts or replaces a record. `created_at`/`updated_at` are taken from the payload
        (`createdAt`/`updatedAt`) when present, otherwise stamped locally.
        """
        self._check_table(table)
        if not record_id:
            raise InputError("Record id cannot be empty.")
        if sync_status not in (SYNC_STATUS_SYNCED, SYNC_STATUS_PENDING):
            raise InputError(f"Invalid sync_status: {sync_status!r}")
        now = utc_now_iso()
        payload = dict(data)
        payload["id"] = record_id
        with self._lock:
            existing = self.get_record(table, record_id)
            created_at = payload.get("createdAt") or (existing["created_at"] if existing else now)
            updated_at = payload.get("updatedAt") or now
            self.execute_query(
                f"INSERT OR REPLACE INTO {table}"
                f"(id, temp_id, data, sync_status, is_deleted, deleted_at, last_modified, created_at, updated_at) "
                f"VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (record_id, temp_id, self._dump(payload), sync_status, int(is_deleted), deleted_at, now,
                 created_at, updated_at),
            )
            return self.get_record(table, record_id)

    def mark_deleted(self, table: str, record_id: str) -> Dict[str, Any]:
        """Soft-deletes a record and marks it pending until the delete is confirmed."""
        self._check_table(table)
        now = utc_now_iso()
        cursor = self.execute_query(
            f"UPDATE {table} SET is_deleted = 1, deleted_at = ?, sync_status = ?, last_modified = ? WHERE id = ?",
            (now, SYNC_STATUS_PENDING, now, record_id),
        )
        if cursor.rowcount == 0:
            raise RecordNotFoundError(entity=table, entity_id=record_id)
        return self.get_record(table, record_id)

    def set_sync_status(self, table: str, record_id: str, sync_status: str):
        self._check_table(table)
        self.execute_query(f"UPDATE {table} SET sync_status = ?, last_modified = ? WHERE id = ?",
                           (sync_status, utc_now_iso(), record_id))

    def purge_record(self, table: str, record_id: str) -> bool:
        self._check_table(table)
        cursor = self.execute_query(f"DELETE FROM {table} WHERE id = ?", (record_id,))
        return cursor.rowcount > 0

    def clear_table(self, table: str, synced_only: bool = False) -> int:
        self._check_table(table)
        where = " WHERE sync_status = 'synced'" if synced_only else ""
        return self.execute_query(f"DELETE FROM {table}{where}").rowcount

    def rekey_record(self, table: str, old_id: str, new_id: str, server_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Moves a confirmed record from its temp id to the server id: the server payload
        becomes the snapshot, `temp_id` is cleared and the status becomes synced.
        """
        with self.transaction():
            self.purge_record(table, old_id)
            return self.save_record(table, new_id, server_data, sync_status=SYNC_STATUS_SYNCED)

    def replace_id_references(self, old_id: str, new_id: str) -> int:
        """
        Rewrites every reference to `old_id` into `new_id`: record payloads of every
        entity table, queued payloads and queue entity ids. Returns the number of rows changed.
        """
        changed = 0
        like = f"%{old_id}%"
        with self.transaction():
            for table in self.entity_tables:
                rows = self.execute_query(f"SELECT id, data FROM {table} WHERE data LIKE ?", (like,)).fetchall()
                for row in rows:
                    data = json.loads(row["data"])
                    new_data = _replace_value(data, old_id, new_id)
                    if new_data != data:
                        self.execute_query(f"UPDATE {table} SET data = ? WHERE id = ?", (self._dump(new_data), row["id"]))
                        changed += 1
            rows = self.execute_query(
                "SELECT id, entity_id, data, base FROM sync_queue WHERE entity_id = ? OR data LIKE ? OR base LIKE ?",
                (old_id, like, like)).fetchall()
            for row in rows:
                data = json.loads(row["data"]) if row["data"] is not None else None
                base = json.loads(row["base"]) if row["base"] is not None else None
                entity_id = new_id if row["entity_id"] == old_id else row["entity_id"]
                self.execute_query(
                    "UPDATE sync_queue SET entity_id = ?, data = ?, base = ? WHERE id = ?",
                    (entity_id, self._dump(_replace_value(data, old_id, new_id)),
                     self._dump(_replace_value(base, old_id, new_id)), row["id"]))
                changed += 1
        if changed:
            logger.debug(f"Rewrote {changed} reference(s) from {old_id} to {new_id}")
        return changed

    def find_id_references(self, value: str) -> int:
        """Counts rows (records and queue items) that still mention `value` anywhere."""
        like = f"%{value}%"
        total = 0
        for table in self.entity_tables:
            total += self.execute_query(
                f"SELECT COUNT(*) FROM {table} WHERE id = ? OR temp_id = ? OR data LIKE ?",
                (value, value, like)).fetchone()[0]
        total += self.execute_query(
            "SELECT COUNT(*) FROM sync_queue WHERE entity_id = ? OR data LIKE ? OR base LIKE ?",
            (value, like, like)).fetchone()[0]
        return total

    # --- Sync Queue ---
    def enqueue(self, entity: str, operation: str, entity_id: str, data: Optional[Dict[str, Any]] = None,
                base: Optional[Dict[str, Any]] = None, created_at: Optional[str] = None) -> int:
        """Appends a mutation to the outbox and returns its id."""
        if operation not in ("create", "update", "delete"):
            raise InputError(f"Invalid queue operation: {operation!r}")
        if not entity or not entity_id:
            raise InputError("Queue items need an entity and an entity_id.")
        cursor = self.execute_query(
            "INSERT INTO sync_queue(entity, operation, entity_id, data, base, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (entity, operation, entity_id, self._dump(data), self._dump(base), created_at or utc_now_iso()),
        )
        item_id = cursor.lastrowid
        logger.debug(f"Queued {operation} for {entity}/{entity_id} as item {item_id}")
        return item_id

    def get_queue_item(self, item_id: int) -> Optional[Dict[str, Any]]:
        row = self.execute_query("SELECT * FROM sync_queue WHERE id = ?", (item_id,)).fetchone()
        return self._queue_item_from_row(row) if row else None

    def get_queue_items(self, entity: Optional[str] = None, retryable_only: bool = False) -> List[Dict[str, Any]]:
        """Queue items oldest-first (`created_at`, then `id`)."""
        clauses, params = [], []
        if entity:
            clauses.append("entity = ?")
            params.append(entity)
        if retryable_only:
            clauses.append("retryable = 1")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.execute_query(f"SELECT * FROM sync_queue{where} ORDER BY created_at, id", tuple(params)).fetchall()
        return [self._queue_item_from_row(r) for r in rows]

    def find_queue_item(self, entity: str, entity_id: str, operation: str) -> Optional[Dict[str, Any]]:
        row = self.execute_query(
            "SELECT * FROM sync_queue WHERE entity = ? AND entity_id = ? AND operation = ? ORDER BY created_at, id LIMIT 1",
            (entity, entity_id, operation)).fetchone()
        return self._queue_item_from_row(row) if row else None

    def update_queue_item(self, item_id: int, data: Optional[Dict[str, Any]], base: Optional[Dict[str, Any]] = None):
        self.execute_query("UPDATE sync_queue SET data = ?, base = ? WHERE id = ?",
                           (self._dump(data), self._dump(base), item_id))

    def reset_queue_item(self, item_id: int, data: Optional[Dict[str, Any]], base: Optional[Dict[str, Any]] = None):
        """Replaces an item's payload and clears its retry bookkeeping, keeping its queue position."""
        self.execute_query(
            "UPDATE sync_queue SET data = ?, base = ?, attempts = 0, last_attempt_at = NULL, last_error = NULL, "
            "retryable = 1 WHERE id = ?",
            (self._dump(data), self._dump(base), item_id))

    def record_queue_failure(self, item_id: int, error: str, retryable: bool = True):
        self.execute_query(
            "UPDATE sync_queue SET attempts = attempts + 1, last_attempt_at = ?, last_error = ?, retryable = ? WHERE id = ?",
            (utc_now_iso(), error, int(retryable), item_id))

    def delete_queue_item(self, item_id: int) -> bool:
        return self.execute_query("DELETE FROM sync_queue WHERE id = ?", (item_id,)).rowcount > 0

    def delete_queue_items_for(self, entity: str, entity_id: str, operations: Optional[Iterable[str]] = None) -> int:
        params: List[Any] = [entity, entity_id]
        query = "DELETE FROM sync_queue WHERE entity = ? AND entity_id = ?"
        if operations:
            ops = list(operations)
            query += f" AND operation IN ({','.join('?' * len(ops))})"
            params.extend(ops)
        return self.execute_query(query, tuple(params)).rowcount

    def count_queue_items(self, entity: Optional[str] = None) -> int:
        if entity:
            return self.execute_query("SELECT COUNT(*) FROM sync_queue WHERE entity = ?", (entity,)).fetchone()[0]
        return self.execute_query("SELECT COUNT(*) FROM sync_queue").fetchone()[0]

    def queue_counts(self) -> Dict[str, Dict[str, int]]:
        """Pending item counts per entity and operation, for diagnostics."""
        counts: Dict[str, Dict[str, int]] = {}
        rows = self.execute_query(
            "SELECT entity, operation, COUNT(*) AS n FROM sync_queue GROUP BY entity, operation").fetchall()
        for row in rows:
            counts.setdefault(row["entity"], {})[row["operation"]] = row["n"]
        return counts

    def delete_stale_queue_items(self, max_attempts: int, created_before: str) -> int:
        """Drops items with more than `max_attempts` attempts or created before the cutoff."""
        cursor = self.execute_query(
            "DELETE FROM sync_queue WHERE attempts > ? OR created_at < ?", (max_attempts, created_before))
        return cursor.rowcount

    def clear_queue(self) -> int:
        return self.execute_query("DELETE FROM sync_queue").rowcount

    # --- Sync Metadata ---
    def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self.execute_query("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row and row["value"] is not None else default

    def set_meta(self, key: str, value: Optional[str]):
        self.execute_query("INSERT OR REPLACE INTO sync_meta(key, value, updated_at) VALUES (?, ?, ?)",
                           (key, value, utc_now_iso()))

    def delete_meta(self, key: str):
        self.execute_query("DELETE FROM sync_meta WHERE key = ?", (key,))


# --- Transaction Context Manager Class (Helper for `with store.transaction():`) ---
class TransactionContextManager:
    """Holds the store lock for the whole block; only the outermost block issues BEGIN/COMMIT/ROLLBACK."""

    def __init__(self, db_instance: SyncStoreDB):
        self.db = db_instance
        self.conn: Optional[sqlite3.Connection] = None
        self.is_outermost_transaction = False

    def __enter__(self) -> sqlite3.Connection:
        self.db._lock.acquire()
        try:
            self.conn = self.db.get_connection()
            if not self.conn.in_transaction:
                self.conn.execute("BEGIN")
                self.is_outermost_transaction = True
                logger.debug("Transaction started (outermost).")
        except BaseException:
            self.db._lock.release()
            raise
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if self.is_outermost_transaction:
                if exc_type:
                    logger.error(f"Transaction (outermost) failed, rolling back: {exc_type.__name__} - {exc_val}")
                    try:
                        self.conn.rollback()
                    except sqlite3.Error as rb_err:
                        logger.critical(f"Rollback FAILED: {rb_err}", exc_info=True)
                else:
                    try:
                        self.conn.commit()
                        logger.debug("Transaction (outermost) committed successfully.")
                    except sqlite3.Error as commit_err:
                        logger.error(f"Commit FAILED, attempting rollback: {commit_err}", exc_info=True)
                        try:
                            self.conn.rollback()
                        except sqlite3.Error as rb_err_after_commit_fail:
                            logger.critical(f"Rollback after failed commit also FAILED: {rb_err_after_commit_fail}",
                                            exc_info=True)
                        raise SyncStoreDBError(f"Commit failed: {commit_err}") from commit_err
        finally:
            self.db._lock.release()
        return False

#
# End of Sync_Store_DB.py
#######################################################################################################################
