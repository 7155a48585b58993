# Sync_Orchestrator.py
# Description: Runs push-then-pull cycles behind an in-flight guard and schedules them automatically.
#
# Imports
import asyncio
import logging
from typing import Callable, List, Optional, Set
#
# Local Imports
from clinic_sync.Constants import (
    META_LAST_ERROR, META_SYNC_IN_PROGRESS, RECONNECT_SETTLE_DELAY, PERIODIC_PULL_INTERVAL,
)
from clinic_sync.DB.Sync_Store_DB import SyncStoreDB, utc_now_iso
from clinic_sync.Metrics.metrics_logger import MetricsLogger
from clinic_sync.Sync.Connectivity_Monitor import ConnectivityContext
from clinic_sync.Sync.Pull_Reconciler import PullReconciler
from clinic_sync.Sync.Push_Reconciler import PushReconciler
from clinic_sync.Sync.Read_Cache import ReadCache
from clinic_sync.Sync.Retention_Sweeper import RetentionSweeper
from clinic_sync.Sync.Sync_Models import FullSyncResult, SyncNotification
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)

SyncListener = Callable[[FullSyncResult, List[SyncNotification]], None]


def build_notifications(result: FullSyncResult) -> List[SyncNotification]:
    """Transient, user-facing summary of one cycle."""
    notifications: List[SyncNotification] = []
    stats = result.stats
    if stats.success:
        notifications.append(SyncNotification(level="success", message=f"{stats.success} change(s) synchronised"))
    if stats.conflicts:
        notifications.append(SyncNotification(level="warning",
                                              message=f"{stats.conflicts} conflict(s) need to be resolved"))
    if stats.errors:
        notifications.append(SyncNotification(level="error", message=f"{stats.errors} change(s) could not be synchronised"))
    if result.pull is not None and not result.pull.ok:
        notifications.append(SyncNotification(level="error", message=f"Could not fetch server changes: {result.pull.error}"))
    return notifications


class SyncOrchestrator:
    """
    Owns the sync cycle.

    `full_sync()` pushes then pulls; `pull_only()` only pulls. Both share one in-flight
    guard: a call made while a cycle runs is skipped (returns None), not queued.
    `start()` wires the automatic triggers: reconnect (after a settle delay, only if
    the queue is non-empty), a periodic pull while online, and app-foreground pulls.
    """

    def __init__(self, store: SyncStoreDB, connectivity: ConnectivityContext, push: PushReconciler,
                 pull: PullReconciler, sweeper: Optional[RetentionSweeper] = None,
                 cache: Optional[ReadCache] = None, settle_delay: float = RECONNECT_SETTLE_DELAY,
                 periodic_interval: float = PERIODIC_PULL_INTERVAL):
        self.store = store
        self.connectivity = connectivity
        self.push = push
        self.pull = pull
        self.sweeper = sweeper
        self.cache = cache
        self.settle_delay = settle_delay
        self.periodic_interval = periodic_interval
        self.metrics = MetricsLogger(base_labels={"component": "sync"})

        self._in_flight = False
        self._stopping = False
        self._listeners: List[SyncListener] = []
        self._background: Set[asyncio.Task] = set()
        self._periodic_task: Optional[asyncio.Task] = None
        self._unsubscribe_connectivity: Optional[Callable[[], None]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._was_online = connectivity.is_online
        self.last_result: Optional[FullSyncResult] = None

    @property
    def in_progress(self) -> bool:
        return self._in_flight

    def subscribe(self, listener: SyncListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def request_stop(self):
        """Asks a running push to stop after its current item."""
        if self._in_flight:
            logger.info("Stop requested for the running sync cycle")
            self.push.request_stop()

    # --- Cycles ---
    def _begin(self) -> Optional[FullSyncResult]:
        if self._in_flight:
            logger.debug("Sync already in progress; skipping this trigger")
            return None
        if self._stopping:
            return None
        if not self.connectivity.is_online:
            logger.debug("Offline; skipping sync")
            return None
        self.push.reset_stop()
        self._in_flight = True
        self.store.set_meta(META_SYNC_IN_PROGRESS, "1")
        return FullSyncResult(started_at=utc_now_iso())

    def _finish(self, result: FullSyncResult):
        result.finished_at = utc_now_iso()
        errors = [i.error for r in result.push.values() for i in r.items if i.outcome == "error" and i.error]
        if result.pull is not None and not result.pull.ok and result.pull.error:
            errors.append(result.pull.error)
        try:
            self.store.set_meta(META_SYNC_IN_PROGRESS, "0")
            if errors:
                self.store.set_meta(META_LAST_ERROR, errors[-1])
            else:
                self.store.delete_meta(META_LAST_ERROR)
        finally:
            self._in_flight = False
        if self.cache is not None:
            self.cache.invalidate()

        self.metrics.log_sync_stats("push", result.stats)
        self.metrics.log_gauge("sync_queue_depth", self.store.count_queue_items())
        self.last_result = result
        notifications = build_notifications(result)
        for listener in list(self._listeners):
            try:
                listener(result, notifications)
            except Exception as e:
                logger.error(f"Sync listener {listener!r} raised: {e}", exc_info=True)

    async def full_sync(self) -> Optional[FullSyncResult]:
        result = self._begin()
        if result is None:
            return None
        logger.info("Full sync started")
        try:
            result.push = await self.push.push_all()
            result.cancelled = self.push.stop_requested
            if not result.cancelled:
                result.pull = await self.pull.pull()
        finally:
            self._finish(result)
        stats = result.stats
        logger.info(f"Full sync finished: {stats.success} ok, {stats.conflicts} conflict(s), {stats.errors} error(s)")
        return result

    async def pull_only(self) -> Optional[FullSyncResult]:
        result = self._begin()
        if result is None:
            return None
        try:
            result.pull = await self.pull.pull()
        finally:
            self._finish(result)
        return result

    async def download_all(self) -> Optional[FullSyncResult]:
        """Full re-download of every entity type; pending local changes are kept."""
        result = self._begin()
        if result is None:
            return None
        try:
            result.pull = await self.pull.download_all()
        finally:
            self._finish(result)
        return result

    # --- Automatic triggers ---
    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _on_connectivity(self, online: bool):
        came_online = online and not self._was_online
        self._was_online = online
        if came_online and self._loop is not None:
            self._loop.call_soon_threadsafe(lambda: self._spawn(self._sync_after_reconnect()))

    async def _sync_after_reconnect(self):
        await asyncio.sleep(self.settle_delay)
        if not self.connectivity.is_online:
            return
        pending = self.store.count_queue_items()
        if pending == 0:
            logger.debug("Back online with an empty queue; nothing to push")
            return
        logger.info(f"Back online with {pending} queued change(s); syncing")
        await self.full_sync()

    async def _periodic_pull(self):
        while True:
            await asyncio.sleep(self.periodic_interval)
            if self.connectivity.is_online:
                await self.pull_only()

    def on_app_foreground(self) -> Optional[asyncio.Task]:
        if not self.connectivity.is_online:
            return None
        return self._spawn(self.pull_only())

    def start(self):
        """Must be called from a running event loop."""
        self._loop = asyncio.get_running_loop()
        if self.sweeper is not None:
            self.sweeper.sweep()
        if self._unsubscribe_connectivity is None:
            self._was_online = self.connectivity.is_online
            self._unsubscribe_connectivity = self.connectivity.subscribe(self._on_connectivity)
        if self._periodic_task is None and self.periodic_interval > 0:
            self._periodic_task = self._loop.create_task(self._periodic_pull(), name="PeriodicPull")
        logger.info("Sync orchestrator started")

    async def wait_idle(self):
        """Waits for every triggered cycle scheduled so far to finish."""
        await asyncio.sleep(0)
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def stop(self):
        """Stops the triggers; a running cycle finishes its current item first."""
        self._stopping = True
        if self._unsubscribe_connectivity is not None:
            self._unsubscribe_connectivity()
            self._unsubscribe_connectivity = None
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            await asyncio.gather(self._periodic_task, return_exceptions=True)
            self._periodic_task = None
        self.request_stop()
        await self.wait_idle()
        self._stopping = False
        logger.info("Sync orchestrator stopped")

#
# End of Sync_Orchestrator.py
#######################################################################################################################
