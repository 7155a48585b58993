# Retention_Sweeper.py
# Description: Drops sync queue items that are past the retry ceiling or too old to be worth sending.
#
# Imports
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable
#
# Local Imports
from clinic_sync.Constants import MAX_QUEUE_ATTEMPTS, MAX_QUEUE_AGE_DAYS
from clinic_sync.DB.Sync_Store_DB import SyncStoreDB
from clinic_sync.Metrics.metrics_logger import log_counter
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RetentionSweeper:
    """
    Removes unrecoverable queue items: more than `max_attempts` attempts, or older
    than `max_age_days`. The matching local records are left alone and stay pending.
    """

    def __init__(self, store: SyncStoreDB, max_attempts: int = MAX_QUEUE_ATTEMPTS,
                 max_age_days: float = MAX_QUEUE_AGE_DAYS, clock: Callable[[], datetime] = _utc_now):
        self.store = store
        self.max_attempts = max_attempts
        self.max_age = timedelta(days=max_age_days)
        self.clock = clock

    def cutoff(self) -> str:
        cutoff = self.clock() - self.max_age
        return cutoff.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')

    def sweep(self) -> int:
        removed = self.store.delete_stale_queue_items(self.max_attempts, self.cutoff())
        if removed:
            logger.warning(f"Retention sweep dropped {removed} unrecoverable sync queue item(s)")
            log_counter("sync_queue_swept_total", removed)
        else:
            logger.debug("Retention sweep found nothing to drop")
        return removed

#
# End of Retention_Sweeper.py
#######################################################################################################################
