# Read_Cache.py
# Description: Caching read layer for the UI, invalidated after local mutations and sync cycles.
#
# Imports
import logging
import threading
from typing import Any, Callable, Dict, Hashable, Optional, Tuple
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, Hashable]


class ReadCache:
    """Memoizes read results per (entity, key); `invalidate()` drops one entity or everything."""

    def __init__(self):
        self._entries: Dict[CacheKey, Any] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get_or_load(self, entity: str, key: Hashable, loader: Callable[[], Any]) -> Any:
        cache_key = (entity, key)
        with self._lock:
            if cache_key in self._entries:
                self.hits += 1
                return self._entries[cache_key]
        value = loader()
        with self._lock:
            self.misses += 1
            self._entries[cache_key] = value
        return value

    def invalidate(self, entity: Optional[str] = None):
        with self._lock:
            if entity is None:
                self._entries.clear()
            else:
                for cache_key in [k for k in self._entries if k[0] == entity]:
                    del self._entries[cache_key]

    def __len__(self) -> int:
        return len(self._entries)
