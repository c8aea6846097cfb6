"""
In-memory LRU cache of current graph versions.
"""

import logging
import threading
from collections import OrderedDict
from typing import Dict, Optional

from code_graph.models import AnalysisGraph

logger = logging.getLogger(__name__)


class LRUGraphCache:
    """
    Least-recently-used cache bounded by entry count and total graph weight.

    Entries are replaced whole under one key, so a reader gets either the
    old or the new graph. Eviction only drops the in-memory copy.
    """

    def __init__(self, max_entries: int = 32, max_weight: int = 500_000):
        """
        Initialize graph cache.

        Args:
            max_entries: Maximum number of cached graphs
            max_weight: Maximum summed weight (nodes + edges) of cached graphs
        """
        self.max_entries = max(1, max_entries)
        self.max_weight = max_weight
        self._entries: "OrderedDict[str, AnalysisGraph]" = OrderedDict()
        self._weight = 0
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> Optional[AnalysisGraph]:
        with self._lock:
            graph = self._entries.get(key)
            if graph is None:
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return graph

    def put(self, key: str, graph: AnalysisGraph):
        with self._lock:
            old = self._entries.pop(key, None)
            if old is not None:
                self._weight -= old.weight
            if graph.weight > self.max_weight:
                logger.debug("Graph %s (weight %d) exceeds cache budget, not cached",
                             graph.version_id, graph.weight)
                return
            self._entries[key] = graph
            self._weight += graph.weight
            while len(self._entries) > self.max_entries or self._weight > self.max_weight:
                evicted_key, evicted = self._entries.popitem(last=False)
                self._weight -= evicted.weight
                self._evictions += 1
                logger.debug("Evicted %s (version %s) from graph cache", evicted_key, evicted.version_id)

    def invalidate(self, key: str):
        with self._lock:
            old = self._entries.pop(key, None)
            if old is not None:
                self._weight -= old.weight

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                'entries': len(self._entries),
                'weight': self._weight,
                'hits': self._hits,
                'misses': self._misses,
                'evictions': self._evictions,
            }
