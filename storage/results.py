"""
Write-through facade over the durable store and the graph cache.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from code_graph.models import AnalysisGraph

from .base import ResultStore
from .cache import LRUGraphCache

logger = logging.getLogger(__name__)


class ResultRepository:
    """
    Single entry point for reading and writing analysis results.

    The durable store is written first and the cache updated only after the
    write succeeded. Cache misses fall back to the durable store and
    repopulate the cache with the repository's current version.
    """

    def __init__(self, store: ResultStore, cache: LRUGraphCache):
        self.store = store
        self.cache = cache
        # serializes publishing with repopulation so an older version never replaces a newer one
        self._lock = threading.Lock()

    def save_job(self, record: Dict[str, Any]):
        self.store.save_job(record)

    def load_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self.store.load_job(job_id)

    def list_jobs(self) -> List[Dict[str, Any]]:
        return self.store.list_jobs()

    def publish(self, graph: AnalysisGraph):
        """
        Persist a completed graph and make it the cached current version.

        Raises:
            StoreError: The durable write failed; the cache is left untouched
        """
        with self._lock:
            self.store.save_graph(graph)
            self.cache.put(graph.repository, graph)

    def current(self, repository: str) -> Optional[AnalysisGraph]:
        graph = self.cache.get(repository)
        if graph is not None:
            return graph
        graph = self.store.current_graph(repository)
        if graph is not None:
            self._repopulate(graph)
        return graph

    def get_version(self, repository: str, version_id: str) -> Optional[AnalysisGraph]:
        """Read one graph version, served from the cache when it is the current one."""
        cached = self.cache.get(repository)
        if cached is not None and cached.version_id == version_id:
            return cached
        graph = self.store.load_graph(version_id)
        if graph is not None:
            self._repopulate(graph)
        return graph

    def list_versions(self, repository: str) -> List[Dict[str, Any]]:
        return self.store.list_versions(repository)

    def _repopulate(self, graph: AnalysisGraph):
        with self._lock:
            if self.store.current_version(graph.repository) == graph.version_id:
                self.cache.put(graph.repository, graph)

    def close(self):
        self.store.close()
