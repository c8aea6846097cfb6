"""
Elasticsearch integration for storing job records and graph versions.
"""

import hashlib
import logging
from typing import Any, Dict, List, Optional

from code_graph.models import AnalysisGraph

from .base import ResultStore, StoreError

try:
    from elasticsearch import Elasticsearch
    ELASTICSEARCH_AVAILABLE = True
except ImportError:
    ELASTICSEARCH_AVAILABLE = False
    Elasticsearch = None

logger = logging.getLogger(__name__)


class ElasticResultStore(ResultStore):
    """
    Result store in three Elasticsearch indices.

    A graph version is one document, created with ``op_type=create`` so an
    existing version is never overwritten; the per-repository current pointer
    is a single document replaced after the version write.
    """

    def __init__(self, host: str = 'http://localhost:9200', index_prefix: str = 'code_graph',
                 client=None):
        """
        Initialize Elasticsearch result store.

        Args:
            host: Elasticsearch host URL
            index_prefix: Prefix for index names
            client: Preconfigured Elasticsearch client (built from host if None)

        Raises:
            ImportError: If elasticsearch module is not installed and no client is given
        """
        if client is None:
            if not ELASTICSEARCH_AVAILABLE:
                raise ImportError(
                    "Elasticsearch module is not installed. "
                    "Install it with: pip install elasticsearch>=8.0.0"
                )
            client = Elasticsearch(hosts=[host])
        self.client = client
        self.jobs_index = f'{index_prefix}-jobs'
        self.graphs_index = f'{index_prefix}-graphs'
        self.current_index = f'{index_prefix}-current'
        self._ensure_indices()

    def _ensure_indices(self):
        """Create indices if they don't exist."""
        mappings = {
            self.jobs_index: {
                "properties": {
                    "job_id": {"type": "keyword"},
                    "repository": {"type": "keyword"},
                    "status": {"type": "keyword"},
                    "created_at": {"type": "date"},
                }
            },
            self.graphs_index: {
                "properties": {
                    "version_id": {"type": "keyword"},
                    "job_id": {"type": "keyword"},
                    "repository": {"type": "keyword"},
                    "generated_at": {"type": "date"},
                    "nodes": {"type": "object", "enabled": False},
                    "edges": {"type": "object", "enabled": False},
                    "explanations": {"type": "object", "enabled": False},
                    "coverage": {"type": "object", "enabled": False},
                }
            },
            self.current_index: {
                "properties": {
                    "repository": {"type": "keyword"},
                    "current_version": {"type": "keyword"},
                }
            },
        }
        for index, mapping in mappings.items():
            if not self.client.indices.exists(index=index):
                self.client.indices.create(index=index, mappings=mapping)

    @staticmethod
    def _repository_id(repository: str) -> str:
        return hashlib.sha256(repository.encode('utf-8')).hexdigest()

    def _get(self, index: str, doc_id: str) -> Optional[Dict]:
        res = self.client.options(ignore_status=404).get(index=index, id=doc_id)
        if not res.get('found'):
            return None
        return res['_source']

    def save_job(self, record: Dict[str, Any]):
        self.client.index(index=self.jobs_index, id=record['job_id'], document=record, refresh='wait_for')

    def load_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self._get(self.jobs_index, job_id)

    def list_jobs(self) -> List[Dict[str, Any]]:
        response = self.client.search(index=self.jobs_index, query={"match_all": {}},
                                      sort=[{"created_at": "asc"}], size=10000)
        return [hit['_source'] for hit in response['hits']['hits']]

    def save_graph(self, graph: AnalysisGraph):
        res = self.client.options(ignore_status=409).create(
            index=self.graphs_index, id=graph.version_id, document=graph.to_dict(), refresh='wait_for')
        if res.get('result') != 'created':
            raise StoreError(f"Graph version {graph.version_id} already exists")
        self.client.index(index=self.current_index, id=self._repository_id(graph.repository),
                          document={'repository': graph.repository, 'current_version': graph.version_id},
                          refresh='wait_for')
        logger.info("Stored graph version %s for %s", graph.version_id, graph.repository)

    def load_graph(self, version_id: str) -> Optional[AnalysisGraph]:
        source = self._get(self.graphs_index, version_id)
        return AnalysisGraph.from_dict(source) if source else None

    def current_version(self, repository: str) -> Optional[str]:
        source = self._get(self.current_index, self._repository_id(repository))
        return source['current_version'] if source else None

    def list_versions(self, repository: str) -> List[Dict[str, Any]]:
        response = self.client.search(
            index=self.graphs_index,
            query={"term": {"repository": repository}},
            sort=[{"generated_at": "asc"}],
            source=['version_id', 'job_id', 'generated_at'],
            size=1000,
        )
        return [hit['_source'] for hit in response['hits']['hits']]

    def close(self):
        self.client.close()
