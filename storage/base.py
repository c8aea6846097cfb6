"""
Durable result store contract.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from code_graph.models import AnalysisGraph


class StoreError(Exception):
    """The durable store refused a write or holds inconsistent data."""


class ResultStore(ABC):
    """
    Durable persistence of job records and graph versions.

    Graph versions are insert-only: a version id is written once and never
    overwritten. Each repository has a current-version pointer that is moved
    in the same transaction as the version write, so readers see either the
    old or the new graph in full.
    """

    @abstractmethod
    def save_job(self, record: Dict[str, Any]):
        """Insert or replace the record of one job (keyed by ``job_id``)."""

    @abstractmethod
    def load_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_jobs(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def save_graph(self, graph: AnalysisGraph):
        """
        Write a new graph version and make it current for its repository.

        Raises:
            StoreError: The version id already exists
        """

    @abstractmethod
    def load_graph(self, version_id: str) -> Optional[AnalysisGraph]:
        pass

    @abstractmethod
    def current_version(self, repository: str) -> Optional[str]:
        pass

    @abstractmethod
    def list_versions(self, repository: str) -> List[Dict[str, Any]]:
        """Versions of a repository, oldest first: ``version_id``, ``job_id``, ``generated_at``."""

    def current_graph(self, repository: str) -> Optional[AnalysisGraph]:
        version_id = self.current_version(repository)
        return self.load_graph(version_id) if version_id else None

    def close(self):
        pass
