"""
Analysis job records.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

CANCELLED_REASON = 'cancelled'


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStatus(str, Enum):
    QUEUED = 'queued'
    RUNNING = 'running'
    COMPLETE = 'complete'
    FAILED = 'failed'


class Stage(str, Enum):
    """Pipeline stages and the progress fraction reached when each one is done."""
    CRAWLING = 'crawling'
    MAPPING = 'mapping'
    INFERENCE = 'inference'
    BUILDING = 'building'


MILESTONES = {
    Stage.CRAWLING: 0.4,
    Stage.MAPPING: 0.7,
    Stage.INFERENCE: 0.9,
    Stage.BUILDING: 0.95,
}


@dataclass
class AnalysisJob:
    """
    One repository-analysis request and its retry-bounded lifecycle.

    Mutated only by the job orchestrator, under its lock.
    """
    job_id: str
    repository: str
    status: JobStatus = JobStatus.QUEUED
    attempt_count: int = 0
    progress: float = 0.0
    stage: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    failure_reason: Optional[str] = None
    graph_version: Optional[str] = None
    terminal: bool = False

    @property
    def is_active(self) -> bool:
        return self.status in (JobStatus.QUEUED, JobStatus.RUNNING)

    def view(self) -> 'JobStatusView':
        return JobStatusView(job_id=self.job_id, repository=self.repository, status=self.status,
                             attempt_count=self.attempt_count, progress=self.progress,
                             stage=self.stage, failure_reason=self.failure_reason,
                             graph_version=self.graph_version, created_at=self.created_at,
                             completed_at=self.completed_at, terminal=self.terminal)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AnalysisJob':
        return cls(**{**data, 'status': JobStatus(data['status'])})


@dataclass(frozen=True)
class JobStatusView:
    """Read-only snapshot of a job, as returned to callers."""
    job_id: str
    repository: str
    status: JobStatus
    attempt_count: int
    progress: float
    stage: Optional[str] = None
    failure_reason: Optional[str] = None
    graph_version: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    terminal: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data
