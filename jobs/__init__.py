"""
Job orchestration module.
Queues analysis requests, runs the pipeline on worker threads and applies
the retry policy.
"""

from .errors import JobCancelled, JobNotFound, NotReady, TransientFailure
from .models import AnalysisJob, JobStatus, JobStatusView, Stage
from .notifications import StatusEvent, StatusNotifier
from .orchestrator import JobOrchestrator
from .pipeline import AnalysisPipeline

__all__ = ['JobCancelled', 'JobNotFound', 'NotReady', 'TransientFailure', 'AnalysisJob',
           'JobStatus', 'JobStatusView', 'Stage', 'StatusEvent', 'StatusNotifier',
           'JobOrchestrator', 'AnalysisPipeline']
