"""
Job orchestration: FIFO queue, bounded worker pool, retries and terminal states.
"""

import logging
import threading
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from code_graph.models import AnalysisGraph
from code_parser.repository import RepositoryAccessError
from storage.results import ResultRepository

from .errors import JobCancelled, JobNotFound, NotReady
from .models import CANCELLED_REASON, AnalysisJob, JobStatus, JobStatusView, Stage, utc_now
from .notifications import StatusEvent, StatusNotifier
from .pipeline import AnalysisPipeline

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """
    Owns the lifecycle of analysis jobs.

    queued -> running -> complete; a failed attempt goes back to the end of
    the queue until ``max_attempts`` attempts have failed, after which the job
    is terminally failed. Repository access errors and cancellation are
    terminal immediately.
    """

    def __init__(self, pipeline: AnalysisPipeline, results: ResultRepository,
                 workers: int = 2, max_attempts: int = 3,
                 notifier: Optional[StatusNotifier] = None):
        """
        Initialize job orchestrator.

        Args:
            pipeline: Analysis pipeline run for each attempt
            results: Result repository (durable store plus cache)
            workers: Number of worker threads started by start()
            max_attempts: Attempts before a job is terminally failed
            notifier: Status notifier (a new one if None)
        """
        self.pipeline = pipeline
        self.results = results
        self.workers = max(1, workers)
        self.max_attempts = max(1, max_attempts)
        self.notifier = notifier or StatusNotifier()

        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._jobs: Dict[str, AnalysisJob] = {}
        self._active: Dict[str, str] = {}
        self._cancel_requested: Set[str] = set()
        self._threads: List[threading.Thread] = []
        self._stopping = False
        # job snapshots taken under the lock, persisted and published after it is released
        self._outbox: Deque[Tuple[Dict[str, Any], StatusEvent]] = deque()
        self._flush_lock = threading.Lock()

    # public API

    def submit(self, repository: str) -> str:
        """
        Queue a repository for analysis.

        Idempotent while a job for the same repository is queued or running:
        the existing job id is returned.
        """
        with self._cond:
            existing = self._active.get(repository)
            if existing is not None:
                logger.info("Repository %s already has active job %s", repository, existing)
                return existing
            job = AnalysisJob(job_id=uuid.uuid4().hex, repository=repository)
            self._jobs[job.job_id] = job
            self._active[repository] = job.job_id
            self._queue.append(job.job_id)
            self._transition(job)
            self._cond.notify_all()
        self._flush()
        logger.info("Submitted job %s for %s", job.job_id, repository)
        return job.job_id

    def get_status(self, job_id: str) -> JobStatusView:
        with self._cond:
            job = self._jobs.get(job_id)
            if job is not None:
                return job.view()
        record = self.results.load_job(job_id)
        if record is None:
            raise JobNotFound(job_id)
        return AnalysisJob.from_dict(record).view()

    def get_result(self, job_id: str) -> AnalysisGraph:
        """
        Raises:
            JobNotFound: Unknown job id
            NotReady: The job is not complete
        """
        status = self.get_status(job_id)
        if status.status != JobStatus.COMPLETE:
            raise NotReady(job_id, status.status.value)
        graph = self.results.get_version(status.repository, status.graph_version)
        if graph is None:
            raise NotReady(job_id, 'missing')
        return graph

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a queued or running job.

        A queued job fails at once; a running job fails at its next stage
        boundary. Returns False when the job is already terminal.
        """
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                if self.results.load_job(job_id) is None:
                    raise JobNotFound(job_id)
                return False
            if job.status == JobStatus.RUNNING:
                self._cancel_requested.add(job_id)
                logger.info("Cancellation requested for running job %s", job_id)
                return True
            if job.status != JobStatus.QUEUED:
                return False
            self._queue.remove(job_id)
            self._fail_terminal(job, CANCELLED_REASON)
        self._flush()
        return True

    def list_jobs(self) -> List[JobStatusView]:
        with self._cond:
            known = {job_id: job.view() for job_id, job in self._jobs.items()}
        for record in self.results.list_jobs():
            if record['job_id'] not in known:
                known[record['job_id']] = AnalysisJob.from_dict(record).view()
        return sorted(known.values(), key=lambda v: (v.created_at or '', v.job_id))

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobStatusView:
        """Block until the job is terminal or the timeout expires, then return its status."""
        with self._cond:
            if job_id in self._jobs:
                self._cond.wait_for(lambda: self._jobs[job_id].terminal, timeout=timeout)
        return self.get_status(job_id)

    def subscribe(self, callback: Callable[[StatusEvent], None]) -> Callable[[], None]:
        return self.notifier.subscribe(callback)

    def start(self):
        """Start the worker threads."""
        with self._cond:
            if self._threads:
                return
            self._stopping = False
            for i in range(self.workers):
                thread = threading.Thread(target=self._worker_loop, name=f"job-worker-{i}", daemon=True)
                self._threads.append(thread)
        for thread in self._threads:
            thread.start()
        logger.info("Started %d job workers", self.workers)

    def shutdown(self, wait: bool = True):
        """Stop the workers after their current job; queued jobs stay queued."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
            threads = list(self._threads)
            self._threads.clear()
        if wait:
            for thread in threads:
                thread.join()
        logger.info("Job workers stopped")

    def process_next(self) -> Optional[str]:
        """Run the next queued job attempt on the calling thread. Returns its id, or None."""
        with self._cond:
            job = self._claim()
        self._flush()
        if job is None:
            return None
        self._run(job)
        return job.job_id

    def run_until_idle(self) -> List[str]:
        """Process queued attempts on the calling thread until the queue is empty."""
        processed = []
        while True:
            job_id = self.process_next()
            if job_id is None:
                return processed
            processed.append(job_id)

    # workers

    def _worker_loop(self):
        while True:
            with self._cond:
                while not self._queue and not self._stopping:
                    self._cond.wait()
                if self._stopping:
                    return
                job = self._claim()
            self._flush()
            if job is not None:
                self._run(job)

    def _claim(self) -> Optional[AnalysisJob]:
        """Pop the oldest queued job and mark it running. Caller holds the lock."""
        while self._queue:
            job = self._jobs[self._queue.popleft()]
            if job.status != JobStatus.QUEUED:
                continue
            job.status = JobStatus.RUNNING
            job.stage = None
            job.progress = 0.0
            job.started_at = utc_now()
            self._transition(job)
            logger.info("Job %s running (attempt %d of %d)", job.job_id,
                        job.attempt_count + 1, self.max_attempts)
            return job
        return None

    def _run(self, job: AnalysisJob):
        job_id = job.job_id
        try:
            graph = self.pipeline.run(job_id, job.repository,
                                      is_cancelled=lambda: job_id in self._cancel_requested,
                                      on_progress=lambda stage, fraction, milestone:
                                      self._progress(job, stage, fraction, milestone))
            if job_id in self._cancel_requested:
                raise JobCancelled(f"Job {job_id} cancelled")
            self.results.publish(graph)
        except JobCancelled:
            with self._cond:
                self._fail_terminal(job, CANCELLED_REASON)
            self._flush()
            return
        except RepositoryAccessError as e:
            with self._cond:
                job.attempt_count += 1
                self._fail_terminal(job, str(e))
            self._flush()
            return
        except Exception as e:
            with self._cond:
                self._retry_or_fail(job, e)
            self._flush()
            return

        with self._cond:
            job.status = JobStatus.COMPLETE
            job.progress = 1.0
            job.stage = None
            job.graph_version = graph.version_id
            job.failure_reason = None
            job.completed_at = utc_now()
            self._finish(job)
        self._flush()
        logger.info("Job %s complete: graph version %s", job_id, graph.version_id)

    def _progress(self, job: AnalysisJob, stage: Stage, fraction: float, milestone: bool):
        with self._cond:
            job.stage = stage.value
            job.progress = max(job.progress, fraction)
            if milestone:
                self._transition(job)
        self._flush()

    def _retry_or_fail(self, job: AnalysisJob, error: Exception):
        job.attempt_count += 1
        reason = str(error)
        if job.attempt_count >= self.max_attempts:
            logger.error("Job %s failed after %d attempts: %s", job.job_id, job.attempt_count, reason)
            self._fail_terminal(job, reason)
            return
        logger.warning("Job %s attempt %d failed, re-queued: %s", job.job_id, job.attempt_count, reason)
        job.status = JobStatus.FAILED
        job.failure_reason = reason
        self._transition(job)
        job.status = JobStatus.QUEUED
        job.stage = None
        job.progress = 0.0
        self._queue.append(job.job_id)
        self._transition(job)
        self._cond.notify_all()

    def _fail_terminal(self, job: AnalysisJob, reason: str):
        job.status = JobStatus.FAILED
        job.failure_reason = reason
        job.completed_at = utc_now()
        if reason == CANCELLED_REASON:
            logger.info("Job %s cancelled", job.job_id)
        else:
            logger.error("Job %s failed: %s", job.job_id, reason)
        self._finish(job)

    def _finish(self, job: AnalysisJob):
        job.terminal = True
        self._cancel_requested.discard(job.job_id)
        if self._active.get(job.repository) == job.job_id:
            del self._active[job.repository]
        self._transition(job)
        self._cond.notify_all()

    def _transition(self, job: AnalysisJob):
        """Snapshot the job record and its status event for _flush(). Caller holds the lock."""
        event = StatusEvent(job_id=job.job_id, status=job.status,
                            attempt_count=job.attempt_count, progress=job.progress,
                            stage=job.stage, failure_reason=job.failure_reason,
                            terminal=job.terminal)
        self._outbox.append((job.to_dict(), event))

    def _flush(self):
        """
        Persist and publish pending snapshots in the order they were taken.

        Caller must not hold the lock. When another thread is already flushing,
        it takes over this thread's snapshots as well.
        """
        while True:
            if not self._flush_lock.acquire(blocking=False):
                return
            try:
                while True:
                    with self._cond:
                        if not self._outbox:
                            break
                        record, event = self._outbox.popleft()
                    self.results.save_job(record)
                    self.notifier.publish(event)
            finally:
                self._flush_lock.release()
            with self._cond:
                if not self._outbox:
                    return
