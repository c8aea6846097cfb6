import threading
import time
from collections import Counter
from unittest.mock import MagicMock

import pytest

from code_graph.models import NodeKind, stable_node_id
from inference.collaborator import InferenceCandidate, InferenceTimeout
from jobs.errors import JobNotFound, NotReady, TransientFailure
from jobs.models import JobStatus
from jobs.orchestrator import JobOrchestrator
from tests.graphs import AMBIGUOUS_FILES, make_graph

ABC_FILES = {
    'a.py': '''
        def helper():
            return 1
    ''',
    'b.py': '''
        def broken(:
            pass
    ''',
    'c.py': '''
        import a

        def main():
            return a.helper()
    ''',
}


def scripted_pipeline(script=None):
    """Pipeline whose attempts per repository follow ``script[repository]`` (an exception or 'ok')."""
    script = script or {}
    calls = []
    attempts = Counter()

    def run(job_id, repository, **kwargs):
        calls.append(repository)
        steps = script.get(repository, ['ok'])
        step = steps[min(attempts[repository], len(steps) - 1)]
        attempts[repository] += 1
        if isinstance(step, Exception):
            raise step
        return make_graph(repository, job_id=job_id)

    pipeline = MagicMock()
    pipeline.run.side_effect = run
    return pipeline, calls


def failure():
    return TransientFailure('mapping', RuntimeError('boom'))


def test_job_completes_with_static_edges_and_a_broken_file(make_orchestrator, make_repo,
                                                           graph_edges_between):
    orchestrator = make_orchestrator()
    job_id = orchestrator.submit(make_repo(ABC_FILES))

    assert orchestrator.run_until_idle() == [job_id]

    status = orchestrator.get_status(job_id)
    assert status.status == JobStatus.COMPLETE
    assert status.progress == 1.0
    assert status.terminal

    graph = orchestrator.get_result(job_id)
    assert graph.version_id == status.graph_version
    coverage = graph.coverage
    assert coverage.files_total == 3
    assert coverage.files_parsed == 2
    assert coverage.files_partial + coverage.files_failed == 1
    assert not coverage.partial_relationship_coverage

    imports = graph_edges_between(graph, 'import', 'c.py', 'a.py')
    calls = graph_edges_between(graph, 'call', 'c.py', 'a.py')
    assert len(imports) == 1 and len(calls) == 1
    assert len(graph.edges) == 2
    for edge in imports + calls:
        assert edge.confidence == 1.0
        assert edge.to_dict()['inferredByAI'] is False


def test_inference_timeout_still_completes(make_orchestrator, make_repo, collaborator):
    collaborator.infer.side_effect = InferenceTimeout("no answer")
    orchestrator = make_orchestrator(collaborator=collaborator)
    job_id = orchestrator.submit(make_repo(AMBIGUOUS_FILES))
    orchestrator.run_until_idle()

    assert orchestrator.get_status(job_id).status == JobStatus.COMPLETE
    graph = orchestrator.get_result(job_id)
    assert graph.inferred_edges == ()
    assert graph.coverage.ambiguous_references == 5
    assert graph.coverage.unresolved_references == 5
    assert graph.coverage.partial_relationship_coverage
    assert collaborator.infer.call_count == 1


def test_inferred_edges_are_merged(make_orchestrator, make_repo, collaborator):
    target = stable_node_id('y.py', 'f2', NodeKind.FUNCTION)

    def answer(batch):
        cluster = next(c for c in batch.clusters if c.expression == 'f2')
        return [InferenceCandidate(cluster_id=cluster.cluster_id, confidence=0.8, target_id=target)]
    collaborator.infer.side_effect = answer

    orchestrator = make_orchestrator(collaborator=collaborator)
    job_id = orchestrator.submit(make_repo(AMBIGUOUS_FILES))
    orchestrator.run_until_idle()
    graph = orchestrator.get_result(job_id)

    [edge] = graph.inferred_edges
    assert edge.target == target
    assert edge.confidence == 0.8
    assert edge.to_dict()['model'] == 'fake-model'
    assert graph.coverage.unresolved_references == 4


def test_jobs_run_in_submission_order(make_orchestrator):
    pipeline, calls = scripted_pipeline()
    orchestrator = make_orchestrator(pipeline=pipeline)
    ids = [orchestrator.submit(repo) for repo in ('/r1', '/r2', '/r3')]

    assert orchestrator.run_until_idle() == ids
    assert calls == ['/r1', '/r2', '/r3']


def test_submit_is_idempotent_while_active(make_orchestrator):
    pipeline, _ = scripted_pipeline()
    orchestrator = make_orchestrator(pipeline=pipeline)

    first = orchestrator.submit('/r1')
    assert orchestrator.submit('/r1') == first
    orchestrator.run_until_idle()
    assert orchestrator.submit('/r1') != first


def test_failed_attempt_goes_to_the_back_of_the_queue(make_orchestrator):
    pipeline, calls = scripted_pipeline({'/r1': [failure(), 'ok']})
    orchestrator = make_orchestrator(pipeline=pipeline)
    events = []
    orchestrator.subscribe(events.append)

    first = orchestrator.submit('/r1')
    orchestrator.submit('/r2')
    orchestrator.run_until_idle()
    events = [e for e in events if e.job_id == first]

    assert calls == ['/r1', '/r2', '/r1']
    status = orchestrator.get_status(first)
    assert status.status == JobStatus.COMPLETE
    assert status.attempt_count == 1
    assert status.failure_reason is None
    assert [e.status for e in events] == [JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.FAILED,
                                          JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.COMPLETE]
    assert not events[2].terminal and events[-1].terminal


def test_job_fails_terminally_after_max_attempts(make_orchestrator):
    pipeline, calls = scripted_pipeline({'/r1': [failure()]})
    orchestrator = make_orchestrator(pipeline=pipeline, max_attempts=3)
    job_id = orchestrator.submit('/r1')
    orchestrator.run_until_idle()

    status = orchestrator.get_status(job_id)
    assert calls == ['/r1'] * 3
    assert status.status == JobStatus.FAILED
    assert status.terminal
    assert status.attempt_count == 3
    assert 'boom' in status.failure_reason
    with pytest.raises(NotReady) as excinfo:
        orchestrator.get_result(job_id)
    assert excinfo.value.status == 'failed'


def test_repository_access_error_is_not_retried(make_orchestrator, tmp_path):
    orchestrator = make_orchestrator()
    job_id = orchestrator.submit(str(tmp_path / 'missing'))
    orchestrator.run_until_idle()

    status = orchestrator.get_status(job_id)
    assert status.status == JobStatus.FAILED
    assert status.terminal
    assert status.attempt_count == 1
    assert 'does not exist' in status.failure_reason


def test_cancel_queued_job(make_orchestrator):
    pipeline, calls = scripted_pipeline()
    orchestrator = make_orchestrator(pipeline=pipeline)
    job_id = orchestrator.submit('/r1')

    assert orchestrator.cancel(job_id)
    assert orchestrator.run_until_idle() == []
    assert calls == []
    status = orchestrator.get_status(job_id)
    assert status.status == JobStatus.FAILED
    assert status.failure_reason == 'cancelled'
    assert not orchestrator.cancel(job_id)
    with pytest.raises(JobNotFound):
        orchestrator.cancel('unknown')


def test_cancel_running_job_discards_its_result(make_orchestrator, results):
    orchestrator = None

    def run(job_id, repository, **kwargs):
        assert orchestrator.cancel(job_id)
        assert kwargs['is_cancelled']()
        return make_graph(repository, job_id=job_id)

    pipeline = MagicMock()
    pipeline.run.side_effect = run
    orchestrator = make_orchestrator(pipeline=pipeline)
    job_id = orchestrator.submit('/r1')
    orchestrator.run_until_idle()

    status = orchestrator.get_status(job_id)
    assert status.status == JobStatus.FAILED
    assert status.failure_reason == 'cancelled'
    assert results.current('/r1') is None


def test_result_not_ready_while_queued(make_orchestrator):
    pipeline, _ = scripted_pipeline()
    orchestrator = make_orchestrator(pipeline=pipeline)
    job_id = orchestrator.submit('/r1')

    with pytest.raises(NotReady) as excinfo:
        orchestrator.get_result(job_id)
    assert excinfo.value.status == 'queued'
    with pytest.raises(JobNotFound):
        orchestrator.get_status('unknown')


def test_progress_milestones_are_published(make_orchestrator, make_repo):
    orchestrator = make_orchestrator()
    events = []
    unsubscribe = orchestrator.subscribe(events.append)
    orchestrator.submit(make_repo(ABC_FILES))
    orchestrator.run_until_idle()
    unsubscribe()

    milestones = [e for e in events if e.status == JobStatus.RUNNING and e.stage]
    assert [e.stage for e in milestones] == ['crawling', 'mapping', 'inference', 'building']
    assert [e.progress for e in milestones] == pytest.approx([0.4, 0.7, 0.9, 0.95])
    assert events[-1].status == JobStatus.COMPLETE and events[-1].progress == 1.0

    count = len(events)
    orchestrator.submit('/elsewhere')
    assert len(events) == count


def test_failing_subscriber_does_not_affect_the_job(make_orchestrator):
    pipeline, _ = scripted_pipeline()
    orchestrator = make_orchestrator(pipeline=pipeline)
    orchestrator.subscribe(MagicMock(side_effect=RuntimeError('subscriber down')))
    job_id = orchestrator.submit('/r1')
    orchestrator.run_until_idle()

    assert orchestrator.get_status(job_id).status == JobStatus.COMPLETE


def test_slow_subscriber_does_not_block_status_queries(make_orchestrator):
    pipeline, _ = scripted_pipeline()
    orchestrator = make_orchestrator(pipeline=pipeline)
    first = orchestrator.submit('/r1')
    second = orchestrator.submit('/r2')
    entered, release = threading.Event(), threading.Event()

    def slow_subscriber(event):
        if event.job_id == first and event.status == JobStatus.RUNNING:
            entered.set()
            release.wait(5)

    orchestrator.subscribe(slow_subscriber)
    worker = threading.Thread(target=orchestrator.process_next, daemon=True)
    worker.start()
    try:
        assert entered.wait(5)
        started = time.monotonic()
        assert orchestrator.get_status(first).status == JobStatus.RUNNING
        assert orchestrator.get_status(second).status == JobStatus.QUEUED
        third = orchestrator.submit('/r3')
        assert orchestrator.get_status(third).status == JobStatus.QUEUED
        assert time.monotonic() - started < 0.5
    finally:
        release.set()
        worker.join(5)

    assert orchestrator.get_status(first).status == JobStatus.COMPLETE
    assert orchestrator.run_until_idle() == [second, third]

def test_status_survives_a_new_orchestrator(make_orchestrator, results):
    pipeline, _ = scripted_pipeline()
    orchestrator = make_orchestrator(pipeline=pipeline)
    job_id = orchestrator.submit('/r1')
    orchestrator.run_until_idle()

    restarted = JobOrchestrator(pipeline, results)
    status = restarted.get_status(job_id)
    assert status.status == JobStatus.COMPLETE
    assert restarted.get_result(job_id).version_id == status.graph_version
    assert [v.job_id for v in restarted.list_jobs()] == [job_id]
    assert not restarted.cancel(job_id)


def test_worker_threads(make_orchestrator, make_repo):
    orchestrator = make_orchestrator()
    orchestrator.start()
    try:
        ids = [orchestrator.submit(make_repo(ABC_FILES, name=f'repo{i}')) for i in range(3)]
        statuses = [orchestrator.wait(job_id, timeout=30) for job_id in ids]
    finally:
        orchestrator.shutdown()

    assert [s.status for s in statuses] == [JobStatus.COMPLETE] * 3
    assert len({s.graph_version for s in statuses}) == 3


def test_reanalysis_publishes_a_new_version(make_orchestrator, make_repo, results):
    orchestrator = make_orchestrator()
    repo = make_repo(ABC_FILES)
    first = orchestrator.submit(repo)
    orchestrator.run_until_idle()
    second = orchestrator.submit(repo)
    orchestrator.run_until_idle()

    old, new = orchestrator.get_result(first), orchestrator.get_result(second)
    assert old.version_id != new.version_id
    assert old.node_ids == new.node_ids
    assert {e.key for e in old.static_edges} == {e.key for e in new.static_edges}
    assert results.current(repo) is new
    assert [v['version_id'] for v in results.list_versions(repo)] == [old.version_id, new.version_id]
