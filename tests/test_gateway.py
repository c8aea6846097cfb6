import threading

import pytest

from code_graph.builder import GraphBuilder
from code_graph.models import EdgeKind, NodeKind, stable_node_id
from inference.collaborator import InferenceCandidate, InferenceTimeout, InferenceUnavailable
from inference.gateway import InferenceGateway
from tests.graphs import AMBIGUOUS_FILES


@pytest.fixture
def ambiguity(map_repo):
    index, mapping = map_repo(AMBIGUOUS_FILES)
    nodes = GraphBuilder().build_nodes(index, mapping.declarations)
    return mapping, nodes


def gateway_for(collaborator, **kwargs):
    options = dict(batch_size=10, timeout=2.0)
    options.update(kwargs)
    return InferenceGateway(collaborator, **options)


def test_timeout_omits_every_reference_of_the_batch(ambiguity, collaborator):
    mapping, nodes = ambiguity
    collaborator.infer.side_effect = InferenceTimeout("no answer")

    outcome = gateway_for(collaborator).augment(mapping.ambiguous, nodes, mapping.declarations)

    assert len(mapping.ambiguous) == 5
    assert outcome.edges == ()
    assert outcome.unresolved_references == 5
    assert outcome.partial_coverage
    assert outcome.notes == ("inference batch 0 timed out: 5 ambiguous references omitted",)


def test_slow_collaborator_is_bounded_by_the_timeout(ambiguity, collaborator):
    mapping, nodes = ambiguity
    release = threading.Event()
    collaborator.infer.side_effect = lambda batch: release.wait(5) and []

    try:
        outcome = gateway_for(collaborator, timeout=0.05).augment(mapping.ambiguous, nodes)
    finally:
        release.set()

    assert outcome.edges == ()
    assert outcome.unresolved_references == 5
    assert outcome.partial_coverage


def test_unavailable_batches_are_isolated(ambiguity, collaborator):
    mapping, nodes = ambiguity
    target = stable_node_id('x.py', 'f1', NodeKind.FUNCTION)

    def infer(batch):
        if batch.batch_id == 0:
            return [InferenceCandidate(cluster_id=c.cluster_id, confidence=0.7, target_id=target)
                    for c in batch.clusters if c.expression == 'f1']
        raise InferenceUnavailable("connection refused")
    collaborator.infer.side_effect = infer

    outcome = gateway_for(collaborator, batch_size=2).augment(mapping.ambiguous, nodes)

    assert collaborator.infer.call_count == 3
    assert len(outcome.edges) == 1
    assert outcome.unresolved_references == 4
    assert outcome.partial_coverage
    assert len(outcome.notes) == 2


def test_hung_batch_does_not_delay_later_batches(ambiguity, collaborator):
    mapping, nodes = ambiguity
    release = threading.Event()
    seen = []

    def infer(batch):
        seen.append(batch.batch_id)
        if batch.batch_id == 0:
            release.wait(5)
            return []
        [cluster] = batch.clusters
        target = stable_node_id('x.py', cluster.expression, NodeKind.FUNCTION)
        return [InferenceCandidate(cluster_id=cluster.cluster_id, confidence=0.8, target_id=target)]
    collaborator.infer.side_effect = infer

    try:
        outcome = gateway_for(collaborator, batch_size=1, timeout=0.3).augment(mapping.ambiguous, nodes)
    finally:
        release.set()

    assert sorted(seen) == [0, 1, 2, 3, 4]
    assert len(outcome.edges) == 4
    assert outcome.unresolved_references == 1
    assert outcome.notes == ("inference batch 0 timed out: 1 ambiguous references omitted",)

def test_results_are_tagged_and_confidence_is_never_raised(ambiguity, collaborator):
    mapping, nodes = ambiguity
    f1_x = stable_node_id('x.py', 'f1', NodeKind.FUNCTION)
    f2_y = stable_node_id('y.py', 'f2', NodeKind.FUNCTION)
    unrelated = stable_node_id('x.py', 'f3', NodeKind.FUNCTION)

    def infer(batch):
        by_expr = {c.expression: c.cluster_id for c in batch.clusters}
        return [
            InferenceCandidate(cluster_id=by_expr['f1'], confidence=1.5, target_id=f1_x),
            InferenceCandidate(cluster_id=by_expr['f2'], confidence=0.6, target_id=f2_y,
                               description='calls the y variant'),
            InferenceCandidate(cluster_id=by_expr['f3'], confidence=0.9, target_id='not-a-node'),
            # target outside the cluster's candidates
            InferenceCandidate(cluster_id=by_expr['f4'], confidence=0.9, target_id=unrelated),
            InferenceCandidate(cluster_id=by_expr['f5'], confidence=0.1, target_id=f1_x),
        ]
    collaborator.infer.side_effect = infer

    outcome = gateway_for(collaborator, min_confidence=0.5).augment(mapping.ambiguous, nodes)

    edges = {e.target: e for e in outcome.edges}
    assert set(edges) == {f1_x, f2_y}
    assert all(e.inferred_by_ai for e in outcome.edges)
    assert edges[f1_x].confidence == 0.99
    assert edges[f2_y].confidence == 0.6
    assert edges[f2_y].description == 'calls the y variant'
    assert edges[f2_y].kind == EdgeKind.CALL
    assert edges[f2_y].provenance.model == 'fake-model'
    assert outcome.unresolved_references == 3
    assert not outcome.partial_coverage


def test_clusters_group_repeated_references(map_repo):
    index, mapping = map_repo({
        'x.py': 'def f():\n    pass\n',
        'y.py': 'def f():\n    pass\n',
        'z.py': 'def main():\n    f()\n    f()\n',
    })
    nodes = {n.id: n for n in GraphBuilder().build_nodes(index, mapping.declarations)}
    clusters = gateway_for(None).clusters(mapping.ambiguous, nodes)
    assert len(clusters) == 1
    assert clusters[0].references == 2
    assert {c.file_path for c in clusters[0].candidates} == {'x.py', 'y.py'}


def test_disabled_inference_reports_partial_coverage(ambiguity):
    mapping, nodes = ambiguity
    outcome = gateway_for(None).augment(mapping.ambiguous, nodes)
    assert outcome.unresolved_references == 5
    assert outcome.partial_coverage


def test_nothing_to_ask(collaborator):
    outcome = gateway_for(collaborator).augment((), ())
    assert outcome.edges == () and outcome.unresolved_references == 0
    collaborator.infer.assert_not_called()


def test_undocumented_nodes_are_explained(map_repo, collaborator):
    index, mapping = map_repo({
        'm.py': '''
            def documented():
                """Has a docstring."""

            def bare():
                pass

            class Plain:
                pass
        ''',
    })
    nodes = GraphBuilder().build_nodes(index, mapping.declarations)

    def infer(batch):
        return [InferenceCandidate(cluster_id=q.cluster_id, confidence=1.0,
                                   explanation=f"explains {q.label}") for q in batch.purposes]
    collaborator.infer.side_effect = infer

    gateway = gateway_for(collaborator, explain_nodes=True, max_explained_nodes=1)
    outcome = gateway.augment(mapping.ambiguous, nodes, mapping.declarations)

    assert [x.text for x in outcome.explanations] == ["explains bare"]
    assert outcome.explanations[0].confidence == 0.99
    assert outcome.explanations[0].inferred_by_ai
