"""
Inference gateway: sends ambiguous reference clusters and undocumented
declarations to the inference collaborator and merges the answers back as
AI-inferred edges and explanations.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from code_graph.mapper import AmbiguousReference
from code_graph.models import (MAX_INFERRED_CONFIDENCE, EdgeKind, GraphEdge, GraphNode,
                               InferredProvenance, NodeExplanation, NodeKind)
from code_parser.models import DeclarationKind

from .collaborator import (AmbiguityCluster, InferenceBatch, InferenceCandidate,
                           InferenceCollaborator, InferenceError, InferenceTimeout,
                           PurposeQuery, candidate_targets, chunk)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InferenceOutcome:
    """What the gateway merged back, and what it could not."""
    edges: Tuple[GraphEdge, ...] = ()
    explanations: Tuple[NodeExplanation, ...] = ()
    unresolved_references: int = 0
    partial_coverage: bool = False
    notes: Tuple[str, ...] = ()


def clamp_confidence(confidence: float) -> float:
    """Confidence of an inferred result is kept below 1.0 and is never raised."""
    return min(confidence, MAX_INFERRED_CONFIDENCE)


class InferenceGateway:
    """Batches inference requests and merges confidence-scored results."""

    def __init__(self, collaborator: Optional[InferenceCollaborator], batch_size: int,
                 timeout: float, min_confidence: float = 0.0, explain_nodes: bool = False,
                 max_explained_nodes: int = 50):
        """
        Initialize inference gateway.

        Args:
            collaborator: Inference collaborator, None when inference is disabled
            batch_size: Maximum clusters plus queries per request
            timeout: Seconds to wait for each batch
            min_confidence: Answers below this confidence are discarded
            explain_nodes: Whether undocumented nodes are sent for explanation
            max_explained_nodes: Upper bound on explanation queries per job
        """
        self.collaborator = collaborator
        self.batch_size = max(1, batch_size)
        self.timeout = timeout
        self.min_confidence = min_confidence
        self.explain_nodes = explain_nodes
        self.max_explained_nodes = max_explained_nodes

    def clusters(self, ambiguous: Sequence[AmbiguousReference],
                 nodes: Dict[str, GraphNode]) -> List[AmbiguityCluster]:
        """Group ambiguous references by (source, expression, edge kind)."""
        grouped: Dict[tuple, List[AmbiguousReference]] = {}
        for item in ambiguous:
            if item.source_id not in nodes:
                continue
            key = (item.source_id, item.reference.target.expression, item.edge_kind)
            grouped.setdefault(key, []).append(item)

        clusters = []
        for i, ((source_id, expression, edge_kind), items) in enumerate(grouped.items()):
            first = items[0]
            candidate_ids = tuple(dict.fromkeys(c for item in items for c in item.candidates))
            clusters.append(AmbiguityCluster(
                cluster_id=f"c{i}",
                source_id=source_id,
                source_label=nodes[source_id].label,
                expression=expression,
                edge_kind=edge_kind,
                file_path=first.reference.file_path,
                line=first.reference.start_line,
                candidates=candidate_targets(candidate_ids, nodes),
                references=len(items),
            ))
        return clusters

    def purpose_queries(self, declarations, nodes: Dict[str, GraphNode]) -> List[PurposeQuery]:
        """Undocumented classes and functions, in declaration order."""
        if not self.explain_nodes:
            return []
        queries = []
        seen = set()
        for decl in declarations:
            if decl.kind == DeclarationKind.MODULE or decl.record.has_docstring:
                continue
            node = nodes.get(decl.node_id)
            if node is None or node.id in seen:
                continue
            seen.add(node.id)
            queries.append(PurposeQuery(cluster_id=f"p{len(queries)}", node_id=node.id,
                                        label=node.label, kind=node.kind.value,
                                        file_path=node.file_path, start_line=node.start_line,
                                        end_line=node.end_line))
            if len(queries) >= self.max_explained_nodes:
                break
        return queries

    def augment(self, ambiguous: Sequence[AmbiguousReference], nodes: Sequence[GraphNode],
                declarations=(), is_cancelled: Optional[Callable[[], bool]] = None) -> InferenceOutcome:
        """
        Resolve what the collaborator can; everything else stays out of the graph.

        Args:
            ambiguous: References the relationship mapper deferred
            nodes: Nodes of the graph being built
            declarations: Declaration arena, used to find undocumented nodes
            is_cancelled: Polled between batches

        Returns:
            InferenceOutcome with accepted edges, explanations and coverage notes
        """
        by_id = {n.id: n for n in nodes}
        clusters = self.clusters(ambiguous, by_id)
        total_refs = sum(c.references for c in clusters)

        if self.collaborator is None:
            if not total_refs:
                return InferenceOutcome()
            return InferenceOutcome(unresolved_references=total_refs, partial_coverage=True,
                                    notes=(f"inference disabled: {total_refs} ambiguous references omitted",))

        purposes = self.purpose_queries(declarations, by_id)
        items: List = list(clusters) + list(purposes)
        if not items:
            return InferenceOutcome()

        batches = [InferenceBatch(batch_id=i,
                                  clusters=tuple(x for x in part if isinstance(x, AmbiguityCluster)),
                                  purposes=tuple(x for x in part if isinstance(x, PurposeQuery)))
                   for i, part in enumerate(chunk(items, self.batch_size))]

        answers: Dict[str, InferenceCandidate] = {}
        notes = []
        partial = False
        for batch in batches:
            if is_cancelled is not None and is_cancelled():
                break
            try:
                candidates = self._ask(batch)
            except InferenceError as e:
                partial = True
                what = 'timed out' if isinstance(e, InferenceTimeout) else 'unavailable'
                omitted = sum(c.references for c in batch.clusters)
                logger.warning("Inference batch %d %s, %d ambiguous references omitted: %s",
                               batch.batch_id, what, omitted, e)
                notes.append(f"inference batch {batch.batch_id} {what}: "
                             f"{omitted} ambiguous references omitted")
                continue
            for candidate in candidates:
                best = answers.get(candidate.cluster_id)
                if best is None or candidate.confidence > best.confidence:
                    answers[candidate.cluster_id] = candidate

        edges, unresolved = self._merge_edges(clusters, answers, by_id)
        explanations = self._merge_explanations(purposes, answers)
        if unresolved and not partial:
            notes.append(f"{unresolved} ambiguous references left unresolved")
        return InferenceOutcome(edges=tuple(edges), explanations=tuple(explanations),
                                unresolved_references=unresolved, partial_coverage=partial,
                                notes=tuple(notes))

    def _ask(self, batch: InferenceBatch) -> List[InferenceCandidate]:
        """Ask one batch on its own short-lived worker thread."""
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f'inference-{batch.batch_id}')
        future = executor.submit(self.collaborator.infer, batch)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as e:
            raise InferenceTimeout(f"no answer within {self.timeout}s") from e
        except InferenceError:
            raise
        except Exception as e:
            raise InferenceError(f"{type(e).__name__}: {e}") from e
        finally:
            # a timed-out call keeps running in its own thread; its answer is discarded
            executor.shutdown(wait=False)

    def _merge_edges(self, clusters: Sequence[AmbiguityCluster], answers: Dict[str, InferenceCandidate],
                     nodes: Dict[str, GraphNode]) -> Tuple[List[GraphEdge], int]:
        edges = []
        unresolved = 0
        for cluster in clusters:
            answer = answers.get(cluster.cluster_id)
            if not self._acceptable(answer) or answer.target_id not in nodes:
                unresolved += cluster.references
                continue
            allowed = {c.node_id for c in cluster.candidates}
            if allowed and answer.target_id not in allowed:
                unresolved += cluster.references
                continue
            kind = cluster.edge_kind
            if kind == EdgeKind.CALL and nodes[answer.target_id].kind == NodeKind.CLASS:
                kind = EdgeKind.COMPOSITION
            edges.append(GraphEdge(
                source=cluster.source_id,
                target=answer.target_id,
                kind=kind,
                provenance=InferredProvenance(confidence=clamp_confidence(answer.confidence),
                                              model=getattr(self.collaborator, 'name', None)),
                weight=cluster.references,
                description=answer.description,
            ))
        return edges, unresolved

    def _merge_explanations(self, purposes: Sequence[PurposeQuery],
                            answers: Dict[str, InferenceCandidate]) -> List[NodeExplanation]:
        explanations = []
        for query in purposes:
            answer = answers.get(query.cluster_id)
            if not self._acceptable(answer) or not answer.explanation:
                continue
            explanations.append(NodeExplanation(node_id=query.node_id, text=answer.explanation,
                                                confidence=clamp_confidence(answer.confidence)))
        return explanations

    def _acceptable(self, answer: Optional[InferenceCandidate]) -> bool:
        return answer is not None and 0.0 <= answer.confidence and answer.confidence >= self.min_confidence
