"""
Graph assembly and analysis.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

import networkx as nx

from code_parser.indexer import RepositoryIndex
from code_parser.models import DeclarationKind, ParseStatus

from .models import (AnalysisGraph, CoverageReport, GraphEdge, GraphNode, NodeExplanation,
                     NodeKind)

logger = logging.getLogger(__name__)


def deduplicate_edges(edges: Iterable[GraphEdge]) -> List[GraphEdge]:
    """
    Collapse edges with identical (source, target, kind).

    The higher-confidence provenance is kept (a static edge always beats an
    inferred one) and weights are summed. First-seen order is preserved.
    """
    merged: Dict[tuple, GraphEdge] = {}
    for edge in edges:
        existing = merged.get(edge.key)
        if existing is None:
            merged[edge.key] = edge
            continue
        keep = edge if edge.confidence > existing.confidence else existing
        merged[edge.key] = GraphEdge(source=keep.source, target=keep.target, kind=keep.kind,
                                     provenance=keep.provenance,
                                     weight=existing.weight + edge.weight,
                                     description=keep.description or existing.description)
    return list(merged.values())


class GraphBuilder:
    """Builds the versioned AnalysisGraph and answers structural queries over it."""

    def __init__(self, central_nodes_top_n: int = 10):
        """
        Initialize graph builder.

        Args:
            central_nodes_top_n: Default number of nodes returned by central_nodes
        """
        self.central_nodes_top_n = central_nodes_top_n

    def build_nodes(self, index: RepositoryIndex, declarations) -> List[GraphNode]:
        """
        One node per declaration, module declarations standing for their file.

        Args:
            index: Repository index the declarations were extracted from
            declarations: Declaration arena produced by the relationship mapper

        Returns:
            Nodes with unique ids, in declaration order
        """
        files = {f.path: f for f in index.files}
        nodes: Dict[str, GraphNode] = {}
        for decl in declarations:
            source_file = files.get(decl.file_path)
            if source_file is None or not source_file.contributes_nodes:
                continue
            record = decl.record
            if decl.kind == DeclarationKind.MODULE:
                node = GraphNode(id=decl.node_id, label=decl.file_path, kind=NodeKind.MODULE,
                                 file_path=decl.file_path, language=source_file.language,
                                 qualified_name=decl.module_name, start_line=1,
                                 end_line=source_file.line_count,
                                 line_count=source_file.line_count,
                                 size_bytes=source_file.size)
            else:
                node = GraphNode(id=decl.node_id, label=record.qualified_name, kind=decl.kind,
                                 file_path=decl.file_path, language=source_file.language,
                                 qualified_name=decl.qualified_path,
                                 start_line=record.start_line, end_line=record.end_line,
                                 line_count=record.end_line - record.start_line + 1)
            # same-scope redeclarations share an id; the later one wins
            nodes[node.id] = node
        return list(nodes.values())

    def assemble(self, job_id: str, repository: str, index: RepositoryIndex,
                 nodes: Sequence[GraphNode], static_edges: Sequence[GraphEdge],
                 inferred_edges: Sequence[GraphEdge] = (),
                 explanations: Sequence[NodeExplanation] = (),
                 ambiguous_references: int = 0,
                 unresolved_references: int = 0,
                 external_references: int = 0,
                 partial_coverage: bool = False,
                 notes: Sequence[str] = ()) -> AnalysisGraph:
        """
        Merge nodes and all edges into a new graph version.

        Edges whose endpoints are not in the node set are dropped.

        Args:
            job_id: Job producing this graph
            repository: Repository reference
            index: Per-file outcomes, used for coverage counts
            nodes: Nodes from build_nodes
            static_edges: Edges from the relationship mapper
            inferred_edges: Edges accepted by the inference gateway
            explanations: Node explanations accepted by the inference gateway
            ambiguous_references: Number of references the mapper deferred
            unresolved_references: Ambiguous references that produced no edge
            external_references: References pointing outside the repository
            partial_coverage: Whether inference results are missing
            notes: Free-form coverage notes

        Returns:
            AnalysisGraph with a fresh version id
        """
        node_ids = {n.id for n in nodes}
        edges = []
        for edge in deduplicate_edges(list(static_edges) + list(inferred_edges)):
            if edge.source not in node_ids or edge.target not in node_ids:
                logger.warning("Dropping %s edge with unknown endpoint %s -> %s",
                               edge.kind.value, edge.source, edge.target)
                continue
            edges.append(edge)
        kept_explanations = tuple(x for x in explanations if x.node_id in node_ids)

        coverage = CoverageReport(
            files_total=len(index.files),
            files_parsed=index.count(ParseStatus.OK),
            files_partial=index.count(ParseStatus.PARTIAL),
            files_failed=index.count(ParseStatus.FAILED),
            files_unsupported=index.unsupported_count,
            static_edges=sum(1 for e in edges if not e.inferred_by_ai),
            inferred_edges=sum(1 for e in edges if e.inferred_by_ai),
            ambiguous_references=ambiguous_references,
            unresolved_references=unresolved_references,
            external_references=external_references,
            partial_relationship_coverage=partial_coverage,
            notes=tuple(notes),
        )
        graph = AnalysisGraph(
            version_id=uuid.uuid4().hex,
            job_id=job_id,
            repository=repository,
            generated_at=datetime.now(timezone.utc).isoformat(),
            nodes=tuple(nodes),
            edges=tuple(edges),
            explanations=kept_explanations,
            coverage=coverage,
        )
        logger.info("Built graph %s for %s: %d nodes, %d static and %d inferred edges",
                    graph.version_id, repository, len(graph.nodes),
                    coverage.static_edges, coverage.inferred_edges)
        return graph

    def to_networkx(self, graph: AnalysisGraph) -> nx.MultiDiGraph:
        """Convert a graph version to a networkx multigraph keyed by edge kind."""
        result = nx.MultiDiGraph(version_id=graph.version_id, repository=graph.repository)
        for node in graph.nodes:
            result.add_node(node.id, label=node.label, kind=node.kind.value,
                            file_path=node.file_path, language=node.language)
        for edge in graph.edges:
            result.add_edge(edge.source, edge.target, key=edge.kind.value,
                            weight=edge.weight, confidence=edge.confidence,
                            inferred_by_ai=edge.inferred_by_ai)
        return result

    def central_nodes(self, graph: AnalysisGraph, top_n: Optional[int] = None) -> List[GraphNode]:
        """
        Get the most referenced nodes.

        Args:
            graph: Graph version to rank
            top_n: Number of nodes to return (uses instance default if None)
        """
        g = self.to_networkx(graph)
        if len(g) == 0:
            return []
        n = top_n if top_n is not None else self.central_nodes_top_n
        in_degree = dict(g.in_degree(weight='weight'))
        ranked = sorted(in_degree.items(), key=lambda x: x[1], reverse=True)
        by_id = {node.id: node for node in graph.nodes}
        return [by_id[node_id] for node_id, degree in ranked[:n] if degree > 0]

    def dependencies(self, graph: AnalysisGraph, node_id: str) -> List[str]:
        """Get nodes that a given node depends on."""
        g = self.to_networkx(graph)
        if node_id not in g:
            return []
        return list(dict.fromkeys(g.successors(node_id)))

    def dependents(self, graph: AnalysisGraph, node_id: str) -> List[str]:
        """Get nodes that depend on a given node."""
        g = self.to_networkx(graph)
        if node_id not in g:
            return []
        return list(dict.fromkeys(g.predecessors(node_id)))
