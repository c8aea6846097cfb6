"""
Relationship graph module.
Resolves cross-file references and assembles the versioned analysis graph.
"""

from .builder import GraphBuilder, deduplicate_edges
from .mapper import AmbiguousReference, MappingResult, RelationshipMapper, ResolutionAmbiguity
from .models import (AnalysisGraph, CoverageReport, EdgeKind, GraphEdge, GraphNode,
                     InferredProvenance, NodeExplanation, NodeKind, StaticProvenance,
                     stable_node_id)

__all__ = ['GraphBuilder', 'deduplicate_edges', 'AmbiguousReference', 'MappingResult',
           'RelationshipMapper', 'ResolutionAmbiguity', 'AnalysisGraph', 'CoverageReport',
           'EdgeKind', 'GraphEdge', 'GraphNode', 'InferredProvenance', 'NodeExplanation',
           'NodeKind', 'StaticProvenance', 'stable_node_id']
