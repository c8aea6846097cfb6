"""
Graph data model: nodes, edges with provenance, coverage metadata and the
immutable, versioned AnalysisGraph.
"""

import hashlib
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from code_parser.models import DeclarationKind

NodeKind = DeclarationKind

MAX_INFERRED_CONFIDENCE = 0.99


class EdgeKind(str, Enum):
    IMPORT = 'import'
    CALL = 'call'
    INHERITANCE = 'inheritance'
    COMPOSITION = 'composition'
    DATAFLOW = 'dataflow'


def stable_node_id(file_path: str, qualified_name: str, kind: NodeKind) -> str:
    """
    Deterministic node id from repository-relative qualified path and kind.

    The same entity maps to the same id across re-analyses, so clients can
    diff graph versions by id.
    """
    key = f"{NodeKind(kind).value}:{file_path}::{qualified_name}"
    return hashlib.sha256(key.encode('utf-8')).hexdigest()[:20]


@dataclass(frozen=True)
class StaticProvenance:
    """Edge resolved purely from source structure."""

    @property
    def confidence(self) -> float:
        return 1.0

    @property
    def inferred_by_ai(self) -> bool:
        return False


@dataclass(frozen=True)
class InferredProvenance:
    """Edge supplied by the inference collaborator; confidence is always below 1.0."""
    confidence: float
    model: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= self.confidence < 1.0:
            raise ValueError(f"Inferred confidence must be in [0.0, 1.0), got {self.confidence}")

    @property
    def inferred_by_ai(self) -> bool:
        return True


Provenance = Union[StaticProvenance, InferredProvenance]


@dataclass(frozen=True)
class GraphNode:
    id: str
    label: str
    kind: NodeKind
    file_path: str
    language: Optional[str]
    qualified_name: str
    start_line: int = 0
    end_line: int = 0
    line_count: int = 0
    size_bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['kind'] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GraphNode':
        return cls(**{**data, 'kind': NodeKind(data['kind'])})


@dataclass(frozen=True)
class GraphEdge:
    """Directed relationship between two node ids."""
    source: str
    target: str
    kind: EdgeKind
    provenance: Provenance = field(default_factory=StaticProvenance)
    weight: int = 1
    description: Optional[str] = None

    @property
    def confidence(self) -> float:
        return self.provenance.confidence

    @property
    def inferred_by_ai(self) -> bool:
        return self.provenance.inferred_by_ai

    @property
    def key(self) -> Tuple[str, str, EdgeKind]:
        return self.source, self.target, self.kind

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'source': self.source,
            'target': self.target,
            'kind': self.kind.value,
            'weight': self.weight,
            'confidence': self.confidence,
            'inferredByAI': self.inferred_by_ai,
            'description': self.description,
        }
        if isinstance(self.provenance, InferredProvenance):
            data['model'] = self.provenance.model
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GraphEdge':
        if data.get('inferredByAI'):
            provenance = InferredProvenance(confidence=data['confidence'], model=data.get('model'))
        else:
            provenance = StaticProvenance()
        return cls(source=data['source'], target=data['target'], kind=EdgeKind(data['kind']),
                   provenance=provenance, weight=data.get('weight', 1),
                   description=data.get('description'))


@dataclass(frozen=True)
class NodeExplanation:
    """Plain-language purpose of a node, supplied by the inference collaborator."""
    node_id: str
    text: str
    confidence: float

    @property
    def inferred_by_ai(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {'node_id': self.node_id, 'text': self.text, 'confidence': self.confidence,
                'inferredByAI': True}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NodeExplanation':
        return cls(node_id=data['node_id'], text=data['text'], confidence=data['confidence'])


@dataclass(frozen=True)
class CoverageReport:
    """How much of the repository was parsed and resolved. Attached to every completed result."""
    files_total: int = 0
    files_parsed: int = 0
    files_partial: int = 0
    files_failed: int = 0
    files_unsupported: int = 0
    static_edges: int = 0
    inferred_edges: int = 0
    ambiguous_references: int = 0
    unresolved_references: int = 0
    external_references: int = 0
    partial_relationship_coverage: bool = False
    notes: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['notes'] = list(self.notes)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CoverageReport':
        return cls(**{**data, 'notes': tuple(data.get('notes', ()))})


@dataclass(frozen=True)
class AnalysisGraph:
    """Immutable output of one completed job. A re-analysis produces a new version."""
    version_id: str
    job_id: str
    repository: str
    generated_at: str
    nodes: Tuple[GraphNode, ...]
    edges: Tuple[GraphEdge, ...]
    explanations: Tuple[NodeExplanation, ...] = ()
    coverage: CoverageReport = field(default_factory=CoverageReport)

    @property
    def node_ids(self):
        return frozenset(n.id for n in self.nodes)

    @property
    def static_edges(self) -> Tuple[GraphEdge, ...]:
        return tuple(e for e in self.edges if not e.inferred_by_ai)

    @property
    def inferred_edges(self) -> Tuple[GraphEdge, ...]:
        return tuple(e for e in self.edges if e.inferred_by_ai)

    def node(self, node_id: str) -> Optional[GraphNode]:
        return next((n for n in self.nodes if n.id == node_id), None)

    @property
    def weight(self) -> int:
        """Size estimate used by the cache budget."""
        return len(self.nodes) + len(self.edges) + len(self.explanations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version_id': self.version_id,
            'job_id': self.job_id,
            'repository': self.repository,
            'generated_at': self.generated_at,
            'nodes': [n.to_dict() for n in self.nodes],
            'edges': [e.to_dict() for e in self.edges],
            'explanations': [x.to_dict() for x in self.explanations],
            'coverage': self.coverage.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AnalysisGraph':
        return cls(
            version_id=data['version_id'],
            job_id=data['job_id'],
            repository=data['repository'],
            generated_at=data['generated_at'],
            nodes=tuple(GraphNode.from_dict(n) for n in data.get('nodes', [])),
            edges=tuple(GraphEdge.from_dict(e) for e in data.get('edges', [])),
            explanations=tuple(NodeExplanation.from_dict(x) for x in data.get('explanations', [])),
            coverage=CoverageReport.from_dict(data.get('coverage', {})),
        )
