"""
Contract of the external inference collaborator and its LLM-backed
implementation.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from code_graph.models import EdgeKind
from llm_client import LocalLLMClient

logger = logging.getLogger(__name__)


class InferenceError(Exception):
    """The inference collaborator could not answer a batch. Never fatal to a job."""


class InferenceUnavailable(InferenceError):
    pass


class InferenceTimeout(InferenceError):
    pass


@dataclass(frozen=True)
class CandidateTarget:
    node_id: str
    label: str
    file_path: str


@dataclass(frozen=True)
class AmbiguityCluster:
    """
    References with the same source, expression and edge kind.

    Attributes:
        cluster_id: Id echoed back by the collaborator
        source_id: Node the references were written in
        source_label: Readable name of the source node
        expression: Target expression as written
        edge_kind: Kind of edge the references would produce
        file_path: File of the references
        line: Line of the first reference
        candidates: Candidate declarations found statically (may be empty)
        references: Number of references collapsed into the cluster
    """
    cluster_id: str
    source_id: str
    source_label: str
    expression: str
    edge_kind: EdgeKind
    file_path: str
    line: int
    candidates: Tuple[CandidateTarget, ...] = ()
    references: int = 1


@dataclass(frozen=True)
class PurposeQuery:
    """An undocumented class or function whose purpose should be explained."""
    cluster_id: str
    node_id: str
    label: str
    kind: str
    file_path: str
    start_line: int
    end_line: int


@dataclass(frozen=True)
class InferenceBatch:
    batch_id: int
    clusters: Tuple[AmbiguityCluster, ...] = ()
    purposes: Tuple[PurposeQuery, ...] = ()

    def __len__(self):
        return len(self.clusters) + len(self.purposes)


@dataclass(frozen=True)
class InferenceCandidate:
    """
    One answer of the collaborator: a target node for an ambiguity cluster,
    or an explanation for a purpose query.
    """
    cluster_id: str
    confidence: float
    target_id: Optional[str] = None
    explanation: Optional[str] = None
    description: Optional[str] = None


class InferenceCollaborator(ABC):
    """Answers batches of ambiguity clusters and purpose queries."""

    name: Optional[str] = None

    @abstractmethod
    def infer(self, batch: InferenceBatch) -> List[InferenceCandidate]:
        """
        Raises:
            InferenceUnavailable: The collaborator cannot be reached
            InferenceTimeout: The collaborator did not answer in time
        """


class LLMInferenceCollaborator(InferenceCollaborator):
    """Inference collaborator backed by an OpenAI-compatible LLM."""

    def __init__(self, llm_client: LocalLLMClient, system_message: str):
        """
        Initialize LLM inference collaborator.

        Args:
            llm_client: LLM client for inference
            system_message: System message for LLM
        """
        self.llm_client = llm_client
        self.system_message = system_message
        self.name = llm_client.model

    def infer(self, batch: InferenceBatch) -> List[InferenceCandidate]:
        prompt = self._build_prompt(batch)
        try:
            response = self.llm_client.query(prompt, self.system_message)
        except TimeoutError as e:
            raise InferenceTimeout(str(e)) from e
        except (ConnectionError, ValueError, RuntimeError) as e:
            raise InferenceUnavailable(str(e)) from e
        return self._parse_candidates(response, batch)

    def _build_prompt(self, batch: InferenceBatch) -> str:
        """Build the prompt for one batch."""
        sections = []
        if batch.clusters:
            lines = []
            for cluster in batch.clusters:
                lines.append(f"- id: {cluster.cluster_id}\n"
                             f"  file: {cluster.file_path} (line {cluster.line})\n"
                             f"  in: {cluster.source_label}\n"
                             f"  {cluster.edge_kind.value} target as written: {cluster.expression}")
                if cluster.candidates:
                    lines.append("  candidates:")
                    for candidate in cluster.candidates:
                        lines.append(f"    - {candidate.node_id}: {candidate.label} ({candidate.file_path})")
                else:
                    lines.append("  candidates: none found statically")
            sections.append("Ambiguous references. For each one, pick the candidate id it most "
                            "likely refers to, or null if none fits:\n" + "\n".join(lines))
        if batch.purposes:
            lines = [f"- id: {q.cluster_id}\n  {q.kind} {q.label} in {q.file_path} "
                     f"(lines {q.start_line}-{q.end_line})" for q in batch.purposes]
            sections.append("Undocumented declarations. For each one, explain its likely "
                            "purpose in one sentence:\n" + "\n".join(lines))

        return "\n\n".join(sections) + """

IMPORTANT: Return ONLY valid JSON, no other text. Use this exact format:
[
  {
    "id": "<id from above>",
    "target": "<candidate id or null>",
    "explanation": "<string or null>",
    "confidence": <number between 0 and 1>
  }
]
"""

    def _parse_candidates(self, response: str, batch: InferenceBatch) -> List[InferenceCandidate]:
        """Parse LLM response into candidates. Entries for unknown ids are ignored."""
        known = {c.cluster_id for c in batch.clusters} | {q.cluster_id for q in batch.purposes}
        # Extract JSON from response (might be wrapped in markdown code blocks)
        json_match = re.search(r'\[[\s\S]*\]', response or '')
        if not json_match:
            logger.warning("Inference batch %d: no JSON array in response", batch.batch_id)
            return []
        try:
            entries = json.loads(json_match.group(0))
        except json.JSONDecodeError as e:
            logger.warning("Inference batch %d: invalid JSON in response: %s", batch.batch_id, e)
            return []

        candidates = []
        for entry in entries:
            if not isinstance(entry, dict) or entry.get('id') not in known:
                continue
            try:
                confidence = float(entry.get('confidence', 0.0))
            except (TypeError, ValueError):
                continue
            candidates.append(InferenceCandidate(
                cluster_id=entry['id'],
                confidence=confidence,
                target_id=entry.get('target') or None,
                explanation=entry.get('explanation') or None,
                description=entry.get('description') or None,
            ))
        return candidates


def chunk(items: List, size: int) -> List[List]:
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


def candidate_targets(node_ids: Tuple[str, ...], nodes: Dict) -> Tuple[CandidateTarget, ...]:
    return tuple(CandidateTarget(node_id=i, label=nodes[i].label, file_path=nodes[i].file_path)
                 for i in node_ids if i in nodes)
