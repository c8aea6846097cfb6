"""
The analysis pipeline of one job attempt: crawl and parse, map, infer, build.
"""

import logging
from typing import Callable, Optional

from code_graph.builder import GraphBuilder
from code_graph.mapper import RelationshipMapper
from code_graph.models import AnalysisGraph
from code_parser.indexer import RepositoryIndexer
from code_parser.repository import RepositoryAccessError
from inference.gateway import InferenceGateway, InferenceOutcome

from .errors import JobCancelled, TransientFailure
from .models import MILESTONES, Stage

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Stage, float, bool], None]


class AnalysisPipeline:
    """Runs the stages of one analysis attempt, checking for cancellation between stages."""

    def __init__(self, indexer: RepositoryIndexer, mapper: RelationshipMapper,
                 builder: GraphBuilder, gateway: InferenceGateway):
        """
        Initialize analysis pipeline.

        Args:
            indexer: Per-file classification, parsing and extraction
            mapper: Cross-file relationship resolution
            builder: Graph assembly
            gateway: Inference augmentation of ambiguous references
        """
        self.indexer = indexer
        self.mapper = mapper
        self.builder = builder
        self.gateway = gateway

    def run(self, job_id: str, repository: str,
            is_cancelled: Callable[[], bool] = lambda: False,
            on_progress: Optional[ProgressCallback] = None) -> AnalysisGraph:
        """
        Analyze a repository into a new graph version.

        Args:
            job_id: Job the graph belongs to
            repository: Repository reference
            is_cancelled: Cancellation flag, checked at every stage boundary
            on_progress: Called with (stage, fraction, milestone)

        Returns:
            The assembled AnalysisGraph

        Raises:
            RepositoryAccessError: The repository cannot be read
            JobCancelled: Cancellation was observed
            TransientFailure: Any other stage failure
        """
        def progress(stage: Stage, fraction: float, milestone: bool = False):
            if on_progress is not None:
                on_progress(stage, fraction, milestone)

        def checkpoint(stage: Stage):
            if is_cancelled():
                raise JobCancelled(f"Job {job_id} cancelled after {stage.value}")
            progress(stage, MILESTONES[stage], True)

        crawl_share = MILESTONES[Stage.CRAWLING]
        index = self._stage(Stage.CRAWLING, lambda: self.indexer.index(
            repository, is_cancelled=is_cancelled,
            on_progress=lambda done, total: progress(Stage.CRAWLING, crawl_share * done / max(total, 1))))
        checkpoint(Stage.CRAWLING)

        def map_and_collect():
            mapping = self.mapper.map(index.symbols)
            return mapping, self.builder.build_nodes(index, mapping.declarations)
        mapping, nodes = self._stage(Stage.MAPPING, map_and_collect)
        checkpoint(Stage.MAPPING)

        outcome: InferenceOutcome = self._stage(Stage.INFERENCE, lambda: self.gateway.augment(
            mapping.ambiguous, nodes, mapping.declarations, is_cancelled=is_cancelled))
        checkpoint(Stage.INFERENCE)

        graph = self._stage(Stage.BUILDING, lambda: self.builder.assemble(
            job_id, repository, index, nodes, mapping.edges,
            inferred_edges=outcome.edges,
            explanations=outcome.explanations,
            ambiguous_references=len(mapping.ambiguous),
            unresolved_references=outcome.unresolved_references,
            external_references=mapping.external_references,
            partial_coverage=outcome.partial_coverage,
            notes=outcome.notes))
        checkpoint(Stage.BUILDING)
        return graph

    @staticmethod
    def _stage(stage: Stage, work):
        logger.debug("Stage %s started", stage.value)
        try:
            return work()
        except (RepositoryAccessError, JobCancelled, TransientFailure):
            raise
        except Exception as e:
            raise TransientFailure(stage.value, e) from e
