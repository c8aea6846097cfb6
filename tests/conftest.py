import textwrap
from pathlib import Path
from typing import Dict
from unittest.mock import MagicMock

import pytest

from code_graph.builder import GraphBuilder
from code_graph.mapper import RelationshipMapper
from code_parser.classifier import DEFAULT_LANGUAGE_MAP, FileClassifier
from code_parser.extractors import SymbolExtractor
from code_parser.indexer import RepositoryIndexer
from code_parser.parser import ParserDispatcher
from code_parser.repository import LocalRepositorySource
from inference.gateway import InferenceGateway
from jobs.orchestrator import JobOrchestrator
from jobs.pipeline import AnalysisPipeline
from storage.cache import LRUGraphCache
from storage.results import ResultRepository
from storage.sqlite_store import SqliteResultStore


@pytest.fixture
def make_repo(tmp_path):
    """Write a repository of {relative path: source} and return its root."""
    def _make(files: Dict[str, str], name: str = 'repo') -> str:
        root = tmp_path / name
        root.mkdir(parents=True, exist_ok=True)
        for rel_path, source in files.items():
            path = root / rel_path
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(source, bytes):
                path.write_bytes(source)
            else:
                path.write_text(textwrap.dedent(source), encoding='utf-8')
        return str(root)
    return _make


@pytest.fixture
def dispatcher():
    return ParserDispatcher()


@pytest.fixture
def classifier(dispatcher):
    return FileClassifier(DEFAULT_LANGUAGE_MAP, dispatcher.supported_languages)


@pytest.fixture
def indexer(classifier, dispatcher):
    return RepositoryIndexer(LocalRepositorySource(), classifier, dispatcher, SymbolExtractor(),
                             file_concurrency=4)


@pytest.fixture
def index_repo(make_repo, indexer):
    """Write files and index them; returns the RepositoryIndex."""
    def _index(files: Dict[str, str]):
        return indexer.index(make_repo(files))
    return _index


@pytest.fixture
def map_repo(index_repo):
    """Write files, index and map them; returns (index, mapping)."""
    def _map(files: Dict[str, str], tie_break: str = 'lexical_last'):
        index = index_repo(files)
        return index, RelationshipMapper(tie_break=tie_break).map(index.symbols)
    return _map


@pytest.fixture
def store(tmp_path):
    result_store = SqliteResultStore(str(tmp_path / 'db' / 'results.db'))
    yield result_store
    result_store.close()


@pytest.fixture
def results(store):
    return ResultRepository(store, LRUGraphCache(max_entries=8, max_weight=100_000))


@pytest.fixture
def collaborator():
    fake = MagicMock()
    fake.name = 'fake-model'
    fake.infer.return_value = []
    return fake


@pytest.fixture
def make_orchestrator(indexer, results):
    """Orchestrator over the real pipeline; collaborator and pipeline can be swapped."""
    def _make(collaborator=None, pipeline=None, timeout: float = 5.0, max_attempts: int = 3,
              explain_nodes: bool = False):
        gateway = InferenceGateway(collaborator, batch_size=10, timeout=timeout,
                                   explain_nodes=explain_nodes)
        real_pipeline = AnalysisPipeline(indexer, RelationshipMapper(), GraphBuilder(), gateway)
        return JobOrchestrator(pipeline or real_pipeline, results, workers=2, max_attempts=max_attempts)
    return _make


def edges_between(graph, kind, source_file, target_file):
    nodes = {n.id: n for n in graph.nodes}
    return [e for e in graph.edges
            if e.kind.value == kind
            and nodes[e.source].file_path == source_file
            and nodes[e.target].file_path == target_file]


@pytest.fixture
def graph_edges_between():
    return edges_between


@pytest.fixture
def project_root() -> Path:
    return Path(__file__).resolve().parent.parent
