#!/usr/bin/env python3
"""
Command-line entry point: builds the analysis components from configuration
and runs one analysis, the job API server, or an environment check.
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict

import yaml
from dotenv import load_dotenv

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from code_graph import GraphBuilder, RelationshipMapper
from code_parser import (FileClassifier, LocalRepositorySource, ParserDispatcher,
                         RepositoryIndexer, SymbolExtractor)
from code_parser.classifier import DEFAULT_LANGUAGE_MAP, DEFAULT_SHEBANG_MAP
from inference import InferenceGateway, LLMInferenceCollaborator
from jobs import AnalysisPipeline, JobOrchestrator, JobStatus
from llm_client import LocalLLMClient
from logger_config import setup_logging
from storage import ElasticResultStore, LRUGraphCache, ResultRepository, SqliteResultStore
from web import ApiServer

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config.yaml'
DEFAULT_EXAMPLE_SUFFIX = '.example'


def load_config(config_path: str, config_example_suffix: str = DEFAULT_EXAMPLE_SUFFIX) -> Dict:
    """Load configuration from YAML file, falling back to the example file."""
    if not os.path.exists(config_path):
        example_path = config_path + config_example_suffix
        if os.path.exists(example_path):
            print(f"Config file not found. Using example config: {example_path}")
            config_path = example_path
        else:
            raise FileNotFoundError(f"Configuration file not found at {config_path}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    return apply_env_overrides(config)


def read_example_suffix(config_path: str) -> str:
    """Read app.config_example_suffix from the config file, or from its default example file."""
    for path in (config_path, config_path + DEFAULT_EXAMPLE_SUFFIX):
        if os.path.exists(path):
            with open(path, 'r') as f:
                temp_config = yaml.safe_load(f) or {}
            app_config = temp_config.get('app') or {}
            return app_config.get('config_example_suffix', DEFAULT_EXAMPLE_SUFFIX)
    return DEFAULT_EXAMPLE_SUFFIX


def apply_env_overrides(config: Dict) -> Dict:
    """LLM_API_KEY, LLM_API_BASE and LOG_LEVEL take precedence over the file."""
    llm_config = config.setdefault('llm', {})
    if os.getenv('LLM_API_KEY'):
        llm_config['api_key'] = os.environ['LLM_API_KEY']
    if os.getenv('LLM_API_BASE'):
        llm_config['api_base'] = os.environ['LLM_API_BASE']
    if os.getenv('LOG_LEVEL'):
        config.setdefault('logging', {})['level'] = os.environ['LOG_LEVEL']
    return config


def build_llm_client(llm_config: Dict) -> LocalLLMClient:
    return LocalLLMClient(
        api_base=llm_config['api_base'],
        api_key=llm_config['api_key'],
        model=llm_config['model'],
        temperature=llm_config.get('temperature', 0.0),
        max_tokens=llm_config.get('max_tokens', 2048),
        timeout=llm_config.get('timeout', 60),
        max_retries=llm_config.get('max_retries', 3),
        retry_backoff_base=llm_config.get('retry_backoff_base', 2),
        test_message=llm_config.get('test_message', 'Reply with OK.'),
    )


def build_store(storage_config: Dict):
    backend = storage_config.get('backend', 'sqlite')
    if backend == 'sqlite':
        return SqliteResultStore(storage_config.get('sqlite', {}).get('path', '.code_graph/results.db'))
    if backend == 'elasticsearch':
        es_config = storage_config.get('elasticsearch', {})
        return ElasticResultStore(host=es_config.get('host', 'http://localhost:9200'),
                                  index_prefix=es_config.get('index_prefix', 'code_graph'))
    raise ValueError(f"Unknown storage backend '{backend}'")


def build_components(config: Dict) -> Dict:
    """Wire every component from the configuration dict."""
    parser_config = config.get('parser', {})
    crawler_config = config.get('crawler', {})
    analysis_config = config.get('analysis', {})
    inference_config = config.get('inference', {})
    jobs_config = config.get('jobs', {})
    cache_config = config.get('cache', {})

    dispatcher = ParserDispatcher(
        tree_sitter_languages=parser_config.get('tree_sitter_languages', ['javascript', 'typescript', 'java']),
        grammar_names=parser_config.get('grammar_names'),
    )
    classifier = FileClassifier(
        language_map=parser_config.get('language_map', DEFAULT_LANGUAGE_MAP),
        supported_languages=dispatcher.supported_languages,
        shebang_map=parser_config.get('shebang_map', DEFAULT_SHEBANG_MAP),
    )
    source = LocalRepositorySource(
        exclude_patterns=crawler_config.get('exclude', []),
        max_file_size=crawler_config.get('max_file_size', 1_000_000),
        follow_symlinks=crawler_config.get('follow_symlinks', False),
    )
    indexer = RepositoryIndexer(
        source, classifier, dispatcher, SymbolExtractor(),
        file_concurrency=analysis_config.get('file_concurrency', 8),
        show_progress=analysis_config.get('show_progress', True),
    )
    mapper = RelationshipMapper(tie_break=analysis_config.get('tie_break', 'lexical_last'))
    builder = GraphBuilder(central_nodes_top_n=analysis_config.get('central_nodes_top_n', 10))

    llm_client = None
    collaborator = None
    if inference_config.get('enabled', False):
        llm_client = build_llm_client(config['llm'])
        collaborator = LLMInferenceCollaborator(
            llm_client, system_message=inference_config.get('system_message', ''))
    gateway = InferenceGateway(
        collaborator,
        batch_size=inference_config.get('batch_size', 20),
        timeout=inference_config.get('timeout', 120),
        min_confidence=inference_config.get('min_confidence', 0.0),
        explain_nodes=inference_config.get('explain_nodes', False),
        max_explained_nodes=inference_config.get('max_explained_nodes', 50),
    )

    results = ResultRepository(
        build_store(config.get('storage', {})),
        LRUGraphCache(max_entries=cache_config.get('max_entries', 32),
                      max_weight=cache_config.get('max_weight', 500_000)),
    )
    pipeline = AnalysisPipeline(indexer, mapper, builder, gateway)
    orchestrator = JobOrchestrator(pipeline, results,
                                   workers=jobs_config.get('workers', 2),
                                   max_attempts=jobs_config.get('max_attempts', 3))
    return {
        'dispatcher': dispatcher,
        'classifier': classifier,
        'indexer': indexer,
        'mapper': mapper,
        'builder': builder,
        'gateway': gateway,
        'llm_client': llm_client,
        'results': results,
        'pipeline': pipeline,
        'orchestrator': orchestrator,
    }


def run_analyze(codebase_path: str, config: Dict, output: str = None) -> int:
    """Run one analysis job synchronously and print its coverage summary."""
    print("=" * 60)
    print("Code Relationship Graph")
    print("=" * 60)

    components = build_components(config)
    orchestrator = components['orchestrator']
    try:
        job_id = orchestrator.submit(os.path.abspath(codebase_path))
        orchestrator.run_until_idle()
        status = orchestrator.get_status(job_id)
        if status.status != JobStatus.COMPLETE:
            print(f"\nERROR: Analysis failed after {status.attempt_count} attempt(s): {status.failure_reason}")
            return 1

        graph = orchestrator.get_result(job_id)
        coverage = graph.coverage
        print(f"\n  > Graph version: {graph.version_id}")
        print(f"  > Files: {coverage.files_total} total, {coverage.files_parsed} parsed, "
              f"{coverage.files_partial} partial, {coverage.files_failed} failed, "
              f"{coverage.files_unsupported} unsupported")
        print(f"  > Nodes: {len(graph.nodes)}")
        print(f"  > Edges: {coverage.static_edges} static, {coverage.inferred_edges} inferred")
        print(f"  > References: {coverage.ambiguous_references} ambiguous, "
              f"{coverage.unresolved_references} unresolved, {coverage.external_references} external")
        if coverage.partial_relationship_coverage:
            print("  > Partial relationship coverage:")
            for note in coverage.notes:
                print(f"      - {note}")

        central = components['builder'].central_nodes(graph)
        if central:
            print("\n  Most referenced:")
            for node in central:
                print(f"    {node.kind.value:<8} {node.label}  ({node.file_path})")

        if output:
            with open(output, 'w', encoding='utf-8') as f:
                json.dump(graph.to_dict(), f, indent=2)
            print(f"\n[OK] Graph written to {output}")
        else:
            print("\n[OK] Analysis complete!")
        return 0
    finally:
        components['results'].close()


def run_serve(config: Dict) -> int:
    """Start the job workers and the HTTP API."""
    components = build_components(config)
    orchestrator = components['orchestrator']
    api_config = config.get('api', {})
    server = ApiServer(orchestrator, host=api_config.get('host', '127.0.0.1'),
                       port=api_config.get('port', 5000))
    orchestrator.start()
    try:
        server.run(debug=api_config.get('debug', False))
    finally:
        orchestrator.shutdown()
        components['results'].close()
    return 0


def run_check(config: Dict) -> int:
    """Verify grammars load and the LLM endpoint answers."""
    ok = True
    dispatcher = ParserDispatcher(
        tree_sitter_languages=config.get('parser', {}).get('tree_sitter_languages', ['javascript', 'typescript', 'java']),
        grammar_names=config.get('parser', {}).get('grammar_names'),
    )
    print("=" * 60)
    print("Validating parsers...")
    print("=" * 60)
    print("[OK] python: built-in ast")
    for lang, error in dispatcher.check_grammars().items():
        if error:
            ok = False
            print(f"[FAIL] {lang}: {error}")
        else:
            print(f"[OK] {lang}: tree-sitter grammar loaded")

    if config.get('inference', {}).get('enabled', False):
        print("=" * 60)
        print("Validating LLM endpoint...")
        print("=" * 60)
        llm_client = build_llm_client(config['llm'])
        if llm_client.test_connection():
            print(f"[OK] LLM reachable at {llm_client.api_base} ({llm_client.model})")
        else:
            ok = False
            print(f"[FAIL] Could not connect to LLM server at {llm_client.api_base}")
    else:
        print("[SKIP] Inference disabled, LLM endpoint not checked")
    return 0 if ok else 1


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Build a cross-file relationship graph of a source repository'
    )
    parser.add_argument(
        '--config',
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help='Path to the configuration file'
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    analyze = subparsers.add_parser('analyze', help='Analyze a repository directory and print a summary')
    analyze.add_argument('codebase', type=str, help='Path to the repository directory to analyze')
    analyze.add_argument('--output', type=str, help='Write the graph as JSON to this file')

    subparsers.add_parser('serve', help='Start job workers and the HTTP API')
    subparsers.add_parser('check', help='Check parser grammars and the LLM endpoint')

    args = parser.parse_args(argv)
    load_dotenv()

    try:
        config = load_config(args.config, read_example_suffix(args.config))
        setup_logging(config.get('logging', {}).get('level', 'INFO'))

        if args.command == 'analyze':
            if not os.path.isdir(args.codebase):
                print(f"Error: Provided codebase path is not a directory: {args.codebase}")
                return 1
            return run_analyze(args.codebase, config, output=args.output)
        if args.command == 'serve':
            return run_serve(config)
        return run_check(config)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
