"""
SQLite-backed result store (default backend).
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from code_graph.models import (AnalysisGraph, CoverageReport, GraphEdge, GraphNode,
                               NodeExplanation)

from .base import ResultStore, StoreError

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    repository TEXT NOT NULL,
    status TEXT NOT NULL,
    attempt_count INTEGER NOT NULL,
    graph_version TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    record TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS graph_versions (
    version_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    repository TEXT NOT NULL,
    generated_at TEXT NOT NULL,
    coverage TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS graph_nodes (
    version_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    node_id TEXT NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (version_id, node_id)
);
CREATE TABLE IF NOT EXISTS graph_edges (
    version_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    source TEXT NOT NULL,
    target TEXT NOT NULL,
    kind TEXT NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (version_id, source, target, kind)
);
CREATE TABLE IF NOT EXISTS graph_explanations (
    version_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    node_id TEXT NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (version_id, node_id)
);
CREATE TABLE IF NOT EXISTS repositories (
    repository TEXT PRIMARY KEY,
    current_version TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_graph_versions_repository ON graph_versions(repository);
CREATE INDEX IF NOT EXISTS idx_jobs_repository ON jobs(repository);
"""


class SqliteResultStore(ResultStore):
    """Result store in a single SQLite database file."""

    def __init__(self, db_path: str):
        """
        Initialize SQLite result store.

        Args:
            db_path: Path of the database file (created if missing)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._write_lock = threading.Lock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """One connection per thread."""
        if not hasattr(self._local, 'conn'):
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            self._connections.append(conn)
        return self._local.conn

    def close(self):
        for conn in self._connections:
            conn.close()
        self._connections.clear()
        self._local = threading.local()

    def _init_db(self):
        conn = self._get_connection()
        conn.executescript(_SCHEMA)
        conn.commit()

    # jobs

    def save_job(self, record: Dict[str, Any]):
        conn = self._get_connection()
        with self._write_lock, conn:
            conn.execute("""
                INSERT OR REPLACE INTO jobs
                    (job_id, repository, status, attempt_count, graph_version, created_at, completed_at, record)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (record['job_id'], record['repository'], record['status'], record['attempt_count'],
                  record.get('graph_version'), record['created_at'], record.get('completed_at'),
                  json.dumps(record)))

    def load_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        row = self._get_connection().execute(
            "SELECT record FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        return json.loads(row['record']) if row else None

    def list_jobs(self) -> List[Dict[str, Any]]:
        rows = self._get_connection().execute(
            "SELECT record FROM jobs ORDER BY created_at, job_id").fetchall()
        return [json.loads(row['record']) for row in rows]

    # graphs

    def save_graph(self, graph: AnalysisGraph):
        conn = self._get_connection()
        with self._write_lock:
            try:
                with conn:
                    conn.execute("""
                        INSERT INTO graph_versions (version_id, job_id, repository, generated_at, coverage)
                        VALUES (?, ?, ?, ?, ?)
                    """, (graph.version_id, graph.job_id, graph.repository, graph.generated_at,
                          json.dumps(graph.coverage.to_dict())))
                    conn.executemany(
                        "INSERT INTO graph_nodes (version_id, position, node_id, data) VALUES (?, ?, ?, ?)",
                        [(graph.version_id, i, n.id, json.dumps(n.to_dict()))
                         for i, n in enumerate(graph.nodes)])
                    conn.executemany("""
                        INSERT INTO graph_edges (version_id, position, source, target, kind, data)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, [(graph.version_id, i, e.source, e.target, e.kind.value, json.dumps(e.to_dict()))
                          for i, e in enumerate(graph.edges)])
                    conn.executemany(
                        "INSERT INTO graph_explanations (version_id, position, node_id, data) VALUES (?, ?, ?, ?)",
                        [(graph.version_id, i, x.node_id, json.dumps(x.to_dict()))
                         for i, x in enumerate(graph.explanations)])
                    conn.execute(
                        "INSERT OR REPLACE INTO repositories (repository, current_version) VALUES (?, ?)",
                        (graph.repository, graph.version_id))
            except sqlite3.IntegrityError as e:
                raise StoreError(f"Graph version {graph.version_id} cannot be written: {e}") from e
        logger.info("Stored graph version %s for %s", graph.version_id, graph.repository)

    def load_graph(self, version_id: str) -> Optional[AnalysisGraph]:
        conn = self._get_connection()
        # one read transaction so a concurrent writer is never observed halfway
        with self._write_lock:
            header = conn.execute(
                "SELECT * FROM graph_versions WHERE version_id = ?", (version_id,)).fetchone()
            if header is None:
                return None
            nodes = conn.execute(
                "SELECT data FROM graph_nodes WHERE version_id = ? ORDER BY position",
                (version_id,)).fetchall()
            edges = conn.execute(
                "SELECT data FROM graph_edges WHERE version_id = ? ORDER BY position",
                (version_id,)).fetchall()
            explanations = conn.execute(
                "SELECT data FROM graph_explanations WHERE version_id = ? ORDER BY position",
                (version_id,)).fetchall()

        return AnalysisGraph(
            version_id=header['version_id'],
            job_id=header['job_id'],
            repository=header['repository'],
            generated_at=header['generated_at'],
            nodes=tuple(GraphNode.from_dict(json.loads(r['data'])) for r in nodes),
            edges=tuple(GraphEdge.from_dict(json.loads(r['data'])) for r in edges),
            explanations=tuple(NodeExplanation.from_dict(json.loads(r['data'])) for r in explanations),
            coverage=CoverageReport.from_dict(json.loads(header['coverage'])),
        )

    def current_version(self, repository: str) -> Optional[str]:
        row = self._get_connection().execute(
            "SELECT current_version FROM repositories WHERE repository = ?", (repository,)).fetchone()
        return row['current_version'] if row else None

    def list_versions(self, repository: str) -> List[Dict[str, Any]]:
        rows = self._get_connection().execute("""
            SELECT version_id, job_id, generated_at FROM graph_versions
            WHERE repository = ? ORDER BY generated_at, rowid
        """, (repository,)).fetchall()
        return [dict(row) for row in rows]
