"""
Flask JSON API over the job orchestrator.
"""

import logging

from flask import Flask, jsonify, request

from jobs.errors import JobNotFound, NotReady
from jobs.orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


class ApiServer:
    """HTTP surface for submitting jobs and reading their status and results."""

    def __init__(self, orchestrator: JobOrchestrator, host: str, port: int):
        """
        Initialize API server.

        Args:
            orchestrator: Job orchestrator serving the requests
            host: Server host
            port: Server port
        """
        self.orchestrator = orchestrator
        self.host = host
        self.port = port
        self.app = Flask(__name__)
        self._setup_routes()

    def _setup_routes(self):
        """Set up Flask routes."""

        @self.app.errorhandler(JobNotFound)
        def job_not_found(e):
            return jsonify({'error': str(e)}), 404

        @self.app.route('/jobs', methods=['POST'])
        def submit_job():
            """Queue a repository; returns the (possibly existing) job id."""
            payload = request.get_json(silent=True) or {}
            repository = payload.get('repository')
            if not isinstance(repository, str) or not repository.strip():
                return jsonify({'error': "'repository' is required"}), 400
            job_id = self.orchestrator.submit(repository.strip())
            return jsonify({'job_id': job_id}), 202

        @self.app.route('/jobs', methods=['GET'])
        def list_jobs():
            return jsonify([view.to_dict() for view in self.orchestrator.list_jobs()])

        @self.app.route('/jobs/<job_id>', methods=['GET'])
        def job_status(job_id):
            return jsonify(self.orchestrator.get_status(job_id).to_dict())

        @self.app.route('/jobs/<job_id>/result', methods=['GET'])
        def job_result(job_id):
            try:
                graph = self.orchestrator.get_result(job_id)
            except NotReady as e:
                return jsonify({'error': str(e), 'status': e.status}), 409
            return jsonify(graph.to_dict())

        @self.app.route('/jobs/<job_id>', methods=['DELETE'])
        def cancel_job(job_id):
            cancelled = self.orchestrator.cancel(job_id)
            return jsonify({'job_id': job_id, 'cancelled': cancelled}), 202 if cancelled else 409

    def run(self, debug: bool):
        """Run the API server."""
        print(f"\n--- API Server ---")
        print(f"Listening on: http://{self.host}:{self.port}/jobs")
        print(f"------------------")
        self.app.run(host=self.host, port=self.port, debug=debug, use_reloader=False)
