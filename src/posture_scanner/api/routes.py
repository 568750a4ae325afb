"""
Flask API routes for the Posture Scanner.
Provides REST endpoints for scanning repositories and websites.

Endpoints:
- POST /scan-code: Clone or download a GitHub repository and scan it
- POST /scan-site: Analyze the security posture of a live URL
- GET /rules: Summarize the pattern catalog
- GET /health: Health check endpoint
"""

from dataclasses import replace

from flask import Blueprint, request, jsonify, current_app

from ..core.scanner import Scanner, ScanConfig
from ..core.detectors import RulesLoader
from ..core.acquisition import (
    AcquisitionError,
    RepositoryReferenceError,
    materialized_tree,
    validate_repository_reference
)
from ..core.website import InvalidURLError, WebsiteFetchError
from ..core.utils import logger


# Create blueprint
api = Blueprint('api', __name__)

RATE_LIMIT_MESSAGE = 'Rate limit exceeded. Please try again later.'
MAX_PARALLEL_WORKERS = 16


def _services():
    return current_app.extensions['posture_scanner']


def _error(message: str, status: int):
    return jsonify({'success': False, 'error': message}), status


def client_identity() -> str:
    """First X-Forwarded-For entry, else the peer address."""
    forwarded = request.headers.get('X-Forwarded-For', '')
    first = forwarded.split(',')[0].strip()
    return first or request.remote_addr or 'unknown'


def _scan_config(base: ScanConfig, overrides) -> ScanConfig:
    """Apply the optional request `config` object to the base configuration."""
    if not isinstance(overrides, dict):
        return base

    changes = {}
    try:
        if 'parallel_workers' in overrides:
            workers = int(overrides['parallel_workers'])
            changes['parallel_workers'] = max(1, min(MAX_PARALLEL_WORKERS, workers))
        if 'max_file_size' in overrides:
            size = int(overrides['max_file_size'])
            if size > 0:
                changes['max_file_size'] = size
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid config provided: {e}")
        return base

    return replace(base, **changes)


@api.route('/health', methods=['GET'])
def health_check():
    """
    Health check endpoint.

    Returns:
        JSON with status information
    """
    return jsonify({
        'status': 'healthy',
        'service': 'posture-scanner',
        'version': '1.0.0'
    })


@api.route('/scan-code', methods=['POST'])
def scan_code():
    """
    Scan a GitHub repository.

    Request:
        - Content-Type: application/json
        - Body: { "repo_url": "https://github.com/owner/repo", "branch": "main", "config": {...} }

    Response:
        - JSON ScanReport

    Example:
        curl -X POST -H "Content-Type: application/json" \
             -d '{"repo_url": "https://github.com/owner/repo"}' \
             http://localhost:5000/scan-code
    """
    services = _services()

    if not services.code_limiter.allow(client_identity()):
        return _error(RATE_LIMIT_MESSAGE, 429)

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _error('Request must be JSON. Set Content-Type: application/json', 400)

    repo_url = data.get('repo_url')
    if not isinstance(repo_url, str) or not repo_url.strip():
        return _error('Missing required field: repo_url', 400)

    try:
        repo_url = validate_repository_reference(repo_url)
    except RepositoryReferenceError as e:
        return _error(str(e), 400)

    branch = data.get('branch') if isinstance(data.get('branch'), str) else None
    config = _scan_config(services.scan_config, data.get('config'))

    try:
        with materialized_tree(services.acquirer, repo_url, branch) as root:
            scanner = Scanner(config=config, auditor=services.auditor)
            report = scanner.scan(root, repo_url=repo_url)

    except AcquisitionError as e:
        return _error(str(e), 400)

    except Exception as e:
        logger.exception("Error during code scan")
        return _error(f'Scan failed: {str(e)}', 500)

    return jsonify(report.to_dict())


@api.route('/scan-site', methods=['POST'])
def scan_site():
    """
    Analyze the security posture of a website.

    Request:
        - Content-Type: application/json
        - Body: { "url": "https://example.com" }

    Response:
        - JSON WebsiteReport, never cached
    """
    services = _services()

    if not services.site_limiter.allow(client_identity()):
        return _error(RATE_LIMIT_MESSAGE, 429)

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _error('Request must be JSON. Set Content-Type: application/json', 400)

    url = data.get('url')
    if not isinstance(url, str) or not url.strip():
        return _error('Missing required field: url', 400)

    try:
        report = services.website_analyzer.analyze(url)

    except InvalidURLError as e:
        return _error(str(e), 400)

    except WebsiteFetchError as e:
        return _error(str(e), 400)

    except Exception as e:
        logger.exception("Error during website scan")
        return _error(f'Scan failed: {str(e)}', 500)

    response = jsonify(report.to_dict())
    response.headers['Cache-Control'] = 'no-store, max-age=0'
    return response


@api.route('/rules', methods=['GET'])
def get_rules():
    """
    Get information about the pattern catalog.

    Returns:
        JSON with rule counts by detector and category
    """
    try:
        return jsonify(RulesLoader().summary())

    except Exception as e:
        logger.exception("Failed to summarize rules")
        return _error(f'Failed to load rules: {str(e)}', 500)


@api.errorhandler(413)
def request_entity_too_large(error):
    """Handle request too large error."""
    return _error('Request too large. Maximum size is 1MB.', 413)


@api.errorhandler(500)
def internal_server_error(error):
    """Handle internal server errors."""
    return _error('Internal server error occurred.', 500)
