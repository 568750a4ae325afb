"""
Flask application factory for the Posture Scanner API.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from flask import Flask
from flask_cors import CORS

from ..core.scanner import ScanConfig
from ..core.acquisition import default_acquirer
from ..core.website import WebsiteAnalyzer
from ..core.rate_limit import RateLimiter, CODE_SCAN_LIMIT, SITE_SCAN_LIMIT, DEFAULT_WINDOW
from .routes import api


EXTENSION_KEY = 'posture_scanner'
MAX_CONTENT_LENGTH = 1024 * 1024  # 1 MB


@dataclass
class ScannerServices:
    """Collaborators shared by request handlers for the life of the app."""
    code_limiter: RateLimiter
    site_limiter: RateLimiter
    acquirer: Any
    website_analyzer: WebsiteAnalyzer
    scan_config: ScanConfig = field(default_factory=ScanConfig)
    auditor: Optional[Any] = None


def create_app(
    scan_config: Optional[ScanConfig] = None,
    rate_limiters: Optional[Dict[str, RateLimiter]] = None,
    acquirer: Optional[Any] = None,
    website_analyzer: Optional[WebsiteAnalyzer] = None,
    auditor: Optional[Any] = None
) -> Flask:
    """
    Build the API application.

    Args:
        scan_config: Base configuration for source-tree scans
        rate_limiters: Mapping with 'code' and/or 'site' limiters
        acquirer: Repository acquirer; git with archive fallback by default
        website_analyzer: Analyzer used by /scan-site
        auditor: Dependency auditor passed to every Scanner

    Returns:
        Configured Flask app
    """
    rate_limiters = rate_limiters or {}
    code_limiter = rate_limiters.get('code')
    if code_limiter is None:
        code_limiter = RateLimiter(CODE_SCAN_LIMIT, DEFAULT_WINDOW)
    site_limiter = rate_limiters.get('site')
    if site_limiter is None:
        site_limiter = RateLimiter(SITE_SCAN_LIMIT, DEFAULT_WINDOW)

    app = Flask(__name__)

    # Enable CORS for all routes
    CORS(app)

    app.config['MAX_CONTENT_LENGTH'] = MAX_CONTENT_LENGTH

    app.extensions[EXTENSION_KEY] = ScannerServices(
        code_limiter=code_limiter,
        site_limiter=site_limiter,
        acquirer=acquirer or default_acquirer(),
        website_analyzer=website_analyzer or WebsiteAnalyzer(),
        scan_config=scan_config or ScanConfig(),
        auditor=auditor
    )

    # Register API blueprint
    app.register_blueprint(api, url_prefix='')

    @app.route('/')
    def index():
        return {
            'name': 'Posture Scanner API',
            'version': '1.0.0',
            'endpoints': {
                'POST /scan-code': 'Scan a GitHub repository',
                'POST /scan-site': 'Analyze the security posture of a website',
                'GET /rules': 'Summarize the pattern catalog',
                'GET /health': 'Health check'
            }
        }

    return app
