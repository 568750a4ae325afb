"""
Posture Scanner

A security posture scanner for source trees and live websites.

Features:
- Line-level detection of secrets, insecure functions and SAST patterns
- Dockerfile audit
- npm dependency audit against OSV and the npm advisory feed
- License risk evaluation
- Website header, cookie, TLS and exposure analysis
- REST API for integration

Usage:
    # As a library
    from posture_scanner import Scanner
    report = Scanner().scan("/path/to/source")

    # From command line
    python -m posture_scanner /path/to/source

    # As API server
    python -m posture_scanner --serve
"""

__version__ = '1.0.0'
__author__ = 'Posture Scanner Team'

from .core.scanner import Scanner, ScanConfig, ScanReport
from .core.dependencies import DependencyAuditor, AuditorConfig
from .core.website import WebsiteAnalyzer, WebsiteReport
from .core.reporters import ReportGenerator
from .core.severity import SeverityLevel

__all__ = [
    'Scanner',
    'ScanConfig',
    'ScanReport',
    'DependencyAuditor',
    'AuditorConfig',
    'WebsiteAnalyzer',
    'WebsiteReport',
    'ReportGenerator',
    'SeverityLevel',
]
