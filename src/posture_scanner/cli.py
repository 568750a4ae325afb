#!/usr/bin/env python3
"""
Posture Scanner - CLI and Server Entry Point

This module provides:
1. Command-line interface for scanning a source tree or a website
2. Flask server mode for API access

Usage:
    # Scan a local checkout
    python -m posture_scanner /path/to/source

    # Scan a GitHub repository and save the JSON report
    python -m posture_scanner https://github.com/owner/repo --branch dev -o ./reports

    # Analyze a website
    python -m posture_scanner --site https://example.com

    # Start API server on custom port
    python -m posture_scanner --serve --port 8080
"""

import argparse
import sys
import json
import os
import logging

from .core.scanner import Scanner, ScanConfig
from .core.acquisition import (
    AcquisitionError,
    RepositoryReferenceError,
    default_acquirer,
    materialized_tree
)
from .core.website import InvalidURLError, WebsiteAnalyzer, WebsiteFetchError
from .core.reporters import ReportGenerator
from .core.severity import SEVERITY_ORDER, severity_rank
from .core.utils import DEFAULT_MAX_FILE_SIZE, logger


FINDING_SECTIONS = (
    ('hardcoded_secrets', 'Hardcoded secrets'),
    ('insecure_functions', 'Insecure functions'),
    ('sast_findings', 'Code security issues'),
    ('docker_issues', 'Dockerfile issues'),
    ('outdated_packages', 'Dependencies'),
    ('license_issues', 'License issues'),
)

COLORS = {
    'critical': '\033[91m',  # Red
    'high': '\033[93m',      # Yellow
    'medium': '\033[33m',    # Orange
    'low': '\033[94m',       # Blue
}
RESET = '\033[0m'


def setup_argparse() -> argparse.ArgumentParser:
    """Set up command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog='posture-scanner',
        description='Security posture scanner for source trees and websites',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s /path/to/source                      Scan a local directory
  %(prog)s https://github.com/owner/repo        Scan a GitHub repository
  %(prog)s /path/to/source -o reports           Scan and save a JSON report
  %(prog)s --site https://example.com           Analyze a website
  %(prog)s --serve --port 8080                  Start API server
        """
    )

    # Positional argument for scan target
    parser.add_argument(
        'target',
        nargs='?',
        help='Local directory or https://github.com/<owner>/<repo> URL'
    )

    parser.add_argument(
        '--branch',
        default='main',
        help='Branch to scan for repository URLs (default: main)'
    )

    parser.add_argument(
        '--site',
        metavar='URL',
        help='Analyze the security posture of a website instead'
    )

    # Output options
    parser.add_argument(
        '-o', '--output',
        metavar='DIR',
        help='Output directory for the JSON report'
    )

    parser.add_argument(
        '--json-only',
        action='store_true',
        help='Output only JSON to stdout (for integration)'
    )

    # Scan options
    parser.add_argument(
        '-j', '--jobs',
        type=int,
        default=5,
        metavar='N',
        help='Number of parallel scan passes (default: 5)'
    )

    parser.add_argument(
        '--max-file-size',
        type=int,
        default=DEFAULT_MAX_FILE_SIZE,
        metavar='BYTES',
        help='Maximum file size to scan in bytes (default: 5MB)'
    )

    parser.add_argument(
        '--exclude',
        action='append',
        metavar='DIR',
        help='Additional directory names to skip (can be repeated)'
    )

    parser.add_argument(
        '--no-deps',
        action='store_true',
        help='Skip the dependency and license audit (no registry calls)'
    )

    # Severity filter
    parser.add_argument(
        '--severity',
        choices=list(SEVERITY_ORDER),
        help='Minimum severity to report'
    )

    # Server options
    parser.add_argument(
        '--serve',
        action='store_true',
        help='Start the Flask API server'
    )

    parser.add_argument(
        '--host',
        default='127.0.0.1',
        help='Server host (default: 127.0.0.1)'
    )

    parser.add_argument(
        '--port',
        type=int,
        default=5000,
        help='Server port (default: 5000)'
    )

    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug mode'
    )

    # Other options
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose output'
    )

    parser.add_argument(
        '--version',
        action='version',
        version='%(prog)s 1.0.0'
    )

    return parser


def _item_severity(item: dict) -> str:
    return item.get('severity') or item.get('risk') or 'low'


def filter_by_severity(report: dict, min_severity: str) -> dict:
    """Drop findings below a minimum severity; summary and score are left as computed."""
    threshold = severity_rank(min_severity)
    filtered = dict(report)
    for key, _ in FINDING_SECTIONS:
        filtered[key] = [
            item for item in report.get(key, [])
            if severity_rank(_item_severity(item)) <= threshold
        ]
    return filtered


def _describe(key: str, item: dict) -> str:
    if key == 'hardcoded_secrets':
        return f"{item['type']} ({item['preview']})"
    if key == 'insecure_functions':
        return f"{item['function']}: {item['risk']}"
    if key == 'sast_findings':
        return f"{item['type']}: {item['description']}"
    if key == 'docker_issues':
        return item['issue']
    if key == 'outdated_packages':
        ident = f" {item['cve']}" if item.get('cve') else ''
        return f"{item['name']} {item['current_version']} -> {item['latest_version']} ({item['status']}{ident})"
    return f"{item['package']}: {item['license']} ({item['reason']})"


def _location(item: dict) -> str:
    if 'file' in item:
        return f"  {item['file']}:{item['line']}"
    return ''


def print_summary(report: dict, verbose: bool = False):
    """Print a human-readable summary of a source-tree report."""
    print("\n" + "=" * 60)
    print("SCAN SUMMARY")
    print("=" * 60)

    summary = report['summary']
    print(f"\nTarget:         {report.get('repo_url')}")
    print(f"Scan Date:      {report['scan_date']}")
    print(f"Security Score: {summary['security_score']}/100")

    print(f"\n{'Severity':<12} {'Count':<8}")
    print("-" * 20)

    for sev in SEVERITY_ORDER:
        count = summary.get(sev, 0)
        if count > 0:
            print(f"{COLORS.get(sev, '')}{sev.upper():<12} {count:<8}{RESET}")
        else:
            print(f"{sev.upper():<12} {count:<8}")

    print("-" * 20)
    print(f"{'TOTAL':<12} {summary['total_issues']:<8}")

    if verbose:
        for key, title in FINDING_SECTIONS:
            items = report.get(key, [])
            if not items:
                continue
            print(f"\n{title} ({len(items)})")
            print("-" * 60)
            for item in items:
                sev = _item_severity(item)
                print(f"{COLORS.get(sev, '')}[{sev.upper()}]{RESET} {_describe(key, item)}{_location(item)}")

    if report.get('recommendations'):
        print("\nRecommendations:")
        for line in report['recommendations']:
            print(f"  - {line}")


def print_site_summary(report: dict):
    """Print a human-readable summary of a website report."""
    print("\n" + "=" * 60)
    print("WEBSITE POSTURE")
    print("=" * 60)

    print(f"\nURL:            {report['url']}")
    print(f"Security Score: {report['security_score']}/100")

    present = sum(1 for value in report['headers'].values() if value)
    print(f"Headers:        {present}/{len(report['headers'])} present")

    tls = report['tls']
    if tls['valid']:
        print(f"TLS:            valid, {tls['days_remaining']} days remaining ({tls['issuer']})")
    else:
        print(f"TLS:            invalid ({tls['error']})")

    print(f"Cookies:        {len(report['cookies'])}")
    print(f"Server:         {report['exposed']['server_header']}")

    if report.get('recommendations'):
        print("\nRecommendations:")
        for line in report['recommendations']:
            print(f"  - {line}")


def exit_code_for(summary: dict) -> int:
    """2 when critical issues exist, 1 for high, else 0."""
    if summary.get('critical', 0) > 0:
        return 2  # Critical findings
    elif summary.get('high', 0) > 0:
        return 1  # High severity findings
    else:
        return 0  # Success


def _write_report(report: dict, output_dir: str, report_type: str) -> str:
    reporter = ReportGenerator()
    path = os.path.join(output_dir, reporter.report_filename(report_type))
    return reporter.generate_json_report(report, path, report_type=report_type)


def _build_config(args) -> ScanConfig:
    config = ScanConfig(
        parallel_workers=args.jobs,
        max_file_size=args.max_file_size,
        audit_dependencies=not args.no_deps
    )
    if args.exclude:
        config.exclude_dirs.extend(args.exclude)
    return config


def run_scan(args) -> int:
    """Run a source-tree scan based on CLI arguments."""
    config = _build_config(args)
    scanner = Scanner(config=config)

    if not args.json_only:
        print(f"Scanning: {args.target}")
        print("Please wait...")

    if os.path.isdir(args.target):
        report = scanner.scan(args.target, repo_url=os.path.abspath(args.target))
    else:
        try:
            with materialized_tree(default_acquirer(), args.target, args.branch) as root:
                report = scanner.scan(root, repo_url=args.target)
        except RepositoryReferenceError:
            print(f"Error: Target is neither a directory nor a GitHub URL: {args.target}", file=sys.stderr)
            return 1
        except AcquisitionError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    report_dict = report.to_dict()
    if args.severity:
        report_dict = filter_by_severity(report_dict, args.severity)

    if args.output:
        _write_report(report_dict, args.output, 'code')

    if args.json_only:
        print(json.dumps(report_dict, indent=2))
    else:
        print_summary(report_dict, verbose=args.verbose)

        if args.output:
            print(f"\nReport saved to: {args.output}")

    return exit_code_for(report_dict['summary'])


def run_site_scan(args) -> int:
    """Analyze a website based on CLI arguments."""
    analyzer = WebsiteAnalyzer()

    try:
        report = analyzer.analyze(args.site)
    except (InvalidURLError, WebsiteFetchError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    report_dict = report.to_dict()

    if args.output:
        _write_report(report_dict, args.output, 'site')

    if args.json_only:
        print(json.dumps(report_dict, indent=2))
    else:
        print_site_summary(report_dict)

    return 0


def run_server(args):
    """Start the Flask API server."""
    from .api.app import create_app

    app = create_app()

    print("Starting Posture Scanner API server...")
    print(f"Server: http://{args.host}:{args.port}")
    print(f"Documentation: http://{args.host}:{args.port}/")
    print("\nPress Ctrl+C to stop")

    app.run(
        host=args.host,
        port=args.port,
        debug=args.debug
    )


def main():
    """Main entry point."""
    parser = setup_argparse()
    args = parser.parse_args()

    if args.verbose:
        logger.setLevel(logging.DEBUG)

    if args.serve:
        run_server(args)
    elif args.site:
        sys.exit(run_site_scan(args))
    elif args.target:
        sys.exit(run_scan(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == '__main__':
    main()
