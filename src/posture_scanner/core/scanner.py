"""
Scanner module - orchestrates the source-tree pipeline.
This module walks a materialized tree once, runs the detector passes and
the dependency audit concurrently, and aggregates one ScanReport.

IMPORTANT: This module is input-source agnostic. The same scanning logic
is used regardless of whether the tree is a local checkout, a clone or an
extracted archive.
"""

import time
import logging
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor

from .utils import (
    DEFAULT_EXCLUDE_DIRS,
    DEFAULT_ALLOWED_EXTENSIONS,
    DEFAULT_MAX_FILE_SIZE,
    walk_tree
)
from .detectors import (
    DEFAULT_FINDING_CAP,
    DEFAULT_SAST_CAPS,
    SecretDetector,
    InsecureFunctionDetector,
    SASTDetector,
    ContainerDetector
)
from .dependencies import AuditorConfig, AuditResult, DependencyAuditor
from .severity import count_by_severity
from .scoring import compute_tree_score, build_tree_recommendations


@dataclass
class ScanConfig:
    """Configuration options for scanning."""
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    parallel_workers: int = 5
    exclude_dirs: List[str] = field(default_factory=lambda: sorted(DEFAULT_EXCLUDE_DIRS))
    allowed_extensions: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_EXTENSIONS))
    finding_cap: int = DEFAULT_FINDING_CAP
    sast_caps: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_SAST_CAPS))
    audit_dependencies: bool = True
    auditor: AuditorConfig = field(default_factory=AuditorConfig)


@dataclass
class ScanReport:
    """Represents the result of a complete source-tree scan."""
    repo_url: Optional[str]
    scan_date: str
    outdated_packages: List[Any]
    hardcoded_secrets: List[Any]
    insecure_functions: List[Any]
    license_issues: List[Any]
    docker_issues: List[Any]
    sast_findings: List[Any]
    summary: Dict[str, int]
    recommendations: List[str]

    def to_dict(self) -> Dict[str, Any]:
        """Convert scan report to dictionary."""
        return {
            "repo_url": self.repo_url,
            "scan_date": self.scan_date,
            "outdated_packages": [p.to_dict() for p in self.outdated_packages],
            "hardcoded_secrets": [f.to_dict() for f in self.hardcoded_secrets],
            "insecure_functions": [f.to_dict() for f in self.insecure_functions],
            "license_issues": [i.to_dict() for i in self.license_issues],
            "docker_issues": [f.to_dict() for f in self.docker_issues],
            "sast_findings": [f.to_dict() for f in self.sast_findings],
            "summary": dict(self.summary),
            "recommendations": list(self.recommendations)
        }


class Scanner:
    """
    Main scanner class that orchestrates the detection pipeline.

    Usage:
        scanner = Scanner()
        report = scanner.scan("/path/to/tree")
    """

    def __init__(self, config: Optional[ScanConfig] = None, auditor: Optional[DependencyAuditor] = None):
        """
        Initialize the scanner.

        Args:
            config: Optional scan configuration
            auditor: Dependency auditor; built from config.auditor when omitted
        """
        self.config = config or ScanConfig()
        self.auditor = auditor or DependencyAuditor(self.config.auditor)
        self.detectors = [
            SecretDetector(max_findings=self.config.finding_cap),
            InsecureFunctionDetector(max_findings=self.config.finding_cap),
            SASTDetector(caps=self.config.sast_caps),
            ContainerDetector(),
        ]
        self.logger = logging.getLogger('posture_scanner.scanner')

    def _audit(self, root: str) -> AuditResult:
        if not self.config.audit_dependencies:
            return AuditResult()
        try:
            return self.auditor.audit(root)
        except Exception:
            self.logger.exception("Dependency audit failed; continuing without dependency data")
            return AuditResult()

    def scan(self, root: str, repo_url: Optional[str] = None) -> ScanReport:
        """
        Scan a materialized tree.

        Args:
            root: Tree root directory
            repo_url: Repository reference echoed into the report

        Returns:
            ScanReport with findings, summary and recommendations
        """
        start_time = time.time()
        self.logger.info(f"Starting scan of {repo_url or root}")

        files = list(walk_tree(
            root,
            exclude_dirs=self.config.exclude_dirs,
            allowed_extensions=self.config.allowed_extensions,
            max_file_size=self.config.max_file_size
        ))
        self.logger.info(f"Found {len(files)} files to scan")

        with ThreadPoolExecutor(max_workers=max(1, self.config.parallel_workers)) as executor:
            detector_futures = [
                executor.submit(detector.run, root, files) for detector in self.detectors
            ]
            audit_future = executor.submit(self._audit, root)

            secrets, insecure, sast, docker = [f.result() for f in detector_futures]
            audit = audit_future.result()

        summary = self._summarize(audit, secrets, insecure, sast, docker)
        recommendations = build_tree_recommendations(
            audit.records, secrets, insecure, sast, docker, audit.license_issues
        )

        report = ScanReport(
            repo_url=repo_url,
            scan_date=datetime.now(timezone.utc).isoformat(),
            outdated_packages=audit.records,
            hardcoded_secrets=secrets,
            insecure_functions=insecure,
            license_issues=audit.license_issues,
            docker_issues=docker,
            sast_findings=sast,
            summary=summary,
            recommendations=recommendations
        )

        self.logger.info(
            f"Scan completed in {time.time() - start_time:.2f}s. "
            f"Found {summary['total_issues']} issues, score {summary['security_score']}."
        )
        return report

    def _summarize(self, audit: AuditResult, secrets, insecure, sast, docker) -> Dict[str, int]:
        severities = [r.severity for r in audit.records]
        severities += [f.severity for f in secrets]
        severities += [f.severity for f in insecure]
        severities += [f.severity for f in sast]
        severities += [f.severity for f in docker]
        severities += [i.risk for i in audit.license_issues]

        summary = {"total_issues": len(severities)}
        summary.update(count_by_severity(severities))
        summary["security_score"] = compute_tree_score(
            audit.records, secrets, insecure, sast, docker, audit.license_issues
        )
        return summary
