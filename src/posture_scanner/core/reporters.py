"""
Report writer for scan results.
Writes the JSON document of a source-tree or website report to disk.
"""

import os
import json
from typing import Dict, Any
from datetime import datetime, timezone

from .utils import logger


class ReportGenerator:
    """Writes scan reports as JSON files."""

    def __init__(self):
        self.logger = logger

    def generate_json_report(
        self,
        report: Dict[str, Any],
        output_path: str,
        report_type: str = 'code'
    ) -> str:
        """
        Generate a JSON report from a report dictionary.

        Args:
            report: Report dictionary (ScanReport.to_dict or WebsiteReport.to_dict)
            output_path: Path to save the report
            report_type: 'code' or 'site'

        Returns:
            Path to the generated report
        """
        document = {
            "report_generated": datetime.now(timezone.utc).isoformat(),
            "report_type": report_type,
            "report_version": "1.0",
            **report
        }

        # Ensure output directory exists
        os.makedirs(os.path.dirname(output_path) or '.', exist_ok=True)

        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(document, f, indent=2, default=str)

        self.logger.info(f"JSON report generated: {output_path}")
        return output_path

    @staticmethod
    def report_filename(report_type: str) -> str:
        """Timestamped file name for a report."""
        stamp = datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%SZ')
        return f"posture_{report_type}_{stamp}.json"
