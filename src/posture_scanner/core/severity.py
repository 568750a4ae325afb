"""
Severity model shared by every detector and auditor.
Provides the severity tiers, their total order and score thresholds.
"""

from enum import Enum
from typing import Dict, Any, Iterable


class SeverityLevel(Enum):
    """Enumeration of severity tiers."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Sort key: lower value sorts first
SEVERITY_ORDER: Dict[str, int] = {
    "critical": 0,
    "high": 1,
    "medium": 2,
    "low": 3,
}


# Severity level metadata
SEVERITY_METADATA: Dict[SeverityLevel, Dict[str, Any]] = {
    SeverityLevel.CRITICAL: {
        "score": 9.0,
        "description": "Critical issues that require immediate attention. "
                       "These can lead to full system compromise, data breach, or "
                       "remote code execution.",
    },
    SeverityLevel.HIGH: {
        "score": 7.0,
        "description": "High severity issues that pose significant risk. "
                       "These can lead to unauthorized access or significant "
                       "data exposure.",
    },
    SeverityLevel.MEDIUM: {
        "score": 4.0,
        "description": "Medium severity issues that should be addressed. "
                       "These usually require specific conditions to exploit.",
    },
    SeverityLevel.LOW: {
        "score": 2.0,
        "description": "Low severity issues with minimal impact. "
                       "These may indicate bad practices or minor disclosure.",
    },
}


def get_severity_from_string(severity_str: str) -> SeverityLevel:
    """
    Convert a severity string to SeverityLevel enum.

    Unknown values map to LOW. Feed vocabularies such as "moderate"
    are accepted as aliases.
    """
    severity_map = {
        "critical": SeverityLevel.CRITICAL,
        "high": SeverityLevel.HIGH,
        "medium": SeverityLevel.MEDIUM,
        "moderate": SeverityLevel.MEDIUM,
        "low": SeverityLevel.LOW,
        "info": SeverityLevel.LOW,
        "warning": SeverityLevel.LOW,
    }
    return severity_map.get((severity_str or "").lower(), SeverityLevel.LOW)


def get_severity_from_score(score: float) -> SeverityLevel:
    """
    Determine severity level from a numeric score.

    Args:
        score: Numeric score (0.0 - 10.0)

    Returns:
        Corresponding SeverityLevel
    """
    if score >= 9.0:
        return SeverityLevel.CRITICAL
    elif score >= 7.0:
        return SeverityLevel.HIGH
    elif score >= 4.0:
        return SeverityLevel.MEDIUM
    else:
        return SeverityLevel.LOW


def representative_score(severity_str: str) -> float:
    """Numeric score standing in for a label-only severity."""
    level = get_severity_from_string(severity_str)
    return SEVERITY_METADATA[level]["score"]


def severity_rank(severity: str) -> int:
    """Sort rank of a severity string; unknown values sort last."""
    return SEVERITY_ORDER.get((severity or "").lower(), len(SEVERITY_ORDER))


def count_by_severity(severities: Iterable[str]) -> Dict[str, int]:
    """Count severity strings into the four tiers."""
    counts = {"critical": 0, "high": 0, "medium": 0, "low": 0}
    for severity in severities:
        key = (severity or "").lower()
        if key in counts:
            counts[key] += 1
    return counts
