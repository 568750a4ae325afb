"""
License risk evaluation for resolved packages.
"""

from typing import Dict, Any, Optional, NamedTuple
from dataclasses import dataclass, asdict


class LicenseFamily(NamedTuple):
    fragment: str
    family: str
    risk: str
    reason: str


# Ordered: specific fragments must precede "GPL", which they contain.
RISKY_LICENSE_FAMILIES = (
    LicenseFamily(
        "AGPL", "network-copyleft", "high",
        "Forces network applications to share source (SaaS restriction)."
    ),
    LicenseFamily(
        "SSPL", "service-restriction", "high",
        "Restricts hosting as a service; not open-source friendly."
    ),
    LicenseFamily(
        "CC-BY-NC", "non-commercial", "medium",
        "Non-commercial license; not suitable for commercial projects."
    ),
    LicenseFamily(
        "LGPL", "partial-copyleft", "medium",
        "Partial copyleft; may impose source linking obligations."
    ),
    LicenseFamily(
        "GPL", "copyleft", "high",
        "Requires disclosing derivative source code (copyleft)."
    ),
)


@dataclass(frozen=True)
class LicenseIssue:
    """A dependency released under a restrictive license."""
    package: str
    license: str
    risk: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def classify_license(license_name: Optional[str]) -> Optional[LicenseFamily]:
    """Return the first risky family whose fragment occurs in the license string."""
    if not license_name:
        return None
    upper = license_name.upper()
    for family in RISKY_LICENSE_FAMILIES:
        if family.fragment in upper:
            return family
    return None


def evaluate_license(name: str, version: str, license_name: Optional[str]) -> Optional[LicenseIssue]:
    """
    Build a LicenseIssue for a package when its license is risky.

    Args:
        name: Package name
        version: Declared (normalized) version
        license_name: License string reported by the registry

    Returns:
        LicenseIssue, or None for permissive or unknown licenses
    """
    family = classify_license(license_name)
    if family is None:
        return None
    return LicenseIssue(
        package=f"{name}@{version}",
        license=license_name,
        risk=family.risk,
        reason=family.reason
    )
