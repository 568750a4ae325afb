"""
Score aggregation and recommendations.

Both scores are plain functions of report fields: the same findings always
give the same integer in [0, 100].
"""

import math
from typing import Any, Dict, List, Sequence


# Deductions per finding for source-tree scans
TREE_WEIGHTS = {
    'critical_dependency': 15,
    'high_dependency': 8,
    'secret': 10,
    'insecure_function': 5,
    'sql_injection': 12,
    'high_container': 7,
    'license': 3,
}

# Credit budgets for website scans
WEBSITE_BUDGETS = {
    'headers': 40,
    'tls': 30,
    'tls_expiry_penalty': 5,
    'cookies': 20,
    'directory_listing': 5,
    'server_header': 5,
}

TLS_EXPIRY_WARNING_DAYS = 30
SERVER_NOT_DISCLOSED = 'Not disclosed'

# Report key -> response header name
SECURITY_HEADERS = {
    'csp': 'Content-Security-Policy',
    'x_frame_options': 'X-Frame-Options',
    'x_content_type_options': 'X-Content-Type-Options',
    'hsts': 'Strict-Transport-Security',
    'referrer_policy': 'Referrer-Policy',
    'permissions_policy': 'Permissions-Policy',
    'x_xss_protection': 'X-XSS-Protection',
    'cross_origin_embedder_policy': 'Cross-Origin-Embedder-Policy',
    'cross_origin_opener_policy': 'Cross-Origin-Opener-Policy',
    'cross_origin_resource_policy': 'Cross-Origin-Resource-Policy',
}


def _clamp(value: float) -> int:
    return int(max(0, min(100, value)))


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" + ("" if count == 1 else "s")


def compute_tree_score(
    dependencies: Sequence[Any],
    secrets: Sequence[Any],
    insecure_functions: Sequence[Any],
    sast_findings: Sequence[Any],
    docker_issues: Sequence[Any],
    license_issues: Sequence[Any]
) -> int:
    """
    Weighted-deduction score for a source tree.

    Args:
        dependencies: DependencyRecord list (vulnerable and outdated)
        secrets: SecretFinding list
        insecure_functions: InsecureFunctionFinding list
        sast_findings: SASTFinding list
        docker_issues: ContainerFinding list
        license_issues: LicenseIssue list

    Returns:
        Integer score between 0 and 100
    """
    deductions = 0
    deductions += sum(1 for d in dependencies if d.severity == 'critical') * TREE_WEIGHTS['critical_dependency']
    deductions += sum(1 for d in dependencies if d.severity == 'high') * TREE_WEIGHTS['high_dependency']
    deductions += len(secrets) * TREE_WEIGHTS['secret']
    deductions += len(insecure_functions) * TREE_WEIGHTS['insecure_function']
    deductions += sum(1 for f in sast_findings if f.type == 'sql_injection') * TREE_WEIGHTS['sql_injection']
    deductions += sum(1 for d in docker_issues if d.severity == 'high') * TREE_WEIGHTS['high_container']
    deductions += len(license_issues) * TREE_WEIGHTS['license']

    return _clamp(round(100 - deductions))


def compute_website_score(headers: Dict[str, bool], tls: Any, cookies: Sequence[Any], exposed: Any) -> int:
    """Weighted-credit score for a website posture report."""
    score = 0.0

    if headers:
        present = sum(1 for value in headers.values() if value)
        score += WEBSITE_BUDGETS['headers'] * present / len(headers)

    if tls.valid:
        score += WEBSITE_BUDGETS['tls']
        if tls.days_remaining is not None and tls.days_remaining < TLS_EXPIRY_WARNING_DAYS:
            score -= WEBSITE_BUDGETS['tls_expiry_penalty']

    if cookies:
        hardened = sum(1 for c in cookies if is_hardened_cookie(c))
        score += WEBSITE_BUDGETS['cookies'] * hardened / len(cookies)
    else:
        score += WEBSITE_BUDGETS['cookies']

    if not exposed.directory_listing:
        score += WEBSITE_BUDGETS['directory_listing']
    if exposed.server_header == SERVER_NOT_DISCLOSED:
        score += WEBSITE_BUDGETS['server_header']

    return _clamp(_round_half_up(score))


def is_hardened_cookie(cookie: Any) -> bool:
    return cookie.http_only and cookie.secure and (cookie.same_site or 'None').lower() != 'none'


def build_tree_recommendations(
    dependencies: Sequence[Any],
    secrets: Sequence[Any],
    insecure_functions: Sequence[Any],
    sast_findings: Sequence[Any],
    docker_issues: Sequence[Any],
    license_issues: Sequence[Any]
) -> List[str]:
    """One remediation line per non-empty finding category."""
    recommendations = []

    vulnerable = [d for d in dependencies if d.status == 'vulnerable']
    outdated = [d for d in dependencies if d.status == 'outdated']

    if secrets:
        recommendations.append(f"Remove {_plural(len(secrets), 'hardcoded secret')} and rotate the exposed credentials")
    if vulnerable:
        recommendations.append(f"Fix {_plural(len(vulnerable), 'vulnerable package')} with known advisories")
    if outdated:
        recommendations.append(f"Update {_plural(len(outdated), 'outdated package')} to current releases")
    if sast_findings:
        sql = sum(1 for f in sast_findings if f.type == 'sql_injection')
        line = f"Address {_plural(len(sast_findings), 'code security issue')}"
        if sql:
            line += f" ({sql} SQL injection)"
        recommendations.append(line)
    if insecure_functions:
        recommendations.append(f"Replace {_plural(len(insecure_functions), 'insecure function call')} with safer alternatives")
    if license_issues:
        high = sum(1 for issue in license_issues if issue.risk == 'high')
        recommendations.append(
            f"Review {_plural(len(license_issues), 'package')} with risky licenses ({high} high risk)"
        )
    if docker_issues:
        recommendations.append(f"Fix {_plural(len(docker_issues), 'Dockerfile issue')}")

    return recommendations


def build_website_recommendations(url: str, headers: Dict[str, bool], tls: Any, cookies: Sequence[Any], exposed: Any) -> List[str]:
    """Remediation lines derived from a website posture report."""
    recommendations = []

    missing = [SECURITY_HEADERS.get(key, key) for key, present in headers.items() if not present]
    if missing:
        recommendations.append(f"Add missing security headers: {', '.join(missing)}")

    if not tls.valid:
        reason = f" ({tls.error})" if tls.error else ""
        recommendations.append(f"Serve the site over HTTPS with a valid TLS certificate{reason}")
    elif tls.days_remaining is not None and tls.days_remaining < TLS_EXPIRY_WARNING_DAYS:
        recommendations.append(f"TLS certificate expires in {tls.days_remaining} days; renew it soon")

    weak = [c.name for c in cookies if not is_hardened_cookie(c)]
    if weak:
        recommendations.append(
            f"Set HttpOnly, Secure and SameSite=Lax/Strict on {_plural(len(weak), 'cookie')}: {', '.join(weak)}"
        )

    if exposed.directory_listing:
        recommendations.append("Disable directory listing on the web server")

    if exposed.server_header != SERVER_NOT_DISCLOSED:
        recommendations.append(f"Hide the Server header (currently '{exposed.server_header}')")

    if url.lower().startswith('http://') and not exposed.redirected_to_https:
        recommendations.append("Redirect HTTP traffic to HTTPS")

    return recommendations
