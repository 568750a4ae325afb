"""
Dependency auditor for npm manifests.

Reads the root package.json, resolves known vulnerabilities through an
ordered chain of feed strategies, checks every package against the npm
registry for staleness and license risk, and returns canonical
DependencyRecord and LicenseIssue lists.

All outbound calls are batched with a short pause between batches and
carry a timeout. A failed lookup drops that one package from the result.
Worker threads each use their own requests session.
"""

import os
import re
import json
import time
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, asdict, field, replace

import requests

from .utils import read_file_content, PerThreadSession
from .severity import get_severity_from_score, representative_score, severity_rank
from .licenses import LicenseIssue, evaluate_license


logger = logging.getLogger('posture_scanner.dependencies')

NPM_REGISTRY_URL = 'https://registry.npmjs.org'
OSV_API_URL = 'https://api.osv.dev/v1'
MANIFEST_NAME = 'package.json'

_RANGE_PREFIX = re.compile(r'^(?:[\^~]|[<>]=?|=|v)+\s*')
_VERSION_RE = re.compile(r'^(\d+)(?:\.(\d+))?(?:\.(\d+))?')


class ResolverExhausted(Exception):
    """Raised by a resolver strategy that could not produce any answer."""
    pass


@dataclass(frozen=True)
class DependencyRecord:
    """A dependency that is known-vulnerable or outdated."""
    name: str
    current_version: str
    latest_version: str
    severity: str
    status: str
    cve: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PackageMetadata:
    """Registry data for the latest published release of a package."""
    latest_version: Optional[str]
    license: Optional[str]
    deprecated: bool = False


@dataclass
class StalenessThresholds:
    """Major/minor distance at which an outdated package gets each severity."""
    high_major: int = 3
    medium_major: int = 2
    low_major: int = 1
    low_minor: int = 5

    def classify(self, current: Tuple[int, int, int], latest: Tuple[int, int, int]) -> Optional[str]:
        major_gap = latest[0] - current[0]
        if major_gap >= self.high_major:
            return 'high'
        if major_gap >= self.medium_major:
            return 'medium'
        if major_gap >= self.low_major:
            return 'low'
        if major_gap == 0 and latest[1] - current[1] >= self.low_minor:
            return 'low'
        return None


@dataclass
class AuditorConfig:
    """Endpoints, batching and timeouts for the dependency auditor."""
    registry_url: str = NPM_REGISTRY_URL
    osv_url: str = OSV_API_URL
    registry_batch_size: int = 10
    osv_batch_size: int = 100
    osv_detail_batch_size: int = 10
    npm_advisory_batch_size: int = 120
    osv_package_batch_size: int = 5
    batch_delay: float = 0.25
    registry_timeout: float = 10
    feed_timeout: float = 15
    max_workers: int = 10
    staleness: StalenessThresholds = field(default_factory=StalenessThresholds)


@dataclass
class AuditResult:
    records: List[DependencyRecord] = field(default_factory=list)
    license_issues: List[LicenseIssue] = field(default_factory=list)


def load_manifest(root: str) -> Dict[str, str]:
    """
    Read declared dependencies from the root package.json.

    Development and production sections are merged; the production value
    wins when a name appears in both. A missing or malformed manifest
    yields an empty mapping.
    """
    path = os.path.join(root, MANIFEST_NAME)
    if not os.path.isfile(path):
        return {}

    content = read_file_content(path)
    if content is None:
        return {}

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        logger.warning(f"Unparsable {MANIFEST_NAME}: {e}")
        return {}

    if not isinstance(data, dict):
        return {}

    merged: Dict[str, str] = {}
    for section in ('devDependencies', 'dependencies'):
        deps = data.get(section)
        if isinstance(deps, dict):
            merged.update({str(name): str(spec) for name, spec in deps.items()})
    return merged


def normalize_version(spec: str) -> str:
    """
    Reduce a version range to a single version string.

    Keeps the first alternative of `||`, the lower bound of a hyphen range
    and the first comparator of a set, then strips operator prefixes.
    """
    value = (spec or '').strip()
    if '||' in value:
        value = value.split('||')[0].strip()
    if ' - ' in value:
        value = value.split(' - ')[0].strip()
    value = _RANGE_PREFIX.sub('', value)
    parts = value.split()
    return parts[0] if parts else ''


def parse_version(version: Optional[str]) -> Optional[Tuple[int, int, int]]:
    """Parse the numeric core of a version, or None."""
    match = _VERSION_RE.match(version or '')
    if not match:
        return None
    major, minor, patch = match.groups()
    return int(major), int(minor or 0), int(patch or 0)


def chunked(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


def run_batched(
    items: Sequence[Any],
    batch_size: int,
    delay: float,
    fn: Callable[[Any], Any],
    max_workers: int = 10
) -> List[Optional[Any]]:
    """
    Apply `fn` to every item, one batch at a time.

    Calls within a batch run concurrently; the runner sleeps `delay`
    seconds between batches. An item whose call raises resolves to None
    without affecting the rest of its batch.

    Returns:
        Results aligned with `items`
    """
    results: List[Optional[Any]] = []

    for index, batch in enumerate(chunked(list(items), batch_size)):
        if index and delay > 0:
            time.sleep(delay)

        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(batch)))) as executor:
            futures = [executor.submit(fn, item) for item in batch]
            for item, future in zip(batch, futures):
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.warning(f"Lookup failed for {item!r}: {e}")
                    results.append(None)

    return results


def _post_json(session: requests.Session, url: str, payload: Any, timeout: float) -> Any:
    response = session.post(url, json=payload, timeout=timeout)
    if not 200 <= response.status_code < 300:
        raise requests.HTTPError(f"{url} returned HTTP {response.status_code}")
    return response.json()


def _most_severe_per_package(records: Iterable[DependencyRecord]) -> List[DependencyRecord]:
    best: Dict[str, DependencyRecord] = {}
    for record in records:
        current = best.get(record.name)
        if current is None or severity_rank(record.severity) < severity_rank(current.severity):
            best[record.name] = record
    return [best[name] for name in sorted(best)]


def _queryable_packages(manifest: Dict[str, str]) -> List[Tuple[str, str]]:
    """Packages whose declared version is concrete enough to query a feed."""
    packages = []
    for name, spec in sorted(manifest.items()):
        version = normalize_version(spec)
        if parse_version(version) is None:
            logger.debug(f"Skipping vulnerability lookup for {name}@{spec}: no concrete version")
            continue
        packages.append((name, version))
    return packages


@dataclass(frozen=True)
class OsvVulnerability:
    """An OSV vulnerability entry for one package version."""
    package: str
    version: str
    payload: Dict[str, Any]

    @property
    def identifier(self) -> Optional[str]:
        for alias in self.payload.get('aliases') or []:
            if str(alias).startswith('CVE-'):
                return alias
        return self.payload.get('id')

    def score(self) -> float:
        for entry in self.payload.get('severity') or []:
            try:
                return float(entry.get('score'))
            except (TypeError, ValueError):
                continue
        label = (self.payload.get('database_specific') or {}).get('severity')
        return representative_score(label or 'medium')

    def fixed_version(self) -> Optional[str]:
        for affected in self.payload.get('affected') or []:
            if (affected.get('package') or {}).get('name') != self.package:
                continue
            for version_range in affected.get('ranges') or []:
                for event in version_range.get('events') or []:
                    if event.get('fixed'):
                        return event['fixed']
        return None

    def to_record(self) -> DependencyRecord:
        return DependencyRecord(
            name=self.package,
            current_version=self.version,
            latest_version=self.fixed_version() or 'N/A',
            severity=get_severity_from_score(self.score()).value,
            status='vulnerable',
            cve=self.identifier,
            description=self.payload.get('summary') or (self.payload.get('details') or '')[:200] or None
        )


@dataclass(frozen=True)
class NpmAdvisory:
    """An advisory from the npm bulk advisory endpoint."""
    package: str
    version: str
    payload: Dict[str, Any]

    @property
    def identifier(self) -> Optional[str]:
        url = self.payload.get('url')
        if url:
            return url.rstrip('/').rsplit('/', 1)[-1]
        advisory_id = self.payload.get('id')
        return str(advisory_id) if advisory_id is not None else None

    def score(self) -> float:
        cvss = self.payload.get('cvss') or {}
        try:
            value = float(cvss.get('score'))
            if value > 0:
                return value
        except (TypeError, ValueError):
            pass
        return representative_score(self.payload.get('severity') or 'medium')

    def to_record(self) -> DependencyRecord:
        return DependencyRecord(
            name=self.package,
            current_version=self.version,
            latest_version='N/A',
            severity=get_severity_from_score(self.score()).value,
            status='vulnerable',
            cve=self.identifier,
            description=self.payload.get('title')
        )


class ResolverStrategy:
    """A way of turning a manifest into vulnerability records."""

    name = 'resolver'

    def resolve(self, manifest: Dict[str, str]) -> List[DependencyRecord]:
        """
        Resolve known vulnerabilities for the manifest.

        Raises:
            ResolverExhausted: if no part of the lookup succeeded
        """
        raise NotImplementedError


class OsvBatchResolver(ResolverStrategy):
    """OSV querybatch followed by a detail fetch per vulnerability id."""

    name = 'osv-batch'

    def __init__(self, session: requests.Session, config: AuditorConfig):
        self.session = session
        self.config = config

    def _query_chunk(self, chunk: Sequence[Tuple[str, str]]) -> List[Dict[str, Any]]:
        payload = {
            'queries': [
                {'package': {'name': name, 'ecosystem': 'npm'}, 'version': version}
                for name, version in chunk
            ]
        }
        data = _post_json(self.session, f"{self.config.osv_url}/querybatch", payload, self.config.feed_timeout)
        return data.get('results') or []

    def _fetch_vulnerability(self, vuln_id: str) -> Dict[str, Any]:
        response = self.session.get(f"{self.config.osv_url}/vulns/{quote(vuln_id)}", timeout=self.config.feed_timeout)
        if not 200 <= response.status_code < 300:
            raise requests.HTTPError(f"OSV detail for {vuln_id} returned HTTP {response.status_code}")
        return response.json()

    def resolve(self, manifest: Dict[str, str]) -> List[DependencyRecord]:
        packages = _queryable_packages(manifest)
        if not packages:
            return []

        chunks = chunked(packages, self.config.osv_batch_size)
        responses = run_batched(chunks, 1, self.config.batch_delay, self._query_chunk)
        if all(response is None for response in responses):
            raise ResolverExhausted("no OSV querybatch request succeeded")

        refs: List[Tuple[str, str, str]] = []
        for chunk, results in zip(chunks, responses):
            if results is None:
                logger.warning(f"OSV batch of {len(chunk)} packages unresolved")
                continue
            for (name, version), result in zip(chunk, results):
                for vuln in (result or {}).get('vulns') or []:
                    if vuln.get('id'):
                        refs.append((name, version, vuln['id']))

        vuln_ids = sorted({vuln_id for _, _, vuln_id in refs})
        fetched = run_batched(
            vuln_ids,
            self.config.osv_detail_batch_size,
            self.config.batch_delay,
            self._fetch_vulnerability,
            self.config.max_workers
        )
        details = dict(zip(vuln_ids, fetched))

        variants = [
            OsvVulnerability(name, version, details.get(vuln_id) or {'id': vuln_id})
            for name, version, vuln_id in refs
        ]
        return _most_severe_per_package(v.to_record() for v in variants)


class NpmAdvisoryResolver(ResolverStrategy):
    """npm bulk advisory endpoint."""

    name = 'npm-advisories'

    def __init__(self, session: requests.Session, config: AuditorConfig):
        self.session = session
        self.config = config

    def _query_chunk(self, chunk: Sequence[Tuple[str, str]]) -> Dict[str, List[Dict[str, Any]]]:
        payload = {name: [version] for name, version in chunk}
        url = f"{self.config.registry_url}/-/npm/v1/security/advisories/bulk"
        return _post_json(self.session, url, payload, self.config.feed_timeout) or {}

    def resolve(self, manifest: Dict[str, str]) -> List[DependencyRecord]:
        packages = _queryable_packages(manifest)
        if not packages:
            return []

        versions = dict(packages)
        chunks = chunked(packages, self.config.npm_advisory_batch_size)
        responses = run_batched(chunks, 1, self.config.batch_delay, self._query_chunk)
        if all(response is None for response in responses):
            raise ResolverExhausted("no npm advisory request succeeded")

        variants = []
        for response in responses:
            for name, advisories in (response or {}).items():
                if name not in versions:
                    continue
                variants.extend(NpmAdvisory(name, versions[name], advisory) for advisory in advisories or [])
        return _most_severe_per_package(v.to_record() for v in variants)


class OsvPackageResolver(ResolverStrategy):
    """OSV single-package query, a few packages at a time."""

    name = 'osv-package'

    def __init__(self, session: requests.Session, config: AuditorConfig):
        self.session = session
        self.config = config

    def _query_package(self, package: Tuple[str, str]) -> List[Dict[str, Any]]:
        name, version = package
        payload = {'package': {'name': name, 'ecosystem': 'npm'}, 'version': version}
        data = _post_json(self.session, f"{self.config.osv_url}/query", payload, self.config.feed_timeout)
        return data.get('vulns') or []

    def resolve(self, manifest: Dict[str, str]) -> List[DependencyRecord]:
        packages = _queryable_packages(manifest)
        if not packages:
            return []

        responses = run_batched(
            packages,
            self.config.osv_package_batch_size,
            self.config.batch_delay,
            self._query_package,
            self.config.max_workers
        )
        if all(response is None for response in responses):
            raise ResolverExhausted("no OSV package query succeeded")

        variants = []
        for (name, version), vulns in zip(packages, responses):
            if vulns is None:
                logger.warning(f"Vulnerability lookup failed for {name}@{version}")
                continue
            variants.extend(OsvVulnerability(name, version, vuln) for vuln in vulns)
        return _most_severe_per_package(v.to_record() for v in variants)


class ResolverChain:
    """
    Ordered fallback over resolver strategies.

    The first strategy that does not raise ResolverExhausted provides the
    answer, even when that answer is an empty list.
    """

    def __init__(self, strategies: Iterable[ResolverStrategy]):
        self.strategies = list(strategies)

    def resolve(self, manifest: Dict[str, str]) -> List[DependencyRecord]:
        for strategy in self.strategies:
            try:
                records = strategy.resolve(manifest)
            except ResolverExhausted as e:
                logger.warning(f"Resolver {strategy.name} exhausted: {e}")
                continue
            logger.info(f"Resolver {strategy.name} reported {len(records)} vulnerable packages")
            return records

        logger.warning("All vulnerability resolvers exhausted; continuing without vulnerability data")
        return []


def build_default_resolvers(session: requests.Session, config: AuditorConfig) -> List[ResolverStrategy]:
    return [
        OsvBatchResolver(session, config),
        NpmAdvisoryResolver(session, config),
        OsvPackageResolver(session, config),
    ]


class NpmRegistryClient:
    """Looks up the latest published release of a package."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        base_url: str = NPM_REGISTRY_URL,
        timeout: float = 10
    ):
        self.session = session or PerThreadSession()
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    def lookup(self, name: str) -> Optional[PackageMetadata]:
        """
        Fetch registry metadata for a package.

        Args:
            name: Package name, scoped names included

        Returns:
            PackageMetadata, or None on a network error or non-2xx status
        """
        url = f"{self.base_url}/{quote(name, safe='@')}/latest"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Registry lookup failed for {name}: {e}")
            return None

        if not 200 <= response.status_code < 300:
            logger.debug(f"Registry returned HTTP {response.status_code} for {name}")
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning(f"Registry returned invalid JSON for {name}")
            return None

        license_name = data.get('license')
        if isinstance(license_name, dict):
            license_name = license_name.get('type')

        return PackageMetadata(
            latest_version=data.get('version'),
            license=license_name if isinstance(license_name, str) else None,
            deprecated=bool(data.get('deprecated'))
        )


class DependencyAuditor:
    """
    Audits the manifest of a tree for vulnerable, outdated and
    restrictively licensed packages.
    """

    def __init__(
        self,
        config: Optional[AuditorConfig] = None,
        session: Optional[requests.Session] = None,
        registry: Optional[NpmRegistryClient] = None,
        resolvers: Optional[Iterable[ResolverStrategy]] = None
    ):
        self.config = config or AuditorConfig()
        self.session = session or PerThreadSession()
        self.registry = registry or NpmRegistryClient(
            self.session, self.config.registry_url, self.config.registry_timeout
        )
        if resolvers is None:
            resolvers = build_default_resolvers(self.session, self.config)
        self.chain = ResolverChain(resolvers)

    def audit(self, root: str) -> AuditResult:
        """
        Audit the package.json at the root of a tree.

        Args:
            root: Tree root directory

        Returns:
            AuditResult with one record per affected package
        """
        manifest = load_manifest(root)
        if not manifest:
            logger.debug("No declared dependencies; skipping audit")
            return AuditResult()

        logger.info(f"Auditing {len(manifest)} declared dependencies")

        vulnerable = {record.name: record for record in self.chain.resolve(manifest)}

        names = sorted(manifest)
        metadata = run_batched(
            names,
            self.config.registry_batch_size,
            self.config.batch_delay,
            self.registry.lookup,
            self.config.max_workers
        )

        records: List[DependencyRecord] = []
        license_issues: List[LicenseIssue] = []

        for name, meta in zip(names, metadata):
            version = normalize_version(manifest[name])

            if meta is None:
                logger.warning(f"No registry data for {name}; omitted from staleness and license checks")
                if name in vulnerable:
                    records.append(vulnerable[name])
                continue

            issue = evaluate_license(name, version, meta.license)
            if issue:
                license_issues.append(issue)

            if name in vulnerable:
                record = vulnerable[name]
                if record.latest_version == 'N/A' and meta.latest_version:
                    record = replace(record, latest_version=meta.latest_version)
                records.append(record)
                continue

            stale = self._staleness_record(name, version, meta)
            if stale:
                records.append(stale)

        return AuditResult(records=records, license_issues=license_issues)

    def _staleness_record(self, name: str, version: str, meta: PackageMetadata) -> Optional[DependencyRecord]:
        latest = meta.latest_version or 'N/A'

        if meta.deprecated:
            return DependencyRecord(
                name=name,
                current_version=version,
                latest_version=latest,
                severity='high',
                status='outdated',
                description='Package is deprecated by its maintainers'
            )

        current_parsed = parse_version(version)
        latest_parsed = parse_version(meta.latest_version)
        if current_parsed is None or latest_parsed is None:
            logger.debug(f"Skipping staleness for {name}: unparseable version {version!r} / {latest!r}")
            return None

        severity = self.config.staleness.classify(current_parsed, latest_parsed)
        if severity is None:
            return None

        major_gap = latest_parsed[0] - current_parsed[0]
        if major_gap > 0:
            description = f"{major_gap} major version(s) behind"
        else:
            description = f"{latest_parsed[1] - current_parsed[1]} minor version(s) behind"

        return DependencyRecord(
            name=name,
            current_version=version,
            latest_version=latest,
            severity=severity,
            status='outdated',
            description=description
        )
