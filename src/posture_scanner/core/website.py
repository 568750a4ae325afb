"""
Website posture analyzer.
Fetches a single URL and reports security headers, cookie flags, TLS
certificate status and information exposure, together with a score.

IMPORTANT: This is NOT a crawler. Besides the page itself it only probes
/robots.txt and /sitemap.xml on the same origin.
"""

import ssl
import socket
import logging
import ipaddress
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin, urlparse
from dataclasses import dataclass, asdict, field
from concurrent.futures import ThreadPoolExecutor

import requests
from bs4 import BeautifulSoup

from .utils import create_session, PerThreadSession
from .scoring import (
    SECURITY_HEADERS,
    SERVER_NOT_DISCLOSED,
    compute_website_score,
    build_website_recommendations
)


logger = logging.getLogger('posture_scanner.website')

# Configuration constants
DEFAULT_TIMEOUT = 15  # seconds
PROBE_TIMEOUT = 5  # seconds
TLS_TIMEOUT = 10  # seconds
MAX_ROBOTS_LINES = 20
MAX_REDIRECTS = 10
HTML_ACCEPT = 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8'
ALLOWED_SCHEMES = {'http', 'https'}


class InvalidURLError(ValueError):
    """The URL is malformed, uses another scheme or targets a private host."""
    pass


class WebsiteFetchError(Exception):
    """The target page could not be fetched."""
    pass


@dataclass
class TLSInfo:
    valid: bool
    days_remaining: Optional[int] = None
    valid_from: Optional[str] = None
    valid_to: Optional[str] = None
    issuer: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CookieInfo:
    name: str
    http_only: bool
    secure: bool
    same_site: str = 'None'


@dataclass
class ExposedInfo:
    server_header: str = SERVER_NOT_DISCLOSED
    robots_txt: List[str] = field(default_factory=list)
    sitemap_exists: bool = False
    directory_listing: bool = False
    redirected_to_https: bool = False
    final_url: Optional[str] = None


@dataclass
class WebsiteReport:
    """Posture of one website."""
    url: str
    headers: Dict[str, bool]
    tls: TLSInfo
    exposed: ExposedInfo
    cookies: List[CookieInfo]
    security_score: int
    recommendations: List[str]

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary."""
        return asdict(self)


def _is_private_address(address: str) -> bool:
    ip = ipaddress.ip_address(address)
    return (
        ip.is_private or ip.is_loopback or ip.is_link_local
        or ip.is_reserved or ip.is_multicast or ip.is_unspecified
    )


def _is_private_host(hostname: str) -> bool:
    """Check if a hostname is, or resolves to, a non-public address."""
    if hostname.lower() == 'localhost':
        return True
    try:
        return _is_private_address(hostname)
    except ValueError:
        pass

    try:
        infos = socket.getaddrinfo(hostname, None)
    except socket.gaierror:
        return False
    return any(_is_private_address(info[4][0].split('%')[0]) for info in infos)


def validate_url(url: str, block_private_hosts: bool = True) -> str:
    """
    Validate that a URL may be analyzed.

    Args:
        url: URL to validate
        block_private_hosts: Refuse loopback, link-local and private targets

    Returns:
        The stripped URL

    Raises:
        InvalidURLError: If the URL is not acceptable
    """
    if not url or not isinstance(url, str):
        raise InvalidURLError("URL is required")

    url = url.strip()
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
    except ValueError as e:
        raise InvalidURLError(f"Malformed URL: {e}")

    if parsed.scheme not in ALLOWED_SCHEMES:
        raise InvalidURLError("Invalid URL. Must start with http:// or https://")

    if not hostname:
        raise InvalidURLError("URL must include a host")

    if block_private_hosts and _is_private_host(hostname):
        raise InvalidURLError("Cannot scan loopback or private network addresses")

    return url


def parse_set_cookie(raw: str) -> Optional[CookieInfo]:
    """Parse one Set-Cookie value; returns None when it has no name."""
    parts = [part.strip() for part in raw.split(';')]
    name, sep, _ = parts[0].partition('=')
    if not sep or not name.strip():
        return None

    flags = set()
    attributes = {}
    for part in parts[1:]:
        key, eq, value = part.partition('=')
        key = key.strip().lower()
        if eq:
            attributes[key] = value.strip()
        elif key:
            flags.add(key)

    same_site = attributes.get('samesite', '').capitalize()
    if same_site not in ('Lax', 'Strict', 'None'):
        same_site = 'None'

    return CookieInfo(
        name=name.strip(),
        http_only='httponly' in flags,
        secure='secure' in flags,
        same_site=same_site
    )


def _set_cookie_values(response: requests.Response) -> List[str]:
    """All Set-Cookie header values; requests folds repeated headers together."""
    raw_headers = getattr(getattr(response, 'raw', None), 'headers', None)
    if raw_headers is not None and hasattr(raw_headers, 'getlist'):
        values = raw_headers.getlist('Set-Cookie')
        if values:
            return list(values)
    value = response.headers.get('Set-Cookie')
    return [value] if value else []


def detect_directory_listing(html: str) -> bool:
    """Heuristic for auto-generated directory index pages."""
    soup = BeautifulSoup(html or '', 'html.parser')
    for tag in soup.find_all(['title', 'h1']):
        if tag.get_text(strip=True).lower().startswith('index of'):
            return True
    return 'directory listing' in soup.get_text(' ').lower()


def _cert_time(value: str) -> datetime:
    return datetime.fromtimestamp(ssl.cert_time_to_seconds(value), tz=timezone.utc)


def check_tls(hostname: str, port: int = 443, timeout: float = TLS_TIMEOUT) -> TLSInfo:
    """
    Verify the certificate a host presents and report its validity window.

    Args:
        hostname: Server name, verified against the certificate
        port: TLS port
        timeout: Connect and handshake timeout in seconds

    Returns:
        TLSInfo; failures are reported through `error`, never raised
    """
    context = ssl.create_default_context()
    try:
        with socket.create_connection((hostname, port), timeout=timeout) as sock:
            with context.wrap_socket(sock, server_hostname=hostname) as tls_sock:
                cert = tls_sock.getpeercert()
    except OSError as e:
        return TLSInfo(valid=False, error=str(e) or type(e).__name__)

    try:
        not_before = _cert_time(cert['notBefore'])
        not_after = _cert_time(cert['notAfter'])
    except (KeyError, ValueError) as e:
        return TLSInfo(valid=False, error=f"Unreadable certificate dates: {e}")

    now = datetime.now(timezone.utc)
    issuer_fields = dict(item[0] for item in cert.get('issuer', ()) if item)

    return TLSInfo(
        valid=not_before <= now <= not_after,
        days_remaining=(not_after - now).days,
        valid_from=not_before.isoformat(),
        valid_to=not_after.isoformat(),
        issuer=issuer_fields.get('organizationName') or issuer_fields.get('commonName')
    )


class WebsiteAnalyzer:
    """
    Analyzes the security posture of one URL.

    The main fetch must succeed; the robots/sitemap probes and the TLS
    check degrade to empty values on failure.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        probe_timeout: float = PROBE_TIMEOUT,
        tls_checker: Optional[Callable[[str, int], TLSInfo]] = None,
        block_private_hosts: bool = True
    ):
        """
        Initialize the analyzer.

        Args:
            session: requests session; a fresh one is created when omitted
            timeout: Main fetch timeout in seconds
            probe_timeout: robots.txt and sitemap.xml timeout in seconds
            tls_checker: Callable (hostname, port) -> TLSInfo
            block_private_hosts: Refuse loopback and private targets
        """
        self.session = session or PerThreadSession(
            lambda: create_session(accept=HTML_ACCEPT)
        )
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self.tls_checker = tls_checker or check_tls
        self.block_private_hosts = block_private_hosts

    def _get(self, url: str) -> requests.Response:
        try:
            return self.session.get(url, timeout=self.timeout, allow_redirects=False)
        except requests.exceptions.Timeout:
            raise WebsiteFetchError("Request timed out. The website might be slow or unreachable.")
        except requests.exceptions.RequestException as e:
            raise WebsiteFetchError(f"Failed to fetch website: {e}")

    def _fetch(self, url: str) -> requests.Response:
        """
        Fetch the page, following redirects one hop at a time.

        Every Location target goes through validate_url before it is requested.
        """
        response = self._get(url)
        hops = 0
        while response.is_redirect:
            hops += 1
            if hops > MAX_REDIRECTS:
                raise WebsiteFetchError(f"Failed to fetch website: more than {MAX_REDIRECTS} redirects")
            location = urljoin(response.url or url, response.headers['Location'])
            url = validate_url(location, self.block_private_hosts)
            logger.debug(f"Following redirect to {url}")
            response = self._get(url)
        return response

    def _probe_robots(self, url: str) -> List[str]:
        try:
            response = self.session.get(
                urljoin(url, '/robots.txt'), timeout=self.probe_timeout, allow_redirects=False
            )
        except requests.exceptions.RequestException as e:
            logger.debug(f"robots.txt probe failed: {e}")
            return []
        if response.status_code != 200:
            return []
        lines = [line.strip() for line in response.text.splitlines()]
        return [line for line in lines if line and not line.startswith('#')][:MAX_ROBOTS_LINES]

    def _probe_sitemap(self, url: str) -> bool:
        try:
            response = self.session.get(
                urljoin(url, '/sitemap.xml'), timeout=self.probe_timeout, allow_redirects=False
            )
        except requests.exceptions.RequestException as e:
            logger.debug(f"sitemap.xml probe failed: {e}")
            return False
        return 200 <= response.status_code < 300

    def _check_tls(self, url: str) -> TLSInfo:
        parsed = urlparse(url)
        if parsed.scheme != 'https':
            return TLSInfo(valid=False, error="Not using HTTPS")
        try:
            return self.tls_checker(parsed.hostname, parsed.port or 443)
        except Exception as e:
            logger.warning(f"TLS check failed for {parsed.hostname}: {e}")
            return TLSInfo(valid=False, error=str(e) or "TLS certificate check failed")

    def analyze(self, url: str) -> WebsiteReport:
        """
        Run the full posture analysis.

        Args:
            url: Target URL with an explicit http or https scheme

        Returns:
            WebsiteReport

        Raises:
            InvalidURLError: If the URL is rejected
            WebsiteFetchError: If the page itself cannot be fetched
        """
        url = validate_url(url, self.block_private_hosts)
        logger.info(f"Analyzing website: {url}")

        response = self._fetch(url)
        final_url = response.url or url
        redirected_to_https = url.lower().startswith('http://') and final_url.lower().startswith('https://')

        headers = {
            key: header in response.headers
            for key, header in SECURITY_HEADERS.items()
        }

        cookies = [
            cookie for cookie in (parse_set_cookie(raw) for raw in _set_cookie_values(response))
            if cookie is not None
        ]

        with ThreadPoolExecutor(max_workers=2) as executor:
            robots_future = executor.submit(self._probe_robots, url)
            sitemap_future = executor.submit(self._probe_sitemap, url)
            tls = self._check_tls(url)
            robots_txt = robots_future.result()
            sitemap_exists = sitemap_future.result()

        exposed = ExposedInfo(
            server_header=response.headers.get('Server') or SERVER_NOT_DISCLOSED,
            robots_txt=robots_txt,
            sitemap_exists=sitemap_exists,
            directory_listing=detect_directory_listing(response.text),
            redirected_to_https=redirected_to_https,
            final_url=final_url if final_url != url else None
        )

        report = WebsiteReport(
            url=url,
            headers=headers,
            tls=tls,
            exposed=exposed,
            cookies=cookies,
            security_score=compute_website_score(headers, tls, cookies, exposed),
            recommendations=build_website_recommendations(url, headers, tls, cookies, exposed)
        )
        logger.info(f"Website {url} scored {report.security_score}")
        return report
