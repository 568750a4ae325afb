"""
Repository acquisition: turns a GitHub reference into a local tree.

Acquirers materialize a repository inside a caller-owned workspace
directory. `materialized_tree` owns that workspace and always deletes it.
"""

import io
import os
import re
import logging
import zipfile
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional, Tuple

import requests
from git import Repo
from git.exc import GitCommandError, GitCommandNotFound

from .utils import create_temp_directory, cleanup_temp_directory, create_session


logger = logging.getLogger('posture_scanner.acquisition')

GITHUB_REPO_PATTERN = re.compile(r'^https://github\.com/([\w.-]+)/([\w.-]+?)(?:\.git)?/?$')
CODELOAD_URL = 'https://codeload.github.com/{owner}/{repo}/zip/refs/heads/{branch}'

DEFAULT_BRANCH = 'main'
FALLBACK_BRANCH = 'master'
GIT_TIMEOUT = 30  # seconds
ARCHIVE_TIMEOUT = 60  # seconds
MAX_ARCHIVE_SIZE = 200 * 1024 * 1024  # 200 MB


class RepositoryReferenceError(ValueError):
    """The repository reference is not an accepted GitHub URL."""
    pass


class AcquisitionError(Exception):
    """The repository could not be materialized."""
    pass


def parse_repository_reference(repo_url: str) -> Tuple[str, str]:
    """
    Split a GitHub URL into owner and repository name.

    Raises:
        RepositoryReferenceError: for anything but https://github.com/<owner>/<repo>
    """
    match = GITHUB_REPO_PATTERN.match((repo_url or '').strip())
    if not match:
        raise RepositoryReferenceError(
            "Invalid repository URL. Expected https://github.com/<owner>/<repo>"
        )
    return match.group(1), match.group(2)


def validate_repository_reference(repo_url: str) -> str:
    """Return the canonical https://github.com/<owner>/<repo> form of a reference."""
    owner, repo = parse_repository_reference(repo_url)
    return f"https://github.com/{owner}/{repo}"


def sanitize_branch(branch: Optional[str]) -> str:
    """Strip characters that are not valid in a plain branch name."""
    cleaned = re.sub(r'[^\w\-/.]', '', branch or '').lstrip('-')
    return cleaned or DEFAULT_BRANCH


def _branch_candidates(branch: str) -> Iterable[str]:
    yield branch
    if branch != FALLBACK_BRANCH:
        yield FALLBACK_BRANCH


class GitAcquirer:
    """Shallow `git clone` of one branch through GitPython, falling back to master."""

    def __init__(self, timeout: int = GIT_TIMEOUT):
        self.timeout = timeout

    def _clone(self, repo_url: str, branch: str, destination: str):
        Repo.clone_from(
            repo_url,
            destination,
            depth=1,
            branch=branch,
            env={'GIT_TERMINAL_PROMPT': '0'},
            kill_after_timeout=self.timeout
        )

    def acquire(self, repo_url: str, branch: str, workspace: str) -> str:
        destination = os.path.join(workspace, 'clone')

        for candidate in _branch_candidates(branch):
            cleanup_temp_directory(destination)
            try:
                self._clone(repo_url, candidate, destination)
                logger.info(f"Cloned {repo_url}@{candidate}")
                return destination
            except GitCommandNotFound as e:
                raise AcquisitionError(f"git executable not available: {e}")
            except GitCommandError as e:
                detail = (e.stderr or '').strip() or f"git clone exited with {e.status}"
                logger.warning(f"Clone of {repo_url}@{candidate} failed: {detail}")

        raise AcquisitionError(
            "Failed to clone. Ensure the repository is public and the branch exists."
        )


class ArchiveAcquirer:
    """Downloads the codeload zip of a branch and extracts it."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: int = ARCHIVE_TIMEOUT,
        max_size: int = MAX_ARCHIVE_SIZE
    ):
        self.session = session or create_session(accept='application/zip')
        self.timeout = timeout
        self.max_size = max_size

    def _download(self, url: str) -> bytes:
        try:
            response = self.session.get(url, timeout=self.timeout, stream=True)
        except requests.exceptions.RequestException as e:
            raise AcquisitionError(f"Archive download failed: {e}")

        if response.status_code != 200:
            raise AcquisitionError(f"Archive download failed: HTTP {response.status_code}")

        content = bytearray()
        for chunk in response.iter_content(chunk_size=65536):
            content.extend(chunk)
            if len(content) > self.max_size:
                raise AcquisitionError(
                    f"Archive exceeded size limit of {self.max_size} bytes"
                )
        return bytes(content)

    def acquire(self, repo_url: str, branch: str, workspace: str) -> str:
        owner, repo = parse_repository_reference(repo_url)
        destination = os.path.join(workspace, 'archive')
        last_error = None

        for candidate in _branch_candidates(branch):
            url = CODELOAD_URL.format(owner=owner, repo=repo, branch=candidate)
            try:
                content = self._download(url)
                cleanup_temp_directory(destination)
                os.makedirs(destination)
                with zipfile.ZipFile(io.BytesIO(content)) as archive:
                    safe_extract(archive, destination)
                logger.info(f"Extracted {repo_url}@{candidate} archive")
                return _single_top_level(destination)
            except zipfile.BadZipFile as e:
                last_error = AcquisitionError(f"Invalid archive: {e}")
            except AcquisitionError as e:
                last_error = e
            logger.warning(f"Archive of {repo_url}@{candidate} failed: {last_error}")

        raise last_error


def safe_extract(archive: zipfile.ZipFile, destination: str):
    """
    Extract a zip file, refusing members that resolve outside `destination`.

    Raises:
        AcquisitionError: if any member path escapes the destination
    """
    root = os.path.realpath(destination)
    for member in archive.infolist():
        target = os.path.realpath(os.path.join(root, member.filename))
        if os.path.commonpath([root, target]) != root:
            raise AcquisitionError(f"Archive member escapes workspace: {member.filename}")
    archive.extractall(root)


def _single_top_level(directory: str) -> str:
    """GitHub archives wrap the tree in one `<repo>-<branch>` folder."""
    entries = os.listdir(directory)
    if len(entries) == 1 and os.path.isdir(os.path.join(directory, entries[0])):
        return os.path.join(directory, entries[0])
    return directory


class FallbackAcquirer:
    """Tries each acquirer in order until one succeeds."""

    def __init__(self, acquirers: Iterable):
        self.acquirers = list(acquirers)

    def acquire(self, repo_url: str, branch: str, workspace: str) -> str:
        errors = []
        for acquirer in self.acquirers:
            try:
                return acquirer.acquire(repo_url, branch, workspace)
            except AcquisitionError as e:
                logger.warning(f"{type(acquirer).__name__} failed: {e}")
                errors.append(str(e))
        raise AcquisitionError(errors[-1] if errors else "No acquirer configured")


def default_acquirer() -> FallbackAcquirer:
    return FallbackAcquirer([GitAcquirer(), ArchiveAcquirer()])


@contextmanager
def materialized_tree(acquirer, repo_url: str, branch: Optional[str] = DEFAULT_BRANCH) -> Iterator[str]:
    """
    Materialize a repository for the duration of a with-block.

    The reference is validated before any work. The temporary workspace
    is removed on exit whether the block succeeds or raises.

    Args:
        acquirer: Object with acquire(repo_url, branch, workspace) -> path
        repo_url: GitHub repository URL
        branch: Branch name, sanitized; defaults to main

    Yields:
        Path to the tree root
    """
    repo_url = validate_repository_reference(repo_url)
    branch = sanitize_branch(branch)

    workspace = create_temp_directory(prefix='posture_scan_')
    try:
        yield acquirer.acquire(repo_url, branch, workspace)
    finally:
        cleanup_temp_directory(workspace)
        logger.debug(f"Removed workspace {workspace}")
