"""
Utility functions for the Posture Scanner.
Provides logging setup, the source tree walker, temp-directory helpers
and the shared HTTP session factory.
"""

import os
import shutil
import logging
import tempfile
import threading
from typing import Callable, Iterable, Iterator, List, NamedTuple, Optional
from pathlib import Path
import requests

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('posture_scanner')


# Directories never descended into
DEFAULT_EXCLUDE_DIRS = frozenset({
    'node_modules', '.git', 'dist', 'build', '.next',
})

# Files handed to the line-based detectors
DEFAULT_ALLOWED_EXTENSIONS = (
    '.js', '.jsx', '.ts', '.tsx', '.mjs', '.cjs',
    '.py', '.php', '.java', '.rb', '.go', '.cs',
    '.env', '.json', '.yml', '.yaml',
)

DEFAULT_MAX_FILE_SIZE = 5 * 1024 * 1024  # 5 MB

# User agent for outbound requests
USER_AGENT = (
    'Mozilla/5.0 (compatible; PostureScanner/1.0; '
    '+https://github.com/posture-scanner)'
)


class SourceFile(NamedTuple):
    """One file accepted by the tree walker."""
    path: str
    relative_path: str
    content: str
    lines: List[str]


def has_allowed_extension(filename: str, allowed_extensions: Iterable[str]) -> bool:
    """Match by name suffix so dotfiles like `.env` are recognised."""
    name = filename.lower()
    return any(name.endswith(ext) for ext in allowed_extensions)


def read_file_content(filepath: str, encoding: str = 'utf-8') -> Optional[str]:
    """
    Safely read file content with error handling.

    Args:
        filepath: Path to the file
        encoding: File encoding (default: utf-8)

    Returns:
        File content as string, or None if reading failed
    """
    try:
        with open(filepath, 'r', encoding=encoding, errors='ignore') as f:
            return f.read()
    except (IOError, OSError) as e:
        logger.warning(f"Skipped unreadable file {filepath}: {e}")
        return None


def walk_tree(
    root: str,
    exclude_dirs: Iterable[str] = DEFAULT_EXCLUDE_DIRS,
    allowed_extensions: Iterable[str] = DEFAULT_ALLOWED_EXTENSIONS,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
) -> Iterator[SourceFile]:
    """
    Recursively yield every matching file under a root directory.

    Traversal is depth-first with entries sorted by name, so two walks of
    the same tree produce the same sequence. Excluded directories are
    pruned, not filtered after the fact. Unreadable files and directories
    are logged and skipped.

    Args:
        root: Directory to walk
        exclude_dirs: Directory names to prune
        allowed_extensions: File name suffixes to accept
        max_file_size: Files larger than this (bytes) are skipped

    Yields:
        SourceFile tuples
    """
    exclude = set(exclude_dirs)
    extensions = tuple(ext.lower() for ext in allowed_extensions)

    def _on_error(error: OSError):
        logger.warning(f"Cannot access directory: {error.filename}")

    for dirpath, dirnames, filenames in os.walk(root, onerror=_on_error):
        dirnames[:] = sorted(d for d in dirnames if d not in exclude)

        for name in sorted(filenames):
            if not has_allowed_extension(name, extensions):
                continue

            filepath = os.path.join(dirpath, name)
            try:
                if os.path.getsize(filepath) > max_file_size:
                    logger.debug(f"Skipping large file: {filepath}")
                    continue
            except OSError as e:
                logger.warning(f"Skipped unreadable file {filepath}: {e}")
                continue

            content = read_file_content(filepath)
            if content is None:
                continue

            yield SourceFile(
                path=filepath,
                relative_path=get_relative_path(filepath, root),
                content=content,
                lines=content.splitlines()
            )


def create_temp_directory(prefix: str = 'posture_scanner_') -> str:
    """
    Create a temporary working directory.

    Args:
        prefix: Prefix for the temp directory name

    Returns:
        Path to the created temporary directory
    """
    return tempfile.mkdtemp(prefix=prefix)


def cleanup_temp_directory(directory: str) -> bool:
    """
    Safely remove a temporary directory and its contents.

    Args:
        directory: Path to the directory to remove

    Returns:
        True if successful, False otherwise
    """
    try:
        if os.path.exists(directory) and os.path.isdir(directory):
            shutil.rmtree(directory)
            return True
        return False
    except (IOError, OSError) as e:
        logger.error(f"Failed to cleanup directory {directory}: {e}")
        return False


def create_session(accept: str = 'application/json') -> requests.Session:
    """Create a requests session carrying the scanner's User-Agent."""
    session = requests.Session()
    session.headers.update({
        'User-Agent': USER_AGENT,
        'Accept': accept,
    })
    return session


class PerThreadSession:
    """
    Session-like wrapper that gives every calling thread its own
    requests.Session, created on first use by `factory`.
    """

    def __init__(self, factory: Callable[[], requests.Session] = create_session):
        self._factory = factory
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        session = getattr(self._local, 'session', None)
        if session is None:
            session = self._factory()
            self._local.session = session
        return session

    def get(self, url: str, **kwargs) -> requests.Response:
        return self.session.get(url, **kwargs)

    def post(self, url: str, **kwargs) -> requests.Response:
        return self.session.post(url, **kwargs)


def get_relative_path(filepath: str, base_dir: str) -> str:
    """Get the relative path of a file from a base directory."""
    try:
        return Path(filepath).relative_to(base_dir).as_posix()
    except ValueError:
        return filepath
