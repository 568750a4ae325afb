"""Shared test configuration and fakes.

Network is never touched: HTTP clients receive a FakeSession that serves
canned responses by (method, url).
"""

from pathlib import Path

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from posture_scanner.core.dependencies import AuditorConfig


class FakeRawHeaders:
    def __init__(self, set_cookies):
        self._set_cookies = list(set_cookies)

    def getlist(self, name):
        if name.lower() == 'set-cookie':
            return list(self._set_cookies)
        return []


class FakeRaw:
    def __init__(self, set_cookies=()):
        self.headers = FakeRawHeaders(set_cookies)


class FakeResponse:
    def __init__(
        self,
        status_code=200,
        json_data=None,
        text='',
        headers=None,
        url='',
        content=b'',
        set_cookies=()
    ):
        self.status_code = status_code
        self._json = json_data
        self.text = text
        self.headers = CaseInsensitiveDict(headers or {})
        self.url = url
        self.content = content
        self.raw = FakeRaw(set_cookies)

    @property
    def is_redirect(self):
        return 'Location' in self.headers and self.status_code in (301, 302, 303, 307, 308)

    def json(self):
        if self._json is None:
            raise ValueError("response has no JSON body")
        return self._json

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start:start + chunk_size]


class FakeSession:
    """Routes (METHOD, url) to a response, an exception, or a callable."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def _dispatch(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        handler = self.routes.get((method, url))
        if handler is None:
            raise requests.ConnectionError(f"no route for {method} {url}")
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            return handler(**kwargs)
        return handler

    def get(self, url, **kwargs):
        return self._dispatch('GET', url, **kwargs)

    def post(self, url, **kwargs):
        return self._dispatch('POST', url, **kwargs)


def write(root: Path, relative: str, content: str) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding='utf-8')
    return path


@pytest.fixture
def fast_config():
    """Auditor configuration without inter-batch pauses."""
    return AuditorConfig(batch_delay=0)
