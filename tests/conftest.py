import os
import tempfile
import threading
import time

import pytest
import requests

os.environ.setdefault("ESP32_LOG_DIR", tempfile.mkdtemp(prefix="esp32-attendance-logs-"))

from esp32_attendance.config import CameraConfig  # noqa: E402


def make_jpeg(size: int = 2048, seed: int = 0) -> bytes:
    body = bytes((i * 7 + seed) % 200 for i in range(max(0, size - 6)))
    return b"\xff\xd8\xff\xe0" + body + b"\xff\xd9"


class FakeResponse:
    def __init__(self, status_code=200, content=b"", headers=None, chunks=None, text=None, json_body=None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self._chunks = chunks
        self._json_body = json_body
        self.text = text if text is not None else content.decode("latin-1")
        self.closed = False

    def json(self):
        if self._json_body is None:
            raise ValueError("no json body")
        return self._json_body

    def iter_content(self, chunk_size=4096):
        for chunk in self._chunks or []:
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk

    def close(self):
        self.closed = True


class FakeSession:
    """Routes GET/POST calls by URL; unknown URLs raise a connection error."""

    def __init__(self, routes=None, delay=0.0):
        self.routes = dict(routes or {})
        self.delay = delay
        self.calls = []
        self.posts = []
        self._lock = threading.Lock()

    def _resolve(self, url):
        handler = self.routes.get(url)
        if handler is None:
            raise requests.ConnectionError(f"unreachable: {url}")
        if callable(handler) and not isinstance(handler, FakeResponse):
            handler = handler()
        if isinstance(handler, BaseException):
            raise handler
        return handler

    def get(self, url, timeout=None, stream=False):
        with self._lock:
            self.calls.append(url)
        if self.delay:
            time.sleep(self.delay)
        return self._resolve(url)

    def post(self, url, **kwargs):
        with self._lock:
            self.posts.append((url, kwargs))
        return self._resolve(url)

    def close(self):
        pass


@pytest.fixture
def camera_config():
    return CameraConfig(
        base_url="http://192.168.1.50",
        snapshot_timeout_seconds=0.5,
        poll_interval_seconds=0.02,
        include_vendor_paths=True,
    )
