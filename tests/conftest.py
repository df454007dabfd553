# tests/conftest.py
"""Pytest configuration and fixtures"""
from __future__ import annotations

import io
import sys
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

import pytest
from PIL import Image
from starlette.requests import Request

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from pixelgate.config import Settings  # noqa: E402


# ============================================================================
# Images
# ============================================================================

def make_image(
    width: int = 10,
    height: int = 10,
    fmt: str = "PNG",
    mode: str = "RGB",
    color: Any = (200, 30, 30),
    exif_orientation: int | None = None,
) -> bytes:
    """Encode a solid-color test image in memory."""
    img = Image.new(mode, (width, height), color)
    output = io.BytesIO()
    options = {}
    if exif_orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = exif_orientation
        options["exif"] = exif.tobytes()
    img.save(output, format=fmt, **options)
    return output.getvalue()


def image_size(data: bytes) -> tuple[int, int]:
    return Image.open(io.BytesIO(data)).size


def image_format(data: bytes) -> str:
    return Image.open(io.BytesIO(data)).format


@pytest.fixture
def png_10x10() -> bytes:
    return make_image(10, 10, "PNG")


@pytest.fixture
def jpeg_40x20() -> bytes:
    return make_image(40, 20, "JPEG")


# ============================================================================
# Settings
# ============================================================================

def make_settings(**overrides) -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(_env_file=None, **overrides)


# ============================================================================
# Requests
# ============================================================================

def make_request(
    method: str = "GET",
    path: str = "/resize",
    query: dict[str, str] | str | None = None,
    headers: dict[str, str] | None = None,
) -> Request:
    """Bare Starlette request (no body) for source matching and layers."""
    if isinstance(query, dict):
        query = urlencode(query)
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "query_string": (query or "").encode(),
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "scheme": "http",
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 1234),
    }
    return Request(scope)


# ============================================================================
# Fake aiohttp session
# ============================================================================

class FakeContent:
    def __init__(self, body: bytes):
        self._body = body

    async def iter_chunked(self, size: int):
        for offset in range(0, len(self._body), size):
            yield self._body[offset:offset + size]


class FakeResponse:
    """Async context manager mimicking aiohttp.ClientResponse."""

    def __init__(
        self,
        status: int = 200,
        body: bytes = b"",
        headers: dict[str, str] | None = None,
        error: Exception | None = None,
    ):
        self.status = status
        self.headers = {"Content-Length": str(len(body)), **(headers or {})}
        self.content = FakeContent(body)
        self._error = error

    async def __aenter__(self):
        if self._error is not None:
            raise self._error
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    """
    Records every outbound request.

    ``routes`` maps ``(METHOD, url)`` or ``url`` to a FakeResponse; unknown
    URLs answer 404.
    """

    def __init__(self, routes: dict | None = None):
        self.routes = routes or {}
        self.calls: list[tuple[str, str, dict[str, str]]] = []
        self.closed = False

    def request(self, method: str, url: str, headers=None, timeout=None, allow_redirects=True):
        self.calls.append((method, url, dict(headers or {})))
        response = self.routes.get((method, url)) or self.routes.get(url)
        if response is None:
            return FakeResponse(404)
        return response


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()
