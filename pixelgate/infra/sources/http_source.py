# pixelgate/infra/sources/http_source.py
"""
Remote URL image source.

Handles ``GET ?url=...`` requests.  Security:
- Only http/https URLs
- Origin allow-list (exact host or ``*.`` wildcard, plus path prefix),
  checked before any outbound call and again on every redirect hop
- Optional HEAD probe rejecting oversized images before download
- Bounded body reader (never buffers more than the size limit)
- Authorization stripped on cross-origin redirects
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional
from urllib.parse import SplitResult, urljoin, urlsplit

import aiohttp
from starlette.requests import Request

from pixelgate import __version__
from pixelgate.core.errors import (
    ForbiddenError,
    PayloadTooLargeError,
    UpstreamFetchError,
    invalid_image_url,
)
from pixelgate.infra.http_client import get_fetcher_session
from pixelgate.infra.logging_config import get_logger
from pixelgate.infra.sources.base import AllowedOrigin, SourceConfig

logger = get_logger(__name__)

URL_QUERY_KEY = "url"
USER_AGENT = f"pixelgate/{__version__}"
MAX_REDIRECTS = 5
REDIRECT_STATUSES = (301, 302, 303, 307, 308)
READ_CHUNK_SIZE = 64 * 1024
WATERMARK_MAX_SIZE = 1_000_000


def _host(parts: SplitResult) -> str:
    return parts.netloc.rsplit("@", 1)[-1].lower()


def origin_allowed(parts: SplitResult, origins: tuple[AllowedOrigin, ...]) -> bool:
    """An empty allow-list admits every origin."""
    if not origins:
        return True

    host = _host(parts)
    path = parts.path
    for origin in origins:
        if not path.startswith(origin.path):
            continue
        if origin.host == host:
            return True
        if origin.is_wildcard:
            suffix = origin.host[1:]  # ".example.org"
            if host == origin.host[2:] or host.endswith(suffix):
                return True
    return False


class RemoteFetcher:
    """
    Guarded downloader shared by the URL source and the watermark-image fetch.

    Sessions come from ``get_fetcher_session`` unless a factory is injected.
    """

    def __init__(
        self,
        config: SourceConfig,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self.config = config
        self._session_factory = session_factory
        self._timeout = aiohttp.ClientTimeout(total=config.fetch_timeout, connect=15)

    def _session(self) -> aiohttp.ClientSession:
        if self._session_factory is not None:
            return self._session_factory()
        return get_fetcher_session()

    def check_url(self, url: str) -> SplitResult:
        """
        Parse and authorize a remote URL without touching the network.

        Raises:
            InvalidInputError: Not an absolute http(s) URL
            ForbiddenError: Origin not allow-listed
        """
        try:
            parts = urlsplit(url)
        except ValueError:
            raise invalid_image_url()
        if parts.scheme not in ("http", "https") or not _host(parts):
            raise invalid_image_url()

        if not origin_allowed(parts, self.config.allowed_origins):
            logger.warning(f"Blocked remote origin: {_host(parts)}")
            raise ForbiddenError(f"not allowed remote URL origin: {_host(parts)}{parts.path}")
        return parts

    @asynccontextmanager
    async def _open(self, method: str, url: str, headers: dict[str, str]) -> AsyncIterator[aiohttp.ClientResponse]:
        """Issue a request, following redirects manually (max 5 hops)."""
        session = self._session()
        current_url = url
        current_headers = dict(headers)
        original_host = _host(urlsplit(url))

        for hop in range(MAX_REDIRECTS + 1):
            async with session.request(
                method,
                current_url,
                headers=current_headers,
                timeout=self._timeout,
                allow_redirects=False,
            ) as response:
                if response.status not in REDIRECT_STATUSES:
                    yield response
                    return

                location = response.headers.get("Location")
                if not location:
                    raise UpstreamFetchError(
                        f"error fetching remote http image: redirect {response.status} without Location header"
                    )

                next_url = urljoin(current_url, location)
                next_host = _host(self.check_url(next_url))
                logger.debug(f"Redirect hop {hop + 1}: {response.status} → {next_host}")

                if next_host != original_host:
                    current_headers = {
                        k: v for k, v in current_headers.items() if k.lower() != "authorization"
                    }
                current_url = next_url

        raise UpstreamFetchError(f"error fetching remote http image: too many redirects (>{MAX_REDIRECTS})")

    async def _probe_size(self, url: str, headers: dict[str, str], max_size: int) -> None:
        async with self._open("HEAD", url, headers) as response:
            if not 200 <= response.status <= 206:
                raise UpstreamFetchError(
                    f"invalid status checking image size: (status={response.status}) (url={url})",
                    response.status,
                )
            declared = response.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > max_size:
                raise PayloadTooLargeError(
                    f"content length {declared} exceeds maximum allowed {max_size} bytes"
                )

    async def fetch(
        self,
        url: str,
        headers: Optional[dict[str, str]] = None,
        max_size: Optional[int] = None,
    ) -> bytes:
        """
        Download ``url`` through every guard.

        Args:
            url: Absolute http(s) URL
            headers: Extra outbound headers (forwarded headers, Authorization)
            max_size: Byte limit; defaults to the configured maximum, 0 = unlimited

        Raises:
            GatewayError: Typed failure (400/403/413 or the upstream status)
        """
        self.check_url(url)
        limit = self.config.max_allowed_size if max_size is None else max_size
        outbound = {"User-Agent": USER_AGENT, **(headers or {})}

        try:
            if limit > 0:
                await self._probe_size(url, outbound, limit)

            async with self._open("GET", url, outbound) as response:
                if response.status != 200:
                    raise UpstreamFetchError(
                        f"error fetching remote http image: (status={response.status}) (url={url})",
                        response.status,
                    )
                return await self._read_bounded(response, limit)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Remote fetch failed for {_host(urlsplit(url))}: {type(e).__name__}")
            raise UpstreamFetchError(f"error fetching remote http image: {type(e).__name__}: {e}")

    async def _read_bounded(self, response: aiohttp.ClientResponse, limit: int) -> bytes:
        chunks = []
        total = 0
        async for chunk in response.content.iter_chunked(READ_CHUNK_SIZE):
            total += len(chunk)
            if limit > 0 and total > limit:
                raise PayloadTooLargeError(f"remote image exceeds maximum allowed {limit} bytes")
            chunks.append(chunk)
        return b"".join(chunks)

    async def fetch_watermark(self, url: str) -> bytes:
        """Watermark images share the origin and size guards, capped at 1 MB by default."""
        return await self.fetch(url, max_size=self.config.max_allowed_size or WATERMARK_MAX_SIZE)


class RemoteHTTPSource:
    """Image source for ``GET ?url=``."""

    name = "http"

    def __init__(self, config: SourceConfig, fetcher: Optional[RemoteFetcher] = None):
        self.config = config
        self.fetcher = fetcher or RemoteFetcher(config)

    def matches(self, request: Request) -> bool:
        return request.method == "GET" and bool(request.query_params.get(URL_QUERY_KEY))

    def outbound_headers(self, request: Request) -> dict[str, str]:
        headers = {}
        for name in self.config.forward_headers:
            value = request.headers.get(name)
            if value:
                headers[name] = value

        if self.config.auth_forwarding or self.config.authorization:
            auth = (
                self.config.authorization
                or request.headers.get("X-Forward-Authorization")
                or request.headers.get("Authorization")
            )
            if auth:
                headers["Authorization"] = auth
        return headers

    async def fetch(self, request: Request) -> bytes:
        url = request.query_params.get(URL_QUERY_KEY, "")
        return await self.fetcher.fetch(url, self.outbound_headers(request))


def http_source_factory(config: SourceConfig) -> Optional[RemoteHTTPSource]:
    if not config.enable_url_source:
        return None
    return RemoteHTTPSource(config)
