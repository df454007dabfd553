# pixelgate/infra/sources/base.py
"""
Image source abstraction layer.

A source decides whether it can serve a request (``matches``) and, if so,
produces the raw image bytes (``fetch``).  Sources only obtain bytes; type
detection and transformation happen in the controller.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol
from urllib.parse import urlsplit

from starlette.requests import Request

from pixelgate.config import Settings


@dataclass(frozen=True)
class AllowedOrigin:
    """One allow-list entry: host (``*.`` prefix for subdomains) plus path prefix."""

    host: str
    path: str = ""

    @property
    def is_wildcard(self) -> bool:
        return self.host.startswith("*.")


def parse_origins(entries: list[str]) -> tuple[AllowedOrigin, ...]:
    """Parse ``https://cdn.example.com/images`` or ``*.example.org`` entries."""
    origins = []
    for entry in entries:
        if "://" not in entry:
            entry = f"https://{entry}"
        parts = urlsplit(entry)
        host = parts.netloc.rsplit("@", 1)[-1].lower()
        if host:
            origins.append(AllowedOrigin(host=host, path=parts.path))
    return tuple(origins)


@dataclass(frozen=True)
class SourceConfig:
    """Read-only snapshot shared by every source for the process lifetime."""

    mount_path: Optional[str] = None
    allowed_origins: tuple[AllowedOrigin, ...] = field(default_factory=tuple)
    max_allowed_size: int = 0
    forward_headers: tuple[str, ...] = field(default_factory=tuple)
    auth_forwarding: bool = False
    authorization: Optional[str] = None
    enable_url_source: bool = False
    fetch_timeout: float = 60.0

    @classmethod
    def from_settings(cls, s: Settings) -> "SourceConfig":
        return cls(
            mount_path=s.mount,
            allowed_origins=parse_origins(s.allowed_origin_list),
            max_allowed_size=s.max_allowed_size,
            forward_headers=tuple(s.forward_header_list),
            auth_forwarding=s.enable_auth_forwarding,
            authorization=s.authorization,
            enable_url_source=s.enable_url_source,
            fetch_timeout=s.fetch_timeout_seconds,
        )


class ImageSource(Protocol):
    """Protocol for image sources."""

    name: str

    def matches(self, request: Request) -> bool:
        """Whether this source claims the request."""
        ...

    async def fetch(self, request: Request) -> bytes:
        """
        Obtain the raw image bytes for a claimed request.

        Raises:
            GatewayError: Typed failure with a concrete HTTP status.
        """
        ...


# A factory returns None when its source is disabled by configuration
SourceFactory = Callable[[SourceConfig], Optional[ImageSource]]
