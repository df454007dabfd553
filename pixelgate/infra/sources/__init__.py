# pixelgate/infra/sources/__init__.py
"""
Pluggable image sources.

Strategy pattern: each source claims a request shape (``?url=``, ``?file=``,
POST body) and produces raw bytes.  The registry resolves a request to the
first source that claims it.
"""
from pixelgate.infra.sources.base import (
    AllowedOrigin,
    ImageSource,
    SourceConfig,
    SourceFactory,
    parse_origins,
)
from pixelgate.infra.sources.body_source import RequestBodySource
from pixelgate.infra.sources.fs_source import FilesystemSource
from pixelgate.infra.sources.http_source import RemoteFetcher, RemoteHTTPSource
from pixelgate.infra.sources.registry import (
    SourceRegistry,
    SourceRegistryBuilder,
    build_default_registry,
)

__all__ = [
    "AllowedOrigin",
    "ImageSource",
    "SourceConfig",
    "SourceFactory",
    "parse_origins",
    "RequestBodySource",
    "FilesystemSource",
    "RemoteFetcher",
    "RemoteHTTPSource",
    "SourceRegistry",
    "SourceRegistryBuilder",
    "build_default_registry",
]
