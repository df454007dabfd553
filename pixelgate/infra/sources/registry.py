# pixelgate/infra/sources/registry.py
from __future__ import annotations

from typing import Optional, Sequence

from starlette.requests import Request

from pixelgate.infra.logging_config import get_logger
from pixelgate.infra.sources.base import ImageSource, SourceConfig, SourceFactory
from pixelgate.infra.sources.body_source import body_source_factory
from pixelgate.infra.sources.fs_source import fs_source_factory
from pixelgate.infra.sources.http_source import http_source_factory

logger = get_logger(__name__)


class SourceRegistry:
    """
    Immutable lookup over the live sources.

    Built once at startup and shared by every request; ``resolve`` only reads.
    """

    def __init__(self, sources: Sequence[ImageSource]):
        self._sources: tuple[ImageSource, ...] = tuple(sources)

    @property
    def names(self) -> list[str]:
        return [source.name for source in self._sources]

    def __len__(self) -> int:
        return len(self._sources)

    def resolve(self, request: Request) -> Optional[ImageSource]:
        """First source (in registration order) that claims the request."""
        for source in self._sources:
            if source.matches(request):
                return source
        return None


class SourceRegistryBuilder:
    """Collects source factories, then builds the registry from one config."""

    def __init__(self):
        self._factories: list[tuple[str, SourceFactory]] = []

    def register(self, name: str, factory: SourceFactory) -> "SourceRegistryBuilder":
        if any(existing == name for existing, _ in self._factories):
            raise ValueError(f"source already registered: {name}")
        self._factories.append((name, factory))
        return self

    def load_all(self, config: SourceConfig) -> SourceRegistry:
        sources = []
        for name, factory in self._factories:
            source = factory(config)
            if source is None:
                logger.debug(f"Image source '{name}' disabled by configuration")
                continue
            sources.append(source)

        registry = SourceRegistry(sources)
        logger.info(f"Image sources loaded: {registry.names}")
        return registry


def build_default_registry(config: SourceConfig) -> SourceRegistry:
    """Registry with the body, filesystem and remote URL sources."""
    return (
        SourceRegistryBuilder()
        .register("body", body_source_factory)
        .register("fs", fs_source_factory)
        .register("http", http_source_factory)
        .load_all(config)
    )
