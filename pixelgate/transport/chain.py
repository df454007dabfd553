# pixelgate/transport/chain.py
"""
Request policy chain.

The layer order is data: ``IMAGE_LAYERS`` then ``BASE_LAYERS``, outermost
first.  Each ``MiddlewareSpec`` says when a layer is active and how to build
it; ``build_chain`` keeps the active ones and ``Chain`` runs them in order
around the endpoint handler.

A layer either calls ``call_next`` or raises a ``GatewayError``.  Layers put
response headers into the request context; the chain copies them onto the
final response (error replies included).

    [check_url_signature] -> validate_image_request -> validate_request
    -> add_default_headers -> [add_cache_headers] -> [authorize] -> [cors]
    -> [rate_limit] -> [validate_endpoints] -> handler
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from email.utils import formatdate
from functools import partial
from typing import Awaitable, Callable, Optional, Sequence

import PIL
from fastapi import Request, Response

from pixelgate import __version__
from pixelgate.config import Settings
from pixelgate.core.context import get_context
from pixelgate.core.errors import (
    GatewayError,
    InternalError,
    MethodNotAllowedError,
    NotImplementedEndpointError,
    RateLimitedError,
    UnauthorizedError,
    get_method_not_allowed,
)
from pixelgate.core.operations import Processor
from pixelgate.infra.imaging import PillowEngine
from pixelgate.infra.logging_config import LogContext, get_logger
from pixelgate.infra.rate_limiter import GCRARateLimiter
from pixelgate.infra.sources.registry import SourceRegistry
from pixelgate.transport.replier import Replier
from pixelgate.transport.security import (
    API_KEY_HEADER,
    API_KEY_PARAM,
    SIGNATURE_PARAM,
    check_api_key,
    verify_url_signature,
)

logger = get_logger(__name__)

Handler = Callable[[Request], Awaitable[Response]]
Layer = Callable[[Request, Handler], Awaitable[Response]]

PUBLIC_PATHS = frozenset({"/", "/health", "/form"})
SERVER_HEADER = f"pixelgate {__version__} (Pillow {PIL.__version__})"


@dataclass
class Services:
    """Process-wide collaborators, built once by the app factory."""

    settings: Settings
    registry: SourceRegistry
    engine: PillowEngine
    processor: Processor
    replier: Replier
    rate_limiter: Optional[GCRARateLimiter] = None


def route_path(path: str, prefix: str) -> str:
    """Request path relative to the configured path prefix."""
    prefix = prefix.rstrip("/")
    if prefix and path.startswith(prefix):
        path = path[len(prefix):]
    return path or "/"


def is_public_path(path: str, prefix: str = "/") -> bool:
    return route_path(path, prefix) in PUBLIC_PATHS


# ============================================================================
# LAYERS
# ============================================================================

def validate_request(services: Services) -> Layer:
    async def layer(request: Request, call_next: Handler) -> Response:
        if request.method not in ("GET", "POST"):
            raise MethodNotAllowedError()
        return await call_next(request)
    return layer


def validate_image_request(services: Services) -> Layer:
    settings = services.settings

    async def layer(request: Request, call_next: Handler) -> Response:
        if request.method == "GET" and not is_public_path(request.url.path, settings.path_prefix):
            if not settings.get_source_enabled:
                raise get_method_not_allowed()
        return await call_next(request)
    return layer


def add_default_headers(services: Services) -> Layer:
    async def layer(request: Request, call_next: Handler) -> Response:
        get_context(request).headers["Server"] = SERVER_HEADER
        return await call_next(request)
    return layer


def cache_control(ttl: int) -> str:
    if ttl == 0:
        return "private, no-cache, no-store, must-revalidate"
    return f"public, s-maxage={ttl}, max-age={ttl}, no-transform"


def add_cache_headers(services: Services) -> Layer:
    settings = services.settings
    ttl = settings.http_cache_ttl

    async def layer(request: Request, call_next: Handler) -> Response:
        if request.method == "GET" and not is_public_path(request.url.path, settings.path_prefix):
            headers = get_context(request).headers
            headers["Expires"] = formatdate(time.time() + ttl, usegmt=True)
            headers["Cache-Control"] = cache_control(ttl)
        return await call_next(request)
    return layer


def authorize(services: Services) -> Layer:
    expected = services.settings.api_key or ""

    async def layer(request: Request, call_next: Handler) -> Response:
        key = request.headers.get(API_KEY_HEADER) or request.query_params.get(API_KEY_PARAM)
        if not check_api_key(key, expected):
            raise UnauthorizedError()
        return await call_next(request)
    return layer


def cors(services: Services) -> Layer:
    # Preflight never reaches here: validate_request rejects OPTIONS first.
    origins = services.settings.cors_origin_list
    allow_all = "*" in origins

    async def layer(request: Request, call_next: Handler) -> Response:
        origin = request.headers.get("Origin")
        if origin:
            ctx = get_context(request)
            if allow_all:
                ctx.headers["Access-Control-Allow-Origin"] = "*"
            elif origin in origins:
                ctx.headers["Access-Control-Allow-Origin"] = origin
                ctx.add_vary("Origin")
        return await call_next(request)
    return layer


def rate_limit(services: Services) -> Layer:
    limiter = services.rate_limiter

    async def layer(request: Request, call_next: Handler) -> Response:
        result = limiter.allow()
        get_context(request).headers.update(result.headers())
        if not result.allowed:
            raise RateLimitedError()
        return await call_next(request)
    return layer


def validate_endpoints(services: Services) -> Layer:
    disabled = frozenset(services.settings.disabled_endpoint_list)

    async def layer(request: Request, call_next: Handler) -> Response:
        endpoint = request.url.path.rstrip("/").rsplit("/", 1)[-1]
        if endpoint in disabled:
            raise NotImplementedEndpointError()
        return await call_next(request)
    return layer


def check_url_signature(services: Services) -> Layer:
    key = services.settings.url_signature_key or ""

    async def layer(request: Request, call_next: Handler) -> Response:
        signature = request.query_params.get(SIGNATURE_PARAM, "")
        verify_url_signature(key, request.url.path, request.url.query, signature)
        return await call_next(request)
    return layer


# ============================================================================
# CHAIN DESCRIPTORS
# ============================================================================

@dataclass(frozen=True)
class MiddlewareSpec:
    name: str
    enabled: Callable[[Settings], bool]
    build: Callable[[Services], Layer]


def _always(settings: Settings) -> bool:
    return True


IMAGE_LAYERS: tuple[MiddlewareSpec, ...] = (
    MiddlewareSpec("check_url_signature", lambda s: s.enable_url_signature, check_url_signature),
    MiddlewareSpec("validate_image_request", _always, validate_image_request),
)

BASE_LAYERS: tuple[MiddlewareSpec, ...] = (
    MiddlewareSpec("validate_request", _always, validate_request),
    MiddlewareSpec("add_default_headers", _always, add_default_headers),
    MiddlewareSpec("add_cache_headers", lambda s: s.http_cache_ttl >= 0, add_cache_headers),
    MiddlewareSpec("authorize", lambda s: bool(s.api_key), authorize),
    MiddlewareSpec("cors", lambda s: s.cors, cors),
    MiddlewareSpec("rate_limit", lambda s: s.rate_limit_enabled, rate_limit),
    MiddlewareSpec("validate_endpoints", lambda s: bool(s.disabled_endpoint_list), validate_endpoints),
)


class Chain:
    """Runs layers in order around a handler and converts errors to replies."""

    def __init__(self, layers: Sequence[tuple[str, Layer]], handler: Handler, replier: Replier):
        self._layers = tuple(layers)
        self._handler = handler
        self._replier = replier

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self._layers]

    async def _dispatch(self, index: int, request: Request) -> Response:
        if index == len(self._layers):
            return await self._handler(request)
        _, layer = self._layers[index]
        return await layer(request, partial(self._dispatch, index + 1))

    async def __call__(self, request: Request) -> Response:
        ctx = get_context(request)
        try:
            response = await self._dispatch(0, request)
        except GatewayError as err:
            response = await self._replier.reply(request, err)
        except Exception as exc:
            LogContext(logger, request_id=ctx.request_id, path=request.url.path).error(
                f"Unhandled error in request chain: {exc.__class__.__name__}: {exc}",
                exc_info=True,
            )
            response = await self._replier.reply(request, InternalError())

        for name, value in ctx.headers.items():
            if name not in response.headers:
                response.headers[name] = value
        return response


def build_chain(services: Services, handler: Handler, image: bool = True) -> Chain:
    """Chain for one endpoint; image endpoints get the two extra outer layers."""
    specs = (IMAGE_LAYERS + BASE_LAYERS) if image else BASE_LAYERS
    layers = [
        (spec.name, spec.build(services))
        for spec in specs
        if spec.enabled(services.settings)
    ]
    return Chain(layers, handler, services.replier)
