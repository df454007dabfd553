# pixelgate/transport/http_app.py
"""
HTTP application.

Routes:
- ``/``, ``/health``, ``/form``: public, base policy chain only
- ``/<operation>`` for every image operation: image policy chain

Every route accepts all methods so method policy stays in the chain
(405 JSON instead of the router's default).  ``path_prefix`` prefixes
every route.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pixelgate import __version__
from pixelgate.config import Settings, settings as default_settings, validate_or_warn
from pixelgate.core.errors import GatewayError, NotFoundError
from pixelgate.core.operations import ENDPOINT_OPERATIONS, Processor
from pixelgate.infra.http_client import close_all_sessions
from pixelgate.infra.imaging import PillowEngine
from pixelgate.infra.logging_config import get_logger, setup_logging
from pixelgate.infra.rate_limiter import GCRARateLimiter
from pixelgate.infra.sources.base import SourceConfig
from pixelgate.infra.sources.http_source import RemoteFetcher
from pixelgate.infra.sources.registry import SourceRegistry, build_default_registry
from pixelgate.transport.chain import Chain, Handler, Services, build_chain
from pixelgate.transport.controllers import (
    endpoint_path,
    form_controller,
    health_controller,
    image_controller,
    index_controller,
)
from pixelgate.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from pixelgate.transport.replier import Replier

logger = get_logger(__name__)

ALL_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""
    services: Services = fastapi_app.state.services
    logger.info(
        f"Starting pixelgate {__version__}: env={services.settings.app_env}, "
        f"sources={services.registry.names}"
    )

    yield

    # SHUTDOWN
    await close_all_sessions()
    logger.info("Application shutdown complete")


def build_services(
    settings: Settings,
    registry: Optional[SourceRegistry] = None,
    engine: Optional[PillowEngine] = None,
) -> Services:
    engine = engine or PillowEngine()
    source_config = SourceConfig.from_settings(settings)
    fetcher = RemoteFetcher(source_config)

    rate_limiter = None
    if settings.rate_limit_enabled:
        rate_limiter = GCRARateLimiter(rate=settings.concurrency, burst=settings.burst)

    return Services(
        settings=settings,
        registry=registry or build_default_registry(source_config),
        engine=engine,
        processor=Processor(engine, fetch_watermark=fetcher.fetch_watermark),
        replier=Replier.from_settings(settings, engine),
        rate_limiter=rate_limiter,
    )


def _endpoint(chain: Chain):
    async def endpoint(request: Request):
        return await chain(request)
    return endpoint


def _add_route(app: FastAPI, path: str, chain: Chain, name: str) -> None:
    app.add_api_route(
        path,
        _endpoint(chain),
        methods=ALL_METHODS,
        name=name,
        include_in_schema=False,
    )


def register_routes(app: FastAPI, services: Services) -> None:
    prefix = services.settings.path_prefix

    public: list[tuple[str, Callable[[Services], Handler]]] = [
        ("", index_controller),
        ("health", health_controller),
        ("form", form_controller),
    ]
    for name, controller in public:
        chain = build_chain(services, controller(services), image=False)
        _add_route(app, endpoint_path(prefix, name), chain, name or "index")

    for operation in ENDPOINT_OPERATIONS:
        chain = build_chain(services, image_controller(services, operation), image=True)
        _add_route(app, endpoint_path(prefix, operation), chain, operation)


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[SourceRegistry] = None,
    engine: Optional[PillowEngine] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        settings: Configuration (process-wide settings if None)
        registry: Prebuilt source registry (built from settings if None)
        engine: Image engine (PillowEngine if None)
    """
    settings = settings or default_settings

    for warning in validate_or_warn(settings):
        logger.warning(warning)

    services = build_services(settings, registry, engine)

    app = FastAPI(
        title="pixelgate",
        description="HTTP image processing gateway",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.services = services

    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
    app.add_middleware(RequestIDMiddleware)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            err: GatewayError = NotFoundError()
        else:
            err = GatewayError(str(exc.detail), exc.status_code)
        return JSONResponse(status_code=err.http_status, content=err.to_dict())

    register_routes(app, services)
    return app


# Initialize logging first
setup_logging(
    level=default_settings.log_level,
    use_json=default_settings.is_production
)

app = create_app()
