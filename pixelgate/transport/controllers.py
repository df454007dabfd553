# pixelgate/transport/controllers.py
"""
Endpoint handlers.

The image controller runs the request through a fixed sequence:

1. Parse query options; validate pipeline plans (no image touched yet)
2. Resolve the image source and fetch bytes
3. Check the input MIME type
4. Negotiate the output type (``type=auto`` uses the Accept header)
5. Resolution guard (megapixel ceiling, before any transform)
6. Run the operation
"""
from __future__ import annotations

import asyncio
import html

import PIL
from fastapi import Request
from fastapi.responses import HTMLResponse, JSONResponse, Response

from pixelgate import __version__
from pixelgate.core.context import get_context
from pixelgate.core.errors import (
    GatewayError,
    MissingSourceError,
    ResolutionTooLargeError,
    TransformError,
    UnsupportedMediaError,
    empty_body,
    output_format_error,
)
from pixelgate.core.options import ImageOptions, parse_options
from pixelgate.core.pipeline import validate_plan
from pixelgate.infra.health import get_health_stats
from pixelgate.infra.imaging import IMAGE_TYPES, ImageError, ProcessedImage, detect_mime, image_type
from pixelgate.infra.logging_config import get_logger
from pixelgate.transport.chain import Handler, Services

logger = get_logger(__name__)

SUPPORTED_INPUT_MIMES = frozenset(mime for _fmt, mime in IMAGE_TYPES.values())

# Accept header media type -> output type token, in negotiation order
ACCEPT_TYPES = {
    "image/webp": "webp",
    "image/png": "png",
    "image/jpeg": "jpeg",
}

FORM_OPERATIONS = (
    ("Resize", "resize", "width=300&height=200&type=jpeg"),
    ("Force resize", "resize", "width=300&height=200&force=true"),
    ("Crop", "crop", "width=300&quality=95"),
    ("SmartCrop", "crop", "width=300&height=260&quality=95&gravity=smart"),
    ("Extract", "extract", "top=100&left=100&areawidth=300&areaheight=150"),
    ("Enlarge", "enlarge", "width=1440&height=900&quality=95"),
    ("Rotate", "rotate", "rotate=180"),
    ("AutoRotate", "autorotate", "quality=90"),
    ("Flip", "flip", ""),
    ("Flop", "flop", ""),
    ("Thumbnail", "thumbnail", "width=100"),
    ("Zoom", "zoom", "factor=2&areawidth=300&top=80&left=80"),
    ("Color space (black&white)", "resize", "width=400&height=300&colorspace=bw"),
    ("Add watermark", "watermark", "textwidth=100&text=Hello&font=sans%2012&opacity=0.5&color=255,200,50"),
    ("Convert format", "convert", "type=png"),
    ("Image metadata", "info", ""),
    ("Gaussian blur", "blur", "sigma=15.0&minampl=0.2"),
    (
        "Pipeline",
        "pipeline",
        "operations=%5B%7B%22operation%22:%22crop%22,%22params%22:%7B%22width%22:300,%22height%22:260%7D%7D,"
        "%7B%22operation%22:%22convert%22,%22params%22:%7B%22type%22:%22webp%22%7D%7D%5D",
    ),
)


def endpoint_path(prefix: str, name: str = "") -> str:
    parts = [part for part in (prefix.strip("/"), name.strip("/")) if part]
    return "/" + "/".join(parts)


def negotiate_type(accept: str) -> str:
    """First supported image type in the Accept header, or "" for none."""
    for part in accept.split(","):
        media_type = part.split(";", 1)[0].strip().lower()
        if media_type in ACCEPT_TYPES:
            return ACCEPT_TYPES[media_type]
    return ""


def index_controller(services: Services) -> Handler:
    async def handler(request: Request) -> Response:
        return JSONResponse({"pixelgate": __version__, "pillow": PIL.__version__})
    return handler


def health_controller(services: Services) -> Handler:
    async def handler(request: Request) -> Response:
        return JSONResponse(get_health_stats())
    return handler


def form_controller(services: Services) -> Handler:
    prefix = services.settings.path_prefix
    sections = []
    for title, name, args in FORM_OPERATIONS:
        action = html.escape(f"{endpoint_path(prefix, name)}?{args}", quote=True)
        sections.append(
            f'<h1>{html.escape(title)}</h1>'
            f'<form method="POST" action="{action}" enctype="multipart/form-data">'
            f'<input type="file" name="file" /><input type="submit" value="Upload" /></form>'
        )
    page = "<html><body>" + "".join(sections) + "</body></html>"

    async def handler(request: Request) -> Response:
        return HTMLResponse(page)
    return handler


def image_controller(services: Services, operation: str) -> Handler:
    settings = services.settings
    engine = services.engine

    async def handler(request: Request) -> Response:
        ctx = get_context(request)

        opts = parse_options(request.query_params)
        if operation == "pipeline":
            validate_plan(opts.operations)

        source = services.registry.resolve(request)
        if source is None:
            raise MissingSourceError()

        buf = await source.fetch(request)
        if not buf:
            raise empty_body()

        mime = detect_mime(buf)
        if mime not in SUPPORTED_INPUT_MIMES:
            raise UnsupportedMediaError()

        opts = _negotiate(request, opts)
        ctx.image, ctx.mime, ctx.options = buf, mime, opts

        loop = asyncio.get_running_loop()
        try:
            width, height = await loop.run_in_executor(None, engine.size, buf)
        except ImageError as e:
            raise TransformError(f"Error processing image: {e}")

        if width * height / 1_000_000 > settings.max_allowed_resolution:
            raise ResolutionTooLargeError()

        try:
            image = await services.processor.run(operation, buf, opts)
        except GatewayError as e:
            raise TransformError(f"Error processing image: {e.message}")

        return await _image_response(services, image)

    return handler


def _negotiate(request: Request, opts: ImageOptions) -> ImageOptions:
    if opts.type == "auto":
        get_context(request).add_vary("Accept")
        return opts.model_copy(update={"type": negotiate_type(request.headers.get("Accept", ""))})
    if opts.type and image_type(opts.type) is None:
        raise output_format_error()
    return opts


async def _image_response(services: Services, image: ProcessedImage) -> Response:
    headers = {}
    if services.settings.return_size and image.mime != "application/json":
        loop = asyncio.get_running_loop()
        try:
            width, height = await loop.run_in_executor(None, services.engine.size, image.body)
            headers["Image-Width"] = str(width)
            headers["Image-Height"] = str(height)
        except ImageError as e:
            logger.debug(f"Cannot read output size: {e}")

    return Response(content=image.body, media_type=image.mime, headers=headers)
