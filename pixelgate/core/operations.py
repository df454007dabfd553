# pixelgate/core/operations.py
"""
Named image operations.

Each operation validates its own required parameters, translates the request
options into a ``TransformSpec`` and hands it to the image engine exactly once.
The engine call is a guarded boundary: anything it raises comes back out as a
``TransformError``.
"""
from __future__ import annotations

import asyncio
import json
import math
from typing import Awaitable, Callable

from pixelgate.core.errors import (
    GatewayError,
    InvalidInputError,
    TransformError,
    UnsupportedMediaError,
)
from pixelgate.core.options import ImageOptions
from pixelgate.infra.imaging import (
    MODE_CROP,
    MODE_EMBED,
    MODE_FIT,
    MODE_FORCE,
    ImageError,
    ImageMetadata,
    ImageWatermark,
    PillowEngine,
    ProcessedImage,
    TextWatermark,
    TransformSpec,
    image_type,
)
from pixelgate.infra.logging_config import get_logger

logger = get_logger(__name__)

WatermarkFetcher = Callable[[str], Awaitable[bytes]]
OperationFunc = Callable[["Processor", bytes, ImageOptions], Awaitable[ProcessedImage]]

OPERATIONS: dict[str, OperationFunc] = {}


def operation(*names: str):
    """Register an operation under one or more names."""
    def decorator(func: OperationFunc) -> OperationFunc:
        for name in names:
            OPERATIONS[name] = func
        return func
    return decorator


class Processor:
    """Runs operations against the image engine."""

    def __init__(self, engine: PillowEngine, fetch_watermark: WatermarkFetcher | None = None):
        self.engine = engine
        self.fetch_watermark = fetch_watermark

    async def run(self, name: str, buf: bytes, opts: ImageOptions) -> ProcessedImage:
        func = OPERATIONS.get(name)
        if func is None:
            raise InvalidInputError(f"Unsupported operation: {name}")
        return await func(self, buf, opts)

    async def process(self, buf: bytes, spec: TransformSpec) -> ProcessedImage:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self.engine.transform, buf, spec)
        except GatewayError:
            raise
        except ImageError as e:
            raise TransformError(str(e))
        except Exception as e:
            # Engine crashed: surface it as a typed failure at this boundary
            logger.error(f"Image engine failure: {type(e).__name__}: {e}", exc_info=True)
            raise TransformError(f"image engine internal error: {e}")

    async def metadata(self, buf: bytes) -> ImageMetadata:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self.engine.metadata, buf)
        except ImageError as e:
            raise TransformError(f"Cannot retrieve image metadata: {e}")
        except Exception as e:
            logger.error(f"Image metadata failure: {type(e).__name__}: {e}", exc_info=True)
            raise TransformError(f"Cannot retrieve image metadata: {e}")


def base_spec(o: ImageOptions) -> TransformSpec:
    """Options every operation honours."""
    return TransformSpec(
        width=o.width,
        height=o.height,
        mode=MODE_FORCE if o.force else MODE_CROP,
        gravity=o.gravity or "centre",
        smart_crop=o.gravity == "smart",
        background=o.rgb_background,
        rotate=o.rotate,
        flip=o.flip,
        flop=o.flop,
        no_auto_rotate=o.norotation,
        sigma=o.sigma,
        min_ampl=o.minampl,
        colorspace=o.colorspace,
        type=o.type,
        quality=o.quality,
        compression=o.compression,
        interlace=o.interlace,
        keep_metadata=not (o.stripmeta or o.noprofile),
    )


# ----------------------------------------------------------------------
# Operations
# ----------------------------------------------------------------------

@operation("resize")
async def resize(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    if not o.width and not o.height:
        raise InvalidInputError("Missing required param: height or width")

    spec = base_spec(o)
    if not o.force:
        # Padding to the exact box is the default; nocrop=false crops to fill
        spec.mode = MODE_CROP if o.nocrop is False else MODE_EMBED
    return await p.process(buf, spec)


@operation("enlarge")
async def enlarge(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    if not o.width or not o.height:
        raise InvalidInputError("Missing required params: height, width")

    spec = base_spec(o)
    spec.enlarge = True
    if not o.force:
        spec.mode = MODE_EMBED if o.nocrop else MODE_CROP
    return await p.process(buf, spec)


def fit_dimensions(image_width: int, image_height: int, fit_width: int, fit_height: int) -> tuple[int, int]:
    """Largest size with the image's aspect ratio that fits the box."""
    if image_width * fit_height > fit_width * image_height:
        # Constrained by width
        fit_height = int(math.floor(fit_width * image_height / image_width + 0.5))
    else:
        fit_width = int(math.floor(fit_height * image_width / image_height + 0.5))
    return fit_width, fit_height


@operation("fit")
async def fit(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    if not o.width or not o.height:
        raise InvalidInputError("Missing required params: height, width")

    meta = await p.metadata(buf)
    if not meta.width or not meta.height:
        raise UnsupportedMediaError("Width or height of requested image is zero")

    spec = base_spec(o)
    spec.mode = MODE_FORCE
    # EXIF orientations 5..8 swap the axes; the engine auto-rotates before resizing
    if o.norotation or meta.orientation <= 4:
        origin_width, origin_height = meta.width, meta.height
    else:
        origin_width, origin_height = meta.height, meta.width
    spec.width, spec.height = fit_dimensions(origin_width, origin_height, o.width, o.height)
    return await p.process(buf, spec)


@operation("extract")
async def extract(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    if not o.areawidth or not o.areaheight:
        raise InvalidInputError("Missing required params: areawidth or areaheight")

    spec = base_spec(o)
    spec.top = o.top
    spec.left = o.left
    spec.area_width = o.areawidth
    spec.area_height = o.areaheight
    return await p.process(buf, spec)


@operation("crop")
async def crop(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    if not o.width and not o.height:
        raise InvalidInputError("Missing required param: height or width")

    spec = base_spec(o)
    spec.mode = MODE_CROP
    return await p.process(buf, spec)


@operation("smartcrop")
async def smartcrop(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    if not o.width and not o.height:
        raise InvalidInputError("Missing required param: height or width")

    spec = base_spec(o)
    spec.mode = MODE_CROP
    spec.smart_crop = True
    return await p.process(buf, spec)


@operation("rotate")
async def rotate(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    if not o.rotate:
        raise InvalidInputError("Missing required param: rotate")
    return await p.process(buf, base_spec(o))


@operation("autorotate")
async def autorotate(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    spec = TransformSpec(type=o.type, quality=o.quality, compression=o.compression)
    return await p.process(buf, spec)


@operation("flip")
async def flip(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    spec = base_spec(o)
    spec.flip = True
    return await p.process(buf, spec)


@operation("flop")
async def flop(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    spec = base_spec(o)
    spec.flop = True
    return await p.process(buf, spec)


@operation("thumbnail")
async def thumbnail(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    if not o.width and not o.height:
        raise InvalidInputError("Missing required params: width or height")

    spec = base_spec(o)
    spec.mode = MODE_FIT
    spec.enlarge = False
    return await p.process(buf, spec)


@operation("zoom")
async def zoom(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    if not o.factor:
        raise InvalidInputError("Missing required param: factor")
    if o.factor < 0:
        raise InvalidInputError("factor must be positive")

    spec = base_spec(o)
    if o.top > 0 or o.left > 0:
        if not o.areawidth and not o.areaheight:
            raise InvalidInputError("Missing required params: areawidth, areaheight")
        spec.top = o.top
        spec.left = o.left
        spec.area_width = o.areawidth
        spec.area_height = o.areaheight
        if o.nocrop:
            spec.mode = MODE_EMBED

    spec.zoom = o.factor
    return await p.process(buf, spec)


@operation("convert")
async def convert(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    if not o.type:
        raise InvalidInputError("Missing required param: type")
    if image_type(o.type) is None:
        raise InvalidInputError(f"Invalid image type: {o.type}")
    return await p.process(buf, base_spec(o))


@operation("watermark")
async def watermark(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    if not o.text:
        raise InvalidInputError("Missing required param: text")

    spec = base_spec(o)
    spec.watermark = TextWatermark(
        text=o.text,
        font=o.font,
        dpi=o.dpi,
        margin=o.margin,
        width=o.textwidth,
        opacity=o.opacity,
        no_replicate=o.noreplicate,
        color=o.rgb_color,
    )
    return await p.process(buf, spec)


@operation("watermarkimage", "watermarkImage")
async def watermark_image(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    if not o.image:
        raise InvalidInputError("Missing required param: image")
    if p.fetch_watermark is None:
        raise InvalidInputError(f"Unable to retrieve watermark image: {o.image}")

    mark = await p.fetch_watermark(o.image)
    if not mark:
        raise InvalidInputError("Unable to read watermark image")

    spec = base_spec(o)
    spec.watermark_image = ImageWatermark(buf=mark, left=o.left, top=o.top, opacity=o.opacity)
    return await p.process(buf, spec)


@operation("blur")
async def blur(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    if not o.sigma and not o.minampl:
        raise InvalidInputError("Missing required param: sigma or minampl")
    return await p.process(buf, base_spec(o))


@operation("info")
async def info(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    meta = await p.metadata(buf)
    body = json.dumps(meta.to_dict()).encode()
    return ProcessedImage(body=body, mime="application/json")


@operation("pipeline")
async def pipeline(p: Processor, buf: bytes, o: ImageOptions) -> ProcessedImage:
    from pixelgate.core.pipeline import run_pipeline

    return await run_pipeline(p, buf, o.operations)


# Endpoint names, in route registration order
ENDPOINT_OPERATIONS = (
    "resize", "enlarge", "extract", "crop", "smartcrop", "rotate", "autorotate",
    "flip", "flop", "thumbnail", "zoom", "convert", "watermark", "watermarkimage",
    "blur", "fit", "info", "pipeline",
)

PIPELINE_OPERATIONS = frozenset(name for name in OPERATIONS if name not in ("pipeline", "info"))
