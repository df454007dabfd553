# tests/test_operations.py
"""Tests for pixelgate/core/operations.py — named operations on the processor."""
from __future__ import annotations

import json

import pytest

from pixelgate.core.errors import InvalidInputError, TransformError
from pixelgate.core.operations import (
    ENDPOINT_OPERATIONS,
    OPERATIONS,
    PIPELINE_OPERATIONS,
    Processor,
    fit_dimensions,
)
from pixelgate.core.options import parse_options
from pixelgate.infra.imaging import PillowEngine, TransformSpec
from conftest import image_format, image_size, make_image


@pytest.fixture
def processor():
    return Processor(PillowEngine())


async def run(processor: Processor, name: str, buf: bytes, **params):
    return await processor.run(name, buf, parse_options({k: str(v) for k, v in params.items()}))


# ============================================================================
# Registry
# ============================================================================

class TestRegistry:
    def test_every_endpoint_is_registered(self):
        for name in ENDPOINT_OPERATIONS:
            assert name in OPERATIONS

    def test_watermark_image_alias(self):
        assert OPERATIONS["watermarkImage"] is OPERATIONS["watermarkimage"]

    def test_pipeline_operations_exclude_pipeline_and_info(self):
        assert "pipeline" not in PIPELINE_OPERATIONS
        assert "info" not in PIPELINE_OPERATIONS
        assert "watermarkImage" in PIPELINE_OPERATIONS
        assert "resize" in PIPELINE_OPERATIONS

    @pytest.mark.asyncio
    async def test_unknown_operation(self, processor):
        with pytest.raises(InvalidInputError, match="Unsupported operation: nope"):
            await run(processor, "nope", make_image())


class TestFitDimensions:
    @pytest.mark.parametrize("image,box,expected", [
        ((40, 20), (10, 10), (10, 5)),
        ((20, 40), (10, 10), (5, 10)),
        ((100, 100), (30, 60), (30, 30)),
    ])
    def test_fit_dimensions(self, image, box, expected):
        assert fit_dimensions(*image, *box) == expected


# ============================================================================
# Geometry operations
# ============================================================================

class TestResize:
    @pytest.mark.asyncio
    async def test_exact_box_by_default(self, processor, png_10x10):
        result = await run(processor, "resize", png_10x10, width=5, height=5)
        assert image_size(result.body) == (5, 5)
        assert result.mime == "image/png"

    @pytest.mark.asyncio
    async def test_pads_to_box(self, processor, jpeg_40x20):
        result = await run(processor, "resize", jpeg_40x20, width=10, height=10)
        assert image_size(result.body) == (10, 10)

    @pytest.mark.asyncio
    async def test_nocrop_false_crops(self, processor, jpeg_40x20):
        result = await run(processor, "resize", jpeg_40x20, width=10, height=10, nocrop="false")
        assert image_size(result.body) == (10, 10)

    @pytest.mark.asyncio
    async def test_width_only_keeps_aspect(self, processor, jpeg_40x20):
        result = await run(processor, "resize", jpeg_40x20, width=20)
        assert image_size(result.body) == (20, 10)

    @pytest.mark.asyncio
    async def test_force(self, processor, jpeg_40x20):
        result = await run(processor, "resize", jpeg_40x20, width=7, height=30, force="true")
        assert image_size(result.body) == (7, 30)

    @pytest.mark.asyncio
    async def test_missing_params(self, processor, png_10x10):
        with pytest.raises(InvalidInputError, match="Missing required param: height or width"):
            await run(processor, "resize", png_10x10)

    @pytest.mark.asyncio
    async def test_output_type(self, processor, png_10x10):
        result = await run(processor, "resize", png_10x10, width=5, type="jpeg")
        assert result.mime == "image/jpeg"
        assert image_format(result.body) == "JPEG"


class TestEnlargeAndFit:
    @pytest.mark.asyncio
    async def test_enlarge(self, processor, png_10x10):
        result = await run(processor, "enlarge", png_10x10, width=20, height=30)
        assert image_size(result.body) == (20, 30)

    @pytest.mark.asyncio
    async def test_enlarge_requires_both(self, processor, png_10x10):
        with pytest.raises(InvalidInputError, match="Missing required params: height, width"):
            await run(processor, "enlarge", png_10x10, width=20)

    @pytest.mark.asyncio
    async def test_fit(self, processor, jpeg_40x20):
        result = await run(processor, "fit", jpeg_40x20, width=10, height=10)
        assert image_size(result.body) == (10, 5)

    @pytest.mark.asyncio
    async def test_fit_follows_exif_orientation(self, processor):
        data = make_image(40, 20, "JPEG", exif_orientation=6)
        result = await run(processor, "fit", data, width=10, height=10)
        assert image_size(result.body) == (5, 10)

    @pytest.mark.asyncio
    async def test_fit_requires_both(self, processor, png_10x10):
        with pytest.raises(InvalidInputError):
            await run(processor, "fit", png_10x10, height=10)


class TestCropping:
    @pytest.mark.asyncio
    async def test_crop(self, processor, jpeg_40x20):
        result = await run(processor, "crop", jpeg_40x20, width=10, height=10)
        assert image_size(result.body) == (10, 10)

    @pytest.mark.asyncio
    async def test_smartcrop(self, processor, jpeg_40x20):
        result = await run(processor, "smartcrop", jpeg_40x20, width=10, height=10)
        assert image_size(result.body) == (10, 10)

    @pytest.mark.asyncio
    async def test_extract(self, processor, jpeg_40x20):
        result = await run(processor, "extract", jpeg_40x20, top=2, left=3, areawidth=10, areaheight=5)
        assert image_size(result.body) == (10, 5)

    @pytest.mark.asyncio
    async def test_extract_missing_area(self, processor, jpeg_40x20):
        with pytest.raises(InvalidInputError, match="areawidth or areaheight"):
            await run(processor, "extract", jpeg_40x20, areawidth=10)

    @pytest.mark.asyncio
    async def test_extract_outside_image_is_transform_error(self, processor, jpeg_40x20):
        with pytest.raises(TransformError):
            await run(processor, "extract", jpeg_40x20, top=15, areawidth=10, areaheight=10)

    @pytest.mark.asyncio
    async def test_thumbnail(self, processor, jpeg_40x20):
        result = await run(processor, "thumbnail", jpeg_40x20, width=20)
        assert image_size(result.body) == (20, 10)

    @pytest.mark.asyncio
    async def test_thumbnail_never_enlarges(self, processor, jpeg_40x20):
        result = await run(processor, "thumbnail", jpeg_40x20, width=100)
        assert image_size(result.body) == (40, 20)

    @pytest.mark.asyncio
    async def test_zoom(self, processor, jpeg_40x20):
        result = await run(processor, "zoom", jpeg_40x20, factor=2)
        assert image_size(result.body) == (80, 40)

    @pytest.mark.asyncio
    async def test_zoom_requires_factor(self, processor, jpeg_40x20):
        with pytest.raises(InvalidInputError, match="Missing required param: factor"):
            await run(processor, "zoom", jpeg_40x20)

    @pytest.mark.asyncio
    async def test_zoom_offset_requires_area(self, processor, jpeg_40x20):
        with pytest.raises(InvalidInputError, match="areawidth, areaheight"):
            await run(processor, "zoom", jpeg_40x20, factor=2, top=5)


class TestOrientation:
    @pytest.mark.asyncio
    async def test_rotate(self, processor, jpeg_40x20):
        result = await run(processor, "rotate", jpeg_40x20, rotate=90)
        assert image_size(result.body) == (20, 40)

    @pytest.mark.asyncio
    async def test_rotate_missing(self, processor, jpeg_40x20):
        with pytest.raises(InvalidInputError, match="Missing required param: rotate"):
            await run(processor, "rotate", jpeg_40x20)

    @pytest.mark.asyncio
    async def test_autorotate(self, processor):
        result = await run(processor, "autorotate", make_image(40, 20, "JPEG", exif_orientation=6))
        assert image_size(result.body) == (20, 40)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["flip", "flop"])
    async def test_flip_flop_keep_size(self, processor, jpeg_40x20, name):
        result = await run(processor, name, jpeg_40x20)
        assert image_size(result.body) == (40, 20)


# ============================================================================
# Output and effects
# ============================================================================

class TestConvert:
    @pytest.mark.asyncio
    async def test_convert(self, processor, jpeg_40x20):
        result = await run(processor, "convert", jpeg_40x20, type="png")
        assert result.mime == "image/png"
        assert image_format(result.body) == "PNG"

    @pytest.mark.asyncio
    async def test_convert_requires_type(self, processor, jpeg_40x20):
        with pytest.raises(InvalidInputError, match="Missing required param: type"):
            await run(processor, "convert", jpeg_40x20)

    @pytest.mark.asyncio
    async def test_convert_invalid_type(self, processor, jpeg_40x20):
        with pytest.raises(InvalidInputError, match="Invalid image type: bmp"):
            await run(processor, "convert", jpeg_40x20, type="bmp")


class TestEffects:
    @pytest.mark.asyncio
    async def test_blur(self, processor, jpeg_40x20):
        result = await run(processor, "blur", jpeg_40x20, sigma=2.0)
        assert image_size(result.body) == (40, 20)

    @pytest.mark.asyncio
    async def test_blur_requires_sigma(self, processor, jpeg_40x20):
        with pytest.raises(InvalidInputError, match="sigma or minampl"):
            await run(processor, "blur", jpeg_40x20)

    @pytest.mark.asyncio
    async def test_watermark(self, processor, jpeg_40x20):
        result = await run(processor, "watermark", jpeg_40x20, text="Hi", opacity=0.5, color="255,0,0")
        assert image_size(result.body) == (40, 20)
        assert result.mime == "image/jpeg"

    @pytest.mark.asyncio
    async def test_watermark_requires_text(self, processor, jpeg_40x20):
        with pytest.raises(InvalidInputError, match="Missing required param: text"):
            await run(processor, "watermark", jpeg_40x20)


class TestWatermarkImage:
    @pytest.mark.asyncio
    async def test_fetches_and_overlays(self, jpeg_40x20):
        requested = []

        async def fetch(url: str) -> bytes:
            requested.append(url)
            return make_image(4, 4, "PNG", color=(0, 0, 255))

        processor = Processor(PillowEngine(), fetch_watermark=fetch)
        result = await run(processor, "watermarkImage", jpeg_40x20, image="https://cdn.example.com/mark.png")
        assert requested == ["https://cdn.example.com/mark.png"]
        assert image_size(result.body) == (40, 20)

    @pytest.mark.asyncio
    async def test_requires_image(self, processor, jpeg_40x20):
        with pytest.raises(InvalidInputError, match="Missing required param: image"):
            await run(processor, "watermarkimage", jpeg_40x20)

    @pytest.mark.asyncio
    async def test_empty_watermark(self, jpeg_40x20):
        async def fetch(url: str) -> bytes:
            return b""

        processor = Processor(PillowEngine(), fetch_watermark=fetch)
        with pytest.raises(InvalidInputError, match="Unable to read watermark image"):
            await run(processor, "watermarkimage", jpeg_40x20, image="https://x/y.png")


class TestInfo:
    @pytest.mark.asyncio
    async def test_info_returns_json(self, processor, jpeg_40x20):
        result = await run(processor, "info", jpeg_40x20)
        assert result.mime == "application/json"
        data = json.loads(result.body)
        assert data["width"] == 40
        assert data["height"] == 20
        assert data["type"] == "jpeg"

    @pytest.mark.asyncio
    async def test_info_on_garbage(self, processor):
        with pytest.raises(TransformError, match="Cannot retrieve image metadata"):
            await run(processor, "info", b"garbage")


# ============================================================================
# Engine boundary
# ============================================================================

class ExplodingEngine(PillowEngine):
    def transform(self, data, spec):
        raise RuntimeError("segfault-ish")


class TestEngineBoundary:
    @pytest.mark.asyncio
    async def test_unexpected_engine_error_is_typed(self, png_10x10):
        processor = Processor(ExplodingEngine())
        with pytest.raises(TransformError) as exc_info:
            await processor.process(png_10x10, TransformSpec(width=5))
        assert exc_info.value.status == 400
        assert "image engine internal error" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_decode_error_is_typed(self, processor):
        with pytest.raises(TransformError):
            await processor.process(b"not an image", TransformSpec())
