# pixelgate/infra/imaging.py
"""
Pillow-backed image engine.

The gateway treats this module as an opaque capability with three entry
points: ``transform(buf, spec)``, ``metadata(buf)`` and ``detect_type(buf)``.
Request routing, validation and sequencing live elsewhere; nothing here knows
about HTTP.

Transform steps run in a fixed order, mirroring a single libvips-style
"resize" call:

1. EXIF auto-rotation (unless disabled)
2. Area extraction
3. Zoom
4. Resize / crop / embed / fit
5. Rotation, flip, flop
6. Blur, colour space
7. Text and image watermarks
8. Encoding (re-encoding strips EXIF and other metadata)
"""
from __future__ import annotations

import io
import struct
from dataclasses import dataclass

from PIL import Image, ImageDraw, ImageFile, ImageFilter, ImageFont, ImageOps, UnidentifiedImageError

from pixelgate.infra.logging_config import get_logger

logger = get_logger(__name__)

# IMPORTANT: Do NOT allow truncated images!
# Truncated input produces grey/black bands; reject instead of serving broken output.
ImageFile.LOAD_TRUNCATED_IMAGES = False


class ImageError(Exception):
    """Base exception for image engine errors"""
    pass


class ImageInvalidFormatError(ImageError):
    """Image format not supported or data is malformed"""
    pass


class ImageDimensionError(ImageError):
    """Requested geometry or decoded dimensions are invalid"""
    pass


# Type token -> (Pillow format, MIME type)
IMAGE_TYPES: dict[str, tuple[str, str]] = {
    "jpeg": ("JPEG", "image/jpeg"),
    "png": ("PNG", "image/png"),
    "webp": ("WEBP", "image/webp"),
    "tiff": ("TIFF", "image/tiff"),
    "gif": ("GIF", "image/gif"),
}

_TYPE_ALIASES = {"jpg": "jpeg", "tif": "tiff"}

_PIL_FORMAT_TO_TYPE = {fmt: token for token, (fmt, _mime) in IMAGE_TYPES.items()}
_PIL_FORMAT_TO_TYPE["MPO"] = "jpeg"  # Multi-picture JPEG from phone cameras

# Magic bytes for format detection
MAGIC_BYTES = {
    b'\xff\xd8\xff': "jpeg",
    b'\x89PNG\r\n\x1a\n': "png",
    b'GIF87a': "gif",
    b'GIF89a': "gif",
    b'II*\x00': "tiff",
    b'MM\x00*': "tiff",
}

# WebP chunk types - for validation
# CVE-2023-4863 exploited malformed VP8L (lossless) chunks
WEBP_VALID_CHUNKS = {b'VP8 ', b'VP8L', b'VP8X', b'ANIM', b'ANMF', b'ALPH', b'ICCP', b'EXIF', b'XMP '}
WEBP_MAX_CHUNK_SIZE = 100 * 1024 * 1024

GRAVITY_CENTERING = {
    "centre": (0.5, 0.5),
    "center": (0.5, 0.5),
    "north": (0.5, 0.0),
    "south": (0.5, 1.0),
    "east": (1.0, 0.5),
    "west": (0.0, 0.5),
}

# Resize modes
MODE_CROP = "crop"  # Cover the box, then crop the overflow
MODE_EMBED = "embed"  # Fit inside the box, then pad to the exact size
MODE_FORCE = "force"  # Stretch to the exact size, ignoring aspect ratio
MODE_FIT = "fit"  # Fit inside the box, no padding


def image_type(name: str | None) -> str | None:
    """Normalize a user supplied type name; None if unsupported."""
    if not name:
        return None
    token = name.strip().lower()
    token = _TYPE_ALIASES.get(token, token)
    return token if token in IMAGE_TYPES else None


def mime_for_type(token: str | None) -> str:
    if token in IMAGE_TYPES:
        return IMAGE_TYPES[token][1]
    return "image/jpeg"


def detect_type(data: bytes) -> str:
    """
    Detect image type from magic bytes.
    More reliable than a file extension or a Content-Type header.
    """
    for magic, token in MAGIC_BYTES.items():
        if data.startswith(magic):
            return token

    # WebP is a RIFF container: RIFF....WEBP
    if data[:4] == b'RIFF' and len(data) > 11 and data[8:12] == b'WEBP':
        return "webp"

    return "unknown"


def detect_mime(data: bytes) -> str:
    token = detect_type(data)
    if token == "unknown":
        return "application/octet-stream"
    return mime_for_type(token)


def validate_webp_structure(data: bytes) -> None:
    """
    Validate the RIFF chunk layout before handing WebP data to the decoder.

    Rejects chunks that overflow the file or carry non-printable type codes
    (malformed VP8L chunks were the CVE-2023-4863 vector).

    Raises:
        ImageInvalidFormatError: If WebP structure is invalid
    """
    if len(data) < 12 or data[:4] != b'RIFF' or data[8:12] != b'WEBP':
        raise ImageInvalidFormatError("Invalid WebP: bad RIFF header")

    declared_size = struct.unpack('<I', data[4:8])[0]
    if declared_size > len(data) - 8 + 1:
        raise ImageInvalidFormatError("Invalid WebP: size mismatch (possible overflow attempt)")

    offset = 12
    chunk_count = 0
    while offset + 8 <= len(data) and chunk_count < 100:
        chunk_type = data[offset:offset + 4]
        chunk_size = struct.unpack('<I', data[offset + 4:offset + 8])[0]

        if chunk_type not in WEBP_VALID_CHUNKS and not all(32 <= b < 127 for b in chunk_type):
            raise ImageInvalidFormatError("Invalid WebP: malformed chunk type")
        if chunk_size > WEBP_MAX_CHUNK_SIZE:
            raise ImageInvalidFormatError("Invalid WebP: chunk size exceeds limit")

        chunk_end = offset + 8 + chunk_size
        if chunk_end > len(data) + 1:  # +1 for optional padding byte
            raise ImageInvalidFormatError("Invalid WebP: chunk extends beyond file")

        offset = chunk_end + (chunk_size % 2)
        chunk_count += 1

    if chunk_count == 0:
        raise ImageInvalidFormatError("Invalid WebP: no valid chunks found")


@dataclass
class ImageMetadata:
    width: int
    height: int
    type: str
    space: str
    has_alpha: bool
    has_profile: bool
    channels: int
    orientation: int

    def to_dict(self) -> dict:
        return {
            "width": self.width,
            "height": self.height,
            "type": self.type,
            "space": self.space,
            "hasAlpha": self.has_alpha,
            "hasProfile": self.has_profile,
            "channels": self.channels,
            "orientation": self.orientation,
        }


@dataclass
class TextWatermark:
    text: str
    font: str = ""
    dpi: int = 0
    margin: int = 0
    width: int = 0
    opacity: float = 0.0
    no_replicate: bool = False
    color: tuple[int, int, int] | None = None


@dataclass
class ImageWatermark:
    buf: bytes
    left: int = 0
    top: int = 0
    opacity: float = 0.0


@dataclass
class TransformSpec:
    """Engine-level description of one transformation."""

    width: int = 0
    height: int = 0
    mode: str = MODE_CROP
    gravity: str = "centre"
    smart_crop: bool = False
    enlarge: bool = True
    background: tuple[int, int, int] | None = None

    top: int = 0
    left: int = 0
    area_width: int = 0
    area_height: int = 0

    zoom: int = 0
    rotate: int = 0
    flip: bool = False
    flop: bool = False
    no_auto_rotate: bool = False

    sigma: float = 0.0
    min_ampl: float = 0.0
    colorspace: str = ""

    watermark: TextWatermark | None = None
    watermark_image: ImageWatermark | None = None

    type: str = ""
    quality: int = 0
    compression: int = 0
    interlace: bool = False
    keep_metadata: bool = False


@dataclass
class ProcessedImage:
    """Result of a transformation"""
    body: bytes
    mime: str
    width: int = 0
    height: int = 0


def _open(data: bytes) -> Image.Image:
    if not data:
        raise ImageInvalidFormatError("Empty image buffer")

    if detect_type(data) == "webp":
        validate_webp_structure(data)

    try:
        img = Image.open(io.BytesIO(data))
    except Image.DecompressionBombError as e:
        raise ImageDimensionError(f"Decompression bomb detected: {e}")
    except (UnidentifiedImageError, OSError) as e:
        logger.debug(f"Image parsing error: {e}")
        raise ImageInvalidFormatError("Failed to decode image: unsupported or malformed data")
    return img


def _load(img: Image.Image) -> Image.Image:
    try:
        img.load()
    except Image.DecompressionBombError as e:
        raise ImageDimensionError(f"Decompression bomb detected during load: {e}")
    except (OSError, SyntaxError) as e:
        logger.warning(f"Image load error (possible malformed/truncated file): {e}")
        raise ImageInvalidFormatError("Failed to load image: corrupted, truncated, or malformed")
    return img


def _color_space(mode: str) -> str:
    if mode in ("L", "LA", "1", "I", "I;16", "F"):
        return "b-w"
    if mode == "CMYK":
        return "cmyk"
    if mode == "LAB":
        return "lab"
    return "srgb"


class PillowEngine:
    """Image transform capability backed by Pillow."""

    def detect_type(self, data: bytes) -> str:
        return detect_type(data)

    def size(self, data: bytes) -> tuple[int, int]:
        """Read dimensions from the header without decoding pixel data."""
        return _open(data).size

    def metadata(self, data: bytes) -> ImageMetadata:
        img = _open(data)
        fmt = _PIL_FORMAT_TO_TYPE.get(img.format or "", (img.format or "unknown").lower())
        has_alpha = img.mode in ("RGBA", "LA", "PA", "RGBa", "La") or "transparency" in img.info
        try:
            orientation = int(img.getexif().get(0x0112, 0))
        except (OSError, ValueError, SyntaxError):
            orientation = 0

        return ImageMetadata(
            width=img.width,
            height=img.height,
            type=fmt,
            space=_color_space(img.mode),
            has_alpha=has_alpha,
            has_profile="icc_profile" in img.info,
            channels=len(img.getbands()),
            orientation=orientation,
        )

    def transform(self, data: bytes, spec: TransformSpec) -> ProcessedImage:
        """
        Apply ``spec`` to ``data`` and return the encoded result.

        Raises:
            ImageError: If the input cannot be decoded or the geometry is invalid
        """
        img = _load(_open(data))
        source_type = _PIL_FORMAT_TO_TYPE.get(img.format or "", "jpeg")
        icc_profile = img.info.get("icc_profile")

        if not spec.no_auto_rotate:
            img = ImageOps.exif_transpose(img)

        # Palette, bi-level and high bit-depth images cannot be filtered or resampled well
        if img.mode in ("P", "PA"):
            img = img.convert("RGBA")
        elif img.mode in ("1", "I", "I;16", "I;16B", "I;16L", "F"):
            img = img.convert("L")

        if spec.area_width and spec.area_height:
            img = self._extract(img, spec)

        if spec.zoom:
            img = img.resize((img.width * spec.zoom, img.height * spec.zoom), Image.Resampling.LANCZOS)

        if spec.width or spec.height:
            img = self._resize(img, spec)

        angle = (spec.rotate % 360) // 90 * 90
        if angle:
            # Rotation is clockwise
            img = img.transpose({
                90: Image.Transpose.ROTATE_270,
                180: Image.Transpose.ROTATE_180,
                270: Image.Transpose.ROTATE_90,
            }[angle])

        if spec.flip:
            img = ImageOps.flip(img)
        if spec.flop:
            img = ImageOps.mirror(img)

        if spec.sigma > 0 or spec.min_ampl > 0:
            radius = spec.sigma if spec.sigma > 0 else 1.0
            img = img.filter(ImageFilter.GaussianBlur(radius=radius))

        if spec.colorspace == "bw":
            img = img.convert("LA" if "A" in img.getbands() else "L")

        if spec.watermark is not None:
            img = self._draw_text(img, spec.watermark)

        if spec.watermark_image is not None:
            img = self._overlay(img, spec.watermark_image)

        target = image_type(spec.type) or source_type
        return self._encode(img, target, spec, icc_profile)

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    def _extract(self, img: Image.Image, spec: TransformSpec) -> Image.Image:
        box = (spec.left, spec.top, spec.left + spec.area_width, spec.top + spec.area_height)
        if spec.left < 0 or spec.top < 0 or box[2] > img.width or box[3] > img.height:
            raise ImageDimensionError(
                f"extract area {spec.area_width}x{spec.area_height}+{spec.left}+{spec.top} "
                f"is outside the {img.width}x{img.height} image"
            )
        return img.crop(box)

    def _resize(self, img: Image.Image, spec: TransformSpec) -> Image.Image:
        width, height = spec.width, spec.height
        if width < 0 or height < 0:
            raise ImageDimensionError("width and height must not be negative")

        if not width or not height:
            # One dimension given: keep the aspect ratio
            if width:
                height = max(1, round(img.height * width / img.width))
            else:
                width = max(1, round(img.width * height / img.height))
            if not spec.enlarge and (width > img.width or height > img.height):
                return img
            return img.resize((width, height), Image.Resampling.LANCZOS)

        size = (width, height)
        if spec.mode == MODE_FORCE:
            return img.resize(size, Image.Resampling.LANCZOS)
        if spec.mode == MODE_FIT:
            if not spec.enlarge:
                img = img.copy()
                img.thumbnail(size, Image.Resampling.LANCZOS)
                return img
            return ImageOps.contain(img, size, Image.Resampling.LANCZOS)
        if spec.mode == MODE_EMBED:
            if img.mode not in ("RGB", "RGBA"):
                img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
            color = spec.background or ((0, 0, 0, 0) if img.mode == "RGBA" else (0, 0, 0))
            return ImageOps.pad(img, size, Image.Resampling.LANCZOS, color=color)

        centering = GRAVITY_CENTERING.get(spec.gravity, (0.5, 0.5))
        if spec.smart_crop:
            centering = self._smart_centering(img, size)
        return ImageOps.fit(img, size, Image.Resampling.LANCZOS, centering=centering)

    def _smart_centering(self, img: Image.Image, size: tuple[int, int]) -> tuple[float, float]:
        """Pick the crop offset whose window carries the most detail (entropy)."""
        scale = max(size[0] / img.width, size[1] / img.height)
        scaled = img.convert("L").resize(
            (max(1, round(img.width * scale)), max(1, round(img.height * scale)))
        )
        excess_x = scaled.width - size[0]
        excess_y = scaled.height - size[1]
        if excess_x <= 0 and excess_y <= 0:
            return 0.5, 0.5

        best, best_entropy = (0.5, 0.5), -1.0
        for step in range(5):
            ratio = step / 4
            left = round(excess_x * ratio) if excess_x > 0 else 0
            top = round(excess_y * ratio) if excess_y > 0 else 0
            entropy = scaled.crop((left, top, left + size[0], top + size[1])).entropy()
            if entropy > best_entropy:
                best_entropy = entropy
                best = (ratio if excess_x > 0 else 0.5, ratio if excess_y > 0 else 0.5)
        return best

    # ------------------------------------------------------------------
    # Watermarks
    # ------------------------------------------------------------------

    def _font(self, wm: TextWatermark) -> ImageFont.ImageFont:
        size = 10
        parts = wm.font.split()
        if parts and parts[-1].isdigit():
            size = int(parts[-1])
        dpi = wm.dpi or 150
        return ImageFont.load_default(size=max(1, round(size * dpi / 72)))

    def _draw_text(self, img: Image.Image, wm: TextWatermark) -> Image.Image:
        base = img.convert("RGBA")
        overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)
        font = self._font(wm)

        opacity = wm.opacity if wm.opacity > 0 else 0.25
        alpha = max(0, min(255, round(255 * opacity)))
        color = (*(wm.color or (255, 255, 255)), alpha)

        left, top, right, bottom = draw.textbbox((0, 0), wm.text, font=font)
        text_w, text_h = right - left, bottom - top
        margin = wm.margin
        step_x = max(text_w, wm.width) + max(margin, 10)
        step_y = text_h + max(margin, 10)

        if wm.no_replicate:
            draw.text((margin, margin), wm.text, font=font, fill=color)
        else:
            for y in range(margin, base.height, step_y):
                for x in range(margin, base.width, step_x):
                    draw.text((x, y), wm.text, font=font, fill=color)

        return Image.alpha_composite(base, overlay)

    def _overlay(self, img: Image.Image, wm: ImageWatermark) -> Image.Image:
        mark = _load(_open(wm.buf)).convert("RGBA")
        if wm.left < 0 or wm.top < 0 or wm.left >= img.width or wm.top >= img.height:
            raise ImageDimensionError("watermark image position is outside the image")

        if wm.opacity > 0:
            alpha = mark.getchannel("A").point(lambda value: round(value * min(wm.opacity, 1.0)))
            mark.putalpha(alpha)

        base = img.convert("RGBA")
        base.alpha_composite(mark, dest=(wm.left, wm.top))
        return base

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _encode(
        self,
        img: Image.Image,
        target: str,
        spec: TransformSpec,
        icc_profile: bytes | None,
    ) -> ProcessedImage:
        try:
            body = self._save(img, target, spec, icc_profile)
        except (OSError, KeyError, ValueError) as e:
            if target != "webp":
                raise ImageError(f"image encode error: {e}")
            # Some builds lack a WebP encoder
            logger.warning(f"WebP encode failed, falling back to JPEG: {e}")
            target = "jpeg"
            body = self._save(img, target, spec, icc_profile)

        return ProcessedImage(
            body=body,
            mime=mime_for_type(target),
            width=img.width,
            height=img.height,
        )

    def _save(
        self,
        img: Image.Image,
        target: str,
        spec: TransformSpec,
        icc_profile: bytes | None,
    ) -> bytes:
        fmt = IMAGE_TYPES[target][0]
        options: dict = {}

        if img.mode == "CMYK" and fmt not in ("JPEG", "TIFF"):
            img = img.convert("RGB")

        if fmt == "JPEG":
            img = _flatten(img, spec.background)
            options["quality"] = spec.quality or 80
            options["optimize"] = True
            if spec.interlace:
                options["progressive"] = True
        elif fmt == "WEBP":
            options["quality"] = spec.quality or 80
        elif fmt == "PNG":
            options["compress_level"] = spec.compression or 6
        elif fmt == "GIF" and img.mode == "RGBA":
            # Octree quantization is the one that keeps alpha
            img = img.quantize()

        if spec.keep_metadata and icc_profile and fmt in ("JPEG", "PNG", "WEBP", "TIFF"):
            options["icc_profile"] = icc_profile

        output = io.BytesIO()
        img.save(output, format=fmt, **options)
        return output.getvalue()


def _flatten(img: Image.Image, background: tuple[int, int, int] | None) -> Image.Image:
    """JPEG has no alpha channel: composite onto a solid background."""
    if img.mode in ("RGBA", "LA", "P", "PA"):
        img = img.convert("RGBA")
        canvas = Image.new("RGB", img.size, background or (255, 255, 255))
        canvas.paste(img, mask=img.getchannel("A"))
        return canvas
    if img.mode not in ("RGB", "L", "CMYK"):
        return img.convert("RGB")
    return img


def build_placeholder(width: int = 256, height: int = 256) -> bytes:
    """Generate the built-in neutral placeholder image (PNG)."""
    img = Image.new("RGB", (width, height), (230, 230, 230))
    draw = ImageDraw.Draw(img)
    draw.rectangle((0, 0, width - 1, height - 1), outline=(200, 200, 200), width=2)
    draw.line((0, 0, width - 1, height - 1), fill=(200, 200, 200), width=2)
    draw.line((0, height - 1, width - 1, 0), fill=(200, 200, 200), width=2)
    output = io.BytesIO()
    img.save(output, format="PNG")
    return output.getvalue()
