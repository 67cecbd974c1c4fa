"""
Media preprocessing: bring input images within provider limits
"""

import asyncio
import base64
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from nodegen.core.config import MIB
from nodegen.core.errors import ValidationError
from nodegen.models.models import MediaKind

logger = logging.getLogger(__name__)

DATA_URI_PATTERN = re.compile(r"^data:([\w/+.-]+);base64,(.+)$", re.DOTALL)

STANDARD_RATIOS = [
    ("1:1", 1 / 1),
    ("16:9", 16 / 9),
    ("9:16", 9 / 16),
    ("4:3", 4 / 3),
    ("3:4", 3 / 4),
    ("3:2", 3 / 2),
    ("2:3", 2 / 3),
    ("5:4", 5 / 4),
    ("4:5", 4 / 5),
    ("21:9", 21 / 9),
]

# Landscape frame size per resolution; portrait swaps width and height
FRAME_SIZES = {
    "4K": (3840, 2160),
    "1080p": (1920, 1080),
    "720p": (1280, 720),
    "512p": (910, 512),
}

MIME_BY_SUFFIX = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
}

EXTENSION_BY_MIME = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/webm": "webm",
}


def is_remote_url(value: str) -> bool:
    return value.lower().startswith(("http://", "https://"))


def decode_data_uri(data_uri: str) -> Tuple[bytes, str]:
    """Split a base64 data URI into (bytes, mime type)."""
    match = DATA_URI_PATTERN.match(data_uri.strip())
    if not match:
        raise ValidationError("Invalid data URI (expected data:<mime>;base64,<data>)")
    try:
        return base64.b64decode(match.group(2)), match.group(1)
    except ValueError as e:
        raise ValidationError(f"Invalid base64 payload in data URI: {e}")


def encode_data_uri(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def closest_aspect_ratio(width: int, height: int) -> str:
    """Nearest standard ratio label for the given pixel dimensions."""
    if width <= 0 or height <= 0:
        return "1:1"
    ratio = width / height
    label, _ = min(STANDARD_RATIOS, key=lambda item: abs(ratio - item[1]))
    return label


@dataclass
class CompressionResult:
    data: bytes
    width: int
    height: int
    attempts: int = 0
    quality: Optional[int] = None
    resized: bool = False

    @property
    def changed(self) -> bool:
        return self.quality is not None


def _to_rgb(img: Image.Image) -> Image.Image:
    if img.mode in ("RGBA", "LA", "P"):
        img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def _encode_jpeg(img: Image.Image, quality: int) -> bytes:
    buffer = BytesIO()
    img.save(buffer, format="JPEG", quality=quality, optimize=True)
    return buffer.getvalue()


def _open_image(data: bytes) -> Image.Image:
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Input is not a readable image: {e}")
    return img


class MediaPreprocessor:
    """Pillow-based normalization of input media. CPU work can run on a thread pool."""

    def __init__(
        self,
        max_dimension: int = 3840,
        max_bytes: int = 9 * MIB,
        max_attempts: int = 5,
        library_dir: Optional[Path] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.max_dimension = max_dimension
        self.max_bytes = max_bytes
        self.max_attempts = max_attempts
        self.library_dir = Path(library_dir) if library_dir else None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="media")

    # ---- sources ----

    def load(self, source: str) -> Tuple[bytes, str]:
        """Read a data URI or a file from the local library into (bytes, mime type)."""
        if source.startswith("data:"):
            return decode_data_uri(source)
        if self.library_dir is None:
            raise ValidationError(f"Cannot read local media without a library directory: {source}")

        relative = source.split("?", 1)[0].lstrip("/")
        if relative.startswith("library/"):
            relative = relative[len("library/"):]
        root = self.library_dir.resolve()
        path = (root / relative).resolve()
        if root != path and root not in path.parents:
            raise ValidationError(f"Media path escapes the library directory: {source}")
        if not path.is_file():
            raise ValidationError(f"Media file not found: {source}")

        mime_type = MIME_BY_SUFFIX.get(path.suffix.lower(), "application/octet-stream")
        return path.read_bytes(), mime_type

    # ---- images ----

    def dimensions(self, data: bytes) -> Tuple[int, int]:
        return _open_image(data).size

    def compress_image(self, data: bytes) -> CompressionResult:
        img = _open_image(data)
        width, height = img.size
        original_size = len(data)

        if max(width, height) <= self.max_dimension and original_size <= self.max_bytes:
            return CompressionResult(data, width, height)

        img = _to_rgb(ImageOps.exif_transpose(img))
        ceiling = self.max_bytes
        resized = False

        if max(width, height) > self.max_dimension:
            scale = self.max_dimension / max(width, height)
            img = img.resize((max(1, round(width * scale)), max(1, round(height * scale))), Image.LANCZOS)
            resized = True
            ceiling = min(self.max_bytes, original_size)
            output = _encode_jpeg(img, 90)
            logger.info(
                f"📐 Resized {width}x{height} -> {img.width}x{img.height} "
                f"({original_size / MIB:.1f} MiB -> {len(output) / MIB:.1f} MiB)"
            )
            if len(output) <= ceiling:
                return CompressionResult(output, img.width, img.height, 0, 90, resized)

        base = img
        result = None
        for attempt in range(self.max_attempts):
            scale = 0.8 ** attempt
            quality = max(50, 80 - 10 * attempt)
            candidate = base
            if scale < 1.0:
                candidate = base.resize(
                    (max(1, round(base.width * scale)), max(1, round(base.height * scale))),
                    Image.LANCZOS,
                )
            output = _encode_jpeg(candidate, quality)
            result = CompressionResult(output, candidate.width, candidate.height, attempt + 1, quality, resized)
            logger.info(
                f"🗜️ Compression attempt {attempt + 1}: {candidate.width}x{candidate.height} "
                f"q{quality} -> {len(output) / MIB:.2f} MiB"
            )
            if len(output) <= ceiling:
                return result

        if len(result.data) > original_size:
            logger.warning("⚠️ Compression could not shrink the image, keeping the original")
            return CompressionResult(data, width, height, result.attempts)
        logger.warning(f"⚠️ Image still {len(result.data) / MIB:.2f} MiB after {result.attempts} attempts")
        return result

    def normalize(self, data: bytes, kind: MediaKind) -> bytes:
        """Images are brought within the dimension and size limits; video passes through."""
        if kind == MediaKind.VIDEO:
            return data
        return self.compress_image(data).data

    def fit_frame(self, data: bytes, aspect_ratio: str, resolution: str) -> bytes:
        """Centre-crop to 16:9 (or 9:16) and resize to the resolution's exact frame size."""
        img = _to_rgb(ImageOps.exif_transpose(_open_image(data)))
        width, height = FRAME_SIZES.get(resolution, FRAME_SIZES["720p"])
        if aspect_ratio == "9:16":
            width, height = height, width

        framed = ImageOps.fit(img, (width, height), method=Image.LANCZOS, centering=(0.5, 0.5))
        logger.info(f"🎞️ Frame normalized {img.width}x{img.height} -> {width}x{height} ({aspect_ratio})")
        buffer = BytesIO()
        framed.save(buffer, format="JPEG", quality=92)
        return buffer.getvalue()

    # ---- async wrappers ----

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def normalize_async(self, data: bytes, kind: MediaKind) -> bytes:
        return await self._run(self.normalize, data, kind)

    async def fit_frame_async(self, data: bytes, aspect_ratio: str, resolution: str) -> bytes:
        return await self._run(self.fit_frame, data, aspect_ratio, resolution)

    async def dimensions_async(self, data: bytes) -> Tuple[int, int]:
        return await self._run(self.dimensions, data)

    def shutdown(self):
        self._executor.shutdown(wait=False)
