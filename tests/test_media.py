from io import BytesIO

import pytest
from PIL import Image

from conftest import png_bytes, png_data_uri
from nodegen.core.config import MIB
from nodegen.core.errors import ValidationError
from nodegen.core.media import (
    MediaPreprocessor,
    closest_aspect_ratio,
    decode_data_uri,
    encode_data_uri,
)
from nodegen.models.models import MediaKind


def noise_jpeg(width, height, quality=95):
    channels = [Image.effect_noise((width, height), 100) for _ in range(3)]
    buffer = BytesIO()
    Image.merge("RGB", channels).save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def test_large_photo_is_brought_within_limits():
    original = noise_jpeg(6000, 4000)
    preprocessor = MediaPreprocessor(max_dimension=3840, max_bytes=9 * MIB)

    result = preprocessor.compress_image(original)

    assert max(result.width, result.height) <= 3840
    assert len(result.data) <= 9 * MIB
    assert len(result.data) <= len(original)
    assert result.attempts <= 5
    assert result.resized
    with Image.open(BytesIO(result.data)) as img:
        assert img.size == (result.width, result.height)
        assert abs(img.width / img.height - 1.5) < 0.01
    preprocessor.shutdown()


def test_small_image_is_returned_untouched():
    data = png_bytes(320, 200)
    preprocessor = MediaPreprocessor()

    result = preprocessor.compress_image(data)

    assert result.data is data
    assert not result.changed
    preprocessor.shutdown()


def test_oversized_bytes_are_recompressed():
    data = noise_jpeg(900, 600)
    preprocessor = MediaPreprocessor(max_bytes=len(data) // 3)

    result = preprocessor.compress_image(data)

    assert result.changed
    assert 1 <= result.attempts <= 5
    assert len(result.data) < len(data)
    preprocessor.shutdown()


def test_video_passes_through_normalize():
    preprocessor = MediaPreprocessor(max_bytes=10)
    payload = b"\x00\x00\x00\x18ftypmp42" * 10
    assert preprocessor.normalize(payload, MediaKind.VIDEO) is payload
    preprocessor.shutdown()


@pytest.mark.parametrize(
    "aspect_ratio, resolution, expected",
    [
        ("16:9", "720p", (1280, 720)),
        ("9:16", "1080p", (1080, 1920)),
        ("16:9", "4K", (3840, 2160)),
    ],
)
def test_fit_frame_sizes(aspect_ratio, resolution, expected):
    preprocessor = MediaPreprocessor()
    framed = preprocessor.fit_frame(png_bytes(1000, 1000), aspect_ratio, resolution)
    with Image.open(BytesIO(framed)) as img:
        assert img.size == expected
        assert img.format == "JPEG"
    preprocessor.shutdown()


@pytest.mark.asyncio
async def test_async_wrappers_use_the_pool():
    preprocessor = MediaPreprocessor()
    assert await preprocessor.dimensions_async(png_bytes(40, 30)) == (40, 30)
    framed = await preprocessor.fit_frame_async(png_bytes(50, 50), "16:9", "720p")
    assert preprocessor.dimensions(framed) == (1280, 720)
    preprocessor.shutdown()


def test_load_data_uri():
    data, mime_type = MediaPreprocessor().load(png_data_uri(10, 10))
    assert mime_type == "image/png"
    assert data.startswith(b"\x89PNG")


def test_load_library_file(tmp_path):
    (tmp_path / "shots").mkdir()
    (tmp_path / "shots" / "hero.png").write_bytes(png_bytes(8, 8))
    preprocessor = MediaPreprocessor(library_dir=tmp_path)

    data, mime_type = preprocessor.load("/library/shots/hero.png")

    assert mime_type == "image/png"
    assert preprocessor.dimensions(data) == (8, 8)


def test_load_refuses_paths_outside_library(tmp_path):
    library = tmp_path / "library"
    library.mkdir()
    (tmp_path / "secret.png").write_bytes(png_bytes(8, 8))
    preprocessor = MediaPreprocessor(library_dir=library)

    with pytest.raises(ValidationError):
        preprocessor.load("/library/../secret.png")
    with pytest.raises(ValidationError):
        preprocessor.load("/library/missing.png")


def test_invalid_inputs_raise_validation_errors():
    with pytest.raises(ValidationError):
        decode_data_uri("data:image/png,not-base64")
    with pytest.raises(ValidationError):
        MediaPreprocessor().dimensions(b"definitely not an image")


def test_data_uri_roundtrip_keeps_mime_type():
    data, mime_type = decode_data_uri(encode_data_uri(b"abc", "image/webp"))
    assert (data, mime_type) == (b"abc", "image/webp")


@pytest.mark.parametrize(
    "size, expected",
    [((1920, 1080), "16:9"), ((1000, 1000), "1:1"), ((1080, 1920), "9:16"), ((2520, 1080), "21:9"), ((0, 10), "1:1")],
)
def test_closest_aspect_ratio(size, expected):
    assert closest_aspect_ratio(*size) == expected
