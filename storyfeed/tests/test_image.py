import io
import asyncio
import pytest
from PIL import Image

from storyfeed.exceptions import ImageNormalizationError
from storyfeed.services.image_service import ImageNormalizer, MediaPayload

@pytest.fixture
def eager_normalizer() -> ImageNormalizer:
    """Normalizes everything, so tests can use small images"""
    return ImageNormalizer(max_width_px=1600, jpeg_quality=75, threshold_bytes=0)

def test_small_payload_is_not_normalized(normalizer, image_bytes):
    media = MediaPayload(data=image_bytes(), content_type="image/png", filename="dusk.png")

    assert normalizer.should_normalize(media) is False

def test_non_image_is_not_normalized(eager_normalizer):
    media = MediaPayload(data=b"%PDF-1.7", content_type="application/pdf", filename="doc.pdf")

    assert eager_normalizer.should_normalize(media) is False

async def test_prepare_passes_small_image_through(normalizer, image_bytes):
    media = MediaPayload(data=image_bytes(), content_type="image/png", filename="dusk.png")

    assert await normalizer.prepare(media) is media

def test_normalize_scales_wide_image(eager_normalizer, image_bytes):
    data = eager_normalizer.normalize(image_bytes(3000, 1500))

    with Image.open(io.BytesIO(data)) as image:
        assert image.format == "JPEG"
        assert image.size == (1600, 800)

def test_normalize_never_upscales(eager_normalizer, image_bytes):
    data = eager_normalizer.normalize(image_bytes(800, 600))

    with Image.open(io.BytesIO(data)) as image:
        assert image.size == (800, 600)

def test_normalize_flattens_alpha(eager_normalizer, image_bytes):
    data = eager_normalizer.normalize(image_bytes(100, 100, mode="RGBA"))

    with Image.open(io.BytesIO(data)) as image:
        assert image.mode == "RGB"

def test_normalize_rejects_corrupt_bytes(eager_normalizer):
    with pytest.raises(ImageNormalizationError):
        eager_normalizer.normalize(b"definitely not an image")

async def test_prepare_reencodes_oversized_image(eager_normalizer, image_bytes):
    media = MediaPayload(
        data=image_bytes(2000, 1000),
        content_type="image/png",
        filename="holiday.png",
        declared_size=123,
    )

    prepared = await eager_normalizer.prepare(media)

    assert prepared.content_type == "image/jpeg"
    assert prepared.filename == "holiday.jpg"
    assert prepared.declared_size is None
    with Image.open(io.BytesIO(prepared.data)) as image:
        assert image.width == 1600

async def test_prepare_falls_back_to_original_bytes(eager_normalizer):
    media = MediaPayload(data=b"corrupt image", content_type="image/heic", filename="phone.heic")

    assert await eager_normalizer.prepare(media) == media

async def test_prepare_can_be_cancelled(eager_normalizer, image_bytes):
    media = MediaPayload(data=image_bytes(3000, 2000), content_type="image/png", filename="big.png")

    task = asyncio.create_task(eager_normalizer.prepare(media))
    await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

@pytest.mark.parametrize("kwargs", [
    {"max_width_px": 0},
    {"jpeg_quality": 0},
    {"jpeg_quality": 101},
])
def test_invalid_settings(kwargs):
    with pytest.raises(ValueError):
        ImageNormalizer(**kwargs)
