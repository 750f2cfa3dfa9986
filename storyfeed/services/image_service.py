"""
Image normalization

Downsamples and recompresses oversized images before upload. Small
images are left untouched to avoid needless quality loss, and a failed
re-encode falls back to the original bytes rather than aborting the post.
"""
import asyncio
import io
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from PIL import Image, ImageOps

from storyfeed.exceptions import ImageNormalizationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaPayload:
    """Raw media bytes travelling through the publish pipeline.

    Attributes:
        data: Payload bytes
        content_type: Declared MIME type
        filename: Original client filename (used for the extension)
        declared_size: Size the client announced, if any
    """
    data: bytes
    content_type: str
    filename: str = ""
    declared_size: Optional[int] = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_image(self) -> bool:
        return (self.content_type or "").lower().startswith("image/")


class ImageNormalizer:
    """Re-encodes images no wider than ``max_width_px`` at ``jpeg_quality``."""

    def __init__(
        self,
        max_width_px: int = 1600,
        jpeg_quality: int = 75,
        threshold_bytes: int = 10 * 1024 * 1024,
    ):
        if max_width_px <= 0:
            raise ValueError("max_width_px must be positive")
        if not 1 <= jpeg_quality <= 100:
            raise ValueError("jpeg_quality must be between 1 and 100")

        self.max_width_px = max_width_px
        self.jpeg_quality = jpeg_quality
        self.threshold_bytes = threshold_bytes

    def should_normalize(self, payload: MediaPayload) -> bool:
        return payload.is_image and payload.size > self.threshold_bytes

    def normalize(self, data: bytes) -> bytes:
        """Scale and re-encode image bytes as JPEG.

        Raises:
            ImageNormalizationError: If the image cannot be decoded or encoded
        """
        try:
            with Image.open(io.BytesIO(data)) as source:
                source.load()
                image = ImageOps.exif_transpose(source)

                width, height = image.size
                if width > self.max_width_px:
                    new_height = max(1, round(self.max_width_px / width * height))
                    image = image.resize(
                        (self.max_width_px, new_height),
                        Image.Resampling.LANCZOS,
                    )

                # JPEG has no alpha or palette
                if image.mode not in ('RGB', 'L'):
                    image = image.convert('RGB')

                output = io.BytesIO()
                image.save(output, format='JPEG', quality=self.jpeg_quality, optimize=True)
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise ImageNormalizationError(str(e)) from e

        return output.getvalue()

    async def prepare(self, payload: MediaPayload) -> MediaPayload:
        """Normalize ``payload`` if it is an oversized image.

        Runs the re-encode in a worker thread; cancelling the awaiting task
        abandons the result. Returns the original payload on failure.
        """
        if not self.should_normalize(payload):
            return payload

        try:
            data = await asyncio.to_thread(self.normalize, payload.data)
        except ImageNormalizationError as e:
            logger.warning(f"Image normalization failed, uploading original bytes: {e}")
            return payload

        stem = Path(payload.filename).stem if payload.filename else "image"
        logger.info(f"Normalized image {payload.filename!r}: {payload.size} -> {len(data)} bytes")

        return replace(
            payload,
            data=data,
            content_type="image/jpeg",
            filename=f"{stem}.jpg",
            declared_size=None,
        )
