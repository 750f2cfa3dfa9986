import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from storyfeed.exceptions import PayloadTooLarge, UpstreamFailure, ValidationError
from storyfeed.services.image_service import MediaPayload
from storyfeed.services.storage_service import BlobStorage

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = ".jpg"


@dataclass(frozen=True)
class UploadedMedia:
    object_name: str
    url: str
    size: int
    content_type: str


class MediaUploader:
    """Checks a media payload and writes it to blob storage"""

    def __init__(
        self,
        storage: BlobStorage,
        max_bytes: int = 10 * 1024 * 1024,
        allowed_types: Optional[Iterable[str]] = None,
    ):
        self.storage = storage
        self.max_bytes = max_bytes
        self.allowed_types = {t.lower() for t in allowed_types} if allowed_types else None

    def generate_object_name(self, filename: Optional[str]) -> str:
        """Timestamp + random suffix + original extension.

        The uuid4 suffix keeps concurrent publishes, even from the same
        user in the same millisecond, from colliding.
        """
        extension = Path(filename).suffix.lower() if filename else ""
        if not extension or len(extension) > 10:
            extension = DEFAULT_EXTENSION
        return f"post_{int(time.time() * 1000)}_{uuid.uuid4().hex}{extension}"

    def check(self, payload: MediaPayload) -> None:
        """Reject a payload before any bytes reach storage"""
        received = payload.size

        if payload.declared_size is not None and payload.declared_size < received:
            raise ValidationError(
                f"Upload size mismatch: declared {payload.declared_size} bytes, received {received}"
            )
        if received == 0:
            raise ValidationError("Uploaded file is empty")
        if received > self.max_bytes:
            raise PayloadTooLarge(f"Upload exceeds the {self.max_bytes} byte limit")
        if self.allowed_types is not None and (payload.content_type or "").lower() not in self.allowed_types:
            raise ValidationError(f"Unsupported media type: {payload.content_type}")

    async def upload(self, payload: MediaPayload) -> UploadedMedia:
        self.check(payload)

        object_name = self.generate_object_name(payload.filename)
        await self.storage.put(object_name, payload.data, payload.content_type)

        return UploadedMedia(
            object_name=object_name,
            url=self.storage.public_url(object_name),
            size=payload.size,
            content_type=payload.content_type,
        )

    async def discard(self, object_name: str) -> None:
        """Best-effort removal of an object nothing references"""
        try:
            deleted = await self.storage.delete(object_name)
        except (UpstreamFailure, OSError) as e:
            logger.warning(f"Could not discard object {object_name}: {e}")
            return

        if deleted:
            logger.info(f"Discarded object {object_name}")
