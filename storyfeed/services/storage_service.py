"""
Blob storage backends

Writes are create-only: an existing object is never overwritten, and a
write that fails or is cancelled part-way leaves nothing under the
final name.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import quote

import aiofiles
import aiofiles.os
import httpx

from storyfeed.config import Settings
from storyfeed.exceptions import ObjectExistsError, UpstreamFailure

logger = logging.getLogger(__name__)


class BlobStorage(ABC):
    """Durable object store addressed by generated object names"""

    @abstractmethod
    async def put(self, name: str, data: bytes, content_type: str) -> None:
        """Create ``name``; raise ObjectExistsError if it already exists"""

    @abstractmethod
    async def delete(self, name: str) -> bool:
        """Delete ``name``; return False if there was nothing to delete"""

    @abstractmethod
    def public_url(self, name: str) -> str:
        ...

    async def close(self) -> None:
        pass


class LocalBlobStorage(BlobStorage):
    """Filesystem storage, served by the app under ``url_prefix``"""

    def __init__(self, root: str, url_prefix: str = "/media"):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        path = (self.root / name).resolve()
        if path.parent != self.root.resolve():
            raise ValueError(f"Invalid object name: {name!r}")
        return path

    async def put(self, name: str, data: bytes, content_type: str) -> None:
        final_path = self._path(name)
        temp_path = self.root / f".{name}.{uuid.uuid4().hex}.part"

        try:
            async with aiofiles.open(temp_path, 'wb') as out_file:
                await out_file.write(data)
                await out_file.flush()

            # link() is atomic and refuses to replace an existing file
            await aiofiles.os.link(temp_path, final_path)
        except FileExistsError:
            raise ObjectExistsError(f"Object {name} already exists")
        except OSError as e:
            logger.error(f"Error writing object {name}: {e}")
            raise UpstreamFailure("Failed to store media") from e
        finally:
            try:
                await aiofiles.os.remove(temp_path)
            except FileNotFoundError:
                pass

        logger.info(f"Stored object {name} ({len(data)} bytes, {content_type})")

    async def delete(self, name: str) -> bool:
        try:
            await aiofiles.os.remove(self._path(name))
            return True
        except FileNotFoundError:
            return False

    async def exists(self, name: str) -> bool:
        return await aiofiles.os.path.exists(self._path(name))

    def public_url(self, name: str) -> str:
        return f"{self.url_prefix}/{quote(name)}"


class SupabaseBlobStorage(BlobStorage):
    """Supabase Storage over its REST API.

    Objects are committed atomically by the storage server; ``x-upsert:
    false`` makes the write create-only. Buckets are expected to be public.
    """

    def __init__(
        self,
        url: str,
        service_key: str,
        bucket: str,
        timeout: float = 60.0,
        client: httpx.AsyncClient = None,
    ):
        self.url = url.rstrip("/")
        self.bucket = bucket
        self.client = client or httpx.AsyncClient(
            base_url=f"{self.url}/storage/v1",
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
            },
            timeout=timeout,
        )

    async def put(self, name: str, data: bytes, content_type: str) -> None:
        try:
            response = await self.client.post(
                f"/object/{self.bucket}/{quote(name)}",
                content=data,
                headers={"Content-Type": content_type, "x-upsert": "false"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Storage request failed for {name}: {e}")
            raise UpstreamFailure("Failed to store media") from e

        if response.status_code == 409 or (
            response.is_error and "already exists" in response.text.lower()
        ):
            raise ObjectExistsError(f"Object {name} already exists")
        if response.is_error:
            logger.error(f"Storage rejected {name}: {response.status_code} {response.text}")
            raise UpstreamFailure("Failed to store media")

        logger.info(f"Stored object {self.bucket}/{name} ({len(data)} bytes, {content_type})")

    async def delete(self, name: str) -> bool:
        try:
            response = await self.client.delete(f"/object/{self.bucket}/{quote(name)}")
        except httpx.HTTPError as e:
            raise UpstreamFailure("Failed to delete media") from e

        if response.status_code == 404:
            return False
        if response.is_error:
            raise UpstreamFailure("Failed to delete media")
        return True

    def public_url(self, name: str) -> str:
        return f"{self.url}/storage/v1/object/public/{self.bucket}/{quote(name)}"

    async def close(self) -> None:
        await self.client.aclose()


def create_blob_storage(settings: Settings) -> BlobStorage:
    """Build the storage backend selected by STORAGE_BACKEND"""
    if settings.STORAGE_BACKEND == "supabase":
        if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for supabase storage")
        return SupabaseBlobStorage(
            settings.SUPABASE_URL,
            settings.SUPABASE_SERVICE_ROLE_KEY,
            settings.STORAGE_BUCKET,
            timeout=settings.STORAGE_TIMEOUT_SECONDS,
        )

    return LocalBlobStorage(settings.MEDIA_ROOT, settings.MEDIA_URL_PREFIX)
