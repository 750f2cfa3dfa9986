"""
File upload utility functions
"""
from typing import Optional
from fastapi import UploadFile

from storyfeed.services.image_service import MediaPayload


def declared_size(upload_file: UploadFile) -> Optional[int]:
    """Size announced by the multipart part's Content-Length header, if any"""
    value = upload_file.headers.get("content-length") if upload_file.headers else None
    if value is None or not value.strip().isdigit():
        return None
    return int(value)


async def read_upload_file(upload_file: Optional[UploadFile]) -> Optional[MediaPayload]:
    """
    Read an uploaded file into memory

    Returns:
        None when no file was chosen (browsers send an empty part)
    """
    if upload_file is None or not upload_file.filename:
        return None

    try:
        data = await upload_file.read()
    finally:
        await upload_file.close()

    if not data:
        return None

    return MediaPayload(
        data=data,
        content_type=upload_file.content_type or "application/octet-stream",
        filename=upload_file.filename,
        declared_size=declared_size(upload_file),
    )
