import os
import tempfile

# Configure the app for testing before anything imports the settings
MEDIA_ROOT = tempfile.mkdtemp(prefix="storyfeed-media-")

os.environ["TESTING"] = "true"
os.environ["TEST_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["AUTH_PROVIDER"] = "jwt"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["MEDIA_ROOT"] = MEDIA_ROOT
os.environ["FEED_SYNC_MODE"] = "push"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["CORS_ORIGINS"] = '["http://localhost:3000"]'
os.environ["MODERATOR_USER_IDS"] = '["moderator"]'
os.environ.pop("REDIS_URL", None)

import io
import pytest
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Generator
from jose import jwt
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from fastapi.testclient import TestClient

from storyfeed.config import settings
from storyfeed.main import app
from storyfeed.models import Base
from storyfeed.schemas.auth_schema import Identity
from storyfeed.services.image_service import ImageNormalizer
from storyfeed.services.media_service import MediaUploader
from storyfeed.services.storage_service import LocalBlobStorage

@pytest.fixture
def client() -> Generator:
    """Test client running the app lifespan against a fresh in-memory database"""
    with TestClient(app) as test_client:
        yield test_client

@pytest.fixture
def media_root() -> str:
    return MEDIA_ROOT

@pytest.fixture
def make_token():
    """Mint bearer tokens the way the identity provider issues them"""
    def _make_token(
        user_id: str = "U1",
        email: str = "u1@example.com",
        full_name: str = None,
        expires_in: int = 3600,
        audience: str = "authenticated",
        secret: str = None,
    ) -> str:
        claims = {
            "sub": user_id,
            "email": email,
            "aud": audience,
            "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        }
        if full_name:
            claims["user_metadata"] = {"full_name": full_name}
        return jwt.encode(claims, secret or settings.jwt_secret, algorithm=settings.JWT_ALGORITHM)

    return _make_token

@pytest.fixture
def auth_headers(make_token):
    def _auth_headers(user_id: str = "U1", **kwargs) -> dict:
        return {"Authorization": f"Bearer {make_token(user_id=user_id, **kwargs)}"}

    return _auth_headers

@pytest.fixture
def image_bytes():
    """Encode a solid-colour test image"""
    def _image_bytes(width: int = 64, height: int = 48, fmt: str = "PNG", mode: str = "RGB") -> bytes:
        color = (200, 80, 40, 255) if mode == "RGBA" else (200, 80, 40)
        buffer = io.BytesIO()
        Image.new(mode, (width, height), color).save(buffer, format=fmt)
        return buffer.getvalue()

    return _image_bytes

@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Per-test database file, so concurrent sessions get their own connections"""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'posts.db'}", echo=False)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    await test_engine.dispose()

@pytest.fixture
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session

@pytest.fixture
def storage(tmp_path) -> LocalBlobStorage:
    return LocalBlobStorage(str(tmp_path / "media"), "/media")

@pytest.fixture
def uploader(storage) -> MediaUploader:
    return MediaUploader(storage, max_bytes=1024 * 1024, allowed_types=settings.ALLOWED_IMAGE_TYPES)

@pytest.fixture
def normalizer() -> ImageNormalizer:
    return ImageNormalizer(max_width_px=1600, jpeg_quality=75, threshold_bytes=10 * 1024 * 1024)

@pytest.fixture
def identity() -> Identity:
    return Identity(user_id="U1", email="walker@example.com", display_name="Walker")
