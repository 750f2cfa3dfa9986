from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
import logging
from storyfeed.config import settings
from storyfeed.db.session import AsyncSessionLocal, init_db, close_db
from storyfeed.api import posts, feed
from storyfeed.exceptions import StoryFeedError, Unauthenticated
from storyfeed.services.auth_service import create_identity_provider
from storyfeed.services.feed_service import create_feed_sync
from storyfeed.services.image_service import ImageNormalizer
from storyfeed.services.media_service import MediaUploader
from storyfeed.services.redis_service import RedisService
from storyfeed.services.storage_service import create_blob_storage
from storyfeed.utils.middleware import BodySizeLimitMiddleware, OriginAllowListMiddleware
from storyfeed.utils.rate_limit import limiter
from storyfeed.websocket.manager import FeedConnectionManager
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    logger.info("Starting up...")

    # Create database tables
    await init_db()

    redis = RedisService(settings.REDIS_URL) if settings.REDIS_URL else None
    storage = create_blob_storage(settings)

    app.state.identity_provider = create_identity_provider(settings)
    app.state.image_normalizer = ImageNormalizer(
        max_width_px=settings.IMAGE_MAX_WIDTH_PX,
        jpeg_quality=settings.IMAGE_JPEG_QUALITY,
        threshold_bytes=settings.IMAGE_NORMALIZE_THRESHOLD_BYTES,
    )
    app.state.media_uploader = MediaUploader(
        storage,
        max_bytes=settings.MAX_UPLOAD_BYTES,
        allowed_types=settings.ALLOWED_IMAGE_TYPES,
    )
    app.state.feed_sync = create_feed_sync(settings, AsyncSessionLocal, redis)
    app.state.feed_connections = FeedConnectionManager()

    await app.state.feed_sync.start()

    yield

    # Shutdown
    logger.info("Shutting down...")
    await app.state.feed_sync.stop()
    await app.state.identity_provider.close()
    await storage.close()
    if redis is not None:
        await redis.close()
    await close_db()

# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Publish short stories with photos to a shared live feed",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

@app.exception_handler(StoryFeedError)
async def story_feed_error_handler(request: Request, exc: StoryFeedError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message},
        headers=headers,
    )

@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request parameters"},
    )

# Middleware runs outermost-last: origin check, then CORS headers, then size ceiling
app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.MAX_REQUEST_BYTES)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(OriginAllowListMiddleware, allow_origins=settings.CORS_ORIGINS)

# Serve locally stored media
if settings.STORAGE_BACKEND == "local":
    app.mount(
        settings.MEDIA_URL_PREFIX,
        StaticFiles(directory=settings.MEDIA_ROOT, check_dir=False),
        name="media",
    )

# Include routers
app.include_router(posts.router, prefix="/api/posts", tags=["Posts"])
app.include_router(feed.router, tags=["Feed"])

@app.get("/health")
@limiter.limit("10/second")
async def health_check(request: Request):
    """Health check endpoint"""
    return {"ok": True}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "storyfeed.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
