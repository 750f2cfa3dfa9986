from typing import List, Optional, TYPE_CHECKING
from datetime import datetime, timedelta, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select, update, desc, func
import pydantic
import asyncio
import logging
import threading

from storyfeed.config import settings
from storyfeed.db.base import generate_uuid
from storyfeed.exceptions import Forbidden, NotFound, UpstreamFailure, ValidationError
from storyfeed.models.post import Post, DISPLAY_NAME_MAX_LENGTH
from storyfeed.schemas.auth_schema import Identity
from storyfeed.schemas.post_schema import PostCreate
from storyfeed.services.image_service import ImageNormalizer, MediaPayload
from storyfeed.services.media_service import MediaUploader, UploadedMedia

if TYPE_CHECKING:
    from storyfeed.services.feed_service import FeedSync

logger = logging.getLogger(__name__)

class MonotonicClock:
    """UTC clock that never returns the same instant twice"""

    def __init__(self):
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            current = datetime.now(timezone.utc)
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current

created_at_clock = MonotonicClock()

def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return settings.POSTS_DEFAULT_LIMIT
    return max(1, min(limit, settings.POSTS_MAX_LIMIT))

def build_post_draft(
    identity: Identity,
    title: Optional[str],
    story: Optional[str],
    location: Optional[str] = None,
    display_name: Optional[str] = None,
) -> PostCreate:
    """Validate raw publish input; raises ValidationError, has no side effects"""
    display_name = (display_name or "").strip() or identity.default_display_name

    try:
        return PostCreate(
            title=title or "",
            story=story or "",
            location=location or "",
            author_display_name=display_name[:DISPLAY_NAME_MAX_LENGTH],
        )
    except pydantic.ValidationError as e:
        fields = sorted({str(error["loc"][0]) for error in e.errors() if error.get("loc")})
        raise ValidationError(
            "Title and story are required and must be within limits"
            + (f" (invalid: {', '.join(fields)})" if fields else "")
        )

class PostRepository:
    """Post metadata persistence"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        author_id: str,
        draft: PostCreate,
        media: Optional[UploadedMedia] = None,
    ) -> Post:
        """Insert a post; one atomic write assigning id and created_at.

        Every column is set before the commit, so nothing is read back
        once the row is durable.
        """
        post = Post(
            id=generate_uuid(),
            author_id=author_id,
            author_display_name=draft.author_display_name,
            title=draft.title,
            story=draft.story,
            location=draft.location,
            image_url=media.url if media else None,
            image_object=media.object_name if media else None,
            created_at=created_at_clock.now(),
            likes=0,
            flagged=False,
        )

        self.db.add(post)
        await self.db.commit()

        return post

    async def get(self, post_id: str) -> Optional[Post]:
        """Get a post by ID"""
        stmt = select(Post).where(Post.id == post_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_recent(self, limit: Optional[int] = None, offset: int = 0) -> List[Post]:
        """Newest visible posts first; offsets may shift under concurrent inserts"""
        stmt = select(Post).where(
            Post.flagged == False  # noqa: E712
        ).order_by(
            desc(Post.created_at),
            desc(Post.id)
        ).offset(max(offset, 0)).limit(clamp_limit(limit))

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def count(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(Post))
        return result.scalar_one()

    async def delete(self, post_id: str, identity: Identity) -> Post:
        """Delete a post owned by ``identity``"""
        post = await self.get(post_id)

        if not post:
            raise NotFound()
        if post.author_id != identity.user_id:
            raise Forbidden("You don't have permission to delete this post")

        await self.db.delete(post)
        await self.db.commit()

        return post

    async def increment_likes(self, post_id: str) -> int:
        """Atomically add one like; concurrent increments are never lost"""
        stmt = update(Post).where(
            Post.id == post_id
        ).values(
            likes=Post.likes + 1
        ).execution_options(synchronize_session=False)

        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            await self.db.rollback()
            raise NotFound()
        await self.db.commit()

        likes = await self.db.execute(select(Post.likes).where(Post.id == post_id))
        return likes.scalar_one()

    async def set_flagged(self, post_id: str, flagged: bool) -> Post:
        post = await self.get(post_id)
        if not post:
            raise NotFound()

        post.flagged = flagged
        await self.db.commit()
        await self.db.refresh(post)

        return post

class PostService:
    """The publishing pipeline: normalize, upload, insert, propagate"""

    def __init__(
        self,
        db: AsyncSession,
        uploader: MediaUploader,
        normalizer: ImageNormalizer,
        feed_sync: Optional["FeedSync"] = None,
    ):
        self.db = db
        self.repository = PostRepository(db)
        self.uploader = uploader
        self.normalizer = normalizer
        self.feed_sync = feed_sync

    async def publish(
        self,
        identity: Identity,
        draft: PostCreate,
        media: Optional[MediaPayload] = None,
    ) -> Post:
        """Publish a post.

        The upload finishes before the insert is attempted, so a record
        never points at missing media. If the insert fails the uploaded
        object is discarded on a best-effort basis.
        """
        uploaded = None
        if media is not None:
            media = await self.normalizer.prepare(media)
            uploaded = await self.uploader.upload(media)

        try:
            post = await self.repository.create(identity.user_id, draft, uploaded)
        except asyncio.CancelledError:
            if uploaded:
                await asyncio.shield(self.uploader.discard(uploaded.object_name))
            raise
        except SQLAlchemyError as e:
            logger.error(f"Create post error: {e}")
            await self.db.rollback()
            if uploaded:
                await self.uploader.discard(uploaded.object_name)
            raise UpstreamFailure("Failed to create post") from e

        logger.info(f"User {identity.user_id} published post {post.id}")

        if self.feed_sync is not None:
            await self.feed_sync.notify()

        return post

    async def list_posts(self, limit: Optional[int] = None, offset: int = 0) -> List[Post]:
        try:
            return await self.repository.list_recent(limit, offset)
        except SQLAlchemyError as e:
            logger.error(f"Get posts error: {e}")
            raise UpstreamFailure("Failed to fetch posts") from e

    async def delete(self, post_id: str, identity: Identity) -> None:
        try:
            post = await self.repository.delete(post_id, identity)
        except SQLAlchemyError as e:
            logger.error(f"Delete post error: {e}")
            await self.db.rollback()
            raise UpstreamFailure("Failed to delete post") from e

        logger.info(f"User {identity.user_id} deleted post {post_id}")

        if post.image_object:
            await self.uploader.discard(post.image_object)

        if self.feed_sync is not None:
            await self.feed_sync.notify()

    async def like(self, post_id: str) -> int:
        try:
            likes = await self.repository.increment_likes(post_id)
        except SQLAlchemyError as e:
            logger.error(f"Like post error: {e}")
            await self.db.rollback()
            raise UpstreamFailure("Failed to like post") from e

        if self.feed_sync is not None:
            await self.feed_sync.notify()

        return likes

    async def flag(self, post_id: str, flagged: bool, identity: Identity) -> Post:
        """Set the moderation flag; only configured moderators may do this"""
        if identity.user_id not in settings.MODERATOR_USER_IDS:
            raise Forbidden("Only moderators can change the moderation flag")

        post = await self.repository.set_flagged(post_id, flagged)
        logger.info(f"Moderator {identity.user_id} set flagged={flagged} on post {post_id}")

        if self.feed_sync is not None:
            await self.feed_sync.notify()

        return post
