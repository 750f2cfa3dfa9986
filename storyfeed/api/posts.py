from fastapi import APIRouter, Depends, HTTPException, status, Query, UploadFile, File, Form, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging

from storyfeed.config import settings
from storyfeed.db.session import get_db
from storyfeed.exceptions import StoryFeedError
from storyfeed.schemas.auth_schema import Identity
from storyfeed.schemas.post_schema import (
    PostOut,
    PostEnvelope,
    PostListResponse,
    LikeResponse,
    FlagUpdate,
)
from storyfeed.services.auth_service import get_current_identity
from storyfeed.services.post_service import PostService, build_post_draft
from storyfeed.utils.file_upload import read_upload_file
from storyfeed.utils.rate_limit import limiter

logger = logging.getLogger(__name__)

router = APIRouter()

def get_post_service(request: Request, db: AsyncSession = Depends(get_db)) -> PostService:
    state = request.app.state
    return PostService(db, state.media_uploader, state.image_normalizer, state.feed_sync)

@router.get("", response_model=PostListResponse)
async def get_posts(
    limit: int = Query(settings.POSTS_DEFAULT_LIMIT),
    offset: int = Query(0, ge=0),
    post_service: PostService = Depends(get_post_service),
):
    """Public posts, newest first. ``limit`` is clamped to POSTS_MAX_LIMIT."""
    try:
        posts = await post_service.list_posts(limit, offset)
        return {"posts": [PostOut.model_validate(post) for post in posts]}
    except StoryFeedError:
        raise
    except Exception as e:
        logger.error(f"Get posts error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch posts"
        )

@router.post("", response_model=PostEnvelope, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_PUBLISH)
async def create_post(
    request: Request,
    title: str = Form(""),
    story: str = Form(""),
    location: str = Form(""),
    display_name: Optional[str] = Form(None, alias="displayName"),
    image: Optional[UploadFile] = File(None),
    identity: Identity = Depends(get_current_identity),
    post_service: PostService = Depends(get_post_service),
):
    """Publish a post with an optional image"""
    try:
        draft = build_post_draft(identity, title, story, location, display_name)
        media = await read_upload_file(image)

        post = await post_service.publish(identity, draft, media)
        return {"post": PostOut.model_validate(post)}
    except StoryFeedError:
        raise
    except Exception as e:
        logger.error(f"Create post error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create post"
        )

@router.delete("/{post_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_post(
    post_id: str,
    identity: Identity = Depends(get_current_identity),
    post_service: PostService = Depends(get_post_service),
):
    """Delete a post; only its author may do this"""
    try:
        await post_service.delete(post_id, identity)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except StoryFeedError:
        raise
    except Exception as e:
        logger.error(f"Delete post error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete post"
        )

@router.post("/{post_id}/likes", response_model=LikeResponse)
async def like_post(
    post_id: str,
    identity: Identity = Depends(get_current_identity),
    post_service: PostService = Depends(get_post_service),
):
    """Add one like to a post"""
    try:
        likes = await post_service.like(post_id)
        return {"id": post_id, "likes": likes}
    except StoryFeedError:
        raise
    except Exception as e:
        logger.error(f"Like post error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to like post"
        )

@router.put("/{post_id}/flag", response_model=PostEnvelope)
async def flag_post(
    post_id: str,
    flag_update: FlagUpdate,
    identity: Identity = Depends(get_current_identity),
    post_service: PostService = Depends(get_post_service),
):
    """Set or clear the moderation flag (moderators only)"""
    try:
        post = await post_service.flag(post_id, flag_update.flagged, identity)
        return {"post": PostOut.model_validate(post)}
    except StoryFeedError:
        raise
    except Exception as e:
        logger.error(f"Flag post error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update post"
        )
