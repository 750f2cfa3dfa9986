"""
Async client for the Story Feed API

Normalizes oversized images before they leave the machine, publishes
posts with the caller's bearer token, and can follow the feed by polling
when no WebSocket is available.

Example:
    session = ClientSession(access_token=token, page_size=20)
    async with StoryFeedClient("http://localhost:4000") as client:
        post = await client.publish(session, "Sunset", "A walk at dusk.", location="Goa")
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from storyfeed.exceptions import (
    Forbidden,
    NotFound,
    PayloadTooLarge,
    StoryFeedError,
    Unauthenticated,
    UpstreamFailure,
    ValidationError,
)
from storyfeed.services.image_service import ImageNormalizer, MediaPayload

logger = logging.getLogger(__name__)

STATUS_ERRORS = {
    400: ValidationError,
    401: Unauthenticated,
    403: Forbidden,
    404: NotFound,
    413: PayloadTooLarge,
}


@dataclass
class ClientSession:
    """Per-viewer state passed into every client call.

    Attributes:
        access_token: Bearer credential, None for anonymous reads
        page_size: Default page size for list_posts
    """
    access_token: Optional[str] = None
    page_size: int = 20

    def auth_headers(self) -> Dict[str, str]:
        if not self.access_token:
            raise Unauthenticated("Sign in to post")
        return {"Authorization": f"Bearer {self.access_token}"}


class FeedView:
    """Viewer-side rendering of the feed.

    Every snapshot replaces the previous state wholesale, so applying the
    same snapshot twice yields the same state.
    """

    def __init__(self):
        self.posts: List[Dict[str, Any]] = []
        self.version: Optional[int] = None

    def apply(self, posts: Sequence[Dict[str, Any]], version: Optional[int] = None) -> bool:
        """Replace the rendered posts; returns True if anything changed"""
        posts = list(posts)
        changed = posts != self.posts
        self.posts = posts
        if version is not None:
            self.version = version
        return changed

    def apply_message(self, message: Dict[str, Any]) -> bool:
        if message.get("type") != "snapshot":
            return False
        return self.apply(message.get("posts", []), message.get("version"))

    def render(self) -> List[str]:
        if not self.posts:
            return ["No posts yet."]

        lines = []
        for post in self.posts:
            author = post.get("authorDisplayName") or "Anonymous"
            place = f" @ {post['location']}" if post.get("location") else ""
            lines.append(f"{post.get('title', '')}{place} - {author}")
        return lines

    def gallery(self, limit: int = 12) -> List[Tuple[str, str]]:
        """(image URL, title) pairs for posts that carry an image"""
        return [
            (post["imageUrl"], post.get("title", ""))
            for post in self.posts
            if post.get("imageUrl")
        ][:limit]


class StoryFeedClient:
    def __init__(
        self,
        base_url: str,
        normalizer: Optional[ImageNormalizer] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.normalizer = normalizer or ImageNormalizer()
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def __aenter__(self) -> "StoryFeedClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"Story feed unreachable: {e}") from e

        if response.is_success:
            return response

        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = None

        error_class = STATUS_ERRORS.get(response.status_code, UpstreamFailure)
        raise error_class(detail or f"Request failed with status {response.status_code}")

    async def list_posts(
        self,
        session: ClientSession,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = {"limit": limit or session.page_size, "offset": offset}
        response = await self._request("GET", "/api/posts", params=params)
        return response.json()["posts"]

    async def publish(
        self,
        session: ClientSession,
        title: str,
        story: str,
        location: str = "",
        display_name: Optional[str] = None,
        image: Optional[bytes] = None,
        filename: str = "image.jpg",
        content_type: str = "image/jpeg",
    ) -> Dict[str, Any]:
        """Publish a post, normalizing an oversized image first"""
        title, story = (title or "").strip(), (story or "").strip()
        if not title or not story:
            raise ValidationError("Title and story required")

        headers = session.auth_headers()

        data = {"title": title, "story": story, "location": (location or "").strip()}
        if display_name:
            data["displayName"] = display_name

        files = None
        if image:
            payload = await self.normalizer.prepare(
                MediaPayload(data=image, content_type=content_type, filename=filename)
            )
            files = {"image": (payload.filename, payload.data, payload.content_type)}

        response = await self._request("POST", "/api/posts", data=data, files=files, headers=headers)
        return response.json()["post"]

    async def delete_post(self, session: ClientSession, post_id: str) -> None:
        await self._request("DELETE", f"/api/posts/{post_id}", headers=session.auth_headers())

    async def like_post(self, session: ClientSession, post_id: str) -> int:
        response = await self._request(
            "POST", f"/api/posts/{post_id}/likes", headers=session.auth_headers()
        )
        return response.json()["likes"]

    async def poll_feed(
        self,
        session: ClientSession,
        view: FeedView,
        interval: float = 5.0,
        stop: Optional[asyncio.Event] = None,
        feed_size: int = 50,
    ) -> None:
        """Keep ``view`` current by polling until ``stop`` is set.

        Failed polls are logged and retried on the next tick.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        stop = stop or asyncio.Event()

        while not stop.is_set():
            try:
                posts = await self.list_posts(session, offset=0, limit=feed_size)
                if view.apply(posts):
                    logger.info(f"Feed updated: {len(posts)} posts")
            except StoryFeedError as e:
                logger.warning(f"Feed poll failed: {e}")

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
