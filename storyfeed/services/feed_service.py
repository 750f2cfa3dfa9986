"""
Live feed propagation

FeedSync keeps the newest N posts and hands every subscribed viewer the
full ordered snapshot whenever that set changes. Viewers always re-render
from a full snapshot, so a repeated delivery is harmless.

Two interchangeable backends decide *when* the snapshot is refreshed:

- PushFeedBackend refreshes as soon as a write is reported (and, with
  Redis, when another worker reports one).
- PollFeedBackend refreshes on a fixed interval.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storyfeed.config import Settings
from storyfeed.schemas.post_schema import PostOut
from storyfeed.services.post_service import PostRepository
from storyfeed.services.redis_service import RedisService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedSnapshot:
    version: int
    posts: List[Dict[str, Any]] = field(default_factory=list)

    def to_message(self) -> Dict[str, Any]:
        return {"type": "snapshot", "version": self.version, "posts": self.posts}


class FeedSubscription:
    """One viewer's snapshot stream.

    Holds at most one undelivered snapshot; a newer one replaces it, so a
    slow viewer never holds up the others.
    """

    _CLOSED = object()

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self.closed = False

    def offer(self, snapshot: FeedSnapshot) -> None:
        if self.closed:
            return
        self._replace(snapshot)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._replace(self._CLOSED)

    def _replace(self, item) -> None:
        try:
            self._queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        self._queue.put_nowait(item)

    async def next(self) -> Optional[FeedSnapshot]:
        """Wait for the next snapshot; None once the subscription is closed"""
        item = await self._queue.get()
        if item is self._CLOSED:
            # keep the marker for any other waiter
            self._queue.put_nowait(item)
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> FeedSnapshot:
        snapshot = await self.next()
        if snapshot is None:
            raise StopAsyncIteration
        return snapshot


class FeedBackend:
    """Decides when a FeedSync refreshes"""

    async def start(self, feed: "FeedSync") -> None:
        pass

    async def notify(self, feed: "FeedSync") -> None:
        pass

    async def stop(self) -> None:
        pass


class PushFeedBackend(FeedBackend):
    """Refresh on every reported write.

    With a RedisService, writes are also announced on ``channel`` so that
    every worker process refreshes its own snapshot.
    """

    def __init__(self, redis: Optional[RedisService] = None, channel: str = "storyfeed:feed"):
        self.redis = redis
        self.channel = channel
        self._listener: Optional[asyncio.Task] = None

    async def start(self, feed: "FeedSync") -> None:
        if self.redis is not None:
            self._listener = asyncio.create_task(self._listen(feed))

    async def notify(self, feed: "FeedSync") -> None:
        await feed.refresh()

        if self.redis is not None:
            try:
                await self.redis.publish(self.channel, json.dumps({"version": feed.snapshot.version}))
            except Exception as e:
                logger.warning(f"Could not announce feed change on {self.channel}: {e}")

    async def _listen(self, feed: "FeedSync") -> None:
        while True:
            try:
                async for _ in self.redis.listen(self.channel):
                    await feed.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Feed channel listener failed, reconnecting: {e}")
                await asyncio.sleep(1.0)

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None


class PollFeedBackend(FeedBackend):
    """Refresh every ``interval`` seconds regardless of writes"""

    def __init__(self, interval: float = 5.0):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def start(self, feed: "FeedSync") -> None:
        self._task = asyncio.create_task(self._run(feed))

    async def _run(self, feed: "FeedSync") -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await feed.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Feed poll failed, retrying in {self.interval}s: {e}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None


class FeedSync:
    """Live, ordered view of the newest ``size`` posts"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        size: int = 50,
        backend: Optional[FeedBackend] = None,
    ):
        self.session_factory = session_factory
        self.size = size
        self.backend = backend or PushFeedBackend()
        self.snapshot = FeedSnapshot(version=0)
        self._subscribers: Set[FeedSubscription] = set()
        self._refresh_lock = asyncio.Lock()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def start(self) -> None:
        await self.refresh()
        await self.backend.start(self)
        logger.info(f"Feed sync started with {type(self.backend).__name__}")

    async def stop(self) -> None:
        await self.backend.stop()
        for subscription in list(self._subscribers):
            subscription.close()
        self._subscribers.clear()
        logger.info("Feed sync stopped")

    async def subscribe(self) -> FeedSubscription:
        subscription = FeedSubscription()
        self._subscribers.add(subscription)
        subscription.offer(self.snapshot)
        logger.debug(f"Feed subscriber added. Total: {len(self._subscribers)}")
        return subscription

    async def unsubscribe(self, subscription: FeedSubscription) -> None:
        self._subscribers.discard(subscription)
        subscription.close()
        logger.debug(f"Feed subscriber removed. Total: {len(self._subscribers)}")

    async def notify(self) -> None:
        """Report that the post store changed; never raises into the writer"""
        try:
            await self.backend.notify(self)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Feed notify failed, viewers catch up on the next change: {e}")

    async def _load(self) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            posts = await PostRepository(session).list_recent(limit=self.size, offset=0)
        return [
            PostOut.model_validate(post).model_dump(mode="json", by_alias=True)
            for post in posts
        ]

    async def refresh(self) -> bool:
        """Re-read the newest posts and broadcast if they changed.

        Returns True when a new snapshot was published.
        """
        async with self._refresh_lock:
            try:
                posts = await self._load()
            except SQLAlchemyError as e:
                logger.error(f"Feed refresh failed, keeping version {self.snapshot.version}: {e}")
                return False

            if posts == self.snapshot.posts and self.snapshot.version > 0:
                return False

            self.snapshot = FeedSnapshot(version=self.snapshot.version + 1, posts=posts)
            for subscription in list(self._subscribers):
                subscription.offer(self.snapshot)

        logger.info(f"Feed snapshot v{self.snapshot.version} sent to {len(self._subscribers)} viewers")
        return True


def create_feed_sync(
    settings: Settings,
    session_factory: Callable[[], AsyncSession],
    redis: Optional[RedisService] = None,
) -> FeedSync:
    """Build a FeedSync with the backend selected by FEED_SYNC_MODE"""
    if settings.FEED_SYNC_MODE == "poll":
        backend = PollFeedBackend(settings.FEED_POLL_INTERVAL_SECONDS)
    else:
        backend = PushFeedBackend(redis, settings.FEED_REDIS_CHANNEL)

    return FeedSync(session_factory, size=settings.FEED_SIZE, backend=backend)
