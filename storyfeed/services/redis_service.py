# storyfeed/services/redis_service.py
from typing import AsyncIterator
from redis.asyncio import Redis
from storyfeed.config import settings

class RedisService:
    def __init__(self, url: str = None):
        self.redis: Redis = Redis.from_url(url or settings.REDIS_URL, decode_responses=True)

    async def publish(self, channel: str, message: str) -> int:
        """Publish a message; returns the number of receiving subscribers"""
        return await self.redis.publish(channel, message)

    async def listen(self, channel: str) -> AsyncIterator[str]:
        """Yield messages published on a channel until cancelled"""
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    yield message["data"]
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def close(self):
        """Close the Redis connection"""
        await self.redis.aclose()
