import asyncio
import logging
from typing import Set
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from storyfeed.services.feed_service import FeedSync, FeedSubscription

logger = logging.getLogger(__name__)

class FeedConnectionManager:
    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self.lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        """Accept and register a viewer's WebSocket"""
        await websocket.accept()

        async with self.lock:
            self.active_connections.add(websocket)

        logger.info(f"Feed viewer connected. Total connections: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket):
        """Unregister a viewer's WebSocket"""
        async with self.lock:
            self.active_connections.discard(websocket)

        logger.info(f"Feed viewer disconnected. Total connections: {len(self.active_connections)}")

    async def serve(self, websocket: WebSocket, feed_sync: FeedSync):
        """Stream feed snapshots to one viewer until either side goes away.

        The subscription is released as soon as the viewer disconnects,
        without waiting on any other viewer.
        """
        await self.connect(websocket)
        subscription = await feed_sync.subscribe()

        sender = asyncio.create_task(self._send_snapshots(websocket, subscription))
        receiver = asyncio.create_task(self._receive_until_closed(websocket))

        try:
            done, _ = await asyncio.wait(
                {sender, receiver},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in done:
                error = None if task.cancelled() else task.exception()
                if error is not None and not isinstance(error, WebSocketDisconnect):
                    logger.error(f"Feed WebSocket error: {error}")
        finally:
            # also reached when this handler is cancelled mid-wait
            for task in (sender, receiver):
                task.cancel()
            await asyncio.gather(sender, receiver, return_exceptions=True)

            await feed_sync.unsubscribe(subscription)
            await self.disconnect(websocket)

            if websocket.client_state == WebSocketState.CONNECTED:
                try:
                    await websocket.close(code=1001)
                except RuntimeError:
                    pass

    async def _send_snapshots(self, websocket: WebSocket, subscription: FeedSubscription):
        async for snapshot in subscription:
            await websocket.send_json(snapshot.to_message())

    async def _receive_until_closed(self, websocket: WebSocket):
        # viewers have nothing to say; reading is how a disconnect is noticed
        while True:
            await websocket.receive_text()
