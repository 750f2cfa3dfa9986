from fastapi import APIRouter, Request, WebSocket
import logging

from storyfeed.schemas.post_schema import FeedSnapshotOut

logger = logging.getLogger(__name__)

router = APIRouter()

@router.get("/api/feed", response_model=FeedSnapshotOut)
async def get_feed(request: Request):
    """Current feed snapshot, for viewers that poll instead of holding a socket"""
    snapshot = request.app.state.feed_sync.snapshot
    return {"version": snapshot.version, "posts": snapshot.posts}

@router.websocket("/ws/feed")
async def feed_socket(websocket: WebSocket):
    """Stream full feed snapshots to a live viewer"""
    state = websocket.app.state
    await state.feed_connections.serve(websocket, state.feed_sync)
