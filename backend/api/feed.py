import asyncio
import json
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from config import settings
from db.database import get_db
from db.models import User
from services.activity_feed_service import DailyActivityAggregator, subscribe_daily_feed
from services.friend_graph_service import FriendGraphManager
from utils.datetime_utils import today_for_tz

router = APIRouter(prefix="/feed", tags=["feed"])


@router.get("")
def daily_feed(
    as_of: Optional[datetime] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Friends' activity for the viewer's local day."""
    friend_ids = FriendGraphManager(db).friend_ids(user.id)
    feed = DailyActivityAggregator(db, tz_name=user.timezone).build_feed(friend_ids, as_of=as_of)
    return {
        "date": today_for_tz(user.timezone, now=as_of).isoformat(),
        "friends": [entry.to_dict() for entry in feed],
    }


@router.get("/stream")
async def daily_feed_stream(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """SSE stream of the feed, re-emitted whenever a friend's records change.

    The friend set and the day window are fixed when the stream opens; clients
    reconnect after accepting or removing friends and after local midnight.
    """
    source = getattr(request.app.state, "snapshot_source", None)
    if source is None:
        raise HTTPException(status_code=503, detail="Live feed is not available")

    friend_ids = FriendGraphManager(db).friend_ids(user.id)
    tz_name = user.timezone
    loop = asyncio.get_running_loop()
    updates: asyncio.Queue = asyncio.Queue()

    # Feeds arrive on the snapshot source's worker threads.
    def push(payload: dict) -> None:
        loop.call_soon_threadsafe(updates.put_nowait, payload)

    def on_feed(feed) -> None:
        push({"type": "feed", "friends": [entry.to_dict() for entry in feed]})

    def on_error(exc: Exception) -> None:
        push({"type": "error", "text": str(exc)})

    async def event_stream():
        subscription = subscribe_daily_feed(source, friend_ids, on_feed, tz_name=tz_name, on_error=on_error)
        try:
            while not await request.is_disconnected():
                try:
                    payload = await asyncio.wait_for(
                        updates.get(), timeout=settings.FEED_STREAM_KEEPALIVE_SECONDS
                    )
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(payload)}\n\n"
        finally:
            subscription.cancel()

    return StreamingResponse(event_stream(), media_type="text/event-stream")
