"""Live gallery WebSocket.

Protocol (JSON text frames):

    server -> client  snapshot | insert | update | delete | stats | disconnected | pong
    client -> server  {"type": "ping"} every REALTIME_HEARTBEAT_SECONDS
                      {"type": "resync"} after a "disconnected" message

Deltas are pushed from whichever thread confirmed the write; the sink only
hands them to this connection's event loop, which owns the socket. Snapshot
refetches hit the database under the channel lock, so they run in the
threadpool rather than on the loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from db import get_db
from instamoments.core import errors
from instamoments.core.settings import settings
from instamoments.models.event import Event
from instamoments.services.gallery_query import GalleryQuery, GalleryStats, load_gallery_event
from instamoments.services.realtime import GalleryCache, Subscriber

router = APIRouter()
logger = logging.getLogger(__name__)
audit = logging.getLogger("audit")

# Application-defined close codes (4000-4999)
_CLOSE_CODES = {404: 4404, 410: 4410, 400: 4400}


@router.websocket("/ws/gallery/{key}")
async def gallery_socket(
    websocket: WebSocket,
    key: str,
    sortBy: str = "newest",  # noqa: N803
    type: str = "all",  # noqa: A002
    search: Optional[str] = None,
    contributor: Optional[str] = None,
    db: Session = Depends(get_db),
):
    engine = websocket.app.state.realtime
    gallery = websocket.app.state.gallery
    try:
        event = load_gallery_event(db, key)
        query = GalleryQuery(
            limit=settings.GALLERY_DEFAULT_LIMIT,
            search=(search or "").strip() or None,
            contributor=contributor,
            sort_by=sortBy,
            media_type=type,
        )
    except errors.GalleryError as e:
        await websocket.close(code=_CLOSE_CODES.get(e.status_code, 4400), reason=e.code)
        return

    event_id = event.EventID
    await websocket.accept()
    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue = asyncio.Queue()

    def sink(message: dict) -> None:
        loop.call_soon_threadsafe(outbox.put_nowait, message)

    def refetch(q: GalleryQuery):
        db.expire_all()
        current = db.query(Event).filter(Event.EventID == event_id).first()
        if current is None:
            return [], GalleryStats()
        return gallery.query(db, current, q).items, GalleryStats.from_event(current)

    subscriber = Subscriber(GalleryCache(query), refetch, sink=sink)

    async def pump() -> None:
        while True:
            message = await outbox.get()
            try:
                await websocket.send_json(message)
            except Exception:
                logger.info(
                    "realtime.send_failed",
                    extra={"event_id": event_id, "subscriber_id": subscriber.id},
                    exc_info=True,
                )
                subscriber.mark_disconnected("send_failed")
                return

    sender = asyncio.create_task(pump())
    timeout = settings.REALTIME_HEARTBEAT_TIMEOUT_SECONDS
    try:
        await run_in_threadpool(engine.subscribe, event_id, subscriber)
        while True:
            try:
                incoming = await asyncio.wait_for(websocket.receive_json(), timeout=timeout)
            except asyncio.TimeoutError:
                subscriber.mark_disconnected("heartbeat_timeout")
                continue
            kind = incoming.get("type") if isinstance(incoming, dict) else None
            if kind == "ping":
                subscriber.heartbeat()
                sink({"type": "pong"})
            elif kind == "resync":
                await run_in_threadpool(engine.reconnect, event_id, subscriber)
    except WebSocketDisconnect:
        pass
    except ValueError:
        # non-JSON frame
        await websocket.close(code=4400)
    finally:
        engine.unsubscribe(event_id, subscriber.id)
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        audit.info(
            "realtime.closed",
            extra={"event_id": event_id, "subscriber_id": subscriber.id},
        )
