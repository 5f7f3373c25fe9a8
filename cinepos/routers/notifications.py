import asyncio
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from cinepos.config import settings
from cinepos.db import SessionLocal
from cinepos.deps import decode_token
from cinepos.errors import AuthenticationFailed
from cinepos.models.core import User
from cinepos.services import events

log = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["notifications"])


class ConnectionManager:
    def __init__(self):
        self.active_connections: dict[str, set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, theater_id: str):
        await websocket.accept()
        self.active_connections.setdefault(theater_id, set()).add(websocket)

    def disconnect(self, websocket: WebSocket, theater_id: str):
        self.active_connections.get(theater_id, set()).discard(websocket)

    def count(self, theater_id: str) -> int:
        return len(self.active_connections.get(theater_id, ()))


manager = ConnectionManager()


def _authorize(token: str | None, theater_id: str) -> str:
    if not token:
        raise AuthenticationFailed("Token required")
    sub = decode_token(token)
    with SessionLocal() as db:
        user = db.get(User, sub)
        if not user or not user.active:
            raise AuthenticationFailed("Unknown or inactive user")
        if user.theater_id is not None and user.theater_id != theater_id:
            raise AuthenticationFailed("No access to this theater")
    return sub


def _fetch(theater_id: str, since: int | None) -> tuple[int, list[dict]]:
    with SessionLocal() as db:
        if since is None:
            return events.latest_seq(db, theater_id), []
        evs = events.events_since(db, theater_id, since, limit=200)
        return (evs[-1].seq if evs else since), [events.serialize_event(e) for e in evs]


@router.websocket("/orders/{theater_id}")
async def order_stream(websocket: WebSocket, theater_id: str,
                       token: str | None = Query(None), since: int | None = Query(None)):
    """
    Live order events for one theater (new orders, status changes).
    ``since`` resumes after a known sequence number; without it only new events are sent.
    """
    try:
        await asyncio.to_thread(_authorize, token, theater_id)
    except AuthenticationFailed as e:
        await websocket.close(code=1008, reason=e.message)
        return

    await manager.connect(websocket, theater_id)
    log.info("order stream opened for theater %s (%d listening)", theater_id, manager.count(theater_id))

    async def pump(cursor: int | None):
        while True:
            cursor, batch = await asyncio.to_thread(_fetch, theater_id, cursor)
            for ev in batch:
                await websocket.send_json({"type": ev["kind"], **ev})
            await asyncio.sleep(settings.NOTIFY_POLL_SEC)

    task = asyncio.create_task(pump(since))
    try:
        while True:
            # client pings; also how a disconnect is noticed
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        task.cancel()
        manager.disconnect(websocket, theater_id)
        log.info("order stream closed for theater %s", theater_id)
