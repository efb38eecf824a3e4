# FILE: app/services/notifier.py
"""
Real-time notifications over websocket rooms.

publish() is fire-and-forget: it never raises and never blocks the workflow
operation that triggered it. Failures are logged and dropped.
"""
from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Future
from typing import Any, Dict, Iterable, List, Optional

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from fastapi.websockets import WebSocketState

from app.utils.timezone import now_utc

logger = logging.getLogger(__name__)

PRESCRIPTION_READERS = "prescription_readers"
ADMIN = "admin"


def customer_room(customer_id: int) -> str:
    return f"customer_{customer_id}"


def fulfiller_room(fulfiller_id: int) -> str:
    return f"fulfiller_{fulfiller_id}"


class ConnectionManager:
    """room name -> connected websockets"""

    def __init__(self) -> None:
        self.rooms: Dict[str, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, rooms: Iterable[str]) -> None:
        await websocket.accept()
        for room in rooms:
            self.rooms.setdefault(room, []).append(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        for room in list(self.rooms):
            conns = self.rooms[room]
            if websocket in conns:
                conns.remove(websocket)
            if not conns:
                del self.rooms[room]

    async def broadcast(self, room: str, message: Dict[str, Any]) -> None:
        dead: List[WebSocket] = []
        for websocket in list(self.rooms.get(room, [])):
            try:
                if websocket.client_state == WebSocketState.CONNECTED:
                    await websocket.send_json(message)
                else:
                    dead.append(websocket)
            except Exception:
                logger.exception("Broadcast to room %s failed", room)
                dead.append(websocket)
        for websocket in dead:
            self.disconnect(websocket)


class Notifier:

    def __init__(self, manager: Optional[ConnectionManager] = None) -> None:
        self.manager = manager or ConnectionManager()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def publish(self, audience: str, event: str, payload: Dict[str, Any]) -> None:
        message = {
            "event": event,
            "audience": audience,
            "data": jsonable_encoder(payload),
            "timestamp": now_utc().isoformat(),
        }
        try:
            self._dispatch(audience, message)
        except Exception:
            logger.exception("Notification %s to %s failed", event, audience)

    def _dispatch(self, audience: str, message: Dict[str, Any]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("No event loop bound; dropping %s for %s",
                         message["event"], audience)
            return
        fut = asyncio.run_coroutine_threadsafe(
            self.manager.broadcast(audience, message), loop)
        fut.add_done_callback(_log_failure)


def _log_failure(fut: Future) -> None:
    if fut.cancelled():
        return
    exc = fut.exception()
    if exc is not None:
        logger.error("Notification delivery failed: %s", exc)


notifier = Notifier()


def get_notifier() -> Notifier:
    return notifier
