# FILE: app/api/routes_notifications.py
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session

from app.api.deps import actor_for, get_db, user_from_token
from app.core.rbac import Actor, Role
from app.services.notifier import (
    ADMIN,
    PRESCRIPTION_READERS,
    customer_room,
    fulfiller_room,
    get_notifier,
)
from app.utils.timezone import now_utc

logger = logging.getLogger(__name__)
router = APIRouter(tags=["notifications"])


def rooms_for(actor: Actor) -> List[str]:
    """Audiences a connected user listens to."""
    if actor.role == Role.CUSTOMER:
        return [customer_room(actor.id)]
    if actor.role == Role.PRESCRIPTION_READER:
        return [PRESCRIPTION_READERS]
    if actor.role == Role.PHARMACY:
        return [PRESCRIPTION_READERS, fulfiller_room(actor.id)]
    if actor.role == Role.VENDOR:
        return [fulfiller_room(actor.id)]
    return [ADMIN, PRESCRIPTION_READERS]


@router.websocket("/ws/notifications")
async def notifications_ws(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    try:
        actor = actor_for(user_from_token(token, db))
    except HTTPException as e:
        logger.info("Rejected websocket connection: %s", e.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    manager = get_notifier().manager
    rooms = rooms_for(actor)
    await manager.connect(websocket, rooms)
    await websocket.send_json({
        "event": "connected",
        "audiences": rooms,
        "timestamp": now_utc().isoformat(),
    })

    try:
        while True:
            message = await websocket.receive_json()
            if isinstance(message, dict) and message.get("type") == "heartbeat":
                await websocket.send_json({
                    "event": "heartbeat_ack",
                    "timestamp": now_utc().isoformat(),
                })
    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.error("Websocket error for user %s: %s", actor.id, e)
        manager.disconnect(websocket)
