"""Real-time brand notifications over WebSocket.

WHAT:
    `/ws/brands/{brand_id}` joins the brand's notification room and streams
    revenue recalculation events to the dashboard.

PROTOCOL:
    1. Client connects with the session cookie (or ?token=<jwt>)
    2. Server validates the JWT and brand access, sends {"type": "connected"}
    3. Server pushes {"event": "metrics-calculation-complete" | "metrics-calculation-error", ...}
    4. Client can send {"type": "ping"}; server responds with {"type": "pong"}

REFERENCES:
    - shopsync/services/notification_bus.py
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import UUID

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from jose import JWTError
from sqlalchemy.orm import Session

from shopsync.database import get_db
from shopsync.models import Brand, User
from shopsync.security import decode_token
from shopsync.services.notification_bus import brand_room, notification_bus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Notifications"])


def authenticate_websocket(websocket: WebSocket, db: Session) -> Tuple[Optional[User], Optional[str]]:
    """Resolve the user behind a WebSocket handshake.

    Returns:
        Tuple of (User, None) on success, or (None, error_message) on failure
    """
    token = websocket.query_params.get("token") or websocket.cookies.get("access_token")
    if not token:
        return None, "Missing authentication token"

    if token.startswith("Bearer "):
        token = token[len("Bearer "):]

    try:
        payload = decode_token(token)
    except JWTError:
        return None, "Invalid token"

    subject = payload.get("sub")
    user = db.query(User).filter(User.email == subject).first() if subject else None
    if not user:
        return None, "User not found"
    return user, None


@router.websocket("/ws/brands/{brand_id}")
async def brand_notifications(
    websocket: WebSocket,
    brand_id: UUID,
    db: Session = Depends(get_db),
):
    """WebSocket endpoint for revenue notifications of one brand."""
    user, error = authenticate_websocket(websocket, db)
    if error:
        await websocket.close(code=4001, reason=error)
        return

    brand = db.query(Brand).filter(Brand.id == brand_id).first()
    if not brand or (not user.is_admin and brand not in user.brands):
        await websocket.close(code=4004, reason="Brand not found")
        return

    await websocket.accept()
    await notification_bus.subscribe(brand_id, websocket)

    try:
        await websocket.send_json({
            "type": "connected",
            "room": brand_room(brand_id),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

        while True:
            try:
                data = await websocket.receive_json()

                if isinstance(data, dict) and data.get("type") == "ping":
                    await websocket.send_json({
                        "type": "pong",
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    })

            except WebSocketDisconnect:
                break
            except Exception as e:
                logger.warning(f"[NOTIFY] WebSocket receive error: {e}")
                break

    finally:
        await notification_bus.unsubscribe(brand_id, websocket)
