"""
Realtime module for the TrustCircle API.
Provides presence, booking chat and community notifications over WebSocket.
"""

import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from auth import AuthManager, AuthError
from database import get_store
from .handlers import EventHandler, RealtimeError
from .models import ClientEvent, RealtimeMessage, ServerEvent
from .presence import PresenceRegistry, user_room, booking_room, location_room, city_room

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(tags=["Realtime"])

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, store=Depends(get_store)):
    """WebSocket endpoint for realtime events."""
    # Accept the connection first
    await websocket.accept()
    registry: PresenceRegistry = websocket.app.state.presence

    user = None
    try:
        # Wait for authentication message
        auth_message = await websocket.receive_json()
        if not isinstance(auth_message, dict) or "token" not in auth_message:
            await websocket.close(code=4001, reason="Authentication required")
            return

        try:
            user = await AuthManager(store).authenticate(auth_message["token"])
        except AuthError as e:
            await websocket.close(code=4001, reason=str(e))
            return

        registry.connect(websocket, user, status=auth_message.get("status") or "online")
        handler = EventHandler(registry, store, user)
        await handler.connection_success()
        logger.info(f"User {user.id} connected to realtime")

        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({
                    "type": ServerEvent.ERROR.value,
                    "data": {"message": "Invalid message format: frames must be JSON"}
                })
                continue

            try:
                message = RealtimeMessage.model_validate(data)
            except ValidationError as e:
                await websocket.send_json({
                    "type": ServerEvent.ERROR.value,
                    "data": {"message": f"Invalid message format: {e.errors()[0]['msg']}"}
                })
                continue
            await handler.handle(message)

    except WebSocketDisconnect:
        if user:
            logger.info(f"User {user.id} disconnected from realtime")
    except Exception as e:
        logger.error(f"Realtime connection error: {e}")
        if websocket.client_state != WebSocketState.DISCONNECTED:
            await websocket.close(code=1011, reason="Internal error")
    finally:
        if user:
            registry.disconnect(user.id, websocket)

# Export the router
__all__ = [
    'router',
    'PresenceRegistry',
    'EventHandler',
    'RealtimeError',
    'RealtimeMessage',
    'ClientEvent',
    'ServerEvent',
    'user_room',
    'booking_room',
    'location_room',
    'city_room'
]
