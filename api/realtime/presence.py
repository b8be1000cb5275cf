"""Connection and room registry for the realtime layer.

One registry lives on the application state for the lifetime of the process.
Connections are keyed by user id; a user reconnecting replaces their earlier
socket. Rooms are plain sets of user ids.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from database.lib.document import utcnow

logger = logging.getLogger(__name__)

def user_room(user_id: str) -> str:
    return f"user_{user_id}"

def booking_room(booking_id: str) -> str:
    return f"booking_{booking_id}"

def location_room(lng: float, lat: float) -> str:
    """Grid cell room, roughly 11km a side."""
    return f"location_{math.floor(lat * 10)}_{math.floor(lng * 10)}"

def city_room(city: str, state: str) -> str:
    return re.sub(r'\s+', '_', f"city_{city}_{state}".lower())

@dataclass
class Presence:
    """What the registry knows about one connected user."""
    user_id: str
    name: str
    websocket: WebSocket
    status: str = 'online'
    connected_at: datetime = field(default_factory=utcnow)
    last_seen: datetime = field(default_factory=utcnow)
    location: Optional[Dict[str, Any]] = None

class PresenceRegistry:
    """Tracks connected users and the rooms they belong to."""

    def __init__(self):
        # Map of user id -> presence
        self.connections: Dict[str, Presence] = {}
        # Map of room -> user ids
        self.rooms: Dict[str, Set[str]] = {}
        # Map of user id -> rooms joined
        self.memberships: Dict[str, Set[str]] = {}

    def __len__(self) -> int:
        return len(self.connections)

    def is_online(self, user_id: str) -> bool:
        return user_id in self.connections

    def connect(self, websocket: WebSocket, user, status: str = 'online') -> Presence:
        """Register an authenticated socket and join its default rooms.

        Args:
            websocket: Accepted connection
            user: Authenticated User
            status: Initial presence status

        Returns:
            The new presence entry
        """
        if user.id in self.connections:
            logger.info(f"User {user.id} reconnected, replacing earlier connection")

        presence = Presence(user_id=user.id, name=user.full_name, websocket=websocket, status=status)
        self.connections[user.id] = presence
        self.join_default_rooms(user)
        return presence

    def join_default_rooms(self, user) -> List[str]:
        """Join the personal, grid cell and city rooms for a user."""
        self.join(user.id, user_room(user.id))
        if user.location and user.location.coordinates:
            lng, lat = user.location.coordinates
            self.join(user.id, location_room(lng, lat))
        if user.address.city and user.address.state:
            self.join(user.id, city_room(user.address.city, user.address.state))
        return self.rooms_of(user.id)

    def disconnect(self, user_id: str, websocket: Optional[WebSocket] = None) -> None:
        """Forget a user and leave all their rooms.

        When websocket is given, nothing happens if the user has since
        reconnected on another socket.
        """
        presence = self.connections.get(user_id)
        if presence is None:
            return
        if websocket is not None and presence.websocket is not websocket:
            return

        del self.connections[user_id]
        for room in self.memberships.pop(user_id, set()):
            members = self.rooms.get(room)
            if members is not None:
                members.discard(user_id)
                if not members:
                    del self.rooms[room]

    def join(self, user_id: str, room: str) -> None:
        self.rooms.setdefault(room, set()).add(user_id)
        self.memberships.setdefault(user_id, set()).add(room)

    def leave(self, user_id: str, room: str) -> None:
        members = self.rooms.get(room)
        if members is not None:
            members.discard(user_id)
            if not members:
                del self.rooms[room]
        if user_id in self.memberships:
            self.memberships[user_id].discard(room)

    def in_room(self, user_id: str, room: str) -> bool:
        return user_id in self.rooms.get(room, set())

    def rooms_of(self, user_id: str) -> List[str]:
        return sorted(self.memberships.get(user_id, set()))

    def room_size(self, room: str) -> int:
        return len(self.rooms.get(room, set()))

    def touch(self, user_id: str, status: Optional[str] = None) -> None:
        presence = self.connections.get(user_id)
        if presence:
            presence.last_seen = utcnow()
            if status:
                presence.status = status

    def set_location(self, user_id: str, location: Dict[str, Any]) -> None:
        presence = self.connections.get(user_id)
        if presence:
            presence.location = location

    async def send(self, user_id: str, event: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Send one frame to a connected user. Returns False if it could not be delivered."""
        presence = self.connections.get(user_id)
        if presence is None:
            return False
        try:
            await presence.websocket.send_json({'type': event, 'data': jsonable_encoder(data or {})})
            return True
        except Exception as e:
            logger.warning(f"Dropping connection for user {user_id} after send failure: {e}")
            self.disconnect(user_id, presence.websocket)
            return False

    async def emit(self, room: str, event: str, data: Optional[Dict[str, Any]] = None,
                   exclude: Optional[str] = None) -> int:
        """Send a frame to every member of a room. Returns the number of deliveries."""
        delivered = 0
        for user_id in list(self.rooms.get(room, set())):
            if user_id == exclude:
                continue
            if await self.send(user_id, event, data):
                delivered += 1
        return delivered

    async def emit_to_user(self, user_id: str, event: str, data: Optional[Dict[str, Any]] = None) -> int:
        return await self.emit(user_room(user_id), event, data)

    async def emit_to_booking(self, booking_id: str, event: str, data: Optional[Dict[str, Any]] = None) -> int:
        return await self.emit(booking_room(booking_id), event, data)

    async def emit_to_city(self, city: str, state: str, event: str,
                           data: Optional[Dict[str, Any]] = None) -> int:
        return await self.emit(city_room(city, state), event, data)

    async def close(self) -> None:
        """Close every open connection."""
        for presence in list(self.connections.values()):
            try:
                await presence.websocket.close(code=1001)
            except Exception as e:
                logger.warning(f"Error closing connection for user {presence.user_id}: {e}")
        self.connections.clear()
        self.rooms.clear()
        self.memberships.clear()

__all__ = [
    'PresenceRegistry',
    'Presence',
    'user_room',
    'booking_room',
    'location_room',
    'city_room'
]
