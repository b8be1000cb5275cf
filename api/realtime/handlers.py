"""Handlers for events sent by realtime clients.

Every handler re-checks that the user may act on the booking, post or
service it names before changing anything. Failures are reported to the
sender as an ``error`` event and never close the connection.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from bookings import BookingManager, BookingError
from community import CommunityManager, CommunityError
from services import ServiceManager, ServiceError
from database.lib.document import GeoPoint, utcnow
from .models import ClientEvent, RealtimeMessage, ServerEvent
from .presence import PresenceRegistry, booking_room, city_room, location_room

logger = logging.getLogger(__name__)

class RealtimeError(Exception):
    """Raised when a client event cannot be applied."""
    pass

def _coordinates(value: Any) -> GeoPoint:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise RealtimeError("Invalid coordinates")
    try:
        return GeoPoint(coordinates=[float(value[0]), float(value[1])])
    except (TypeError, ValueError, ValidationError):
        raise RealtimeError("Invalid coordinates")

class EventHandler:
    """Applies client events for one authenticated connection."""

    def __init__(self, registry: PresenceRegistry, store, user):
        """Initialize the handler.

        Args:
            registry: Process-wide presence registry
            store: Collection store
            user: Authenticated User owning the connection
        """
        self.registry = registry
        self.store = store
        self.user = user
        self.handlers = {
            ClientEvent.USER_CONNECT: self.user_connect,
            ClientEvent.JOIN_BOOKING: self.join_booking,
            ClientEvent.LEAVE_BOOKING: self.leave_booking,
            ClientEvent.BOOKING_MESSAGE: self.booking_message,
            ClientEvent.BOOKING_STATUS_UPDATE: self.booking_status_update,
            ClientEvent.JOIN_COMMUNITY_FEED: self.join_community_feed,
            ClientEvent.COMMUNITY_POST_LIKE: self.community_post_like,
            ClientEvent.SHARE_LOCATION: self.share_location,
            ClientEvent.SERVICE_AVAILABILITY_UPDATE: self.service_availability_update,
            ClientEvent.BOOKING_TYPING_START: self.booking_typing_start,
            ClientEvent.BOOKING_TYPING_STOP: self.booking_typing_stop,
            ClientEvent.EMERGENCY_ALERT: self.emergency_alert,
            ClientEvent.HEARTBEAT: self.heartbeat,
            ClientEvent.GET_COMMUNITY_STATS: self.get_community_stats,
        }

    @property
    def user_id(self) -> str:
        return self.user.id

    async def reply(self, event: ServerEvent, data: Optional[Dict[str, Any]] = None) -> None:
        await self.registry.send(self.user_id, event.value, data)

    async def handle(self, message: RealtimeMessage) -> None:
        """Dispatch one client event, reporting failures to the sender."""
        try:
            await self.handlers[message.type](message.data)
        except (RealtimeError, BookingError, CommunityError, ServiceError, ValueError) as e:
            await self.reply(ServerEvent.ERROR, {'message': str(e), 'event': message.type.value})
        except Exception as e:
            logger.error(f"Realtime event {message.type.value} from user {self.user_id} failed: {e}")
            await self.reply(ServerEvent.ERROR, {
                'message': f"Failed to handle {message.type.value}",
                'event': message.type.value
            })

    async def connection_success(self) -> None:
        await self.reply(ServerEvent.CONNECTION_SUCCESS, {
            'userId': self.user_id,
            'connectedAt': utcnow(),
            'activeRooms': self.registry.rooms_of(self.user_id)
        })

    async def user_connect(self, data: Dict[str, Any]) -> None:
        self.registry.touch(self.user_id, data.get('status') or 'online')
        self.registry.join_default_rooms(self.user)
        await self.connection_success()

    async def _booking_for_participant(self, data: Dict[str, Any]):
        booking_id = data.get('bookingId')
        if not booking_id:
            raise RealtimeError("Booking ID is required")
        return await BookingManager(self.store).get_for_participant(booking_id, self.user_id)

    async def join_booking(self, data: Dict[str, Any]) -> None:
        booking = await self._booking_for_participant(data)
        self.registry.join(self.user_id, booking_room(booking.id))
        await self.reply(ServerEvent.JOINED_BOOKING, {'bookingId': booking.id})

    async def leave_booking(self, data: Dict[str, Any]) -> None:
        booking_id = data.get('bookingId')
        if not booking_id:
            raise RealtimeError("Booking ID is required")
        self.registry.leave(self.user_id, booking_room(booking_id))
        await self.reply(ServerEvent.LEFT_BOOKING, {'bookingId': booking_id})

    async def booking_message(self, data: Dict[str, Any]) -> None:
        booking_id = data.get('bookingId')
        text = (data.get('message') or '').strip()
        if not booking_id or not text:
            raise RealtimeError("Booking ID and message are required")

        booking, message = await BookingManager(self.store).add_message(booking_id, self.user_id, text)
        await self.registry.emit_to_booking(booking.id, ServerEvent.BOOKING_MESSAGE_RECEIVED.value, {
            'bookingId': booking.id,
            'message': {
                'id': message.id,
                'sender': {
                    'id': self.user_id,
                    'name': self.user.full_name,
                    'avatar': self.user.avatar
                },
                'content': message.message,
                'timestamp': message.timestamp
            }
        })

        other = booking.other_participant(self.user_id)
        if not self.registry.is_online(other):
            logger.info(f"User {other} is offline, booking {booking.id} message not pushed")

    async def booking_status_update(self, data: Dict[str, Any]) -> None:
        booking_id = data.get('bookingId')
        status = data.get('status')
        if not booking_id or not status:
            raise RealtimeError("Booking ID and status are required")

        booking = await BookingManager(self.store).update_status(
            booking_id,
            self.user_id,
            status,
            reason=data.get('reason') or '',
            notes=data.get('notes') or ''
        )
        await self.registry.emit_to_booking(booking.id, ServerEvent.BOOKING_STATUS_UPDATED.value, {
            'bookingId': booking.id,
            'status': booking.status.value,
            'updatedBy': {'id': self.user_id, 'name': self.user.full_name},
            'reason': data.get('reason'),
            'notes': data.get('notes'),
            'updatedAt': booking.updated_at
        })

    async def join_community_feed(self, data: Dict[str, Any]) -> None:
        city, state = data.get('city'), data.get('state')
        coordinates = data.get('coordinates')
        if city and state:
            self.registry.join(self.user_id, city_room(city, state))
        if coordinates is not None:
            point = _coordinates(coordinates)
            self.registry.join(self.user_id, location_room(point.longitude, point.latitude))
        await self.reply(ServerEvent.JOINED_COMMUNITY_FEED, {
            'city': city,
            'state': state,
            'coordinates': coordinates
        })

    async def community_post_like(self, data: Dict[str, Any]) -> None:
        post_id, action = data.get('postId'), data.get('action')
        if not post_id:
            raise RealtimeError("Post ID is required")
        if action not in ('like', 'unlike'):
            raise RealtimeError("Action must be 'like' or 'unlike'")

        post = await CommunityManager(self.store).set_like(post_id, self.user_id, like=action == 'like')
        await self.registry.emit_to_city(
            post.address.city, post.address.state, ServerEvent.COMMUNITY_POST_LIKED.value, {
                'postId': post.id,
                'action': action,
                'userId': self.user_id,
                'userName': self.user.full_name,
                'likeCount': post.like_count
            }
        )

    async def share_location(self, data: Dict[str, Any]) -> None:
        point = _coordinates(data.get('coordinates'))
        timestamp = data.get('timestamp') or utcnow()
        self.registry.set_location(self.user_id, {
            'coordinates': point.coordinates,
            'accuracy': data.get('accuracy'),
            'timestamp': timestamp
        })
        await self.registry.emit(
            location_room(point.longitude, point.latitude),
            ServerEvent.NEARBY_USER_LOCATION.value,
            {
                'userId': self.user_id,
                'userName': self.user.full_name,
                'coordinates': point.coordinates,
                'trustScore': self.user.trust_score,
                'timestamp': timestamp
            },
            exclude=self.user_id
        )

    async def service_availability_update(self, data: Dict[str, Any]) -> None:
        service_id = data.get('serviceId')
        if not service_id:
            raise RealtimeError("Service ID is required")
        service = await ServiceManager(self.store).get_owned(service_id, self.user_id)

        location = data.get('location') or service.location.model_dump(mode='json')
        if not isinstance(location, dict):
            raise RealtimeError("Invalid coordinates")
        point = _coordinates(location.get('coordinates'))
        await self.registry.emit(
            location_room(point.longitude, point.latitude),
            ServerEvent.SERVICE_AVAILABILITY_CHANGED.value,
            {
                'serviceId': service.id,
                'providerId': self.user_id,
                'providerName': self.user.full_name,
                'isAvailable': bool(data.get('isAvailable')),
                'location': location,
                'timestamp': utcnow()
            },
            exclude=self.user_id
        )

    async def _typing(self, data: Dict[str, Any], is_typing: bool) -> None:
        booking_id = data.get('bookingId')
        room = booking_room(booking_id)
        if not booking_id or not self.registry.in_room(self.user_id, room):
            raise RealtimeError("Join the booking before sending typing updates")
        await self.registry.emit(room, ServerEvent.BOOKING_USER_TYPING.value, {
            'bookingId': booking_id,
            'userId': self.user_id,
            'userName': self.user.full_name,
            'isTyping': is_typing
        }, exclude=self.user_id)

    async def booking_typing_start(self, data: Dict[str, Any]) -> None:
        await self._typing(data, True)

    async def booking_typing_stop(self, data: Dict[str, Any]) -> None:
        await self._typing(data, False)

    async def emergency_alert(self, data: Dict[str, Any]) -> None:
        title, description, category = data.get('title'), data.get('description'), data.get('category')
        if not title or not description or not category:
            raise RealtimeError("Title, description, and category are required")

        location = data.get('location')
        if location is not None:
            if not isinstance(location, dict):
                raise RealtimeError("Invalid coordinates")
            location = {'type': 'Point', 'coordinates': _coordinates(location.get('coordinates')).coordinates}

        post = await CommunityManager(self.store).create_alert(self.user, title, description, location)
        await self.registry.emit_to_city(
            self.user.address.city, self.user.address.state, ServerEvent.EMERGENCY_ALERT_RECEIVED.value, {
                'postId': post.id,
                'title': title,
                'description': description,
                'category': category,
                'location': location,
                'author': {
                    'id': self.user_id,
                    'name': self.user.full_name,
                    'trustScore': self.user.trust_score
                },
                'timestamp': post.created_at
            }
        )
        await self.reply(ServerEvent.EMERGENCY_ALERT_SENT, {'postId': post.id})

    async def heartbeat(self, data: Dict[str, Any]) -> None:
        self.registry.touch(self.user_id)
        await self.reply(ServerEvent.HEARTBEAT_ACK, {'timestamp': utcnow()})

    async def get_community_stats(self, data: Dict[str, Any]) -> None:
        city, state = self.user.address.city, self.user.address.state
        if not city or not state:
            raise RealtimeError("User location not set")

        stats = await CommunityManager(self.store).city_stats(city, state)
        await self.reply(ServerEvent.COMMUNITY_STATS, {
            'city': city,
            'state': state,
            'onlineUsers': self.registry.room_size(city_room(city, state)),
            'connectedUsers': len(self.registry),
            **stats
        })

__all__ = ['EventHandler', 'RealtimeError']
