from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class ClientEvent(str, Enum):
    USER_CONNECT = "user_connect"
    JOIN_BOOKING = "join_booking"
    LEAVE_BOOKING = "leave_booking"
    BOOKING_MESSAGE = "booking_message"
    BOOKING_STATUS_UPDATE = "booking_status_update"
    JOIN_COMMUNITY_FEED = "join_community_feed"
    COMMUNITY_POST_LIKE = "community_post_like"
    SHARE_LOCATION = "share_location"
    SERVICE_AVAILABILITY_UPDATE = "service_availability_update"
    BOOKING_TYPING_START = "booking_typing_start"
    BOOKING_TYPING_STOP = "booking_typing_stop"
    EMERGENCY_ALERT = "emergency_alert"
    HEARTBEAT = "heartbeat"
    GET_COMMUNITY_STATS = "get_community_stats"


class ServerEvent(str, Enum):
    CONNECTION_SUCCESS = "connection_success"
    JOINED_BOOKING = "joined_booking"
    LEFT_BOOKING = "left_booking"
    BOOKING_MESSAGE_RECEIVED = "booking_message_received"
    BOOKING_STATUS_UPDATED = "booking_status_updated"
    JOINED_COMMUNITY_FEED = "joined_community_feed"
    COMMUNITY_POST_LIKED = "community_post_liked"
    NEARBY_USER_LOCATION = "nearby_user_location"
    SERVICE_AVAILABILITY_CHANGED = "service_availability_changed"
    BOOKING_USER_TYPING = "booking_user_typing"
    EMERGENCY_ALERT_RECEIVED = "emergency_alert_received"
    EMERGENCY_ALERT_SENT = "emergency_alert_sent"
    HEARTBEAT_ACK = "heartbeat_ack"
    COMMUNITY_STATS = "community_stats"
    ERROR = "error"
    # Pushed by the REST API
    NEW_BOOKING_REQUEST = "new_booking_request"
    BOOKING_CANCELLED = "booking_cancelled"
    NEW_COMMUNITY_POST = "new_community_post"
    POST_LIKED = "post_liked"


class RealtimeMessage(BaseModel):
    type: ClientEvent
    data: Dict[str, Any] = Field(default_factory=dict)
