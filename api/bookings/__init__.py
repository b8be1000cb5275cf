"""Booking API endpoints."""

import re
from datetime import date
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import Field, field_validator

from auth import get_current_user
from bookings import Booking, BookingManager, BookingStatus, CancellationReason
from bookings.models import BookingAddress, BookingRequirements
from database import get_store
from database.lib.document import GeoPoint
from services import ServiceManager
from users import User, UserManager
from ..deps import RequestModel, get_presence, respond, pagination, embed, push
from ..realtime.models import ServerEvent
from ..realtime.presence import PresenceRegistry

router = APIRouter(
    prefix="/api/bookings",
    tags=["Bookings"]
)

PARTICIPANT_FIELDS = ('firstName', 'lastName', 'avatar', 'phone')
TIME_PATTERN = re.compile(r'^([01]?[0-9]|2[0-3]):[0-5][0-9]$')

class CreateBookingRequest(RequestModel):
    """Request model for booking a service."""
    service: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    scheduled_date: date
    scheduled_time: str
    estimated_duration: int = Field(ge=15)
    location: Optional[GeoPoint] = None
    address: BookingAddress
    requirements: Optional[BookingRequirements] = None

    @field_validator('scheduled_time')
    @classmethod
    def check_time(cls, value: str) -> str:
        if not TIME_PATTERN.match(value):
            raise ValueError('Time must be in HH:MM format')
        return value

    @field_validator('address')
    @classmethod
    def check_address(cls, value: BookingAddress) -> BookingAddress:
        if not value.city or not value.city.strip():
            raise ValueError('City is required')
        if not value.state or len(value.state.strip()) != 2:
            raise ValueError('State must be 2 characters')
        return value

class StatusRequest(RequestModel):
    status: Literal['confirmed', 'in_progress', 'completed', 'cancelled', 'no_show']
    reason: str = Field(default='', max_length=500)
    notes: str = Field(default='', max_length=1000)

class CancelRequest(RequestModel):
    """Request model for cancelling a booking."""
    reason: str = Field(min_length=5, max_length=500)
    reason_category: Optional[CancellationReason] = None

    @field_validator('reason')
    @classmethod
    def strip_reason(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 5:
            raise ValueError('Cancellation reason must be 5-500 characters')
        return value

class MessageRequest(RequestModel):
    message: str = Field(min_length=1, max_length=1000)

    @field_validator('message')
    @classmethod
    def strip_message(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError('Message must be 1-1000 characters')
        return value

async def _expand(store, booking: Booking, service_fields=('title', 'category', 'pricing', 'location')) -> dict:
    """Booking document with participants and service summaries inlined."""
    data = booking.to_public()
    users = await UserManager(store).summaries([booking.customer, booking.provider], *PARTICIPANT_FIELDS)
    embed([data], 'customer', users)
    embed([data], 'provider', users)
    embed([data], 'service', await ServiceManager(store).summaries([booking.service], *service_fields))
    return data

@router.get("")
async def list_bookings(
    status: Optional[BookingStatus] = Query(None),
    role: Literal['customer', 'provider', 'all'] = Query('all'),
    sort_by: Literal['scheduledDate', 'createdAt', 'status'] = Query('scheduledDate', alias="sortBy"),
    sort_order: Literal['asc', 'desc'] = Query('desc', alias="sortOrder"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """List bookings the caller takes part in."""
    bookings, total = await BookingManager(store).list_bookings(
        user.id,
        role=role,
        status=status.value if status else None,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit
    )
    items = [b.to_public() for b in bookings]
    users = await UserManager(store).summaries(
        [b.customer for b in bookings] + [b.provider for b in bookings], *PARTICIPANT_FIELDS
    )
    embed(items, 'customer', users)
    embed(items, 'provider', users)
    embed(items, 'service', await ServiceManager(store).summaries(
        [b.service for b in bookings], 'title', 'category', 'pricing', 'location'
    ))
    return respond({
        'bookings': items,
        'pagination': pagination(page, limit, total, 'totalBookings'),
        'filters': {'status': status.value if status else None, 'role': role}
    })

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: CreateBookingRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store),
    presence: PresenceRegistry = Depends(get_presence)
):
    """Request a booking. The provider is notified in realtime."""
    details = request.changes()
    booking, service = await BookingManager(store).create_booking(
        user.id,
        request.service,
        request.title,
        request.scheduled_date,
        request.scheduled_time,
        request.estimated_duration,
        description=request.description,
        location=details.get('location'),
        address=details.get('address'),
        requirements=details.get('requirements')
    )
    data = await _expand(store, booking)

    await push(presence.emit_to_user(service.provider, ServerEvent.NEW_BOOKING_REQUEST.value, {
        'booking': data,
        'customer': {'name': user.full_name, 'avatar': user.avatar},
        'service': service.title
    }), f"new booking {booking.id}")

    return respond({'booking': data}, 'Booking created successfully')

@router.get("/{booking_id}")
async def get_booking(
    booking_id: str,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Get a booking. Participants only."""
    booking = await BookingManager(store).get_for_participant(booking_id, user.id)
    data = await _expand(store, booking, ('title', 'category', 'pricing', 'location', 'availability'))

    senders = await UserManager(store).summaries(
        [m['sender'] for m in data.get('messages', [])], 'firstName', 'lastName', 'avatar'
    )
    embed(data.get('messages', []), 'sender', senders)
    return respond({'booking': data, 'userRole': booking.role_of(user.id)})

@router.put("/{booking_id}/status")
async def update_booking_status(
    booking_id: str,
    request: StatusRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store),
    presence: PresenceRegistry = Depends(get_presence)
):
    """Move a booking along its workflow."""
    booking = await BookingManager(store).update_status(
        booking_id, user.id, request.status, request.reason.strip(), request.notes.strip()
    )

    await push(presence.emit_to_booking(booking.id, ServerEvent.BOOKING_STATUS_UPDATED.value, {
        'bookingId': booking.id,
        'status': request.status,
        'updatedBy': {'id': user.id, 'name': user.full_name, 'role': booking.role_of(user.id)},
        'reason': request.reason,
        'notes': request.notes,
        'updatedAt': booking.updated_at
    }), f"status of booking {booking.id}")

    data = await _expand(store, booking, ('title', 'category'))
    return respond({'booking': data}, f"Booking status updated to {request.status}")

@router.post("/{booking_id}/messages", status_code=status.HTTP_201_CREATED)
async def add_message(
    booking_id: str,
    request: MessageRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store),
    presence: PresenceRegistry = Depends(get_presence)
):
    """Append a message to the booking thread."""
    booking, message = await BookingManager(store).add_message(booking_id, user.id, request.message)

    await push(presence.emit_to_booking(booking.id, ServerEvent.BOOKING_MESSAGE_RECEIVED.value, {
        'bookingId': booking.id,
        'message': {
            'id': message.id,
            'sender': {'id': user.id, 'name': user.full_name, 'avatar': user.avatar},
            'content': message.message,
            'timestamp': message.timestamp
        }
    }), f"message on booking {booking.id}")

    return respond({'message': message.model_dump(mode='json', by_alias=True)}, 'Message sent successfully')

@router.put("/{booking_id}/messages/read")
async def mark_messages_read(
    booking_id: str,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Mark messages from the other participant as read."""
    count = await BookingManager(store).mark_messages_read(booking_id, user.id)
    return respond({'markedRead': count}, 'Messages marked as read')

@router.delete("/{booking_id}")
async def cancel_booking(
    booking_id: str,
    request: CancelRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store),
    presence: PresenceRegistry = Depends(get_presence)
):
    """Cancel a pending or confirmed booking and report the fee and refund."""
    booking, fee, refund = await BookingManager(store).cancel_booking(
        booking_id,
        user.id,
        request.reason,
        category=request.reason_category.value if request.reason_category else None
    )

    await push(presence.emit_to_user(booking.other_participant(user.id), ServerEvent.BOOKING_CANCELLED.value, {
        'bookingId': booking.id,
        'cancelledBy': {'name': user.full_name, 'role': booking.role_of(user.id)},
        'reason': request.reason,
        'refundAmount': refund,
        'cancellationFee': fee
    }), f"cancellation of booking {booking.id}")

    return respond({
        'refundAmount': refund,
        'cancellationFee': fee,
        'refundStatus': booking.cancellation.refund_status.value
    }, 'Booking cancelled successfully')

# Export the router
__all__ = ['router']
