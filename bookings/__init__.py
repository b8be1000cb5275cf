"""Bookings module for managing service bookings.

This module provides functionality for:
- Creating bookings against bookable services with computed pricing
- Status transitions with role checks and history
- Cancellation with time-based fees and refunds
- Booking message threads
- Per-user booking listings and statistics

Multi-document flows write the booking first and then update service and
user counters. There is no transaction around them; a failure after the
booking write is logged with the booking id and re-raised.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from database import get_store
from database.lib.document import ensure_utc, round_half_up, utcnow
from services import ServiceManager, Service, ACTIVE_BOOKING_STATUSES
from users import UserManager
from .models import (
    Booking,
    BookingStatus,
    BookingPricing,
    CancellationReason,
    RefundStatus,
    Message,
    VALID_TRANSITIONS,
    PROVIDER_ONLY,
    CANCELLABLE,
    can_transition,
    quote_price,
    booking_stats
)

logger = logging.getLogger(__name__)

SORT_FIELDS = {'scheduledDate', 'createdAt', 'status'}

PROVIDER_ONLY_MESSAGES = {
    BookingStatus.CONFIRMED: "Only service provider can confirm bookings",
    BookingStatus.COMPLETED: "Only service provider can mark bookings as completed"
}

class BookingError(Exception):
    """Base exception for booking operations."""
    pass

class BookingNotFoundError(BookingError):
    """Raised when a booking does not exist."""
    pass

class BookingPermissionError(BookingError):
    """Raised when a user may not act on a booking."""
    pass

class BookingValidationError(BookingError):
    """Raised when a booking request cannot be honoured."""
    pass

class InvalidStatusTransitionError(BookingValidationError):
    """Raised when a status change is not allowed from the current status."""
    pass

def parse_time(value: str) -> time:
    """Parse an HH:MM time of day."""
    hours, minutes = value.split(':')
    return time(int(hours), int(minutes))

def combine_schedule(day: date, at: str) -> datetime:
    """Combine a calendar date and HH:MM into a UTC start instant."""
    if isinstance(day, datetime):
        day = day.date()
    return datetime.combine(day, parse_time(at), tzinfo=timezone.utc)

class BookingManager:
    """Manager class for handling booking operations."""

    def __init__(self, store=None, fee_rate: Optional[float] = None, tax_rate: Optional[float] = None):
        """Initialize the booking manager.

        Args:
            store: Optional collection store. If not provided, will get from database module.
            fee_rate: Platform fee rate, defaults to settings
            tax_rate: Tax rate applied to price plus fee, defaults to settings
        """
        self.store = store
        if fee_rate is None or tax_rate is None:
            from config import settings_conf
            fee_rate = settings_conf['platform_fee_rate'] if fee_rate is None else fee_rate
            tax_rate = settings_conf['tax_rate'] if tax_rate is None else tax_rate
        self.fee_rate = fee_rate
        self.tax_rate = tax_rate

    async def ensure_store(self):
        """Ensure we have a collection store."""
        if not self.store:
            self.store = await get_store()

    @property
    def services(self) -> ServiceManager:
        return ServiceManager(self.store)

    @property
    def users(self) -> UserManager:
        return UserManager(self.store)

    async def find_booking(self, booking_id: str) -> Optional[Booking]:
        await self.ensure_store()
        doc = await self.store.bookings.get(booking_id)
        return Booking.from_document(doc) if doc else None

    async def get_booking(self, booking_id: str) -> Booking:
        """Get a booking by id.

        Raises:
            BookingNotFoundError: If no such booking exists
        """
        booking = await self.find_booking(booking_id)
        if not booking:
            raise BookingNotFoundError(f"Booking not found: {booking_id}")
        return booking

    async def get_for_participant(self, booking_id: str, user_id: str) -> Booking:
        """Get a booking that user_id takes part in.

        Raises:
            BookingNotFoundError: If no such booking exists
            BookingPermissionError: If the user is neither customer nor provider
        """
        booking = await self.get_booking(booking_id)
        if not booking.is_participant(user_id):
            raise BookingPermissionError("Not authorized to access this booking")
        return booking

    async def save(self, booking: Booking) -> Booking:
        await self.ensure_store()
        booking.pricing.recalculate_total()
        booking.touch()
        await self.store.bookings.replace_one(booking.to_document())
        return booking

    async def check_overlap(self, service: Service, start: datetime, duration: int) -> bool:
        """True when an active booking of the service overlaps the requested slot."""
        docs = await self.store.bookings.find({
            'service': service.id,
            'status': {'$in': ACTIVE_BOOKING_STATUSES}
        })
        return any(Booking.from_document(doc).overlaps(start, duration) for doc in docs)

    async def create_booking(
        self,
        customer_id: str,
        service_id: str,
        title: str,
        scheduled_date: date,
        scheduled_time: str,
        estimated_duration: int,
        now: Optional[datetime] = None,
        **details: Any
    ) -> Tuple[Booking, Service]:
        """Create a booking request.

        Args:
            customer_id: Booking customer
            service_id: Service to book
            title: Booking title
            scheduled_date: Calendar date of the appointment
            scheduled_time: HH:MM start time
            estimated_duration: Length in minutes
            now: Current time, for tests
            **details: Optional description, location, address, requirements

        Returns:
            (booking, booked service)

        Raises:
            BookingValidationError: If the service cannot be booked for the slot
        """
        await self.ensure_store()
        now = ensure_utc(now or utcnow())

        service = await self.services.find_service(service_id)
        if not service or not service.is_active or service.is_paused:
            raise BookingValidationError("Service is not available for booking")

        if service.provider == customer_id:
            raise BookingValidationError("Cannot book your own service")

        start = combine_schedule(scheduled_date, scheduled_time)
        advance = service.availability.advance_booking or 24
        if start < now + timedelta(hours=advance):
            raise BookingValidationError(f"Booking must be at least {advance} hours in advance")

        if not service.is_available(start, estimated_duration):
            raise BookingValidationError("Service is not available at the requested time")
        if await self.check_overlap(service, start, estimated_duration):
            raise BookingValidationError("Service is not available at the requested time")

        pricing = quote_price(
            service.pricing.type.value,
            service.pricing.amount,
            estimated_duration,
            currency=service.pricing.currency,
            fee_rate=self.fee_rate,
            tax_rate=self.tax_rate
        )

        booking = Booking(
            customer=customer_id,
            provider=service.provider,
            service=service.id,
            title=title.strip(),
            scheduled_date=start,
            scheduled_time=scheduled_time,
            estimated_duration=estimated_duration,
            pricing=pricing,
            **{k: v for k, v in details.items() if v is not None}
        )
        booking.record_creation()
        await self.store.bookings.insert_one(booking.to_document())
        logger.info(f"Created booking {booking.id} for service {service.id}")

        try:
            await self.services.increment_stat(service.id, 'bookings')
        except Exception as e:
            logger.error(f"Booking {booking.id} created but service {service.id} stats not updated: {e}")
            raise

        return booking, service

    async def update_status(
        self,
        booking_id: str,
        actor_id: str,
        status: str,
        reason: str = '',
        notes: str = ''
    ) -> Booking:
        """Apply a status transition requested by a participant.

        Raises:
            BookingNotFoundError: If the booking does not exist
            BookingPermissionError: If the actor is not a participant or lacks the role
            InvalidStatusTransitionError: If the transition is not allowed
        """
        booking = await self.get_for_participant(booking_id, actor_id)
        new_status = BookingStatus(status)

        if not can_transition(booking.status, new_status):
            raise InvalidStatusTransitionError(
                f"Cannot change status from {BookingStatus(booking.status).value} to {new_status.value}"
            )
        if new_status in PROVIDER_ONLY and actor_id != booking.provider:
            raise BookingPermissionError(PROVIDER_ONLY_MESSAGES[new_status])

        booking.update_status(new_status, actor_id, reason, notes)
        await self.save(booking)
        logger.info(f"Booking {booking.id} moved to {new_status.value} by {actor_id}")

        await self._record_outcome(booking, new_status, actor_id)
        return booking

    async def cancel_booking(
        self,
        booking_id: str,
        actor_id: str,
        reason: str,
        category: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Tuple[Booking, float, float]:
        """Cancel a pending or confirmed booking.

        Returns:
            (booking, cancellation fee, refund amount)

        Raises:
            BookingValidationError: If the booking is past the cancellable states
        """
        booking = await self.get_for_participant(booking_id, actor_id)
        if booking.status not in CANCELLABLE:
            raise BookingValidationError("Only pending or confirmed bookings can be cancelled")

        now = ensure_utc(now or utcnow())
        fee = round_half_up(booking.calculate_cancellation_fee(now), 2)
        refund = round_half_up(max(booking.pricing.total_amount - fee, 0), 2)

        booking.update_status(BookingStatus.CANCELLED, actor_id, reason, now=now)
        if category:
            booking.cancellation.category = CancellationReason(category)
        booking.cancellation.refund_amount = refund
        booking.cancellation.refund_status = RefundStatus.PENDING if refund > 0 else RefundStatus.NOT_APPLICABLE
        await self.save(booking)
        logger.info(f"Booking {booking.id} cancelled by {actor_id}, fee {fee}, refund {refund}")

        await self._record_outcome(booking, BookingStatus.CANCELLED, actor_id)
        return booking, fee, refund

    async def _record_outcome(self, booking: Booking, status: BookingStatus, actor_id: str) -> None:
        try:
            if status == BookingStatus.COMPLETED:
                await self.services.increment_stat(booking.service, 'completedBookings')
                await self.users.record_service_outcome(booking.provider, completed=True)
            elif status == BookingStatus.CANCELLED:
                await self.services.increment_stat(booking.service, 'cancelledBookings')
                if actor_id == booking.provider:
                    await self.users.record_service_outcome(booking.provider, completed=False)
        except Exception as e:
            logger.error(
                f"Booking {booking.id} is {status.value} but service/provider counters "
                f"were not updated: {e}"
            )
            raise

    async def add_message(self, booking_id: str, sender_id: str, text: str) -> Tuple[Booking, Message]:
        booking = await self.get_for_participant(booking_id, sender_id)
        message = booking.add_message(sender_id, text)
        await self.save(booking)
        return booking, message

    async def mark_messages_read(self, booking_id: str, user_id: str) -> int:
        booking = await self.get_for_participant(booking_id, user_id)
        changed = booking.mark_messages_read(user_id)
        if changed:
            await self.save(booking)
        return changed

    async def attach_review(self, booking: Booking, review_id: str, review_type: str) -> Booking:
        if review_type == 'customer_to_provider':
            booking.customer_review = review_id
        else:
            booking.provider_review = review_id
        return await self.save(booking)

    async def list_bookings(
        self,
        user_id: str,
        role: str = 'all',
        status: Optional[str] = None,
        sort_by: str = 'scheduledDate',
        sort_order: str = 'desc',
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Booking], int]:
        """List bookings a user takes part in."""
        await self.ensure_store()
        if role == 'customer':
            query: Dict[str, Any] = {'customer': user_id}
        elif role == 'provider':
            query = {'provider': user_id}
        else:
            query = {'$or': [{'customer': user_id}, {'provider': user_id}]}
        if status:
            query['status'] = status

        if sort_by not in SORT_FIELDS:
            sort_by = 'scheduledDate'
        direction = 1 if sort_order == 'asc' else -1

        offset = (page - 1) * limit
        docs = await self.store.bookings.find(query, sort=[(sort_by, direction)], skip=offset, limit=limit)
        total = await self.store.bookings.count(query)
        return [Booking.from_document(d) for d in docs], total

    async def get_booking_stats(self, user_id: str, role: str = 'customer') -> Dict[str, Any]:
        await self.ensure_store()
        field = 'customer' if role == 'customer' else 'provider'
        docs = await self.store.bookings.find({field: user_id})
        return booking_stats(docs)

__all__ = [
    'BookingManager',
    'Booking',
    'BookingStatus',
    'BookingPricing',
    'CancellationReason',
    'RefundStatus',
    'Message',
    'VALID_TRANSITIONS',
    'PROVIDER_ONLY',
    'can_transition',
    'quote_price',
    'booking_stats',
    'combine_schedule',
    'BookingError',
    'BookingNotFoundError',
    'BookingPermissionError',
    'BookingValidationError',
    'InvalidStatusTransitionError'
]
