"""Booking document model and status workflow."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import Field

from database.lib.document import (
    Address, Document, Embedded, GeoPoint, Timestamp, ensure_utc, new_id, round_half_up, utcnow
)

class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    DISPUTED = "disputed"

class CancellationReason(str, Enum):
    CUSTOMER_REQUEST = "customer_request"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    WEATHER = "weather"
    EMERGENCY = "emergency"
    PAYMENT_ISSUE = "payment_issue"
    MUTUAL_AGREEMENT = "mutual_agreement"
    OTHER = "other"

class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    NOT_APPLICABLE = "not_applicable"

# Allowed next states for each state
VALID_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED, BookingStatus.NO_SHOW},
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
    BookingStatus.NO_SHOW: set(),
    BookingStatus.DISPUTED: set()
}

# Transitions only the provider may make
PROVIDER_ONLY = {BookingStatus.CONFIRMED, BookingStatus.COMPLETED}

CANCELLABLE = {BookingStatus.PENDING, BookingStatus.CONFIRMED}

def can_transition(current: str, new: str) -> bool:
    return BookingStatus(new) in VALID_TRANSITIONS[BookingStatus(current)]

class BookingAddress(Address):
    instructions: Optional[str] = None

class BookingPricing(Embedded):
    service_price: float = Field(ge=0)
    platform_fee: float = Field(default=0, ge=0)
    taxes: float = Field(default=0, ge=0)
    total_amount: float = Field(default=0, ge=0)
    currency: str = 'USD'

    def recalculate_total(self) -> float:
        self.total_amount = round_half_up(
            (self.service_price or 0) + (self.platform_fee or 0) + (self.taxes or 0), 2
        )
        return self.total_amount

def quote_price(pricing_type: str, amount: Optional[float], duration_minutes: int,
                currency: str = 'USD', fee_rate: float = 0.03, tax_rate: float = 0.08) -> BookingPricing:
    """Price a booking from the service's pricing.

    Hourly services are charged pro rata for the booked duration. The platform
    fee is a share of the service price and tax applies to price plus fee.
    Every component is rounded to cents.
    """
    service_price = amount or 0
    if pricing_type == 'hourly':
        service_price = service_price * (duration_minutes / 60)

    platform_fee = service_price * fee_rate
    taxes = (service_price + platform_fee) * tax_rate

    pricing = BookingPricing(
        service_price=round_half_up(service_price, 2),
        platform_fee=round_half_up(platform_fee, 2),
        taxes=round_half_up(taxes, 2),
        currency=currency
    )
    pricing.recalculate_total()
    return pricing

class StatusChange(Embedded):
    status: BookingStatus
    changed_at: Timestamp = Field(default_factory=utcnow)
    changed_by: Optional[str] = None
    reason: str = ''
    notes: str = ''

class Message(Embedded):
    id: str = Field(default_factory=new_id)
    sender: str
    message: str = Field(max_length=1000)
    timestamp: Timestamp = Field(default_factory=utcnow)
    is_read: bool = False

class BookingRequirements(Embedded):
    equipment: List[str] = Field(default_factory=list)
    materials: List[str] = Field(default_factory=list)
    special_instructions: Optional[str] = None
    access_instructions: Optional[str] = None

class Completion(Embedded):
    completed_at: Optional[Timestamp] = None
    work_summary: Optional[str] = None
    before_photos: List[str] = Field(default_factory=list)
    after_photos: List[str] = Field(default_factory=list)
    customer_signature: Optional[str] = None
    provider_notes: Optional[str] = None

class Cancellation(Embedded):
    cancelled_at: Optional[Timestamp] = None
    cancelled_by: Optional[str] = None
    reason: Optional[str] = None
    category: Optional[CancellationReason] = None
    refund_amount: Optional[float] = Field(default=None, ge=0)
    refund_status: RefundStatus = RefundStatus.NOT_APPLICABLE

class Booking(Document):
    customer: str
    provider: str
    service: str
    title: str = Field(max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    scheduled_date: Timestamp  # start instant, date and time combined
    scheduled_time: str
    estimated_duration: int = Field(ge=15)  # minutes
    actual_duration: Optional[int] = Field(default=None, ge=0)
    location: Optional[GeoPoint] = None
    address: BookingAddress = Field(default_factory=BookingAddress)
    pricing: BookingPricing
    status: BookingStatus = BookingStatus.PENDING
    status_history: List[StatusChange] = Field(default_factory=list)
    messages: List[Message] = Field(default_factory=list)
    requirements: BookingRequirements = Field(default_factory=BookingRequirements)
    completion: Completion = Field(default_factory=Completion)
    cancellation: Cancellation = Field(default_factory=Cancellation)
    customer_review: Optional[str] = None
    provider_review: Optional[str] = None
    is_active: bool = True
    internal_notes: Optional[str] = None

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.customer, self.provider)

    def role_of(self, user_id: str) -> Optional[str]:
        if user_id == self.customer:
            return 'customer'
        if user_id == self.provider:
            return 'provider'
        return None

    def other_participant(self, user_id: str) -> str:
        return self.provider if user_id == self.customer else self.customer

    def record_creation(self) -> None:
        """Seed the history with the initial request."""
        self.status_history.append(StatusChange(
            status=self.status,
            changed_by=self.customer,
            reason='Booking created',
            notes='Initial booking request'
        ))

    def update_status(self, new_status: str, changed_by: str, reason: str = '', notes: str = '',
                      now: Optional[datetime] = None) -> None:
        """Move to new_status, recording the previous status in the history.

        Transition legality is not checked here; see can_transition.
        """
        now = now or utcnow()
        new_status = BookingStatus(new_status)

        self.status_history.append(StatusChange(
            status=self.status,
            changed_at=now,
            changed_by=changed_by,
            reason=reason or '',
            notes=notes or ''
        ))
        self.status = new_status

        if new_status == BookingStatus.COMPLETED and not self.completion.completed_at:
            self.completion.completed_at = now

        if new_status == BookingStatus.CANCELLED and not self.cancellation.cancelled_at:
            self.cancellation.cancelled_at = now
            self.cancellation.cancelled_by = changed_by
            self.cancellation.reason = reason

    def calculate_cancellation_fee(self, now: Optional[datetime] = None) -> float:
        """Fee owed when cancelling now.

        24 hours or more ahead is free, 2 hours or more costs 25% of the
        total, anything later costs 50%.
        """
        now = ensure_utc(now or utcnow())
        hours_until = (self.scheduled_date - now).total_seconds() / 3600

        if hours_until >= 24:
            return 0
        if hours_until >= 2:
            return self.pricing.total_amount * 0.25
        return self.pricing.total_amount * 0.5

    def add_message(self, sender: str, message: str) -> Message:
        entry = Message(sender=sender, message=message)
        self.messages.append(entry)
        return entry

    def mark_messages_read(self, user_id: str) -> int:
        """Mark messages from the other participant read. Returns how many changed."""
        changed = 0
        for message in self.messages:
            if message.sender != user_id and not message.is_read:
                message.is_read = True
                changed += 1
        return changed

    def overlaps(self, start: datetime, duration_minutes: int) -> bool:
        start = ensure_utc(start)
        own_end = self.scheduled_date.timestamp() + self.estimated_duration * 60
        other_end = start.timestamp() + duration_minutes * 60
        return self.scheduled_date.timestamp() < other_end and start.timestamp() < own_end

    @property
    def is_upcoming(self) -> bool:
        return self.scheduled_date > utcnow() and self.status in (BookingStatus.CONFIRMED, BookingStatus.PENDING)

    @property
    def is_overdue(self) -> bool:
        return self.scheduled_date < utcnow() and self.status in (BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS)

    @property
    def duration_hours(self) -> float:
        return round_half_up((self.estimated_duration or 0) / 60, 1)

    def to_public(self) -> Dict[str, Any]:
        data = self.model_dump(mode='json', by_alias=True)
        data['isUpcoming'] = self.is_upcoming
        data['isOverdue'] = self.is_overdue
        data['durationHours'] = self.duration_hours
        return data

def booking_stats(bookings: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Totals over stored booking documents."""
    total = completed = cancelled = 0
    revenue = 0.0
    for doc in bookings:
        total += 1
        if doc.get('status') == BookingStatus.COMPLETED:
            completed += 1
            revenue += doc.get('pricing', {}).get('totalAmount', 0)
        elif doc.get('status') == BookingStatus.CANCELLED:
            cancelled += 1
    return {
        'totalBookings': total,
        'completedBookings': completed,
        'cancelledBookings': cancelled,
        'totalRevenue': round_half_up(revenue, 2)
    }
