"""Service document model."""
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import Field, model_validator

from database.lib.document import (
    Address, Document, Embedded, GeoPoint, Timestamp, ensure_utc, round_half_up, utcnow
)

class ServiceCategory(str, Enum):
    HOME_MAINTENANCE = "home_maintenance"
    CLEANING = "cleaning"
    GARDENING = "gardening"
    PET_CARE = "pet_care"
    TUTORING = "tutoring"
    CHILDCARE = "childcare"
    ELDERLY_CARE = "elderly_care"
    TECH_SUPPORT = "tech_support"
    DELIVERY = "delivery"
    TRANSPORTATION = "transportation"
    PHOTOGRAPHY = "photography"
    EVENT_PLANNING = "event_planning"
    FITNESS = "fitness"
    BEAUTY = "beauty"
    HANDYMAN = "handyman"
    COOKING = "cooking"
    MOVING = "moving"
    OTHER = "other"

class PricingType(str, Enum):
    FIXED = "fixed"
    HOURLY = "hourly"
    PER_PROJECT = "per_project"
    NEGOTIABLE = "negotiable"

class ExperienceLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    EXPERT = "expert"

class Weekday(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

WEEKDAYS = [day.value for day in Weekday]

class Pricing(Embedded):
    type: PricingType
    amount: Optional[float] = Field(default=None, ge=0)
    currency: str = 'USD'
    negotiable: bool = False

    @model_validator(mode='after')
    def check_amount(self):
        if self.type != PricingType.NEGOTIABLE and self.amount is None:
            raise ValueError('Price amount is required for non-negotiable pricing')
        return self

class ServiceArea(Embedded):
    radius: float = Field(default=10, ge=0, le=100)  # miles
    areas: List[str] = Field(default_factory=list)

class Duration(Embedded):
    estimated: int = Field(ge=15)  # minutes
    flexible: bool = True

class Requirements(Embedded):
    experience: ExperienceLevel = ExperienceLevel.BEGINNER
    equipment: List[str] = Field(default_factory=list)
    materials: List[str] = Field(default_factory=list)
    special_skills: List[str] = Field(default_factory=list)

class Image(Embedded):
    url: str
    caption: Optional[str] = None
    is_primary: bool = False

class PortfolioItem(Embedded):
    title: Optional[str] = None
    description: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    completed_at: Optional[Timestamp] = None

class ScheduleEntry(Embedded):
    day: Weekday
    start_time: Optional[str] = None  # "09:00"
    end_time: Optional[str] = None
    available: bool = True

class AvailabilityException(Embedded):
    date: Timestamp
    available: bool = False
    reason: Optional[str] = None

class Availability(Embedded):
    schedule: List[ScheduleEntry] = Field(default_factory=list)
    exceptions: List[AvailabilityException] = Field(default_factory=list)
    advance_booking: int = 24  # hours

def _empty_breakdown() -> Dict[str, int]:
    return {str(star): 0 for star in range(5, 0, -1)}

class ReviewSummary(Embedded):
    total: int = 0
    average: float = 0
    breakdown: Dict[str, int] = Field(default_factory=_empty_breakdown)

class ServiceStats(Embedded):
    views: int = 0
    bookings: int = 0
    completed_bookings: int = 0
    cancelled_bookings: int = 0

class Service(Document):
    title: str = Field(max_length=100)
    description: str = Field(max_length=2000)
    category: ServiceCategory
    subcategory: Optional[str] = None
    provider: str
    pricing: Pricing
    location: GeoPoint
    address: Address
    service_area: ServiceArea = Field(default_factory=ServiceArea)
    duration: Duration
    requirements: Requirements = Field(default_factory=Requirements)
    images: List[Image] = Field(default_factory=list)
    portfolio: List[PortfolioItem] = Field(default_factory=list)
    availability: Availability = Field(default_factory=Availability)
    reviews: ReviewSummary = Field(default_factory=ReviewSummary)
    is_active: bool = True
    is_paused: bool = False
    pause_reason: Optional[str] = None
    stats: ServiceStats = Field(default_factory=ServiceStats)

    @property
    def completion_rate(self) -> float:
        total = self.stats.completed_bookings + self.stats.cancelled_bookings
        return (self.stats.completed_bookings / total) * 100 if total > 0 else 0

    @property
    def primary_image(self) -> Optional[str]:
        for image in self.images:
            if image.is_primary:
                return image.url
        return self.images[0].url if self.images else None

    def ensure_primary_image(self) -> None:
        """Leave exactly one primary image: the first marked one, else the first."""
        if not self.images:
            return
        primary = next((image for image in self.images if image.is_primary), self.images[0])
        for image in self.images:
            image.is_primary = image is primary

    def is_available(self, when: datetime, duration: int = 60) -> bool:
        """Check the weekly schedule and dated exceptions for a start time.

        Args:
            when: Requested start
            duration: Requested length in minutes. Overlap with existing
                bookings is checked by BookingManager, not here.
        """
        if not self.is_active or self.is_paused:
            return False

        when = ensure_utc(when)
        weekday = WEEKDAYS[when.weekday()]
        if not any(entry.day == weekday and entry.available for entry in self.availability.schedule):
            return False

        return not any(
            exc.date.date() == when.date() and not exc.available
            for exc in self.availability.exceptions
        )

    def upcoming_availability(self, days: int = 7, start: Optional[datetime] = None) -> List[Dict[str, Any]]:
        start = start or utcnow()
        result = []
        for offset in range(days):
            day = start + timedelta(days=offset)
            result.append({'date': day.date().isoformat(), 'available': self.is_available(day)})
        return result

    def apply_review_ratings(self, ratings: Iterable[int]) -> None:
        """Recompute the review summary from the ratings of active reviews."""
        ratings = list(ratings)
        breakdown = _empty_breakdown()
        for rating in ratings:
            key = str(rating)
            if key in breakdown:
                breakdown[key] += 1

        self.reviews.total = len(ratings)
        self.reviews.average = round_half_up(sum(ratings) / len(ratings), 1) if ratings else 0
        self.reviews.breakdown = breakdown

    def to_public(self) -> Dict[str, Any]:
        data = self.model_dump(mode='json', by_alias=True)
        data['completionRate'] = self.completion_rate
        data['primaryImage'] = self.primary_image
        return data

    def summary(self, *fields: str) -> Dict[str, Any]:
        data = self.to_public()
        keep = ('id',) + (fields or ('title', 'category'))
        return {key: data.get(key) for key in keep}
