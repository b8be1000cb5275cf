"""Base models for documents stored in collections.

Documents are pydantic models with snake_case attributes persisted under
camelCase keys. Timestamps are stored as fixed-width UTC ISO strings so that
lexical and chronological order agree.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainSerializer, field_validator
from pydantic.alias_generators import to_camel

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def new_id() -> str:
    return str(uuid.uuid4())

def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def format_timestamp(value: datetime) -> str:
    return ensure_utc(value).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

Timestamp = Annotated[
    datetime,
    AfterValidator(ensure_utc),
    PlainSerializer(format_timestamp, return_type=str, when_used='json')
]

class Embedded(BaseModel):
    """Sub-document with camelCase keys."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
        extra='ignore'
    )

class Document(Embedded):
    """Top-level document with identity and timestamps."""
    id: str = Field(default_factory=new_id)
    created_at: Timestamp = Field(default_factory=utcnow)
    updated_at: Timestamp = Field(default_factory=utcnow)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]):
        return cls.model_validate(doc)

    def to_document(self) -> Dict[str, Any]:
        """Serialize for storage."""
        return self.model_dump(mode='json', by_alias=True)

    def touch(self) -> None:
        self.updated_at = utcnow()

class GeoPoint(Embedded):
    """GeoJSON point, coordinates as [longitude, latitude]."""
    type: str = 'Point'
    coordinates: List[float] = Field(default_factory=list)

    @field_validator('coordinates')
    @classmethod
    def check_coordinates(cls, value: List[float]) -> List[float]:
        if value and len(value) != 2:
            raise ValueError('coordinates must be [longitude, latitude]')
        if value:
            lng, lat = value
            if not -180 <= lng <= 180 or not -90 <= lat <= 90:
                raise ValueError('coordinates out of range')
        return value

    @property
    def longitude(self) -> Optional[float]:
        return self.coordinates[0] if self.coordinates else None

    @property
    def latitude(self) -> Optional[float]:
        return self.coordinates[1] if self.coordinates else None

class Address(Embedded):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: str = 'US'

MILES_TO_METERS = 1609.34

def miles_to_meters(miles: float) -> float:
    return miles * MILES_TO_METERS

def near(lng: float, lat: float, radius_miles: float) -> Dict[str, Any]:
    """Build a $near filter for a point and a radius in miles."""
    return {'$near': {'coordinates': [lng, lat], 'maxDistance': miles_to_meters(radius_miles)}}

def round_half_up(value: float, digits: int = 0) -> float:
    """Round halves away from zero in decimal (2.25 -> 2.3), not binary float."""
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))
