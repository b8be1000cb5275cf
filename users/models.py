"""User document model."""
import math
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from database.lib.document import Address, Document, Embedded, GeoPoint, Timestamp, utcnow

class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"

class UserAddress(Address):
    country: str = 'IN'

class Reputation(Embedded):
    total_reviews: int = 0
    average_rating: float = 0
    completed_services: int = 0
    cancelled_services: int = 0

class PriceRange(Embedded):
    min: Optional[float] = None
    max: Optional[float] = None

class NotificationPreferences(Embedded):
    email: bool = True
    push: bool = True
    sms: bool = False

class Preferences(Embedded):
    service_categories: List[str] = Field(default_factory=list)
    price_range: PriceRange = Field(default_factory=PriceRange)
    radius: int = 10  # miles
    notifications: NotificationPreferences = Field(default_factory=NotificationPreferences)

class Verification(Embedded):
    is_email_verified: bool = False
    is_phone_verified: bool = False
    is_id_verified: bool = Field(default=False, alias='isIDVerified')
    verification_documents: List[str] = Field(default_factory=list)

class AIProfile(Embedded):
    behavior_score: float = 0
    preference_vector: List[float] = Field(default_factory=list)
    risk_score: float = 0
    last_ai_update: Optional[Timestamp] = Field(default=None, alias='lastAIUpdate')

class User(Document):
    first_name: str
    last_name: str
    email: str
    password: Optional[str] = None  # bcrypt hash
    phone: Optional[str] = None
    avatar: Optional[str] = None
    bio: Optional[str] = None
    date_of_birth: Optional[Timestamp] = None
    address: UserAddress = Field(default_factory=UserAddress)
    location: Optional[GeoPoint] = None
    trust_score: int = 0
    reputation: Reputation = Field(default_factory=Reputation)
    preferences: Preferences = Field(default_factory=Preferences)
    verification: Verification = Field(default_factory=Verification)
    role: UserRole = UserRole.USER
    is_active: bool = True
    is_suspended: bool = False
    suspension_reason: Optional[str] = None
    last_login_at: Optional[Timestamp] = None
    ai_profile: AIProfile = Field(default_factory=AIProfile, alias='aiProfile')

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def calculate_trust_score(self) -> int:
        """Derive a 0-100 trust score from the reputation block.

        Users without reviews score 0. Otherwise the average rating (as a
        percentage) is scaled by the completion rate, plus up to 10 points for
        review volume (full bonus at 50 reviews).
        """
        rep = self.reputation
        if rep.total_reviews == 0:
            return 0

        score = (rep.average_rating / 5) * 100
        completion_rate = rep.completed_services / max(rep.completed_services + rep.cancelled_services, 1)
        score *= completion_rate
        score += min(rep.total_reviews / 50, 1) * 10

        return max(0, min(100, math.floor(score + 0.5)))

    def update_trust_score(self) -> int:
        self.trust_score = self.calculate_trust_score()
        self.ai_profile.last_ai_update = utcnow()
        return self.trust_score

    def tombstone(self, now: Optional[datetime] = None) -> None:
        """Deactivate the account and free its email address."""
        now = now or utcnow()
        self.email = f"deleted_{int(now.timestamp() * 1000)}_{self.email}"
        self.is_active = False

    def to_public(self) -> Dict[str, Any]:
        """Serialize for API responses. The password hash is never included."""
        data = self.model_dump(mode='json', by_alias=True, exclude={'password'})
        data['fullName'] = self.full_name
        return data

    def summary(self, *fields: str) -> Dict[str, Any]:
        """Public subset used when embedding a user into another resource."""
        data = self.to_public()
        keep = ('id',) + (fields or ('firstName', 'lastName', 'avatar', 'trustScore'))
        return {key: data.get(key) for key in keep}
