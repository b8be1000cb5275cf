"""Review document model."""
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from database.lib.document import Document, Embedded, Timestamp, ensure_utc, round_half_up, utcnow

EDIT_WINDOW = timedelta(hours=24)

# Reports needed before an approved review is pulled for moderation
FLAG_THRESHOLD = 3

POSITIVE_WORDS = ['excellent', 'great', 'amazing', 'fantastic', 'wonderful', 'perfect']
NEGATIVE_WORDS = ['terrible', 'awful', 'horrible', 'worst', 'disappointing', 'bad']

class ReviewType(str, Enum):
    CUSTOMER_TO_PROVIDER = "customer_to_provider"
    PROVIDER_TO_CUSTOMER = "provider_to_customer"

class ModerationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    FLAGGED = "flagged"
    REJECTED = "rejected"

class FlagReason(str, Enum):
    INAPPROPRIATE_LANGUAGE = "inappropriate_language"
    SPAM = "spam"
    FAKE_REVIEW = "fake_review"
    HARASSMENT = "harassment"
    OFF_TOPIC = "off_topic"
    PRIVACY_VIOLATION = "privacy_violation"
    OTHER = "other"

class VerificationMethod(str, Enum):
    BOOKING_COMPLETION = "booking_completion"
    MANUAL_VERIFICATION = "manual_verification"
    AI_VERIFICATION = "ai_verification"

class VoteType(str, Enum):
    UP = "up"
    DOWN = "down"

class DetailedRatings(Embedded):
    communication: Optional[int] = Field(default=None, ge=1, le=5)
    punctuality: Optional[int] = Field(default=None, ge=1, le=5)
    quality: Optional[int] = Field(default=None, ge=1, le=5)
    professionalism: Optional[int] = Field(default=None, ge=1, le=5)
    value: Optional[int] = Field(default=None, ge=1, le=5)

class Photo(Embedded):
    url: str
    caption: Optional[str] = None
    uploaded_at: Timestamp = Field(default_factory=utcnow)

class Flag(Embedded):
    reason: FlagReason
    flagged_by: str
    flagged_at: Timestamp = Field(default_factory=utcnow)
    description: str = ''

class Moderation(Embedded):
    status: ModerationStatus = ModerationStatus.PENDING
    flags: List[Flag] = Field(default_factory=list)
    moderated_by: Optional[str] = None
    moderated_at: Optional[Timestamp] = None
    moderation_notes: Optional[str] = None

class Vote(Embedded):
    user: str
    vote: VoteType
    voted_at: Timestamp = Field(default_factory=utcnow)

class Helpfulness(Embedded):
    upvotes: int = 0
    downvotes: int = 0
    voted_by: List[Vote] = Field(default_factory=list)

class Response(Embedded):
    comment: Optional[str] = Field(default=None, max_length=1000)
    responded_at: Optional[Timestamp] = None
    responded_by: Optional[str] = None

class AIAnalysis(Embedded):
    sentiment_score: float = Field(default=0, ge=-1, le=1)
    authenticity_score: float = Field(default=0, ge=0, le=1)
    spam_probability: float = Field(default=0, ge=0, le=1)
    keywords: List[str] = Field(default_factory=list)
    last_ai_update: Optional[Timestamp] = Field(default=None, alias='lastAIUpdate')

def analyze_comment(comment: str) -> Dict[str, float]:
    """Keyword sentiment and a length-based authenticity guess for a comment."""
    text = comment.lower()
    positive = sum(1 for word in POSITIVE_WORDS if word in text)
    negative = sum(1 for word in NEGATIVE_WORDS if word in text)
    sentiment = max(-1.0, min(1.0, (positive - negative) * 0.2))
    authenticity = 0.8 if 50 < len(comment) < 1500 else 0.5
    return {'sentiment_score': round(sentiment, 2), 'authenticity_score': authenticity}

class Review(Document):
    reviewer: str
    reviewee: str
    service: str
    booking: str
    rating: int = Field(ge=1, le=5)
    title: Optional[str] = Field(default=None, max_length=100)
    comment: str = Field(max_length=2000)
    detailed_ratings: DetailedRatings = Field(default_factory=DetailedRatings)
    review_type: ReviewType
    photos: List[Photo] = Field(default_factory=list)
    is_active: bool = True
    is_verified: bool = False
    verification_method: Optional[VerificationMethod] = None
    moderation: Moderation = Field(default_factory=Moderation)
    helpfulness: Helpfulness = Field(default_factory=Helpfulness)
    response: Response = Field(default_factory=Response)
    ai_analysis: AIAnalysis = Field(default_factory=AIAnalysis, alias='aiAnalysis')
    report_count: int = 0

    def analyze(self) -> None:
        """Fill the analysis block once. Later edits keep the first result."""
        if self.ai_analysis.last_ai_update:
            return
        scores = analyze_comment(self.comment)
        self.ai_analysis.sentiment_score = scores['sentiment_score']
        self.ai_analysis.authenticity_score = scores['authenticity_score']
        self.ai_analysis.last_ai_update = utcnow()

    def is_party(self, user_id: Optional[str]) -> bool:
        return user_id is not None and user_id in (self.reviewer, self.reviewee)

    @property
    def is_visible(self) -> bool:
        return self.is_active and self.moderation.status == ModerationStatus.APPROVED

    def can_edit(self, now: Optional[datetime] = None) -> bool:
        now = ensure_utc(now or utcnow())
        return now - self.created_at <= EDIT_WINDOW

    def apply_edit(self, rating: Optional[int] = None, title: Optional[str] = None,
                   comment: Optional[str] = None,
                   detailed_ratings: Optional[Dict[str, Any]] = None) -> None:
        """Apply reviewer edits. A new rating or comment sends the review back to moderation."""
        if title is not None:
            self.title = title
        if detailed_ratings is not None:
            self.detailed_ratings = DetailedRatings.model_validate(detailed_ratings)
        if rating is not None:
            self.rating = rating
        if comment is not None:
            self.comment = comment
        if rating is not None or comment:
            self.moderation.status = ModerationStatus.PENDING

    def add_vote(self, user_id: str, vote: str) -> None:
        """Record a helpfulness vote, replacing any earlier vote by the same user."""
        votes = [v for v in self.helpfulness.voted_by if v.user != user_id]
        votes.append(Vote(user=user_id, vote=VoteType(vote)))
        self.helpfulness.voted_by = votes
        self.helpfulness.upvotes = sum(1 for v in votes if v.vote == VoteType.UP)
        self.helpfulness.downvotes = sum(1 for v in votes if v.vote == VoteType.DOWN)

    def has_flag_from(self, user_id: str) -> bool:
        return any(flag.flagged_by == user_id for flag in self.moderation.flags)

    def add_flag(self, reason: str, flagged_by: str, description: str = '') -> None:
        self.moderation.flags.append(Flag(
            reason=FlagReason(reason),
            flagged_by=flagged_by,
            description=description or ''
        ))
        self.report_count += 1
        if self.report_count >= FLAG_THRESHOLD and self.moderation.status == ModerationStatus.APPROVED:
            self.moderation.status = ModerationStatus.FLAGGED

    def add_response(self, responder_id: str, comment: str) -> None:
        """Attach the reviewee's reply.

        Raises:
            ValueError: If the responder is not the reviewee
        """
        if responder_id != self.reviewee:
            raise ValueError("Only the reviewee can respond to this review")
        self.response = Response(comment=comment, responded_at=utcnow(), responded_by=responder_id)

    @property
    def helpfulness_score(self) -> float:
        total = self.helpfulness.upvotes + self.helpfulness.downvotes
        return (self.helpfulness.upvotes / total) * 100 if total > 0 else 0

    @property
    def net_helpfulness(self) -> int:
        return self.helpfulness.upvotes - self.helpfulness.downvotes

    @property
    def average_detailed_rating(self) -> Optional[float]:
        values = [v for v in self.detailed_ratings.model_dump().values() if v is not None]
        if not values:
            return None
        return round_half_up(sum(values) / len(values), 1)

    def calculate_trust_impact(self) -> float:
        """Weight of this review as a trust signal, between 0 and 5.

        The rating is scaled by authenticity, halved while flagged, then
        scaled by 0.5 to 1.0 depending on the share of helpful votes.
        """
        impact = float(self.rating)
        if self.ai_analysis.authenticity_score:
            impact *= self.ai_analysis.authenticity_score
        if self.moderation.status == ModerationStatus.FLAGGED:
            impact *= 0.5

        ratio = self.helpfulness.upvotes / max(self.helpfulness.upvotes + self.helpfulness.downvotes, 1)
        impact *= 0.5 + ratio * 0.5
        return max(0.0, min(5.0, impact))

    def to_public(self) -> Dict[str, Any]:
        data = self.model_dump(mode='json', by_alias=True)
        data['helpfulnessScore'] = self.helpfulness_score
        data['netHelpfulness'] = self.net_helpfulness
        data['averageDetailedRating'] = self.average_detailed_rating
        return data
