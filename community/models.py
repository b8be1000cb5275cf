"""Community post document model."""
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from database.lib.document import Document, Embedded, GeoPoint, Timestamp, ensure_utc, new_id, utcnow

# Flags needed before an active post is pulled for moderation
FLAG_THRESHOLD = 3

class PostType(str, Enum):
    POST = "post"
    EVENT = "event"
    RECOMMENDATION = "recommendation"
    ALERT = "alert"
    QUESTION = "question"
    ANNOUNCEMENT = "announcement"

class PostCategory(str, Enum):
    GENERAL = "general"
    SAFETY = "safety"
    EVENTS = "events"
    RECOMMENDATIONS = "recommendations"
    LOST_FOUND = "lost_found"
    NEIGHBORHOOD_WATCH = "neighborhood_watch"
    LOCAL_BUSINESS = "local_business"
    SERVICES = "services"
    HOUSING = "housing"
    TRANSPORTATION = "transportation"
    ENVIRONMENT = "environment"
    PETS = "pets"
    CHILDREN = "children"
    SENIORS = "seniors"

class PostStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    FLAGGED = "flagged"
    REMOVED = "removed"
    ARCHIVED = "archived"

class Visibility(str, Enum):
    PUBLIC = "public"
    NEIGHBORS_ONLY = "neighbors_only"
    FRIENDS_ONLY = "friends_only"
    PRIVATE = "private"

class AttendeeStatus(str, Enum):
    GOING = "going"
    MAYBE = "maybe"
    NOT_GOING = "not_going"

class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"

class PostFlagReason(str, Enum):
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    SPAM = "spam"
    MISINFORMATION = "misinformation"
    HARASSMENT = "harassment"
    OFF_TOPIC = "off_topic"
    DUPLICATE = "duplicate"
    OTHER = "other"

class PostAddress(Embedded):
    neighborhood: Optional[str] = None
    city: str
    state: str
    zip_code: Optional[str] = None
    country: str = 'US'

class Media(Embedded):
    type: MediaType
    url: str
    filename: Optional[str] = None
    caption: Optional[str] = None
    size: Optional[int] = None
    uploaded_at: Timestamp = Field(default_factory=utcnow)

class Venue(Embedded):
    name: Optional[str] = None
    address: Optional[str] = None
    coordinates: List[float] = Field(default_factory=list)

class Fee(Embedded):
    amount: Optional[float] = Field(default=None, ge=0)
    currency: str = 'USD'

class OrganizerContact(Embedded):
    email: Optional[str] = None
    phone: Optional[str] = None

class Organizer(Embedded):
    name: Optional[str] = None
    contact: OrganizerContact = Field(default_factory=OrganizerContact)

class EventDetails(Embedded):
    start_date: Optional[Timestamp] = None
    end_date: Optional[Timestamp] = None
    start_time: Optional[str] = None  # "14:30"
    end_time: Optional[str] = None
    is_all_day: bool = False
    venue: Venue = Field(default_factory=Venue)
    max_attendees: Optional[int] = None
    registration_required: bool = False
    registration_deadline: Optional[Timestamp] = None
    fee: Fee = Field(default_factory=Fee)
    organizer: Organizer = Field(default_factory=Organizer)

class Like(Embedded):
    user: str
    liked_at: Timestamp = Field(default_factory=utcnow)

class Bookmark(Embedded):
    user: str
    bookmarked_at: Timestamp = Field(default_factory=utcnow)

class Engagement(Embedded):
    views: int = 0
    likes: List[Like] = Field(default_factory=list)
    shares: int = 0
    bookmarks: List[Bookmark] = Field(default_factory=list)

class Comment(Embedded):
    id: str = Field(default_factory=new_id)
    author: str
    content: str = Field(max_length=1000)
    parent_comment: Optional[str] = None
    likes: List[Like] = Field(default_factory=list)
    is_hidden: bool = False
    created_at: Timestamp = Field(default_factory=utcnow)

class Attendee(Embedded):
    user: str
    status: AttendeeStatus = AttendeeStatus.GOING
    registered_at: Timestamp = Field(default_factory=utcnow)
    checked_in: bool = False
    checked_in_at: Optional[Timestamp] = None

class PostFlag(Embedded):
    reason: PostFlagReason
    flagged_by: str
    flagged_at: Timestamp = Field(default_factory=utcnow)
    description: str = ''

class PostModeration(Embedded):
    flags: List[PostFlag] = Field(default_factory=list)
    moderated_by: Optional[str] = None
    moderated_at: Optional[Timestamp] = None
    moderation_reason: Optional[str] = None

class Analytics(Embedded):
    peak_engagement_hour: Optional[int] = Field(default=None, ge=0, le=23)
    engagement_rate: float = 0
    response_time: Optional[float] = None  # minutes

class CommunityPostError(ValueError):
    """Raised when a post operation does not apply to the post."""
    pass

class CommunityPost(Document):
    author: str
    title: str = Field(max_length=200)
    content: str = Field(max_length=5000)
    type: PostType
    category: PostCategory
    location: Optional[GeoPoint] = None
    address: PostAddress
    radius: float = Field(default=5, ge=0, le=50)  # miles
    media: List[Media] = Field(default_factory=list)
    event_details: EventDetails = Field(default_factory=EventDetails)
    engagement: Engagement = Field(default_factory=Engagement)
    comments: List[Comment] = Field(default_factory=list)
    attendees: List[Attendee] = Field(default_factory=list)
    status: PostStatus = PostStatus.ACTIVE
    moderation: PostModeration = Field(default_factory=PostModeration)
    visibility: Visibility = Visibility.PUBLIC
    allow_comments: bool = True
    allow_shares: bool = True
    expires_at: Optional[Timestamp] = None
    is_expired: bool = False
    is_pinned: bool = False
    pinned_until: Optional[Timestamp] = None
    is_featured: bool = False
    featured_until: Optional[Timestamp] = None
    analytics: Analytics = Field(default_factory=Analytics)

    @property
    def like_count(self) -> int:
        return len(self.engagement.likes)

    @property
    def comment_count(self) -> int:
        return sum(1 for comment in self.comments if not comment.is_hidden)

    @property
    def bookmark_count(self) -> int:
        return len(self.engagement.bookmarks)

    @property
    def attendee_count(self) -> int:
        return sum(1 for attendee in self.attendees if attendee.status == AttendeeStatus.GOING)

    def is_currently_expired(self, now: Optional[datetime] = None) -> bool:
        if not self.expires_at:
            return False
        return ensure_utc(now or utcnow()) > self.expires_at

    def has_liked(self, user_id: str) -> bool:
        return any(like.user == user_id for like in self.engagement.likes)

    def add_like(self, user_id: str) -> bool:
        """Like once per user. Returns False when the user already liked."""
        if self.has_liked(user_id):
            return False
        self.engagement.likes.append(Like(user=user_id))
        return True

    def remove_like(self, user_id: str) -> bool:
        before = len(self.engagement.likes)
        self.engagement.likes = [like for like in self.engagement.likes if like.user != user_id]
        return len(self.engagement.likes) != before

    def add_bookmark(self, user_id: str) -> bool:
        if any(bookmark.user == user_id for bookmark in self.engagement.bookmarks):
            return False
        self.engagement.bookmarks.append(Bookmark(user=user_id))
        return True

    def remove_bookmark(self, user_id: str) -> bool:
        before = len(self.engagement.bookmarks)
        self.engagement.bookmarks = [b for b in self.engagement.bookmarks if b.user != user_id]
        return len(self.engagement.bookmarks) != before

    def add_comment(self, author_id: str, content: str, parent_comment: Optional[str] = None) -> Comment:
        if not self.allow_comments:
            raise CommunityPostError("Comments are not allowed on this post")
        comment = Comment(author=author_id, content=content, parent_comment=parent_comment)
        self.comments.append(comment)
        return comment

    def add_attendee(self, user_id: str, status: str = 'going') -> Attendee:
        """Register or update a user's attendance. Only events take attendees."""
        if self.type != PostType.EVENT:
            raise CommunityPostError("Only events can have attendees")

        status = AttendeeStatus(status)
        for attendee in self.attendees:
            if attendee.user == user_id:
                attendee.status = status
                attendee.registered_at = utcnow()
                return attendee

        attendee = Attendee(user=user_id, status=status)
        self.attendees.append(attendee)
        return attendee

    def check_in_attendee(self, user_id: str) -> Attendee:
        for attendee in self.attendees:
            if attendee.user == user_id:
                attendee.checked_in = True
                attendee.checked_in_at = utcnow()
                return attendee
        raise CommunityPostError("User is not registered for this event")

    def registration_closed(self, now: Optional[datetime] = None) -> bool:
        details = self.event_details
        if not details.registration_required or not details.registration_deadline:
            return False
        return ensure_utc(now or utcnow()) > details.registration_deadline

    def flag(self, reason: str, flagged_by: str, description: str = '') -> None:
        self.moderation.flags.append(PostFlag(
            reason=PostFlagReason(reason),
            flagged_by=flagged_by,
            description=description or ''
        ))
        if len(self.moderation.flags) >= FLAG_THRESHOLD and self.status == PostStatus.ACTIVE:
            self.status = PostStatus.FLAGGED

    def pin(self, hours: float, now: Optional[datetime] = None) -> None:
        now = ensure_utc(now or utcnow())
        self.is_pinned = True
        self.pinned_until = now + timedelta(hours=hours)

    def engagement_rate(self) -> float:
        if self.engagement.views == 0:
            return 0
        total = self.like_count + self.comment_count + self.engagement.shares
        return (total / self.engagement.views) * 100

    def before_save(self, now: Optional[datetime] = None) -> None:
        """Expire, unpin and unfeature by time, then refresh the engagement rate."""
        now = ensure_utc(now or utcnow())
        if self.expires_at and now > self.expires_at:
            self.is_expired = True
            self.status = PostStatus.ARCHIVED
        if self.pinned_until and now > self.pinned_until:
            self.is_pinned = False
        if self.featured_until and now > self.featured_until:
            self.is_featured = False
        if self.engagement.views > 0:
            self.analytics.engagement_rate = self.engagement_rate()

    def to_public(self) -> Dict[str, Any]:
        data = self.model_dump(mode='json', by_alias=True)
        data['likeCount'] = self.like_count
        data['commentCount'] = self.comment_count
        data['bookmarkCount'] = self.bookmark_count
        data['attendeeCount'] = self.attendee_count
        data['isCurrentlyExpired'] = self.is_currently_expired()
        return data
