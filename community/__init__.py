"""Community module for the neighbourhood feed.

This module provides functionality for:
- Creating, updating and removing posts, events and alerts
- Feed listing by area, proximity, upcoming events and trending posts
- Likes, bookmarks, comments, event attendance and check-in
- Moderation flags and time-boxed pinning, featuring and expiry
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from database import get_store
from database.lib.document import ensure_utc, utcnow
from .models import (
    CommunityPost,
    CommunityPostError,
    PostType,
    PostCategory,
    PostStatus,
    Visibility,
    AttendeeStatus,
    PostFlagReason,
    Comment,
    Attendee,
    FLAG_THRESHOLD
)

logger = logging.getLogger(__name__)

# Author-editable fields
MUTABLE_FIELDS = {
    'title',
    'content',
    'category',
    'media',
    'eventDetails',
    'visibility',
    'allowComments',
    'allowShares',
    'expiresAt'
}

SORT_FIELDS = {
    'createdAt': 'createdAt',
    'engagement': 'analytics.engagementRate',
    'views': 'engagement.views'
}

ALERT_PIN_HOURS = 24

class CommunityError(Exception):
    """Base exception for community operations."""
    pass

class PostNotFoundError(CommunityError):
    """Raised when a post does not exist or is not active."""
    pass

class PostPermissionError(CommunityError):
    """Raised when a user acts on a post they do not own."""
    pass

class PostValidationError(CommunityError):
    """Raised when a post request cannot be honoured."""
    pass

def _visible_query() -> Dict[str, Any]:
    return {'status': PostStatus.ACTIVE.value, 'isExpired': False}

def _area_filter(query: Dict[str, Any], city: Optional[str], state: Optional[str]) -> None:
    if city:
        query['address.city'] = {'$regex': re.escape(city), '$options': 'i'}
    if state:
        query['address.state'] = state.upper()

class CommunityManager:
    """Manager class for handling community posts."""

    def __init__(self, store=None):
        """Initialize the community manager.

        Args:
            store: Optional collection store. If not provided, will get from database module.
        """
        self.store = store

    async def ensure_store(self):
        """Ensure we have a collection store."""
        if not self.store:
            self.store = await get_store()

    async def find_post(self, post_id: str) -> Optional[CommunityPost]:
        await self.ensure_store()
        doc = await self.store.posts.get(post_id)
        return CommunityPost.from_document(doc) if doc else None

    async def get_active(self, post_id: str) -> CommunityPost:
        """Get an active post.

        Raises:
            PostNotFoundError: If missing or not active
        """
        post = await self.find_post(post_id)
        if not post or post.status != PostStatus.ACTIVE:
            raise PostNotFoundError("Post not found")
        return post

    async def get_owned(self, post_id: str, user_id: str, action: str = 'update') -> CommunityPost:
        post = await self.find_post(post_id)
        if not post:
            raise PostNotFoundError("Post not found")
        if post.author != user_id:
            raise PostPermissionError(f"Not authorized to {action} this post")
        return post

    async def save(self, post: CommunityPost) -> CommunityPost:
        await self.ensure_store()
        post.before_save()
        post.touch()
        await self.store.posts.replace_one(post.to_document())
        return post

    async def create_post(self, author_id: str, data: Dict[str, Any],
                          now: Optional[datetime] = None) -> CommunityPost:
        """Create a post authored by author_id.

        Args:
            author_id: Posting user
            data: camelCase post fields

        Raises:
            PostValidationError: If an event starts in the past
        """
        await self.ensure_store()
        now = ensure_utc(now or utcnow())
        post = CommunityPost.from_document({**data, 'author': author_id})

        if post.type == PostType.EVENT:
            start = post.event_details.start_date
            if start is None:
                raise PostValidationError("Event start date is required for events")
            if start < now:
                raise PostValidationError("Event date cannot be in the past")

        post.before_save(now)
        await self.store.posts.insert_one(post.to_document())
        logger.info(f"Created community post {post.id} by {author_id}")
        return post

    async def create_alert(self, author, title: str, description: str,
                           location: Optional[Dict[str, Any]] = None) -> CommunityPost:
        """Create a pinned safety alert from a user's emergency report.

        Args:
            author: Reporting User; the post uses their address
            title: Alert headline
            description: Alert body
            location: Optional GeoJSON point, defaults to the author's location

        Raises:
            PostValidationError: If the author has no city and state on file
        """
        address = author.address
        if not address.city or not address.state:
            raise PostValidationError("User location not set")

        now = utcnow()
        data: Dict[str, Any] = {
            'title': f"\U0001F6A8 ALERT: {title}"[:200],
            'content': description,
            'type': PostType.ALERT.value,
            'category': PostCategory.SAFETY.value,
            'address': address.model_dump(mode='json', by_alias=True),
            'isPinned': True,
            'pinnedUntil': now + timedelta(hours=ALERT_PIN_HOURS)
        }
        point = location or (author.location.model_dump(mode='json') if author.location else None)
        if point:
            data['location'] = point
        post = await self.create_post(author.id, data, now=now)
        logger.warning(f"Emergency alert {post.id} raised by {author.id} in {address.city}, {address.state}")
        return post

    async def update_post(self, post_id: str, user_id: str, updates: Dict[str, Any]) -> CommunityPost:
        post = await self.get_owned(post_id, user_id)
        doc = post.to_document()
        for field, value in updates.items():
            if field in MUTABLE_FIELDS:
                doc[field] = value
        return await self.save(CommunityPost.from_document(doc))

    async def remove_post(self, post_id: str, user_id: str) -> CommunityPost:
        post = await self.get_owned(post_id, user_id, action='delete')
        post.status = PostStatus.REMOVED
        await self.save(post)
        logger.info(f"Removed community post {post.id}")
        return post

    async def increment_views(self, post_id: str) -> None:
        """Count a view. Failures are logged and ignored."""
        try:
            post = await self.find_post(post_id)
            if post:
                post.engagement.views += 1
                await self.save(post)
        except Exception as e:
            logger.error(f"Failed to increment views for post {post_id}: {e}")

    async def set_like(self, post_id: str, user_id: str, like: bool = True) -> CommunityPost:
        post = await self.get_active(post_id)
        changed = post.add_like(user_id) if like else post.remove_like(user_id)
        if changed:
            await self.save(post)
        return post

    async def set_bookmark(self, post_id: str, user_id: str, bookmark: bool = True) -> CommunityPost:
        post = await self.get_active(post_id)
        changed = post.add_bookmark(user_id) if bookmark else post.remove_bookmark(user_id)
        if changed:
            await self.save(post)
        return post

    async def add_comment(self, post_id: str, user_id: str, content: str,
                          parent_comment: Optional[str] = None) -> Tuple[CommunityPost, Comment]:
        post = await self.get_active(post_id)
        if parent_comment and not any(c.id == parent_comment for c in post.comments):
            raise PostValidationError("Parent comment not found")
        try:
            comment = post.add_comment(user_id, content.strip(), parent_comment)
        except CommunityPostError as e:
            raise PostValidationError(str(e))
        await self.save(post)
        return post, comment

    async def attend(self, post_id: str, user_id: str, status: str = 'going') -> Tuple[CommunityPost, Attendee]:
        """Register attendance for an event.

        Raises:
            PostValidationError: If the post is not an event or registration closed
        """
        post = await self.get_active(post_id)
        if post.type != PostType.EVENT:
            raise PostValidationError("This is not an event post")
        if post.registration_closed():
            raise PostValidationError("Event registration deadline has passed")

        attendee = post.add_attendee(user_id, status)
        await self.save(post)
        return post, attendee

    async def check_in(self, post_id: str, organizer_id: str, attendee_id: str) -> Tuple[CommunityPost, Attendee]:
        post = await self.get_owned(post_id, organizer_id, action='manage')
        try:
            attendee = post.check_in_attendee(attendee_id)
        except CommunityPostError as e:
            raise PostValidationError(str(e))
        await self.save(post)
        return post, attendee

    async def flag(self, post_id: str, user_id: str, reason: str, description: str = '') -> CommunityPost:
        post = await self.get_active(post_id)
        if any(f.flagged_by == user_id for f in post.moderation.flags):
            raise PostValidationError("You have already flagged this post")
        post.flag(reason, user_id, description)
        if post.status == PostStatus.FLAGGED:
            logger.warning(f"Community post {post.id} flagged after {len(post.moderation.flags)} reports")
        return await self.save(post)

    async def list_posts(
        self,
        type: Optional[str] = None,
        category: Optional[str] = None,
        city: Optional[str] = None,
        state: Optional[str] = None,
        author: Optional[str] = None,
        sort_by: str = 'createdAt',
        sort_order: str = 'desc',
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[CommunityPost], int]:
        """List active posts, pinned first, then featured."""
        await self.ensure_store()
        query = _visible_query()
        if type:
            query['type'] = type
        if category:
            query['category'] = category
        _area_filter(query, city, state)
        if author:
            query['author'] = author

        sort_field = SORT_FIELDS.get(sort_by, 'createdAt')
        direction = 1 if sort_order == 'asc' else -1
        sort = [('isPinned', -1), ('isFeatured', -1), (sort_field, direction)]

        offset = (page - 1) * limit
        docs = await self.store.posts.find(query, sort=sort, skip=offset, limit=limit)
        total = await self.store.posts.count(query)
        return [CommunityPost.from_document(d) for d in docs], total

    async def nearby(self, near: Dict[str, Any], type: Optional[str] = None,
                     category: Optional[str] = None, limit: int = 20) -> List[CommunityPost]:
        await self.ensure_store()
        query = _visible_query()
        query['location'] = near
        if type:
            query['type'] = type
        if category:
            query['category'] = category
        sort = [('isPinned', -1), ('isFeatured', -1), ('createdAt', -1)]
        docs = await self.store.posts.find(query, sort=sort, limit=limit)
        return [CommunityPost.from_document(d) for d in docs]

    async def events(
        self,
        city: Optional[str] = None,
        state: Optional[str] = None,
        upcoming: bool = True,
        page: int = 1,
        limit: int = 20,
        now: Optional[datetime] = None
    ) -> Tuple[List[CommunityPost], int]:
        await self.ensure_store()
        query = _visible_query()
        query['type'] = PostType.EVENT.value
        _area_filter(query, city, state)
        if upcoming:
            query['eventDetails.startDate'] = {'$gte': ensure_utc(now or utcnow())}

        offset = (page - 1) * limit
        sort = [('isPinned', -1), ('eventDetails.startDate', 1)]
        docs = await self.store.posts.find(query, sort=sort, skip=offset, limit=limit)
        total = await self.store.posts.count(query)
        return [CommunityPost.from_document(d) for d in docs], total

    async def trending(
        self,
        city: Optional[str] = None,
        state: Optional[str] = None,
        timeframe: int = 24,
        limit: int = 10,
        now: Optional[datetime] = None
    ) -> List[CommunityPost]:
        """Active posts from the last timeframe hours, most liked, viewed and discussed first."""
        await self.ensure_store()
        since = ensure_utc(now or utcnow()) - timedelta(hours=timeframe)
        query = _visible_query()
        query['createdAt'] = {'$gte': since}
        if city:
            query['address.city'] = city
        if state:
            query['address.state'] = state

        posts = [CommunityPost.from_document(d) for d in await self.store.posts.find(query)]
        posts.sort(key=lambda p: (p.like_count, p.engagement.views, p.comment_count), reverse=True)
        return posts[:limit]

    async def city_stats(self, city: str, state: str) -> Dict[str, Any]:
        await self.ensure_store()
        query = _visible_query()
        _area_filter(query, city, state)
        return {
            'activePosts': await self.store.posts.count(query),
            'upcomingEvents': await self.store.posts.count({
                **query,
                'type': PostType.EVENT.value,
                'eventDetails.startDate': {'$gte': utcnow()}
            })
        }

__all__ = [
    'CommunityManager',
    'CommunityPost',
    'PostType',
    'PostCategory',
    'PostStatus',
    'Visibility',
    'AttendeeStatus',
    'PostFlagReason',
    'Comment',
    'Attendee',
    'FLAG_THRESHOLD',
    'MUTABLE_FIELDS',
    'CommunityError',
    'PostNotFoundError',
    'PostPermissionError',
    'PostValidationError'
]
