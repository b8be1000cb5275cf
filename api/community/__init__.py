"""Community feed API endpoints."""

import re
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import Field, field_validator, model_validator

from auth import get_current_user, get_optional_user
from community import (
    CommunityManager,
    CommunityPost,
    PostType,
    PostCategory,
    Visibility,
    AttendeeStatus,
    PostFlagReason
)
from community.models import EventDetails, Media, PostAddress
from database import get_store
from database.lib.document import GeoPoint, near
from users import User, UserManager
from ..deps import RequestModel, get_presence, respond, pagination, embed, push
from ..realtime.models import ServerEvent
from ..realtime.presence import PresenceRegistry

router = APIRouter(
    prefix="/api/community",
    tags=["Community"]
)

AUTHOR_FIELDS = ('firstName', 'lastName', 'avatar', 'trustScore')
TIME_PATTERN = re.compile(r'^([01]?[0-9]|2[0-3]):[0-5][0-9]$')

class CreatePostRequest(RequestModel):
    """Request model for a new post, event or announcement."""
    title: str = Field(min_length=5, max_length=200)
    content: str = Field(min_length=10, max_length=5000)
    type: PostType
    category: PostCategory
    location: Optional[GeoPoint] = None
    address: PostAddress
    radius: Optional[float] = Field(default=None, ge=0, le=50)
    media: List[Media] = Field(default_factory=list)
    event_details: Optional[EventDetails] = None
    visibility: Optional[Visibility] = None
    allow_comments: Optional[bool] = None
    allow_shares: Optional[bool] = None
    expires_at: Optional[datetime] = None

    @field_validator('address')
    @classmethod
    def check_address(cls, value: PostAddress) -> PostAddress:
        if not value.city.strip():
            raise ValueError('City is required')
        if len(value.state.strip()) != 2:
            raise ValueError('State must be 2 characters')
        return value

    @model_validator(mode='after')
    def check_event(self):
        if self.type == PostType.EVENT:
            details = self.event_details
            if details is None or details.start_date is None:
                raise ValueError('Event start date is required for events')
            if not details.start_time or not TIME_PATTERN.match(details.start_time):
                raise ValueError('Event start time must be in HH:MM format')
        return self

class UpdatePostRequest(RequestModel):
    """Request model for author edits."""
    title: Optional[str] = Field(default=None, min_length=5, max_length=200)
    content: Optional[str] = Field(default=None, min_length=10, max_length=5000)
    category: Optional[PostCategory] = None
    media: Optional[List[Media]] = None
    event_details: Optional[EventDetails] = None
    visibility: Optional[Visibility] = None
    allow_comments: Optional[bool] = None
    allow_shares: Optional[bool] = None
    expires_at: Optional[datetime] = None

class LikeRequest(RequestModel):
    action: Literal['like', 'unlike']

class BookmarkRequest(RequestModel):
    action: Literal['bookmark', 'unbookmark'] = 'bookmark'

class CommentRequest(RequestModel):
    content: str = Field(min_length=1, max_length=1000)
    parent_comment: Optional[str] = None

    @field_validator('content')
    @classmethod
    def strip_content(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError('Comment must be 1-1000 characters')
        return value

class AttendRequest(RequestModel):
    status: AttendeeStatus = AttendeeStatus.GOING

class CheckInRequest(RequestModel):
    user_id: str = Field(min_length=1)

class FlagRequest(RequestModel):
    reason: PostFlagReason
    description: str = Field(default='', max_length=500)

async def _with_authors(store, posts: List[CommunityPost], fields=AUTHOR_FIELDS) -> List[dict]:
    items = [p.to_public() for p in posts]
    embed(items, 'author', await UserManager(store).summaries([p.author for p in posts], *fields))
    return items

@router.get("")
async def list_posts(
    type: Optional[PostType] = Query(None),
    category: Optional[PostCategory] = Query(None),
    city: Optional[str] = Query(None, min_length=1),
    state: Optional[str] = Query(None, min_length=2, max_length=2),
    author: Optional[str] = Query(None),
    sort_by: Literal['createdAt', 'engagement', 'views'] = Query('createdAt', alias="sortBy"),
    sort_order: Literal['asc', 'desc'] = Query('desc', alias="sortOrder"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: Optional[User] = Depends(get_optional_user),
    store=Depends(get_store)
):
    """List active posts, pinned first, then featured."""
    posts, total = await CommunityManager(store).list_posts(
        type=type.value if type else None,
        category=category.value if category else None,
        city=city,
        state=state,
        author=author,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit
    )
    items = await _with_authors(store, posts)
    commenters = await UserManager(store).summaries(
        [c.author for p in posts for c in p.comments], 'firstName', 'lastName', 'avatar'
    )
    for item in items:
        embed(item['comments'], 'author', commenters)
    return respond({
        'posts': items,
        'pagination': pagination(page, limit, total, 'totalPosts'),
        'filters': {
            'type': type.value if type else None,
            'category': category.value if category else None,
            'city': city,
            'state': state,
            'author': author
        }
    })

@router.get("/nearby")
async def nearby_posts(
    lng: float = Query(..., ge=-180, le=180),
    lat: float = Query(..., ge=-90, le=90),
    radius: int = Query(5, ge=1, le=50),
    type: Optional[PostType] = Query(None),
    category: Optional[PostCategory] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    user: Optional[User] = Depends(get_optional_user),
    store=Depends(get_store)
):
    """Active posts within radius miles of a point."""
    posts = await CommunityManager(store).nearby(
        near(lng, lat, radius),
        type=type.value if type else None,
        category=category.value if category else None,
        limit=limit
    )
    return respond({
        'posts': await _with_authors(store, posts),
        'location': {'coordinates': [lng, lat], 'radius': radius},
        'totalResults': len(posts)
    })

@router.get("/events")
async def list_events(
    city: Optional[str] = Query(None, min_length=1),
    state: Optional[str] = Query(None, min_length=2, max_length=2),
    upcoming: bool = Query(True),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: Optional[User] = Depends(get_optional_user),
    store=Depends(get_store)
):
    """Event posts, soonest first."""
    events, total = await CommunityManager(store).events(
        city=city, state=state, upcoming=upcoming, page=page, limit=limit
    )
    return respond({
        'events': await _with_authors(store, events),
        'pagination': pagination(page, limit, total, 'totalEvents'),
        'filters': {'city': city, 'state': state, 'upcoming': upcoming}
    })

@router.get("/trending")
async def trending_posts(
    city: Optional[str] = Query(None, min_length=1),
    state: Optional[str] = Query(None, min_length=2, max_length=2),
    timeframe: int = Query(24, ge=1, le=168),
    limit: int = Query(10, ge=1, le=50),
    user: Optional[User] = Depends(get_optional_user),
    store=Depends(get_store)
):
    """Most engaged posts of the last timeframe hours."""
    posts = await CommunityManager(store).trending(
        city=city, state=state.upper() if state else None, timeframe=timeframe, limit=limit
    )
    return respond({
        'posts': await _with_authors(store, posts),
        'timeframe': timeframe,
        'totalResults': len(posts)
    })

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_post(
    request: CreatePostRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store),
    presence: PresenceRegistry = Depends(get_presence)
):
    """Create a post. Neighbours in the same city are notified in realtime."""
    post = await CommunityManager(store).create_post(user.id, request.changes())
    data = post.to_public()
    data['author'] = user.summary(*AUTHOR_FIELDS)

    await push(presence.emit_to_city(post.address.city, post.address.state, ServerEvent.NEW_COMMUNITY_POST.value, {
        'post': data,
        'author': {'name': user.full_name, 'avatar': user.avatar, 'trustScore': user.trust_score}
    }), f"new post {post.id}")

    return respond({'post': data}, 'Community post created successfully')

@router.get("/{post_id}")
async def get_post(
    post_id: str,
    user: Optional[User] = Depends(get_optional_user),
    store=Depends(get_store)
):
    """Get an active post with its author, comments and attendees."""
    manager = CommunityManager(store)
    post = await manager.get_active(post_id)
    await manager.increment_views(post.id)

    data = post.to_public()
    users = UserManager(store)
    author = await users.summaries(
        [post.author], 'firstName', 'lastName', 'avatar', 'trustScore', 'verification'
    )
    data['author'] = author.get(post.author, post.author)

    people = await users.summaries(
        [c.author for c in post.comments]
        + [a.user for a in post.attendees]
        + [like.user for like in post.engagement.likes]
        + [b.user for b in post.engagement.bookmarks],
        'firstName', 'lastName', 'avatar'
    )
    embed(data['comments'], 'author', people)
    embed(data['attendees'], 'user', people)
    embed(data['engagement']['likes'], 'user', people)
    embed(data['engagement']['bookmarks'], 'user', people)
    return respond({'post': data})

@router.put("/{post_id}")
async def update_post(
    post_id: str,
    request: UpdatePostRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Edit a post. Author only."""
    post = await CommunityManager(store).update_post(post_id, user.id, request.changes())
    data = post.to_public()
    data['author'] = user.summary(*AUTHOR_FIELDS)
    return respond({'post': data}, 'Post updated successfully')

@router.delete("/{post_id}")
async def delete_post(
    post_id: str,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Remove a post from the feed. Author only."""
    await CommunityManager(store).remove_post(post_id, user.id)
    return respond(message='Post deleted successfully')

@router.post("/{post_id}/like")
async def like_post(
    post_id: str,
    request: LikeRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store),
    presence: PresenceRegistry = Depends(get_presence)
):
    post = await CommunityManager(store).set_like(post_id, user.id, like=request.action == 'like')

    await push(presence.emit_to_city(post.address.city, post.address.state, ServerEvent.POST_LIKED.value, {
        'postId': post.id,
        'action': request.action,
        'userId': user.id,
        'userName': user.full_name,
        'likeCount': post.like_count
    }), f"like on post {post.id}")

    return respond(
        {'likeCount': post.like_count, 'action': request.action},
        f"Post {request.action}d successfully"
    )

@router.post("/{post_id}/comment", status_code=status.HTTP_201_CREATED)
async def comment_on_post(
    post_id: str,
    request: CommentRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Add a comment, optionally replying to another comment."""
    post, comment = await CommunityManager(store).add_comment(
        post_id, user.id, request.content, request.parent_comment
    )
    data = comment.model_dump(mode='json', by_alias=True)
    data['author'] = user.summary('firstName', 'lastName', 'avatar')
    return respond({'comment': data, 'commentCount': post.comment_count}, 'Comment added successfully')

@router.post("/{post_id}/attend")
async def attend_event(
    post_id: str,
    request: AttendRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Register or change attendance for an event."""
    post, attendee = await CommunityManager(store).attend(post_id, user.id, request.status.value)
    return respond(
        {'attendeeCount': post.attendee_count, 'userStatus': attendee.status.value},
        'Event attendance updated successfully'
    )

@router.post("/{post_id}/bookmark")
async def bookmark_post(
    post_id: str,
    request: BookmarkRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    post = await CommunityManager(store).set_bookmark(post_id, user.id, bookmark=request.action == 'bookmark')
    return respond(
        {'bookmarkCount': post.bookmark_count, 'action': request.action},
        f"Post {request.action}ed successfully"
    )

@router.post("/{post_id}/check-in")
async def check_in_attendee(
    post_id: str,
    request: CheckInRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Check an attendee in. Event author only."""
    post, attendee = await CommunityManager(store).check_in(post_id, user.id, request.user_id)
    return respond(
        {'attendee': attendee.model_dump(mode='json', by_alias=True)},
        'Attendee checked in successfully'
    )

@router.post("/{post_id}/flag")
async def flag_post(
    post_id: str,
    request: FlagRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    await CommunityManager(store).flag(post_id, user.id, request.reason.value, request.description.strip())
    return respond(message='Post flagged for moderation')

# Export the router
__all__ = ['router']
