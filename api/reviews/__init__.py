"""Review API endpoints."""

from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import Field, field_validator

from auth import get_current_user, get_optional_user
from bookings import BookingManager
from database import get_store
from reviews import Review, ReviewManager, ReviewType, FlagReason, VoteType, DetailedRatings
from services import ServiceManager
from users import User, UserManager
from ..deps import RequestModel, respond, pagination, embed

router = APIRouter(
    prefix="/api/reviews",
    tags=["Reviews"]
)

PERSON_FIELDS = ('firstName', 'lastName', 'avatar')

class PhotoRequest(RequestModel):
    url: str
    caption: Optional[str] = None

class CreateReviewRequest(RequestModel):
    """Request model for reviewing a completed booking."""
    booking: str = Field(min_length=1)
    rating: int = Field(ge=1, le=5)
    title: Optional[str] = Field(default=None, max_length=100)
    comment: str = Field(min_length=10, max_length=2000)
    review_type: ReviewType
    detailed_ratings: Optional[DetailedRatings] = None
    photos: List[PhotoRequest] = Field(default_factory=list)

    @field_validator('comment')
    @classmethod
    def strip_comment(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 10:
            raise ValueError('Comment must be 10-2000 characters')
        return value

class UpdateReviewRequest(RequestModel):
    """Request model for reviewer edits."""
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    title: Optional[str] = Field(default=None, max_length=100)
    comment: Optional[str] = Field(default=None, min_length=10, max_length=2000)
    detailed_ratings: Optional[DetailedRatings] = None

class VoteRequest(RequestModel):
    vote: VoteType

class FlagRequest(RequestModel):
    reason: FlagReason
    description: str = Field(default='', max_length=500)

class ResponseRequest(RequestModel):
    comment: str = Field(min_length=10, max_length=1000)

    @field_validator('comment')
    @classmethod
    def strip_comment(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 10:
            raise ValueError('Response must be 10-1000 characters')
        return value

async def _expand_many(store, reviews: List[Review]) -> List[dict]:
    """Reviews with reviewer, reviewee and service summaries inlined."""
    items = [r.to_public() for r in reviews]
    people = await UserManager(store).summaries(
        [r.reviewer for r in reviews] + [r.reviewee for r in reviews], *PERSON_FIELDS
    )
    embed(items, 'reviewer', people)
    embed(items, 'reviewee', people)
    embed(items, 'service', await ServiceManager(store).summaries([r.service for r in reviews], 'title', 'category'))
    return items

@router.get("")
async def list_reviews(
    service: Optional[str] = Query(None),
    reviewer: Optional[str] = Query(None),
    reviewee: Optional[str] = Query(None),
    rating: Optional[int] = Query(None, ge=1, le=5),
    review_type: Optional[ReviewType] = Query(None, alias="reviewType"),
    sort_by: Literal['createdAt', 'rating', 'helpfulness'] = Query('createdAt', alias="sortBy"),
    sort_order: Literal['asc', 'desc'] = Query('desc', alias="sortOrder"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: Optional[User] = Depends(get_optional_user),
    store=Depends(get_store)
):
    """List approved reviews."""
    reviews, total = await ReviewManager(store).list_reviews(
        service=service,
        reviewer=reviewer,
        reviewee=reviewee,
        rating=rating,
        review_type=review_type.value if review_type else None,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit
    )
    return respond({
        'reviews': await _expand_many(store, reviews),
        'pagination': pagination(page, limit, total, 'totalReviews'),
        'filters': {
            'service': service,
            'reviewer': reviewer,
            'reviewee': reviewee,
            'rating': rating,
            'reviewType': review_type.value if review_type else None
        }
    })

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_review(
    request: CreateReviewRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Review the other participant of a completed booking."""
    changes = request.changes()
    review = await ReviewManager(store).create_review(
        user.id,
        request.booking,
        request.rating,
        request.comment,
        request.review_type.value,
        title=request.title,
        detailed_ratings=changes.get('detailedRatings'),
        photos=changes.get('photos')
    )
    items = await _expand_many(store, [review])
    return respond({'review': items[0]}, 'Review created successfully')

@router.get("/{review_id}")
async def get_review(
    review_id: str,
    user: Optional[User] = Depends(get_optional_user),
    store=Depends(get_store)
):
    """Get a review. Unapproved reviews are visible to their parties only."""
    review = await ReviewManager(store).get_visible(review_id, user.id if user else None)
    data = (await _expand_many(store, [review]))[0]

    booking = await BookingManager(store).find_booking(review.booking)
    if booking:
        data['booking'] = {
            'id': booking.id,
            'scheduledDate': booking.to_public()['scheduledDate'],
            'status': booking.status.value
        }
    if review.response.responded_by:
        responders = await UserManager(store).summaries([review.response.responded_by], *PERSON_FIELDS)
        embed([data['response']], 'respondedBy', responders)
    return respond({'review': data})

@router.put("/{review_id}")
async def update_review(
    review_id: str,
    request: UpdateReviewRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Edit a review within the edit window. Reviewer only."""
    changes = {}
    if request.rating is not None:
        changes['rating'] = request.rating
    if request.title is not None:
        changes['title'] = request.title.strip()
    if request.comment is not None:
        changes['comment'] = request.comment.strip()
    if request.detailed_ratings is not None:
        changes['detailed_ratings'] = request.changes()['detailedRatings']

    review = await ReviewManager(store).update_review(review_id, user.id, **changes)
    items = await _expand_many(store, [review])
    return respond({'review': items[0]}, 'Review updated successfully')

@router.delete("/{review_id}")
async def delete_review(
    review_id: str,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Soft delete a review. Reviewer only."""
    await ReviewManager(store).delete_review(review_id, user.id)
    return respond(message='Review deleted successfully')

@router.post("/{review_id}/helpful")
async def vote_review(
    review_id: str,
    request: VoteRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Record a helpfulness vote, replacing the caller's earlier vote."""
    review = await ReviewManager(store).vote(review_id, user.id, request.vote.value)
    return respond({
        'upvotes': review.helpfulness.upvotes,
        'downvotes': review.helpfulness.downvotes,
        'netHelpfulness': review.net_helpfulness
    }, 'Vote recorded successfully')

@router.post("/{review_id}/flag")
async def flag_review(
    review_id: str,
    request: FlagRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    await ReviewManager(store).flag(review_id, user.id, request.reason.value, request.description.strip())
    return respond(message='Review flagged for moderation')

@router.post("/{review_id}/response", status_code=status.HTTP_201_CREATED)
async def respond_to_review(
    review_id: str,
    request: ResponseRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Add the reviewee's public reply."""
    review = await ReviewManager(store).respond(review_id, user.id, request.comment)
    data = review.response.model_dump(mode='json', by_alias=True)
    embed([data], 'respondedBy', await UserManager(store).summaries([user.id], *PERSON_FIELDS))
    return respond({'response': data}, 'Response added successfully')

# Export the router
__all__ = ['router']
