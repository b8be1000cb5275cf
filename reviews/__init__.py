"""Reviews module for managing booking reviews.

This module provides functionality for:
- Creating reviews for completed bookings
- Editing within the edit window and soft deletion
- Helpfulness votes, moderation flags and reviewee responses
- Keeping service review summaries and reviewee reputation current
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from database import get_store, DuplicateKeyError
from bookings import BookingManager, BookingStatus
from services import ServiceManager
from users import UserManager
from .models import (
    Review,
    ReviewType,
    ModerationStatus,
    FlagReason,
    VerificationMethod,
    VoteType,
    DetailedRatings,
    EDIT_WINDOW,
    FLAG_THRESHOLD,
    analyze_comment
)

logger = logging.getLogger(__name__)

SORT_FIELDS = {
    'createdAt': 'createdAt',
    'rating': 'rating',
    'helpfulness': 'helpfulness.upvotes'
}

class ReviewError(Exception):
    """Base exception for review operations."""
    pass

class ReviewNotFoundError(ReviewError):
    """Raised when a review does not exist or is not visible."""
    pass

class ReviewPermissionError(ReviewError):
    """Raised when a user may not act on a review."""
    pass

class ReviewValidationError(ReviewError):
    """Raised when a review request cannot be honoured."""
    pass

class ReviewExistsError(ReviewError):
    """Raised when the booking already has a review in that direction."""
    pass

class ReviewManager:
    """Manager class for handling review operations."""

    def __init__(self, store=None):
        """Initialize the review manager.

        Args:
            store: Optional collection store. If not provided, will get from database module.
        """
        self.store = store

    async def ensure_store(self):
        """Ensure we have a collection store."""
        if not self.store:
            self.store = await get_store()

    async def find_review(self, review_id: str) -> Optional[Review]:
        await self.ensure_store()
        doc = await self.store.reviews.get(review_id)
        return Review.from_document(doc) if doc else None

    async def get_active(self, review_id: str) -> Review:
        """Get a review that has not been deleted.

        Raises:
            ReviewNotFoundError: If missing or soft deleted
        """
        review = await self.find_review(review_id)
        if not review or not review.is_active:
            raise ReviewNotFoundError("Review not found")
        return review

    async def get_visible(self, review_id: str, viewer_id: Optional[str] = None) -> Review:
        """Get a review as seen by viewer_id.

        Reviews awaiting moderation are only visible to the reviewer and reviewee.
        """
        review = await self.get_active(review_id)
        if review.moderation.status != ModerationStatus.APPROVED and not review.is_party(viewer_id):
            raise ReviewNotFoundError("Review not found")
        return review

    async def save(self, review: Review) -> Review:
        await self.ensure_store()
        review.touch()
        await self.store.reviews.replace_one(review.to_document())
        return review

    async def create_review(
        self,
        user_id: str,
        booking_id: str,
        rating: int,
        comment: str,
        review_type: str,
        title: Optional[str] = None,
        detailed_ratings: Optional[Dict[str, Any]] = None,
        photos: Optional[List[Dict[str, Any]]] = None
    ) -> Review:
        """Review the other participant of a completed booking.

        Args:
            user_id: Reviewing participant
            booking_id: Completed booking
            rating: 1-5 stars
            comment: Review text
            review_type: Must match the reviewer's role in the booking

        Returns:
            The created, auto-approved review

        Raises:
            BookingNotFoundError: If the booking does not exist
            ReviewPermissionError: If the user is not a participant
            ReviewValidationError: If the booking is not completed or the type mismatches
            ReviewExistsError: If this direction was already reviewed
        """
        await self.ensure_store()
        bookings = BookingManager(self.store)
        booking = await bookings.get_booking(booking_id)

        if booking.status != BookingStatus.COMPLETED:
            raise ReviewValidationError("Can only review completed bookings")

        role = booking.role_of(user_id)
        if role is None:
            raise ReviewPermissionError("Not authorized to review this booking")

        review_type = ReviewType(review_type)
        if role == 'customer' and review_type != ReviewType.CUSTOMER_TO_PROVIDER:
            raise ReviewValidationError("Customers can only create customer_to_provider reviews")
        if role == 'provider' and review_type != ReviewType.PROVIDER_TO_CUSTOMER:
            raise ReviewValidationError("Providers can only create provider_to_customer reviews")

        existing = await self.store.reviews.find_one({
            'booking': booking.id,
            'reviewType': review_type.value
        })
        if existing:
            raise ReviewExistsError("Review already exists for this booking")

        review = Review(
            reviewer=user_id,
            reviewee=booking.other_participant(user_id),
            service=booking.service,
            booking=booking.id,
            rating=rating,
            title=title,
            comment=comment.strip(),
            detailed_ratings=DetailedRatings.model_validate(detailed_ratings or {}),
            review_type=review_type,
            photos=photos or [],
            is_verified=True,
            verification_method=VerificationMethod.BOOKING_COMPLETION
        )
        review.moderation.status = ModerationStatus.APPROVED
        review.analyze()

        try:
            await self.store.reviews.insert_one(review.to_document())
        except DuplicateKeyError:
            raise ReviewExistsError("Review already exists for this booking")
        logger.info(f"Created review {review.id} for booking {booking.id}")

        try:
            await bookings.attach_review(booking, review.id, review_type.value)
            if review_type == ReviewType.CUSTOMER_TO_PROVIDER:
                await ServiceManager(self.store).refresh_reviews_summary(review.service)
            await UserManager(self.store).record_review(review.reviewee, 1)
        except Exception as e:
            logger.error(f"Review {review.id} created but booking/service/reputation updates failed: {e}")
            raise

        return review

    async def update_review(
        self,
        review_id: str,
        user_id: str,
        now: Optional[datetime] = None,
        **changes: Any
    ) -> Review:
        """Edit a review within the edit window.

        Raises:
            ReviewNotFoundError: If the review does not exist
            ReviewPermissionError: If the user is not the reviewer
            ReviewValidationError: If the edit window has passed
        """
        review = await self.get_active(review_id)
        if review.reviewer != user_id:
            raise ReviewPermissionError("Not authorized to update this review")
        if not review.can_edit(now):
            hours = int(EDIT_WINDOW.total_seconds() // 3600)
            raise ReviewValidationError(f"Reviews can only be edited within {hours} hours of creation")

        review.apply_edit(**{k: v for k, v in changes.items()
                             if k in ('rating', 'title', 'comment', 'detailed_ratings')})
        return await self.save(review)

    async def delete_review(self, review_id: str, user_id: str) -> Review:
        """Soft delete a review and take it out of the reviewee's reputation."""
        review = await self.get_active(review_id)
        if review.reviewer != user_id:
            raise ReviewPermissionError("Not authorized to delete this review")

        review.is_active = False
        await self.save(review)
        logger.info(f"Deleted review {review.id}")

        try:
            await ServiceManager(self.store).refresh_reviews_summary(review.service)
            await UserManager(self.store).record_review(review.reviewee, -1)
        except Exception as e:
            logger.error(f"Review {review.id} deleted but service/reputation updates failed: {e}")
            raise

        return review

    async def vote(self, review_id: str, user_id: str, vote: str) -> Review:
        review = await self.get_active(review_id)
        if review.reviewer == user_id:
            raise ReviewValidationError("Cannot vote on your own review")
        review.add_vote(user_id, vote)
        return await self.save(review)

    async def flag(self, review_id: str, user_id: str, reason: str, description: str = '') -> Review:
        review = await self.get_active(review_id)
        if review.has_flag_from(user_id):
            raise ReviewValidationError("You have already flagged this review")
        review.add_flag(reason, user_id, description)
        if review.moderation.status == ModerationStatus.FLAGGED:
            logger.warning(f"Review {review.id} flagged after {review.report_count} reports")
        return await self.save(review)

    async def respond(self, review_id: str, user_id: str, comment: str) -> Review:
        review = await self.get_active(review_id)
        if review.response.comment:
            raise ReviewValidationError("Response already exists for this review")
        if review.reviewee != user_id:
            raise ReviewPermissionError("Only the reviewee can respond to this review")
        review.add_response(user_id, comment.strip())
        return await self.save(review)

    async def list_reviews(
        self,
        service: Optional[str] = None,
        reviewer: Optional[str] = None,
        reviewee: Optional[str] = None,
        rating: Optional[int] = None,
        review_type: Optional[str] = None,
        sort_by: str = 'createdAt',
        sort_order: str = 'desc',
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Review], int]:
        """List active, approved reviews."""
        await self.ensure_store()
        query: Dict[str, Any] = {'isActive': True, 'moderation.status': ModerationStatus.APPROVED.value}
        if service:
            query['service'] = service
        if reviewer:
            query['reviewer'] = reviewer
        if reviewee:
            query['reviewee'] = reviewee
        if rating:
            query['rating'] = rating
        if review_type:
            query['reviewType'] = review_type

        sort_field = SORT_FIELDS.get(sort_by, 'createdAt')
        direction = 1 if sort_order == 'asc' else -1

        offset = (page - 1) * limit
        docs = await self.store.reviews.find(query, sort=[(sort_field, direction)], skip=offset, limit=limit)
        total = await self.store.reviews.count(query)
        return [Review.from_document(d) for d in docs], total

    async def recent_for_service(self, service_id: str, limit: int = 5) -> List[Review]:
        reviews, _ = await self.list_reviews(service=service_id, limit=limit)
        return reviews

__all__ = [
    'ReviewManager',
    'Review',
    'ReviewType',
    'ModerationStatus',
    'FlagReason',
    'VoteType',
    'DetailedRatings',
    'EDIT_WINDOW',
    'FLAG_THRESHOLD',
    'analyze_comment',
    'ReviewError',
    'ReviewNotFoundError',
    'ReviewPermissionError',
    'ReviewValidationError',
    'ReviewExistsError'
]
