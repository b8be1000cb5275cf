"""Users module for managing member accounts.

This module provides functionality for:
- Creating accounts and looking users up by id or email
- Profile updates restricted to user-editable fields
- Reputation bookkeeping and trust score updates
- Soft deletion (email tombstone + deactivation)
- Search and admin listing
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from database import get_store, DuplicateKeyError
from database.lib.document import utcnow
from .models import User, UserRole, UserAddress, Preferences

logger = logging.getLogger(__name__)

# User-editable profile fields
MUTABLE_FIELDS = {
    'firstName',
    'lastName',
    'phone',
    'bio',
    'dateOfBirth',
    'address',
    'location',
    'preferences',
    'avatar'
}

SORT_FIELDS = {'createdAt', 'trustScore', 'firstName', 'lastName'}

class UserError(Exception):
    """Base exception for user operations."""
    pass

class UserNotFoundError(UserError):
    """Raised when a user does not exist."""
    pass

class UserExistsError(UserError):
    """Raised when registering an email that is already taken."""
    pass

class UserManager:
    """Manager class for handling user operations."""

    def __init__(self, store=None):
        """Initialize the user manager.

        Args:
            store: Optional collection store. If not provided, will get from database module.
        """
        self.store = store

    async def ensure_store(self):
        """Ensure we have a collection store."""
        if not self.store:
            self.store = await get_store()

    async def find_user(self, user_id: str) -> Optional[User]:
        await self.ensure_store()
        doc = await self.store.users.get(user_id)
        return User.from_document(doc) if doc else None

    async def get_user(self, user_id: str) -> User:
        """Get a user by id.

        Raises:
            UserNotFoundError: If no such user exists
        """
        user = await self.find_user(user_id)
        if not user:
            raise UserNotFoundError(f"User not found: {user_id}")
        return user

    async def get_by_email(self, email: str) -> Optional[User]:
        await self.ensure_store()
        doc = await self.store.users.find_one({'email': email.strip().lower()})
        return User.from_document(doc) if doc else None

    async def create_user(
        self,
        first_name: str,
        last_name: str,
        email: str,
        password_hash: str,
        **profile: Any
    ) -> User:
        """Create a new user account.

        Args:
            first_name: First name
            last_name: Last name
            email: Email address, stored lower-cased
            password_hash: Already hashed password
            **profile: Optional profile fields (phone, address, location, ...)

        Returns:
            The created user

        Raises:
            UserExistsError: If the email is already registered
        """
        await self.ensure_store()

        email = email.strip().lower()
        if await self.get_by_email(email):
            raise UserExistsError("User already exists with this email")

        user = User(
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            email=email,
            password=password_hash,
            **{k: v for k, v in profile.items() if v is not None}
        )
        try:
            await self.store.users.insert_one(user.to_document())
        except DuplicateKeyError:
            raise UserExistsError("User already exists with this email")

        logger.info(f"Created user {user.id}")
        return user

    async def save(self, user: User) -> User:
        await self.ensure_store()
        user.touch()
        await self.store.users.replace_one(user.to_document())
        return user

    async def update_profile(self, user_id: str, updates: Dict[str, Any]) -> User:
        """Apply user-editable fields to a profile.

        Args:
            user_id: User to update
            updates: camelCase field -> value; fields outside MUTABLE_FIELDS are ignored

        Raises:
            UserNotFoundError: If the user does not exist
        """
        user = await self.get_user(user_id)
        doc = user.to_document()
        for field, value in updates.items():
            if field in MUTABLE_FIELDS:
                doc[field] = value
        updated = User.from_document(doc)
        return await self.save(updated)

    async def record_login(self, user: User) -> User:
        user.last_login_at = utcnow()
        return await self.save(user)

    async def deactivate(self, user_id: str) -> User:
        """Soft delete a user and deactivate every service they provide."""
        user = await self.get_user(user_id)
        user.tombstone()
        await self.save(user)

        deactivated = await self.store.services.update_many({'provider': user.id}, {'isActive': False})
        logger.info(f"Deactivated user {user.id} and {deactivated} services")
        return user

    async def record_review(self, user_id: str, delta: int) -> Optional[User]:
        """Adjust a reviewee's review count and refresh rating and trust score.

        Args:
            user_id: Reviewee
            delta: +1 when a review is added, -1 when one is removed
        """
        user = await self.find_user(user_id)
        if not user:
            return None

        rep = user.reputation
        rep.total_reviews = max(0, rep.total_reviews + delta)
        if delta > 0:
            reviews = await self.store.reviews.find({
                'reviewee': user.id,
                'isActive': True,
                'moderation.status': 'approved'
            })
            if reviews:
                rep.average_rating = sum(r['rating'] for r in reviews) / len(reviews)

        user.update_trust_score()
        return await self.save(user)

    async def record_service_outcome(self, user_id: str, completed: bool) -> Optional[User]:
        """Count a completed or cancelled service against a provider."""
        user = await self.find_user(user_id)
        if not user:
            return None

        if completed:
            user.reputation.completed_services += 1
        else:
            user.reputation.cancelled_services += 1
        user.update_trust_score()
        return await self.save(user)

    async def review_stats(self, user_id: str) -> Dict[str, Any]:
        """Statistics over the active reviews a user has received."""
        await self.ensure_store()
        reviews = await self.store.reviews.find({'reviewee': user_id, 'isActive': True})
        counts = {str(star): 0 for star in range(5, 0, -1)}
        for review in reviews:
            key = str(review.get('rating'))
            if key in counts:
                counts[key] += 1

        total = len(reviews)
        average = sum(r['rating'] for r in reviews) / total if total else 0
        return {
            'totalReviews': total,
            'averageRating': round(average, 2),
            'ratingCounts': counts,
            'totalHelpfulness': sum(r.get('helpfulness', {}).get('upvotes', 0) for r in reviews)
        }

    async def search(
        self,
        q: str,
        near: Optional[Dict[str, Any]] = None,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[User], int]:
        """Search active users by name or bio.

        Args:
            q: Regular expression matched case-insensitively
            near: Optional $near filter on location
            page: 1-based page
            limit: Page size

        Returns:
            (users ordered by trust score, total matches)
        """
        await self.ensure_store()
        query: Dict[str, Any] = {
            'isActive': True,
            'isSuspended': False,
            '$or': [
                {'firstName': {'$regex': q, '$options': 'i'}},
                {'lastName': {'$regex': q, '$options': 'i'}},
                {'bio': {'$regex': q, '$options': 'i'}}
            ]
        }
        if near:
            query['location'] = near

        offset = (page - 1) * limit
        docs = await self.store.users.find(query, sort=[('trustScore', -1)], skip=offset, limit=limit)
        total = await self.store.users.count(query)
        return [User.from_document(d) for d in docs], total

    async def list_users(
        self,
        search: Optional[str] = None,
        min_trust_score: Optional[int] = None,
        is_active: Optional[bool] = None,
        sort_by: str = 'createdAt',
        sort_order: str = 'desc',
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[User], int]:
        """List users for administration."""
        await self.ensure_store()
        query: Dict[str, Any] = {}
        if search:
            query['$or'] = [
                {'firstName': {'$regex': search, '$options': 'i'}},
                {'lastName': {'$regex': search, '$options': 'i'}},
                {'email': {'$regex': search, '$options': 'i'}}
            ]
        if min_trust_score is not None:
            query['trustScore'] = {'$gte': min_trust_score}
        if is_active is not None:
            query['isActive'] = is_active

        if sort_by not in SORT_FIELDS:
            sort_by = 'createdAt'
        direction = 1 if sort_order == 'asc' else -1

        offset = (page - 1) * limit
        docs = await self.store.users.find(query, sort=[(sort_by, direction)], skip=offset, limit=limit)
        total = await self.store.users.count(query)
        return [User.from_document(d) for d in docs], total

    async def summaries(self, user_ids: Iterable[str], *fields: str) -> Dict[str, Dict[str, Any]]:
        """Public summaries of several users keyed by id."""
        await self.ensure_store()
        ids = [i for i in dict.fromkeys(user_ids) if i]
        if not ids:
            return {}
        docs = await self.store.users.find({'id': {'$in': ids}})
        return {d['id']: User.from_document(d).summary(*fields) for d in docs}

__all__ = [
    'UserManager',
    'User',
    'UserRole',
    'UserAddress',
    'Preferences',
    'UserError',
    'UserNotFoundError',
    'UserExistsError',
    'MUTABLE_FIELDS'
]
