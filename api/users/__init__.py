"""User API endpoints."""

import re
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import Field

from auth import get_current_user, require_roles, ensure_owner_or_admin
from bookings import BookingManager
from database import get_store
from database.lib.document import GeoPoint
from reviews import ReviewManager
from services import ServiceManager
from users import User, UserManager, UserRole, UserAddress, Preferences
from ..deps import RequestModel, respond, pagination, parse_location, near_filter, embed

router = APIRouter(
    prefix="/api/users",
    tags=["Users"]
)

class UpdateUserRequest(RequestModel):
    """Request model for profile updates by the owner or an admin."""
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    phone: Optional[str] = None
    bio: Optional[str] = Field(default=None, max_length=500)
    avatar: Optional[str] = None
    date_of_birth: Optional[datetime] = None
    address: Optional[UserAddress] = None
    location: Optional[GeoPoint] = None
    preferences: Optional[Preferences] = None

@router.get("")
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, min_length=1),
    trust_score: Optional[int] = Query(None, alias="trustScore", ge=0, le=100),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    sort_by: Literal['createdAt', 'trustScore', 'firstName', 'lastName'] = Query('createdAt', alias="sortBy"),
    sort_order: Literal['asc', 'desc'] = Query('desc', alias="sortOrder"),
    admin: User = Depends(require_roles(UserRole.ADMIN)),
    store=Depends(get_store)
):
    """List users for administration."""
    users, total = await UserManager(store).list_users(
        search=re.escape(search) if search else None,
        min_trust_score=trust_score,
        is_active=is_active,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit
    )
    return respond({
        'users': [u.to_public() for u in users],
        'pagination': pagination(page, limit, total, 'totalUsers')
    })

@router.get("/search")
async def search_users(
    q: str = Query(..., min_length=2),
    location: Optional[str] = Query(None),
    radius: int = Query(10, ge=1, le=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Search active users by name or bio, optionally near a point."""
    near = near_filter(parse_location(location), radius)
    users, total = await UserManager(store).search(re.escape(q.strip()), near=near, page=page, limit=limit)
    fields = ('firstName', 'lastName', 'bio', 'avatar', 'trustScore', 'location', 'address')
    return respond({
        'users': [u.summary(*fields) for u in users],
        'pagination': pagination(page, limit, total, 'totalUsers')
    })

@router.get("/{user_id}")
async def get_user(
    user_id: str,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Get a user profile with review, service and booking statistics."""
    users = UserManager(store)
    profile = await users.get_user(user_id)
    bookings = BookingManager(store)

    data = profile.to_public()
    data['statistics'] = {
        'reviews': await users.review_stats(profile.id),
        'activeServices': await ServiceManager(store).count_active(profile.id),
        'bookingsAsCustomer': await bookings.get_booking_stats(profile.id, 'customer'),
        'bookingsAsProvider': await bookings.get_booking_stats(profile.id, 'provider')
    }
    return respond({'user': data})

@router.put("/{user_id}")
async def update_user(
    user_id: str,
    request: UpdateUserRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Update a profile. Owner or admin only."""
    ensure_owner_or_admin(user, user_id)

    price_range = request.preferences.price_range if request.preferences else None
    if price_range and price_range.min is not None and price_range.max is not None \
            and price_range.min > price_range.max:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Minimum price cannot be greater than maximum price"
        )

    updated = await UserManager(store).update_profile(user_id, request.changes())
    return respond({'user': updated.to_public()}, 'User profile updated successfully')

@router.delete("/{user_id}")
async def delete_user(
    user_id: str,
    admin: User = Depends(require_roles(UserRole.ADMIN)),
    store=Depends(get_store)
):
    """Soft delete a user and deactivate their services. Admin only."""
    await UserManager(store).deactivate(user_id)
    return respond(message='User account deactivated successfully')

@router.get("/{user_id}/services")
async def get_user_services(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    category: Optional[str] = Query(None),
    is_active: bool = Query(True, alias="isActive"),
    store=Depends(get_store)
):
    """Services offered by a user."""
    services, total = await ServiceManager(store).list_by_provider(
        user_id, category=category, is_active=is_active, page=page, limit=limit
    )
    providers = await UserManager(store).summaries([user_id])
    return respond({
        'services': embed([s.to_public() for s in services], 'provider', providers),
        'pagination': pagination(page, limit, total, 'totalServices')
    })

@router.get("/{user_id}/reviews")
async def get_user_reviews(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    rating: Optional[int] = Query(None, ge=1, le=5),
    store=Depends(get_store)
):
    """Approved reviews a user has received."""
    reviews, total = await ReviewManager(store).list_reviews(reviewee=user_id, rating=rating, page=page, limit=limit)
    items = [r.to_public() for r in reviews]
    embed(items, 'reviewer', await UserManager(store).summaries(
        [r.reviewer for r in reviews], 'firstName', 'lastName', 'avatar'
    ))
    embed(items, 'service', await ServiceManager(store).summaries([r.service for r in reviews]))
    return respond({
        'reviews': items,
        'statistics': await UserManager(store).review_stats(user_id),
        'pagination': pagination(page, limit, total, 'totalReviews')
    })

# Export the router
__all__ = ['router']
