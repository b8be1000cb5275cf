"""Service API endpoints."""

import re
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import Field, field_validator

from auth import get_current_user, get_optional_user
from database import get_store
from database.lib.document import Address, GeoPoint, near
from reviews import ReviewManager
from services import ServiceManager, ServiceCategory, Pricing, Availability, Image
from services.models import Duration, PortfolioItem, Requirements, ServiceArea
from users import User, UserManager
from ..deps import RequestModel, respond, pagination, parse_location, near_filter, embed

router = APIRouter(
    prefix="/api/services",
    tags=["Services"]
)

PROVIDER_FIELDS = ('firstName', 'lastName', 'avatar', 'trustScore')

class ServiceAddress(Address):
    """Address as submitted with a service."""

    @field_validator('city')
    @classmethod
    def check_city(cls, value):
        if value is not None and not value.strip():
            raise ValueError('City is required')
        return value.strip() if value else value

    @field_validator('state')
    @classmethod
    def check_state(cls, value):
        if value is not None and len(value.strip()) != 2:
            raise ValueError('State must be 2 characters')
        return value.strip().upper() if value else value

class CreateServiceRequest(RequestModel):
    """Request model for creating a service."""
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=10, max_length=2000)
    category: ServiceCategory
    subcategory: Optional[str] = None
    pricing: Pricing
    location: GeoPoint
    address: ServiceAddress
    service_area: Optional[ServiceArea] = None
    duration: Duration
    requirements: Optional[Requirements] = None
    images: List[Image] = Field(default_factory=list)
    portfolio: List[PortfolioItem] = Field(default_factory=list)
    availability: Optional[Availability] = None

    @field_validator('location')
    @classmethod
    def check_location(cls, value: GeoPoint) -> GeoPoint:
        if len(value.coordinates) != 2:
            raise ValueError('Location coordinates required: [longitude, latitude]')
        return value

    @field_validator('title', 'description')
    @classmethod
    def strip_text(cls, value: str) -> str:
        return value.strip()

class UpdateServiceRequest(RequestModel):
    """Request model for provider edits. Unset fields are left alone."""
    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, min_length=10, max_length=2000)
    subcategory: Optional[str] = None
    pricing: Optional[Pricing] = None
    location: Optional[GeoPoint] = None
    address: Optional[ServiceAddress] = None
    service_area: Optional[ServiceArea] = None
    duration: Optional[Duration] = None
    requirements: Optional[Requirements] = None
    images: Optional[List[Image]] = None
    portfolio: Optional[List[PortfolioItem]] = None
    availability: Optional[Availability] = None

class PauseRequest(RequestModel):
    is_paused: bool
    reason: Optional[str] = Field(default=None, max_length=200)

async def _with_providers(store, services) -> List[dict]:
    providers = await UserManager(store).summaries([s.provider for s in services], *PROVIDER_FIELDS)
    return embed([s.to_public() for s in services], 'provider', providers)

@router.get("")
async def list_services(
    category: Optional[ServiceCategory] = Query(None),
    min_price: Optional[float] = Query(None, alias="minPrice", ge=0),
    max_price: Optional[float] = Query(None, alias="maxPrice", ge=0),
    rating: Optional[float] = Query(None, ge=0, le=5),
    sort_by: Literal['createdAt', 'price', 'rating', 'views'] = Query('createdAt', alias="sortBy"),
    sort_order: Literal['asc', 'desc'] = Query('desc', alias="sortOrder"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: Optional[User] = Depends(get_optional_user),
    store=Depends(get_store)
):
    """List bookable services."""
    services, total = await ServiceManager(store).list_services(
        category=category.value if category else None,
        min_price=min_price,
        max_price=max_price,
        min_rating=rating,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit
    )
    return respond({
        'services': await _with_providers(store, services),
        'pagination': pagination(page, limit, total, 'totalServices'),
        'filters': {
            'category': category.value if category else None,
            'minPrice': min_price,
            'maxPrice': max_price,
            'rating': rating
        }
    })

@router.get("/search")
async def search_services(
    q: str = Query(..., min_length=2),
    category: Optional[ServiceCategory] = Query(None),
    location: Optional[str] = Query(None),
    radius: int = Query(25, ge=1, le=100),
    min_price: Optional[float] = Query(None, alias="minPrice", ge=0),
    max_price: Optional[float] = Query(None, alias="maxPrice", ge=0),
    sort_by: Literal['relevance', 'price_low', 'price_high', 'rating', 'newest'] = Query('relevance', alias="sortBy"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: Optional[User] = Depends(get_optional_user),
    store=Depends(get_store)
):
    """Search services by title, description or subcategory."""
    services, total = await ServiceManager(store).search(
        re.escape(q.strip()),
        category=category.value if category else None,
        near=near_filter(parse_location(location), radius),
        min_price=min_price,
        max_price=max_price,
        sort_by=sort_by,
        page=page,
        limit=limit
    )
    return respond({
        'services': await _with_providers(store, services),
        'pagination': pagination(page, limit, total, 'totalServices'),
        'searchQuery': q,
        'filters': {
            'category': category.value if category else None,
            'location': location,
            'radius': radius,
            'minPrice': min_price,
            'maxPrice': max_price
        }
    })

@router.get("/nearby")
async def nearby_services(
    lng: float = Query(..., ge=-180, le=180),
    lat: float = Query(..., ge=-90, le=90),
    radius: int = Query(10, ge=1, le=100),
    category: Optional[ServiceCategory] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    user: Optional[User] = Depends(get_optional_user),
    store=Depends(get_store)
):
    """Services within radius miles of a point, nearest first."""
    services = await ServiceManager(store).nearby(
        near(lng, lat, radius),
        category=category.value if category else None,
        limit=limit
    )
    return respond({
        'services': await _with_providers(store, services),
        'location': {'coordinates': [lng, lat], 'radius': radius},
        'totalResults': len(services)
    })

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_service(
    request: CreateServiceRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Create a service provided by the caller."""
    service = await ServiceManager(store).create_service(user.id, request.changes())
    data = service.to_public()
    data['provider'] = user.summary(*PROVIDER_FIELDS)
    return respond({'service': data}, 'Service created successfully')

@router.get("/{service_id}")
async def get_service(
    service_id: str,
    user: Optional[User] = Depends(get_optional_user),
    store=Depends(get_store)
):
    """Get a service with its provider, latest reviews and the coming week's availability."""
    services = ServiceManager(store)
    service = await services.get_service(service_id)
    await services.increment_views(service.id)

    users = UserManager(store)
    reviews = await ReviewManager(store).recent_for_service(service.id, limit=5)
    review_items = embed(
        [r.to_public() for r in reviews],
        'reviewer',
        await users.summaries([r.reviewer for r in reviews], 'firstName', 'lastName', 'avatar')
    )

    data = service.to_public()
    provider = await users.summaries(
        [service.provider], 'firstName', 'lastName', 'avatar', 'bio', 'trustScore', 'verification', 'address'
    )
    data['provider'] = provider.get(service.provider, service.provider)
    data['serviceReviews'] = review_items
    data['upcomingAvailability'] = service.upcoming_availability(7)
    return respond({'service': data})

@router.put("/{service_id}")
async def update_service(
    service_id: str,
    request: UpdateServiceRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Update a service. Provider only."""
    service = await ServiceManager(store).update_service(service_id, user.id, request.changes())
    return respond({'service': service.to_public()}, 'Service updated successfully')

@router.delete("/{service_id}")
async def delete_service(
    service_id: str,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Deactivate a service with no active bookings. Provider only."""
    await ServiceManager(store).delete_service(service_id, user.id)
    return respond(message='Service deleted successfully')

@router.put("/{service_id}/pause")
async def pause_service(
    service_id: str,
    request: PauseRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Pause or unpause a service. Provider only."""
    service = await ServiceManager(store).set_paused(service_id, user.id, request.is_paused, request.reason)
    action = 'paused' if request.is_paused else 'unpaused'
    return respond({'service': service.to_public()}, f"Service {action} successfully")

# Export the router
__all__ = ['router']
