"""Services module for managing provider service listings.

This module provides functionality for:
- Creating, updating and soft-deleting services
- Listing, text search and proximity search
- Pausing and unpausing
- Review summaries, view and booking counters
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from database import get_store
from .models import (
    Service,
    ServiceCategory,
    PricingType,
    Weekday,
    Pricing,
    Availability,
    ScheduleEntry,
    AvailabilityException,
    Image
)

logger = logging.getLogger(__name__)

# Provider-editable fields
MUTABLE_FIELDS = {
    'title',
    'description',
    'subcategory',
    'pricing',
    'location',
    'address',
    'serviceArea',
    'duration',
    'requirements',
    'images',
    'portfolio',
    'availability'
}

# Fields set by the system, never taken from a request
SYSTEM_FIELDS = {
    'id',
    'provider',
    'reviews',
    'stats',
    'isActive',
    'isPaused',
    'pauseReason',
    'createdAt',
    'updatedAt'
}

ACTIVE_BOOKING_STATUSES = ['pending', 'confirmed', 'in_progress']

LIST_SORT_FIELDS = {
    'createdAt': 'createdAt',
    'price': 'pricing.amount',
    'rating': 'reviews.average',
    'views': 'stats.views'
}

SEARCH_SORTS = {
    'price_low': [('pricing.amount', 1)],
    'price_high': [('pricing.amount', -1)],
    'rating': [('reviews.average', -1)],
    'newest': [('createdAt', -1)],
    'relevance': [('reviews.average', -1), ('stats.views', -1)]
}

STAT_FIELDS = {'bookings', 'completedBookings', 'cancelledBookings'}

class ServiceError(Exception):
    """Base exception for service operations."""
    pass

class ServiceNotFoundError(ServiceError):
    """Raised when a service does not exist."""
    pass

class ServicePermissionError(ServiceError):
    """Raised when a user acts on a service they do not own."""
    pass

class ServiceInUseError(ServiceError):
    """Raised when deleting a service that still has active bookings."""

    def __init__(self, active_bookings: int):
        self.active_bookings = active_bookings
        super().__init__("Cannot delete service with active bookings")

def _price_filter(min_price: Optional[float], max_price: Optional[float]) -> Optional[Dict[str, float]]:
    if min_price is None and max_price is None:
        return None
    price: Dict[str, float] = {}
    if min_price is not None:
        price['$gte'] = min_price
    if max_price is not None:
        price['$lte'] = max_price
    return price

class ServiceManager:
    """Manager class for handling service operations."""

    def __init__(self, store=None):
        """Initialize the service manager.

        Args:
            store: Optional collection store. If not provided, will get from database module.
        """
        self.store = store

    async def ensure_store(self):
        """Ensure we have a collection store."""
        if not self.store:
            self.store = await get_store()

    async def find_service(self, service_id: str) -> Optional[Service]:
        await self.ensure_store()
        doc = await self.store.services.get(service_id)
        return Service.from_document(doc) if doc else None

    async def get_service(self, service_id: str) -> Service:
        """Get a service by id.

        Raises:
            ServiceNotFoundError: If no such service exists
        """
        service = await self.find_service(service_id)
        if not service:
            raise ServiceNotFoundError(f"Service not found: {service_id}")
        return service

    async def get_owned(self, service_id: str, user_id: str) -> Service:
        """Get a service and check that user_id provides it.

        Raises:
            ServiceNotFoundError: If no such service exists
            ServicePermissionError: If the user is not the provider
        """
        service = await self.get_service(service_id)
        if service.provider != user_id:
            raise ServicePermissionError("Not authorized to modify this service")
        return service

    async def save(self, service: Service) -> Service:
        await self.ensure_store()
        service.ensure_primary_image()
        service.touch()
        await self.store.services.replace_one(service.to_document())
        return service

    async def create_service(self, provider_id: str, data: Dict[str, Any]) -> Service:
        """Create a service owned by provider_id.

        Args:
            provider_id: Providing user
            data: camelCase service fields; system fields are ignored

        Returns:
            The created service
        """
        await self.ensure_store()
        fields = {k: v for k, v in data.items() if k not in SYSTEM_FIELDS}
        service = Service.from_document({**fields, 'provider': provider_id})
        service.ensure_primary_image()
        await self.store.services.insert_one(service.to_document())
        logger.info(f"Created service {service.id} for provider {provider_id}")
        return service

    async def update_service(self, service_id: str, user_id: str, updates: Dict[str, Any]) -> Service:
        """Apply provider-editable fields to a service."""
        service = await self.get_owned(service_id, user_id)
        doc = service.to_document()
        for field, value in updates.items():
            if field in MUTABLE_FIELDS:
                doc[field] = value
        return await self.save(Service.from_document(doc))

    async def delete_service(self, service_id: str, user_id: str) -> Service:
        """Soft delete a service that has no active bookings.

        Raises:
            ServiceInUseError: If pending, confirmed or in-progress bookings exist
        """
        service = await self.get_owned(service_id, user_id)
        active = await self.store.bookings.count({
            'service': service.id,
            'status': {'$in': ACTIVE_BOOKING_STATUSES}
        })
        if active > 0:
            raise ServiceInUseError(active)

        service.is_active = False
        await self.save(service)
        logger.info(f"Deactivated service {service.id}")
        return service

    async def set_paused(self, service_id: str, user_id: str, paused: bool,
                         reason: Optional[str] = None) -> Service:
        service = await self.get_owned(service_id, user_id)
        service.is_paused = paused
        service.pause_reason = reason if paused else None
        return await self.save(service)

    async def increment_views(self, service_id: str) -> None:
        """Count a view. Failures are logged and ignored."""
        try:
            service = await self.find_service(service_id)
            if service:
                service.stats.views += 1
                await self.save(service)
        except Exception as e:
            logger.error(f"Failed to increment views for service {service_id}: {e}")

    async def increment_stat(self, service_id: str, stat: str) -> Optional[Service]:
        """Increment one of the booking counters in stats."""
        if stat not in STAT_FIELDS:
            raise ValueError(f"Unknown service stat: {stat}")
        service = await self.find_service(service_id)
        if not service:
            return None
        attr = {'bookings': 'bookings',
                'completedBookings': 'completed_bookings',
                'cancelledBookings': 'cancelled_bookings'}[stat]
        setattr(service.stats, attr, getattr(service.stats, attr) + 1)
        return await self.save(service)

    async def refresh_reviews_summary(self, service_id: str) -> Optional[Service]:
        """Recompute the review summary from the service's active reviews."""
        service = await self.find_service(service_id)
        if not service:
            return None
        reviews = await self.store.reviews.find({'service': service.id, 'isActive': True})
        service.apply_review_ratings(r['rating'] for r in reviews)
        return await self.save(service)

    async def count_active(self, provider_id: str) -> int:
        await self.ensure_store()
        return await self.store.services.count({'provider': provider_id, 'isActive': True})

    async def list_services(
        self,
        category: Optional[str] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        min_rating: Optional[float] = None,
        sort_by: str = 'createdAt',
        sort_order: str = 'desc',
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Service], int]:
        """List bookable services with optional filters."""
        await self.ensure_store()
        query: Dict[str, Any] = {'isActive': True, 'isPaused': False}
        if category:
            query['category'] = category
        price = _price_filter(min_price, max_price)
        if price:
            query['pricing.amount'] = price
        if min_rating is not None:
            query['reviews.average'] = {'$gte': min_rating}

        sort_field = LIST_SORT_FIELDS.get(sort_by, 'createdAt')
        direction = 1 if sort_order == 'asc' else -1

        offset = (page - 1) * limit
        docs = await self.store.services.find(query, sort=[(sort_field, direction)], skip=offset, limit=limit)
        total = await self.store.services.count(query)
        return [Service.from_document(d) for d in docs], total

    async def search(
        self,
        q: str,
        category: Optional[str] = None,
        near: Optional[Dict[str, Any]] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        sort_by: str = 'relevance',
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Service], int]:
        """Search bookable services by title, description or subcategory."""
        await self.ensure_store()
        query: Dict[str, Any] = {
            'isActive': True,
            'isPaused': False,
            '$or': [
                {'title': {'$regex': q, '$options': 'i'}},
                {'description': {'$regex': q, '$options': 'i'}},
                {'subcategory': {'$regex': q, '$options': 'i'}}
            ]
        }
        if category:
            query['category'] = category
        price = _price_filter(min_price, max_price)
        if price:
            query['pricing.amount'] = price
        if near:
            query['location'] = near

        sort = SEARCH_SORTS.get(sort_by, SEARCH_SORTS['relevance'])
        offset = (page - 1) * limit
        docs = await self.store.services.find(query, sort=sort, skip=offset, limit=limit)
        total = await self.store.services.count(query)
        return [Service.from_document(d) for d in docs], total

    async def nearby(self, near: Dict[str, Any], category: Optional[str] = None,
                     limit: int = 20) -> List[Service]:
        """Bookable services within a radius, nearest first."""
        await self.ensure_store()
        query: Dict[str, Any] = {'location': near, 'isActive': True, 'isPaused': False}
        if category:
            query['category'] = category
        docs = await self.store.services.find(query, limit=limit)
        return [Service.from_document(d) for d in docs]

    async def list_by_provider(
        self,
        provider_id: str,
        category: Optional[str] = None,
        is_active: Optional[bool] = True,
        page: int = 1,
        limit: int = 10
    ) -> Tuple[List[Service], int]:
        await self.ensure_store()
        query: Dict[str, Any] = {'provider': provider_id}
        if category:
            query['category'] = category
        if is_active is not None:
            query['isActive'] = is_active

        offset = (page - 1) * limit
        docs = await self.store.services.find(query, sort=[('createdAt', -1)], skip=offset, limit=limit)
        total = await self.store.services.count(query)
        return [Service.from_document(d) for d in docs], total

    async def summaries(self, service_ids: Iterable[str], *fields: str) -> Dict[str, Dict[str, Any]]:
        """Public summaries of several services keyed by id."""
        await self.ensure_store()
        ids = [i for i in dict.fromkeys(service_ids) if i]
        if not ids:
            return {}
        docs = await self.store.services.find({'id': {'$in': ids}})
        return {d['id']: Service.from_document(d).summary(*fields) for d in docs}

__all__ = [
    'ServiceManager',
    'Service',
    'ServiceCategory',
    'PricingType',
    'Weekday',
    'Pricing',
    'Availability',
    'ScheduleEntry',
    'AvailabilityException',
    'Image',
    'ServiceError',
    'ServiceNotFoundError',
    'ServicePermissionError',
    'ServiceInUseError',
    'MUTABLE_FIELDS',
    'ACTIVE_BOOKING_STATUSES'
]
