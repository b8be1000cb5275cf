"""Shared helpers for API routers."""

import logging
import math
from typing import Any, Awaitable, Dict, List, Optional, Tuple

from fastapi import HTTPException, Request, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from database.lib.document import near
from .realtime.presence import PresenceRegistry

logger = logging.getLogger(__name__)

class RequestModel(BaseModel):
    """Request body with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def changes(self) -> Dict[str, Any]:
        """Fields the client sent, camelCase keyed and JSON ready."""
        return self.model_dump(mode='json', by_alias=True, exclude_unset=True)

def get_presence(request: Request) -> PresenceRegistry:
    """FastAPI dependency returning the application's presence registry."""
    return request.app.state.presence

def respond(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    """Success envelope."""
    body: Dict[str, Any] = {'success': True}
    if data is not None:
        body['data'] = data
    if message:
        body['message'] = message
    return body

def pagination(page: int, limit: int, total: int, label: str = 'totalItems') -> Dict[str, Any]:
    """Pagination block for list responses.

    Args:
        page: 1-based current page
        limit: Page size
        total: Total matching documents
        label: Key holding the total, e.g. totalServices
    """
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        'currentPage': page,
        'totalPages': total_pages,
        label: total,
        'hasNext': page < total_pages,
        'hasPrev': page > 1
    }

def parse_location(value: Optional[str]) -> Optional[Tuple[float, float]]:
    """Parse a "longitude,latitude" query value.

    Raises:
        HTTPException: 400 when the value is malformed or out of range
    """
    if not value:
        return None
    parts = value.split(',')
    try:
        lng, lat = (float(p) for p in parts)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Location must be in format: longitude,latitude"
        )
    if not -180 <= lng <= 180 or not -90 <= lat <= 90:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Location coordinates out of range"
        )
    return lng, lat

def near_filter(location: Optional[Tuple[float, float]], radius_miles: float) -> Optional[Dict[str, Any]]:
    if location is None:
        return None
    lng, lat = location
    return near(lng, lat, radius_miles)

def embed(items: List[Dict[str, Any]], field: str, summaries: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Replace id references in field with the matching summaries."""
    for item in items:
        ref = item.get(field)
        if isinstance(ref, str) and ref in summaries:
            item[field] = summaries[ref]
    return items

async def push(notification: Awaitable[Any], description: str) -> None:
    """Deliver a realtime notification. Failures are logged and ignored."""
    try:
        await notification
    except Exception as e:
        logger.warning(f"Realtime push failed ({description}): {e}")

__all__ = ['RequestModel', 'get_presence', 'respond', 'pagination', 'parse_location', 'near_filter', 'embed', 'push']
