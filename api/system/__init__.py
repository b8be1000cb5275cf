"""System health and API information endpoints."""

import os
import time
from datetime import datetime, timezone

import psutil
from fastapi import APIRouter, Depends

import database
from config import settings_conf
from ..deps import get_presence
from ..realtime.presence import PresenceRegistry

API_NAME = "TrustCircle API"
API_VERSION = "1.0.0"

# Process start, for uptime
STARTED_AT = time.monotonic()

# Create router
router = APIRouter(tags=["System"])

def memory_usage() -> dict:
    """Resident and virtual memory of this process in bytes."""
    info = psutil.Process(os.getpid()).memory_info()
    return {'rss': info.rss, 'vms': info.vms}

@router.get("/health")
async def get_system_health(presence: PresenceRegistry = Depends(get_presence)):
    """Get service health.

    The database is reported as connected only when it answers a query.
    """
    db_ok = await database.ping()
    return {
        'status': 'OK' if db_ok else 'DEGRADED',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'uptime': round(time.monotonic() - STARTED_AT, 3),
        'environment': settings_conf.get('environment'),
        'version': API_VERSION,
        'memory': memory_usage(),
        'database': 'connected' if db_ok else 'disconnected',
        'realtime': {'connections': len(presence)}
    }

@router.get("/api")
async def get_api_info():
    """Describe the API and its endpoint groups."""
    return {
        'name': API_NAME,
        'version': API_VERSION,
        'description': 'Community services marketplace with trust scoring, bookings and a neighbourhood feed',
        'endpoints': {
            'auth': '/api/auth',
            'users': '/api/users',
            'services': '/api/services',
            'bookings': '/api/bookings',
            'reviews': '/api/reviews',
            'community': '/api/community',
            'health': '/health',
            'realtime': '/ws'
        },
        'status': 'running'
    }

# Export the router
__all__ = ['router', 'API_NAME', 'API_VERSION']
