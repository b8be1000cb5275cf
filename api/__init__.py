"""REST API module for TrustCircle.

This module provides HTTP endpoints for:
- Registration, login and account management
- User profiles and search
- Service listings, search and proximity lookup
- Bookings with status workflow, cancellation and messages
- Reviews, votes, flags and responses
- The community feed with events, likes, comments and attendance
- Health and API information
- Realtime events over WebSocket
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import database
from config import settings_conf
from .errors import register_error_handlers
from .ratelimit import RateLimitMiddleware, SlidingWindowLimiter
from .realtime.presence import PresenceRegistry
from .system import API_NAME, API_VERSION

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def create_app(connect_db: bool = True) -> FastAPI:
    """Build the application.

    Args:
        connect_db: Open the database pool on startup and close it on shutdown.
            Tests pass False and supply their own store.
    """

    # Lifecycle management
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown events."""
        logger.info("Initializing API...")
        if connect_db:
            await database.init_db()

        yield

        logger.info("Shutting down API...")
        await app.state.presence.close()
        if connect_db:
            await database.close()

    app = FastAPI(
        title=API_NAME,
        description="REST API for the TrustCircle community services marketplace",
        version=API_VERSION,
        lifespan=lifespan
    )
    app.state.presence = PresenceRegistry()

    # Configure CORS
    origins = settings_conf['cors_origins']
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials='*' not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    window = settings_conf['rate_limit_window_seconds']
    app.add_middleware(
        RateLimitMiddleware,
        limiter=SlidingWindowLimiter(settings_conf['rate_limit_max_requests'], window),
        auth_limiter=SlidingWindowLimiter(settings_conf['auth_rate_limit_max_requests'], window),
        trusted_proxies=settings_conf['trusted_proxies']
    )

    register_error_handlers(app)

    # Import and include all routers
    from .auth import router as auth_router
    from .users import router as users_router
    from .services import router as services_router
    from .bookings import router as bookings_router
    from .reviews import router as reviews_router
    from .community import router as community_router
    from .system import router as system_router
    from .realtime import router as realtime_router

    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(services_router)
    app.include_router(bookings_router)
    app.include_router(reviews_router)
    app.include_router(community_router)
    app.include_router(system_router)
    app.include_router(realtime_router)

    return app

# Create FastAPI app
app = create_app()
