"""Database module for managing connections to CockroachDB.

This module handles:
- Database connection pool initialization
- Schema management
- Connection lifecycle
- Access to the document collections
"""

import json
import logging
import ssl
from typing import Optional, Dict, Any
import backoff
import asyncpg
from urllib.parse import urlparse, parse_qs

from .exceptions import DatabaseError, DatabaseSchemaError, DuplicateKeyError
from .lib.collection import Collection, Store
from .lib.schema_manager import SchemaManager, latest_schema, unique_index_fields

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None
_schema_manager: Optional[SchemaManager] = None
_store: Optional[Store] = None

COLLECTIONS = {
    'users': 'users',
    'services': 'services',
    'bookings': 'bookings',
    'reviews': 'reviews',
    'posts': 'community_posts'
}

def _get_ssl_context() -> ssl.SSLContext:
    """Create SSL context for CockroachDB Cloud connections."""
    ssl_context = ssl.create_default_context()
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    return ssl_context

def _get_connection_kwargs(db_url: str) -> Dict[str, Any]:
    """Get connection kwargs from database URL.

    Args:
        db_url: Database connection URL

    Returns:
        Dict of connection parameters
    """
    params = parse_qs(urlparse(db_url).query)
    sslmode = params.get('sslmode', ['require'])[0]

    return {
        'ssl': False if sslmode == 'disable' else _get_ssl_context(),
        'server_settings': {
            'statement_timeout': '300000',  # 5 minutes
        }
    }

def _strip_query(db_url: str) -> str:
    return urlparse(db_url)._replace(query='').geturl()

async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        'jsonb',
        encoder=json.dumps,
        decoder=json.loads,
        schema='pg_catalog'
    )

@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError),
    max_tries=5
)
async def create_database_if_not_exists(db_url: str) -> None:
    """Create the database if it doesn't exist.

    Args:
        db_url: Database connection URL
    """
    parsed = urlparse(db_url)
    db_name = parsed.path.strip('/') or 'defaultdb'
    if db_name == 'defaultdb':
        return

    base_url = _strip_query(parsed._replace(path='/defaultdb').geturl())
    logger.info(f"Connecting to defaultdb to create {db_name} if needed")

    conn = await asyncpg.connect(base_url, **_get_connection_kwargs(db_url))
    try:
        exists = await conn.fetchval(
            'SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = $1)',
            db_name
        )
        if not exists:
            await conn.execute(f'CREATE DATABASE IF NOT EXISTS "{db_name}"')
            logger.info(f"Created database {db_name}")
    finally:
        await conn.close()

@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError),
    max_tries=5
)
async def init_db(db_url: Optional[str] = None) -> None:
    """Initialize the database connection pool and schema.

    Args:
        db_url: Optional database URL. If not provided, will use settings.

    Raises:
        ValueError: If database URL is not provided
        DatabaseSchemaError: If the schema cannot be applied
    """
    global _pool, _schema_manager, _store

    # Import here to avoid circular imports
    from config import settings_conf

    url = db_url or settings_conf.get('db_url')
    if not url:
        raise ValueError("Database URL not provided")

    try:
        await create_database_if_not_exists(url)

        _pool = await asyncpg.create_pool(
            _strip_query(url),
            min_size=2,
            max_size=20,
            max_queries=10000,
            max_inactive_connection_lifetime=300.0,
            command_timeout=60.0,
            init=_init_connection,
            **_get_connection_kwargs(url)
        )

        _schema_manager = SchemaManager(_pool)
        await _schema_manager.initialize()
        _store = None
        logger.info("Database initialized")

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

async def get_pool() -> asyncpg.Pool:
    """Get the database connection pool.

    Returns:
        The connection pool

    Raises:
        RuntimeError: If pool hasn't been initialized
    """
    if not _pool:
        await init_db()
    if not _pool:
        raise RuntimeError("Failed to initialize database pool")
    return _pool

async def get_collection(name: str) -> Collection:
    """Get a collection by its logical name (see COLLECTIONS)."""
    if name not in COLLECTIONS:
        raise DatabaseError(f"Unknown collection: {name}")
    table = COLLECTIONS[name]
    pool = await get_pool()
    unique = unique_index_fields(latest_schema()).get(table, {})
    return Collection(pool, table, unique)

async def get_store() -> Store:
    """Get the store holding every application collection."""
    global _store
    if _store is None:
        collections = {name: await get_collection(name) for name in COLLECTIONS}
        _store = Store(**collections)
    return _store

async def ping() -> bool:
    """Check that the database answers queries."""
    if not _pool:
        return False
    try:
        async with _pool.acquire() as conn:
            return await conn.fetchval('SELECT 1') == 1
    except (asyncpg.PostgresError, OSError) as e:
        logger.warning(f"Database ping failed: {e}")
        return False

def is_connected() -> bool:
    return _pool is not None

async def close() -> None:
    """Close the database connection pool."""
    global _pool, _schema_manager, _store

    if _pool:
        await _pool.close()
        _pool = None
        _schema_manager = None
        _store = None
        logger.info("Database connection pool closed")

# Export public interface
__all__ = [
    'init_db', 'get_pool', 'get_collection', 'get_store', 'ping', 'is_connected', 'close',
    'Collection', 'Store', 'COLLECTIONS',
    'DatabaseError', 'DatabaseSchemaError', 'DuplicateKeyError'
]
