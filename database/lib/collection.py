"""JSONB document collections.

A Collection wraps one table of (id, doc) rows and exposes find/insert/replace
operations over the documents. Filters and sort specs use the query language
compiled by database.lib.query.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

import asyncpg

from ..exceptions import DuplicateKeyError
from .query import QueryCompiler, Sort

logger = logging.getLogger(__name__)

Document = Dict[str, Any]

def _parse_id(doc_id: Any) -> Optional[uuid.UUID]:
    if isinstance(doc_id, uuid.UUID):
        return doc_id
    try:
        return uuid.UUID(str(doc_id))
    except (ValueError, TypeError):
        return None

def _lookup(doc: Document, field: str) -> Any:
    value: Any = doc
    for part in field.split('.'):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value

class Collection:
    """A named collection of JSON documents stored in one table."""

    def __init__(self, pool, name: str, unique_fields: Optional[Dict[str, str]] = None):
        """Initialize collection.

        Args:
            pool: Database connection pool
            name: Table holding the collection
            unique_fields: Unique index name -> document field, used in duplicate errors
        """
        self.pool = pool
        self.name = name
        self.unique_fields = unique_fields or {}

    async def get(self, doc_id: Any) -> Optional[Document]:
        """Fetch a document by id. Malformed ids find nothing."""
        key = _parse_id(doc_id)
        if key is None:
            return None
        async with self.pool.acquire() as conn:
            return await conn.fetchval(f"SELECT doc FROM {self.name} WHERE id = $1", key)

    async def find_one(self, filter: Optional[Dict[str, Any]] = None,
                       sort: Optional[Sort] = None) -> Optional[Document]:
        docs = await self.find(filter, sort=sort, limit=1)
        return docs[0] if docs else None

    async def find(self, filter: Optional[Dict[str, Any]] = None, sort: Optional[Sort] = None,
                   skip: int = 0, limit: Optional[int] = None) -> List[Document]:
        """Find documents matching a filter.

        Args:
            filter: Document filter
            sort: Sequence of (field, 1 | -1) pairs
            skip: Number of matching documents to skip
            limit: Maximum number of documents to return

        Returns:
            Matching documents in sort order
        """
        compiler = QueryCompiler()
        sql = f"SELECT doc FROM {self.name} WHERE {compiler.where(filter)}"
        sql += compiler.order_by(sort)
        if limit is not None:
            sql += f" LIMIT {compiler.param(int(limit))}"
        if skip:
            sql += f" OFFSET {compiler.param(int(skip))}"

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *compiler.params)
        return [row['doc'] for row in rows]

    async def count(self, filter: Optional[Dict[str, Any]] = None) -> int:
        compiler = QueryCompiler()
        sql = f"SELECT count(*) FROM {self.name} WHERE {compiler.where(filter)}"
        async with self.pool.acquire() as conn:
            return await conn.fetchval(sql, *compiler.params)

    async def insert_one(self, doc: Document) -> Document:
        """Insert a new document. The document must carry its own 'id'.

        Raises:
            DuplicateKeyError: If the document violates a unique index
        """
        key = _parse_id(doc.get('id'))
        if key is None:
            raise ValueError(f"Invalid document id: {doc.get('id')!r}")
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    f"INSERT INTO {self.name} (id, doc) VALUES ($1, $2::jsonb)",
                    key, doc
                )
        except asyncpg.exceptions.UniqueViolationError as e:
            raise self._duplicate(e, doc) from e
        return doc

    async def replace_one(self, doc: Document) -> bool:
        """Replace a stored document with a new version, matched by 'id'.

        Returns:
            True if a document was replaced

        Raises:
            DuplicateKeyError: If the new version violates a unique index
        """
        key = _parse_id(doc.get('id'))
        if key is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                status = await conn.execute(
                    f"UPDATE {self.name} SET doc = $2::jsonb, updated_at = now() WHERE id = $1",
                    key, doc
                )
        except asyncpg.exceptions.UniqueViolationError as e:
            raise self._duplicate(e, doc) from e
        return _affected(status) > 0

    async def update_many(self, filter: Dict[str, Any], fields: Dict[str, Any]) -> int:
        """Set fields on every matching document.

        Args:
            filter: Document filter
            fields: Dotted path -> new value

        Returns:
            Number of documents updated
        """
        if not fields:
            return 0
        compiler = QueryCompiler()
        where = compiler.where(filter)
        expr = 'doc'
        for path, value in fields.items():
            expr = (
                f"jsonb_set({expr}, {compiler.param(path.split('.'))}::text[], "
                f"{compiler.param(value)}::jsonb, true)"
            )
        sql = f"UPDATE {self.name} SET doc = {expr}, updated_at = now() WHERE {where}"
        async with self.pool.acquire() as conn:
            status = await conn.execute(sql, *compiler.params)
        updated = _affected(status)
        logger.debug(f"Updated {updated} documents in {self.name}")
        return updated

    def _duplicate(self, error: asyncpg.exceptions.UniqueViolationError, doc: Document) -> DuplicateKeyError:
        constraint = getattr(error, 'constraint_name', None) or ''
        field = self.unique_fields.get(constraint, constraint or 'id')
        return DuplicateKeyError(self.name, field, _lookup(doc, field))

def _affected(status: str) -> int:
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0

class Store:
    """The application's collections."""

    def __init__(self, users, services, bookings, reviews, posts):
        self.users = users
        self.services = services
        self.bookings = bookings
        self.reviews = reviews
        self.posts = posts
