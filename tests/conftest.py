"""Shared fixtures.

Tests run against an in-memory store that evaluates the same filter
language the JSONB collections compile to SQL, so managers and routes can
be exercised without a database.
"""

import copy
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
import pytest
import pytest_asyncio

import database
from auth import create_token, hash_password
from database import DuplicateKeyError
from database.lib.query import EARTH_RADIUS_METERS, QueryError
from services import ServiceManager
from users import UserManager

PASSWORD = "Secret123"
PASSWORD_HASH = hash_password(PASSWORD)

_MISSING = object()

def _lookup(doc: Any, field: str) -> Any:
    value = doc
    for part in field.split('.'):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return _MISSING
    return value

def _timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

def _comparable(a: Any, b: Any) -> bool:
    numbers = (int, float)
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool)
    return (isinstance(a, numbers) and isinstance(b, numbers)) or (isinstance(a, str) and isinstance(b, str))

def _compare(value: Any, op: str, operand: Any) -> bool:
    if value is _MISSING:
        return False
    if isinstance(operand, datetime):
        value = _timestamp(value)
        if value is None:
            return False
        operand = operand if operand.tzinfo else operand.replace(tzinfo=timezone.utc)
    elif not _comparable(value, operand):
        return False
    return {
        '$gt': value > operand,
        '$gte': value >= operand,
        '$lt': value < operand,
        '$lte': value <= operand
    }[op]

def _contained(value: Any, options: Sequence[Any]) -> bool:
    if value is _MISSING:
        return False
    if isinstance(value, list):
        return all(item in options for item in value)
    return value in options

def haversine(a: Sequence[float], b: Sequence[float]) -> float:
    """Great-circle distance in meters between two [lng, lat] points."""
    lng1, lat1 = (math.radians(c) for c in a)
    lng2, lat2 = (math.radians(c) for c in b)
    h = math.sin((lat2 - lat1) / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin((lng2 - lng1) / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(h)))

def _near_distance(value: Any, clause: Dict[str, Any]) -> Optional[float]:
    if not isinstance(value, dict):
        return None
    coordinates = value.get('coordinates')
    if not isinstance(coordinates, list) or len(coordinates) != 2:
        return None
    return haversine(coordinates, clause['coordinates'])

def matches(doc: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    """Evaluate a collection filter against one document."""
    for key, condition in (filter or {}).items():
        if key == '$or':
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif key == '$and':
            if not all(matches(doc, sub) for sub in condition):
                return False
        elif key.startswith('$'):
            raise QueryError(f"Unsupported top-level operator: {key}")
        elif isinstance(condition, dict) and condition and all(k.startswith('$') for k in condition):
            if not _matches_operators(_lookup(doc, key), condition):
                return False
        elif not _equals(_lookup(doc, key), condition):
            return False
    return True

def _equals(value: Any, expected: Any) -> bool:
    if expected is None:
        return value is _MISSING or value is None
    if value is _MISSING:
        return False
    if isinstance(value, bool) or isinstance(expected, bool):
        return value is expected
    return value == expected

def _matches_operators(value: Any, ops: Dict[str, Any]) -> bool:
    for op, operand in ops.items():
        if op == '$eq':
            ok = _equals(value, operand)
        elif op == '$ne':
            ok = value not in (_MISSING, None) if operand is None else not _equals(value, operand)
        elif op in ('$gt', '$gte', '$lt', '$lte'):
            ok = _compare(value, op, operand)
        elif op == '$in':
            ok = _contained(value, list(operand))
        elif op == '$nin':
            ok = not _contained(value, list(operand))
        elif op == '$regex':
            if value is _MISSING or value is None:
                ok = False
            else:
                flags = re.IGNORECASE if 'i' in ops.get('$options', '') else 0
                ok = re.search(str(operand), str(value), flags) is not None
        elif op == '$options':
            continue
        elif op == '$exists':
            ok = (value is not _MISSING) == bool(operand)
        elif op == '$near':
            distance = _near_distance(value, operand)
            max_distance = operand.get('maxDistance')
            ok = distance is not None and (max_distance is None or distance <= max_distance)
        else:
            raise QueryError(f"Unsupported operator {op}")
        if not ok:
            return False
    return True

def _sort_key(value: Any) -> Tuple[int, Any]:
    # jsonb ordering: null < string < number < boolean < array < object
    if value is _MISSING or value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (3, value)
    if isinstance(value, str):
        return (1, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, list):
        return (4, str(value))
    return (5, str(value))

def _near_clause(filter: Optional[Dict[str, Any]]) -> Optional[Tuple[str, Dict[str, Any]]]:
    for key, condition in (filter or {}).items():
        if isinstance(condition, dict) and '$near' in condition:
            return key, condition['$near']
    return None

class MemoryCollection:
    """Collection double holding documents in a dict."""

    def __init__(self, name: str, unique: Sequence[Tuple[str, ...]] = ()):
        self.name = name
        self.unique = unique
        self.docs: Dict[str, Dict[str, Any]] = {}

    def _check_unique(self, doc: Dict[str, Any]) -> None:
        for fields in self.unique:
            key = tuple(_lookup(doc, f) for f in fields)
            for other in self.docs.values():
                if other['id'] != doc['id'] and tuple(_lookup(other, f) for f in fields) == key:
                    raise DuplicateKeyError(self.name, fields[0], _lookup(doc, fields[0]))

    async def get(self, doc_id: Any) -> Optional[Dict[str, Any]]:
        doc = self.docs.get(str(doc_id))
        return copy.deepcopy(doc) if doc else None

    async def find_one(self, filter=None, sort=None) -> Optional[Dict[str, Any]]:
        docs = await self.find(filter, sort=sort, limit=1)
        return docs[0] if docs else None

    async def find(self, filter=None, sort=None, skip: int = 0, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        docs = [d for d in self.docs.values() if matches(d, filter)]

        near = _near_clause(filter)
        if sort:
            for field, direction in reversed(list(sort)):
                docs.sort(key=lambda d: _sort_key(_lookup(d, field)), reverse=direction < 0)
        elif near:
            field, clause = near
            docs.sort(key=lambda d: _near_distance(_lookup(d, field), clause))

        docs = docs[skip:]
        if limit is not None:
            docs = docs[:limit]
        return copy.deepcopy(docs)

    async def count(self, filter=None) -> int:
        return sum(1 for d in self.docs.values() if matches(d, filter))

    async def insert_one(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        if doc['id'] in self.docs:
            raise DuplicateKeyError(self.name, 'id', doc['id'])
        self._check_unique(doc)
        self.docs[doc['id']] = copy.deepcopy(doc)
        return doc

    async def replace_one(self, doc: Dict[str, Any]) -> bool:
        if doc.get('id') not in self.docs:
            return False
        self._check_unique(doc)
        self.docs[doc['id']] = copy.deepcopy(doc)
        return True

    async def update_many(self, filter: Dict[str, Any], fields: Dict[str, Any]) -> int:
        updated = 0
        for doc in self.docs.values():
            if not matches(doc, filter):
                continue
            for path, value in fields.items():
                target = doc
                parts = path.split('.')
                for part in parts[:-1]:
                    target = target.setdefault(part, {})
                target[parts[-1]] = copy.deepcopy(value)
            updated += 1
        return updated

class MemoryStore:
    """Store double with the application's collections."""

    def __init__(self):
        self.users = MemoryCollection('users', unique=[('email',)])
        self.services = MemoryCollection('services')
        self.bookings = MemoryCollection('bookings')
        self.reviews = MemoryCollection('reviews', unique=[('booking', 'reviewType')])
        self.posts = MemoryCollection('community_posts')

WEEK = [
    {'day': day, 'startTime': '08:00', 'endTime': '18:00', 'available': True}
    for day in ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')
]

def service_data(**overrides: Any) -> Dict[str, Any]:
    """A valid camelCase service body."""
    data = {
        'title': 'Garden tidy-up',
        'description': 'Weeding, pruning and lawn mowing for small gardens.',
        'category': 'gardening',
        'pricing': {'type': 'hourly', 'amount': 40},
        'location': {'type': 'Point', 'coordinates': [-122.42, 37.77]},
        'address': {'street': '1 Market St', 'city': 'San Francisco', 'state': 'CA', 'zipCode': '94105'},
        'duration': {'estimated': 120},
        'availability': {'schedule': WEEK, 'advanceBooking': 24}
    }
    data.update(overrides)
    return data

def booking_day(days: int = 3) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).date().isoformat()

def auth_header(token: str) -> Dict[str, str]:
    return {'Authorization': f'Bearer {token}'}

@pytest.fixture
def store():
    return MemoryStore()

@pytest.fixture
def make_user(store):
    """Factory creating a user and a token for them."""

    async def _make_user(email: str = 'ana@example.com', first_name: str = 'Ana',
                         last_name: str = 'Lopez', **profile: Any):
        user = await UserManager(store).create_user(first_name, last_name, email, PASSWORD_HASH, **profile)
        token, _ = create_token(user.id)
        return user, token

    return _make_user

@pytest.fixture
def make_service(store):
    """Factory creating a bookable service for a provider."""

    async def _make_service(provider_id: str, **overrides: Any):
        return await ServiceManager(store).create_service(provider_id, service_data(**overrides))

    return _make_service

@pytest.fixture
def app(store):
    from api import create_app

    application = create_app(connect_db=False)

    async def _store():
        return store

    application.dependency_overrides[database.get_store] = _store
    return application

@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url='http://testserver') as ac:
        yield ac
