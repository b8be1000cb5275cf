"""Error normalization for the REST API.

Every error leaves the API in the same envelope:

    {"success": false, "error": {"message": ..., "type": ..., "statusCode": ...}}

Domain exceptions are mapped to a status code and error type by
ERROR_MAP. Field-level validation failures add an ``errors`` list.
"""

import logging
import traceback
from typing import Any, Dict, List, Optional, Tuple, Type

import asyncpg
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from jose import JWTError
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings_conf
from database import DatabaseError, DuplicateKeyError
from users import UserError, UserNotFoundError, UserExistsError
from services import ServiceError, ServiceNotFoundError, ServicePermissionError, ServiceInUseError
from bookings import BookingError, BookingNotFoundError, BookingPermissionError, BookingValidationError
from reviews import (
    ReviewError, ReviewNotFoundError, ReviewPermissionError, ReviewValidationError, ReviewExistsError
)
from community import CommunityError, PostNotFoundError, PostPermissionError, PostValidationError
from auth import (
    AuthError, InvalidTokenError, InvalidCredentialsError, AccountDeactivatedError,
    AccountSuspendedError, WeakPasswordError, ConfirmationError
)

logger = logging.getLogger(__name__)

STATUS_TYPES = {
    400: 'ValidationError',
    401: 'AuthenticationError',
    403: 'AuthorizationError',
    404: 'NotFoundError',
    409: 'DuplicateError',
    429: 'RateLimitError',
    503: 'DatabaseError'
}

# Checked in order, so subclasses come before their bases
ERROR_MAP: List[Tuple[Type[Exception], int, str]] = [
    (UserNotFoundError, 404, 'NotFoundError'),
    (UserExistsError, 400, 'DuplicateError'),
    (ServiceNotFoundError, 404, 'NotFoundError'),
    (ServicePermissionError, 403, 'AuthorizationError'),
    (ServiceInUseError, 400, 'ValidationError'),
    (BookingNotFoundError, 404, 'NotFoundError'),
    (BookingPermissionError, 403, 'AuthorizationError'),
    (BookingValidationError, 400, 'ValidationError'),
    (ReviewNotFoundError, 404, 'NotFoundError'),
    (ReviewPermissionError, 403, 'AuthorizationError'),
    (ReviewExistsError, 400, 'DuplicateError'),
    (ReviewValidationError, 400, 'ValidationError'),
    (PostNotFoundError, 404, 'NotFoundError'),
    (PostPermissionError, 403, 'AuthorizationError'),
    (PostValidationError, 400, 'ValidationError'),
    (AccountSuspendedError, 403, 'AuthorizationError'),
    (WeakPasswordError, 400, 'ValidationError'),
    (ConfirmationError, 400, 'ValidationError'),
    (InvalidCredentialsError, 401, 'AuthenticationError'),
    (AccountDeactivatedError, 401, 'AuthenticationError'),
    (InvalidTokenError, 401, 'AuthenticationError'),
    (AuthError, 401, 'AuthenticationError'),
    (UserError, 400, 'ValidationError'),
    (ServiceError, 400, 'ValidationError'),
    (BookingError, 400, 'ValidationError'),
    (ReviewError, 400, 'ValidationError'),
    (CommunityError, 400, 'ValidationError'),
]

# Routes listed in 404 responses for unknown paths
AVAILABLE_ROUTES = {
    'auth': '/api/auth',
    'users': '/api/users',
    'services': '/api/services',
    'bookings': '/api/bookings',
    'reviews': '/api/reviews',
    'community': '/api/community',
    'health': '/health'
}

def classify(exc: Exception) -> Tuple[int, str]:
    """Status code and error type for a domain exception."""
    for exc_type, status_code, error_type in ERROR_MAP:
        if isinstance(exc, exc_type):
            return status_code, error_type
    return status.HTTP_500_INTERNAL_SERVER_ERROR, 'ServerError'

def error_body(message: str, status_code: int, error_type: Optional[str] = None,
               **extra: Any) -> Dict[str, Any]:
    error = {
        'message': message,
        'type': error_type or STATUS_TYPES.get(status_code, 'ServerError'),
        'statusCode': status_code
    }
    error.update({k: v for k, v in extra.items() if v is not None})
    return {'success': False, 'error': error}

def error_response(message: str, status_code: int, error_type: Optional[str] = None,
                   headers: Optional[Dict[str, str]] = None, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_body(message, status_code, error_type, **extra),
        headers=headers
    )

def field_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Flatten pydantic error entries into field/message/value triples."""
    result = []
    for err in errors:
        loc = [str(part) for part in err.get('loc', ()) if part not in ('body', 'query', 'path')]
        value = err.get('input')
        if isinstance(value, (dict, list)):
            value = None
        result.append({
            'field': '.'.join(loc) or None,
            'message': err.get('msg'),
            'value': value
        })
    return result

async def domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code, error_type = classify(exc)
    extra: Dict[str, Any] = {}
    if isinstance(exc, AccountSuspendedError):
        extra['reason'] = exc.reason
    return error_response(str(exc), status_code, error_type, **extra)

async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == status.HTTP_404_NOT_FOUND and exc.detail == 'Not Found':
        return error_response(
            f"Route {request.url.path} not found",
            status.HTTP_404_NOT_FOUND,
            'NotFoundError',
            availableRoutes=AVAILABLE_ROUTES
        )

    extra: Dict[str, Any] = {}
    message = exc.detail
    if isinstance(exc.detail, dict):
        extra = {k: v for k, v in exc.detail.items() if k != 'message'}
        message = exc.detail.get('message', '')
    return error_response(
        str(message),
        exc.status_code,
        headers=getattr(exc, 'headers', None),
        **extra
    )

async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = field_errors(exc.errors())
    message = errors[0]['message'] if len(errors) == 1 else 'Validation failed'
    return error_response(message, status.HTTP_400_BAD_REQUEST, 'ValidationError', errors=errors)

async def model_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    errors = field_errors(exc.errors())
    return error_response('Validation failed', status.HTTP_400_BAD_REQUEST, 'ValidationError', errors=errors)

async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return error_response(str(exc), status.HTTP_400_BAD_REQUEST, 'ValidationError')

async def duplicate_key_handler(request: Request, exc: DuplicateKeyError) -> JSONResponse:
    field = exc.field.split('.')[-1]
    message = f"{field.capitalize()} '{exc.value}' already exists"
    return error_response(message, status.HTTP_400_BAD_REQUEST, 'DuplicateError')

async def database_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return error_response('Database temporarily unavailable', status.HTTP_503_SERVICE_UNAVAILABLE, 'DatabaseError')

async def jwt_error_handler(request: Request, exc: JWTError) -> JSONResponse:
    return error_response('Invalid token', status.HTTP_401_UNAUTHORIZED, 'AuthenticationError')

async def server_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    details = None
    if settings_conf.get('environment') == 'development':
        details = {
            'exception': type(exc).__name__,
            'detail': str(exc),
            'traceback': traceback.format_exception(type(exc), exc, exc.__traceback__)
        }
    return error_response('Server Error', status.HTTP_500_INTERNAL_SERVER_ERROR, 'ServerError', details=details)

def register_error_handlers(app: FastAPI) -> None:
    """Install the error normalizer on an application."""
    for base in (UserError, ServiceError, BookingError, ReviewError, CommunityError, AuthError):
        app.add_exception_handler(base, domain_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(ValidationError, model_validation_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(DatabaseError, database_error_handler)
    app.add_exception_handler(asyncpg.PostgresConnectionError, database_error_handler)
    app.add_exception_handler(asyncpg.InterfaceError, database_error_handler)
    app.add_exception_handler(JWTError, jwt_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(Exception, server_error_handler)

__all__ = [
    'register_error_handlers',
    'error_response',
    'error_body',
    'classify',
    'field_errors',
    'ERROR_MAP'
]
