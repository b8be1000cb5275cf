"""Authentication module using bcrypt password hashes and signed JWT bearer tokens.

This module provides:
1. Password hashing, verification and strength rules
2. Token issue and verification
3. Registration, login and account credential changes
4. FastAPI dependencies for protecting routes
"""

import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from config import settings_conf
from database import get_store
from users import User, UserManager, UserRole, UserExistsError

# Configure logging
logger = logging.getLogger(__name__)

# Constants
JWT_ALGORITHM = settings_conf.get('jwt_algorithm', 'HS256')
TOKEN_EXPIRY_DAYS = settings_conf['jwt_expire_days']
JWT_SECRET = settings_conf.get('jwt_secret') or secrets.token_urlsafe(32)
if not settings_conf.get('jwt_secret'):
    logger.warning("jwt_secret is not set, tokens will not survive a restart")

PASSWORD_MIN_LENGTH = 6
DELETE_CONFIRMATION = 'DELETE'

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)

class AuthError(Exception):
    """Base exception for authentication errors."""
    pass

class InvalidTokenError(AuthError):
    """Raised when a token cannot be verified."""
    pass

class TokenExpiredError(InvalidTokenError):
    """Raised when a token has expired."""
    pass

class InvalidCredentialsError(AuthError):
    """Raised when an email and password do not match."""
    pass

class AccountDeactivatedError(AuthError):
    """Raised when the account has been deactivated."""
    pass

class AccountSuspendedError(AuthError):
    """Raised when the account is suspended."""

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason
        super().__init__("Account is suspended")

class WeakPasswordError(AuthError):
    """Raised when a new password does not meet the strength rules."""
    pass

class ConfirmationError(AuthError):
    """Raised when a destructive request lacks its confirmation."""
    pass

def hash_password(password: str) -> str:
    return pwd_context.hash(password)

def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)

def password_problems(password: str) -> List[str]:
    """List the strength rules a password breaks."""
    problems = []
    if len(password) < PASSWORD_MIN_LENGTH:
        problems.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    if not (re.search(r'[a-z]', password) and re.search(r'[A-Z]', password) and re.search(r'\d', password)):
        problems.append(
            "Password must contain at least one uppercase letter, one lowercase letter, and one number"
        )
    return problems

def create_token(user_id: str, expires_days: Optional[int] = None) -> Tuple[str, datetime]:
    """Issue a signed token for a user.

    Args:
        user_id: Subject of the token
        expires_days: Lifetime, defaults to the jwt_expire_days setting

    Returns:
        (token, expiry)
    """
    expires_at = datetime.now(timezone.utc) + timedelta(days=expires_days or TOKEN_EXPIRY_DAYS)
    token = jwt.encode(
        {
            'sub': user_id,
            'exp': int(expires_at.timestamp())
        },
        JWT_SECRET,
        algorithm=JWT_ALGORITHM
    )
    return token, expires_at

def decode_token(token: str) -> str:
    """Verify a token and return its subject.

    Raises:
        TokenExpiredError: If the token has expired
        InvalidTokenError: If the signature or claims are invalid
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise TokenExpiredError("Token expired")
    except JWTError:
        raise InvalidTokenError("Invalid token")

    subject = payload.get('sub')
    if not subject:
        raise InvalidTokenError("Invalid token")
    return subject

class AuthManager:
    """Manages registration, login and credential changes."""

    def __init__(self, store=None):
        """Initialize auth manager.

        Args:
            store: Optional collection store. If not provided, will get from database module.
        """
        self.users = UserManager(store)

    async def register(self, first_name: str, last_name: str, email: str, password: str,
                       **profile: Any) -> Tuple[User, str]:
        """Create an account and issue its first token.

        Raises:
            WeakPasswordError: If the password breaks a strength rule
            UserExistsError: If the email is already registered
        """
        problems = password_problems(password)
        if problems:
            raise WeakPasswordError(problems[0])

        user = await self.users.create_user(
            first_name, last_name, email, hash_password(password), **profile
        )
        token, _ = create_token(user.id)
        logger.info(f"Registered user {user.id}")
        return user, token

    async def login(self, email: str, password: str) -> Tuple[User, str]:
        """Check credentials and issue a token.

        Raises:
            InvalidCredentialsError: If the email or password is wrong
            AccountDeactivatedError: If the account was deactivated
            AccountSuspendedError: If the account is suspended
        """
        user = await self.users.get_by_email(email)
        if not user or not verify_password(password, user.password):
            raise InvalidCredentialsError("Invalid credentials")
        if not user.is_active:
            raise AccountDeactivatedError("Account is deactivated")
        if user.is_suspended:
            raise AccountSuspendedError(user.suspension_reason)

        await self.users.record_login(user)
        token, _ = create_token(user.id)
        return user, token

    async def authenticate(self, token: str) -> User:
        """Resolve a bearer token to an active, unsuspended user.

        Raises:
            InvalidTokenError: If the token is bad or its user is gone
            AccountDeactivatedError: If the account was deactivated
            AccountSuspendedError: If the account is suspended
        """
        user_id = decode_token(token)
        user = await self.users.find_user(user_id)
        if not user:
            raise InvalidTokenError("User not found")
        if not user.is_active:
            raise AccountDeactivatedError("Account is deactivated")
        if user.is_suspended:
            raise AccountSuspendedError(user.suspension_reason)
        return user

    async def change_password(self, user: User, current_password: str, new_password: str) -> str:
        """Replace a password and return a fresh token."""
        stored = await self.users.get_user(user.id)
        if not verify_password(current_password, stored.password):
            raise InvalidCredentialsError("Current password is incorrect")
        problems = password_problems(new_password)
        if problems:
            raise WeakPasswordError(problems[0])

        stored.password = hash_password(new_password)
        await self.users.save(stored)
        logger.info(f"Password changed for user {stored.id}")
        token, _ = create_token(stored.id)
        return token

    async def delete_account(self, user: User, password: str, confirmation: str) -> User:
        """Deactivate the caller's own account after re-checking the password."""
        if confirmation != DELETE_CONFIRMATION:
            raise ConfirmationError(f"Please type '{DELETE_CONFIRMATION}' to confirm account deletion")
        stored = await self.users.get_user(user.id)
        if not verify_password(password, stored.password):
            raise InvalidCredentialsError("Password is incorrect")
        return await self.users.deactivate(stored.id)

    async def forgot_password(self, email: str) -> None:
        """Start a password reset. Never reveals whether the email exists."""
        user = await self.users.get_by_email(email)
        if user and user.is_active:
            logger.info(f"Password reset requested for user {user.id}")

    async def verify_email(self, user: User) -> User:
        stored = await self.users.get_user(user.id)
        stored.verification.is_email_verified = True
        return await self.users.save(stored)

# FastAPI security scheme
auth_scheme = HTTPBearer(
    auto_error=False,
    description="JWT Bearer token required"
)

def auth_http_error(error: AuthError) -> HTTPException:
    """Map an authentication failure to the HTTP error returned to clients."""
    if isinstance(error, AccountSuspendedError):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={'message': str(error), 'reason': error.reason}
        )
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=str(error),
        headers={"WWW-Authenticate": "Bearer"}
    )

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(auth_scheme),
    store=Depends(get_store)
) -> User:
    """FastAPI dependency for getting the authenticated user.

    Returns:
        The authenticated User

    Raises:
        HTTPException: 401 if the token is missing or invalid, 403 if suspended
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authorized, no token provided",
            headers={"WWW-Authenticate": "Bearer"}
        )
    try:
        return await AuthManager(store).authenticate(credentials.credentials)
    except AuthError as e:
        raise auth_http_error(e)

async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(auth_scheme),
    store=Depends(get_store)
) -> Optional[User]:
    """Like get_current_user, but anonymous when the token is missing or unusable."""
    if credentials is None:
        return None
    try:
        return await AuthManager(store).authenticate(credentials.credentials)
    except AuthError:
        return None

def require_roles(*roles: UserRole):
    """Dependency factory allowing only users holding one of roles."""

    async def _role_dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )
        return user

    return _role_dependency

def ensure_owner_or_admin(user: User, owner_id: str) -> None:
    """Raise 403 unless user is owner_id or an admin."""
    if user.id != owner_id and user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied - not owner of this resource"
        )

# Export public interface
__all__ = [
    'AuthManager',
    'hash_password',
    'verify_password',
    'password_problems',
    'create_token',
    'decode_token',
    'get_current_user',
    'get_optional_user',
    'require_roles',
    'ensure_owner_or_admin',
    'auth_http_error',
    'AuthError',
    'InvalidTokenError',
    'TokenExpiredError',
    'InvalidCredentialsError',
    'AccountDeactivatedError',
    'AccountSuspendedError',
    'WeakPasswordError',
    'ConfirmationError',
    'UserExistsError'
]
