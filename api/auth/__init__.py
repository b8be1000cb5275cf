"""Authentication API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import EmailStr, Field

from auth import AuthManager, get_current_user
from database import get_store
from database.lib.document import GeoPoint
from users import User, UserManager, UserAddress, Preferences
from ..deps import RequestModel, respond

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/auth",
    tags=["Authentication"]
)

class RegisterRequest(RequestModel):
    """Request model for creating an account."""
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    email: EmailStr
    password: str
    phone: Optional[str] = None
    address: Optional[UserAddress] = None
    location: Optional[GeoPoint] = None

class LoginRequest(RequestModel):
    """Request model for logging in."""
    email: EmailStr
    password: str = Field(min_length=1)

class UpdateDetailsRequest(RequestModel):
    """Request model for profile changes made by the account holder."""
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    phone: Optional[str] = None
    bio: Optional[str] = Field(default=None, max_length=500)
    avatar: Optional[str] = None
    address: Optional[UserAddress] = None
    location: Optional[GeoPoint] = None
    preferences: Optional[Preferences] = None

class UpdatePasswordRequest(RequestModel):
    """Request model for changing a password."""
    current_password: str = Field(min_length=1)
    new_password: str

class ForgotPasswordRequest(RequestModel):
    email: EmailStr

class DeleteAccountRequest(RequestModel):
    """Request model for deleting the caller's account."""
    password: str = Field(min_length=1)
    confirmation: str

def _session_user(user: User) -> dict:
    data = user.summary('firstName', 'lastName', 'email', 'phone', 'trustScore', 'verification')
    data['createdAt'] = user.to_public()['createdAt']
    return data

@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(request: RegisterRequest, store=Depends(get_store)):
    """Create an account and return its first token."""
    user, token = await AuthManager(store).register(
        request.first_name,
        request.last_name,
        request.email,
        request.password,
        phone=request.phone,
        address=request.address,
        location=request.location
    )
    return respond(
        {'token': token, 'user': _session_user(user)},
        'User registered successfully'
    )

@router.post("/login")
async def login(request: LoginRequest, store=Depends(get_store)):
    """Check credentials and return a token."""
    user, token = await AuthManager(store).login(request.email, request.password)
    data = _session_user(user)
    data['lastLoginAt'] = user.to_public()['lastLoginAt']
    return respond({'token': token, 'user': data}, 'Login successful')

@router.get("/me")
async def me(user: User = Depends(get_current_user)):
    """Get the authenticated user's profile."""
    return respond({'user': user.to_public()})

@router.put("/update-details")
async def update_details(
    request: UpdateDetailsRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Update the authenticated user's profile fields."""
    updated = await UserManager(store).update_profile(user.id, request.changes())
    return respond({'user': updated.to_public()}, 'Profile updated successfully')

@router.put("/update-password")
async def update_password(
    request: UpdatePasswordRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Change the password and return a fresh token."""
    token = await AuthManager(store).change_password(user, request.current_password, request.new_password)
    return respond({'token': token}, 'Password updated successfully')

@router.post("/forgot-password")
async def forgot_password(request: ForgotPasswordRequest, store=Depends(get_store)):
    """Start a password reset without revealing whether the email is registered."""
    await AuthManager(store).forgot_password(request.email)
    return respond(message='If an account with that email exists, a password reset link has been sent')

@router.post("/verify-email")
async def verify_email(user: User = Depends(get_current_user), store=Depends(get_store)):
    updated = await AuthManager(store).verify_email(user)
    return respond(
        {'user': {'id': updated.id, 'verification': updated.to_public()['verification']}},
        'Email verified successfully'
    )

@router.post("/logout")
async def logout(user: User = Depends(get_current_user)):
    """Tokens are stateless; clients discard theirs."""
    logger.info(f"User {user.id} logged out")
    return respond(message='Logged out successfully')

@router.delete("/delete-account")
async def delete_account(
    request: DeleteAccountRequest,
    user: User = Depends(get_current_user),
    store=Depends(get_store)
):
    """Deactivate the caller's account after re-checking the password."""
    await AuthManager(store).delete_account(user, request.password, request.confirmation)
    return respond(message='Account deleted successfully')

# Export the router
__all__ = ['router']
