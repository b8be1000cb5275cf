"""Tests for authentication."""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

import auth
from auth import (
    AuthManager,
    ConfirmationError,
    InvalidTokenError,
    TokenExpiredError,
    WeakPasswordError,
    create_token,
    decode_token,
    password_problems
)
from conftest import PASSWORD, auth_header

REGISTRATION = {
    'firstName': 'Ana',
    'lastName': 'Lopez',
    'email': 'Ana@Example.com',
    'password': PASSWORD
}

def test_password_rules():
    assert password_problems('Secret123') == []
    assert len(password_problems('abc')) == 2
    assert password_problems('alllowercase1') == [
        "Password must contain at least one uppercase letter, one lowercase letter, and one number"
    ]

def test_token_round_trip():
    token, expires_at = create_token('user-1')

    assert decode_token(token) == 'user-1'
    assert expires_at > datetime.now(timezone.utc)

def test_expired_token():
    expired = jwt.encode(
        {'sub': 'user-1', 'exp': int((datetime.now(timezone.utc) - timedelta(minutes=1)).timestamp())},
        auth.JWT_SECRET,
        algorithm=auth.JWT_ALGORITHM
    )
    with pytest.raises(TokenExpiredError):
        decode_token(expired)

def test_token_signed_with_another_secret():
    forged = jwt.encode(
        {'sub': 'user-1', 'exp': int((datetime.now(timezone.utc) + timedelta(days=1)).timestamp())},
        auth.JWT_SECRET + '-forged',
        algorithm=auth.JWT_ALGORITHM
    )
    with pytest.raises(InvalidTokenError):
        decode_token(forged)

@pytest.mark.asyncio
async def test_weak_password_rejected(store):
    with pytest.raises(WeakPasswordError):
        await AuthManager(store).register('Ana', 'Lopez', 'ana@example.com', 'password')
    assert await store.users.count() == 0

@pytest.mark.asyncio
async def test_delete_requires_confirmation(store, make_user):
    user, _ = await make_user()
    with pytest.raises(ConfirmationError):
        await AuthManager(store).delete_account(user, PASSWORD, 'yes')

@pytest.mark.asyncio
async def test_register_and_login(client):
    response = await client.post('/api/auth/register', json=REGISTRATION)
    assert response.status_code == 201
    body = response.json()
    assert body['message'] == 'User registered successfully'
    assert body['data']['user']['email'] == 'ana@example.com'
    assert 'password' not in body['data']['user']

    response = await client.post('/api/auth/login', json={'email': 'ana@example.com', 'password': PASSWORD})
    assert response.status_code == 200
    data = response.json()['data']
    assert data['user']['lastLoginAt'] is not None

    response = await client.get('/api/auth/me', headers=auth_header(data['token']))
    assert response.json()['data']['user']['fullName'] == 'Ana Lopez'

@pytest.mark.asyncio
async def test_register_duplicate_email(client, make_user):
    await make_user()

    response = await client.post('/api/auth/register', json=REGISTRATION)

    assert response.status_code == 400
    error = response.json()['error']
    assert error['type'] == 'DuplicateError'
    assert error['message'] == 'User already exists with this email'

@pytest.mark.asyncio
async def test_register_weak_password(client):
    response = await client.post('/api/auth/register', json={**REGISTRATION, 'password': 'short'})

    assert response.status_code == 400
    assert response.json()['error']['message'] == 'Password must be at least 6 characters'

@pytest.mark.asyncio
async def test_login_wrong_password(client, make_user):
    await make_user()

    response = await client.post('/api/auth/login', json={'email': 'ana@example.com', 'password': 'Wrong123'})

    assert response.status_code == 401
    assert response.json()['error'] == {
        'message': 'Invalid credentials',
        'type': 'AuthenticationError',
        'statusCode': 401
    }

@pytest.mark.asyncio
async def test_suspended_user_forbidden(client, store, make_user):
    user, token = await make_user()
    await store.users.update_many({'id': user.id}, {'isSuspended': True, 'suspensionReason': 'Spam'})

    response = await client.get('/api/auth/me', headers=auth_header(token))

    assert response.status_code == 403
    assert response.json()['error']['reason'] == 'Spam'

@pytest.mark.asyncio
async def test_invalid_token(client):
    response = await client.get('/api/auth/me', headers=auth_header('not-a-token'))

    assert response.status_code == 401
    assert response.json()['error']['message'] == 'Invalid token'

@pytest.mark.asyncio
async def test_update_details(client, make_user):
    _, token = await make_user()

    response = await client.put('/api/auth/update-details', json={
        'bio': 'Keen gardener',
        'address': {'city': 'Pune', 'state': 'MH'}
    }, headers=auth_header(token))

    assert response.status_code == 200
    user = response.json()['data']['user']
    assert user['bio'] == 'Keen gardener'
    assert user['address']['country'] == 'IN'

@pytest.mark.asyncio
async def test_delete_account(client, store, make_user, make_service):
    user, token = await make_user()
    service = await make_service(user.id)

    response = await client.request('DELETE', '/api/auth/delete-account',
                                    json={'password': PASSWORD, 'confirmation': 'DELETE'},
                                    headers=auth_header(token))
    assert response.status_code == 200
    assert response.json()['message'] == 'Account deleted successfully'

    stored = await store.services.get(service.id)
    assert stored['isActive'] is False

    response = await client.get('/api/auth/me', headers=auth_header(token))
    assert response.status_code == 401
    assert response.json()['error']['message'] == 'Account is deactivated'

@pytest.mark.asyncio
async def test_forgot_password_does_not_reveal_accounts(client):
    response = await client.post('/api/auth/forgot-password', json={'email': 'nobody@example.com'})

    assert response.status_code == 200
    assert response.json()['success'] is True
