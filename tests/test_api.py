"""Tests for system endpoints and the error envelope."""

import pytest

@pytest.mark.asyncio
async def test_health_without_database(client):
    response = await client.get('/health')

    assert response.status_code == 200
    health = response.json()
    assert health['status'] == 'DEGRADED'
    assert health['database'] == 'disconnected'
    assert health['version'] == '1.0.0'
    assert health['realtime'] == {'connections': 0}
    assert health['memory']['rss'] > 0

@pytest.mark.asyncio
async def test_api_info(client):
    response = await client.get('/api')

    info = response.json()
    assert info['name'] == 'TrustCircle API'
    assert info['status'] == 'running'
    assert info['endpoints']['realtime'] == '/ws'

@pytest.mark.asyncio
async def test_unknown_route(client):
    response = await client.get('/api/nothing-here')

    assert response.status_code == 404
    body = response.json()
    assert body['success'] is False
    assert body['error']['message'] == 'Route /api/nothing-here not found'
    assert body['error']['availableRoutes']['services'] == '/api/services'

@pytest.mark.asyncio
async def test_validation_errors_listed(client):
    response = await client.post('/api/auth/register', json={'firstName': 'Ana'})

    assert response.status_code == 400
    error = response.json()['error']
    assert error['type'] == 'ValidationError'
    assert error['message'] == 'Validation failed'
    assert {e['field'] for e in error['errors']} >= {'lastName', 'email', 'password'}

@pytest.mark.asyncio
async def test_single_validation_error_message(client):
    response = await client.get('/api/services', params={'minPrice': -5})

    error = response.json()['error']
    assert response.status_code == 400
    assert error['errors'][0]['field'] == 'minPrice'
    assert error['message'] == error['errors'][0]['message']

@pytest.mark.asyncio
async def test_unhandled_error_envelope(app, client):
    async def explode():
        raise RuntimeError('boom')

    app.add_api_route('/explode', explode)

    response = await client.get('/explode')

    assert response.status_code == 500
    error = response.json()['error']
    assert error['message'] == 'Server Error'
    assert error['type'] == 'ServerError'
