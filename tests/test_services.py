"""Tests for the services module."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import WEEK, auth_header, service_data
from services import Service, ServiceInUseError, ServiceManager, ServicePermissionError

def test_availability_follows_weekly_schedule():
    weekdays_only = [entry for entry in WEEK if entry['day'] not in ('saturday', 'sunday')]
    service = Service.from_document({
        **service_data(availability={'schedule': weekdays_only}),
        'provider': 'p1'
    })

    monday = datetime(2030, 6, 3, 10, 0, tzinfo=timezone.utc)
    saturday = datetime(2030, 6, 8, 10, 0, tzinfo=timezone.utc)
    assert service.is_available(monday)
    assert not service.is_available(saturday)

def test_availability_exceptions_block_a_date():
    day = datetime(2030, 6, 3, 10, 0, tzinfo=timezone.utc)
    service = Service.from_document({
        **service_data(availability={
            'schedule': WEEK,
            'exceptions': [{'date': day.isoformat(), 'available': False, 'reason': 'Holiday'}]
        }),
        'provider': 'p1'
    })

    assert not service.is_available(day)
    assert service.is_available(day + timedelta(days=1))

def test_paused_service_is_unavailable():
    service = Service.from_document({**service_data(), 'provider': 'p1', 'isPaused': True})
    assert not service.is_available(datetime(2030, 6, 3, 10, 0, tzinfo=timezone.utc))

def test_review_summary_rounds_average():
    service = Service.from_document({**service_data(), 'provider': 'p1'})
    service.apply_review_ratings([5, 4, 4, 4])

    assert service.reviews.total == 4
    assert service.reviews.average == 4.3
    assert service.reviews.breakdown == {'5': 1, '4': 3, '3': 0, '2': 0, '1': 0}

def test_first_image_becomes_primary():
    service = Service.from_document({
        **service_data(images=[{'url': 'a.jpg'}, {'url': 'b.jpg'}]),
        'provider': 'p1'
    })
    service.ensure_primary_image()

    assert service.primary_image == 'a.jpg'
    assert service.images[0].is_primary

def test_only_one_image_stays_primary():
    service = Service.from_document({
        **service_data(images=[
            {'url': 'a.jpg'},
            {'url': 'b.jpg', 'isPrimary': True},
            {'url': 'c.jpg', 'isPrimary': True}
        ]),
        'provider': 'p1'
    })
    service.ensure_primary_image()

    assert [image.is_primary for image in service.images] == [False, True, False]
    assert service.primary_image == 'b.jpg'

@pytest.mark.asyncio
async def test_create_ignores_system_fields(store, make_user):
    provider, _ = await make_user()
    service = await ServiceManager(store).create_service(provider.id, {
        **service_data(),
        'provider': 'someone-else',
        'stats': {'views': 1000},
        'isPaused': True
    })

    assert service.provider == provider.id
    assert service.stats.views == 0
    assert not service.is_paused

@pytest.mark.asyncio
async def test_update_by_non_provider(store, make_user, make_service):
    provider, _ = await make_user()
    other, _ = await make_user('other@example.com')
    service = await make_service(provider.id)

    with pytest.raises(ServicePermissionError):
        await ServiceManager(store).update_service(service.id, other.id, {'title': 'Mine now'})

@pytest.mark.asyncio
async def test_delete_with_active_booking(store, make_user, make_service):
    provider, _ = await make_user()
    service = await make_service(provider.id)
    await store.bookings.insert_one({'id': 'b1', 'service': service.id, 'status': 'confirmed'})

    with pytest.raises(ServiceInUseError) as exc_info:
        await ServiceManager(store).delete_service(service.id, provider.id)
    assert exc_info.value.active_bookings == 1

@pytest.mark.asyncio
async def test_list_filters_by_price(store, make_user, make_service):
    provider, _ = await make_user()
    await make_service(provider.id, title='Cheap', pricing={'type': 'fixed', 'amount': 20})
    await make_service(provider.id, title='Pricey', pricing={'type': 'fixed', 'amount': 200})

    services, total = await ServiceManager(store).list_services(max_price=50)

    assert total == 1
    assert services[0].title == 'Cheap'

@pytest.mark.asyncio
async def test_create_service_endpoint(client, make_user):
    _, token = await make_user()

    response = await client.post('/api/services', json=service_data(), headers=auth_header(token))

    assert response.status_code == 201
    body = response.json()
    assert body['success'] is True
    assert body['data']['service']['provider']['firstName'] == 'Ana'
    assert body['data']['service']['address']['state'] == 'CA'

@pytest.mark.asyncio
async def test_create_service_rejects_bad_state(client, make_user):
    _, token = await make_user()
    data = service_data(address={'city': 'San Francisco', 'state': 'California'})

    response = await client.post('/api/services', json=data, headers=auth_header(token))

    assert response.status_code == 400
    error = response.json()['error']
    assert error['type'] == 'ValidationError'
    assert any(e['field'] == 'address.state' for e in error['errors'])

@pytest.mark.asyncio
async def test_create_service_requires_auth(client):
    response = await client.post('/api/services', json=service_data())

    assert response.status_code == 401
    assert response.json()['error']['message'] == 'Not authorized, no token provided'

@pytest.mark.asyncio
async def test_get_service_counts_views(client, store, make_user, make_service):
    provider, _ = await make_user()
    service = await make_service(provider.id)

    response = await client.get(f'/api/services/{service.id}')

    assert response.status_code == 200
    data = response.json()['data']['service']
    assert data['provider']['id'] == provider.id
    assert data['serviceReviews'] == []
    assert len(data['upcomingAvailability']) == 7
    stored = await store.services.get(service.id)
    assert stored['stats']['views'] == 1

@pytest.mark.asyncio
async def test_get_unknown_service(client):
    response = await client.get('/api/services/does-not-exist')

    assert response.status_code == 404
    assert response.json()['error']['type'] == 'NotFoundError'

@pytest.mark.asyncio
async def test_search_escapes_query(client, make_user, make_service):
    provider, _ = await make_user()
    await make_service(provider.id, title='Lawn care (weekly)')
    await make_service(provider.id, title='Dog walking', category='pet_care',
                       description='Long walks for energetic dogs of any size.')

    response = await client.get('/api/services/search', params={'q': '(weekly)'})

    assert response.status_code == 200
    services = response.json()['data']['services']
    assert [s['title'] for s in services] == ['Lawn care (weekly)']

@pytest.mark.asyncio
async def test_nearby_orders_by_distance(client, make_user, make_service):
    provider, _ = await make_user()
    await make_service(provider.id, title='Far', location={'type': 'Point', 'coordinates': [-122.30, 37.80]})
    await make_service(provider.id, title='Near', location={'type': 'Point', 'coordinates': [-122.42, 37.77]})
    await make_service(provider.id, title='Other city', location={'type': 'Point', 'coordinates': [-73.98, 40.75]})

    response = await client.get('/api/services/nearby', params={'lng': -122.42, 'lat': 37.77, 'radius': 20})

    assert response.status_code == 200
    data = response.json()['data']
    assert [s['title'] for s in data['services']] == ['Near', 'Far']
    assert data['totalResults'] == 2

@pytest.mark.asyncio
async def test_pause_hides_service_from_listing(client, make_user, make_service):
    provider, token = await make_user()
    service = await make_service(provider.id)

    response = await client.put(f'/api/services/{service.id}/pause',
                                json={'isPaused': True, 'reason': 'On holiday'},
                                headers=auth_header(token))
    assert response.status_code == 200
    assert response.json()['message'] == 'Service paused successfully'

    listing = await client.get('/api/services')
    assert listing.json()['data']['pagination']['totalServices'] == 0
