"""Tests for the realtime presence registry and event handlers."""

import asyncio
from datetime import date

import pytest
import pytest_asyncio
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import booking_day
from api.realtime import EventHandler, PresenceRegistry, RealtimeMessage, city_room, location_room
from bookings import BookingManager

SF = {'city': 'San Francisco', 'state': 'CA'}

class FakeSocket:
    """Records frames sent to one client."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.closed_with = None
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket gone")
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.closed_with = code

    def types(self):
        return [frame['type'] for frame in self.sent]

@pytest.fixture
def registry():
    return PresenceRegistry()

@pytest_asyncio.fixture
async def pair(store, make_user, make_service, registry):
    """Provider and customer connected with handlers, and a booking between them."""
    provider, _ = await make_user('pro@example.com', 'Pat', 'Provider', address=SF,
                                  location={'type': 'Point', 'coordinates': [-122.42, 37.77]})
    customer, _ = await make_user('cus@example.com', 'Cam', 'Customer', address=SF,
                                  location={'type': 'Point', 'coordinates': [-122.41, 37.77]})
    service = await make_service(provider.id)
    booking, _ = await BookingManager(store, fee_rate=0, tax_rate=0).create_booking(
        customer.id, service.id, 'Spring clean-up', date.fromisoformat(booking_day()), '10:00', 60
    )

    sockets = {'provider': FakeSocket(), 'customer': FakeSocket()}
    registry.connect(sockets['provider'], provider)
    registry.connect(sockets['customer'], customer)
    return {
        'provider': EventHandler(registry, store, provider),
        'customer': EventHandler(registry, store, customer),
        'sockets': sockets,
        'booking': booking,
        'service': service
    }

def message(event: str, **data) -> RealtimeMessage:
    return RealtimeMessage.model_validate({'type': event, 'data': data})

def test_location_room_grid():
    assert location_room(-122.42, 37.77) == 'location_377_-1225'
    assert city_room('San Francisco', 'CA') == 'city_san_francisco_ca'

@pytest.mark.asyncio
async def test_connect_joins_default_rooms(registry, make_user):
    user, _ = await make_user(address=SF, location={'type': 'Point', 'coordinates': [-122.42, 37.77]})
    registry.connect(FakeSocket(), user)

    assert registry.rooms_of(user.id) == sorted([
        f'user_{user.id}', 'location_377_-1225', 'city_san_francisco_ca'
    ])
    assert len(registry) == 1

@pytest.mark.asyncio
async def test_disconnect_ignores_stale_socket(registry, make_user):
    user, _ = await make_user()
    old, new = FakeSocket(), FakeSocket()
    registry.connect(old, user)
    registry.connect(new, user)

    registry.disconnect(user.id, old)
    assert registry.is_online(user.id)

    registry.disconnect(user.id, new)
    assert not registry.is_online(user.id)
    assert registry.rooms == {}

@pytest.mark.asyncio
async def test_failed_send_drops_connection(registry, make_user):
    user, _ = await make_user()
    registry.connect(FakeSocket(fail=True), user)

    delivered = await registry.emit_to_user(user.id, 'ping')

    assert delivered == 0
    assert not registry.is_online(user.id)

@pytest.mark.asyncio
async def test_close_closes_every_socket(registry, make_user):
    user, _ = await make_user()
    socket = FakeSocket()
    registry.connect(socket, user)

    await registry.close()

    assert socket.closed_with == 1001
    assert len(registry) == 0

@pytest.mark.asyncio
async def test_join_booking_and_chat(pair):
    booking_id = pair['booking'].id
    await pair['customer'].handle(message('join_booking', bookingId=booking_id))
    await pair['provider'].handle(message('join_booking', bookingId=booking_id))

    await pair['customer'].handle(message('booking_message', bookingId=booking_id, message='On my way'))

    provider_frames = pair['sockets']['provider'].sent
    received = [f for f in provider_frames if f['type'] == 'booking_message_received']
    assert received[0]['data']['message']['content'] == 'On my way'
    assert received[0]['data']['message']['sender']['name'] == 'Cam Customer'

@pytest.mark.asyncio
async def test_outsider_cannot_join_booking(store, pair, make_user, registry):
    outsider, _ = await make_user('out@example.com')
    socket = FakeSocket()
    registry.connect(socket, outsider)

    await EventHandler(registry, store, outsider).handle(message('join_booking', bookingId=pair['booking'].id))

    assert socket.types() == ['error']
    assert socket.sent[0]['data']['message'] == 'Not authorized to access this booking'

@pytest.mark.asyncio
async def test_status_update_broadcast(pair):
    booking_id = pair['booking'].id
    await pair['customer'].handle(message('join_booking', bookingId=booking_id))

    await pair['provider'].handle(message('booking_status_update', bookingId=booking_id, status='confirmed'))

    frames = [f for f in pair['sockets']['customer'].sent if f['type'] == 'booking_status_updated']
    assert frames[0]['data']['status'] == 'confirmed'

@pytest.mark.asyncio
async def test_typing_requires_membership(pair):
    await pair['customer'].handle(message('booking_typing_start', bookingId=pair['booking'].id))

    assert pair['sockets']['customer'].types()[-1] == 'error'

@pytest.mark.asyncio
async def test_typing_reaches_other_participant(pair):
    booking_id = pair['booking'].id
    await pair['customer'].handle(message('join_booking', bookingId=booking_id))
    await pair['provider'].handle(message('join_booking', bookingId=booking_id))

    await pair['customer'].handle(message('booking_typing_start', bookingId=booking_id))

    assert 'booking_user_typing' in pair['sockets']['provider'].types()
    assert 'booking_user_typing' not in pair['sockets']['customer'].types()

@pytest.mark.asyncio
async def test_share_location_excludes_sender(pair):
    await pair['customer'].handle(message('share_location', coordinates=[-122.41, 37.77]))

    frames = [f for f in pair['sockets']['provider'].sent if f['type'] == 'nearby_user_location']
    assert frames[0]['data']['userName'] == 'Cam Customer'
    assert 'nearby_user_location' not in pair['sockets']['customer'].types()

@pytest.mark.asyncio
async def test_invalid_coordinates(pair):
    await pair['customer'].handle(message('share_location', coordinates=[500, 37.77]))

    assert pair['sockets']['customer'].sent[-1]['data']['message'] == 'Invalid coordinates'

@pytest.mark.asyncio
async def test_service_availability_update_by_owner(pair):
    await pair['provider'].handle(message('service_availability_update',
                                          serviceId=pair['service'].id, isAvailable=False))

    frames = [f for f in pair['sockets']['customer'].sent if f['type'] == 'service_availability_changed']
    assert frames[0]['data']['isAvailable'] is False

@pytest.mark.asyncio
async def test_emergency_alert_creates_pinned_post(store, pair):
    await pair['customer'].handle(message('emergency_alert', title='Gas leak',
                                          description='Strong smell on Market St', category='safety'))

    assert 'emergency_alert_received' in pair['sockets']['provider'].types()
    assert pair['sockets']['customer'].types()[-1] == 'emergency_alert_sent'

    posts = await store.posts.find({'type': 'alert'})
    assert len(posts) == 1
    assert posts[0]['isPinned'] is True
    assert posts[0]['title'].endswith('ALERT: Gas leak')

@pytest.mark.asyncio
async def test_community_stats(pair):
    await pair['customer'].handle(message('get_community_stats'))

    stats = pair['sockets']['customer'].sent[-1]
    assert stats['type'] == 'community_stats'
    assert stats['data']['onlineUsers'] == 2
    assert stats['data']['activePosts'] == 0

def test_websocket_requires_token(app):
    with TestClient(app).websocket_connect('/ws') as ws:
        ws.send_json({'token': 'bad-token'})
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()
    assert exc_info.value.code == 4001

def test_websocket_session(app, make_user):
    user, token = asyncio.run(make_user())

    with TestClient(app).websocket_connect('/ws') as ws:
        ws.send_json({'token': token})
        hello = ws.receive_json()
        assert hello['type'] == 'connection_success'
        assert hello['data']['userId'] == user.id

        ws.send_json({'type': 'heartbeat'})
        assert ws.receive_json()['type'] == 'heartbeat_ack'

        ws.send_json({'type': 'no_such_event'})
        error = ws.receive_json()
        assert error['type'] == 'error'
        assert error['data']['message'].startswith('Invalid message format')
