"""Tests for the bookings module."""

from datetime import date, datetime, timedelta, timezone

import pytest
import pytest_asyncio

from conftest import auth_header, booking_day
from bookings import (
    BookingManager,
    BookingPermissionError,
    BookingStatus,
    BookingValidationError,
    InvalidStatusTransitionError,
    can_transition,
    combine_schedule,
    quote_price
)

def upcoming_date(days: int = 3) -> date:
    return date.fromisoformat(booking_day(days))

@pytest.fixture
def manager(store):
    return BookingManager(store, fee_rate=0.03, tax_rate=0.08)

@pytest_asyncio.fixture
async def parties(make_user, make_service):
    """A provider with a service and a customer with a token."""
    provider, provider_token = await make_user('pro@example.com', 'Pat', 'Provider')
    customer, customer_token = await make_user('cus@example.com', 'Cam', 'Customer')
    service = await make_service(provider.id)
    return {
        'provider': provider,
        'provider_token': provider_token,
        'customer': customer,
        'customer_token': customer_token,
        'service': service
    }

@pytest_asyncio.fixture
async def booking(manager, parties):
    booking, _ = await manager.create_booking(
        parties['customer'].id, parties['service'].id, 'Spring clean-up',
        upcoming_date(), '10:00', 120
    )
    return booking

def test_hourly_price_is_pro_rata():
    pricing = quote_price('hourly', 40, 120, fee_rate=0.03, tax_rate=0.08)

    assert pricing.service_price == 80
    assert pricing.platform_fee == 2.4
    assert pricing.taxes == 6.59
    assert pricing.total_amount == 88.99

def test_fixed_price_ignores_duration():
    pricing = quote_price('fixed', 100, 300, fee_rate=0.03, tax_rate=0.08)

    assert pricing.service_price == 100
    assert pricing.total_amount == 111.24

def test_transition_table():
    assert can_transition('pending', 'confirmed')
    assert can_transition('confirmed', 'in_progress')
    assert can_transition('in_progress', 'completed')
    assert not can_transition('pending', 'completed')
    assert not can_transition('completed', 'cancelled')
    assert not can_transition('cancelled', 'pending')

def test_combine_schedule_is_utc():
    start = combine_schedule(date(2030, 6, 3), '09:30')
    assert start == datetime(2030, 6, 3, 9, 30, tzinfo=timezone.utc)

@pytest.mark.asyncio
async def test_create_booking(store, booking, parties):
    assert booking.status == BookingStatus.PENDING
    assert booking.provider == parties['provider'].id
    assert booking.pricing.total_amount == 88.99
    assert booking.status_history[0].reason == 'Booking created'

    service = await store.services.get(parties['service'].id)
    assert service['stats']['bookings'] == 1

@pytest.mark.asyncio
async def test_cannot_book_own_service(manager, parties):
    with pytest.raises(BookingValidationError, match='own service'):
        await manager.create_booking(
            parties['provider'].id, parties['service'].id, 'Self booking',
            upcoming_date(), '10:00', 60
        )

@pytest.mark.asyncio
async def test_advance_notice_required(manager, parties):
    tomorrow_soon = datetime.now(timezone.utc) + timedelta(hours=2)
    with pytest.raises(BookingValidationError, match='24 hours in advance'):
        await manager.create_booking(
            parties['customer'].id, parties['service'].id, 'Too soon',
            tomorrow_soon.date(), tomorrow_soon.strftime('%H:%M'), 60
        )

@pytest.mark.asyncio
async def test_overlapping_booking_rejected(manager, parties, booking):
    with pytest.raises(BookingValidationError, match='not available'):
        await manager.create_booking(
            parties['customer'].id, parties['service'].id, 'Overlap',
            upcoming_date(), '11:00', 60
        )

@pytest.mark.asyncio
async def test_adjacent_booking_allowed(manager, parties, booking):
    second, _ = await manager.create_booking(
        parties['customer'].id, parties['service'].id, 'Afterwards',
        upcoming_date(), '12:00', 60
    )
    assert second.id != booking.id

@pytest.mark.asyncio
async def test_only_provider_confirms(manager, parties, booking):
    with pytest.raises(BookingPermissionError, match='Only service provider can confirm'):
        await manager.update_status(booking.id, parties['customer'].id, 'confirmed')

@pytest.mark.asyncio
async def test_invalid_transition(manager, parties, booking):
    with pytest.raises(InvalidStatusTransitionError):
        await manager.update_status(booking.id, parties['provider'].id, 'completed')

@pytest.mark.asyncio
async def test_outsider_cannot_see_booking(manager, make_user, booking):
    outsider, _ = await make_user('out@example.com')
    with pytest.raises(BookingPermissionError):
        await manager.get_for_participant(booking.id, outsider.id)

@pytest.mark.asyncio
async def test_completion_updates_provider_reputation(store, manager, parties, booking):
    provider_id = parties['provider'].id
    await manager.update_status(booking.id, provider_id, 'confirmed')
    await manager.update_status(booking.id, provider_id, 'in_progress')
    completed = await manager.update_status(booking.id, provider_id, 'completed', notes='All done')

    assert completed.completion.completed_at is not None
    assert [h.status for h in completed.status_history] == [
        BookingStatus.PENDING, BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS
    ]
    provider = await store.users.get(provider_id)
    assert provider['reputation']['completedServices'] == 1
    service = await store.services.get(parties['service'].id)
    assert service['stats']['completedBookings'] == 1

@pytest.mark.asyncio
async def test_cancellation_fee_windows(manager, parties, booking):
    start = booking.scheduled_date

    assert booking.calculate_cancellation_fee(start - timedelta(hours=48)) == 0
    assert booking.calculate_cancellation_fee(start - timedelta(hours=30)) == 0
    assert booking.calculate_cancellation_fee(start - timedelta(hours=10)) == pytest.approx(88.99 * 0.25)
    assert booking.calculate_cancellation_fee(start - timedelta(hours=1)) == pytest.approx(88.99 * 0.5)

@pytest.mark.asyncio
async def test_cancellation_fee_boundaries(manager, parties, booking):
    start = booking.scheduled_date

    assert booking.calculate_cancellation_fee(start - timedelta(hours=24)) == 0
    assert booking.calculate_cancellation_fee(start - timedelta(hours=24) + timedelta(seconds=1)) == pytest.approx(88.99 * 0.25)
    assert booking.calculate_cancellation_fee(start - timedelta(hours=2)) == pytest.approx(88.99 * 0.25)
    assert booking.calculate_cancellation_fee(start - timedelta(hours=1, minutes=59)) == pytest.approx(88.99 * 0.5)

@pytest.mark.asyncio
async def test_cancel_two_days_out_booking_twenty_hours_before(manager, parties):
    start = (datetime.now(timezone.utc) + timedelta(hours=48)).replace(second=0, microsecond=0)
    booking, _ = await manager.create_booking(
        parties['customer'].id, parties['service'].id, 'Gutter clearing',
        start.date(), start.strftime('%H:%M'), 120
    )
    total = booking.pricing.total_amount

    _, fee, refund = await manager.cancel_booking(
        booking.id, parties['customer'].id, 'Plans changed',
        now=booking.scheduled_date - timedelta(hours=20)
    )

    assert total == 88.99
    assert fee == pytest.approx(total * 0.25, abs=0.01)
    assert refund == pytest.approx(total * 0.75, abs=0.01)

@pytest.mark.asyncio
async def test_late_cancellation_refund(manager, parties, booking):
    now = booking.scheduled_date - timedelta(hours=10)
    cancelled, fee, refund = await manager.cancel_booking(
        booking.id, parties['customer'].id, 'Plans changed', category='customer_request', now=now
    )

    assert fee == 22.25
    assert refund == 66.74
    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.cancellation.cancelled_by == parties['customer'].id
    assert cancelled.cancellation.refund_status == 'pending'

@pytest.mark.asyncio
async def test_provider_cancellation_counts_against_provider(store, manager, parties, booking):
    await manager.cancel_booking(booking.id, parties['provider'].id, 'Van broke down')

    provider = await store.users.get(parties['provider'].id)
    assert provider['reputation']['cancelledServices'] == 1

@pytest.mark.asyncio
async def test_completed_booking_cannot_be_cancelled(manager, parties, booking):
    provider_id = parties['provider'].id
    for status in ('confirmed', 'in_progress', 'completed'):
        await manager.update_status(booking.id, provider_id, status)

    with pytest.raises(BookingValidationError, match='Only pending or confirmed'):
        await manager.cancel_booking(booking.id, parties['customer'].id, 'Too late now')

@pytest.mark.asyncio
async def test_messages_marked_read_by_recipient(manager, parties, booking):
    await manager.add_message(booking.id, parties['customer'].id, 'Is there parking nearby?')
    await manager.add_message(booking.id, parties['provider'].id, 'Yes, on the street.')

    assert await manager.mark_messages_read(booking.id, parties['provider'].id) == 1
    assert await manager.mark_messages_read(booking.id, parties['provider'].id) == 0

@pytest.mark.asyncio
async def test_booking_endpoint_flow(client, parties):
    customer_headers = auth_header(parties['customer_token'])
    provider_headers = auth_header(parties['provider_token'])

    response = await client.post('/api/bookings', json={
        'service': parties['service'].id,
        'title': 'Hedge trimming',
        'scheduledDate': booking_day(),
        'scheduledTime': '09:00',
        'estimatedDuration': 60,
        'address': {'street': '2 Oak St', 'city': 'San Francisco', 'state': 'CA'}
    }, headers=customer_headers)
    assert response.status_code == 201
    booking = response.json()['data']['booking']
    assert booking['customer']['firstName'] == 'Cam'
    assert booking['service']['title'] == 'Garden tidy-up'
    assert booking['pricing']['servicePrice'] == 40

    response = await client.put(f"/api/bookings/{booking['id']}/status",
                                json={'status': 'confirmed'}, headers=provider_headers)
    assert response.status_code == 200
    assert response.json()['message'] == 'Booking status updated to confirmed'

    response = await client.post(f"/api/bookings/{booking['id']}/messages",
                                 json={'message': 'See you then'}, headers=customer_headers)
    assert response.status_code == 201

    response = await client.get(f"/api/bookings/{booking['id']}", headers=provider_headers)
    body = response.json()['data']
    assert body['userRole'] == 'provider'
    assert body['booking']['messages'][0]['sender']['firstName'] == 'Cam'

    response = await client.request('DELETE', f"/api/bookings/{booking['id']}",
                                    json={'reason': 'Rain forecast', 'reasonCategory': 'weather'},
                                    headers=customer_headers)
    assert response.status_code == 200
    data = response.json()['data']
    assert data['cancellationFee'] == 0
    assert data['refundStatus'] == 'pending'

    response = await client.get('/api/bookings', params={'status': 'cancelled'}, headers=customer_headers)
    assert response.json()['data']['pagination']['totalBookings'] == 1

@pytest.mark.asyncio
async def test_booking_rejects_bad_time(client, parties):
    response = await client.post('/api/bookings', json={
        'service': parties['service'].id,
        'title': 'Hedge trimming',
        'scheduledDate': booking_day(),
        'scheduledTime': '25:00',
        'estimatedDuration': 60,
        'address': {'city': 'San Francisco', 'state': 'CA'}
    }, headers=auth_header(parties['customer_token']))

    assert response.status_code == 400
    assert 'HH:MM' in response.json()['error']['message']
