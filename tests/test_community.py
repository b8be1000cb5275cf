"""Tests for the community module."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import auth_header
from community import (
    CommunityManager,
    CommunityPost,
    PostPermissionError,
    PostStatus,
    PostValidationError
)

ADDRESS = {'neighborhood': 'Mission', 'city': 'San Francisco', 'state': 'CA'}

def post_data(**overrides):
    data = {
        'title': 'Lost cat near the park',
        'content': 'Grey tabby, answers to Miso. Please call if seen.',
        'type': 'post',
        'category': 'lost_found',
        'location': {'type': 'Point', 'coordinates': [-122.42, 37.76]},
        'address': ADDRESS
    }
    data.update(overrides)
    return data

def event_data(days: int = 5, **overrides):
    start = datetime.now(timezone.utc) + timedelta(days=days)
    data = post_data(
        title='Street clean-up day',
        content='Bring gloves, we provide bags and snacks.',
        type='event',
        category='events',
        eventDetails={'startDate': start.isoformat(), 'startTime': '10:00'}
    )
    data.update(overrides)
    return data

def test_before_save_expires_and_unpins():
    now = datetime.now(timezone.utc)
    post = CommunityPost.from_document({
        **post_data(),
        'author': 'u1',
        'expiresAt': (now - timedelta(hours=1)).isoformat(),
        'isPinned': True,
        'pinnedUntil': (now - timedelta(minutes=5)).isoformat()
    })
    post.before_save(now)

    assert post.is_expired
    assert post.status == PostStatus.ARCHIVED
    assert not post.is_pinned

def test_like_once_per_user():
    post = CommunityPost.from_document({**post_data(), 'author': 'u1'})

    assert post.add_like('u2')
    assert not post.add_like('u2')
    assert post.like_count == 1
    assert post.remove_like('u2')
    assert post.like_count == 0

def test_unlike_without_likes_is_noop():
    post = CommunityPost.from_document({**post_data(), 'author': 'u1'})

    assert not post.remove_like('u2')
    assert post.like_count == 0
    assert post.engagement.likes == []

def test_engagement_rate():
    post = CommunityPost.from_document({**post_data(), 'author': 'u1'})
    post.engagement.views = 10
    post.add_like('u2')
    post.add_comment('u3', 'Hope you find her!')

    assert post.engagement_rate() == 20

@pytest.mark.asyncio
async def test_event_in_past_rejected(store, make_user):
    author, _ = await make_user()
    with pytest.raises(PostValidationError, match='past'):
        await CommunityManager(store).create_post(author.id, event_data(days=-1))

@pytest.mark.asyncio
async def test_attendance_only_for_events(store, make_user):
    author, _ = await make_user()
    post = await CommunityManager(store).create_post(author.id, post_data())

    with pytest.raises(PostValidationError, match='not an event'):
        await CommunityManager(store).attend(post.id, author.id)

@pytest.mark.asyncio
async def test_attend_and_check_in(store, make_user):
    organizer, _ = await make_user()
    neighbour, _ = await make_user('nb@example.com', 'Nia', 'Neighbour')
    manager = CommunityManager(store)
    event = await manager.create_post(organizer.id, event_data())

    post, attendee = await manager.attend(event.id, neighbour.id, 'maybe')
    assert attendee.status == 'maybe'
    assert post.attendee_count == 0

    post, attendee = await manager.attend(event.id, neighbour.id, 'going')
    assert post.attendee_count == 1
    assert len(post.attendees) == 1

    with pytest.raises(PostPermissionError):
        await manager.check_in(event.id, neighbour.id, neighbour.id)

    _, attendee = await manager.check_in(event.id, organizer.id, neighbour.id)
    assert attendee.checked_in

@pytest.mark.asyncio
async def test_flags_pull_post(store, make_user):
    author, _ = await make_user()
    manager = CommunityManager(store)
    post = await manager.create_post(author.id, post_data())

    for n in range(3):
        flagger, _ = await make_user(f'flagger{n}@example.com')
        await manager.flag(post.id, flagger.id, 'spam')

    stored = await store.posts.get(post.id)
    assert stored['status'] == 'flagged'

@pytest.mark.asyncio
async def test_reply_to_unknown_comment(store, make_user):
    author, _ = await make_user()
    post = await CommunityManager(store).create_post(author.id, post_data())

    with pytest.raises(PostValidationError, match='Parent comment'):
        await CommunityManager(store).add_comment(post.id, author.id, 'Reply', parent_comment='missing')

@pytest.mark.asyncio
async def test_events_sorted_by_start(store, make_user):
    author, _ = await make_user()
    manager = CommunityManager(store)
    await manager.create_post(author.id, event_data(days=9, title='Later event'))
    await manager.create_post(author.id, event_data(days=2, title='Sooner event'))
    await manager.create_post(author.id, post_data())

    events, total = await manager.events(city='san francisco')

    assert total == 2
    assert [e.title for e in events] == ['Sooner event', 'Later event']

@pytest.mark.asyncio
async def test_trending_ranks_by_likes(store, make_user):
    author, _ = await make_user()
    fan, _ = await make_user('fan@example.com')
    manager = CommunityManager(store)
    quiet = await manager.create_post(author.id, post_data(title='Quiet post here'))
    popular = await manager.create_post(author.id, post_data(title='Popular post here'))
    await manager.set_like(popular.id, fan.id)

    posts = await manager.trending()

    assert [p.id for p in posts] == [popular.id, quiet.id]

@pytest.mark.asyncio
async def test_create_post_endpoint(client, make_user):
    _, token = await make_user()

    response = await client.post('/api/community', json=post_data(), headers=auth_header(token))

    assert response.status_code == 201
    body = response.json()
    assert body['message'] == 'Community post created successfully'
    assert body['data']['post']['author']['firstName'] == 'Ana'
    assert body['data']['post']['likeCount'] == 0

@pytest.mark.asyncio
async def test_event_requires_start_time(client, make_user):
    _, token = await make_user()
    data = event_data()
    data['eventDetails'].pop('startTime')

    response = await client.post('/api/community', json=data, headers=auth_header(token))

    assert response.status_code == 400
    assert 'HH:MM' in response.json()['error']['message']

@pytest.mark.asyncio
async def test_post_interactions(client, make_user):
    author, author_token = await make_user()
    _, token = await make_user('nb@example.com', 'Nia', 'Neighbour')
    headers = auth_header(token)

    created = await client.post('/api/community', json=post_data(), headers=auth_header(author_token))
    post_id = created.json()['data']['post']['id']

    response = await client.post(f'/api/community/{post_id}/like', json={'action': 'unlike'}, headers=headers)
    assert response.status_code == 200
    assert response.json()['data']['likeCount'] == 0

    response = await client.post(f'/api/community/{post_id}/like', json={'action': 'like'}, headers=headers)
    assert response.json()['data']['likeCount'] == 1
    assert response.json()['message'] == 'Post liked successfully'

    response = await client.post(f'/api/community/{post_id}/comment',
                                 json={'content': 'Will keep an eye out.'}, headers=headers)
    assert response.status_code == 201
    assert response.json()['data']['commentCount'] == 1

    response = await client.post(f'/api/community/{post_id}/bookmark', json={}, headers=headers)
    assert response.json()['data']['bookmarkCount'] == 1

    response = await client.get(f'/api/community/{post_id}')
    post = response.json()['data']['post']
    assert post['comments'][0]['author']['firstName'] == 'Nia'
    assert post['engagement']['likes'][0]['user']['firstName'] == 'Nia'
    assert post['author']['id'] == author.id

    response = await client.delete(f'/api/community/{post_id}', headers=headers)
    assert response.status_code == 403

    response = await client.delete(f'/api/community/{post_id}', headers=auth_header(author_token))
    assert response.json()['message'] == 'Post deleted successfully'

    response = await client.get(f'/api/community/{post_id}')
    assert response.status_code == 404

@pytest.mark.asyncio
async def test_nearby_posts(client, make_user, store):
    author, _ = await make_user()
    manager = CommunityManager(store)
    await manager.create_post(author.id, post_data(title='Right here'))
    await manager.create_post(author.id, post_data(
        title='Across the bay', location={'type': 'Point', 'coordinates': [-122.27, 37.80]}
    ))

    response = await client.get('/api/community/nearby', params={'lng': -122.42, 'lat': 37.76, 'radius': 2})

    data = response.json()['data']
    assert [p['title'] for p in data['posts']] == ['Right here']
