"""Tests for the HTTP server."""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from aqademiq_sync.models import EntityType
from aqademiq_sync.server import create_app
from aqademiq_sync.sync_engine import SyncEngine

from fakes import USER, FakeCalendarService, FakeClock, event_payload, make_settings


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def calendar(settings, clock):
    return FakeCalendarService(settings, clock=clock)


@pytest.fixture
def engine(settings, calendar, clock):
    return SyncEngine(settings, service_factory=lambda user_id: calendar, clock=clock)


@pytest.fixture
def client(settings, engine):
    app = create_app(settings, engine, run_poller=False)
    with TestClient(app) as test_client:
        yield test_client


def make_conflict(client, engine, calendar, clock):
    calendar.add_remote_change(event_payload('evt-1'))
    client.post(f"/users/{USER}/sync")
    clock.advance(minutes=5)
    mapping = engine.mappings.find(USER, 'evt-1')
    entity = engine.entities.get(USER, mapping.entity_type, mapping.entity_id)
    engine.entities.apply_fields(entity, {'title': 'Local title'}, clock())
    clock.advance(minutes=1)
    calendar.add_remote_change(event_payload('evt-1', summary='Remote title', updated=clock()))
    report = client.post(f"/users/{USER}/sync").json()
    assert report['conflicts'] == 1
    return client.get(f"/users/{USER}/conflicts").json()[0]


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body['ok'] is True
    assert body['online'] is True
    assert body['last_sync'] is None


def test_sync_and_status(client, calendar):
    calendar.add_remote_change(event_payload('evt-1'))

    response = client.post(f"/users/{USER}/sync")

    assert response.status_code == 200
    assert response.json()['created_local'] == 1

    status = client.get(f"/users/{USER}/status").json()
    assert status['total_event_mappings'] == 1
    assert status['has_sync_token'] is True


def test_full_sync_flag(client, calendar):
    client.post(f"/users/{USER}/sync")

    client.post(f"/users/{USER}/sync", params={'full': 'true'})

    assert calendar.list_calls[-1]['sync_token'] is None


def test_offline_sync_is_unavailable(client, engine, calendar):
    engine.connectivity.set_online(False)
    calendar.reachable = False

    response = client.post(f"/users/{USER}/sync")

    assert response.status_code == 503
    assert response.json()['error'] == 'OfflineError'


def test_sync_after_outage_when_google_is_back(client, engine, calendar):
    engine.connectivity.report_failure(OSError("connection reset"))

    response = client.post(f"/users/{USER}/sync")

    assert response.status_code == 200
    assert client.get("/health").json()['online'] is True


def test_conflict_listing_and_prefer_google(client, engine, calendar, clock):
    conflict = make_conflict(client, engine, calendar, clock)
    assert conflict['status'] == 'pending'
    assert conflict['local_data']['title'] == 'Local title'
    assert conflict['google_data']['summary'] == 'Remote title'

    detail = client.get(f"/conflicts/{conflict['id']}")
    assert detail.json()['id'] == conflict['id']

    response = client.post(f"/conflicts/{conflict['id']}/resolve", json={'strategy': 'prefer_google'})
    assert response.status_code == 200
    assert response.json()['resolution'] == 'prefer_google'

    assert client.get(f"/users/{USER}/conflicts").json() == []
    resolved = client.get(f"/users/{USER}/conflicts", params={'status': 'resolved'}).json()
    assert [c['id'] for c in resolved] == [conflict['id']]
    assert len(client.get(f"/users/{USER}/conflicts", params={'status': 'all'}).json()) == 1

    again = client.post(f"/conflicts/{conflict['id']}/resolve", json={'strategy': 'prefer_google'})
    assert again.status_code == 409


def test_suggested_merge_endpoint(client, engine, calendar, clock):
    conflict = make_conflict(client, engine, calendar, clock)

    merged = client.get(f"/conflicts/{conflict['id']}/suggested-merge").json()

    assert merged['title'] == 'Remote title'
    response = client.post(
        f"/conflicts/{conflict['id']}/resolve",
        json={'strategy': 'merge', 'merged_payload': merged}
    )
    assert response.status_code == 200
    assert calendar.events['evt-1']['summary'] == 'Remote title'


def test_merge_with_bad_payload(client, engine, calendar, clock):
    conflict = make_conflict(client, engine, calendar, clock)

    response = client.post(
        f"/conflicts/{conflict['id']}/resolve",
        json={'strategy': 'merge', 'merged_payload': {'exam_date': 'tomorrow'}}
    )

    assert response.status_code == 422
    assert response.json()['error'] == 'EventValidationError'


def test_failed_remote_write(client, engine, calendar, clock):
    conflict = make_conflict(client, engine, calendar, clock)
    calendar.fail_writes = True

    response = client.post(f"/conflicts/{conflict['id']}/resolve", json={'strategy': 'prefer_local'})

    assert response.status_code == 502
    assert client.get(f"/conflicts/{conflict['id']}").json()['status'] == 'pending'


def test_resolving_conflict_of_deleted_item(client, engine, calendar, clock):
    conflict = make_conflict(client, engine, calendar, clock)
    engine.entities.delete(EntityType(conflict['entity_type']), conflict['entity_id'])

    response = client.post(f"/conflicts/{conflict['id']}/resolve", json={'strategy': 'prefer_local'})

    assert response.status_code == 200
    assert response.json()['status'] == 'obsolete'
    assert client.get(f"/users/{USER}/conflicts").json() == []


def test_unknown_conflict(client):
    assert client.get(f"/conflicts/{uuid4()}").status_code == 404
    response = client.post(f"/conflicts/{uuid4()}/resolve", json={'strategy': 'prefer_google'})
    assert response.status_code == 404


def test_invalid_strategy(client):
    response = client.post(f"/conflicts/{uuid4()}/resolve", json={'strategy': 'newest_wins'})

    assert response.status_code == 422


def test_invalid_conflict_status_filter(client):
    assert client.get(f"/users/{USER}/conflicts", params={'status': 'open'}).status_code == 422


def test_webhook_without_address(client):
    response = client.post(f"/users/{USER}/webhook")

    assert response.status_code == 400
    assert response.json()['error'] == 'SyncError'


def test_webhook_notifications(client, settings):
    settings.webhook_address = 'https://sync.example.com/webhooks/google'
    settings.webhook_secret = 'channel-secret'
    channel = client.post(f"/users/{USER}/webhook").json()
    headers = {
        'X-Goog-Channel-ID': channel['channel_id'],
        'X-Goog-Resource-ID': channel['resource_id'],
        'X-Goog-Resource-State': 'exists',
        'X-Goog-Channel-Token': 'channel-secret',
    }

    assert client.post("/webhooks/google", headers=dict(headers, **{'X-Goog-Channel-Token': 'wrong'})).status_code == 401

    missing = {k: v for k, v in headers.items() if k != 'X-Goog-Resource-ID'}
    assert client.post("/webhooks/google", headers=missing).status_code == 400

    unknown = dict(headers, **{'X-Goog-Channel-ID': 'unknown'})
    assert client.post("/webhooks/google", headers=unknown).status_code == 404

    handshake = dict(headers, **{'X-Goog-Resource-State': 'sync'})
    assert client.post("/webhooks/google", headers=handshake).status_code == 204
    assert client.app.state.runtime.pending_users == set()

    assert client.post("/webhooks/google", headers=headers).status_code == 204
    assert client.app.state.runtime.pending_users == {USER}
