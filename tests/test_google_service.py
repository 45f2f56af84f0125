"""Tests for the Google Calendar service wrapper."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import httplib2
import pytest
from google.oauth2.credentials import Credentials
from googleapiclient.errors import HttpError

from aqademiq_sync.connectivity import ConnectivityService
from aqademiq_sync.database import DatabaseManager
from aqademiq_sync.models import utc_now
from aqademiq_sync.services.base import (
    AuthenticationError, EventNotFoundError, RateLimitError, SyncTokenExpired, TransientError
)
from aqademiq_sync.services.google import GoogleCalendarService, parse_channel_expiration

from fakes import T0, USER, event_payload, make_settings


def http_error(status, message='boom'):
    content = f'{{"error": {{"code": {status}, "message": "{message}"}}}}'.encode()
    return HttpError(httplib2.Response({'status': status}), content)


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(make_settings(tmp_path))
    manager.init_db()
    yield manager
    manager.engine.dispose()


@pytest.fixture
def connectivity():
    return ConnectivityService()


@pytest.fixture
def service(db, connectivity):
    google = GoogleCalendarService(db.settings, db, USER, connectivity)
    google.service = MagicMock()
    google._authenticated = True
    return google


def events_api(service):
    return service.service.events.return_value


@pytest.mark.asyncio
async def test_authenticate_without_tokens(db):
    google = GoogleCalendarService(db.settings, db, USER)

    with pytest.raises(AuthenticationError, match="google connect"):
        await google.authenticate()


@pytest.mark.asyncio
async def test_authenticate_refreshes_expiring_token(db, monkeypatch):
    with db.get_session() as session:
        db.save_google_token(
            session, USER, access_token='stale', refresh_token='refresh-1',
            expires_at=utc_now() + timedelta(minutes=5), scopes=['scope-a']
        )

    def fake_refresh(self, request):
        self.token = 'fresh'
        self.expiry = datetime.utcnow() + timedelta(hours=1)

    built = MagicMock()
    monkeypatch.setattr(Credentials, 'refresh', fake_refresh)
    monkeypatch.setattr('aqademiq_sync.services.google.build', lambda *args, **kwargs: built)

    google = GoogleCalendarService(db.settings, db, USER)
    await google.authenticate()

    assert google.service is built
    with db.get_session() as session:
        token = db.get_google_token(session, USER)
    assert token.access_token == 'fresh'
    assert token.refresh_token == 'refresh-1'
    assert token.expires_at > utc_now() + timedelta(minutes=30)


@pytest.mark.asyncio
async def test_authenticate_keeps_fresh_token(db, monkeypatch):
    with db.get_session() as session:
        db.save_google_token(
            session, USER, access_token='current', refresh_token='refresh-1',
            expires_at=utc_now() + timedelta(hours=3)
        )

    def fail_refresh(self, request):
        raise AssertionError("refresh should not be called")

    monkeypatch.setattr(Credentials, 'refresh', fail_refresh)
    monkeypatch.setattr('aqademiq_sync.services.google.build', lambda *args, **kwargs: MagicMock())

    google = GoogleCalendarService(db.settings, db, USER)
    await google.authenticate()

    with db.get_session() as session:
        assert db.get_google_token(session, USER).access_token == 'current'


@pytest.mark.asyncio
async def test_expired_token_without_refresh_token(db):
    with db.get_session() as session:
        db.save_google_token(session, USER, access_token='stale', expires_at=utc_now() - timedelta(minutes=1))

    with pytest.raises(AuthenticationError, match="no refresh token"):
        await GoogleCalendarService(db.settings, db, USER).authenticate()


@pytest.mark.asyncio
async def test_calls_require_authentication(db):
    google = GoogleCalendarService(db.settings, db, USER)

    with pytest.raises(AuthenticationError):
        await google.get_event('primary', 'evt-1')


@pytest.mark.asyncio
async def test_get_changes_pages_through_results(service):
    events_api(service).list.return_value.execute.side_effect = [
        {'items': [event_payload('evt-1')], 'nextPageToken': 'page-2'},
        {'items': [event_payload('evt-2')], 'nextSyncToken': 'sync-2'},
    ]

    changes = await service.get_changes('primary', sync_token='sync-1')

    assert [item['id'] for item in changes.items] == ['evt-1', 'evt-2']
    assert changes.next_sync_token == 'sync-2'
    assert changes.used_sync_token

    first, second = events_api(service).list.call_args_list
    assert first.kwargs['syncToken'] == 'sync-1'
    assert first.kwargs['showDeleted'] is True
    assert first.kwargs['singleEvents'] is True
    assert 'timeMin' not in first.kwargs
    assert second.kwargs['pageToken'] == 'page-2'


@pytest.mark.asyncio
async def test_get_changes_without_token_uses_window(service):
    events_api(service).list.return_value.execute.return_value = {'items': [], 'nextSyncToken': 'sync-1'}

    changes = await service.get_changes('primary', time_min=T0)

    kwargs = events_api(service).list.call_args.kwargs
    assert kwargs['timeMin'] == T0.isoformat()
    assert 'syncToken' not in kwargs
    assert kwargs['maxResults'] == 1000
    assert not changes.used_sync_token


@pytest.mark.asyncio
async def test_gone_maps_to_expired_sync_token(service):
    events_api(service).list.return_value.execute.side_effect = http_error(410)

    with pytest.raises(SyncTokenExpired):
        await service.get_changes('primary', sync_token='old')

    # Not retried
    assert events_api(service).list.return_value.execute.call_count == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried(service):
    events_api(service).get.return_value.execute.side_effect = [
        http_error(503),
        event_payload('evt-1'),
    ]

    event = await service.get_event('primary', 'evt-1')

    assert event.id == 'evt-1'
    assert events_api(service).get.return_value.execute.call_count == 2


@pytest.mark.asyncio
async def test_rate_limit_gives_up_after_retry_budget(service):
    events_api(service).get.return_value.execute.side_effect = http_error(429)

    with pytest.raises(RateLimitError):
        await service.get_event('primary', 'evt-1')

    assert events_api(service).get.return_value.execute.call_count == 3


@pytest.mark.asyncio
async def test_quota_403_is_a_rate_limit(service):
    events_api(service).get.return_value.execute.side_effect = http_error(403, 'rateLimitExceeded')

    with pytest.raises(RateLimitError):
        await service.get_event('primary', 'evt-1')


@pytest.mark.asyncio
async def test_forbidden_is_an_authentication_error(service):
    events_api(service).get.return_value.execute.side_effect = http_error(401)

    with pytest.raises(AuthenticationError):
        await service.get_event('primary', 'evt-1')

    assert events_api(service).get.return_value.execute.call_count == 1


@pytest.mark.asyncio
async def test_missing_event(service):
    events_api(service).get.return_value.execute.side_effect = http_error(404)

    with pytest.raises(EventNotFoundError):
        await service.get_event('primary', 'evt-1')


@pytest.mark.asyncio
async def test_transport_failure_marks_offline(service, connectivity):
    events_api(service).get.return_value.execute.side_effect = OSError("Network is unreachable")

    with pytest.raises(TransientError):
        await service.get_event('primary', 'evt-1')

    assert not connectivity.is_online
    assert 'unreachable' in connectivity.last_error

    events_api(service).get.return_value.execute.side_effect = None
    events_api(service).get.return_value.execute.return_value = event_payload('evt-1')
    await service.get_event('primary', 'evt-1')
    assert connectivity.is_online


@pytest.mark.asyncio
async def test_check_reachable_makes_a_single_attempt(service, connectivity):
    calendars = service.service.calendars.return_value
    calendars.get.return_value.execute.side_effect = OSError("Network is unreachable")

    with pytest.raises(TransientError):
        await service.check_reachable('primary')

    assert calendars.get.return_value.execute.call_count == 1
    assert not connectivity.is_online

    calendars.get.return_value.execute.side_effect = None
    calendars.get.return_value.execute.return_value = {'id': 'primary'}
    await service.check_reachable('primary')

    calendars.get.assert_called_with(calendarId='primary')
    assert connectivity.is_online


@pytest.mark.asyncio
async def test_update_patches_event(service):
    body = {'summary': 'Essay v2'}
    events_api(service).patch.return_value.execute.return_value = event_payload('evt-1', summary='Essay v2')

    event = await service.update_event('primary', 'evt-1', body)

    assert event.summary == 'Essay v2'
    events_api(service).patch.assert_called_once_with(calendarId='primary', eventId='evt-1', body=body)
    events_api(service).update.assert_not_called()


@pytest.mark.asyncio
async def test_watch_sends_channel_token(service):
    events_api(service).watch.return_value.execute.return_value = {'id': 'ch-1', 'resourceId': 'res-1'}

    result = await service.watch_events('primary', 'ch-1', 'https://example.com/hook', token='secret')

    assert result['resourceId'] == 'res-1'
    sent = events_api(service).watch.call_args.kwargs['body']
    assert sent == {'id': 'ch-1', 'type': 'web_hook', 'address': 'https://example.com/hook', 'token': 'secret'}


def test_parse_channel_expiration():
    assert parse_channel_expiration(None) is None
    assert parse_channel_expiration('1709294400000') == T0
