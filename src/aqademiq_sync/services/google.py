"""Google Calendar service implementation with async support."""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from google.auth.exceptions import GoogleAuthError, RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import httplib2
import pytz
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .base import (
    AuthenticationError,
    BaseCalendarService,
    CalendarServiceError,
    EventNotFoundError,
    RateLimitError,
    SyncTokenExpired,
    TransientError,
)
from ..config import Settings
from ..connectivity import ConnectivityService
from ..database import DatabaseManager
from ..models import ChangeSet, RemoteEvent, ensure_timezone_aware, parse_remote_event, utc_now


def _client_config(settings: Settings) -> Dict[str, Any]:
    return {
        "installed": {
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": settings.google_token_uri,
            "redirect_uris": ["http://localhost"],
        }
    }


def run_oauth_flow(settings: Settings, db: DatabaseManager, user_id: str) -> None:
    """Run the browser consent flow and store the resulting tokens for user_id."""
    flow = InstalledAppFlow.from_client_config(_client_config(settings), settings.google_scopes)
    creds = flow.run_local_server(port=0)
    with db.get_session() as session:
        db.save_google_token(
            session,
            user_id,
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expires_at=ensure_timezone_aware(creds.expiry),
            scopes=list(creds.scopes or settings.google_scopes)
        )


class GoogleCalendarService(BaseCalendarService):
    """Google Calendar API client for one user."""

    def __init__(
        self,
        settings: Settings,
        db: DatabaseManager,
        user_id: str,
        connectivity: Optional[ConnectivityService] = None
    ):
        """Initialize Google Calendar service.

        Args:
            settings: Application settings
            db: Database holding the user's OAuth tokens
            user_id: Owner of the calendar
            connectivity: Receives transport success/failure reports
        """
        super().__init__(settings, user_id)
        self.db = db
        self.connectivity = connectivity
        self.service = None

    async def authenticate(self) -> None:
        """Build the API client from stored tokens, refreshing them when close to expiry."""
        with self.db.get_session() as session:
            token = self.db.get_google_token(session, self.user_id)
        if token is None:
            raise AuthenticationError(
                f"No Google tokens stored for user {self.user_id}; run 'aqademiq-sync google connect'"
            )

        expiry = ensure_timezone_aware(token.expires_at)
        creds = Credentials(
            token=token.access_token,
            refresh_token=token.refresh_token,
            token_uri=self.settings.google_token_uri,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scopes=token.scopes.split() if token.scopes else self.settings.google_scopes,
            # google-auth compares against naive UTC
            expiry=expiry.replace(tzinfo=None) if expiry else None,
        )

        margin = timedelta(minutes=self.settings.sync_config.token_refresh_margin_minutes)
        if expiry is None or expiry - margin <= utc_now():
            await self._refresh(creds)

        http = AuthorizedHttp(creds, http=httplib2.Http(timeout=self.settings.request_timeout_seconds))
        self.service = build('calendar', 'v3', http=http, cache_discovery=False)
        self._authenticated = True
        self.logger.info(f"Authenticated Google Calendar for user {self.user_id}")

    async def _refresh(self, creds: Credentials) -> None:
        if not creds.refresh_token:
            raise AuthenticationError(f"Google token for user {self.user_id} expired and has no refresh token")
        try:
            await asyncio.get_event_loop().run_in_executor(None, lambda: creds.refresh(Request()))
        except RefreshError as e:
            raise AuthenticationError(f"Google token refresh failed: {e}") from e
        except GoogleAuthError as e:
            self._report_failure(e)
            raise TransientError(f"Google token refresh failed: {e}") from e

        with self.db.get_session() as session:
            self.db.save_google_token(
                session,
                self.user_id,
                access_token=creds.token,
                refresh_token=creds.refresh_token,
                expires_at=ensure_timezone_aware(creds.expiry),
                scopes=list(creds.scopes) if creds.scopes else None
            )
        self.logger.info(f"Refreshed Google token for user {self.user_id}")

    def _report_success(self) -> None:
        if self.connectivity is not None:
            self.connectivity.report_success()

    def _report_failure(self, error: Exception) -> None:
        if self.connectivity is not None:
            self.connectivity.report_failure(error)

    def _translate_http_error(self, e: HttpError) -> CalendarServiceError:
        status = e.resp.status
        content = e.content.decode('utf-8', 'replace') if isinstance(e.content, bytes) else str(e.content)
        if status == 429 or (status == 403 and 'rateLimitExceeded' in content):
            return RateLimitError(f"Google API rate limited: {e}")
        if status in (401, 403):
            return AuthenticationError(f"Google API refused credentials: {e}")
        if status == 404:
            return EventNotFoundError(f"Google resource not found: {e}")
        if status == 410:
            return SyncTokenExpired("Google sync token expired")
        if status >= 500:
            return TransientError(f"Google API server error {status}: {e}")
        return CalendarServiceError(f"Google API error {status}: {e}")

    async def _call(self, request_fn: Callable[[], Any]) -> Any:
        try:
            result = await asyncio.get_event_loop().run_in_executor(None, request_fn)
        except HttpError as e:
            # An HTTP response means the network is fine
            self._report_success()
            raise self._translate_http_error(e) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            self._report_failure(e)
            raise TransientError(f"Google API transport error: {e}") from e
        self._report_success()
        return result

    async def _execute(self, request_fn: Callable[[], Any]) -> Any:
        """Run a blocking API request with timeout-bound transport and bounded retries."""
        self._ensure_authenticated()
        config = self.settings.sync_config
        retrying = AsyncRetrying(
            stop=stop_after_attempt(config.retry_attempts),
            wait=wait_exponential(multiplier=config.retry_delay_seconds, max=30),
            retry=retry_if_exception_type((RateLimitError, TransientError)),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._call(request_fn)

    async def get_changes(
        self,
        calendar_id: str,
        *,
        sync_token: Optional[str] = None,
        time_min: Optional[datetime] = None,
    ) -> ChangeSet:
        """Return changed events, including cancellations.

        With a sync token only the deltas since that token are listed. Without
        one, every event starting after time_min is returned and
        ``used_sync_token`` is False.
        """
        items: List[Dict[str, Any]] = []
        next_sync_token: Optional[str] = None
        page_token: Optional[str] = None
        page_size = min(2500, self.settings.sync_config.max_events_per_sync)

        while True:
            params: Dict[str, Any] = {
                'calendarId': calendar_id,
                'maxResults': page_size,
                'showDeleted': True,
                'singleEvents': True,
            }
            if sync_token:
                # Time filters are rejected together with syncToken
                params['syncToken'] = sync_token
            else:
                if time_min is None:
                    time_min = utc_now() - timedelta(days=self.settings.sync_config.sync_past_days)
                params['timeMin'] = ensure_timezone_aware(time_min).isoformat()
            if page_token:
                params['pageToken'] = page_token

            result = await self._execute(lambda p=params: self.service.events().list(**p).execute())
            items.extend(result.get('items', []))

            page_token = result.get('nextPageToken')
            next_sync_token = result.get('nextSyncToken') or next_sync_token
            if not page_token:
                break

        self.logger.debug(f"Fetched {len(items)} changed Google events (sync token: {bool(sync_token)})")
        return ChangeSet(items=items, next_sync_token=next_sync_token, used_sync_token=bool(sync_token))

    async def check_reachable(self, calendar_id: str) -> None:
        """Fetch the calendar resource once, without retries."""
        self._ensure_authenticated()
        await self._call(lambda: self.service.calendars().get(calendarId=calendar_id).execute())

    async def get_event(self, calendar_id: str, event_id: str) -> RemoteEvent:
        """Get a specific Google Calendar event."""
        event_data = await self._execute(
            lambda: self.service.events().get(calendarId=calendar_id, eventId=event_id).execute()
        )
        return parse_remote_event(event_data)

    async def create_event(self, calendar_id: str, body: Dict[str, Any]) -> RemoteEvent:
        """Create a new Google Calendar event."""
        created = await self._execute(
            lambda: self.service.events().insert(calendarId=calendar_id, body=body).execute()
        )
        self.logger.info(f"Created Google event {created.get('id')}: {body.get('summary')}")
        return parse_remote_event(created)

    async def update_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> RemoteEvent:
        """Patch a Google Calendar event, leaving fields outside body untouched."""
        updated = await self._execute(
            lambda: self.service.events().patch(calendarId=calendar_id, eventId=event_id, body=body).execute()
        )
        self.logger.info(f"Updated Google event {event_id}: {body.get('summary')}")
        return parse_remote_event(updated)

    async def watch_events(
        self,
        calendar_id: str,
        channel_id: str,
        address: str,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        """Register a web_hook channel for the calendar's events."""
        body = {'id': channel_id, 'type': 'web_hook', 'address': address}
        if token:
            body['token'] = token
        return await self._execute(
            lambda: self.service.events().watch(calendarId=calendar_id, body=body).execute()
        )

    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        await self._execute(
            lambda: self.service.channels().stop(body={'id': channel_id, 'resourceId': resource_id}).execute()
        )


def parse_channel_expiration(value: Optional[str]) -> Optional[datetime]:
    """Google reports channel expiration as epoch milliseconds."""
    if not value:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=pytz.UTC)
