"""Base calendar service interface with async support."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional
import logging

from ..models import ChangeSet, RemoteEvent
from ..config import Settings

logger = logging.getLogger(__name__)


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""
    pass


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors."""
    pass


class RateLimitError(CalendarServiceError):
    """Rate limiting errors."""
    pass


class TransientError(CalendarServiceError):
    """Server-side or transport failure worth retrying."""
    pass


class EventNotFoundError(CalendarServiceError):
    """Event not found errors."""
    pass


class SyncTokenExpired(CalendarServiceError):
    """The incremental sync token is no longer valid (HTTP 410)."""
    pass


class BaseCalendarService(ABC):
    """Abstract base class for a user's remote calendar."""

    def __init__(self, settings: Settings, user_id: str):
        """Initialize calendar service.

        Args:
            settings: Application settings
            user_id: Owner of the calendar
        """
        self.settings = settings
        self.user_id = user_id
        self.logger = logger.getChild(type(self).__name__)
        self._authenticated = False

    @abstractmethod
    async def authenticate(self) -> None:
        """Authenticate with the calendar service.

        Raises:
            AuthenticationError: If authentication fails
        """
        pass

    @abstractmethod
    async def get_changes(
        self,
        calendar_id: str,
        *,
        sync_token: Optional[str] = None,
        time_min: Optional[datetime] = None,
    ) -> ChangeSet:
        """Return raw changed items since sync_token, or a window snapshot from time_min.

        Raises:
            SyncTokenExpired: If sync_token is no longer accepted
            CalendarServiceError: If events cannot be retrieved
        """
        pass

    @abstractmethod
    async def check_reachable(self, calendar_id: str) -> None:
        """Make one cheap request to confirm the calendar can be reached.

        Raises:
            TransientError: If the service cannot be reached
        """
        pass

    @abstractmethod
    async def get_event(self, calendar_id: str, event_id: str) -> RemoteEvent:
        """Get a specific event by ID.

        Raises:
            EventNotFoundError: If event not found
            CalendarServiceError: If event cannot be retrieved
        """
        pass

    @abstractmethod
    async def create_event(self, calendar_id: str, body: Dict[str, Any]) -> RemoteEvent:
        """Create a new event from an API body.

        Raises:
            CalendarServiceError: If event cannot be created
        """
        pass

    @abstractmethod
    async def update_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> RemoteEvent:
        """Update an existing event with the fields in body.

        Raises:
            EventNotFoundError: If event not found
            CalendarServiceError: If event cannot be updated
        """
        pass

    @abstractmethod
    async def watch_events(
        self,
        calendar_id: str,
        channel_id: str,
        address: str,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        """Register a push notification channel for the calendar's events."""
        pass

    @abstractmethod
    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        """Stop a push notification channel."""
        pass

    def _ensure_authenticated(self):
        """Ensure the service is authenticated.

        Raises:
            AuthenticationError: If not authenticated
        """
        if not self._authenticated:
            raise AuthenticationError("Service not authenticated")
