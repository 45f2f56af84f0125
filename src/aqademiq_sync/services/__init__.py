"""Calendar service interfaces and implementations."""

from .base import (
    AuthenticationError,
    BaseCalendarService,
    CalendarServiceError,
    EventNotFoundError,
    RateLimitError,
    SyncTokenExpired,
    TransientError,
)
from .google import GoogleCalendarService

__all__ = [
    'BaseCalendarService',
    'CalendarServiceError',
    'AuthenticationError',
    'RateLimitError',
    'TransientError',
    'EventNotFoundError',
    'SyncTokenExpired',
    'GoogleCalendarService',
]
