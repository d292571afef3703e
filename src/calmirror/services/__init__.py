"""Calendar service interfaces and implementations."""

from .auth import TokenManager, TokenStore
from .base import (
    AuthenticationError, BaseCalendarService, CalendarServiceError, CursorExpiredError,
    EventNotFoundError, NotConnectedError, RemoteApiError, TokenRefreshError,
    TransientHttpError,
)
from .google import GoogleCalendarService
from .http import RetryingClient

__all__ = [
    'AuthenticationError',
    'BaseCalendarService',
    'CalendarServiceError',
    'CursorExpiredError',
    'EventNotFoundError',
    'GoogleCalendarService',
    'NotConnectedError',
    'RemoteApiError',
    'RetryingClient',
    'TokenManager',
    'TokenRefreshError',
    'TokenStore',
    'TransientHttpError',
]
