"""Calendar service interface and error taxonomy."""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..models import CalendarEvent, CalendarInfo, EventPage, RemoteEvent


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""
    pass


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors. Fatal to a whole sync run."""
    pass


class NotConnectedError(AuthenticationError):
    """No refresh token is configured."""
    pass


class TokenRefreshError(AuthenticationError):
    """The token endpoint rejected or failed the refresh."""
    pass


class TransientHttpError(CalendarServiceError):
    """429/5xx or network failure that outlived every retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteApiError(CalendarServiceError):
    """Non-retryable API error (4xx other than 410)."""

    def __init__(self, message: str, status_code: int, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class EventNotFoundError(RemoteApiError):
    """Event not found errors."""
    pass


class CursorExpiredError(CalendarServiceError):
    """The sync token is no longer valid (HTTP 410)."""
    pass


class BaseCalendarService(ABC):
    """Remote calendar operations consumed by the sync engine."""

    @abstractmethod
    async def list_calendars(self) -> List[CalendarInfo]:
        """Get every calendar in the account's calendar list.

        Raises:
            CalendarServiceError: If calendars cannot be retrieved
        """
        pass

    @abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        *,
        sync_token: Optional[str] = None,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> EventPage:
        """Get one page of events, either changes since ``sync_token`` or a time window.

        Raises:
            CursorExpiredError: If ``sync_token`` has expired
            CalendarServiceError: If events cannot be retrieved
        """
        pass

    @abstractmethod
    async def create_event(self, calendar_id: str, event: CalendarEvent) -> RemoteEvent:
        """Create a remote event from a local one and return the stored version."""
        pass

    @abstractmethod
    async def update_event(self, calendar_id: str, event_id: str, event: CalendarEvent) -> RemoteEvent:
        """Patch a remote event with the local fields.

        Raises:
            EventNotFoundError: If event not found
        """
        pass

    @abstractmethod
    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete a remote event. An already missing event counts as deleted."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass
