"""Google Calendar REST service."""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from dateutil.parser import parse as parse_date
import httpx
import pytz

from .base import (
    BaseCalendarService, CursorExpiredError, EventNotFoundError,
    RemoteApiError, TransientHttpError,
)
from .http import RetryingClient, is_retryable_status
from ..config import Settings
from ..models import CalendarEvent, CalendarInfo, EventPage, RemoteEvent

logger = logging.getLogger(__name__)


def _events_path(calendar_id: str, event_id: Optional[str] = None) -> str:
    path = f"/calendars/{quote(calendar_id, safe='')}/events"
    if event_id is not None:
        path += f"/{quote(event_id, safe='')}"
    return path


class GoogleCalendarService(BaseCalendarService):
    """Google Calendar v3 over :class:`RetryingClient`."""

    def __init__(self, settings: Settings, client: RetryingClient):
        """Initialize Google Calendar service.

        Args:
            settings: Application settings
            client: Authenticated retrying HTTP client
        """
        self.settings = settings
        self.client = client
        self.timezone = pytz.timezone(settings.sync_config.timezone)
        self.logger = logger.getChild('google')

    def _raise_for_status(self, response: httpx.Response, action: str) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        body = response.text
        if is_retryable_status(status):
            raise TransientHttpError(f"{action} failed after retries ({status}): {body}", status)
        if status == 404:
            raise EventNotFoundError(f"{action} failed: not found", status, body)
        raise RemoteApiError(f"{action} failed ({status}): {body}", status, body)

    async def list_calendars(self) -> List[CalendarInfo]:
        """Get every calendar of the account, following pagination."""
        calendars: List[CalendarInfo] = []
        page_token: Optional[str] = None

        while True:
            params = {'pageToken': page_token} if page_token else None
            response = await self.client.request('GET', '/users/me/calendarList', params=params)
            self._raise_for_status(response, "Calendar list")
            data = response.json()

            for cal_data in data.get('items', []):
                if not cal_data.get('id'):
                    continue
                calendars.append(CalendarInfo(
                    id=cal_data['id'],
                    name=cal_data.get('summary') or 'Untitled',
                    access_role=cal_data.get('accessRole'),
                    is_primary=cal_data.get('primary', False),
                ))

            page_token = data.get('nextPageToken')
            if not page_token:
                break

        return calendars

    async def list_events(
        self,
        calendar_id: str,
        *,
        sync_token: Optional[str] = None,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> EventPage:
        """Get one page of events.

        ``syncToken`` and ``timeMin``/``timeMax`` are mutually exclusive; when a
        sync token is given the time bounds are not sent.
        """
        params: Dict[str, Any] = {
            'singleEvents': 'true',
            'maxResults': str(self.settings.sync_config.max_results),
            'showDeleted': 'true',
        }
        if sync_token:
            params['syncToken'] = sync_token
        else:
            if time_min:
                params['timeMin'] = time_min
            if time_max:
                params['timeMax'] = time_max
        if page_token:
            params['pageToken'] = page_token

        response = await self.client.request('GET', _events_path(calendar_id), params=params)
        if response.status_code == 410:
            if sync_token:
                self.logger.warning(f"Sync token for calendar {calendar_id} expired (410)")
                raise CursorExpiredError(f"Sync token expired for calendar {calendar_id}")
            raise RemoteApiError(f"Events list for {calendar_id} returned 410", 410, response.text)
        if response.status_code == 404:
            raise RemoteApiError(
                f"Google calendar {calendar_id} not found", 404, response.text
            )
        self._raise_for_status(response, f"Events list for {calendar_id}")

        data = response.json()
        items = []
        for event_data in data.get('items', []):
            try:
                items.append(self._format_google_event(event_data))
            except (KeyError, ValueError) as e:
                self.logger.warning(f"Failed to format Google event {event_data.get('id')}: {e}")
        return EventPage(
            items=items,
            next_page_token=data.get('nextPageToken'),
            next_sync_token=data.get('nextSyncToken'),
        )

    async def create_event(self, calendar_id: str, event: CalendarEvent) -> RemoteEvent:
        body = self._convert_to_google_format(event)
        response = await self.client.request('POST', _events_path(calendar_id), json=body)
        if response.status_code == 404:
            raise RemoteApiError(f"Google calendar {calendar_id} not found", 404, response.text)
        self._raise_for_status(response, f"Create event '{event.title}'")
        created = self._format_google_event(response.json())
        self.logger.info(f"Created Google event {created.id} in {calendar_id}: {event.title}")
        return created

    async def update_event(self, calendar_id: str, event_id: str, event: CalendarEvent) -> RemoteEvent:
        body = self._convert_to_google_format(event)
        if event.start_time is not None and event.end_time is None:
            body['end'] = await self._preserved_end(calendar_id, event_id, body)
        response = await self.client.request('PATCH', _events_path(calendar_id, event_id), json=body)
        self._raise_for_status(response, f"Update event {event_id}")
        updated = self._format_google_event(response.json())
        self.logger.info(f"Updated Google event {event_id} in {calendar_id}: {event.title}")
        return updated

    async def _preserved_end(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Keep a remote end on a later day than the start, which local minutes cannot express."""
        response = await self.client.request('GET', _events_path(calendar_id, event_id))
        self._raise_for_status(response, f"Get event {event_id}")
        remote_end = response.json().get('end') or {}
        if remote_end.get('dateTime'):
            start_day = self._localize(parse_date(body['start']['dateTime'])).date()
            end_day = self._localize(parse_date(remote_end['dateTime'])).date()
            if end_day > start_day:
                return remote_end
        return body['end']

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        response = await self.client.request('DELETE', _events_path(calendar_id, event_id))
        if response.status_code in (404, 410):
            self.logger.debug(f"Google event {event_id} already gone")
            return
        self._raise_for_status(response, f"Delete event {event_id}")
        self.logger.info(f"Deleted Google event {event_id} from {calendar_id}")

    def _format_google_event(self, event_data: Dict[str, Any]) -> RemoteEvent:
        """Convert a Google event payload to a :class:`RemoteEvent`."""
        start = event_data.get('start') or {}
        end = event_data.get('end') or {}

        event_date: Optional[str] = None
        start_time: Optional[int] = None
        end_time: Optional[int] = None

        if start.get('date'):
            event_date = start['date']
        elif start.get('dateTime'):
            start_dt = self._localize(parse_date(start['dateTime']))
            event_date = start_dt.date().isoformat()
            start_time = start_dt.hour * 60 + start_dt.minute
            if end.get('dateTime'):
                end_dt = self._localize(parse_date(end['dateTime']))
                end_minutes = end_dt.hour * 60 + end_dt.minute
                # Only same-day ends map onto a time of day
                if end_dt.date() == start_dt.date() and end_minutes >= start_time:
                    end_time = end_minutes

        updated = None
        if event_data.get('updated'):
            updated = parse_date(event_data['updated'])

        return RemoteEvent(
            id=event_data['id'],
            status=event_data.get('status') or 'confirmed',
            title=event_data.get('summary') or '(No title)',
            date=event_date,
            start_time=start_time,
            end_time=end_time,
            updated=updated,
            etag=event_data.get('etag'),
            recurring_event_id=event_data.get('recurringEventId'),
            original_data=event_data,
        )

    def _localize(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return self.timezone.localize(value)
        return value.astimezone(self.timezone)

    def _convert_to_google_format(self, event: CalendarEvent) -> Dict[str, Any]:
        """Convert a local event to a Google event body."""
        day = date.fromisoformat(event.date)
        body: Dict[str, Any] = {'summary': event.title}

        if event.start_time is None:
            body['start'] = {'date': day.isoformat()}
            body['end'] = {'date': (day + timedelta(days=1)).isoformat()}
            return body

        midnight = self.timezone.localize(datetime(day.year, day.month, day.day))
        start_dt = midnight + timedelta(minutes=event.start_time)
        if event.end_time is not None:
            end_dt = midnight + timedelta(minutes=event.end_time)
        else:
            end_dt = start_dt + timedelta(
                minutes=self.settings.sync_config.default_event_duration_minutes
            )
        zone = self.settings.sync_config.timezone
        body['start'] = {'dateTime': self.timezone.normalize(start_dt).isoformat(), 'timeZone': zone}
        body['end'] = {'dateTime': self.timezone.normalize(end_dt).isoformat(), 'timeZone': zone}
        return body

    async def close(self) -> None:
        await self.client.close()
