from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from calmirror.config import Settings
from calmirror.database import DatabaseManager
from calmirror.models import CalendarEvent, CalendarInfo, EventPage, RemoteEvent, SyncConfiguration
from calmirror.services import (
    BaseCalendarService, CursorExpiredError, EventNotFoundError, TokenRefreshError,
)
from calmirror.sync_engine import SyncEngine


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def build_settings(tmp_path, **overrides):
    values = dict(
        google_client_id='x' * 20,
        data_dir=tmp_path,
        database_url=f'sqlite:///{tmp_path}/test.db',
        sync_config=SyncConfiguration(retry_base_delay_seconds=0),
    )
    values.update(overrides)
    return TestSettings(**values)


class FakeClock:
    """UTC clock that advances one second per reading."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 3, 1, 9, 0, tzinfo=pytz.UTC)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class FakeTokenManager:
    def __init__(self):
        self.fail = False
        self.calls = 0

    async def ensure_valid_token(self) -> str:
        self.calls += 1
        if self.fail:
            raise TokenRefreshError("refresh token revoked")
        return "access-token"

    async def close(self):
        return None


class FakeGoogleService(BaseCalendarService):
    """In-memory Google Calendar with a change log behind its sync tokens."""

    def __init__(self, clock: FakeClock, page_size: int = 2):
        self.clock = clock
        self.page_size = page_size
        self.calendars: List[CalendarInfo] = []
        self.events: Dict[str, Dict[str, RemoteEvent]] = {}
        self.changed_at: Dict[str, Dict[str, int]] = {}
        self.seq = 0
        self.issued_tokens: List[str] = []
        self.expired_tokens = set()
        self.expire_during_pagination = False
        self.failures: Dict[str, Exception] = {}
        self.delete_failures: Dict[str, Exception] = {}
        self.list_calls: List[dict] = []
        self.writes: List[tuple] = []
        self._snapshots: Dict[str, tuple] = {}

    # Remote-side helpers

    def add_calendar(self, calendar_id, name, access_role='owner', is_primary=False):
        self.calendars.append(CalendarInfo(
            id=calendar_id, name=name, access_role=access_role, is_primary=is_primary
        ))
        self.events.setdefault(calendar_id, {})
        self.changed_at.setdefault(calendar_id, {})

    def _store(self, calendar_id, event: RemoteEvent) -> RemoteEvent:
        self.seq += 1
        event = event.model_copy(update={'updated': self.clock(), 'etag': f'"{self.seq}"'})
        self.events[calendar_id][event.id] = event
        self.changed_at[calendar_id][event.id] = self.seq
        return event

    def remote_insert(self, calendar_id, title, date, start_time=None, end_time=None) -> RemoteEvent:
        event_id = f"g{self.seq + 1}"
        return self._store(calendar_id, RemoteEvent(
            id=event_id, title=title, date=date, start_time=start_time, end_time=end_time
        ))

    def remote_edit(self, calendar_id, event_id, **fields) -> RemoteEvent:
        return self._store(calendar_id, self.events[calendar_id][event_id].model_copy(update=fields))

    def remote_cancel(self, calendar_id, event_id) -> RemoteEvent:
        return self.remote_edit(calendar_id, event_id, status='cancelled')

    def expire_tokens(self):
        self.expired_tokens.update(self.issued_tokens)

    def _issue_token(self) -> str:
        token = f"token-{self.seq}-{len(self.issued_tokens)}"
        self.issued_tokens.append(token)
        return token

    @property
    def latest_token(self) -> Optional[str]:
        return self.issued_tokens[-1] if self.issued_tokens else None

    def active(self, calendar_id) -> List[RemoteEvent]:
        return [e for e in self.events[calendar_id].values() if not e.cancelled]

    # BaseCalendarService

    async def list_calendars(self):
        return list(self.calendars)

    async def list_events(self, calendar_id, *, sync_token=None, time_min=None, time_max=None, page_token=None):
        self.list_calls.append({
            'calendar_id': calendar_id,
            'sync_token': sync_token,
            'time_min': time_min,
            'time_max': time_max,
            'page_token': page_token,
        })
        if calendar_id in self.failures:
            raise self.failures[calendar_id]
        if sync_token and sync_token in self.expired_tokens:
            raise CursorExpiredError(f"sync token {sync_token} expired")
        if sync_token and page_token and self.expire_during_pagination:
            self.expire_during_pagination = False
            self.expire_tokens()
            raise CursorExpiredError(f"sync token {sync_token} expired")

        if page_token is None:
            if sync_token:
                since = int(sync_token.split('-')[1])
                ids = [i for i, seq in self.changed_at[calendar_id].items() if seq > since]
            else:
                ids = [
                    i for i, e in self.events[calendar_id].items()
                    if e.date and time_min[:10] <= e.date < time_max[:10]
                ]
            ids.sort(key=lambda i: self.changed_at[calendar_id][i])
            snapshot_id = f"snap{len(self._snapshots)}"
            self._snapshots[snapshot_id] = (
                [self.events[calendar_id][i] for i in ids], self._issue_token()
            )
            offset = 0
        else:
            snapshot_id, offset = page_token.split(':')
            offset = int(offset)

        items, token = self._snapshots[snapshot_id]
        page = items[offset:offset + self.page_size]
        if offset + self.page_size < len(items):
            return EventPage(items=page, next_page_token=f"{snapshot_id}:{offset + self.page_size}")
        return EventPage(items=page, next_sync_token=token)

    async def create_event(self, calendar_id, event: CalendarEvent):
        self.writes.append(('create', calendar_id, event.id))
        return self._store(calendar_id, RemoteEvent(
            id=f"g{self.seq + 1}",
            title=event.title,
            date=event.date,
            start_time=event.start_time,
            end_time=event.end_time,
        ))

    async def update_event(self, calendar_id, event_id, event: CalendarEvent):
        self.writes.append(('update', calendar_id, event_id))
        existing = self.events[calendar_id].get(event_id)
        if existing is None:
            raise EventNotFoundError(f"event {event_id} not found", 404)
        return self.remote_edit(
            calendar_id, event_id,
            title=event.title, date=event.date,
            start_time=event.start_time, end_time=event.end_time,
        )

    async def delete_event(self, calendar_id, event_id):
        self.writes.append(('delete', calendar_id, event_id))
        if event_id in self.delete_failures:
            raise self.delete_failures[event_id]
        existing = self.events[calendar_id].get(event_id)
        if existing is None or existing.cancelled:
            return None
        self.remote_cancel(calendar_id, event_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return build_settings(tmp_path)


@pytest.fixture
def settings_factory(tmp_path):
    """Settings rooted in tmp_path, with keyword overrides."""
    def factory(**overrides):
        return build_settings(tmp_path, **overrides)
    return factory


@pytest.fixture
def db_manager(settings):
    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    return db_manager


@pytest.fixture
def google(clock):
    service = FakeGoogleService(clock)
    service.add_calendar('work', 'Work', 'owner', is_primary=True)
    return service


@pytest.fixture
def token_manager():
    return FakeTokenManager()


@pytest.fixture
def engine(settings, db_manager, token_manager, google, clock):
    return SyncEngine(settings, db_manager, token_manager, google, clock=clock)
