"""Data models for calendar synchronization."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from dataclasses import dataclass

from pydantic import BaseModel, Field, field_validator, model_validator
import pytz


class ColorName(str, Enum):
    """Palette colors, in assignment order."""

    GRAY = "gray"
    BLUE = "blue"
    GREEN = "green"
    RED = "red"
    YELLOW = "yellow"
    PURPLE = "purple"
    ORANGE = "orange"


COLOR_PALETTE: List[ColorName] = list(ColorName)


def color_by_index(index: int) -> ColorName:
    """Return the palette color for an index, cycling past the end."""
    return COLOR_PALETTE[index % len(COLOR_PALETTE)]


class SyncDecision(str, Enum):
    """Which side wins an update conflict."""

    PUSH_LOCAL = "push_local"
    PULL_REMOTE = "pull_remote"


class SyncOperation(str, Enum):
    """Sync operation types."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


class SyncDirection(str, Enum):
    """Where a sync operation was applied."""

    LOCAL = "local"    # remote change pulled into the local store
    REMOTE = "remote"  # local change pushed to Google


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=pytz.UTC)
    return value


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class CalendarEvent(BaseModel):
    """A locally stored calendar event."""

    id: str = Field(..., description="Locally unique event ID")
    date: str = Field(..., description="Calendar day, YYYY-MM-DD")
    title: str = Field("", description="Event title")
    start_time: Optional[int] = Field(None, ge=0, le=1439, description="Minutes since midnight")
    end_time: Optional[int] = Field(None, ge=0, le=1439, description="Minutes since midnight")
    color: ColorName = Field(ColorName.GRAY)
    remote_calendar_id: Optional[str] = Field(None, description="Google calendar ID")
    remote_event_id: Optional[str] = Field(None, description="Google event ID")
    remote_etag: Optional[str] = Field(None, description="Google ETag of the last seen version")
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator('updated_at', mode='before')
    @classmethod
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        return as_utc(v)

    @field_validator('date')
    @classmethod
    def validate_date(cls, v):
        date.fromisoformat(v)
        return v

    @model_validator(mode='after')
    def check_times_and_linkage(self):
        if self.start_time is not None and self.end_time is not None and self.end_time < self.start_time:
            raise ValueError(
                f'End time ({self.end_time}) must not be before start time ({self.start_time})'
            )
        if self.remote_event_id and not self.remote_calendar_id:
            raise ValueError('remote_event_id requires remote_calendar_id')
        return self

    @property
    def is_remote_linked(self) -> bool:
        return bool(self.remote_event_id)


class CalendarRecord(BaseModel):
    """A Google calendar known to the local store."""

    remote_calendar_id: str = Field(..., description="Google calendar ID")
    name: str = Field("Untitled")
    color: ColorName = Field(ColorName.GRAY)
    enabled: bool = Field(False, description="Whether the engine syncs this calendar")
    can_write: bool = Field(False, description="Derived from the remote access role")
    sync_cursor: Optional[str] = Field(None, description="Google nextSyncToken")
    last_sync_at: Optional[datetime] = Field(None)

    @field_validator('last_sync_at', mode='before')
    @classmethod
    def ensure_timezone_aware(cls, v):
        return as_utc(v)


class DeletionTombstone(BaseModel):
    """Pending remote deletion of a locally deleted event."""

    remote_calendar_id: str
    remote_event_id: str
    deleted_at: datetime = Field(default_factory=utcnow)

    @field_validator('deleted_at', mode='before')
    @classmethod
    def ensure_timezone_aware(cls, v):
        return as_utc(v)


class CalendarInfo(BaseModel):
    """Calendar list entry as reported by Google."""

    id: str = Field(..., description="Calendar ID")
    name: str = Field(..., description="Calendar name")
    access_role: Optional[str] = Field(None)
    is_primary: bool = Field(False)

    @property
    def can_write(self) -> bool:
        return self.access_role in ('owner', 'writer')


class RemoteEvent(BaseModel):
    """Google event item converted to local terms."""

    id: str
    status: str = Field("confirmed")
    title: str = Field("(No title)")
    date: Optional[str] = Field(None, description="Start day, YYYY-MM-DD")
    start_time: Optional[int] = Field(None)
    end_time: Optional[int] = Field(None)
    updated: Optional[datetime] = Field(None)
    etag: Optional[str] = Field(None)
    recurring_event_id: Optional[str] = Field(None)
    original_data: Optional[Dict[str, Any]] = Field(None)

    @field_validator('updated', mode='before')
    @classmethod
    def ensure_timezone_aware(cls, v):
        return as_utc(v)

    @property
    def cancelled(self) -> bool:
        return self.status == 'cancelled'


@dataclass
class EventPage:
    items: List[RemoteEvent]
    next_page_token: Optional[str] = None
    next_sync_token: Optional[str] = None


@dataclass(frozen=True)
class SyncWindow:
    """Half-open date range [start, end) that is ever synchronized."""

    start: date
    end: date

    @classmethod
    def current(cls, now: datetime, years: int = 2) -> 'SyncWindow':
        year = now.astimezone(pytz.UTC).year
        return cls(date(year, 1, 1), date(year + years, 1, 1))

    def contains(self, day: Optional[str]) -> bool:
        if not day:
            return False
        return self.start.isoformat() <= day < self.end.isoformat()

    @property
    def time_min(self) -> str:
        return f"{self.start.isoformat()}T00:00:00Z"

    @property
    def time_max(self) -> str:
        return f"{self.end.isoformat()}T00:00:00Z"


class OAuthTokens(BaseModel):
    """Stored Google OAuth credentials."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None

    @field_validator('expiry', mode='before')
    @classmethod
    def ensure_timezone_aware(cls, v):
        return as_utc(v)


class SyncResult(BaseModel):
    """Result of a single synchronization operation."""

    operation: SyncOperation
    direction: SyncDirection
    calendar_id: str
    local_event_id: Optional[str] = None
    remote_event_id: Optional[str] = None
    title: Optional[str] = None


class CalendarSyncResult(BaseModel):
    """Outcome of one pass over a calendar."""

    calendar_id: str
    started_at: datetime = Field(default_factory=utcnow)
    new_cursor: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    cursor_restarted: bool = False
    tombstones_cleared: int = 0
    results: List[SyncResult] = Field(default_factory=list)

    def record(self, operation: SyncOperation, direction: SyncDirection, **kwargs) -> None:
        self.results.append(SyncResult(
            operation=operation, direction=direction, calendar_id=self.calendar_id, **kwargs
        ))

    def count(self, operation: SyncOperation, direction: SyncDirection) -> int:
        return sum(1 for r in self.results if r.operation == operation and r.direction == direction)


class SyncReport(BaseModel):
    """Comprehensive sync report."""

    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(None)
    calendars: List[CalendarSyncResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    def count(self, operation: SyncOperation, direction: SyncDirection) -> int:
        return sum(c.count(operation, direction) for c in self.calendars)

    @property
    def total_operations(self) -> int:
        return sum(len(c.results) for c in self.calendars)

    @property
    def success(self) -> bool:
        return not self.errors


class SyncConfiguration(BaseModel):
    """Sync configuration model."""

    sync_interval_minutes: int = Field(15, ge=1)
    sync_range_years: int = Field(2, ge=1)
    max_results: int = Field(2500, ge=1, le=2500)
    max_retries: int = Field(3, ge=0)
    retry_base_delay_seconds: float = Field(0.5, ge=0)
    token_expiry_margin_seconds: int = Field(60, ge=0)
    timezone: str = Field("UTC", description="IANA timezone for timed events")
    default_event_duration_minutes: int = Field(60, ge=0)

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v):
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone: {v}")
        return v
