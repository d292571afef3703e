"""Database models and operations for the local event store and sync state."""

import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from sqlalchemy import create_engine, Column, String, DateTime, Boolean, Text, Integer, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base, sessionmaker, Session
import pytz

from .config import Settings
from .models import CalendarEvent, CalendarRecord, ColorName, DeletionTombstone, utcnow

Base = declarative_base()


def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Store timestamps as naive UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(pytz.UTC).replace(tzinfo=None)
    return value


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=pytz.UTC)
    return value.astimezone(pytz.UTC)


class CalendarDB(Base):
    """Database model for Google calendars known locally."""

    __tablename__ = 'calendars'

    remote_calendar_id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False, default='Untitled')
    color = Column(String(20), nullable=False, default=ColorName.GRAY.value)
    enabled = Column(Boolean, nullable=False, default=False)
    can_write = Column(Boolean, nullable=False, default=False)

    # Google nextSyncToken for incremental sync
    sync_cursor = Column(String(1000), nullable=True)
    last_sync_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=lambda: _to_db_time(utcnow()))
    updated_at = Column(DateTime, nullable=False, default=lambda: _to_db_time(utcnow()))

    __table_args__ = (
        Index('idx_calendar_enabled', 'enabled'),
    )

    def to_model(self) -> CalendarRecord:
        return CalendarRecord(
            remote_calendar_id=self.remote_calendar_id,
            name=self.name,
            color=ColorName(self.color),
            enabled=self.enabled,
            can_write=self.can_write,
            sync_cursor=self.sync_cursor,
            last_sync_at=_from_db_time(self.last_sync_at),
        )


class EventDB(Base):
    """Database model for local calendar events."""

    __tablename__ = 'events'

    id = Column(String(64), primary_key=True)
    date = Column(String(10), nullable=False)  # YYYY-MM-DD
    title = Column(String(500), nullable=False, default='')
    start_time = Column(Integer, nullable=True)
    end_time = Column(Integer, nullable=True)
    color = Column(String(20), nullable=False, default=ColorName.GRAY.value)

    # Remote linkage
    remote_calendar_id = Column(String(255), ForeignKey('calendars.remote_calendar_id'), nullable=True)
    remote_event_id = Column(String(1024), nullable=True)
    remote_etag = Column(String(255), nullable=True)

    created_at = Column(DateTime, nullable=False, default=lambda: _to_db_time(utcnow()))
    updated_at = Column(DateTime, nullable=False, default=lambda: _to_db_time(utcnow()))

    __table_args__ = (
        UniqueConstraint('remote_calendar_id', 'remote_event_id', name='uq_event_remote'),
        Index('idx_event_date', 'date'),
        Index('idx_event_remote', 'remote_calendar_id', 'remote_event_id'),
        Index('idx_event_updated', 'remote_calendar_id', 'updated_at'),
    )

    def to_model(self) -> CalendarEvent:
        return CalendarEvent(
            id=self.id,
            date=self.date,
            title=self.title,
            start_time=self.start_time,
            end_time=self.end_time,
            color=ColorName(self.color),
            remote_calendar_id=self.remote_calendar_id,
            remote_event_id=self.remote_event_id,
            remote_etag=self.remote_etag,
            updated_at=_from_db_time(self.updated_at),
        )


class DeletionDB(Base):
    """Database model for pending remote deletions (tombstones)."""

    __tablename__ = 'deletion_tombstones'

    remote_calendar_id = Column(String(255), primary_key=True)
    remote_event_id = Column(String(1024), primary_key=True)
    deleted_at = Column(DateTime, nullable=False, default=lambda: _to_db_time(utcnow()))

    def to_model(self) -> DeletionTombstone:
        return DeletionTombstone(
            remote_calendar_id=self.remote_calendar_id,
            remote_event_id=self.remote_event_id,
            deleted_at=_from_db_time(self.deleted_at),
        )


class SyncSessionDB(Base):
    """Database model for sync sessions."""

    __tablename__ = 'sync_sessions'

    id = Column(String(32), primary_key=True, default=lambda: uuid4().hex)
    started_at = Column(DateTime, nullable=False, default=lambda: _to_db_time(utcnow()))
    completed_at = Column(DateTime, nullable=True)
    force_full = Column(Boolean, nullable=False, default=False)

    # Counters
    calendars_synced = Column(Integer, default=0)
    local_created = Column(Integer, default=0)
    local_updated = Column(Integer, default=0)
    local_deleted = Column(Integer, default=0)
    remote_created = Column(Integer, default=0)
    remote_updated = Column(Integer, default=0)
    remote_deleted = Column(Integer, default=0)

    # Status
    status = Column(String(20), nullable=False, default='running')  # 'running', 'completed', 'failed'
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_sync_session_started', 'started_at'),
        Index('idx_sync_session_status', 'status'),
    )


_EVENT_FIELDS = (
    'date', 'title', 'start_time', 'end_time', 'color',
    'remote_calendar_id', 'remote_event_id', 'remote_etag',
)


class DatabaseManager:
    """Local store for events, calendars, tombstones and sync sessions.

    Every unit of work runs inside :meth:`session_scope`, which holds a
    process-wide lock for the whole transaction. Mutations from the sync
    engine and from user actions are therefore applied one at a time and
    never observed half-applied.
    """

    _write_lock = threading.RLock()

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        connect_args = {}
        if settings.database_url.startswith('sqlite'):
            connect_args['check_same_thread'] = False
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        """Drop every table (used by ``reset``)."""
        Base.metadata.drop_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Serialized transactional scope: commit on success, rollback on error."""
        with self._write_lock:
            session = self.SessionLocal()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def get_event(self, session: Session, event_id: str) -> Optional[CalendarEvent]:
        row = session.get(EventDB, event_id)
        return row.to_model() if row else None

    def list_events(
        self,
        session: Session,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None
    ) -> List[CalendarEvent]:
        """List events ordered by date and start time, optionally within [date_from, date_to]."""
        query = session.query(EventDB)
        if date_from:
            query = query.filter(EventDB.date >= date_from)
        if date_to:
            query = query.filter(EventDB.date <= date_to)
        rows = query.order_by(EventDB.date.asc(), EventDB.start_time.asc().nulls_first()).all()
        return [row.to_model() for row in rows]

    def find_event_by_remote_id(
        self,
        session: Session,
        calendar_id: str,
        remote_event_id: str
    ) -> Optional[CalendarEvent]:
        """Find the local counterpart of a Google event."""
        row = session.query(EventDB).filter(
            EventDB.remote_calendar_id == calendar_id,
            EventDB.remote_event_id == remote_event_id
        ).first()
        return row.to_model() if row else None

    def find_events_updated_after(
        self,
        session: Session,
        calendar_id: str,
        timestamp: datetime
    ) -> List[CalendarEvent]:
        """Find events linked to a calendar that changed locally after ``timestamp``."""
        rows = session.query(EventDB).filter(
            EventDB.remote_calendar_id == calendar_id,
            EventDB.updated_at > _to_db_time(timestamp)
        ).all()
        return [row.to_model() for row in rows]

    def find_events_missing_remote_link(self, session: Session) -> List[CalendarEvent]:
        """Find events that were never created remotely."""
        rows = session.query(EventDB).filter(
            EventDB.remote_event_id.is_(None)
        ).order_by(EventDB.date.asc()).all()
        return [row.to_model() for row in rows]

    def _check_linkage(self, session: Session, calendar_id: Optional[str], remote_event_id: Optional[str]) -> None:
        if not remote_event_id:
            return
        if not calendar_id or session.get(CalendarDB, calendar_id) is None:
            raise ValueError(f"Remote-linked event references unknown calendar: {calendar_id}")

    def insert_event(self, session: Session, event: CalendarEvent) -> CalendarEvent:
        """Insert a new event.

        Raises:
            ValueError: If the remote linkage references an unknown calendar
        """
        self._check_linkage(session, event.remote_calendar_id, event.remote_event_id)
        row = EventDB(
            id=event.id,
            date=event.date,
            title=event.title,
            start_time=event.start_time,
            end_time=event.end_time,
            color=ColorName(event.color).value,
            remote_calendar_id=event.remote_calendar_id,
            remote_event_id=event.remote_event_id,
            remote_etag=event.remote_etag,
            updated_at=_to_db_time(event.updated_at),
        )
        session.add(row)
        session.flush()
        return row.to_model()

    def update_event(
        self,
        session: Session,
        event_id: str,
        updated_at: Optional[datetime] = None,
        **changes: Any
    ) -> Optional[CalendarEvent]:
        """Apply a partial update to an event.

        ``updated_at`` defaults to now, and never moves backwards when
        defaulted.

        Returns:
            The updated event, or None if it does not exist
        """
        unknown = set(changes) - set(_EVENT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown event fields: {sorted(unknown)}")

        row = session.get(EventDB, event_id)
        if row is None:
            return None

        merged = row.to_model().model_dump()
        merged.update(changes)
        CalendarEvent(**merged)  # validate the resulting state
        self._check_linkage(session, merged['remote_calendar_id'], merged['remote_event_id'])

        for key, value in changes.items():
            if key == 'color' and value is not None:
                value = ColorName(value).value
            setattr(row, key, value)

        if updated_at is None:
            now = _to_db_time(utcnow())
            if row.updated_at is not None and now <= row.updated_at:
                now = row.updated_at + timedelta(microseconds=1)
            row.updated_at = now
        else:
            row.updated_at = _to_db_time(updated_at)
        session.flush()
        return row.to_model()

    def delete_event(self, session: Session, event_id: str, track_remote: bool = False) -> bool:
        """Delete an event.

        Args:
            session: Database session
            event_id: Local event ID
            track_remote: Record a tombstone when the event is linked to a
                writable Google calendar (user-initiated deletions)

        Returns:
            True if an event was deleted
        """
        row = session.get(EventDB, event_id)
        if row is None:
            return False
        if track_remote and row.remote_event_id and row.remote_calendar_id:
            calendar = session.get(CalendarDB, row.remote_calendar_id)
            # Read-only calendars never flush tombstones
            if calendar is not None and calendar.can_write:
                self.record_deletion(session, row.remote_calendar_id, row.remote_event_id)
        session.delete(row)
        session.flush()
        return True

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    def list_calendars(self, session: Session, enabled_only: bool = False) -> List[CalendarRecord]:
        query = session.query(CalendarDB)
        if enabled_only:
            query = query.filter(CalendarDB.enabled.is_(True))
        rows = query.order_by(CalendarDB.name.asc(), CalendarDB.remote_calendar_id.asc()).all()
        return [row.to_model() for row in rows]

    def get_calendar(self, session: Session, calendar_id: str) -> Optional[CalendarRecord]:
        row = session.get(CalendarDB, calendar_id)
        return row.to_model() if row else None

    def upsert_calendar(self, session: Session, record: CalendarRecord) -> CalendarRecord:
        row = session.get(CalendarDB, record.remote_calendar_id)
        if row is None:
            row = CalendarDB(remote_calendar_id=record.remote_calendar_id)
            session.add(row)
        row.name = record.name
        row.color = ColorName(record.color).value
        row.enabled = record.enabled
        row.can_write = record.can_write
        row.sync_cursor = record.sync_cursor
        row.last_sync_at = _to_db_time(record.last_sync_at)
        row.updated_at = _to_db_time(utcnow())
        session.flush()
        return row.to_model()

    def set_calendar_enabled(self, session: Session, calendar_id: str, enabled: bool) -> bool:
        row = session.get(CalendarDB, calendar_id)
        if row is None:
            return False
        row.enabled = enabled
        row.updated_at = _to_db_time(utcnow())
        return True

    def update_sync_state(
        self,
        session: Session,
        calendar_id: str,
        sync_cursor: Optional[str],
        last_sync_at: Optional[datetime]
    ) -> None:
        row = session.get(CalendarDB, calendar_id)
        if row is None:
            raise ValueError(f"Unknown calendar: {calendar_id}")
        row.sync_cursor = sync_cursor
        row.last_sync_at = _to_db_time(last_sync_at)
        row.updated_at = _to_db_time(utcnow())

    # ------------------------------------------------------------------
    # Tombstones
    # ------------------------------------------------------------------

    def record_deletion(self, session: Session, calendar_id: str, remote_event_id: str) -> None:
        """Record (or refresh) a tombstone; at most one exists per event."""
        row = session.get(DeletionDB, (calendar_id, remote_event_id))
        if row is None:
            row = DeletionDB(remote_calendar_id=calendar_id, remote_event_id=remote_event_id)
            session.add(row)
        row.deleted_at = _to_db_time(utcnow())
        session.flush()

    def get_deletions(self, session: Session, calendar_id: Optional[str] = None) -> List[DeletionTombstone]:
        query = session.query(DeletionDB)
        if calendar_id is not None:
            query = query.filter(DeletionDB.remote_calendar_id == calendar_id)
        return [row.to_model() for row in query.order_by(DeletionDB.deleted_at.asc()).all()]

    def has_deletion(self, session: Session, calendar_id: str, remote_event_id: str) -> bool:
        return session.get(DeletionDB, (calendar_id, remote_event_id)) is not None

    def clear_deletion(self, session: Session, calendar_id: str, remote_event_id: str) -> bool:
        row = session.get(DeletionDB, (calendar_id, remote_event_id))
        if row is None:
            return False
        session.delete(row)
        session.flush()
        return True

    # ------------------------------------------------------------------
    # Sync sessions
    # ------------------------------------------------------------------

    def create_sync_session(self, session: Session, force_full: bool = False) -> SyncSessionDB:
        sync_session = SyncSessionDB(force_full=force_full)
        session.add(sync_session)
        session.flush()
        return sync_session

    def complete_sync_session(
        self,
        session: Session,
        session_id: str,
        status: str,
        counters: Optional[Dict[str, int]] = None,
        error_message: Optional[str] = None
    ) -> None:
        sync_session = session.get(SyncSessionDB, session_id)
        if sync_session is None:
            return
        sync_session.completed_at = _to_db_time(utcnow())
        sync_session.status = status
        sync_session.error_message = error_message
        for key, value in (counters or {}).items():
            setattr(sync_session, key, value)

    def get_recent_sync_sessions(self, session: Session, limit: int = 10) -> List[SyncSessionDB]:
        return session.query(SyncSessionDB).order_by(
            SyncSessionDB.started_at.desc()
        ).limit(limit).all()
