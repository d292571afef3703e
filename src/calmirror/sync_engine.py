"""Incremental sync engine with last-write-wins conflict resolution."""

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional, Set
from uuid import uuid4

from sqlalchemy.orm import Session

from .calendar_manager import CalendarDirectory
from .config import Settings
from .database import DatabaseManager
from .deletions import DeletionTracker
from .models import (
    COLOR_PALETTE, CalendarEvent, CalendarRecord, CalendarSyncResult, ColorName,
    RemoteEvent, SyncDecision, SyncDirection, SyncOperation, SyncReport, SyncWindow,
    as_utc, utcnow,
)
from .services import (
    AuthenticationError, BaseCalendarService, CalendarServiceError, CursorExpiredError,
    EventNotFoundError, GoogleCalendarService, RetryingClient, TokenManager,
)

logger = logging.getLogger(__name__)


class ConflictResolver:
    """Decides which side of an update conflict wins."""

    def __init__(self):
        self.logger = logger.getChild('conflict_resolver')

    def resolve(
        self,
        local_updated_at: Optional[datetime],
        remote_updated_at: Optional[datetime],
        can_write: bool
    ) -> SyncDecision:
        """Resolve a conflict by last write.

        Args:
            local_updated_at: Last local mutation
            remote_updated_at: Remote ``updated`` timestamp
            can_write: Whether the calendar accepts writes

        Returns:
            PUSH_LOCAL only when the calendar is writable and the local side
            is strictly newer; equal timestamps go to the remote side
        """
        if not can_write:
            return SyncDecision.PULL_REMOTE
        if local_updated_at is None:
            return SyncDecision.PULL_REMOTE
        if remote_updated_at is None:
            return SyncDecision.PUSH_LOCAL
        if as_utc(local_updated_at) > as_utc(remote_updated_at):
            return SyncDecision.PUSH_LOCAL
        return SyncDecision.PULL_REMOTE


class SyncEngine:
    """Synchronizes the local event store with the enabled Google calendars."""

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        token_manager: TokenManager,
        service: BaseCalendarService,
        directory: Optional[CalendarDirectory] = None,
        deletion_tracker: Optional[DeletionTracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            db_manager: Local store
            token_manager: Source of valid access tokens
            service: Google Calendar service
            directory: Calendar registry (built from ``service`` by default)
            deletion_tracker: Tombstone store (built from ``db_manager`` by default)
            clock: Returns the current UTC time
        """
        self.settings = settings
        self.db_manager = db_manager
        self.token_manager = token_manager
        self.service = service
        self.directory = directory or CalendarDirectory(service, db_manager, settings)
        self.deletion_tracker = deletion_tracker or DeletionTracker(db_manager)
        self.conflict_resolver = ConflictResolver()
        self.last_report: Optional[SyncReport] = None
        self._clock = clock
        self.logger = logger.getChild('sync_engine')

    @classmethod
    def from_settings(cls, settings: Settings) -> 'SyncEngine':
        """Wire up the production collaborators."""
        db_manager = DatabaseManager(settings)
        db_manager.init_db()
        token_manager = TokenManager(settings)
        client = RetryingClient(settings, token_manager.ensure_valid_token)
        service = GoogleCalendarService(settings, client)
        return cls(settings, db_manager, token_manager, service)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        await self.service.close()
        await self.token_manager.close()

    async def run(self, *, force_full: bool = False) -> SyncReport:
        """Validate the token, refresh the directory and sync every enabled calendar.

        Raises:
            AuthenticationError: If no valid token can be obtained
            CalendarServiceError: The first per-calendar failure, after all
                calendars were attempted
        """
        await self.token_manager.ensure_valid_token()
        await self.directory.refresh()

        with self.db_manager.session_scope() as session:
            session_id = self.db_manager.create_sync_session(session, force_full=force_full).id

        try:
            report = await self.sync_all(force_full=force_full)
        except Exception as e:
            self._complete_session(session_id, 'failed', self.last_report, str(e))
            raise

        self._complete_session(session_id, 'completed', report)
        return report

    def _complete_session(
        self,
        session_id: str,
        status: str,
        report: Optional[SyncReport],
        error_message: Optional[str] = None
    ) -> None:
        counters: Dict[str, int] = {}
        if report is not None:
            counters = {
                'calendars_synced': len(report.calendars),
                'local_created': report.count(SyncOperation.CREATE, SyncDirection.LOCAL),
                'local_updated': report.count(SyncOperation.UPDATE, SyncDirection.LOCAL),
                'local_deleted': report.count(SyncOperation.DELETE, SyncDirection.LOCAL),
                'remote_created': report.count(SyncOperation.CREATE, SyncDirection.REMOTE),
                'remote_updated': report.count(SyncOperation.UPDATE, SyncDirection.REMOTE),
                'remote_deleted': report.count(SyncOperation.DELETE, SyncDirection.REMOTE),
            }
        with self.db_manager.session_scope() as session:
            self.db_manager.complete_sync_session(session, session_id, status, counters, error_message)

    async def sync_all(self, *, force_full: bool = False) -> SyncReport:
        """Sync enabled calendars one after another.

        Cursor and last-sync time are stored right after each calendar
        completes. Auth failures abort immediately; any other service error
        is recorded and the remaining calendars still run.

        Raises:
            AuthenticationError: On the first auth failure
            CalendarServiceError: The first per-calendar failure
        """
        report = SyncReport(started_at=self._clock())
        self.last_report = report

        calendars = self.directory.list(enabled_only=True)
        writable = [c for c in calendars if c.can_write]
        # Colors no writable calendar owns fall to the first writable one
        unowned = set(COLOR_PALETTE) - {c.color for c in writable}

        first_error: Optional[CalendarServiceError] = None
        for calendar in calendars:
            claim_colors = None
            if writable and calendar.remote_calendar_id == writable[0].remote_calendar_id:
                claim_colors = {calendar.color} | unowned

            try:
                result = await self.sync_calendar(
                    calendar, force_full=force_full, claim_colors=claim_colors
                )
            except AuthenticationError as e:
                report.errors.append(f"{calendar.name}: {e}")
                report.completed_at = self._clock()
                raise
            except CalendarServiceError as e:
                self.logger.error(f"Sync failed for calendar '{calendar.name}': {e}")
                report.errors.append(f"{calendar.name}: {e}")
                if first_error is None:
                    first_error = e
                continue

            with self.db_manager.session_scope() as session:
                self.db_manager.update_sync_state(
                    session, calendar.remote_calendar_id, result.new_cursor, result.last_sync_at
                )
            report.calendars.append(result)

        report.completed_at = self._clock()
        self.logger.info(
            f"Sync finished: {len(report.calendars)}/{len(calendars)} calendars, "
            f"{report.total_operations} operations, {len(report.errors)} errors"
        )
        if first_error is not None:
            raise first_error
        return report

    async def sync_calendar(
        self,
        calendar: CalendarRecord,
        *,
        force_full: bool = False,
        claim_colors: Optional[Iterable[ColorName]] = None
    ) -> CalendarSyncResult:
        """Run one pass over a calendar.

        Flushes tombstones, pulls remote changes, reconciles every item and
        pushes local edits and local-only events. Nothing about the calendar
        itself is stored here; the caller persists ``new_cursor`` and
        ``last_sync_at`` from the result.

        Args:
            calendar: Calendar to sync
            force_full: Ignore the stored cursor and pull the whole window
            claim_colors: Colors of unlinked local events to create on this
                calendar (defaults to the calendar's own color)
        """
        started_at = self._clock()
        calendar_id = calendar.remote_calendar_id
        result = CalendarSyncResult(calendar_id=calendar_id, started_at=started_at)
        window = SyncWindow.current(started_at, self.settings.sync_config.sync_range_years)
        self.logger.info(f"Syncing calendar '{calendar.name}' ({calendar_id})")

        if calendar.can_write:
            await self._flush_deletions(calendar, result)

        touched: Set[str] = set()
        cursor = None if force_full else calendar.sync_cursor
        result.new_cursor = await self._pull(calendar, window, cursor, result, touched)

        if calendar.can_write:
            await self._push_local_edits(calendar, window, result, touched)
            colors = set(claim_colors) if claim_colors else {calendar.color}
            await self._push_local_creates(calendar, window, colors, result)

        result.last_sync_at = started_at
        self.logger.info(
            f"Calendar '{calendar.name}' done: {len(result.results)} operations, "
            f"cursor {'restarted' if result.cursor_restarted else 'kept'}"
        )
        return result

    async def _flush_deletions(self, calendar: CalendarRecord, result: CalendarSyncResult) -> None:
        calendar_id = calendar.remote_calendar_id
        for tombstone in self.deletion_tracker.list(calendar_id):
            try:
                await self.service.delete_event(calendar_id, tombstone.remote_event_id)
            except AuthenticationError:
                raise
            except CalendarServiceError as e:
                self.logger.warning(
                    f"Remote delete of {tombstone.remote_event_id} failed, will retry next pass: {e}"
                )
                continue
            self.deletion_tracker.clear(calendar_id, tombstone.remote_event_id)
            result.tombstones_cleared += 1
            result.record(
                SyncOperation.DELETE, SyncDirection.REMOTE, remote_event_id=tombstone.remote_event_id
            )

    async def _pull(
        self,
        calendar: CalendarRecord,
        window: SyncWindow,
        cursor: Optional[str],
        result: CalendarSyncResult,
        touched: Set[str]
    ) -> Optional[str]:
        """Page through remote changes and reconcile them.

        Returns:
            The last page's sync token, else the cursor in use
        """
        calendar_id = calendar.remote_calendar_id
        sync_token = cursor
        page_token: Optional[str] = None
        next_sync_token: Optional[str] = None

        while True:
            try:
                page = await self.service.list_events(
                    calendar_id,
                    sync_token=sync_token,
                    time_min=None if sync_token else window.time_min,
                    time_max=None if sync_token else window.time_max,
                    page_token=page_token,
                )
            except CursorExpiredError:
                if not sync_token:
                    raise
                self.logger.warning(
                    f"Cursor for '{calendar.name}' expired, restarting with a full window pull"
                )
                sync_token = None
                page_token = None
                next_sync_token = None
                result.cursor_restarted = True
                continue

            for item in page.items:
                await self._reconcile_item(calendar, item, window, result, touched)

            if page.next_sync_token:
                next_sync_token = page.next_sync_token
            page_token = page.next_page_token
            if not page_token:
                break

        return next_sync_token or sync_token

    async def _reconcile_item(
        self,
        calendar: CalendarRecord,
        item: RemoteEvent,
        window: SyncWindow,
        result: CalendarSyncResult,
        touched: Set[str]
    ) -> None:
        calendar_id = calendar.remote_calendar_id

        with self.db_manager.session_scope() as session:
            if item.cancelled:
                self.db_manager.clear_deletion(session, calendar_id, item.id)
            elif self.db_manager.has_deletion(session, calendar_id, item.id):
                self.logger.debug(f"Skipping {item.id}, its local deletion is still pending")
                return

            local = self.db_manager.find_event_by_remote_id(session, calendar_id, item.id)
            if local is None:
                if item.cancelled or not window.contains(item.date):
                    return
                created = self.db_manager.insert_event(session, self._event_from_remote(calendar, item))
                touched.add(created.id)
                result.record(
                    SyncOperation.CREATE, SyncDirection.LOCAL,
                    local_event_id=created.id, remote_event_id=item.id, title=item.title,
                )
                return

            touched.add(local.id)
            if not item.cancelled and not window.contains(item.date):
                self.db_manager.delete_event(session, local.id)
                result.record(
                    SyncOperation.DELETE, SyncDirection.LOCAL,
                    local_event_id=local.id, remote_event_id=item.id, title=local.title,
                )
                return

            decision = self.conflict_resolver.resolve(local.updated_at, item.updated, calendar.can_write)
            if decision == SyncDecision.PULL_REMOTE:
                self._pull_remote(session, calendar, local, item, result)
                return
            if item.cancelled and not window.contains(local.date):
                # Newer local copy is kept unlinked; nothing is pushed out of the window
                self.logger.info(
                    f"Keeping '{local.title}' outside the sync window, unlinked from cancelled {item.id}"
                )
                self.db_manager.update_event(
                    session, local.id, updated_at=local.updated_at,
                    remote_event_id=None, remote_etag=None,
                )
                return

        # Local side wins; the remote call happens outside the store lock
        if item.cancelled:
            remote = await self.service.create_event(calendar_id, local)
            operation = SyncOperation.CREATE
        else:
            remote = await self.service.update_event(calendar_id, item.id, local)
            operation = SyncOperation.UPDATE
        self._store_remote_link(calendar, local, remote)
        result.record(
            operation, SyncDirection.REMOTE,
            local_event_id=local.id, remote_event_id=remote.id, title=local.title,
        )

    def _pull_remote(
        self,
        session: Session,
        calendar: CalendarRecord,
        local: CalendarEvent,
        item: RemoteEvent,
        result: CalendarSyncResult
    ) -> None:
        if item.cancelled:
            self.db_manager.delete_event(session, local.id)
            result.record(
                SyncOperation.DELETE, SyncDirection.LOCAL,
                local_event_id=local.id, remote_event_id=item.id, title=local.title,
            )
            return

        if item.etag and item.etag == local.remote_etag:
            return

        self.db_manager.update_event(
            session,
            local.id,
            updated_at=item.updated or local.updated_at,
            date=item.date,
            title=item.title,
            start_time=item.start_time,
            end_time=item.end_time,
            color=calendar.color,
            remote_etag=item.etag,
        )
        result.record(
            SyncOperation.UPDATE, SyncDirection.LOCAL,
            local_event_id=local.id, remote_event_id=item.id, title=item.title,
        )

    def _store_remote_link(
        self,
        calendar: CalendarRecord,
        local: CalendarEvent,
        remote: RemoteEvent
    ) -> Optional[CalendarEvent]:
        """Record the remote id and etag of a pushed event.

        Only the linkage is written and ``updated_at`` is kept, so edits made
        while the request was in flight survive and get pushed next pass.
        """
        calendar_id = calendar.remote_calendar_id
        with self.db_manager.session_scope() as session:
            current = self.db_manager.get_event(session, local.id)
            if current is None:
                self.logger.info(
                    f"Event {local.id} was deleted during sync, scheduling remote delete of {remote.id}"
                )
                self.db_manager.record_deletion(session, calendar_id, remote.id)
                return None
            return self.db_manager.update_event(
                session,
                local.id,
                updated_at=current.updated_at,
                remote_calendar_id=calendar_id,
                remote_event_id=remote.id,
                remote_etag=remote.etag,
            )

    async def _push_local_edits(
        self,
        calendar: CalendarRecord,
        window: SyncWindow,
        result: CalendarSyncResult,
        touched: Set[str]
    ) -> None:
        """Push linked events edited locally since the previous pass."""
        if calendar.last_sync_at is None:
            return
        calendar_id = calendar.remote_calendar_id
        with self.db_manager.session_scope() as session:
            candidates = self.db_manager.find_events_updated_after(
                session, calendar_id, calendar.last_sync_at
            )

        for event in candidates:
            if event.id in touched or not event.remote_event_id or not window.contains(event.date):
                continue
            try:
                remote = await self.service.update_event(calendar_id, event.remote_event_id, event)
            except EventNotFoundError:
                self.logger.warning(
                    f"Remote event {event.remote_event_id} is gone, unlinking '{event.title}'"
                )
                with self.db_manager.session_scope() as session:
                    current = self.db_manager.get_event(session, event.id)
                    if current is not None:
                        self.db_manager.update_event(
                            session, event.id, updated_at=current.updated_at,
                            remote_event_id=None, remote_etag=None,
                        )
                continue
            self._store_remote_link(calendar, event, remote)
            result.record(
                SyncOperation.UPDATE, SyncDirection.REMOTE,
                local_event_id=event.id, remote_event_id=remote.id, title=event.title,
            )

    async def _push_local_creates(
        self,
        calendar: CalendarRecord,
        window: SyncWindow,
        colors: Set[ColorName],
        result: CalendarSyncResult
    ) -> None:
        """Create unlinked local events on this calendar."""
        calendar_id = calendar.remote_calendar_id
        with self.db_manager.session_scope() as session:
            candidates = self.db_manager.find_events_missing_remote_link(session)

        for event in candidates:
            if event.color not in colors or not window.contains(event.date):
                continue
            if event.remote_calendar_id and event.remote_calendar_id != calendar_id:
                continue
            remote = await self.service.create_event(calendar_id, event)
            self._store_remote_link(calendar, event, remote)
            result.record(
                SyncOperation.CREATE, SyncDirection.REMOTE,
                local_event_id=event.id, remote_event_id=remote.id, title=event.title,
            )

    def _event_from_remote(self, calendar: CalendarRecord, item: RemoteEvent) -> CalendarEvent:
        return CalendarEvent(
            id=uuid4().hex,
            date=item.date,
            title=item.title,
            start_time=item.start_time,
            end_time=item.end_time,
            color=calendar.color,
            remote_calendar_id=calendar.remote_calendar_id,
            remote_event_id=item.id,
            remote_etag=item.etag,
            updated_at=item.updated or self._clock(),
        )
