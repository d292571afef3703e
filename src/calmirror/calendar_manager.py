"""Calendar discovery, color assignment and enablement."""

import logging
from typing import List, Set

from .config import Settings
from .database import DatabaseManager
from .models import COLOR_PALETTE, CalendarInfo, CalendarRecord, ColorName, color_by_index
from .services import BaseCalendarService

logger = logging.getLogger(__name__)


def pick_color(used: Set[ColorName], count: int) -> ColorName:
    """First palette color not in ``used``; cycles by ``count`` once all are taken."""
    for color in COLOR_PALETTE:
        if color not in used:
            return color
    return color_by_index(count)


class CalendarDirectory:
    """Keeps the local calendar registry in step with the Google calendar list."""

    def __init__(
        self,
        service: BaseCalendarService,
        db_manager: DatabaseManager,
        settings: Settings
    ):
        """Initialize calendar directory.

        Args:
            service: Google Calendar service
            db_manager: Database manager
            settings: Application settings
        """
        self.service = service
        self.db_manager = db_manager
        self.settings = settings
        self.logger = logger.getChild('calendar_directory')

    async def refresh(self) -> List[CalendarRecord]:
        """Fetch the remote calendar list and merge it into the registry.

        New calendars get the next unused color and start enabled only when
        writable. Known calendars keep their color and enabled flag; name and
        write permission follow the remote side. Calendars missing remotely
        are kept as they are.

        Returns:
            All known calendars after the refresh
        """
        remote_calendars = await self.service.list_calendars()

        with self.db_manager.session_scope() as session:
            known = {c.remote_calendar_id: c for c in self.db_manager.list_calendars(session)}
            used = {c.color for c in known.values()}

            for info in remote_calendars:
                existing = known.get(info.id)
                if existing is None:
                    record = self._new_record(info, used, len(known))
                    self.logger.info(
                        f"Discovered calendar '{record.name}' ({record.remote_calendar_id}), "
                        f"color={record.color.value}, enabled={record.enabled}"
                    )
                else:
                    record = existing.model_copy(update={
                        'name': info.name,
                        'can_write': info.can_write,
                    })
                    if existing.can_write != info.can_write:
                        self.logger.info(
                            f"Calendar '{info.name}' write access changed to {info.can_write}"
                        )
                known[record.remote_calendar_id] = self.db_manager.upsert_calendar(session, record)
                used.add(record.color)

            orphaned = set(known) - {info.id for info in remote_calendars}
            if orphaned:
                self.logger.debug(f"{len(orphaned)} calendar(s) no longer listed remotely: {sorted(orphaned)}")

            return self.db_manager.list_calendars(session)

    def _new_record(self, info: CalendarInfo, used: Set[ColorName], count: int) -> CalendarRecord:
        return CalendarRecord(
            remote_calendar_id=info.id,
            name=info.name,
            color=pick_color(used, count),
            enabled=info.can_write,
            can_write=info.can_write,
        )

    def list(self, enabled_only: bool = False) -> List[CalendarRecord]:
        with self.db_manager.session_scope() as session:
            return self.db_manager.list_calendars(session, enabled_only=enabled_only)

    def set_enabled(self, calendar_id: str, enabled: bool) -> bool:
        """Enable or disable syncing of a calendar.

        Returns:
            False if the calendar is unknown
        """
        with self.db_manager.session_scope() as session:
            changed = self.db_manager.set_calendar_enabled(session, calendar_id, enabled)
        if changed:
            self.logger.info(f"Calendar {calendar_id} {'enabled' if enabled else 'disabled'}")
        return changed
