"""Durable tombstones for local deletions of Google-linked events."""

import logging
from typing import List

from .database import DatabaseManager
from .models import DeletionTombstone

logger = logging.getLogger(__name__)


class DeletionTracker:
    """Pending remote deletions, kept until Google acknowledges them."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.logger = logger.getChild('deletion_tracker')

    def record(self, calendar_id: str, event_id: str) -> None:
        with self.db_manager.session_scope() as session:
            self.db_manager.record_deletion(session, calendar_id, event_id)
        self.logger.debug(f"Recorded tombstone for {event_id} in {calendar_id}")

    def list(self, calendar_id: str) -> List[DeletionTombstone]:
        with self.db_manager.session_scope() as session:
            return self.db_manager.get_deletions(session, calendar_id)

    def clear(self, calendar_id: str, event_id: str) -> bool:
        with self.db_manager.session_scope() as session:
            return self.db_manager.clear_deletion(session, calendar_id, event_id)
