"""Tests for data models."""

import pytest
from datetime import date, datetime

import pytz

from calmirror.models import (
    CalendarEvent, CalendarInfo, ColorName, CalendarSyncResult, SyncConfiguration,
    SyncDirection, SyncOperation, SyncReport, SyncWindow, color_by_index,
)


class TestCalendarEvent:
    """Tests for CalendarEvent model."""

    def test_create_basic_event(self):
        event = CalendarEvent(id="evt-1", date="2025-06-01", title="Standup", start_time=540, end_time=555)

        assert event.id == "evt-1"
        assert event.color == ColorName.GRAY
        assert not event.is_remote_linked
        assert event.updated_at.tzinfo is not None

    def test_timezone_validation(self):
        """Naive timestamps are taken as UTC."""
        event = CalendarEvent(id="evt-1", date="2025-06-01", updated_at=datetime(2025, 6, 1, 10, 0))

        assert event.updated_at.tzinfo == pytz.UTC

    def test_end_before_start_rejected(self):
        with pytest.raises(ValueError, match="must not be before start time"):
            CalendarEvent(id="evt-1", date="2025-06-01", start_time=600, end_time=540)

    @pytest.mark.parametrize("minutes", [-1, 1440])
    def test_time_of_day_bounds(self, minutes):
        with pytest.raises(ValueError):
            CalendarEvent(id="evt-1", date="2025-06-01", start_time=minutes)

    def test_invalid_date_rejected(self):
        with pytest.raises(ValueError):
            CalendarEvent(id="evt-1", date="2025-02-30")

    def test_remote_event_requires_calendar(self):
        with pytest.raises(ValueError, match="requires remote_calendar_id"):
            CalendarEvent(id="evt-1", date="2025-06-01", remote_event_id="g1")

        linked = CalendarEvent(
            id="evt-1", date="2025-06-01", remote_calendar_id="work", remote_event_id="g1"
        )
        assert linked.is_remote_linked


class TestSyncWindow:

    def test_window_spans_two_years_from_january(self):
        window = SyncWindow.current(datetime(2025, 8, 14, 12, 0, tzinfo=pytz.UTC))

        assert window.start == date(2025, 1, 1)
        assert window.end == date(2027, 1, 1)
        assert window.time_min == "2025-01-01T00:00:00Z"
        assert window.time_max == "2027-01-01T00:00:00Z"

    def test_contains_is_half_open(self):
        window = SyncWindow(date(2025, 1, 1), date(2027, 1, 1))

        assert window.contains("2025-01-01")
        assert window.contains("2026-12-31")
        assert not window.contains("2024-12-31")
        assert not window.contains("2027-01-01")
        assert not window.contains(None)

    def test_year_is_taken_in_utc(self):
        new_years_eve = pytz.timezone("America/New_York").localize(datetime(2025, 12, 31, 22, 0))

        assert SyncWindow.current(new_years_eve).start == date(2026, 1, 1)


class TestPalette:

    def test_order(self):
        assert [c.value for c in ColorName] == [
            "gray", "blue", "green", "red", "yellow", "purple", "orange"
        ]

    def test_color_by_index_cycles(self):
        assert color_by_index(0) == ColorName.GRAY
        assert color_by_index(6) == ColorName.ORANGE
        assert color_by_index(7) == ColorName.GRAY
        assert color_by_index(9) == ColorName.GREEN


class TestCalendarInfo:

    @pytest.mark.parametrize("role,writable", [
        ("owner", True), ("writer", True), ("reader", False), ("freeBusyReader", False), (None, False),
    ])
    def test_can_write_follows_access_role(self, role, writable):
        assert CalendarInfo(id="c", name="C", access_role=role).can_write is writable


class TestReports:

    def test_counts_by_operation_and_direction(self):
        first = CalendarSyncResult(calendar_id="work")
        first.record(SyncOperation.CREATE, SyncDirection.LOCAL, remote_event_id="g1")
        first.record(SyncOperation.CREATE, SyncDirection.REMOTE, local_event_id="l1")
        second = CalendarSyncResult(calendar_id="team")
        second.record(SyncOperation.CREATE, SyncDirection.LOCAL, remote_event_id="g2")

        report = SyncReport(calendars=[first, second])

        assert report.count(SyncOperation.CREATE, SyncDirection.LOCAL) == 2
        assert report.count(SyncOperation.CREATE, SyncDirection.REMOTE) == 1
        assert report.total_operations == 3
        assert report.success
        assert first.results[0].calendar_id == "work"


class TestSyncConfiguration:

    def test_defaults(self):
        config = SyncConfiguration()

        assert config.sync_range_years == 2
        assert config.max_results == 2500
        assert config.max_retries == 3
        assert config.token_expiry_margin_seconds == 60

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValueError, match="Unknown timezone"):
            SyncConfiguration(timezone="Mars/Olympus_Mons")
