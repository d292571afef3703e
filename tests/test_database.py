"""Tests for the local store."""

from datetime import datetime, timedelta

import pytest
import pytz

from calmirror.models import CalendarEvent, CalendarRecord, ColorName


@pytest.fixture
def calendar(db_manager):
    with db_manager.session_scope() as session:
        return db_manager.upsert_calendar(session, CalendarRecord(
            remote_calendar_id='work', name='Work', color=ColorName.GRAY, enabled=True, can_write=True
        ))


def insert(db_manager, **fields):
    values = dict(id='evt-1', date='2025-06-01', title='Standup')
    values.update(fields)
    with db_manager.session_scope() as session:
        return db_manager.insert_event(session, CalendarEvent(**values))


def test_insert_and_read_back(db_manager, calendar):
    updated_at = datetime(2025, 5, 1, 8, 30, tzinfo=pytz.UTC)
    insert(
        db_manager, start_time=540, end_time=555, color=ColorName.BLUE,
        remote_calendar_id='work', remote_event_id='g1', remote_etag='"1"', updated_at=updated_at,
    )

    with db_manager.session_scope() as session:
        event = db_manager.get_event(session, 'evt-1')
        by_remote = db_manager.find_event_by_remote_id(session, 'work', 'g1')

    assert event == by_remote
    assert event.updated_at == updated_at
    assert event.color == ColorName.BLUE
    assert (event.start_time, event.end_time) == (540, 555)


def test_linked_event_requires_known_calendar(db_manager):
    with pytest.raises(ValueError, match="unknown calendar"):
        insert(db_manager, remote_calendar_id='nope', remote_event_id='g1')

    with db_manager.session_scope() as session:
        assert db_manager.get_event(session, 'evt-1') is None


def test_update_advances_updated_at(db_manager, calendar):
    future = datetime.now(pytz.UTC) + timedelta(days=1)
    insert(db_manager, updated_at=future)

    with db_manager.session_scope() as session:
        updated = db_manager.update_event(session, 'evt-1', title='Daily standup')

    assert updated.title == 'Daily standup'
    assert updated.updated_at > future


def test_update_validates_merged_state(db_manager, calendar):
    insert(db_manager, start_time=600)

    with pytest.raises(ValueError):
        with db_manager.session_scope() as session:
            db_manager.update_event(session, 'evt-1', end_time=540)
    with pytest.raises(ValueError, match="Unknown event fields"):
        with db_manager.session_scope() as session:
            db_manager.update_event(session, 'evt-1', id='other')

    with db_manager.session_scope() as session:
        assert db_manager.update_event(session, 'missing', title='x') is None


def test_user_delete_of_linked_event_records_tombstone(db_manager, calendar):
    insert(db_manager, remote_calendar_id='work', remote_event_id='g1')
    insert(db_manager, id='evt-2')

    with db_manager.session_scope() as session:
        assert db_manager.delete_event(session, 'evt-1', track_remote=True)
        assert db_manager.delete_event(session, 'evt-2', track_remote=True)
        assert not db_manager.delete_event(session, 'evt-3')

    with db_manager.session_scope() as session:
        tombstones = db_manager.get_deletions(session, 'work')
    assert [(t.remote_calendar_id, t.remote_event_id) for t in tombstones] == [('work', 'g1')]


def test_user_delete_on_read_only_calendar_records_no_tombstone(db_manager):
    with db_manager.session_scope() as session:
        db_manager.upsert_calendar(session, CalendarRecord(
            remote_calendar_id='holidays', name='Holidays', enabled=True, can_write=False
        ))
    insert(db_manager, remote_calendar_id='holidays', remote_event_id='h1')

    with db_manager.session_scope() as session:
        assert db_manager.delete_event(session, 'evt-1', track_remote=True)
    with db_manager.session_scope() as session:
        assert db_manager.get_event(session, 'evt-1') is None
        assert db_manager.get_deletions(session) == []
        assert not db_manager.has_deletion(session, 'holidays', 'h1')


def test_redeletion_keeps_single_tombstone(db_manager, calendar):
    with db_manager.session_scope() as session:
        db_manager.record_deletion(session, 'work', 'g1')
        first = db_manager.get_deletions(session)[0].deleted_at
    with db_manager.session_scope() as session:
        db_manager.record_deletion(session, 'work', 'g1')
        tombstones = db_manager.get_deletions(session)

    assert len(tombstones) == 1
    assert tombstones[0].deleted_at >= first

    with db_manager.session_scope() as session:
        assert db_manager.clear_deletion(session, 'work', 'g1')
        assert not db_manager.clear_deletion(session, 'work', 'g1')


def test_queries_used_by_sync(db_manager, calendar):
    base = datetime(2025, 5, 1, tzinfo=pytz.UTC)
    insert(db_manager, id='old', remote_calendar_id='work', remote_event_id='g1', updated_at=base)
    insert(db_manager, id='new', remote_calendar_id='work', remote_event_id='g2',
           updated_at=base + timedelta(hours=1))
    insert(db_manager, id='local', date='2025-05-30')

    with db_manager.session_scope() as session:
        changed = db_manager.find_events_updated_after(session, 'work', base)
        unlinked = db_manager.find_events_missing_remote_link(session)
        listed = db_manager.list_events(session, date_from='2025-05-31')

    assert [e.id for e in changed] == ['new']
    assert [e.id for e in unlinked] == ['local']
    assert {e.id for e in listed} == {'old', 'new'}


def test_sync_state_roundtrip(db_manager, calendar):
    synced_at = datetime(2025, 6, 1, 12, 0, tzinfo=pytz.UTC)

    with db_manager.session_scope() as session:
        db_manager.update_sync_state(session, 'work', 'cursor-9', synced_at)
    with db_manager.session_scope() as session:
        record = db_manager.get_calendar(session, 'work')
        with pytest.raises(ValueError):
            db_manager.update_sync_state(session, 'missing', None, None)

    assert record.sync_cursor == 'cursor-9'
    assert record.last_sync_at == synced_at
