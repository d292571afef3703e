"""Tests for the local event commands."""

from datetime import datetime

import pytest
from click.testing import CliRunner

from calmirror.cli import cli, find_next_event
from calmirror.config import load_settings
from calmirror.database import DatabaseManager
from calmirror.models import CalendarEvent


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv('DATA_DIR', str(tmp_path / 'data'))
    monkeypatch.setenv('GOOGLE_CLIENT_ID', 'x' * 20)
    return CliRunner()


def stored_events():
    db_manager = DatabaseManager(load_settings())
    with db_manager.session_scope() as session:
        return db_manager.list_events(session)


def test_add_list_and_delete_event(runner):
    result = runner.invoke(cli, [
        'events', 'add', '--date', '2025-06-01', '--title', 'Standup',
        '--start', '09:30', '--end', '09:45', '--color', 'blue',
    ])
    assert result.exit_code == 0, result.output

    (event,) = stored_events()
    assert (event.start_time, event.end_time) == (570, 585)
    assert event.color.value == 'blue'
    assert not event.is_remote_linked

    result = runner.invoke(cli, ['events', 'list'])
    assert result.exit_code == 0
    assert 'Standup' in result.output

    result = runner.invoke(cli, ['events', 'delete', event.id])
    assert result.exit_code == 0
    assert stored_events() == []


def test_add_rejects_bad_time(runner):
    result = runner.invoke(cli, ['events', 'add', '--date', '2025-06-01', '--title', 'x', '--start', '9am'])

    assert result.exit_code != 0
    assert 'HH:MM' in result.output


def test_delete_unknown_event_fails(runner):
    result = runner.invoke(cli, ['events', 'delete', 'nope'])

    assert result.exit_code == 1


def test_config_validate(runner, monkeypatch):
    assert runner.invoke(cli, ['config', 'validate']).exit_code == 0

    monkeypatch.delenv('GOOGLE_CLIENT_ID')
    assert runner.invoke(cli, ['config', 'validate']).exit_code == 1


def local_event(event_id, day, start=None, end=None):
    return CalendarEvent(id=event_id, date=day, title=event_id, start_time=start, end_time=end)


NOW = datetime(2025, 6, 1, 10, 0)


def test_next_prefers_upcoming_over_ongoing():
    local_events = [
        local_event('ongoing', '2025-06-01', 540, 660),
        local_event('tomorrow', '2025-06-02'),
        local_event('later', '2025-06-01', 720),
    ]

    assert find_next_event(local_events, NOW).id == 'later'


def test_next_falls_back_to_ongoing():
    local_events = [
        local_event('yesterday', '2025-05-31', 600),
        local_event('finished', '2025-06-01', 480, 540),
        local_event('ongoing', '2025-06-01', 570, 660),
    ]

    assert find_next_event(local_events, NOW).id == 'ongoing'
    assert find_next_event([local_event('all-day', '2025-06-01')], NOW).id == 'all-day'
    assert find_next_event(local_events[:2], NOW) is None


def test_next_command(runner):
    result = runner.invoke(cli, ['events', 'next'])
    assert 'No events.' in result.output

    runner.invoke(cli, ['events', 'add', '--date', '2099-01-01', '--title', 'Launch', '--start', '09:00'])
    result = runner.invoke(cli, ['events', 'next'])

    assert result.exit_code == 0
    assert '2099-01-01 09:00' in result.output
    assert 'Launch' in result.output
