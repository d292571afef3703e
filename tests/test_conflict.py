"""Tests for last-write-wins conflict resolution."""

from datetime import datetime, timedelta

import pytest
import pytz

from calmirror.models import SyncDecision
from calmirror.sync_engine import ConflictResolver

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=pytz.UTC)


@pytest.fixture
def resolver():
    return ConflictResolver()


def test_local_strictly_newer_pushes(resolver):
    assert resolver.resolve(NOW + timedelta(seconds=1), NOW, True) == SyncDecision.PUSH_LOCAL


def test_remote_newer_pulls(resolver):
    assert resolver.resolve(NOW, NOW + timedelta(seconds=1), True) == SyncDecision.PULL_REMOTE


def test_equal_timestamps_go_to_remote(resolver):
    assert resolver.resolve(NOW, NOW, True) == SyncDecision.PULL_REMOTE


def test_read_only_always_pulls(resolver):
    assert resolver.resolve(NOW + timedelta(days=1), NOW, False) == SyncDecision.PULL_REMOTE
    assert resolver.resolve(NOW, None, False) == SyncDecision.PULL_REMOTE


def test_missing_remote_timestamp_counts_as_older(resolver):
    assert resolver.resolve(NOW, None, True) == SyncDecision.PUSH_LOCAL


def test_missing_local_timestamp_loses(resolver):
    assert resolver.resolve(None, NOW, True) == SyncDecision.PULL_REMOTE


def test_compares_across_timezones(resolver):
    berlin = pytz.timezone("Europe/Berlin").localize(datetime(2025, 6, 1, 14, 0, 1))

    assert resolver.resolve(berlin, NOW, True) == SyncDecision.PUSH_LOCAL


def test_naive_timestamps_are_utc(resolver):
    naive_local = datetime(2025, 6, 1, 12, 0, 1)

    assert resolver.resolve(naive_local, NOW, True) == SyncDecision.PUSH_LOCAL
