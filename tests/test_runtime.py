"""Tests for connectivity tracking, per-user locks, settings and the poll loop."""

import asyncio

import pytest

from aqademiq_sync.connectivity import ConnectivityService
from aqademiq_sync.exceptions import OfflineError, SyncError
from aqademiq_sync.locking import KeyedLock
from aqademiq_sync.server import SyncRuntime

from fakes import TestSettings, make_settings


def test_connectivity_notifies_on_change_only():
    connectivity = ConnectivityService()
    seen = []
    unsubscribe = connectivity.subscribe(seen.append)

    connectivity.report_success()
    connectivity.report_failure(OSError("no route to host"))
    connectivity.report_failure(OSError("still down"))
    connectivity.report_success()
    unsubscribe()
    connectivity.set_online(False)

    assert seen == [False, True]
    assert connectivity.status()['online'] is False
    assert connectivity.status()['changed_at'] is not None


def test_connectivity_keeps_last_error():
    connectivity = ConnectivityService()

    connectivity.report_failure(OSError("no route to host"))

    assert not connectivity.is_online
    assert connectivity.status()['last_error'] == 'no route to host'


@pytest.mark.asyncio
async def test_keyed_lock_serializes_one_key():
    locks = KeyedLock()
    order = []

    async def worker(key, name):
        async with locks.acquire(key):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker('u1', 'a'), worker('u1', 'b'))

    assert order == ['a-in', 'a-out', 'b-in', 'b-out']
    assert not locks.locked('u1')
    assert locks._locks == {}


@pytest.mark.asyncio
async def test_keyed_lock_allows_other_keys():
    locks = KeyedLock()

    async with locks.acquire('u1'):
        assert locks.locked('u1')
        assert not locks.locked('u2')
        async with locks.acquire('u2'):
            assert locks.locked('u2')


def test_settings_default_database_url(tmp_path):
    settings = TestSettings(
        google_client_id='x' * 20,
        google_client_secret='y' * 20,
        data_dir=str(tmp_path)
    )

    assert settings.database_url == f"sqlite:///{tmp_path}/aqademiq_sync.db"


def test_settings_reject_short_credentials(tmp_path):
    with pytest.raises(ValueError):
        TestSettings(google_client_id='short', google_client_secret='y' * 20, data_dir=str(tmp_path))


def test_settings_normalize_log_level(tmp_path):
    settings = TestSettings(
        google_client_id='x' * 20, google_client_secret='y' * 20,
        data_dir=str(tmp_path), log_level='debug'
    )

    assert settings.log_level == 'DEBUG'


def test_nested_sync_config_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv('SYNC_CONFIG__CALENDAR_ID', 'planner@group.calendar.google.com')
    monkeypatch.setenv('SYNC_CONFIG__EXPORT_UNMAPPED', 'true')

    settings = TestSettings(google_client_id='x' * 20, google_client_secret='y' * 20, data_dir=str(tmp_path))

    assert settings.sync_config.calendar_id == 'planner@group.calendar.google.com'
    assert settings.sync_config.export_unmapped is True


class RecordingEngine:
    """Stands in for SyncEngine in the poll loop."""

    def __init__(self, settings, users, failures=None):
        self.settings = settings
        self.users = users
        self.failures = failures or {}
        self.synced = []

    async def initialize(self):
        pass

    async def cleanup(self):
        pass

    def connected_users(self):
        return list(self.users)

    async def incremental_sync(self, user_id):
        self.synced.append(user_id)
        if user_id in self.failures:
            raise self.failures[user_id]


@pytest.mark.asyncio
async def test_sync_users_outlives_one_failure(tmp_path):
    engine = RecordingEngine(make_settings(tmp_path), ['a', 'b'], {'a': SyncError("bad data")})
    runtime = SyncRuntime(engine, poll_interval_seconds=60, run_poller=False)

    await runtime.sync_users(['a', 'b'])

    assert engine.synced == ['a', 'b']
    assert runtime.last_sync is not None


@pytest.mark.asyncio
async def test_sync_users_stops_when_offline(tmp_path):
    engine = RecordingEngine(make_settings(tmp_path), ['a', 'b'], {'a': OfflineError("offline")})
    runtime = SyncRuntime(engine, poll_interval_seconds=60, run_poller=False)

    await runtime.sync_users(['a', 'b'])

    assert engine.synced == ['a']


@pytest.mark.asyncio
async def test_signal_syncs_only_pending_user(tmp_path):
    engine = RecordingEngine(make_settings(tmp_path), ['a', 'b'])
    runtime = SyncRuntime(engine, poll_interval_seconds=60)
    await runtime.start()

    runtime.signal('b')
    for _ in range(50):
        if engine.synced:
            break
        await asyncio.sleep(0.01)
    await runtime.stop()

    assert engine.synced == ['b']
    assert not runtime.ready.is_set()
