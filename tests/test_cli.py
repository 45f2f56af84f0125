"""Tests for the command-line interface."""

import pytest
from click.testing import CliRunner

from aqademiq_sync.cli import cli
from aqademiq_sync.config import Settings
from aqademiq_sync.database import DatabaseManager, EventMappingDB
from aqademiq_sync.entity_store import EntityStore
from aqademiq_sync.mapping_store import MappingStore
from aqademiq_sync.models import ConflictStatus, EntityType

from fakes import T0, USER, event_payload


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv('GOOGLE_CLIENT_ID', 'x' * 20)
    monkeypatch.setenv('GOOGLE_CLIENT_SECRET', 'y' * 20)
    monkeypatch.setenv('DATA_DIR', str(tmp_path / 'data'))
    monkeypatch.setenv('DATABASE_URL', f'sqlite:///{tmp_path}/cli.db')
    return CliRunner()


@pytest.fixture
def db(runner):
    manager = DatabaseManager(Settings())
    manager.init_db()
    yield manager
    manager.engine.dispose()


def seed_conflict(db):
    entities = EntityStore(db)
    mappings = MappingStore(db)
    entity = entities.create(USER, EntityType.ASSIGNMENT, {'title': 'Local title', 'due_date': T0}, now=T0)
    mapping = mappings.upsert(EventMappingDB(
        user_id=USER,
        entity_type='assignment',
        entity_id=entity.id,
        google_event_id='evt-1',
        last_synced_at=T0
    ))
    return mappings.create_conflict(
        mapping, entities.snapshot(entity), event_payload('evt-1', summary='Remote title'), T0
    ), entity


def test_config_create(runner, tmp_path):
    result = runner.invoke(cli, ['config', 'create', '--path', 'example.env'])

    assert result.exit_code == 0
    assert 'SYNC_CONFIG__CALENDAR_ID=primary' in (tmp_path / 'example.env').read_text()


def test_config_validate(runner):
    result = runner.invoke(cli, ['config', 'validate'])

    assert result.exit_code == 0
    assert 'All required configuration fields are present' in result.output


def test_invalid_configuration_exits(runner, monkeypatch):
    monkeypatch.setenv('SYNC_CONFIG__DEFAULT_TIMEZONE', 'Mars/Olympus')

    result = runner.invoke(cli, ['config', 'validate'])

    assert result.exit_code == 1
    assert 'Error loading configuration' in result.output


def test_missing_credentials_are_reported(runner, monkeypatch):
    monkeypatch.delenv('GOOGLE_CLIENT_ID')

    validate = runner.invoke(cli, ['config', 'validate'])
    sync = runner.invoke(cli, ['sync', USER])

    assert validate.exit_code == 1
    assert 'GOOGLE_CLIENT_ID' in validate.output
    assert 'GOOGLE_CLIENT_SECRET' not in validate.output
    assert sync.exit_code == 1
    assert 'Missing required configuration' in sync.output


def test_db_init(runner, tmp_path):
    result = runner.invoke(cli, ['db', 'init'])

    assert result.exit_code == 0
    assert (tmp_path / 'cli.db').exists()


def test_conflicts_list_empty(runner, db):
    result = runner.invoke(cli, ['conflicts', 'list', USER])

    assert result.exit_code == 0
    assert 'No conflicts' in result.output


def test_conflicts_list_and_resolve(runner, db):
    conflict, entity = seed_conflict(db)

    listing = runner.invoke(cli, ['conflicts', 'list', USER])
    assert listing.exit_code == 0
    assert 'Remote title' in listing.output

    result = runner.invoke(cli, ['conflicts', 'resolve', str(conflict.id), '--strategy', 'prefer_google'])

    assert result.exit_code == 0, result.output
    stored = MappingStore(db).get_conflict(conflict.id)
    assert stored.status == ConflictStatus.RESOLVED.value
    assert EntityStore(db).get(USER, EntityType.ASSIGNMENT, entity.id).title == 'Remote title'


def test_resolve_twice_fails(runner, db):
    conflict, _ = seed_conflict(db)
    runner.invoke(cli, ['conflicts', 'resolve', str(conflict.id), '--strategy', 'prefer_google'])

    result = runner.invoke(cli, ['conflicts', 'resolve', str(conflict.id), '--strategy', 'prefer_google'])

    assert result.exit_code == 1
    assert 'Failed to resolve conflict' in result.output


def test_resolve_closes_conflict_of_deleted_item(runner, db):
    conflict, entity = seed_conflict(db)
    EntityStore(db).delete(EntityType.ASSIGNMENT, entity.id)

    result = runner.invoke(cli, ['conflicts', 'resolve', str(conflict.id), '--strategy', 'prefer_google'])

    assert result.exit_code == 0, result.output
    assert 'obsolete' in result.output
    assert MappingStore(db).count_pending_conflicts(USER) == 0


def test_resolve_rejects_bad_input(runner, db):
    conflict, _ = seed_conflict(db)

    bad_id = runner.invoke(cli, ['conflicts', 'resolve', 'not-a-uuid', '--strategy', 'prefer_google'])
    bad_json = runner.invoke(cli, ['conflicts', 'resolve', str(conflict.id), '-s', 'merge', '-p', '{title'])
    bad_strategy = runner.invoke(cli, ['conflicts', 'resolve', str(conflict.id), '-s', 'newest'])

    assert bad_id.exit_code == 1
    assert bad_json.exit_code == 1
    assert bad_strategy.exit_code == 2
    assert MappingStore(db).count_pending_conflicts(USER) == 1


def test_status(runner, db):
    seed_conflict(db)

    result = runner.invoke(cli, ['status', USER])

    assert result.exit_code == 0
    assert 'Pending conflicts' in result.output
    assert 'never' in result.output


def test_sync_without_google_tokens_fails(runner, db):
    result = runner.invoke(cli, ['sync', USER])

    assert result.exit_code == 1
    assert 'Sync failed' in result.output


def test_operations_prune(runner, db):
    with db.get_session() as session:
        db.create_sync_operation(session, USER, 'import', 'success')

    result = runner.invoke(cli, ['operations', 'prune', '--days', '3'])

    assert result.exit_code == 0
    assert 'Pruned 0 operation(s)' in result.output


def test_watch_requires_address(runner, db):
    result = runner.invoke(cli, ['google', 'watch', USER])

    assert result.exit_code == 1
    assert 'WEBHOOK_ADDRESS' in result.output
