from __future__ import annotations

import json
from datetime import timedelta
from typing import Any, Dict

import pytest

from core.settings import DEFAULT_BACKUP_RETENTION_DAYS
from core.tier_constants import CURRENT_SCHEMA_VERSION
from services.clock import ManualClock
from services.kv_store import InMemoryKVStore, encode_json
from services.tier_errors import MigrationFailure
from services.tier_migration import MigrationEngine, MigrationStep, backup_key_prefix, record_version

KEY = "eccApp:user-1:userTier"


def _legacy_record(**overrides: Any) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "tier": "PRO",
        "setAt": "2023-11-02T08:00:00+00:00",
        "metadata": {"source": "upgrade_action"},
    }
    record.update(overrides)
    return record


def _stored(store: InMemoryKVStore, key: str = KEY) -> Dict[str, Any]:
    raw = store.get(key)
    assert raw is not None
    return json.loads(raw.decode("utf-8"))


@pytest.fixture()
def engine(kv_store: InMemoryKVStore, clock: ManualClock) -> MigrationEngine:
    return MigrationEngine(kv_store, clock=clock)


def test_record_version_defaults_legacy_records_to_one() -> None:
    assert record_version({}) == 1
    assert record_version({"version": None}) == 1
    assert record_version({"version": "2"}) == 2
    assert record_version({"version": True}) == 1
    assert record_version({"version": 0}) == 1


def test_legacy_record_is_upgraded_backed_up_and_persisted(
    engine: MigrationEngine, kv_store: InMemoryKVStore, clock: ManualClock
) -> None:
    legacy = _legacy_record()
    kv_store.set(KEY, encode_json(legacy))

    outcome = engine.migrate(KEY, legacy)

    assert outcome.migrated is True
    assert outcome.from_version == 1
    assert outcome.to_version == CURRENT_SCHEMA_VERSION
    assert outcome.persisted is True
    assert outcome.record["tier"] == "PRO"
    assert outcome.record["metadata"]["source"] == "upgrade_action"
    assert outcome.record["metadata"]["schemaVersion"] == CURRENT_SCHEMA_VERSION
    assert outcome.record["metadata"]["migrationDate"] == clock.now().isoformat()

    assert _stored(kv_store)["version"] == CURRENT_SCHEMA_VERSION
    assert outcome.backup_key is not None
    assert outcome.backup_key != KEY
    assert outcome.backup_key.startswith(backup_key_prefix(KEY))
    assert _stored(kv_store, outcome.backup_key) == legacy


def test_missing_metadata_is_added_by_first_step(engine: MigrationEngine) -> None:
    legacy = _legacy_record()
    del legacy["metadata"]
    outcome = engine.migrate(KEY, legacy)
    assert outcome.migrated is True
    assert outcome.record["metadata"]["schemaVersion"] == 2


def test_migration_is_idempotent(engine: MigrationEngine, kv_store: InMemoryKVStore) -> None:
    once = engine.migrate(KEY, _legacy_record()).record
    twice = engine.migrate(KEY, once)

    assert twice.migrated is False
    assert twice.backup_key is None
    assert twice.record == once
    assert len(engine.list_backups(KEY)) == 1


def test_newer_records_are_left_alone(engine: MigrationEngine, kv_store: InMemoryKVStore) -> None:
    future = _legacy_record(version=CURRENT_SCHEMA_VERSION + 3)
    outcome = engine.migrate(KEY, future)
    assert outcome.record == future
    assert outcome.migrated is False
    assert kv_store.get(KEY) is None


def test_invalid_result_keeps_original_record(engine: MigrationEngine, kv_store: InMemoryKVStore) -> None:
    broken = _legacy_record(tier="GOLD")
    kv_store.set(KEY, encode_json(broken))

    outcome = engine.migrate(KEY, broken)

    assert outcome.migrated is False
    assert outcome.record == broken
    assert _stored(kv_store) == broken
    assert outcome.backup_key is not None


def test_failing_step_stops_chain(kv_store: InMemoryKVStore, clock: ManualClock) -> None:
    def _explode(record: Dict[str, Any], now) -> Dict[str, Any]:
        raise MigrationFailure("boom")

    engine = MigrationEngine(kv_store, clock=clock, steps=(MigrationStep(1, 2, _explode),))
    legacy = _legacy_record()
    outcome = engine.migrate(KEY, legacy)

    assert outcome.migrated is False
    assert outcome.record == legacy
    assert kv_store.get(KEY) is None


def test_partial_migration_is_kept(kv_store: InMemoryKVStore, clock: ManualClock) -> None:
    def _to_v2(record: Dict[str, Any], now) -> Dict[str, Any]:
        record["metadata"]["v2"] = True
        return record

    engine = MigrationEngine(
        kv_store,
        clock=clock,
        steps=(MigrationStep(1, 2, _to_v2),),
        target_version=3,
    )
    outcome = engine.migrate(KEY, _legacy_record())

    assert outcome.to_version == 2
    assert outcome.record["metadata"]["v2"] is True
    assert _stored(kv_store)["version"] == 2


def test_step_table_must_advance_one_version(kv_store: InMemoryKVStore) -> None:
    with pytest.raises(ValueError):
        MigrationEngine(kv_store, steps=(MigrationStep(1, 3, lambda record, now: record),))


def test_backups_are_never_overwritten(engine: MigrationEngine, kv_store: InMemoryKVStore) -> None:
    first = engine.create_backup(KEY, {"tier": "PRO"})
    second = engine.create_backup(KEY, {"tier": "ADVANCED"})

    assert first is not None and second is not None
    assert first != second
    assert _stored(kv_store, first) == {"tier": "PRO"}
    assert _stored(kv_store, second) == {"tier": "ADVANCED"}


def test_cleanup_removes_only_expired_backups(
    engine: MigrationEngine, kv_store: InMemoryKVStore, clock: ManualClock
) -> None:
    old_key = engine.create_backup(KEY, {"tier": "PRO"})
    clock.advance(timedelta(days=20))
    recent_key = engine.create_backup(KEY, {"tier": "PRO"})
    kv_store.set(f"{backup_key_prefix(KEY)}garbage", b"{}")
    clock.advance(timedelta(days=15))

    removed = engine.cleanup_old_backups(KEY)

    assert removed == [old_key]
    assert kv_store.get(old_key) is None
    assert kv_store.get(recent_key) is not None
    assert kv_store.get(f"{backup_key_prefix(KEY)}garbage") is not None


def test_repeated_failed_migrations_reuse_one_backup(
    engine: MigrationEngine, kv_store: InMemoryKVStore, clock: ManualClock
) -> None:
    broken = _legacy_record(tier="GOLD")
    kv_store.set(KEY, encode_json(broken))

    keys = set()
    for _ in range(3):
        keys.add(engine.migrate(KEY, broken).backup_key)
        clock.advance(timedelta(minutes=1))

    assert len(keys) == 1
    assert engine.list_backups(KEY) == sorted(keys)


def test_default_retention_comes_from_settings(
    engine: MigrationEngine, kv_store: InMemoryKVStore, clock: ManualClock
) -> None:
    backup = engine.create_backup(KEY, {"tier": "PRO"})
    clock.advance(timedelta(days=DEFAULT_BACKUP_RETENTION_DAYS) - timedelta(minutes=1))
    assert engine.cleanup_old_backups(KEY) == []

    clock.advance(timedelta(minutes=2))
    assert engine.cleanup_old_backups(KEY) == [backup]
