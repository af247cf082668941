"""Schema migrations for persisted tier records.

Records are upgraded one version at a time by an ordered table of
:class:`MigrationStep` objects. The pre-migration record is copied to a
timestamped backup key before anything is rewritten, and a result that fails
structural validation is discarded in favour of the original record.
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from core.logging import get_logger
from core.settings import DEFAULT_BACKUP_RETENTION_DAYS
from core.tier_constants import CURRENT_SCHEMA_VERSION, LEGACY_SCHEMA_VERSION
from schemas.tier import PersistedTierRecordSchema
from services.clock import Clock, SystemClock, format_timestamp
from services.kv_store import KVStore, encode_json
from services.tier_catalog import DEFAULT_CATALOG, TierCatalog
from services.tier_errors import MigrationFailure
from services.tier_metrics import record_migration_step

logger = get_logger(__name__)

MigrationFn = Callable[[Dict[str, Any], datetime], Dict[str, Any]]

BACKUP_KEY_MARKER = "_backup_"


@dataclass(frozen=True)
class MigrationStep:
    from_version: int
    to_version: int
    apply: MigrationFn
    description: str = ""


@dataclass(frozen=True)
class MigrationOutcome:
    record: Dict[str, Any]
    from_version: int
    to_version: int
    backup_key: Optional[str] = None
    persisted: bool = False

    @property
    def migrated(self) -> bool:
        return self.to_version > self.from_version


def _migrate_v1_to_v2(record: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    metadata = record.get("metadata")
    metadata = dict(metadata) if isinstance(metadata, Mapping) else {}
    metadata["schemaVersion"] = 2
    metadata["migrationDate"] = format_timestamp(now)
    record["metadata"] = metadata
    record["version"] = 2
    return record


MIGRATION_STEPS: Sequence[MigrationStep] = (
    MigrationStep(1, 2, _migrate_v1_to_v2, "stamp schemaVersion and migrationDate into metadata"),
)


def record_version(record: Mapping[str, Any]) -> int:
    """Return the schema version of ``record``; legacy records without one are version 1."""

    raw = record.get("version")
    if raw is None or isinstance(raw, bool):
        return LEGACY_SCHEMA_VERSION
    try:
        version = int(raw)
    except (TypeError, ValueError):
        return LEGACY_SCHEMA_VERSION
    return version if version >= LEGACY_SCHEMA_VERSION else LEGACY_SCHEMA_VERSION


def backup_key_prefix(key: str) -> str:
    return f"{key}{BACKUP_KEY_MARKER}"


class MigrationEngine:
    """Bring stored tier records up to ``target_version``."""

    def __init__(
        self,
        store: KVStore,
        *,
        catalog: TierCatalog = DEFAULT_CATALOG,
        clock: Optional[Clock] = None,
        steps: Sequence[MigrationStep] = MIGRATION_STEPS,
        target_version: int = CURRENT_SCHEMA_VERSION,
        backup_retention_days: int = DEFAULT_BACKUP_RETENTION_DAYS,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._clock = clock or SystemClock()
        self._target_version = target_version
        self._retention = timedelta(days=backup_retention_days)
        self._steps: Dict[int, MigrationStep] = {}
        for step in steps:
            if step.to_version != step.from_version + 1:
                raise ValueError(f"migration step must advance one version: {step.from_version}->{step.to_version}")
            if step.from_version in self._steps:
                raise ValueError(f"duplicate migration step from version {step.from_version}")
            self._steps[step.from_version] = step

    @property
    def target_version(self) -> int:
        return self._target_version

    def needs_migration(self, record: Mapping[str, Any]) -> bool:
        return record_version(record) < self._target_version

    def validate(self, record: Any) -> bool:
        """Check required fields and that the tier exists in the catalog."""

        if not isinstance(record, Mapping):
            return False
        try:
            parsed = PersistedTierRecordSchema.model_validate(dict(record))
        except ValidationError as exc:
            logger.debug("Tier record failed validation: %s", exc)
            return False
        return self._catalog.is_valid(parsed.tier)

    def migrate(self, key: str, record: Mapping[str, Any]) -> MigrationOutcome:
        original = deepcopy(dict(record))
        start = record_version(original)
        if start >= self._target_version:
            return MigrationOutcome(record=original, from_version=start, to_version=start)

        logger.info("Migrating tier record %s from version %d to %d", key, start, self._target_version)
        backup_key = self.create_backup(key, original)
        if backup_key is None:
            logger.error("Skipping migration of %s because the backup could not be written.", key)
            return MigrationOutcome(record=original, from_version=start, to_version=start)

        working = deepcopy(original)
        version = start
        for current in range(start, self._target_version):
            step = self._steps.get(current)
            if step is None:
                logger.warning("No migration step for tier record version %d to %d", current, current + 1)
                record_migration_step(current, current + 1, "missing")
                break
            try:
                candidate = step.apply(deepcopy(working), self._clock.now())
                if not isinstance(candidate, dict):
                    raise MigrationFailure(f"step returned {type(candidate).__name__}, expected dict")
            except Exception as exc:  # a broken step stops the chain, never the caller
                logger.error("Tier record migration %d->%d failed: %s", current, step.to_version, exc)
                record_migration_step(current, step.to_version, "failure")
                break
            candidate["version"] = step.to_version
            working = candidate
            version = step.to_version
            record_migration_step(current, step.to_version, "success")

        if version == start:
            return MigrationOutcome(record=original, from_version=start, to_version=start, backup_key=backup_key)

        if not self.validate(working):
            logger.error("Migrated tier record %s is structurally invalid; keeping version %d.", key, start)
            record_migration_step(start, version, "invalid")
            return MigrationOutcome(record=original, from_version=start, to_version=start, backup_key=backup_key)

        persisted = self._store.set(key, encode_json(working))
        if persisted:
            logger.info("Tier record %s migrated to version %d (backup=%s)", key, version, backup_key)
        else:
            logger.error("Failed to persist migrated tier record %s", key)
        return MigrationOutcome(
            record=working,
            from_version=start,
            to_version=version,
            backup_key=backup_key,
            persisted=persisted,
        )

    def create_backup(self, key: str, record: Mapping[str, Any]) -> Optional[str]:
        """Write ``record`` to a fresh timestamped key; existing backups are never overwritten.

        A backup holding the same payload is reused, so a record that keeps
        failing to migrate does not add a backup on every read.
        """

        payload = encode_json(record)
        for existing_key in self.list_backups(key):
            if self._store.get(existing_key) == payload:
                logger.debug("Reusing tier record backup %s", existing_key)
                return existing_key

        stamp = int(self._clock.now().timestamp() * 1000)
        backup_key = f"{backup_key_prefix(key)}{stamp}"
        while self._store.get(backup_key) is not None:
            stamp += 1
            backup_key = f"{backup_key_prefix(key)}{stamp}"
        if not self._store.set(backup_key, payload):
            logger.error("Failed to create tier record backup at %s", backup_key)
            return None
        logger.info("Created tier record backup at %s", backup_key)
        return backup_key

    def list_backups(self, key: str) -> List[str]:
        return self._store.keys(backup_key_prefix(key))

    def cleanup_old_backups(self, key: str, *, now: Optional[datetime] = None) -> List[str]:
        """Remove backups of ``key`` older than the retention window."""

        reference = now or self._clock.now()
        cutoff_ms = int((reference - self._retention).timestamp() * 1000)
        prefix = backup_key_prefix(key)
        removed: List[str] = []
        for backup_key in self._store.keys(prefix):
            try:
                stamp = int(backup_key[len(prefix):])
            except ValueError:
                continue
            if stamp < cutoff_ms and self._store.remove(backup_key):
                removed.append(backup_key)
                logger.info("Removed old tier record backup: %s", backup_key)
        return removed


__all__ = [
    "BACKUP_KEY_MARKER",
    "MIGRATION_STEPS",
    "MigrationEngine",
    "MigrationOutcome",
    "MigrationStep",
    "backup_key_prefix",
    "record_version",
]
