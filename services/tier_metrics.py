"""Prometheus counters for tier changes, migrations and admin overrides."""

from __future__ import annotations

from typing import Optional

from prometheus_client import Counter

from core.logging import get_logger

logger = get_logger(__name__)

_TIER_CHANGE_COUNTER: Optional[Counter] = None
_MIGRATION_COUNTER: Optional[Counter] = None
_OVERRIDE_COUNTER: Optional[Counter] = None
_TRIAL_DOWNGRADE_COUNTER: Optional[Counter] = None

try:
    _TIER_CHANGE_COUNTER = Counter(
        "tier_changes_total",
        "Persisted tier writes grouped by tier, source and outcome.",
        ("tier", "source", "result"),
    )
    _MIGRATION_COUNTER = Counter(
        "tier_migrations_total",
        "Tier record schema migration steps grouped by version hop and outcome.",
        ("from_version", "to_version", "result"),
    )
    _OVERRIDE_COUNTER = Counter(
        "tier_admin_overrides_total",
        "Admin tier override mutations grouped by action and outcome.",
        ("action", "result"),
    )
    _TRIAL_DOWNGRADE_COUNTER = Counter(
        "tier_trial_downgrades_total",
        "Welcome trials downgraded to Advanced after expiry.",
    )
except ValueError:  # pragma: no cover - already registered
    logger.debug("Tier metrics already registered; reusing existing collectors.")


def record_tier_change(tier: str, source: Optional[str], success: bool) -> None:
    if _TIER_CHANGE_COUNTER is None:
        return
    result = "success" if success else "failure"
    _TIER_CHANGE_COUNTER.labels(tier=tier, source=source or "unknown", result=result).inc()


def record_migration_step(from_version: int, to_version: int, result: str) -> None:
    if _MIGRATION_COUNTER is None:
        return
    _MIGRATION_COUNTER.labels(from_version=str(from_version), to_version=str(to_version), result=result).inc()


def record_admin_override(action: str, result: str) -> None:
    if _OVERRIDE_COUNTER is None:
        return
    _OVERRIDE_COUNTER.labels(action=action, result=result).inc()


def record_trial_downgrade() -> None:
    if _TRIAL_DOWNGRADE_COUNTER is None:
        return
    _TRIAL_DOWNGRADE_COUNTER.inc()


__all__ = [
    "record_admin_override",
    "record_migration_step",
    "record_tier_change",
    "record_trial_downgrade",
]
