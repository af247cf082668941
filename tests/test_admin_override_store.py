from __future__ import annotations

import json
from pathlib import Path
from typing import Callable

import pytest

from core.tier_constants import TierName
from services.admin_override_store import AdminOverrideStore, admin_email_predicate
from services.clock import ManualClock
from services.kv_store import InMemoryKVStore
from services.tier_audit import TierAuditLog
from services.tier_errors import InvalidTierNameError, TierAuthorizationError

ADMIN_EMAIL = "admin@x.com"
KEY = "eccApp:user-1:adminTierOverride"


@pytest.fixture()
def overrides(
    kv_store: InMemoryKVStore,
    clock: ManualClock,
    is_admin: Callable[[str], bool],
    tmp_path: Path,
) -> AdminOverrideStore:
    return AdminOverrideStore(
        kv_store,
        KEY,
        is_authorized_admin=is_admin,
        clock=clock,
        audit_log=TierAuditLog(tmp_path / "tier_audit.jsonl"),
    )


def test_admin_email_predicate_is_case_insensitive() -> None:
    predicate = admin_email_predicate(["Admin@X.com", " ", ""])
    assert predicate("admin@x.com") is True
    assert predicate(" ADMIN@x.COM ") is True
    assert predicate("eve@x.com") is False
    assert predicate("") is False


def test_set_and_get_override(overrides: AdminOverrideStore, kv_store: InMemoryKVStore, clock: ManualClock) -> None:
    assert overrides.get() is None
    assert overrides.set("pro", ADMIN_EMAIL) is True

    record = overrides.get()
    assert record is not None
    assert record.tier is TierName.PRO
    assert record.set_by == ADMIN_EMAIL
    assert record.set_at == clock.now()

    stored = json.loads(kv_store.get(KEY).decode("utf-8"))
    assert stored == {"tier": "PRO", "setBy": ADMIN_EMAIL, "setAt": clock.now().isoformat(), "active": True}


def test_unauthorized_principal_cannot_set(overrides: AdminOverrideStore, kv_store: InMemoryKVStore) -> None:
    with pytest.raises(TierAuthorizationError) as exc:
        overrides.set("PRO", "eve@x.com")

    detail = exc.value.to_detail()
    assert detail["code"] == "tier.override_unauthorized"
    assert detail["principal"] == "eve@x.com"
    assert kv_store.get(KEY) is None


def test_unknown_tier_is_rejected(overrides: AdminOverrideStore, kv_store: InMemoryKVStore) -> None:
    with pytest.raises(InvalidTierNameError):
        overrides.set("GOLD", ADMIN_EMAIL)
    assert kv_store.get(KEY) is None


def test_clear_requires_admin(overrides: AdminOverrideStore) -> None:
    overrides.set("ADVANCED", ADMIN_EMAIL)
    with pytest.raises(TierAuthorizationError):
        overrides.clear("eve@x.com")
    assert overrides.get() is not None

    assert overrides.clear(ADMIN_EMAIL) is True
    assert overrides.get() is None


def test_inactive_or_malformed_records_are_ignored(overrides: AdminOverrideStore, kv_store: InMemoryKVStore) -> None:
    kv_store.set(KEY, json.dumps({"tier": "PRO", "setBy": ADMIN_EMAIL, "setAt": "x", "active": False}).encode())
    assert overrides.get() is None

    kv_store.set(KEY, json.dumps({"tier": "GOLD", "setBy": ADMIN_EMAIL, "setAt": "x", "active": True}).encode())
    assert overrides.get() is None

    kv_store.set(KEY, b"not json")
    assert overrides.get() is None


def test_failing_predicate_denies(kv_store: InMemoryKVStore) -> None:
    def _broken(principal: str) -> bool:
        raise RuntimeError("auth backend down")

    store = AdminOverrideStore(kv_store, KEY, is_authorized_admin=_broken)
    assert store.is_authorized(ADMIN_EMAIL) is False
    with pytest.raises(TierAuthorizationError):
        store.set("PRO", ADMIN_EMAIL)


def test_mutations_are_audited(overrides: AdminOverrideStore, tmp_path: Path) -> None:
    overrides.set("PRO", ADMIN_EMAIL)
    overrides.clear(ADMIN_EMAIL)

    entries = TierAuditLog(tmp_path / "tier_audit.jsonl").read()
    assert [entry["action"] for entry in entries] == ["override.clear", "override.set"]
    assert entries[1]["payload"] == {"key": KEY, "tier": "PRO"}
    assert all(entry["actor"] == ADMIN_EMAIL for entry in entries)
