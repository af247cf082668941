from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

import pytest

from services.admin_override_store import admin_email_predicate
from services.clock import ManualClock
from services.entitlement_resolver import EntitlementResolver
from services.kv_store import InMemoryKVStore

ADMIN_EMAIL = "admin@x.com"
DAY_ZERO = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(DAY_ZERO)


@pytest.fixture()
def kv_store() -> InMemoryKVStore:
    return InMemoryKVStore()


@pytest.fixture()
def is_admin() -> Callable[[str], bool]:
    return admin_email_predicate([ADMIN_EMAIL])


@pytest.fixture()
def resolver(kv_store: InMemoryKVStore, clock: ManualClock, is_admin: Callable[[str], bool]) -> EntitlementResolver:
    return EntitlementResolver(store=kv_store, clock=clock, is_authorized_admin=is_admin, scope="user-1")
