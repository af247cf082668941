"""Administrator tier override, stored apart from the user's tier record."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional

from pydantic import ValidationError

from core.logging import get_logger
from core.tier_constants import TierName
from schemas.tier import AdminOverrideRecordSchema
from services.clock import Clock, SystemClock, format_timestamp, parse_timestamp
from services.kv_store import KVStore, decode_json, encode_json
from services.tier_audit import TierAuditLog
from services.tier_catalog import DEFAULT_CATALOG, TierCatalog
from services.tier_errors import InvalidTierNameError, TierAuthorizationError
from services.tier_metrics import record_admin_override

logger = get_logger(__name__)

AuthPredicate = Callable[[str], bool]


def admin_email_predicate(emails: Iterable[str]) -> AuthPredicate:
    """Build a case-insensitive super-user check over a fixed e-mail allowlist."""

    allowed = frozenset(email.strip().lower() for email in emails if email and email.strip())

    def _is_admin(principal: str) -> bool:
        if not isinstance(principal, str) or not principal.strip():
            return False
        return principal.strip().lower() in allowed

    return _is_admin


@dataclass(frozen=True)
class AdminOverrideRecord:
    tier: TierName
    set_by: str
    set_at: Optional[datetime]
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "setBy": self.set_by,
            "setAt": format_timestamp(self.set_at) if self.set_at else None,
            "active": self.active,
        }


class AdminOverrideStore:
    """Create, read and clear the admin override for one storage scope."""

    def __init__(
        self,
        store: KVStore,
        key: str,
        *,
        is_authorized_admin: AuthPredicate,
        catalog: TierCatalog = DEFAULT_CATALOG,
        clock: Optional[Clock] = None,
        audit_log: Optional[TierAuditLog] = None,
    ) -> None:
        self._store = store
        self._key = key
        self._is_authorized_admin = is_authorized_admin
        self._catalog = catalog
        self._clock = clock or SystemClock()
        self._audit_log = audit_log

    @property
    def key(self) -> str:
        return self._key

    def is_authorized(self, principal: Optional[str]) -> bool:
        if not principal:
            return False
        try:
            return bool(self._is_authorized_admin(principal))
        except Exception:  # an erroring auth check denies
            logger.exception("Admin authorization check failed for %s", principal)
            return False

    def _require_admin(self, principal: Optional[str], action: str) -> str:
        if not self.is_authorized(principal):
            logger.error("Only super users can %s tier overrides (principal=%s)", action, principal)
            record_admin_override(action, "unauthorized")
            raise TierAuthorizationError(
                code="tier.override_unauthorized",
                message=f"Only administrators can {action} tier overrides.",
                principal=principal,
            )
        return str(principal)

    def set(self, tier: object, principal: Optional[str]) -> bool:
        actor = self._require_admin(principal, "set")
        normalized = self._catalog.normalize(tier)
        if normalized is None or not self._catalog.is_valid(normalized):
            logger.error("Invalid tier name for override: %r", tier)
            record_admin_override("set", "invalid_tier")
            raise InvalidTierNameError(tier)

        record = AdminOverrideRecord(tier=normalized, set_by=actor, set_at=self._clock.now(), active=True)
        persisted = self._store.set(self._key, encode_json(record.to_dict()))
        record_admin_override("set", "success" if persisted else "storage_failure")
        if not persisted:
            logger.error("Failed to store admin tier override %s", self._key)
            return False

        logger.info("Admin tier override set to %s by %s", normalized.value, actor)
        if self._audit_log is not None:
            self._audit_log.append(
                actor=actor,
                action="override.set",
                payload={"key": self._key, "tier": normalized.value},
                timestamp=record.set_at,
            )
        return True

    def get(self) -> Optional[AdminOverrideRecord]:
        payload = decode_json(self._store.get(self._key))
        if payload is None:
            return None
        try:
            parsed = AdminOverrideRecordSchema.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Ignoring malformed admin tier override %s: %s", self._key, exc)
            return None
        if not parsed.active:
            return None
        tier = self._catalog.normalize(parsed.tier)
        if tier is None or not self._catalog.is_valid(tier):
            logger.warning("Ignoring admin tier override with unknown tier %r", parsed.tier)
            return None
        return AdminOverrideRecord(
            tier=tier,
            set_by=parsed.setBy,
            set_at=parse_timestamp(parsed.setAt),
            active=True,
        )

    def clear(self, principal: Optional[str]) -> bool:
        actor = self._require_admin(principal, "clear")
        removed = self._store.remove(self._key)
        record_admin_override("clear", "success" if removed else "storage_failure")
        if not removed:
            logger.error("Failed to clear admin tier override %s", self._key)
            return False

        logger.info("Admin tier override cleared by %s", actor)
        if self._audit_log is not None:
            self._audit_log.append(
                actor=actor,
                action="override.clear",
                payload={"key": self._key},
                timestamp=self._clock.now(),
            )
        return True


__all__ = ["AdminOverrideRecord", "AdminOverrideStore", "AuthPredicate", "admin_email_predicate"]
