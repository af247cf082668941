"""Per-user tier resolution: admin override, trial expiry and the stored tier record."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from core.logging import get_logger
from core.settings import (
    DEFAULT_BACKUP_RETENTION_DAYS,
    DEFAULT_NAMESPACE,
    DEFAULT_WELCOME_TRIAL_DAYS,
    TierEngineSettings,
    load_settings,
)
from core.tier_constants import CURRENT_SCHEMA_VERSION, DEFAULT_TIER, SUPPORTED_TIERS, TierName
from schemas.tier import AdminOverrideSummarySchema, TierDisplayInfo, TrialStatusSchema
from services.admin_override_store import AdminOverrideRecord, AdminOverrideStore, AuthPredicate, admin_email_predicate
from services.clock import Clock, SystemClock, format_timestamp, parse_timestamp
from services.kv_store import JsonFileKVStore, KVStore, decode_json, encode_json
from services.tier_audit import TierAuditLog
from services.tier_catalog import DEFAULT_CATALOG, TierCatalog, TierDefinition
from services.tier_errors import InvalidTierNameError
from services.tier_metrics import record_tier_change, record_trial_downgrade
from services.tier_migration import MigrationEngine, record_version
from services.trial_lifecycle import NOT_ON_TRIAL, TrialStatus, initialize_trial, trial_status

logger = get_logger(__name__)

RESTRICTION_REASONS: Mapping[str, str] = {
    "create_subject_chat": (
        "Subject-specific chats are available in PRO mode. "
        "Upgrade to access Mathematics, Science, History, and more!"
    ),
    "open_subject_chat": (
        "Opening subject-specific chats requires PRO mode. Upgrade to access all your chat history!"
    ),
    "file_upload": "File uploads are available in PRO mode. Upgrade to share documents, images, and more!",
    "chat_linking": "Chat linking is available in PRO mode. Upgrade to connect related conversations!",
    "advanced_features": "Advanced features are available in PRO mode. Upgrade to unlock the full potential!",
    "quiz_generation": (
        "Interactive Quiz Generation is a PRO feature. Upgrade to create engaging assessments "
        "with multiple-choice questions and instant feedback!"
    ),
}
GENERIC_RESTRICTION_REASON = "This feature is available in PRO mode. Upgrade to unlock full access!"
TRIAL_EXPIRED_MESSAGE = (
    "Your PRO welcome trial has expired. Please submit payment to continue with PRO features."
)

_NEW_USER_WINDOW = timedelta(hours=24)
_SYSTEM_METADATA_KEYS = ("lastUpdated", "schemaVersion", "firstSeenAt")


@dataclass(frozen=True)
class TrialExpirationResult:
    trial_expired: bool
    downgraded: bool
    message: Optional[str] = None


@dataclass(frozen=True)
class OnboardingInfo:
    is_new_user: bool
    has_welcome_trial: bool
    trial_days_remaining: int
    needs_payment_submission: bool
    is_waiting_for_approval: bool


@dataclass(frozen=True)
class _Resolution:
    override: Optional[AdminOverrideRecord]
    record: Optional[Dict[str, Any]]
    trial: TrialStatus
    stored: TierDefinition
    effective: TierDefinition

    @property
    def metadata(self) -> Dict[str, Any]:
        if self.record is None:
            return {}
        metadata = self.record.get("metadata")
        return dict(metadata) if isinstance(metadata, Mapping) else {}


class EntitlementResolver:
    """Decide which tier is active for one storage scope.

    Precedence, highest first: an active admin override, an expired welcome
    trial (masks a stored PRO as Advanced), the stored tier, and finally the
    default Advanced tier when nothing usable is stored.
    """

    def __init__(
        self,
        *,
        store: KVStore,
        is_authorized_admin: AuthPredicate,
        clock: Optional[Clock] = None,
        catalog: TierCatalog = DEFAULT_CATALOG,
        scope: str = "default",
        namespace: str = DEFAULT_NAMESPACE,
        welcome_trial_days: int = DEFAULT_WELCOME_TRIAL_DAYS,
        backup_retention_days: int = DEFAULT_BACKUP_RETENTION_DAYS,
        audit_log: Optional[TierAuditLog] = None,
        sweep_backups: bool = True,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._catalog = catalog
        self._scope = scope
        self._welcome_trial_days = welcome_trial_days
        self._record_key = f"{namespace}:{scope}:userTier"
        self._default_tier = catalog.get(DEFAULT_TIER)
        self._migrations = MigrationEngine(
            store,
            catalog=catalog,
            clock=self._clock,
            backup_retention_days=backup_retention_days,
        )
        self._overrides = AdminOverrideStore(
            store,
            f"{namespace}:{scope}:adminTierOverride",
            is_authorized_admin=is_authorized_admin,
            catalog=catalog,
            clock=self._clock,
            audit_log=audit_log,
        )
        if sweep_backups:
            self._migrations.cleanup_old_backups(self._record_key)

    # ------------------------------------------------------------------
    # Storage helpers
    # ------------------------------------------------------------------

    @property
    def record_key(self) -> str:
        return self._record_key

    @property
    def override_key(self) -> str:
        return self._overrides.key

    @property
    def migrations(self) -> MigrationEngine:
        return self._migrations

    def _load_record(self) -> Optional[Dict[str, Any]]:
        payload = decode_json(self._store.get(self._record_key))
        if payload is None:
            return None
        if self._migrations.needs_migration(payload):
            payload = self._migrations.migrate(self._record_key, payload).record
        if not self._migrations.validate(payload):
            logger.warning("Stored tier record %s is invalid; using the default tier.", self._record_key)
            return None
        return payload

    def _resolve(self) -> _Resolution:
        override = self._overrides.get()
        record = self._load_record()
        stored = self._catalog.get(record["tier"]) if record is not None else self._default_tier
        metadata = record.get("metadata") if record is not None else None
        status = trial_status(metadata, self._clock.now()) if record is not None else NOT_ON_TRIAL

        if override is not None:
            effective = self._catalog.get(override.tier)
        elif status.is_on_trial and status.is_expired:
            effective = self._catalog.get(TierName.ADVANCED)
        else:
            effective = stored
        return _Resolution(override=override, record=record, trial=status, stored=stored, effective=effective)

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def get_current_tier(self) -> TierDefinition:
        """Return the stored tier, ignoring overrides and trial expiry."""
        record = self._load_record()
        return self._catalog.get(record["tier"]) if record is not None else self._default_tier

    def get_effective_tier(self) -> TierDefinition:
        """Return the tier feature gating must use."""
        return self._resolve().effective

    def is_pro_user(self) -> bool:
        return self.get_effective_tier().name is TierName.PRO

    def is_advanced_user(self) -> bool:
        return self.get_effective_tier().name is TierName.ADVANCED

    def can_access_feature(self, flag: str) -> bool:
        """Look ``flag`` up on the effective tier; unknown or non-boolean flags deny."""
        return self.get_effective_tier().features.lookup(flag) is True

    def can_create_chat_with_subject(self, subject: str) -> bool:
        return subject in self.get_effective_tier().features.chat_creation.available_subjects

    def can_open_chat_with_subject(self, subject: str) -> bool:
        access = self.get_effective_tier().features.chat_access
        if subject == "General":
            return access.can_open_general_chats
        return access.can_open_subject_chats

    def get_available_subjects(self) -> List[str]:
        return list(self.get_effective_tier().features.chat_creation.available_subjects)

    def should_show_upgrade_prompts(self) -> bool:
        return self.get_effective_tier().features.ui_restrictions.show_upgrade_prompts

    def get_restriction_reason(self, action: str) -> Optional[str]:
        if self.get_effective_tier().name is TierName.PRO:
            return None
        return RESTRICTION_REASONS.get(action, GENERIC_RESTRICTION_REASON)

    def get_tier_metadata(self) -> Dict[str, Any]:
        record = self._load_record()
        if record is None:
            return {}
        metadata = record.get("metadata")
        return dict(metadata) if isinstance(metadata, Mapping) else {}

    def get_trial_status(self) -> TrialStatus:
        return self._resolve().trial

    def get_tier_display_info(self) -> TierDisplayInfo:
        resolution = self._resolve()
        effective = resolution.effective
        override = resolution.override
        override_summary = None
        if override is not None:
            override_summary = AdminOverrideSummarySchema(
                tier=override.tier.value,
                setBy=override.set_by,
                setAt=format_timestamp(override.set_at) if override.set_at else "",
            )
        return TierDisplayInfo(
            name=effective.name.value,
            label=effective.label,
            displayName=effective.display_name,
            price=effective.price,
            storedTier=resolution.stored.name.value,
            isPro=effective.name is TierName.PRO,
            isAdvanced=effective.name is TierName.ADVANCED,
            features=effective.features.to_dict(),
            metadata=resolution.metadata,
            trial=TrialStatusSchema(**resolution.trial.to_dict()),
            adminOverride=override_summary,
        )

    @staticmethod
    def _first_seen(resolution: _Resolution) -> Optional[datetime]:
        # Records written before firstSeenAt existed fall back to the trial start, then setAt.
        metadata = resolution.metadata
        for candidate in (metadata.get("firstSeenAt"), metadata.get("trialStartDate")):
            parsed = parse_timestamp(candidate)
            if parsed is not None:
                return parsed
        return parse_timestamp(resolution.record.get("setAt")) if resolution.record else None

    def get_onboarding_info(self) -> OnboardingInfo:
        resolution = self._resolve()
        metadata = resolution.metadata
        first_seen = self._first_seen(resolution)
        paid = metadata.get("paidSubscription") is True
        trial_ran_out = resolution.trial.is_expired or metadata.get("trialExpired") is True
        return OnboardingInfo(
            is_new_user=first_seen is None or (self._clock.now() - first_seen) < _NEW_USER_WINDOW,
            has_welcome_trial=resolution.trial.is_on_trial,
            trial_days_remaining=resolution.trial.days_remaining,
            needs_payment_submission=trial_ran_out and not paid,
            is_waiting_for_approval=metadata.get("paymentSubmitted") is True and not paid,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set_tier(self, name: object, metadata: Optional[Mapping[str, Any]] = None) -> bool:
        """Persist ``name`` as the stored tier; returns ``False`` instead of raising."""

        tier = self._catalog.normalize(name)
        if tier is None or not self._catalog.is_valid(tier):
            logger.error(
                "Invalid tier name: %r. Valid tiers: %s",
                name,
                ", ".join(item.value for item in SUPPORTED_TIERS),
            )
            record_tier_change("invalid", None, False)
            return False
        if metadata is not None and not isinstance(metadata, Mapping):
            logger.error("Tier metadata must be a mapping, got %s", type(metadata).__name__)
            record_tier_change(tier.value, None, False)
            return False

        existing = decode_json(self._store.get(self._record_key))
        version = max(CURRENT_SCHEMA_VERSION, record_version(existing) if existing else CURRENT_SCHEMA_VERSION)
        stamp = format_timestamp(self._clock.now())
        previous = existing.get("metadata") if existing else None
        first_seen = previous.get("firstSeenAt") if isinstance(previous, Mapping) else None
        merged = {key: value for key, value in (metadata or {}).items() if key not in _SYSTEM_METADATA_KEYS}
        merged["firstSeenAt"] = first_seen if parse_timestamp(first_seen) is not None else stamp
        merged["lastUpdated"] = stamp
        merged["schemaVersion"] = version
        record = {"tier": tier.value, "setAt": stamp, "version": version, "metadata": merged}
        source = merged.get("source")

        try:
            payload = encode_json(record)
        except (TypeError, ValueError) as exc:
            logger.error("Tier metadata is not JSON serialisable: %s", exc)
            record_tier_change(tier.value, source, False)
            return False

        persisted = self._store.set(self._record_key, payload)
        record_tier_change(tier.value, source, persisted)
        if persisted:
            logger.info("Tier for %s set to %s (source=%s)", self._scope, tier.value, source or "unknown")
        else:
            logger.error("Error saving tier data for %s", self._scope)
        return persisted

    def upgrade_to_pro(self) -> bool:
        stamp = format_timestamp(self._clock.now())
        return self.set_tier(TierName.PRO, {"upgradeDate": stamp, "source": "upgrade_action"})

    def downgrade_to_advanced(
        self,
        *,
        source: str = "downgrade_action",
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        payload = dict(metadata or {})
        payload["downgradeDate"] = format_timestamp(self._clock.now())
        payload["source"] = source
        return self.set_tier(TierName.ADVANCED, payload)

    def initialize_trial(self, duration_days: Optional[int] = None) -> bool:
        """Start the PRO welcome trial for a user with no stored record."""

        if self._load_record() is not None:
            logger.warning("Refusing to start a welcome trial for %s: a tier record already exists.", self._scope)
            return False
        days = self._welcome_trial_days if duration_days is None else duration_days
        try:
            trial = initialize_trial(days, self._clock.now())
        except ValueError as exc:
            logger.error("Cannot start welcome trial for %s: %s", self._scope, exc)
            return False
        return self.set_tier(TierName.PRO, trial.to_dict())

    def check_trial_expiration(self) -> TrialExpirationResult:
        """Flip an expired, unpaid welcome trial to Advanced in storage."""

        resolution = self._resolve()
        status = resolution.trial
        if not (status.is_on_trial and status.is_expired):
            return TrialExpirationResult(trial_expired=False, downgraded=False)

        metadata = resolution.metadata
        if metadata.get("paidSubscription") is True:
            return TrialExpirationResult(trial_expired=True, downgraded=False)

        history = {
            key: metadata[key]
            for key in ("trialStartDate", "trialEndDate", "requiresPaymentAfterTrial", "paymentSubmitted")
            if key in metadata
        }
        history.update(
            isWelcomeTrial=False,
            trialExpired=True,
            trialDaysRemaining=0,
            paidSubscription=False,
        )
        downgraded = self.downgrade_to_advanced(source="trial_expired", metadata=history)
        if downgraded:
            record_trial_downgrade()
            logger.info("Welcome trial expired for %s; downgraded to Advanced.", self._scope)
        return TrialExpirationResult(trial_expired=True, downgraded=downgraded, message=TRIAL_EXPIRED_MESSAGE)

    def activate_pro_after_payment(self) -> bool:
        """Move a trial (or lapsed) user to paid PRO, keeping the trial history."""

        metadata = self.get_tier_metadata()
        metadata.update(
            isWelcomeTrial=False,
            paidSubscription=True,
            paymentApprovalDate=format_timestamp(self._clock.now()),
            source="payment_approved",
        )
        return self.set_tier(TierName.PRO, metadata)

    def reset_to_default(self) -> bool:
        """Drop the stored record and any override (support tooling)."""

        record_removed = self._store.remove(self._record_key)
        override_removed = self._store.remove(self._overrides.key)
        logger.info("Tier state reset for %s", self._scope)
        return record_removed and override_removed

    # ------------------------------------------------------------------
    # Admin override
    # ------------------------------------------------------------------

    def is_admin_user(self, principal: Optional[str]) -> bool:
        return self._overrides.is_authorized(principal)

    def get_admin_override(self) -> Optional[AdminOverrideRecord]:
        return self._overrides.get()

    def set_admin_override(self, tier: object, principal: Optional[str]) -> bool:
        """Set the override; raises :class:`TierAuthorizationError` for non-admins."""
        try:
            return self._overrides.set(tier, principal)
        except InvalidTierNameError:
            return False

    def clear_admin_override(self, principal: Optional[str]) -> bool:
        """Clear the override; raises :class:`TierAuthorizationError` for non-admins."""
        return self._overrides.clear(principal)


def build_entitlement_resolver(
    scope: str,
    *,
    settings: Optional[TierEngineSettings] = None,
    store: Optional[KVStore] = None,
    clock: Optional[Clock] = None,
    is_authorized_admin: Optional[AuthPredicate] = None,
) -> EntitlementResolver:
    """Wire a resolver for ``scope`` from settings (file store, system clock, e-mail allowlist)."""

    settings = settings or load_settings()
    return EntitlementResolver(
        store=store or JsonFileKVStore(settings.storage_path, lock_timeout=settings.lock_timeout_seconds),
        is_authorized_admin=is_authorized_admin or admin_email_predicate(settings.admin_emails),
        clock=clock,
        scope=scope,
        namespace=settings.namespace,
        welcome_trial_days=settings.welcome_trial_days,
        backup_retention_days=settings.backup_retention_days,
        audit_log=TierAuditLog(settings.audit_log_path) if settings.audit_log_path else None,
    )


__all__ = [
    "EntitlementResolver",
    "GENERIC_RESTRICTION_REASON",
    "OnboardingInfo",
    "RESTRICTION_REASONS",
    "TRIAL_EXPIRED_MESSAGE",
    "TrialExpirationResult",
    "build_entitlement_resolver",
]
