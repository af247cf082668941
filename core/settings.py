"""Runtime settings for the tier entitlement engine."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from core.env import env_int, env_list, env_str
from core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_STORAGE_PATH = Path("uploads") / "tiers" / "tier_state.json"
DEFAULT_NAMESPACE = "eccApp"
DEFAULT_WELCOME_TRIAL_DAYS = 9
DEFAULT_BACKUP_RETENTION_DAYS = 30


@dataclass(frozen=True)
class TierEngineSettings:
    storage_path: Path = DEFAULT_STORAGE_PATH
    namespace: str = DEFAULT_NAMESPACE
    welcome_trial_days: int = DEFAULT_WELCOME_TRIAL_DAYS
    backup_retention_days: int = DEFAULT_BACKUP_RETENTION_DAYS
    admin_emails: frozenset[str] = frozenset()
    lock_timeout_seconds: int = 5
    audit_log_path: Optional[Path] = None


def load_dotenv_if_available(path: Optional[Path] = None) -> None:
    """Load environment variables from a .env file when the file exists."""

    env_path = path or Path(".env")
    try:
        if env_path.exists():
            load_dotenv(dotenv_path=env_path, override=False)
            logger.debug("Loaded environment variables from %s", env_path)
    except OSError as exc:  # pragma: no cover - best effort
        logger.warning("Failed to load .env file %s: %s", env_path, exc)


def load_settings(*, env_file: Optional[Path] = None) -> TierEngineSettings:
    """Build settings from the environment (and an optional .env file)."""

    load_dotenv_if_available(env_file)
    audit_raw = (env_str("TIER_AUDIT_LOG_FILE") or "").strip()
    namespace = (env_str("TIER_STORAGE_NAMESPACE") or "").strip() or DEFAULT_NAMESPACE
    return TierEngineSettings(
        storage_path=Path(env_str("TIER_STORAGE_FILE") or DEFAULT_STORAGE_PATH).expanduser(),
        namespace=namespace,
        welcome_trial_days=env_int("TIER_WELCOME_TRIAL_DAYS", DEFAULT_WELCOME_TRIAL_DAYS, minimum=1),
        backup_retention_days=env_int("TIER_BACKUP_RETENTION_DAYS", DEFAULT_BACKUP_RETENTION_DAYS, minimum=1),
        admin_emails=frozenset(email.lower() for email in env_list("TIER_ADMIN_EMAILS")),
        lock_timeout_seconds=env_int("TIER_STORAGE_LOCK_TIMEOUT_SECONDS", 5, minimum=1),
        audit_log_path=Path(audit_raw).expanduser() if audit_raw else None,
    )


__all__ = ["TierEngineSettings", "load_dotenv_if_available", "load_settings"]
