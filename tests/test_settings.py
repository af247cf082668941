from __future__ import annotations

from pathlib import Path

import pytest

from core.settings import (
    DEFAULT_NAMESPACE,
    DEFAULT_STORAGE_PATH,
    DEFAULT_WELCOME_TRIAL_DAYS,
    load_settings,
)

_ENV_KEYS = (
    "TIER_STORAGE_FILE",
    "TIER_STORAGE_NAMESPACE",
    "TIER_WELCOME_TRIAL_DAYS",
    "TIER_BACKUP_RETENTION_DAYS",
    "TIER_ADMIN_EMAILS",
    "TIER_STORAGE_LOCK_TIMEOUT_SECONDS",
    "TIER_AUDIT_LOG_FILE",
)


@pytest.fixture(autouse=True)
def _clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    for key in _ENV_KEYS:
        # setenv then delenv so teardown also removes values a .env file loads
        monkeypatch.setenv(key, "placeholder")
        monkeypatch.delenv(key)


def test_settings_defaults():
    settings = load_settings()
    assert settings.storage_path == DEFAULT_STORAGE_PATH
    assert settings.namespace == DEFAULT_NAMESPACE
    assert settings.welcome_trial_days == DEFAULT_WELCOME_TRIAL_DAYS
    assert settings.backup_retention_days == 30
    assert settings.admin_emails == frozenset()
    assert settings.lock_timeout_seconds == 5
    assert settings.audit_log_path is None


def test_settings_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TIER_STORAGE_FILE", str(tmp_path / "state.json"))
    monkeypatch.setenv("TIER_STORAGE_NAMESPACE", "  ")
    monkeypatch.setenv("TIER_WELCOME_TRIAL_DAYS", "14")
    monkeypatch.setenv("TIER_BACKUP_RETENTION_DAYS", "0")
    monkeypatch.setenv("TIER_ADMIN_EMAILS", "Admin@X.com, ops@x.com,,admin@x.com")
    monkeypatch.setenv("TIER_STORAGE_LOCK_TIMEOUT_SECONDS", "abc")
    monkeypatch.setenv("TIER_AUDIT_LOG_FILE", str(tmp_path / "audit.jsonl"))

    settings = load_settings()
    assert settings.storage_path == tmp_path / "state.json"
    assert settings.namespace == DEFAULT_NAMESPACE
    assert settings.welcome_trial_days == 14
    assert settings.backup_retention_days == 30
    assert settings.admin_emails == frozenset({"admin@x.com", "ops@x.com"})
    assert settings.lock_timeout_seconds == 5
    assert settings.audit_log_path == tmp_path / "audit.jsonl"


def test_settings_read_dotenv_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    env_file = tmp_path / "tier.env"
    env_file.write_text("TIER_WELCOME_TRIAL_DAYS=21\nTIER_STORAGE_NAMESPACE=school\n", encoding="utf-8")
    monkeypatch.setenv("TIER_STORAGE_NAMESPACE", "campus")

    settings = load_settings(env_file=env_file)
    assert settings.welcome_trial_days == 21
    assert settings.namespace == "campus"
