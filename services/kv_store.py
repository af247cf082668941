"""Key/value persistence backends for tier records."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

from filelock import FileLock, Timeout

from core.logging import get_logger
from services.tier_errors import StorageFailure

logger = get_logger(__name__)


def encode_json(payload: Mapping[str, Any]) -> bytes:
    """Serialise a JSON object for storage."""
    return json.dumps(payload, ensure_ascii=False, sort_keys=True).encode("utf-8")


def decode_json(raw: bytes | None) -> Optional[Dict[str, Any]]:
    """Return the stored JSON object, or ``None`` when missing or malformed."""
    if raw is None:
        return None
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Discarding malformed tier store payload: %s", exc)
        return None
    if not isinstance(payload, dict):
        logger.warning("Discarding non-object tier store payload of type %s", type(payload).__name__)
        return None
    return payload


class KVStore(Protocol):
    def get(self, key: str) -> bytes | None:
        ...

    def set(self, key: str, value: bytes) -> bool:
        ...

    def remove(self, key: str) -> bool:
        ...

    def keys(self, prefix: str = "") -> List[str]:
        ...


class InMemoryKVStore:
    """Process-local store, the stand-in for browser local storage."""

    def __init__(self) -> None:
        self._entries: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> bytes | None:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, value: bytes) -> bool:
        with self._lock:
            self._entries[key] = bytes(value)
        return True

    def remove(self, key: str) -> bool:
        with self._lock:
            self._entries.pop(key, None)
        return True

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(key for key in self._entries if key.startswith(prefix))


class JsonFileKVStore:
    """Single JSON document of UTF-8 values guarded by a file lock."""

    def __init__(self, path: Path, *, lock_timeout: int = 5) -> None:
        self._path = Path(path)
        self._lock_timeout = lock_timeout
        self._lock_path = self._path.parent / f"{self._path.name}.lock"

    @property
    def path(self) -> Path:
        return self._path

    def _acquire_lock(self) -> FileLock:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self._lock_path), timeout=self._lock_timeout)

    def _read_entries(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageFailure(f"unreadable tier store at {self._path}: {exc}") from exc
        entries = payload.get("entries") if isinstance(payload, dict) else None
        if not isinstance(entries, dict):
            raise StorageFailure(f"tier store at {self._path} has no entries mapping")
        return {str(key): value for key, value in entries.items() if isinstance(value, str)}

    def _write_entries(self, entries: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps({"entries": entries}, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(self._path)

    def get(self, key: str) -> bytes | None:
        try:
            with self._acquire_lock():
                value = self._read_entries().get(key)
        except Timeout as exc:
            logger.warning("Tier store lock timeout reading %s: %s", key, exc)
            return None
        except StorageFailure as exc:
            logger.warning("Failed to read %s from tier store: %s", key, exc)
            return None
        return value.encode("utf-8") if value is not None else None

    def set(self, key: str, value: bytes) -> bool:
        try:
            text = bytes(value).decode("utf-8")
        except UnicodeDecodeError as exc:
            logger.error("Tier store only accepts UTF-8 payloads (key=%s): %s", key, exc)
            return False
        return self._mutate(key, text)

    def remove(self, key: str) -> bool:
        return self._mutate(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        try:
            with self._acquire_lock():
                entries = self._read_entries()
        except Timeout as exc:
            logger.warning("Tier store lock timeout listing keys: %s", exc)
            return []
        except StorageFailure as exc:
            logger.warning("Failed to list tier store keys: %s", exc)
            return []
        return sorted(key for key in entries if key.startswith(prefix))

    def _entries_for_write(self) -> Dict[str, str]:
        try:
            return self._read_entries()
        except StorageFailure as exc:
            corrupt_path = self._path.parent / f"{self._path.name}.corrupt"
            logger.warning("Rebuilding tier store %s from empty (corrupt copy at %s): %s", self._path, corrupt_path, exc)
            self._path.replace(corrupt_path)
            return {}

    def _mutate(self, key: str, value: str | None) -> bool:
        try:
            with self._acquire_lock():
                entries = self._entries_for_write()
                if value is None:
                    if entries.pop(key, None) is None:
                        return True
                else:
                    entries[key] = value
                self._write_entries(entries)
        except Timeout as exc:
            logger.error("Tier store lock timeout writing %s: %s", key, exc)
            return False
        except (StorageFailure, OSError) as exc:
            logger.error("Failed to write %s to tier store %s: %s", key, self._path, exc)
            return False
        return True


__all__ = ["InMemoryKVStore", "JsonFileKVStore", "KVStore", "decode_json", "encode_json"]
