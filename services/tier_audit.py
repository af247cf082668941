"""JSONL audit trail for administrator tier override changes."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.logging import get_logger

logger = get_logger(__name__)


class TierAuditLog:
    """Append-only audit file; one JSON object per line."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def append(
        self,
        *,
        actor: str,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """
        Append a structured audit entry.

        Parameters
        ----------
        actor:
            Administrator identity performing the change.
        action:
            Short action code, e.g. ``override.set`` or ``override.clear``.
        payload:
            Optional metadata payload for downstream inspection.
        timestamp:
            Event time; defaults to the current UTC time.
        """

        record = {
            "timestamp": (timestamp or datetime.now(timezone.utc)).isoformat(),
            "actor": actor,
            "action": action,
            "payload": payload or {},
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False))
                handle.write("\n")
        except OSError as exc:  # pragma: no cover
            logger.error("Failed to persist tier audit entry (%s): %s", action, exc)

    def read(
        self,
        *,
        limit: int = 200,
        actor: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return audit entries newest first, optionally filtered by actor or action."""

        if not self._path.exists():
            return []
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover
            logger.error("Failed to read tier audit log %s: %s", self._path, exc)
            return []

        results: List[Dict[str, Any]] = []
        for raw_line in reversed(lines):
            if len(results) >= limit:
                break
            try:
                record = json.loads(raw_line)
            except json.JSONDecodeError:
                continue
            if not isinstance(record, dict):
                continue
            if actor and record.get("actor") != actor:
                continue
            if action and record.get("action") != action:
                continue
            results.append(record)
        return results


__all__ = ["TierAuditLog"]
