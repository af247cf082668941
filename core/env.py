"""Environment variable helpers."""

from __future__ import annotations

import os
from typing import Optional, Tuple

from core.logging import get_logger

logger = get_logger(__name__)


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key, default)
    if value is None:
        logger.debug("Environment variable %s not set. Using default=%s.", key, default)
    return value


def env_int(key: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
        if minimum is not None and value < minimum:
            raise ValueError
        return value
    except ValueError:
        logger.warning("Invalid %s value '%s'. Falling back to %d.", key, raw, default)
        return default


def env_list(key: str, default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    """Split a comma separated variable, dropping blanks and duplicates."""
    raw = os.getenv(key)
    if raw is None:
        return default
    seen: set[str] = set()
    items: list[str] = []
    for part in raw.split(","):
        item = part.strip()
        if item and item not in seen:
            items.append(item)
            seen.add(item)
    return tuple(items)
