"""Shared tier constants used across the entitlement services."""

from __future__ import annotations

from enum import Enum
from typing import Sequence


class TierName(str, Enum):
    ADVANCED = "ADVANCED"
    PRO = "PRO"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


# Ordered lowest to highest.
SUPPORTED_TIERS: Sequence[TierName] = (TierName.ADVANCED, TierName.PRO)
DEFAULT_TIER: TierName = TierName.ADVANCED

CURRENT_SCHEMA_VERSION = 2
LEGACY_SCHEMA_VERSION = 1

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "DEFAULT_TIER",
    "LEGACY_SCHEMA_VERSION",
    "SUPPORTED_TIERS",
    "TierName",
]
