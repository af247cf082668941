"""Error types raised by the tier entitlement services."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional


class TierEngineError(RuntimeError):
    """Base class for tier engine failures."""


class InvalidTierNameError(TierEngineError, ValueError):
    """Raised when a tier name is not present in the catalog."""

    def __init__(self, name: object) -> None:
        self.name = name
        super().__init__(f"Unknown tier name: {name!r}")


@dataclass(eq=False)
class TierAuthorizationError(TierEngineError):
    """Raised when a principal may not mutate the admin tier override."""

    code: str
    message: str
    principal: Optional[str] = None

    def __post_init__(self) -> None:
        TierEngineError.__init__(self, self.message)

    def to_detail(self) -> Dict[str, Optional[str]]:
        detail: Dict[str, Optional[str]] = {
            "code": self.code,
            "message": self.message,
        }
        if self.principal:
            detail["principal"] = self.principal
        return detail


class MigrationFailure(TierEngineError):
    """Raised by a migration step that cannot transform a record."""


class StorageFailure(TierEngineError):
    """Raised inside storage backends when a read or write cannot complete."""


__all__ = [
    "InvalidTierNameError",
    "MigrationFailure",
    "StorageFailure",
    "TierAuthorizationError",
    "TierEngineError",
]
