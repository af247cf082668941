"""Pydantic schemas for persisted tier records and display payloads."""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

TierLiteral = Literal["ADVANCED", "PRO"]


class TierMetadataSchema(BaseModel):
    """Metadata block embedded in a persisted tier record."""

    model_config = ConfigDict(extra="allow")

    lastUpdated: Optional[str] = None
    firstSeenAt: Optional[str] = None
    schemaVersion: Optional[int] = None
    isWelcomeTrial: Optional[bool] = None
    trialStartDate: Optional[str] = None
    trialEndDate: Optional[str] = None
    trialDaysRemaining: Optional[int] = None
    requiresPaymentAfterTrial: Optional[bool] = None
    paidSubscription: Optional[bool] = None
    source: Optional[str] = None


class PersistedTierRecordSchema(BaseModel):
    """Structural contract every stored tier record must satisfy."""

    model_config = ConfigDict(extra="allow")

    tier: TierLiteral
    setAt: str = Field(..., min_length=1)
    version: int = Field(default=1, ge=1)
    metadata: TierMetadataSchema

    @field_validator("tier", mode="before")
    @classmethod
    def _upper_tier(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


class AdminOverrideRecordSchema(BaseModel):
    tier: TierLiteral
    setBy: str = Field(..., min_length=1)
    setAt: str
    active: bool = False

    @field_validator("tier", mode="before")
    @classmethod
    def _upper_tier(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


class TrialStatusSchema(BaseModel):
    isOnTrial: bool = False
    isExpired: bool = False
    daysRemaining: int = 0
    startDate: Optional[str] = None
    endDate: Optional[str] = None


class AdminOverrideSummarySchema(BaseModel):
    active: bool = True
    tier: TierLiteral
    setBy: str
    setAt: str


class TierDisplayInfo(BaseModel):
    """Payload handed to badge, selector and upgrade prompt components."""

    name: TierLiteral
    label: str
    displayName: str
    price: str
    storedTier: TierLiteral
    isPro: bool
    isAdvanced: bool
    features: Dict[str, Dict[str, Any]]
    metadata: Dict[str, Any] = Field(default_factory=dict)
    trial: TrialStatusSchema = Field(default_factory=TrialStatusSchema)
    adminOverride: Optional[AdminOverrideSummarySchema] = None


__all__ = [
    "AdminOverrideRecordSchema",
    "AdminOverrideSummarySchema",
    "PersistedTierRecordSchema",
    "TierDisplayInfo",
    "TierMetadataSchema",
    "TrialStatusSchema",
]
