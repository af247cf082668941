"""Welcome trial bookkeeping derived from stored dates and the current time."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from services.clock import format_timestamp, parse_timestamp

_DAY_SECONDS = 24 * 60 * 60


@dataclass(slots=True)
class TrialMetadata:
    """Trial fields embedded in a persisted tier record's metadata."""

    is_welcome_trial: bool
    trial_start_date: datetime
    trial_end_date: datetime
    trial_days_remaining: int
    requires_payment_after_trial: bool = True
    paid_subscription: bool = False
    source: str = "welcome_trial"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isWelcomeTrial": self.is_welcome_trial,
            "trialStartDate": format_timestamp(self.trial_start_date),
            "trialEndDate": format_timestamp(self.trial_end_date),
            "trialDaysRemaining": self.trial_days_remaining,
            "requiresPaymentAfterTrial": self.requires_payment_after_trial,
            "paidSubscription": self.paid_subscription,
            "source": self.source,
        }


@dataclass(slots=True, frozen=True)
class TrialStatus:
    is_on_trial: bool = False
    is_expired: bool = False
    days_remaining: int = 0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isOnTrial": self.is_on_trial,
            "isExpired": self.is_expired,
            "daysRemaining": self.days_remaining,
            "startDate": format_timestamp(self.start_date) if self.start_date else None,
            "endDate": format_timestamp(self.end_date) if self.end_date else None,
        }


NOT_ON_TRIAL = TrialStatus()


def initialize_trial(duration_days: int, now: datetime) -> TrialMetadata:
    """Start a welcome trial of ``duration_days`` beginning at ``now``."""

    if isinstance(duration_days, bool) or not isinstance(duration_days, int) or duration_days <= 0:
        raise ValueError(f"trial duration must be a positive number of days, got {duration_days!r}")
    return TrialMetadata(
        is_welcome_trial=True,
        trial_start_date=now,
        trial_end_date=now + timedelta(days=duration_days),
        trial_days_remaining=duration_days,
        requires_payment_after_trial=True,
        paid_subscription=False,
    )


def days_until(end: datetime, now: datetime) -> int:
    """Whole days left before ``end``, rounded up and never negative."""

    remaining = math.ceil((end - now).total_seconds() / _DAY_SECONDS)
    return max(0, remaining)


def trial_status(metadata: Optional[Mapping[str, Any]], now: datetime) -> TrialStatus:
    """Compute the authoritative trial status; cached ``trialDaysRemaining`` is ignored.

    The trial window is closed at the start and open at the end, so the exact
    ``trialEndDate`` instant yields zero days remaining and counts as expired.
    A trial flag without a readable end date is treated as expired.
    """

    if not isinstance(metadata, Mapping) or metadata.get("isWelcomeTrial") is not True:
        return NOT_ON_TRIAL

    start = parse_timestamp(metadata.get("trialStartDate"))
    end = parse_timestamp(metadata.get("trialEndDate"))
    if end is None:
        return TrialStatus(is_on_trial=True, is_expired=True, days_remaining=0, start_date=start)

    remaining = days_until(end, now)
    return TrialStatus(
        is_on_trial=True,
        is_expired=remaining <= 0,
        days_remaining=remaining,
        start_date=start,
        end_date=end,
    )


__all__ = [
    "NOT_ON_TRIAL",
    "TrialMetadata",
    "TrialStatus",
    "days_until",
    "initialize_trial",
    "trial_status",
]
