from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field, field_validator

from .base import DBSerializableModel, as_utc, utcnow
from .catalog import SubscriptionTier


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"


class Subscription(DBSerializableModel):
    """
    One row per user holding the current tier, period and both credit pools.

    Subscription credits: credits_total == credits_used + credits_remaining.
    Trial pool: trial_credits_total - trial_credits_used is what is left of it;
    it is only spendable while trial_end_date is in the future.
    """

    collection_name: ClassVar[str] = "credit_subscriptions"
    indexes: ClassVar[list] = [("user_id", True), ("current_period_end", False)]

    id: Optional[str] = Field(default=None)
    user_id: str
    tier: SubscriptionTier = SubscriptionTier.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: datetime = Field(default_factory=utcnow)
    current_period_end: datetime

    credits_total: int = 0
    credits_used: int = 0
    credits_remaining: int = 0

    trial_start_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    trial_credits_total: int = 0
    trial_credits_used: int = 0
    trial_daily_used: int = 0
    trial_daily_reset: Optional[datetime] = None

    scheduled_tier: Optional[SubscriptionTier] = None
    scheduled_tier_start_at: Optional[datetime] = None
    scheduled_duration_months: Optional[int] = None

    # Renewal reminders already sent for the period ending at reminder_period_end
    reminder_period_end: Optional[datetime] = None
    reminder_days_sent: list[int] = Field(default_factory=list)

    catalog_version: Optional[str] = None
    version: int = Field(default=0, description="Bumped on every write; used for compare-and-set.")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator(
        "current_period_start",
        "current_period_end",
        "trial_start_date",
        "trial_end_date",
        "trial_daily_reset",
        "scheduled_tier_start_at",
        "reminder_period_end",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _aware_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    def is_lapsed(self, now: datetime) -> bool:
        """A paid period that has ended with nothing scheduled to follow it."""
        return (
            self.tier != SubscriptionTier.FREE
            and self.status == SubscriptionStatus.ACTIVE
            and self.scheduled_tier is None
            and self.current_period_end <= now
        )

    @property
    def has_trial_window(self) -> bool:
        return self.trial_start_date is not None and self.trial_end_date is not None

    @property
    def trial_credits_remaining(self) -> int:
        return max(self.trial_credits_total - self.trial_credits_used, 0)

    def is_trial_active(self, now: datetime) -> bool:
        return self.trial_end_date is not None and self.trial_end_date > now

    def usable_trial_credits(self, now: datetime) -> int:
        return self.trial_credits_remaining if self.is_trial_active(now) else 0

    def trial_days_remaining(self, now: datetime) -> int:
        if not self.is_trial_active(now):
            return 0
        return math.ceil((self.trial_end_date - now).total_seconds() / 86400)

    def trial_daily_used_as_of(self, now: datetime) -> int:
        """Daily counter with the lazy reset applied."""
        if self.trial_daily_reset is not None and self.trial_daily_reset <= now:
            return 0
        return self.trial_daily_used

    @property
    def ledger_balance(self) -> int:
        """The figure the transaction log must sum to."""
        return self.credits_remaining + self.trial_credits_remaining
