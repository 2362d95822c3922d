from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, Field

from .catalog import SubscriptionTier, UsageType
from .transaction import CreditTransaction, CreditTransactionType


class TokenUsage(BaseModel):
    """Usage reported by an AI call, in the units the provider bills."""

    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    audio_duration_seconds: float = 0
    audio_input_tokens: int = 0
    audio_output_tokens: int = 0
    character_count: int = 0


class CreditCalculation(BaseModel):
    credits: int
    usd_cost: Decimal
    breakdown: Dict[str, Decimal] = Field(default_factory=dict)


class CreditCheck(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    credits_required: int
    credits_available: int
    is_trial_user: bool = False
    trial_days_remaining: Optional[int] = None
    has_trial_credits: bool = False
    trial_credits_remaining: int = 0


class CreditBalance(BaseModel):
    total: int
    used: int
    remaining: int
    tier: SubscriptionTier
    is_trial_active: bool
    trial_days_remaining: int
    trial_daily_used: int
    trial_daily_limit: int
    period_end: datetime
    has_trial_credits: bool
    trial_credits_remaining: int
    trial_end_date: Optional[datetime] = None
    scheduled_tier: Optional[SubscriptionTier] = None


class HistoryOptions(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)
    type: Optional[CreditTransactionType] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class DeductionResult(BaseModel):
    credits: int
    usd_cost: Decimal = Decimal("0")
    transaction: Optional[CreditTransaction] = None


class TrialStatus(BaseModel):
    is_in_trial: bool
    has_used_trial: bool
    trial_start_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    days_remaining: int = 0
    credits_total: int = 0
    credits_used: int = 0
    credits_remaining: int = 0
    credits_usage_percent: int = 0
    daily_limit: int = 0
    daily_used: int = 0
    daily_remaining: int = 0


class TrialExtensionResult(BaseModel):
    success: bool
    new_end_date: Optional[datetime] = None
    message: str


class UsageCheckRequest(BaseModel):
    user_id: str
    usage_type: UsageType
    estimated_units: float = 1
