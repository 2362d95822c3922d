from typing import Optional

from pydantic import BaseModel

from .catalog import SubscriptionTier
from .credits import TokenUsage


class UsageDeductionRequest(BaseModel):
    user_id: str
    usage: TokenUsage
    reference_id: str | None = None
    reference_type: str | None = None
    description: str | None = None


class DeductionResponse(BaseModel):
    user_id: str
    credits: int
    balance: int | None = None
    transaction_id: str | None = None


class TierChangeRequest(BaseModel):
    user_id: str
    target_tier: SubscriptionTier
    duration_months: int = 1


class TierChangeValidation(BaseModel):
    allowed: bool
    change_type: Optional[str] = None
    message: str
    scheduled_for_next_period: bool = False
    current_period_end: Optional[str] = None


class CancellationStatus(BaseModel):
    is_canceled: bool
    current_tier: SubscriptionTier
    access_until: Optional[str] = None
    can_reactivate: bool = False


class WebhookAck(BaseModel):
    status: str
    message: str | None = None


class CronResult(BaseModel):
    job: str
    processed: int


class SubscriptionInfo(BaseModel):
    tier: SubscriptionTier
    status: str
    is_paid: bool
    current_period_end: Optional[str] = None
    scheduled_tier: Optional[SubscriptionTier] = None
    scheduled_tier_start_at: Optional[str] = None
    text_unlimited: bool = False
    realtime_enabled: bool = False
    custom_characters: Optional[int] = None
    max_chatrooms: Optional[int] = None
