"""
Tier catalog: the single source of pricing and entitlement constants.

The catalog is injected into every service instead of being read from
module globals. A pricing change ships as a new catalog with a new
`version`; every ledger transaction records the version it was priced with.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class SubscriptionTier(str, Enum):
    FREE = "FREE"
    BASIC = "BASIC"
    PRO = "PRO"


class UsageType(str, Enum):
    VOICE_STANDARD = "VOICE_STANDARD"
    REALTIME = "REALTIME"
    TEXT_CHAT = "TEXT_CHAT"


class TierConfig(BaseModel):
    name: str
    monthly_credits: int = 0
    price_monthly: int = Field(default=0, description="Monthly price in IDR.")
    trial_credits: int = 0
    trial_days: int = 0
    trial_daily_limit: int = 0
    text_unlimited: bool = False
    realtime_enabled: bool = False
    custom_characters: Optional[int] = Field(
        default=None, description="Max custom characters, None means unlimited."
    )
    max_chatrooms: Optional[int] = None


class ModelPricing(BaseModel):
    """
    USD prices for one AI model. Only the fields relevant to the model's
    kind are set; per-token prices are quoted per one million tokens.
    """

    kind: str = Field(description="text | stt | tts | realtime")
    input_per_million: Decimal = Decimal("0")
    output_per_million: Decimal = Decimal("0")
    per_minute: Decimal = Decimal("0")
    input_per_million_chars: Decimal = Decimal("0")
    audio_input_per_minute: Decimal = Decimal("0")
    audio_output_per_minute: Decimal = Decimal("0")


class PriceQuote(BaseModel):
    tier: SubscriptionTier
    duration_months: int
    monthly_price: int
    original_price: int
    discounted_price: int
    savings: int
    discount_percent: int
    monthly_equivalent: int


def _default_tiers() -> Dict[SubscriptionTier, TierConfig]:
    return {
        SubscriptionTier.FREE: TierConfig(
            name="Free",
            trial_credits=5000,
            trial_days=14,
            trial_daily_limit=500,
            custom_characters=1,
            max_chatrooms=5,
        ),
        SubscriptionTier.BASIC: TierConfig(
            name="Basic",
            monthly_credits=6000,
            price_monthly=29000,
            text_unlimited=True,
            custom_characters=5,
            max_chatrooms=5,
        ),
        SubscriptionTier.PRO: TierConfig(
            name="Pro",
            monthly_credits=16500,
            price_monthly=49000,
            text_unlimited=True,
            realtime_enabled=True,
        ),
    }


def _default_model_pricing() -> Dict[str, ModelPricing]:
    return {
        "gpt-4o-mini": ModelPricing(
            kind="text",
            input_per_million=Decimal("0.15"),
            output_per_million=Decimal("0.60"),
        ),
        "whisper-1": ModelPricing(kind="stt", per_minute=Decimal("0.006")),
        "gpt-4o-mini-tts": ModelPricing(
            kind="tts",
            input_per_million_chars=Decimal("0.60"),
            output_per_million=Decimal("12.00"),
        ),
        "gpt-4o-realtime-preview": ModelPricing(
            kind="realtime",
            audio_input_per_minute=Decimal("0.036"),
            audio_output_per_minute=Decimal("0.091"),
            input_per_million=Decimal("0.60"),
            output_per_million=Decimal("2.40"),
        ),
    }


class TierCatalog(BaseModel):
    version: str = "2025-01"
    credit_conversion_rate: Decimal = Field(
        default=Decimal("0.0001"), description="USD value of a single credit."
    )
    realtime_audio_tokens_per_second: int = 450
    tiers: Dict[SubscriptionTier, TierConfig] = Field(default_factory=_default_tiers)
    model_pricing: Dict[str, ModelPricing] = Field(default_factory=_default_model_pricing)
    # Fixed per-unit estimates used for pre-flight checks
    unit_costs: Dict[UsageType, int] = Field(
        default_factory=lambda: {
            UsageType.VOICE_STANDARD: 100,  # per minute
            UsageType.REALTIME: 350,  # per minute
            UsageType.TEXT_CHAT: 4,  # per message
        }
    )
    duration_discounts: Dict[int, int] = Field(
        default_factory=lambda: {1: 0, 3: 10, 6: 20, 12: 30},
        description="Percent discount keyed by prepaid duration in months.",
    )
    usage_thresholds: List[int] = Field(default_factory=lambda: [80, 95, 100])
    tier_rank: Dict[SubscriptionTier, int] = Field(
        default_factory=lambda: {
            SubscriptionTier.FREE: 0,
            SubscriptionTier.BASIC: 1,
            SubscriptionTier.PRO: 2,
        }
    )

    def tier(self, tier: SubscriptionTier) -> TierConfig:
        return self.tiers[SubscriptionTier(tier)]

    def rank(self, tier: SubscriptionTier) -> int:
        return self.tier_rank[SubscriptionTier(tier)]

    def is_paid(self, tier: SubscriptionTier) -> bool:
        return self.tier(tier).price_monthly > 0

    def is_valid_duration(self, months: int) -> bool:
        return months in self.duration_discounts

    def quote(self, tier: SubscriptionTier, months: int) -> PriceQuote:
        """Price of `months` prepaid months of `tier` after the duration discount."""
        if not self.is_valid_duration(months):
            raise ValueError(f"unsupported duration: {months} months")
        monthly = self.tier(tier).price_monthly
        percent = self.duration_discounts[months]
        original = monthly * months
        discounted = int(
            (Decimal(original) * (Decimal(100 - percent) / Decimal(100))).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP
            )
        )
        return PriceQuote(
            tier=SubscriptionTier(tier),
            duration_months=months,
            monthly_price=monthly,
            original_price=original,
            discounted_price=discounted,
            savings=original - discounted,
            discount_percent=percent,
            monthly_equivalent=int(
                (Decimal(discounted) / Decimal(months)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            ),
        )


DEFAULT_CATALOG = TierCatalog()
