"""
Conversion of raw AI usage into credits.

Everything here is a pure function of its inputs and the injected
`TierCatalog`. Costs are computed in `Decimal`, multiplying before dividing,
so that exact prices (e.g. 10 seconds of whisper = 0.001 USD) do not pick up
binary rounding noise before the final round-up to whole credits.
"""

from __future__ import annotations

import logging
import math
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Dict, Iterable

from ..models.catalog import DEFAULT_CATALOG, ModelPricing, TierCatalog, UsageType
from ..models.credits import CreditCalculation, TokenUsage


logger = logging.getLogger(__name__)

_MILLION = Decimal(1_000_000)
_SIXTY = Decimal(60)
# USD amounts are kept to 1e-9; well below a credit (1e-4 USD)
_USD_QUANTUM = Decimal("0.000000001")


def _usd(value: Decimal) -> Decimal:
    return value.quantize(_USD_QUANTUM, rounding=ROUND_HALF_UP)


def usd_to_credits(usd: Decimal, catalog: TierCatalog = DEFAULT_CATALOG) -> int:
    """Whole credits needed to cover `usd`, always rounding up."""
    if usd <= 0:
        return 0
    return int((usd / catalog.credit_conversion_rate).to_integral_value(rounding=ROUND_CEILING))


def _cost_breakdown(usage: TokenUsage, pricing: ModelPricing, catalog: TierCatalog) -> Dict[str, Decimal]:
    if pricing.kind == "stt":
        seconds = Decimal(str(usage.audio_duration_seconds))
        return {"audio": _usd(seconds * pricing.per_minute / _SIXTY)}

    if pricing.kind == "tts":
        output_tokens = usage.audio_output_tokens or usage.output_tokens
        return {
            "input_chars": _usd(Decimal(usage.character_count) * pricing.input_per_million_chars / _MILLION),
            "audio_output": _usd(Decimal(output_tokens) * pricing.output_per_million / _MILLION),
        }

    if pricing.kind == "realtime":
        tokens_per_minute = Decimal(catalog.realtime_audio_tokens_per_second) * _SIXTY
        return {
            "audio_input": _usd(Decimal(usage.audio_input_tokens) * pricing.audio_input_per_minute / tokens_per_minute),
            "audio_output": _usd(Decimal(usage.audio_output_tokens) * pricing.audio_output_per_minute / tokens_per_minute),
            "text_input": _usd(Decimal(usage.input_tokens) * pricing.input_per_million / _MILLION),
            "text_output": _usd(Decimal(usage.output_tokens) * pricing.output_per_million / _MILLION),
        }

    return {
        "input": _usd(Decimal(usage.input_tokens) * pricing.input_per_million / _MILLION),
        "output": _usd(Decimal(usage.output_tokens) * pricing.output_per_million / _MILLION),
    }


def calculate_credits_from_usage(
    usage: TokenUsage, catalog: TierCatalog = DEFAULT_CATALOG
) -> CreditCalculation:
    pricing = catalog.model_pricing.get(usage.model)
    if pricing is None:
        logger.warning("No pricing for model %s; charging 0 credits", usage.model)
        return CreditCalculation(credits=0, usd_cost=Decimal("0"), breakdown={})

    breakdown = _cost_breakdown(usage, pricing, catalog)
    usd_cost = sum(breakdown.values(), Decimal("0"))
    return CreditCalculation(
        credits=usd_to_credits(usd_cost, catalog),
        usd_cost=usd_cost,
        breakdown=breakdown,
    )


def aggregate_usage(
    usages: Iterable[TokenUsage], catalog: TierCatalog = DEFAULT_CATALOG
) -> CreditCalculation:
    """
    Price several calls made for one user action. Credits are computed from
    the summed USD cost, not summed per call, so rounding happens once.
    """
    total = Decimal("0")
    breakdown: Dict[str, Decimal] = {}
    for usage in usages:
        calc = calculate_credits_from_usage(usage, catalog)
        total += calc.usd_cost
        for key, value in calc.breakdown.items():
            name = f"{usage.model}_{key}"
            breakdown[name] = breakdown.get(name, Decimal("0")) + value
    return CreditCalculation(
        credits=usd_to_credits(total, catalog), usd_cost=total, breakdown=breakdown
    )


def usage_type_from_model(model: str) -> UsageType:
    name = model.lower()
    if "realtime" in name:
        return UsageType.REALTIME
    if "whisper" in name or "tts" in name:
        return UsageType.VOICE_STANDARD
    return UsageType.TEXT_CHAT


def estimate_credits(
    usage_type: UsageType, units: float, catalog: TierCatalog = DEFAULT_CATALOG
) -> int:
    """
    Fixed-rate estimate used before a call is made. `units` is minutes of
    audio for voice and realtime, and number of messages for text chat.
    """
    if units <= 0:
        return 0
    rate = catalog.unit_costs[UsageType(usage_type)]
    return int(math.ceil(Decimal(str(units)) * rate))
