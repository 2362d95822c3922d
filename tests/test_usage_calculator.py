from __future__ import annotations

from decimal import Decimal

import pytest

from gengo_billing.models.catalog import DEFAULT_CATALOG, SubscriptionTier, UsageType
from gengo_billing.models.credits import TokenUsage
from gengo_billing.services.usage_calculator import (
    aggregate_usage,
    calculate_credits_from_usage,
    estimate_credits,
    usage_type_from_model,
    usd_to_credits,
)


def test_whisper_ten_seconds_is_exactly_ten_credits():
    calc = calculate_credits_from_usage(TokenUsage(model="whisper-1", audio_duration_seconds=10))
    assert calc.usd_cost == Decimal("0.001")
    assert calc.credits == 10


def test_text_tokens_round_up_to_whole_credits():
    # 1000 * 0.15 / 1e6 + 500 * 0.60 / 1e6 = 0.00045 USD -> 4.5 credits
    calc = calculate_credits_from_usage(
        TokenUsage(model="gpt-4o-mini", input_tokens=1000, output_tokens=500)
    )
    assert calc.usd_cost == Decimal("0.00045")
    assert calc.credits == 5
    assert set(calc.breakdown) == {"input", "output"}


def test_realtime_audio_is_priced_per_minute_of_tokens():
    # 27000 tokens at 450 tokens/s is one minute of input audio
    calc = calculate_credits_from_usage(
        TokenUsage(model="gpt-4o-realtime-preview", audio_input_tokens=27000)
    )
    assert calc.breakdown["audio_input"] == Decimal("0.036")
    assert calc.credits == 360


def test_tts_charges_characters_and_audio_tokens():
    calc = calculate_credits_from_usage(
        TokenUsage(model="gpt-4o-mini-tts", character_count=1000, audio_output_tokens=1000)
    )
    assert calc.breakdown["input_chars"] == Decimal("0.0006")
    assert calc.breakdown["audio_output"] == Decimal("0.012")
    assert calc.credits == 126


def test_unknown_model_costs_nothing(caplog):
    calc = calculate_credits_from_usage(TokenUsage(model="unknown-model", input_tokens=10_000))
    assert calc.credits == 0
    assert calc.usd_cost == 0
    assert "unknown-model" in caplog.text


def test_aggregate_rounds_once():
    usages = [TokenUsage(model="gpt-4o-mini", input_tokens=100) for _ in range(10)]
    # Each call alone would round 0.15 credits up to 1; together they cost 1.5 -> 2
    assert calculate_credits_from_usage(usages[0]).credits == 1
    calc = aggregate_usage(usages)
    assert calc.usd_cost == Decimal("0.00015")
    assert calc.credits == 2
    assert set(calc.breakdown) == {"gpt-4o-mini_input", "gpt-4o-mini_output"}


@pytest.mark.parametrize(
    "model, expected",
    [
        ("gpt-4o-realtime-preview", UsageType.REALTIME),
        ("whisper-1", UsageType.VOICE_STANDARD),
        ("gpt-4o-mini-tts", UsageType.VOICE_STANDARD),
        ("gpt-4o-mini", UsageType.TEXT_CHAT),
    ],
)
def test_usage_type_from_model(model, expected):
    assert usage_type_from_model(model) == expected


def test_estimates_use_fixed_unit_costs():
    assert estimate_credits(UsageType.VOICE_STANDARD, 1.5) == 150
    assert estimate_credits(UsageType.REALTIME, 2) == 700
    assert estimate_credits(UsageType.TEXT_CHAT, 3) == 12
    assert estimate_credits(UsageType.TEXT_CHAT, 0) == 0


def test_usd_to_credits_never_rounds_down():
    assert usd_to_credits(Decimal("0.00010001")) == 2
    assert usd_to_credits(Decimal("0")) == 0


def test_catalog_quotes_duration_discounts():
    quote = DEFAULT_CATALOG.quote(SubscriptionTier.BASIC, 3)
    assert quote.original_price == 87000
    assert quote.discounted_price == 78300
    assert quote.savings == 8700
    assert quote.monthly_equivalent == 26100

    assert DEFAULT_CATALOG.quote(SubscriptionTier.PRO, 12).discounted_price == 411600
    with pytest.raises(ValueError):
        DEFAULT_CATALOG.quote(SubscriptionTier.PRO, 2)
