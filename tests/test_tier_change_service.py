from __future__ import annotations

import pytest
from dateutil.relativedelta import relativedelta

from gengo_billing.errors import TierChangeNotAllowedError
from gengo_billing.models.catalog import SubscriptionTier, UsageType
from gengo_billing.models.subscription import SubscriptionStatus
from gengo_billing.models.transaction import CreditTransactionType
from gengo_billing.services.tier_change_service import ChangeType

from conftest import NOW


async def _subscribe(stack, user_id: str, tier: SubscriptionTier, months: int = 1):
    await stack.credits.get_or_create_subscription(user_id)
    return await stack.tiers.apply_purchase(user_id, tier, months, reference_id=f"order-{user_id}")


@pytest.mark.asyncio
async def test_validate_from_free(stack):
    validation = await stack.tiers.validate_tier_change("user-1", SubscriptionTier.BASIC)
    assert validation.allowed
    assert validation.change_type == ChangeType.NEW.value
    assert not validation.scheduled_for_next_period

    to_free = await stack.tiers.validate_tier_change("user-1", SubscriptionTier.FREE)
    assert not to_free.allowed


@pytest.mark.asyncio
async def test_new_purchase_by_trial_user_keeps_trial_pool(stack):
    await stack.credits.get_or_create_subscription("user-1", "trial@example.com")
    application = await stack.tiers.apply_purchase("user-1", SubscriptionTier.BASIC, 1)

    assert application.change_type == ChangeType.NEW
    sub = application.subscription
    assert sub.tier == SubscriptionTier.BASIC
    assert sub.credits_remaining == 6000
    assert sub.trial_credits_remaining == 5000
    assert sub.current_period_end == NOW + relativedelta(months=1)
    record = await stack.trial_history.get_record("trial@example.com")
    assert record.was_upgraded
    await stack.assert_conserved("user-1")


@pytest.mark.asyncio
async def test_upgrade_applies_immediately_with_carry_over(stack):
    await _subscribe(stack, "user-1", SubscriptionTier.BASIC)
    await stack.credits.deduct_credits("user-1", UsageType.VOICE_STANDARD, 1000)

    validation = await stack.tiers.validate_tier_change("user-1", SubscriptionTier.PRO)
    assert validation.allowed
    assert validation.change_type == "upgrade"
    assert not validation.scheduled_for_next_period

    application = await stack.tiers.apply_purchase("user-1", SubscriptionTier.PRO, 1)
    sub = application.subscription
    assert application.change_type == ChangeType.UPGRADE
    assert sub.tier == SubscriptionTier.PRO
    assert sub.credits_remaining == 5000 + 16500
    assert sub.credits_used == 0
    await stack.assert_conserved("user-1")


@pytest.mark.asyncio
async def test_downgrade_is_deferred_to_period_end(stack):
    await _subscribe(stack, "user-1", SubscriptionTier.PRO)
    period_end = NOW + relativedelta(months=1)

    validation = await stack.tiers.validate_tier_change("user-1", SubscriptionTier.BASIC)
    assert validation.allowed
    assert validation.change_type == "downgrade"
    assert validation.scheduled_for_next_period
    assert validation.current_period_end == period_end.isoformat()

    application = await stack.tiers.apply_purchase("user-1", SubscriptionTier.BASIC, 3)
    assert application.scheduled
    sub = await stack.credits.get_subscription("user-1")
    assert sub.tier == SubscriptionTier.PRO
    assert sub.credits_remaining == 16500
    assert sub.scheduled_tier == SubscriptionTier.BASIC
    assert sub.scheduled_tier_start_at == period_end
    assert sub.scheduled_duration_months == 3

    assert await stack.tiers.process_scheduled_tier_changes(NOW + relativedelta(days=10)) == 0

    stack.clock.now = period_end
    assert await stack.tiers.process_scheduled_tier_changes() == 1
    assert await stack.tiers.process_scheduled_tier_changes() == 0

    sub = await stack.credits.get_subscription("user-1")
    assert sub.tier == SubscriptionTier.BASIC
    assert sub.credits_remaining == 3 * 6000
    assert sub.current_period_start == period_end
    assert sub.current_period_end == period_end + relativedelta(months=3)
    assert sub.scheduled_tier is None
    await stack.assert_conserved("user-1")


@pytest.mark.asyncio
async def test_same_tier_purchase_extends_and_clears_schedule(stack):
    await _subscribe(stack, "user-1", SubscriptionTier.BASIC)
    await stack.credits.deduct_credits("user-1", UsageType.VOICE_STANDARD, 1000)

    same = await stack.tiers.validate_tier_change("user-1", SubscriptionTier.BASIC)
    assert not same.allowed

    await stack.tiers.cancel_subscription("user-1")
    same = await stack.tiers.validate_tier_change("user-1", SubscriptionTier.BASIC)
    assert same.allowed

    application = await stack.tiers.apply_purchase("user-1", SubscriptionTier.BASIC, 3)
    sub = application.subscription
    assert application.change_type == ChangeType.SAME
    assert sub.current_period_end == NOW + relativedelta(months=1) + relativedelta(months=3)
    assert sub.credits_remaining == 5000 + 18000
    assert sub.credits_total == 6000 + 18000
    assert sub.scheduled_tier is None
    await stack.assert_conserved("user-1")


@pytest.mark.asyncio
async def test_schedule_is_last_write_wins_and_rejects_upgrades(stack):
    await _subscribe(stack, "user-1", SubscriptionTier.PRO)

    await stack.tiers.schedule_tier_change("user-1", SubscriptionTier.BASIC, 1)
    sub = await stack.tiers.schedule_tier_change("user-1", SubscriptionTier.FREE)
    assert sub.scheduled_tier == SubscriptionTier.FREE
    assert sub.scheduled_duration_months is None

    with pytest.raises(TierChangeNotAllowedError):
        await stack.tiers.schedule_tier_change("user-1", SubscriptionTier.PRO)

    assert await stack.tiers.cancel_scheduled_tier_change("user-1")
    assert not await stack.tiers.cancel_scheduled_tier_change("user-1")


@pytest.mark.asyncio
async def test_cancel_and_reactivate(stack):
    await _subscribe(stack, "user-1", SubscriptionTier.BASIC)

    await stack.tiers.cancel_subscription("user-1")
    status = await stack.tiers.get_cancellation_status("user-1")
    assert status.is_canceled
    assert status.can_reactivate
    assert status.access_until == (NOW + relativedelta(months=1)).isoformat()

    await stack.tiers.reactivate_subscription("user-1")
    status = await stack.tiers.get_cancellation_status("user-1")
    assert not status.is_canceled

    with pytest.raises(TierChangeNotAllowedError):
        await stack.tiers.reactivate_subscription("user-1")
    with pytest.raises(TierChangeNotAllowedError):
        await stack.tiers.cancel_subscription("free-user")


@pytest.mark.asyncio
async def test_canceled_subscription_falls_back_to_free(stack):
    await stack.credits.get_or_create_subscription("user-1", "paid@example.com")
    await stack.tiers.apply_purchase("user-1", SubscriptionTier.BASIC, 1)
    await stack.tiers.cancel_subscription("user-1")

    stack.clock.now = NOW + relativedelta(months=1)
    assert await stack.tiers.process_scheduled_tier_changes() == 1

    sub = await stack.credits.get_subscription("user-1")
    assert sub.tier == SubscriptionTier.FREE
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.credits_remaining == 0
    forfeits = await stack.db.get_transactions("user-1", tx_type=CreditTransactionType.ADJUSTMENT)
    assert forfeits[0].amount == -6000
    await stack.assert_conserved("user-1")


@pytest.mark.asyncio
async def test_subscription_info_and_tier_checks(stack):
    await _subscribe(stack, "user-1", SubscriptionTier.PRO)

    info = await stack.tiers.get_subscription_info("user-1")
    assert info.is_paid
    assert info.realtime_enabled
    assert info.text_unlimited
    assert info.custom_characters is None

    assert await stack.tiers.has_tier_or_higher("user-1", SubscriptionTier.BASIC)
    assert await stack.tiers.has_tier_or_higher("user-1", SubscriptionTier.PRO)
    assert not await stack.tiers.has_tier_or_higher("nobody", SubscriptionTier.BASIC)
    assert await stack.tiers.has_tier_or_higher("nobody", SubscriptionTier.FREE)


@pytest.mark.asyncio
async def test_purchase_after_lapse_starts_a_new_period(stack):
    await _subscribe(stack, "user-1", SubscriptionTier.BASIC)
    await stack.credits.deduct_credits("user-1", UsageType.VOICE_STANDARD, 1000)
    # Period over, but the expiry sweep has not run yet
    stack.clock.now = NOW + relativedelta(months=1, days=1)

    validation = await stack.tiers.validate_tier_change("user-1", SubscriptionTier.BASIC)
    assert validation.allowed
    assert validation.change_type == ChangeType.NEW.value
    with pytest.raises(TierChangeNotAllowedError):
        await stack.tiers.schedule_tier_change("user-1", SubscriptionTier.FREE)
    with pytest.raises(TierChangeNotAllowedError):
        await stack.tiers.cancel_subscription("user-1")

    application = await stack.tiers.apply_purchase("user-1", SubscriptionTier.BASIC, 1)
    sub = application.subscription
    assert application.change_type == ChangeType.NEW
    assert sub.current_period_start == stack.clock.now
    assert sub.current_period_end == stack.clock.now + relativedelta(months=1)
    assert sub.credits_remaining == 6000
    await stack.assert_conserved("user-1")
