from __future__ import annotations

from datetime import timedelta

import pytest
from dateutil.relativedelta import relativedelta

from gengo_billing.models.catalog import SubscriptionTier, UsageType
from gengo_billing.models.payment import CheckoutData
from gengo_billing.models.subscription import SubscriptionStatus
from gengo_billing.models.transaction import CreditTransactionType
from gengo_billing.services.expiration_service import EPOCH

from conftest import NOW


PERIOD_END = NOW + relativedelta(months=1)


async def _subscribe(stack, user_id: str, tier: SubscriptionTier, email=None):
    await stack.credits.get_or_create_subscription(user_id, email)
    await stack.tiers.apply_purchase(user_id, tier, 1)


@pytest.mark.asyncio
async def test_renewal_reminders_three_days_then_one_day(stack):
    await _subscribe(stack, "user-1", SubscriptionTier.BASIC)
    await _subscribe(stack, "user-2", SubscriptionTier.PRO)
    await stack.tiers.cancel_subscription("user-2")

    assert await stack.expiration.send_renewal_reminders(PERIOD_END - timedelta(days=5)) == 0
    assert await stack.expiration.send_renewal_reminders(PERIOD_END - timedelta(days=3) + timedelta(hours=1)) == 1
    assert await stack.expiration.send_renewal_reminders(PERIOD_END - timedelta(hours=12)) == 1

    assert [m["user_id"] for m in stack.queue.of_type("SUBSCRIPTION_EXPIRING_3_DAYS")] == ["user-1"]
    assert [m["user_id"] for m in stack.queue.of_type("SUBSCRIPTION_EXPIRING_1_DAY")] == ["user-1"]


@pytest.mark.asyncio
async def test_lapsed_subscription_falls_back_to_free(stack):
    await _subscribe(stack, "user-1", SubscriptionTier.BASIC)

    assert await stack.expiration.process_expired_subscriptions(PERIOD_END - timedelta(minutes=1)) == 0

    stack.clock.now = PERIOD_END + timedelta(minutes=1)
    assert await stack.expiration.process_expired_subscriptions() == 1
    assert await stack.expiration.process_expired_subscriptions() == 0

    sub = await stack.credits.get_subscription("user-1")
    assert sub.tier == SubscriptionTier.FREE
    assert sub.status == SubscriptionStatus.EXPIRED
    assert sub.credits_remaining == 0
    [expired] = stack.queue.of_type("SUBSCRIPTION_EXPIRED")
    assert expired["payload"]["tier"] == "BASIC"
    await stack.assert_conserved("user-1")


@pytest.mark.asyncio
async def test_canceled_subscription_is_left_to_the_schedule(stack):
    await _subscribe(stack, "user-1", SubscriptionTier.BASIC)
    await stack.tiers.cancel_subscription("user-1")

    stack.clock.now = PERIOD_END + timedelta(minutes=1)
    assert await stack.expiration.process_expired_subscriptions() == 0
    sub = await stack.credits.get_subscription("user-1")
    assert sub.tier == SubscriptionTier.BASIC
    assert sub.scheduled_tier == SubscriptionTier.FREE


@pytest.mark.asyncio
async def test_run_all_applies_every_sweep_once(stack):
    await _subscribe(stack, "user-1", SubscriptionTier.BASIC, "one@example.com")
    await _subscribe(stack, "user-2", SubscriptionTier.PRO)
    await stack.tiers.schedule_tier_change("user-2", SubscriptionTier.BASIC, 1)
    await stack.payments.create_subscription_invoice(
        CheckoutData(user_id="user-3", email="three@example.com", tier=SubscriptionTier.PRO)
    )

    stack.clock.now = PERIOD_END + timedelta(minutes=1)
    results = await stack.expiration.run_all()

    assert results == {
        "scheduled_tier_changes": 1,
        "expired_subscriptions": 1,
        "expired_trials": 2,
        "daily_trial_resets": 0,
        "stale_payments": 1,
        "renewal_reminders": 0,
    }
    assert set((await stack.expiration.run_all()).values()) == {0}

    scheduled = await stack.credits.get_subscription("user-2")
    assert scheduled.tier == SubscriptionTier.BASIC
    assert scheduled.status == SubscriptionStatus.ACTIVE
    lapsed = await stack.credits.get_subscription("user-1")
    assert lapsed.status == SubscriptionStatus.EXPIRED
    assert lapsed.trial_credits_remaining == 0
    # Expiry runs before the trial sweep, so user-1 is already back on FREE
    assert sorted(m["user_id"] for m in stack.queue.of_type("TRIAL_ENDED")) == ["user-1", "user-3"]
    for user_id in ("user-1", "user-2", "user-3"):
        await stack.assert_conserved(user_id)


@pytest.mark.asyncio
async def test_daily_trial_counters_reset_after_midnight(stack):
    await stack.credits.get_or_create_subscription("user-1", "daily@example.com")
    await stack.credits.deduct_credits("user-1", UsageType.VOICE_STANDARD, 300)

    assert await stack.expiration.reset_daily_trial_usage(NOW + timedelta(hours=6)) == 0
    assert await stack.expiration.reset_daily_trial_usage(NOW + timedelta(hours=13)) == 1
    assert await stack.expiration.reset_daily_trial_usage(NOW + timedelta(hours=13)) == 0

    sub = await stack.credits.get_subscription("user-1")
    assert sub.trial_daily_used == 0
    assert sub.trial_credits_used == 300


async def _freeze_candidates(stack, monkeypatch, start, end):
    """Make the sweep see the rows as they were at this point, like a worker that queried earlier."""
    candidates = list(await stack.db.get_subscriptions_ending_between(start, end, list(SubscriptionTier)))

    async def stale(*args, **kwargs):
        return [sub.clone() for sub in candidates]

    monkeypatch.setattr(stack.db, "get_subscriptions_ending_between", stale)
    return candidates


@pytest.mark.asyncio
async def test_renewal_after_candidate_query_is_not_expired(stack, monkeypatch):
    await _subscribe(stack, "user-1", SubscriptionTier.BASIC)
    stack.clock.now = PERIOD_END + timedelta(minutes=1)
    [candidate] = await _freeze_candidates(stack, monkeypatch, EPOCH, stack.clock.now)
    assert candidate.user_id == "user-1"

    await stack.tiers.apply_purchase("user-1", SubscriptionTier.BASIC, 1)

    assert await stack.expiration.process_expired_subscriptions() == 0
    sub = await stack.credits.get_subscription("user-1")
    assert sub.tier == SubscriptionTier.BASIC
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.credits_remaining == 6000
    assert stack.queue.of_type("SUBSCRIPTION_EXPIRED") == []
    await stack.assert_conserved("user-1")


@pytest.mark.asyncio
async def test_second_worker_does_not_expire_twice(stack, monkeypatch):
    await _subscribe(stack, "user-1", SubscriptionTier.PRO)
    stack.clock.now = PERIOD_END + timedelta(minutes=1)
    await _freeze_candidates(stack, monkeypatch, EPOCH, stack.clock.now)

    assert await stack.expiration.process_expired_subscriptions() == 1
    assert await stack.expiration.process_expired_subscriptions() == 0

    adjustments = await stack.db.get_transactions("user-1", tx_type=CreditTransactionType.ADJUSTMENT)
    expiries = [tx for tx in adjustments if tx.description == "PRO subscription expired"]
    assert [tx.amount for tx in expiries] == [-16500]
    assert len(stack.queue.of_type("SUBSCRIPTION_EXPIRED")) == 1
    await stack.assert_conserved("user-1")


@pytest.mark.asyncio
async def test_renewal_reminder_sent_once_per_period(stack, monkeypatch):
    await _subscribe(stack, "user-1", SubscriptionTier.BASIC)
    await _subscribe(stack, "user-2", SubscriptionTier.BASIC)

    three_days_out = PERIOD_END - timedelta(days=2, hours=12)
    assert await stack.expiration.send_renewal_reminders(three_days_out) == 2
    assert await stack.expiration.send_renewal_reminders(three_days_out + timedelta(hours=1)) == 0
    assert len(stack.queue.of_type("SUBSCRIPTION_EXPIRING_3_DAYS")) == 2

    # user-2 renews after a worker has already picked it up for the 1-day window
    one_day_out = PERIOD_END - timedelta(hours=12)
    await _freeze_candidates(stack, monkeypatch, one_day_out, one_day_out + timedelta(days=1))
    await stack.tiers.apply_purchase("user-2", SubscriptionTier.BASIC, 1)

    assert await stack.expiration.send_renewal_reminders(one_day_out) == 1
    assert await stack.expiration.send_renewal_reminders(one_day_out) == 0
    assert [m["user_id"] for m in stack.queue.of_type("SUBSCRIPTION_EXPIRING_1_DAY")] == ["user-1"]
