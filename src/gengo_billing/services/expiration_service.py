from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from .credit_service import CreditService
from .notification_service import NotificationService
from .payment_service import PaymentService
from .tier_change_service import TierChangeService


logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
REMINDER_DAYS = (3, 1)


class ExpirationService:
    """
    Periodic maintenance, typically invoked by a scheduler (daily, plus
    hourly for the trial counters and stale checkouts).

    Every sweep is idempotent: running it twice for the same instant does
    nothing the second time.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        credit_service: CreditService,
        tier_change_service: TierChangeService,
        payment_service: Optional[PaymentService] = None,
        notifications: Optional[NotificationService] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._credits = credit_service
        self._tiers = tier_change_service
        self._payments = payment_service
        self._notifications = notifications

    async def reset_daily_trial_usage(self, as_of: Optional[datetime] = None) -> int:
        return await self._credits.reset_daily_trial_usage(as_of)

    async def process_expired_trials(self, as_of: Optional[datetime] = None) -> int:
        return await self._credits.process_expired_trials(as_of)

    async def process_scheduled_tier_changes(self, as_of: Optional[datetime] = None) -> int:
        return await self._tiers.process_scheduled_tier_changes(as_of)

    async def expire_stale_payments(self, as_of: Optional[datetime] = None) -> int:
        if self._payments is None:
            return 0
        return await self._payments.expire_stale_payments(as_of)

    async def send_renewal_reminders(self, as_of: Optional[datetime] = None) -> int:
        """
        Remind paid subscribers whose period ends in 3 days or in 1 day.
        Each reminder is claimed on the subscription before it is sent, so
        it goes out once per period however often the sweep runs.
        Subscriptions with a scheduled change are skipped.
        """
        if self._notifications is None:
            return 0
        as_of = as_of or self._credits.now()
        paid_tiers = [tier for tier in self._credits.catalog.tiers if self._credits.catalog.is_paid(tier)]
        sent = 0
        for days in REMINDER_DAYS:
            window_end = as_of + timedelta(days=days)
            window_start = window_end - timedelta(days=1)
            for sub in await self._db.get_subscriptions_ending_between(window_start, window_end, paid_tiers):
                if not await self._credits.record_renewal_reminder(sub.user_id, sub.current_period_end, days):
                    continue
                await self._notifications.notify_subscription_expiring(sub.user_id, sub.tier, days)
                sent += 1
        return sent

    async def process_expired_subscriptions(self, as_of: Optional[datetime] = None) -> int:
        """
        Paid subscriptions whose period ended without a renewal or a
        scheduled change fall back to FREE with status EXPIRED. Unused
        subscription credits are forfeited.

        Candidates are re-checked inside the write, so one renewed or
        expired since the query was run is skipped and not notified.
        """
        as_of = as_of or self._credits.now()
        paid_tiers = [tier for tier in self._credits.catalog.tiers if self._credits.catalog.is_paid(tier)]
        count = 0
        for candidate in await self._db.get_subscriptions_ending_between(EPOCH, as_of, paid_tiers):
            try:
                expired = await self._credits.expire_lapsed_subscription(candidate.user_id, as_of)
            except Exception:
                logger.exception("Expiring subscription failed for %s", candidate.user_id)
                await self._ledger.log_error(
                    message="Subscription expiry failed",
                    details={"tier": candidate.tier.value},
                    user_id=candidate.user_id,
                )
                continue
            if expired is None:
                logger.info("Subscription for %s no longer lapsed, skipping", candidate.user_id)
                continue
            sub, previous_tier = expired
            count += 1
            if self._notifications:
                await self._notifications.notify_subscription_expired(sub.user_id, previous_tier)
        return count

    async def run_all(self, as_of: Optional[datetime] = None) -> Dict[str, int]:
        """
        Run every sweep in dependency order: scheduled changes before
        expiry, so a period ending with a scheduled downgrade is not
        treated as a lapse.
        """
        as_of = as_of or self._credits.now()
        results = {
            "scheduled_tier_changes": await self.process_scheduled_tier_changes(as_of),
            "expired_subscriptions": await self.process_expired_subscriptions(as_of),
            "expired_trials": await self.process_expired_trials(as_of),
            "daily_trial_resets": await self.reset_daily_trial_usage(as_of),
            "stale_payments": await self.expire_stale_payments(as_of),
            "renewal_reminders": await self.send_renewal_reminders(as_of),
        }
        logger.info("Maintenance run at %s: %s", as_of.isoformat(), results)
        return results
