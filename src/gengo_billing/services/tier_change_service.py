from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from ..db.base import BaseDBManager
from ..errors import SubscriptionNotFoundError, TierChangeNotAllowedError
from ..logging.ledger_logger import LedgerLogger
from ..models.api_models import CancellationStatus, SubscriptionInfo, TierChangeValidation
from ..models.catalog import SubscriptionTier
from ..models.subscription import Subscription, SubscriptionStatus
from .credit_service import CreditService
from .trial_history_service import TrialHistoryService


logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    NEW = "new"
    SAME = "same"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


class PurchaseApplication(BaseModel):
    change_type: ChangeType
    scheduled: bool
    subscription: Subscription


class TierChangeService:
    """
    Tier transitions: upgrades apply immediately, downgrades (including
    cancellation, i.e. a downgrade to FREE) wait for the current period to
    end and are applied by `process_scheduled_tier_changes`.

    All balance effects go through CreditService, which owns the
    subscription row.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        credit_service: CreditService,
        trial_history: TrialHistoryService,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._credits = credit_service
        self._trial_history = trial_history
        self._catalog = credit_service.catalog

    def classify(
        self, sub: Optional[Subscription], target: SubscriptionTier, now: Optional[datetime] = None
    ) -> ChangeType:
        """A paid period that already ended, even if not yet swept to FREE, counts as NEW."""
        target = SubscriptionTier(target)
        if sub is None or sub.tier == SubscriptionTier.FREE or sub.status != SubscriptionStatus.ACTIVE:
            return ChangeType.NEW
        if now is not None and sub.current_period_end <= now:
            return ChangeType.NEW
        if target == sub.tier:
            return ChangeType.SAME
        if self._catalog.rank(target) > self._catalog.rank(sub.tier):
            return ChangeType.UPGRADE
        return ChangeType.DOWNGRADE

    async def validate_tier_change(
        self, user_id: str, target_tier: SubscriptionTier
    ) -> TierChangeValidation:
        target = SubscriptionTier(target_tier)
        sub = await self._credits.get_or_create_subscription(user_id)
        change = self.classify(sub, target, self._credits.now())
        period_end = sub.current_period_end.isoformat()

        if change == ChangeType.NEW:
            if target == SubscriptionTier.FREE:
                return TierChangeValidation(allowed=False, message="You are already on the free plan.")
            return TierChangeValidation(
                allowed=True,
                change_type=change.value,
                message=f"Subscribe to {target.value}.",
            )

        if change == ChangeType.SAME:
            if sub.scheduled_tier is not None and sub.scheduled_tier != target:
                return TierChangeValidation(
                    allowed=True,
                    change_type=change.value,
                    message="Renewing keeps your current plan and cancels the scheduled change.",
                    current_period_end=period_end,
                )
            return TierChangeValidation(
                allowed=False,
                change_type=change.value,
                message=f"You are already subscribed to {target.value}.",
                current_period_end=period_end,
            )

        if change == ChangeType.UPGRADE:
            return TierChangeValidation(
                allowed=True,
                change_type=change.value,
                message=f"Upgrade to {target.value} takes effect immediately; unused credits carry over.",
                current_period_end=period_end,
            )

        return TierChangeValidation(
            allowed=True,
            change_type=change.value,
            message=f"You keep {sub.tier.value} until {period_end}; {target.value} starts after that.",
            scheduled_for_next_period=True,
            current_period_end=period_end,
        )

    async def schedule_tier_change(
        self,
        user_id: str,
        target_tier: SubscriptionTier,
        duration_months: Optional[int] = None,
    ) -> Subscription:
        """
        Defer a downgrade to the end of the current period. A newer request
        replaces a pending one.
        """
        target = SubscriptionTier(target_tier)
        sub = await self._credits.get_or_create_subscription(user_id)
        if self.classify(sub, target, self._credits.now()) != ChangeType.DOWNGRADE:
            raise TierChangeNotAllowedError(
                f"{sub.tier.value} -> {target.value} is not a downgrade and cannot be scheduled"
            )
        if sub.scheduled_tier is not None:
            logger.info(
                "Replacing scheduled change %s with %s for %s",
                sub.scheduled_tier.value,
                target.value,
                user_id,
            )
        months = None if target == SubscriptionTier.FREE else (duration_months or 1)
        return await self._credits.set_scheduled_change(
            user_id,
            target,
            months,
            description=f"Scheduled change to {target.value} at period end",
        )

    async def cancel_scheduled_tier_change(self, user_id: str) -> bool:
        cleared = await self._credits.clear_scheduled_change(user_id, "Scheduled tier change canceled")
        return cleared is not None

    async def apply_purchase(
        self,
        user_id: str,
        tier: SubscriptionTier,
        duration_months: int,
        reference_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> PurchaseApplication:
        """
        Apply a confirmed payment. The change type is re-derived from the
        subscription as it is now, not as it was at checkout time.

        Joins the caller's transaction, so the payment status transition and
        the credit grant commit together.
        """
        tier = SubscriptionTier(tier)

        async def apply() -> PurchaseApplication:
            sub = await self._credits.get_subscription(user_id)
            if sub is None:
                raise SubscriptionNotFoundError(user_id)
            change = self.classify(sub, tier, self._credits.now())

            if change == ChangeType.NEW:
                had_trial = sub.has_trial_window
                updated = await self._credits.activate_tier(
                    user_id, tier, duration_months, carry_over=False, reference_id=reference_id, metadata=metadata
                )
                if had_trial:
                    user = await self._db.get_user(user_id)
                    if user is not None:
                        await self._trial_history.record_trial_upgrade(user.email, user_id)
                return PurchaseApplication(change_type=change, scheduled=False, subscription=updated)

            if change == ChangeType.UPGRADE:
                updated = await self._credits.activate_tier(
                    user_id, tier, duration_months, carry_over=True, reference_id=reference_id, metadata=metadata
                )
                return PurchaseApplication(change_type=change, scheduled=False, subscription=updated)

            if change == ChangeType.SAME:
                updated = await self._credits.extend_tier(
                    user_id, duration_months, reference_id=reference_id, metadata=metadata
                )
                return PurchaseApplication(change_type=change, scheduled=False, subscription=updated)

            updated = await self._credits.set_scheduled_change(
                user_id,
                tier,
                duration_months,
                description=f"Paid downgrade to {tier.value} starts at period end",
            )
            return PurchaseApplication(change_type=change, scheduled=True, subscription=updated)

        return await self._credits.atomic(apply)

    async def process_scheduled_tier_changes(self, as_of: Optional[datetime] = None) -> int:
        """
        Apply every scheduled change that is due. Safe to run concurrently
        and repeatedly: each row is re-read inside its own transaction and
        skipped if its schedule was already applied or cleared.
        """
        as_of = as_of or self._credits.now()
        applied = 0
        for candidate in await self._db.get_subscriptions_with_due_schedule(as_of):
            try:
                if await self._apply_scheduled(candidate.user_id, as_of):
                    applied += 1
            except Exception:
                logger.exception("Scheduled tier change failed for %s", candidate.user_id)
                await self._ledger.log_error(
                    message="Scheduled tier change failed",
                    details={"scheduled_tier": candidate.scheduled_tier.value if candidate.scheduled_tier else None},
                    user_id=candidate.user_id,
                )
        return applied

    async def _apply_scheduled(self, user_id: str, as_of: datetime) -> bool:
        async def apply() -> bool:
            sub = await self._credits.get_subscription(user_id)
            if (
                sub is None
                or sub.scheduled_tier is None
                or sub.scheduled_tier_start_at is None
                or sub.scheduled_tier_start_at > as_of
            ):
                return False
            target = sub.scheduled_tier
            if target == SubscriptionTier.FREE:
                await self._credits.downgrade_to_free(
                    user_id, description=f"Scheduled downgrade from {sub.tier.value} to FREE"
                )
            else:
                await self._credits.activate_tier(
                    user_id,
                    target,
                    sub.scheduled_duration_months or 1,
                    carry_over=False,
                    starts_at=sub.scheduled_tier_start_at,
                    metadata={"scheduled": True},
                )
            return True

        return await self._credits.atomic(apply)

    async def cancel_subscription(self, user_id: str) -> Subscription:
        """Cancel at period end: a scheduled downgrade to FREE."""
        sub = await self._credits.get_or_create_subscription(user_id)
        if self.classify(sub, sub.tier, self._credits.now()) == ChangeType.NEW:
            raise TierChangeNotAllowedError("There is no paid subscription to cancel.")
        return await self._credits.set_scheduled_change(
            user_id,
            SubscriptionTier.FREE,
            None,
            description=f"Subscription canceled; {sub.tier.value} access ends at period end",
        )

    async def reactivate_subscription(self, user_id: str) -> Subscription:
        sub = await self._credits.get_or_create_subscription(user_id)
        if sub.scheduled_tier != SubscriptionTier.FREE:
            raise TierChangeNotAllowedError("The subscription is not scheduled for cancellation.")
        cleared = await self._credits.clear_scheduled_change(user_id, "Subscription reactivated")
        return cleared or sub

    async def get_cancellation_status(self, user_id: str) -> CancellationStatus:
        sub = await self._credits.get_or_create_subscription(user_id)
        is_canceled = sub.scheduled_tier == SubscriptionTier.FREE
        return CancellationStatus(
            is_canceled=is_canceled,
            current_tier=sub.tier,
            access_until=sub.current_period_end.isoformat() if is_canceled else None,
            can_reactivate=is_canceled,
        )

    async def get_subscription_info(self, user_id: str) -> SubscriptionInfo:
        sub = await self._credits.get_or_create_subscription(user_id)
        cfg = self._catalog.tier(sub.tier)
        paid = self._catalog.is_paid(sub.tier)
        return SubscriptionInfo(
            tier=sub.tier,
            status=sub.status.value,
            is_paid=paid,
            current_period_end=sub.current_period_end.isoformat() if paid else None,
            scheduled_tier=sub.scheduled_tier,
            scheduled_tier_start_at=(
                sub.scheduled_tier_start_at.isoformat() if sub.scheduled_tier_start_at else None
            ),
            text_unlimited=cfg.text_unlimited,
            realtime_enabled=cfg.realtime_enabled,
            custom_characters=cfg.custom_characters,
            max_chatrooms=cfg.max_chatrooms,
        )

    async def has_tier_or_higher(self, user_id: str, tier: SubscriptionTier) -> bool:
        sub = await self._credits.get_subscription(user_id)
        if sub is None or sub.status != SubscriptionStatus.ACTIVE:
            return SubscriptionTier(tier) == SubscriptionTier.FREE
        return self._catalog.rank(sub.tier) >= self._catalog.rank(tier)
