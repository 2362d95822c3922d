from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

from dateutil.relativedelta import relativedelta

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..errors import InsufficientCreditsError, SubscriptionNotFoundError
from ..logging.ledger_logger import LedgerLogger
from ..models.base import PaginatedResult, utcnow
from ..models.catalog import DEFAULT_CATALOG, SubscriptionTier, TierCatalog, UsageType
from ..models.credits import (
    CreditBalance,
    CreditCheck,
    DeductionResult,
    HistoryOptions,
    TokenUsage,
    TrialExtensionResult,
    TrialStatus,
)
from ..models.ledger import LedgerEventType
from ..models.subscription import Subscription, SubscriptionStatus
from ..models.transaction import CreditTransaction, CreditTransactionType
from ..models.user import UserAccount
from .notification_service import NotificationService
from .trial_history_service import TrialHistoryService
from .usage_calculator import calculate_credits_from_usage, estimate_credits, usage_type_from_model


T = TypeVar("T")

# FREE has no billing period; its window is pushed far enough out to never lapse
FREE_PERIOD = relativedelta(years=100)

REASON_TRIAL_NOT_AVAILABLE = "trial not available"
REASON_TRIAL_ENDED = "trial ended"
REASON_DAILY_LIMIT = "daily trial limit reached"
REASON_TRIAL_EXHAUSTED = "trial credits exhausted"
REASON_INSUFFICIENT = "insufficient credits"


def next_utc_midnight(now: datetime) -> datetime:
    return (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)


def crossed_thresholds(
    thresholds: List[int], used_before: int, used_after: int, total: int
) -> List[int]:
    """Thresholds (in percent of `total`) strictly crossed going from before to after."""
    if total <= 0:
        return []
    return [
        t
        for t in sorted(thresholds)
        if used_before * 100 < t * total <= used_after * 100
    ]


class CreditService:
    """
    Owner of the per-user `Subscription` aggregate and of the append-only
    credit ledger.

    Every balance change runs as one atomic unit that writes the new
    subscription row (compare-and-set on its version) together with exactly
    one `CreditTransaction` carrying the applied delta. The sum of a user's
    transaction amounts therefore always equals
    `credits_remaining + trial_credits_remaining`.

    Notifications are sent only after the unit commits and never affect it.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        trial_history: TrialHistoryService,
        catalog: TierCatalog = DEFAULT_CATALOG,
        cache: Optional[AsyncCacheBackend] = None,
        notifications: Optional[NotificationService] = None,
        clock: Callable[[], datetime] = utcnow,
        retry_attempts: int = 3,
        cache_ttl_seconds: int = 300,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._trial_history = trial_history
        self._catalog = catalog
        self._cache = cache
        self._notifications = notifications
        self._clock = clock
        self._retry_attempts = retry_attempts
        self._cache_ttl_seconds = cache_ttl_seconds

    @property
    def catalog(self) -> TierCatalog:
        return self._catalog

    def now(self) -> datetime:
        return self._clock()

    async def atomic(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await self._db.run_atomic(operation, attempts=self._retry_attempts)

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    async def get_subscription(self, user_id: str) -> Optional[Subscription]:
        return await self._db.get_subscription(user_id)

    async def get_or_create_subscription(
        self, user_id: str, email: Optional[str] = None
    ) -> Subscription:
        """
        Return the user's subscription, creating it on first use. A FREE
        trial is granted only if the email has never had one; otherwise the
        subscription starts without a trial window and a zero ADJUSTMENT
        records why.
        """
        existing = await self._db.get_subscription(user_id)
        if existing is not None:
            return existing

        async def create() -> Tuple[Subscription, bool]:
            current = await self._db.get_subscription(user_id)
            if current is not None:
                return current, False

            now = self.now()
            user = await self._db.get_user(user_id)
            address = email or (user.email if user else None)
            if user is None and address:
                await self._db.add_user(UserAccount(id=user_id, email=address))

            eligible = bool(address) and await self._trial_history.check_trial_eligibility(address)
            free = self._catalog.tier(SubscriptionTier.FREE)

            if eligible:
                trial_end = now + timedelta(days=free.trial_days)
                sub = Subscription(
                    user_id=user_id,
                    tier=SubscriptionTier.FREE,
                    current_period_start=now,
                    current_period_end=trial_end,
                    trial_start_date=now,
                    trial_end_date=trial_end,
                    trial_credits_total=free.trial_credits,
                    trial_daily_reset=next_utc_midnight(now),
                    catalog_version=self._catalog.version,
                )
                sub = await self._db.add_subscription(sub)
                await self._append(
                    sub,
                    CreditTransactionType.TRIAL_GRANT,
                    free.trial_credits,
                    description=f"Free trial: {free.trial_credits} credits for {free.trial_days} days",
                )
                await self._trial_history.record_trial_start(address, user_id, now, trial_end)
                return sub, True

            sub = Subscription(
                user_id=user_id,
                tier=SubscriptionTier.FREE,
                current_period_start=now,
                current_period_end=now + FREE_PERIOD,
                catalog_version=self._catalog.version,
            )
            sub = await self._db.add_subscription(sub)
            reason = "email already used a trial" if address else "no email on file"
            await self._append(
                sub,
                CreditTransactionType.ADJUSTMENT,
                0,
                description=f"Trial not granted: {reason}",
                metadata={"trial_denied": True},
            )
            await self._ledger.log_event(
                LedgerEventType.TRIAL,
                message="Trial denied",
                details={"reason": reason},
                user_id=user_id,
            )
            return sub, False

        sub, granted = await self.atomic(create)
        if granted and self._notifications:
            free = self._catalog.tier(SubscriptionTier.FREE)
            await self._notifications.notify_trial_started(user_id, free.trial_credits, free.trial_days)
        return sub

    async def close_account(self, user_id: str) -> Optional[Subscription]:
        """
        Account deletion: forfeit every remaining credit, leave the
        subscription in a terminal FREE/CANCELED state and stamp the trial
        history so the email cannot claim a new trial.
        """
        user = await self._db.get_user(user_id)

        async def close() -> Optional[Subscription]:
            sub = await self._db.get_subscription(user_id)
            if sub is not None:
                forfeited = sub.ledger_balance
                sub.credits_remaining = 0
                sub.credits_total = sub.credits_used
                sub.trial_credits_total = sub.trial_credits_used
                sub.tier = SubscriptionTier.FREE
                sub.status = SubscriptionStatus.CANCELED
                sub.current_period_end = self.now()
                self._clear_schedule(sub)
                await self._append(
                    sub,
                    CreditTransactionType.ADJUSTMENT,
                    -forfeited,
                    description="Account closed",
                )
                sub = await self._db.update_subscription(sub)
            if user is not None:
                user.deleted_at = self.now()
                await self._db.update_user(user)
                await self._trial_history.record_account_deletion(user.email, user_id)
            await self._ledger.log_transaction(
                user_id=user_id, message="Account closed", details={}
            )
            return sub

        sub = await self.atomic(close)
        await self._invalidate(user_id)
        return sub

    # ------------------------------------------------------------------
    # Checks and reads
    # ------------------------------------------------------------------

    async def check_credits(
        self, user_id: str, usage_type: UsageType, estimated_units: float = 1
    ) -> CreditCheck:
        """Decide whether an action may proceed. Never changes balances."""
        sub = await self.get_or_create_subscription(user_id)
        now = self.now()
        usage_type = UsageType(usage_type)
        cost = estimate_credits(usage_type, estimated_units, self._catalog)
        cfg = self._catalog.tier(sub.tier)
        trial_days = sub.trial_days_remaining(now)
        trial_usable = sub.usable_trial_credits(now)

        def result(allowed: bool, reason: Optional[str], required: int, available: int) -> CreditCheck:
            return CreditCheck(
                allowed=allowed,
                reason=reason,
                credits_required=required,
                credits_available=available,
                is_trial_user=sub.tier == SubscriptionTier.FREE and sub.has_trial_window,
                trial_days_remaining=trial_days if sub.has_trial_window else None,
                has_trial_credits=trial_usable > 0,
                trial_credits_remaining=trial_usable,
            )

        if sub.tier == SubscriptionTier.FREE:
            if not sub.has_trial_window:
                return result(False, REASON_TRIAL_NOT_AVAILABLE, cost, 0)
            if not sub.is_trial_active(now):
                return result(False, REASON_TRIAL_ENDED, cost, 0)
            daily_left = max(cfg.trial_daily_limit - sub.trial_daily_used_as_of(now), 0)
            available = min(daily_left, sub.trial_credits_remaining)
            if cost > daily_left:
                return result(False, REASON_DAILY_LIMIT, cost, available)
            if sub.trial_credits_used + cost > sub.trial_credits_total:
                return result(False, REASON_TRIAL_EXHAUSTED, cost, available)
            return result(True, None, cost, available)

        available = trial_usable + sub.credits_remaining
        if cfg.text_unlimited and usage_type == UsageType.TEXT_CHAT:
            return result(True, None, 0, available)
        if cost > available:
            return result(False, REASON_INSUFFICIENT, cost, available)
        return result(True, None, cost, available)

    async def get_balance(self, user_id: str) -> CreditBalance:
        cache_key = self._balance_cache_key(user_id)
        if self._cache:
            cached = await self._cache.get(cache_key)
            if isinstance(cached, dict):
                return CreditBalance.model_validate(cached)

        sub = await self.get_or_create_subscription(user_id)
        now = self.now()
        cfg = self._catalog.tier(SubscriptionTier.FREE)
        trial_usable = sub.usable_trial_credits(now)
        balance = CreditBalance(
            total=sub.credits_total,
            used=sub.credits_used,
            remaining=sub.credits_remaining,
            tier=sub.tier,
            is_trial_active=sub.is_trial_active(now),
            trial_days_remaining=sub.trial_days_remaining(now),
            trial_daily_used=sub.trial_daily_used_as_of(now),
            trial_daily_limit=cfg.trial_daily_limit if sub.tier == SubscriptionTier.FREE else 0,
            period_end=sub.current_period_end,
            has_trial_credits=trial_usable > 0,
            trial_credits_remaining=trial_usable,
            trial_end_date=sub.trial_end_date,
            scheduled_tier=sub.scheduled_tier,
        )
        if self._cache:
            await self._cache.set(cache_key, balance.model_dump(), ttl_seconds=self._cache_ttl_seconds)
        return balance

    async def get_history(
        self, user_id: str, options: Optional[HistoryOptions] = None
    ) -> PaginatedResult[CreditTransaction]:
        options = options or HistoryOptions()
        items = await self._db.get_transactions(
            user_id,
            tx_type=options.type,
            start_date=options.start_date,
            end_date=options.end_date,
            limit=options.limit,
            offset=options.offset,
        )
        total = await self._db.count_transactions(
            user_id,
            tx_type=options.type,
            start_date=options.start_date,
            end_date=options.end_date,
        )
        return PaginatedResult[CreditTransaction](
            items=items, total=total, limit=options.limit, offset=options.offset
        )

    async def get_trial_status(self, user_id: str) -> TrialStatus:
        sub = await self.get_or_create_subscription(user_id)
        now = self.now()
        cfg = self._catalog.tier(SubscriptionTier.FREE)
        if not sub.has_trial_window:
            return TrialStatus(is_in_trial=False, has_used_trial=True)
        daily_used = sub.trial_daily_used_as_of(now)
        total = sub.trial_credits_total
        return TrialStatus(
            is_in_trial=sub.tier == SubscriptionTier.FREE and sub.is_trial_active(now),
            has_used_trial=True,
            trial_start_date=sub.trial_start_date,
            trial_end_date=sub.trial_end_date,
            days_remaining=sub.trial_days_remaining(now),
            credits_total=total,
            credits_used=sub.trial_credits_used,
            credits_remaining=sub.trial_credits_remaining,
            credits_usage_percent=round(sub.trial_credits_used * 100 / total) if total else 0,
            daily_limit=cfg.trial_daily_limit,
            daily_used=daily_used,
            daily_remaining=max(cfg.trial_daily_limit - daily_used, 0),
        )

    # ------------------------------------------------------------------
    # Deductions
    # ------------------------------------------------------------------

    async def deduct_credits_from_usage(
        self,
        user_id: str,
        usage: TokenUsage,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        description: Optional[str] = None,
        force_deduct: bool = False,
        correlation_id: Optional[str] = None,
    ) -> DeductionResult:
        """Price real API usage and charge it. Callers never compute credits themselves."""
        calc = calculate_credits_from_usage(usage, self._catalog)
        metadata: dict[str, Any] = {
            "model": usage.model,
            **usage.model_dump(exclude={"model"}, exclude_defaults=True),
            "usd_cost": str(calc.usd_cost),
            "breakdown": {k: str(v) for k, v in calc.breakdown.items()},
        }
        result = await self.deduct_credits(
            user_id=user_id,
            usage_type=usage_type_from_model(usage.model),
            credits=calc.credits,
            metadata=metadata,
            reference_id=reference_id,
            reference_type=reference_type,
            description=description,
            force_deduct=force_deduct,
            correlation_id=correlation_id,
        )
        result.usd_cost = calc.usd_cost
        return result

    async def deduct_credits(
        self,
        user_id: str,
        usage_type: UsageType,
        credits: int,
        metadata: Optional[dict[str, Any]] = None,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        description: Optional[str] = None,
        force_deduct: bool = False,
        correlation_id: Optional[str] = None,
    ) -> DeductionResult:
        """
        Charge `credits` for one action. Raises InsufficientCreditsError
        (no state change) when the spendable pools cannot cover it.

        Order: unlimited text on a paid tier is recorded at zero cost; FREE
        spends the trial pool only; a paid tier spends unexpired trial credits
        first and the rest from subscription credits.
        """
        if credits < 0:
            raise ValueError("credits must not be negative")
        usage_type = UsageType(usage_type)
        await self.get_or_create_subscription(user_id)

        async def deduct() -> Tuple[DeductionResult, Optional[Subscription], int]:
            sub = await self._load(user_id)
            now = self.now()
            cfg = self._catalog.tier(sub.tier)

            if cfg.text_unlimited and usage_type == UsageType.TEXT_CHAT and not force_deduct:
                tx = await self._append(
                    sub,
                    CreditTransactionType.USAGE,
                    0,
                    usage_type=usage_type,
                    description=description or "Unlimited text chat",
                    metadata={**(metadata or {}), "unlimited": True, "credits_waived": credits},
                    reference_id=reference_id,
                    reference_type=reference_type,
                )
                return DeductionResult(credits=0, transaction=tx), None, 0

            if credits == 0:
                return DeductionResult(credits=0), None, 0

            if sub.trial_daily_reset is not None and sub.trial_daily_reset <= now:
                sub.trial_daily_used = 0
                sub.trial_daily_reset = next_utc_midnight(now)

            trial_usable = sub.usable_trial_credits(now)
            if sub.tier == SubscriptionTier.FREE:
                if credits > trial_usable:
                    reason = (
                        REASON_TRIAL_ENDED
                        if sub.has_trial_window and not sub.is_trial_active(now)
                        else REASON_INSUFFICIENT
                    )
                    raise InsufficientCreditsError(
                        credits, trial_usable, reason, sub.trial_days_remaining(now)
                    )
                from_trial, from_subscription = credits, 0
            else:
                from_trial = min(trial_usable, credits)
                from_subscription = credits - from_trial
                if from_subscription > sub.credits_remaining:
                    raise InsufficientCreditsError(credits, trial_usable + sub.credits_remaining)

            used_before = sub.credits_used
            sub.trial_credits_used += from_trial
            sub.trial_daily_used += from_trial
            sub.credits_used += from_subscription
            sub.credits_remaining -= from_subscription

            tx = await self._append(
                sub,
                CreditTransactionType.USAGE,
                -credits,
                usage_type=usage_type,
                description=description or f"{usage_type.value} usage",
                metadata={
                    **(metadata or {}),
                    "from_trial": from_trial,
                    "from_subscription": from_subscription,
                },
                reference_id=reference_id,
                reference_type=reference_type,
            )
            sub = await self._db.update_subscription(sub)
            await self._ledger.log_transaction(
                user_id=user_id,
                message="Credits deducted",
                details={
                    "amount": credits,
                    "from_trial": from_trial,
                    "from_subscription": from_subscription,
                    "new_balance": tx.balance,
                },
                correlation_id=correlation_id,
            )
            return DeductionResult(credits=credits, transaction=tx), sub, used_before

        try:
            result, sub, used_before = await self.atomic(deduct)
        except InsufficientCreditsError as exc:
            await self._ledger.log_error(
                message="Insufficient credits for deduction",
                details={"requested": exc.required, "available": exc.available, "reason": exc.reason},
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise

        await self._invalidate(user_id)
        if sub is not None and sub.credits_used > used_before:
            await self._notify_thresholds(sub, used_before)
        return result

    async def _notify_thresholds(self, sub: Subscription, used_before: int) -> None:
        if not self._notifications:
            return
        for threshold in crossed_thresholds(
            self._catalog.usage_thresholds, used_before, sub.credits_used, sub.credits_total
        ):
            await self._notifications.notify_usage_threshold(
                sub.user_id, threshold, sub.credits_remaining, sub.credits_total
            )

    # ------------------------------------------------------------------
    # Grants and adjustments
    # ------------------------------------------------------------------

    async def grant_monthly_credits(self, user_id: str, correlation_id: Optional[str] = None) -> CreditTransaction:
        """Start the next monthly period of a paid tier with a fresh allotment."""

        async def grant() -> Tuple[CreditTransaction, Subscription]:
            sub = await self._load(user_id)
            allotment = self._catalog.tier(sub.tier).monthly_credits
            if allotment <= 0:
                raise ValueError(f"tier {sub.tier.value} has no monthly allotment")
            sub.credits_remaining += allotment
            sub.credits_used = 0
            sub.credits_total = sub.credits_remaining
            sub.current_period_start = sub.current_period_end
            sub.current_period_end = sub.current_period_end + relativedelta(months=1)
            sub.status = SubscriptionStatus.ACTIVE
            sub.catalog_version = self._catalog.version
            tx = await self._append(
                sub,
                CreditTransactionType.GRANT,
                allotment,
                description=f"Monthly {sub.tier.value} credits",
            )
            sub = await self._db.update_subscription(sub)
            await self._ledger.log_transaction(
                user_id=user_id,
                message="Monthly credits granted",
                details={"amount": allotment, "period_end": sub.current_period_end.isoformat()},
                correlation_id=correlation_id,
            )
            return tx, sub

        tx, sub = await self.atomic(grant)
        await self._invalidate(user_id)
        if self._notifications:
            await self._notifications.notify_credits_renewed(user_id, sub.tier, tx.amount)
        return tx

    async def add_bonus_credits(
        self, user_id: str, amount: int, description: Optional[str] = None
    ) -> CreditTransaction:
        if amount <= 0:
            raise ValueError("amount must be positive")
        await self.get_or_create_subscription(user_id)

        async def bonus() -> CreditTransaction:
            sub = await self._load(user_id)
            sub.credits_total += amount
            sub.credits_remaining += amount
            tx = await self._append(
                sub, CreditTransactionType.BONUS, amount, description=description or "Bonus credits"
            )
            await self._db.update_subscription(sub)
            await self._ledger.log_transaction(
                user_id=user_id, message="Bonus credits added", details={"amount": amount}
            )
            return tx

        tx = await self.atomic(bonus)
        await self._invalidate(user_id)
        return tx

    async def refund_credits(
        self,
        user_id: str,
        amount: int,
        reference_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CreditTransaction:
        """Give back subscription credits charged for a failed action."""
        if amount <= 0:
            raise ValueError("amount must be positive")

        async def refund() -> CreditTransaction:
            sub = await self._load(user_id)
            sub.credits_used -= min(amount, sub.credits_used)
            sub.credits_remaining += amount
            sub.credits_total = sub.credits_used + sub.credits_remaining
            tx = await self._append(
                sub,
                CreditTransactionType.REFUND,
                amount,
                description=description or "Refund",
                reference_id=reference_id,
            )
            await self._db.update_subscription(sub)
            await self._ledger.log_transaction(
                user_id=user_id,
                message="Credits refunded",
                details={"amount": amount, "reference_id": reference_id},
            )
            return tx

        tx = await self.atomic(refund)
        await self._invalidate(user_id)
        return tx

    async def adjust_credits(self, user_id: str, amount: int, description: str) -> CreditTransaction:
        """
        Manual correction of subscription credits. A negative amount is
        clamped so the balance stops at zero; the ledger records the delta
        actually applied.
        """

        async def adjust() -> CreditTransaction:
            sub = await self._load(user_id)
            applied = max(amount, -sub.credits_remaining)
            sub.credits_remaining += applied
            sub.credits_total = sub.credits_used + sub.credits_remaining
            tx = await self._append(
                sub,
                CreditTransactionType.ADJUSTMENT,
                applied,
                description=description,
                metadata={"requested": amount},
            )
            await self._db.update_subscription(sub)
            await self._ledger.log_transaction(
                user_id=user_id,
                message="Credits adjusted",
                details={"requested": amount, "applied": applied, "description": description},
            )
            return tx

        tx = await self.atomic(adjust)
        await self._invalidate(user_id)
        return tx

    # ------------------------------------------------------------------
    # Trial maintenance
    # ------------------------------------------------------------------

    async def add_bonus_trial_credits(self, user_id: str, amount: int, reason: str) -> bool:
        """Top up an active FREE trial. Returns False if there is no active trial."""
        if amount <= 0:
            raise ValueError("amount must be positive")

        async def top_up() -> bool:
            sub = await self._load(user_id)
            if sub.tier != SubscriptionTier.FREE or not sub.is_trial_active(self.now()):
                return False
            sub.trial_credits_total += amount
            await self._append(
                sub, CreditTransactionType.BONUS, amount, description=f"Bonus trial credits: {reason}"
            )
            await self._db.update_subscription(sub)
            return True

        added = await self.atomic(top_up)
        if added:
            await self._invalidate(user_id)
        return added

    async def extend_trial(self, user_id: str, additional_days: int) -> TrialExtensionResult:
        if additional_days <= 0:
            raise ValueError("additional_days must be positive")

        async def extend() -> TrialExtensionResult:
            sub = await self._load(user_id)
            if sub.tier != SubscriptionTier.FREE or not sub.has_trial_window:
                return TrialExtensionResult(success=False, message="No trial to extend")
            base = max(self.now(), sub.trial_end_date)
            sub.trial_end_date = base + timedelta(days=additional_days)
            sub.current_period_end = sub.trial_end_date
            sub.status = SubscriptionStatus.ACTIVE
            await self._db.update_subscription(sub)
            await self._ledger.log_event(
                LedgerEventType.TRIAL,
                message="Trial extended",
                details={"days": additional_days, "trial_end": sub.trial_end_date.isoformat()},
                user_id=user_id,
            )
            return TrialExtensionResult(
                success=True,
                new_end_date=sub.trial_end_date,
                message=f"Trial extended by {additional_days} days",
            )

        result = await self.atomic(extend)
        await self._invalidate(user_id)
        return result

    async def reset_daily_trial_usage(self, as_of: Optional[datetime] = None) -> int:
        """Zero the trial daily counters whose reset time has passed."""
        as_of = as_of or self.now()
        count = 0
        for candidate in await self._db.get_subscriptions_with_daily_reset_due(as_of):

            async def reset(user_id: str = candidate.user_id) -> bool:
                sub = await self._load(user_id)
                if sub.trial_daily_reset is None or sub.trial_daily_reset > as_of:
                    return False
                sub.trial_daily_used = 0
                sub.trial_daily_reset = next_utc_midnight(as_of)
                await self._db.update_subscription(sub)
                return True

            if await self.atomic(reset):
                count += 1
                await self._invalidate(candidate.user_id)
        return count

    async def process_expired_trials(self, as_of: Optional[datetime] = None) -> int:
        """
        Forfeit trial credits whose window has closed. Each forfeiture is a
        negative ADJUSTMENT so the ledger keeps summing to the balance.
        """
        as_of = as_of or self.now()
        count = 0
        for candidate in await self._db.get_subscriptions_with_expired_trial(as_of):

            async def expire(user_id: str = candidate.user_id) -> Tuple[int, Subscription]:
                sub = await self._load(user_id)
                if sub.trial_end_date is None or sub.trial_end_date > as_of:
                    return 0, sub
                forfeited = sub.trial_credits_remaining
                if forfeited <= 0:
                    return 0, sub
                sub.trial_credits_total = sub.trial_credits_used
                await self._append(
                    sub,
                    CreditTransactionType.ADJUSTMENT,
                    -forfeited,
                    description="Trial expired",
                    metadata={"trial_end": sub.trial_end_date.isoformat()},
                )
                sub = await self._db.update_subscription(sub)
                user = await self._db.get_user(user_id)
                if user is not None:
                    await self._trial_history.record_trial_end(user.email, user_id, sub.trial_end_date)
                await self._ledger.log_event(
                    LedgerEventType.TRIAL,
                    message="Trial expired",
                    details={"forfeited": forfeited},
                    user_id=user_id,
                )
                return forfeited, sub

            forfeited, sub = await self.atomic(expire)
            if forfeited:
                count += 1
                await self._invalidate(sub.user_id)
                if self._notifications and sub.tier == SubscriptionTier.FREE:
                    await self._notifications.notify_trial_ended(sub.user_id, forfeited)
        return count

    # ------------------------------------------------------------------
    # Tier primitives, driven by TierChangeService. Each one is a single
    # atomic unit that joins the caller's transaction if there is one.
    # ------------------------------------------------------------------

    async def activate_tier(
        self,
        user_id: str,
        tier: SubscriptionTier,
        duration_months: int,
        carry_over: bool,
        reference_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        starts_at: Optional[datetime] = None,
    ) -> Subscription:
        """
        Move the subscription onto `tier` for `duration_months` starting at
        `starts_at` (default now) and grant the allotment for the whole
        duration. Without `carry_over` the previous subscription credits are
        forfeited first.
        The trial pool is left untouched.
        """
        tier = SubscriptionTier(tier)
        grant = self._catalog.tier(tier).monthly_credits * duration_months

        async def activate() -> Subscription:
            sub = await self._load(user_id)
            start = starts_at or self.now()
            previous_tier = sub.tier
            if not carry_over and sub.credits_remaining > 0:
                forfeited = sub.credits_remaining
                sub.credits_remaining = 0
                sub.credits_total = sub.credits_used
                await self._append(
                    sub,
                    CreditTransactionType.ADJUSTMENT,
                    -forfeited,
                    description=f"{previous_tier.value} credits forfeited on plan change",
                    reference_id=reference_id,
                )
            sub.credits_remaining += grant
            sub.credits_used = 0
            sub.credits_total = sub.credits_remaining
            sub.tier = tier
            sub.status = SubscriptionStatus.ACTIVE
            sub.current_period_start = start
            sub.current_period_end = start + relativedelta(months=duration_months)
            sub.catalog_version = self._catalog.version
            self._clear_schedule(sub)
            await self._append(
                sub,
                CreditTransactionType.GRANT,
                grant,
                description=f"{tier.value} plan, {duration_months} month(s)",
                reference_id=reference_id,
                reference_type="payment" if reference_id else None,
                metadata={**(metadata or {}), "previous_tier": previous_tier.value},
            )
            sub = await self._db.update_subscription(sub)
            await self._ledger.log_event(
                LedgerEventType.TIER_CHANGE,
                message="Tier activated",
                details={
                    "from": previous_tier.value,
                    "to": tier.value,
                    "months": duration_months,
                    "granted": grant,
                    "carry_over": carry_over,
                },
                user_id=user_id,
                correlation_id=reference_id,
            )
            return sub

        sub = await self.atomic(activate)
        await self._invalidate(user_id)
        return sub

    async def extend_tier(
        self,
        user_id: str,
        duration_months: int,
        reference_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Subscription:
        """Same-tier repurchase: push the period end out and add credits on top."""

        async def extend() -> Subscription:
            sub = await self._load(user_id)
            grant = self._catalog.tier(sub.tier).monthly_credits * duration_months
            base = max(sub.current_period_end, self.now())
            sub.current_period_end = base + relativedelta(months=duration_months)
            sub.credits_total += grant
            sub.credits_remaining += grant
            sub.status = SubscriptionStatus.ACTIVE
            sub.catalog_version = self._catalog.version
            cleared = sub.scheduled_tier
            self._clear_schedule(sub)
            await self._append(
                sub,
                CreditTransactionType.GRANT,
                grant,
                description=f"{sub.tier.value} plan extended by {duration_months} month(s)",
                reference_id=reference_id,
                reference_type="payment" if reference_id else None,
                metadata={**(metadata or {}), "cleared_schedule": cleared.value if cleared else None},
            )
            sub = await self._db.update_subscription(sub)
            await self._ledger.log_event(
                LedgerEventType.TIER_CHANGE,
                message="Tier extended",
                details={"tier": sub.tier.value, "months": duration_months, "granted": grant},
                user_id=user_id,
                correlation_id=reference_id,
            )
            return sub

        sub = await self.atomic(extend)
        await self._invalidate(user_id)
        return sub

    async def downgrade_to_free(
        self,
        user_id: str,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        description: str = "Downgraded to FREE",
    ) -> Subscription:
        """Zero the subscription credits and park the user on FREE. The trial pool is untouched."""

        async def downgrade() -> Subscription:
            sub = await self._load(user_id)
            return await self._park_on_free(sub, status, description)

        sub = await self.atomic(downgrade)
        await self._invalidate(user_id)
        return sub

    async def expire_lapsed_subscription(
        self, user_id: str, as_of: datetime
    ) -> Optional[Tuple[Subscription, SubscriptionTier]]:
        """
        Move a lapsed paid subscription to FREE with status EXPIRED.

        The row is re-read inside the transaction and left alone unless it is
        still lapsed at `as_of`, so a renewal that committed after the caller
        selected it, or a second sweep worker, makes this a no-op (None).
        Returns the expired subscription and the tier it expired from.
        """

        async def expire() -> Optional[Tuple[Subscription, SubscriptionTier]]:
            sub = await self._db.get_subscription(user_id)
            if sub is None or not sub.is_lapsed(as_of):
                return None
            previous_tier = sub.tier
            sub = await self._park_on_free(
                sub, SubscriptionStatus.EXPIRED, f"{previous_tier.value} subscription expired"
            )
            return sub, previous_tier

        expired = await self.atomic(expire)
        if expired is not None:
            await self._invalidate(user_id)
        return expired

    async def record_renewal_reminder(self, user_id: str, period_end: datetime, days: int) -> bool:
        """
        Claim the `days`-before reminder for the period ending at
        `period_end`. Returns False if it was already claimed or the period
        has changed since the caller looked, so each reminder is sent once
        no matter how often or how concurrently the sweep runs.
        """

        async def claim() -> bool:
            sub = await self._db.get_subscription(user_id)
            if (
                sub is None
                or sub.tier == SubscriptionTier.FREE
                or sub.status != SubscriptionStatus.ACTIVE
                or sub.scheduled_tier is not None
                or sub.current_period_end != period_end
            ):
                return False
            if sub.reminder_period_end != period_end:
                sub.reminder_period_end = period_end
                sub.reminder_days_sent = []
            if days in sub.reminder_days_sent:
                return False
            sub.reminder_days_sent = [*sub.reminder_days_sent, days]
            await self._db.update_subscription(sub)
            return True

        return await self.atomic(claim)

    async def set_scheduled_change(
        self,
        user_id: str,
        tier: SubscriptionTier,
        duration_months: Optional[int],
        description: str,
    ) -> Subscription:
        """Record a tier change to apply at the current period end. Last write wins."""
        tier = SubscriptionTier(tier)

        async def schedule() -> Subscription:
            sub = await self._load(user_id)
            replaced = sub.scheduled_tier
            sub.scheduled_tier = tier
            sub.scheduled_tier_start_at = sub.current_period_end
            sub.scheduled_duration_months = duration_months
            await self._append(
                sub,
                CreditTransactionType.ADJUSTMENT,
                0,
                description=description,
                metadata={
                    "scheduled_tier": tier.value,
                    "effective_at": sub.current_period_end.isoformat(),
                    "replaced": replaced.value if replaced else None,
                },
            )
            sub = await self._db.update_subscription(sub)
            await self._ledger.log_event(
                LedgerEventType.TIER_CHANGE,
                message="Tier change scheduled",
                details={
                    "to": tier.value,
                    "months": duration_months,
                    "replaced": replaced.value if replaced else None,
                },
                user_id=user_id,
            )
            return sub

        sub = await self.atomic(schedule)
        await self._invalidate(user_id)
        return sub

    async def clear_scheduled_change(self, user_id: str, description: str) -> Optional[Subscription]:
        """Drop a pending change. Returns None if nothing was scheduled."""

        async def clear() -> Optional[Subscription]:
            sub = await self._load(user_id)
            if sub.scheduled_tier is None:
                return None
            cleared = sub.scheduled_tier
            self._clear_schedule(sub)
            await self._append(
                sub,
                CreditTransactionType.ADJUSTMENT,
                0,
                description=description,
                metadata={"cleared_tier": cleared.value},
            )
            sub = await self._db.update_subscription(sub)
            await self._ledger.log_event(
                LedgerEventType.TIER_CHANGE,
                message="Scheduled tier change cleared",
                details={"tier": cleared.value},
                user_id=user_id,
            )
            return sub

        sub = await self.atomic(clear)
        await self._invalidate(user_id)
        return sub

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, user_id: str) -> Subscription:
        sub = await self._db.get_subscription(user_id)
        if sub is None:
            raise SubscriptionNotFoundError(user_id)
        return sub

    async def _park_on_free(
        self, sub: Subscription, status: SubscriptionStatus, description: str
    ) -> Subscription:
        now = self.now()
        previous_tier = sub.tier
        forfeited = sub.credits_remaining
        sub.credits_total = 0
        sub.credits_used = 0
        sub.credits_remaining = 0
        sub.tier = SubscriptionTier.FREE
        sub.status = status
        sub.current_period_start = now
        sub.current_period_end = now + FREE_PERIOD
        self._clear_schedule(sub)
        await self._append(
            sub,
            CreditTransactionType.ADJUSTMENT,
            -forfeited,
            description=description,
            metadata={"previous_tier": previous_tier.value},
        )
        sub = await self._db.update_subscription(sub)
        await self._ledger.log_event(
            LedgerEventType.TIER_CHANGE,
            message=description,
            details={"from": previous_tier.value, "forfeited": forfeited},
            user_id=sub.user_id,
        )
        return sub

    @staticmethod
    def _clear_schedule(sub: Subscription) -> None:
        sub.scheduled_tier = None
        sub.scheduled_tier_start_at = None
        sub.scheduled_duration_months = None

    async def _append(
        self,
        sub: Subscription,
        tx_type: CreditTransactionType,
        amount: int,
        usage_type: Optional[UsageType] = None,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
    ) -> CreditTransaction:
        """Write one ledger row for a change already applied to `sub`."""
        tx = CreditTransaction(
            user_id=sub.user_id,
            type=tx_type,
            amount=amount,
            balance=sub.ledger_balance,
            usage_type=usage_type,
            description=description,
            metadata=metadata or {},
            reference_id=reference_id,
            reference_type=reference_type,
            catalog_version=self._catalog.version,
            created_at=self.now(),
        )
        return await self._db.add_transaction(tx)

    @staticmethod
    def _balance_cache_key(user_id: str) -> str:
        return f"credit:user:{user_id}:balance"

    async def _invalidate(self, user_id: str) -> None:
        if self._cache:
            await self._cache.delete(self._balance_cache_key(user_id))
