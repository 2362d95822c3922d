from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

from .base import BaseDBManager
from ..errors import ConcurrentUpdateError
from ..models.base import utcnow
from ..models.catalog import SubscriptionTier
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.payment import PaymentStatus, PendingPayment
from ..models.subscription import Subscription, SubscriptionStatus
from ..models.transaction import CreditTransaction, CreditTransactionType
from ..models.trial_history import TrialHistoryRecord
from ..models.user import UserAccount


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Transactions are serialized by a single lock and rolled back by
    restoring a snapshot of every store taken when the outermost
    transaction started. Stored models are copied on the way in and out so
    callers never share instances with the store.
    """

    _STORES = (
        "_users",
        "_subscriptions",
        "_transactions",
        "_trial_history",
        "_payments",
        "_notifications",
        "_ledger",
    )

    def __init__(self) -> None:
        self._users: Dict[str, UserAccount] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._transactions: List[CreditTransaction] = []
        self._trial_history: Dict[str, TrialHistoryRecord] = {}
        self._payments: Dict[str, PendingPayment] = {}
        self._notifications: List[NotificationEvent] = []
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0
        self._lock = asyncio.Lock()
        self._active: ContextVar[bool] = ContextVar(f"inmemory_tx_{id(self)}", default=False)

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    def in_transaction(self) -> bool:
        return self._active.get()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._active.get():
            yield
            return
        async with self._lock:
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in self._STORES}
            token = self._active.set(True)
            try:
                yield
            except BaseException:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                raise
            finally:
                self._active.reset(token)

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        if user.id is None:
            user.id = self._next_id()
        self._users[user.id] = user.clone()
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        user = self._users.get(user_id)
        return user.clone() if user else None

    async def update_user(self, user: UserAccount) -> UserAccount:
        if user.id is None:
            raise ValueError("User must have id to be updated")
        user.updated_at = utcnow()
        self._users[user.id] = user.clone()
        return user

    # Subscription operations
    async def add_subscription(self, subscription: Subscription) -> Subscription:
        if subscription.user_id in self._subscriptions:
            raise ConcurrentUpdateError(f"subscription already exists for {subscription.user_id}")
        if subscription.id is None:
            subscription.id = self._next_id()
        subscription.version = 1
        self._subscriptions[subscription.user_id] = subscription.clone()
        return subscription

    async def get_subscription(self, user_id: str) -> Optional[Subscription]:
        sub = self._subscriptions.get(user_id)
        return sub.clone() if sub else None

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        stored = self._subscriptions.get(subscription.user_id)
        if stored is None or stored.version != subscription.version:
            raise ConcurrentUpdateError(f"stale subscription for {subscription.user_id}")
        subscription.version += 1
        subscription.updated_at = utcnow()
        self._subscriptions[subscription.user_id] = subscription.clone()
        return subscription

    def _select_subscriptions(self, predicate) -> List[Subscription]:
        return [s.clone() for s in self._subscriptions.values() if predicate(s)]

    async def get_subscriptions_with_due_schedule(self, as_of: datetime) -> Iterable[Subscription]:
        return self._select_subscriptions(
            lambda s: s.scheduled_tier is not None
            and s.scheduled_tier_start_at is not None
            and s.scheduled_tier_start_at <= as_of
        )

    async def get_subscriptions_with_expired_trial(self, as_of: datetime) -> Iterable[Subscription]:
        return self._select_subscriptions(
            lambda s: s.trial_end_date is not None
            and s.trial_end_date <= as_of
            and s.trial_credits_total > s.trial_credits_used
        )

    async def get_subscriptions_with_daily_reset_due(self, as_of: datetime) -> Iterable[Subscription]:
        return self._select_subscriptions(
            lambda s: s.trial_daily_used > 0
            and s.trial_daily_reset is not None
            and s.trial_daily_reset <= as_of
        )

    async def get_subscriptions_ending_between(
        self, start: datetime, end: datetime, tiers: Sequence[SubscriptionTier]
    ) -> Iterable[Subscription]:
        return self._select_subscriptions(
            lambda s: s.tier in tiers
            and s.status == SubscriptionStatus.ACTIVE
            and s.scheduled_tier is None
            and start <= s.current_period_end < end
        )

    # Transaction operations
    async def add_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        if tx.id is None:
            tx.id = self._next_id()
        self._transactions.append(tx.clone())
        return tx

    def _filter_transactions(
        self,
        user_id: str,
        tx_type: Optional[CreditTransactionType],
        start_date: Optional[datetime],
        end_date: Optional[datetime],
    ) -> List[CreditTransaction]:
        return [
            t
            for t in self._transactions
            if t.user_id == user_id
            and (tx_type is None or t.type == tx_type)
            and (start_date is None or t.created_at >= start_date)
            and (end_date is None or t.created_at <= end_date)
        ]

    async def get_transactions(
        self,
        user_id: str,
        tx_type: Optional[CreditTransactionType] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[CreditTransaction]:
        # Insertion order breaks created_at ties so the newest write is first
        rows = list(reversed(self._filter_transactions(user_id, tx_type, start_date, end_date)))
        rows.sort(key=lambda t: t.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return [t.clone() for t in rows[offset:end]]

    async def count_transactions(
        self,
        user_id: str,
        tx_type: Optional[CreditTransactionType] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> int:
        return len(self._filter_transactions(user_id, tx_type, start_date, end_date))

    # Trial history
    async def get_trial_history(self, email: str) -> Optional[TrialHistoryRecord]:
        record = self._trial_history.get(email)
        return record.clone() if record else None

    async def upsert_trial_history(self, email: str, changes: dict[str, Any]) -> TrialHistoryRecord:
        existing = self._trial_history.get(email)
        if existing is None:
            record = TrialHistoryRecord(id=email, email=email, **changes)
        else:
            record = existing.model_copy(update={**changes, "updated_at": utcnow()}, deep=True)
        self._trial_history[email] = record
        return record.clone()

    # Pending payments
    async def add_pending_payment(self, payment: PendingPayment) -> PendingPayment:
        if payment.external_id in self._payments:
            raise ConcurrentUpdateError(f"order {payment.external_id} already exists")
        if payment.id is None:
            payment.id = self._next_id()
        self._payments[payment.external_id] = payment.clone()
        return payment

    async def get_pending_payment(self, external_id: str) -> Optional[PendingPayment]:
        payment = self._payments.get(external_id)
        return payment.clone() if payment else None

    async def update_pending_payment(self, payment: PendingPayment) -> PendingPayment:
        if payment.external_id not in self._payments:
            raise ValueError("PendingPayment must exist to be updated")
        payment.updated_at = utcnow()
        self._payments[payment.external_id] = payment.clone()
        return payment

    async def transition_pending_payment(
        self,
        external_id: str,
        from_statuses: Sequence[PaymentStatus],
        to_status: PaymentStatus,
        changes: Optional[dict[str, Any]] = None,
    ) -> Optional[PendingPayment]:
        stored = self._payments.get(external_id)
        if stored is None or stored.status not in from_statuses:
            return None
        updated = stored.model_copy(
            update={**(changes or {}), "status": to_status, "updated_at": utcnow()}, deep=True
        )
        self._payments[external_id] = updated
        return updated.clone()

    async def find_open_pending_payment(
        self, user_id: str, tier: SubscriptionTier, duration_months: int, as_of: datetime
    ) -> Optional[PendingPayment]:
        candidates = [
            p
            for p in self._payments.values()
            if p.user_id == user_id
            and p.tier == tier
            and p.duration_months == duration_months
            and p.status == PaymentStatus.PENDING
            and p.snap_token is not None
            and (p.expires_at is None or p.expires_at > as_of)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.created_at).clone()

    async def get_stale_pending_payments(self, as_of: datetime) -> Iterable[PendingPayment]:
        return [
            p.clone()
            for p in self._payments.values()
            if p.status == PaymentStatus.PENDING and p.expires_at is not None and p.expires_at <= as_of
        ]

    # Notifications
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent:
        if notification.id is None:
            notification.id = self._next_id()
        self._notifications.append(notification.clone())
        return notification

    async def update_notification_event(self, notification: NotificationEvent) -> NotificationEvent:
        self._notifications = [
            notification.clone() if n.id == notification.id else n for n in self._notifications
        ]
        return notification

    async def get_notification_events(self, user_id: str) -> List[NotificationEvent]:
        return [n.clone() for n in self._notifications if n.user_id == user_id]

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry.clone())
        return entry

    def ledger_entries(self) -> List[LedgerEntry]:
        return list(self._ledger)
