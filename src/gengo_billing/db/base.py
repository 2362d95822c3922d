from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, List, Optional, Sequence, TypeVar

from ..errors import ConcurrentUpdateError
from ..models.catalog import SubscriptionTier
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.payment import PaymentStatus, PendingPayment
from ..models.subscription import Subscription
from ..models.transaction import CreditTransaction, CreditTransactionType
from ..models.trial_history import TrialHistoryRecord
from ..models.user import UserAccount


logger = logging.getLogger(__name__)

T = TypeVar("T")


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (in-memory, MongoDB) implement these methods.
    Multi-document atomicity comes from the `transaction()` context manager;
    per-row concurrency from compare-and-set updates on `Subscription.version`
    and `PendingPayment.status`.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context. Re-entrant: a nested call
        joins the outer transaction. Rolls back on exception.
        """
        yield

    @abstractmethod
    def in_transaction(self) -> bool: ...

    async def run_atomic(
        self, operation: Callable[[], Awaitable[T]], attempts: int = 3
    ) -> T:
        """
        Run `operation` inside one transaction, retrying a bounded number of
        times when a compare-and-set loses a race. When already inside a
        transaction the operation runs once and conflicts propagate to the
        outermost caller.
        """
        if self.in_transaction():
            return await operation()
        for attempt in range(1, attempts + 1):
            try:
                async with self.transaction():
                    return await operation()
            except ConcurrentUpdateError:
                if attempt >= attempts:
                    raise
                logger.info("Concurrent update detected, retrying (attempt %s/%s)", attempt, attempts)
        raise AssertionError("unreachable")

    # User operations
    @abstractmethod
    async def add_user(self, user: UserAccount) -> UserAccount: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def update_user(self, user: UserAccount) -> UserAccount: ...

    # Subscription operations
    @abstractmethod
    async def add_subscription(self, subscription: Subscription) -> Subscription:
        """Insert; raises ConcurrentUpdateError if the user already has one."""

    @abstractmethod
    async def get_subscription(self, user_id: str) -> Optional[Subscription]: ...

    @abstractmethod
    async def update_subscription(self, subscription: Subscription) -> Subscription:
        """
        Compare-and-set on `version`: the write only succeeds if the stored
        row still has the version the caller read. Bumps the version.
        """

    @abstractmethod
    async def get_subscriptions_with_due_schedule(self, as_of: datetime) -> Iterable[Subscription]: ...

    @abstractmethod
    async def get_subscriptions_with_expired_trial(self, as_of: datetime) -> Iterable[Subscription]:
        """Subscriptions of any tier whose trial has ended but still hold trial credits."""

    @abstractmethod
    async def get_subscriptions_with_daily_reset_due(self, as_of: datetime) -> Iterable[Subscription]: ...

    @abstractmethod
    async def get_subscriptions_ending_between(
        self, start: datetime, end: datetime, tiers: Sequence[SubscriptionTier]
    ) -> Iterable[Subscription]: ...

    # Transaction / ledger operations
    @abstractmethod
    async def add_transaction(self, tx: CreditTransaction) -> CreditTransaction: ...

    @abstractmethod
    async def get_transactions(
        self,
        user_id: str,
        tx_type: Optional[CreditTransactionType] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[CreditTransaction]:
        """Newest first."""

    @abstractmethod
    async def count_transactions(
        self,
        user_id: str,
        tx_type: Optional[CreditTransactionType] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> int: ...

    # Trial history
    @abstractmethod
    async def get_trial_history(self, email: str) -> Optional[TrialHistoryRecord]: ...

    @abstractmethod
    async def upsert_trial_history(self, email: str, changes: dict[str, Any]) -> TrialHistoryRecord:
        """Create or update the record keyed by the (already normalized) email."""

    # Pending payments
    @abstractmethod
    async def add_pending_payment(self, payment: PendingPayment) -> PendingPayment: ...

    @abstractmethod
    async def get_pending_payment(self, external_id: str) -> Optional[PendingPayment]: ...

    @abstractmethod
    async def update_pending_payment(self, payment: PendingPayment) -> PendingPayment: ...

    @abstractmethod
    async def transition_pending_payment(
        self,
        external_id: str,
        from_statuses: Sequence[PaymentStatus],
        to_status: PaymentStatus,
        changes: Optional[dict[str, Any]] = None,
    ) -> Optional[PendingPayment]:
        """
        Conditional status update. Returns the updated payment, or None if the
        stored status was not one of `from_statuses`.
        """

    @abstractmethod
    async def find_open_pending_payment(
        self, user_id: str, tier: SubscriptionTier, duration_months: int, as_of: datetime
    ) -> Optional[PendingPayment]: ...

    @abstractmethod
    async def get_stale_pending_payments(self, as_of: datetime) -> Iterable[PendingPayment]: ...

    # Notifications
    @abstractmethod
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent: ...

    @abstractmethod
    async def update_notification_event(self, notification: NotificationEvent) -> NotificationEvent: ...

    @abstractmethod
    async def get_notification_events(self, user_id: str) -> List[NotificationEvent]: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
