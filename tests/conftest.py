from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from gengo_billing.cache.memory import InMemoryAsyncCache
from gengo_billing.db.memory import InMemoryDBManager
from gengo_billing.gateway.midtrans import MockMidtransClient
from gengo_billing.logging.ledger_logger import LedgerLogger
from gengo_billing.notifications.queue import InMemoryNotificationQueue
from gengo_billing.services.credit_service import CreditService
from gengo_billing.services.expiration_service import ExpirationService
from gengo_billing.services.notification_service import NotificationService
from gengo_billing.services.payment_service import PaymentService
from gengo_billing.services.tier_change_service import TierChangeService
from gengo_billing.services.trial_history_service import TrialHistoryService


NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class Stack:
    db: InMemoryDBManager
    ledger: LedgerLogger
    queue: InMemoryNotificationQueue
    notifications: NotificationService
    trial_history: TrialHistoryService
    credits: CreditService
    tiers: TierChangeService
    gateway: MockMidtransClient
    payments: PaymentService
    expiration: ExpirationService
    clock: FrozenClock

    async def ledger_sum(self, user_id: str) -> int:
        return sum(tx.amount for tx in await self.db.get_transactions(user_id))

    async def assert_conserved(self, user_id: str) -> None:
        sub = await self.db.get_subscription(user_id)
        assert sub is not None
        assert await self.ledger_sum(user_id) == sub.ledger_balance
        assert sub.credits_total == sub.credits_used + sub.credits_remaining
        assert sub.credits_remaining >= 0
        assert sub.trial_credits_used <= sub.trial_credits_total


def build_stack(tmp_path, gateway: MockMidtransClient | None = None) -> Stack:
    db = InMemoryDBManager()
    clock = FrozenClock()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    queue = InMemoryNotificationQueue()
    notifications = NotificationService(db=db, queue=queue, app_url="https://app.test")
    trial_history = TrialHistoryService(db=db, ledger=ledger)
    credits = CreditService(
        db=db,
        ledger=ledger,
        trial_history=trial_history,
        cache=InMemoryAsyncCache(),
        notifications=notifications,
        clock=clock,
    )
    tiers = TierChangeService(db=db, ledger=ledger, credit_service=credits, trial_history=trial_history)
    gateway = gateway or MockMidtransClient(app_url="https://app.test")
    payments = PaymentService(
        db=db,
        ledger=ledger,
        credit_service=credits,
        tier_change_service=tiers,
        gateway=gateway,
        notifications=notifications,
    )
    expiration = ExpirationService(
        db=db,
        ledger=ledger,
        credit_service=credits,
        tier_change_service=tiers,
        payment_service=payments,
        notifications=notifications,
    )
    return Stack(
        db=db,
        ledger=ledger,
        queue=queue,
        notifications=notifications,
        trial_history=trial_history,
        credits=credits,
        tiers=tiers,
        gateway=gateway,
        payments=payments,
        expiration=expiration,
        clock=clock,
    )


@pytest.fixture
def stack(tmp_path) -> Stack:
    return build_stack(tmp_path)
