from __future__ import annotations

import pytest

from gengo_billing.db.memory import InMemoryDBManager
from gengo_billing.models.catalog import SubscriptionTier
from gengo_billing.models.notification import NotificationStatus, NotificationType
from gengo_billing.notifications.queue import AsyncNotificationQueue, InMemoryNotificationQueue
from gengo_billing.services.notification_service import NotificationService


class BrokenQueue(AsyncNotificationQueue):
    async def enqueue(self, payload):
        raise ConnectionError("broker down")


@pytest.mark.asyncio
async def test_delivered_notification_is_recorded_as_sent():
    db = InMemoryDBManager()
    queue = InMemoryNotificationQueue()
    service = NotificationService(db=db, queue=queue, app_url="https://app.test/")

    await service.notify_payment_failed("user-1", "GNG-1", "card declined")

    [message] = queue.messages
    assert message["type"] == "PAYMENT_FAILED"
    assert message["payload"]["retry_url"] == "https://app.test/pricing"
    [event] = await service.get_notifications("user-1")
    assert event.status == NotificationStatus.SENT
    assert event.sent_at is not None


@pytest.mark.asyncio
async def test_queue_failure_is_recorded_not_raised(caplog):
    db = InMemoryDBManager()
    service = NotificationService(db=db, queue=BrokenQueue())

    event = await service.notify_credits_renewed("user-1", SubscriptionTier.PRO, 16500)

    assert event.status == NotificationStatus.FAILED
    assert event.error_message == "broker down"
    [stored] = await service.get_notifications("user-1")
    assert stored.status == NotificationStatus.FAILED
    assert "CREDITS_RENEWED" in caplog.text


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "days, expected",
    [(1, NotificationType.SUBSCRIPTION_EXPIRING_1_DAY), (3, NotificationType.SUBSCRIPTION_EXPIRING_3_DAYS)],
)
async def test_expiring_reminder_type_follows_days_left(days, expected):
    queue = InMemoryNotificationQueue()
    service = NotificationService(db=InMemoryDBManager(), queue=queue)

    await service.notify_subscription_expiring("user-1", SubscriptionTier.BASIC, days)

    assert queue.messages[0]["type"] == expected.value


@pytest.mark.asyncio
async def test_threshold_notifications(stack):
    await stack.notifications.notify_usage_threshold("user-1", 80, 1200, 6000)
    await stack.notifications.notify_usage_threshold("user-1", 100, 0, 6000)

    assert [m["type"] for m in stack.queue.messages] == ["CREDITS_80_PERCENT", "CREDITS_DEPLETED"]
    assert stack.queue.messages[1]["title"] == "Credits used up"
