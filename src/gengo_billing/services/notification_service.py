from __future__ import annotations

import logging
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.base import utcnow
from ..models.catalog import SubscriptionTier
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
    THRESHOLD_NOTIFICATIONS,
)
from ..notifications.queue import AsyncNotificationQueue


logger = logging.getLogger(__name__)


class NotificationService:
    """
    Orchestrates notification creation and dispatch via a message queue.

    Every method is best-effort: callers invoke it after their ledger
    transaction has committed, and a delivery failure is recorded on the
    event and logged, never raised.
    """

    def __init__(
        self,
        db: BaseDBManager,
        queue: AsyncNotificationQueue,
        app_url: str = "",
    ) -> None:
        self._db = db
        self._queue = queue
        self._app_url = app_url.rstrip("/")

    async def notify(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        body: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> Optional[NotificationEvent]:
        event = NotificationEvent(
            user_id=user_id,
            notification_type=notification_type,
            title=title,
            body=body,
            payload=payload or {},
            status=NotificationStatus.PENDING,
        )
        try:
            event = await self._db.add_notification_event(event)
            await self._queue.enqueue(
                {
                    "notification_id": event.id,
                    "type": event.notification_type.value,
                    "user_id": user_id,
                    "title": title,
                    "body": body,
                    "payload": event.payload,
                }
            )
            event.status = NotificationStatus.SENT
            event.sent_at = utcnow()
        except Exception as exc:
            logger.exception("Failed to dispatch %s notification for %s", notification_type.value, user_id)
            event.status = NotificationStatus.FAILED
            event.error_message = str(exc)
        try:
            if event.id is not None:
                await self._db.update_notification_event(event)
        except Exception:
            logger.exception("Failed to record notification status for %s", user_id)
        return event

    async def notify_usage_threshold(
        self, user_id: str, threshold: int, credits_remaining: int, credits_total: int
    ) -> None:
        notification_type = THRESHOLD_NOTIFICATIONS[threshold]
        if threshold >= 100:
            title = "Credits used up"
            body = "You have used all of this period's credits. Upgrade to keep practising."
        else:
            title = f"{threshold}% of credits used"
            body = f"{credits_remaining} of {credits_total} credits left this period."
        await self.notify(
            user_id,
            notification_type,
            title,
            body,
            {"threshold": threshold, "credits_remaining": credits_remaining, "credits_total": credits_total},
        )

    async def notify_credits_renewed(self, user_id: str, tier: SubscriptionTier, credits: int) -> None:
        await self.notify(
            user_id,
            NotificationType.CREDITS_RENEWED,
            "Credits renewed",
            f"{credits} credits were added to your {tier.value.title()} plan.",
            {"tier": tier.value, "credits": credits},
        )

    async def notify_trial_started(self, user_id: str, credits: int, days: int) -> None:
        await self.notify(
            user_id,
            NotificationType.TRIAL_STARTED,
            "Your free trial has started",
            f"You have {credits} credits to use over the next {days} days.",
            {"credits": credits, "days": days},
        )

    async def notify_trial_ended(self, user_id: str, forfeited: int) -> None:
        await self.notify(
            user_id,
            NotificationType.TRIAL_ENDED,
            "Your free trial has ended",
            "Subscribe to keep practising with your characters.",
            {"forfeited_credits": forfeited, "upgrade_url": f"{self._app_url}/pricing"},
        )

    async def notify_payment_success(
        self, user_id: str, order_id: str, tier: SubscriptionTier, duration_months: int, amount: int
    ) -> None:
        await self.notify(
            user_id,
            NotificationType.PAYMENT_SUCCESS,
            "Payment received",
            f"Your {tier.value.title()} plan for {duration_months} month(s) is active.",
            {
                "order_id": order_id,
                "tier": tier.value,
                "duration_months": duration_months,
                "amount": amount,
                "invoice_url": f"{self._app_url}/billing/invoice/{order_id}",
            },
        )

    async def notify_payment_failed(self, user_id: str, order_id: str, reason: str) -> None:
        await self.notify(
            user_id,
            NotificationType.PAYMENT_FAILED,
            "Payment failed",
            f"Your payment could not be completed: {reason}",
            {"order_id": order_id, "reason": reason, "retry_url": f"{self._app_url}/pricing"},
        )

    async def notify_payment_expired(self, user_id: str, order_id: str) -> None:
        await self.notify(
            user_id,
            NotificationType.PAYMENT_EXPIRED,
            "Payment expired",
            "The payment window closed before the payment was completed.",
            {"order_id": order_id, "retry_url": f"{self._app_url}/pricing"},
        )

    async def notify_subscription_expiring(
        self, user_id: str, tier: SubscriptionTier, days: int
    ) -> None:
        notification_type = (
            NotificationType.SUBSCRIPTION_EXPIRING_1_DAY
            if days <= 1
            else NotificationType.SUBSCRIPTION_EXPIRING_3_DAYS
        )
        await self.notify(
            user_id,
            notification_type,
            "Your subscription is ending soon",
            f"Your {tier.value.title()} plan ends in {days} day(s). Renew to keep your credits flowing.",
            {"tier": tier.value, "days": days, "renew_url": f"{self._app_url}/pricing"},
        )

    async def notify_subscription_expired(self, user_id: str, tier: SubscriptionTier) -> None:
        await self.notify(
            user_id,
            NotificationType.SUBSCRIPTION_EXPIRED,
            "Your subscription has ended",
            f"Your {tier.value.title()} plan has expired.",
            {"tier": tier.value, "renew_url": f"{self._app_url}/pricing"},
        )

    async def get_notifications(self, user_id: str) -> list[NotificationEvent]:
        return await self._db.get_notification_events(user_id)
