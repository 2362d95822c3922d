from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class NotificationType(str, Enum):
    CREDITS_80_PERCENT = "CREDITS_80_PERCENT"
    CREDITS_95_PERCENT = "CREDITS_95_PERCENT"
    CREDITS_DEPLETED = "CREDITS_DEPLETED"
    CREDITS_RENEWED = "CREDITS_RENEWED"
    TRIAL_STARTED = "TRIAL_STARTED"
    TRIAL_ENDED = "TRIAL_ENDED"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_EXPIRED = "PAYMENT_EXPIRED"
    SUBSCRIPTION_EXPIRING_3_DAYS = "SUBSCRIPTION_EXPIRING_3_DAYS"
    SUBSCRIPTION_EXPIRING_1_DAY = "SUBSCRIPTION_EXPIRING_1_DAY"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"


# Usage percentage -> notification, checked on every deduction
THRESHOLD_NOTIFICATIONS = {
    80: NotificationType.CREDITS_80_PERCENT,
    95: NotificationType.CREDITS_95_PERCENT,
    100: NotificationType.CREDITS_DEPLETED,
}


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationEvent(DBSerializableModel):
    """
    Stored representation of notifications for auditing/monitoring.
    """

    collection_name: ClassVar[str] = "credit_notifications"
    indexes: ClassVar[list] = [("user_id", False)]

    id: Optional[str] = Field(default=None)
    user_id: str
    notification_type: NotificationType
    title: str = ""
    body: str = ""
    payload: dict = Field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.PENDING
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
