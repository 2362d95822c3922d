from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow
from .catalog import SubscriptionTier


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class PendingPayment(DBSerializableModel):
    """
    Local record of a checkout. Written before the gateway is called, and
    moved out of PENDING only through conditional status transitions.
    """

    collection_name: ClassVar[str] = "credit_pending_payments"
    indexes: ClassVar[list] = [("external_id", True), ("user_id", False), ("status", False)]

    id: Optional[str] = Field(default=None)
    external_id: str = Field(description="Order id sent to the gateway.")
    user_id: str
    tier: SubscriptionTier
    duration_months: int = 1
    amount: int
    status: PaymentStatus = PaymentStatus.PENDING
    snap_token: Optional[str] = None
    redirect_url: Optional[str] = None
    payment_method: Optional[str] = None
    payment_channel: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CustomerDetails(BaseModel):
    first_name: str
    email: str
    phone: Optional[str] = None


class ItemDetail(BaseModel):
    id: str
    name: str
    price: int
    quantity: int = 1


class SnapTransactionRequest(BaseModel):
    """Body of a Snap `transactions` request."""

    order_id: str
    gross_amount: int
    items: List[ItemDetail]
    customer: CustomerDetails
    finish_url: Optional[str] = None
    error_url: Optional[str] = None
    pending_url: Optional[str] = None
    expiry_hours: int = 24

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "transaction_details": {
                "order_id": self.order_id,
                "gross_amount": self.gross_amount,
            },
            "item_details": [item.model_dump() for item in self.items],
            "customer_details": self.customer.model_dump(exclude_none=True),
            "expiry": {"unit": "hours", "duration": self.expiry_hours},
        }
        callbacks = {
            key: url
            for key, url in (
                ("finish", self.finish_url),
                ("error", self.error_url),
                ("pending", self.pending_url),
            )
            if url
        }
        if callbacks:
            payload["callbacks"] = callbacks
        return payload


class SnapTransaction(BaseModel):
    token: str
    redirect_url: str


class CheckoutData(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    tier: SubscriptionTier
    duration_months: int = 1
    voucher_code: Optional[str] = None


class CheckoutOptions(BaseModel):
    order_id: Optional[str] = Field(
        default=None, description="Supply to retry a checkout idempotently."
    )
    finish_url: Optional[str] = None
    error_url: Optional[str] = None
    pending_url: Optional[str] = None


class CheckoutResult(BaseModel):
    order_id: str
    token: Optional[str] = None
    redirect_url: Optional[str] = None
    amount: int
    original_amount: int
    discount_amount: int = 0
    voucher_code: Optional[str] = None
    change_type: str
    scheduled: bool = False
    paid: bool = Field(default=False, description="True when no payment was needed.")
    expires_at: Optional[datetime] = None


class VoucherApplication(BaseModel):
    code: str
    discount_amount: int
    final_amount: int


class GatewayNotification(BaseModel):
    """Webhook body as delivered by the gateway."""

    order_id: str
    transaction_id: Optional[str] = None
    transaction_status: str
    status_code: str
    gross_amount: str
    signature_key: str
    payment_type: Optional[str] = None
    fraud_status: Optional[str] = None
    transaction_time: Optional[str] = None
    settlement_time: Optional[str] = None
    status_message: Optional[str] = None
    va_numbers: Optional[List[Dict[str, Any]]] = None
    store: Optional[str] = None
    acquirer: Optional[str] = None

    model_config = {"extra": "allow"}

    @property
    def payment_channel(self) -> Optional[str]:
        if self.va_numbers:
            return self.va_numbers[0].get("bank")
        return self.store or self.acquirer


class NotificationOutcome(str, Enum):
    PAID = "PAID"
    DUPLICATE = "DUPLICATE"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    PENDING = "PENDING"
    IGNORED = "IGNORED"
