from __future__ import annotations

import logging
import re
import secrets
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Union

from ..db.base import BaseDBManager
from ..errors import GatewayUnavailableError, InvalidSignatureError, TierChangeNotAllowedError
from ..gateway.midtrans import PaymentGateway
from ..logging.ledger_logger import LedgerLogger
from ..models.catalog import SubscriptionTier
from ..models.ledger import LedgerEventType
from ..models.payment import (
    CheckoutData,
    CheckoutOptions,
    CheckoutResult,
    CustomerDetails,
    GatewayNotification,
    ItemDetail,
    NotificationOutcome,
    PaymentStatus,
    PendingPayment,
    SnapTransactionRequest,
    VoucherApplication,
)
from .credit_service import CreditService
from .notification_service import NotificationService
from .tier_change_service import PurchaseApplication, TierChangeService


logger = logging.getLogger(__name__)

MAX_ORDER_ID_LENGTH = 50
SUCCESS_STATUSES = {"capture", "settlement"}
FAILURE_STATUSES = {"deny", "cancel", "failure"}
ACCEPTED_FRAUD_STATUSES = {"", "accept"}


class VoucherProvider(Protocol):
    """Voucher management lives elsewhere; billing only applies and redeems codes."""

    async def apply_voucher(
        self, code: str, user_id: str, tier: SubscriptionTier, amount: int
    ) -> Optional[VoucherApplication]:
        ...

    async def redeem_voucher(self, code: str, user_id: str, order_id: str) -> None:
        ...


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or "0"


class PaymentService:
    """
    Checkout creation and gateway webhook handling.

    A PendingPayment row is written before the gateway is called and is the
    idempotency key for both directions: a retried checkout reuses it, and a
    success webhook grants credits only if it wins the compare-and-set from
    an unpaid status to PAID inside the same transaction as the grant.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        credit_service: CreditService,
        tier_change_service: TierChangeService,
        gateway: PaymentGateway,
        notifications: Optional[NotificationService] = None,
        vouchers: Optional[VoucherProvider] = None,
        order_prefix: str = "GNG",
        checkout_expiry_hours: int = 24,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._credits = credit_service
        self._tiers = tier_change_service
        self._gateway = gateway
        self._notifications = notifications
        self._vouchers = vouchers
        self._order_prefix = order_prefix
        self._checkout_expiry = timedelta(hours=checkout_expiry_hours)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def generate_order_id(self, user_id: str, tier: SubscriptionTier, duration_months: int) -> str:
        short_user = re.sub(r"[^A-Za-z0-9]", "", user_id)[:8] or "user"
        stamp = _base36(int(time.time() * 1000))
        order_id = (
            f"{self._order_prefix}-{short_user}-{SubscriptionTier(tier).value[0]}{duration_months}"
            f"-{stamp}{secrets.token_hex(2)}"
        )
        return order_id[:MAX_ORDER_ID_LENGTH]

    async def create_subscription_invoice(
        self, checkout: CheckoutData, options: Optional[CheckoutOptions] = None
    ) -> CheckoutResult:
        """
        Price the purchase, persist the pending payment and obtain a Snap
        token. Retrying with the same `options.order_id`, or while an
        identical checkout is still open, never submits a second order.
        """
        options = options or CheckoutOptions()
        catalog = self._credits.catalog
        tier = SubscriptionTier(checkout.tier)
        months = checkout.duration_months
        if not catalog.is_paid(tier):
            raise TierChangeNotAllowedError("The free plan cannot be purchased.")
        if not catalog.is_valid_duration(months):
            raise ValueError(f"unsupported duration: {months} months")

        await self._credits.get_or_create_subscription(checkout.user_id, checkout.email)

        if options.order_id:
            existing = await self._db.get_pending_payment(options.order_id)
            if existing is not None:
                if existing.user_id != checkout.user_id:
                    raise ValueError("order id belongs to another user")
                if existing.status == PaymentStatus.PENDING and existing.snap_token is None:
                    return await self._submit(existing, checkout, options)
                return self._result(existing)

        validation = await self._tiers.validate_tier_change(checkout.user_id, tier)
        if not validation.allowed:
            raise TierChangeNotAllowedError(validation.message)

        now = self._credits.now()
        if not options.order_id:
            open_payment = await self._db.find_open_pending_payment(checkout.user_id, tier, months, now)
            if open_payment is not None and open_payment.metadata.get("voucher_code") == checkout.voucher_code:
                logger.info("Reusing open checkout %s for %s", open_payment.external_id, checkout.user_id)
                return self._result(open_payment)

        quote = catalog.quote(tier, months)
        amount = quote.discounted_price
        voucher: Optional[VoucherApplication] = None
        if checkout.voucher_code:
            if self._vouchers is None:
                raise ValueError("vouchers are not supported")
            voucher = await self._vouchers.apply_voucher(checkout.voucher_code, checkout.user_id, tier, amount)
            if voucher is None:
                raise ValueError(f"invalid voucher code: {checkout.voucher_code}")
            amount = max(voucher.final_amount, 0)

        order_id = options.order_id or self.generate_order_id(checkout.user_id, tier, months)
        payment = PendingPayment(
            external_id=order_id,
            user_id=checkout.user_id,
            tier=tier,
            duration_months=months,
            amount=amount,
            expires_at=now + self._checkout_expiry,
            metadata={
                "original_amount": quote.original_price,
                "duration_discount": quote.savings,
                "duration_discount_percent": quote.discount_percent,
                "voucher_code": checkout.voucher_code,
                "voucher_discount": voucher.discount_amount if voucher else 0,
                "change_type": validation.change_type,
                "scheduled": validation.scheduled_for_next_period,
            },
            created_at=now,
        )

        if amount == 0:
            return await self._settle_without_payment(payment)

        payment = await self._db.add_pending_payment(payment)
        await self._ledger.log_event(
            LedgerEventType.PAYMENT,
            message="Checkout created",
            details={"order_id": order_id, "tier": tier.value, "months": months, "amount": amount},
            user_id=checkout.user_id,
            correlation_id=order_id,
        )
        return await self._submit(payment, checkout, options)

    def build_snap_request(
        self, payment: PendingPayment, checkout: CheckoutData, options: CheckoutOptions
    ) -> SnapTransactionRequest:
        catalog = self._credits.catalog
        cfg = catalog.tier(payment.tier)
        items: List[ItemDetail] = [
            ItemDetail(
                id=f"{payment.tier.value}-{payment.duration_months}M",
                name=f"Gengo {cfg.name} ({payment.duration_months} month)",
                price=cfg.price_monthly,
                quantity=payment.duration_months,
            )
        ]
        discount = cfg.price_monthly * payment.duration_months - payment.amount
        if discount > 0:
            items.append(ItemDetail(id="DISCOUNT", name="Discount", price=-discount, quantity=1))
        if sum(item.price * item.quantity for item in items) != payment.amount:
            raise ValueError(f"item lines do not sum to gross amount for {payment.external_id}")
        return SnapTransactionRequest(
            order_id=payment.external_id,
            gross_amount=payment.amount,
            items=items,
            customer=CustomerDetails(
                first_name=checkout.name or checkout.email.split("@")[0],
                email=checkout.email,
                phone=checkout.phone,
            ),
            finish_url=options.finish_url,
            error_url=options.error_url,
            pending_url=options.pending_url,
            expiry_hours=int(self._checkout_expiry.total_seconds() // 3600),
        )

    async def _submit(
        self, payment: PendingPayment, checkout: CheckoutData, options: CheckoutOptions
    ) -> CheckoutResult:
        request = self.build_snap_request(payment, checkout, options)
        try:
            snap = await self._gateway.create_transaction(request)
        except GatewayUnavailableError as exc:
            payment.failure_reason = str(exc)
            await self._db.update_pending_payment(payment)
            await self._ledger.log_error(
                message="Gateway unavailable during checkout",
                details={"order_id": payment.external_id, "error": str(exc), "retryable": exc.retryable},
                user_id=payment.user_id,
                correlation_id=payment.external_id,
            )
            raise
        payment.snap_token = snap.token
        payment.redirect_url = snap.redirect_url
        payment.failure_reason = None
        await self._db.update_pending_payment(payment)
        return self._result(payment)

    async def _settle_without_payment(self, payment: PendingPayment) -> CheckoutResult:
        """A voucher covered the whole price: mark paid and apply at once."""
        now = self._credits.now()

        async def settle() -> PurchaseApplication:
            await self._db.add_pending_payment(payment)
            await self._db.transition_pending_payment(
                payment.external_id,
                [PaymentStatus.PENDING],
                PaymentStatus.PAID,
                {"paid_at": now, "payment_method": "voucher"},
            )
            return await self._tiers.apply_purchase(
                payment.user_id,
                payment.tier,
                payment.duration_months,
                reference_id=payment.external_id,
                metadata={"order_id": payment.external_id, "amount": 0},
            )

        application = await self._credits.atomic(settle)
        payment.status = PaymentStatus.PAID
        payment.paid_at = now
        await self._after_payment(payment, application)
        return self._result(payment, paid=True)

    @staticmethod
    def _result(payment: PendingPayment, paid: Optional[bool] = None) -> CheckoutResult:
        meta = payment.metadata
        original = meta.get("original_amount", payment.amount)
        return CheckoutResult(
            order_id=payment.external_id,
            token=payment.snap_token,
            redirect_url=payment.redirect_url,
            amount=payment.amount,
            original_amount=original,
            discount_amount=original - payment.amount,
            voucher_code=meta.get("voucher_code"),
            change_type=meta.get("change_type") or "new",
            scheduled=bool(meta.get("scheduled")),
            paid=payment.status == PaymentStatus.PAID if paid is None else paid,
            expires_at=payment.expires_at,
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_signature(self, notification: GatewayNotification) -> bool:
        return self._gateway.verify_signature(notification)

    async def handle_notification(
        self, notification: Union[GatewayNotification, Dict[str, Any]]
    ) -> NotificationOutcome:
        """
        Webhook entry point. Raises InvalidSignatureError on a bad signature
        (no state change); every other outcome, including unknown orders and
        repeated deliveries, is returned rather than raised.
        """
        if not isinstance(notification, GatewayNotification):
            notification = GatewayNotification.model_validate(notification)

        if not self.verify_signature(notification):
            await self._ledger.log_error(
                message="Invalid webhook signature",
                details={"order_id": notification.order_id, "status": notification.transaction_status},
                correlation_id=notification.order_id,
            )
            raise InvalidSignatureError("signature mismatch")

        payment = await self._db.get_pending_payment(notification.order_id)
        if payment is None:
            logger.warning("Webhook for unknown order %s", notification.order_id)
            await self._ledger.log_event(
                LedgerEventType.PAYMENT,
                message="Webhook for unknown order ignored",
                details={"order_id": notification.order_id, "status": notification.transaction_status},
                correlation_id=notification.order_id,
            )
            return NotificationOutcome.IGNORED

        status = notification.transaction_status.lower()
        fraud = (notification.fraud_status or "").lower()

        if status in SUCCESS_STATUSES:
            if fraud in ACCEPTED_FRAUD_STATUSES:
                return await self._on_success(payment, notification)
            if fraud == "challenge":
                logger.info("Payment %s held for fraud review", payment.external_id)
                return NotificationOutcome.PENDING
            return await self._on_failure(payment, f"fraud status {fraud}")
        if status in FAILURE_STATUSES:
            return await self._on_failure(payment, notification.status_message or f"payment {status}")
        if status == "expire":
            return await self._on_expire(payment)
        if status == "pending":
            return NotificationOutcome.PENDING

        logger.warning("Unhandled transaction status %s for %s", status, payment.external_id)
        return NotificationOutcome.IGNORED

    async def _on_success(
        self, payment: PendingPayment, notification: GatewayNotification
    ) -> NotificationOutcome:
        now = self._credits.now()

        async def settle() -> Optional[tuple[PendingPayment, PurchaseApplication]]:
            # A late success after an expiry or failure is still honored: the money was captured.
            paid = await self._db.transition_pending_payment(
                payment.external_id,
                [PaymentStatus.PENDING, PaymentStatus.EXPIRED, PaymentStatus.FAILED],
                PaymentStatus.PAID,
                {
                    "paid_at": now,
                    "payment_method": notification.payment_type,
                    "payment_channel": notification.payment_channel,
                    "failure_reason": None,
                },
            )
            if paid is None:
                return None
            application = await self._tiers.apply_purchase(
                paid.user_id,
                paid.tier,
                paid.duration_months,
                reference_id=paid.external_id,
                metadata={"order_id": paid.external_id, "amount": paid.amount},
            )
            paid.metadata = {
                **paid.metadata,
                "transaction_id": notification.transaction_id,
                "applied_change_type": application.change_type.value,
                "scheduled": application.scheduled,
            }
            paid = await self._db.update_pending_payment(paid)
            await self._ledger.log_event(
                LedgerEventType.PAYMENT,
                message="Payment settled",
                details={
                    "order_id": paid.external_id,
                    "tier": paid.tier.value,
                    "months": paid.duration_months,
                    "change_type": application.change_type.value,
                },
                user_id=paid.user_id,
                correlation_id=paid.external_id,
            )
            return paid, application

        settled = await self._credits.atomic(settle)
        if settled is None:
            logger.info("Duplicate success webhook for %s", payment.external_id)
            return NotificationOutcome.DUPLICATE

        paid, application = settled
        await self._after_payment(paid, application)
        return NotificationOutcome.PAID

    async def _after_payment(self, payment: PendingPayment, application: PurchaseApplication) -> None:
        code = payment.metadata.get("voucher_code")
        if code and self._vouchers is not None:
            try:
                await self._vouchers.redeem_voucher(code, payment.user_id, payment.external_id)
            except Exception:
                logger.exception("Voucher %s redemption failed for %s", code, payment.external_id)
        if self._notifications:
            await self._notifications.notify_payment_success(
                payment.user_id, payment.external_id, payment.tier, payment.duration_months, payment.amount
            )

    async def _on_failure(self, payment: PendingPayment, reason: str) -> NotificationOutcome:
        failed = await self._db.transition_pending_payment(
            payment.external_id,
            [PaymentStatus.PENDING],
            PaymentStatus.FAILED,
            {"failure_reason": reason},
        )
        if failed is None:
            return NotificationOutcome.DUPLICATE
        await self._ledger.log_event(
            LedgerEventType.PAYMENT,
            message="Payment failed",
            details={"order_id": payment.external_id, "reason": reason},
            user_id=payment.user_id,
            correlation_id=payment.external_id,
        )
        if self._notifications:
            await self._notifications.notify_payment_failed(payment.user_id, payment.external_id, reason)
        return NotificationOutcome.FAILED

    async def _on_expire(self, payment: PendingPayment) -> NotificationOutcome:
        if not await self._expire(payment, "checkout expired at gateway"):
            return NotificationOutcome.DUPLICATE
        return NotificationOutcome.EXPIRED

    async def _expire(self, payment: PendingPayment, reason: str) -> bool:
        expired = await self._db.transition_pending_payment(
            payment.external_id,
            [PaymentStatus.PENDING],
            PaymentStatus.EXPIRED,
            {"failure_reason": reason},
        )
        if expired is None:
            return False
        await self._ledger.log_event(
            LedgerEventType.PAYMENT,
            message="Payment expired",
            details={"order_id": payment.external_id, "reason": reason},
            user_id=payment.user_id,
            correlation_id=payment.external_id,
        )
        if self._notifications:
            await self._notifications.notify_payment_expired(payment.user_id, payment.external_id)
        return True

    # ------------------------------------------------------------------
    # Sweeps and utilities
    # ------------------------------------------------------------------

    async def expire_stale_payments(self, as_of: Optional[datetime] = None) -> int:
        as_of = as_of or self._credits.now()
        count = 0
        for payment in await self._db.get_stale_pending_payments(as_of):
            if await self._expire(payment, "checkout window elapsed"):
                count += 1
        return count

    async def get_payment(self, order_id: str) -> Optional[PendingPayment]:
        return await self._db.get_pending_payment(order_id)

    async def get_transaction_status(self, order_id: str) -> Dict[str, Any]:
        return await self._gateway.get_transaction_status(order_id)

    async def simulate_payment(self, order_id: str, transaction_status: str = "settlement") -> NotificationOutcome:
        """Drive the webhook path locally. Only available with the mock gateway."""
        if not getattr(self._gateway, "is_mock", False):
            raise RuntimeError("payment simulation requires the mock gateway")
        payment = await self._db.get_pending_payment(order_id)
        gross_amount = f"{payment.amount}.00" if payment else "0.00"
        status_code = "200" if transaction_status in SUCCESS_STATUSES else "202"
        notification = GatewayNotification(
            order_id=order_id,
            transaction_id=f"mock-{secrets.token_hex(8)}",
            transaction_status=transaction_status,
            status_code=status_code,
            gross_amount=gross_amount,
            payment_type="mock",
            fraud_status="accept",
            signature_key=self._gateway.sign(order_id, status_code, gross_amount),  # type: ignore[attr-defined]
        )
        return await self.handle_notification(notification)
