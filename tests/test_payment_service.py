from __future__ import annotations

import base64
import hashlib
import json
from typing import Optional

import httpx
import pytest

from gengo_billing.errors import GatewayUnavailableError, InvalidSignatureError, TierChangeNotAllowedError
from gengo_billing.gateway.midtrans import SNAP_URL_SANDBOX, MidtransClient, compute_signature
from gengo_billing.models.catalog import SubscriptionTier
from gengo_billing.models.payment import (
    CheckoutData,
    CheckoutOptions,
    CustomerDetails,
    GatewayNotification,
    ItemDetail,
    NotificationOutcome,
    PaymentStatus,
    SnapTransactionRequest,
    VoucherApplication,
)
from gengo_billing.models.transaction import CreditTransactionType
from gengo_billing.services.payment_service import PaymentService

from conftest import build_stack


def _checkout(user_id: str = "user-1", tier: SubscriptionTier = SubscriptionTier.BASIC, months: int = 1, **kwargs):
    return CheckoutData(
        user_id=user_id,
        email=f"{user_id}@example.com",
        name="Test User",
        tier=tier,
        duration_months=months,
        **kwargs,
    )


def _notification(stack, order_id: str, status: str, amount: int, fraud: Optional[str] = "accept", **extra):
    status_code = {"settlement": "200", "capture": "200", "pending": "201"}.get(status, "202")
    gross_amount = f"{amount}.00"
    return GatewayNotification(
        order_id=order_id,
        transaction_id="tx-1",
        transaction_status=status,
        status_code=status_code,
        gross_amount=gross_amount,
        payment_type="bank_transfer",
        fraud_status=fraud,
        signature_key=stack.gateway.sign(order_id, status_code, gross_amount),
        **extra,
    )


@pytest.mark.asyncio
async def test_checkout_persists_pending_payment_and_prices_items(stack):
    result = await stack.payments.create_subscription_invoice(_checkout(months=3))

    assert result.order_id.startswith("GNG-user1-B3-")
    assert len(result.order_id) <= 50
    assert result.amount == 78300
    assert result.original_amount == 87000
    assert result.discount_amount == 8700
    assert result.change_type == "new"
    assert result.token == f"mock-{result.order_id}"
    assert not result.paid

    payment = await stack.db.get_pending_payment(result.order_id)
    assert payment.status == PaymentStatus.PENDING
    assert payment.snap_token == result.token
    assert payment.metadata["voucher_code"] is None

    [request] = stack.gateway.requests
    assert request.gross_amount == 78300
    assert sum(item.price * item.quantity for item in request.items) == 78300
    assert request.items[-1].price == -8700
    assert request.customer.email == "user-1@example.com"


@pytest.mark.asyncio
async def test_checkout_retries_are_idempotent(stack):
    first = await stack.payments.create_subscription_invoice(_checkout())
    again = await stack.payments.create_subscription_invoice(_checkout())
    retried = await stack.payments.create_subscription_invoice(
        _checkout(), CheckoutOptions(order_id=first.order_id)
    )

    assert again.order_id == first.order_id
    assert retried.order_id == first.order_id
    assert retried.token == first.token
    assert len(stack.gateway.requests) == 1


@pytest.mark.asyncio
async def test_checkout_rejects_disallowed_changes(stack):
    with pytest.raises(TierChangeNotAllowedError):
        await stack.payments.create_subscription_invoice(_checkout(tier=SubscriptionTier.FREE))

    await stack.credits.get_or_create_subscription("user-2")
    await stack.tiers.apply_purchase("user-2", SubscriptionTier.BASIC, 1)
    with pytest.raises(TierChangeNotAllowedError):
        await stack.payments.create_subscription_invoice(_checkout("user-2"))

    with pytest.raises(ValueError):
        await stack.payments.create_subscription_invoice(_checkout("user-3", months=2))


@pytest.mark.asyncio
async def test_settlement_grants_once(stack):
    checkout = await stack.payments.create_subscription_invoice(_checkout(months=3))
    notification = _notification(stack, checkout.order_id, "settlement", 78300, va_numbers=[{"bank": "bca"}])

    assert await stack.payments.handle_notification(notification) == NotificationOutcome.PAID
    assert await stack.payments.handle_notification(notification) == NotificationOutcome.DUPLICATE

    sub = await stack.credits.get_subscription("user-1")
    assert sub.tier == SubscriptionTier.BASIC
    assert sub.credits_remaining == 18000
    grants = await stack.db.get_transactions("user-1", tx_type=CreditTransactionType.GRANT)
    assert len(grants) == 1
    assert grants[0].reference_id == checkout.order_id

    payment = await stack.db.get_pending_payment(checkout.order_id)
    assert payment.status == PaymentStatus.PAID
    assert payment.payment_method == "bank_transfer"
    assert payment.payment_channel == "bca"
    assert payment.metadata["applied_change_type"] == "new"
    assert len(stack.queue.of_type("PAYMENT_SUCCESS")) == 1
    await stack.assert_conserved("user-1")


@pytest.mark.asyncio
@pytest.mark.parametrize("signature", ["0" * 128, "\u00e9" * 128, ""])
async def test_invalid_signature_changes_nothing(stack, signature):
    checkout = await stack.payments.create_subscription_invoice(_checkout())
    forged = _notification(stack, checkout.order_id, "settlement", 29000).model_copy(
        update={"signature_key": signature}
    )

    with pytest.raises(InvalidSignatureError):
        await stack.payments.handle_notification(forged)

    payment = await stack.db.get_pending_payment(checkout.order_id)
    assert payment.status == PaymentStatus.PENDING
    sub = await stack.credits.get_subscription("user-1")
    assert sub.tier == SubscriptionTier.FREE


@pytest.mark.asyncio
async def test_unknown_order_is_ignored(stack):
    notification = _notification(stack, "GNG-nobody-B1-x", "settlement", 29000)
    assert await stack.payments.handle_notification(notification.model_dump()) == NotificationOutcome.IGNORED


@pytest.mark.asyncio
async def test_failure_then_late_success(stack):
    checkout = await stack.payments.create_subscription_invoice(_checkout())

    outcome = await stack.payments.handle_notification(
        _notification(stack, checkout.order_id, "deny", 29000, status_message="card declined")
    )
    assert outcome == NotificationOutcome.FAILED
    payment = await stack.db.get_pending_payment(checkout.order_id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "card declined"
    assert len(stack.queue.of_type("PAYMENT_FAILED")) == 1

    outcome = await stack.payments.handle_notification(
        _notification(stack, checkout.order_id, "settlement", 29000)
    )
    assert outcome == NotificationOutcome.PAID
    sub = await stack.credits.get_subscription("user-1")
    assert sub.tier == SubscriptionTier.BASIC


@pytest.mark.asyncio
async def test_pending_and_fraud_challenge_change_nothing(stack):
    checkout = await stack.payments.create_subscription_invoice(_checkout())

    for notification in (
        _notification(stack, checkout.order_id, "pending", 29000, fraud=None),
        _notification(stack, checkout.order_id, "capture", 29000, fraud="challenge"),
    ):
        assert await stack.payments.handle_notification(notification) == NotificationOutcome.PENDING

    payment = await stack.db.get_pending_payment(checkout.order_id)
    assert payment.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_expiry_by_webhook_and_by_sweep(stack):
    first = await stack.payments.create_subscription_invoice(_checkout("user-1"))
    second = await stack.payments.create_subscription_invoice(_checkout("user-2"))

    outcome = await stack.payments.handle_notification(_notification(stack, first.order_id, "expire", 29000))
    assert outcome == NotificationOutcome.EXPIRED

    assert await stack.payments.expire_stale_payments() == 0
    stack.clock.advance(hours=25)
    assert await stack.payments.expire_stale_payments() == 1
    assert await stack.payments.expire_stale_payments() == 0

    payment = await stack.db.get_pending_payment(second.order_id)
    assert payment.status == PaymentStatus.EXPIRED
    assert len(stack.queue.of_type("PAYMENT_EXPIRED")) == 2


@pytest.mark.asyncio
async def test_paid_downgrade_is_scheduled(stack):
    await stack.credits.get_or_create_subscription("user-1")
    await stack.tiers.apply_purchase("user-1", SubscriptionTier.PRO, 1)

    checkout = await stack.payments.create_subscription_invoice(_checkout(tier=SubscriptionTier.BASIC))
    assert checkout.change_type == "downgrade"
    assert checkout.scheduled

    await stack.payments.handle_notification(_notification(stack, checkout.order_id, "settlement", 29000))
    sub = await stack.credits.get_subscription("user-1")
    assert sub.tier == SubscriptionTier.PRO
    assert sub.scheduled_tier == SubscriptionTier.BASIC


@pytest.mark.asyncio
async def test_simulate_payment_in_mock_mode(stack):
    checkout = await stack.payments.create_subscription_invoice(_checkout(tier=SubscriptionTier.PRO))
    assert await stack.payments.simulate_payment(checkout.order_id) == NotificationOutcome.PAID
    sub = await stack.credits.get_subscription("user-1")
    assert sub.tier == SubscriptionTier.PRO


class FullVoucher:
    def __init__(self) -> None:
        self.redeemed: list[str] = []

    async def apply_voucher(self, code, user_id, tier, amount):
        if code != "FREEMONTH":
            return None
        return VoucherApplication(code=code, discount_amount=amount, final_amount=0)

    async def redeem_voucher(self, code, user_id, order_id):
        self.redeemed.append(order_id)


@pytest.mark.asyncio
async def test_full_voucher_bypasses_gateway(stack):
    vouchers = FullVoucher()
    payments = PaymentService(
        db=stack.db,
        ledger=stack.ledger,
        credit_service=stack.credits,
        tier_change_service=stack.tiers,
        gateway=stack.gateway,
        notifications=stack.notifications,
        vouchers=vouchers,
    )

    result = await payments.create_subscription_invoice(_checkout(voucher_code="FREEMONTH"))

    assert result.paid
    assert result.amount == 0
    assert result.token is None
    assert stack.gateway.requests == []
    assert vouchers.redeemed == [result.order_id]
    sub = await stack.credits.get_subscription("user-1")
    assert sub.tier == SubscriptionTier.BASIC
    payment = await stack.db.get_pending_payment(result.order_id)
    assert payment.status == PaymentStatus.PAID

    with pytest.raises(ValueError):
        await payments.create_subscription_invoice(_checkout("user-2", voucher_code="BOGUS"))


def test_signature_is_sha512_of_concatenated_fields():
    expected = hashlib.sha512(b"order-120029000.00secret").hexdigest()
    assert compute_signature("order-1", "200", "29000.00", "secret") == expected


def _snap_request() -> SnapTransactionRequest:
    return SnapTransactionRequest(
        order_id="GNG-test-B1-abc",
        gross_amount=29000,
        items=[ItemDetail(id="BASIC-1M", name="Gengo Basic (1 month)", price=29000)],
        customer=CustomerDetails(first_name="Test", email="t@example.com"),
        finish_url="https://app.test/done",
    )


@pytest.mark.asyncio
async def test_midtrans_client_posts_snap_request():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"token": "snap-1", "redirect_url": "https://snap.test/snap-1"})

    client = MidtransClient("SB-key", transport=httpx.MockTransport(handler))
    snap = await client.create_transaction(_snap_request())

    assert snap.token == "snap-1"
    [request] = seen
    assert str(request.url) == SNAP_URL_SANDBOX
    assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"SB-key:").decode()
    body = json.loads(request.content)
    assert body["transaction_details"] == {"order_id": "GNG-test-B1-abc", "gross_amount": 29000}
    assert body["callbacks"] == {"finish": "https://app.test/done"}
    assert body["expiry"] == {"unit": "hours", "duration": 24}


@pytest.mark.asyncio
async def test_midtrans_client_maps_errors():
    def rejecting(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error_messages": ["gross_amount is invalid"]})

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayUnavailableError) as exc_info:
        await MidtransClient("SB-key", transport=httpx.MockTransport(rejecting)).create_transaction(_snap_request())
    assert not exc_info.value.retryable
    assert "gross_amount is invalid" in str(exc_info.value)

    with pytest.raises(GatewayUnavailableError) as exc_info:
        await MidtransClient("SB-key", transport=httpx.MockTransport(unreachable)).create_transaction(_snap_request())
    assert exc_info.value.retryable
    assert exc_info.value.order_id == "GNG-test-B1-abc"


@pytest.mark.asyncio
async def test_gateway_outage_keeps_pending_row_for_retry(tmp_path):
    responses = [
        httpx.Response(503, json={"error_messages": ["service unavailable"]}),
        httpx.Response(201, json={"token": "snap-2", "redirect_url": "https://snap.test/snap-2"}),
    ]
    order_ids: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        order_ids.append(json.loads(request.content)["transaction_details"]["order_id"])
        return responses.pop(0)

    stack = build_stack(tmp_path, gateway=MidtransClient("SB-key", transport=httpx.MockTransport(handler)))

    with pytest.raises(GatewayUnavailableError) as exc_info:
        await stack.payments.create_subscription_invoice(_checkout())
    order_id = exc_info.value.order_id

    payment = await stack.db.get_pending_payment(order_id)
    assert payment.status == PaymentStatus.PENDING
    assert payment.snap_token is None
    assert "503" in payment.failure_reason

    result = await stack.payments.create_subscription_invoice(_checkout(), CheckoutOptions(order_id=order_id))
    assert result.token == "snap-2"
    assert order_ids == [order_id, order_id]
