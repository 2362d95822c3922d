from __future__ import annotations

import hmac
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from ..errors import (
    GatewayUnavailableError,
    InsufficientCreditsError,
    InvalidSignatureError,
    TierChangeNotAllowedError,
)
from ..models.api_models import (
    CancellationStatus,
    CronResult,
    DeductionResponse,
    SubscriptionInfo,
    TierChangeRequest,
    TierChangeValidation,
    UsageDeductionRequest,
    WebhookAck,
)
from ..models.base import PaginatedResult
from ..models.credits import CreditBalance, CreditCheck, HistoryOptions, UsageCheckRequest
from ..models.payment import CheckoutData, CheckoutOptions, CheckoutResult, GatewayNotification
from ..models.transaction import CreditTransaction, CreditTransactionType
from .dependencies import BillingServices, get_services


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])


class CheckoutRequest(BaseModel):
    checkout: CheckoutData
    options: Optional[CheckoutOptions] = None


def insufficient_credits_response(exc: InsufficientCreditsError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content={
            "detail": exc.reason,
            "code": "INSUFFICIENT_CREDITS",
            "credits_required": exc.required,
            "credits_available": exc.available,
            "trial_days_remaining": exc.trial_days_remaining,
        },
    )


@router.get("/balance/{user_id}", response_model=CreditBalance)
async def get_balance(user_id: str, services: BillingServices = Depends(get_services)) -> CreditBalance:
    return await services.credits.get_balance(user_id)


@router.post("/check", response_model=CreditCheck)
async def check_credits(
    payload: UsageCheckRequest, services: BillingServices = Depends(get_services)
) -> CreditCheck:
    return await services.credits.check_credits(payload.user_id, payload.usage_type, payload.estimated_units)


@router.get("/history/{user_id}", response_model=PaginatedResult[CreditTransaction])
async def get_history(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    type: Optional[CreditTransactionType] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    services: BillingServices = Depends(get_services),
) -> PaginatedResult[CreditTransaction]:
    options = HistoryOptions(limit=limit, offset=offset, type=type, start_date=start_date, end_date=end_date)
    return await services.credits.get_history(user_id, options)


@router.post("/usage", response_model=DeductionResponse)
async def deduct_usage(payload: UsageDeductionRequest, services: BillingServices = Depends(get_services)):
    try:
        result = await services.credits.deduct_credits_from_usage(
            user_id=payload.user_id,
            usage=payload.usage,
            reference_id=payload.reference_id,
            reference_type=payload.reference_type,
            description=payload.description,
        )
    except InsufficientCreditsError as exc:
        return insufficient_credits_response(exc)
    tx = result.transaction
    return DeductionResponse(
        user_id=payload.user_id,
        credits=result.credits,
        balance=tx.balance if tx else None,
        transaction_id=tx.id if tx else None,
    )


@router.post("/tier-change/validate", response_model=TierChangeValidation)
async def validate_tier_change(
    payload: TierChangeRequest, services: BillingServices = Depends(get_services)
) -> TierChangeValidation:
    return await services.tiers.validate_tier_change(payload.user_id, payload.target_tier)


@router.get("/subscription/{user_id}", response_model=SubscriptionInfo)
async def get_subscription_info(
    user_id: str, services: BillingServices = Depends(get_services)
) -> SubscriptionInfo:
    return await services.tiers.get_subscription_info(user_id)


@router.post("/subscription/{user_id}/cancel", response_model=CancellationStatus)
async def cancel_subscription(
    user_id: str, services: BillingServices = Depends(get_services)
) -> CancellationStatus:
    try:
        await services.tiers.cancel_subscription(user_id)
    except TierChangeNotAllowedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return await services.tiers.get_cancellation_status(user_id)


@router.post("/subscription/{user_id}/reactivate", response_model=CancellationStatus)
async def reactivate_subscription(
    user_id: str, services: BillingServices = Depends(get_services)
) -> CancellationStatus:
    try:
        await services.tiers.reactivate_subscription(user_id)
    except TierChangeNotAllowedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return await services.tiers.get_cancellation_status(user_id)


@router.post("/checkout", response_model=CheckoutResult)
async def create_checkout(
    payload: CheckoutRequest, services: BillingServices = Depends(get_services)
) -> CheckoutResult:
    try:
        return await services.payments.create_subscription_invoice(payload.checkout, payload.options)
    except TierChangeNotAllowedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except GatewayUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": str(exc), "order_id": exc.order_id, "retryable": exc.retryable},
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/payments/notification", response_model=WebhookAck)
async def payment_notification(request: Request, services: BillingServices = Depends(get_services)) -> WebhookAck:
    """
    Gateway webhook. Always answers 200 with a generic body so the gateway
    stops retrying and callers learn nothing about internal state.
    """
    try:
        notification = GatewayNotification.model_validate(await request.json())
        outcome = await services.payments.handle_notification(notification)
        logger.info("Webhook %s -> %s", notification.order_id, outcome.value)
    except (ValidationError, ValueError):
        logger.warning("Malformed payment notification")
    except InvalidSignatureError:
        logger.warning("Rejected payment notification with invalid signature")
    except Exception:
        logger.exception("Payment notification handling failed")
    return WebhookAck(status="ok")


CRON_JOBS = {
    "reset-daily-trial": "reset_daily_trial_usage",
    "expire-trials": "process_expired_trials",
    "scheduled-tier-changes": "process_scheduled_tier_changes",
    "expire-payments": "expire_stale_payments",
    "renewal-reminders": "send_renewal_reminders",
    "expire-subscriptions": "process_expired_subscriptions",
}


@router.post("/cron/{job}", response_model=CronResult)
async def run_cron_job(
    job: str,
    authorization: Optional[str] = Header(default=None),
    services: BillingServices = Depends(get_services),
) -> CronResult:
    expected = f"Bearer {services.cron_secret}" if services.cron_secret else None
    if expected is None or not hmac.compare_digest((authorization or "").encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    if job == "all":
        results = await services.expiration.run_all()
        return CronResult(job=job, processed=sum(results.values()))
    method_name = CRON_JOBS.get(job)
    if method_name is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown job: {job}")
    processed = await getattr(services.expiration, method_name)()
    return CronResult(job=job, processed=processed)
