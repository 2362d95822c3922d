from __future__ import annotations

from typing import Optional


class CreditLedgerError(Exception):
    """Base class for errors raised by the billing services."""


class InsufficientCreditsError(CreditLedgerError, ValueError):
    """
    Raised when a deduction would take a balance below zero.

    Subclasses ValueError so callers that only know the generic
    "insufficient credits" contract keep working.
    """

    def __init__(
        self,
        required: int,
        available: int,
        reason: str = "insufficient credits",
        trial_days_remaining: Optional[int] = None,
    ) -> None:
        super().__init__(reason)
        self.required = required
        self.available = available
        self.reason = reason
        self.trial_days_remaining = trial_days_remaining


class SubscriptionNotFoundError(CreditLedgerError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"no subscription for user {user_id}")
        self.user_id = user_id


class TrialIneligibleError(CreditLedgerError):
    """The email (or the subscription) has already consumed its trial."""


class TierChangeNotAllowedError(CreditLedgerError):
    pass


class ConcurrentUpdateError(CreditLedgerError):
    """A compare-and-set write lost the race; safe to retry."""


class InvalidSignatureError(CreditLedgerError):
    """Webhook signature did not match; the notification must be rejected."""


class UnknownOrderError(CreditLedgerError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"unknown order {order_id}")
        self.order_id = order_id


class GatewayUnavailableError(CreditLedgerError):
    """
    The payment gateway could not be reached or rejected the request.

    The local pending payment is kept so the checkout can be retried with
    the same order id.
    """

    def __init__(self, message: str, order_id: Optional[str] = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.order_id = order_id
        self.retryable = retryable
