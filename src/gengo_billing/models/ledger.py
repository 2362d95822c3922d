from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class LedgerEventType(str, Enum):
    TRANSACTION = "transaction"
    TRIAL = "trial"
    TIER_CHANGE = "tier_change"
    PAYMENT = "payment"
    ERROR = "error"
    SYSTEM = "system"


class LedgerEntry(DBSerializableModel):
    """
    Audit entry for a ledger-relevant event (balance change, trial decision,
    tier change, payment transition), persisted to DB and mirrored to the
    JSONL file log. Payment entries use the order id as correlation id.
    """

    collection_name: ClassVar[str] = "credit_ledger"
    indexes: ClassVar[list] = [("user_id", False), ("correlation_id", False), ("event_type", False)]

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    user_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
