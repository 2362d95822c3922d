from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow
from .catalog import UsageType


class CreditTransactionType(str, Enum):
    GRANT = "GRANT"
    TRIAL_GRANT = "TRIAL_GRANT"
    USAGE = "USAGE"
    REFUND = "REFUND"
    BONUS = "BONUS"
    ADJUSTMENT = "ADJUSTMENT"


class CreditTransaction(DBSerializableModel):
    """
    Append-only ledger row. `amount` is the signed delta applied to the
    user's combined balance; `balance` is that combined balance right after.
    """

    collection_name: ClassVar[str] = "credit_transactions"
    indexes: ClassVar[list] = [("user_id", False), ("created_at", False)]

    id: Optional[str] = Field(default=None)
    user_id: str
    type: CreditTransactionType
    amount: int
    balance: int
    usage_type: Optional[UsageType] = None
    metadata: Dict[str, Any] = Field(
        default_factory=dict, description="Free-form context; never read by balance logic."
    )
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    description: Optional[str] = None
    catalog_version: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
