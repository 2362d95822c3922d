from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class UserAccount(DBSerializableModel):
    """
    Internal user representation for the billing module.
    This is isolated from any external application's user model; only the
    fields billing needs (email for trial tracking, name for invoices) live here.
    """

    collection_name: ClassVar[str] = "credit_users"

    id: Optional[str] = Field(default=None)
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    external_user_ref: Optional[str] = Field(
        default=None,
        description="Optional reference to external user identifier from host system.",
    )
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
