from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class TrialHistoryRecord(DBSerializableModel):
    """
    Survives account deletion: one row per normalized email recording
    whether that address has ever consumed a trial.
    """

    collection_name: ClassVar[str] = "credit_trial_history"
    primary_key: ClassVar[Optional[str]] = "id"

    id: Optional[str] = Field(default=None, description="Normalized email.")
    email: str
    has_used_trial: bool = False
    trial_started_at: Optional[datetime] = None
    trial_ended_at: Optional[datetime] = None
    was_upgraded: bool = False
    last_user_id: Optional[str] = None
    account_deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
