from __future__ import annotations

from datetime import datetime
from typing import Optional

from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.ledger import LedgerEventType
from ..models.trial_history import TrialHistoryRecord


def normalize_email(email: str) -> str:
    return email.strip().lower()


class TrialHistoryService:
    """
    Email-keyed record of trial usage. Writes are upserts on the normalized
    email so that deleting and re-creating an account lands on the same row.
    """

    def __init__(self, db: BaseDBManager, ledger: LedgerLogger) -> None:
        self._db = db
        self._ledger = ledger

    async def get_record(self, email: str) -> Optional[TrialHistoryRecord]:
        return await self._db.get_trial_history(normalize_email(email))

    async def check_trial_eligibility(self, email: str) -> bool:
        record = await self.get_record(email)
        return record is None or not record.has_used_trial

    async def record_trial_start(
        self, email: str, user_id: str, started_at: datetime, ends_at: datetime
    ) -> TrialHistoryRecord:
        key = normalize_email(email)
        record = await self._db.upsert_trial_history(
            key,
            {
                "has_used_trial": True,
                "trial_started_at": started_at,
                "trial_ended_at": ends_at,
                "last_user_id": user_id,
            },
        )
        await self._ledger.log_event(
            LedgerEventType.TRIAL,
            message="Trial started",
            details={"email": key, "trial_end": ends_at.isoformat()},
            user_id=user_id,
        )
        return record

    async def record_trial_upgrade(self, email: str, user_id: str) -> TrialHistoryRecord:
        key = normalize_email(email)
        record = await self._db.upsert_trial_history(
            key,
            {"has_used_trial": True, "was_upgraded": True, "last_user_id": user_id},
        )
        await self._ledger.log_event(
            LedgerEventType.TRIAL,
            message="Trial upgraded",
            details={"email": key},
            user_id=user_id,
        )
        return record

    async def record_trial_end(self, email: str, user_id: str, ended_at: datetime) -> TrialHistoryRecord:
        return await self._db.upsert_trial_history(
            normalize_email(email),
            {"has_used_trial": True, "trial_ended_at": ended_at, "last_user_id": user_id},
        )

    async def record_account_deletion(self, email: str, user_id: str) -> Optional[TrialHistoryRecord]:
        """
        Stamp the deletion on an existing record. An email that never had a
        trial gets no record, so it stays eligible.
        """
        key = normalize_email(email)
        if await self._db.get_trial_history(key) is None:
            return None
        return await self._db.upsert_trial_history(
            key, {"account_deleted_at": utcnow(), "last_user_id": user_id}
        )
