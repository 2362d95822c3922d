from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Sequence, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseDBManager
from ..errors import ConcurrentUpdateError
from ..models.base import DBSerializableModel, utcnow
from ..models.catalog import SubscriptionTier
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.payment import PaymentStatus, PendingPayment
from ..models.subscription import Subscription, SubscriptionStatus
from ..models.transaction import CreditTransaction, CreditTransactionType
from ..models.trial_history import TrialHistoryRecord
from ..models.user import UserAccount


TModel = TypeVar("TModel", bound=DBSerializableModel)

_INDEXED_MODELS: Sequence[Type[DBSerializableModel]] = (
    Subscription,
    CreditTransaction,
    PendingPayment,
    NotificationEvent,
    LedgerEntry,
)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    `transaction()` opens a client session with a multi-document transaction
    (requires a replica set). The session travels in a context variable so
    every call made inside the block joins it.
    """

    def __init__(self, database: AsyncIOMotorDatabase, client: Optional[AsyncIOMotorClient] = None) -> None:
        self._db = database
        self._client = client or database.client
        self._session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
            f"mongo_session_{id(self)}", default=None
        )

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name], client)

    async def ensure_indexes(self) -> None:
        for model in _INDEXED_MODELS:
            col = self._db[model.collection_name]
            for field, unique in model.indexes:
                await col.create_index([(field, ASCENDING)], unique=unique)

    def in_transaction(self) -> bool:
        return self._session.get() is not None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._session.get() is not None:
            yield
            return
        async with await self._client.start_session() as session:
            token = self._session.set(session)
            try:
                async with session.start_transaction():
                    yield
            except PyMongoError as exc:
                if exc.has_error_label("TransientTransactionError") or isinstance(exc, DuplicateKeyError):
                    raise ConcurrentUpdateError(str(exc)) from exc
                raise
            finally:
                self._session.reset(token)

    # Helper utilities
    @property
    def _s(self) -> Optional[AsyncIOMotorClientSession]:
        return self._session.get()

    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _prepare_update(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            raise ValueError("Model must have id to be updated")
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    async def _find_many(
        self, model_cls: Type[TModel], query: Mapping[str, Any], sort=None, skip: int = 0, limit: int = 0
    ) -> List[TModel]:
        cursor = self._db[model_cls.collection_name].find(query, session=self._s)
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=None)
        return [self._decode(model_cls, d) for d in docs if d is not None]  # type: ignore[misc]

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        col = self._db[UserAccount.collection_name]
        await col.insert_one(self._prepare_insert(user), session=self._s)
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one({"_id": user_id}, session=self._s)
        return self._decode(UserAccount, doc)

    async def update_user(self, user: UserAccount) -> UserAccount:
        col = self._db[UserAccount.collection_name]
        user.updated_at = utcnow()
        data = self._prepare_update(user)
        await col.replace_one({"_id": data["_id"]}, data, upsert=False, session=self._s)
        return user

    # Subscription operations
    async def add_subscription(self, subscription: Subscription) -> Subscription:
        col = self._db[Subscription.collection_name]
        subscription.version = 1
        try:
            await col.insert_one(self._prepare_insert(subscription), session=self._s)
        except DuplicateKeyError as exc:
            raise ConcurrentUpdateError(f"subscription already exists for {subscription.user_id}") from exc
        return subscription

    async def get_subscription(self, user_id: str) -> Optional[Subscription]:
        col = self._db[Subscription.collection_name]
        doc = await col.find_one({"user_id": user_id}, session=self._s)
        return self._decode(Subscription, doc)

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        col = self._db[Subscription.collection_name]
        expected = subscription.version
        subscription.version = expected + 1
        subscription.updated_at = utcnow()
        data = self._prepare_update(subscription)
        result = await col.replace_one(
            {"_id": data["_id"], "version": expected}, data, upsert=False, session=self._s
        )
        if result.matched_count != 1:
            subscription.version = expected
            raise ConcurrentUpdateError(f"stale subscription for {subscription.user_id}")
        return subscription

    async def get_subscriptions_with_due_schedule(self, as_of: datetime) -> Iterable[Subscription]:
        return await self._find_many(
            Subscription,
            {"scheduled_tier": {"$ne": None}, "scheduled_tier_start_at": {"$lte": as_of}},
        )

    async def get_subscriptions_with_expired_trial(self, as_of: datetime) -> Iterable[Subscription]:
        return await self._find_many(
            Subscription,
            {
                "trial_end_date": {"$lte": as_of},
                "$expr": {"$gt": ["$trial_credits_total", "$trial_credits_used"]},
            },
        )

    async def get_subscriptions_with_daily_reset_due(self, as_of: datetime) -> Iterable[Subscription]:
        return await self._find_many(
            Subscription,
            {"trial_daily_used": {"$gt": 0}, "trial_daily_reset": {"$lte": as_of}},
        )

    async def get_subscriptions_ending_between(
        self, start: datetime, end: datetime, tiers: Sequence[SubscriptionTier]
    ) -> Iterable[Subscription]:
        return await self._find_many(
            Subscription,
            {
                "tier": {"$in": [SubscriptionTier(t).value for t in tiers]},
                "status": SubscriptionStatus.ACTIVE.value,
                "scheduled_tier": None,
                "current_period_end": {"$gte": start, "$lt": end},
            },
        )

    # Transaction / ledger operations
    async def add_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        col = self._db[CreditTransaction.collection_name]
        await col.insert_one(self._prepare_insert(tx), session=self._s)
        return tx

    @staticmethod
    def _transaction_query(
        user_id: str,
        tx_type: Optional[CreditTransactionType],
        start_date: Optional[datetime],
        end_date: Optional[datetime],
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"user_id": user_id}
        if tx_type is not None:
            query["type"] = CreditTransactionType(tx_type).value
        created: Dict[str, Any] = {}
        if start_date is not None:
            created["$gte"] = start_date
        if end_date is not None:
            created["$lte"] = end_date
        if created:
            query["created_at"] = created
        return query

    async def get_transactions(
        self,
        user_id: str,
        tx_type: Optional[CreditTransactionType] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[CreditTransaction]:
        return await self._find_many(
            CreditTransaction,
            self._transaction_query(user_id, tx_type, start_date, end_date),
            sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
            skip=offset,
            limit=limit or 0,
        )

    async def count_transactions(
        self,
        user_id: str,
        tx_type: Optional[CreditTransactionType] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> int:
        col = self._db[CreditTransaction.collection_name]
        return await col.count_documents(
            self._transaction_query(user_id, tx_type, start_date, end_date), session=self._s
        )

    # Trial history
    async def get_trial_history(self, email: str) -> Optional[TrialHistoryRecord]:
        col = self._db[TrialHistoryRecord.collection_name]
        doc = await col.find_one({"_id": email}, session=self._s)
        return self._decode(TrialHistoryRecord, doc)

    async def upsert_trial_history(self, email: str, changes: dict[str, Any]) -> TrialHistoryRecord:
        col = self._db[TrialHistoryRecord.collection_name]
        now = utcnow()
        doc = await col.find_one_and_update(
            {"_id": email},
            {
                "$set": {**changes, "updated_at": now},
                "$setOnInsert": {"id": email, "email": email, "created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=self._s,
        )
        return self._decode(TrialHistoryRecord, doc)  # type: ignore[return-value]

    # Pending payments
    async def add_pending_payment(self, payment: PendingPayment) -> PendingPayment:
        col = self._db[PendingPayment.collection_name]
        try:
            await col.insert_one(self._prepare_insert(payment), session=self._s)
        except DuplicateKeyError as exc:
            raise ConcurrentUpdateError(f"order {payment.external_id} already exists") from exc
        return payment

    async def get_pending_payment(self, external_id: str) -> Optional[PendingPayment]:
        col = self._db[PendingPayment.collection_name]
        doc = await col.find_one({"external_id": external_id}, session=self._s)
        return self._decode(PendingPayment, doc)

    async def update_pending_payment(self, payment: PendingPayment) -> PendingPayment:
        col = self._db[PendingPayment.collection_name]
        payment.updated_at = utcnow()
        data = self._prepare_update(payment)
        await col.replace_one({"_id": data["_id"]}, data, upsert=False, session=self._s)
        return payment

    async def transition_pending_payment(
        self,
        external_id: str,
        from_statuses: Sequence[PaymentStatus],
        to_status: PaymentStatus,
        changes: Optional[dict[str, Any]] = None,
    ) -> Optional[PendingPayment]:
        col = self._db[PendingPayment.collection_name]
        update = {
            **{k: (v.value if isinstance(v, PaymentStatus) else v) for k, v in (changes or {}).items()},
            "status": to_status.value,
            "updated_at": utcnow(),
        }
        doc = await col.find_one_and_update(
            {"external_id": external_id, "status": {"$in": [s.value for s in from_statuses]}},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
            session=self._s,
        )
        return self._decode(PendingPayment, doc)

    async def find_open_pending_payment(
        self, user_id: str, tier: SubscriptionTier, duration_months: int, as_of: datetime
    ) -> Optional[PendingPayment]:
        col = self._db[PendingPayment.collection_name]
        doc = await col.find_one(
            {
                "user_id": user_id,
                "tier": SubscriptionTier(tier).value,
                "duration_months": duration_months,
                "status": PaymentStatus.PENDING.value,
                "snap_token": {"$ne": None},
                "expires_at": {"$gt": as_of},
            },
            sort=[("created_at", DESCENDING)],
            session=self._s,
        )
        return self._decode(PendingPayment, doc)

    async def get_stale_pending_payments(self, as_of: datetime) -> Iterable[PendingPayment]:
        return await self._find_many(
            PendingPayment,
            {"status": PaymentStatus.PENDING.value, "expires_at": {"$lte": as_of}},
        )

    # Notifications
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent:
        col = self._db[NotificationEvent.collection_name]
        await col.insert_one(self._prepare_insert(notification), session=self._s)
        return notification

    async def update_notification_event(self, notification: NotificationEvent) -> NotificationEvent:
        col = self._db[NotificationEvent.collection_name]
        data = self._prepare_update(notification)
        await col.replace_one({"_id": data["_id"]}, data, upsert=False, session=self._s)
        return notification

    async def get_notification_events(self, user_id: str) -> List[NotificationEvent]:
        return await self._find_many(
            NotificationEvent, {"user_id": user_id}, sort=[("created_at", ASCENDING)]
        )

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        await col.insert_one(self._prepare_insert(entry), session=self._s)
        return entry
