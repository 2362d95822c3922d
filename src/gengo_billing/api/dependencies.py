from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from fastapi import Request

from ..cache.memory import InMemoryAsyncCache
from ..config import Settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..gateway.midtrans import PaymentGateway, create_gateway
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.catalog import DEFAULT_CATALOG, TierCatalog
from ..notifications.queue import AsyncNotificationQueue, LoggingNotificationQueue
from ..services.credit_service import CreditService
from ..services.expiration_service import ExpirationService
from ..services.notification_service import NotificationService
from ..services.payment_service import PaymentService, VoucherProvider
from ..services.tier_change_service import TierChangeService
from ..services.trial_history_service import TrialHistoryService


logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    db: BaseDBManager
    ledger: LedgerLogger
    notifications: NotificationService
    trial_history: TrialHistoryService
    credits: CreditService
    tiers: TierChangeService
    payments: PaymentService
    expiration: ExpirationService
    cron_secret: Optional[str] = None


def create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.MONGO_URI:
        return MongoDBManager.from_client_uri(settings.MONGO_URI, settings.MONGO_DB_NAME)
    logger.warning("MONGO_URI not set; billing state is kept in memory")
    return InMemoryDBManager()


def build_services(
    settings: Settings,
    db: Optional[BaseDBManager] = None,
    gateway: Optional[PaymentGateway] = None,
    queue: Optional[AsyncNotificationQueue] = None,
    catalog: Optional[TierCatalog] = None,
    vouchers: Optional[VoucherProvider] = None,
    clock: Callable[[], datetime] = utcnow,
) -> BillingServices:
    db = db or create_db_manager(settings)
    catalog = catalog or DEFAULT_CATALOG
    if settings.CATALOG_VERSION and settings.CATALOG_VERSION != catalog.version:
        catalog = catalog.model_copy(update={"version": settings.CATALOG_VERSION})

    ledger = LedgerLogger(db=db, file_path=Path(settings.LEDGER_LOG_PATH))
    notifications = NotificationService(db=db, queue=queue or LoggingNotificationQueue(), app_url=settings.APP_URL)
    trial_history = TrialHistoryService(db=db, ledger=ledger)
    credits = CreditService(
        db=db,
        ledger=ledger,
        trial_history=trial_history,
        catalog=catalog,
        cache=InMemoryAsyncCache(),
        notifications=notifications,
        clock=clock,
        retry_attempts=settings.STORAGE_RETRY_ATTEMPTS,
        cache_ttl_seconds=settings.BALANCE_CACHE_TTL_SECONDS,
    )
    tiers = TierChangeService(db=db, ledger=ledger, credit_service=credits, trial_history=trial_history)
    payments = PaymentService(
        db=db,
        ledger=ledger,
        credit_service=credits,
        tier_change_service=tiers,
        gateway=gateway or create_gateway(settings),
        notifications=notifications,
        vouchers=vouchers,
        order_prefix=settings.ORDER_ID_PREFIX,
        checkout_expiry_hours=settings.CHECKOUT_EXPIRY_HOURS,
    )
    expiration = ExpirationService(
        db=db,
        ledger=ledger,
        credit_service=credits,
        tier_change_service=tiers,
        payment_service=payments,
        notifications=notifications,
    )
    return BillingServices(
        db=db,
        ledger=ledger,
        notifications=notifications,
        trial_history=trial_history,
        credits=credits,
        tiers=tiers,
        payments=payments,
        expiration=expiration,
        cron_secret=settings.CRON_SECRET,
    )


def get_services(request: Request) -> BillingServices:
    return request.app.state.billing
