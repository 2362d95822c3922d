"""
FastAPI application for the billing service.

- `/credits/*` exposes balances, usage charging, tier changes, checkout and
  the payment webhook.
- `CreditGuardMiddleware` gates `/api/*` routes of the host application on
  credits when those routes are mounted on the same app.

Run:
  uvicorn gengo_billing.main:app --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from .api.dependencies import BillingServices, build_services
from .api.middleware import CreditGuardMiddleware
from .api.router import router
from .config import Settings, get_settings
from .db.mongo import MongoDBManager


logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, services: Optional[BillingServices] = None) -> FastAPI:
    settings = settings or get_settings()
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(services.db, MongoDBManager):
            await services.db.ensure_indexes()
        logger.info("Billing service started (env=%s, catalog=%s)", settings.ENV, services.credits.catalog.version)
        yield

    app = FastAPI(title="Gengo billing", lifespan=lifespan)
    app.state.billing = services
    app.add_middleware(
        CreditGuardMiddleware,
        credit_service=services.credits,
        path_prefix="/api",
        skip_paths=("/api/health",),
    )
    app.include_router(router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("gengo_billing.main:app", host="0.0.0.0", port=8000, reload=True)
