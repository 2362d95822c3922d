from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="GENGO_", extra="ignore")

    ENV: str = "dev"

    MONGO_URI: Optional[str] = None
    MONGO_DB_NAME: str = "gengo_billing"
    STORAGE_RETRY_ATTEMPTS: int = 3

    LEDGER_LOG_PATH: str = "logs/credit_ledger.log"
    BALANCE_CACHE_TTL_SECONDS: int = 300
    CATALOG_VERSION: Optional[str] = None

    # Midtrans
    MIDTRANS_IS_PRODUCTION: bool = False
    MIDTRANS_SERVER_KEY: Optional[str] = None
    MIDTRANS_SERVER_KEY_SANDBOX: Optional[str] = None
    MIDTRANS_SERVER_KEY_PRODUCTION: Optional[str] = None
    MIDTRANS_CLIENT_KEY: Optional[str] = None
    MIDTRANS_MOCK_MODE: bool = False
    GATEWAY_TIMEOUT_SECONDS: float = 15.0

    APP_URL: str = "http://localhost:3000"
    ORDER_ID_PREFIX: str = "GNG"
    CHECKOUT_EXPIRY_HOURS: int = 24

    CRON_SECRET: Optional[str] = None

    @property
    def midtrans_server_key(self) -> Optional[str]:
        if self.MIDTRANS_IS_PRODUCTION:
            return self.MIDTRANS_SERVER_KEY_PRODUCTION or self.MIDTRANS_SERVER_KEY
        return self.MIDTRANS_SERVER_KEY_SANDBOX or self.MIDTRANS_SERVER_KEY

    @property
    def midtrans_mock_mode(self) -> bool:
        return self.MIDTRANS_MOCK_MODE or not self.midtrans_server_key


@lru_cache
def get_settings() -> Settings:
    return Settings()
