"""Canonical configuration surface for the sync service."""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from .constants import Defaults, Schedules, Timeouts


class ProxySettings(BaseModel):
    """SOCKS5 proxy applied to every outbound API call."""
    host: str
    port: int = 1080
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def url(self) -> str:
        auth = ""
        if self.username and self.password:
            auth = f"{self.username}:{self.password}@"
        return f"socks5://{auth}{self.host}:{self.port}"


class SyncJobSettings(BaseModel):
    """Enable flag and cron expression for one periodic sync."""
    enabled: bool = True
    cron: str


class PmsSettings(BaseSettings):
    """Main sync service configuration."""

    environment: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    log_json: bool = True

    database_url: str = Field(default="", validate_default=True)

    # Prime-broker (HRP) API
    hrp_auth_base_url: str = "https://auth.hiddenroad.com"
    hrp_data_base_url: str = "https://api.hiddenroad.com"
    hrp_default_audience: str = Defaults.HRP_AUDIENCE

    # Quote (1Token) API
    onetoken_base_url: str = "https://www.1tokencam.com/api/v1"
    onetoken_api_key: str = ""
    onetoken_api_secret: str = ""

    proxy: Optional[ProxySettings] = None
    http_timeout_seconds: float = Timeouts.HTTP_DEFAULT

    accounts: SyncJobSettings = Field(
        default_factory=lambda: SyncJobSettings(cron=Schedules.ACCOUNTS_SYNC)
    )
    transfers: SyncJobSettings = Field(
        default_factory=lambda: SyncJobSettings(cron=Schedules.TRANSFERS_SYNC)
    )
    currency: SyncJobSettings = Field(
        default_factory=lambda: SyncJobSettings(cron=Schedules.CURRENCY_SYNC)
    )

    transfer_lookback_days_deposits: int = Defaults.LOOKBACK_DAYS_DEPOSITS
    transfer_lookback_days_withdrawals: int = Defaults.LOOKBACK_DAYS_WITHDRAWALS
    transfer_batch_size: int = Defaults.TRANSFER_BATCH_SIZE

    currency_symbols: List[str] = Field(default_factory=lambda: list(Defaults.CURRENCIES))
    currency_exchange: Literal["index", "cmc"] = "cmc"
    currency_backfill_days: int = Defaults.BACKFILL_DAYS
    backfill_request_delay_seconds: float = Defaults.BACKFILL_REQUEST_DELAY

    transaction_max_wait_seconds: float = Timeouts.TRANSFER_TX_MAX_WAIT
    transaction_timeout_seconds: float = Timeouts.TRANSFER_TX_TIMEOUT
    account_transaction_timeout_seconds: float = Timeouts.ACCOUNT_TX_TIMEOUT

    class Config:
        env_prefix = "PMS_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("currency_symbols", mode="before")
    @classmethod
    def parse_symbols(cls, v):
        """Parse comma-separated symbols from env var."""
        if isinstance(v, str):
            return [s.strip().upper() for s in v.split(",") if s.strip()]
        return v

    @field_validator(
        "transfer_lookback_days_deposits",
        "transfer_lookback_days_withdrawals",
        "transfer_batch_size",
        "currency_backfill_days",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("database_url", mode="before")
    @classmethod
    def set_database_default(cls, v: str) -> str:
        """Use DATABASE_URL when no explicit DSN is configured."""
        if not v:
            v = os.getenv("DATABASE_URL", "postgresql://localhost/pms")
        # asyncpg only understands the postgresql:// scheme
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql://", 1)
        return v

    @property
    def proxy_url(self) -> Optional[str]:
        return self.proxy.url if self.proxy else None


@lru_cache
def load_settings(env_file: str | None = None) -> PmsSettings:
    """Load PmsSettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return PmsSettings(_env_file=env_path)
