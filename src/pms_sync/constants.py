"""
Centralized constants and configuration defaults for the sync service.

Usage:
    from pms_sync.constants import JobIds, Defaults, Timeouts

All values are organized into logical namespaces using classes.
"""
from __future__ import annotations

from typing import Final


# =============================================================================
# Scheduler job identifiers
# =============================================================================

class JobIds:
    """Identifiers used when registering cron jobs."""

    ACCOUNTS_SYNC: Final[str] = "hrp-accounts-processor"
    TRANSFERS_SYNC: Final[str] = "hrp-transfer-sync"
    CURRENCY_SYNC: Final[str] = "currency-rate-sync"


class Schedules:
    """Default cron expressions (UTC)."""

    TIMEZONE: Final[str] = "UTC"
    CURRENCY_SYNC: Final[str] = "0 1 * * *"  # daily at 01:00
    ACCOUNTS_SYNC: Final[str] = "0 2 * * *"  # daily at 02:00
    TRANSFERS_SYNC: Final[str] = "0 3 * * *"  # daily at 03:00


# =============================================================================
# Sync defaults
# =============================================================================

class Defaults:
    """Defaults for the configurable sync parameters."""

    LOOKBACK_DAYS_DEPOSITS: Final[int] = 300
    LOOKBACK_DAYS_WITHDRAWALS: Final[int] = 600
    TRANSFER_BATCH_SIZE: Final[int] = 100

    CURRENCIES: Final[tuple[str, ...]] = ("BTC", "ETH")
    CURRENCY_EXCHANGE: Final[str] = "cmc"
    BACKFILL_DAYS: Final[int] = 300
    BACKFILL_REQUEST_DELAY: Final[float] = 0.2

    HRP_AUDIENCE: Final[str] = "https://api.hiddenroad.com/v0/"
    TRIPARTY_VENUE: Final[str] = "ZODIA"
    USD: Final[str] = "usd"


# =============================================================================
# Timeouts (seconds)
# =============================================================================

class Timeouts:
    """Network and transaction timeout configuration."""

    HTTP_DEFAULT: Final[float] = 30.0
    HTTP_CONNECT: Final[float] = 10.0

    # Transfer batches can be large, so their transactions get more headroom
    TRANSFER_TX_MAX_WAIT: Final[float] = 15.0
    TRANSFER_TX_TIMEOUT: Final[float] = 120.0
    ACCOUNT_TX_MAX_WAIT: Final[float] = 5.0
    ACCOUNT_TX_TIMEOUT: Final[float] = 30.0

    DB_COMMAND: Final[float] = 60.0

    # Refresh OAuth tokens this long before they expire
    TOKEN_REFRESH_BUFFER: Final[float] = 300.0


class RetryDefaults:
    """Retry settings for outbound API calls."""

    MAX_RETRIES: Final[int] = 3
    BASE_DELAY: Final[float] = 0.5
    MAX_DELAY: Final[float] = 10.0
    EXPONENTIAL_BASE: Final[float] = 2.0
    JITTER: Final[float] = 0.1


class LoggingDefaults:
    """Logging configuration."""

    MASK_PATTERN: Final[str] = "***MASKED***"
    SENSITIVE_KEYS: Final[frozenset[str]] = frozenset({
        "client_secret",
        "clientsecret",
        "api_secret",
        "apisecret",
        "password",
        "access_token",
        "token",
        "authorization",
        "api-signature",
    })
