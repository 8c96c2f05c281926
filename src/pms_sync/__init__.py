"""Transfer ingestion, account classification and currency normalization for the PMS ledger."""

from .config import PmsSettings, SyncJobSettings, ProxySettings, load_settings
from .exceptions import (
    PmsException,
    ConfigurationError,
    ValidationError,
    ExternalApiError,
    AuthenticationError,
    RateLimitError,
    StorageError,
    TransactionTimeoutError,
    ScheduleError,
)
from .models import (
    AccountKind,
    TradingAccountType,
    TransferDirection,
    ApiCredentials,
    ShareClass,
    Counterparty,
    TradingAccount,
    BasicAccount,
    TripartyAccount,
    HrpAccount,
    AccountInfo,
    TransferEvent,
    TransferInput,
    Transfer,
    TransferIngestionParams,
    SpotQuote,
    PriceQuote,
    DateGap,
    TenantResult,
)
from .currency.conversion import CurrencyConversionService
from .currency.ingestion import SpotQuoteIngestionService, detect_date_gaps
from .accounts.processor import AccountProcessor, classify_account
from .transfers.processor import TransferProcessor
from .scheduling.accounts import AccountsSyncService
from .scheduling.transfers import TransfersSyncService
from .scheduling.currency import CurrencySyncService
from .scheduling.results import SyncResult
from .app import SyncApplication

__version__ = "0.1.0"

__all__ = [
    "PmsSettings",
    "SyncJobSettings",
    "ProxySettings",
    "load_settings",
    "PmsException",
    "ConfigurationError",
    "ValidationError",
    "ExternalApiError",
    "AuthenticationError",
    "RateLimitError",
    "StorageError",
    "TransactionTimeoutError",
    "ScheduleError",
    "AccountKind",
    "TradingAccountType",
    "TransferDirection",
    "ApiCredentials",
    "ShareClass",
    "Counterparty",
    "TradingAccount",
    "BasicAccount",
    "TripartyAccount",
    "HrpAccount",
    "AccountInfo",
    "TransferEvent",
    "TransferInput",
    "Transfer",
    "TransferIngestionParams",
    "SpotQuote",
    "PriceQuote",
    "DateGap",
    "TenantResult",
    "CurrencyConversionService",
    "SpotQuoteIngestionService",
    "detect_date_gaps",
    "AccountProcessor",
    "classify_account",
    "TransferProcessor",
    "AccountsSyncService",
    "TransfersSyncService",
    "CurrencySyncService",
    "SyncResult",
    "SyncApplication",
]
