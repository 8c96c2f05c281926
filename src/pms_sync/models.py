"""Domain models for share classes, ledger accounts, transfers and spot quotes."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from .exceptions import ConfigurationError
from .utils import utc_now

T = TypeVar("T")


class AccountKind(str, Enum):
    """Ledger account table an account is stored in."""
    TRADING = "TRADING"
    BASIC = "BASIC"
    TRIPARTY = "TRIPARTY"


class TradingAccountType(str, Enum):
    """Sub-type of a trading account."""
    FUNDING = "FUNDING"
    OTHER = "OTHER"


class TransferDirection(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


# =============================================================================
# Share classes (tenants)
# =============================================================================

@dataclass(frozen=True)
class ApiCredentials:
    """Prime-broker API credentials stored on a share class."""
    client_id: str
    client_secret: str
    audience: Optional[str] = None

    def fingerprint(self) -> str:
        """Stable digest of the credentials, safe to use as a cache key or log."""
        raw = f"{self.client_id}:{self.client_secret}:{self.audience or ''}"
        return hashlib.sha256(raw.encode()).hexdigest()[:16]


@dataclass
class ShareClass:
    id: int
    name: str
    denom_ccy: str
    api_keys: Optional[dict[str, Any]] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_keys)

    def credentials(self) -> ApiCredentials:
        """Extract prime-broker credentials from ``api_keys``.

        Raises:
            ConfigurationError: If no keys are configured or the id/secret are empty
        """
        if not self.api_keys:
            raise ConfigurationError(
                f"ShareClass {self.name} does not have API keys configured",
                details={"share_class": self.name},
            )
        client_id = self.api_keys.get("clientId") or self.api_keys.get("client_id")
        client_secret = self.api_keys.get("clientSecret") or self.api_keys.get("client_secret")
        if not client_id or not client_secret:
            raise ConfigurationError(
                f"ShareClass {self.name} does not have valid HRP credentials",
                details={"share_class": self.name},
            )
        return ApiCredentials(
            client_id=str(client_id),
            client_secret=str(client_secret),
            audience=self.api_keys.get("audience") or None,
        )


# =============================================================================
# Ledger accounts
# =============================================================================

@dataclass
class Counterparty:
    id: int
    name: str


@dataclass
class TradingAccount:
    id: int
    name: str
    type: TradingAccountType
    venue_id: int
    share_class_id: int
    portfolio_id: Optional[int] = None
    venue_name: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class BasicAccount:
    id: int
    name: str
    denomination: str
    share_class_id: int
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class TripartyAccount:
    id: int
    name: str
    denomination: str
    owner_id: int
    venue_id: int
    second_owner_id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class HrpAccount:
    """Account as reported by the prime-broker API."""
    account: str
    venue: str


@dataclass
class AccountInfo:
    """A remote account after classification and persistence."""
    hrp_account: HrpAccount
    kind: AccountKind
    id: int
    account_type: Optional[TradingAccountType] = None  # trading accounts only


# =============================================================================
# Transfers
# =============================================================================

@dataclass(frozen=True)
class TransferEvent:
    """Raw deposit/withdrawal event; fields are kept as the API sent them."""
    id: str
    quantity: str
    asset: str
    event_timestamp: str
    transfer_timestamp: str
    venue: str
    account: str
    type: Optional[str] = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "TransferEvent":
        return cls(
            id=str(payload.get("id", "")),
            quantity=str(payload.get("quantity", "")),
            asset=str(payload.get("asset", "")),
            event_timestamp=str(payload.get("eventTimestamp") or payload.get("event_timestamp") or ""),
            transfer_timestamp=str(payload.get("transferTimestamp") or payload.get("transfer_timestamp") or ""),
            venue=str(payload.get("venue", "")),
            account=str(payload.get("account", "")),
            type=payload.get("type"),
        )


def transfer_idempotency_key(share_class_id: int, direction: TransferDirection, external_id: str) -> str:
    raw = f"{share_class_id}|{direction.value}|{external_id}"
    return hashlib.sha256(raw.encode()).hexdigest()


@dataclass
class TransferInput:
    """A transfer ready to be written to the ledger.

    ``denomination`` is always the share class currency. When no rate was
    available ``is_converted`` is False and ``amount`` equals ``original_amount``.
    """
    amount: Decimal
    denomination: str
    from_account_type: AccountKind
    from_account_id: int
    to_account_type: AccountKind
    to_account_id: int
    valuation_time: datetime
    transfer_time: datetime
    external_id: str
    idempotency_key: str
    original_amount: Decimal
    original_currency: str
    is_converted: bool = True


@dataclass
class Transfer(TransferInput):
    id: int = 0
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class TransferIngestionParams:
    start_date: datetime
    end_date: datetime
    transfer_type: Optional[TransferDirection] = None
    batch_size: Optional[int] = None

    def directions(self) -> list[TransferDirection]:
        if self.transfer_type is None:
            return [TransferDirection.DEPOSIT, TransferDirection.WITHDRAWAL]
        return [self.transfer_type]


# =============================================================================
# Spot quotes
# =============================================================================

@dataclass
class SpotQuote:
    """One daily USD price for a symbol from a given rate source."""
    id: int
    symbol: str
    exchange: str
    price_date: date
    price: Decimal
    fetched_at: datetime
    base_currency: str = "usd"
    data_source: str = "1token"
    contract: Optional[str] = None
    original_tm: Optional[int] = None
    metadata: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class PriceQuote:
    """One price returned by the quote API."""
    symbol: Optional[str]
    price: Decimal
    contract: str
    timestamp: Optional[int] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class DateGap:
    """A contiguous run of missing days between two stored quote dates."""
    start_date: date
    end_date: date
    missing_days: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "missing_days": self.missing_days,
        }


# =============================================================================
# Per-tenant results
# =============================================================================

@dataclass
class TenantResult(Generic[T]):
    """Outcome of one share class inside a multi-tenant run.

    A failed tenant carries the empty value for its type plus the error text.
    """
    share_class_name: str
    value: T
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None
