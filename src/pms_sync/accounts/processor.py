"""Classification and persistence of prime-broker accounts.

Account strings look like ``"<name>:<suffix>"``. Classification, in order:

1. an ``hrp<digits>`` identifier anywhere in the string -> trading account
   (``FUNDING`` sub-type when the string mentions FUNDING, else ``OTHER``)
2. venue ``ZODIA`` -> triparty account
3. anything else -> basic account

Ledger rows are keyed by the full account string.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from ..clients.factory import HrpClientFactory
from ..constants import Defaults, Timeouts
from ..logging_config import set_share_class_context
from ..models import (
    AccountInfo,
    AccountKind,
    HrpAccount,
    ShareClass,
    TenantResult,
    TradingAccountType,
)
from ..repositories import LedgerSession, LedgerStore

logger = logging.getLogger("pms.accounts.processor")

_HRP_ID = re.compile(r"\bhrp\d+", re.IGNORECASE)


def validate_account_format(account_string: str) -> bool:
    """A colon separator with a non-empty name before it."""
    return ":" in account_string and bool(account_string.split(":", 1)[0])


def extract_account_name(account_string: str) -> str:
    return account_string.split(":", 1)[0]


def determine_trading_account_type(account_string: str) -> TradingAccountType:
    if "FUNDING" in account_string.upper():
        return TradingAccountType.FUNDING
    return TradingAccountType.OTHER


@dataclass(frozen=True)
class AccountClassification:
    kind: AccountKind
    extracted_name: str
    trading_type: Optional[TradingAccountType] = None


def classify_account(account_string: str, venue: str) -> AccountClassification:
    name = extract_account_name(account_string)
    if _HRP_ID.search(account_string):
        return AccountClassification(
            AccountKind.TRADING, name, determine_trading_account_type(account_string)
        )
    if venue.upper() == Defaults.TRIPARTY_VENUE:
        return AccountClassification(AccountKind.TRIPARTY, name)
    return AccountClassification(AccountKind.BASIC, name)


class AccountProcessor:
    """Syncs each share class's remote accounts into the ledger."""

    def __init__(
        self,
        clients: HrpClientFactory,
        ledger: LedgerStore,
        *,
        max_wait: float = Timeouts.ACCOUNT_TX_MAX_WAIT,
        timeout: float = Timeouts.ACCOUNT_TX_TIMEOUT,
    ):
        self._clients = clients
        self._ledger = ledger
        self._max_wait = max_wait
        self._timeout = timeout

    async def process_accounts_for_share_class(
        self, share_class: ShareClass, session: LedgerSession
    ) -> list[AccountInfo]:
        """Classify and persist every remote account of one share class.

        Raises:
            ConfigurationError: If the share class has no usable credentials
            ExternalApiError: If the account list cannot be fetched
        """
        client = await self._clients.get_client(share_class)
        accounts = await client.list_accounts()
        if not accounts:
            logger.warning(f"No accounts found from HRP for share class {share_class.name}")
            return []

        saved = []
        for account in accounts:
            info = await self._process_account(account, share_class, session)
            if info is not None:
                saved.append(info)

        logger.info(
            f"Processed {len(saved)}/{len(accounts)} accounts for share class {share_class.name}"
        )
        return saved

    async def _process_account(
        self, account: HrpAccount, share_class: ShareClass, session: LedgerSession
    ) -> Optional[AccountInfo]:
        if not validate_account_format(account.account):
            logger.error(
                f"Invalid account format: {account.account}",
                extra={"venue": account.venue, "share_class_name": share_class.name},
            )
            return None

        classification = classify_account(account.account, account.venue)
        try:
            async with session.savepoint():
                account_id = await self._save(account, classification, share_class, session)
        except Exception as e:
            logger.error(
                f"Failed to save {classification.kind.value} account: {account.account}",
                extra={"venue": account.venue, "share_class_name": share_class.name, "error": str(e)},
            )
            return None

        if account_id is None:
            return None
        return AccountInfo(
            hrp_account=account,
            kind=classification.kind,
            id=account_id,
            account_type=classification.trading_type,
        )

    async def _save(
        self,
        account: HrpAccount,
        classification: AccountClassification,
        share_class: ShareClass,
        session: LedgerSession,
    ) -> Optional[int]:
        if classification.kind is AccountKind.TRADING:
            venue = await session.find_counterparty_by_name(account.venue)
            if venue is None:
                logger.warning(f"Counterparty not found for venue: {account.venue}")
                return None
            saved = await session.upsert_trading_account(
                account.account, classification.trading_type, venue.id, share_class.id
            )
        elif classification.kind is AccountKind.TRIPARTY:
            venue = await session.find_counterparty_by_name(Defaults.TRIPARTY_VENUE)
            if venue is None:
                logger.warning(f"ZODIA counterparty not found for triparty account: {account.account}")
                return None
            saved = await session.upsert_triparty_account(
                account.account, share_class.denom_ccy, share_class.id, venue.id
            )
        else:
            saved = await session.upsert_basic_account(
                account.account, share_class.denom_ccy, share_class.id
            )
        logger.debug(f"{classification.kind.value} account saved: {account.account}")
        return saved.id

    async def process_multiple_share_classes(
        self, share_classes: Sequence[ShareClass]
    ) -> dict[str, TenantResult[list[AccountInfo]]]:
        """One transaction per share class; a failed one yields an empty list."""
        results: dict[str, TenantResult[list[AccountInfo]]] = {}
        for share_class in share_classes:
            set_share_class_context(share_class.name)
            try:
                accounts = await self._ledger.run_in_transaction(
                    lambda session, sc=share_class: self.process_accounts_for_share_class(sc, session),
                    max_wait=self._max_wait,
                    timeout=self._timeout,
                )
                results[share_class.name] = TenantResult(share_class.name, accounts)
            except Exception as e:
                logger.error(
                    f"Transaction failed for share class {share_class.name}",
                    extra={"share_class_name": share_class.name, "share_class_id": share_class.id, "error": str(e)},
                    exc_info=True,
                )
                results[share_class.name] = TenantResult(share_class.name, [], error=str(e))
            finally:
                set_share_class_context(None)
        return results
