"""Tests for account classification and persistence."""
from __future__ import annotations

import pytest

from pms_sync.accounts.processor import (
    AccountProcessor,
    classify_account,
    determine_trading_account_type,
    extract_account_name,
    validate_account_format,
)
from pms_sync.exceptions import ExternalApiError
from pms_sync.models import AccountKind, HrpAccount, TradingAccountType
from sync_helpers import FakeHrpClient, make_share_class


class TestClassification:
    def test_trading_funding(self):
        """hrp<digits> is trading; FUNDING anywhere in the string sets the sub-type."""
        result = classify_account("hrp1234567890:FUNDING ACCOUNT", "BINANCE")
        assert result.kind is AccountKind.TRADING
        assert result.trading_type is TradingAccountType.FUNDING
        assert result.extracted_name == "hrp1234567890"

    def test_trading_other(self):
        """Trading accounts without FUNDING are OTHER."""
        result = classify_account("HRP42:main", "OKX")
        assert result.kind is AccountKind.TRADING
        assert result.trading_type is TradingAccountType.OTHER

    def test_basic(self):
        """A venue that merely contains HRP does not make an account trading."""
        result = classify_account("basic-account:001", "HRPMASTER")
        assert result.kind is AccountKind.BASIC
        assert result.trading_type is None

    def test_triparty(self):
        """The ZODIA venue marks triparty accounts, case-insensitively."""
        assert classify_account("triparty:001", "ZODIA").kind is AccountKind.TRIPARTY
        assert classify_account("triparty:001", "zodia").kind is AccountKind.TRIPARTY

    def test_hrp_without_digits_is_not_trading(self):
        """The identifier needs at least one digit."""
        assert classify_account("hrpmain:001", "BINANCE").kind is AccountKind.BASIC

    @pytest.mark.parametrize(
        "value,valid",
        [("name:suffix", True), ("name:", True), ("invalid-format", False), (":suffix", False), ("", False)],
    )
    def test_validate_account_format(self, value, valid):
        """A colon with a non-empty prefix is required."""
        assert validate_account_format(value) is valid

    def test_extract_account_name(self):
        """Only the first colon splits."""
        assert extract_account_name("a:b:c") == "a"

    def test_determine_trading_account_type(self):
        """FUNDING match is case-insensitive."""
        assert determine_trading_account_type("x:funding") is TradingAccountType.FUNDING
        assert determine_trading_account_type("x:main") is TradingAccountType.OTHER


class TestProcessShareClass:
    @pytest.fixture
    def processor(self, client_factory, ledger):
        return AccountProcessor(client_factory, ledger)

    @pytest.fixture
    def remote(self, hrp_clients):
        client = FakeHrpClient(
            [
                HrpAccount("hrp1234567890:FUNDING ACCOUNT", "BINANCE"),
                HrpAccount("basic-account:001", "HRPMASTER"),
                HrpAccount("triparty:001", "ZODIA"),
                HrpAccount("invalid-format", "BINANCE"),
            ]
        )
        hrp_clients["client-a"] = client
        return client

    @pytest.mark.asyncio
    async def test_persists_each_kind(self, processor, ledger, share_class, remote):
        """Valid accounts land in their tables; the malformed one is skipped."""
        results = await processor.process_multiple_share_classes([share_class])

        accounts = results["Fund A"].value
        assert results["Fund A"].success
        assert [a.kind for a in accounts] == [AccountKind.TRADING, AccountKind.BASIC, AccountKind.TRIPARTY]
        assert accounts[0].account_type is TradingAccountType.FUNDING

        state = ledger.session._state
        trading = list(state.trading_accounts.values())
        assert [t.name for t in trading] == ["hrp1234567890:FUNDING ACCOUNT"]
        assert trading[0].venue_name == "Binance"
        assert trading[0].share_class_id == share_class.id
        assert [b.denomination for b in state.basic_accounts.values()] == ["USD"]
        assert len(state.triparty_accounts) == 1

    @pytest.mark.asyncio
    async def test_reclassification_updates(self, processor, ledger, share_class, remote):
        """Running twice updates the same rows instead of duplicating them."""
        first = await processor.process_multiple_share_classes([share_class])
        second = await processor.process_multiple_share_classes([share_class])

        assert [a.id for a in first["Fund A"].value] == [a.id for a in second["Fund A"].value]
        state = ledger.session._state
        assert len(state.trading_accounts) == 1
        assert len(state.basic_accounts) == 1
        assert len(state.triparty_accounts) == 1

    @pytest.mark.asyncio
    async def test_malformed_only(self, processor, ledger, share_class, hrp_clients):
        """A lone malformed account creates nothing and raises nothing."""
        hrp_clients["client-a"] = FakeHrpClient([HrpAccount("invalid-format", "BINANCE")])
        results = await processor.process_multiple_share_classes([share_class])
        assert results["Fund A"].success
        assert results["Fund A"].value == []
        state = ledger.session._state
        assert not state.trading_accounts and not state.basic_accounts and not state.triparty_accounts

    @pytest.mark.asyncio
    async def test_unknown_venue_skipped(self, processor, ledger, share_class, hrp_clients):
        """Trading accounts at an unknown counterparty are skipped, the rest saved."""
        hrp_clients["client-a"] = FakeHrpClient(
            [HrpAccount("hrp99:main", "KRAKEN"), HrpAccount("basic:1", "HRPMASTER")]
        )
        results = await processor.process_multiple_share_classes([share_class])
        assert [a.kind for a in results["Fund A"].value] == [AccountKind.BASIC]
        assert not ledger.session._state.trading_accounts

    @pytest.mark.asyncio
    async def test_triparty_without_zodia_counterparty(self, client_factory, share_class, hrp_clients):
        """Triparty accounts need the ZODIA counterparty to exist."""
        from pms_sync.repository_memory import InMemoryLedgerStore

        ledger = InMemoryLedgerStore()
        hrp_clients["client-a"] = FakeHrpClient([HrpAccount("triparty:001", "ZODIA")])
        processor = AccountProcessor(client_factory, ledger)
        results = await processor.process_multiple_share_classes([share_class])
        assert results["Fund A"].value == []

    @pytest.mark.asyncio
    async def test_one_tenant_failure_isolated(self, processor, ledger, hrp_clients):
        """A failing share class gets an empty result; the next one still runs."""
        broken = make_share_class(id=1, name="Broken", client_id="client-broken")
        healthy = make_share_class(id=2, name="Healthy", client_id="client-ok")
        failing = FakeHrpClient()
        failing.list_error = ExternalApiError("boom", "hrp", 500)
        hrp_clients["client-broken"] = failing
        hrp_clients["client-ok"] = FakeHrpClient([HrpAccount("basic:1", "HRPMASTER")])

        results = await processor.process_multiple_share_classes([broken, healthy])

        assert not results["Broken"].success
        assert results["Broken"].value == []
        assert "boom" in results["Broken"].error
        assert results["Healthy"].success
        assert len(results["Healthy"].value) == 1

    @pytest.mark.asyncio
    async def test_missing_credentials(self, processor):
        """A share class without usable keys fails with a configuration error."""
        share_class = make_share_class()
        share_class.api_keys = {"clientId": "only-id"}
        results = await processor.process_multiple_share_classes([share_class])
        assert not results["Fund A"].success
        assert "valid HRP credentials" in results["Fund A"].error
