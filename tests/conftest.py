"""
Pytest configuration for pms-sync tests.
"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
if str(package_src) not in sys.path:
    sys.path.insert(0, str(package_src))

from pms_sync.clients.factory import HrpClientFactory  # noqa: E402
from pms_sync.currency.conversion import CurrencyConversionService  # noqa: E402
from pms_sync.logging_config import clear_context  # noqa: E402
from pms_sync.repository_memory import (  # noqa: E402
    InMemoryLedgerStore,
    InMemoryShareClassRepository,
    InMemorySpotQuoteRepository,
)
from sync_helpers import FakeHrpClient, make_share_class  # noqa: E402


@pytest.fixture(autouse=True)
def reset_log_context():
    yield
    clear_context()


@pytest.fixture
def ledger():
    """Ledger with the venues the account tests classify against."""
    store = InMemoryLedgerStore()
    store.add_counterparty("Binance")
    store.add_counterparty("ZODIA")
    return store


@pytest.fixture
def quotes():
    return InMemorySpotQuoteRepository()


@pytest.fixture
def conversion(quotes):
    return CurrencyConversionService(quotes)


@pytest.fixture
def share_class():
    return make_share_class()


@pytest.fixture
def share_classes(share_class):
    return InMemoryShareClassRepository([share_class])


@pytest.fixture
def hrp_clients():
    """Fake HRP clients keyed by client id; unknown ids get an empty client."""
    return {}


@pytest.fixture
def client_factory(hrp_clients):
    def build(credentials):
        return hrp_clients.setdefault(credentials.client_id, FakeHrpClient())

    return HrpClientFactory(builder=build)
