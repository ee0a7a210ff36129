"""
Pytest Configuration and Shared Fixtures

Provides common test fixtures and configuration for the entire test suite.
"""

from datetime import date

import pytest

from tests.fixtures.fake_remote import FakeTransactionRemote, make_draft, make_transaction
from txfeed.core import config as config_module
from txfeed.core.config import FeedConfig
from txfeed.core.models import Fingerprint
from txfeed.feed import invalidation


@pytest.fixture
def sample_transactions():
    """Three server-side transactions, newest first."""
    return [
        make_transaction("tx_3", amount="1500", day=date(2024, 3, 3), description="Groceries"),
        make_transaction("tx_2", kind="income", amount="250000", day=date(2024, 3, 2), category_id="cat-salary"),
        make_transaction("tx_1", amount="4500", day=date(2024, 3, 1), description="Fuel"),
    ]


@pytest.fixture
def fake_remote(sample_transactions) -> FakeTransactionRemote:
    """In-memory remote preloaded with the sample transactions."""
    return FakeTransactionRemote(sample_transactions)


@pytest.fixture
def sample_draft():
    """Valid expense draft of 500.00."""
    return make_draft("500")


@pytest.fixture
def all_feed() -> Fingerprint:
    return Fingerprint.for_filters()


@pytest.fixture
def expense_feed() -> Fingerprint:
    return Fingerprint.for_filters(kind="expense")


@pytest.fixture
def fast_feed_config() -> FeedConfig:
    """Feed configuration with a settle window short enough for tests."""
    return FeedConfig(page_limit=2, settle_window_seconds=0.01, stale_time_seconds=30.0)


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch):
    """Set up test environment variables."""
    # Ensure tests never talk to a real API
    monkeypatch.setenv("TXFEED_ENV", "test")
    monkeypatch.setenv("TXFEED_API_URL", "http://localhost:9/api/v1")

    # Mock sensitive environment variables
    monkeypatch.setenv("TXFEED_ACCESS_TOKEN", "test-access-token")
    monkeypatch.setenv("TXFEED_REFRESH_TOKEN", "test-refresh-token")

    # Fresh process-wide singletons for every test
    monkeypatch.setattr(config_module, "_config", None)
    invalidation.reset_invalidation_bus()


# Test markers for categorizing tests
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests for individual components"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests for complete workflows"
    )
    config.addinivalue_line(
        "markers", "feed: Tests for the feed engine facade"
    )
    config.addinivalue_line(
        "markers", "pagination: Tests for cursor pagination and merging"
    )
    config.addinivalue_line(
        "markers", "mutations: Tests for optimistic mutations and rollback"
    )
    config.addinivalue_line(
        "markers", "api: Tests for the HTTP transport"
    )
    config.addinivalue_line(
        "markers", "cli: Tests for the command-line interface"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take significant time to run"
    )
