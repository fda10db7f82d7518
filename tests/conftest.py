"""Pytest configuration and fixtures."""

from datetime import date

import pytest

from emi_ledger.config import LedgerConfig
from emi_ledger.ledger import LoanLedger
from emi_ledger.store import LoanStore


@pytest.fixture
def store() -> LoanStore:
    """Fresh in-memory database per test."""
    store = LoanStore("sqlite://")
    yield store
    store.dispose()


@pytest.fixture
def config() -> LedgerConfig:
    return LedgerConfig(database_url="sqlite://")


@pytest.fixture
def ledger(store: LoanStore, config: LedgerConfig) -> LoanLedger:
    return LoanLedger(store, config)


@pytest.fixture
def standard_loan(ledger: LoanLedger):
    """100000 at 10% over 12 months starting January 2025 (EMI 8791.59)."""
    return ledger.create_loan(
        "HDFC Bank",
        100000,
        10,
        date(2025, 1, 1),
        tenure_months=12,
        loan_type="personal",
        household_id="house-001",
    )


@pytest.fixture
def zero_rate_loan(ledger: LoanLedger):
    """12000 interest free over 12 months (EMI 1000.00)."""
    return ledger.create_loan(
        "Family",
        12000,
        0,
        "2025-01",
        tenure_months=12,
        household_id="house-002",
    )
