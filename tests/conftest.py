"""
conftest.py - Shared pytest fixtures for loanledger tests

Provides common fixtures used across unit, functional and conformance tests:
- Ledgers (empty, funded with a token and the usual parties)
- A registry over the funded ledger
- The standard Scenario-A loan created at t=0
"""

import pytest

from loanledger import Ledger, LoanRegistry

from tests.helpers import make_ledger, create_loan


@pytest.fixture
def empty_ledger():
    return Ledger("test", verbose=False, test_mode=True)


@pytest.fixture
def ledger():
    return make_ledger()


@pytest.fixture
def registry(ledger):
    return LoanRegistry(ledger)


@pytest.fixture
def loan(registry):
    """Scenario-A loan created at t=0; the borrower has approved 1000."""
    return create_loan(registry)
