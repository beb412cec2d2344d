"""
Shared fixtures: in-memory storage, a fixed clock and a wired lending system
"""

import pytest
from datetime import date

from microlend.config import MicrolendConfig
from microlend.storage import InMemoryStorage
from microlend.system import LendingSystem


FIXED_TODAY = date(2026, 1, 15)


def fixed_clock():
    return FIXED_TODAY


@pytest.fixture
def today():
    return FIXED_TODAY


@pytest.fixture
def config():
    """Configuration isolated from the environment and any .env file"""
    return MicrolendConfig(_env_file=None, storage_backend="memory", lock_timeout_seconds=5.0)


@pytest.fixture
def storage():
    """In-memory storage for tests"""
    return InMemoryStorage()


@pytest.fixture
def system(config, storage):
    """Lending system on in-memory storage with a fixed clock"""
    return LendingSystem(config=config, storage=storage, clock=fixed_clock)


@pytest.fixture
def market(system):
    return system.register_market("Balogun Market", "BLG", region="Lagos Island")


@pytest.fixture
def borrower(system, market):
    return system.register_borrower(
        "Adaeze", "Okafor", "08031234567", "12 Marina Road, Lagos", market.id,
        registered_by="agent-1", business_type="Fabrics", shop_number="B14"
    )


@pytest.fixture
def make_loan(system, borrower):
    """
    Factory for loans in a given lifecycle stage

    By default the loan is approved and disbursed on disbursed_on.
    """
    def _make(principal="10000", rate="10", duration=10, frequency="daily",
              disbursed_on=date(2026, 1, 5), borrower_id=None, approve=True,
              disburse=True, market_id=None):
        loan = system.apply_loan(
            borrower_id or borrower.id, principal, rate, duration, frequency,
            agent_id="agent-1", market_id=market_id
        )
        if approve:
            loan = system.approve_loan(loan.id, "supervisor-1")
        if approve and disburse:
            loan = system.disburse_loan(loan.id, disbursed_on, actor_id="supervisor-1")
        return loan

    return _make


@pytest.fixture
def disbursed_loan(make_loan):
    """10,000 at 10% over 10 daily installments, disbursed 2026-01-05"""
    return make_loan()
