import pytest

from vote_ledger.clients import SimulatedSettlementLedger
from vote_ledger.config import LedgerSettings
from vote_ledger.reconciler import BalanceReconciler
from vote_ledger.service import VoteLedgerService
from vote_ledger.settlement import SettlementCoordinator
from vote_ledger.storage import InMemoryStorage

from .fakes import FixedClock


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def settings():
    return LedgerSettings(settlement_timeout_seconds=0.05, balance_timeout_seconds=0.05)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def service(storage, settings, clock):
    return VoteLedgerService(storage, settings, clock=clock)


@pytest.fixture
def settlement_ledger():
    return SimulatedSettlementLedger()


@pytest.fixture
def coordinator(storage, settlement_ledger, settings, clock):
    return SettlementCoordinator(storage, settlement_ledger, settings, clock=clock)


@pytest.fixture
def reconciler(storage, settlement_ledger, settings, clock):
    return BalanceReconciler(storage, settlement_ledger, settings, clock=clock)
