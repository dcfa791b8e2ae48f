"""
Vote Reward Ledger and Settlement Coordinator

This module provides:
- Rate-limited vote admission (daily, weekly and attestation rules)
- Token rewards with streak and territory bonuses
- Daily voting streaks
- Pending credits settled in batches: pending → in_flight → settled / failed
- Balance reconciliation against the external token ledger
"""

from .config import LedgerSettings
from .errors import LedgerServiceError, VoteRejectedError
from .models import (
    CreditStatus,
    PendingCredit,
    RejectionReason,
    UserLedgerState,
    VoteRecord,
)
from .reconciler import BalanceReconciler
from .service import VoteLedgerService
from .settlement import SettlementCoordinator
from .storage import InMemoryStorage, LedgerStorage

__all__ = [
    "LedgerSettings",
    "LedgerServiceError",
    "VoteRejectedError",
    "CreditStatus",
    "PendingCredit",
    "RejectionReason",
    "UserLedgerState",
    "VoteRecord",
    "BalanceReconciler",
    "VoteLedgerService",
    "SettlementCoordinator",
    "InMemoryStorage",
    "LedgerStorage",
]
