import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from .clients import SettlementClient
from .clock import utc_now
from .config import LedgerSettings
from .errors import InvalidAddressError, SettlementError
from .models import ReconcileResult, ReconciliationDrift
from .storage import LedgerStorage, LedgerTransaction

logger = logging.getLogger(__name__)


class BalanceReconciler:
    """
    Read-through refresh of the cached external balance.

    The settlement layer is authoritative: its balance always overwrites the
    cached one, lower or higher. Credit statuses are never touched here.
    """

    def __init__(
        self,
        storage: LedgerStorage,
        client: SettlementClient,
        settings: Optional[LedgerSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.client = client
        self.settings = settings or LedgerSettings()
        self.clock = clock or utc_now

    async def reconcile(self, user_id: str, recipient: str) -> ReconcileResult:
        recipient = (recipient or "").strip()
        if not recipient:
            raise InvalidAddressError("A settlement recipient address is required")

        try:
            observed = await asyncio.wait_for(
                self.client.balance_of(recipient), timeout=self.settings.balance_timeout_seconds
            )
        except (asyncio.TimeoutError, SettlementError) as e:
            logger.warning(f"Balance read for {recipient} (user {user_id}) unavailable, serving cached value: {e}")
            return await asyncio.to_thread(self._stale_result, user_id, recipient)

        now = self.clock()

        def refresh(tx: LedgerTransaction) -> ReconcileResult:
            state = tx.get_user_state(user_id)
            previous = state.external_balance
            state.external_balance = observed
            state.external_balance_at = now
            tx.save_user_state(state)

            drift = None
            if previous is not None and previous != observed:
                drift = ReconciliationDrift(
                    user_id=user_id,
                    cached_balance=previous,
                    observed_balance=observed,
                    delta=observed - previous,
                    detected_at=now,
                )
            return ReconcileResult(
                user_id=user_id,
                recipient=recipient,
                observed_balance=observed,
                previous_balance=previous,
                drift=drift,
                review_credit_ids=[c.vote_id for c in tx.list_credits(user_id) if c.needs_review],
                refreshed_at=now,
            )

        result = await asyncio.to_thread(
            self.storage.run_in_transaction, user_id, refresh, max_attempts=self.settings.transaction_retries
        )
        if result.drift is not None:
            logger.warning(
                f"ReconciliationDrift for user {user_id}: cached {result.drift.cached_balance}, "
                f"settlement layer reports {observed} (delta {result.drift.delta:+d})"
            )
        else:
            logger.info(f"Balance for user {user_id} refreshed: {observed}")
        return result

    def _stale_result(self, user_id: str, recipient: str) -> ReconcileResult:
        with self.storage.snapshot(user_id) as tx:
            state = tx.get_user_state(user_id)
        return ReconcileResult(
            user_id=user_id,
            recipient=recipient,
            observed_balance=state.external_balance,
            previous_balance=state.external_balance,
            stale=True,
            refreshed_at=state.external_balance_at,
        )
