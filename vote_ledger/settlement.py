"""
Settlement of accumulated vote credits against the external token ledger.

A settlement attempt claims every pending credit of one user
(``pending -> in_flight``), submits their sum as a single transfer and
projects the outcome back onto each member credit. The claim is the
exclusion mechanism: only one caller can flip a given credit out of
``pending``, so concurrent triggers for the same user never submit the
same credit twice.

Transfers that time out may still land. Such credits are failed with
``ack_lost`` and keep the batch idempotency key; before they are
resubmitted the coordinator asks the settlement layer whether that key
already landed. Clients without lookup support fall back to
at-least-once delivery and the credits are flagged for review.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID, uuid4

from .clients import SettlementClient
from .clock import utc_now
from .config import LedgerSettings
from .errors import (
    InvalidAddressError,
    SettlementAckLost,
    SettlementError,
    SettlementTransferFailed,
)
from .models import (
    CreditStatus,
    PendingCredit,
    SettlementBatch,
    SettlementErrorKind,
    SettlementOutcome,
    SettlementResult,
    TransferReceipt,
)
from .storage import LedgerStorage, LedgerTransaction

logger = logging.getLogger(__name__)


def batch_idempotency_key(batch_id: UUID) -> str:
    return f"vote-ledger-settlement:{batch_id}"


@dataclass(frozen=True)
class _TransferOutcome:
    receipt: Optional[TransferReceipt] = None
    error_kind: Optional[SettlementErrorKind] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error_kind is None


class SettlementCoordinator:
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

    async def settle(self, user_id: str, recipient: str, retry_stuck: bool = False) -> SettlementResult:
        recipient = (recipient or "").strip()
        if not recipient:
            raise InvalidAddressError("A settlement recipient address is required")

        await asyncio.to_thread(self.recover_orphaned_credits, user_id)

        now = self.clock()
        batch_id = uuid4()
        claimed = await asyncio.to_thread(
            self.storage.run_in_transaction,
            user_id,
            lambda tx: self._claim(tx, user_id, recipient, batch_id, now, retry_stuck),
            max_attempts=self.settings.transaction_retries,
        )
        if not claimed:
            return SettlementResult(
                user_id=user_id,
                recipient=recipient,
                outcome=SettlementOutcome.NOTHING_PENDING,
                stuck_amount=await asyncio.to_thread(self._stuck_amount, user_id),
                message="No pending credits to settle",
            )

        recovered, unresolved, review_ids = await self._recover_acknowledgements(claimed)
        to_submit = [c for c in claimed if c.vote_id not in recovered and c.vote_id not in unresolved]
        batch = SettlementBatch(
            id=batch_id,
            user_id=user_id,
            recipient=recipient,
            credit_ids=[c.vote_id for c in to_submit],
            total_amount=sum(c.amount for c in to_submit),
            idempotency_key=batch_idempotency_key(batch_id),
        )
        outcome = await self._submit(batch)

        return await asyncio.to_thread(
            self.storage.run_in_transaction,
            user_id,
            lambda tx: self._finalize(tx, batch, outcome, recovered, unresolved, review_ids),
            max_attempts=self.settings.transaction_retries,
        )

    def _claim(
        self,
        tx: LedgerTransaction,
        user_id: str,
        recipient: str,
        batch_id: UUID,
        now: datetime,
        retry_stuck: bool,
    ) -> list[PendingCredit]:
        state = tx.get_user_state(user_id)
        if state.settlement_address != recipient:
            state.settlement_address = recipient
            tx.save_user_state(state)

        for credit in tx.list_credits(user_id, {CreditStatus.FAILED}):
            if retry_stuck or not credit.is_stuck(self.settings.max_settlement_attempts):
                credit.transition(CreditStatus.PENDING, now)
                tx.save_credit(credit)

        return tx.claim_pending_credits(user_id, batch_id, now)

    async def _recover_acknowledgements(
        self, claimed: list[PendingCredit]
    ) -> tuple[dict[UUID, str], dict[UUID, str], set[UUID]]:
        """
        Resolve credits whose previous transfer lost its acknowledgement.

        Returns the credits found settled (vote id -> tx ref), the credits
        whose lookup failed (vote id -> error) and the credits that will be
        resubmitted without a lookup and need review.
        """
        recovered: dict[UUID, str] = {}
        unresolved: dict[UUID, str] = {}
        ack_lost = [
            c for c in claimed
            if c.error_kind == SettlementErrorKind.ACK_LOST and c.idempotency_key
        ]
        if not ack_lost:
            return recovered, unresolved, set()

        if not self.client.supports_transfer_lookup:
            logger.warning(
                f"SettlementAckLost: resubmitting {len(ack_lost)} credits without a transfer lookup; "
                f"delivery is at-least-once and the credits are flagged for review"
            )
            return recovered, unresolved, {c.vote_id for c in ack_lost}

        by_key: dict[str, list[PendingCredit]] = {}
        for credit in ack_lost:
            by_key.setdefault(credit.idempotency_key, []).append(credit)

        for key, members in by_key.items():
            try:
                receipt = await asyncio.wait_for(
                    self.client.find_transfer(key), timeout=self.settings.settlement_timeout_seconds
                )
            except (asyncio.TimeoutError, SettlementError) as e:
                logger.warning(f"Lookup of transfer {key} failed: {e}")
                unresolved.update({c.vote_id: f"Lookup of transfer {key} failed: {e}" for c in members})
                continue

            if receipt is not None and receipt.accepted:
                logger.info(f"Transfer {key} landed as {receipt.tx_ref}; settling {len(members)} credits")
                recovered.update({c.vote_id: receipt.tx_ref for c in members})

        return recovered, unresolved, set()

    async def _submit(self, batch: SettlementBatch) -> _TransferOutcome:
        if not batch.credit_ids or batch.total_amount <= 0:
            return _TransferOutcome()

        logger.info(
            f"Submitting settlement batch {batch.id} for user {batch.user_id}: "
            f"{len(batch.credit_ids)} credits, {batch.total_amount} tokens to {batch.recipient}"
        )
        timeout = self.settings.settlement_timeout_seconds
        try:
            receipt = await asyncio.wait_for(
                self.client.transfer(batch.recipient, batch.total_amount, batch.idempotency_key),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return _TransferOutcome(
                error_kind=SettlementErrorKind.ACK_LOST,
                error=f"Transfer timed out after {timeout:.1f}s",
            )
        except SettlementAckLost as e:
            return _TransferOutcome(error_kind=SettlementErrorKind.ACK_LOST, error=str(e))
        except SettlementTransferFailed as e:
            return _TransferOutcome(error_kind=SettlementErrorKind.TRANSFER_FAILED, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error submitting settlement batch {batch.id}")
            return _TransferOutcome(
                error_kind=SettlementErrorKind.ACK_LOST,
                error=f"Unexpected settlement error: {e}",
            )

        if not receipt.accepted:
            return _TransferOutcome(
                error_kind=SettlementErrorKind.TRANSFER_FAILED,
                error="Transfer rejected by settlement layer",
            )
        return _TransferOutcome(receipt=receipt)

    def _finalize(
        self,
        tx: LedgerTransaction,
        batch: SettlementBatch,
        outcome: _TransferOutcome,
        recovered: dict[UUID, str],
        unresolved: dict[UUID, str],
        review_ids: set[UUID],
    ) -> SettlementResult:
        now = self.clock()
        submitted = set(batch.credit_ids)
        settled: list[PendingCredit] = []
        failed: list[PendingCredit] = []

        for credit in tx.list_credits(batch.user_id, {CreditStatus.IN_FLIGHT}):
            if credit.batch_id != batch.id:
                continue

            if credit.vote_id in recovered:
                self._mark_settled(credit, recovered[credit.vote_id], now)
            elif credit.vote_id in unresolved:
                self._mark_failed(credit, SettlementErrorKind.ACK_LOST, unresolved[credit.vote_id], now)
            elif credit.vote_id in submitted and outcome.succeeded:
                credit.idempotency_key = batch.idempotency_key
                self._mark_settled(credit, outcome.receipt.tx_ref if outcome.receipt else None, now)
            elif credit.vote_id in submitted:
                credit.idempotency_key = batch.idempotency_key
                self._mark_failed(credit, outcome.error_kind, outcome.error, now)
                if outcome.error_kind == SettlementErrorKind.ACK_LOST and not self.client.supports_transfer_lookup:
                    credit.needs_review = True
            else:
                continue

            if credit.vote_id in review_ids:
                credit.needs_review = True
            tx.save_credit(credit)
            (settled if credit.status == CreditStatus.SETTLED else failed).append(credit)

        max_attempts = self.settings.max_settlement_attempts
        stuck_amount = sum(
            c.amount for c in tx.list_credits(batch.user_id, {CreditStatus.FAILED}) if c.is_stuck(max_attempts)
        )
        settled_amount = sum(c.amount for c in settled)
        failed_amount = sum(c.amount for c in failed)

        if not failed:
            result_outcome = SettlementOutcome.SETTLED
        elif settled:
            result_outcome = SettlementOutcome.PARTIAL_FAILURE
        else:
            result_outcome = SettlementOutcome.FAILED

        tx_ref = outcome.receipt.tx_ref if outcome.receipt else None
        if tx_ref is None and settled:
            tx_ref = settled[0].tx_ref
        batch.tx_ref = tx_ref
        batch.outcome = result_outcome

        if failed:
            logger.warning(
                f"Settlement batch {batch.id} for user {batch.user_id}: {len(failed)} credits "
                f"({failed_amount} tokens) failed: {outcome.error or 'transfer lookup failed'}"
            )
        if settled:
            logger.info(
                f"Settlement batch {batch.id} for user {batch.user_id}: settled {settled_amount} tokens ({tx_ref})"
            )

        return SettlementResult(
            user_id=batch.user_id,
            recipient=batch.recipient,
            outcome=result_outcome,
            settled_amount=settled_amount,
            failed_amount=failed_amount,
            stuck_amount=stuck_amount,
            tx_ref=tx_ref,
            settled_credit_ids=[c.vote_id for c in settled],
            failed_credit_ids=[c.vote_id for c in failed],
            error=outcome.error if failed else None,
            message=f"Settlement {result_outcome.value}",
        )

    @staticmethod
    def _mark_settled(credit: PendingCredit, tx_ref: Optional[str], at: datetime) -> None:
        credit.transition(CreditStatus.SETTLED, at)
        credit.tx_ref = tx_ref
        credit.last_error = None
        credit.error_kind = None

    @staticmethod
    def _mark_failed(
        credit: PendingCredit, kind: Optional[SettlementErrorKind], error: Optional[str], at: datetime
    ) -> None:
        credit.transition(CreditStatus.FAILED, at)
        credit.error_kind = kind
        credit.last_error = error

    def _stuck_amount(self, user_id: str) -> int:
        with self.storage.snapshot(user_id) as tx:
            failed = tx.list_credits(user_id, {CreditStatus.FAILED})
        return sum(c.amount for c in failed if c.is_stuck(self.settings.max_settlement_attempts))

    def recover_orphaned_credits(self, user_id: str) -> int:
        """Fail in_flight credits whose settlement attempt never finished, keeping their batch key."""
        now = self.clock()
        cutoff = now - self.settings.in_flight_timeout

        def fail_orphans(tx: LedgerTransaction) -> int:
            count = 0
            for credit in tx.list_credits(user_id, {CreditStatus.IN_FLIGHT}):
                if credit.updated_at > cutoff:
                    continue
                if credit.batch_id is not None:
                    credit.idempotency_key = batch_idempotency_key(credit.batch_id)
                self._mark_failed(
                    credit,
                    SettlementErrorKind.ACK_LOST,
                    "Settlement attempt was interrupted before acknowledgement",
                    now,
                )
                tx.save_credit(credit)
                count += 1
            return count

        recovered = self.storage.run_in_transaction(
            user_id, fail_orphans, max_attempts=self.settings.transaction_retries
        )
        if recovered:
            logger.warning(f"SettlementAckLost: {recovered} orphaned in-flight credits for user {user_id} marked failed")
        return recovered

    def _settlement_address(self, user_id: str) -> Optional[str]:
        with self.storage.snapshot(user_id) as tx:
            return tx.get_user_state(user_id).settlement_address

    async def sweep(self) -> list[SettlementResult]:
        """Settle every user with outstanding credits and a stored address. One user's failure never stops the pass."""
        results = []
        for user_id in await asyncio.to_thread(self.storage.users_with_outstanding_credits):
            try:
                address = await asyncio.to_thread(self._settlement_address, user_id)
                if not address:
                    continue
                results.append(await self.settle(user_id, address))
            except Exception:
                logger.exception(f"Settlement sweep failed for user {user_id}")
        return results

    async def run_periodic_sweep(self, interval: float, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Settlement sweep started (every {interval:.0f}s)")
        while not stop_event.is_set():
            try:
                results = await self.sweep()
                if results:
                    logger.info(f"Settlement sweep processed {len(results)} users")
            except Exception:
                logger.exception("Settlement sweep failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Settlement sweep stopped")
