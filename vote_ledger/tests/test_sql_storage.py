"""
Tests for the SQLAlchemy storage backend, run against a temporary SQLite file.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from vote_ledger.config import LedgerSettings
from vote_ledger.errors import ConcurrentWriteError, VoteRejectedError
from vote_ledger.models import (
    CreditStatus,
    PendingCredit,
    RejectionReason,
    SettlementOutcome,
    SubmitVoteRequest,
    VoteCreditStatus,
    VoteRecord,
)
from vote_ledger.service import VoteLedgerService
from vote_ledger.settlement import SettlementCoordinator
from vote_ledger.sql_storage import SqlStorage, UserStateRow

from .fakes import WALLET, HangingOnceLedger


@pytest.fixture
def storage(tmp_path):
    sql_storage = SqlStorage(f"sqlite:///{tmp_path / 'ledger.db'}")
    sql_storage.create_schema()
    yield sql_storage
    sql_storage.engine.dispose()


def vote(vendor="vendor-1", verified=False, attestation=None, user="alice"):
    return SubmitVoteRequest(user_id=user, vendor_id=vendor, verified=verified, attestation_ref=attestation)


def make_vote(clock, sequence, voter="alice", vendor="vendor-1"):
    now = clock()
    return VoteRecord(
        id=uuid4(),
        voter_id=voter,
        vendor_id=vendor,
        vote_day=now.date(),
        day_sequence=sequence,
        reward=10,
        created_at=now,
    )


class TestSqlTransactions:
    """Tests for the unit-of-work contract."""

    def test_round_trip(self, storage, clock):
        record = make_vote(clock, 1)
        with storage.transaction("alice") as tx:
            tx.add_vote(record)
            tx.add_credit(PendingCredit(
                vote_id=record.id, user_id="alice", amount=10, created_at=clock(), updated_at=clock()
            ))

        with storage.transaction("alice") as tx:
            loaded = tx.get_vote(record.id)
            credits = tx.list_credits("alice")

        assert loaded == record
        assert loaded.created_at.tzinfo is not None
        assert credits[0].status == CreditStatus.PENDING
        assert credits[0].vote_id == record.id

    def test_duplicate_slot_raises_concurrent_write(self, storage, clock):
        with storage.transaction("alice") as tx:
            tx.add_vote(make_vote(clock, 1))

        with pytest.raises(ConcurrentWriteError):
            with storage.transaction("alice") as tx:
                tx.add_vote(make_vote(clock, 1))

    def test_rollback_on_error(self, storage, clock):
        with pytest.raises(RuntimeError):
            with storage.transaction("alice") as tx:
                tx.add_vote(make_vote(clock, 1))
                raise RuntimeError("boom")

        with storage.transaction("alice") as tx:
            assert tx.count_votes("alice", "vendor-1", clock().date()) == 0

    def test_window_queries(self, storage, clock):
        with storage.transaction("alice") as tx:
            tx.add_vote(make_vote(clock, 1, vendor="vendor-1"))
        clock.advance(days=2)
        with storage.transaction("alice") as tx:
            tx.add_vote(make_vote(clock, 1, vendor="vendor-2"))

        with storage.transaction("alice") as tx:
            assert tx.vendors_voted_since("alice", clock() - timedelta(days=7)) == {"vendor-1", "vendor-2"}
            assert tx.vendors_voted_since("alice", clock() - timedelta(days=1)) == {"vendor-2"}
            assert tx.rewards_earned_since("alice", clock() - timedelta(days=7)) == 20
            assert tx.count_votes_on_day("alice", clock().date()) == 1
            assert tx.count_votes_on_day("alice", date(2000, 1, 1)) == 0

    def test_claim_is_exclusive(self, storage, clock):
        record = make_vote(clock, 1)
        with storage.transaction("alice") as tx:
            tx.add_vote(record)
            tx.add_credit(PendingCredit(
                vote_id=record.id, user_id="alice", amount=10, created_at=clock(), updated_at=clock()
            ))

        with storage.transaction("alice") as tx:
            first = tx.claim_pending_credits("alice", uuid4(), clock())
        with storage.transaction("alice") as tx:
            second = tx.claim_pending_credits("alice", uuid4(), clock())
            vote_status = tx.get_vote(record.id).credit_status

        assert [c.status for c in first] == [CreditStatus.IN_FLIGHT]
        assert first[0].attempt_count == 1
        assert second == []
        assert vote_status == VoteCreditStatus.SETTLING


class TestSqlVoteLedger:
    """Tests for the vote flow on the SQL backend."""

    def test_daily_scenario(self, storage, settings, clock):
        service = VoteLedgerService(storage, settings, clock=clock)

        rewards = [
            service.submit_vote(vote()).reward,
            service.submit_vote(vote()).reward,
            service.submit_vote(vote(verified=True, attestation="photo")).reward,
        ]

        assert rewards == [11, 10, 30]
        with pytest.raises(VoteRejectedError) as exc_info:
            service.submit_vote(vote())
        assert exc_info.value.reason == RejectionReason.DAILY_CAP_REACHED
        assert service.get_user_state("alice").offchain_reward_balance == 51
        assert service.get_vote_history("alice").total_count == 3

    def test_fifty_simultaneous_votes_respect_cap(self, storage, settings, clock):
        service = VoteLedgerService(storage, settings.model_copy(update={"transaction_retries": 10}), clock=clock)

        def attempt(_):
            try:
                return service.submit_vote(vote())
            except VoteRejectedError as e:
                return e

        with ThreadPoolExecutor(max_workers=10) as pool:
            outcomes = list(pool.map(attempt, range(50)))

        accepted = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(accepted) == 3
        assert sum(1 for o in outcomes if isinstance(o, VoteRejectedError)) == 47
        assert sum(1 for o in accepted if o.streak_advanced) == 1
        history = service.get_vote_history("alice")
        assert sorted(v.day_sequence for v in history.votes) == [1, 2, 3]


class TestSqlReads:
    """Tests for read-only access."""

    @staticmethod
    def count_user_states(storage):
        with storage.session_factory() as session:
            return session.execute(select(func.count()).select_from(UserStateRow)).scalar_one()

    def test_reads_for_unknown_user_store_nothing(self, storage, settings, clock):
        service = VoteLedgerService(storage, settings, clock=clock)

        assert service.get_pending_credit_summary("ghost").pending_amount == 0
        assert service.get_vote_history("ghost").total_count == 0
        assert service.get_streak("ghost").streak == 0

        assert self.count_user_states(storage) == 0

    def test_snapshot_discards_writes(self, storage):
        with storage.snapshot("alice") as tx:
            state = tx.get_user_state("alice")
            state.streak = 4
            tx.save_user_state(state)

        assert self.count_user_states(storage) == 0

    def test_snapshot_reads_committed_state(self, storage, settings, clock):
        service = VoteLedgerService(storage, settings, clock=clock)
        service.submit_vote(vote())

        with storage.snapshot("alice") as tx:
            state = tx.get_user_state("alice")

        assert state.streak == 1
        assert state.offchain_reward_balance == 11


class TestSqlSettlement:
    """Tests for settlement on the SQL backend."""

    @pytest.mark.asyncio
    async def test_timeout_then_retry(self, storage, clock):
        settings = LedgerSettings(streak_bonus_per_day=0, settlement_timeout_seconds=0.05)
        service = VoteLedgerService(storage, settings, clock=clock)
        client = HangingOnceLedger()
        coordinator = SettlementCoordinator(storage, client, settings, clock=clock)
        service.submit_vote(vote("vendor-1"))
        service.submit_vote(vote("vendor-2", verified=True, attestation="photo"))

        failed = await coordinator.settle("alice", WALLET)
        summary = service.get_pending_credit_summary("alice")

        assert failed.outcome == SettlementOutcome.FAILED
        assert summary.failed_amount == 40
        assert summary.failed_count == 2

        retried = await coordinator.settle("alice", WALLET)

        assert retried.outcome == SettlementOutcome.SETTLED
        assert retried.settled_amount == 40
        assert service.get_pending_credit_summary("alice").settled_amount == 40
        assert storage.users_with_outstanding_credits() == []
        assert client.balances[WALLET] == 40
