"""
Storage contract for the vote ledger and the in-memory backend.

Every read-modify-write runs inside a unit of work scoped to one user id.
Backends guarantee that two units of work for the same user never
interleave, and that a vote can only be written once per
(voter, vendor, day, day_sequence) key.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime
from typing import Callable, ContextManager, Iterator, Optional, TypeVar
from uuid import UUID

from .errors import ConcurrentWriteError
from .models import (
    CreditStatus,
    PendingCredit,
    UserLedgerState,
    VoteCreditStatus,
    VoteRecord,
    VOTE_STATUS_FOR_CREDIT,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LedgerTransaction(ABC):
    """One atomic unit of work. Writes become visible only on commit."""

    @abstractmethod
    def count_votes(self, voter_id: str, vendor_id: str, day: date) -> int: ...

    @abstractmethod
    def count_votes_on_day(self, voter_id: str, day: date) -> int: ...

    @abstractmethod
    def vendors_voted_since(self, voter_id: str, since: datetime) -> set[str]: ...

    @abstractmethod
    def rewards_earned_since(self, voter_id: str, since: datetime) -> int: ...

    @abstractmethod
    def attestation_used_since(self, voter_id: str, attestation_ref: str, since: datetime) -> bool: ...

    @abstractmethod
    def get_user_state(self, user_id: str) -> UserLedgerState:
        """Load the user's state, or a fresh default that is persisted on save."""

    @abstractmethod
    def save_user_state(self, state: UserLedgerState) -> None: ...

    @abstractmethod
    def add_vote(self, vote: VoteRecord) -> None: ...

    @abstractmethod
    def get_vote(self, vote_id: UUID) -> Optional[VoteRecord]: ...

    @abstractmethod
    def set_vote_credit_status(self, vote_id: UUID, status: VoteCreditStatus) -> None: ...

    @abstractmethod
    def list_votes(self, voter_id: str, limit: int, offset: int) -> tuple[list[VoteRecord], int]: ...

    @abstractmethod
    def add_credit(self, credit: PendingCredit) -> None: ...

    @abstractmethod
    def list_credits(
        self, user_id: str, statuses: Optional[set[CreditStatus]] = None
    ) -> list[PendingCredit]: ...

    @abstractmethod
    def save_credit(self, credit: PendingCredit) -> None: ...

    @abstractmethod
    def claim_pending_credits(self, user_id: str, batch_id: UUID, at: datetime) -> list[PendingCredit]:
        """Flip every pending credit of the user to in_flight under batch_id and return them."""


class LedgerStorage(ABC):
    @abstractmethod
    def transaction(self, user_id: str) -> ContextManager[LedgerTransaction]: ...

    @abstractmethod
    def snapshot(self, user_id: str) -> ContextManager[LedgerTransaction]:
        """Read-only view of one user's records. Writes made through it are discarded."""

    @abstractmethod
    def users_with_outstanding_credits(self) -> list[str]: ...

    def run_in_transaction(
        self,
        user_id: str,
        operation: Callable[[LedgerTransaction], T],
        max_attempts: int = 5,
        initial_delay: float = 0.01,
        max_delay: float = 0.5,
    ) -> T:
        delay = initial_delay
        for attempt in range(1, max_attempts + 1):
            try:
                with self.transaction(user_id) as tx:
                    return operation(tx)
            except ConcurrentWriteError as e:
                if attempt == max_attempts:
                    logger.error(
                        f"Transaction for user {user_id} failed after {max_attempts} attempts. "
                        f"Last error: {e}"
                    )
                    raise
                logger.warning(
                    f"Attempt {attempt}/{max_attempts} for user {user_id} lost a write race: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                time.sleep(delay)
                delay = min(delay * 2, max_delay)
        raise ConcurrentWriteError(f"No attempts made for user {user_id}")


class InMemoryStorage(LedgerStorage):
    def __init__(self):
        self.votes: dict[UUID, VoteRecord] = {}
        self.credits: dict[UUID, PendingCredit] = {}
        self.user_states: dict[str, UserLedgerState] = {}
        self.vote_keys: set[tuple[str, str, date, int]] = set()
        self.vote_ids_by_voter: dict[str, list[UUID]] = {}
        self.credit_ids_by_user: dict[str, list[UUID]] = {}
        self._user_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._commit_lock = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._user_locks.setdefault(user_id, threading.Lock())

    @contextmanager
    def transaction(self, user_id: str) -> Iterator["InMemoryTransaction"]:
        with self._lock_for(user_id):
            tx = InMemoryTransaction(self)
            yield tx
            tx.commit()

    @contextmanager
    def snapshot(self, user_id: str) -> Iterator["InMemoryTransaction"]:
        with self._lock_for(user_id):
            yield InMemoryTransaction(self)

    def users_with_outstanding_credits(self) -> list[str]:
        outstanding = {CreditStatus.PENDING, CreditStatus.IN_FLIGHT, CreditStatus.FAILED}
        with self._commit_lock:
            users = {c.user_id for c in self.credits.values() if c.status in outstanding}
        return sorted(users)


class InMemoryTransaction(LedgerTransaction):
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage
        self._votes: dict[UUID, VoteRecord] = {}
        self._credits: dict[UUID, PendingCredit] = {}
        self._states: dict[str, UserLedgerState] = {}

    def _user_votes(self, voter_id: str) -> list[VoteRecord]:
        merged = {
            vote_id: self.storage.votes[vote_id]
            for vote_id in list(self.storage.vote_ids_by_voter.get(voter_id, []))
        }
        merged.update({k: v for k, v in self._votes.items() if v.voter_id == voter_id})
        return sorted(merged.values(), key=lambda v: v.created_at)

    def _user_credits(self, user_id: str) -> list[PendingCredit]:
        merged = {
            vote_id: self.storage.credits[vote_id]
            for vote_id in list(self.storage.credit_ids_by_user.get(user_id, []))
        }
        merged.update({k: v for k, v in self._credits.items() if v.user_id == user_id})
        return sorted(merged.values(), key=lambda c: c.created_at)

    def count_votes(self, voter_id: str, vendor_id: str, day: date) -> int:
        return sum(1 for v in self._user_votes(voter_id) if v.vendor_id == vendor_id and v.vote_day == day)

    def count_votes_on_day(self, voter_id: str, day: date) -> int:
        return sum(1 for v in self._user_votes(voter_id) if v.vote_day == day)

    def vendors_voted_since(self, voter_id: str, since: datetime) -> set[str]:
        return {v.vendor_id for v in self._user_votes(voter_id) if v.created_at >= since}

    def rewards_earned_since(self, voter_id: str, since: datetime) -> int:
        return sum(v.reward for v in self._user_votes(voter_id) if v.created_at >= since)

    def attestation_used_since(self, voter_id: str, attestation_ref: str, since: datetime) -> bool:
        return any(
            v.attestation_ref == attestation_ref and v.created_at >= since
            for v in self._user_votes(voter_id)
        )

    def get_user_state(self, user_id: str) -> UserLedgerState:
        state = self._states.get(user_id) or self.storage.user_states.get(user_id)
        if state is None:
            return UserLedgerState(user_id=user_id)
        return state.model_copy()

    def save_user_state(self, state: UserLedgerState) -> None:
        self._states[state.user_id] = state.model_copy()

    def add_vote(self, vote: VoteRecord) -> None:
        key = (vote.voter_id, vote.vendor_id, vote.vote_day, vote.day_sequence)
        staged_keys = {
            (v.voter_id, v.vendor_id, v.vote_day, v.day_sequence) for v in self._votes.values()
        }
        if key in staged_keys:
            raise ConcurrentWriteError(f"Duplicate vote key {key}")
        self._votes[vote.id] = vote.model_copy()

    def get_vote(self, vote_id: UUID) -> Optional[VoteRecord]:
        vote = self._votes.get(vote_id) or self.storage.votes.get(vote_id)
        return vote.model_copy() if vote else None

    def set_vote_credit_status(self, vote_id: UUID, status: VoteCreditStatus) -> None:
        vote = self.get_vote(vote_id)
        if vote is None:
            return
        vote.credit_status = status
        self._votes[vote_id] = vote

    def list_votes(self, voter_id: str, limit: int, offset: int) -> tuple[list[VoteRecord], int]:
        votes = list(reversed(self._user_votes(voter_id)))
        return [v.model_copy() for v in votes[offset:offset + limit]], len(votes)

    def add_credit(self, credit: PendingCredit) -> None:
        if credit.vote_id in self.storage.credits or credit.vote_id in self._credits:
            raise ConcurrentWriteError(f"Credit for vote {credit.vote_id} already exists")
        self._credits[credit.vote_id] = credit.model_copy()

    def list_credits(
        self, user_id: str, statuses: Optional[set[CreditStatus]] = None
    ) -> list[PendingCredit]:
        return [
            c.model_copy() for c in self._user_credits(user_id)
            if statuses is None or c.status in statuses
        ]

    def save_credit(self, credit: PendingCredit) -> None:
        self._credits[credit.vote_id] = credit.model_copy()
        self.set_vote_credit_status(credit.vote_id, VOTE_STATUS_FOR_CREDIT[credit.status])

    def claim_pending_credits(self, user_id: str, batch_id: UUID, at: datetime) -> list[PendingCredit]:
        claimed = []
        for credit in self.list_credits(user_id, {CreditStatus.PENDING}):
            credit.transition(CreditStatus.IN_FLIGHT, at)
            credit.batch_id = batch_id
            credit.attempt_count += 1
            self.save_credit(credit)
            claimed.append(credit)
        return claimed

    def commit(self) -> None:
        storage = self.storage
        with storage._commit_lock:
            new_votes = [v for v in self._votes.values() if v.id not in storage.votes]
            for vote in new_votes:
                key = (vote.voter_id, vote.vendor_id, vote.vote_day, vote.day_sequence)
                if key in storage.vote_keys:
                    raise ConcurrentWriteError(f"Duplicate vote key {key}")
            for vote in new_votes:
                storage.vote_keys.add((vote.voter_id, vote.vendor_id, vote.vote_day, vote.day_sequence))
                storage.vote_ids_by_voter.setdefault(vote.voter_id, []).append(vote.id)
            storage.votes.update(self._votes)
            for credit in self._credits.values():
                if credit.vote_id not in storage.credits:
                    storage.credit_ids_by_user.setdefault(credit.user_id, []).append(credit.vote_id)
            storage.credits.update(self._credits)
            storage.user_states.update(self._states)
