import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import uuid4

from .clock import calendar_day, utc_now
from .config import LedgerSettings
from .errors import InvalidVoteError, VoteRejectedError
from .models import (
    CreditStatus,
    PendingCredit,
    PendingCreditSummary,
    StreakStatus,
    SubmitVoteRequest,
    UserLedgerState,
    VoteCreditStatus,
    VoteHistoryResponse,
    VoteRecord,
    VoteResult,
)
from .rate_guard import RateGuard
from .rewards import apply_weekly_token_cap, calculate_reward
from .storage import InMemoryStorage, LedgerStorage, LedgerTransaction
from .streak import StreakUpdate, advance_if_first_vote_of_day, streak_status

logger = logging.getLogger(__name__)


def no_territory_bonus(vendor_id: str) -> bool:
    return False


class VoteLedgerService:
    def __init__(
        self,
        storage: Optional[LedgerStorage] = None,
        settings: Optional[LedgerSettings] = None,
        territory_check: Optional[Callable[[str], bool]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or LedgerSettings()
        self.rate_guard = RateGuard(self.settings)
        self.territory_check = territory_check or no_territory_bonus
        self.clock = clock or utc_now

    def submit_vote(self, request: SubmitVoteRequest) -> VoteResult:
        """
        Admit, record and reward one vote as a single unit of work.

        Raises VoteRejectedError when the rate guard denies the vote. Nothing
        is written in that case, nor on any other failure before commit.
        """
        if request.verified and not request.attestation_ref:
            raise InvalidVoteError("A verified vote requires a photo attestation reference")

        now = self.clock()
        territory_active = bool(self.territory_check(request.vendor_id))

        def record_vote(tx: LedgerTransaction) -> VoteResult:
            return self._record_vote(tx, request, now, territory_active)

        try:
            result = self.storage.run_in_transaction(
                request.user_id, record_vote, max_attempts=self.settings.transaction_retries
            )
        except VoteRejectedError as e:
            logger.warning(f"Vote by {request.user_id} for {request.vendor_id} rejected: {e.reason.value}")
            raise

        logger.info(
            f"Vote {result.vote_id} by {request.user_id} for {request.vendor_id} recorded: "
            f"reward={result.reward} streak={result.new_streak}"
        )
        return result

    def _record_vote(
        self,
        tx: LedgerTransaction,
        request: SubmitVoteRequest,
        now: datetime,
        territory_active: bool,
    ) -> VoteResult:
        attestation_ref = request.attestation_ref if request.verified else None
        admission = self.rate_guard.admit(tx, request.user_id, request.vendor_id, now, attestation_ref)
        if not admission.allowed:
            raise VoteRejectedError(admission.reason, admission.detail)

        day = calendar_day(now)
        first_vote_of_day = tx.count_votes_on_day(request.user_id, day) == 0
        state = tx.get_user_state(request.user_id)
        if first_vote_of_day:
            update = advance_if_first_vote_of_day(state, day)
        else:
            update = StreakUpdate(new_streak=state.streak, advanced=False)

        breakdown = calculate_reward(
            request.kind, state.streak, update.advanced, territory_active, self.settings
        )
        if self.settings.weekly_token_cap is not None:
            earned = tx.rewards_earned_since(request.user_id, now - self.settings.weekly_window)
            breakdown = apply_weekly_token_cap(breakdown, earned, self.settings)

        vote = VoteRecord(
            id=uuid4(),
            voter_id=request.user_id,
            vendor_id=request.vendor_id,
            vote_day=day,
            day_sequence=tx.count_votes(request.user_id, request.vendor_id, day) + 1,
            verified=request.verified,
            attestation_ref=attestation_ref,
            reward=breakdown.total,
            credit_status=VoteCreditStatus.PENDING,
            created_at=now,
        )
        credit = PendingCredit(
            vote_id=vote.id,
            user_id=request.user_id,
            amount=breakdown.total,
            status=CreditStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        state.offchain_reward_balance += breakdown.total

        tx.add_vote(vote)
        tx.add_credit(credit)
        tx.save_user_state(state)

        return VoteResult(
            vote_id=vote.id,
            reward=breakdown.total,
            new_streak=update.new_streak,
            streak_advanced=update.advanced,
            breakdown=breakdown,
            vote=vote,
            message="Vote recorded successfully",
        )

    def get_pending_credit_summary(self, user_id: str) -> PendingCreditSummary:
        with self.storage.snapshot(user_id) as tx:
            credits = tx.list_credits(user_id)

        max_attempts = self.settings.max_settlement_attempts
        owed = [c for c in credits if c.status in (CreditStatus.PENDING, CreditStatus.IN_FLIGHT)]
        failed = [c for c in credits if c.status == CreditStatus.FAILED]
        stuck = [c for c in failed if c.is_stuck(max_attempts)]
        settled = [c for c in credits if c.status == CreditStatus.SETTLED]

        return PendingCreditSummary(
            user_id=user_id,
            pending_amount=sum(c.amount for c in owed),
            failed_amount=sum(c.amount for c in failed),
            stuck_amount=sum(c.amount for c in stuck),
            settled_amount=sum(c.amount for c in settled),
            pending_count=sum(1 for c in owed if c.status == CreditStatus.PENDING),
            in_flight_count=sum(1 for c in owed if c.status == CreditStatus.IN_FLIGHT),
            failed_count=len(failed),
            stuck_count=len(stuck),
            review_credit_ids=[c.vote_id for c in credits if c.needs_review],
        )

    def get_user_state(self, user_id: str) -> UserLedgerState:
        with self.storage.snapshot(user_id) as tx:
            return tx.get_user_state(user_id)

    def get_streak(self, user_id: str) -> StreakStatus:
        state = self.get_user_state(user_id)
        return streak_status(state, calendar_day(self.clock()))

    def get_vote_history(self, user_id: str, limit: int = 50, offset: int = 0) -> VoteHistoryResponse:
        with self.storage.snapshot(user_id) as tx:
            votes, total = tx.list_votes(user_id, limit, offset)
        return VoteHistoryResponse(user_id=user_id, votes=votes, total_count=total)
