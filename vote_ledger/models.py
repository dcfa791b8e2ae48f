from datetime import date, datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

from .errors import InvalidStateTransitionError


class VoteKind(str, Enum):
    REGULAR = "regular"
    VERIFIED = "verified"


class VoteCreditStatus(str, Enum):
    PENDING = "pending"
    SETTLING = "settling"
    SETTLED = "settled"
    FAILED = "failed"


class CreditStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SETTLED = "settled"
    FAILED = "failed"


class RejectionReason(str, Enum):
    DAILY_CAP_REACHED = "DailyCapReached"
    WEEKLY_CAP_REACHED = "WeeklyCapReached"
    DUPLICATE_ATTESTATION = "DuplicateAttestation"


class SettlementErrorKind(str, Enum):
    TRANSFER_FAILED = "transfer_failed"
    ACK_LOST = "ack_lost"


class SettlementOutcome(str, Enum):
    NOTHING_PENDING = "nothing_pending"
    SETTLED = "settled"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"


# settled is terminal; failed -> pending is the only re-entry
CREDIT_TRANSITIONS: dict[CreditStatus, frozenset[CreditStatus]] = {
    CreditStatus.PENDING: frozenset({CreditStatus.IN_FLIGHT}),
    CreditStatus.IN_FLIGHT: frozenset({CreditStatus.SETTLED, CreditStatus.FAILED}),
    CreditStatus.FAILED: frozenset({CreditStatus.PENDING}),
    CreditStatus.SETTLED: frozenset(),
}

VOTE_STATUS_FOR_CREDIT: dict[CreditStatus, VoteCreditStatus] = {
    CreditStatus.PENDING: VoteCreditStatus.PENDING,
    CreditStatus.IN_FLIGHT: VoteCreditStatus.SETTLING,
    CreditStatus.SETTLED: VoteCreditStatus.SETTLED,
    CreditStatus.FAILED: VoteCreditStatus.FAILED,
}


class SubmitVoteRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    verified: bool = False
    attestation_ref: Optional[str] = Field(
        default=None, description="Stable fingerprint of the vote's photo attestation"
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "465823",
            "vendor_id": "tacos-el-guero",
            "verified": True,
            "attestation_ref": "c2hhMjU2OmE0ZjJiOTAx",
        }
    })

    @property
    def kind(self) -> VoteKind:
        return VoteKind.VERIFIED if self.verified else VoteKind.REGULAR


class TriggerSettlementRequest(BaseModel):
    recipient_address: str = Field(..., min_length=1)
    retry_stuck: bool = Field(default=False, description="Requeue credits that exhausted automatic retries")


class ReconcileRequest(BaseModel):
    recipient_address: str = Field(..., min_length=1)


class VoteRecord(BaseModel):
    id: UUID
    voter_id: str
    vendor_id: str
    vote_day: date
    day_sequence: int
    verified: bool = False
    attestation_ref: Optional[str] = None
    reward: int
    credit_status: VoteCreditStatus = VoteCreditStatus.PENDING
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PendingCredit(BaseModel):
    vote_id: UUID
    user_id: str
    amount: int
    status: CreditStatus = CreditStatus.PENDING
    tx_ref: Optional[str] = None
    last_error: Optional[str] = None
    error_kind: Optional[SettlementErrorKind] = None
    attempt_count: int = 0
    batch_id: Optional[UUID] = None
    idempotency_key: Optional[str] = None
    needs_review: bool = False
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_transition_to(self, status: CreditStatus) -> bool:
        return status in CREDIT_TRANSITIONS[self.status]

    def transition(self, status: CreditStatus, at: datetime) -> None:
        if not self.can_transition_to(status):
            raise InvalidStateTransitionError(
                f"Credit {self.vote_id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        self.updated_at = at

    def is_stuck(self, max_attempts: int) -> bool:
        return self.status == CreditStatus.FAILED and self.attempt_count >= max_attempts


class UserLedgerState(BaseModel):
    user_id: str
    streak: int = 0
    last_streak_day: Optional[date] = None
    offchain_reward_balance: int = 0
    external_balance: Optional[int] = None
    external_balance_at: Optional[datetime] = None
    settlement_address: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class SettlementBatch(BaseModel):
    id: UUID
    user_id: str
    recipient: str
    credit_ids: list[UUID]
    total_amount: int
    idempotency_key: str
    tx_ref: Optional[str] = None
    outcome: Optional[SettlementOutcome] = None


class TransferReceipt(BaseModel):
    tx_ref: Optional[str] = None
    accepted: bool


class RewardBreakdown(BaseModel):
    base: int
    streak_bonus: int = 0
    territory_bonus: int = 0
    weekly_cap_reduction: int = 0
    total: int


class VoteResult(BaseModel):
    vote_id: UUID
    reward: int
    new_streak: int
    streak_advanced: bool
    breakdown: RewardBreakdown
    vote: VoteRecord
    message: str


class StreakStatus(BaseModel):
    user_id: str
    streak: int
    last_streak_day: Optional[date] = None
    voted_today: bool
    active: bool


class VoteHistoryResponse(BaseModel):
    user_id: str
    votes: list[VoteRecord]
    total_count: int


class PendingCreditSummary(BaseModel):
    user_id: str
    pending_amount: int
    failed_amount: int
    stuck_amount: int
    settled_amount: int
    pending_count: int
    in_flight_count: int
    failed_count: int
    stuck_count: int
    review_credit_ids: list[UUID] = Field(default_factory=list)


class SettlementResult(BaseModel):
    user_id: str
    recipient: str
    outcome: SettlementOutcome
    settled_amount: int = 0
    failed_amount: int = 0
    stuck_amount: int = 0
    tx_ref: Optional[str] = None
    settled_credit_ids: list[UUID] = Field(default_factory=list)
    failed_credit_ids: list[UUID] = Field(default_factory=list)
    error: Optional[str] = None
    message: str


class ReconciliationDrift(BaseModel):
    user_id: str
    cached_balance: int
    observed_balance: int
    delta: int
    detected_at: datetime


class ReconcileResult(BaseModel):
    user_id: str
    recipient: str
    observed_balance: Optional[int] = None
    previous_balance: Optional[int] = None
    stale: bool = False
    drift: Optional[ReconciliationDrift] = None
    review_credit_ids: list[UUID] = Field(default_factory=list)
    refreshed_at: Optional[datetime] = None
