"""
SQLAlchemy storage backend.

Daily caps are enforced by a unique constraint on
(voter_id, vendor_id, vote_day, day_sequence): a concurrent writer that
read the same count fails on insert and the unit of work is retried.
Units of work lock the user's state row (``SELECT ... FOR UPDATE``);
SQLite ignores row locks, so SQLite engines open every write transaction
with ``BEGIN IMMEDIATE`` instead. Snapshots lock nothing and insert nothing.
"""

from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Iterator, Optional
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.types import TypeDecorator

from .errors import ConcurrentWriteError
from .models import (
    CreditStatus,
    PendingCredit,
    UserLedgerState,
    VoteCreditStatus,
    VoteRecord,
    VOTE_STATUS_FOR_CREDIT,
)
from .storage import LedgerStorage, LedgerTransaction

Base = declarative_base()

# Connection execution option marking snapshot sessions; they never take the write lock.
READ_ONLY_OPTION = "vote_ledger_read_only"


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes stored as naive UTC."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class VoteRow(Base):
    __tablename__ = "votes"
    __table_args__ = (
        UniqueConstraint("voter_id", "vendor_id", "vote_day", "day_sequence", name="uq_votes_daily_slot"),
        Index("ix_votes_voter_created", "voter_id", "created_at"),
    )

    id = Column(String(36), primary_key=True)
    voter_id = Column(String(64), nullable=False)
    vendor_id = Column(String(64), nullable=False)
    vote_day = Column(Date, nullable=False)
    day_sequence = Column(Integer, nullable=False)
    verified = Column(Boolean, nullable=False, default=False)
    attestation_ref = Column(String(255), nullable=True)
    reward = Column(Integer, nullable=False)
    credit_status = Column(String(16), nullable=False, default=VoteCreditStatus.PENDING.value)
    created_at = Column(UTCDateTime, nullable=False)


class CreditRow(Base):
    __tablename__ = "pending_credits"

    vote_id = Column(String(36), ForeignKey("votes.id"), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, index=True)
    tx_ref = Column(String(255), nullable=True)
    last_error = Column(Text, nullable=True)
    error_kind = Column(String(32), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    batch_id = Column(String(36), nullable=True, index=True)
    idempotency_key = Column(String(128), nullable=True)
    needs_review = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)


class UserStateRow(Base):
    __tablename__ = "user_ledger_states"

    user_id = Column(String(64), primary_key=True)
    streak = Column(Integer, nullable=False, default=0)
    last_streak_day = Column(Date, nullable=True)
    offchain_reward_balance = Column(Integer, nullable=False, default=0)
    external_balance = Column(Integer, nullable=True)
    external_balance_at = Column(UTCDateTime, nullable=True)
    settlement_address = Column(String(255), nullable=True)


def _use_immediate_transactions(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        if conn.get_execution_options().get(READ_ONLY_OPTION):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlStorage(LedgerStorage):
    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None, echo: bool = False):
        if engine is None:
            if url is None:
                raise ValueError("SqlStorage needs a database URL or an engine")
            connect_args = {"timeout": 30} if make_url(url).get_backend_name() == "sqlite" else {}
            engine = create_engine(url, echo=echo, connect_args=connect_args)
        self.engine = engine
        if engine.dialect.name == "sqlite":
            _use_immediate_transactions(engine)
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self, user_id: str) -> Iterator["SqlTransaction"]:
        session = self.session_factory()
        try:
            tx = SqlTransaction(session)
            tx.lock_user(user_id)
            yield tx
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise ConcurrentWriteError(f"Uniqueness conflict for user {user_id}: {e.orig}") from e
        except OperationalError as e:
            session.rollback()
            raise ConcurrentWriteError(f"Transaction for user {user_id} could not complete: {e.orig}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def _read_session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            session.connection(execution_options={READ_ONLY_OPTION: True})
            yield session
        finally:
            session.rollback()
            session.close()

    @contextmanager
    def snapshot(self, user_id: str) -> Iterator["SqlTransaction"]:
        with self._read_session() as session:
            yield SqlTransaction(session)

    def users_with_outstanding_credits(self) -> list[str]:
        outstanding = [CreditStatus.PENDING.value, CreditStatus.IN_FLIGHT.value, CreditStatus.FAILED.value]
        with self._read_session() as session:
            rows = session.execute(
                select(CreditRow.user_id).where(CreditRow.status.in_(outstanding)).distinct()
            ).scalars()
            return sorted(rows)


class SqlTransaction(LedgerTransaction):
    def __init__(self, session: Session):
        self.session = session

    def lock_user(self, user_id: str) -> None:
        row = self.session.execute(
            select(UserStateRow).where(UserStateRow.user_id == user_id).with_for_update()
        ).scalar_one_or_none()
        if row is None:
            self.session.add(UserStateRow(user_id=user_id, streak=0, offchain_reward_balance=0))
            self.session.flush()

    def count_votes(self, voter_id: str, vendor_id: str, day: date) -> int:
        return self.session.execute(
            select(func.count()).select_from(VoteRow).where(
                VoteRow.voter_id == voter_id,
                VoteRow.vendor_id == vendor_id,
                VoteRow.vote_day == day,
            )
        ).scalar_one()

    def count_votes_on_day(self, voter_id: str, day: date) -> int:
        return self.session.execute(
            select(func.count()).select_from(VoteRow).where(
                VoteRow.voter_id == voter_id, VoteRow.vote_day == day
            )
        ).scalar_one()

    def vendors_voted_since(self, voter_id: str, since: datetime) -> set[str]:
        rows = self.session.execute(
            select(VoteRow.vendor_id).where(
                VoteRow.voter_id == voter_id, VoteRow.created_at >= since
            ).distinct()
        ).scalars()
        return set(rows)

    def rewards_earned_since(self, voter_id: str, since: datetime) -> int:
        return self.session.execute(
            select(func.coalesce(func.sum(VoteRow.reward), 0)).where(
                VoteRow.voter_id == voter_id, VoteRow.created_at >= since
            )
        ).scalar_one()

    def attestation_used_since(self, voter_id: str, attestation_ref: str, since: datetime) -> bool:
        row = self.session.execute(
            select(VoteRow.id).where(
                VoteRow.voter_id == voter_id,
                VoteRow.attestation_ref == attestation_ref,
                VoteRow.created_at >= since,
            ).limit(1)
        ).first()
        return row is not None

    def get_user_state(self, user_id: str) -> UserLedgerState:
        row = self.session.get(UserStateRow, user_id)
        if row is None:
            return UserLedgerState(user_id=user_id)
        return UserLedgerState.model_validate(row)

    def save_user_state(self, state: UserLedgerState) -> None:
        row = self.session.get(UserStateRow, state.user_id)
        if row is None:
            row = UserStateRow(user_id=state.user_id)
            self.session.add(row)
        for field, value in state.model_dump(exclude={"user_id"}).items():
            setattr(row, field, value)

    def add_vote(self, vote: VoteRecord) -> None:
        self.session.add(VoteRow(
            id=str(vote.id),
            voter_id=vote.voter_id,
            vendor_id=vote.vendor_id,
            vote_day=vote.vote_day,
            day_sequence=vote.day_sequence,
            verified=vote.verified,
            attestation_ref=vote.attestation_ref,
            reward=vote.reward,
            credit_status=vote.credit_status.value,
            created_at=vote.created_at,
        ))
        self.session.flush()

    def get_vote(self, vote_id: UUID) -> Optional[VoteRecord]:
        row = self.session.get(VoteRow, str(vote_id))
        return VoteRecord.model_validate(row) if row else None

    def set_vote_credit_status(self, vote_id: UUID, status: VoteCreditStatus) -> None:
        row = self.session.get(VoteRow, str(vote_id))
        if row is not None:
            row.credit_status = status.value

    def list_votes(self, voter_id: str, limit: int, offset: int) -> tuple[list[VoteRecord], int]:
        total = self.session.execute(
            select(func.count()).select_from(VoteRow).where(VoteRow.voter_id == voter_id)
        ).scalar_one()
        rows = self.session.execute(
            select(VoteRow)
            .where(VoteRow.voter_id == voter_id)
            .order_by(VoteRow.created_at.desc())
            .limit(limit)
            .offset(offset)
        ).scalars()
        return [VoteRecord.model_validate(row) for row in rows], total

    def add_credit(self, credit: PendingCredit) -> None:
        self.session.add(CreditRow(
            vote_id=str(credit.vote_id),
            user_id=credit.user_id,
            amount=credit.amount,
            status=credit.status.value,
            attempt_count=credit.attempt_count,
            needs_review=credit.needs_review,
            created_at=credit.created_at,
            updated_at=credit.updated_at,
        ))
        self.session.flush()

    def list_credits(
        self, user_id: str, statuses: Optional[set[CreditStatus]] = None
    ) -> list[PendingCredit]:
        query = select(CreditRow).where(CreditRow.user_id == user_id)
        if statuses is not None:
            query = query.where(CreditRow.status.in_([s.value for s in statuses]))
        rows = self.session.execute(
            query.order_by(CreditRow.created_at).execution_options(populate_existing=True)
        ).scalars()
        return [PendingCredit.model_validate(row) for row in rows]

    def save_credit(self, credit: PendingCredit) -> None:
        row = self.session.get(CreditRow, str(credit.vote_id))
        if row is None:
            raise ConcurrentWriteError(f"Credit for vote {credit.vote_id} disappeared")
        row.status = credit.status.value
        row.tx_ref = credit.tx_ref
        row.last_error = credit.last_error
        row.error_kind = credit.error_kind.value if credit.error_kind else None
        row.attempt_count = credit.attempt_count
        row.batch_id = str(credit.batch_id) if credit.batch_id else None
        row.idempotency_key = credit.idempotency_key
        row.needs_review = credit.needs_review
        row.updated_at = credit.updated_at
        self.set_vote_credit_status(credit.vote_id, VOTE_STATUS_FOR_CREDIT[credit.status])

    def claim_pending_credits(self, user_id: str, batch_id: UUID, at: datetime) -> list[PendingCredit]:
        self.session.flush()
        self.session.execute(
            update(CreditRow)
            .where(CreditRow.user_id == user_id, CreditRow.status == CreditStatus.PENDING.value)
            .values(
                status=CreditStatus.IN_FLIGHT.value,
                batch_id=str(batch_id),
                attempt_count=CreditRow.attempt_count + 1,
                updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        claimed_ids = select(CreditRow.vote_id).where(CreditRow.batch_id == str(batch_id))
        self.session.execute(
            update(VoteRow)
            .where(VoteRow.id.in_(claimed_ids))
            .values(credit_status=VoteCreditStatus.SETTLING.value)
            .execution_options(synchronize_session=False)
        )
        rows = self.session.execute(
            select(CreditRow)
            .where(CreditRow.batch_id == str(batch_id), CreditRow.status == CreditStatus.IN_FLIGHT.value)
            .order_by(CreditRow.created_at)
            .execution_options(populate_existing=True)
        ).scalars()
        return [PendingCredit.model_validate(row) for row in rows]
