import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .clients import HttpSettlementClient, SettlementClient, SimulatedSettlementLedger
from .config import LedgerSettings
from .errors import (
    InvalidAddressError,
    InvalidStateTransitionError,
    InvalidVoteError,
    LedgerServiceError,
    VoteRejectedError,
)
from .models import (
    PendingCreditSummary,
    ReconcileRequest,
    ReconcileResult,
    RejectionReason,
    SettlementResult,
    StreakStatus,
    SubmitVoteRequest,
    TriggerSettlementRequest,
    VoteHistoryResponse,
    VoteResult,
)
from .reconciler import BalanceReconciler
from .service import VoteLedgerService
from .settlement import SettlementCoordinator
from .sql_storage import SqlStorage
from .storage import InMemoryStorage, LedgerStorage

logger = logging.getLogger(__name__)

REJECTION_STATUS = {
    RejectionReason.DAILY_CAP_REACHED: status.HTTP_429_TOO_MANY_REQUESTS,
    RejectionReason.WEEKLY_CAP_REACHED: status.HTTP_429_TOO_MANY_REQUESTS,
    RejectionReason.DUPLICATE_ATTESTATION: status.HTTP_409_CONFLICT,
}


def build_storage(settings: LedgerSettings) -> LedgerStorage:
    if not settings.database_url:
        return InMemoryStorage()
    storage = SqlStorage(settings.database_url)
    storage.create_schema()
    return storage


def build_settlement_client(settings: LedgerSettings) -> SettlementClient:
    if not settings.settlement_gateway_url:
        logger.warning("No settlement gateway configured, using the simulated settlement ledger")
        return SimulatedSettlementLedger()
    return HttpSettlementClient(settings.settlement_gateway_url, timeout=settings.settlement_timeout_seconds)


settings = LedgerSettings.from_env()
storage = build_storage(settings)
settlement_client = build_settlement_client(settings)
ledger_service = VoteLedgerService(storage, settings)
settlement_coordinator = SettlementCoordinator(storage, settlement_client, settings)
balance_reconciler = BalanceReconciler(storage, settlement_client, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweep_task: Optional[asyncio.Task] = None
    stop_event = asyncio.Event()
    if settings.sweep_interval_seconds:
        sweep_task = asyncio.create_task(
            settlement_coordinator.run_periodic_sweep(settings.sweep_interval_seconds, stop_event)
        )
    yield
    if sweep_task is not None:
        stop_event.set()
        await sweep_task


app = FastAPI(
    title="Vote Ledger API",
    description="Vote rewards, streaks and token settlement for vendor votes",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "vote-ledger"}


@app.post("/votes", response_model=VoteResult, status_code=status.HTTP_201_CREATED, tags=["Votes"])
def submit_vote(request: SubmitVoteRequest) -> VoteResult:
    try:
        return ledger_service.submit_vote(request)
    except VoteRejectedError as e:
        raise HTTPException(
            status_code=REJECTION_STATUS[e.reason],
            detail={"reason": e.reason.value, "message": str(e)},
        )
    except InvalidVoteError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@app.get("/users/{user_id}/votes", response_model=VoteHistoryResponse, tags=["Users"])
def get_vote_history(user_id: str, limit: int = 50, offset: int = 0) -> VoteHistoryResponse:
    return ledger_service.get_vote_history(user_id, limit, offset)


@app.get("/users/{user_id}/streak", response_model=StreakStatus, tags=["Users"])
def get_streak(user_id: str) -> StreakStatus:
    return ledger_service.get_streak(user_id)


@app.get("/users/{user_id}/credits/summary", response_model=PendingCreditSummary, tags=["Users"])
def get_pending_credit_summary(user_id: str) -> PendingCreditSummary:
    return ledger_service.get_pending_credit_summary(user_id)


@app.post("/users/{user_id}/settlement", response_model=SettlementResult, tags=["Settlement"])
async def trigger_settlement(user_id: str, request: TriggerSettlementRequest) -> SettlementResult:
    try:
        return await settlement_coordinator.settle(user_id, request.recipient_address, request.retry_stuck)
    except InvalidAddressError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except InvalidStateTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.post("/users/{user_id}/reconcile", response_model=ReconcileResult, tags=["Settlement"])
async def reconcile_balance(user_id: str, request: ReconcileRequest) -> ReconcileResult:
    try:
        return await balance_reconciler.reconcile(user_id, request.recipient_address)
    except InvalidAddressError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8000)
