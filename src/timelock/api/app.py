from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from timelock.api.schemas import (
    AccountView,
    CreateAccountRequest,
    HealthView,
    ScheduleView,
    StatsView,
    WithdrawalView,
)
from timelock.config import Settings
from timelock.domain.errors import (
    IntentNotFound,
    NotFound,
    SettledButNotRecorded,
    SettlementFailed,
    SettlementUnconfirmed,
    TimelockError,
)
from timelock.domain.interest_schedule import DEFAULT_SCHEDULE, InterestSchedule
from timelock.domain.models import utcnow
from timelock.logging_context import with_logging_context
from timelock.persistence.uow import UnitOfWorkFactory
from timelock.security.redaction import sanitize_text
from timelock.services.ledger_store import Clock, LedgerStore
from timelock.services.orchestrator import TransactionOrchestrator
from timelock.services.settlement import SettlementClient
from timelock.services.settlement_factory import build_settlement_client
from timelock.services.stats_service import StatsService

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[TimelockError], int], ...] = (
    (NotFound, status.HTTP_404_NOT_FOUND),
    (IntentNotFound, status.HTTP_404_NOT_FOUND),
    (SettledButNotRecorded, status.HTTP_409_CONFLICT),
    (SettlementFailed, status.HTTP_502_BAD_GATEWAY),
    (SettlementUnconfirmed, status.HTTP_504_GATEWAY_TIMEOUT),
)


def status_for(exc: TimelockError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


def error_body(kind: str, message: str, details: dict[str, object] | None = None) -> dict[str, object]:
    return {"error": {"kind": kind, "message": message, **(details or {})}}


def create_app(
    settings: Settings | None = None,
    *,
    settlement_client: SettlementClient | None = None,
    schedule: InterestSchedule = DEFAULT_SCHEDULE,
    clock: Clock = utcnow,
) -> FastAPI:
    settings = settings or Settings()
    ledger = LedgerStore(UnitOfWorkFactory(settings.state_db_path), schedule=schedule, clock=clock)
    client = settlement_client or build_settlement_client(settings)
    orchestrator = TransactionOrchestrator(
        ledger,
        client,
        lock_holder_address=settings.effective_lock_holder(),
    )
    stats_service = StatsService(ledger)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "api_started",
            extra={
                "extra": {
                    "signing_mode": str(settings.signing_mode),
                    "state_db_path": settings.state_db_path,
                    "api_prefix": settings.api_prefix,
                }
            },
        )
        try:
            yield
        finally:
            client.close()
            logger.info("api_stopped")

    app = FastAPI(title="Time-Lock Savings Ledger", lifespan=lifespan)
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid4().hex
        with with_logging_context(request_id=request_id):
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(TimelockError)
    async def handle_timelock_error(request: Request, exc: TimelockError) -> JSONResponse:
        status_code = status_for(exc)
        log = logger.error if status_code >= 500 or isinstance(exc, SettledButNotRecorded) else logger.info
        log(
            "request_failed",
            extra={
                "extra": {
                    "path": request.url.path,
                    "kind": exc.kind,
                    "status_code": status_code,
                    **exc.details(),
                }
            },
        )
        return JSONResponse(
            status_code=status_code,
            content=error_body(exc.kind, sanitize_text(exc.message), exc.details()),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = [
            f"{'.'.join(str(part) for part in error.get('loc', ()) if part != 'body')}: {error.get('msg')}"
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body("ValidationError", "; ".join(problems) or "invalid request"),
        )

    router = APIRouter()

    @router.get("/health", response_model=HealthView)
    def health() -> HealthView:
        return HealthView(status="ok", timestamp=utcnow())

    @router.get("/schedule", response_model=ScheduleView)
    def get_schedule() -> ScheduleView:
        return ScheduleView.from_schedule(ledger.schedule)

    @router.get("/accounts", response_model=list[AccountView])
    def list_accounts() -> list[AccountView]:
        return [AccountView.from_record(record) for record in ledger.list_all()]

    @router.get("/accounts/wallet/{address}", response_model=list[AccountView])
    def list_wallet_accounts(address: str) -> list[AccountView]:
        return [AccountView.from_record(record) for record in ledger.list_by_owner(address)]

    @router.get("/accounts/{account_id}", response_model=AccountView)
    def get_account(account_id: str) -> AccountView:
        return AccountView.from_record(ledger.get_by_id(account_id))

    @router.post("/accounts", response_model=AccountView, status_code=status.HTTP_201_CREATED)
    def create_account(body: CreateAccountRequest) -> AccountView:
        if body.settlement_ref is not None:
            record = orchestrator.record_lock(
                body.owner_address, body.amount, body.lock_period, body.settlement_ref
            )
        else:
            record = orchestrator.open_lock(body.owner_address, body.amount, body.lock_period)
        return AccountView.from_record(record)

    @router.patch("/accounts/{account_id}/withdraw", response_model=WithdrawalView)
    def withdraw(account_id: str) -> WithdrawalView:
        outcome = orchestrator.withdraw(account_id)
        return WithdrawalView.from_outcome(outcome.record, outcome.payout_amount)

    @router.get("/stats", response_model=StatsView)
    def get_stats() -> StatsView:
        return StatsView.from_stats(stats_service.snapshot())

    app.include_router(router, prefix=settings.api_prefix)
    return app
