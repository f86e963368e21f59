from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .exceptions import (
    InsufficientBalanceError,
    InvalidStateError,
    LedgerServiceError,
    ReferenceNotFoundError,
    StorageContentionError,
    ValidationFailedError,
)
from .leaderboard import LeaderboardRanker
from .logging_config import setup_logger
from .models import (
    AbscondenceRequest,
    ArchivedResidentPage,
    ArchiveStats,
    CompletionRequest,
    EntryKind,
    EntryPage,
    EntryView,
    LeaderboardScope,
    LeaderboardStatistics,
    LedgerHistoryResponse,
    OrderBy,
    Period,
    PointsSummary,
    PositionResponse,
    Product,
    ProductRecord,
    ProvisionResidentRequest,
    RankedPage,
    RankedRow,
    RecentChange,
    RedemptionRequest,
    Resident,
    ResidentBalance,
    ResidentComparison,
    ReversalResult,
    ReverseEntryRequest,
    SweepRequest,
    SweepResult,
    Task,
    TaskRecord,
    TransactionAnalytics,
    TransactionResult,
)
from .scheduler import start_archive_scheduler, stop_archive_scheduler
from .service import LedgerService


ledger_service = LedgerService()
ranker = LeaderboardRanker(
    ledger_service.storage, ledger_service.entries, ledger_service.settings, ledger_service.clock
)

logger = setup_logger(level=ledger_service.settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if ledger_service.settings.sweep_scheduler_enabled:
        start_archive_scheduler(ledger_service.archiver, ledger_service.settings)
    yield
    stop_archive_scheduler()


app = FastAPI(
    title="Welfare Home Points Ledger API",
    description="Points ledger for residents: task completions, redemptions, abscondence penalties and reversals",
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


_STATUS_CODES = (
    (ReferenceNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (InsufficientBalanceError, status.HTTP_409_CONFLICT),
    (ValidationFailedError, 422),
    (StorageContentionError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def _http_error(exc: LedgerServiceError) -> HTTPException:
    for exc_type, status_code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "welfare-ledger"}


# Reference data pushed by the identity and catalog services

@app.put("/residents/{resident_id}", response_model=Resident, tags=["Reference Data"])
def provision_resident(resident_id: int, request: ProvisionResidentRequest) -> Resident:
    return ledger_service.storage.provision_resident(
        resident_id, batch_number=request.batch_number, date_of_admission=request.date_of_admission
    )


@app.put("/catalog/tasks/{task_id}", response_model=Task, tags=["Reference Data"])
def upsert_task(task_id: int, record: TaskRecord) -> Task:
    return ledger_service.storage.upsert_task(Task(id=task_id, **record.model_dump()))


@app.put("/catalog/products/{product_id}", response_model=Product, tags=["Reference Data"])
def upsert_product(product_id: int, record: ProductRecord) -> Product:
    return ledger_service.storage.upsert_product(Product(id=product_id, **record.model_dump()))


# Ledger writes

@app.post("/residents/{resident_id}/completions", response_model=TransactionResult,
          status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def create_completion(resident_id: int, request: CompletionRequest) -> TransactionResult:
    try:
        return ledger_service.record_completion(resident_id, request.officer_id, request.task_ids)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/residents/{resident_id}/redemptions", response_model=TransactionResult,
          status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def create_redemption(resident_id: int, request: RedemptionRequest) -> TransactionResult:
    try:
        return ledger_service.record_redemption(resident_id, request.officer_id, request.items)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/residents/{resident_id}/abscondences", response_model=TransactionResult,
          status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def create_abscondence(resident_id: int, request: AbscondenceRequest) -> TransactionResult:
    try:
        return ledger_service.record_abscondence(
            resident_id, request.officer_id, request.reason, request.penalty
        )
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/entries/{entry_id}/reverse", response_model=ReversalResult,
          status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def reverse_entry(entry_id: int, request: ReverseEntryRequest) -> ReversalResult:
    try:
        return ledger_service.reverse_entry(entry_id, request.officer_id, request.reason)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/entries", response_model=EntryPage, tags=["Transactions"])
def list_entries(
    kind: Optional[EntryKind] = None,
    resident_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> EntryPage:
    try:
        return ledger_service.list_entries(kind, resident_id, start, end, limit, offset)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/entries/analytics", response_model=TransactionAnalytics, tags=["Transactions"])
def get_transaction_analytics(period: Period = Period.MONTH) -> TransactionAnalytics:
    return ledger_service.get_analytics(period)


@app.get("/entries/{entry_id}", response_model=EntryView, tags=["Transactions"])
def get_entry(entry_id: int) -> EntryView:
    try:
        return ledger_service.get_entry(entry_id)
    except LedgerServiceError as e:
        raise _http_error(e)


# Resident projections

@app.get("/residents/{resident_id}/balance", response_model=ResidentBalance, tags=["Residents"])
def get_resident_balance(resident_id: int) -> ResidentBalance:
    try:
        return ledger_service.get_balance(resident_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/residents/{resident_id}/ledger", response_model=LedgerHistoryResponse, tags=["Residents"])
def get_resident_ledger(
    resident_id: int,
    kind: Optional[EntryKind] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 20,
    offset: int = 0,
) -> LedgerHistoryResponse:
    try:
        return ledger_service.get_history(resident_id, kind, start, end, limit, offset)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/residents/{resident_id}/summary", response_model=PointsSummary, tags=["Residents"])
def get_points_summary(
    resident_id: int, start: Optional[datetime] = None, end: Optional[datetime] = None
) -> PointsSummary:
    try:
        return ledger_service.get_points_summary(resident_id, start, end)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/residents/{resident_id}/reactivate", response_model=Resident, tags=["Residents"])
def reactivate_resident(resident_id: int) -> Resident:
    try:
        return ledger_service.archiver.reactivate(resident_id)
    except LedgerServiceError as e:
        raise _http_error(e)


# Leaderboard

@app.get("/leaderboard", response_model=RankedPage, tags=["Leaderboard"])
def get_leaderboard(
    order_by: OrderBy = OrderBy.CURRENT,
    period: Period = Period.MONTH,
    batch_number: Optional[int] = None,
    limit: int = 10,
    offset: int = 0,
) -> RankedPage:
    try:
        scope = LeaderboardScope(batch_number=batch_number, period=period)
        return ranker.rank(scope, order_by, limit, offset)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/leaderboard/statistics", response_model=LeaderboardStatistics, tags=["Leaderboard"])
def get_leaderboard_statistics() -> LeaderboardStatistics:
    return ranker.statistics()


@app.get("/leaderboard/top-performers", response_model=list[RankedRow], tags=["Leaderboard"])
def get_top_performers(
    period: Period = Period.MONTH, limit: int = 10, batch_number: Optional[int] = None
) -> list[RankedRow]:
    try:
        return ranker.top_performers(period, limit, batch_number)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/leaderboard/recent-changes", response_model=list[RecentChange], tags=["Leaderboard"])
def get_recent_changes(
    hours: int = 24, batch_number: Optional[int] = None, limit: int = 20
) -> list[RecentChange]:
    try:
        return ranker.recent_changes(hours, batch_number, limit)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/leaderboard/compare", response_model=ResidentComparison, tags=["Leaderboard"])
def compare_residents(resident_ids: list[int] = Query(...)) -> ResidentComparison:
    try:
        return ranker.compare(resident_ids)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/leaderboard/position/{resident_id}", response_model=PositionResponse, tags=["Leaderboard"])
def get_leaderboard_position(
    resident_id: int,
    order_by: OrderBy = OrderBy.CURRENT,
    period: Period = Period.MONTH,
    batch_number: Optional[int] = None,
) -> PositionResponse:
    try:
        scope = LeaderboardScope(batch_number=batch_number, period=period)
        return ranker.position(resident_id, order_by, scope)
    except LedgerServiceError as e:
        raise _http_error(e)


# Archive maintenance

@app.post("/archive/sweep", response_model=SweepResult, tags=["Archive"])
def sweep_inactive_residents(request: SweepRequest) -> SweepResult:
    try:
        return ledger_service.archiver.sweep(request.inactivity_threshold_months)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/archive", response_model=ArchivedResidentPage, tags=["Archive"])
def get_archived_residents(
    batch_number: Optional[int] = None, limit: int = 50, offset: int = 0
) -> ArchivedResidentPage:
    try:
        return ledger_service.archiver.list_archived(batch_number, limit, offset)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/archive/stats", response_model=ArchiveStats, tags=["Archive"])
def get_archive_stats() -> ArchiveStats:
    return ledger_service.archiver.stats()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
