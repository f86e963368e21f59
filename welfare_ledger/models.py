from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class EntryKind(str, Enum):
    COMPLETION = "completion"
    REDEMPTION = "redemption"
    ABSCONDENCE = "abscondence"


class TransactionState(str, Enum):
    VALIDATING = "VALIDATING"
    COMPUTING = "COMPUTING"
    WRITING = "WRITING"
    COMMITTED = "COMMITTED"
    ABORTED = "ABORTED"


class OrderBy(str, Enum):
    CURRENT = "current"
    LIFETIME = "lifetime"
    PERIOD = "period"


class Period(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


# Reference data owned by the identity and catalog collaborators.

class Resident(BaseModel):
    user_id: int
    current_points: int = 0
    lifetime_points: int = 0
    batch_number: Optional[int] = None
    date_of_admission: datetime
    last_activity_at: Optional[datetime] = None
    last_abscondence_at: Optional[datetime] = None
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)

    @property
    def activity_reference(self) -> datetime:
        return self.last_activity_at or self.date_of_admission


class Task(BaseModel):
    id: int
    name: str
    points: int = Field(..., ge=0)
    active: bool = True


class Product(BaseModel):
    id: int
    name: str
    points: int = Field(..., ge=0)
    available: bool = True


# Entry details, tagged by kind.

class CompletionDetail(BaseModel):
    kind: Literal[EntryKind.COMPLETION] = EntryKind.COMPLETION
    task_id: int
    points: int

    model_config = ConfigDict(frozen=True)


class RedemptionDetail(BaseModel):
    kind: Literal[EntryKind.REDEMPTION] = EntryKind.REDEMPTION
    product_id: int
    quantity: int
    unit_points: int

    model_config = ConfigDict(frozen=True)

    @property
    def total_points(self) -> int:
        return self.quantity * self.unit_points


class AbscondenceDetail(BaseModel):
    kind: Literal[EntryKind.ABSCONDENCE] = EntryKind.ABSCONDENCE
    reason: str

    model_config = ConfigDict(frozen=True)


EntryDetail = Annotated[
    Union[CompletionDetail, RedemptionDetail, AbscondenceDetail],
    Field(discriminator="kind"),
]


class LedgerEntry(BaseModel):
    id: int
    resident_id: int
    officer_id: int
    kind: EntryKind
    points_delta: int
    lifetime_delta: int = 0
    reverses_entry_id: Optional[int] = None
    created_at: datetime
    details: tuple[EntryDetail, ...] = ()

    model_config = ConfigDict(frozen=True)

    @property
    def is_reversal(self) -> bool:
        return self.reverses_entry_id is not None


# Request payloads.

class CompletionRequest(BaseModel):
    officer_id: int
    task_ids: list[int]


class RedemptionItem(BaseModel):
    product_id: int
    quantity: int


class RedemptionRequest(BaseModel):
    officer_id: int
    items: list[RedemptionItem]


class AbscondenceRequest(BaseModel):
    officer_id: int
    reason: str
    penalty: int = 0


class ReverseEntryRequest(BaseModel):
    officer_id: int
    reason: str


class ProvisionResidentRequest(BaseModel):
    batch_number: Optional[int] = None
    date_of_admission: Optional[datetime] = None


class TaskRecord(BaseModel):
    name: str
    points: int = Field(..., ge=0)
    active: bool = True


class ProductRecord(BaseModel):
    name: str
    points: int = Field(..., ge=0)
    available: bool = True


class SweepRequest(BaseModel):
    inactivity_threshold_months: Optional[int] = None


# Responses and projections.

class Balances(BaseModel):
    resident_id: int
    current_points: int
    lifetime_points: int


class TransactionResult(BaseModel):
    entry: LedgerEntry
    balances: Balances
    state: TransactionState
    message: str


class ReversalResult(BaseModel):
    original_entry: LedgerEntry
    reversal_entry: LedgerEntry
    balances: Balances
    reason: str
    state: TransactionState
    message: str


class EntryView(BaseModel):
    entry: LedgerEntry
    reversed_by_entry_id: Optional[int] = None


class ResidentBalance(BaseModel):
    resident_id: int
    current_points: int
    lifetime_points: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None
    is_active: bool


class LedgerHistoryResponse(BaseModel):
    resident_id: int
    entries: list[LedgerEntry]
    total_count: int
    limit: int
    offset: int


class KindSummary(BaseModel):
    kind: EntryKind
    total_points: int
    entry_count: int


class PointsSummary(BaseModel):
    resident_id: int
    summary: list[KindSummary]
    current_points: int
    lifetime_points: int


class EntryPage(BaseModel):
    entries: list[LedgerEntry]
    total_count: int
    limit: int
    offset: int


class TransactionAnalytics(BaseModel):
    period: Period
    since: datetime
    total_entries: int
    total_points_flow: int
    by_kind: list[KindSummary]


class LeaderboardScope(BaseModel):
    batch_number: Optional[int] = None
    period: Period = Period.MONTH


class RankedRow(BaseModel):
    rank: int
    resident_id: int
    batch_number: Optional[int] = None
    current_points: int
    lifetime_points: int
    period_points: Optional[int] = None
    value: int
    is_current_resident: bool = False


class RankedPage(BaseModel):
    order_by: OrderBy
    scope: LeaderboardScope
    rows: list[RankedRow]
    total_count: int
    limit: int
    offset: int


class PositionResponse(BaseModel):
    resident_id: int
    order_by: OrderBy
    rank: int
    value: int
    neighbors: list[RankedRow]


class RecentChange(BaseModel):
    entry_id: int
    resident_id: int
    batch_number: Optional[int] = None
    points_earned: int
    current_points: int
    task_ids: list[int]
    created_at: datetime


class ComparisonRow(BaseModel):
    resident_id: int
    batch_number: Optional[int] = None
    current_points: int
    lifetime_points: int
    leaderboard_rank: Optional[int] = None
    comparison_rank: int


class ResidentComparison(BaseModel):
    rows: list[ComparisonRow]
    missing_resident_ids: list[int]


class OverallStatistics(BaseModel):
    total_residents: int
    avg_current_points: int
    max_current_points: int
    total_current_points: int
    avg_lifetime_points: int
    max_lifetime_points: int
    total_lifetime_points: int


class BatchStatistics(BaseModel):
    batch_number: int
    resident_count: int
    avg_points: int
    max_points: int


class LeaderboardStatistics(BaseModel):
    overall: OverallStatistics
    by_batch: list[BatchStatistics]


class SweepResult(BaseModel):
    archived_count: int
    errors: list[str] = Field(default_factory=list)
    cutoff: datetime
    cancelled: bool = False


class ArchiveStats(BaseModel):
    active: int
    archived: int
    total: int
    recently_archived: int


class ArchivedResidentPage(BaseModel):
    residents: list[Resident]
    total_count: int
    limit: int
    offset: int
