import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence

from .archiver import ActivityArchiver, utcnow
from .config import LedgerSettings, load_settings
from .entry_store import EntryStore
from .exceptions import (
    AlreadyReversedError,
    DuplicateDetailError,
    InsufficientBalanceError,
    InvalidStateError,
    LedgerServiceError,
    ProductUnavailableError,
    ReferenceNotFoundError,
    ResidentArchivedError,
    ReversalWindowExpiredError,
    StorageContentionError,
    ValidationFailedError,
)
from .leaderboard import period_start
from .models import (
    AbscondenceDetail,
    Balances,
    CompletionDetail,
    EntryKind,
    EntryPage,
    EntryView,
    KindSummary,
    LedgerEntry,
    LedgerHistoryResponse,
    Period,
    PointsSummary,
    RedemptionDetail,
    RedemptionItem,
    ReversalResult,
    ResidentBalance,
    TransactionAnalytics,
    TransactionResult,
    TransactionState,
)
from .projector import BalanceProjector
from .storage import InMemoryStorage, UnitOfWork


logger = logging.getLogger(__name__)


@dataclass
class _EntryPlan:
    kind: EntryKind
    details: list
    penalty: int = 0
    reverses: Optional[LedgerEntry] = None
    resident_updates: dict = field(default_factory=dict)


def _compute_deltas(plan: _EntryPlan) -> tuple[int, int]:
    """Return (current_delta, lifetime_delta) for a plan."""
    if plan.reverses is not None:
        return -plan.reverses.points_delta, -plan.reverses.lifetime_delta
    if plan.kind == EntryKind.COMPLETION:
        earned = sum(d.points for d in plan.details)
        return earned, earned
    if plan.kind == EntryKind.REDEMPTION:
        return -sum(d.total_points for d in plan.details), 0
    if plan.kind == EntryKind.ABSCONDENCE:
        return -plan.penalty, 0
    raise ValueError(f"Unknown entry kind {plan.kind}")


def _mirror_details(entry: LedgerEntry, reason: str) -> list:
    mirrored = []
    for detail in entry.details:
        if isinstance(detail, CompletionDetail):
            mirrored.append(CompletionDetail(task_id=detail.task_id, points=-detail.points))
        elif isinstance(detail, RedemptionDetail):
            mirrored.append(RedemptionDetail(
                product_id=detail.product_id,
                quantity=-detail.quantity,
                unit_points=detail.unit_points,
            ))
        elif isinstance(detail, AbscondenceDetail):
            mirrored.append(AbscondenceDetail(reason=f"REVERSAL: {reason}"))
    return mirrored


class LedgerService:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[LedgerSettings] = None,
        archiver: Optional[ActivityArchiver] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or load_settings()
        self.storage = storage or InMemoryStorage(lock_timeout=self.settings.lock_timeout_seconds)
        self.clock = clock or utcnow
        self.entries = EntryStore(self.storage)
        self.projector = BalanceProjector(self.storage, self.entries)
        self.archiver = archiver or ActivityArchiver(self.storage, self.settings, self.clock)

    # Write operations

    def record_completion(
        self, resident_id: int, officer_id: int, task_ids: Sequence[int]
    ) -> TransactionResult:
        self._validate_officer(officer_id)
        if not task_ids:
            raise ValidationFailedError("At least one task is required", field="task_ids")
        self._reject_duplicates(task_ids, "task")

        def build(unit: UnitOfWork) -> _EntryPlan:
            details = []
            for task_id in task_ids:
                task = self.storage.get_task(task_id)
                if task is None:
                    raise ReferenceNotFoundError(f"Task {task_id} not found")
                details.append(CompletionDetail(task_id=task.id, points=task.points))
            return _EntryPlan(kind=EntryKind.COMPLETION, details=details)

        entry, balances = self._commit(resident_id, officer_id, build)
        return TransactionResult(
            entry=entry,
            balances=balances,
            state=TransactionState.COMMITTED,
            message=f"Recorded {len(task_ids)} completed task(s) for {entry.points_delta} points",
        )

    def record_redemption(
        self, resident_id: int, officer_id: int, items: Sequence[RedemptionItem]
    ) -> TransactionResult:
        self._validate_officer(officer_id)
        if not items:
            raise ValidationFailedError("At least one product is required", field="items")
        for item in items:
            if item.quantity <= 0:
                raise ValidationFailedError(
                    f"Quantity for product {item.product_id} must be positive, got {item.quantity}",
                    field="quantity",
                )
        self._reject_duplicates([item.product_id for item in items], "product")

        # Advisory check against a snapshot; the projector re-checks under the lock.
        resident = self._get_resident(resident_id)
        required = sum(item.quantity * self._priced_product(item.product_id).points for item in items)
        if resident.current_points < required:
            raise InsufficientBalanceError(resident_id, required=required, available=resident.current_points)

        def build(unit: UnitOfWork) -> _EntryPlan:
            details = []
            for item in items:
                product = self._priced_product(item.product_id)
                details.append(RedemptionDetail(
                    product_id=product.id,
                    quantity=item.quantity,
                    unit_points=product.points,
                ))
            return _EntryPlan(kind=EntryKind.REDEMPTION, details=details)

        entry, balances = self._commit(resident_id, officer_id, build)
        return TransactionResult(
            entry=entry,
            balances=balances,
            state=TransactionState.COMMITTED,
            message=f"Redeemed {len(items)} product(s) for {-entry.points_delta} points",
        )

    def record_abscondence(
        self, resident_id: int, officer_id: int, reason: str, penalty: int = 0
    ) -> TransactionResult:
        self._validate_officer(officer_id)
        if not reason or not reason.strip():
            raise ValidationFailedError("A reason is required for an abscondence", field="reason")
        if penalty < 0:
            raise ValidationFailedError(f"Penalty must be zero or positive, got {penalty}", field="penalty")

        def build(unit: UnitOfWork) -> _EntryPlan:
            return _EntryPlan(
                kind=EntryKind.ABSCONDENCE,
                details=[AbscondenceDetail(reason=reason.strip())],
                penalty=penalty,
                resident_updates={"last_abscondence_at": self.clock()},
            )

        entry, balances = self._commit(resident_id, officer_id, build)
        return TransactionResult(
            entry=entry,
            balances=balances,
            state=TransactionState.COMMITTED,
            message=f"Recorded abscondence with a penalty of {penalty} points",
        )

    def reverse_entry(self, entry_id: int, officer_id: int, reason: str) -> ReversalResult:
        self._validate_officer(officer_id)
        if not reason or not reason.strip():
            raise ValidationFailedError("A reason is required for a reversal", field="reason")
        original = self.entries.get(entry_id)

        def build(unit: UnitOfWork) -> _EntryPlan:
            if original.is_reversal:
                raise InvalidStateError(f"Entry {entry_id} is itself a reversal and cannot be reversed")
            reversed_by = self.entries.reversed_by(entry_id)
            if reversed_by is not None:
                raise AlreadyReversedError(
                    f"Entry {entry_id} has already been reversed by entry {reversed_by}"
                )
            age = self.clock() - original.created_at
            if age > self.settings.reversal_window:
                raise ReversalWindowExpiredError(
                    f"Entry {entry_id} is too old to reverse "
                    f"(window is {self.settings.reversal_window_hours:g} hours)"
                )
            return _EntryPlan(
                kind=original.kind,
                details=_mirror_details(original, reason.strip()),
                reverses=original,
            )

        entry, balances = self._commit(original.resident_id, officer_id, build)
        return ReversalResult(
            original_entry=original,
            reversal_entry=entry,
            balances=balances,
            reason=reason.strip(),
            state=TransactionState.COMMITTED,
            message=f"Entry {entry_id} reversed by entry {entry.id}",
        )

    # Read operations

    def get_entry(self, entry_id: int) -> EntryView:
        entry = self.entries.get(entry_id)
        return EntryView(entry=entry, reversed_by_entry_id=self.entries.reversed_by(entry_id))

    def get_balance(self, resident_id: int) -> ResidentBalance:
        with self.storage.read_guard:
            resident = self._get_resident(resident_id)
            entries = self.entries.list_by_resident(resident_id)
        return ResidentBalance(
            resident_id=resident_id,
            current_points=resident.current_points,
            lifetime_points=resident.lifetime_points,
            total_entries=len(entries),
            last_transaction_at=entries[0].created_at if entries else None,
            is_active=resident.is_active,
        )

    def get_history(
        self,
        resident_id: int,
        kind: Optional[EntryKind] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> LedgerHistoryResponse:
        if limit <= 0 or offset < 0:
            raise ValidationFailedError("limit must be positive and offset non-negative")
        self._get_resident(resident_id)
        entries = self.entries.list_by_resident(resident_id, kind=kind, start=start, end=end)
        return LedgerHistoryResponse(
            resident_id=resident_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            limit=limit,
            offset=offset,
        )

    def get_points_summary(
        self,
        resident_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> PointsSummary:
        resident = self._get_resident(resident_id)
        totals: dict[EntryKind, int] = {}
        counts: Counter = Counter()
        for entry in self.entries.list_by_resident(resident_id, start=start, end=end):
            totals[entry.kind] = totals.get(entry.kind, 0) + entry.points_delta
            counts[entry.kind] += 1
        return PointsSummary(
            resident_id=resident_id,
            summary=[
                KindSummary(kind=kind, total_points=totals[kind], entry_count=counts[kind])
                for kind in EntryKind if kind in totals
            ],
            current_points=resident.current_points,
            lifetime_points=resident.lifetime_points,
        )

    def list_entries(
        self,
        kind: Optional[EntryKind] = None,
        resident_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> EntryPage:
        if limit <= 0 or offset < 0:
            raise ValidationFailedError("limit must be positive and offset non-negative")
        if resident_id is None:
            entries = self.entries.list_all(kind=kind, start=start, end=end)
        else:
            entries = self.entries.list_by_resident(resident_id, kind=kind, start=start, end=end)
        return EntryPage(
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            limit=limit,
            offset=offset,
        )

    def get_analytics(self, period: Period = Period.MONTH) -> TransactionAnalytics:
        since = period_start(period, self.clock())
        entries = self.entries.list_all(start=since)
        totals: Counter = Counter()
        counts: Counter = Counter()
        for entry in entries:
            totals[entry.kind] += entry.points_delta
            counts[entry.kind] += 1
        return TransactionAnalytics(
            period=period,
            since=since,
            total_entries=len(entries),
            total_points_flow=sum(totals.values()),
            by_kind=[
                KindSummary(kind=kind, total_points=totals[kind], entry_count=counts[kind])
                for kind in EntryKind if counts[kind]
            ],
        )

    # Internals

    def _commit(
        self,
        resident_id: int,
        officer_id: int,
        build: Callable[[UnitOfWork], _EntryPlan],
    ) -> tuple[LedgerEntry, Balances]:
        attempt = 0
        while True:
            try:
                result = self._commit_once(resident_id, officer_id, build)
                break
            except StorageContentionError:
                attempt += 1
                if attempt > self.settings.max_retries:
                    logger.error("Giving up on resident %s after %d attempts", resident_id, attempt)
                    raise
                delay = self.settings.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Resident %s is locked, retrying in %.3fs (attempt %d/%d)",
                    resident_id, delay, attempt, self.settings.max_retries,
                )
                time.sleep(delay)

        self._touch_after_commit(resident_id)
        return result

    def _commit_once(
        self,
        resident_id: int,
        officer_id: int,
        build: Callable[[UnitOfWork], _EntryPlan],
    ) -> tuple[LedgerEntry, Balances]:
        state = TransactionState.VALIDATING
        try:
            with self.storage.transaction(resident_id) as unit:
                resident = unit.resident()
                if not resident.is_active:
                    raise ResidentArchivedError(
                        f"Resident {resident_id} is archived; reactivate before recording entries"
                    )
                plan = build(unit)

                state = TransactionState.COMPUTING
                current_delta, lifetime_delta = _compute_deltas(plan)

                state = TransactionState.WRITING
                now = self.clock()
                entry = self.entries.append(
                    unit,
                    officer_id=officer_id,
                    kind=plan.kind,
                    points_delta=current_delta,
                    lifetime_delta=lifetime_delta,
                    details=plan.details,
                    created_at=now,
                    reverses_entry_id=plan.reverses.id if plan.reverses is not None else None,
                )
                balances = self.projector.apply_delta(unit, current_delta, lifetime_delta)
                # Stamped with the entry so a concurrent sweep sees the activity.
                unit.stage_resident(last_activity_at=now, **plan.resident_updates)
        except LedgerServiceError as exc:
            logger.warning(
                "%s for resident %s aborted during %s: %s",
                type(exc).__name__, resident_id, state.value, exc,
            )
            raise

        logger.info(
            "Committed %s entry %s for resident %s: delta=%+d current=%d lifetime=%d",
            entry.kind.value, entry.id, resident_id, entry.points_delta,
            balances.current_points, balances.lifetime_points,
        )
        return entry, balances

    def _touch_after_commit(self, resident_id: int) -> None:
        # Best effort: the entry is already committed and must not be undone.
        try:
            self.archiver.touch(resident_id)
        except Exception:  # noqa: BLE001
            logger.warning("Failed to update activity for resident %s", resident_id, exc_info=True)

    def _get_resident(self, resident_id: int):
        resident = self.storage.get_resident(resident_id)
        if resident is None:
            raise ReferenceNotFoundError(f"Resident {resident_id} not found")
        return resident

    def _priced_product(self, product_id: int):
        product = self.storage.get_product(product_id)
        if product is None:
            raise ReferenceNotFoundError(f"Product {product_id} not found")
        if not product.available:
            raise ProductUnavailableError(f"Product {product_id} is not available for redemption")
        return product

    @staticmethod
    def _validate_officer(officer_id: int) -> None:
        if officer_id is None or officer_id <= 0:
            raise ValidationFailedError(f"Invalid officer id {officer_id!r}", field="officer_id")

    @staticmethod
    def _reject_duplicates(ids: Iterable[int], label: str) -> None:
        duplicates = sorted(i for i, n in Counter(ids).items() if n > 1)
        if duplicates:
            raise DuplicateDetailError(
                f"Duplicate {label} id(s) in request: {', '.join(map(str, duplicates))}",
                field=f"{label}_ids",
            )
