"""Read-only standings derived from the balance projection and the entry log."""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, NamedTuple, Optional

from .archiver import utcnow
from .config import LedgerSettings
from .entry_store import EntryStore
from .exceptions import ReferenceNotFoundError, ResidentArchivedError, ValidationFailedError
from .models import (
    BatchStatistics,
    ComparisonRow,
    EntryKind,
    LeaderboardScope,
    LeaderboardStatistics,
    OrderBy,
    OverallStatistics,
    Period,
    PositionResponse,
    RankedPage,
    RankedRow,
    RecentChange,
    Resident,
    ResidentComparison,
)
from .storage import InMemoryStorage


COMPARE_MIN_RESIDENTS = 2
COMPARE_MAX_RESIDENTS = 5


class _Standing(NamedTuple):
    value: int
    resident: Resident
    period_points: Optional[int]


def period_start(period: Period, now: datetime) -> datetime:
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == Period.DAY:
        return midnight
    if period == Period.WEEK:
        return now - timedelta(days=7)
    if period == Period.MONTH:
        return midnight.replace(day=1)
    if period == Period.YEAR:
        return midnight.replace(month=1, day=1)
    raise ValueError(f"Unknown period {period}")


class LeaderboardRanker:
    def __init__(
        self,
        storage: InMemoryStorage,
        entry_store: EntryStore,
        settings: Optional[LedgerSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.entry_store = entry_store
        self.settings = settings or LedgerSettings()
        self.clock = clock or utcnow

    def rank(
        self,
        scope: Optional[LeaderboardScope] = None,
        order_by: OrderBy = OrderBy.CURRENT,
        limit: int = 10,
        offset: int = 0,
    ) -> RankedPage:
        if limit <= 0 or offset < 0:
            raise ValidationFailedError("limit must be positive and offset non-negative")
        scope = scope or LeaderboardScope()
        rows = self._ranked_rows(scope, order_by)
        return RankedPage(
            order_by=order_by,
            scope=scope,
            rows=rows[offset:offset + limit],
            total_count=len(rows),
            limit=limit,
            offset=offset,
        )

    def position(
        self,
        resident_id: int,
        order_by: OrderBy = OrderBy.CURRENT,
        scope: Optional[LeaderboardScope] = None,
    ) -> PositionResponse:
        """Rank of one resident plus ``neighbor_radius`` rows either side."""
        resident = self.storage.get_resident(resident_id)
        if resident is None:
            raise ReferenceNotFoundError(f"Resident {resident_id} not found")
        if not resident.is_active:
            raise ResidentArchivedError(f"Resident {resident_id} is archived and not ranked")

        rows = self._ranked_rows(scope or LeaderboardScope(), order_by)
        index = next((i for i, row in enumerate(rows) if row.resident_id == resident_id), None)
        if index is None:
            raise ReferenceNotFoundError(
                f"Resident {resident_id} is not part of the requested leaderboard scope"
            )

        radius = self.settings.neighbor_radius
        neighbors = [
            row.model_copy(update={"is_current_resident": row.resident_id == resident_id})
            for row in rows[max(0, index - radius):index + radius + 1]
        ]
        return PositionResponse(
            resident_id=resident_id,
            order_by=order_by,
            rank=rows[index].rank,
            value=rows[index].value,
            neighbors=neighbors,
        )

    def top_performers(
        self,
        period: Period = Period.MONTH,
        limit: int = 10,
        batch_number: Optional[int] = None,
    ) -> list[RankedRow]:
        """Residents who earned points in the period, best first."""
        if limit <= 0:
            raise ValidationFailedError("limit must be positive", field="limit")
        scope = LeaderboardScope(batch_number=batch_number, period=period)
        rows = [row for row in self._ranked_rows(scope, OrderBy.PERIOD) if row.value > 0]
        return rows[:limit]

    def recent_changes(
        self,
        hours: int = 24,
        batch_number: Optional[int] = None,
        limit: int = 20,
    ) -> list[RecentChange]:
        if hours <= 0:
            raise ValidationFailedError("hours must be positive", field="hours")
        if limit <= 0:
            raise ValidationFailedError("limit must be positive", field="limit")

        since = self.clock() - timedelta(hours=hours)
        changes = []
        for entry in self.entry_store.list_all(kind=EntryKind.COMPLETION, start=since):
            if entry.is_reversal or entry.points_delta <= 0:
                continue
            resident = self.storage.get_resident(entry.resident_id)
            if resident is None or not resident.is_active:
                continue
            if batch_number is not None and resident.batch_number != batch_number:
                continue
            changes.append(RecentChange(
                entry_id=entry.id,
                resident_id=resident.user_id,
                batch_number=resident.batch_number,
                points_earned=entry.points_delta,
                current_points=resident.current_points,
                task_ids=[d.task_id for d in entry.details],
                created_at=entry.created_at,
            ))
            if len(changes) == limit:
                break
        return changes

    def compare(self, resident_ids: list[int]) -> ResidentComparison:
        unique_ids = list(dict.fromkeys(resident_ids))
        if not COMPARE_MIN_RESIDENTS <= len(unique_ids) <= COMPARE_MAX_RESIDENTS:
            raise ValidationFailedError(
                f"Provide between {COMPARE_MIN_RESIDENTS} and {COMPARE_MAX_RESIDENTS} "
                f"distinct residents to compare, got {len(unique_ids)}",
                field="resident_ids",
            )

        residents = []
        missing = []
        for resident_id in unique_ids:
            resident = self.storage.get_resident(resident_id)
            if resident is None:
                missing.append(resident_id)
            else:
                residents.append(resident)
        if not residents:
            raise ReferenceNotFoundError("None of the requested residents were found")

        overall = {
            row.resident_id: row.rank
            for row in self._ranked_rows(LeaderboardScope(), OrderBy.CURRENT)
        }
        residents.sort(key=lambda r: (-r.current_points, r.user_id))
        rows = [
            ComparisonRow(
                resident_id=r.user_id,
                batch_number=r.batch_number,
                current_points=r.current_points,
                lifetime_points=r.lifetime_points,
                leaderboard_rank=overall.get(r.user_id),
                comparison_rank=1 + sum(
                    1 for other in residents if other.current_points > r.current_points
                ),
            )
            for r in residents
        ]
        return ResidentComparison(rows=rows, missing_resident_ids=missing)

    def statistics(self) -> LeaderboardStatistics:
        residents = [r for r in self.storage.list_residents() if r.is_active]
        count = len(residents)
        current = [r.current_points for r in residents]
        lifetime = [r.lifetime_points for r in residents]

        batches: dict[int, list[int]] = defaultdict(list)
        for r in residents:
            if r.batch_number is not None:
                batches[r.batch_number].append(r.current_points)

        return LeaderboardStatistics(
            overall=OverallStatistics(
                total_residents=count,
                avg_current_points=round(sum(current) / count) if count else 0,
                max_current_points=max(current, default=0),
                total_current_points=sum(current),
                avg_lifetime_points=round(sum(lifetime) / count) if count else 0,
                max_lifetime_points=max(lifetime, default=0),
                total_lifetime_points=sum(lifetime),
            ),
            by_batch=[
                BatchStatistics(
                    batch_number=batch,
                    resident_count=len(points),
                    avg_points=round(sum(points) / len(points)),
                    max_points=max(points),
                )
                for batch, points in sorted(batches.items())
            ],
        )

    def _ranked_rows(self, scope: LeaderboardScope, order_by: OrderBy) -> list[RankedRow]:
        standings = self._standings(scope, order_by)
        rows: list[RankedRow] = []
        rank = 0
        previous_value = None
        for index, standing in enumerate(standings):
            # Rank is 1 + the number of residents with a strictly greater value.
            if standing.value != previous_value:
                rank = index + 1
                previous_value = standing.value
            rows.append(RankedRow(
                rank=rank,
                resident_id=standing.resident.user_id,
                batch_number=standing.resident.batch_number,
                current_points=standing.resident.current_points,
                lifetime_points=standing.resident.lifetime_points,
                period_points=standing.period_points,
                value=standing.value,
            ))
        return rows

    def _standings(self, scope: LeaderboardScope, order_by: OrderBy) -> list[_Standing]:
        with self.storage.read_guard:
            residents = [
                r for r in self.storage.list_residents()
                if r.is_active and (scope.batch_number is None or r.batch_number == scope.batch_number)
            ]
            earned = self._period_points(scope.period) if order_by == OrderBy.PERIOD else None

        standings = []
        for resident in residents:
            if order_by == OrderBy.CURRENT:
                standings.append(_Standing(resident.current_points, resident, None))
            elif order_by == OrderBy.LIFETIME:
                standings.append(_Standing(resident.lifetime_points, resident, None))
            else:
                points = earned.get(resident.user_id, 0)
                standings.append(_Standing(points, resident, points))
        standings.sort(key=lambda s: (-s.value, s.resident.user_id))
        return standings

    def _period_points(self, period: Period) -> dict[int, int]:
        # Only completions count; redemptions and penalties never affect a period ranking.
        totals: dict[int, int] = defaultdict(int)
        start = period_start(period, self.clock())
        for entry in self.entry_store.list_all(kind=EntryKind.COMPLETION, start=start):
            totals[entry.resident_id] += entry.points_delta
        return totals
