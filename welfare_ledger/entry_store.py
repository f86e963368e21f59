
from datetime import datetime
from typing import Optional, Sequence

from .exceptions import (
    ProductUnavailableError,
    ReferenceNotFoundError,
    ValidationFailedError,
)
from .models import (
    AbscondenceDetail,
    CompletionDetail,
    EntryKind,
    LedgerEntry,
    RedemptionDetail,
)
from .storage import InMemoryStorage, UnitOfWork, as_utc


_DETAIL_TYPES = {
    EntryKind.COMPLETION: CompletionDetail,
    EntryKind.REDEMPTION: RedemptionDetail,
    EntryKind.ABSCONDENCE: AbscondenceDetail,
}


class EntryStore:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def append(
        self,
        unit: UnitOfWork,
        *,
        officer_id: int,
        kind: EntryKind,
        points_delta: int,
        lifetime_delta: int,
        details: Sequence,
        created_at: datetime,
        reverses_entry_id: Optional[int] = None,
    ) -> LedgerEntry:
        """Stage a new entry with its details in the caller's unit of work."""
        unit.resident()
        self._check_details(kind, details, is_reversal=reverses_entry_id is not None)

        entry = LedgerEntry(
            id=unit.next_entry_id(),
            resident_id=unit.resident_id,
            officer_id=officer_id,
            kind=kind,
            points_delta=points_delta,
            lifetime_delta=lifetime_delta,
            reverses_entry_id=reverses_entry_id,
            created_at=created_at,
            details=tuple(details),
        )
        unit.stage_entry(entry)
        return entry

    def get(self, entry_id: int) -> LedgerEntry:
        entry = self.storage.get_entry(entry_id)
        if entry is None:
            raise ReferenceNotFoundError(f"Ledger entry {entry_id} not found")
        return entry

    def reversed_by(self, entry_id: int) -> Optional[int]:
        return self.storage.reversed_by(entry_id)

    def list_by_resident(
        self,
        resident_id: int,
        *,
        kind: Optional[EntryKind] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[LedgerEntry]:
        """Entries for one resident, newest first."""
        return [
            e for e in self.list_all(kind=kind, start=start, end=end)
            if e.resident_id == resident_id
        ]

    def list_all(
        self,
        *,
        kind: Optional[EntryKind] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[LedgerEntry]:
        start, end = as_utc(start), as_utc(end)
        entries = [
            e for e in self.storage.list_entries()
            if (kind is None or e.kind == kind)
            and (start is None or e.created_at >= start)
            and (end is None or e.created_at <= end)
        ]
        entries.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return entries

    def _check_details(self, kind: EntryKind, details: Sequence, is_reversal: bool) -> None:
        expected = _DETAIL_TYPES[kind]
        for detail in details:
            if not isinstance(detail, expected):
                raise ValidationFailedError(
                    f"{type(detail).__name__} cannot be attached to a {kind.value} entry"
                )
            if isinstance(detail, CompletionDetail):
                if self.storage.get_task(detail.task_id) is None:
                    raise ReferenceNotFoundError(f"Task {detail.task_id} not found")
            elif isinstance(detail, RedemptionDetail):
                product = self.storage.get_product(detail.product_id)
                if product is None:
                    raise ReferenceNotFoundError(f"Product {detail.product_id} not found")
                # Reversals must succeed even if the product was withdrawn since.
                if not is_reversal and not product.available:
                    raise ProductUnavailableError(
                        f"Product {detail.product_id} is not available for redemption"
                    )
