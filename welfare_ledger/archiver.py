import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from dateutil.relativedelta import relativedelta

from .config import LedgerSettings
from .exceptions import ValidationFailedError
from .models import ArchivedResidentPage, ArchiveStats, Resident, SweepResult
from .storage import InMemoryStorage


logger = logging.getLogger(__name__)

RECENTLY_ARCHIVED_DAYS = 30


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActivityArchiver:
    """Tracks resident activity and demotes dormant residents to archived."""

    def __init__(
        self,
        storage: InMemoryStorage,
        settings: Optional[LedgerSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.settings = settings or LedgerSettings()
        self.clock = clock or utcnow

    def touch(self, resident_id: int) -> None:
        with self.storage.transaction(resident_id) as unit:
            unit.resident()
            unit.stage_resident(last_activity_at=self.clock())

    def sweep(
        self,
        inactivity_threshold_months: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SweepResult:
        """Archive active residents with no activity since the cutoff.

        Each resident is archived in its own unit of work. A failure on one
        resident is recorded in ``errors`` and the sweep moves on. Setting
        ``cancel_event`` stops the sweep before the next resident.
        """
        months = self.settings.inactivity_months if inactivity_threshold_months is None \
            else inactivity_threshold_months
        if months < 1:
            raise ValidationFailedError(
                f"Inactivity threshold must be at least 1 month, got {months}",
                field="inactivity_threshold_months",
            )

        cutoff = self.clock() - relativedelta(months=months)
        logger.info("Archiving residents inactive since %s", cutoff.isoformat())

        candidates = [
            r.user_id for r in self.storage.list_residents()
            if r.is_active and r.activity_reference < cutoff
        ]
        logger.info("Found %d residents to archive", len(candidates))

        archived = 0
        errors: list[str] = []
        cancelled = False
        for resident_id in candidates:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.info("Sweep cancelled after archiving %d residents", archived)
                break
            try:
                if self._archive_if_stale(resident_id, cutoff):
                    archived += 1
                    logger.info("Archived resident %s", resident_id)
            except Exception as exc:  # noqa: BLE001
                message = f"Failed to archive resident {resident_id}: {exc}"
                errors.append(message)
                logger.error(message)

        return SweepResult(
            archived_count=archived,
            errors=errors,
            cutoff=cutoff,
            cancelled=cancelled,
        )

    def _archive_if_stale(self, resident_id: int, cutoff: datetime) -> bool:
        with self.storage.transaction(resident_id) as unit:
            resident = unit.resident()
            # A ledger write may have landed between the scan and the lock.
            if not resident.is_active or resident.activity_reference >= cutoff:
                return False
            unit.stage_resident(is_active=False)
            return True

    def reactivate(self, resident_id: int) -> Resident:
        with self.storage.transaction(resident_id) as unit:
            resident = unit.resident()
            unit.stage_resident(is_active=True, last_activity_at=self.clock())
        if not resident.is_active:
            logger.info("Reactivated resident %s", resident_id)
        return self.storage.get_resident(resident_id)

    def list_archived(
        self, batch_number: Optional[int] = None, limit: int = 50, offset: int = 0
    ) -> ArchivedResidentPage:
        if limit <= 0 or offset < 0:
            raise ValidationFailedError("limit must be positive and offset non-negative")

        archived = [
            r for r in self.storage.list_residents()
            if not r.is_active and (batch_number is None or r.batch_number == batch_number)
        ]
        archived.sort(key=lambda r: (r.activity_reference, r.user_id), reverse=True)
        return ArchivedResidentPage(
            residents=archived[offset:offset + limit],
            total_count=len(archived),
            limit=limit,
            offset=offset,
        )

    def stats(self) -> ArchiveStats:
        residents = self.storage.list_residents()
        recent_since = self.clock() - timedelta(days=RECENTLY_ARCHIVED_DAYS)
        archived = [r for r in residents if not r.is_active]
        return ArchiveStats(
            active=len(residents) - len(archived),
            archived=len(archived),
            total=len(residents),
            recently_archived=sum(
                1 for r in archived
                if r.last_activity_at is not None and r.last_activity_at >= recent_since
            ),
        )

