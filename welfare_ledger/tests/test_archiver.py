import threading
import time
from contextlib import contextmanager

import pytest
from dateutil.relativedelta import relativedelta

from conftest import OFFICER_ID, RESIDENT_ID, START, TASK_A_ID
from welfare_ledger import scheduler
from welfare_ledger.archiver import ActivityArchiver
from welfare_ledger.exceptions import ReferenceNotFoundError, ResidentArchivedError, ValidationFailedError
from welfare_ledger.storage import InMemoryStorage


def _set_activity(storage, resident_id, months_ago, clock_now=START):
    with storage.transaction(resident_id) as unit:
        unit.stage_resident(last_activity_at=clock_now - relativedelta(months=months_ago))


@pytest.fixture
def archiver(service):
    return service.archiver


class TestSweep:
    def test_archives_only_residents_past_threshold(self, storage, archiver):
        storage.provision_resident(301)
        storage.provision_resident(302)
        _set_activity(storage, 301, months_ago=7)
        _set_activity(storage, 302, months_ago=5)
        _set_activity(storage, RESIDENT_ID, months_ago=1)

        result = archiver.sweep(6)

        assert result.archived_count == 1
        assert result.errors == []
        assert result.cutoff == START - relativedelta(months=6)
        assert storage.get_resident(301).is_active is False
        assert storage.get_resident(302).is_active is True
        assert storage.get_resident(RESIDENT_ID).is_active is True

    def test_never_active_resident_uses_admission_date(self, storage, archiver):
        storage.provision_resident(303, date_of_admission=START - relativedelta(months=8))
        storage.provision_resident(304, date_of_admission=START - relativedelta(months=2))

        result = archiver.sweep(6)

        assert result.archived_count == 1
        assert storage.get_resident(303).is_active is False
        assert storage.get_resident(304).is_active is True

    def test_default_threshold_comes_from_settings(self, storage, archiver):
        storage.provision_resident(305, date_of_admission=START - relativedelta(months=6, days=1))
        assert archiver.sweep().archived_count == 1

    def test_invalid_threshold(self, archiver):
        with pytest.raises(ValidationFailedError):
            archiver.sweep(0)

    def test_failure_on_one_resident_does_not_stop_sweep(self, settings, clock):
        storage = _BrokenStorage(broken_resident=402)
        for resident_id in (401, 402, 403):
            storage.provision_resident(resident_id, date_of_admission=START - relativedelta(months=12))
        archiver = ActivityArchiver(storage, settings, clock)

        result = archiver.sweep(6)

        assert result.archived_count == 2
        assert len(result.errors) == 1
        assert "402" in result.errors[0]
        assert storage.get_resident(402).is_active is True

    def test_cancelled_sweep_leaves_remaining_residents(self, storage, archiver):
        for resident_id in (501, 502, 503):
            storage.provision_resident(resident_id, date_of_admission=START - relativedelta(months=12))
        stop = threading.Event()
        stop.set()

        result = archiver.sweep(6, cancel_event=stop)

        assert result.cancelled is True
        assert result.archived_count == 0
        assert all(storage.get_resident(r).is_active for r in (501, 502, 503))


class TestReactivate:
    def test_reactivation_restores_ledger_writes(self, service, storage, archiver, clock):
        _set_activity(storage, RESIDENT_ID, months_ago=7)
        archiver.sweep(6)

        with pytest.raises(ResidentArchivedError):
            service.record_completion(RESIDENT_ID, OFFICER_ID, [TASK_A_ID])

        clock.advance(days=1)
        resident = archiver.reactivate(RESIDENT_ID)

        assert resident.is_active is True
        assert resident.last_activity_at == clock.now
        assert archiver.sweep(6).archived_count == 0
        assert service.record_completion(RESIDENT_ID, OFFICER_ID, [TASK_A_ID]).balances.current_points == 100

    def test_reactivate_is_idempotent(self, storage, archiver):
        first = archiver.reactivate(RESIDENT_ID)
        second = archiver.reactivate(RESIDENT_ID)

        assert first.is_active and second.is_active
        assert storage.get_resident(RESIDENT_ID).is_active is True

    def test_reactivate_unknown_resident(self, archiver):
        with pytest.raises(ReferenceNotFoundError):
            archiver.reactivate(999)


class TestArchiveQueries:
    def test_list_archived_and_stats(self, storage, archiver, clock):
        storage.provision_resident(601, batch_number=3, date_of_admission=START - relativedelta(months=9))
        storage.provision_resident(602, batch_number=4, date_of_admission=START - relativedelta(months=9))
        archiver.sweep(6)

        page = archiver.list_archived()
        assert {r.user_id for r in page.residents} == {601, 602}
        assert archiver.list_archived(batch_number=3).total_count == 1

        stats = archiver.stats()
        assert stats.total == 3
        assert stats.archived == 2
        assert stats.active == 1
        assert stats.recently_archived == 0


class _BrokenStorage(InMemoryStorage):
    def __init__(self, broken_resident):
        super().__init__()
        self.broken_resident = broken_resident

    @contextmanager
    def transaction(self, resident_id, timeout=None):
        if resident_id == self.broken_resident:
            raise RuntimeError("row is corrupted")
        with super().transaction(resident_id, timeout) as unit:
            yield unit


class TestScheduler:
    def test_scheduler_runs_initial_sweep(self, storage, archiver, settings):
        storage.provision_resident(701, date_of_admission=START - relativedelta(months=12))
        try:
            scheduler.start_archive_scheduler(archiver, settings)
            deadline = time.monotonic() + 5
            while storage.get_resident(701).is_active and time.monotonic() < deadline:
                time.sleep(0.01)
            assert scheduler.is_running()
        finally:
            scheduler.stop_archive_scheduler()

        assert storage.get_resident(701).is_active is False
        assert not scheduler.is_running()
