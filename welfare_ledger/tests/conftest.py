from datetime import datetime, timedelta, timezone

import pytest

from welfare_ledger.config import LedgerSettings
from welfare_ledger.leaderboard import LeaderboardRanker
from welfare_ledger.models import Product, Task
from welfare_ledger.service import LedgerService
from welfare_ledger.storage import InMemoryStorage


START = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)

RESIDENT_ID = 101
OFFICER_ID = 9001

TASK_A_ID = 1  # 100 points
TASK_B_ID = 2  # 50 points
INACTIVE_TASK_ID = 3

PRODUCT_ID = 10  # 60 points
SNACK_ID = 11  # 5 points
UNAVAILABLE_PRODUCT_ID = 12


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> LedgerSettings:
    return LedgerSettings(retry_backoff_seconds=0, lock_timeout_seconds=1.0)


@pytest.fixture
def storage() -> InMemoryStorage:
    storage = InMemoryStorage(lock_timeout=1.0)
    storage.upsert_task(Task(id=TASK_A_ID, name="Clean dormitory", points=100))
    storage.upsert_task(Task(id=TASK_B_ID, name="Kitchen duty", points=50))
    storage.upsert_task(Task(id=INACTIVE_TASK_ID, name="Retired chore", points=20, active=False))
    storage.upsert_product(Product(id=PRODUCT_ID, name="Phone card", points=60))
    storage.upsert_product(Product(id=SNACK_ID, name="Snack", points=5))
    storage.upsert_product(Product(id=UNAVAILABLE_PRODUCT_ID, name="Headphones", points=200, available=False))
    storage.provision_resident(RESIDENT_ID, batch_number=1, date_of_admission=START - timedelta(days=30))
    return storage


@pytest.fixture
def service(storage, settings, clock) -> LedgerService:
    return LedgerService(storage=storage, settings=settings, clock=clock)


@pytest.fixture
def ranker(service, settings, clock) -> LeaderboardRanker:
    return LeaderboardRanker(service.storage, service.entries, settings, clock)
