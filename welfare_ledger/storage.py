import itertools
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from .exceptions import (
    AlreadyReversedError,
    ReferenceNotFoundError,
    StorageContentionError,
)
from .models import LedgerEntry, Product, Resident, Task


logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive timestamps are taken to be UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UnitOfWork:
    def __init__(self, storage: "InMemoryStorage", resident_id: int):
        self._storage = storage
        self.resident_id = resident_id
        self._entries: list[LedgerEntry] = []
        self._resident_updates: dict = {}

    def resident(self) -> Resident:
        resident = self._storage.get_resident(self.resident_id)
        if resident is None:
            raise ReferenceNotFoundError(f"Resident {self.resident_id} not found")
        if self._resident_updates:
            resident = resident.model_copy(update=self._resident_updates)
        return resident

    def next_entry_id(self) -> int:
        return self._storage.allocate_entry_id()

    def stage_entry(self, entry: LedgerEntry) -> None:
        if entry.resident_id != self.resident_id:
            raise ValueError(
                f"Entry for resident {entry.resident_id} staged in unit for {self.resident_id}"
            )
        self._entries.append(entry)

    def stage_resident(self, **fields) -> None:
        self._resident_updates.update(fields)

    @property
    def staged_entries(self) -> list[LedgerEntry]:
        return list(self._entries)

    def _publish(self) -> None:
        self._storage._publish(self.resident_id, self._entries, self._resident_updates)


class InMemoryStorage:
    def __init__(self, lock_timeout: float = 5.0):
        self.lock_timeout = lock_timeout
        self.residents: dict[int, Resident] = {}
        self.tasks: dict[int, Task] = {}
        self.products: dict[int, Product] = {}
        self.ledger_entries: dict[int, LedgerEntry] = {}
        self.reversal_index: dict[int, int] = {}

        self._entry_ids = itertools.count(1)
        self._id_lock = threading.Lock()
        self._publish_lock = threading.RLock()
        self._locks_guard = threading.Lock()
        self._resident_locks: dict[int, threading.Lock] = {}

    # Reference data

    def provision_resident(
        self,
        user_id: int,
        batch_number: Optional[int] = None,
        date_of_admission: Optional[datetime] = None,
    ) -> Resident:
        # Balances are left alone; only ledger entries move them.
        date_of_admission = as_utc(date_of_admission)
        with self._publish_lock:
            existing = self.residents.get(user_id)
            if existing is not None:
                updates = {"batch_number": batch_number}
                if date_of_admission is not None:
                    updates["date_of_admission"] = date_of_admission
                resident = existing.model_copy(update=updates)
            else:
                resident = Resident(
                    user_id=user_id,
                    batch_number=batch_number,
                    date_of_admission=date_of_admission or datetime.now(timezone.utc),
                )
            self.residents[user_id] = resident
            return resident

    def upsert_task(self, task: Task) -> Task:
        with self._publish_lock:
            self.tasks[task.id] = task
        return task

    def upsert_product(self, product: Product) -> Product:
        with self._publish_lock:
            self.products[product.id] = product
        return product

    def get_resident(self, user_id: int) -> Optional[Resident]:
        with self._publish_lock:
            return self.residents.get(user_id)

    def get_task(self, task_id: int) -> Optional[Task]:
        with self._publish_lock:
            return self.tasks.get(task_id)

    def get_product(self, product_id: int) -> Optional[Product]:
        with self._publish_lock:
            return self.products.get(product_id)

    def list_residents(self) -> list[Resident]:
        with self._publish_lock:
            return sorted(self.residents.values(), key=lambda r: r.user_id)

    @property
    def read_guard(self) -> threading.RLock:
        """Held while publishing; hold it to read several tables consistently."""
        return self._publish_lock

    # Entries (read side)

    def get_entry(self, entry_id: int) -> Optional[LedgerEntry]:
        with self._publish_lock:
            return self.ledger_entries.get(entry_id)

    def reversed_by(self, entry_id: int) -> Optional[int]:
        with self._publish_lock:
            return self.reversal_index.get(entry_id)

    def list_entries(self) -> list[LedgerEntry]:
        with self._publish_lock:
            return list(self.ledger_entries.values())

    # Write side

    def allocate_entry_id(self) -> int:
        with self._id_lock:
            return next(self._entry_ids)

    def _lock_for(self, user_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._resident_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._resident_locks[user_id] = lock
            return lock

    @contextmanager
    def transaction(self, resident_id: int, timeout: Optional[float] = None) -> Iterator[UnitOfWork]:
        lock = self._lock_for(resident_id)
        wait = self.lock_timeout if timeout is None else timeout
        if not lock.acquire(timeout=wait):
            raise StorageContentionError(
                f"Could not lock resident {resident_id} within {wait:.2f}s"
            )
        try:
            unit = UnitOfWork(self, resident_id)
            yield unit
            unit._publish()
        finally:
            lock.release()

    def _publish(self, resident_id: int, entries: list[LedgerEntry], resident_updates: dict) -> None:
        with self._publish_lock:
            if resident_id not in self.residents:
                raise ReferenceNotFoundError(f"Resident {resident_id} not found")
            for entry in entries:
                if entry.id in self.ledger_entries:
                    raise ValueError(f"Ledger entry {entry.id} already exists")
                if entry.reverses_entry_id is not None and entry.reverses_entry_id in self.reversal_index:
                    raise AlreadyReversedError(
                        f"Entry {entry.reverses_entry_id} has already been reversed"
                    )

            for entry in entries:
                self.ledger_entries[entry.id] = entry
                if entry.reverses_entry_id is not None:
                    self.reversal_index[entry.reverses_entry_id] = entry.id
            if resident_updates:
                self.residents[resident_id] = self.residents[resident_id].model_copy(
                    update=resident_updates
                )
        logger.debug(
            "Published %d entries for resident %s (fields: %s)",
            len(entries),
            resident_id,
            ", ".join(sorted(resident_updates)) or "none",
        )
