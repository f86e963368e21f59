"""Denormalized balance fields kept in lockstep with entry writes."""

from .entry_store import EntryStore
from .exceptions import InsufficientBalanceError, ReferenceNotFoundError
from .models import Balances
from .storage import InMemoryStorage, UnitOfWork


class BalanceProjector:
    def __init__(self, storage: InMemoryStorage, entry_store: EntryStore):
        self.storage = storage
        self.entry_store = entry_store

    def apply_delta(self, unit: UnitOfWork, current_delta: int, lifetime_delta: int) -> Balances:
        resident = unit.resident()
        new_current = resident.current_points + current_delta
        if new_current < 0:
            raise InsufficientBalanceError(
                resident.user_id,
                required=-current_delta,
                available=resident.current_points,
            )
        new_lifetime = resident.lifetime_points + lifetime_delta

        unit.stage_resident(current_points=new_current, lifetime_points=new_lifetime)
        return Balances(
            resident_id=resident.user_id,
            current_points=new_current,
            lifetime_points=new_lifetime,
        )

    def current(self, resident_id: int) -> Balances:
        resident = self.storage.get_resident(resident_id)
        if resident is None:
            raise ReferenceNotFoundError(f"Resident {resident_id} not found")
        return Balances(
            resident_id=resident_id,
            current_points=resident.current_points,
            lifetime_points=resident.lifetime_points,
        )

    def derive(self, resident_id: int) -> Balances:
        """Recompute balances from the entry history alone."""
        entries = self.entry_store.list_by_resident(resident_id)
        return Balances(
            resident_id=resident_id,
            current_points=sum(e.points_delta for e in entries),
            lifetime_points=sum(e.lifetime_delta for e in entries),
        )

    def verify(self, resident_id: int) -> bool:
        with self.storage.read_guard:
            return self.current(resident_id) == self.derive(resident_id)
