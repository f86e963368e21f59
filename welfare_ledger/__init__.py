"""
Points Ledger for Welfare Home Residents

This package provides:
- Immutable ledger entries for task completions, redemptions and abscondences
- Balance projection kept in lockstep with every entry write
- Reversals within a bounded time window
- Leaderboards by current, lifetime and period points
- Archiving of inactive residents, with explicit reactivation
"""

from .archiver import ActivityArchiver
from .config import LedgerSettings, load_settings
from .leaderboard import LeaderboardRanker
from .models import (
    EntryKind,
    LedgerEntry,
    OrderBy,
    Period,
    Resident,
    TransactionState,
)
from .service import LedgerService
from .storage import InMemoryStorage

__all__ = [
    "ActivityArchiver",
    "EntryKind",
    "InMemoryStorage",
    "LeaderboardRanker",
    "LedgerEntry",
    "LedgerService",
    "LedgerSettings",
    "OrderBy",
    "Period",
    "Resident",
    "TransactionState",
    "load_settings",
]
