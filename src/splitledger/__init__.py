"""SplitLedger - Shared group expenses with a synchronized ledger."""

__version__ = "0.1.0"

from .balances import compute_balances, split_evenly, suggest_settlements, to_cents
from .categories import aggregate_by_category
from .config import Settings, load_settings
from .db import Database
from .events import EventChannel, Subscription
from .models import (
    Category,
    CategorySum,
    Expense,
    ExpenseFilter,
    ExpenseSort,
    Group,
    GroupSnapshot,
    Member,
    SyncEvent,
    SyncEventType,
    SyncState,
)
from .service import LedgerService
from .sync import SyncEngine

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "EventChannel",
    "Subscription",
    "Category",
    "CategorySum",
    "Expense",
    "ExpenseFilter",
    "ExpenseSort",
    "Group",
    "GroupSnapshot",
    "Member",
    "SyncEvent",
    "SyncEventType",
    "SyncState",
    "compute_balances",
    "split_evenly",
    "suggest_settlements",
    "to_cents",
    "aggregate_by_category",
    "LedgerService",
    "SyncEngine",
]
