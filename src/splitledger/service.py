"""Service layer exposing ledger queries to external collaborators.

This module composes the store, the balance calculator, the category
aggregator and the sync engine behind one read/query API.
"""

import logging
import threading
from decimal import Decimal

from .balances import compute_balances, suggest_settlements
from .categories import aggregate_by_category
from .db import Database
from .events import EventChannel, EventHandler, Subscription
from .models import (
    CategorySum,
    Expense,
    ExpenseFilter,
    ExpenseSort,
    SyncEvent,
    SyncEventType,
    Transfer,
)
from .sync import SyncEngine

logger = logging.getLogger(__name__)


class LedgerService:
    """Read/query interface over the ledger.

    Balances are cached per group. The cache is dropped on every committed
    store change and whenever an import finishes.
    """

    def __init__(self, database: Database, engine: SyncEngine | None = None):
        """Initialize the ledger service."""
        self.db = database
        self.engine = engine
        # Local-only mode still accepts subscribers; nothing is published
        self.events = engine.events if engine else EventChannel()
        self._cache: dict[str, dict[str, Decimal]] = {}
        self._cache_lock = threading.Lock()
        self._generation = 0

        self.db.add_change_listener(self._on_store_change)
        self._subscription = self.events.subscribe(self._on_sync_event)

    def close(self):
        """Detach from the store and the event channel."""
        self.db.remove_change_listener(self._on_store_change)
        self._subscription.unsubscribe()
        if self.engine is None:
            self.events.close()

    # ========================================================================
    # Queries
    # ========================================================================

    def get_balances(self, group_id: str) -> dict[str, Decimal]:
        """
        Get each member's net balance in a group.

        Args:
            group_id: The group

        Returns:
            Mapping of member id to balance (empty for a group with no members)
        """
        with self._cache_lock:
            cached = self._cache.get(group_id)
            generation = self._generation
        if cached is not None:
            return dict(cached)

        balances = compute_balances(self.db.get_group_snapshot(group_id))
        with self._cache_lock:
            # Skip caching if the store changed while we were computing
            if generation == self._generation:
                self._cache[group_id] = balances
        return dict(balances)

    def get_settlements(self, group_id: str) -> list[Transfer]:
        """Suggest payments that settle a group."""
        return suggest_settlements(self.get_balances(group_id))

    def get_category_sums(self, group_id: str | None = None) -> list[CategorySum]:
        """
        Get per-category totals for one group, or the whole ledger.

        Args:
            group_id: The group, or None for every expense

        Returns:
            Category totals in stable category order
        """
        if group_id is not None:
            expenses = self.db.get_group_snapshot(group_id).expenses
        else:
            expenses = self.db.query_expenses()
        return aggregate_by_category(expenses)

    def list_expenses(
        self,
        filter: ExpenseFilter | None = None,
        sort: ExpenseSort | None = None,
    ) -> list[Expense]:
        """List expenses, newest first unless another sort is given."""
        return self.db.query_expenses(filter, sort)

    def subscribe_sync_events(self, handler: EventHandler) -> Subscription:
        """Register a handler for sync lifecycle events."""
        return self.events.subscribe(handler)

    # ========================================================================
    # Cache invalidation
    # ========================================================================

    def invalidate(self):
        """Drop all cached balances."""
        with self._cache_lock:
            self._generation += 1
            self._cache.clear()

    def _on_store_change(self, source: str):
        self.invalidate()

    def _on_sync_event(self, event: SyncEvent):
        if event.type == SyncEventType.IMPORT and event.phase == "finished":
            logger.debug(f"Import finished (session {event.session_id}), dropping cache")
            self.invalidate()
