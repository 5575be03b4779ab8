"""SQLite ledger store for SplitLedger."""

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .exceptions import (
    DataIntegrityError,
    EntityNotFoundError,
    PersistenceError,
    SyncCancelledError,
)
from .merge import merge_fields
from .models import (
    KIND_ORDER,
    Category,
    ChangeSummary,
    EntityKind,
    Expense,
    ExpenseFilter,
    ExpenseSort,
    Group,
    GroupSnapshot,
    Member,
    PendingChange,
    RemoteChange,
    from_record,
    to_record,
)

logger = logging.getLogger(__name__)

CHANGE_TOKEN_KEY = "remote_change_token"

ChangeListener = Callable[[str], None]


class Database:
    """SQLite ledger store.

    All mutations run inside a transaction under a single writer lock and are
    either fully committed or rolled back. Every local mutation also marks
    the touched entities dirty so the sync engine can export them.
    """

    def __init__(self, db_path: Path | str):
        """Initialize database connection."""
        self.db_path = db_path
        self._lock = threading.RLock()
        self._depth = 0
        self._listeners: list[ChangeListener] = []
        self._pending_sources: set[str] = set()
        try:
            self.conn = sqlite3.connect(
                str(db_path), isolation_level=None, check_same_thread=False
            )
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            self._init_schema()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to open database {db_path}: {e}") from e

    def _init_schema(self):
        """Initialize database schema."""
        with self._transaction():
            cursor = self.conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS members (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS groups (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL
                )
            """
            )

            # Non-owning association between groups and members
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS group_members (
                    group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
                    member_id TEXT NOT NULL REFERENCES members(id) ON DELETE CASCADE,
                    PRIMARY KEY (group_id, member_id)
                )
            """
            )

            # payer_id has no foreign key: expenses keep the reference after
            # the member is deleted
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS expenses (
                    id TEXT PRIMARY KEY,
                    group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
                    payer_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    category TEXT NOT NULL,
                    date TIMESTAMP NOT NULL
                )
            """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_expenses_group ON expenses(group_id)"
            )

            # Last field values agreed with the remote store
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_baselines (
                    kind TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    record TEXT NOT NULL,
                    PRIMARY KEY (kind, entity_id)
                )
            """
            )

            # Entities changed locally since their last export
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_outbox (
                    kind TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    revision INTEGER NOT NULL DEFAULT 1,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (kind, entity_id)
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS config (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """
            )

    def close(self):
        """Close database connection."""
        with self._lock:
            self.conn.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    # ========================================================================
    # Transactions and change notification
    # ========================================================================

    @contextmanager
    def _transaction(self, source: str | None = None) -> Iterator[sqlite3.Cursor]:
        """
        Run a block as one transaction under the writer lock.

        Nested calls join the outer transaction. sqlite errors are rolled
        back and re-raised as PersistenceError; any other exception is
        rolled back and propagated unchanged.

        Args:
            source: "local" or "remote" to notify change listeners on commit
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                try:
                    self.conn.execute("BEGIN IMMEDIATE")
                except sqlite3.Error as e:
                    raise PersistenceError(f"Failed to begin transaction: {e}") from e
            self._depth += 1
            if source:
                self._pending_sources.add(source)
            try:
                yield self.conn.cursor()
            except BaseException as e:
                self._depth -= 1
                if outermost:
                    self._pending_sources.clear()
                    self._rollback()
                if isinstance(e, sqlite3.Error):
                    raise PersistenceError(f"Transaction rolled back: {e}") from e
                raise
            else:
                self._depth -= 1
                if outermost:
                    try:
                        self.conn.execute("COMMIT")
                    except sqlite3.Error as e:
                        self._pending_sources.clear()
                        self._rollback()
                        raise PersistenceError(f"Commit failed: {e}") from e
                    sources, self._pending_sources = self._pending_sources, set()
                    for committed in sorted(sources):
                        self._notify(committed)

    def _rollback(self):
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error(f"Rollback failed: {e}")

    def add_change_listener(self, listener: ChangeListener):
        """Register a callback invoked with "local" or "remote" after each commit."""
        with self._lock:
            self._listeners.append(listener)

    def remove_change_listener(self, listener: ChangeListener):
        """Unregister a change callback."""
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, source: str):
        for listener in list(self._listeners):
            listener(source)

    # ========================================================================
    # Config operations
    # ========================================================================

    def get_config(self, key: str) -> str | None:
        """Get a config value by key."""
        with self._lock:
            cursor = self.conn.execute("SELECT value FROM config WHERE key = ?", (key,))
            row = cursor.fetchone()
        return str(row["value"]) if row else None

    def set_config(self, key: str, value: str):
        """Set a config value."""
        with self._transaction() as cursor:
            self._set_config(cursor, key, value)

    def _set_config(self, cursor: sqlite3.Cursor, key: str, value: str):
        cursor.execute(
            """
            INSERT INTO config (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, datetime.now().isoformat()),
        )

    # ========================================================================
    # Member operations
    # ========================================================================

    def create_member(self, name: str) -> Member:
        """Create a member."""
        member = Member(name=name)
        with self._transaction("local") as cursor:
            cursor.execute(
                "INSERT INTO members (id, name) VALUES (?, ?)", (member.id, member.name)
            )
            self._mark_dirty(cursor, EntityKind.MEMBER, member.id)
        logger.info(f"Created member '{member.name}' ({member.id})")
        return member

    def rename_member(self, member_id: str, name: str) -> Member:
        """Rename a member. Identity never changes."""
        with self._transaction("local") as cursor:
            cursor.execute("UPDATE members SET name = ? WHERE id = ?", (name, member_id))
            if cursor.rowcount == 0:
                raise EntityNotFoundError("Member", member_id)
            self._mark_dirty(cursor, EntityKind.MEMBER, member_id)
        return Member(id=member_id, name=name)

    def delete_member(self, member_id: str):
        """
        Delete a member.

        Group memberships are removed but expenses keep their payer reference.
        """
        with self._transaction("local") as cursor:
            group_ids = [
                row["group_id"]
                for row in cursor.execute(
                    "SELECT group_id FROM group_members WHERE member_id = ?",
                    (member_id,),
                )
            ]
            cursor.execute("DELETE FROM members WHERE id = ?", (member_id,))
            if cursor.rowcount == 0:
                raise EntityNotFoundError("Member", member_id)
            self._mark_dirty(cursor, EntityKind.MEMBER, member_id, deleted=True)
            for group_id in group_ids:
                self._mark_dirty(cursor, EntityKind.GROUP, group_id)
        logger.info(f"Deleted member {member_id} (left {len(group_ids)} groups)")

    def get_member(self, member_id: str) -> Member | None:
        """Get a member by id."""
        with self._lock:
            row = self.conn.execute(
                "SELECT id, name FROM members WHERE id = ?", (member_id,)
            ).fetchone()
        return Member(id=row["id"], name=row["name"]) if row else None

    def list_members(self) -> list[Member]:
        """Get all members sorted by name."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT id, name FROM members ORDER BY name, id"
            ).fetchall()
        return [Member(id=row["id"], name=row["name"]) for row in rows]

    # ========================================================================
    # Group operations
    # ========================================================================

    def create_group(self, name: str, member_ids: Iterable[str] = ()) -> Group:
        """Create a group, optionally with initial members."""
        group = Group(name=name, member_ids=set(member_ids))
        with self._transaction("local") as cursor:
            cursor.execute(
                "INSERT INTO groups (id, name) VALUES (?, ?)", (group.id, group.name)
            )
            for member_id in sorted(group.member_ids):
                self._require_member(cursor, member_id)
                cursor.execute(
                    "INSERT INTO group_members (group_id, member_id) VALUES (?, ?)",
                    (group.id, member_id),
                )
            self._mark_dirty(cursor, EntityKind.GROUP, group.id)
        logger.info(f"Created group '{group.name}' ({group.id})")
        return group

    def rename_group(self, group_id: str, name: str) -> Group:
        """Rename a group."""
        with self._transaction("local") as cursor:
            cursor.execute("UPDATE groups SET name = ? WHERE id = ?", (name, group_id))
            if cursor.rowcount == 0:
                raise EntityNotFoundError("Group", group_id)
            self._mark_dirty(cursor, EntityKind.GROUP, group_id)
        return self._require(self.get_group(group_id), "Group", group_id)

    def add_member_to_group(self, group_id: str, member_id: str):
        """Add a member to a group (no-op if already a member)."""
        with self._transaction("local") as cursor:
            self._require_group(cursor, group_id)
            self._require_member(cursor, member_id)
            cursor.execute(
                "INSERT OR IGNORE INTO group_members (group_id, member_id) VALUES (?, ?)",
                (group_id, member_id),
            )
            if cursor.rowcount:
                self._mark_dirty(cursor, EntityKind.GROUP, group_id)

    def remove_member_from_group(self, group_id: str, member_id: str):
        """Remove a member from a group. Their past expenses are kept."""
        with self._transaction("local") as cursor:
            self._require_group(cursor, group_id)
            cursor.execute(
                "DELETE FROM group_members WHERE group_id = ? AND member_id = ?",
                (group_id, member_id),
            )
            if cursor.rowcount:
                self._mark_dirty(cursor, EntityKind.GROUP, group_id)

    def delete_group(self, group_id: str):
        """Delete a group and, by cascade, all of its expenses."""
        with self._transaction("local") as cursor:
            expense_ids = [
                row["id"]
                for row in cursor.execute(
                    "SELECT id FROM expenses WHERE group_id = ?", (group_id,)
                )
            ]
            cursor.execute("DELETE FROM groups WHERE id = ?", (group_id,))
            if cursor.rowcount == 0:
                raise EntityNotFoundError("Group", group_id)
            for expense_id in expense_ids:
                self._mark_dirty(cursor, EntityKind.EXPENSE, expense_id, deleted=True)
            self._mark_dirty(cursor, EntityKind.GROUP, group_id, deleted=True)
        logger.info(f"Deleted group {group_id} and {len(expense_ids)} expenses")

    def get_group(self, group_id: str) -> Group | None:
        """Get a group by id, with its member and expense ids."""
        with self._lock:
            row = self.conn.execute(
                "SELECT id, name FROM groups WHERE id = ?", (group_id,)
            ).fetchone()
            if not row:
                return None
            return self._load_group(row)

    def list_groups(self) -> list[Group]:
        """Get all groups sorted by name."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT id, name FROM groups ORDER BY name, id"
            ).fetchall()
            return [self._load_group(row) for row in rows]

    def get_group_snapshot(self, group_id: str) -> GroupSnapshot:
        """
        Take a consistent point-in-time snapshot of a group.

        Args:
            group_id: The group to snapshot

        Returns:
            The group with its current members and expenses

        Raises:
            EntityNotFoundError: If the group does not exist
        """
        with self._lock:
            group = self._require(self.get_group(group_id), "Group", group_id)
            member_rows = self.conn.execute(
                """
                SELECT m.id, m.name FROM members m
                JOIN group_members gm ON gm.member_id = m.id
                WHERE gm.group_id = ?
                ORDER BY m.id
                """,
                (group_id,),
            ).fetchall()
            expense_rows = self.conn.execute(
                "SELECT * FROM expenses WHERE group_id = ? ORDER BY id", (group_id,)
            ).fetchall()

        return GroupSnapshot(
            group=group,
            members=[Member(id=row["id"], name=row["name"]) for row in member_rows],
            expenses=[self._row_to_expense(row) for row in expense_rows],
        )

    def _load_group(self, row: sqlite3.Row) -> Group:
        member_ids = {
            r["member_id"]
            for r in self.conn.execute(
                "SELECT member_id FROM group_members WHERE group_id = ?", (row["id"],)
            )
        }
        expense_ids = {
            r["id"]
            for r in self.conn.execute(
                "SELECT id FROM expenses WHERE group_id = ?", (row["id"],)
            )
        }
        return Group(
            id=row["id"],
            name=row["name"],
            member_ids=member_ids,
            expense_ids=expense_ids,
        )

    # ========================================================================
    # Expense operations
    # ========================================================================

    def create_expense(
        self,
        group_id: str,
        payer_id: str,
        amount: Decimal | str,
        category: Category | str | None,
        date: datetime,
        name: str = "",
    ) -> Expense:
        """
        Create an expense owned by a group.

        Args:
            group_id: Owning group
            payer_id: Paying member, who must belong to the group
            amount: Non-negative amount
            category: Category tag (unknown tags become "other")
            date: When the expense happened
            name: Description

        Returns:
            The created expense

        Raises:
            DataIntegrityError: If the amount is invalid or the payer is not
                a member of the group
            EntityNotFoundError: If the group does not exist
        """
        expense = self._validate_expense(
            {
                "name": name,
                "amount": amount,
                "category": category,
                "date": date,
                "payer_id": payer_id,
                "group_id": group_id,
            }
        )
        with self._transaction("local") as cursor:
            self._check_expense_refs(cursor, expense)
            self._write_expense(cursor, expense)
            self._mark_dirty(cursor, EntityKind.EXPENSE, expense.id)
        logger.info(
            f"Created expense '{expense.name}' {expense.amount} in group {group_id}"
        )
        return expense

    def update_expense(self, expense_id: str, **fields: Any) -> Expense:
        """
        Update fields of an expense.

        Args:
            expense_id: The expense to update
            **fields: Any of name, amount, category, date, payer_id, group_id

        Returns:
            The updated expense
        """
        unknown = set(fields) - {
            "name",
            "amount",
            "category",
            "date",
            "payer_id",
            "group_id",
        }
        if unknown:
            raise ValueError(f"Unknown expense fields: {', '.join(sorted(unknown))}")

        with self._transaction("local") as cursor:
            current = self._require(
                self._fetch_expense(cursor, expense_id), "Expense", expense_id
            )
            expense = self._validate_expense(
                {**current.model_dump(), **fields, "id": expense_id}
            )
            # A payer who has since left the group may still own old expenses
            if "payer_id" in fields or "group_id" in fields:
                self._check_expense_refs(cursor, expense)
            self._write_expense(cursor, expense)
            self._mark_dirty(cursor, EntityKind.EXPENSE, expense_id)
        logger.info(f"Updated expense {expense_id}: {', '.join(sorted(fields))}")
        return expense

    def delete_expense(self, expense_id: str):
        """Delete an expense."""
        with self._transaction("local") as cursor:
            cursor.execute("DELETE FROM expenses WHERE id = ?", (expense_id,))
            if cursor.rowcount == 0:
                raise EntityNotFoundError("Expense", expense_id)
            self._mark_dirty(cursor, EntityKind.EXPENSE, expense_id, deleted=True)
        logger.info(f"Deleted expense {expense_id}")

    def get_expense(self, expense_id: str) -> Expense | None:
        """Get an expense by id."""
        with self._lock:
            return self._fetch_expense(self.conn.cursor(), expense_id)

    def query_expenses(
        self,
        filter: ExpenseFilter | None = None,
        sort: ExpenseSort | None = None,
    ) -> list[Expense]:
        """
        Query expenses.

        Args:
            filter: Optional group, date range and category filter
            sort: Sort order (date descending by default)

        Returns:
            Matching expenses in sort order, ties broken by id
        """
        filter = filter or ExpenseFilter()
        sort = sort or ExpenseSort()

        clauses: list[str] = []
        params: list[str] = []
        if filter.group_id is not None:
            clauses.append("group_id = ?")
            params.append(filter.group_id)
        if filter.category is not None:
            clauses.append("category = ?")
            params.append(filter.category.value)
        # Dates are stored as UTC ISO strings, which sort chronologically
        if filter.date_from is not None:
            clauses.append("date >= ?")
            params.append(filter.date_from.isoformat())
        if filter.date_to is not None:
            clauses.append("date <= ?")
            params.append(filter.date_to.isoformat())

        query = "SELECT * FROM expenses"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"

        with self._lock:
            rows = self.conn.execute(query, params).fetchall()

        expenses = [self._row_to_expense(row) for row in rows]
        # Stable sort keeps id order among equal keys
        expenses.sort(key=lambda e: getattr(e, sort.field), reverse=sort.descending)
        return expenses

    def _validate_expense(self, data: dict[str, Any]) -> Expense:
        try:
            return Expense.model_validate(data)
        except ValidationError as e:
            raise DataIntegrityError(f"Invalid expense: {e}") from e

    def _check_expense_refs(self, cursor: sqlite3.Cursor, expense: Expense):
        self._require_group(cursor, expense.group_id)
        row = cursor.execute(
            "SELECT 1 FROM group_members WHERE group_id = ? AND member_id = ?",
            (expense.group_id, expense.payer_id),
        ).fetchone()
        if row is None:
            raise DataIntegrityError(
                f"Payer {expense.payer_id} is not a member of group {expense.group_id}"
            )

    def _write_expense(self, cursor: sqlite3.Cursor, expense: Expense):
        cursor.execute(
            """
            INSERT INTO expenses (id, group_id, payer_id, name, amount, category, date)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                group_id = excluded.group_id,
                payer_id = excluded.payer_id,
                name = excluded.name,
                amount = excluded.amount,
                category = excluded.category,
                date = excluded.date
            """,
            (
                expense.id,
                expense.group_id,
                expense.payer_id,
                expense.name,
                str(expense.amount),
                expense.category.value,
                expense.date.isoformat(),
            ),
        )

    def _fetch_expense(self, cursor: sqlite3.Cursor, expense_id: str) -> Expense | None:
        row = cursor.execute(
            "SELECT * FROM expenses WHERE id = ?", (expense_id,)
        ).fetchone()
        return self._row_to_expense(row) if row else None

    def _row_to_expense(self, row: sqlite3.Row) -> Expense:
        return Expense(
            id=row["id"],
            name=row["name"],
            amount=Decimal(row["amount"]),
            category=row["category"],
            date=datetime.fromisoformat(row["date"]),
            payer_id=row["payer_id"],
            group_id=row["group_id"],
        )

    # ========================================================================
    # Reference checks
    # ========================================================================

    def _require(self, value, kind: str, entity_id: str):
        if value is None:
            raise EntityNotFoundError(kind, entity_id)
        return value

    def _require_group(self, cursor: sqlite3.Cursor, group_id: str):
        row = cursor.execute("SELECT 1 FROM groups WHERE id = ?", (group_id,)).fetchone()
        if row is None:
            raise EntityNotFoundError("Group", group_id)

    def _require_member(self, cursor: sqlite3.Cursor, member_id: str):
        row = cursor.execute(
            "SELECT 1 FROM members WHERE id = ?", (member_id,)
        ).fetchone()
        if row is None:
            raise EntityNotFoundError("Member", member_id)

    # ========================================================================
    # Sync support: outbox and baselines
    # ========================================================================

    def _mark_dirty(
        self,
        cursor: sqlite3.Cursor,
        kind: EntityKind,
        entity_id: str,
        deleted: bool = False,
    ):
        cursor.execute(
            """
            INSERT INTO sync_outbox (kind, entity_id, revision, deleted)
            VALUES (?, ?, 1, ?)
            ON CONFLICT(kind, entity_id) DO UPDATE SET
                revision = revision + 1,
                deleted = excluded.deleted
            """,
            (kind.value, entity_id, int(deleted)),
        )

    def _clear_dirty(self, cursor: sqlite3.Cursor, kind: EntityKind, entity_id: str):
        cursor.execute(
            "DELETE FROM sync_outbox WHERE kind = ? AND entity_id = ?",
            (kind.value, entity_id),
        )

    def _get_baseline(
        self, cursor: sqlite3.Cursor, kind: EntityKind, entity_id: str
    ) -> dict[str, Any] | None:
        row = cursor.execute(
            "SELECT record FROM sync_baselines WHERE kind = ? AND entity_id = ?",
            (kind.value, entity_id),
        ).fetchone()
        return json.loads(row["record"]) if row else None

    def _set_baseline(
        self,
        cursor: sqlite3.Cursor,
        kind: EntityKind,
        entity_id: str,
        record: dict[str, Any] | None,
    ):
        if record is None:
            cursor.execute(
                "DELETE FROM sync_baselines WHERE kind = ? AND entity_id = ?",
                (kind.value, entity_id),
            )
            return
        cursor.execute(
            """
            INSERT INTO sync_baselines (kind, entity_id, record) VALUES (?, ?, ?)
            ON CONFLICT(kind, entity_id) DO UPDATE SET record = excluded.record
            """,
            (kind.value, entity_id, json.dumps(record, sort_keys=True)),
        )

    def _get_record(
        self, cursor: sqlite3.Cursor, kind: EntityKind, entity_id: str
    ) -> dict[str, Any] | None:
        """Current replicated fields of a local entity, or None."""
        entity: Member | Group | Expense | None
        if kind == EntityKind.MEMBER:
            row = cursor.execute(
                "SELECT id, name FROM members WHERE id = ?", (entity_id,)
            ).fetchone()
            entity = Member(id=row["id"], name=row["name"]) if row else None
        elif kind == EntityKind.GROUP:
            row = cursor.execute(
                "SELECT id, name FROM groups WHERE id = ?", (entity_id,)
            ).fetchone()
            entity = self._load_group(row) if row else None
        else:
            entity = self._fetch_expense(cursor, entity_id)
        return to_record(kind, entity) if entity else None

    def pending_changes(self) -> list[PendingChange]:
        """
        Get locally changed entities waiting to be exported.

        Returns:
            Pending changes in dependency order (deletions last, children first)
        """
        with self._lock:
            cursor = self.conn.cursor()
            rows = cursor.execute(
                "SELECT kind, entity_id, revision, deleted FROM sync_outbox"
            ).fetchall()
            pending = []
            for row in rows:
                kind = EntityKind(row["kind"])
                deleted = bool(row["deleted"])
                pending.append(
                    PendingChange(
                        kind=kind,
                        entity_id=row["entity_id"],
                        revision=row["revision"],
                        deleted=deleted,
                        record=None
                        if deleted
                        else self._get_record(cursor, kind, row["entity_id"]),
                        baseline=self._get_baseline(cursor, kind, row["entity_id"]),
                    )
                )
        pending.sort(key=_change_order)
        return pending

    def acknowledge_export(self, exported: list[PendingChange]):
        """
        Record that pending changes were accepted by the remote store.

        The pushed values become the new baseline. Outbox entries are only
        cleared if the entity was not changed again since it was read.
        """
        with self._transaction() as cursor:
            for change in exported:
                self._set_baseline(
                    cursor,
                    change.kind,
                    change.entity_id,
                    None if change.deleted else change.record,
                )
                cursor.execute(
                    """
                    DELETE FROM sync_outbox
                    WHERE kind = ? AND entity_id = ? AND revision = ?
                    """,
                    (change.kind.value, change.entity_id, change.revision),
                )
        logger.debug(f"Acknowledged {len(exported)} exported changes")

    def apply_remote_changes(
        self,
        changes: list[RemoteChange],
        token: str | None = None,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> ChangeSummary:
        """
        Merge a set of remote changes into the store in one transaction.

        Local-only field edits survive; fields changed remotely take the
        remote value. Remote deletions win over local edits. Applying the
        same change set twice leaves the store as applying it once.

        Records that cannot be applied (invalid, or an expense whose group
        is unknown) are skipped and counted in the summary. The change token
        still advances, so skipped records are dropped for good; they are
        not fetched again.

        Args:
            changes: Remote changes to apply
            token: Remote change token to persist with the merge
            is_cancelled: Polled between entities; abandons the whole merge

        Returns:
            Summary of inserted, updated, deleted and skipped entities

        Raises:
            SyncCancelledError: If the merge was abandoned (nothing committed)
            PersistenceError: If the store could not be written
        """
        summary = ChangeSummary()
        with self._transaction("remote") as cursor:
            for change in sorted(changes, key=_change_order):
                if is_cancelled and is_cancelled():
                    raise SyncCancelledError("Import cancelled before merge completed")
                if change.deleted:
                    self._apply_remote_delete(cursor, change, summary)
                else:
                    self._apply_remote_upsert(cursor, change, summary)
            if token is not None:
                self._set_config(cursor, CHANGE_TOKEN_KEY, token)

        logger.info(
            f"Merged {len(changes)} remote changes: {summary.inserted} inserted, "
            f"{summary.updated} updated, {summary.deleted} deleted, "
            f"{summary.skipped} skipped"
        )
        if summary.skipped:
            logger.warning(
                f"Dropped {summary.skipped} remote changes that could not be applied"
            )
        return summary

    def _apply_remote_delete(
        self, cursor: sqlite3.Cursor, change: RemoteChange, summary: ChangeSummary
    ):
        table = {
            EntityKind.MEMBER: "members",
            EntityKind.GROUP: "groups",
            EntityKind.EXPENSE: "expenses",
        }[change.kind]
        if change.kind == EntityKind.GROUP:
            for row in cursor.execute(
                "SELECT id FROM expenses WHERE group_id = ?", (change.entity_id,)
            ).fetchall():
                self._clear_dirty(cursor, EntityKind.EXPENSE, row["id"])
                self._set_baseline(cursor, EntityKind.EXPENSE, row["id"], None)
        cursor.execute(f"DELETE FROM {table} WHERE id = ?", (change.entity_id,))
        if cursor.rowcount:
            summary.deleted += 1
            logger.debug(f"Remote deleted {change.kind.value} {change.entity_id}")
        self._clear_dirty(cursor, change.kind, change.entity_id)
        self._set_baseline(cursor, change.kind, change.entity_id, None)

    def _apply_remote_upsert(
        self, cursor: sqlite3.Cursor, change: RemoteChange, summary: ChangeSummary
    ):
        kind, entity_id = change.kind, change.entity_id
        baseline = self._get_baseline(cursor, kind, entity_id)
        local = self._get_record(cursor, kind, entity_id)

        # Fetched changes may be partial; fill in from what we already know
        try:
            remote_entity = from_record(
                kind, entity_id, {**(baseline or local or {}), **change.fields}
            )
        except ValidationError as e:
            logger.warning(f"Skipping invalid remote {kind.value} {entity_id}: {e}")
            summary.skipped += 1
            return
        remote = to_record(kind, remote_entity)

        if local is None and baseline is not None and remote == baseline:
            # Deleted here and unchanged remotely; the pending delete wins
            logger.debug(f"Keeping local delete of {kind.value} {entity_id}")
            return

        merged = merge_fields(baseline, local, remote)
        if kind == EntityKind.EXPENSE:
            group_id = merged["group_id"]
            if not self._exists(cursor, "groups", group_id):
                logger.warning(
                    f"Skipping remote expense {entity_id}: owning group "
                    f"{group_id} does not exist"
                )
                summary.skipped += 1
                return

        if merged != local:
            self._write_record(cursor, kind, entity_id, merged)
            if local is None:
                summary.inserted += 1
            else:
                summary.updated += 1

        self._set_baseline(cursor, kind, entity_id, remote)
        if merged == remote:
            self._clear_dirty(cursor, kind, entity_id)
        else:
            # Local-only edits survive and still need exporting
            self._mark_dirty(cursor, kind, entity_id)

    def _write_record(
        self,
        cursor: sqlite3.Cursor,
        kind: EntityKind,
        entity_id: str,
        record: dict[str, Any],
    ):
        entity = from_record(kind, entity_id, record)
        if isinstance(entity, Member):
            cursor.execute(
                """
                INSERT INTO members (id, name) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET name = excluded.name
                """,
                (entity.id, entity.name),
            )
        elif isinstance(entity, Group):
            cursor.execute(
                """
                INSERT INTO groups (id, name) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET name = excluded.name
                """,
                (entity.id, entity.name),
            )
            cursor.execute("DELETE FROM group_members WHERE group_id = ?", (entity.id,))
            for member_id in sorted(entity.member_ids):
                if not self._exists(cursor, "members", member_id):
                    logger.warning(
                        f"Group {entity.id} references unknown member {member_id}"
                    )
                    continue
                cursor.execute(
                    "INSERT INTO group_members (group_id, member_id) VALUES (?, ?)",
                    (entity.id, member_id),
                )
        elif isinstance(entity, Expense):
            self._write_expense(cursor, entity)

    def _exists(self, cursor: sqlite3.Cursor, table: str, entity_id: str) -> bool:
        row = cursor.execute(
            f"SELECT 1 FROM {table} WHERE id = ?", (entity_id,)
        ).fetchone()
        return row is not None


def _change_order(change: RemoteChange | PendingChange) -> tuple[int, int]:
    """Upserts parents first, then deletions children first."""
    rank = KIND_ORDER[change.kind]
    if change.deleted:
        return (1, -rank)
    return (0, rank)
