"""Pydantic domain models for SplitLedger."""

import uuid
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

CENT = Decimal("0.01")


def new_id() -> str:
    """Generate a new entity identifier."""
    return uuid.uuid4().hex


def quantize_amount(amount: Decimal | int | str) -> Decimal:
    """Quantize a monetary amount to cents using ROUND_HALF_UP."""
    try:
        return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e


# ============================================================================
# Ledger Models
# ============================================================================


class Category(str, Enum):
    """Expense category tag. Unknown tags fold into OTHER."""

    FOOD = "food"
    ENTERTAINMENT = "entertainment"
    HEALTH = "health"
    SHOPPING = "shopping"
    TRANSPORTATION = "transportation"
    UTILITIES = "utilities"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "Category":
        """Parse a raw tag, folding missing or unknown values into OTHER."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.OTHER


class Member(BaseModel):
    """A person participating in one or more groups."""

    id: str = Field(default_factory=new_id)
    name: str


class Group(BaseModel):
    """A set of members sharing expenses.

    member_ids is a non-owning association; expense_ids lists the expenses
    the group owns and is derived from Expense.group_id by the store.
    """

    id: str = Field(default_factory=new_id)
    name: str
    member_ids: set[str] = Field(default_factory=set)
    expense_ids: set[str] = Field(default_factory=set)

    @field_serializer("member_ids", "expense_ids")
    def _serialize_id_set(self, ids: set[str]) -> list[str]:
        return sorted(ids)


class Expense(BaseModel):
    """A single paid amount, owned by a group and attributed to a payer."""

    id: str = Field(default_factory=new_id)
    name: str
    amount: Decimal = Field(ge=0)
    category: Category = Category.OTHER
    date: datetime
    payer_id: str
    group_id: str

    @field_validator("amount", mode="before")
    @classmethod
    def _quantize(cls, value: Any) -> Decimal:
        if isinstance(value, float):
            raise ValueError("amount must be a Decimal or string, not float")
        return quantize_amount(value)

    @field_validator("category", mode="before")
    @classmethod
    def _fold_category(cls, value: Any) -> Category:
        return Category.parse(value)

    @field_validator("date")
    @classmethod
    def _normalize_date(cls, value: datetime) -> datetime:
        # Naive datetimes are taken as UTC; everything is stored in UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class GroupSnapshot(BaseModel):
    """Point-in-time view of a group, its members and its expenses."""

    model_config = ConfigDict(frozen=True)

    group: Group
    members: list[Member]
    expenses: list[Expense]


# ============================================================================
# Query Models
# ============================================================================


class ExpenseFilter(BaseModel):
    """Filter for expense queries. Unset fields do not filter."""

    group_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    category: Category | None = None

    @field_validator("date_from", "date_to")
    @classmethod
    def _normalize_date(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class ExpenseSort(BaseModel):
    """Sort order for expense queries (date descending by default)."""

    field: Literal["date", "amount", "name", "category"] = "date"
    descending: bool = True


class CategorySum(BaseModel):
    """Total expense amount for one category."""

    category: Category
    total: Decimal


class Transfer(BaseModel):
    """A suggested payment that settles part of a group's balances."""

    from_member_id: str
    to_member_id: str
    amount: Decimal


# ============================================================================
# Sync Models
# ============================================================================


class EntityKind(str, Enum):
    """Kinds of replicated entities, in dependency order."""

    MEMBER = "member"
    GROUP = "group"
    EXPENSE = "expense"


# Fields that replicate; Group.expense_ids is derived and never synced.
SYNC_FIELDS: dict[EntityKind, set[str]] = {
    EntityKind.MEMBER: {"name"},
    EntityKind.GROUP: {"name", "member_ids"},
    EntityKind.EXPENSE: {"name", "amount", "category", "date", "payer_id", "group_id"},
}

ENTITY_MODELS: dict[EntityKind, type[BaseModel]] = {
    EntityKind.MEMBER: Member,
    EntityKind.GROUP: Group,
    EntityKind.EXPENSE: Expense,
}

KIND_ORDER = {kind: index for index, kind in enumerate(EntityKind)}


def to_record(kind: EntityKind, entity: BaseModel) -> dict[str, Any]:
    """Dump an entity's replicated fields as a JSON-safe dict."""
    return entity.model_dump(mode="json", include=SYNC_FIELDS[kind])


def from_record(kind: EntityKind, entity_id: str, record: dict[str, Any]) -> BaseModel:
    """Build an entity from a replicated record."""
    fields = {key: value for key, value in record.items() if key in SYNC_FIELDS[kind]}
    return ENTITY_MODELS[kind].model_validate({"id": entity_id, **fields})


class RemoteChange(BaseModel):
    """A change to one entity, as exchanged with the remote store.

    Pushed changes carry only the fields that changed since the last
    synchronized baseline; fetched changes normally carry the full record.
    """

    kind: EntityKind
    entity_id: str
    fields: dict[str, Any] = Field(default_factory=dict)
    deleted: bool = False
    origin: str | None = None  # device that produced the change


class RemoteChangeSet(BaseModel):
    """Changes fetched from the remote store since a change token."""

    changes: list[RemoteChange] = Field(default_factory=list)
    token: str | None = None


class PendingChange(BaseModel):
    """A locally changed entity waiting to be exported."""

    kind: EntityKind
    entity_id: str
    revision: int
    deleted: bool = False
    record: dict[str, Any] | None = None  # current local fields
    baseline: dict[str, Any] | None = None  # last synchronized fields


class ChangeSummary(BaseModel):
    """Counts of entities touched by an import or export cycle."""

    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.deleted


class SyncEventType(str, Enum):
    """Lifecycle events emitted by the sync engine."""

    SETUP = "setup"
    IMPORT = "import"
    EXPORT = "export"


class SyncState(str, Enum):
    """States of a sync session."""

    IDLE = "idle"
    EXPORTING = "exporting"
    IMPORTING = "importing"
    MERGING = "merging"
    ERROR = "error"


class SyncEvent(BaseModel):
    """Immutable lifecycle notification delivered to sync subscribers."""

    model_config = ConfigDict(frozen=True)

    type: SyncEventType
    session_id: str
    phase: Literal["started", "finished"]
    succeeded: bool | None = None  # None while started
    error: str | None = None
    summary: ChangeSummary | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def failed(self) -> bool:
        return self.phase == "finished" and self.succeeded is False
