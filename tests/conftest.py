"""Shared fixtures for SplitLedger tests."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from splitledger.db import Database
from splitledger.events import EventChannel
from splitledger.exceptions import SyncError
from splitledger.models import EntityKind, RemoteChange, RemoteChangeSet
from splitledger.sync import SyncEngine


class FakeRemoteStore:
    """In-memory authoritative store with a change log and numeric tokens."""

    def __init__(self):
        self.records: dict[tuple[EntityKind, str], dict] = {}
        self.log: list[RemoteChange] = []
        self.setup_calls = 0
        self.pushed: list[list[RemoteChange]] = []
        self.fail_setup = False
        self.fail_fetch = False
        self.fail_push = False
        self.on_fetch = None  # hook run just before returning a fetch

    def setup(self) -> None:
        self.setup_calls += 1
        if self.fail_setup:
            raise SyncError("remote unreachable")

    def push_changes(self, changes: list[RemoteChange]) -> None:
        if self.fail_push:
            raise SyncError("push rejected")
        self.pushed.append(changes)
        for change in changes:
            key = (change.kind, change.entity_id)
            if change.deleted:
                self.records.pop(key, None)
                self.log.append(change)
                continue
            record = {**self.records.get(key, {}), **change.fields}
            self.records[key] = record
            self.log.append(
                RemoteChange(
                    kind=change.kind,
                    entity_id=change.entity_id,
                    fields=dict(record),
                    origin=change.origin,
                )
            )

    def fetch_changes(self, since_token: str | None) -> RemoteChangeSet:
        if self.fail_fetch:
            raise SyncError("fetch timed out")
        start = int(since_token) if since_token else 0
        change_set = RemoteChangeSet(
            changes=[c.model_copy(deep=True) for c in self.log[start:]],
            token=str(len(self.log)),
        )
        if self.on_fetch:
            self.on_fetch()
        return change_set

    def record(self, kind: EntityKind, entity_id: str) -> dict | None:
        return self.records.get((kind, entity_id))


@pytest.fixture
def db(tmp_path):
    """Create a temporary database."""
    database = Database(tmp_path / "ledger.db")
    yield database
    database.close()


@pytest.fixture
def remote():
    """Create an empty in-memory remote store."""
    return FakeRemoteStore()


@pytest.fixture
def make_engine():
    """Factory for sync engines; engines are closed after the test."""
    engines = []

    def _make(database: Database, remote_store, **kwargs) -> SyncEngine:
        kwargs.setdefault("events", EventChannel())
        engine = SyncEngine(database, remote_store, **kwargs)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()
        engine.events.close()


@pytest.fixture
def trip(db):
    """Group "Trip" with Alice, Bob and Carol, and two expenses."""
    alice = db.create_member("Alice")
    bob = db.create_member("Bob")
    carol = db.create_member("Carol")
    group = db.create_group("Trip", member_ids=[alice.id, bob.id, carol.id])
    db.create_expense(
        group.id,
        alice.id,
        Decimal("30.00"),
        "food",
        datetime(2024, 1, 15, 12, 0, tzinfo=UTC),
        name="Dinner",
    )
    db.create_expense(
        group.id,
        bob.id,
        Decimal("15.00"),
        "transportation",
        datetime(2024, 1, 16, 9, 0, tzinfo=UTC),
        name="Taxi",
    )
    return {"group": group, "alice": alice, "bob": bob, "carol": carol}
