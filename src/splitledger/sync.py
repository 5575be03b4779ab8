"""Sync engine: replicates the ledger store with a remote authoritative store.

A sync session runs setup (once per engine), then import, then export.
Importing first lets remote values trump local edits of the same field
before anything is pushed. Import fetches remote changes without holding
the store lock and merges them in a single store transaction, so local
writes are never blocked by network I/O and a cancelled import commits
nothing.
"""

import logging
import threading
import time
import uuid
from collections.abc import Callable

from .clients.remote import HttpRemoteStore, RemoteStore
from .config import Settings
from .db import CHANGE_TOKEN_KEY, Database
from .events import EventChannel, EventHandler, Subscription
from .exceptions import ConfigurationError, SplitLedgerError, SyncCancelledError
from .merge import changed_fields
from .models import (
    ChangeSummary,
    RemoteChange,
    SyncEvent,
    SyncEventType,
    SyncState,
)

logger = logging.getLogger(__name__)


class SyncEngine:
    """Coordinates import/export cycles between the store and a remote store."""

    def __init__(
        self,
        database: Database,
        remote: RemoteStore,
        events: EventChannel | None = None,
        device_id: str | None = None,
        sync_interval: float = 60.0,
        backoff_initial: float = 5.0,
        backoff_max: float = 900.0,
        backoff_factor: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the sync engine."""
        self.db = database
        self.remote = remote
        self.events = events or EventChannel()
        self._owns_events = events is None
        self._owns_remote = False
        self.device_id = device_id
        self.sync_interval = sync_interval
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.backoff_factor = backoff_factor
        self._clock = clock

        self._state = SyncState.IDLE
        self._state_lock = threading.Lock()
        self._session_lock = threading.Lock()
        self._setup_done = False
        self._cancel = threading.Event()

        self._failures = 0
        self._next_attempt_at = 0.0

        self._trigger = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        database: Database,
        settings: Settings,
        events: EventChannel | None = None,
    ) -> "SyncEngine":
        """Build an engine talking to the HTTP remote store from settings."""
        if not settings.sync_enabled:
            raise ConfigurationError(
                "No remote store configured. Set SPLITLEDGER_REMOTE_URL to enable sync."
            )
        remote = HttpRemoteStore(
            settings.remote_url,
            token=settings.remote_token,
            device_id=settings.device_id,
            timeout=settings.sync_timeout,
        )
        engine = cls(
            database,
            remote,
            events=events,
            device_id=settings.device_id,
            sync_interval=settings.sync_interval,
            backoff_initial=settings.backoff_initial,
            backoff_max=settings.backoff_max,
            backoff_factor=settings.backoff_factor,
        )
        engine._owns_remote = True
        return engine

    # ========================================================================
    # State and events
    # ========================================================================

    @property
    def state(self) -> SyncState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: SyncState):
        with self._state_lock:
            if state != self._state:
                logger.debug(f"Sync state {self._state.value} -> {state.value}")
            self._state = state

    def subscribe(self, handler: EventHandler) -> Subscription:
        """Register a handler for setup/import/export events."""
        return self.events.subscribe(handler)

    # ========================================================================
    # Backoff
    # ========================================================================

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def should_attempt(self) -> bool:
        """True once the backoff delay after the last failure has elapsed."""
        return self._clock() >= self._next_attempt_at

    def _record_outcome(self, succeeded: bool):
        if succeeded:
            self._failures = 0
            self._next_attempt_at = 0.0
            return
        self._failures += 1
        delay = min(
            self.backoff_initial * self.backoff_factor ** (self._failures - 1),
            self.backoff_max,
        )
        self._next_attempt_at = self._clock() + delay
        logger.warning(
            f"Sync failed {self._failures} time(s) in a row; "
            f"next attempt in {delay:.0f}s"
        )

    # ========================================================================
    # Sessions
    # ========================================================================

    def setup(self) -> bool:
        """Establish the remote connection. Returns False on failure."""
        return self._session(setup=True, export=False, import_=False)

    def export_changes(self) -> bool:
        """Run one export cycle. Returns False on failure."""
        return self._session(setup=True, export=True, import_=False)

    def import_changes(self) -> bool:
        """Run one import cycle. Returns False on failure."""
        return self._session(setup=True, export=False, import_=True)

    def sync(self) -> bool:
        """Run a full session: setup (once), import, then export."""
        return self._session(setup=True, export=True, import_=True)

    def cancel(self):
        """Abandon the in-flight session; an unapplied import is discarded."""
        self._cancel.set()

    def _session(self, setup: bool, export: bool, import_: bool) -> bool:
        if not self._session_lock.acquire(blocking=False):
            logger.info("Sync session already in progress, skipping")
            return False
        try:
            self._cancel.clear()
            session_id = uuid.uuid4().hex[:12]
            succeeded = True
            if setup and not self._setup_done:
                succeeded = self._run_cycle(
                    SyncEventType.SETUP, session_id, SyncState.IDLE, self._do_setup
                )
            if succeeded and import_:
                succeeded = self._run_cycle(
                    SyncEventType.IMPORT,
                    session_id,
                    SyncState.IMPORTING,
                    self._do_import,
                )
            if succeeded and export:
                succeeded = self._run_cycle(
                    SyncEventType.EXPORT,
                    session_id,
                    SyncState.EXPORTING,
                    self._do_export,
                )
            self._record_outcome(succeeded)
            return succeeded
        finally:
            self._session_lock.release()

    def _run_cycle(
        self,
        event_type: SyncEventType,
        session_id: str,
        state: SyncState,
        work: Callable[[], ChangeSummary | None],
    ) -> bool:
        """Run one cycle, reporting start and outcome on the event channel."""
        self.events.publish(
            SyncEvent(type=event_type, session_id=session_id, phase="started")
        )
        self._set_state(state)
        try:
            summary = work()
        except SplitLedgerError as e:
            self._set_state(SyncState.ERROR)
            logger.error(f"Sync {event_type.value} failed: {e}")
            self.events.publish(
                SyncEvent(
                    type=event_type,
                    session_id=session_id,
                    phase="finished",
                    succeeded=False,
                    error=str(e),
                )
            )
            self._set_state(SyncState.IDLE)
            return False

        self._set_state(SyncState.IDLE)
        self.events.publish(
            SyncEvent(
                type=event_type,
                session_id=session_id,
                phase="finished",
                succeeded=True,
                summary=summary,
            )
        )
        return True

    def _do_setup(self) -> None:
        self.remote.setup()
        self._setup_done = True
        logger.info("Sync setup complete")

    def _do_export(self) -> ChangeSummary:
        pending = self.db.pending_changes()
        summary = ChangeSummary()
        changes = []
        for change in pending:
            if change.deleted:
                changes.append(
                    RemoteChange(
                        kind=change.kind,
                        entity_id=change.entity_id,
                        deleted=True,
                        origin=self.device_id,
                    )
                )
                summary.deleted += 1
                continue
            if change.record is None:
                summary.skipped += 1
                continue
            fields = changed_fields(change.baseline, change.record)
            if not fields:
                continue
            changes.append(
                RemoteChange(
                    kind=change.kind,
                    entity_id=change.entity_id,
                    fields=fields,
                    origin=self.device_id,
                )
            )
            if change.baseline is None:
                summary.inserted += 1
            else:
                summary.updated += 1

        if changes:
            self.remote.push_changes(changes)
        self.db.acknowledge_export(pending)
        logger.info(f"Exported {len(changes)} changes")
        return summary

    def _do_import(self) -> ChangeSummary:
        token = self.db.get_config(CHANGE_TOKEN_KEY)
        change_set = self.remote.fetch_changes(token)
        if self._cancel.is_set():
            raise SyncCancelledError("Import cancelled before merge")

        self._set_state(SyncState.MERGING)
        return self.db.apply_remote_changes(
            change_set.changes,
            token=change_set.token,
            is_cancelled=self._cancel.is_set,
        )

    # ========================================================================
    # Background worker
    # ========================================================================

    def trigger(self):
        """Ask the background worker to sync soon (subject to backoff)."""
        self._trigger.set()

    def start(self):
        """Start the background worker. Local writes trigger a sync."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self.db.add_change_listener(self._on_store_change)
        self._thread = threading.Thread(
            target=self._run_loop, name="splitledger-sync", daemon=True
        )
        self._thread.start()
        self.trigger()
        logger.info(f"Background sync started (interval {self.sync_interval:.0f}s)")

    def stop(self, timeout: float | None = None):
        """Stop the background worker, abandoning any in-flight import."""
        self._stop.set()
        self.cancel()
        self._trigger.set()
        self.db.remove_change_listener(self._on_store_change)
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Background sync stopped")

    def close(self):
        """Stop the worker and release owned resources."""
        self.stop()
        if self._owns_events:
            self.events.close()
        if self._owns_remote and isinstance(self.remote, HttpRemoteStore):
            self.remote.close()

    def _on_store_change(self, source: str):
        if source == "local":
            self.trigger()

    def _run_loop(self):
        while not self._stop.is_set():
            self._trigger.wait(timeout=self.sync_interval)
            self._trigger.clear()
            if self._stop.is_set():
                break
            if not self.should_attempt():
                logger.debug("Sync deferred by backoff")
                continue
            try:
                self.sync()
            except Exception:
                # The worker must survive anything a session throws
                logger.exception("Unexpected error during background sync")
