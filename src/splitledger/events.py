"""In-process publish/subscribe channel for sync lifecycle events."""

import itertools
import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from .models import SyncEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SyncEvent], None]


class Subscription:
    """Handle returned by EventChannel.subscribe."""

    def __init__(self, channel: "EventChannel", token: int):
        self._channel = channel
        self._token = token

    @property
    def active(self) -> bool:
        return self._channel.is_subscribed(self._token)

    def unsubscribe(self):
        """Stop delivery to this subscriber."""
        self._channel.unsubscribe(self._token)

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.unsubscribe()


class EventChannel:
    """Delivers events to subscribers in publish order, off the caller's thread.

    A single worker thread delivers events, so publishers never block on
    subscribers and every subscriber sees events in the order published.
    """

    def __init__(self):
        """Initialize the channel."""
        self._lock = threading.Lock()
        self._handlers: dict[int, EventHandler] = {}
        self._tokens = itertools.count(1)
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="splitledger-events"
        )
        self._closed = False

    def subscribe(self, handler: EventHandler) -> Subscription:
        """
        Register a handler for all future events.

        Args:
            handler: Called with each SyncEvent

        Returns:
            Subscription handle; call unsubscribe() to stop delivery
        """
        with self._lock:
            token = next(self._tokens)
            self._handlers[token] = handler
        return Subscription(self, token)

    def unsubscribe(self, token: int):
        with self._lock:
            self._handlers.pop(token, None)

    def is_subscribed(self, token: int) -> bool:
        with self._lock:
            return token in self._handlers

    def publish(self, event: SyncEvent):
        """Queue an event for delivery. Never blocks on subscribers."""
        with self._lock:
            if self._closed:
                logger.debug(f"Dropping {event.type.value} event on closed channel")
                return
            self._executor.submit(self._deliver, event)

    def _deliver(self, event: SyncEvent):
        with self._lock:
            handlers = list(self._handlers.values())
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                # A failing subscriber must not stop delivery to the others
                logger.exception(f"Sync event handler failed on {event.type.value}")

    def flush(self, timeout: float | None = None):
        """Wait until every event published so far has been delivered."""
        with self._lock:
            if self._closed:
                return
            future = self._executor.submit(lambda: None)
        future.result(timeout=timeout)

    def close(self):
        """Deliver queued events, then stop the worker."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=True)
