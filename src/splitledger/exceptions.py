"""Custom exceptions for SplitLedger."""


class SplitLedgerError(Exception):
    """Base exception for all SplitLedger errors."""

    pass


class ConfigurationError(SplitLedgerError):
    """Raised when configuration is invalid or missing."""

    pass


class PersistenceError(SplitLedgerError):
    """Raised when a local storage operation fails and was rolled back."""

    pass


class EntityNotFoundError(PersistenceError):
    """Raised when a mutation references an entity that does not exist."""

    def __init__(self, kind: str, entity_id: str, message: str | None = None):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(message or f"{kind} {entity_id} not found")


class DataIntegrityError(SplitLedgerError):
    """Raised when an entity references something inconsistent.

    Store mutations raise it for invalid input. Derived computations
    (balances, category sums) only log it as a warning and skip the entity.
    """

    pass


class SyncError(SplitLedgerError):
    """Raised when importing from or exporting to the remote store fails."""

    pass


class RemoteAPIError(SyncError):
    """Raised when the remote store rejects a request."""

    def __init__(self, status_code: int, message: str | None = None):
        self.status_code = status_code
        super().__init__(message or f"Remote store returned HTTP {status_code}")


class SyncCancelledError(SyncError):
    """Raised when an in-flight import is abandoned before it is applied."""

    pass
