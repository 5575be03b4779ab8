"""Client for the remote authoritative ledger store."""

import logging
from typing import Protocol

import httpx
from pydantic import ValidationError

from ..exceptions import RemoteAPIError, SyncError
from ..models import RemoteChange, RemoteChangeSet

logger = logging.getLogger(__name__)


class RemoteStore(Protocol):
    """What the sync engine needs from a remote store."""

    def setup(self) -> None:
        """Establish the connection and remote schema."""
        ...

    def fetch_changes(self, since_token: str | None) -> RemoteChangeSet:
        """Fetch changes made since a change token (None = everything)."""
        ...

    def push_changes(self, changes: list[RemoteChange]) -> None:
        """Push local changes. Raises SyncError if they are rejected."""
        ...


class HttpRemoteStore:
    """Client for the remote ledger HTTP API."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        device_id: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the remote store client."""
        self.device_id = device_id
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def _request(self, method: str, url: str, **kwargs) -> dict:
        """Send a request, translating transport and HTTP failures to SyncError."""
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise SyncError(f"Remote store timed out on {method} {url}") from e
        except httpx.HTTPError as e:
            raise SyncError(f"Remote store unreachable: {e}") from e

        if response.status_code in (401, 403):
            raise RemoteAPIError(
                response.status_code,
                f"Remote store rejected credentials (HTTP {response.status_code})",
            )
        if response.is_error:
            raise RemoteAPIError(
                response.status_code,
                f"Remote store returned HTTP {response.status_code}: "
                f"{response.text[:200]}",
            )

        if not response.content:
            return {}
        try:
            data: dict = response.json()
        except ValueError as e:
            raise SyncError(f"Remote store returned invalid JSON for {url}") from e
        return data

    def setup(self) -> None:
        """Register this device and make sure the remote schema exists."""
        data = self._request("POST", "/setup", json={"device_id": self.device_id})
        logger.info(f"Remote store ready (schema {data.get('schema_version', '?')})")

    def fetch_changes(self, since_token: str | None) -> RemoteChangeSet:
        """
        Fetch changes since a change token.

        Args:
            since_token: Token from the previous fetch, or None for everything

        Returns:
            The changes and the token to use next time
        """
        params = {"since": since_token} if since_token else {}
        data = self._request("GET", "/changes", params=params)
        try:
            change_set = RemoteChangeSet.model_validate(data)
        except ValidationError as e:
            raise SyncError(f"Remote store returned malformed changes: {e}") from e

        logger.info(f"Fetched {len(change_set.changes)} remote changes")
        return change_set

    def push_changes(self, changes: list[RemoteChange]) -> None:
        """
        Push local changes to the remote store.

        Args:
            changes: Field-level changes to push
        """
        if not changes:
            return
        payload = {
            "device_id": self.device_id,
            "changes": [change.model_dump(mode="json") for change in changes],
        }
        self._request("POST", "/changes", json=payload)
        logger.info(f"Pushed {len(changes)} changes to remote store")
