"""Custom exception hierarchy for pycloudsync."""

from __future__ import annotations


class CloudSyncError(Exception):
    """Base exception for all pycloudsync errors."""


class CloudSyncConfigError(CloudSyncError):
    """Invalid or missing configuration."""


class CloudTransportError(CloudSyncError):
    """HTTP-level failure (network, unexpected status, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class RemoteApiError(CloudSyncError):
    """The remote store answered with an application-level error body."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "",
        endpoint: str = "",
    ) -> None:
        self.code = code
        self.endpoint = endpoint
        super().__init__(message)


class RetrievalError(CloudSyncError):
    """Reading an entry from the remote store failed.

    Non-fatal: the sync engine recovers by falling back to the local
    cache (or the caller's default) and exposes this error on its state.
    """

    def __init__(self, message: str, *, key: str = "") -> None:
        self.key = key
        super().__init__(message)


class WriteError(CloudSyncError):
    """Upserting an entry to the remote store failed.

    By the time this is raised the optimistic in-memory value and the
    local cache already hold the new value. No retry is attempted.
    """

    def __init__(self, message: str, *, key: str = "") -> None:
        self.key = key
        super().__init__(message)


class SerializationError(CloudSyncError):
    """A value could not be encoded to, or decoded from, JSON text."""


class NotAuthenticatedError(CloudSyncError):
    """A keyed operation was attempted without an authenticated identity."""


class RealtimeError(CloudSyncError):
    """Change-feed connection or subscription failure."""


class InvalidTransitionError(CloudSyncError):
    """A cache state transition not allowed by the state machine."""
