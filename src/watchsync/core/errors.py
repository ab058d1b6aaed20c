"""Exception taxonomy for the sync engine.

Read-path errors (``NetworkUnavailable``, ``MalformedCache``,
``MalformedPayload``) are absorbed by the services and degrade to cached or
partial data. ``QuotaExceeded`` never leaves the cache layer.
``RemoteMutationRejected`` always reaches the caller.
"""

from typing import Optional


class WatchSyncError(Exception):
    """Base exception for watchsync errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NetworkUnavailable(WatchSyncError):
    """Raised when the remote authority cannot be reached."""

    def __init__(self, message: str = "Remote authority unreachable", url: Optional[str] = None):
        super().__init__(message, details={"url": url} if url else None)
        self.url = url


class RemoteError(WatchSyncError):
    """Raised when the remote authority answers with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message, details={"status_code": status_code, "detail": detail})
        self.status_code = status_code
        self.detail = detail


class RemoteMutationRejected(RemoteError):
    """Raised when a catalog mutation is refused by the remote authority."""

    def __init__(
        self,
        item_id: Optional[str],
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(
            f"Mutation of item '{item_id}' was rejected",
            status_code=status_code,
            detail=detail,
        )
        self.item_id = item_id


class QuotaExceeded(WatchSyncError):
    """Raised by the on-device store when a write would exceed its byte quota."""

    def __init__(self, key: str, required: int, quota: int):
        super().__init__(
            f"Writing '{key}' needs {required} bytes, quota is {quota}",
            details={"key": key, "required": required, "quota": quota},
        )
        self.key = key
        self.required = required
        self.quota = quota


class MalformedCache(WatchSyncError):
    """Raised internally when a persisted snapshot cannot be decoded."""


class MalformedPayload(WatchSyncError):
    """Raised when a remote payload has no recognizable catalog shape."""
