"""
Error taxonomy for the directory synchronization engine.

Batch-level failures are absorbed and counted by the reader, run-level
failures abort the current sync or event and are surfaced to the caller.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class DirectorySyncError(Exception):
    """Base exception for synchronization errors."""

    def __init__(self, message: str, provider: Optional[str] = None,
                 error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.error_code = error_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "name": type(self).__name__,
            "message": self.message,
            "provider": self.provider,
            "error_code": self.error_code,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


class ConfigError(DirectorySyncError):
    """Invalid provider configuration, raised at load time."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "INVALID_CONFIG")
        super().__init__(message, **kwargs)


class AuthError(DirectorySyncError):
    """Authentication or token refresh against the directory failed."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "AUTH_FAILED")
        super().__init__(message, **kwargs)


class DirectoryRequestError(DirectorySyncError):
    """A directory call failed for a reason other than authentication."""

    def __init__(self, message: str, status: Optional[int] = None, **kwargs):
        kwargs.setdefault("error_code", "DIRECTORY_REQUEST_FAILED")
        super().__init__(message, **kwargs)
        self.status = status


class BatchFetchError(DirectorySyncError):
    """One page of users or groups could not be fetched."""

    def __init__(self, kind: str, page_index: int, cause: BaseException, **kwargs):
        kwargs.setdefault("error_code", "BATCH_FETCH_FAILED")
        kwargs.setdefault("details", {"kind": kind, "page_index": page_index})
        super().__init__(
            f"Failed to fetch {kind} page {page_index}: {cause}",
            **kwargs
        )
        self.kind = kind
        self.page_index = page_index
        self.__cause__ = cause


class NotInitializedError(DirectorySyncError):
    """An operation ran before the catalog connection was established."""

    def __init__(self, message: str = "Not initialized", **kwargs):
        kwargs.setdefault("error_code", "NOT_INITIALIZED")
        super().__init__(message, **kwargs)


class EntityRejected(DirectorySyncError):
    """
    Raised by a transformer to drop a single record.

    Equivalent to the transformer returning ``None``; never surfaces past the
    entity builder.
    """

    def __init__(self, message: str = "Entity rejected by transformer", **kwargs):
        kwargs.setdefault("error_code", "ENTITY_REJECTED")
        super().__init__(message, **kwargs)
