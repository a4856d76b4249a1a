#!/usr/bin/env python3
"""Common error types shared across modules.

Each pipeline stage raises a single exception type carrying an enum ``kind`` so
callers can branch on the failure class instead of parsing messages.
"""

from enum import Enum
from typing import Dict, Any, Optional


class FetchErrorKind(str, Enum):
    TIMEOUT = "timeout"
    NETWORK_FAILURE = "network_failure"
    HTTP_STATUS = "http_status"
    TOO_LARGE = "too_large"


class ParseErrorKind(str, Enum):
    MALFORMED = "malformed"
    NOT_A_FEED = "not_a_feed"


class StorageErrorKind(str, Enum):
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"


class PipelineError(Exception):
    """Base class for failures surfaced in a sync result.

    Attributes:
        kind: Enum member classifying the failure.
        details: Optional payload for diagnostics.
    """

    def __init__(self, kind: Enum, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or kind.value)
        self.kind = kind
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"type": type(self).__name__, "kind": self.kind.value, "message": str(self)}


class FetchError(PipelineError):
    """Raised by the source fetcher once its retry budget is spent."""

    def __init__(
        self,
        kind: FetchErrorKind,
        message: str = "",
        *,
        url: Optional[str] = None,
        status: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(kind, message, {"url": url, "status": status})
        self.url = url
        self.status = status
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.status is not None:
            data["status"] = self.status
        return data


class ParseError(PipelineError):
    """Raised when fetched content cannot be turned into a feed."""

    def __init__(self, kind: ParseErrorKind, message: str = ""):
        super().__init__(kind, message)


class StorageError(PipelineError):
    """Raised by the database layer; CONFLICT marks a uniqueness violation."""

    def __init__(self, kind: StorageErrorKind, message: str = "", cause: Optional[BaseException] = None):
        super().__init__(kind, message)
        self.cause = cause


class FeedNotFoundError(LookupError):
    """Feed is missing, soft-deleted, or not owned by the requesting user."""


class ItemNotFoundError(LookupError):
    """Interaction targets an item that does not exist."""


__all__ = [
    "FetchErrorKind",
    "ParseErrorKind",
    "StorageErrorKind",
    "PipelineError",
    "FetchError",
    "ParseError",
    "StorageError",
    "FeedNotFoundError",
    "ItemNotFoundError",
]
