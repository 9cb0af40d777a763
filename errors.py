#!/usr/bin/env python3
"""Common error types shared across modules.

Every ingestion stage raises one of these internally and converts it into a
result object at its public boundary, so callers only ever see typed errors.
"""

from typing import Dict, Any, Optional


class FeedError(Exception):
    """Base class for ingestion failures.

    Attributes:
        code: Stable machine-readable error code.
        details: Optional payload for diagnostics (underlying cause, URL, ...).
    """

    code = "FEED_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": {k: str(v) for k, v in self.details.items()}}


class NetworkError(FeedError):
    """Transport failure: timeout, DNS, non-2xx, or every fetch strategy exhausted."""

    code = "NETWORK_ERROR"


class ParseError(FeedError):
    """The fetched document is not a well-formed RSS/Atom feed."""

    code = "PARSE_ERROR"


class ValidationError(FeedError):
    """The caller supplied missing or invalid parameters."""

    code = "VALIDATION_ERROR"


class PersistenceError(FeedError):
    """Store read/write failure.

    ``kind`` is one of ``conflict`` (duplicate key), ``policy`` (scope/authorization
    rejection), ``not_found`` or ``storage``.
    """

    code = "DB_ERROR"

    CONFLICT = "conflict"
    POLICY = "policy"
    NOT_FOUND = "not_found"
    STORAGE = "storage"

    def __init__(self, message: str, kind: str = STORAGE, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.kind = kind

    @property
    def is_benign_candidate(self) -> bool:
        """True when the failure may just mean another writer got there first."""
        return self.kind in (self.CONFLICT, self.POLICY)


__all__ = ["FeedError", "NetworkError", "ParseError", "ValidationError", "PersistenceError"]
